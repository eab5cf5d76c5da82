"""Daily drip-feed job for premium storybooks."""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field

from app.core.metrics import record_daily_unlock_result
from app.services.storybook_engine import StoryBookEngine
from app.services.stores import StoryBookStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DailyUnlockResult:
    storybook_id: uuid.UUID
    hero_id: uuid.UUID
    previous_count: int
    new_count: int
    chapters_unlocked: int


@dataclass
class DailyUnlockReport:
    processed: int = 0
    unlocked: int = 0
    results: list[DailyUnlockResult] = field(default_factory=list)
    failures: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        payload = asdict(self)
        for result in payload["results"]:
            result["storybook_id"] = str(result["storybook_id"])
            result["hero_id"] = str(result["hero_id"])
        return payload


def process_daily_chapter_unlocks(engine: StoryBookEngine, storybooks: StoryBookStore) -> DailyUnlockReport:
    """Run the daily unlock check over every premium storybook with locked chapters.

    A failure on one storybook is logged and recorded in the report; the job
    moves on to the next one.
    """
    # Snapshot before unlocking: the engine updates these rows in place.
    pending = [
        (sb.storybook_id, sb.hero_id, sb.chapters_unlocked_count)
        for sb in storybooks.find_premium_with_locked_chapters()
    ]
    logger.info("daily_unlock_started", extra={"candidates": len(pending)})

    report = DailyUnlockReport(processed=len(pending))
    for storybook_id, hero_id, previous_count in pending:
        try:
            updated = engine.check_and_unlock_daily_chapters(storybook_id)
        except Exception as exc:  # noqa: BLE001
            record_daily_unlock_result("failed")
            logger.exception("daily_unlock_storybook_failed", extra={"storybook_id": str(storybook_id)})
            report.failures.append({"storybook_id": str(storybook_id), "error": str(exc)})
            continue

        if updated is None or updated.chapters_unlocked_count <= previous_count:
            record_daily_unlock_result("unchanged")
            continue

        record_daily_unlock_result("unlocked")
        result = DailyUnlockResult(
            storybook_id=storybook_id,
            hero_id=hero_id,
            previous_count=previous_count,
            new_count=updated.chapters_unlocked_count,
            chapters_unlocked=updated.chapters_unlocked_count - previous_count,
        )
        report.results.append(result)
        logger.info(
            "daily_unlock_storybook_advanced",
            extra={"storybook_id": str(storybook_id), "chapters_unlocked": result.chapters_unlocked},
        )

    report.unlocked = len(report.results)
    logger.info(
        "daily_unlock_finished",
        extra={"processed": report.processed, "unlocked": report.unlocked, "failed": len(report.failures)},
    )
    return report
