#!/usr/bin/env python3
"""Run the daily chapter unlock job once and print the report as JSON.

Meant to be scheduled from cron. Exits non-zero when any storybook failed
so the scheduler can alert.
"""

import json
import sys
from datetime import timedelta

from app.api.deps import build_storybook_engine
from app.core.logging import configure_logging
from app.core.openai_factory import build_chapter_generator
from app.core.settings import settings
from app.db.session import get_sessionmaker, init_engine
from app.services.daily_unlocks import process_daily_chapter_unlocks
from app.services.quota_breaker import QuotaBreaker
from app.services.storybook_engine import StoryBookLocks
from app.services.stores import SqlStoryBookStore


def main() -> int:
    configure_logging(settings.log_level, settings.log_file)
    init_engine(settings.database_url)

    generator = build_chapter_generator()
    breaker = QuotaBreaker(timedelta(seconds=settings.quota_cooldown_seconds))
    SessionLocal = get_sessionmaker()
    with SessionLocal() as db:
        engine = build_storybook_engine(db, generator, breaker, StoryBookLocks())
        report = process_daily_chapter_unlocks(engine, SqlStoryBookStore(db))

    print(json.dumps(report.to_dict(), indent=2))
    if report.failures:
        print(f"{len(report.failures)} storybook(s) failed to unlock", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
