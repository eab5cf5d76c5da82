from __future__ import annotations

from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

registry = CollectorRegistry(auto_describe=True)

CHAPTER_GENERATION_DURATION = Histogram(
    "olympus_chapter_generation_duration_seconds",
    "Latency for provider calls made while generating a chapter.",
    ["operation"],
    registry=registry,
)

CHAPTER_GENERATION_TOTAL = Counter(
    "olympus_chapter_generation_total",
    "Chapter generation attempts partitioned by outcome.",
    ["outcome"],
    registry=registry,
)

CHAPTERS_UNLOCKED_TOTAL = Counter(
    "olympus_chapters_unlocked_total",
    "Chapters added to the unlocked frontier, labeled by trigger.",
    ["trigger"],
    registry=registry,
)

QUOTA_BREAKER_TRIPS_TOTAL = Counter(
    "olympus_quota_breaker_trips_total",
    "Number of times the provider quota breaker was tripped.",
    registry=registry,
)

DAILY_UNLOCK_STORYBOOKS_TOTAL = Counter(
    "olympus_daily_unlock_storybooks_total",
    "Storybooks visited by the daily unlock job, labeled by result.",
    ["result"],
    registry=registry,
)


@contextmanager
def track_provider_call(operation: str):
    with CHAPTER_GENERATION_DURATION.labels(operation=operation).time():
        yield


def record_generation_outcome(outcome: str) -> None:
    CHAPTER_GENERATION_TOTAL.labels(outcome=outcome).inc()


def record_chapters_unlocked(trigger: str, count: int) -> None:
    if count > 0:
        CHAPTERS_UNLOCKED_TOTAL.labels(trigger=trigger).inc(count)


def record_quota_trip() -> None:
    QUOTA_BREAKER_TRIPS_TOTAL.inc()


def record_daily_unlock_result(result: str) -> None:
    DAILY_UNLOCK_STORYBOOKS_TOTAL.labels(result=result).inc()


def get_metrics_payload() -> bytes:
    return generate_latest(registry)
