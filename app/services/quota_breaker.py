"""Process-wide breaker for provider quota exhaustion.

Unlike a failure-count circuit breaker this one trips on a single
quota-classified error and stays open for a fixed cooldown. The first
``is_exceeded()`` call after the cooldown clears it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from app.core.metrics import record_quota_trip

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(minutes=15)

QUOTA_ERROR_MARKERS = ("insufficient_quota", "exceeded your current quota")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorClass(str, Enum):
    QUOTA = "quota"
    GENERIC = "generic"


def _status_code(err: BaseException) -> int | None:
    for attr in ("status_code", "status", "http_status"):
        value = getattr(err, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(err, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def classify_generation_error(err: BaseException) -> ErrorClass:
    """Classify a provider failure as quota exhaustion or a generic failure.

    Heuristic: HTTP 429 together with either a quota error code or one of
    ``QUOTA_ERROR_MARKERS`` in the message. A plain 429 rate limit without a
    quota marker is generic. The provider does not document this shape, so
    keep all knowledge of it here.
    """
    if _status_code(err) != 429:
        return ErrorClass.GENERIC

    code = getattr(err, "code", None)
    if isinstance(code, str) and code in QUOTA_ERROR_MARKERS:
        return ErrorClass.QUOTA

    body = getattr(err, "body", None)
    if isinstance(body, dict):
        body_code = body.get("code") or (body.get("error") or {}).get("code")
        if body_code in QUOTA_ERROR_MARKERS:
            return ErrorClass.QUOTA

    message = str(err).lower()
    if any(marker in message for marker in QUOTA_ERROR_MARKERS):
        return ErrorClass.QUOTA
    return ErrorClass.GENERIC


def is_quota_error(err: BaseException) -> bool:
    return classify_generation_error(err) is ErrorClass.QUOTA


@dataclass(frozen=True)
class QuotaStatus:
    exceeded: bool
    exceeded_at: datetime | None
    retry_after: datetime | None


class QuotaBreaker:
    """Shared flag recording that the provider is out of quota."""

    def __init__(
        self,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        clock: Clock = utcnow,
    ) -> None:
        self._cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._exceeded = False
        self._exceeded_at: datetime | None = None

    @property
    def cooldown(self) -> timedelta:
        return self._cooldown

    def is_exceeded(self) -> bool:
        with self._lock:
            if self._exceeded and self._exceeded_at is not None:
                if self._clock() - self._exceeded_at >= self._cooldown:
                    self._exceeded = False
                    self._exceeded_at = None
                    logger.info("quota_breaker_reset")
            return self._exceeded

    def set_exceeded(self, value: bool) -> None:
        with self._lock:
            was_exceeded = self._exceeded
            self._exceeded = value
            self._exceeded_at = self._clock() if value else None
        if value and not was_exceeded:
            record_quota_trip()
            logger.warning(
                "quota_breaker_tripped",
                extra={"cooldown_seconds": self._cooldown.total_seconds()},
            )

    def retry_after(self) -> datetime | None:
        with self._lock:
            if not self._exceeded or self._exceeded_at is None:
                return None
            return self._exceeded_at + self._cooldown

    def status(self) -> QuotaStatus:
        exceeded = self.is_exceeded()
        with self._lock:
            exceeded_at = self._exceeded_at
        return QuotaStatus(
            exceeded=exceeded,
            exceeded_at=exceeded_at,
            retry_after=exceeded_at + self._cooldown if exceeded_at else None,
        )
