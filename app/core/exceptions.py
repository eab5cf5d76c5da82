"""
Application-level exception types.

The storybook engine raises these; the HTTP layer maps each one onto a
status code in ``app.main``.
"""

from __future__ import annotations

from datetime import datetime


class AppError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        self.detail = detail or message
        super().__init__(message)


class EntityNotFoundError(AppError):
    """Raised when a hero, storybook or chapter cannot be found."""

    def __init__(self, entity_type: str, entity_id: object) -> None:
        super().__init__(
            f"{entity_type} not found: {entity_id}",
            detail=f"{entity_type} not found",
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class InvalidArgumentError(AppError):
    """Raised for caller mistakes such as a non-positive unlock count."""


class DuplicateEntityError(AppError):
    """Raised when a write collides with an existing row, such as a second storybook for a hero."""

    def __init__(self, entity_type: str, entity_id: object) -> None:
        super().__init__(
            f"{entity_type} already exists: {entity_id}",
            detail=f"{entity_type} already exists",
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class GenerationError(AppError):
    """Raised when chapter generation fails for a reason other than quota."""


class QuotaExceededError(AppError):
    """Raised when the generation provider is out of quota.

    ``retry_after`` is set when the quota breaker knows when its cooldown
    ends. When raised in reaction to a provider failure the original error
    is chained as ``__cause__``.
    """

    def __init__(
        self,
        message: str = "AI generation quota exceeded",
        *,
        retry_after: datetime | None = None,
    ) -> None:
        super().__init__(
            message,
            detail="The cosmic energies are depleted. Please try again later.",
        )
        self.retry_after = retry_after


class ConfigurationError(AppError):
    """Raised when required configuration is missing or invalid."""


class ChapterProviderError(GenerationError):
    """Normalised failure from the text generation provider.

    Carries the HTTP status and the provider's error code so that quota
    classification does not depend on SDK exception classes.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, detail="Chapter generation failed")
        self.status_code = status_code
        self.code = code
