"""
Centralized builder for the chapter generator.

Keeps OpenAI client construction in one place so routes, jobs and scripts
share the same settings.
"""

from __future__ import annotations

import threading
from typing import Callable

from app.core.exceptions import ConfigurationError
from app.core.settings import settings
from app.services.chapter_generator import (
    ChapterGenerator,
    GeneratedChapter,
    HeroContext,
    LiteraryChapterGenerator,
)
from app.services.openai_text import OpenAITextClient


class OpenAINotConfiguredError(ConfigurationError):
    """Raised when OpenAI API credentials are missing."""

    def __init__(self) -> None:
        super().__init__(
            "OpenAI is not configured. Set OPENAI_API_KEY.",
            detail="Story generation is not configured",
        )


def build_openai_text_client() -> OpenAITextClient:
    if not settings.openai_api_key:
        raise OpenAINotConfiguredError()
    return OpenAITextClient(
        api_key=settings.openai_api_key,
        default_model=settings.openai_text_model,
        timeout_seconds=settings.openai_timeout_seconds,
        max_retries=settings.openai_max_retries,
    )


def build_chapter_generator() -> LiteraryChapterGenerator:
    """Build the chapter generator from application settings.

    Raises:
        OpenAINotConfiguredError: If no API key is set.
    """
    return LiteraryChapterGenerator(
        client=build_openai_text_client(),
        summary_model=settings.summary_model,
    )


class LazyChapterGenerator:
    """Chapter generator that builds its provider client on first use.

    Request paths that may never generate (reads, 404s) can depend on this
    without failing when OpenAI is not configured. The configuration error
    surfaces from ``generate_chapter`` instead, and the built generator is
    reused afterwards.
    """

    def __init__(self, factory: Callable[[], ChapterGenerator] = build_chapter_generator) -> None:
        self._factory = factory
        self._generator: ChapterGenerator | None = None
        self._lock = threading.Lock()

    def _resolve(self) -> ChapterGenerator:
        with self._lock:
            if self._generator is None:
                self._generator = self._factory()
            return self._generator

    def generate_chapter(
        self,
        hero: HeroContext,
        chapter_number: int,
        previous_summary: str | None,
        user_prompt: str = "",
    ) -> GeneratedChapter:
        return self._resolve().generate_chapter(hero, chapter_number, previous_summary, user_prompt)
