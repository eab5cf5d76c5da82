"""Chapter text generation for storybooks.

A chapter is produced with two provider calls: the chapter itself, written
from the hero's context and the previous chapter's summary, then a short
summary of the new chapter that seeds the next one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from app.db.models import Hero
from app.prompts.loader import render_prompt
from app.services.openai_text import OpenAITextClient

_ROMAN_NUMERALS = (
    (1000, "M"),
    (900, "CM"),
    (500, "D"),
    (400, "CD"),
    (100, "C"),
    (90, "XC"),
    (50, "L"),
    (40, "XL"),
    (10, "X"),
    (9, "IX"),
    (5, "V"),
    (4, "IV"),
    (1, "I"),
)


def to_roman(number: int) -> str:
    if number <= 0:
        raise ValueError("roman numerals require a positive number")
    parts: list[str] = []
    remaining = number
    for value, numeral in _ROMAN_NUMERALS:
        while remaining >= value:
            parts.append(numeral)
            remaining -= value
    return "".join(parts)


@dataclass(frozen=True)
class HeroContext:
    name: str
    western_sign: str = ""
    western_element: str = ""
    chinese_sign: str = ""
    chinese_element: str = ""
    traits: list[str] = field(default_factory=list)
    backstory: str = ""

    @classmethod
    def from_hero(cls, hero: Hero) -> HeroContext:
        western = hero.western_zodiac or {}
        chinese = hero.chinese_zodiac or {}
        traits = [str(t) for t in (western.get("traits") or [])[:2]]
        traits += [str(t) for t in (chinese.get("traits") or [])[:2]]
        return cls(
            name=hero.name,
            western_sign=str(western.get("sign", "")),
            western_element=str(western.get("element", "")),
            chinese_sign=str(chinese.get("sign", "")),
            chinese_element=str(chinese.get("element", "")),
            traits=traits,
            backstory=hero.backstory or "",
        )


@dataclass(frozen=True)
class GeneratedChapter:
    content: str
    summary: str


class ChapterGenerator(Protocol):
    def generate_chapter(
        self,
        hero: HeroContext,
        chapter_number: int,
        previous_summary: str | None,
        user_prompt: str = "",
    ) -> GeneratedChapter: ...


def build_chapter_prompts(
    hero: HeroContext,
    chapter_number: int,
    previous_summary: str | None,
    user_prompt: str = "",
) -> tuple[str, str]:
    """Return the (system, user) messages for one chapter."""
    context = render_prompt(
        "chapter_context",
        chapter_number=chapter_number,
        hero_name=hero.name,
        western_sign=hero.western_sign or "unknown",
        western_element=hero.western_element,
        chinese_sign=hero.chinese_sign or "unknown",
        chinese_element=hero.chinese_element,
        traits=", ".join(hero.traits),
        backstory=hero.backstory,
        user_prompt=user_prompt,
        previous_summary=previous_summary,
    )
    system = render_prompt("literary_system_prompt", context=context)
    user = render_prompt("chapter_instructions", roman_numeral=to_roman(chapter_number))
    return system, user


class LiteraryChapterGenerator:
    def __init__(self, client: OpenAITextClient, summary_model: str | None = None):
        self._client = client
        self._summary_model = summary_model

    def generate_chapter(
        self,
        hero: HeroContext,
        chapter_number: int,
        previous_summary: str | None,
        user_prompt: str = "",
    ) -> GeneratedChapter:
        system, user = build_chapter_prompts(hero, chapter_number, previous_summary, user_prompt)
        content = self._client.complete(system, user, operation="chapter")
        summary = self._client.complete(
            "You condense fantasy chapters into short synopses.",
            render_prompt("chapter_summary", chapter_content=content),
            model=self._summary_model,
            operation="summary",
        )
        return GeneratedChapter(content=content, summary=summary)
