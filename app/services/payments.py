"""Storybook side of a confirmed payment.

Payment capture and webhook verification happen upstream; by the time this
runs the payment is known to have succeeded.
"""

from __future__ import annotations

import logging
import uuid

from app.db.models import StoryBook
from app.services.storybook_engine import StoryBookEngine

logger = logging.getLogger(__name__)


def apply_successful_payment(
    engine: StoryBookEngine,
    hero_id: uuid.UUID,
    *,
    unlock_chapters: bool = False,
    unlock_count: int = 3,
    user_prompt: str = "",
) -> StoryBook:
    """Make the hero's storybook premium and optionally pull chapters forward.

    Creates the storybook as premium when the hero has none; an existing
    free storybook is upgraded in place.
    """
    storybook = engine.get_or_create_storybook(hero_id, True, user_prompt)
    if not storybook.is_premium:
        storybook = engine.upgrade_to_premium(storybook.storybook_id)
    logger.info(
        "payment_applied",
        extra={"hero_id": str(hero_id), "storybook_id": str(storybook.storybook_id)},
    )
    if unlock_chapters:
        storybook = engine.unlock_chapters(storybook.storybook_id, unlock_count)
    return storybook
