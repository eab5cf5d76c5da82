import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class ZodiacDescriptor(BaseModel):
    sign: str = Field(min_length=1, max_length=64)
    element: str = Field(default="", max_length=64)
    traits: list[str] = Field(default_factory=list)


class HeroCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    western_zodiac: ZodiacDescriptor
    chinese_zodiac: ZodiacDescriptor
    backstory: str = ""


class HeroRead(BaseModel):
    hero_id: uuid.UUID
    name: str
    western_zodiac: dict
    chinese_zodiac: dict
    backstory: str

    model_config = {"from_attributes": True}


class StoryBookCreate(BaseModel):
    is_premium: bool = False
    user_prompt: str = Field(default="", max_length=2000)


class StoryBookRead(BaseModel):
    storybook_id: uuid.UUID
    hero_id: uuid.UUID
    is_premium: bool
    chapters_total_count: int
    chapters_unlocked_count: int
    initial_chapter_generated_at: datetime | None = None
    has_provider_quota_error: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None
    next_unlock_at: datetime | None = None

    model_config = {"from_attributes": True}


class ChapterRead(BaseModel):
    chapter_id: uuid.UUID
    chapter_number: int
    content: str
    summary: str
    is_unlocked: bool
    generated_at: datetime | None = None
    error_type: str | None = None

    model_config = {"from_attributes": True}


class StoryBookDetail(BaseModel):
    storybook: StoryBookRead
    chapters: list[ChapterRead]


class UnlockRequest(BaseModel):
    """Omitting ``count`` unlocks the default bundle size."""

    count: int | None = None


class RegenerateChapterRequest(BaseModel):
    user_prompt: str = Field(default="", max_length=2000)


class QuotaStatusRead(BaseModel):
    is_quota_exceeded: bool
    message: str
    exceeded_at: datetime | None = None
    retry_after: datetime | None = None


class PaymentSucceeded(BaseModel):
    hero_id: uuid.UUID
    payment_id: str | None = None
    unlock_chapters: bool = False
    user_prompt: str = Field(default="", max_length=2000)


class JobStatusRead(BaseModel):
    job_id: uuid.UUID
    job_type: str
    status: str
    created_at: str
    updated_at: str
    result: dict | None = None
    error: str | None = None
