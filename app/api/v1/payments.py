from fastapi import APIRouter

from app.api.deps import EngineDep
from app.api.v1.schemas import PaymentSucceeded, StoryBookDetail
from app.api.v1.storybooks import storybook_detail
from app.core.settings import settings
from app.services.payments import apply_successful_payment


router = APIRouter(tags=["payments"])


@router.post("/payments/succeeded", response_model=StoryBookDetail)
def payment_succeeded(payload: PaymentSucceeded, engine=EngineDep):
    storybook = apply_successful_payment(
        engine,
        payload.hero_id,
        unlock_chapters=payload.unlock_chapters,
        unlock_count=settings.payment_unlock_bundle_size,
        user_prompt=payload.user_prompt,
    )
    return storybook_detail(engine, storybook)
