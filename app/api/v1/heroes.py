import uuid

from fastapi import APIRouter, HTTPException

from app.api.deps import DbSessionDep
from app.api.v1.schemas import HeroCreate, HeroRead
from app.db.models import Hero


router = APIRouter(tags=["heroes"])


@router.post("/heroes", response_model=HeroRead, status_code=201)
def create_hero(payload: HeroCreate, db=DbSessionDep):
    hero = Hero(
        name=payload.name,
        western_zodiac=payload.western_zodiac.model_dump(),
        chinese_zodiac=payload.chinese_zodiac.model_dump(),
        backstory=payload.backstory,
    )
    db.add(hero)
    db.commit()
    db.refresh(hero)
    return hero


@router.get("/heroes/{hero_id}", response_model=HeroRead)
def get_hero(hero_id: uuid.UUID, db=DbSessionDep):
    return get_hero_or_404(db, hero_id)


def get_hero_or_404(db, hero_id: uuid.UUID) -> Hero:
    hero = db.get(Hero, hero_id)
    if hero is None:
        raise HTTPException(status_code=404, detail="hero not found")
    return hero
