from fastapi import APIRouter

from app.api.v1 import (
    generation,
    heroes,
    jobs,
    payments,
    storybooks,
)


api_router = APIRouter(prefix="/v1")

api_router.include_router(heroes.router)
api_router.include_router(storybooks.router)
api_router.include_router(generation.router)
api_router.include_router(payments.router)
api_router.include_router(jobs.router)
