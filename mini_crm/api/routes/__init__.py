from fastapi import APIRouter

from . import campaigns, delivery_receipts, health, segments

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(segments.router)
api_router.include_router(campaigns.router)
api_router.include_router(delivery_receipts.router)
