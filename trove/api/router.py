from fastapi import APIRouter

from trove.api.routes import admin, health, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["ingestion"])
api_router.include_router(admin.router, prefix="/admin", tags=["operator"])
