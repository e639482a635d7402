from fastapi import APIRouter

from credit_engine.api.v1 import credit_configs, credits, health

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(credits.router)
api_router.include_router(credit_configs.router)
api_router.include_router(health.router)
