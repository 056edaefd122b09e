"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from intakeflow.api.webhooks import router as webhooks_router
from intakeflow.api.dead_letters import router as dead_letters_router
from intakeflow.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(webhooks_router)
api_router.include_router(dead_letters_router)
api_router.include_router(health_router)
