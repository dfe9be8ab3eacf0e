"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.scriber.api.v1 import health, meetings, progress, uploads

router = APIRouter()

router.include_router(health.router)

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(meetings.router)
api_router.include_router(meetings.files_router)
api_router.include_router(uploads.router)
api_router.include_router(progress.router)

router.include_router(api_router)
