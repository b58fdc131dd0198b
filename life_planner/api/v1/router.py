"""API router aggregating all v1 routes."""

from __future__ import annotations

from fastapi import APIRouter

from .calendars import router as calendars_router

router = APIRouter()

router.include_router(calendars_router, tags=["calendars"])
