"""FastAPI application entry point."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from life_planner.api.v1.router import router as v1_router
from life_planner.core.config import Settings, get_settings
from life_planner.core.logging import setup_logging
from life_planner.core.middleware import RequestLoggingMiddleware

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager."""
    logger.info("Starting Life Planner backend API...")
    yield
    registry = getattr(app.state, "calendar_sessions", None)
    if registry is not None:
        await registry.shutdown()
    logger.info("Shutting down Life Planner backend API...")


app = FastAPI(
    title="Life Planner Backend API",
    description="Backend API for Life Planner - Google Calendar authorization, sync and event cache",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(v1_router, prefix="/api/v1")


@app.get("/healthz")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Life Planner Backend API",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/debug")
async def debug_config(settings: Settings = Depends(get_settings)):
    """Which Google credentials are configured (values never echoed)."""
    return {
        "google": settings.credential_report(),
        "redirect_uri": settings.resolve_redirect_uri(),
    }


def run() -> None:
    uvicorn.run(
        "life_planner.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("RELOAD", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
