"""
Sleep Olympics API
==================
FastAPI application entry point. Mount routers here.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sleepolympics.config import get_settings
from sleepolympics.dependencies import get_sync_reconciler
from sleepolympics.routers import oura, sleep
from sleepolympics.services.secret_box import get_secret_box

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Fails startup in production when ENCRYPTION_KEY is missing
    get_secret_box()
    yield
    await get_sync_reconciler().wait_for_background()


app = FastAPI(
    title="Sleep Olympics API",
    description="Oura sleep sync and sleep statistics — API Backend",
    version="0.1.0",
    docs_url="/api/docs" if not settings.is_production else None,
    redoc_url="/api/redoc" if not settings.is_production else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(oura.router)
app.include_router(sleep.router)


@app.get("/api/v1/health")
async def health_check() -> dict:
    return {"status": "ok", "service": "sleepolympics-api"}
