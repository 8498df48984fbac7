from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api import router
from logging_config import configure_logging
from services.poller import build_default_poller


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    poller = build_default_poller()
    poller.start()
    try:
        yield
    finally:
        await poller.stop()
        build_default_poller.cache_clear()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Mobile Alerts Poller",
        description="Polls sensor overview pages and mirrors the readings into a state tree.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app

app = create_app()
