"""HTTP surface for completion callbacks and status polling."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse

from sheetbridge.callback import CallbackHandler
from sheetbridge.version import __version__

logger = logging.getLogger(__name__)


def create_app(handler: CallbackHandler) -> FastAPI:
    """Return the FastAPI application serving ``handler``."""

    app = FastAPI(title="sheetbridge", version=__version__)
    coordinator = handler.coordinator

    @app.get("/", response_class=PlainTextResponse)
    def index() -> str:
        return "sheetbridge callback handler is running."

    @app.post("/callback", response_class=PlainTextResponse)
    async def receive_callback(request: Request, secret: Optional[str] = Query(default=None)) -> str:
        body = await request.body()
        outcome = await run_in_threadpool(handler.handle, secret, body)
        logger.info("Callback processed: %s", outcome.message)
        return outcome.message

    @app.get("/imports/{import_id}/status")
    def import_status(import_id: str) -> dict:
        return coordinator.read(import_id).to_json()

    return app


__all__ = ["create_app"]
