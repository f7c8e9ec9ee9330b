"""
App-level HTTP middleware: request timing and cache/referrer hardening on
OAuth callback responses.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request

logger = logging.getLogger(__name__)

# Callback query strings carry authorization codes and state nonces.
CALLBACK_SUFFIX = "/callback"
CALLBACK_HEADERS = {
    "Cache-Control": "no-store",
    "Pragma": "no-cache",
    "Referrer-Policy": "no-referrer",
}


def register_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def harden_callbacks(request: Request, call_next):
        response = await call_next(request)
        if request.url.path.endswith(CALLBACK_SUFFIX):
            response.headers.update(CALLBACK_HEADERS)
        return response

    @app.middleware("http")
    async def time_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        took_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Process-Time-Ms"] = f"{took_ms:.1f}"
        # Path only; the query may hold a code.
        logger.debug("%s %s -> %d in %.1fms", request.method, request.url.path, response.status_code, took_ms)
        return response
