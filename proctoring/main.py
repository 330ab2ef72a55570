"""
FastAPI application entry point.

Lifespan:
  startup  → (optional) create schema → start the RabbitMQ alert consumer
  shutdown → stop the consumer thread
"""
from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from proctoring.api.routes import Services
from proctoring.config import get_settings
from proctoring.errors import PersistenceError, SessionNotFoundError

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ── Startup ────────────────────────────────────────────────────────────
    services: Services = app.state.services
    settings = services.settings
    logger.info("Proctoring service starting up …")

    if settings.auto_create_schema:
        from proctoring.db.database import create_schema
        create_schema()

    consumer = None
    if settings.messaging_enabled:
        from proctoring.messaging.consumer import AlertConsumer

        consumer = AlertConsumer(services.feed, asyncio.get_running_loop())
        services.feed.attach_consumer(consumer)
        consumer.start()
        logger.info("Started consumer thread: %s", consumer.name)
    app.state.consumer = consumer

    yield

    # ── Shutdown ───────────────────────────────────────────────────────────
    logger.info("Proctoring service shutting down …")
    if consumer is not None:
        consumer.stop()


def create_app(services: Services | None = None) -> FastAPI:
    if services is None:
        settings = get_settings()
        publisher = None
        if settings.messaging_enabled:
            from proctoring.messaging import publisher
        from proctoring.detection.model_detector import ModelDetector
        services = Services.build(settings=settings, publisher=publisher, detector=ModelDetector(settings))

    app = FastAPI(
        title       = "Exam Proctoring Service",
        description = "Proctoring sessions, violations, live monitoring and reports",
        version     = "1.0.0",
        lifespan    = lifespan,
    )
    app.state.services = services

    @app.exception_handler(SessionNotFoundError)
    async def _session_not_found(request: Request, exc: SessionNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def _persistence_failed(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("Request %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Proctoring store unavailable"})

    from proctoring.api.routes import router
    app.include_router(router)

    return app


if __name__ == "__main__":
    uvicorn.run(
        "proctoring.main:create_app",
        factory = True,
        host    = "0.0.0.0",
        port    = get_settings().port,
        reload  = False,
        workers = 1,      # the alert consumer is a thread; more workers duplicate it
    )
