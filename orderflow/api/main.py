"""
Orderflow API

FastAPI application for placing and advancing orders, plus operator
endpoints for the outbox and its dead letters.

Run:
    uvicorn orderflow.api.main:app --port 8000
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ..core.broker.factory import create_broker
from ..core.database import DatabaseBackend, close_database, ensure_schema, get_database
from ..core.observability import configure_logging, init_metrics, init_tracing
from ..core.outbox.lifecycle import outbox_lifespan
from .middleware import TracingMiddleware, register_error_handlers
from .routers import admin_router, health_router, orders_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        structured=os.getenv("LOG_STRUCTURED", "true").lower() == "true",
        service_name="orderflow-api",
    )
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        init_tracing("orderflow-api", otlp_endpoint=endpoint)
        init_metrics("orderflow-api", otlp_endpoint=endpoint)

    db = await get_database()
    if db.backend == DatabaseBackend.SQLITE:
        # PostgreSQL is migrated by db/migrate.py
        await ensure_schema(db)

    broker = create_broker()
    await broker.connect()
    app.state.broker = broker

    try:
        async with outbox_lifespan(broker, db=db):
            logger.info("Orderflow API started")
            yield
    finally:
        await broker.close()
        await close_database()
        logger.info("Orderflow API stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Orderflow API",
        version=os.getenv("APP_VERSION", "1.0.0"),
        lifespan=lifespan,
    )
    register_error_handlers(app)
    app.add_middleware(TracingMiddleware)

    app.include_router(health_router)
    app.include_router(orders_router)
    app.include_router(admin_router)
    return app


app = create_app()
