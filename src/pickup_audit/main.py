# src/pickup_audit/main.py
"""Main entry point for the pickup audit service."""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import FastAPI
from sqlalchemy.orm import Session

from pickup_audit.api import AuditRequestMiddleware, system_router
from pickup_audit.core.logging import configure_logging
from pickup_audit.core.settings import Settings, settings
from pickup_audit.repositories.task_repo import TaskRepository
from pickup_audit.services.kafka import KafkaPublisher, Publisher
from pickup_audit.services.pipeline import build_dispatcher, build_processor

logger = logging.getLogger(__name__)


def create_app(
    config: Settings | None = None,
    session_factory: Callable[[], Session] | None = None,
    publisher: Publisher | None = None,
) -> FastAPI:
    """Build the FastAPI application hosting the audit pipeline.

    Args:
        config: Settings to use; defaults to the environment-loaded settings.
        session_factory: Session factory for the task outbox; defaults to the
            configured database.
        publisher: Message-queue publisher; defaults to a Kafka publisher.
    """
    config = config or settings

    app = FastAPI(
        title=config.app_name,
        description="Audit pipeline for pickup-point order tracking",
        version=config.app_version,
    )
    app.add_middleware(AuditRequestMiddleware, methods=config.audited_methods)
    app.include_router(system_router, prefix="/api/v1")

    app.state.audit_dispatcher = None
    app.state.task_processor = None
    app.state.task_repository = None

    @app.on_event("startup")
    async def on_startup() -> None:
        configure_logging(config.log_level)

        factory = session_factory
        if factory is None:
            from pickup_audit.db.session import SessionLocal, create_tables

            if config.auto_create_tables:
                create_tables()
            factory = SessionLocal

        repository = TaskRepository(factory)
        dispatcher = build_dispatcher(config, repository)
        await dispatcher.start()

        processor = None
        if config.task_processor_enabled:
            processor = build_processor(config, repository, publisher)
            await processor.start()

        app.state.task_repository = repository
        app.state.audit_dispatcher = dispatcher
        app.state.task_processor = processor

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        processor = app.state.task_processor
        if processor is not None:
            await processor.stop()
            if isinstance(processor.publisher, KafkaPublisher):
                processor.publisher.close()

        dispatcher = app.state.audit_dispatcher
        if dispatcher is not None:
            await dispatcher.shutdown()

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint to verify the service is running."""
        return {"status": "ok"}

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with basic information about the API."""
        return {
            "name": config.app_name,
            "version": config.app_version,
            "docs": "/docs",
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("pickup_audit.main:app", host="0.0.0.0", port=9000, reload=settings.debug)
