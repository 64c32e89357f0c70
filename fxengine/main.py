from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from .core.config import get_settings, Settings
from .core.logging import init_logging, request_context_middleware
from .db.migrate import apply_migrations
from .core import errors
from .routers import migrations, rates
from .services.engine import RateEngine, build_engine

logger = logging.getLogger("fxengine")


def create_app(
    settings_override: Settings | None = None, engine: RateEngine | None = None
) -> FastAPI:
    """Application factory.

    settings_override: pass an already constructed Settings instance for tests
    to isolate environment (e.g., temp DB). Falls back to cached get_settings().
    engine: pre-built services (tests inject fake provider transports here).
    """
    settings = settings_override or get_settings()
    # Initialize logging early
    init_logging(debug=settings.debug)

    # Ensure database schema (idempotent) so test-injected fresh DBs have tables
    try:
        apply_migrations(settings.db_path)  # type: ignore[arg-type]
    except Exception:
        # Failing to init DB is fatal; re-raise after logging
        logger.exception("failed to apply migrations on startup")
        raise

    if engine is None:
        engine = build_engine(settings.engine_config(), settings.db_path)  # type: ignore[arg-type]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.enable_scheduler:
            engine.scheduler.start()
        try:
            yield
        finally:
            engine.scheduler.stop()

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        version=settings.version,
        lifespan=lifespan,
    )
    app.state.engine = engine

    # Middleware (request id / structured logging)
    app.middleware("http")(request_context_middleware)

    # Error handlers
    app.add_exception_handler(StarletteHTTPException, errors.not_found_handler)
    app.add_exception_handler(RequestValidationError, errors.validation_error_handler)
    app.add_exception_handler(errors.RateValidationError, errors.rate_validation_handler)
    app.add_exception_handler(errors.OwnerNotFound, errors.owner_not_found_handler)
    app.add_exception_handler(
        errors.ConfigurationError, errors.configuration_error_handler
    )
    app.add_exception_handler(errors.ProviderError, errors.provider_error_handler)
    app.add_exception_handler(Exception, errors.server_error_handler)

    # Routers
    app.include_router(rates.router)
    app.include_router(migrations.router)

    @app.get("/")
    async def root():
        return {
            "message": settings.app_name,
            "version": settings.version,
            "scheduler_enabled": settings.enable_scheduler,
            "provider_configured": engine.config.has_api_key,
        }

    return app


app = create_app()
