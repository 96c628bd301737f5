"""FastAPI application for the FlowChain approval engine.

``uvicorn flowchain.main:app`` (or ``python run.py``) serves it. Startup
ensures the MongoDB indexes the engine relies on, the unique
active-instance index in particular, and optionally starts the halt sweeper.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pymongo.errors import PyMongoError

from . import __version__
from .api.middleware import CorrelationIdMiddleware, register_error_handlers
from .api.routes import api_router
from .config.settings import settings
from .repositories.mongo_client import close_connection, create_indexes, health_check
from .scheduler.halt_sweeper import get_sweeper, start_sweeper, stop_sweeper
from .utils.logger import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)

API_PREFIX = "/api/v1"


def _ensure_indexes() -> None:
    try:
        create_indexes()
    except PyMongoError as e:
        # The API still serves reads; writes will fail loudly on their own
        logger.error(f"Index creation failed, one-active-instance guarantee is not enforced: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"FlowChain engine {__version__} starting ({settings.environment})")
    _ensure_indexes()
    if settings.enable_halt_sweeper:
        start_sweeper()

    yield

    stop_sweeper()
    close_connection()
    logger.info("FlowChain engine stopped")


def health() -> dict:
    """Liveness plus database reachability; no authentication"""
    mongo = health_check()
    return {
        "status": "healthy" if mongo["status"] == "healthy" else "degraded",
        "version": __version__,
        "environment": settings.environment,
        "mongo": mongo,
        "halt_sweeper": settings.enable_halt_sweeper and get_sweeper().is_running,
        "max_stage_visits": settings.max_stage_visits,
    }


def create_app() -> FastAPI:
    docs = settings.debug
    app = FastAPI(
        title="FlowChain Approval Engine",
        description="Staged, multi-role approval workflows for content assets",
        version=__version__,
        lifespan=lifespan,
        docs_url=f"{API_PREFIX}/docs" if docs else None,
        redoc_url=None,
        openapi_url=f"{API_PREFIX}/openapi.json" if docs else None,
    )

    origins = settings.cors_origins_list
    wildcard = origins == ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        # Browsers reject credentials with a wildcard origin
        allow_credentials=not wildcard,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-Id"],
        expose_headers=["X-Correlation-Id"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    register_error_handlers(app)
    app.include_router(api_router, prefix=API_PREFIX)
    app.add_api_route("/health", health, methods=["GET"], tags=["Health"])
    return app


app = create_app()
