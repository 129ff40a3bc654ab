"""
Helpdesk Sync - Main FastAPI Application

This is the entry point for the FastAPI application.
It configures middleware, routes, and lifecycle handlers.
"""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config.settings import settings
from .api.routes import api_router
from .api.middleware import CorrelationIdMiddleware, register_error_handlers
from .services.workspace_service import WorkspaceManager
from .utils.logger import setup_logging, get_logger

# Setup logging first
setup_logging()
logger = get_logger(__name__)


# =============================================================================
# Application Lifecycle
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
        - Creates the workspace manager and its change-stream transport
          (unless one was injected)

    Shutdown:
        - Closes every agent workspace (subscriptions, fallback schedulers,
          inline blobs) and the transport
    """
    logger.info("Starting Helpdesk Sync...")
    if getattr(app.state, "workspaces", None) is None:
        app.state.workspaces = WorkspaceManager()
    logger.info("Application started successfully")

    yield

    logger.info("Shutting down...")
    await app.state.workspaces.aclose()
    logger.info("Application shutdown complete")


# =============================================================================
# Application Factory
# =============================================================================

def create_app(manager: Optional[WorkspaceManager] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        manager: Workspace manager to serve; created at startup when omitted

    Returns:
        Configured FastAPI application instance
    """
    application = FastAPI(
        title="Helpdesk Sync",
        description="Realtime ticket and conversation synchronization for helpdesk agents",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
    )
    application.state.workspaces = manager

    # Register middleware
    _configure_middleware(application)

    # Register error handlers
    register_error_handlers(application)

    # Register routes
    application.include_router(api_router, prefix="/api")

    return application


def _configure_middleware(app: FastAPI) -> None:
    """Configure application middleware."""
    # If cors_origins is "*", allow all origins
    # Note: allow_credentials must be False when allowing all origins
    allow_all = settings.cors_origins.strip() == "*"

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_origins_list,
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id"],
    )

    # Correlation ID middleware
    app.add_middleware(CorrelationIdMiddleware)


# =============================================================================
# Application Instance
# =============================================================================

app = create_app()
