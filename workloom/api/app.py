"""FastAPI application factory for WorkLoom.

Creates and configures the FastAPI app with CORS, sessions,
and all route modules registered.
"""

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware

logger = logging.getLogger(__name__)


def create_app(db_manager, orchestrator, worker=None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        db_manager: DatabaseManager instance
        orchestrator: AnalysisOrchestrator instance
        worker: AnalysisWorker instance (optional)

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="WorkLoom API",
        description="Yearly developer performance analysis",
        version="0.1.0",
    )

    # Sessions are issued by the host application; we only read them
    secret_key = os.getenv("WORKLOOM_SECRET_KEY", "workloom-dev-secret-change-me")
    app.add_middleware(SessionMiddleware, secret_key=secret_key)

    # CORS for the dashboard dev server
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Store shared dependencies on app state
    app.state.db_manager = db_manager
    app.state.orchestrator = orchestrator
    app.state.worker = worker

    # Register routers
    from .routes.analysis import router as analysis_router
    from .routes.reports import router as reports_router

    app.include_router(analysis_router, prefix="/api")
    app.include_router(reports_router, prefix="/api")

    @app.get("/api/health")
    async def health_check():
        return {
            "status": "ok",
            "service": "workloom",
            "database": "ok" if db_manager.ping() else "unavailable",
        }

    logger.info("FastAPI app created with all routes registered")
    return app
