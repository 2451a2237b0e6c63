"""FastAPI dependencies for WorkLoom.

Provides shared dependencies (orchestrator, report service, session user)
via FastAPI's Depends() injection system, plus the error mapping used
by every route.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request

from ..core.errors import RunNotFoundError, RunStateError, ValidationError, WorkloomError

logger = logging.getLogger(__name__)


async def get_orchestrator(request: Request):
    """Get AnalysisOrchestrator from app state."""
    orchestrator = request.app.state.orchestrator
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Analysis service not available")
    return orchestrator


async def get_report_synthesizer(request: Request):
    """Get or create ReportSynthesizer from app state."""
    if not hasattr(request.app.state, 'report_synthesizer') or \
       request.app.state.report_synthesizer is None:
        from workloom.core.report import ReportSynthesizer
        request.app.state.report_synthesizer = ReportSynthesizer(request.app.state.db_manager)
    return request.app.state.report_synthesizer


async def get_optional_user(request: Request) -> Optional[dict]:
    """Session user set by the host application, or None."""
    session = request.session
    user_id = session.get("user_id")
    if not user_id:
        return None
    return {"user_id": user_id, "username": session.get("username"), "roles": session.get("roles", [])}


def to_http_error(e: Exception) -> HTTPException:
    """Map pipeline errors to HTTP status codes."""
    if isinstance(e, RunNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, RunStateError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (ValidationError, ValueError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, WorkloomError):
        return HTTPException(status_code=500, detail=str(e))
    logger.error(f"Unhandled API error: {e}", exc_info=True)
    return HTTPException(status_code=500, detail="Internal server error")
