"""Analysis run API routes."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ...core.constants import RestartMode
from ..deps import get_optional_user, get_orchestrator, to_http_error

logger = logging.getLogger(__name__)

router = APIRouter(tags=["analysis"])


class CreateRunRequest(BaseModel):
    org: str = Field(..., min_length=1)
    user: str = Field(..., min_length=1)
    year: int
    options: Dict[str, Any] = Field(default_factory=dict)
    start: bool = False


class RetryRequest(BaseModel):
    mode: RestartMode = RestartMode.RESUME


@router.post("/analysis", status_code=201)
async def create_run(
    body: CreateRunRequest,
    user: Optional[dict] = Depends(get_optional_user),
    orchestrator=Depends(get_orchestrator),
):
    try:
        run = orchestrator.create_run(body.org, body.user, body.year, body.options)
        if body.start:
            run = orchestrator.start(run["run_id"])
    except Exception as e:
        raise to_http_error(e)

    requested_by = user["username"] if user else "anonymous"
    logger.info(f"Analysis run {run['run_id']} created by {requested_by}")
    return run


@router.post("/analysis/{run_id}/start", status_code=202)
async def start_run(run_id: str, orchestrator=Depends(get_orchestrator)):
    try:
        return orchestrator.start(run_id)
    except Exception as e:
        raise to_http_error(e)


@router.post("/analysis/{run_id}/pause")
async def pause_run(run_id: str, orchestrator=Depends(get_orchestrator)):
    try:
        return orchestrator.pause(run_id)
    except Exception as e:
        raise to_http_error(e)


@router.post("/analysis/{run_id}/cancel")
async def cancel_run(run_id: str, orchestrator=Depends(get_orchestrator)):
    try:
        return orchestrator.cancel(run_id)
    except Exception as e:
        raise to_http_error(e)


@router.post("/analysis/{run_id}/retry", status_code=202)
async def retry_run(
    run_id: str,
    body: Optional[RetryRequest] = None,
    orchestrator=Depends(get_orchestrator),
):
    mode = body.mode if body else RestartMode.RESUME
    try:
        return orchestrator.retry(run_id, mode)
    except Exception as e:
        raise to_http_error(e)


@router.delete("/analysis/{run_id}", status_code=204)
async def delete_run(run_id: str, orchestrator=Depends(get_orchestrator)):
    try:
        orchestrator.delete(run_id)
    except Exception as e:
        raise to_http_error(e)


@router.get("/analysis/{run_id}/status")
async def get_status(run_id: str, orchestrator=Depends(get_orchestrator)):
    try:
        return orchestrator.get_status(run_id)
    except Exception as e:
        raise to_http_error(e)


@router.get("/analysis/{run_id}/work-units")
async def get_work_units(
    run_id: str,
    sampled_only: bool = False,
    orchestrator=Depends(get_orchestrator),
):
    try:
        units = orchestrator.list_units(run_id)
    except Exception as e:
        raise to_http_error(e)

    if sampled_only:
        units = [u for u in units if u["is_sampled"]]
    return {"work_units": units, "count": len(units)}


@router.get("/analysis/{run_id}/reviews")
async def get_reviews(
    run_id: str,
    stage: Optional[int] = None,
    orchestrator=Depends(get_orchestrator),
):
    try:
        reviews = orchestrator.get_reviews(run_id, stage)
    except Exception as e:
        raise to_http_error(e)
    return {"reviews": reviews, "count": len(reviews)}


@router.get("/analysis/{run_id}/report")
async def get_report(run_id: str, orchestrator=Depends(get_orchestrator)):
    try:
        report = orchestrator.get_report(run_id)
    except Exception as e:
        raise to_http_error(e)
    if report is None:
        raise HTTPException(status_code=404, detail="Report not generated yet")
    return report


@router.post("/analysis/{run_id}/interim-report")
async def build_interim_report(run_id: str, orchestrator=Depends(get_orchestrator)):
    try:
        return orchestrator.build_interim_report(run_id)
    except Exception as e:
        raise to_http_error(e)
