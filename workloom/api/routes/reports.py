"""Yearly report API routes."""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..deps import get_report_synthesizer, to_http_error

logger = logging.getLogger(__name__)

router = APIRouter(tags=["reports"])


class ManagerNotesRequest(BaseModel):
    notes: str


@router.patch("/reports/{report_id}/manager-notes")
async def update_manager_notes(
    report_id: str,
    body: ManagerNotesRequest,
    reports=Depends(get_report_synthesizer),
):
    try:
        return reports.update_manager_notes(report_id, body.notes)
    except Exception as e:
        raise to_http_error(e)


@router.post("/reports/{report_id}/finalize")
async def finalize_report(report_id: str, reports=Depends(get_report_synthesizer)):
    try:
        return reports.finalize(report_id)
    except Exception as e:
        raise to_http_error(e)
