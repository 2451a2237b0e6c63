"""ORM row -> plain dict conversion for API responses and prompts."""

from typing import Any, Dict

from .models import AiReview, AnalysisRun, WorkUnit, WorkUnitCommit, YearlyReport


def _iso(value):
    return value.isoformat() if value else None


def commit_to_dict(c: WorkUnitCommit) -> Dict[str, Any]:
    return {
        "sha": c.sha,
        "repo_name": c.repo_name,
        "committed_at": _iso(c.committed_at),
        "message": c.message or "",
        "additions": c.additions,
        "deletions": c.deletions,
        "files": c.files or [],
    }


def unit_to_dict(unit: WorkUnit, include_commits: bool = False) -> Dict[str, Any]:
    data = {
        "unit_id": str(unit.unit_id),
        "run_id": str(unit.run_id),
        "repo_name": unit.repo_name,
        "user_login": unit.user_login,
        "sequence": unit.sequence,
        "start_at": _iso(unit.start_at),
        "end_at": _iso(unit.end_at),
        "work_type": unit.work_type,
        "commit_count": unit.commit_count,
        "additions": unit.additions,
        "deletions": unit.deletions,
        "primary_paths": unit.primary_paths or [],
        "impact_score": unit.impact_score,
        "impact_factors": unit.impact_factors,
        "is_sampled": unit.is_sampled,
        "is_special_case": unit.is_special_case,
        "special_case_kind": unit.special_case_kind,
        "title": unit.title,
        "summary": unit.summary,
    }
    if include_commits:
        data["commits"] = [commit_to_dict(c) for c in unit.commits]
    return data


def review_to_dict(review: AiReview) -> Dict[str, Any]:
    return {
        "review_id": str(review.review_id),
        "run_id": str(review.run_id),
        "unit_id": str(review.unit_id) if review.unit_id else None,
        "stage": review.stage,
        "status": review.status,
        "result": review.result,
        "error": review.error,
        "attempts": review.attempts,
        "model": review.model,
        "prompt_version": review.prompt_version,
        "updated_at": _iso(review.updated_at),
    }


def report_to_dict(report: YearlyReport) -> Dict[str, Any]:
    return {
        "report_id": str(report.report_id),
        "run_id": str(report.run_id),
        "user_login": report.user_login,
        "year": report.year,
        "metrics": report.metrics,
        "stats": report.stats,
        "summary": report.summary,
        "strengths": report.strengths or [],
        "improvements": report.improvements or [],
        "action_items": report.action_items or [],
        "overall_assessment": report.overall_assessment,
        "overall_score": report.overall_score,
        "grade": report.grade,
        "manager_notes": report.manager_notes,
        "is_interim": report.is_interim,
        "is_finalized": report.is_finalized,
        "finalized_at": _iso(report.finalized_at),
        "created_at": _iso(report.created_at),
        "updated_at": _iso(report.updated_at),
    }


def run_to_dict(run: AnalysisRun) -> Dict[str, Any]:
    return {
        "run_id": str(run.run_id),
        "org_login": run.org_login,
        "user_login": run.user_login,
        "year": run.year,
        "status": run.status,
        "phase": run.phase,
        "error": run.error,
        "options": run.options or {},
        "prompt_version": run.prompt_version,
        "created_at": _iso(run.created_at),
        "started_at": _iso(run.started_at),
        "updated_at": _iso(run.updated_at),
        "completed_at": _iso(run.completed_at),
    }
