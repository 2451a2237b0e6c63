"""Yearly report synthesis: metrics + AI stages -> YearlyReport row.

Stats are computed from the persisted work units and stage-1 reviews so
partial AI coverage is visible in the final report. When stage 4 is
missing or failed, the narrative falls back to stage 3 / stage 2 content
and finally to a metrics-only summary.
"""

import logging
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..db import DatabaseManager
from ..db.models import AiReview, AnalysisRun, WorkUnit, YearlyReport, utcnow
from ..db.serializers import report_to_dict, review_to_dict, unit_to_dict
from ..errors import RunNotFoundError, RunStateError

logger = logging.getLogger(__name__)

TOP_REPOS_LIMIT = 5

# Stage-4 area weights for the overall score
AREA_WEIGHTS = {
    "productivity": 0.25,
    "code_quality": 0.30,
    "diversity": 0.15,
    "collaboration": 0.15,
    "growth": 0.15,
}

# (minimum score, grade, label), highest first
GRADE_BANDS = (
    (9.0, "S", "outstanding"),
    (8.0, "A", "excellent"),
    (7.0, "B", "good"),
    (6.0, "C", "fair"),
    (5.0, "D", "below expectations"),
)
LOWEST_GRADE = ("F", "needs improvement")


def calculate_overall_score(assessment: Optional[Dict[str, Any]]) -> Optional[float]:
    """Weighted mean of the stage-4 area scores (1-10), one decimal.

    Returns None when no area carries a score.
    """
    if not assessment:
        return None
    total, weight_sum = 0.0, 0.0
    for area, weight in AREA_WEIGHTS.items():
        score = (assessment.get(area) or {}).get("score")
        if isinstance(score, (int, float)):
            total += score * weight
            weight_sum += weight
    if weight_sum == 0:
        return None
    return round(total / weight_sum, 1)


def get_grade(score: Optional[float]) -> Optional[Dict[str, str]]:
    if score is None:
        return None
    for minimum, grade, label in GRADE_BANDS:
        if score >= minimum:
            return {"grade": grade, "label": label}
    return {"grade": LOWEST_GRADE[0], "label": LOWEST_GRADE[1]}


def failed_repos_from_progress(progress: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Failed repositories recorded in a run's progress document."""
    if not isinstance(progress, dict):
        return []
    return [
        {"repo": rp.get("repoName"), "phase": rp.get("failedPhase"), "error": rp.get("error")}
        for rp in progress.get("repoProgress") or []
        if isinstance(rp, dict) and rp.get("status") == "failed"
    ]


def compute_report_stats(
    metrics: Optional[Dict[str, Any]],
    units: List[Dict[str, Any]],
    stage1_reviews: List[Dict[str, Any]],
    failed_repos: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Aggregate report stats from unit dicts and stage-1 review dicts.

    ``failed_repos`` lists repositories that produced no data so the
    report shows which part of the year is missing.
    """
    metrics = metrics or {}
    scores = [u["impact_score"] for u in units if u.get("impact_score") is not None]

    per_repo: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"units": 0, "commits": 0, "impact": 0.0})
    for u in units:
        row = per_repo[u["repo_name"]]
        row["units"] += 1
        row["commits"] += u.get("commit_count") or 0
        row["impact"] += u.get("impact_score") or 0.0
    top_repos = sorted(
        (
            {
                "repo": repo,
                "units": row["units"],
                "commits": row["commits"],
                "avg_impact": round(row["impact"] / row["units"], 2) if row["units"] else 0.0,
            }
            for repo, row in per_repo.items()
        ),
        key=lambda r: (-r["commits"], r["repo"]),
    )[:TOP_REPOS_LIMIT]

    sampled = [u for u in units if u.get("is_sampled")]
    reviewed = [r for r in stage1_reviews if r.get("status") == "done"]
    failed = [r for r in stage1_reviews if r.get("status") == "failed"]
    quality_scores = [
        r["result"]["code_quality"]["score"]
        for r in reviewed
        if r.get("result") and r["result"].get("code_quality")
    ]

    return {
        "total_commits": sum(u.get("commit_count") or 0 for u in units),
        "total_work_units": len(units),
        "total_additions": sum(u.get("additions") or 0 for u in units),
        "total_deletions": sum(u.get("deletions") or 0 for u in units),
        "avg_impact_score": round(sum(scores) / len(scores), 2) if scores else 0.0,
        "max_impact_score": max(scores) if scores else 0.0,
        "top_repos": top_repos,
        "work_type_distribution": dict(sorted(Counter(u["work_type"] for u in units).items())),
        "monthly_activity": metrics.get("monthly_activity", []),
        "ai_coverage": {
            "sampled_units": len(sampled),
            "reviewed_units": len(reviewed),
            "failed_units": len(failed),
            "coverage_pct": round(len(reviewed) / len(sampled) * 100, 1) if sampled else 0.0,
            "avg_code_quality": round(sum(quality_scores) / len(quality_scores), 2) if quality_scores else None,
        },
        "failed_repos": list(failed_repos or []),
    }


def build_narrative(
    metrics: Optional[Dict[str, Any]],
    stage2: Optional[Dict[str, Any]],
    stage3: Optional[Dict[str, Any]],
    stage4: Optional[Dict[str, Any]],
    stats: Dict[str, Any],
) -> Dict[str, Any]:
    """Pick report narrative fields from the best available stage."""
    metrics = metrics or {}
    productivity = metrics.get("productivity", {})

    summary = (stage4 or {}).get("executive_summary") or ""
    if not summary:
        style = ((stage2 or {}).get("work_style") or {}).get("description", "")
        summary = (
            f"{productivity.get('total_commits', stats['total_commits'])} commits across "
            f"{stats['total_work_units']} work units, average impact {stats['avg_impact_score']}."
        )
        if style:
            summary = f"{summary} {style}"

    strengths = (stage4 or {}).get("top_achievements") or (stage3 or {}).get("strengths") or []
    improvements = (stage4 or {}).get("key_improvements") or [
        a["area"] for a in (stage3 or {}).get("areas_for_improvement", [])
    ]
    action_items = (stage4 or {}).get("action_items") or []
    assessment = (stage4 or {}).get("overall_assessment")
    overall_score = calculate_overall_score(assessment)
    grade = get_grade(overall_score)

    return {
        "summary": summary,
        "strengths": list(strengths),
        "improvements": list(improvements),
        "action_items": list(action_items),
        "overall_assessment": assessment,
        "overall_score": overall_score,
        "grade": grade["grade"] if grade else None,
    }


class ReportSynthesizer:
    """Persist and mutate YearlyReport rows.

    Public API:
        synthesize(run_id, interim=False) -> report dict
        get_report(run_id) -> report dict
        update_manager_notes(report_id, notes) -> report dict
        finalize(report_id) -> report dict
    """

    def __init__(self, db_manager: DatabaseManager):
        self._db = db_manager

    def synthesize(self, run_id: str, interim: bool = False) -> Dict[str, Any]:
        """Build or rebuild the report for a run.

        A finalized report is never overwritten.
        """
        rid = UUID(str(run_id))
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, rid)
            if run is None:
                raise RunNotFoundError(f"Analysis run {run_id} not found")

            existing = session.query(YearlyReport).filter(YearlyReport.run_id == rid).first()
            if existing is not None and existing.is_finalized:
                logger.warning(f"Report for run {run_id} is finalized, leaving it untouched")
                return report_to_dict(existing)

            units = [
                unit_to_dict(u)
                for u in session.query(WorkUnit).filter(WorkUnit.run_id == rid).all()
            ]
            reviews = session.query(AiReview).filter(AiReview.run_id == rid).all()
            stage1 = [review_to_dict(r) for r in reviews if r.stage == 1]
            by_stage = {
                r.stage: r.result for r in reviews
                if r.stage in (2, 3, 4) and r.status == "done"
            }

            stats = compute_report_stats(
                run.metrics, units, stage1, failed_repos_from_progress(run.progress)
            )
            if interim:
                narrative = build_narrative(run.metrics, None, None, None, stats)
            else:
                narrative = build_narrative(
                    run.metrics, by_stage.get(2), by_stage.get(3), by_stage.get(4), stats
                )

            report = existing or YearlyReport(run_id=rid, user_login=run.user_login, year=run.year)
            report.metrics = run.metrics
            report.stats = stats
            report.summary = narrative["summary"]
            report.strengths = narrative["strengths"]
            report.improvements = narrative["improvements"]
            report.action_items = narrative["action_items"]
            report.overall_assessment = narrative["overall_assessment"]
            report.overall_score = narrative["overall_score"]
            report.grade = narrative["grade"]
            report.is_interim = interim
            if existing is None:
                session.add(report)
            session.flush()
            result = report_to_dict(report)

        logger.info(f"{'Interim' if interim else 'Final'} report synthesized for run {run_id}")
        return result

    def get_report(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._db.get_session() as session:
            report = session.query(YearlyReport).filter(
                YearlyReport.run_id == UUID(str(run_id))
            ).first()
            return report_to_dict(report) if report else None

    def _get_by_id(self, session, report_id: str) -> YearlyReport:
        report = session.get(YearlyReport, UUID(str(report_id)))
        if report is None:
            raise RunNotFoundError(f"Report {report_id} not found")
        return report

    def update_manager_notes(self, report_id: str, notes: str) -> Dict[str, Any]:
        with self._db.get_session() as session:
            report = self._get_by_id(session, report_id)
            if report.is_finalized:
                raise RunStateError("Report is finalized")
            report.manager_notes = notes
            session.flush()
            return report_to_dict(report)

    def finalize(self, report_id: str) -> Dict[str, Any]:
        with self._db.get_session() as session:
            report = self._get_by_id(session, report_id)
            if report.is_interim:
                raise RunStateError("Interim reports cannot be finalized")
            if not report.is_finalized:
                report.is_finalized = True
                report.finalized_at = utcnow()
                session.flush()
                logger.info(f"Report {report_id} finalized")
            return report_to_dict(report)
