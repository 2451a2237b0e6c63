"""Staged AI review engine.

Stage 0  sampling decision record (no LLM call)
Stage 1  per-sampled-unit code review, bounded worker pool, per-unit retry
Stage 2  aggregate work-pattern analysis over successful stage-1 results
Stage 3  growth synthesis built on stage 2
Stage 4  executive synthesis of all prior stages

Stage 2 starts only after every stage-1 call has been attempted. Each
stage's row is upserted on (run_id, stage, unit_id), so any stage can be
redone without touching its siblings.

Only the LLM calls run on pool threads; every DB read and write happens
on the calling thread.
"""

import json
import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

import backoff
from llama_index.core import Settings

from ..analysis.diff_fetcher import DiffFetcher
from ..constants import PROMPT_VERSION
from ..db import DatabaseManager
from ..db.models import AiReview, AnalysisRun, WorkUnit
from ..db.serializers import review_to_dict, unit_to_dict
from ..errors import RunNotFoundError
from ..gateway import LLMGateway, current_model_name
from ..report.synthesizer import compute_report_stats, failed_repos_from_progress
from . import prompts
from .models import ReviewParseError, normalize

logger = logging.getLogger(__name__)

STATUS_DONE = "done"
STATUS_FAILED = "failed"

# Defaults; overridden by ReviewSettings
DEFAULT_CONCURRENCY = 5
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_BACKOFF_SECONDS = 2.0
DEFAULT_MAX_DIFF_CHARS = 40_000


def parse_json_output(raw: str) -> Dict[str, Any]:
    """Parse JSON from LLM output, stripping markdown fences.

    Raises:
        ReviewParseError: when no JSON object can be recovered
    """
    cleaned = raw or ""
    if "```json" in cleaned:
        cleaned = cleaned.split("```json", 1)[1]
    elif cleaned.strip().startswith("```"):
        cleaned = cleaned.strip()[3:]
    if "```" in cleaned:
        cleaned = cleaned.split("```", 1)[0]
    cleaned = cleaned.strip()

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start >= 0 and end > start:
            try:
                return json.loads(cleaned[start:end + 1])
            except json.JSONDecodeError:
                pass
        raise ReviewParseError(f"Could not parse LLM output as JSON: {e}") from e


class ReviewEngine:
    """Run and persist the staged AI review for an analysis run.

    Args:
        db_manager: DatabaseManager instance
        diff_fetcher: DiffFetcher used to read cached diffs for stage 1
        llm: completion object with ``complete(prompt)``; defaults to Settings.llm
        concurrency: stage-1 worker pool size
        max_attempts: attempts per LLM call before the item is marked failed
        base_backoff_seconds: exponential backoff factor between attempts (0 disables waiting)
        max_diff_chars: diff budget per stage-1 prompt
        team_standards: organization standards injected into stage 1
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        diff_fetcher: Optional[DiffFetcher] = None,
        llm: Any = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_backoff_seconds: float = DEFAULT_BASE_BACKOFF_SECONDS,
        max_diff_chars: int = DEFAULT_MAX_DIFF_CHARS,
        team_standards: str = "",
    ):
        self._db = db_manager
        self._diffs = diff_fetcher
        self._llm = llm
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.base_backoff_seconds = base_backoff_seconds
        self.max_diff_chars = max_diff_chars
        self.team_standards = team_standards

    @property
    def llm(self):
        return self._llm if self._llm is not None else Settings.llm

    # ── LLM call with retry ────────────────────────────────────────────

    def _complete_json(self, stage: int, prompt: str) -> Tuple[Dict[str, Any], int]:
        """Call the LLM and parse/normalize the result, retrying on any error.

        A wrapping LLMGateway is told not to retry on its own, so one
        review call makes at most ``max_attempts`` provider calls.

        Returns:
            (normalized result, attempts used)
        Raises:
            The last error once max_attempts is exhausted.
        """
        attempts = [0]

        def _log_backoff(details: dict):
            logger.warning(
                f"Stage {stage} attempt {details['tries']}/{self.max_attempts} failed, "
                f"retrying in {details['wait']:.1f}s: {details.get('exception')}"
            )

        @backoff.on_exception(
            backoff.expo,
            Exception,
            max_tries=self.max_attempts,
            on_backoff=_log_backoff,
            factor=self.base_backoff_seconds,
        )
        def _do_call():
            attempts[0] += 1
            llm = self.llm
            if isinstance(llm, LLMGateway):
                response = llm.complete(prompt, gateway_purpose=f"stage{stage}", gateway_retry=False)
            else:
                response = llm.complete(prompt)
            return normalize(stage, parse_json_output(response.text))

        return _do_call(), attempts[0]

    # ── Persistence ────────────────────────────────────────────────────

    def _upsert_review(
        self,
        session,
        run_id: UUID,
        stage: int,
        unit_id: Optional[UUID],
        status: str,
        result: Optional[Dict[str, Any]],
        error: Optional[str],
        attempts: int,
    ) -> AiReview:
        query = session.query(AiReview).filter(AiReview.run_id == run_id, AiReview.stage == stage)
        if unit_id is None:
            query = query.filter(AiReview.unit_id.is_(None))
        else:
            query = query.filter(AiReview.unit_id == unit_id)
        review = query.first()
        if review is None:
            review = AiReview(run_id=run_id, stage=stage, unit_id=unit_id)
            session.add(review)
        review.status = status
        review.result = result
        review.error = error
        review.attempts = attempts
        review.model = current_model_name(self._llm) if self._llm is not None else None
        review.prompt_version = PROMPT_VERSION
        session.flush()
        return review

    def get_reviews(self, run_id: str, stage: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._db.get_session() as session:
            query = session.query(AiReview).filter(AiReview.run_id == UUID(str(run_id)))
            if stage is not None:
                query = query.filter(AiReview.stage == stage)
            rows = query.order_by(AiReview.stage, AiReview.created_at).all()
            return [review_to_dict(r) for r in rows]

    # ── Stage 0 ────────────────────────────────────────────────────────

    def record_sampling(self, run_id: str, sampling: Dict[str, Any]) -> Dict[str, Any]:
        """Persist the sampling decision as the stage-0 review."""
        with self._db.get_session() as session:
            review = self._upsert_review(
                session, UUID(str(run_id)), 0, None, STATUS_DONE, sampling, None, 0
            )
            return review_to_dict(review)

    # ── Stage 1 ────────────────────────────────────────────────────────

    def _pending_stage1_units(self, rid: UUID, retry_failed: bool) -> List[Dict[str, Any]]:
        with self._db.get_session() as session:
            units = session.query(WorkUnit).filter(
                WorkUnit.run_id == rid, WorkUnit.is_sampled.is_(True),
            ).order_by(WorkUnit.impact_score.desc(), WorkUnit.start_at).all()
            existing = {
                r.unit_id: r.status
                for r in session.query(AiReview).filter(AiReview.run_id == rid, AiReview.stage == 1).all()
            }
            pending = []
            for unit in units:
                status = existing.get(unit.unit_id)
                if status == STATUS_DONE:
                    continue
                if status == STATUS_FAILED and not retry_failed:
                    continue
                pending.append(unit_to_dict(unit, include_commits=True))
            return pending

    def _build_stage1_prompt(self, unit: Dict[str, Any]) -> str:
        diff_text, is_partial = "", True
        if self._diffs is not None:
            shas = [c["sha"] for c in unit["commits"]]
            diff = self._diffs.get_unit_diff_text(unit["repo_name"], shas, self.max_diff_chars)
            diff_text, is_partial = diff["diff_text"], diff["is_partial"]
        return prompts.build_code_review_prompt(unit, diff_text, is_partial, self.team_standards)

    def _review_unit(self, unit_id: str, prompt: str) -> Dict[str, Any]:
        """Pool task: LLM only, no DB access."""
        try:
            result, attempts = self._complete_json(1, prompt)
            return {"unit_id": unit_id, "status": STATUS_DONE, "result": result,
                    "error": None, "attempts": attempts}
        except Exception as e:
            return {"unit_id": unit_id, "status": STATUS_FAILED, "result": None,
                    "error": str(e), "attempts": self.max_attempts}

    def _store_unit_review(self, rid: UUID, outcome: Dict[str, Any]):
        uid = UUID(outcome["unit_id"])
        with self._db.get_session() as session:
            self._upsert_review(
                session, rid, 1, uid, outcome["status"], outcome["result"],
                outcome["error"], outcome["attempts"],
            )
            if outcome["status"] == STATUS_DONE and outcome["result"].get("summary"):
                unit = session.get(WorkUnit, uid)
                if unit is not None:
                    unit.summary = outcome["result"]["summary"]

    def run_stage1(
        self,
        run_id: str,
        retry_failed: bool = False,
        should_stop: Optional[Callable[[], bool]] = None,
        on_progress: Optional[Callable[[str, str], None]] = None,
    ) -> Dict[str, Any]:
        """Review every sampled unit that has no stage-1 result yet.

        Units are fed to a fixed-size pool; should_stop() is checked before
        each unit is submitted. A unit that exhausts its retries is stored
        as failed and does not affect the others.

        Returns:
            Dict with total/completed/failed counts and ``stopped``
        """
        rid = UUID(str(run_id))
        queue = self._pending_stage1_units(rid, retry_failed)
        summary = {"total": len(queue), "completed": 0, "failed": 0, "stopped": False}
        if not queue:
            return summary

        logger.info(f"Stage 1: reviewing {len(queue)} units for run {run_id} "
                    f"(concurrency={self.concurrency})")

        in_flight: Dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="stage1") as pool:
            while queue or in_flight:
                while queue and len(in_flight) < self.concurrency:
                    if should_stop and should_stop():
                        summary["stopped"] = True
                        queue.clear()
                        break
                    unit = queue.pop(0)
                    prompt = self._build_stage1_prompt(unit)
                    in_flight[pool.submit(self._review_unit, unit["unit_id"], prompt)] = unit["unit_id"]

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    in_flight.pop(future)
                    outcome = future.result()
                    self._store_unit_review(rid, outcome)
                    if outcome["status"] == STATUS_DONE:
                        summary["completed"] += 1
                    else:
                        summary["failed"] += 1
                        logger.error(f"Stage 1 failed for unit {outcome['unit_id']}: {outcome['error']}")
                    if on_progress:
                        on_progress(outcome["unit_id"], outcome["status"])

        return summary

    # ── Stages 2-4 ─────────────────────────────────────────────────────

    def _stage_context(self, rid: UUID) -> Dict[str, Any]:
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, rid)
            if run is None:
                raise RunNotFoundError(f"Analysis run {rid} not found")
            units = [
                unit_to_dict(u) for u in session.query(WorkUnit).filter(WorkUnit.run_id == rid)
                .order_by(WorkUnit.impact_score.desc(), WorkUnit.start_at).all()
            ]
            reviews = session.query(AiReview).filter(AiReview.run_id == rid).all()
            stage1 = [review_to_dict(r) for r in reviews if r.stage == 1]
            done = {r.stage: r.result for r in reviews if r.status == STATUS_DONE}
            statuses = {r.stage: r.status for r in reviews if r.stage in (2, 3, 4)}
            metrics = run.metrics or {}
            failed_repos = failed_repos_from_progress(run.progress)

        titles = {u["unit_id"]: u for u in units}
        unit_reviews = [
            {
                "unit": titles.get(r["unit_id"], {}).get("title"),
                "repo": titles.get(r["unit_id"], {}).get("repo_name"),
                "work_type": titles.get(r["unit_id"], {}).get("work_type"),
                **(r["result"] or {}),
            }
            for r in stage1 if r["status"] == STATUS_DONE
        ]
        overview = [
            {k: u[k] for k in ("title", "repo_name", "work_type", "commit_count", "impact_score", "start_at")}
            for u in units[:30]
        ]
        return {
            "metrics": metrics,
            "units": units,
            "stage1": stage1,
            "unit_reviews": unit_reviews,
            "overview": overview,
            "done": done,
            "statuses": statuses,
            "failed_repos": failed_repos,
        }

    def _run_single_stage(self, rid: UUID, stage: int, prompt: str) -> Dict[str, Any]:
        try:
            result, attempts = self._complete_json(stage, prompt)
            status, error = STATUS_DONE, None
        except Exception as e:
            logger.error(f"Stage {stage} failed for run {rid}: {e}")
            result, attempts, status, error = None, self.max_attempts, STATUS_FAILED, str(e)

        with self._db.get_session() as session:
            review = self._upsert_review(session, rid, stage, None, status, result, error, attempts)
            return review_to_dict(review)

    def run_aggregate_stages(
        self,
        run_id: str,
        force: bool = False,
        should_stop: Optional[Callable[[], bool]] = None,
        on_progress: Optional[Callable[[int, str], None]] = None,
    ) -> Dict[str, Any]:
        """Run stages 2 -> 3 -> 4 sequentially.

        A stage with a ``done`` row is skipped unless force=True; a failed
        stage is recorded and later stages run with what is available.

        Returns:
            Dict mapping stage -> status, plus ``stopped``
        """
        rid = UUID(str(run_id))
        outcome: Dict[str, Any] = {"stopped": False}

        for stage in (2, 3, 4):
            if should_stop and should_stop():
                outcome["stopped"] = True
                break

            ctx = self._stage_context(rid)
            if not force and ctx["statuses"].get(stage) == STATUS_DONE:
                outcome[stage] = "skipped"
                continue

            if stage == 2:
                prompt = prompts.build_work_pattern_prompt(ctx["metrics"], ctx["unit_reviews"], ctx["overview"])
            elif stage == 3:
                prompt = prompts.build_growth_prompt(ctx["metrics"], ctx["done"].get(2), ctx["unit_reviews"])
            else:
                stats = compute_report_stats(
                    ctx["metrics"], ctx["units"], ctx["stage1"], failed_repos=ctx["failed_repos"],
                )
                prompt = prompts.build_executive_prompt(
                    ctx["metrics"], ctx["unit_reviews"], ctx["done"].get(2), ctx["done"].get(3), stats,
                )

            review = self._run_single_stage(rid, stage, prompt)
            outcome[stage] = review["status"]
            if on_progress:
                on_progress(stage, review["status"])

        return outcome
