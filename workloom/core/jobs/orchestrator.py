"""Analysis Orchestrator: resumable state machine over the pipeline phases.

METRICS -> CLUSTERING -> SCORING -> SAMPLING -> DIFF_FETCH -> AI_ANALYSIS

Each phase persists its checkpoint after every repo/unit so that a run
interrupted by pause, cancel or a crash resumes without redoing finished
work. ``run(run_id)`` is the single execution entry point; start() and
retry() only transition status and dispatch it (inline or on the
background worker).

Public API:
    create_run(org, user, year, options) -> run dict
    start(run_id) / pause(run_id) / cancel(run_id) -> status dict
    retry(run_id, mode) -> status dict
    delete(run_id)
    get_status(run_id) -> status dict
    list_units(run_id) -> ranked unit dicts
    get_reviews(run_id, stage) -> review dicts
    get_report(run_id) / build_interim_report(run_id) -> report dict
    recover_interrupted() -> run ids moved to PAUSED
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
from uuid import UUID, uuid4

from pydantic import ValidationError as PydanticValidationError

from ..analysis.clustering import ClusteringConfig, cluster_repo_commits
from ..analysis.diff_fetcher import DiffFetcher
from ..analysis.metrics import calculate_metrics
from ..analysis.models import CommitRecord, SampleCandidate, SpecialCaseKind
from ..analysis.sampling import default_seed, select_samples
from ..analysis.scoring import (
    ScoringWeights,
    calculate_hotspot_files,
    score_work_unit,
    scoring_input_from_commits,
)
from ..analysis.sources import CommitSource, DiffProvider, OrgSettings
from ..constants import (
    CANCELLED_ERROR,
    DELETABLE_STATUSES,
    ITEM_DONE,
    ITEM_FAILED,
    ITEM_PENDING,
    ITEM_RUNNING,
    PHASE_ORDER,
    PROMPT_VERSION,
    TERMINAL_STATUSES,
    Phase,
    RestartMode,
    RunStatus,
)
from ..db import DatabaseManager
from ..db.models import AiReview, AnalysisRun, WorkUnit, WorkUnitCommit, YearlyReport, utcnow
from ..db.serializers import run_to_dict, unit_to_dict
from ..errors import (
    FatalFailure,
    PartialFailure,
    RunNotFoundError,
    RunStateError,
    ValidationError,
)
from ..gateway import LLMGateway
from ..report.synthesizer import ReportSynthesizer
from ..review.engine import ReviewEngine
from ...setting import AnalysisSettings, ReviewSettings, get_settings
from .progress import ProgressCheckpoint, RepoProgress, predict_work_unit_count

logger = logging.getLogger(__name__)

MIN_YEAR = 2000

RETRYABLE_STATUSES = {
    RestartMode.RESUME: (RunStatus.PAUSED, RunStatus.FAILED),
    RestartMode.RETRY: (RunStatus.PAUSED, RunStatus.FAILED, RunStatus.DONE),
    RestartMode.FULL_RESTART: (RunStatus.PAUSED, RunStatus.FAILED, RunStatus.DONE),
}


def _default_llm_factory(review: ReviewSettings) -> LLMGateway:
    from ..llm import build_llm

    return LLMGateway(build_llm(review))


class _Stopped(Exception):
    """Internal signal: a batch noticed pause or cancel mid-repo."""


class _RunContext:
    """Per-execution state shared by the phase handlers."""

    def __init__(self, run: AnalysisRun, settings: AnalysisSettings, mode: RestartMode):
        self.run_id: UUID = run.run_id
        self.org = run.org_login
        self.user = run.user_login
        self.year = run.year
        self.seed = run.sampling_seed
        self.settings = settings
        self.mode = mode
        self.checkpoint = ProgressCheckpoint.from_dict(run.progress)
        # RETRY that resumes inside AI_ANALYSIS never passes through DIFF_FETCH
        self.refetch_diffs = mode == RestartMode.RETRY and run.phase == Phase.AI_ANALYSIS.value


class AnalysisOrchestrator:
    """Drive analysis runs through the phase pipeline.

    Args:
        db_manager: DatabaseManager instance
        commit_source: CommitSource collaborator
        diff_provider: DiffProvider collaborator
        llm: completion object for the review stages (defaults to Settings.llm)
        settings: AnalysisSettings (defaults to get_settings())
        org_settings: per-organization overrides keyed by org login
        background: dispatch runs on an AnalysisWorker instead of inline
        diff_backoff_factor: backoff multiplier for diff fetch retries
        llm_factory: builds the review LLM for runs whose organization picks
            another model (defaults to a gateway-wrapped build_llm)
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        commit_source: CommitSource,
        diff_provider: DiffProvider,
        llm: Any = None,
        settings: Optional[AnalysisSettings] = None,
        org_settings: Optional[Dict[str, OrgSettings]] = None,
        background: bool = False,
        diff_backoff_factor: float = 1.0,
        llm_factory: Optional[Callable[[ReviewSettings], Any]] = None,
    ):
        self._db = db_manager
        self._source = commit_source
        self._diff_provider = diff_provider
        self._llm = llm
        self._settings = settings
        self._org_settings = org_settings or {}
        self.background = background
        self.diff_backoff_factor = diff_backoff_factor
        self._llm_factory = llm_factory or _default_llm_factory
        self._run_llms: Dict[Tuple[str, Optional[str]], Any] = {}

        self._reports = ReportSynthesizer(db_manager)
        self._executing: Set[UUID] = set()
        self._lock = threading.Lock()
        self._worker = None

    @property
    def settings(self) -> AnalysisSettings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    def _ensure_worker(self):
        """Lazily initialize and start the background worker."""
        from .worker import AnalysisWorker

        if self._worker is None:
            self._worker = AnalysisWorker(self)
        if not self._worker.is_running:
            self._worker.start()
        return self._worker

    def is_executing(self, run_id: str) -> bool:
        with self._lock:
            return UUID(str(run_id)) in self._executing

    # ── Run lifecycle ──────────────────────────────────────────────────

    def create_run(
        self,
        org: str,
        user: str,
        year: int,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Validate the request and insert a QUEUED run.

        Raises:
            ValidationError: bad org/user/year/options, or no synced commits
        """
        if not isinstance(org, str) or not org.strip():
            raise ValidationError("org is required")
        if not isinstance(user, str) or not user.strip():
            raise ValidationError("user is required")
        if isinstance(year, bool) or not isinstance(year, int):
            raise ValidationError(f"year must be an integer, got {year!r}")
        current_year = utcnow().year
        if year < MIN_YEAR or year > current_year:
            raise ValidationError(f"year must be between {MIN_YEAR} and {current_year}, got {year}")

        options = dict(options or {})
        seed_override = options.pop("sampling_seed", None)
        try:
            self.settings.with_overrides(options)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid options: {e}") from e

        org, user = org.strip(), user.strip()
        repos = self._source.list_repositories(org, user, year)
        if not repos:
            raise ValidationError(f"No synced commits for {user} in {org} during {year}")

        run_id = uuid4()
        with self._db.get_session() as session:
            run = AnalysisRun(
                run_id=run_id,
                org_login=org,
                user_login=user,
                year=year,
                status=RunStatus.QUEUED.value,
                phase=Phase.METRICS.value,
                progress=ProgressCheckpoint(
                    repo_progress=[RepoProgress(repo_name=r) for r in repos],
                    total=len(repos),
                    message="Queued",
                ).to_dict(),
                options=options,
                sampling_seed=str(seed_override) if seed_override else default_seed(str(run_id)),
                prompt_version=PROMPT_VERSION,
            )
            session.add(run)
            session.flush()
            result = run_to_dict(run)

        logger.info(f"Created analysis run {run_id} for {user}@{org} {year} ({len(repos)} repos)")
        return result

    def _compare_and_set(
        self,
        rid: UUID,
        from_statuses: Iterable[RunStatus],
        to_status: RunStatus,
        **fields: Any,
    ) -> bool:
        """Atomically move a run to ``to_status`` if it is in ``from_statuses``."""
        values = {"status": to_status.value, "updated_at": utcnow(), **fields}
        with self._db.get_session() as session:
            count = session.query(AnalysisRun).filter(
                AnalysisRun.run_id == rid,
                AnalysisRun.status.in_([s.value for s in from_statuses]),
            ).update(values, synchronize_session=False)
        return count == 1

    def _load_status(self, rid: UUID) -> str:
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, rid)
            if run is None:
                raise RunNotFoundError(f"Analysis run {rid} not found")
            return run.status

    def _transition_or_raise(
        self,
        rid: UUID,
        from_statuses: Iterable[RunStatus],
        to_status: RunStatus,
        action: str,
        **fields: Any,
    ):
        from_statuses = tuple(from_statuses)
        if not self._compare_and_set(rid, from_statuses, to_status, **fields):
            status = self._load_status(rid)
            allowed = ", ".join(s.value for s in from_statuses)
            raise RunStateError(f"Cannot {action} run {rid} in status {status} (allowed: {allowed})")

    def start(self, run_id: str) -> Dict[str, Any]:
        """QUEUED -> IN_PROGRESS, then execute."""
        rid = UUID(str(run_id))
        self._transition_or_raise(
            rid, (RunStatus.QUEUED,), RunStatus.IN_PROGRESS, "start", started_at=utcnow(),
        )
        logger.info(f"Starting analysis run {rid}")
        self._dispatch(rid, RestartMode.RESUME)
        return self.get_status(str(rid))

    def pause(self, run_id: str) -> Dict[str, Any]:
        """IN_PROGRESS -> PAUSED; the loop stops before its next unit of work."""
        rid = UUID(str(run_id))
        self._transition_or_raise(rid, (RunStatus.IN_PROGRESS,), RunStatus.PAUSED, "pause")
        logger.info(f"Pause requested for run {rid}")
        return self.get_status(str(rid))

    def cancel(self, run_id: str) -> Dict[str, Any]:
        """Any non-terminal status -> FAILED ("cancelled by user")."""
        rid = UUID(str(run_id))
        active = [s for s in RunStatus if s not in TERMINAL_STATUSES]
        self._transition_or_raise(
            rid, active, RunStatus.FAILED, "cancel",
            error=CANCELLED_ERROR, completed_at=utcnow(),
        )
        logger.info(f"Run {rid} cancelled")
        return self.get_status(str(rid))

    def retry(self, run_id: str, mode: RestartMode = RestartMode.RESUME) -> Dict[str, Any]:
        """Restart a paused, failed or finished run.

        RESUME continues from the checkpoint. RETRY resets failed repos,
        units and stages to pending and continues from the current
        phase without moving it back: repos that failed in METRICS or
        CLUSTERING are clustered and scored in a catch-up pass and the
        sample is redrawn, partial diffs are refetched before stage 1.
        FULL_RESTART drops all derived rows and starts at METRICS,
        keeping the sampling seed and the diff cache.
        """
        rid = UUID(str(run_id))
        mode = RestartMode(mode)
        if self.is_executing(str(rid)):
            raise RunStateError(f"Run {rid} is already executing")

        allowed = RETRYABLE_STATUSES[mode]
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, rid)
            if run is None:
                raise RunNotFoundError(f"Analysis run {run_id} not found")
            if run.status not in [s.value for s in allowed]:
                raise RunStateError(
                    f"Cannot {mode.value} run {rid} in status {run.status}"
                )

            if mode == RestartMode.FULL_RESTART:
                report = session.query(YearlyReport).filter(YearlyReport.run_id == rid).first()
                if report is not None and report.is_finalized:
                    raise RunStateError(f"Run {rid} has a finalized report; FULL_RESTART refused")
                self._reset_run(session, run)
            elif mode == RestartMode.RETRY:
                checkpoint = ProgressCheckpoint.from_dict(run.progress)
                checkpoint.reset_failed()
                checkpoint.message = "Retrying failed items"
                run.progress = checkpoint.to_dict()

            from_status = RunStatus(run.status)

        self._transition_or_raise(
            rid, (from_status,), RunStatus.IN_PROGRESS, mode.value,
            error=None, completed_at=None, started_at=utcnow(),
        )
        logger.info(f"Run {rid} restarted with mode {mode.value}")
        self._dispatch(rid, mode)
        return self.get_status(str(rid))

    def _reset_run(self, session, run: AnalysisRun):
        rid = run.run_id
        session.query(AiReview).filter(AiReview.run_id == rid).delete(synchronize_session=False)
        session.query(YearlyReport).filter(YearlyReport.run_id == rid).delete(synchronize_session=False)
        session.query(WorkUnitCommit).filter(WorkUnitCommit.run_id == rid).delete(synchronize_session=False)
        session.query(WorkUnit).filter(WorkUnit.run_id == rid).delete(synchronize_session=False)

        repos = [rp.repo_name for rp in ProgressCheckpoint.from_dict(run.progress).repo_progress]
        run.phase = Phase.METRICS.value
        run.metrics = None
        run.hotspot_files = None
        run.progress = ProgressCheckpoint(
            repo_progress=[RepoProgress(repo_name=r) for r in repos],
            total=len(repos),
            message="Full restart",
        ).to_dict()
        logger.info(f"Cleared derived data for run {rid}")

    def delete(self, run_id: str) -> None:
        """Delete a QUEUED or FAILED run and everything it owns (via CASCADE)."""
        rid = UUID(str(run_id))
        if self.is_executing(str(rid)):
            raise RunStateError(f"Run {rid} is executing")

        with self._db.get_session() as session:
            run = session.get(AnalysisRun, rid)
            if run is None:
                raise RunNotFoundError(f"Analysis run {run_id} not found")
            if run.status not in [s.value for s in DELETABLE_STATUSES]:
                raise RunStateError(f"Cannot delete run {rid} in status {run.status}")
            session.delete(run)

        logger.info(f"Deleted analysis run {rid}")

    def recover_interrupted(self) -> List[str]:
        """Move IN_PROGRESS runs not executing in this process to PAUSED.

        Called at startup: a run left IN_PROGRESS by a dead process is
        resumable with retry(RESUME).
        """
        with self._lock:
            executing = set(self._executing)
        with self._db.get_session() as session:
            runs = session.query(AnalysisRun).filter(
                AnalysisRun.status == RunStatus.IN_PROGRESS.value
            ).all()
            stale = [r.run_id for r in runs if r.run_id not in executing]

        recovered = []
        for rid in stale:
            if self._compare_and_set(rid, (RunStatus.IN_PROGRESS,), RunStatus.PAUSED):
                recovered.append(str(rid))
        if recovered:
            logger.warning(f"Recovered {len(recovered)} interrupted runs as PAUSED")
        return recovered

    # ── Queries ────────────────────────────────────────────────────────

    def get_status(self, run_id: str) -> Dict[str, Any]:
        rid = UUID(str(run_id))
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, rid)
            if run is None:
                raise RunNotFoundError(f"Analysis run {run_id} not found")
            data = run_to_dict(run)
            checkpoint = ProgressCheckpoint.from_dict(run.progress)

        data["progress"] = checkpoint.to_dict()
        data["percentage"] = checkpoint.percentage
        data["repo_progress"] = data["progress"]["repoProgress"]
        data["is_executing"] = self.is_executing(str(rid))
        return data

    def list_units(self, run_id: str) -> List[Dict[str, Any]]:
        """Units ranked by impact (unscored last), then chronologically."""
        rid = UUID(str(run_id))
        with self._db.get_session() as session:
            if session.get(AnalysisRun, rid) is None:
                raise RunNotFoundError(f"Analysis run {run_id} not found")
            units = session.query(WorkUnit).filter(WorkUnit.run_id == rid).order_by(
                WorkUnit.impact_score.desc().nullslast(),
                WorkUnit.start_at,
                WorkUnit.repo_name,
                WorkUnit.sequence,
            ).all()
            return [unit_to_dict(u) for u in units]

    def get_reviews(self, run_id: str, stage: Optional[int] = None) -> List[Dict[str, Any]]:
        self._load_status(UUID(str(run_id)))
        return self._review_engine(self.settings).get_reviews(run_id, stage)

    def get_report(self, run_id: str) -> Optional[Dict[str, Any]]:
        self._load_status(UUID(str(run_id)))
        return self._reports.get_report(run_id)

    def build_interim_report(self, run_id: str) -> Dict[str, Any]:
        """Report from metrics and whatever stage-1 results exist so far."""
        rid = UUID(str(run_id))
        status = self._load_status(rid)
        if status == RunStatus.DONE.value:
            raise RunStateError(f"Run {rid} is complete; use the final report")
        return self._reports.synthesize(str(rid), interim=True)

    # ── Execution ──────────────────────────────────────────────────────

    def _dispatch(self, rid: UUID, mode: RestartMode):
        if self.background:
            if not self._ensure_worker().submit(str(rid), mode):
                raise RunStateError(f"Run {rid} is already queued for execution")
        else:
            self.run(str(rid), mode)

    def _should_stop(self, rid: UUID) -> bool:
        """True once the run left IN_PROGRESS (paused, cancelled, deleted)."""
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, rid)
            return run is None or run.status != RunStatus.IN_PROGRESS.value

    def _save_progress(self, ctx: _RunContext, phase: Optional[Phase] = None, **fields: Any):
        if phase is not None:
            ctx.checkpoint.phase = phase.value
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, ctx.run_id)
            if run is None:
                return
            run.progress = ctx.checkpoint.to_dict()
            if phase is not None:
                run.phase = phase.value
            for key, value in fields.items():
                setattr(run, key, value)

    def _settings_for(self, run: AnalysisRun) -> AnalysisSettings:
        settings = self.settings.with_overrides(run.options)
        org = self._org_settings.get(run.org_login)
        if org is not None:
            updates: Dict[str, Any] = {}
            if org.critical_paths:
                updates["scoring"] = {"critical_paths": org.critical_paths}
            if org.default_review_model:
                updates["review"] = {"model": org.default_review_model}
            if org.team_standards:
                updates["team_standards"] = org.team_standards
            settings = settings.with_overrides(updates)
        return settings

    def run(self, run_id: str, mode: RestartMode = RestartMode.RESUME) -> Dict[str, Any]:
        """Execute the remaining phases of an IN_PROGRESS run.

        Returns the status dict. Stops early (leaving the checkpoint in
        place) when the run is paused or cancelled.
        """
        rid = UUID(str(run_id))
        mode = RestartMode(mode)
        with self._lock:
            if rid in self._executing:
                raise RunStateError(f"Run {rid} is already executing")
            self._executing.add(rid)

        try:
            with self._db.get_session() as session:
                run = session.get(AnalysisRun, rid)
                if run is None:
                    raise RunNotFoundError(f"Analysis run {run_id} not found")
                if run.status != RunStatus.IN_PROGRESS.value:
                    logger.info(f"Run {rid} is {run.status}, nothing to execute")
                    return run_to_dict(run)
                ctx = _RunContext(run, self._settings_for(run), mode)
                start_phase = Phase(run.phase)

            self._execute(ctx, start_phase)

        except FatalFailure as e:
            logger.error(f"Run {rid} failed: {e}")
            self._mark_failed(rid, str(e))
        except (RunNotFoundError, RunStateError):
            raise
        except Exception as e:
            logger.error(f"Run {rid} crashed: {e}", exc_info=True)
            self._mark_failed(rid, str(e))
        finally:
            with self._lock:
                self._executing.discard(rid)

        return self.get_status(str(rid))

    def _execute(self, ctx: _RunContext, start_phase: Phase):
        handlers: Dict[Phase, Callable[[_RunContext], bool]] = {
            Phase.METRICS: self._phase_metrics,
            Phase.CLUSTERING: self._phase_clustering,
            Phase.SCORING: self._phase_scoring,
            Phase.SAMPLING: self._phase_sampling,
            Phase.DIFF_FETCH: self._phase_diff_fetch,
            Phase.AI_ANALYSIS: self._phase_ai_analysis,
        }

        if ctx.checkpoint.phase == start_phase.value and self._upstream_retries(ctx, start_phase):
            try:
                finished = self._recover_failed_repos(ctx, start_phase)
            except PartialFailure as e:
                logger.warning(f"Run {ctx.run_id}: {e}")
                ctx.checkpoint.record_failures(e.failed)
                self._save_progress(ctx)
                finished = True
            if not finished:
                logger.info(f"Run {ctx.run_id} stopped while recovering failed repositories")
                return

        for phase in PHASE_ORDER[PHASE_ORDER.index(start_phase):]:
            if self._should_stop(ctx.run_id):
                logger.info(f"Run {ctx.run_id} stopped before {phase.value}")
                return

            if ctx.checkpoint.phase != phase.value:
                self._enter_phase(ctx, phase)
            logger.info(f"Run {ctx.run_id}: phase {phase.value}")

            try:
                finished = handlers[phase](ctx)
            except PartialFailure as e:
                logger.warning(f"Run {ctx.run_id}: {e}")
                ctx.checkpoint.record_failures(e.failed)
                self._save_progress(ctx)
                finished = True

            if not finished:
                logger.info(f"Run {ctx.run_id} stopped during {phase.value}")
                return

        self._mark_done(ctx)

    def _enter_phase(self, ctx: _RunContext, phase: Phase):
        """Replace the checkpoint with a fresh one for ``phase``.

        Repos that failed earlier stay failed so they are not reprocessed,
        and their entries ride along into every later phase together with
        the accumulated failed items.
        """
        previous = ctx.checkpoint
        checkpoint = ProgressCheckpoint(phase=phase.value)
        repo_phase = phase in (Phase.METRICS, Phase.CLUSTERING)
        for rp in previous.repo_progress:
            failed = rp.status == ITEM_FAILED
            if not failed and not repo_phase:
                continue
            checkpoint.repo_progress.append(RepoProgress(
                repo_name=rp.repo_name,
                status=ITEM_FAILED if failed else ITEM_PENDING,
                error=rp.error if failed else None,
                failed_phase=rp.failed_phase,
            ))
        if repo_phase:
            checkpoint.recount_repos()
        checkpoint.failed_items = list(previous.failed_items)
        if phase == Phase.CLUSTERING:
            checkpoint.unit_estimate = previous.unit_estimate
        ctx.checkpoint = checkpoint
        self._save_progress(ctx, phase)

    def _mark_done(self, ctx: _RunContext):
        failures = ctx.checkpoint.failed_items
        if failures:
            partial = PartialFailure(
                f"Completed with {len(failures)} failed items", failed=failures
            )
            ctx.checkpoint.message = str(partial)
        else:
            ctx.checkpoint.message = "Completed"
        self._save_progress(ctx)
        if self._compare_and_set(
            ctx.run_id, (RunStatus.IN_PROGRESS,), RunStatus.DONE, completed_at=utcnow(),
        ):
            logger.info(f"Run {ctx.run_id} completed ({ctx.checkpoint.message})")

    def _mark_failed(self, rid: UUID, error: str):
        self._compare_and_set(
            rid, (RunStatus.IN_PROGRESS,), RunStatus.FAILED,
            error=error, completed_at=utcnow(),
        )

    # ── Repo-granular phases ───────────────────────────────────────────

    def _run_repo_phase(
        self,
        ctx: _RunContext,
        phase: Phase,
        work: Callable[[str], int],
    ) -> bool:
        """Apply ``work(repo)`` to every pending repo with per-repo checkpoints.

        Returns False when stopped. Raises FatalFailure when every repo
        failed, PartialFailure when some failed in this pass.
        """
        checkpoint = ctx.checkpoint
        failed_now: List[Dict[str, Any]] = []

        for rp in list(checkpoint.repo_progress):
            if rp.status in (ITEM_DONE, ITEM_FAILED):
                continue
            if self._should_stop(ctx.run_id):
                return False

            checkpoint.set_repo(rp.repo_name, ITEM_RUNNING)
            checkpoint.message = f"{phase.value}: {rp.repo_name}"
            self._save_progress(ctx)
            try:
                count = work(rp.repo_name)
                checkpoint.set_repo(rp.repo_name, ITEM_DONE, commit_count=count)
            except (FatalFailure, _Stopped):
                raise
            except Exception as e:
                logger.error(f"{phase.value} failed for {rp.repo_name} in run {ctx.run_id}: {e}",
                             exc_info=True)
                checkpoint.set_repo(rp.repo_name, ITEM_FAILED, error=str(e), failed_phase=phase.value)
                failed_now.append({"item": rp.repo_name, "phase": phase.value, "error": str(e)})
            self._save_progress(ctx)

        # Entries carried over from earlier phases do not count against this one
        failed_here = [
            rp for rp in checkpoint.repo_progress
            if rp.status == ITEM_FAILED and rp.failed_phase == phase.value
        ]
        if failed_here and not checkpoint.repos_with_status(ITEM_DONE):
            raise FatalFailure(f"{phase.value}: every repository failed")
        if failed_now:
            raise PartialFailure(f"{phase.value}: {len(failed_now)} repositories failed", failed=failed_now)
        return True

    def _list_commits(self, ctx: _RunContext, repo: str) -> List[CommitRecord]:
        return self._source.list_commits(ctx.org, ctx.user, ctx.year, repo)

    def _phase_metrics(self, ctx: _RunContext) -> bool:
        if not ctx.checkpoint.repo_progress:
            ctx.checkpoint.ensure_repos(self._source.list_repositories(ctx.org, ctx.user, ctx.year))
            ctx.checkpoint.recount_repos()
        if not ctx.checkpoint.repo_progress:
            raise FatalFailure(f"No repositories with commits for {ctx.user} in {ctx.year}")

        commits_by_repo: Dict[str, List[CommitRecord]] = {}

        def _load(repo: str) -> int:
            commits_by_repo[repo] = self._list_commits(ctx, repo)
            return len(commits_by_repo[repo])

        partial: Optional[PartialFailure] = None
        try:
            if not self._run_repo_phase(ctx, Phase.METRICS, _load):
                return False
        except PartialFailure as e:
            partial = e

        repos = ctx.checkpoint.repos_with_status(ITEM_DONE)
        commit_count = self._refresh_metrics(ctx, repos, commits_by_repo)
        ctx.checkpoint.unit_estimate = predict_work_unit_count(commit_count, len(repos))
        ctx.checkpoint.units_created = 0
        ctx.checkpoint.message = (
            f"Metrics computed over {commit_count} commits, "
            f"expecting ~{ctx.checkpoint.unit_estimate.expected} work units"
        )
        self._save_progress(ctx)

        if partial is not None:
            raise partial
        return True

    def _refresh_metrics(
        self,
        ctx: _RunContext,
        repos: List[str],
        loaded: Optional[Dict[str, List[CommitRecord]]] = None,
    ) -> int:
        """Recompute the metrics snapshot over ``repos``; returns the commit count."""
        loaded = loaded or {}
        all_commits: List[CommitRecord] = []
        for repo in repos:
            commits = loaded.get(repo)
            if commits is None:
                commits = self._list_commits(ctx, repo)
            all_commits.extend(commits)

        metrics = calculate_metrics(all_commits).to_dict()
        self._save_progress(ctx, metrics=metrics, hotspot_files=self._hotspots(ctx))
        return len(all_commits)

    def _metrics_repos(self, ctx: _RunContext) -> List[str]:
        """Every repo of the run except those whose commits never loaded."""
        missing = set(ctx.checkpoint.repos_failed_in([Phase.METRICS]))
        repos = self._source.list_repositories(ctx.org, ctx.user, ctx.year)
        return [r for r in repos if r not in missing]

    def _hotspots(self, ctx: _RunContext) -> List[str]:
        """Most-changed org files over the trailing window ending at year end."""
        with self._db.get_session() as session:
            existing = session.get(AnalysisRun, ctx.run_id).hotspot_files
        if existing is not None:
            return existing

        until = datetime(ctx.year + 1, 1, 1)
        since = until - timedelta(days=ctx.settings.scoring.hotspot_window_days)
        try:
            org_commits = self._source.list_org_commits(ctx.org, since, until)
        except Exception as e:
            logger.warning(f"Hotspot calculation unavailable for {ctx.org}: {e}")
            return []
        return calculate_hotspot_files(org_commits, ctx.settings.scoring.hotspot_top_n)

    def _cluster_repo(self, ctx: _RunContext, repo: str) -> Tuple[int, int]:
        """Cluster one repo and persist its units; returns (commits, units)."""
        config = ClusteringConfig.from_settings(ctx.settings.clustering)
        commits = self._list_commits(ctx, repo)
        drafts = cluster_repo_commits(repo, ctx.user, commits, config)
        with self._db.get_session() as session:
            # Idempotent per repo: a crash between persist and checkpoint reruns cleanly
            session.query(WorkUnitCommit).filter(
                WorkUnitCommit.run_id == ctx.run_id, WorkUnitCommit.repo_name == repo,
            ).delete(synchronize_session=False)
            session.query(WorkUnit).filter(
                WorkUnit.run_id == ctx.run_id, WorkUnit.repo_name == repo,
            ).delete(synchronize_session=False)

            for draft in drafts:
                unit = WorkUnit(
                    run_id=ctx.run_id,
                    repo_name=repo,
                    user_login=ctx.user,
                    sequence=draft.sequence,
                    start_at=draft.start_at,
                    end_at=draft.end_at,
                    work_type=draft.work_type.value,
                    commit_count=len(draft.commits),
                    additions=draft.additions,
                    deletions=draft.deletions,
                    primary_paths=draft.primary_paths,
                    is_special_case=draft.special_case is not None,
                    special_case_kind=draft.special_case.value if draft.special_case else None,
                    title=draft.title,
                )
                session.add(unit)
                session.flush()
                for position, commit in enumerate(draft.commits):
                    session.add(WorkUnitCommit(
                        unit_id=unit.unit_id,
                        run_id=ctx.run_id,
                        sha=commit.sha,
                        repo_name=repo,
                        position=position,
                        committed_at=commit.committed_at,
                        message=commit.message,
                        additions=commit.additions,
                        deletions=commit.deletions,
                        files=commit.files_to_json(),
                    ))
        logger.info(f"Clustered {len(commits)} commits in {repo} into {len(drafts)} units")
        return len(commits), len(drafts)

    def _phase_clustering(self, ctx: _RunContext) -> bool:
        checkpoint = ctx.checkpoint
        # Repos retried after a METRICS failure are missing from the metrics snapshot
        metrics_gaps = set(checkpoint.repos_failed_in([Phase.METRICS])) - set(
            checkpoint.repos_with_status(ITEM_FAILED)
        )

        def _cluster(repo: str) -> int:
            commit_count, unit_count = self._cluster_repo(ctx, repo)
            checkpoint.add_created_units(unit_count)
            if checkpoint.unit_estimate is not None:
                checkpoint.message = (
                    f"Clustered {repo}: {checkpoint.units_created} of "
                    f"~{checkpoint.unit_estimate.expected} expected work units"
                )
            return commit_count

        partial: Optional[PartialFailure] = None
        try:
            if not self._run_repo_phase(ctx, Phase.CLUSTERING, _cluster):
                return False
        except PartialFailure as e:
            partial = e

        if metrics_gaps & set(checkpoint.repos_with_status(ITEM_DONE)):
            self._refresh_metrics(ctx, self._metrics_repos(ctx))

        if partial is not None:
            raise partial
        return True

    # ── RETRY catch-up for repos that failed before SCORING ────────────

    def _upstream_retries(self, ctx: _RunContext, start_phase: Phase) -> List[str]:
        """Repos reset by RETRY that never produced work units."""
        if PHASE_ORDER.index(start_phase) <= PHASE_ORDER.index(Phase.CLUSTERING):
            return []
        upstream = (Phase.METRICS.value, Phase.CLUSTERING.value)
        return [
            rp.repo_name for rp in ctx.checkpoint.repo_progress
            if rp.status == ITEM_PENDING and rp.failed_phase in upstream
        ]

    def _recover_failed_repos(self, ctx: _RunContext, start_phase: Phase) -> bool:
        """Cluster, score and resample repos reset by RETRY in a later phase.

        The persisted phase stays where it is: the recovered units are
        brought up to ``start_phase`` here, then the normal loop resumes.
        Returns False when stopped; raises PartialFailure for repos that
        failed again.
        """
        checkpoint = ctx.checkpoint
        repos = self._upstream_retries(ctx, start_phase)
        metrics_gaps = set(checkpoint.repos_failed_in([Phase.METRICS]))
        logger.info(f"Run {ctx.run_id}: recovering {len(repos)} repositories before {start_phase.value}")

        failed_now: List[Dict[str, Any]] = []
        for repo in repos:
            if self._should_stop(ctx.run_id):
                return False
            checkpoint.message = f"Retrying {repo}"
            self._save_progress(ctx)
            try:
                _, unit_count = self._cluster_repo(ctx, repo)
            except Exception as e:
                logger.error(f"Retry failed for {repo} in run {ctx.run_id}: {e}", exc_info=True)
                checkpoint.set_repo(repo, ITEM_FAILED, error=str(e), failed_phase=Phase.CLUSTERING.value)
                failed_now.append({"item": repo, "phase": Phase.CLUSTERING.value, "error": str(e)})
            else:
                checkpoint.drop_repo(repo)
                checkpoint.message = f"Recovered {repo} with {unit_count} work units"
            self._save_progress(ctx)

        if metrics_gaps - {f["item"] for f in failed_now}:
            self._refresh_metrics(ctx, self._metrics_repos(ctx))

        if PHASE_ORDER.index(start_phase) > PHASE_ORDER.index(Phase.SCORING):
            with self._db.get_session() as session:
                hotspots = session.get(AnalysisRun, ctx.run_id).hotspot_files or []
                unscored = [
                    uid for (uid,) in session.query(WorkUnit.unit_id).filter(
                        WorkUnit.run_id == ctx.run_id, WorkUnit.impact_score.is_(None),
                    ).order_by(WorkUnit.repo_name, WorkUnit.sequence).all()
                ]
            for unit_id in unscored:
                if self._should_stop(ctx.run_id):
                    return False
                self._score_unit(ctx, unit_id, hotspots)

        if PHASE_ORDER.index(start_phase) > PHASE_ORDER.index(Phase.SAMPLING):
            selected, total = self._resample(ctx)
            with self._db.get_session() as session:
                unsampled = [
                    uid for (uid,) in session.query(WorkUnit.unit_id).filter(
                        WorkUnit.run_id == ctx.run_id, WorkUnit.is_sampled.is_(False),
                    ).all()
                ]
                session.query(AiReview).filter(
                    AiReview.run_id == ctx.run_id,
                    AiReview.stage == 1,
                    AiReview.unit_id.in_(unsampled),
                ).delete(synchronize_session=False)
            checkpoint.message = f"Resampled {selected} of {total} units"
            self._save_progress(ctx)

        if failed_now:
            raise PartialFailure(f"Retry: {len(failed_now)} repositories failed again", failed=failed_now)
        return True

    # ── Unit-granular phases ───────────────────────────────────────────

    def _phase_scoring(self, ctx: _RunContext) -> bool:
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, ctx.run_id)
            hotspots = run.hotspot_files or []
            rows = session.query(WorkUnit.unit_id, WorkUnit.impact_score).filter(
                WorkUnit.run_id == ctx.run_id
            ).order_by(WorkUnit.repo_name, WorkUnit.sequence).all()

        checkpoint = ctx.checkpoint
        for unit_id, score in rows:
            if str(unit_id) not in checkpoint.unit_progress:
                checkpoint.unit_progress[str(unit_id)] = ITEM_DONE if score is not None else ITEM_PENDING
        checkpoint.recount_units()

        for unit_id, score in rows:
            if checkpoint.unit_progress.get(str(unit_id)) == ITEM_DONE:
                continue
            if self._should_stop(ctx.run_id):
                return False

            self._score_unit(ctx, unit_id, hotspots)
            checkpoint.set_unit(str(unit_id), ITEM_DONE)
            checkpoint.message = f"Scored {checkpoint.completed}/{checkpoint.total} units"
            self._save_progress(ctx)

        return True

    def _score_unit(self, ctx: _RunContext, unit_id: UUID, hotspots: List[str]):
        weights = ScoringWeights.from_settings(ctx.settings.scoring)
        critical_paths = [cp.model_dump() for cp in ctx.settings.scoring.critical_paths]
        with self._db.get_session() as session:
            unit = session.get(WorkUnit, unit_id)
            commits = [
                CommitRecord(
                    sha=c.sha,
                    author_login=unit.user_login,
                    committed_at=c.committed_at,
                    repo_name=c.repo_name,
                    message=c.message or "",
                    additions=c.additions,
                    deletions=c.deletions,
                    files=c.files or [],
                )
                for c in unit.commits
            ]
            special = SpecialCaseKind(unit.special_case_kind) if unit.special_case_kind else None
            impact = score_work_unit(
                scoring_input_from_commits(str(unit_id), commits, special),
                critical_paths=critical_paths,
                hotspot_files=hotspots,
                weights=weights,
            )
            unit.impact_score = impact.score
            unit.impact_factors = impact.factors

    def _phase_sampling(self, ctx: _RunContext) -> bool:
        selected, total = self._resample(ctx)
        ctx.checkpoint.total = total
        ctx.checkpoint.completed = total
        ctx.checkpoint.message = f"Sampled {selected} of {total} units"
        self._save_progress(ctx)
        logger.info(f"Run {ctx.run_id}: {ctx.checkpoint.message}")
        return True

    def _resample(self, ctx: _RunContext) -> Tuple[int, int]:
        """Redraw the sample over every unit; returns (selected, candidates)."""
        sampling = ctx.settings.sampling
        with self._db.get_session() as session:
            units = session.query(WorkUnit).filter(WorkUnit.run_id == ctx.run_id).all()
            candidates = [
                SampleCandidate(
                    unit_id=str(u.unit_id),
                    impact_score=u.impact_score or 0.0,
                    repo_name=u.repo_name,
                    sequence=u.sequence,
                    start_at=u.start_at,
                    is_special_case=u.is_special_case,
                    special_case_kind=u.special_case_kind,
                )
                for u in units
            ]
            result = select_samples(
                candidates, ctx.seed,
                top_k=sampling.top_k, random_k=sampling.random_k, special_k=sampling.special_k,
            )
            selected = set(result.selected_unit_ids)
            for u in units:
                u.is_sampled = str(u.unit_id) in selected

        self._review_engine(ctx.settings).record_sampling(str(ctx.run_id), result.to_dict())
        return len(selected), len(candidates)

    def _sampled_shas_by_repo(self, rid: UUID) -> Dict[str, List[str]]:
        with self._db.get_session() as session:
            rows = session.query(WorkUnitCommit.repo_name, WorkUnitCommit.sha).join(
                WorkUnit, WorkUnit.unit_id == WorkUnitCommit.unit_id
            ).filter(
                WorkUnit.run_id == rid, WorkUnit.is_sampled.is_(True),
            ).order_by(WorkUnitCommit.repo_name, WorkUnitCommit.committed_at, WorkUnitCommit.sha).all()

        by_repo: Dict[str, List[str]] = {}
        for repo, sha in rows:
            by_repo.setdefault(repo, []).append(sha)
        return by_repo

    def _diff_fetcher(self, settings: AnalysisSettings) -> DiffFetcher:
        return DiffFetcher(
            self._db,
            self._diff_provider,
            max_tries=settings.diff.max_tries,
            max_time=settings.diff.max_time,
            max_patch_chars=settings.diff.max_patch_chars,
            backoff_factor=self.diff_backoff_factor,
        )

    def _phase_diff_fetch(self, ctx: _RunContext) -> bool:
        by_repo = self._sampled_shas_by_repo(ctx.run_id)
        ctx.checkpoint.ensure_repos(sorted(by_repo))
        ctx.checkpoint.recount_repos()
        fetcher = self._diff_fetcher(ctx.settings)
        refetch_partial = ctx.mode == RestartMode.RETRY
        should_stop = lambda: self._should_stop(ctx.run_id)  # noqa: E731

        def _fetch(repo: str) -> int:
            summary = fetcher.fetch_many(
                repo, by_repo.get(repo, []), refetch_partial=refetch_partial, should_stop=should_stop,
            )
            if summary["stopped"]:
                raise _Stopped()
            if summary["partial"]:
                logger.warning(f"{summary['partial']} partial diffs in {repo} for run {ctx.run_id}")
            return summary["total"]

        try:
            return self._run_repo_phase(ctx, Phase.DIFF_FETCH, _fetch)
        except _Stopped:
            return False

    def _llm_for(self, settings: AnalysisSettings) -> Any:
        """Review LLM for a run; organizations may pick their own model."""
        review = settings.review
        base = self.settings.review
        if (review.provider, review.model) == (base.provider, base.model):
            return self._llm

        key = (review.provider, review.model)
        with self._lock:
            llm = self._run_llms.get(key)
            if llm is None:
                llm = self._llm_factory(review)
                self._run_llms[key] = llm
                logger.info(f"Using review model {review.model} ({review.provider})")
        return llm

    def _review_engine(self, settings: AnalysisSettings) -> ReviewEngine:
        review = settings.review
        return ReviewEngine(
            self._db,
            diff_fetcher=self._diff_fetcher(settings),
            llm=self._llm_for(settings),
            concurrency=review.concurrency,
            max_attempts=review.max_attempts,
            base_backoff_seconds=review.base_backoff_seconds,
            max_diff_chars=review.max_diff_chars,
            team_standards=settings.team_standards,
        )

    def _refetch_sampled_diffs(self, ctx: _RunContext) -> bool:
        """Fetch missing and partial diffs of sampled units before a RETRY review."""
        checkpoint = ctx.checkpoint
        fetcher = self._diff_fetcher(ctx.settings)
        should_stop = lambda: self._should_stop(ctx.run_id)  # noqa: E731
        for repo, shas in self._sampled_shas_by_repo(ctx.run_id).items():
            checkpoint.message = f"Refetching diffs: {repo}"
            self._save_progress(ctx)
            try:
                summary = fetcher.fetch_many(repo, shas, refetch_partial=True, should_stop=should_stop)
            except Exception as e:
                logger.error(f"Diff refetch failed for {repo} in run {ctx.run_id}: {e}", exc_info=True)
                checkpoint.set_repo(repo, ITEM_FAILED, error=str(e), failed_phase=Phase.DIFF_FETCH.value)
                checkpoint.record_failures([{"item": repo, "phase": Phase.DIFF_FETCH.value, "error": str(e)}])
                self._save_progress(ctx)
                continue
            if summary["stopped"]:
                return False
            if summary["partial"]:
                logger.warning(f"{summary['partial']} diffs in {repo} still partial for run {ctx.run_id}")

        # Earlier diff failures are settled by the refetch
        for repo in checkpoint.repos_failed_in([Phase.DIFF_FETCH]):
            if checkpoint.repo(repo).status == ITEM_PENDING:
                checkpoint.drop_repo(repo)
        self._save_progress(ctx)
        return True

    def _phase_ai_analysis(self, ctx: _RunContext) -> bool:
        engine = self._review_engine(ctx.settings)
        retry_failed = ctx.mode == RestartMode.RETRY
        checkpoint = ctx.checkpoint

        if ctx.refetch_diffs and not self._refetch_sampled_diffs(ctx):
            return False

        with self._db.get_session() as session:
            sampled = [
                str(uid) for (uid,) in session.query(WorkUnit.unit_id).filter(
                    WorkUnit.run_id == ctx.run_id, WorkUnit.is_sampled.is_(True),
                ).all()
            ]
            stage1 = {
                str(r.unit_id): r.status
                for r in session.query(AiReview).filter(
                    AiReview.run_id == ctx.run_id, AiReview.stage == 1,
                ).all()
            }
        checkpoint.unit_progress = {}
        for unit_id in sampled:
            status = stage1.get(unit_id, ITEM_PENDING)
            if status == ITEM_FAILED and retry_failed:
                status = ITEM_PENDING
            checkpoint.unit_progress[unit_id] = status
        checkpoint.recount_units()
        self._save_progress(ctx)

        def _on_unit(unit_id: str, status: str):
            checkpoint.set_unit(unit_id, status)
            checkpoint.message = f"Stage 1: {checkpoint.completed + checkpoint.failed}/{checkpoint.total} units"
            self._save_progress(ctx)

        should_stop = lambda: self._should_stop(ctx.run_id)  # noqa: E731
        stage1_summary = engine.run_stage1(
            str(ctx.run_id), retry_failed=retry_failed, should_stop=should_stop, on_progress=_on_unit,
        )
        if stage1_summary["stopped"]:
            return False

        def _on_stage(stage: int, status: str):
            checkpoint.message = f"Stage {stage}: {status}"
            self._save_progress(ctx)

        force = retry_failed or (stage1_summary["completed"] + stage1_summary["failed"]) > 0
        stages = engine.run_aggregate_stages(
            str(ctx.run_id), force=force, should_stop=should_stop, on_progress=_on_stage,
        )
        if stages["stopped"]:
            return False

        self._reports.synthesize(str(ctx.run_id))

        failed = [
            {"item": unit_id, "phase": Phase.AI_ANALYSIS.value, "error": "stage 1 failed"}
            for unit_id, status in checkpoint.unit_progress.items() if status == ITEM_FAILED
        ]
        failed.extend(
            {"item": f"stage{stage}", "phase": Phase.AI_ANALYSIS.value, "error": "stage failed"}
            for stage in (2, 3, 4) if stages.get(stage) == ITEM_FAILED
        )
        if failed:
            raise PartialFailure(f"AI analysis: {len(failed)} items failed", failed=failed)
        return True
