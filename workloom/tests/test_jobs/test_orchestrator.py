"""Tests for AnalysisOrchestrator running inline on in-memory SQLite.

Tests cover:
- The alice 2024 scenario end to end (2 units, 2 sampled, DONE)
- Validation on create_run
- Status gating for start / pause / cancel / delete / retry
- Pause and cancel mid-phase, then RESUME
- Crash after N of M repos, recovery and RESUME without redoing work
- Repo failures (partial vs. fatal)
- RETRY of failed stage-1 units and partial diffs
- RETRY catch-up for repos that failed before SCORING, phase never rewound
- Failed repos carried through every later checkpoint and into the report
- Per-organization review model
- FULL_RESTART keeps the seed and diff cache, refused when finalized
- Interim reports
"""

import json
import threading
from types import SimpleNamespace
from uuid import UUID

import pytest

from workloom.core.analysis.sources import InMemoryCommitSource, OrgSettings, StaticDiffProvider
from workloom.core.constants import CANCELLED_ERROR, PHASE_ORDER, Phase, RestartMode
from workloom.core.db.models import AnalysisRun, CommitDiff
from workloom.core.errors import RunNotFoundError, RunStateError, ValidationError
from workloom.core.jobs import AnalysisOrchestrator
from workloom.core.report.synthesizer import ReportSynthesizer
from workloom.demo import (
    DEMO_ORG, DEMO_REVIEW, DEMO_USER, DEMO_YEAR, DemoReviewLLM, alice_commits, alice_patches,
)
from workloom.setting import AnalysisSettings


# ── Fixtures ──────────────────────────────────────────────────────────────

SETTINGS = AnalysisSettings().with_overrides({
    "review": {"base_backoff_seconds": 0, "max_attempts": 1, "concurrency": 2},
    "diff": {"max_tries": 1},
})


class SimulatedCrash(BaseException):
    """Escapes every ``except Exception`` like a killed process would."""


class HookedSource(InMemoryCommitSource):
    """Commit source that records list_commits calls and runs a hook."""

    def __init__(self, commits, hook=None):
        super().__init__({DEMO_ORG: commits})
        self.calls = []
        self.hook = hook

    def list_commits(self, org, user, year, repo):
        self.calls.append(repo)
        if self.hook:
            self.hook(repo, self.calls.count(repo))
        return super().list_commits(org, user, year, repo)


def _fail_web(on_calls):
    """Hook failing acme/web on the given list_commits call numbers.

    Call 1 loads commits for METRICS, call 2 clusters, call 3 is a retry.
    """
    def hook(repo, n):
        if repo == "acme/web" and n in on_calls:
            raise RuntimeError("clone timed out")
    return hook


class FakeLLM:

    def __init__(self, fail_when=None, model="fake-llm"):
        self.fail_when = fail_when
        self.model = model
        self.calls = 0
        self._lock = threading.Lock()

    def complete(self, prompt):
        with self._lock:
            self.calls += 1
        if self.fail_when and self.fail_when(prompt):
            raise ConnectionError("provider timeout")
        return SimpleNamespace(text=json.dumps(DEMO_REVIEW))


def _orchestrator(db, source=None, provider=None, llm=None, commits=None):
    commits = commits if commits is not None else alice_commits()
    return AnalysisOrchestrator(
        db,
        source or HookedSource(commits),
        provider or StaticDiffProvider(alice_patches(commits)),
        llm=llm or DemoReviewLLM(),
        settings=SETTINGS,
        diff_backoff_factor=0,
    )


def _create(orch, **options):
    return orch.create_run(DEMO_ORG, DEMO_USER, DEMO_YEAR, options or None)["run_id"]


def _unit_signature(orch, run_id):
    return sorted(
        (u["repo_name"], u["sequence"], u["commit_count"], u["impact_score"], u["is_sampled"])
        for u in orch.list_units(run_id)
    )


def _run_row(db, run_id):
    with db.get_session() as session:
        return session.get(AnalysisRun, UUID(run_id))


# ── Tests: End to End ────────────────────────────────────────────────────


class TestAliceScenario:
    """40 commits in two repos three days apart -> 2 units, both sampled."""

    def test_run_completes(self, db):
        orch = _orchestrator(db)
        run_id = _create(orch)

        status = orch.start(run_id)

        assert status["status"] == "DONE"
        assert status["phase"] == "AI_ANALYSIS"
        assert status["progress"]["message"] == "Completed"
        assert status["is_executing"] is False

        units = orch.list_units(run_id)
        assert len(units) == 2
        assert all(u["is_sampled"] for u in units)
        assert sum(u["commit_count"] for u in units) == 40
        assert units[0]["impact_score"] >= units[1]["impact_score"]

    def test_reviews_and_report(self, db):
        orch = _orchestrator(db)
        run_id = _create(orch)
        orch.start(run_id)

        stage0 = orch.get_reviews(run_id, stage=0)
        assert len(stage0) == 1
        assert len(stage0[0]["result"]["selected_unit_ids"]) == 2
        assert [r["status"] for r in orch.get_reviews(run_id, stage=1)] == ["done", "done"]
        for stage in (2, 3, 4):
            assert orch.get_reviews(run_id, stage=stage)[0]["status"] == "done"

        report = orch.get_report(run_id)
        assert report["is_interim"] is False
        assert report["metrics"]["productivity"]["total_commits"] == 40
        assert report["stats"]["ai_coverage"]["reviewed_units"] == 2
        assert report["strengths"] == DEMO_REVIEW["top_achievements"]

    def test_same_seed_same_units(self, db):
        orch = _orchestrator(db)
        first = _create(orch, sampling_seed="fixed")
        second = _create(orch, sampling_seed="fixed")
        orch.start(first)
        orch.start(second)

        assert _unit_signature(orch, first) == _unit_signature(orch, second)

    def test_diffs_cached_across_runs(self, db):
        provider = StaticDiffProvider(alice_patches(alice_commits()))
        orch = _orchestrator(db, provider=provider)
        orch.start(_create(orch))
        calls = len(provider.calls)

        orch.start(_create(orch))

        assert calls == 40
        assert len(provider.calls) == calls

    def test_report_carries_overall_grade(self, db):
        orch = _orchestrator(db)
        run_id = _create(orch)
        orch.start(run_id)

        report = orch.get_report(run_id)

        assert 6.8 <= report["overall_score"] <= 6.9
        assert report["grade"] == "C"
        assert report["stats"]["failed_repos"] == []

    def test_clustering_progress_reports_unit_estimate(self, db):
        source = HookedSource(alice_commits())
        orch = _orchestrator(db, source=source)
        run_id = _create(orch)
        source.hook = lambda repo, n: orch.pause(run_id) if repo == "acme/web" and n == 2 else None

        paused = orch.start(run_id)

        assert paused["phase"] == "CLUSTERING"
        assert paused["progress"]["workUnitEstimate"] == {"min": 3, "expected": 4, "max": 6, "created": 2}
        assert paused["progress"]["message"] == "Clustered acme/web: 2 of ~4 expected work units"


# ── Tests: Validation ────────────────────────────────────────────────────


class TestValidation:

    @pytest.mark.parametrize("org,user,year", [
        ("", DEMO_USER, DEMO_YEAR),
        (DEMO_ORG, "  ", DEMO_YEAR),
        (DEMO_ORG, DEMO_USER, 1999),
        (DEMO_ORG, DEMO_USER, 9999),
        (DEMO_ORG, DEMO_USER, "2024"),
        (DEMO_ORG, DEMO_USER, True),
    ])
    def test_bad_request_rejected(self, db, org, user, year):
        with pytest.raises(ValidationError):
            _orchestrator(db).create_run(org, user, year)

    def test_user_without_commits_rejected(self, db):
        with pytest.raises(ValidationError, match="No synced commits"):
            _orchestrator(db).create_run(DEMO_ORG, "bob", DEMO_YEAR)

    def test_bad_options_rejected(self, db):
        with pytest.raises(ValidationError, match="Invalid options"):
            _orchestrator(db).create_run(DEMO_ORG, DEMO_USER, DEMO_YEAR, {"sampling": {"top_k": "many"}})

    def test_created_run_is_queued_with_repos(self, db):
        orch = _orchestrator(db)
        status = orch.get_status(_create(orch))

        assert status["status"] == "QUEUED"
        assert [rp["repoName"] for rp in status["repo_progress"]] == ["acme/api", "acme/web"]


# ── Tests: Status Gating ─────────────────────────────────────────────────


class TestStatusGating:

    def test_start_requires_queued(self, db):
        orch = _orchestrator(db)
        run_id = _create(orch)
        orch.start(run_id)

        with pytest.raises(RunStateError):
            orch.start(run_id)

    def test_pause_requires_in_progress(self, db):
        orch = _orchestrator(db)
        with pytest.raises(RunStateError):
            orch.pause(_create(orch))

    def test_cancel_queued_run(self, db):
        orch = _orchestrator(db)
        run_id = _create(orch)

        status = orch.cancel(run_id)

        assert status["status"] == "FAILED"
        assert status["error"] == CANCELLED_ERROR

    def test_cancel_done_run_refused(self, db):
        orch = _orchestrator(db)
        run_id = _create(orch)
        orch.start(run_id)

        with pytest.raises(RunStateError):
            orch.cancel(run_id)

    def test_delete_only_queued_or_failed(self, db):
        orch = _orchestrator(db)
        done = _create(orch)
        orch.start(done)
        with pytest.raises(RunStateError):
            orch.delete(done)

        queued = _create(orch)
        orch.delete(queued)
        with pytest.raises(RunNotFoundError):
            orch.get_status(queued)

    def test_delete_failed_run_cascades(self, db):
        orch = _orchestrator(db)
        run_id = _create(orch)
        orch.start(run_id)
        with db.get_session() as session:
            session.get(AnalysisRun, UUID(run_id)).status = "FAILED"

        orch.delete(run_id)

        with pytest.raises(RunNotFoundError):
            orch.list_units(run_id)
        with db.get_session() as session:
            assert session.query(CommitDiff).count() == 40

    def test_resume_not_allowed_from_done(self, db):
        orch = _orchestrator(db)
        run_id = _create(orch)
        orch.start(run_id)

        with pytest.raises(RunStateError):
            orch.retry(run_id, RestartMode.RESUME)

    def test_unknown_run(self, db):
        orch = _orchestrator(db)
        missing = "00000000-0000-0000-0000-000000000000"
        with pytest.raises(RunNotFoundError):
            orch.get_status(missing)
        with pytest.raises(RunNotFoundError):
            orch.start(missing)


# ── Tests: Pause, Cancel, Resume ─────────────────────────────────────────


class TestPauseAndResume:

    def test_pause_mid_metrics_then_resume(self, db):
        source = HookedSource(alice_commits())
        orch = _orchestrator(db, source=source)
        run_id = _create(orch)
        source.hook = lambda repo, n: orch.pause(run_id) if repo == "acme/api" and n == 1 else None

        paused = orch.start(run_id)

        assert paused["status"] == "PAUSED"
        assert paused["phase"] == "METRICS"
        assert {rp["repoName"]: rp["status"] for rp in paused["repo_progress"]} == {
            "acme/api": "done", "acme/web": "pending",
        }

        resumed = orch.retry(run_id, RestartMode.RESUME)

        assert resumed["status"] == "DONE"
        assert len(orch.list_units(run_id)) == 2

    def test_cancel_mid_run_is_resumable(self, db):
        source = HookedSource(alice_commits())
        orch = _orchestrator(db, source=source)
        run_id = _create(orch)
        source.hook = lambda repo, n: orch.cancel(run_id) if repo == "acme/api" and n == 1 else None

        cancelled = orch.start(run_id)

        assert cancelled["status"] == "FAILED"
        assert cancelled["error"] == CANCELLED_ERROR

        source.hook = None
        assert orch.retry(run_id, RestartMode.RESUME)["status"] == "DONE"

    def test_crash_after_first_repo_resumes_remaining_repo_only(self, db):
        def crash_on_second_clustering_call(repo, n):
            if repo == "acme/web" and n == 2:
                raise SimulatedCrash()

        source = HookedSource(alice_commits(), hook=crash_on_second_clustering_call)
        orch = _orchestrator(db, source=source)
        run_id = _create(orch)

        with pytest.raises(SimulatedCrash):
            orch.start(run_id)

        interrupted = orch.get_status(run_id)
        assert interrupted["status"] == "IN_PROGRESS"
        assert interrupted["phase"] == "CLUSTERING"
        assert interrupted["is_executing"] is False

        assert orch.recover_interrupted() == [run_id]
        assert orch.get_status(run_id)["status"] == "PAUSED"

        source.hook = None
        mark = len(source.calls)
        status = orch.retry(run_id, RestartMode.RESUME)

        assert status["status"] == "DONE"
        assert source.calls[mark:] == ["acme/web"]
        units = orch.list_units(run_id)
        assert sorted(u["repo_name"] for u in units) == ["acme/api", "acme/web"]

    def test_interim_report_while_paused(self, db):
        source = HookedSource(alice_commits())
        orch = _orchestrator(db, source=source)
        run_id = _create(orch)
        source.hook = lambda repo, n: orch.pause(run_id) if repo == "acme/web" and n == 2 else None
        orch.start(run_id)

        report = orch.build_interim_report(run_id)

        assert report["is_interim"] is True
        assert report["stats"]["ai_coverage"]["reviewed_units"] == 0

    def test_interim_report_refused_when_done(self, db):
        orch = _orchestrator(db)
        run_id = _create(orch)
        orch.start(run_id)

        with pytest.raises(RunStateError):
            orch.build_interim_report(run_id)


# ── Tests: Failures ──────────────────────────────────────────────────────


class TestFailures:

    def test_one_repo_failing_is_partial(self, db):
        def fail_web(repo, n):
            if repo == "acme/web":
                raise RuntimeError("repository unavailable")

        orch = _orchestrator(db, source=HookedSource(alice_commits(), hook=fail_web))
        run_id = _create(orch)

        status = orch.start(run_id)

        assert status["status"] == "DONE"
        assert "failed items" in status["progress"]["message"]
        assert [u["repo_name"] for u in orch.list_units(run_id)] == ["acme/api"]

    def test_every_repo_failing_is_fatal(self, db):
        def fail_all(repo, n):
            raise RuntimeError("git host down")

        orch = _orchestrator(db, source=HookedSource(alice_commits(), hook=fail_all))
        run_id = _create(orch)

        status = orch.start(run_id)

        assert status["status"] == "FAILED"
        assert "every repository failed" in status["error"]

    def test_retry_reruns_only_failed_units(self, db):
        llm = FakeLLM(fail_when=lambda p: "Repository: acme/web" in p)
        orch = _orchestrator(db, llm=llm)
        run_id = _create(orch)

        first = orch.start(run_id)
        assert first["status"] == "DONE"
        assert "failed items" in first["progress"]["message"]
        assert sorted(r["status"] for r in orch.get_reviews(run_id, stage=1)) == ["done", "failed"]

        llm.fail_when = None
        calls = llm.calls
        second = orch.retry(run_id, RestartMode.RETRY)

        assert second["status"] == "DONE"
        assert second["progress"]["message"] == "Completed"
        assert [r["status"] for r in orch.get_reviews(run_id, stage=1)] == ["done", "done"]
        # one stage-1 unit plus stages 2-4
        assert llm.calls - calls == 4

    def test_partial_diff_refetched_on_retry(self, db):
        commits = alice_commits()
        web_sha = next(c.sha for c in commits if c.repo_name == "acme/web")
        provider = StaticDiffProvider(alice_patches(commits), failures={("acme/web", web_sha): -1})
        orch = _orchestrator(db, provider=provider, commits=commits)
        run_id = _create(orch)

        assert orch.start(run_id)["status"] == "DONE"
        with db.get_session() as session:
            row = session.query(CommitDiff).filter(CommitDiff.sha == web_sha).one()
            assert row.is_partial is True

        provider._failures.clear()
        orch.retry(run_id, RestartMode.RETRY)

        assert provider.calls.count(("acme/web", web_sha)) == 2
        with db.get_session() as session:
            row = session.query(CommitDiff).filter(CommitDiff.sha == web_sha).one()
            assert row.is_partial is False

    def test_failed_repo_kept_in_final_progress_and_report(self, db):
        source = HookedSource(alice_commits(), hook=_fail_web(on_calls=(2,)))
        orch = _orchestrator(db, source=source)
        run_id = _create(orch)

        status = orch.start(run_id)

        assert status["status"] == "DONE"
        assert status["phase"] == "AI_ANALYSIS"
        assert status["progress"]["message"] == "Completed with 1 failed items"
        assert status["repo_progress"] == [{
            "repoName": "acme/web", "status": "failed",
            "error": "clone timed out", "failedPhase": "CLUSTERING",
        }]
        assert status["progress"]["failedItems"] == [
            {"item": "acme/web", "phase": "CLUSTERING", "error": "clone timed out"},
        ]
        assert orch.get_report(run_id)["stats"]["failed_repos"] == [
            {"repo": "acme/web", "phase": "CLUSTERING", "error": "clone timed out"},
        ]

    def test_failures_survive_pause_and_resume(self, db):
        source = HookedSource(alice_commits())
        orch = _orchestrator(db, source=source)
        run_id = _create(orch)

        def pause_then_fail(repo, n):
            if repo == "acme/web" and n == 2:
                orch.pause(run_id)
                raise RuntimeError("clone timed out")

        source.hook = pause_then_fail
        paused = orch.start(run_id)

        assert paused["status"] == "PAUSED"
        assert paused["progress"]["failedItems"][0]["item"] == "acme/web"

        source.hook = None
        status = orch.retry(run_id, RestartMode.RESUME)

        assert status["status"] == "DONE"
        assert status["progress"]["message"] == "Completed with 1 failed items"
        assert [rp["repoName"] for rp in status["repo_progress"]] == ["acme/web"]
        assert [u["repo_name"] for u in orch.list_units(run_id)] == ["acme/api"]


# ── Tests: Retry Catch-Up ────────────────────────────────────────────────


class TestRetryCatchUp:
    """RETRY from DONE picks up repos that never produced work units."""

    def test_repo_failed_in_clustering_is_clustered_on_retry(self, db):
        source = HookedSource(alice_commits(), hook=_fail_web(on_calls=(2,)))
        orch = _orchestrator(db, source=source)
        run_id = _create(orch)
        orch.start(run_id)
        assert [u["repo_name"] for u in orch.list_units(run_id)] == ["acme/api"]

        source.hook = None
        status = orch.retry(run_id, RestartMode.RETRY)

        assert status["status"] == "DONE"
        assert status["progress"]["message"] == "Completed"
        assert status["repo_progress"] == []
        units = orch.list_units(run_id)
        assert sorted(u["repo_name"] for u in units) == ["acme/api", "acme/web"]
        assert all(u["impact_score"] is not None and u["is_sampled"] for u in units)
        assert [r["status"] for r in orch.get_reviews(run_id, stage=1)] == ["done", "done"]
        assert len(orch.get_reviews(run_id, stage=0)[0]["result"]["selected_unit_ids"]) == 2
        assert orch.get_report(run_id)["stats"]["failed_repos"] == []

    def test_retry_never_moves_phase_back(self, db):
        commits = alice_commits()
        api_sha = next(c.sha for c in commits if c.repo_name == "acme/api")
        provider = StaticDiffProvider(alice_patches(commits), failures={("acme/api", api_sha): -1})
        source = HookedSource(commits, hook=_fail_web(on_calls=(2,)))
        orch = _orchestrator(db, source=source, provider=provider, commits=commits)
        run_id = _create(orch)
        orch.start(run_id)

        source.hook = None
        provider._failures.clear()
        phases = []
        save = orch._save_progress

        def recording_save(ctx, phase=None, **fields):
            save(ctx, phase, **fields)
            phases.append(_run_row(db, run_id).phase)

        orch._save_progress = recording_save
        status = orch.retry(run_id, RestartMode.RETRY)

        assert status["status"] == "DONE"
        order = [PHASE_ORDER.index(Phase(p)) for p in phases]
        assert order and order == sorted(order)
        assert min(order) == PHASE_ORDER.index(Phase.AI_ANALYSIS)
        # the partial diff is refetched inside AI_ANALYSIS
        assert provider.calls.count(("acme/api", api_sha)) == 2

    def test_repo_failing_again_stays_failed(self, db):
        source = HookedSource(alice_commits(), hook=_fail_web(on_calls=(2, 3)))
        orch = _orchestrator(db, source=source)
        run_id = _create(orch)
        orch.start(run_id)

        status = orch.retry(run_id, RestartMode.RETRY)

        assert status["status"] == "DONE"
        assert status["phase"] == "AI_ANALYSIS"
        assert status["progress"]["message"] == "Completed with 1 failed items"
        assert status["repo_progress"][0]["failedPhase"] == "CLUSTERING"
        assert [u["repo_name"] for u in orch.list_units(run_id)] == ["acme/api"]

    def test_repo_failed_in_metrics_refreshes_metrics(self, db):
        source = HookedSource(alice_commits(), hook=_fail_web(on_calls=(1,)))
        orch = _orchestrator(db, source=source)
        run_id = _create(orch)
        orch.start(run_id)
        assert orch.get_report(run_id)["metrics"]["productivity"]["total_commits"] == 20

        source.hook = None
        status = orch.retry(run_id, RestartMode.RETRY)

        assert status["status"] == "DONE"
        assert len(orch.list_units(run_id)) == 2
        assert orch.get_report(run_id)["metrics"]["productivity"]["total_commits"] == 40


# ── Tests: Org Review Model ──────────────────────────────────────────────


class TestOrgReviewModel:

    def _orchestrator(self, db, built, org_settings=None):
        def factory(review):
            built.append(review.model)
            return FakeLLM(model=review.model)

        commits = alice_commits()
        return AnalysisOrchestrator(
            db,
            HookedSource(commits),
            StaticDiffProvider(alice_patches(commits)),
            llm=FakeLLM(),
            settings=SETTINGS,
            org_settings=org_settings,
            diff_backoff_factor=0,
            llm_factory=factory,
        )

    def test_org_model_reviews_the_run(self, db):
        built = []
        orch = self._orchestrator(
            db, built, org_settings={DEMO_ORG: OrgSettings(default_review_model="org-model")},
        )
        run_id = _create(orch)

        assert orch.start(run_id)["status"] == "DONE"

        assert built == ["org-model"]
        assert {r["model"] for r in orch.get_reviews(run_id)} - {None} == {"org-model"}

    def test_default_model_uses_configured_llm(self, db):
        built = []
        orch = self._orchestrator(db, built)
        run_id = _create(orch)
        orch.start(run_id)

        assert built == []
        assert {r["model"] for r in orch.get_reviews(run_id, stage=1)} == {"fake-llm"}




# ── Tests: Full Restart ──────────────────────────────────────────────────


class TestFullRestart:

    def test_keeps_seed_and_diff_cache(self, db):
        provider = StaticDiffProvider(alice_patches(alice_commits()))
        orch = _orchestrator(db, provider=provider)
        run_id = _create(orch)
        orch.start(run_id)
        seed = _run_row(db, run_id).sampling_seed
        before = _unit_signature(orch, run_id)
        calls = len(provider.calls)

        status = orch.retry(run_id, RestartMode.FULL_RESTART)

        assert status["status"] == "DONE"
        assert _run_row(db, run_id).sampling_seed == seed
        assert _unit_signature(orch, run_id) == before
        assert len(orch.get_reviews(run_id, stage=1)) == 2
        assert len(provider.calls) == calls

    def test_refused_when_report_finalized(self, db):
        orch = _orchestrator(db)
        run_id = _create(orch)
        orch.start(run_id)
        ReportSynthesizer(db).finalize(orch.get_report(run_id)["report_id"])

        with pytest.raises(RunStateError, match="finalized"):
            orch.retry(run_id, RestartMode.FULL_RESTART)

    def test_finalized_report_survives_retry(self, db):
        orch = _orchestrator(db)
        run_id = _create(orch)
        orch.start(run_id)
        report = ReportSynthesizer(db).finalize(orch.get_report(run_id)["report_id"])

        orch.retry(run_id, RestartMode.RETRY)

        after = orch.get_report(run_id)
        assert after["is_finalized"] is True
        assert after["updated_at"] == report["updated_at"]
