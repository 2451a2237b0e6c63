"""Unit tests for ProgressCheckpoint / RepoProgress."""

import pytest

from workloom.core.constants import ITEM_DONE, ITEM_FAILED, ITEM_PENDING
from workloom.core.errors import FatalFailure
from workloom.core.jobs.progress import (
    ProgressCheckpoint,
    RepoProgress,
    WorkUnitPrediction,
    adjust_prediction,
    predict_work_unit_count,
)


# ── Tests: Repo Progress ─────────────────────────────────────────────────


class TestRepoProgress:

    def test_counts_follow_repo_status(self):
        cp = ProgressCheckpoint(phase="METRICS")
        cp.ensure_repos(["acme/api", "acme/web", "acme/infra"])
        cp.set_repo("acme/api", ITEM_DONE, commit_count=20)
        cp.set_repo("acme/web", ITEM_FAILED, error="timeout")

        assert (cp.total, cp.completed, cp.failed) == (3, 1, 1)
        assert cp.percentage == 67
        assert cp.repos_with_status(ITEM_PENDING) == ["acme/infra"]
        assert cp.repo("acme/api").commit_count == 20

    def test_ensure_repos_keeps_existing_entries(self):
        cp = ProgressCheckpoint()
        cp.set_repo("acme/api", ITEM_DONE)
        cp.ensure_repos(["acme/api", "acme/web"])

        assert [rp.repo_name for rp in cp.repo_progress] == ["acme/api", "acme/web"]
        assert cp.repo("acme/api").status == ITEM_DONE

    def test_reset_failed(self):
        cp = ProgressCheckpoint()
        cp.set_repo("acme/api", ITEM_FAILED, error="boom")
        cp.set_unit("u1", ITEM_FAILED)
        cp.set_unit("u2", ITEM_DONE)

        cp.reset_failed()

        assert cp.repo("acme/api").status == ITEM_PENDING
        assert cp.repo("acme/api").error is None
        assert cp.unit_progress == {"u1": ITEM_PENDING, "u2": ITEM_DONE}
        assert cp.failed == 0

    def test_percentage_with_no_items(self):
        assert ProgressCheckpoint().percentage == 0


# ── Tests: Failure Tracking ──────────────────────────────────────────────


class TestFailureTracking:

    def test_failed_repo_remembers_its_phase(self):
        cp = ProgressCheckpoint(phase="CLUSTERING")
        cp.set_repo("acme/web", ITEM_FAILED, error="timeout")
        cp.set_repo("acme/infra", ITEM_FAILED, error="gone", failed_phase="METRICS")

        assert cp.repo("acme/web").failed_phase == "CLUSTERING"
        assert cp.repos_failed_in(["METRICS"]) == ["acme/infra"]

        cp.set_repo("acme/web", ITEM_DONE)
        assert cp.repo("acme/web").failed_phase is None

    def test_reset_keeps_failed_phase(self):
        cp = ProgressCheckpoint(phase="AI_ANALYSIS")
        cp.set_repo("acme/web", ITEM_FAILED, error="boom", failed_phase="CLUSTERING")
        cp.record_failures([{"item": "acme/web", "phase": "CLUSTERING", "error": "boom"}])

        cp.reset_failed()

        assert cp.repo("acme/web").status == ITEM_PENDING
        assert cp.repos_failed_in(["CLUSTERING"]) == ["acme/web"]
        assert cp.failed_items == []

    def test_record_failures_dedupes_item_and_phase(self):
        cp = ProgressCheckpoint()
        failure = {"item": "acme/web", "phase": "CLUSTERING", "error": "boom"}

        cp.record_failures([failure])
        cp.record_failures([failure, {**failure, "phase": "DIFF_FETCH"}])

        assert [(f["item"], f["phase"]) for f in cp.failed_items] == [
            ("acme/web", "CLUSTERING"), ("acme/web", "DIFF_FETCH"),
        ]

    def test_failures_survive_serialization(self):
        cp = ProgressCheckpoint(phase="SCORING")
        cp.set_repo("acme/web", ITEM_FAILED, error="boom", failed_phase="CLUSTERING")
        cp.record_failures([{"item": "acme/web", "phase": "CLUSTERING", "error": "boom"}])

        data = cp.to_dict()
        loaded = ProgressCheckpoint.from_dict(data)

        assert data["repoProgress"][0]["failedPhase"] == "CLUSTERING"
        assert data["failedItems"][0]["item"] == "acme/web"
        assert loaded.repo("acme/web").failed_phase == "CLUSTERING"
        assert loaded.failed_items == cp.failed_items

    def test_no_failed_items_key_when_clean(self):
        assert "failedItems" not in ProgressCheckpoint().to_dict()


# ── Tests: Work Unit Estimate ────────────────────────────────────────────


class TestWorkUnitEstimate:

    def test_prediction_from_commit_count(self):
        assert predict_work_unit_count(40, 2) == WorkUnitPrediction(min=3, expected=4, max=6)
        assert predict_work_unit_count(130, 3) == WorkUnitPrediction(min=8, expected=13, max=19)

    def test_prediction_never_below_one_unit_per_repo(self):
        prediction = predict_work_unit_count(12, 5)

        assert prediction.min == 6
        assert prediction.expected == 2

    def test_adjust_raises_estimate_near_max(self):
        current = WorkUnitPrediction(min=3, expected=4, max=6)

        assert adjust_prediction(current, 5) == current
        assert adjust_prediction(current, 6) == WorkUnitPrediction(min=3, expected=6, max=8)

    def test_created_units_adjust_estimate(self):
        cp = ProgressCheckpoint(phase="CLUSTERING", unit_estimate=WorkUnitPrediction(3, 4, 6))

        cp.add_created_units(2)
        assert cp.unit_estimate.expected == 4
        cp.add_created_units(4)

        assert cp.units_created == 6
        assert cp.unit_estimate == WorkUnitPrediction(min=3, expected=6, max=8)

    def test_estimate_serialized_with_created_count(self):
        cp = ProgressCheckpoint(phase="CLUSTERING", unit_estimate=WorkUnitPrediction(3, 4, 6))
        cp.add_created_units(1)

        data = cp.to_dict()
        loaded = ProgressCheckpoint.from_dict(data)

        assert data["workUnitEstimate"] == {"min": 3, "expected": 4, "max": 6, "created": 1}
        assert loaded.unit_estimate == cp.unit_estimate
        assert loaded.units_created == 1


# ── Tests: Serialization ─────────────────────────────────────────────────


class TestSerialization:

    def test_to_dict_uses_camel_case(self):
        cp = ProgressCheckpoint(phase="AI_ANALYSIS", message="reviewing")
        cp.set_unit("u1", ITEM_DONE)

        data = cp.to_dict()

        assert data["schemaVersion"] == 1
        assert data["unitProgress"] == {"u1": ITEM_DONE}
        assert data["percentage"] == 100
        assert data["repoProgress"] == []

    def test_round_trip_preserves_repos(self):
        cp = ProgressCheckpoint(phase="CLUSTERING")
        cp.set_repo("acme/api", ITEM_DONE, commit_count=5)

        loaded = ProgressCheckpoint.from_dict(cp.to_dict())

        assert loaded.phase == "CLUSTERING"
        assert loaded.repo("acme/api") == RepoProgress("acme/api", ITEM_DONE, 5, None)

    def test_missing_fields_get_defaults(self):
        loaded = ProgressCheckpoint.from_dict({"phase": "SCORING", "futureField": True})

        assert loaded.total == 0
        assert loaded.repo_progress == []
        assert ProgressCheckpoint.from_dict(None).phase == "METRICS"

    def test_snake_case_repo_entries_accepted(self):
        rp = RepoProgress.from_dict({"repo_name": "acme/api", "commit_count": 3})
        assert rp.repo_name == "acme/api"
        assert rp.commit_count == 3

    def test_corrupt_documents_raise_fatal(self):
        with pytest.raises(FatalFailure):
            ProgressCheckpoint.from_dict(["not", "a", "dict"])
        with pytest.raises(FatalFailure):
            ProgressCheckpoint.from_dict({"total": "many"})
