"""Progress checkpoint persisted on AnalysisRun.progress.

The document is the resume contract: it is rewritten after every repo,
commit batch and stage-1 unit, and read back through
``ProgressCheckpoint.from_dict`` which tolerates missing and unknown
fields so older checkpoints keep loading.

Failures survive phase changes: failed ``repoProgress`` entries keep the
phase they failed in and ``failedItems`` accumulates every failed repo,
unit or stage until a RETRY clears them.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..constants import (
    ITEM_DONE,
    ITEM_FAILED,
    ITEM_PENDING,
    PROGRESS_SCHEMA_VERSION,
    Phase,
)
from ..errors import FatalFailure

COMMITS_PER_UNIT = 10


@dataclass
class WorkUnitPrediction:
    """Expected work unit count range, known before clustering finishes."""
    min: int
    expected: int
    max: int

    def to_dict(self) -> Dict[str, int]:
        return {"min": self.min, "expected": self.expected, "max": self.max}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkUnitPrediction":
        return cls(min=int(data["min"]), expected=int(data["expected"]), max=int(data["max"]))


def predict_work_unit_count(total_commits: int, repo_count: int) -> WorkUnitPrediction:
    """Estimate how many units clustering will produce.

    Roughly one unit per ten commits, never fewer than one per repo.
    """
    base = math.ceil(total_commits / COMMITS_PER_UNIT)
    low = max(repo_count + 1, math.floor(base * 0.65))
    high = math.ceil(base * 1.4)
    return WorkUnitPrediction(min=max(1, low), expected=max(1, base), max=max(1, high))


def adjust_prediction(current: WorkUnitPrediction, actual: int) -> WorkUnitPrediction:
    """Raise the estimate by 30% once the actual count passes 90% of max."""
    if actual > current.max * 0.9:
        return WorkUnitPrediction(
            min=current.min,
            expected=math.ceil(current.expected * 1.3),
            max=math.ceil(current.max * 1.3),
        )
    return current


@dataclass
class RepoProgress:
    repo_name: str
    status: str = ITEM_PENDING
    commit_count: Optional[int] = None
    error: Optional[str] = None
    failed_phase: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"repoName": self.repo_name, "status": self.status}
        if self.commit_count is not None:
            data["commitCount"] = self.commit_count
        if self.error:
            data["error"] = self.error
        if self.failed_phase:
            data["failedPhase"] = self.failed_phase
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepoProgress":
        return cls(
            repo_name=data.get("repoName") or data.get("repo_name") or "",
            status=data.get("status", ITEM_PENDING),
            commit_count=data.get("commitCount", data.get("commit_count")),
            error=data.get("error"),
            failed_phase=data.get("failedPhase", data.get("failed_phase")),
        )


@dataclass
class ProgressCheckpoint:
    """Resumable progress for one run's current phase."""
    phase: str = Phase.METRICS.value
    total: int = 0
    completed: int = 0
    failed: int = 0
    message: str = ""
    repo_progress: List[RepoProgress] = field(default_factory=list)
    unit_progress: Dict[str, str] = field(default_factory=dict)
    failed_items: List[Dict[str, Any]] = field(default_factory=list)
    unit_estimate: Optional[WorkUnitPrediction] = None
    units_created: int = 0
    schema_version: int = PROGRESS_SCHEMA_VERSION

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 0
        return min(100, int(round((self.completed + self.failed) * 100 / self.total)))

    # ── Repo bookkeeping ───────────────────────────────────────────────

    def repo(self, repo_name: str) -> Optional[RepoProgress]:
        for rp in self.repo_progress:
            if rp.repo_name == repo_name:
                return rp
        return None

    def ensure_repos(self, repo_names: List[str]):
        """Add pending entries for repos not yet tracked."""
        for name in repo_names:
            if self.repo(name) is None:
                self.repo_progress.append(RepoProgress(repo_name=name))

    def drop_repo(self, repo_name: str):
        self.repo_progress = [rp for rp in self.repo_progress if rp.repo_name != repo_name]

    def set_repo(self, repo_name: str, status: str, commit_count: Optional[int] = None,
                 error: Optional[str] = None, failed_phase: Optional[str] = None):
        rp = self.repo(repo_name)
        if rp is None:
            rp = RepoProgress(repo_name=repo_name)
            self.repo_progress.append(rp)
        rp.status = status
        if commit_count is not None:
            rp.commit_count = commit_count
        rp.error = error
        if status == ITEM_FAILED:
            rp.failed_phase = failed_phase or self.phase
        elif status == ITEM_DONE:
            rp.failed_phase = None
        self.recount_repos()

    def repos_with_status(self, status: str) -> List[str]:
        return [rp.repo_name for rp in self.repo_progress if rp.status == status]

    def repos_failed_in(self, phases) -> List[str]:
        """Repos not yet done whose last failure happened in one of ``phases``."""
        phases = {p.value if isinstance(p, Phase) else p for p in phases}
        return [
            rp.repo_name for rp in self.repo_progress
            if rp.status != ITEM_DONE and rp.failed_phase in phases
        ]

    def recount_repos(self):
        self.total = len(self.repo_progress)
        self.completed = sum(1 for rp in self.repo_progress if rp.status == ITEM_DONE)
        self.failed = sum(1 for rp in self.repo_progress if rp.status == ITEM_FAILED)

    # ── Unit bookkeeping ───────────────────────────────────────────────

    def set_unit(self, unit_id: str, status: str):
        self.unit_progress[unit_id] = status
        self.recount_units()

    def recount_units(self):
        self.total = len(self.unit_progress)
        self.completed = sum(1 for s in self.unit_progress.values() if s == ITEM_DONE)
        self.failed = sum(1 for s in self.unit_progress.values() if s == ITEM_FAILED)

    # ── Failures ───────────────────────────────────────────────────────

    def record_failures(self, failed: List[Dict[str, Any]]):
        """Append failed items, one entry per (item, phase)."""
        seen = {(f.get("item"), f.get("phase")) for f in self.failed_items}
        for item in failed:
            key = (item.get("item"), item.get("phase"))
            if key not in seen:
                self.failed_items.append(dict(item))
                seen.add(key)

    def reset_failed(self):
        """Flip failed repos/units back to pending (RETRY).

        ``failed_phase`` is kept so the retry knows where each repo
        has to be picked up again.
        """
        for rp in self.repo_progress:
            if rp.status == ITEM_FAILED:
                rp.status = ITEM_PENDING
                rp.error = None
        for unit_id, status in list(self.unit_progress.items()):
            if status == ITEM_FAILED:
                self.unit_progress[unit_id] = ITEM_PENDING
        self.failed_items = []
        self.failed = 0

    # ── Work unit estimate ─────────────────────────────────────────────

    def add_created_units(self, count: int):
        self.units_created += count
        if self.unit_estimate is not None:
            self.unit_estimate = adjust_prediction(self.unit_estimate, self.units_created)

    # ── Serialization ──────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "schemaVersion": self.schema_version,
            "phase": self.phase,
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "percentage": self.percentage,
            "message": self.message,
            "repoProgress": [rp.to_dict() for rp in self.repo_progress],
        }
        if self.unit_progress:
            data["unitProgress"] = dict(self.unit_progress)
        if self.failed_items:
            data["failedItems"] = [dict(f) for f in self.failed_items]
        if self.unit_estimate is not None:
            data["workUnitEstimate"] = {**self.unit_estimate.to_dict(), "created": self.units_created}
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProgressCheckpoint":
        """Load a checkpoint, filling defaults for absent fields.

        Raises:
            FatalFailure: if the document is not a mapping or its counters
                are not integers.
        """
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise FatalFailure(f"Corrupt progress checkpoint: {type(data).__name__}")
        try:
            estimate = data.get("workUnitEstimate")
            return cls(
                phase=data.get("phase", Phase.METRICS.value),
                total=int(data.get("total", 0)),
                completed=int(data.get("completed", 0)),
                failed=int(data.get("failed", 0)),
                message=data.get("message", ""),
                repo_progress=[RepoProgress.from_dict(rp) for rp in data.get("repoProgress") or []],
                unit_progress=dict(data.get("unitProgress") or {}),
                failed_items=[dict(f) for f in data.get("failedItems") or []],
                unit_estimate=WorkUnitPrediction.from_dict(estimate) if estimate else None,
                units_created=int(estimate.get("created", 0)) if estimate else 0,
                schema_version=int(data.get("schemaVersion", PROGRESS_SCHEMA_VERSION)),
            )
        except (TypeError, ValueError, AttributeError, KeyError) as e:
            raise FatalFailure(f"Corrupt progress checkpoint: {e}") from e
