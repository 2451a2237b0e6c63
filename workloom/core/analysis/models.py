"""Data contracts for the analysis pipeline.

All structured types passed between metrics, clustering, scoring and
sampling. Kept as dataclasses (not ORM models) so the algorithms stay
pure functions that can be tested without a database.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def normalize_timestamp(value: datetime) -> datetime:
    """Convert aware datetimes to naive UTC; leave naive ones as they are."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class WorkType(Enum):
    """Classification of a work unit (declaration order = tie-break priority)."""
    BUGFIX = "bugfix"
    FEATURE = "feature"
    REFACTOR = "refactor"
    CHORE = "chore"
    DOCS = "docs"
    TEST = "test"


class SpecialCaseKind(Enum):
    HOTFIX = "hotfix"
    REVERT = "revert"


class SelectionCategory(Enum):
    TOP_IMPACT = "top_impact"
    RANDOM = "random"
    SPECIAL_CASE = "special_case"


@dataclass
class FileChange:
    """A changed path within a commit."""
    path: str
    additions: int = 0
    deletions: int = 0

    @property
    def changes(self) -> int:
        return self.additions + self.deletions


@dataclass
class CommitRecord:
    """A commit as delivered by the commit source."""
    sha: str
    author_login: str
    committed_at: datetime
    repo_name: str
    message: str = ""
    additions: int = 0
    deletions: int = 0
    files: List[FileChange] = field(default_factory=list)

    def __post_init__(self):
        self.committed_at = normalize_timestamp(self.committed_at)
        self.files = [
            f if isinstance(f, FileChange) else FileChange(**f)
            for f in self.files
        ]

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]

    @property
    def total_changes(self) -> int:
        return self.additions + self.deletions

    def files_to_json(self) -> List[Dict[str, Any]]:
        return [asdict(f) for f in self.files]


@dataclass
class FilePatch:
    """A per-file patch returned by the diff provider."""
    path: str
    patch: str = ""
    additions: int = 0
    deletions: int = 0
    status: str = "modified"


@dataclass
class WorkUnitDraft:
    """A cluster produced by the clusterer, before persistence."""
    repo_name: str
    user_login: str
    sequence: int
    commits: List[CommitRecord]
    work_type: WorkType
    primary_paths: List[str] = field(default_factory=list)
    special_case: Optional[SpecialCaseKind] = None
    title: str = ""

    @property
    def start_at(self) -> datetime:
        return self.commits[0].committed_at

    @property
    def end_at(self) -> datetime:
        return self.commits[-1].committed_at

    @property
    def additions(self) -> int:
        return sum(c.additions for c in self.commits)

    @property
    def deletions(self) -> int:
        return sum(c.deletions for c in self.commits)

    @property
    def shas(self) -> List[str]:
        return [c.sha for c in self.commits]


@dataclass
class ClusteringStats:
    total_commits: int = 0
    total_units: int = 0
    avg_commits_per_unit: float = 0.0
    max_commits_per_unit: int = 0
    single_commit_units: int = 0
    special_case_units: int = 0
    work_type_distribution: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScoringInput:
    """What the scorer needs to know about one unit."""
    unit_id: str
    files: List[FileChange]
    special_case: Optional[SpecialCaseKind] = None

    @property
    def total_changes(self) -> int:
        return sum(f.changes for f in self.files)


@dataclass
class ImpactScore:
    """Bounded score plus its auditable breakdown."""
    score: float
    factors: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SampleCandidate:
    """A scored unit as seen by the sampler."""
    unit_id: str
    impact_score: float
    repo_name: str
    sequence: int
    start_at: datetime
    is_special_case: bool = False
    special_case_kind: Optional[str] = None


@dataclass
class SelectionReason:
    unit_id: str
    reason: str
    category: SelectionCategory

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "reason": self.reason,
            "category": self.category.value,
        }


@dataclass
class SamplingResult:
    """Stage 0 payload: the sampled unit ids and why each was picked."""
    selected_unit_ids: List[str]
    selection_reasons: List[SelectionReason]
    seed: str
    total_candidates: int
    strategy: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selected_unit_ids": list(self.selected_unit_ids),
            "selection_reasons": [r.to_dict() for r in self.selection_reasons],
            "seed": self.seed,
            "total_candidates": self.total_candidates,
            "strategy": dict(self.strategy),
        }
