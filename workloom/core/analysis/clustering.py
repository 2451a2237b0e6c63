"""Work unit clustering: group a developer's commits into logical units.

Streaming scan per repository, one open cluster at a time:

  1. Sort the repo's commits by (committed_at, sha)
  2. For each commit compute the gap to the cluster's last member and the
     Jaccard overlap of its directory keys with the cluster's key set
  3. Extend when (gap <= max_time_gap AND overlap >= min_similarity)
     or gap <= rapid_fire; otherwise close and seed a new cluster
  4. Hotfix/revert commits always seed their own unit, tagged as a
     special case, and nothing is merged into that unit afterwards

Membership is purely deterministic. Titles are descriptive only.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .models import (
    ClusteringStats, CommitRecord, SpecialCaseKind, WorkType, WorkUnitDraft,
)

logger = logging.getLogger(__name__)

# Defaults; overridden by ClusteringSettings
DEFAULT_MAX_TIME_GAP_HOURS = 8.0
DEFAULT_RAPID_FIRE_MINUTES = 60.0
DEFAULT_MIN_PATH_SIMILARITY = 0.3
DEFAULT_MAX_COMMITS_PER_UNIT = 50
PRIMARY_PATH_LIMIT = 5

REVERT_PATTERN = re.compile(r'^revert\b|\brevert\s+"', re.IGNORECASE)
HOTFIX_PATTERN = re.compile(r"\bhot-?fix\b|\bemergency\b|\burgent fix\b", re.IGNORECASE)

CONVENTIONAL_PREFIX = re.compile(r"^(\w+)(\(.+?\))?!?:", re.IGNORECASE)
_PREFIX_TO_TYPE = {
    "feat": WorkType.FEATURE,
    "feature": WorkType.FEATURE,
    "fix": WorkType.BUGFIX,
    "bugfix": WorkType.BUGFIX,
    "hotfix": WorkType.BUGFIX,
    "refactor": WorkType.REFACTOR,
    "perf": WorkType.REFACTOR,
    "style": WorkType.REFACTOR,
    "docs": WorkType.DOCS,
    "test": WorkType.TEST,
    "tests": WorkType.TEST,
    "chore": WorkType.CHORE,
    "build": WorkType.CHORE,
    "ci": WorkType.CHORE,
    "deps": WorkType.CHORE,
    "revert": WorkType.BUGFIX,
}

# Checked in tie-break priority order; first hit wins
WORK_TYPE_KEYWORDS = (
    (WorkType.BUGFIX, ("fix", "bug", "hotfix", "patch", "resolve", "issue", "error")),
    (WorkType.FEATURE, ("feat", "feature", "add", "implement", "create", "introduce", "support")),
    (WorkType.REFACTOR, ("refactor", "cleanup", "clean up", "improve", "optimize", "simplify", "rename")),
    (WorkType.CHORE, ("chore", "deps", "dependency", "dependencies", "upgrade", "bump", "release", "format", "lint")),
    (WorkType.DOCS, ("docs", "documentation", "readme", "changelog", "comment")),
    (WorkType.TEST, ("test", "tests", "testing", "spec", "coverage")),
)
_KEYWORD_PATTERNS = [
    (wt, re.compile(r"\b(" + "|".join(re.escape(k) for k in kws) + r")(?:e?s|e?d|ing)?\b", re.IGNORECASE))
    for wt, kws in WORK_TYPE_KEYWORDS
]

_TEST_PATH = re.compile(r"(^|/)(tests?|__tests__|spec)/|\.(test|spec)\.|(^|/)test_[^/]+$|_test\.\w+$")
_DOC_PATH = re.compile(r"\.(md|rst|txt|adoc)$|(^|/)docs?/", re.IGNORECASE)
_CONFIG_PATH = re.compile(
    r"\.(ya?ml|toml|ini|cfg|conf|lock)$|(^|/)(package\.json|Dockerfile|Makefile|\.github/)",
    re.IGNORECASE,
)

_TYPE_RANK = {wt: i for i, wt in enumerate(WorkType)}


@dataclass
class ClusteringConfig:
    max_time_gap_hours: float = DEFAULT_MAX_TIME_GAP_HOURS
    rapid_fire_minutes: float = DEFAULT_RAPID_FIRE_MINUTES
    min_path_similarity: float = DEFAULT_MIN_PATH_SIMILARITY
    max_commits_per_unit: int = DEFAULT_MAX_COMMITS_PER_UNIT

    @classmethod
    def from_settings(cls, settings) -> "ClusteringConfig":
        return cls(
            max_time_gap_hours=settings.max_time_gap_hours,
            rapid_fire_minutes=settings.rapid_fire_minutes,
            min_path_similarity=settings.min_path_similarity,
            max_commits_per_unit=settings.max_commits_per_unit,
        )


# ── Heuristics ─────────────────────────────────────────────────────────


def path_key(path: str) -> str:
    """Normalize a file path to its first two directory segments.

    ``src/auth/login.py`` -> ``src/auth``, ``lib/x.py`` -> ``lib``,
    root files -> ``.``.
    """
    parts = [p for p in path.strip("/").split("/") if p]
    dirs = parts[:-1]
    if not dirs:
        return "."
    return "/".join(dirs[:2])


def path_keys(paths: Iterable[str]) -> Set[str]:
    return {path_key(p) for p in paths}


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a and not b:
        return 1.0
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def detect_special_case(message: str) -> Optional[SpecialCaseKind]:
    first_line = message.strip().splitlines()[0] if message.strip() else ""
    if REVERT_PATTERN.search(first_line):
        return SpecialCaseKind.REVERT
    if HOTFIX_PATTERN.search(first_line):
        return SpecialCaseKind.HOTFIX
    return None


def detect_commit_work_type(commit: CommitRecord) -> WorkType:
    """Classify one commit from its message, falling back to file extensions."""
    message = commit.message.strip()
    match = CONVENTIONAL_PREFIX.match(message)
    if match and match.group(1).lower() in _PREFIX_TO_TYPE:
        return _PREFIX_TO_TYPE[match.group(1).lower()]

    first_line = message.splitlines()[0] if message else ""
    for work_type, pattern in _KEYWORD_PATTERNS:
        if pattern.search(first_line):
            return work_type

    paths = commit.paths
    if paths:
        if all(_TEST_PATH.search(p) for p in paths):
            return WorkType.TEST
        if all(_DOC_PATH.search(p) for p in paths):
            return WorkType.DOCS
        if all(_CONFIG_PATH.search(p) for p in paths):
            return WorkType.CHORE
    return WorkType.FEATURE


def majority_work_type(commits: Sequence[CommitRecord]) -> WorkType:
    """Majority vote; ties broken bugfix > feature > refactor > chore > docs > test."""
    votes = Counter(detect_commit_work_type(c) for c in commits)
    return min(votes, key=lambda wt: (-votes[wt], _TYPE_RANK[wt]))


def primary_paths(commits: Sequence[CommitRecord], limit: int = PRIMARY_PATH_LIMIT) -> List[str]:
    counts = Counter(path_key(p) for c in commits for p in c.paths)
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [k for k, _ in ranked[:limit]]


def describe_unit(draft: WorkUnitDraft) -> str:
    """Human-readable title. Never used for grouping."""
    if len(draft.commits) == 1:
        first_line = draft.commits[0].message.strip().splitlines()
        if first_line:
            return first_line[0][:200]
    where = ", ".join(draft.primary_paths[:3]) or draft.repo_name
    return f"{draft.work_type.value} in {where} ({len(draft.commits)} commits)"


# ── Clustering ─────────────────────────────────────────────────────────


class _OpenCluster:
    def __init__(self, commit: CommitRecord, special: Optional[SpecialCaseKind]):
        self.commits = [commit]
        self.keys = path_keys(commit.paths)
        self.special = special

    def add(self, commit: CommitRecord):
        self.commits.append(commit)
        self.keys |= path_keys(commit.paths)

    @property
    def last(self) -> CommitRecord:
        return self.commits[-1]


def _should_extend(cluster: _OpenCluster, commit: CommitRecord, config: ClusteringConfig) -> bool:
    if cluster.special is not None:
        return False
    if len(cluster.commits) >= config.max_commits_per_unit:
        return False

    gap_minutes = (commit.committed_at - cluster.last.committed_at).total_seconds() / 60
    if gap_minutes <= config.rapid_fire_minutes:
        return True
    if gap_minutes > config.max_time_gap_hours * 60:
        return False
    return jaccard(cluster.keys, path_keys(commit.paths)) >= config.min_path_similarity


def cluster_repo_commits(
    repo_name: str,
    user_login: str,
    commits: Sequence[CommitRecord],
    config: Optional[ClusteringConfig] = None,
) -> List[WorkUnitDraft]:
    """Cluster one repository's commit stream into ordered WorkUnitDrafts."""
    config = config or ClusteringConfig()
    ordered = sorted(commits, key=lambda c: (c.committed_at, c.sha))

    closed: List[_OpenCluster] = []
    current: Optional[_OpenCluster] = None

    for commit in ordered:
        if commit.repo_name != repo_name:
            raise ValueError(
                f"Commit {commit.sha} belongs to {commit.repo_name}, not {repo_name}"
            )
        special = detect_special_case(commit.message)

        if current is not None and special is None and _should_extend(current, commit, config):
            current.add(commit)
            continue

        if current is not None:
            closed.append(current)
        current = _OpenCluster(commit, special)

    if current is not None:
        closed.append(current)

    drafts = []
    for sequence, cluster in enumerate(closed):
        draft = WorkUnitDraft(
            repo_name=repo_name,
            user_login=user_login,
            sequence=sequence,
            commits=cluster.commits,
            work_type=majority_work_type(cluster.commits),
            primary_paths=primary_paths(cluster.commits),
            special_case=cluster.special,
        )
        draft.title = describe_unit(draft)
        drafts.append(draft)

    logger.debug(f"Clustered {len(ordered)} commits in {repo_name} into {len(drafts)} units")
    return drafts


def cluster_commits(
    user_login: str,
    commits: Sequence[CommitRecord],
    config: Optional[ClusteringConfig] = None,
) -> List[WorkUnitDraft]:
    """Cluster commits across repositories (clusters never span repos)."""
    by_repo: Dict[str, List[CommitRecord]] = {}
    for commit in commits:
        by_repo.setdefault(commit.repo_name, []).append(commit)

    drafts: List[WorkUnitDraft] = []
    for repo_name in sorted(by_repo):
        drafts.extend(cluster_repo_commits(repo_name, user_login, by_repo[repo_name], config))
    return drafts


def calculate_clustering_stats(drafts: Sequence[WorkUnitDraft]) -> ClusteringStats:
    sizes = [len(d.commits) for d in drafts]
    total = sum(sizes)
    distribution = Counter(d.work_type.value for d in drafts)
    return ClusteringStats(
        total_commits=total,
        total_units=len(drafts),
        avg_commits_per_unit=round(total / len(drafts), 2) if drafts else 0.0,
        max_commits_per_unit=max(sizes, default=0),
        single_commit_units=sum(1 for s in sizes if s == 1),
        special_case_units=sum(1 for d in drafts if d.special_case is not None),
        work_type_distribution=dict(sorted(distribution.items())),
    )
