"""Developer metrics snapshot: volume, cadence, diversity, commit hygiene.

Pure functions over CommitRecord lists. Percentages are rounded ints
(0-100) so the snapshot renders directly in the report.
"""

import logging
import re
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Sequence

from .models import CommitRecord

logger = logging.getLogger(__name__)

CONVENTIONAL_PATTERN = re.compile(
    r"^(feat|fix|docs|style|refactor|perf|test|build|ci|chore|revert)(\(.+\))?!?:\s.+",
    re.IGNORECASE,
)
ISSUE_REFERENCE_PATTERN = re.compile(r"#\d+|[A-Z]+-\d+")
MEANINGLESS_PATTERNS = [
    re.compile(r"^(wip|fix|update|edit|change|modify)$", re.IGNORECASE),
    re.compile(r"^(merge|initial|first|init)$", re.IGNORECASE),
    re.compile(r"^\.+$"),
    re.compile(r"^[a-z]$", re.IGNORECASE),
]

FILE_CATEGORIES = {
    "frontend": [
        re.compile(r"\.(tsx?|jsx?)$"),
        re.compile(r"components/"),
        re.compile(r"pages/"),
        re.compile(r"app/"),
        re.compile(r"styles/"),
        re.compile(r"\.s?css$"),
    ],
    "backend": [
        re.compile(r"api/"),
        re.compile(r"server/"),
        re.compile(r"controllers?/"),
        re.compile(r"services?/"),
        re.compile(r"models?/"),
        re.compile(r"routes?/"),
        re.compile(r"middleware/"),
    ],
    "infra": [
        re.compile(r"\.github/"),
        re.compile(r"docker", re.IGNORECASE),
        re.compile(r"terraform", re.IGNORECASE),
        re.compile(r"kubernetes|k8s", re.IGNORECASE),
        re.compile(r"\.ya?ml$"),
    ],
    "test": [
        re.compile(r"__tests__/"),
        re.compile(r"\.test\."),
        re.compile(r"\.spec\."),
        re.compile(r"(^|/)tests?/"),
        re.compile(r"(^|/)test_[^/]+\.py$"),
    ],
    "docs": [
        re.compile(r"\.md$"),
        re.compile(r"(^|/)docs?/"),
        re.compile(r"README", re.IGNORECASE),
        re.compile(r"CHANGELOG", re.IGNORECASE),
    ],
}

# Sessions longer than this are treated as a day of scattered commits
MAX_SESSION_MINUTES = 720


def matches_category(path: str, category: str) -> bool:
    return any(p.search(path) for p in FILE_CATEGORIES[category])


def _pct(part: float, whole: float) -> int:
    return round(part / whole * 100) if whole else 0


@dataclass
class DeveloperMetrics:
    """Per-developer snapshot persisted on the run and copied into the report."""
    productivity: Dict[str, Any] = field(default_factory=dict)
    work_pattern: Dict[str, Any] = field(default_factory=dict)
    diversity: Dict[str, Any] = field(default_factory=dict)
    commit_quality: Dict[str, Any] = field(default_factory=dict)
    monthly_activity: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_metrics(commits: Sequence[CommitRecord]) -> DeveloperMetrics:
    """Build the full metrics snapshot for one developer-year."""
    ordered = sorted(commits, key=lambda c: (c.committed_at, c.sha))
    return DeveloperMetrics(
        productivity=calculate_productivity(ordered),
        work_pattern=calculate_work_pattern(ordered),
        diversity=calculate_diversity(ordered),
        commit_quality=calculate_commit_quality(ordered),
        monthly_activity=calculate_monthly_activity(ordered),
    )


def calculate_productivity(commits: Sequence[CommitRecord]) -> Dict[str, Any]:
    total = len(commits)
    added = sum(c.additions for c in commits)
    deleted = sum(c.deletions for c in commits)
    paths = {p for c in commits for p in c.paths}
    working_days = len({c.committed_at.date() for c in commits})

    return {
        "total_commits": total,
        "lines_added": added,
        "lines_deleted": deleted,
        "net_lines": added - deleted,
        "files_changed": len(paths),
        "working_days": working_days,
        "avg_commits_per_day": round(total / working_days, 2) if working_days else 0.0,
        "avg_lines_per_commit": round((added + deleted) / total, 1) if total else 0.0,
    }


def _time_bucket(hour: int) -> str:
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 22:
        return "evening"
    return "night"


def calculate_work_pattern(commits: Sequence[CommitRecord]) -> Dict[str, Any]:
    total = len(commits)
    buckets = Counter({"morning": 0, "afternoon": 0, "evening": 0, "night": 0})
    # Sunday = 0 .. Saturday = 6
    day_of_week = [0] * 7

    for c in commits:
        buckets[_time_bucket(c.committed_at.hour)] += 1
        day_of_week[(c.committed_at.weekday() + 1) % 7] += 1

    return {
        "time_distribution": {k: _pct(v, total) for k, v in buckets.items()},
        "day_of_week": day_of_week,
        "longest_streak": longest_streak([c.committed_at.date() for c in commits]),
        "weekend_work_ratio": _pct(day_of_week[0] + day_of_week[6], total),
        "avg_session_minutes": average_session_minutes([c.committed_at for c in commits]),
    }


def longest_streak(days: Sequence[date]) -> int:
    """Longest run of consecutive calendar days with at least one commit."""
    unique = sorted(set(days))
    if not unique:
        return 0
    best = current = 1
    for prev, curr in zip(unique, unique[1:]):
        if (curr - prev).days == 1:
            current += 1
            best = max(best, current)
        else:
            current = 1
    return best


def average_session_minutes(timestamps: Sequence[datetime]) -> int:
    """Mean first-to-last span per day, ignoring single-commit days."""
    by_day: Dict[date, List[datetime]] = defaultdict(list)
    for ts in timestamps:
        by_day[ts.date()].append(ts)

    durations = []
    for times in by_day.values():
        if len(times) < 2:
            continue
        minutes = (max(times) - min(times)).total_seconds() / 60
        if 0 < minutes < MAX_SESSION_MINUTES:
            durations.append(minutes)

    return round(sum(durations) / len(durations)) if durations else 0


def calculate_diversity(commits: Sequence[CommitRecord]) -> Dict[str, Any]:
    total = len(commits)
    per_repo = Counter(c.repo_name for c in commits)
    distribution = [
        {"repo": repo, "commits": n, "percentage": _pct(n, total)}
        for repo, n in sorted(per_repo.items(), key=lambda kv: (-kv[1], kv[0]))
    ]

    all_paths = [p for c in commits for p in c.paths]
    coverage = {
        category: _pct(sum(1 for p in all_paths if matches_category(p, category)), len(all_paths))
        for category in FILE_CATEGORIES
    }

    primary = distribution[0] if distribution else {"repo": "", "percentage": 0}
    return {
        "repository_count": len(per_repo),
        "primary_repository": {"name": primary["repo"], "percentage": primary["percentage"]},
        "repo_distribution": distribution,
        "tech_stack_coverage": coverage,
    }


def calculate_commit_quality(commits: Sequence[CommitRecord]) -> Dict[str, Any]:
    total = len(commits)
    if not total:
        return {
            "avg_message_length": 0,
            "conventional_commit_rate": 0,
            "issue_reference_rate": 0,
            "meaningful_commit_rate": 0,
            "revert_rate": 0,
            "test_commit_rate": 0,
        }

    conventional = sum(1 for c in commits if CONVENTIONAL_PATTERN.match(c.message))
    issue_refs = sum(1 for c in commits if ISSUE_REFERENCE_PATTERN.search(c.message))
    meaningless = sum(
        1 for c in commits
        if any(p.match(c.message.strip()) for p in MEANINGLESS_PATTERNS)
    )
    reverts = sum(1 for c in commits if c.message.lower().startswith("revert"))
    test_commits = sum(
        1 for c in commits if any(matches_category(p, "test") for p in c.paths)
    )

    return {
        "avg_message_length": round(sum(len(c.message) for c in commits) / total),
        "conventional_commit_rate": _pct(conventional, total),
        "issue_reference_rate": _pct(issue_refs, total),
        "meaningful_commit_rate": _pct(total - meaningless, total),
        "revert_rate": _pct(reverts, total),
        "test_commit_rate": _pct(test_commits, total),
    }


def calculate_monthly_activity(commits: Sequence[CommitRecord]) -> List[Dict[str, Any]]:
    """Twelve rows, one per month, with commits and changed lines."""
    months = {m: {"month": m, "commits": 0, "additions": 0, "deletions": 0} for m in range(1, 13)}
    for c in commits:
        row = months[c.committed_at.month]
        row["commits"] += 1
        row["additions"] += c.additions
        row["deletions"] += c.deletions
    return [months[m] for m in range(1, 13)]
