"""Collaborator interfaces consumed by the pipeline.

The commit store, the VCS diff API and the organization settings live
outside this package. The orchestrator only sees these protocols.
In-memory implementations back the CLI demo and the tests.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from ..errors import TransientExternalError
from .models import CommitRecord, FilePatch, normalize_timestamp

logger = logging.getLogger(__name__)


class CommitSource(Protocol):
    """Ordered commit records per author/year/org."""

    def list_repositories(self, org: str, user: str, year: int) -> List[str]:
        ...

    def list_commits(self, org: str, user: str, year: int, repo: str) -> List[CommitRecord]:
        ...

    def list_org_commits(self, org: str, since: datetime, until: datetime) -> List[CommitRecord]:
        ...


class DiffProvider(Protocol):
    """Commit id -> per-file patches. May raise TransientExternalError."""

    def fetch_patches(self, repo: str, sha: str) -> List[FilePatch]:
        ...


@dataclass
class OrgSettings:
    """Organization-level analysis settings."""
    critical_paths: List[Dict[str, float]] = field(default_factory=list)   # [{pattern, weight}]
    default_review_model: Optional[str] = None
    team_standards: str = ""


# ── In-memory implementations ──────────────────────────────────────────


class InMemoryCommitSource:
    """CommitSource over a fixed list of commits, keyed by org."""

    def __init__(self, commits_by_org: Dict[str, Iterable[CommitRecord]]):
        self._commits = {org: list(commits) for org, commits in commits_by_org.items()}

    def _year_commits(self, org: str, user: str, year: int) -> List[CommitRecord]:
        return [
            c for c in self._commits.get(org, [])
            if c.author_login == user and c.committed_at.year == year
        ]

    def list_repositories(self, org: str, user: str, year: int) -> List[str]:
        return sorted({c.repo_name for c in self._year_commits(org, user, year)})

    def list_commits(self, org: str, user: str, year: int, repo: str) -> List[CommitRecord]:
        commits = [c for c in self._year_commits(org, user, year) if c.repo_name == repo]
        return sorted(commits, key=lambda c: (c.committed_at, c.sha))

    def list_org_commits(self, org: str, since: datetime, until: datetime) -> List[CommitRecord]:
        since = normalize_timestamp(since)
        until = normalize_timestamp(until)
        return [c for c in self._commits.get(org, []) if since <= c.committed_at < until]


class StaticDiffProvider:
    """DiffProvider backed by a dict of (repo, sha) -> patches.

    ``failures`` maps (repo, sha) to the number of transient failures to
    raise before succeeding; a negative count fails forever.
    """

    def __init__(
        self,
        patches: Optional[Dict[Tuple[str, str], List[FilePatch]]] = None,
        failures: Optional[Dict[Tuple[str, str], int]] = None,
    ):
        self._patches = patches or {}
        self._failures = dict(failures or {})
        self.calls: List[Tuple[str, str]] = []

    def fetch_patches(self, repo: str, sha: str) -> List[FilePatch]:
        key = (repo, sha)
        self.calls.append(key)
        remaining = self._failures.get(key, 0)
        if remaining != 0:
            if remaining > 0:
                self._failures[key] = remaining - 1
            raise TransientExternalError(f"diff provider unavailable for {repo}@{sha[:8]}")
        return list(self._patches.get(key, []))
