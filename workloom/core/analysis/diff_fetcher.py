"""Diff fetching with a persistent cross-run cache.

For each commit: return the cached CommitDiff if present, otherwise ask
the DiffProvider with bounded exponential backoff on
TransientExternalError. A commit that still fails is cached with
is_partial=True instead of failing the run; only an explicit
refetch_partial (RETRY) tries it again. Complete diffs are never
re-fetched.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

import backoff

from ..db import DatabaseManager
from ..db.models import CommitDiff, utcnow
from ..errors import TransientExternalError
from .models import FilePatch
from .sources import DiffProvider

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n... [patch truncated]"


def render_diff(files: Sequence[Dict[str, Any]]) -> str:
    """Join per-file patches into one unified-diff style text."""
    parts = []
    for f in files:
        if not f.get("patch"):
            continue
        parts.append(f"--- a/{f['path']}")
        parts.append(f"+++ b/{f['path']}")
        parts.append(f["patch"])
    return "\n".join(parts)


def _diff_to_dict(row: CommitDiff, cached: bool) -> Dict[str, Any]:
    return {
        "repo_name": row.repo_name,
        "sha": row.sha,
        "files": row.files or [],
        "diff_text": row.diff_text or "",
        "is_partial": row.is_partial,
        "error": row.error,
        "attempts": row.attempts,
        "cached": cached,
    }


class DiffFetcher:
    """Fetch and cache per-file patches for commits.

    Args:
        db_manager: DatabaseManager holding the commit_diffs table
        provider: DiffProvider collaborator
        max_tries: attempts per commit before marking it partial
        max_time: overall retry budget per commit (seconds)
        max_patch_chars: per-file patch truncation limit
        backoff_factor: multiplier for the exponential wait (0 disables waiting)
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        provider: DiffProvider,
        max_tries: int = 3,
        max_time: float = 60.0,
        max_patch_chars: int = 20_000,
        backoff_factor: float = 1.0,
    ):
        self._db = db_manager
        self._provider = provider
        self.max_tries = max_tries
        self.max_time = max_time
        self.max_patch_chars = max_patch_chars
        self.backoff_factor = backoff_factor

    # ── Cache ──────────────────────────────────────────────────────────

    def get_cached(self, repo_name: str, sha: str) -> Optional[Dict[str, Any]]:
        with self._db.get_session() as session:
            row = session.query(CommitDiff).filter(
                CommitDiff.repo_name == repo_name,
                CommitDiff.sha == sha,
            ).first()
            return _diff_to_dict(row, cached=True) if row else None

    def _store(
        self,
        repo_name: str,
        sha: str,
        files: List[Dict[str, Any]],
        is_partial: bool,
        error: Optional[str],
        attempts: int,
    ) -> Dict[str, Any]:
        with self._db.get_session() as session:
            row = session.query(CommitDiff).filter(
                CommitDiff.repo_name == repo_name,
                CommitDiff.sha == sha,
            ).first()
            if row is None:
                row = CommitDiff(repo_name=repo_name, sha=sha, attempts=0)
                session.add(row)
            row.files = files
            row.diff_text = render_diff(files)
            row.is_partial = is_partial
            row.error = error
            row.attempts = (row.attempts or 0) + attempts
            row.fetched_at = utcnow()
            session.flush()
            return _diff_to_dict(row, cached=False)

    # ── Fetching ───────────────────────────────────────────────────────

    def _truncate(self, patch: FilePatch) -> Dict[str, Any]:
        text = patch.patch or ""
        truncated = len(text) > self.max_patch_chars
        if truncated:
            text = text[:self.max_patch_chars] + TRUNCATION_MARKER
        return {
            "path": patch.path,
            "patch": text,
            "additions": patch.additions,
            "deletions": patch.deletions,
            "status": patch.status,
            "truncated": truncated,
        }

    def _fetch_with_retry(self, repo_name: str, sha: str, attempts: List[int]) -> List[FilePatch]:
        def _log_backoff(details: dict):
            logger.warning(
                f"Diff fetch retry {details['tries']}/{self.max_tries} for "
                f"{repo_name}@{sha[:8]} after {details['wait']:.1f}s"
            )

        @backoff.on_exception(
            backoff.expo,
            TransientExternalError,
            max_tries=self.max_tries,
            max_time=self.max_time,
            on_backoff=_log_backoff,
            factor=self.backoff_factor,
        )
        def _do_fetch():
            attempts[0] += 1
            return self._provider.fetch_patches(repo_name, sha)

        return _do_fetch()

    def fetch_commit(self, repo_name: str, sha: str, refetch_partial: bool = False) -> Dict[str, Any]:
        """Return the diff for one commit, fetching it only when needed."""
        cached = self.get_cached(repo_name, sha)
        if cached is not None and (not cached["is_partial"] or not refetch_partial):
            return cached

        attempts = [0]
        try:
            patches = self._fetch_with_retry(repo_name, sha, attempts)
        except Exception as e:
            logger.warning(
                f"Diff for {repo_name}@{sha[:8]} marked partial after "
                f"{attempts[0]} attempts: {e}"
            )
            return self._store(repo_name, sha, [], True, str(e), attempts[0])

        files = [self._truncate(p) for p in patches]
        return self._store(repo_name, sha, files, False, None, attempts[0])

    def fetch_many(
        self,
        repo_name: str,
        shas: Sequence[str],
        refetch_partial: bool = False,
        should_stop: Optional[Callable[[], bool]] = None,
        on_commit: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> Dict[str, Any]:
        """Fetch a batch of commits from one repo.

        Returns:
            Dict with fetched/cached/partial counts and ``stopped`` when
            should_stop() interrupted the batch.
        """
        summary = {"repo_name": repo_name, "total": len(shas), "fetched": 0,
                   "cached": 0, "partial": 0, "stopped": False}
        for sha in shas:
            if should_stop and should_stop():
                summary["stopped"] = True
                break
            result = self.fetch_commit(repo_name, sha, refetch_partial=refetch_partial)
            if result["cached"]:
                summary["cached"] += 1
            else:
                summary["fetched"] += 1
            if result["is_partial"]:
                summary["partial"] += 1
            if on_commit:
                on_commit(result)
        return summary

    def get_unit_diff_text(self, repo_name: str, shas: Sequence[str], max_chars: int) -> Dict[str, Any]:
        """Concatenate cached diffs for a unit's commits, bounded in size."""
        with self._db.get_session() as session:
            rows = session.query(CommitDiff).filter(
                CommitDiff.repo_name == repo_name,
                CommitDiff.sha.in_(list(shas)),
            ).all()
            by_sha = {r.sha: (r.diff_text or "", r.is_partial) for r in rows}

        parts = []
        partial = False
        used = 0
        for sha in shas:
            text, is_partial = by_sha.get(sha, ("", True))
            partial = partial or is_partial
            if not text:
                continue
            chunk = f"# commit {sha}\n{text}"
            if used + len(chunk) > max_chars:
                parts.append(chunk[:max(max_chars - used, 0)] + TRUNCATION_MARKER)
                partial = True
                break
            parts.append(chunk)
            used += len(chunk)
        return {"diff_text": "\n\n".join(parts), "is_partial": partial}
