"""Tests for DiffFetcher against an in-memory SQLite cache.

Tests cover:
- Cache hits never call the provider again
- Transient failures are retried, then cached as partial
- Partial diffs are refetched only with refetch_partial
- Patch truncation and unit diff assembly
"""

from workloom.core.analysis.diff_fetcher import TRUNCATION_MARKER, DiffFetcher, render_diff
from workloom.core.analysis.models import FilePatch
from workloom.core.analysis.sources import StaticDiffProvider


# ── Fixtures ──────────────────────────────────────────────────────────────

REPO = "acme/api"


def _patches(*shas):
    return {
        (REPO, sha): [FilePatch(path=f"src/{sha}.py", patch=f"+line from {sha}", additions=1)]
        for sha in shas
    }


def _fetcher(db, provider, **kwargs):
    kwargs.setdefault("backoff_factor", 0)
    return DiffFetcher(db, provider, **kwargs)


# ── Tests: Caching ───────────────────────────────────────────────────────


class TestCaching:

    def test_second_fetch_is_served_from_cache(self, db):
        provider = StaticDiffProvider(_patches("aaa"))
        fetcher = _fetcher(db, provider)

        first = fetcher.fetch_commit(REPO, "aaa")
        second = fetcher.fetch_commit(REPO, "aaa")

        assert first["cached"] is False
        assert second["cached"] is True
        assert second["files"][0]["path"] == "src/aaa.py"
        assert provider.calls == [(REPO, "aaa")]

    def test_complete_diff_not_refetched_even_on_retry(self, db):
        provider = StaticDiffProvider(_patches("aaa"))
        fetcher = _fetcher(db, provider)

        fetcher.fetch_commit(REPO, "aaa")
        fetcher.fetch_commit(REPO, "aaa", refetch_partial=True)

        assert len(provider.calls) == 1

    def test_fetch_many_summary(self, db):
        provider = StaticDiffProvider(_patches("aaa", "bbb"))
        fetcher = _fetcher(db, provider)
        fetcher.fetch_commit(REPO, "aaa")

        summary = fetcher.fetch_many(REPO, ["aaa", "bbb"])

        assert summary["cached"] == 1
        assert summary["fetched"] == 1
        assert summary["partial"] == 0

    def test_fetch_many_stops_when_asked(self, db):
        fetcher = _fetcher(db, StaticDiffProvider(_patches("aaa", "bbb")))
        summary = fetcher.fetch_many(REPO, ["aaa", "bbb"], should_stop=lambda: True)

        assert summary["stopped"] is True
        assert summary["fetched"] == 0


# ── Tests: Failures ──────────────────────────────────────────────────────


class TestFailures:

    def test_transient_failure_is_retried(self, db):
        provider = StaticDiffProvider(_patches("aaa"), failures={(REPO, "aaa"): 2})
        result = _fetcher(db, provider, max_tries=3).fetch_commit(REPO, "aaa")

        assert result["is_partial"] is False
        assert result["attempts"] == 3

    def test_exhausted_retries_mark_partial(self, db):
        provider = StaticDiffProvider(_patches("aaa"), failures={(REPO, "aaa"): -1})
        fetcher = _fetcher(db, provider, max_tries=2)

        result = fetcher.fetch_commit(REPO, "aaa")

        assert result["is_partial"] is True
        assert "unavailable" in result["error"]
        assert result["files"] == []
        assert fetcher.get_cached(REPO, "aaa")["is_partial"] is True

    def test_partial_refetched_only_when_requested(self, db):
        provider = StaticDiffProvider(_patches("aaa"), failures={(REPO, "aaa"): 1})
        fetcher = _fetcher(db, provider, max_tries=1)

        assert fetcher.fetch_commit(REPO, "aaa")["is_partial"] is True
        assert fetcher.fetch_commit(REPO, "aaa")["is_partial"] is True
        assert len(provider.calls) == 1

        result = fetcher.fetch_commit(REPO, "aaa", refetch_partial=True)

        assert result["is_partial"] is False
        assert result["error"] is None
        assert result["attempts"] == 2
        assert len(provider.calls) == 2


# ── Tests: Rendering ─────────────────────────────────────────────────────


class TestRendering:

    def test_long_patch_is_truncated(self, db):
        provider = StaticDiffProvider({(REPO, "aaa"): [FilePatch(path="big.py", patch="x" * 500)]})
        result = _fetcher(db, provider, max_patch_chars=100).fetch_commit(REPO, "aaa")

        file_entry = result["files"][0]
        assert file_entry["truncated"] is True
        assert file_entry["patch"].endswith(TRUNCATION_MARKER)

    def test_render_diff_skips_empty_patches(self):
        text = render_diff([{"path": "a.py", "patch": "+x"}, {"path": "b.bin", "patch": ""}])
        assert "a/a.py" in text
        assert "b.bin" not in text

    def test_unit_diff_text_bounded_and_flags_missing(self, db):
        fetcher = _fetcher(db, StaticDiffProvider(_patches("aaa", "bbb")))
        fetcher.fetch_many(REPO, ["aaa", "bbb"])

        full = fetcher.get_unit_diff_text(REPO, ["aaa", "bbb"], max_chars=10_000)
        assert "# commit aaa" in full["diff_text"]
        assert full["is_partial"] is False

        missing = fetcher.get_unit_diff_text(REPO, ["aaa", "zzz"], max_chars=10_000)
        assert missing["is_partial"] is True

        short = fetcher.get_unit_diff_text(REPO, ["aaa", "bbb"], max_chars=20)
        assert short["is_partial"] is True
        assert short["diff_text"].endswith(TRUNCATION_MARKER)
