"""Unit tests for work unit clustering.

Tests cover:
- Partition: every commit lands in exactly one unit, units never span repos
- Determinism under input shuffling
- Time-gap, rapid-fire and path-similarity rules
- Hotfix / revert special cases
- Work type majority vote and tie-breaks
- The two-repo demo scenario
"""

import random
from datetime import datetime, timedelta

import pytest

from workloom.core.analysis.clustering import (
    ClusteringConfig,
    calculate_clustering_stats,
    cluster_commits,
    cluster_repo_commits,
    detect_commit_work_type,
    detect_special_case,
    jaccard,
    majority_work_type,
    path_key,
)
from workloom.core.analysis.models import CommitRecord, SpecialCaseKind, WorkType
from workloom.demo import DEMO_USER, alice_commits


# ── Fixtures ──────────────────────────────────────────────────────────────

T0 = datetime(2024, 5, 6, 9, 0)


def _commit(sha, minutes, paths=("src/auth/login.py",), message="feat: work", repo="acme/api"):
    return CommitRecord(
        sha=sha,
        author_login="alice",
        committed_at=T0 + timedelta(minutes=minutes),
        repo_name=repo,
        message=message,
        additions=5,
        deletions=1,
        files=[{"path": p, "additions": 5, "deletions": 1} for p in paths],
    )


def _membership(drafts):
    return sorted((d.repo_name, d.sequence, tuple(d.shas)) for d in drafts)


# ── Tests: Heuristics ────────────────────────────────────────────────────


class TestHeuristics:

    def test_path_key(self):
        assert path_key("src/auth/login.py") == "src/auth"
        assert path_key("src/auth/deep/nested/x.py") == "src/auth"
        assert path_key("lib/x.py") == "lib"
        assert path_key("README.md") == "."

    def test_jaccard(self):
        assert jaccard({"a"}, {"a"}) == 1.0
        assert jaccard({"a"}, {"b"}) == 0.0
        assert jaccard({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)
        assert jaccard(set(), set()) == 1.0

    def test_special_case_detection(self):
        assert detect_special_case('Revert "feat: add login"') is SpecialCaseKind.REVERT
        assert detect_special_case("hotfix: null pointer in checkout") is SpecialCaseKind.HOTFIX
        assert detect_special_case("feat: add login") is None
        assert detect_special_case("") is None

    def test_work_type_from_prefix_keyword_and_paths(self):
        assert detect_commit_work_type(_commit("a", 0, message="fix(api): crash")) is WorkType.BUGFIX
        assert detect_commit_work_type(_commit("a", 0, message="Refactor session store")) is WorkType.REFACTOR
        assert detect_commit_work_type(
            _commit("a", 0, message="more", paths=("tests/test_login.py",))
        ) is WorkType.TEST
        assert detect_commit_work_type(_commit("a", 0, message="more", paths=("docs/guide.md",))) is WorkType.DOCS
        assert detect_commit_work_type(_commit("a", 0, message="misc")) is WorkType.FEATURE

    def test_keywords_match_whole_words_only(self):
        def work_type(message, paths=("src/auth/login.py",)):
            return detect_commit_work_type(_commit("a", 0, message=message, paths=paths))

        assert work_type("Address lint warnings") is WorkType.CHORE
        assert work_type("Update fixture data", paths=("docs/data.md",)) is WorkType.DOCS
        assert work_type("Fixed login redirect") is WorkType.BUGFIX
        assert work_type("Added export button") is WorkType.FEATURE
        assert work_type("Fixes flaky upload") is WorkType.BUGFIX

    def test_majority_tie_prefers_bugfix(self):
        commits = [
            _commit("a", 0, message="feat: one"),
            _commit("b", 1, message="fix: two"),
        ]
        assert majority_work_type(commits) is WorkType.BUGFIX


# ── Tests: Clustering Rules ──────────────────────────────────────────────


class TestClusteringRules:

    def test_rapid_fire_merges_regardless_of_paths(self):
        drafts = cluster_repo_commits("acme/api", "alice", [
            _commit("a", 0, paths=("src/auth/a.py",)),
            _commit("b", 30, paths=("docs/x.md",)),
        ])
        assert len(drafts) == 1

    def test_gap_within_window_requires_path_overlap(self):
        drafts = cluster_repo_commits("acme/api", "alice", [
            _commit("a", 0, paths=("src/auth/a.py",)),
            _commit("b", 120, paths=("src/auth/b.py",)),
            _commit("c", 240, paths=("web/ui/page.tsx",)),
        ])
        assert [d.shas for d in drafts] == [["a", "b"], ["c"]]

    def test_gap_beyond_window_splits(self):
        drafts = cluster_repo_commits("acme/api", "alice", [
            _commit("a", 0),
            _commit("b", 9 * 60),
        ])
        assert len(drafts) == 2
        assert [d.sequence for d in drafts] == [0, 1]

    def test_max_commits_per_unit(self):
        commits = [_commit(f"c{i:02d}", i) for i in range(7)]
        drafts = cluster_repo_commits(
            "acme/api", "alice", commits, ClusteringConfig(max_commits_per_unit=3)
        )
        assert [len(d.commits) for d in drafts] == [3, 3, 1]

    def test_special_case_stands_alone(self):
        drafts = cluster_repo_commits("acme/api", "alice", [
            _commit("a", 0),
            _commit("b", 5, message="hotfix: broken token refresh"),
            _commit("c", 10),
        ])

        assert [d.shas for d in drafts] == [["a"], ["b"], ["c"]]
        assert drafts[1].special_case is SpecialCaseKind.HOTFIX
        assert drafts[0].special_case is None

    def test_rejects_foreign_repo_commit(self):
        with pytest.raises(ValueError):
            cluster_repo_commits("acme/api", "alice", [_commit("a", 0, repo="acme/web")])

    def test_single_commit_title_is_message(self):
        drafts = cluster_repo_commits("acme/api", "alice", [_commit("a", 0, message="feat: add SSO\n\nbody")])
        assert drafts[0].title == "feat: add SSO"


# ── Tests: Partition & Determinism ───────────────────────────────────────


class TestPartition:

    def _mixed_commits(self):
        rng = random.Random(7)
        commits = []
        for i in range(120):
            repo = ("acme/api", "acme/web", "acme/infra")[i % 3]
            folder = rng.choice(["src/auth", "src/billing", "docs", "deploy/k8s"])
            message = rng.choice(["feat: x", "fix: y", "hotfix: z", "chore: bump", "refactor: w"])
            commits.append(_commit(f"sha{i:03d}", rng.randint(0, 60 * 24 * 30),
                                   paths=(f"{folder}/f{i % 4}.py",), message=message, repo=repo))
        return commits

    def test_every_commit_in_exactly_one_unit(self):
        commits = self._mixed_commits()
        drafts = cluster_commits("alice", commits)

        all_shas = [sha for d in drafts for sha in d.shas]
        assert sorted(all_shas) == sorted(c.sha for c in commits)
        assert len(all_shas) == len(set(all_shas))
        for d in drafts:
            assert {c.repo_name for c in d.commits} == {d.repo_name}

    def test_shuffled_input_gives_identical_units(self):
        commits = self._mixed_commits()
        shuffled = list(commits)
        random.Random(99).shuffle(shuffled)

        assert _membership(cluster_commits("alice", commits)) == _membership(cluster_commits("alice", shuffled))

    def test_stats(self):
        drafts = cluster_commits("alice", self._mixed_commits())
        stats = calculate_clustering_stats(drafts)

        assert stats.total_commits == 120
        assert stats.total_units == len(drafts)
        assert sum(stats.work_type_distribution.values()) == len(drafts)

    def test_empty_input(self):
        assert cluster_commits("alice", []) == []
        assert calculate_clustering_stats([]).avg_commits_per_unit == 0.0


# ── Tests: Demo Scenario ─────────────────────────────────────────────────


class TestDemoScenario:

    def test_two_bursts_make_two_units(self):
        commits = alice_commits()
        drafts = cluster_commits(DEMO_USER, commits)

        assert len(commits) == 40
        assert len(drafts) == 2
        assert sorted(d.repo_name for d in drafts) == ["acme/api", "acme/web"]
        assert all(len(d.commits) == 20 for d in drafts)
        assert all(d.work_type is WorkType.FEATURE for d in drafts)
