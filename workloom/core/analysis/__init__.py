"""Deterministic analysis stages: metrics, clustering, scoring, sampling, diffs.

Public API:
    calculate_metrics       : developer metrics snapshot
    cluster_repo_commits    : streaming per-repo work unit clustering
    score_work_unit         : bounded impact score with factor breakdown
    select_samples          : reproducible review sampling
    DiffFetcher             : cached, retrying diff retrieval
"""

from .clustering import (
    ClusteringConfig,
    calculate_clustering_stats,
    cluster_commits,
    cluster_repo_commits,
)
from .diff_fetcher import DiffFetcher
from .metrics import DeveloperMetrics, calculate_metrics
from .models import (
    CommitRecord,
    FileChange,
    FilePatch,
    ImpactScore,
    SampleCandidate,
    SamplingResult,
    ScoringInput,
    SpecialCaseKind,
    WorkType,
    WorkUnitDraft,
)
from .sampling import default_seed, select_samples
from .scoring import (
    ScoringWeights,
    calculate_hotspot_files,
    score_work_unit,
    scoring_input_from_commits,
)
from .sources import (
    CommitSource,
    DiffProvider,
    InMemoryCommitSource,
    OrgSettings,
    StaticDiffProvider,
)

__all__ = [
    "ClusteringConfig",
    "calculate_clustering_stats",
    "cluster_commits",
    "cluster_repo_commits",
    "DiffFetcher",
    "DeveloperMetrics",
    "calculate_metrics",
    "CommitRecord",
    "FileChange",
    "FilePatch",
    "ImpactScore",
    "SampleCandidate",
    "SamplingResult",
    "ScoringInput",
    "SpecialCaseKind",
    "WorkType",
    "WorkUnitDraft",
    "default_seed",
    "select_samples",
    "ScoringWeights",
    "calculate_hotspot_files",
    "score_work_unit",
    "scoring_input_from_commits",
    "CommitSource",
    "DiffProvider",
    "InMemoryCommitSource",
    "OrgSettings",
    "StaticDiffProvider",
]
