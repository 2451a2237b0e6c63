"""Analysis run orchestration.

Public API:
    AnalysisOrchestrator  : run lifecycle and resumable phase loop
    AnalysisWorker        : background execution of runs
    ProgressCheckpoint    : persisted progress document
"""

from .orchestrator import AnalysisOrchestrator
from .progress import ProgressCheckpoint, RepoProgress
from .worker import AnalysisJob, AnalysisWorker

__all__ = [
    "AnalysisOrchestrator",
    "AnalysisWorker",
    "AnalysisJob",
    "ProgressCheckpoint",
    "RepoProgress",
]
