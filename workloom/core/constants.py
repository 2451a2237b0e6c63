"""Shared constants for WorkLoom.

Run statuses, pipeline phases and restart modes are used by the
orchestrator, the API layer and the ORM models alike.
"""

from enum import Enum


# =============================================================================
# Run Lifecycle
# =============================================================================

class RunStatus(str, Enum):
    """Lifecycle status of an AnalysisRun."""
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    PAUSED = "PAUSED"
    DONE = "DONE"
    FAILED = "FAILED"


class Phase(str, Enum):
    """Pipeline phases, in execution order."""
    METRICS = "METRICS"
    CLUSTERING = "CLUSTERING"
    SCORING = "SCORING"
    SAMPLING = "SAMPLING"
    DIFF_FETCH = "DIFF_FETCH"
    AI_ANALYSIS = "AI_ANALYSIS"


PHASE_ORDER = (
    Phase.METRICS,
    Phase.CLUSTERING,
    Phase.SCORING,
    Phase.SAMPLING,
    Phase.DIFF_FETCH,
    Phase.AI_ANALYSIS,
)


class RestartMode(str, Enum):
    """Recovery granularity for retry()."""
    RESUME = "RESUME"
    RETRY = "RETRY"
    FULL_RESTART = "FULL_RESTART"


TERMINAL_STATUSES = frozenset({RunStatus.DONE, RunStatus.FAILED})
DELETABLE_STATUSES = frozenset({RunStatus.QUEUED, RunStatus.FAILED})

CANCELLED_ERROR = "cancelled by user"

# =============================================================================
# Per-item progress status (repoProgress / unitProgress entries)
# =============================================================================

ITEM_PENDING = "pending"
ITEM_RUNNING = "running"
ITEM_DONE = "done"
ITEM_FAILED = "failed"

# =============================================================================
# Work types (ordered by tie-break priority)
# =============================================================================

WORK_TYPE_PRIORITY = ("bugfix", "feature", "refactor", "chore", "docs", "test")

# =============================================================================
# Versioning
# =============================================================================

PROGRESS_SCHEMA_VERSION = 1
RESULT_SCHEMA_VERSION = 1
PROMPT_VERSION = "v1.0.0"

MAX_IMPACT_SCORE = 100.0
