"""
SQLAlchemy ORM Models for WorkLoom

Yearly developer analysis models:
- AnalysisRun: One (org, user, year) execution with status/phase/checkpoint
- WorkUnit: A cluster of commits by one author in one repository
- WorkUnitCommit: Commit snapshot + membership of a commit in a WorkUnit
- AiReview: Staged AI review result (stage 0-4)
- YearlyReport: Final synthesis for a run
- CommitDiff: Cross-run cache of fetched patches
"""

from sqlalchemy import (
    Column, String, Integer, Float, Text, TIMESTAMP, ForeignKey, JSON,
    Index, TypeDecorator, Boolean, UniqueConstraint,
)
from sqlalchemy.orm import relationship, declarative_base
from sqlalchemy.dialects.postgresql import UUID as PostgreSQL_UUID, JSONB
import uuid
from datetime import datetime, timezone

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# UUID type that works with both PostgreSQL and SQLite
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise stores as String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgreSQL_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name == 'postgresql':
            return value
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(uuid.UUID(value))

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


# =============================================================================
# Analysis Run
# =============================================================================

class AnalysisRun(Base):
    """One (org, user, year) analysis execution.

    Mutated only by the orchestrator. Owns every derived row: deleting
    the run cascades to work units, reviews and the report.
    """
    __tablename__ = "analysis_runs"
    __table_args__ = (
        Index('idx_runs_org_user_year', 'org_login', 'user_login', 'year'),
        Index('idx_runs_status', 'status'),
    )

    run_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    org_login = Column(String(255), nullable=False)
    user_login = Column(String(255), nullable=False)
    year = Column(Integer, nullable=False)

    status = Column(String(20), default='QUEUED', nullable=False)     # QUEUED|IN_PROGRESS|PAUSED|DONE|FAILED
    phase = Column(String(20), default='METRICS', nullable=False)     # METRICS..AI_ANALYSIS
    progress = Column(JSONType, default=dict)                          # ProgressCheckpoint.to_dict()
    error = Column(Text, nullable=True)

    options = Column(JSONType, default=dict)                           # per-run settings overrides
    sampling_seed = Column(String(64), nullable=False)
    hotspot_files = Column(JSONType, nullable=True)                    # [path, ...] computed once per run
    metrics = Column(JSONType, nullable=True)                          # DeveloperMetrics.to_dict()

    prompt_version = Column(String(20), nullable=True)
    schema_version = Column(Integer, default=1, nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    started_at = Column(TIMESTAMP, nullable=True)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(TIMESTAMP, nullable=True)

    # Relationships
    work_units = relationship("WorkUnit", back_populates="run", cascade="all, delete-orphan", passive_deletes=True)
    reviews = relationship("AiReview", back_populates="run", cascade="all, delete-orphan", passive_deletes=True)
    report = relationship("YearlyReport", back_populates="run", uselist=False, cascade="all, delete-orphan", passive_deletes=True)

    def __repr__(self):
        return f"<AnalysisRun(run_id={self.run_id}, user='{self.user_login}', year={self.year}, status='{self.status}')>"


# =============================================================================
# Work Units
# =============================================================================

class WorkUnit(Base):
    """A cluster of commits by one author in one repository within one run."""
    __tablename__ = "work_units"
    __table_args__ = (
        Index('idx_units_run_repo', 'run_id', 'repo_name', 'sequence'),
        Index('idx_units_run_score', 'run_id', 'impact_score'),
    )

    unit_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(), ForeignKey("analysis_runs.run_id", ondelete="CASCADE"), nullable=False)
    repo_name = Column(String(255), nullable=False)
    user_login = Column(String(255), nullable=False)
    sequence = Column(Integer, nullable=False)                 # order within repo

    start_at = Column(TIMESTAMP, nullable=False)
    end_at = Column(TIMESTAMP, nullable=False)
    work_type = Column(String(20), nullable=False)             # bugfix|feature|refactor|chore|docs|test
    commit_count = Column(Integer, default=0, nullable=False)
    additions = Column(Integer, default=0, nullable=False)
    deletions = Column(Integer, default=0, nullable=False)
    primary_paths = Column(JSONType, default=list)             # top directory keys

    impact_score = Column(Float, nullable=True)                # NULL until SCORING
    impact_factors = Column(JSONType, nullable=True)           # ImpactScore.factors

    is_sampled = Column(Boolean, default=False, nullable=False)
    is_special_case = Column(Boolean, default=False, nullable=False)
    special_case_kind = Column(String(20), nullable=True)      # hotfix|revert

    title = Column(String(500), nullable=True)
    summary = Column(Text, nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)

    # Relationships
    run = relationship("AnalysisRun", back_populates="work_units")
    commits = relationship(
        "WorkUnitCommit", back_populates="unit",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="WorkUnitCommit.position",
    )

    def __repr__(self):
        return f"<WorkUnit(unit_id={self.unit_id}, repo='{self.repo_name}', commits={self.commit_count}, score={self.impact_score})>"


class WorkUnitCommit(Base):
    """Membership of one commit in one WorkUnit, with a commit snapshot.

    (run_id, sha) is unique: a commit belongs to exactly one unit per run.
    """
    __tablename__ = "work_unit_commits"
    __table_args__ = (
        UniqueConstraint('run_id', 'sha', name='uq_run_commit'),
        Index('idx_unit_commits_unit', 'unit_id', 'position'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    unit_id = Column(UUID(), ForeignKey("work_units.unit_id", ondelete="CASCADE"), nullable=False)
    run_id = Column(UUID(), ForeignKey("analysis_runs.run_id", ondelete="CASCADE"), nullable=False)
    sha = Column(String(64), nullable=False)
    repo_name = Column(String(255), nullable=False)
    position = Column(Integer, nullable=False)
    committed_at = Column(TIMESTAMP, nullable=False)
    message = Column(Text, default="")
    additions = Column(Integer, default=0, nullable=False)
    deletions = Column(Integer, default=0, nullable=False)
    files = Column(JSONType, default=list)                     # [{path, additions, deletions}]

    unit = relationship("WorkUnit", back_populates="commits")

    def __repr__(self):
        return f"<WorkUnitCommit(sha='{self.sha[:8]}', unit={self.unit_id})>"


# =============================================================================
# AI Reviews & Reports
# =============================================================================

class AiReview(Base):
    """One staged review result.

    Stage 1 rows are attached to a WorkUnit; stages 0 and 2-4 to the run.
    Upsert on (run_id, stage, unit_id): retries overwrite in place.
    """
    __tablename__ = "ai_reviews"
    __table_args__ = (
        UniqueConstraint('run_id', 'stage', 'unit_id', name='uq_review_stage_unit'),
        Index('idx_reviews_run_stage', 'run_id', 'stage'),
    )

    review_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(), ForeignKey("analysis_runs.run_id", ondelete="CASCADE"), nullable=False)
    unit_id = Column(UUID(), ForeignKey("work_units.unit_id", ondelete="CASCADE"), nullable=True)
    stage = Column(Integer, nullable=False)                    # 0..4
    status = Column(String(20), default='done', nullable=False)   # done|failed
    result = Column(JSONType, nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)

    model = Column(String(100), nullable=True)
    prompt_version = Column(String(20), nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow, nullable=False)

    run = relationship("AnalysisRun", back_populates="reviews")
    unit = relationship("WorkUnit")

    def __repr__(self):
        return f"<AiReview(run={self.run_id}, stage={self.stage}, unit={self.unit_id}, status='{self.status}')>"


class YearlyReport(Base):
    """Final synthesis for (run, user).

    Created by the pipeline; afterwards only manager notes and the
    finalized flag change.
    """
    __tablename__ = "yearly_reports"

    report_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(), ForeignKey("analysis_runs.run_id", ondelete="CASCADE"), nullable=False, unique=True)
    user_login = Column(String(255), nullable=False)
    year = Column(Integer, nullable=False)

    metrics = Column(JSONType, nullable=True)
    stats = Column(JSONType, nullable=True)                    # ReportStats
    summary = Column(Text, nullable=True)
    strengths = Column(JSONType, default=list)
    improvements = Column(JSONType, default=list)
    action_items = Column(JSONType, default=list)
    overall_assessment = Column(JSONType, nullable=True)
    overall_score = Column(Float, nullable=True)               # weighted 1-10 from stage 4
    grade = Column(String(2), nullable=True)                   # S, A, B, C, D, F

    manager_notes = Column(Text, nullable=True)
    is_interim = Column(Boolean, default=False, nullable=False)
    is_finalized = Column(Boolean, default=False, nullable=False)
    finalized_at = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow, nullable=False)

    run = relationship("AnalysisRun", back_populates="report")

    def __repr__(self):
        return f"<YearlyReport(report_id={self.report_id}, user='{self.user_login}', year={self.year})>"


# =============================================================================
# Diff Cache
# =============================================================================

class CommitDiff(Base):
    """Cache of fetched per-file patches, keyed by (repo_name, sha).

    Not owned by any run: survives run deletion and FULL_RESTART so
    resumes never re-fetch.
    """
    __tablename__ = "commit_diffs"
    __table_args__ = (
        UniqueConstraint('repo_name', 'sha', name='uq_commit_diff'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    repo_name = Column(String(255), nullable=False)
    sha = Column(String(64), nullable=False)
    files = Column(JSONType, default=list)                     # [{path, patch, additions, deletions, truncated}]
    diff_text = Column(Text, default="")
    is_partial = Column(Boolean, default=False, nullable=False)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    fetched_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<CommitDiff(repo='{self.repo_name}', sha='{self.sha[:8]}', partial={self.is_partial})>"
