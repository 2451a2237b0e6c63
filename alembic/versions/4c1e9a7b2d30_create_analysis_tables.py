"""create analysis runs, work units, reviews, reports and diff cache

Revision ID: 4c1e9a7b2d30
Revises:
Create Date: 2026-10-18 10:12:41.208733

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '4c1e9a7b2d30'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 1. Analysis runs
    op.create_table('analysis_runs',
        sa.Column('run_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('org_login', sa.String(length=255), nullable=False),
        sa.Column('user_login', sa.String(length=255), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), server_default='QUEUED', nullable=False),
        sa.Column('phase', sa.String(length=20), server_default='METRICS', nullable=False),
        sa.Column('progress', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('options', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('sampling_seed', sa.String(length=64), nullable=False),
        sa.Column('hotspot_files', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('metrics', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('prompt_version', sa.String(length=20), nullable=True),
        sa.Column('schema_version', sa.Integer(), server_default='1', nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.func.now(), nullable=False),
        sa.Column('started_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('updated_at', sa.TIMESTAMP(), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.TIMESTAMP(), nullable=True),
        sa.PrimaryKeyConstraint('run_id'),
    )
    op.create_index('idx_runs_org_user_year', 'analysis_runs', ['org_login', 'user_login', 'year'])
    op.create_index('idx_runs_status', 'analysis_runs', ['status'])

    # 2. Work units and their commit membership
    op.create_table('work_units',
        sa.Column('unit_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('run_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('repo_name', sa.String(length=255), nullable=False),
        sa.Column('user_login', sa.String(length=255), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('start_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('end_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('work_type', sa.String(length=20), nullable=False),
        sa.Column('commit_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('additions', sa.Integer(), server_default='0', nullable=False),
        sa.Column('deletions', sa.Integer(), server_default='0', nullable=False),
        sa.Column('primary_paths', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('impact_score', sa.Float(), nullable=True),
        sa.Column('impact_factors', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('is_sampled', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('is_special_case', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('special_case_kind', sa.String(length=20), nullable=True),
        sa.Column('title', sa.String(length=500), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['analysis_runs.run_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('unit_id'),
    )
    op.create_index('idx_units_run_repo', 'work_units', ['run_id', 'repo_name', 'sequence'])
    op.create_index('idx_units_run_score', 'work_units', ['run_id', 'impact_score'])

    op.create_table('work_unit_commits',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('unit_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('run_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('sha', sa.String(length=64), nullable=False),
        sa.Column('repo_name', sa.String(length=255), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('committed_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('additions', sa.Integer(), server_default='0', nullable=False),
        sa.Column('deletions', sa.Integer(), server_default='0', nullable=False),
        sa.Column('files', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(['unit_id'], ['work_units.unit_id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['run_id'], ['analysis_runs.run_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_id', 'sha', name='uq_run_commit'),
    )
    op.create_index('idx_unit_commits_unit', 'work_unit_commits', ['unit_id', 'position'])

    # 3. Staged AI reviews
    op.create_table('ai_reviews',
        sa.Column('review_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('run_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('unit_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('stage', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), server_default='done', nullable=False),
        sa.Column('result', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('model', sa.String(length=100), nullable=True),
        sa.Column('prompt_version', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['analysis_runs.run_id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['unit_id'], ['work_units.unit_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('review_id'),
        sa.UniqueConstraint('run_id', 'stage', 'unit_id', name='uq_review_stage_unit'),
    )
    op.create_index('idx_reviews_run_stage', 'ai_reviews', ['run_id', 'stage'])

    # 4. Yearly reports
    op.create_table('yearly_reports',
        sa.Column('report_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('run_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_login', sa.String(length=255), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('metrics', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('stats', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('strengths', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('improvements', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('action_items', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('overall_assessment', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('overall_score', sa.Float(), nullable=True),
        sa.Column('grade', sa.String(length=2), nullable=True),
        sa.Column('manager_notes', sa.Text(), nullable=True),
        sa.Column('is_interim', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('is_finalized', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('finalized_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['analysis_runs.run_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('report_id'),
        sa.UniqueConstraint('run_id'),
    )

    # 5. Diff cache (not owned by runs)
    op.create_table('commit_diffs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('repo_name', sa.String(length=255), nullable=False),
        sa.Column('sha', sa.String(length=64), nullable=False),
        sa.Column('files', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('diff_text', sa.Text(), nullable=True),
        sa.Column('is_partial', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('fetched_at', sa.TIMESTAMP(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('repo_name', 'sha', name='uq_commit_diff'),
    )


def downgrade() -> None:
    op.drop_table('commit_diffs')
    op.drop_table('yearly_reports')
    op.drop_index('idx_reviews_run_stage', table_name='ai_reviews')
    op.drop_table('ai_reviews')
    op.drop_index('idx_unit_commits_unit', table_name='work_unit_commits')
    op.drop_table('work_unit_commits')
    op.drop_index('idx_units_run_score', table_name='work_units')
    op.drop_index('idx_units_run_repo', table_name='work_units')
    op.drop_table('work_units')
    op.drop_index('idx_runs_status', table_name='analysis_runs')
    op.drop_index('idx_runs_org_user_year', table_name='analysis_runs')
    op.drop_table('analysis_runs')
