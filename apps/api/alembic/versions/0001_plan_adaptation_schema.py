"""plan adaptation schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _id():
    return sa.Column('id', sa.Uuid(), primary_key=True)


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False)


def upgrade() -> None:
    op.create_table(
        'coach',
        _id(),
        _created_at(),
        sa.Column('email', sa.Text(), nullable=True, unique=True),
        sa.Column('display_name', sa.Text(), nullable=True),
        sa.Column('role', sa.Text(), nullable=False, server_default='coach'),
    )

    op.create_table(
        'athlete',
        _id(),
        _created_at(),
        sa.Column('coach_id', sa.Uuid(), sa.ForeignKey('coach.id'), nullable=False),
        sa.Column('display_name', sa.Text(), nullable=True),
    )
    op.create_index('ix_athlete_coach_id', 'athlete', ['coach_id'])

    op.create_table(
        'draft_plan',
        _id(),
        sa.Column('athlete_id', sa.Uuid(), sa.ForeignKey('athlete.id'), nullable=False),
        sa.Column('coach_id', sa.Uuid(), sa.ForeignKey('coach.id'), nullable=False),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('setup_json', JSONType, nullable=False),
        sa.Column('plan_json', JSONType, nullable=True),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('published_hash', sa.Text(), nullable=True),
    )
    op.create_index('ix_draft_plan_athlete_id', 'draft_plan', ['athlete_id'])
    op.create_index('ix_draft_plan_coach_id', 'draft_plan', ['coach_id'])

    op.create_table(
        'draft_week',
        _id(),
        sa.Column('draft_id', sa.Uuid(), sa.ForeignKey('draft_plan.id'), nullable=False),
        sa.Column('week_index', sa.Integer(), nullable=False),
        sa.Column('locked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('sessions_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('draft_id', 'week_index', name='uq_draft_week_index'),
    )
    op.create_index('ix_draft_week_draft_id', 'draft_week', ['draft_id'])

    op.create_table(
        'draft_session',
        _id(),
        sa.Column('draft_id', sa.Uuid(), sa.ForeignKey('draft_plan.id'), nullable=False),
        sa.Column('week_index', sa.Integer(), nullable=False),
        sa.Column('ordinal', sa.Integer(), nullable=False),
        sa.Column('day_of_week', sa.Integer(), nullable=False),
        sa.Column('discipline', sa.Text(), nullable=False),
        sa.Column('type', sa.Text(), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('locked', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index('ix_draft_session_draft_id', 'draft_session', ['draft_id'])
    op.create_index('ix_draft_session_draft_week', 'draft_session', ['draft_id', 'week_index', 'ordinal'])

    op.create_table(
        'session_feedback',
        _id(),
        sa.Column('athlete_id', sa.Uuid(), sa.ForeignKey('athlete.id'), nullable=False),
        sa.Column('coach_id', sa.Uuid(), sa.ForeignKey('coach.id'), nullable=False),
        sa.Column('draft_id', sa.Uuid(), sa.ForeignKey('draft_plan.id'), nullable=True),
        sa.Column('session_id', sa.Uuid(), sa.ForeignKey('draft_session.id'), nullable=True),
        _created_at(),
        sa.Column('completed_status', sa.Text(), nullable=False),
        sa.Column('feel', sa.Text(), nullable=True),
        sa.Column('rpe', sa.Integer(), nullable=True),
        sa.Column('soreness_flag', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('soreness_notes', sa.Text(), nullable=True),
        sa.Column('sleep_quality', sa.Integer(), nullable=True),
    )
    op.create_index('ix_session_feedback_athlete_id', 'session_feedback', ['athlete_id'])
    op.create_index('ix_session_feedback_created_at', 'session_feedback', ['created_at'])

    op.create_table(
        'completed_activity',
        _id(),
        sa.Column('athlete_id', sa.Uuid(), sa.ForeignKey('athlete.id'), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('rpe', sa.Float(), nullable=True),
        sa.Column('pain_flag', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index('ix_completed_activity_athlete_id', 'completed_activity', ['athlete_id'])
    op.create_index('ix_completed_activity_start_time', 'completed_activity', ['start_time'])

    op.create_table(
        'adaptation_trigger',
        _id(),
        sa.Column('athlete_id', sa.Uuid(), sa.ForeignKey('athlete.id'), nullable=False),
        sa.Column('coach_id', sa.Uuid(), sa.ForeignKey('coach.id'), nullable=False),
        sa.Column('draft_id', sa.Uuid(), sa.ForeignKey('draft_plan.id'), nullable=False),
        sa.Column('trigger_type', sa.Text(), nullable=False),
        sa.Column('window_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('window_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('evidence_json', JSONType, nullable=False),
        _created_at(),
        sa.UniqueConstraint(
            'draft_id', 'trigger_type', 'window_start', 'window_end',
            name='uq_adaptation_trigger_window',
        ),
    )
    op.create_index('ix_adaptation_trigger_athlete_id', 'adaptation_trigger', ['athlete_id'])
    op.create_index('ix_adaptation_trigger_draft_id', 'adaptation_trigger', ['draft_id'])

    op.create_table(
        'plan_change_proposal',
        _id(),
        sa.Column('athlete_id', sa.Uuid(), sa.ForeignKey('athlete.id'), nullable=False),
        sa.Column('coach_id', sa.Uuid(), sa.ForeignKey('coach.id'), nullable=False),
        sa.Column('draft_id', sa.Uuid(), sa.ForeignKey('draft_plan.id'), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('diff_json', JSONType, nullable=False),
        sa.Column('rationale_text', sa.Text(), nullable=True),
        sa.Column('respects_locks', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('trigger_ids', JSONType, nullable=False),
        sa.Column('baseline_sessions', JSONType, nullable=False),
        sa.Column('metadata_json', JSONType, nullable=False),
        sa.Column('source_proposal_id', sa.Uuid(), sa.ForeignKey('plan_change_proposal.id'), nullable=True),
        _created_at(),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_plan_change_proposal_athlete_id', 'plan_change_proposal', ['athlete_id'])
    op.create_index('ix_plan_change_proposal_draft_id', 'plan_change_proposal', ['draft_id'])
    op.create_index('ix_plan_change_proposal_status', 'plan_change_proposal', ['status'])
    op.create_index('ix_plan_change_proposal_created_at', 'plan_change_proposal', ['created_at'])

    op.create_table(
        'plan_change_before_state',
        _id(),
        sa.Column('draft_id', sa.Uuid(), sa.ForeignKey('draft_plan.id'), nullable=False),
        sa.Column('sessions_json', JSONType, nullable=False),
        _created_at(),
    )

    op.create_table(
        'plan_change_audit',
        _id(),
        sa.Column('proposal_id', sa.Uuid(), sa.ForeignKey('plan_change_proposal.id'), nullable=False),
        sa.Column('draft_id', sa.Uuid(), sa.ForeignKey('draft_plan.id'), nullable=False),
        sa.Column('athlete_id', sa.Uuid(), sa.ForeignKey('athlete.id'), nullable=False),
        sa.Column('event_type', sa.Text(), nullable=False),
        sa.Column('actor_type', sa.Text(), nullable=False, server_default='coach'),
        sa.Column('actor_id', sa.Uuid(), nullable=True),
        sa.Column('change_summary_text', sa.Text(), nullable=True),
        sa.Column('diff_json', JSONType, nullable=True),
        sa.Column('before_state_id', sa.Uuid(), sa.ForeignKey('plan_change_before_state.id'), nullable=True),
        _created_at(),
    )
    op.create_index('ix_plan_change_audit_proposal_id', 'plan_change_audit', ['proposal_id'])
    op.create_index('ix_plan_change_audit_draft_id', 'plan_change_audit', ['draft_id'])

    op.create_table(
        'policy_tuning',
        sa.Column('profile_id', sa.Text(), primary_key=True),
        sa.Column('profile_version', sa.Text(), nullable=False, server_default='v1'),
        sa.Column('override_json', JSONType, nullable=False),
        sa.Column('updated_by', sa.Uuid(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('policy_tuning')
    op.drop_index('ix_plan_change_audit_draft_id', table_name='plan_change_audit')
    op.drop_index('ix_plan_change_audit_proposal_id', table_name='plan_change_audit')
    op.drop_table('plan_change_audit')
    op.drop_table('plan_change_before_state')
    for name in ('created_at', 'status', 'draft_id', 'athlete_id'):
        op.drop_index(f'ix_plan_change_proposal_{name}', table_name='plan_change_proposal')
    op.drop_table('plan_change_proposal')
    op.drop_index('ix_adaptation_trigger_draft_id', table_name='adaptation_trigger')
    op.drop_index('ix_adaptation_trigger_athlete_id', table_name='adaptation_trigger')
    op.drop_table('adaptation_trigger')
    op.drop_index('ix_completed_activity_start_time', table_name='completed_activity')
    op.drop_index('ix_completed_activity_athlete_id', table_name='completed_activity')
    op.drop_table('completed_activity')
    op.drop_index('ix_session_feedback_created_at', table_name='session_feedback')
    op.drop_index('ix_session_feedback_athlete_id', table_name='session_feedback')
    op.drop_table('session_feedback')
    op.drop_index('ix_draft_session_draft_week', table_name='draft_session')
    op.drop_index('ix_draft_session_draft_id', table_name='draft_session')
    op.drop_table('draft_session')
    op.drop_index('ix_draft_week_draft_id', table_name='draft_week')
    op.drop_table('draft_week')
    op.drop_index('ix_draft_plan_coach_id', table_name='draft_plan')
    op.drop_index('ix_draft_plan_athlete_id', table_name='draft_plan')
    op.drop_table('draft_plan')
    op.drop_index('ix_athlete_coach_id', table_name='athlete')
    op.drop_table('athlete')
    op.drop_table('coach')
