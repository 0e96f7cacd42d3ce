"""Initial schema: job queue, rate limit buckets, campaigns.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-16

Creates:
- jobs (claimable index, unique idempotency key)
- rate_limit_buckets
- campaign_templates and the email/linkedin/video step tables
- campaign_instances, campaign_enrollments, campaign_events
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]
    if updated:
        columns.append(
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
        )
    return columns


def upgrade() -> None:
    # ==========================================================================
    # jobs
    # ==========================================================================
    op.create_table(
        'jobs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column('payload', JSON, nullable=False),
        sa.Column('priority', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('status', sa.String(20), server_default=sa.text("'pending'"), nullable=False),
        sa.Column('attempts', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('max_attempts', sa.Integer(), server_default=sa.text('3'), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('claimed_by', sa.String(255), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_requested', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('result', JSON, nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        *_timestamps(),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_jobs'),
    )
    op.create_index(
        'idx_jobs_claimable',
        'jobs',
        ['status', 'priority', 'scheduled_at'],
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index('idx_jobs_type_status', 'jobs', ['job_type', 'status'])
    op.create_index('uq_job_idempotency', 'jobs', ['idempotency_key'], unique=True)

    # ==========================================================================
    # rate_limit_buckets
    # ==========================================================================
    op.create_table(
        'rate_limit_buckets',
        sa.Column('service_name', sa.String(100), nullable=False),
        sa.Column('capacity', sa.Float(), nullable=False),
        sa.Column('tokens', sa.Float(), nullable=False),
        sa.Column('refill_rate', sa.Float(), nullable=False),
        sa.Column('refill_interval_seconds', sa.Float(), nullable=False),
        sa.Column('last_refill', sa.Float(), nullable=False),
        sa.Column('version', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.PrimaryKeyConstraint('service_name', name='pk_rate_limit_buckets'),
    )

    # ==========================================================================
    # campaign_templates + steps
    # ==========================================================================
    op.create_table(
        'campaign_templates',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('path_type', sa.String(20), server_default=sa.text("'structured'"), nullable=False),
        sa.Column('settings', JSON, nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_campaign_templates'),
    )
    op.create_index('idx_campaign_templates_active', 'campaign_templates', ['is_active', 'created_at'])

    op.create_table(
        'email_sequence_steps',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('template_id', sa.Uuid(), nullable=False),
        sa.Column('step_number', sa.Integer(), nullable=False),
        sa.Column('subject', sa.String(500), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('delay_hours', sa.Integer(), nullable=False),
        sa.Column('a_b_variant', sa.String(10), server_default=sa.text("'A'"), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(
            ['template_id'], ['campaign_templates.id'],
            name='fk_email_sequence_steps_template_id_campaign_templates',
            ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_email_sequence_steps'),
        sa.UniqueConstraint('template_id', 'step_number', 'a_b_variant', name='uq_email_step_variant'),
    )

    op.create_table(
        'linkedin_sequence_steps',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('template_id', sa.Uuid(), nullable=False),
        sa.Column('step_number', sa.Integer(), nullable=False),
        sa.Column('action_type', sa.String(30), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('delay_hours', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(
            ['template_id'], ['campaign_templates.id'],
            name='fk_linkedin_sequence_steps_template_id_campaign_templates',
            ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_linkedin_sequence_steps'),
        sa.UniqueConstraint('template_id', 'step_number', name='uq_linkedin_step'),
    )

    op.create_table(
        'video_sequence_steps',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('template_id', sa.Uuid(), nullable=False),
        sa.Column('step_number', sa.Integer(), nullable=False),
        sa.Column('script', sa.Text(), nullable=False),
        sa.Column('avatar_id', sa.String(255), nullable=False),
        sa.Column('voice_id', sa.String(255), nullable=False),
        sa.Column('delay_hours', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(
            ['template_id'], ['campaign_templates.id'],
            name='fk_video_sequence_steps_template_id_campaign_templates',
            ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_video_sequence_steps'),
        sa.UniqueConstraint('template_id', 'step_number', name='uq_video_step'),
    )

    # ==========================================================================
    # campaign_instances
    # ==========================================================================
    counters = [
        sa.Column(name, sa.Integer(), server_default=sa.text('0'), nullable=False)
        for name in (
            'total_enrolled', 'total_sent', 'total_delivered', 'total_opened',
            'total_clicked', 'total_replied', 'total_bounced', 'total_unsubscribed',
        )
    ]
    op.create_table(
        'campaign_instances',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('template_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), server_default=sa.text("'draft'"), nullable=False),
        sa.Column('provider_config', JSON, nullable=False),
        sa.Column('sequence_snapshot', JSON, nullable=False),
        *counters,
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paused_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ['template_id'], ['campaign_templates.id'],
            name='fk_campaign_instances_template_id_campaign_templates',
            onupdate='CASCADE',
            ondelete='RESTRICT',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_campaign_instances'),
    )
    op.create_index('idx_campaign_instances_template', 'campaign_instances', ['template_id', 'status'])
    op.create_index('idx_campaign_instances_status', 'campaign_instances', ['status', 'created_at'])

    # ==========================================================================
    # campaign_enrollments
    # ==========================================================================
    op.create_table(
        'campaign_enrollments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('instance_id', sa.Uuid(), nullable=False),
        sa.Column('contact_id', sa.String(255), nullable=False),
        sa.Column('contact_email', sa.String(320), nullable=True),
        sa.Column('contact_linkedin_url', sa.String(500), nullable=True),
        sa.Column('status', sa.String(20), server_default=sa.text("'active'"), nullable=False),
        sa.Column('current_step', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('next_action_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('provider_message_id', sa.String(255), nullable=True),
        sa.Column('provider_action_id', sa.String(255), nullable=True),
        sa.Column('metadata', JSON, nullable=False),
        sa.Column('enrolled_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('unsubscribed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ['instance_id'], ['campaign_instances.id'],
            name='fk_campaign_enrollments_instance_id_campaign_instances',
            ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_campaign_enrollments'),
        sa.UniqueConstraint('instance_id', 'contact_id', name='uq_enrollment_instance_contact'),
    )
    op.create_index('idx_enrollments_due', 'campaign_enrollments', ['status', 'next_action_at'])
    op.create_index('idx_enrollments_provider_message', 'campaign_enrollments', ['provider_message_id'])
    op.create_index('idx_enrollments_provider_action', 'campaign_enrollments', ['provider_action_id'])

    # ==========================================================================
    # campaign_events
    # ==========================================================================
    op.create_table(
        'campaign_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('enrollment_id', sa.Uuid(), nullable=False),
        sa.Column('instance_id', sa.Uuid(), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('channel', sa.String(20), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('provider_event_id', sa.String(255), nullable=True),
        sa.Column('provider_message_id', sa.String(255), nullable=True),
        sa.Column('step_number', sa.Integer(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('raw_payload', JSON, nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(
            ['enrollment_id'], ['campaign_enrollments.id'],
            name='fk_campaign_events_enrollment_id_campaign_enrollments',
            ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['instance_id'], ['campaign_instances.id'],
            name='fk_campaign_events_instance_id_campaign_instances',
            ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_campaign_events'),
    )
    op.create_index(
        'uq_campaign_events_provider_event', 'campaign_events', ['provider_event_id'], unique=True
    )
    op.create_index('idx_campaign_events_instance_type', 'campaign_events', ['instance_id', 'event_type'])
    op.create_index('idx_campaign_events_enrollment', 'campaign_events', ['enrollment_id', 'occurred_at'])
    op.create_index('idx_campaign_events_provider_message', 'campaign_events', ['provider_message_id'])


def downgrade() -> None:
    op.drop_table('campaign_events')
    op.drop_table('campaign_enrollments')
    op.drop_table('campaign_instances')
    op.drop_table('video_sequence_steps')
    op.drop_table('linkedin_sequence_steps')
    op.drop_table('email_sequence_steps')
    op.drop_table('campaign_templates')
    op.drop_table('rate_limit_buckets')
    op.drop_table('jobs')
