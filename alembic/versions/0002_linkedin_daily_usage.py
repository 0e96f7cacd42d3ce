"""LinkedIn daily usage per account.

Revision ID: 0002_linkedin_daily_usage
Revises: 0001_initial
Create Date: 2026-10-16
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0002_linkedin_daily_usage'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'linkedin_daily_usage',
        sa.Column('account_identifier', sa.String(64), nullable=False),
        sa.Column('usage_date', sa.Date(), nullable=False),
        sa.Column('connections_sent', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('messages_sent', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('profile_visits', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('account_identifier', 'usage_date', name='pk_linkedin_daily_usage'),
    )


def downgrade() -> None:
    op.drop_table('linkedin_daily_usage')
