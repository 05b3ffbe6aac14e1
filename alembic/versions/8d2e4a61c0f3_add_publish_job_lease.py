"""add_publish_job_lease

Revision ID: 8d2e4a61c0f3
Revises: 3b1f0c9d2a47
Create Date: 2026-10-19 15:40:07.552931

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8d2e4a61c0f3'
down_revision: Union[str, Sequence[str], None] = '3b1f0c9d2a47'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add the claim timestamp used to expire abandoned job leases."""
    op.add_column('publish_jobs', sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True))
    op.create_index('idx_publish_jobs_status_locked', 'publish_jobs', ['status', 'locked_at'])

    # Jobs already active have no claim time; start their lease now
    op.execute("UPDATE publish_jobs SET locked_at = updated_at WHERE status = 'active'")


def downgrade() -> None:
    """Drop the lease column."""
    op.drop_index('idx_publish_jobs_status_locked', table_name='publish_jobs')
    op.drop_column('publish_jobs', 'locked_at')
