"""initial_schema

Revision ID: 3b1f0c9d2a47
Revises:
Create Date: 2026-10-19 09:12:44.318205

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector

# revision identifiers, used by Alembic.
revision: str = '3b1f0c9d2a47'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EMBEDDING_DIMENSIONS = 1536


def upgrade() -> None:
    """Create organizations, posts, fragments, metrics and the publish queue."""
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"

    # Helper for JSON type
    JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB, "postgresql")
    EMBEDDING_TYPE = sa.JSON().with_variant(Vector(EMBEDDING_DIMENSIONS), "postgresql")

    if is_postgres:
        op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table('organizations',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('organization_type', sa.String(length=50), server_default='other', nullable=False),
        sa.Column('description', sa.Text(), server_default='', nullable=False),
        sa.Column('mission', sa.Text(), server_default='', nullable=False),
        sa.Column('keywords', JSON_TYPE, nullable=True),
        sa.Column('location', sa.String(length=255), server_default='', nullable=False),
        sa.Column('schedule', JSON_TYPE, nullable=True),
        sa.Column('image_feed_account', sa.String(length=255), nullable=True),
        sa.Column('micro_post_account', sa.String(length=255), nullable=True),
        sa.Column('blog_url', sa.String(length=500), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('posts',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('organization_id', sa.String(length=64), nullable=False),
        sa.Column('channel', sa.String(length=50), nullable=False),
        sa.Column('status', sa.String(length=50), server_default='draft', nullable=False),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('images', JSON_TYPE, nullable=True),
        sa.Column('tags', JSON_TYPE, nullable=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('published_url', sa.String(length=1000), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_posts_status_scheduled', 'posts', ['status', 'scheduled_at'])
    op.create_index('idx_posts_org_created', 'posts', ['organization_id', 'created_at'])
    op.create_index(
        'uq_posts_org_idempotency_key', 'posts', ['organization_id', 'idempotency_key'],
        unique=True,
        postgresql_where=sa.text('idempotency_key IS NOT NULL'),
    )

    op.create_table('content_fragments',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('organization_id', sa.String(length=64), nullable=False),
        sa.Column('source_type', sa.String(length=50), nullable=False),
        sa.Column('category', sa.String(length=100), nullable=True),
        sa.Column('channel', sa.String(length=50), nullable=True),
        sa.Column('performance', sa.String(length=20), nullable=True),
        sa.Column('source_id', sa.String(length=255), nullable=False),
        sa.Column('chunk_index', sa.Integer(), server_default='0', nullable=False),
        sa.Column('text_content', sa.Text(), nullable=False),
        sa.Column('embedding', EMBEDDING_TYPE, nullable=True),
        sa.Column('metadata', JSON_TYPE, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', 'source_type', 'source_id', 'chunk_index', name='uq_fragments_source_chunk')
    )
    op.create_index('idx_fragments_org_category', 'content_fragments', ['organization_id', 'category'])
    op.create_index('idx_fragments_org_source', 'content_fragments', ['organization_id', 'source_type', 'source_id'])
    if is_postgres:
        op.execute(
            "CREATE INDEX IF NOT EXISTS idx_fragments_embedding_hnsw "
            "ON content_fragments USING hnsw (embedding vector_cosine_ops)"
        )

    op.create_table('post_metrics',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('post_id', sa.String(length=64), nullable=False),
        sa.Column('channel', sa.String(length=50), nullable=False),
        sa.Column('impressions', sa.Integer(), server_default='0', nullable=False),
        sa.Column('likes', sa.Integer(), server_default='0', nullable=False),
        sa.Column('comments', sa.Integer(), server_default='0', nullable=False),
        sa.Column('shares', sa.Integer(), server_default='0', nullable=False),
        sa.Column('saves', sa.Integer(), server_default='0', nullable=False),
        sa.Column('clicks', sa.Integer(), server_default='0', nullable=False),
        sa.Column('score', sa.Float(), nullable=True),
        sa.Column('performance', sa.String(length=20), nullable=True),
        sa.Column('collected_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['post_id'], ['posts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_post_metrics_post_collected', 'post_metrics', ['post_id', 'collected_at'])
    op.create_index('idx_post_metrics_collected_at', 'post_metrics', ['collected_at'])

    op.create_table('publish_jobs',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('kind', sa.String(length=50), nullable=False),
        sa.Column('payload', JSON_TYPE, nullable=True),
        sa.Column('status', sa.String(length=20), server_default='waiting', nullable=False),
        sa.Column('attempts_made', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_attempts', sa.Integer(), server_default='3', nullable=False),
        sa.Column('backoff_seconds', sa.Float(), server_default='5', nullable=False),
        sa.Column('available_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('locked_by', sa.String(length=100), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('result', JSON_TYPE, nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_publish_jobs_status_available', 'publish_jobs', ['status', 'available_at'])
    op.create_index('idx_publish_jobs_status_finished', 'publish_jobs', ['status', 'finished_at'])


def downgrade() -> None:
    """Drop everything created in upgrade."""
    op.drop_index('idx_publish_jobs_status_finished', table_name='publish_jobs')
    op.drop_index('idx_publish_jobs_status_available', table_name='publish_jobs')
    op.drop_table('publish_jobs')

    op.drop_index('idx_post_metrics_collected_at', table_name='post_metrics')
    op.drop_index('idx_post_metrics_post_collected', table_name='post_metrics')
    op.drop_table('post_metrics')

    op.execute("DROP INDEX IF EXISTS idx_fragments_embedding_hnsw")
    op.drop_index('idx_fragments_org_source', table_name='content_fragments')
    op.drop_index('idx_fragments_org_category', table_name='content_fragments')
    op.drop_table('content_fragments')

    op.drop_index('uq_posts_org_idempotency_key', table_name='posts')
    op.drop_index('idx_posts_org_created', table_name='posts')
    op.drop_index('idx_posts_status_scheduled', table_name='posts')
    op.drop_table('posts')

    op.drop_table('organizations')
