"""create topics, articles, score history, keywords and audit log tables

Revision ID: 5c1e7a9d2b40
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = '5c1e7a9d2b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CATEGORIES = (
    "air_quality", "deforestation", "ocean", "climate", "pollution",
    "biodiversity", "wildlife", "energy", "waste", "water",
)
URGENCIES = ("breaking", "critical", "moderate", "informational")
SOURCE_TYPES = ("gnews", "rss", "api", "unknown")


def _in(column: str, values: tuple) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


def upgrade() -> None:
    # ═══════════════════════════════════════
    #  TOPICS
    # ═══════════════════════════════════════
    op.create_table('topics',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('category', sa.String(), server_default='climate'),
        sa.Column('region', sa.String(), nullable=True),
        sa.Column('current_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('previous_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('urgency', sa.String(), nullable=False, server_default='informational'),
        sa.Column('impact_summary', sa.Text(), nullable=True),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('article_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('health_score', sa.Integer(), server_default='0'),
        sa.Column('eco_score', sa.Integer(), server_default='0'),
        sa.Column('econ_score', sa.Integer(), server_default='0'),
        sa.Column('score_reasoning', sa.Text(), nullable=True),
        sa.Column('hidden', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug'),
        sa.CheckConstraint(_in('category', CATEGORIES), name='ck_topics_category'),
        sa.CheckConstraint(_in('urgency', URGENCIES), name='ck_topics_urgency'),
    )
    op.create_index('ix_topics_slug', 'topics', ['slug'])
    op.create_index('idx_topics_urgency', 'topics', ['urgency'])
    op.create_index('idx_topics_category', 'topics', ['category'])

    # ═══════════════════════════════════════
    #  ARTICLES
    # ═══════════════════════════════════════
    op.create_table('articles',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('topic_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('source', sa.String(), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('source_type', sa.String(), nullable=False, server_default='unknown'),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('fetched_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('scored_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['topic_id'], ['topics.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('url'),
        sa.CheckConstraint(_in('source_type', SOURCE_TYPES), name='ck_articles_source_type'),
    )
    op.create_index('idx_articles_topic', 'articles', ['topic_id'])
    op.create_index('idx_articles_unscored', 'articles', ['topic_id', 'scored_at'])

    # ═══════════════════════════════════════
    #  SCORE HISTORY
    # ═══════════════════════════════════════
    op.create_table('score_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('topic_id', sa.Integer(), nullable=False),
        sa.Column('recorded_at', sa.Date(), nullable=False),
        sa.Column('score', sa.Integer(), nullable=False),
        sa.Column('health_score', sa.Integer(), nullable=True),
        sa.Column('eco_score', sa.Integer(), nullable=True),
        sa.Column('econ_score', sa.Integer(), nullable=True),
        sa.Column('health_level', sa.String(), nullable=True),
        sa.Column('eco_level', sa.String(), nullable=True),
        sa.Column('econ_level', sa.String(), nullable=True),
        sa.Column('impact_summary', sa.Text(), nullable=True),
        sa.Column('anomaly_detected', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('raw_response', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['topic_id'], ['topics.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('topic_id', 'recorded_at', name='uq_score_history_topic_day'),
    )
    op.create_index('idx_score_history_date', 'score_history', ['recorded_at'])

    # ═══════════════════════════════════════
    #  TOPIC KEYWORDS
    # ═══════════════════════════════════════
    op.create_table('topic_keywords',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('topic_id', sa.Integer(), nullable=False),
        sa.Column('keyword', sa.String(), nullable=False),
        sa.ForeignKeyConstraint(['topic_id'], ['topics.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('topic_id', 'keyword', name='uq_topic_keywords_unique'),
    )
    op.create_index('idx_topic_keywords_topic', 'topic_keywords', ['topic_id'])

    # ═══════════════════════════════════════
    #  AUDIT LOGS
    # ═══════════════════════════════════════
    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('actor', sa.String(), nullable=True),
        sa.Column('endpoint', sa.String(), nullable=True),
        sa.Column('method', sa.String(), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('target', sa.String(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('idx_audit_logs_action', 'audit_logs', ['action'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('topic_keywords')
    op.drop_table('score_history')
    op.drop_table('articles')
    op.drop_table('topics')
