"""Create derived history tables and the upstream response cache

Revision ID: 4c2e81a0d7f3
Revises:
Create Date: 2025-03-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4c2e81a0d7f3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _history_columns():
    return [
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('symbol', sa.String(length=32), nullable=False),
        sa.Column('recorded_at', sa.DateTime(), nullable=False),
        sa.Column('period_type', sa.String(length=10), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'upstream_response_cache',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('cache_key', sa.String(length=64), nullable=False, unique=True),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('symbol', sa.String(length=32)),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_upstream_response_cache_symbol', 'upstream_response_cache', ['symbol'])
    op.create_index('idx_response_cache_expires', 'upstream_response_cache', ['expires_at'])

    op.create_table(
        'sentiment_history',
        *_history_columns(),
        sa.Column('sentiment_score', sa.Float(), nullable=False),
        sa.Column('bullish_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('bearish_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('neutral_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('message_volume', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint('symbol', 'recorded_at', name='uq_sentiment_symbol_recorded'),
        sa.CheckConstraint("period_type IN ('hourly', 'daily')", name='ck_sentiment_period_type'),
        sa.CheckConstraint('sentiment_score >= 0 AND sentiment_score <= 100', name='ck_sentiment_score_range'),
    )
    op.create_index('idx_sentiment_history_symbol_date', 'sentiment_history', ['symbol', 'recorded_at'])

    for table, payload, dominant, prefix in (
        ('narrative_history', 'narratives', 'dominant_narrative', 'narrative'),
        ('emotion_history', 'emotions', 'dominant_emotion', 'emotion'),
    ):
        op.create_table(
            table,
            *_history_columns(),
            sa.Column(payload, sa.JSON(), nullable=False),
            sa.Column(dominant, sa.String(length=255)),
            sa.Column('message_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.UniqueConstraint('symbol', 'recorded_at', name=f'uq_{prefix}_symbol_recorded'),
            sa.CheckConstraint("period_type IN ('hourly', 'daily')", name=f'ck_{prefix}_period_type'),
        )
        op.create_index(f'idx_{table}_symbol_recorded', table, ['symbol', 'recorded_at'])
        op.create_index(f'idx_{table}_period_type', table, ['period_type', 'recorded_at'])


def downgrade() -> None:
    """Downgrade schema."""
    for table in ('emotion_history', 'narrative_history', 'sentiment_history', 'upstream_response_cache'):
        op.drop_table(table)
