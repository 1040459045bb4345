"""create tracing and analytics tables

Revision ID: 3f1a9c2e7b40
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade database schema."""
    op.create_table('ai_interaction_traces',
        sa.Column('trace_id', sa.String(length=36), nullable=False),
        sa.Column('parent_trace_id', sa.String(length=36), nullable=True),
        sa.Column('session_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('prompt_id', sa.String(length=255), nullable=True),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('model_id', sa.String(length=100), nullable=False),
        sa.Column('prompt_content', sa.Text(), nullable=False),
        sa.Column('system_prompt', sa.Text(), nullable=True),
        sa.Column('parameters', _json(), nullable=False),
        sa.Column('response_content', sa.Text(), nullable=True),
        sa.Column('tokens_used', _json(), nullable=True),
        sa.Column('cost_calculation', _json(), nullable=True),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('first_token_latency_ms', sa.Integer(), nullable=True),
        sa.Column('tokens_per_second', sa.Float(), nullable=True),
        sa.Column('streaming_enabled', sa.Boolean(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(length=100), nullable=True),
        sa.Column('quality_score', sa.Float(), nullable=True),
        sa.Column('user_rating', sa.Integer(), nullable=True),
        sa.Column('langfuse_trace_id', sa.String(length=255), nullable=True),
        sa.Column('langfuse_observation_id', sa.String(length=255), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('trace_version', sa.String(length=20), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('trace_id'),
    )
    op.create_index('ix_trace_user_created', 'ai_interaction_traces', ['user_id', 'created_at'], unique=False)
    op.create_index('ix_trace_model_created', 'ai_interaction_traces', ['model_id', 'created_at'], unique=False)
    op.create_index('ix_trace_status', 'ai_interaction_traces', ['status'], unique=False)
    op.create_index('ix_trace_session', 'ai_interaction_traces', ['session_id'], unique=False)
    op.create_index('ix_trace_prompt', 'ai_interaction_traces', ['prompt_id'], unique=False)
    op.create_index('ix_trace_created', 'ai_interaction_traces', ['created_at'], unique=False)

    op.create_table('trace_events',
        sa.Column('trace_id', sa.String(length=36), nullable=False),
        sa.Column('event_type', sa.String(length=30), nullable=False),
        sa.Column('event_data', _json(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('sequence_number', sa.Integer(), nullable=False),
        sa.Column('id', sa.UUID(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    # Events are read in sequence order per trace
    op.create_index('ix_trace_event_trace_seq', 'trace_events', ['trace_id', 'sequence_number'], unique=False)

    op.create_table('usage_analytics_daily',
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('model_id', sa.String(length=100), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('total_requests', sa.Integer(), nullable=False),
        sa.Column('successful_requests', sa.Integer(), nullable=False),
        sa.Column('failed_requests', sa.Integer(), nullable=False),
        sa.Column('total_tokens', sa.Integer(), nullable=False),
        sa.Column('total_cost', sa.Float(), nullable=False),
        sa.Column('avg_duration_ms', sa.Float(), nullable=True),
        sa.Column('avg_tokens_per_second', sa.Float(), nullable=True),
        sa.Column('avg_quality_score', sa.Float(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('date', 'user_id', 'model_id', 'source', name='uq_usage_daily_natural_key'),
    )

    op.create_table('model_usage_statistics',
        sa.Column('model_id', sa.String(length=100), nullable=False),
        sa.Column('period_type', sa.String(length=10), nullable=False),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('total_requests', sa.Integer(), nullable=False),
        sa.Column('unique_users', sa.Integer(), nullable=False),
        sa.Column('total_tokens', sa.Integer(), nullable=False),
        sa.Column('total_cost', sa.Float(), nullable=False),
        sa.Column('success_rate', sa.Float(), nullable=False),
        sa.Column('error_rate', sa.Float(), nullable=False),
        sa.Column('avg_response_time_ms', sa.Float(), nullable=False),
        sa.Column('avg_tokens_per_second', sa.Float(), nullable=False),
        sa.Column('cost_per_token', sa.Float(), nullable=False),
        sa.Column('cost_per_request', sa.Float(), nullable=False),
        sa.Column('avg_quality_score', sa.Float(), nullable=False),
        sa.Column('quality_distribution', _json(), nullable=False),
        sa.Column('error_types', _json(), nullable=False),
        sa.Column('common_errors', _json(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('model_id', 'period_type', 'period_start', name='uq_model_stats_natural_key'),
    )

    op.create_table('cost_analysis_summary',
        sa.Column('period_type', sa.String(length=10), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('total_cost', sa.Float(), nullable=False),
        sa.Column('total_requests', sa.Integer(), nullable=False),
        sa.Column('total_tokens', sa.Integer(), nullable=False),
        sa.Column('model_costs', _json(), nullable=False),
        sa.Column('user_costs', _json(), nullable=False),
        sa.Column('cost_change_percentage', sa.Float(), nullable=True),
        sa.Column('cost_forecast', sa.Float(), nullable=False),
        sa.Column('optimization_recommendations', _json(), nullable=False),
        sa.Column('potential_savings', sa.Float(), nullable=False),
        sa.Column('top_users', _json(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('period_type', 'period_start', name='uq_cost_summary_natural_key'),
    )

    op.create_table('user_activity_metrics',
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('total_requests', sa.Integer(), nullable=False),
        sa.Column('unique_prompts', sa.Integer(), nullable=False),
        sa.Column('unique_models_used', sa.Integer(), nullable=False),
        sa.Column('total_cost', sa.Float(), nullable=False),
        sa.Column('peak_usage_hour', sa.Integer(), nullable=True),
        sa.Column('most_used_model', sa.String(length=100), nullable=True),
        sa.Column('most_used_prompt_id', sa.String(length=255), nullable=True),
        sa.Column('avg_session_duration_minutes', sa.Float(), nullable=True),
        sa.Column('requests_per_session', sa.Float(), nullable=True),
        sa.Column('playground_usage', sa.Integer(), nullable=False),
        sa.Column('api_usage', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'date', name='uq_user_activity_natural_key'),
    )

    op.create_table('prompt_performance_trends',
        sa.Column('prompt_id', sa.String(length=255), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('total_uses', sa.Integer(), nullable=False),
        sa.Column('unique_users', sa.Integer(), nullable=False),
        sa.Column('total_cost', sa.Float(), nullable=False),
        sa.Column('avg_cost_per_use', sa.Float(), nullable=False),
        sa.Column('avg_duration_ms', sa.Float(), nullable=False),
        sa.Column('success_rate', sa.Float(), nullable=False),
        sa.Column('avg_quality_score', sa.Float(), nullable=False),
        sa.Column('avg_user_rating', sa.Float(), nullable=True),
        sa.Column('model_usage', _json(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('prompt_id', 'date', name='uq_prompt_trend_natural_key'),
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table('prompt_performance_trends')
    op.drop_table('user_activity_metrics')
    op.drop_table('cost_analysis_summary')
    op.drop_table('model_usage_statistics')
    op.drop_table('usage_analytics_daily')
    op.drop_index('ix_trace_event_trace_seq', table_name='trace_events')
    op.drop_table('trace_events')
    op.drop_index('ix_trace_created', table_name='ai_interaction_traces')
    op.drop_index('ix_trace_prompt', table_name='ai_interaction_traces')
    op.drop_index('ix_trace_session', table_name='ai_interaction_traces')
    op.drop_index('ix_trace_status', table_name='ai_interaction_traces')
    op.drop_index('ix_trace_model_created', table_name='ai_interaction_traces')
    op.drop_index('ix_trace_user_created', table_name='ai_interaction_traces')
    op.drop_table('ai_interaction_traces')
