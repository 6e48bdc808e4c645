"""initial schema: endpoints, webhooks, etl, external services, scheduler, settings, event logs

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade() -> None:
    # 运行期配置
    op.create_table(
        'system_settings',
        sa.Column('key', sa.String(100), nullable=False),
        sa.Column('value', postgresql.JSONB(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('key'),
    )

    # 事件日志
    op.create_table(
        'event_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('level', sa.String(20), nullable=False),
        sa.Column('level_value', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('category', sa.String(50), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('context', postgresql.JSONB(), nullable=True),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('ip_address', postgresql.INET(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('request_uri', sa.String(2048), nullable=True),
        sa.Column('request_method', sa.String(10), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )
    for column in ('level', 'level_value', 'category', 'user_id', 'created_at'):
        op.create_index(op.f(f'ix_event_logs_{column}'), 'event_logs', [column], unique=False)

    # 自定义端点
    op.create_table(
        'custom_endpoints',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('route', sa.String(255), nullable=False, server_default=''),
        sa.Column('method', sa.String(10), nullable=False, server_default='POST'),
        sa.Column('handler_type', sa.String(20), nullable=False),
        sa.Column('handler_config', postgresql.JSONB(), nullable=True),
        sa.Column('permission_type', sa.String(20), nullable=False, server_default='public'),
        sa.Column('permission_config', postgresql.JSONB(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('rate_limit', sa.Integer(), nullable=True),
        sa.Column('cache_ttl', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('timeout', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('retry_policy', postgresql.JSONB(), nullable=True),
        sa.Column('request_schema', postgresql.JSONB(), nullable=True),
        sa.Column('response_schema', postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_custom_endpoints_slug'), 'custom_endpoints', ['slug'], unique=False)
    op.create_index(op.f('ix_custom_endpoints_is_active'), 'custom_endpoints', ['is_active'], unique=False)
    op.create_index('ix_custom_endpoints_slug_route_method', 'custom_endpoints', ['slug', 'route', 'method'], unique=False)

    # 外部服务
    op.create_table(
        'external_services',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('base_url', sa.String(2048), nullable=False),
        sa.Column('auth_type', sa.String(20), nullable=False, server_default='none'),
        sa.Column('auth_config', postgresql.JSONB(), nullable=True),
        sa.Column('default_headers', postgresql.JSONB(), nullable=True),
        sa.Column('retry_config', postgresql.JSONB(), nullable=True),
        sa.Column('rate_limit_config', postgresql.JSONB(), nullable=True),
        sa.Column('health_check_config', postgresql.JSONB(), nullable=True),
        sa.Column('timeout', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('health_status', sa.String(20), nullable=False, server_default='unknown'),
        sa.Column('last_health_check', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_external_services_is_active'), 'external_services', ['is_active'], unique=False)

    # Webhook 日志
    op.create_table(
        'webhook_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('endpoint_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('source_ip', postgresql.INET(), nullable=True),
        sa.Column('source_identifier', sa.String(255), nullable=True),
        sa.Column('request_method', sa.String(10), nullable=False),
        sa.Column('request_headers', postgresql.JSONB(), nullable=True),
        sa.Column('request_payload', sa.Text(), nullable=True),
        sa.Column('query_params', postgresql.JSONB(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('signature_valid', sa.Boolean(), nullable=True),
        sa.Column('response_code', sa.Integer(), nullable=True),
        sa.Column('response_body', postgresql.JSONB(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['endpoint_id'], ['custom_endpoints.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    for column in ('endpoint_id', 'status', 'created_at'):
        op.create_index(op.f(f'ix_webhook_logs_{column}'), 'webhook_logs', [column], unique=False)

    # ETL 模板与作业
    op.create_table(
        'etl_templates',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('extract_config', postgresql.JSONB(), nullable=True),
        sa.Column('transform_config', postgresql.JSONB(), nullable=True),
        sa.Column('field_mappings', postgresql.JSONB(), nullable=True),
        sa.Column('load_config', postgresql.JSONB(), nullable=True),
        sa.Column('external_service_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.ForeignKeyConstraint(['external_service_id'], ['external_services.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'etl_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('template_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('webhook_log_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('input_data', postgresql.JSONB(), nullable=True),
        sa.Column('extracted_data', postgresql.JSONB(), nullable=True),
        sa.Column('transformed_data', postgresql.JSONB(), nullable=True),
        sa.Column('load_result', postgresql.JSONB(), nullable=True),
        sa.Column('external_response_code', sa.Integer(), nullable=True),
        sa.Column('external_response_body', postgresql.JSONB(), nullable=True),
        sa.Column('error_stage', sa.String(20), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['template_id'], ['etl_templates.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['webhook_log_id'], ['webhook_logs.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    for column in ('template_id', 'status', 'created_at'):
        op.create_index(op.f(f'ix_etl_jobs_{column}'), 'etl_jobs', [column], unique=False)

    # 定时任务
    op.create_table(
        'scheduled_tasks',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('task_type', sa.String(20), nullable=False),
        sa.Column('handler', sa.String(100), nullable=False),
        sa.Column('frequency', sa.String(30), nullable=False, server_default='hourly'),
        sa.Column('config', postgresql.JSONB(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_system', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('next_run_at', sa.DateTime(), nullable=True),
        sa.Column('last_run_at', sa.DateTime(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('last_result', postgresql.JSONB(), nullable=True),
        sa.Column('last_duration_ms', sa.Integer(), nullable=True),
        sa.Column('run_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('fail_count', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    for column in ('handler', 'is_active', 'status', 'next_run_at'):
        op.create_index(op.f(f'ix_scheduled_tasks_{column}'), 'scheduled_tasks', [column], unique=False)


def downgrade() -> None:
    op.drop_table('scheduled_tasks')
    op.drop_table('etl_jobs')
    op.drop_table('etl_templates')
    op.drop_table('webhook_logs')
    op.drop_table('external_services')
    op.drop_table('custom_endpoints')
    op.drop_table('event_logs')
    op.drop_table('system_settings')
