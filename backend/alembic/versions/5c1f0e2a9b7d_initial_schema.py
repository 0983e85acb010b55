"""initial schema

Revision ID: 5c1f0e2a9b7d
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = '5c1f0e2a9b7d'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'projects',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('repo_full_name', sa.String(255), nullable=False),
        sa.Column('default_branch', sa.String(255), nullable=False, server_default='main'),
        sa.Column('repo_path', sa.Text(), nullable=False),
        sa.Column('knowledge_path', sa.Text(), nullable=True),
        sa.Column('stack_info', JSONB(), nullable=True),
        sa.Column('total_files', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_lines', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_kb_scan_id', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'indexed_files',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('project_id', UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('scan_id', sa.String(64), nullable=True),
        sa.Column('path', sa.Text(), nullable=False),
        sa.Column('language', sa.String(50), nullable=True),
        sa.Column('size_bytes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_binary', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_excluded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('symbols_declared', JSONB(), nullable=True),
        sa.Column('imports', JSONB(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_indexed_files_project_path', 'indexed_files', ['project_id', 'path'])

    op.create_table(
        'indexed_chunks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('project_id', UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('scan_id', sa.String(64), nullable=True),
        sa.Column('chunk_id', sa.String(128), nullable=False),
        sa.Column('path', sa.Text(), nullable=False),
        sa.Column('start_line', sa.Integer(), nullable=False),
        sa.Column('end_line', sa.Integer(), nullable=False),
        sa.Column('sha1', sa.String(40), nullable=True),
        sa.Column('is_complete_file', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('symbols_declared', JSONB(), nullable=True),
        sa.Column('symbols_used', JSONB(), nullable=True),
        sa.Column('imports', JSONB(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_indexed_chunks_project_path', 'indexed_chunks', ['project_id', 'path'])

    # current_intent_id / current_plan_id foreign keys are added once their tables exist
    op.create_table(
        'conversations',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('project_id', UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('title', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('current_phase', sa.String(20), nullable=False, server_default='intake'),
        sa.Column('current_intent_id', UUID(as_uuid=True), nullable=True),
        sa.Column('current_plan_id', UUID(as_uuid=True), nullable=True),
        sa.Column('context_summary', JSONB(), nullable=True),
        sa.Column('metadata', JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_conversations_project_id', 'conversations', ['project_id'])

    op.create_table(
        'conversation_messages',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column(
            'conversation_id', UUID(as_uuid=True),
            sa.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('content', sa.Text(), nullable=False, server_default=''),
        sa.Column('message_type', sa.String(30), nullable=False, server_default='text'),
        sa.Column('metadata', JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_conversation_messages_conversation_id', 'conversation_messages', ['conversation_id'])

    op.create_table(
        'intent_analyses',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('project_id', UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column(
            'conversation_id', UUID(as_uuid=True),
            sa.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=True,
        ),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('intent_type', sa.String(30), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='0'),
        sa.Column('extracted_entities', JSONB(), nullable=True),
        sa.Column('domain_classification', JSONB(), nullable=True),
        sa.Column('complexity', sa.String(20), nullable=False, server_default='medium'),
        sa.Column('requires_clarification', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('clarification_questions', JSONB(), nullable=True),
        sa.Column('metadata', JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'execution_plans',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('project_id', UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column(
            'conversation_id', UUID(as_uuid=True),
            sa.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=True,
        ),
        sa.Column(
            'intent_id', UUID(as_uuid=True),
            sa.ForeignKey('intent_analyses.id', ondelete='SET NULL'), nullable=True,
        ),
        sa.Column(
            'parent_plan_id', UUID(as_uuid=True),
            sa.ForeignKey('execution_plans.id', ondelete='SET NULL'), nullable=True,
        ),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('plan_data', JSONB(), nullable=True),
        sa.Column('file_operations', JSONB(), nullable=False, server_default='[]'),
        sa.Column('estimated_complexity', sa.String(20), nullable=False, server_default='medium'),
        sa.Column('estimated_files_affected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('risks', JSONB(), nullable=True),
        sa.Column('prerequisites', JSONB(), nullable=True),
        sa.Column('user_feedback', sa.Text(), nullable=True),
        sa.Column('refinement_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_by', sa.String(255), nullable=True),
        sa.Column('execution_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('execution_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_execution_plans_conversation_id', 'execution_plans', ['conversation_id'])

    op.create_table(
        'file_executions',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column(
            'execution_plan_id', UUID(as_uuid=True),
            sa.ForeignKey('execution_plans.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('operation_index', sa.Integer(), nullable=False),
        sa.Column('operation_type', sa.String(20), nullable=False),
        sa.Column('file_path', sa.Text(), nullable=False),
        sa.Column('new_file_path', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('original_content', sa.Text(), nullable=True),
        sa.Column('new_content', sa.Text(), nullable=True),
        sa.Column('diff', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('user_approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('backup_path', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_file_executions_plan_id', 'file_executions', ['execution_plan_id'])

    op.create_foreign_key(
        'fk_conversations_current_intent', 'conversations', 'intent_analyses',
        ['current_intent_id'], ['id'], ondelete='SET NULL',
    )
    op.create_foreign_key(
        'fk_conversations_current_plan', 'conversations', 'execution_plans',
        ['current_plan_id'], ['id'], ondelete='SET NULL',
    )

    op.create_table(
        'kv_cache',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('cache_key', sa.String(255), nullable=False),
        sa.Column('value_text', sa.Text(), nullable=False),
        sa.Column('meta_json', JSONB(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_kv_cache_cache_key', 'kv_cache', ['cache_key'], unique=True)


def downgrade() -> None:
    op.drop_index('ix_kv_cache_cache_key', table_name='kv_cache')
    op.drop_table('kv_cache')
    op.drop_constraint('fk_conversations_current_plan', 'conversations', type_='foreignkey')
    op.drop_constraint('fk_conversations_current_intent', 'conversations', type_='foreignkey')
    op.drop_index('ix_file_executions_plan_id', table_name='file_executions')
    op.drop_table('file_executions')
    op.drop_index('ix_execution_plans_conversation_id', table_name='execution_plans')
    op.drop_table('execution_plans')
    op.drop_table('intent_analyses')
    op.drop_index('ix_conversation_messages_conversation_id', table_name='conversation_messages')
    op.drop_table('conversation_messages')
    op.drop_index('ix_conversations_project_id', table_name='conversations')
    op.drop_table('conversations')
    op.drop_index('ix_indexed_chunks_project_path', table_name='indexed_chunks')
    op.drop_table('indexed_chunks')
    op.drop_index('ix_indexed_files_project_path', table_name='indexed_files')
    op.drop_table('indexed_files')
    op.drop_table('projects')
