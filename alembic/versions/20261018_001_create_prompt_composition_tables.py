"""Create prompt template, assignment and override tables

Revision ID: 20261018_001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '20261018_001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Versioned templates (standard, module, system-default)
    op.create_table(
        'prompt_templates',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('sections', postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb"), comment='Ordered list of {key, content} objects'),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.Column('kind', sa.String(20), nullable=False, server_default='standard', comment='standard, module or system-default'),
        sa.Column('created_by', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.CheckConstraint("kind IN ('standard', 'module', 'system-default')", name='ck_prompt_templates_kind'),
    )
    op.create_index('ix_prompt_templates_kind', 'prompt_templates', ['kind'])

    # At most one system-default template
    op.create_index(
        'ix_prompt_templates_single_system_default',
        'prompt_templates',
        ['kind'],
        unique=True,
        postgresql_where=sa.text("kind = 'system-default'"),
    )

    # Append-only template snapshots
    op.create_table(
        'prompt_template_history',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('template_id', sa.Integer, nullable=False),
        sa.Column('version', sa.Integer, nullable=False, comment='Version the snapshot was taken from'),
        sa.Column('sections', postgresql.JSONB, nullable=False),
        sa.Column('snapshotted_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('modified_by', sa.String(100), nullable=True),
    )
    op.create_index('ix_prompt_template_history_template_id', 'prompt_template_history', ['template_id'])

    # (tenant, flow) -> template; template_id is a weak reference
    op.create_table(
        'flow_template_assignments',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.String(100), nullable=False),
        sa.Column('flow_key', sa.String(100), nullable=False),
        sa.Column('template_id', sa.Integer, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('tenant_id', 'flow_key', name='uq_flow_template_assignments_tenant_flow'),
    )
    op.create_index('ix_flow_template_assignments_template_id', 'flow_template_assignments', ['template_id'])

    # Per-section tenant overrides
    op.create_table(
        'prompt_overrides',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.String(100), nullable=False),
        sa.Column('flow_key', sa.String(100), nullable=False),
        sa.Column('section_key', sa.Integer, nullable=False),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('content', sa.Text, nullable=True),
        sa.Column('content_kind', sa.String(20), nullable=False, server_default='plain', comment="'plain' text or 'module' JSON envelope"),
        sa.Column('modified_by', sa.String(100), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('tenant_id', 'flow_key', 'section_key', name='uq_prompt_overrides_tenant_flow_section'),
        sa.CheckConstraint("action IN ('add', 'modify', 'remove')", name='ck_prompt_overrides_action'),
    )

    # Snapshots of replaced 'modify' overrides
    op.create_table(
        'prompt_overrides_history',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('override_id', sa.Integer, nullable=True),
        sa.Column('tenant_id', sa.String(100), nullable=False),
        sa.Column('flow_key', sa.String(100), nullable=False),
        sa.Column('section_key', sa.Integer, nullable=False),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('content', sa.Text, nullable=True),
        sa.Column('content_kind', sa.String(20), nullable=False, server_default='plain'),
        sa.Column('saved_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('saved_by', sa.String(100), nullable=True),
        sa.CheckConstraint("action IN ('add', 'modify', 'remove')", name='ck_prompt_overrides_history_action'),
    )
    op.create_index('ix_prompt_overrides_history_override_id', 'prompt_overrides_history', ['override_id'])
    op.create_index(
        'ix_prompt_overrides_history_section',
        'prompt_overrides_history',
        ['tenant_id', 'flow_key', 'section_key'],
    )
    op.create_index('ix_prompt_overrides_history_saved_at', 'prompt_overrides_history', ['saved_at'])


def downgrade() -> None:
    op.drop_index('ix_prompt_overrides_history_saved_at', table_name='prompt_overrides_history')
    op.drop_index('ix_prompt_overrides_history_section', table_name='prompt_overrides_history')
    op.drop_index('ix_prompt_overrides_history_override_id', table_name='prompt_overrides_history')
    op.drop_table('prompt_overrides_history')

    op.drop_table('prompt_overrides')

    op.drop_index('ix_flow_template_assignments_template_id', table_name='flow_template_assignments')
    op.drop_table('flow_template_assignments')

    op.drop_index('ix_prompt_template_history_template_id', table_name='prompt_template_history')
    op.drop_table('prompt_template_history')

    op.drop_index('ix_prompt_templates_single_system_default', table_name='prompt_templates')
    op.drop_index('ix_prompt_templates_kind', table_name='prompt_templates')
    op.drop_table('prompt_templates')
