"""Create per-flow top-k and tenant language settings tables

Revision ID: 20261018_002
Revises: 20261018_001
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261018_002'
down_revision = '20261018_001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Retrieval depth per (tenant, flow)
    op.create_table(
        'flow_topk_settings',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.String(100), nullable=False),
        sa.Column('flow_key', sa.String(100), nullable=False),
        sa.Column('top_k', sa.Integer, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('tenant_id', 'flow_key', name='uq_flow_topk_settings_tenant_flow'),
        sa.CheckConstraint('top_k >= 1', name='ck_flow_topk_settings_top_k_positive'),
    )

    # One conversation language per tenant
    op.create_table(
        'tenant_language_settings',
        sa.Column('tenant_id', sa.String(100), primary_key=True),
        sa.Column('language', sa.String(20), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )


def downgrade() -> None:
    op.drop_table('tenant_language_settings')
    op.drop_table('flow_topk_settings')
