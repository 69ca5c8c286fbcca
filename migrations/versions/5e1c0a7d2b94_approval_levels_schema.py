"""approval_levels_schema

Revision ID: 5e1c0a7d2b94
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '5e1c0a7d2b94'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Must match settings.REALTIME_CHANNEL
NOTIFY_CHANNEL = "approval_levels_changes"


def upgrade() -> None:
    # 1. clients (self-referencing: condominium -> administradora)
    op.create_table('clients',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('name', sa.String(length=200), nullable=False),
    sa.Column('kind', sa.String(length=30), nullable=False),
    sa.Column('parent_client_id', sa.UUID(), nullable=True),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.ForeignKeyConstraint(['parent_client_id'], ['clients.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_clients_parent', 'clients', ['parent_client_id'], unique=False)

    # 2. profiles (user directory)
    op.create_table('profiles',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('client_id', sa.UUID(), nullable=True),
    sa.Column('name', sa.String(length=200), nullable=True),
    sa.Column('email', sa.String(length=255), nullable=True),
    sa.Column('role', sa.String(length=50), nullable=False),
    sa.Column('is_active', sa.Boolean(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.ForeignKeyConstraint(['client_id'], ['clients.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_profiles_client_role', 'profiles', ['client_id', 'role'], unique=False)

    # 3. approval_levels
    op.create_table('approval_levels',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('client_id', sa.UUID(), nullable=False),
    sa.Column('name', sa.String(length=200), nullable=False),
    sa.Column('order_level', sa.Integer(), nullable=False),
    sa.Column('amount_threshold', sa.Numeric(precision=14, scale=2), nullable=False),
    sa.Column('max_amount_threshold', sa.Numeric(precision=14, scale=2), nullable=True),
    sa.Column('approvers', postgresql.ARRAY(sa.Text()), nullable=False, server_default='{}'),
    sa.Column('active', sa.Boolean(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.CheckConstraint('amount_threshold >= 0', name='chk_approval_level_min_non_negative'),
    sa.CheckConstraint(
        'max_amount_threshold IS NULL OR max_amount_threshold >= amount_threshold',
        name='chk_approval_level_band_ordered',
    ),
    sa.ForeignKeyConstraint(['client_id'], ['clients.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_approval_levels_client_order', 'approval_levels', ['client_id', 'order_level'], unique=False)

    # 4. audit_logs
    op.create_table('audit_logs',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('actor_id', sa.UUID(), nullable=True),
    sa.Column('actor_email', sa.String(length=255), nullable=True),
    sa.Column('action', sa.String(length=100), nullable=False),
    sa.Column('entity_type', sa.String(length=50), nullable=False),
    sa.Column('entity_id', sa.UUID(), nullable=False),
    sa.Column('before_state', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('after_state', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('changed_fields', postgresql.ARRAY(sa.Text()), nullable=True),
    sa.Column('request_id', sa.String(length=64), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.ForeignKeyConstraint(['actor_id'], ['profiles.id'], ),
    sa.ForeignKeyConstraint(['tenant_id'], ['clients.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_audit_tenant', 'audit_logs', ['tenant_id'], unique=False)
    op.create_index('idx_audit_entity', 'audit_logs', ['entity_type', 'entity_id'], unique=False)
    op.create_index('idx_audit_created', 'audit_logs', [sa.text('created_at DESC')], unique=False)

    # 5. change notifications for PgChangeListener
    op.execute(f"""
        CREATE OR REPLACE FUNCTION notify_approval_level_change() RETURNS trigger AS $$
        DECLARE
            rec RECORD;
        BEGIN
            IF TG_OP = 'DELETE' THEN
                rec := OLD;
            ELSE
                rec := NEW;
            END IF;
            PERFORM pg_notify(
                '{NOTIFY_CHANNEL}',
                json_build_object('op', TG_OP, 'client_id', rec.client_id, 'id', rec.id)::text
            );
            RETURN rec;
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER approval_levels_notify
        AFTER INSERT OR UPDATE OR DELETE ON approval_levels
        FOR EACH ROW EXECUTE FUNCTION notify_approval_level_change()
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS approval_levels_notify ON approval_levels")
    op.execute("DROP FUNCTION IF EXISTS notify_approval_level_change()")
    op.drop_index('idx_audit_created', table_name='audit_logs')
    op.drop_index('idx_audit_entity', table_name='audit_logs')
    op.drop_index('idx_audit_tenant', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('idx_approval_levels_client_order', table_name='approval_levels')
    op.drop_table('approval_levels')
    op.drop_index('idx_profiles_client_role', table_name='profiles')
    op.drop_table('profiles')
    op.drop_index('idx_clients_parent', table_name='clients')
    op.drop_table('clients')
