"""create_routing_policy_tables

Revision ID: 4b7e1d2c9a30
Revises:
Create Date: 2026-09-14 09:12:40.118523

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '4b7e1d2c9a30'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    op.create_table('vendors',
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('country', sa.String(length=100), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('id', sa.UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_vendors'))
    )
    op.create_index(op.f('ix_vendors_name'), 'vendors', ['name'], unique=False)

    op.create_table('routing_policies',
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('channel', sa.String(length=100), nullable=False),
        sa.Column('region', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('allow_partial_fulfillment', sa.Boolean(), nullable=False),
        sa.Column('failover_strategy', sa.String(length=20), nullable=False),
        sa.Column('sla_minutes', sa.Integer(), nullable=False),
        sa.Column('max_lag_minutes', sa.Integer(), nullable=False),
        sa.Column('effective_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('organization_id', sa.UUID(), nullable=True),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('updated_by', sa.String(length=255), nullable=True),
        sa.Column('orchestration_status', sa.String(length=20), nullable=False),
        sa.Column('orchestration_last_sync', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('id', sa.UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_routing_policies'))
    )
    op.create_index(op.f('ix_routing_policies_channel'), 'routing_policies', ['channel'], unique=False)
    op.create_index(op.f('ix_routing_policies_region'), 'routing_policies', ['region'], unique=False)
    op.create_index(op.f('ix_routing_policies_organization_id'), 'routing_policies', ['organization_id'], unique=False)
    # At most one active policy per channel/region
    op.create_index(
        'uq_routing_policies_active_channel_region', 'routing_policies', ['channel', 'region'],
        unique=True, postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table('routing_rules',
        sa.Column('policy_id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('criteria_json', sa.Text(), nullable=True),
        sa.Column('weights_json', sa.Text(), nullable=True),
        sa.Column('fallback_policy', sa.String(length=255), nullable=True),
        sa.Column('id', sa.UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['policy_id'], ['routing_policies.id'], name=op.f('fk_routing_rules_policy_id_routing_policies'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_routing_rules'))
    )
    op.create_index(op.f('ix_routing_rules_policy_id'), 'routing_rules', ['policy_id'], unique=False)

    op.create_table('routing_policy_vendors',
        sa.Column('policy_id', sa.UUID(), nullable=False),
        sa.Column('vendor_id', sa.UUID(), nullable=False),
        sa.Column('weight', sa.Float(), nullable=False),
        sa.Column('capacity_per_hour', sa.Float(), nullable=False),
        sa.Column('current_load_percent', sa.Float(), nullable=False),
        sa.Column('failover_priority', sa.Integer(), nullable=False),
        sa.Column('health', sa.String(length=20), nullable=False),
        sa.Column('auto_pause_threshold', sa.Float(), nullable=False),
        sa.Column('specializations_json', sa.Text(), nullable=False),
        sa.Column('region', sa.String(length=100), nullable=False),
        sa.Column('sla_minutes', sa.Integer(), nullable=False),
        sa.Column('last_incident_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('id', sa.UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            'current_load_percent >= 0 AND current_load_percent <= 100',
            name=op.f('ck_routing_policy_vendors_load_percent_range'),
        ),
        sa.ForeignKeyConstraint(['policy_id'], ['routing_policies.id'], name=op.f('fk_routing_policy_vendors_policy_id_routing_policies'), ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id'], name=op.f('fk_routing_policy_vendors_vendor_id_vendors')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_routing_policy_vendors'))
    )
    op.create_index(op.f('ix_routing_policy_vendors_policy_id'), 'routing_policy_vendors', ['policy_id'], unique=False)
    op.create_index(op.f('ix_routing_policy_vendors_vendor_id'), 'routing_policy_vendors', ['vendor_id'], unique=False)

    op.create_table('sla_targets',
        sa.Column('policy_id', sa.UUID(), nullable=False),
        sa.Column('metric', sa.String(length=100), nullable=False),
        sa.Column('target_value', sa.Float(), nullable=True),
        sa.Column('threshold', sa.Float(), nullable=True),
        sa.Column('warning_threshold', sa.Float(), nullable=True),
        sa.Column('unit', sa.String(length=20), nullable=True),
        sa.Column('id', sa.UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['policy_id'], ['routing_policies.id'], name=op.f('fk_sla_targets_policy_id_routing_policies'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_sla_targets'))
    )
    op.create_index(op.f('ix_sla_targets_policy_id'), 'sla_targets', ['policy_id'], unique=False)

    op.create_table('routing_simulations',
        sa.Column('policy_id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('policy_version', sa.Integer(), nullable=False),
        sa.Column('scenario_json', sa.Text(), nullable=False),
        sa.Column('results_json', sa.Text(), nullable=False),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('id', sa.UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['policy_id'], ['routing_policies.id'], name=op.f('fk_routing_simulations_policy_id_routing_policies'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_routing_simulations'))
    )
    op.create_index(op.f('ix_routing_simulations_policy_id'), 'routing_simulations', ['policy_id'], unique=False)

    op.create_table('routing_policy_audits',
        sa.Column('policy_id', sa.UUID(), nullable=False),
        sa.Column('actor', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=50), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('change_type', sa.String(length=50), nullable=False),
        sa.Column('prior_status', sa.String(length=20), nullable=True),
        sa.Column('new_status', sa.String(length=20), nullable=True),
        sa.Column('policy_version', sa.Integer(), nullable=True),
        sa.Column('summary', sa.Text(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('id', sa.UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.ForeignKeyConstraint(['policy_id'], ['routing_policies.id'], name=op.f('fk_routing_policy_audits_policy_id_routing_policies'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_routing_policy_audits'))
    )
    op.create_index(op.f('ix_routing_policy_audits_policy_id'), 'routing_policy_audits', ['policy_id'], unique=False)
    op.create_index(op.f('ix_routing_policy_audits_change_type'), 'routing_policy_audits', ['change_type'], unique=False)

    op.create_table('routing_decisions',
        sa.Column('policy_id', sa.UUID(), nullable=False),
        sa.Column('policy_version', sa.Integer(), nullable=False),
        sa.Column('order_ref', sa.String(length=255), nullable=False),
        sa.Column('strategy', sa.String(length=20), nullable=False),
        sa.Column('vendor_id', sa.UUID(), nullable=True),
        sa.Column('vendor_ids_json', sa.Text(), nullable=False),
        sa.Column('matched_rule_id', sa.UUID(), nullable=True),
        sa.Column('partial', sa.Boolean(), nullable=False),
        sa.Column('decided_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('sla_deadline', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sla_minutes', sa.Float(), nullable=True),
        sa.Column('max_lag_minutes', sa.Float(), nullable=True),
        sa.Column('sla_state', sa.String(length=20), nullable=False),
        sa.Column('sla_state_changed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payload_json', sa.Text(), nullable=False),
        sa.Column('id', sa.UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['policy_id'], ['routing_policies.id'], name=op.f('fk_routing_decisions_policy_id_routing_policies'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_routing_decisions'))
    )
    op.create_index(op.f('ix_routing_decisions_policy_id'), 'routing_decisions', ['policy_id'], unique=False)
    op.create_index(op.f('ix_routing_decisions_order_ref'), 'routing_decisions', ['order_ref'], unique=False)
    op.create_index(op.f('ix_routing_decisions_vendor_id'), 'routing_decisions', ['vendor_id'], unique=False)
    op.create_index(op.f('ix_routing_decisions_decided_at'), 'routing_decisions', ['decided_at'], unique=False)


def downgrade() -> None:
    op.drop_table('routing_decisions')
    op.drop_table('routing_policy_audits')
    op.drop_table('routing_simulations')
    op.drop_table('sla_targets')
    op.drop_table('routing_policy_vendors')
    op.drop_table('routing_rules')
    op.drop_index('uq_routing_policies_active_channel_region', table_name='routing_policies')
    op.drop_table('routing_policies')
    op.drop_table('vendors')
