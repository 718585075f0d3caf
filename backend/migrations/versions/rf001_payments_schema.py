"""Payments schema: organizations, tenancy, Connect accounts, methods, transactions, AutoPay

Revision ID: rf001_payments_schema
Revises:
Create Date: 2026-03-02 09:12:44.118204

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'rf001_payments_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('organizations',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('name', sa.String(length=255), nullable=False),
    sa.Column('email', sa.String(length=255), nullable=True),
    sa.Column('is_active', sa.Boolean(), nullable=False),
    sa.Column('fee_policy', sa.String(length=32), nullable=False),
    sa.Column('trust_level', sa.String(length=16), nullable=False),
    sa.Column('payout_delay_days', sa.Integer(), nullable=False),
    sa.Column('payout_delay_minimum', sa.Integer(), nullable=False),
    sa.Column('successful_payout_count', sa.Integer(), nullable=False),
    sa.Column('first_successful_payout_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('version_id', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('organizations', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_organizations_is_active'), ['is_active'], unique=False)

    op.create_table('tenants',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('org_id', sa.Integer(), nullable=False),
    sa.Column('first_name', sa.String(length=120), nullable=False),
    sa.Column('last_name', sa.String(length=120), nullable=False),
    sa.Column('email', sa.String(length=255), nullable=False),
    sa.Column('phone', sa.String(length=32), nullable=True),
    sa.Column('version_id', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('tenants', schema=None) as batch_op:
        batch_op.create_index('ix_tenants_org_id', ['org_id'], unique=False)

    op.create_table('leases',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('org_id', sa.Integer(), nullable=False),
    sa.Column('tenant_id', sa.Integer(), nullable=False),
    sa.Column('label', sa.String(length=255), nullable=False),
    sa.Column('rent_amount_cents', sa.Integer(), nullable=False),
    sa.Column('status', sa.String(length=16), nullable=False),
    sa.Column('version_id', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('leases', schema=None) as batch_op:
        batch_op.create_index('ix_leases_org_tenant', ['org_id', 'tenant_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_leases_status'), ['status'], unique=False)

    op.create_table('connected_accounts',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('org_id', sa.Integer(), nullable=False),
    sa.Column('processor_account_id', sa.String(length=64), nullable=False),
    sa.Column('status', sa.String(length=16), nullable=False),
    sa.Column('business_type', sa.String(length=16), nullable=False),
    sa.Column('entity_type', sa.String(length=16), nullable=False),
    sa.Column('business_name', sa.String(length=255), nullable=True),
    sa.Column('charges_enabled', sa.Boolean(), nullable=False),
    sa.Column('payouts_enabled', sa.Boolean(), nullable=False),
    sa.Column('details_submitted', sa.Boolean(), nullable=False),
    sa.Column('currently_due', sa.JSON(), nullable=False),
    sa.Column('eventually_due', sa.JSON(), nullable=False),
    sa.Column('past_due', sa.JSON(), nullable=False),
    sa.Column('disabled_reason', sa.String(length=128), nullable=True),
    sa.Column('card_payments_capability', sa.String(length=16), nullable=True),
    sa.Column('transfers_capability', sa.String(length=16), nullable=True),
    sa.Column('us_bank_account_capability', sa.String(length=16), nullable=True),
    sa.Column('default_bank_last4', sa.String(length=4), nullable=True),
    sa.Column('default_bank_name', sa.String(length=128), nullable=True),
    sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('connected_accounts', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_connected_accounts_org_id'), ['org_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_connected_accounts_processor_account_id'), ['processor_account_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_connected_accounts_status'), ['status'], unique=False)

    op.create_table('processor_events',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('event_id', sa.String(length=255), nullable=False),
    sa.Column('event_type', sa.String(length=128), nullable=False),
    sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('processor_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_processor_events_event_id'), ['event_id'], unique=True)

    op.create_table('processor_customers',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('tenant_id', sa.Integer(), nullable=False),
    sa.Column('processor_customer_id', sa.String(length=64), nullable=False),
    sa.Column('email', sa.String(length=255), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('processor_customer_id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('processor_customers', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_processor_customers_tenant_id'), ['tenant_id'], unique=True)

    op.create_table('payment_methods',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('tenant_id', sa.Integer(), nullable=False),
    sa.Column('processor_method_id', sa.String(length=64), nullable=False),
    sa.Column('processor_customer_id', sa.String(length=64), nullable=False),
    sa.Column('method_class', sa.String(length=32), nullable=False),
    sa.Column('is_default', sa.Boolean(), nullable=False),
    sa.Column('nickname', sa.String(length=64), nullable=True),
    sa.Column('status', sa.String(length=16), nullable=False),
    sa.Column('card_brand', sa.String(length=32), nullable=True),
    sa.Column('last4', sa.String(length=4), nullable=True),
    sa.Column('exp_month', sa.Integer(), nullable=True),
    sa.Column('exp_year', sa.Integer(), nullable=True),
    sa.Column('bank_name', sa.String(length=128), nullable=True),
    sa.Column('wallet_type', sa.String(length=32), nullable=True),
    sa.Column('version_id', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('removed_at', sa.DateTime(timezone=True), nullable=True),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('processor_method_id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('payment_methods', schema=None) as batch_op:
        batch_op.create_index('ix_payment_methods_tenant_status', ['tenant_id', 'status'], unique=False)

    # last_transaction_id FK is added after payment_transactions exists
    op.create_table('autopay_schedules',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('tenant_id', sa.Integer(), nullable=False),
    sa.Column('lease_id', sa.Integer(), nullable=False),
    sa.Column('payment_method_id', sa.Integer(), nullable=False),
    sa.Column('day_of_month', sa.Integer(), nullable=False),
    sa.Column('amount_mode', sa.String(length=16), nullable=False),
    sa.Column('amount_cents', sa.Integer(), nullable=True),
    sa.Column('charge_types', sa.JSON(), nullable=False),
    sa.Column('active', sa.Boolean(), nullable=False),
    sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('last_result', sa.String(length=16), nullable=True),
    sa.Column('last_failure_reason', sa.String(length=500), nullable=True),
    sa.Column('last_transaction_id', sa.Integer(), nullable=True),
    sa.Column('consecutive_failures', sa.Integer(), nullable=False),
    sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('version_id', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
    sa.ForeignKeyConstraint(['lease_id'], ['leases.id'], ),
    sa.ForeignKeyConstraint(['payment_method_id'], ['payment_methods.id'], ),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('tenant_id', 'lease_id', name='uq_autopay_tenant_lease'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('autopay_schedules', schema=None) as batch_op:
        batch_op.create_index('ix_autopay_active_day', ['active', 'day_of_month'], unique=False)
        batch_op.create_index(batch_op.f('ix_autopay_schedules_tenant_id'), ['tenant_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_autopay_schedules_lease_id'), ['lease_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_autopay_schedules_payment_method_id'), ['payment_method_id'], unique=False)

    op.create_table('payment_transactions',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('idempotency_key', sa.String(length=255), nullable=False),
    sa.Column('request_fingerprint', sa.String(length=64), nullable=False),
    sa.Column('org_id', sa.Integer(), nullable=False),
    sa.Column('tenant_id', sa.Integer(), nullable=False),
    sa.Column('lease_id', sa.Integer(), nullable=False),
    sa.Column('payment_method_id', sa.Integer(), nullable=False),
    sa.Column('autopay_schedule_id', sa.Integer(), nullable=True),
    sa.Column('source', sa.String(length=16), nullable=False),
    sa.Column('description', sa.String(length=255), nullable=True),
    sa.Column('method_class', sa.String(length=32), nullable=False),
    sa.Column('fee_policy', sa.String(length=32), nullable=False),
    sa.Column('fee_schedule_version', sa.String(length=16), nullable=False),
    sa.Column('amount_cents', sa.Integer(), nullable=False),
    sa.Column('processing_fee_cents', sa.Integer(), nullable=False),
    sa.Column('payer_portion_cents', sa.Integer(), nullable=False),
    sa.Column('landlord_portion_cents', sa.Integer(), nullable=False),
    sa.Column('payer_total_cents', sa.Integer(), nullable=False),
    sa.Column('net_to_landlord_cents', sa.Integer(), nullable=False),
    sa.Column('destination_account_id', sa.String(length=64), nullable=False),
    sa.Column('processor_charge_id', sa.String(length=64), nullable=True),
    sa.Column('status', sa.String(length=16), nullable=False),
    sa.Column('failure_code', sa.String(length=64), nullable=True),
    sa.Column('failure_reason', sa.String(length=500), nullable=True),
    sa.Column('receipt_url', sa.String(length=500), nullable=True),
    sa.Column('receipt_number', sa.String(length=32), nullable=True),
    sa.Column('version_id', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.ForeignKeyConstraint(['autopay_schedule_id'], ['autopay_schedules.id'], ),
    sa.ForeignKeyConstraint(['lease_id'], ['leases.id'], ),
    sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
    sa.ForeignKeyConstraint(['payment_method_id'], ['payment_methods.id'], ),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('processor_charge_id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('payment_transactions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_transactions_idempotency_key'), ['idempotency_key'], unique=True)
        batch_op.create_index(batch_op.f('ix_payment_transactions_org_id'), ['org_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_transactions_lease_id'), ['lease_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_transactions_autopay_schedule_id'), ['autopay_schedule_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_transactions_status'), ['status'], unique=False)
        batch_op.create_index('ix_payment_transactions_tenant_created', ['tenant_id', 'created_at'], unique=False)
        batch_op.create_index('ix_payment_transactions_status_created', ['status', 'created_at'], unique=False)

    with op.batch_alter_table('autopay_schedules', schema=None) as batch_op:
        batch_op.create_foreign_key('fk_autopay_last_transaction_id', 'payment_transactions', ['last_transaction_id'], ['id'])

    op.create_table('lease_charges',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('lease_id', sa.Integer(), nullable=False),
    sa.Column('charge_type', sa.String(length=32), nullable=False),
    sa.Column('description', sa.String(length=255), nullable=True),
    sa.Column('amount_cents', sa.Integer(), nullable=False),
    sa.Column('due_date', sa.Date(), nullable=False),
    sa.Column('status', sa.String(length=16), nullable=False),
    sa.Column('paid_transaction_id', sa.Integer(), nullable=True),
    sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('version_id', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.ForeignKeyConstraint(['lease_id'], ['leases.id'], ),
    sa.ForeignKeyConstraint(['paid_transaction_id'], ['payment_transactions.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('lease_charges', schema=None) as batch_op:
        batch_op.create_index('ix_lease_charges_lease_status_due', ['lease_id', 'status', 'due_date'], unique=False)
        batch_op.create_index(batch_op.f('ix_lease_charges_paid_transaction_id'), ['paid_transaction_id'], unique=False)

    op.create_table('transaction_charges',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('transaction_id', sa.Integer(), nullable=False),
    sa.Column('charge_id', sa.Integer(), nullable=False),
    sa.Column('amount_cents', sa.Integer(), nullable=False),
    sa.ForeignKeyConstraint(['charge_id'], ['lease_charges.id'], ),
    sa.ForeignKeyConstraint(['transaction_id'], ['payment_transactions.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('transaction_id', 'charge_id', name='uq_transaction_charges_txn_charge'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('transaction_charges', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_transaction_charges_transaction_id'), ['transaction_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_transaction_charges_charge_id'), ['charge_id'], unique=False)


def downgrade():
    op.drop_table('transaction_charges')
    op.drop_table('lease_charges')
    with op.batch_alter_table('autopay_schedules', schema=None) as batch_op:
        batch_op.drop_constraint('fk_autopay_last_transaction_id', type_='foreignkey')
    op.drop_table('payment_transactions')
    op.drop_table('autopay_schedules')
    op.drop_table('payment_methods')
    op.drop_table('processor_customers')
    op.drop_table('processor_events')
    op.drop_table('connected_accounts')
    op.drop_table('leases')
    op.drop_table('tenants')
    op.drop_table('organizations')
