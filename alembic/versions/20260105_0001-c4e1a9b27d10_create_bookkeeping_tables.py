"""create_bookkeeping_tables

Revision ID: c4e1a9b27d10
Revises:
Create Date: 2026-01-05 00:01:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'c4e1a9b27d10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # Create xero_connections table
    op.create_table(
        'xero_connections',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('tenant_name', sa.String(), nullable=True),
        sa.Column('tenant_type', sa.String(), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('scopes', sa.Text(), nullable=True),
        sa.Column('id_token', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sync_error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_xero_connections_tenant_id', 'xero_connections', ['tenant_id'], unique=True)

    # Create oauth_states table
    op.create_table(
        'oauth_states',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('state', sa.String(), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_oauth_states_state', 'oauth_states', ['state'], unique=True)

    # Create gl_accounts table
    op.create_table(
        'gl_accounts',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('xero_account_id', sa.String(), nullable=True),
        sa.Column('code', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('type', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('system_account', sa.String(), nullable=True),
        sa.Column('show_in_expense_claims', sa.Boolean(), nullable=False),
        sa.Column('enable_payments_to_account', sa.Boolean(), nullable=False),
        sa.Column('account_class', sa.String(), nullable=True),
        sa.Column('reporting_code', sa.String(), nullable=True),
        sa.Column('reporting_code_name', sa.String(), nullable=True),
        sa.Column('tax_type', sa.String(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('xero_account_id')
    )
    op.create_index('ix_gl_accounts_code', 'gl_accounts', ['code'], unique=True)

    # Create bank_accounts table
    op.create_table(
        'bank_accounts',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('xero_account_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('code', sa.String(), nullable=True),
        sa.Column('currency_code', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('bank_name', sa.String(), nullable=True),
        sa.Column('account_number', sa.String(), nullable=True),
        sa.Column('balance', sa.Numeric(precision=15, scale=2), nullable=True),
        sa.Column('balance_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_bank_accounts_xero_account_id', 'bank_accounts', ['xero_account_id'], unique=True)

    # Create contacts table
    op.create_table(
        'contacts',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('xero_contact_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('is_customer', sa.Boolean(), nullable=False),
        sa.Column('is_supplier', sa.Boolean(), nullable=False),
        sa.Column('contact_status', sa.String(), nullable=True),
        sa.Column('default_currency', sa.String(), nullable=True),
        sa.Column('account_number', sa.String(), nullable=True),
        sa.Column('updated_date_utc', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_contacts_xero_contact_id', 'contacts', ['xero_contact_id'], unique=True)

    # Create bank_transactions table
    op.create_table(
        'bank_transactions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('xero_transaction_id', sa.String(), nullable=False),
        sa.Column('bank_account_id', sa.String(), nullable=False),
        sa.Column('date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('currency_code', sa.String(), nullable=True),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('reference', sa.String(), nullable=True),
        sa.Column('contact_name', sa.String(), nullable=True),
        sa.Column('xero_contact_id', sa.String(), nullable=True),
        sa.Column('is_reconciled', sa.Boolean(), nullable=False),
        sa.Column('has_attachments', sa.Boolean(), nullable=False),
        sa.Column('line_items', postgresql.JSONB(), nullable=True),
        sa.Column('updated_date_utc', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['bank_account_id'], ['bank_accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_bank_transactions_xero_transaction_id', 'bank_transactions', ['xero_transaction_id'], unique=True)
    op.create_index('ix_bank_transactions_bank_account_id', 'bank_transactions', ['bank_account_id'])
    op.create_index('ix_bank_transactions_date', 'bank_transactions', ['date'])

    # Create synced_invoices table
    op.create_table(
        'synced_invoices',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('xero_invoice_id', sa.String(), nullable=False),
        sa.Column('xero_contact_id', sa.String(), nullable=True),
        sa.Column('contact_name', sa.String(), nullable=True),
        sa.Column('invoice_number', sa.String(), nullable=True),
        sa.Column('reference', sa.String(), nullable=True),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('fully_paid_on_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('amount_due', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('total', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('line_amount_types', sa.String(), nullable=True),
        sa.Column('currency_code', sa.String(), nullable=True),
        sa.Column('last_modified_utc', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_synced_invoices_xero_invoice_id', 'synced_invoices', ['xero_invoice_id'], unique=True)
    op.create_index('ix_synced_invoices_xero_contact_id', 'synced_invoices', ['xero_contact_id'])
    op.create_index('ix_synced_invoices_type', 'synced_invoices', ['type'])
    op.create_index('ix_synced_invoices_status', 'synced_invoices', ['status'])

    # Create repeating_transactions table
    op.create_table(
        'repeating_transactions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('xero_repeating_invoice_id', sa.String(), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('xero_contact_id', sa.String(), nullable=True),
        sa.Column('contact_name', sa.String(), nullable=True),
        sa.Column('schedule_unit', sa.String(), nullable=False),
        sa.Column('schedule_interval', sa.Integer(), nullable=False),
        sa.Column('next_scheduled_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('total', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('reference', sa.String(), nullable=True),
        sa.Column('last_modified_utc', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        'ix_repeating_transactions_xero_repeating_invoice_id',
        'repeating_transactions',
        ['xero_repeating_invoice_id'],
        unique=True,
    )

    # Create payment_patterns table
    op.create_table(
        'payment_patterns',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('xero_contact_id', sa.String(), nullable=False),
        sa.Column('contact_name', sa.String(), nullable=True),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('average_days_to_pay', sa.Float(), nullable=False),
        sa.Column('on_time_rate', sa.Float(), nullable=False),
        sa.Column('early_rate', sa.Float(), nullable=False),
        sa.Column('late_rate', sa.Float(), nullable=False),
        sa.Column('sample_size', sa.Integer(), nullable=False),
        sa.Column('last_calculated', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('xero_contact_id', 'type', name='uq_payment_patterns_contact_type')
    )
    op.create_index('ix_payment_patterns_xero_contact_id', 'payment_patterns', ['xero_contact_id'])

    # Create cash_flow_budgets table
    op.create_table(
        'cash_flow_budgets',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('account_code', sa.String(length=50), nullable=False),
        sa.Column('account_name', sa.String(length=200), nullable=False),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('month_year', sa.String(length=7), nullable=False),
        sa.Column('budgeted_amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('actual_amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('imported_from', sa.String(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_code', 'month_year', name='uq_cash_flow_budgets_account_month')
    )
    op.create_index('ix_cash_flow_budgets_account_code', 'cash_flow_budgets', ['account_code'])
    op.create_index('ix_cash_flow_budgets_month_year', 'cash_flow_budgets', ['month_year'])

    # Create sync_logs table
    op.create_table(
        'sync_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=True),
        sa.Column('sync_type', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('records_created', sa.Integer(), nullable=False),
        sa.Column('records_updated', sa.Integer(), nullable=False),
        sa.Column('records_deleted', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('details', postgresql.JSONB(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_sync_logs_tenant_id', 'sync_logs', ['tenant_id'])
    op.create_index('ix_sync_logs_sync_type', 'sync_logs', ['sync_type'])
    op.create_index('ix_sync_logs_status', 'sync_logs', ['status'])

    # Create sync_checkpoints table
    op.create_table(
        'sync_checkpoints',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('sync_id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=True),
        sa.Column('last_completed_entity', sa.String(), nullable=True),
        sa.Column('last_processed_page', postgresql.JSONB(), nullable=True),
        sa.Column('processed_counts', postgresql.JSONB(), nullable=True),
        sa.Column('completed_bank_accounts', postgresql.JSONB(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_sync_checkpoints_sync_id', 'sync_checkpoints', ['sync_id'], unique=True)
    op.create_index('ix_sync_checkpoints_expires_at', 'sync_checkpoints', ['expires_at'])


def downgrade() -> None:
    op.drop_table('sync_checkpoints')
    op.drop_table('sync_logs')
    op.drop_table('cash_flow_budgets')
    op.drop_table('payment_patterns')
    op.drop_table('repeating_transactions')
    op.drop_table('synced_invoices')
    op.drop_table('bank_transactions')
    op.drop_table('contacts')
    op.drop_table('bank_accounts')
    op.drop_table('gl_accounts')
    op.drop_table('oauth_states')
    op.drop_table('xero_connections')
