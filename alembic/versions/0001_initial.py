"""initial payment lifecycle tables

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('customers',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('stripe_customer_id', name='customers_stripe_customer_id_key'),
    )
    op.create_index('ix_customers_email', 'customers', ['email'], unique=False)

    op.create_table('bookings',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('service_id', sa.String(length=64), nullable=False),
        sa.Column('customer_id', sa.String(length=64), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('participants', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('scheduled_date', sa.String(length=10), nullable=False),
        sa.Column('scheduled_time', sa.String(length=5), nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='try'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending_payment'),
        sa.Column('payment_status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('payment_id', sa.String(length=64), nullable=True),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('payment_type', sa.String(length=16), nullable=False, server_default='full'),
        sa.Column('deposit_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('paid_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('remaining_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('payment_due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_bookings_service_id', 'bookings', ['service_id'], unique=False)
    op.create_index('ix_bookings_customer_id', 'bookings', ['customer_id'], unique=False)
    op.create_index('ix_bookings_status', 'bookings', ['status'], unique=False)
    op.create_index('ix_bookings_payment_status', 'bookings', ['payment_status'], unique=False)

    op.create_table('payment_intents',
        sa.Column('id', sa.String(length=255), primary_key=True),
        sa.Column('booking_id', sa.String(length=64), nullable=False),
        sa.Column('customer_id', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('fees', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='requires_payment_method'),
        sa.Column('client_secret', sa.String(length=255), nullable=False),
        sa.Column('payment_methods', sa.JSON(), nullable=False),
        sa.Column('capture_method', sa.String(length=16), nullable=False, server_default='automatic'),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_payment_intents_booking_id', 'payment_intents', ['booking_id'], unique=False)
    op.create_index('ix_payment_intents_customer_id', 'payment_intents', ['customer_id'], unique=False)

    op.create_table('payments',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('provider', sa.String(length=32), nullable=False, server_default='stripe'),
        sa.Column('provider_transaction_id', sa.String(length=255), nullable=False),
        sa.Column('outcome', sa.String(length=16), nullable=False),
        sa.Column('booking_id', sa.String(length=64), nullable=False),
        sa.Column('customer_id', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('payment_method', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('intent_status', sa.String(length=32), nullable=True),
        sa.Column('processing_fee', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('platform_fee', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('authorized_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.String(length=1024), nullable=True),
        sa.Column('failure_code', sa.String(length=128), nullable=True),
        sa.Column('refundable_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('receipt_sent', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('receipt_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('provider_transaction_id', 'outcome', name='uq_payment_transaction_outcome'),
    )
    op.create_index('ix_payments_provider_transaction_id', 'payments', ['provider_transaction_id'], unique=False)
    op.create_index('ix_payments_booking_id', 'payments', ['booking_id'], unique=False)
    op.create_index('ix_payments_customer_id', 'payments', ['customer_id'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)

    op.create_table('refunds',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('payment_id', sa.String(length=64), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('gateway_refund_id', sa.String(length=255), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('reason', sa.String(length=64), nullable=False),
        sa.Column('requested_by', sa.String(length=128), nullable=False),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('gateway_refund_id', name='refunds_gateway_refund_id_key'),
        sa.UniqueConstraint('payment_id', 'sequence', name='uq_refund_payment_sequence'),
    )
    op.create_index('ix_refunds_payment_id', 'refunds', ['payment_id'], unique=False)

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor_id', sa.String(length=128), nullable=True),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('object_type', sa.String(length=128), nullable=True),
        sa.Column('object_id', sa.String(length=255), nullable=True),
        sa.Column('detail', sa.JSON(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('error_message', sa.String(length=1024), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_audit_logs_actor_id', 'audit_logs', ['actor_id'], unique=False)
    op.create_index('ix_audit_object', 'audit_logs', ['object_type', 'object_id'], unique=False)


def downgrade():
    op.drop_index('ix_audit_object', table_name='audit_logs')
    op.drop_index('ix_audit_logs_actor_id', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('ix_refunds_payment_id', table_name='refunds')
    op.drop_table('refunds')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_customer_id', table_name='payments')
    op.drop_index('ix_payments_booking_id', table_name='payments')
    op.drop_index('ix_payments_provider_transaction_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_payment_intents_customer_id', table_name='payment_intents')
    op.drop_index('ix_payment_intents_booking_id', table_name='payment_intents')
    op.drop_table('payment_intents')
    op.drop_index('ix_bookings_payment_status', table_name='bookings')
    op.drop_index('ix_bookings_status', table_name='bookings')
    op.drop_index('ix_bookings_customer_id', table_name='bookings')
    op.drop_index('ix_bookings_service_id', table_name='bookings')
    op.drop_table('bookings')
    op.drop_index('ix_customers_email', table_name='customers')
    op.drop_table('customers')
