"""booking engine schema: bookings, monthly availability, counters, webhook events

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0a1b2c3d4e5f'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'courts',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('venue_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('location', sa.String(length=160), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('courts', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_courts_venue_id'), ['venue_id'], unique=False)

    op.create_table(
        'monthly_availability',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('venue_id', sa.String(length=64), nullable=False),
        sa.Column('month', sa.String(length=7), nullable=False),
        sa.Column('courts', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('venue_id', 'month', name='uq_availability_venue_month')
    )
    with op.batch_alter_table('monthly_availability', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_monthly_availability_venue_id'), ['venue_id'], unique=False)

    op.create_table(
        'bookings',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=True),
        sa.Column('user_name', sa.String(length=120), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('venue_id', sa.String(length=64), nullable=False),
        sa.Column('court_id', sa.String(length=64), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('payment_status', sa.String(length=20), nullable=True),
        sa.Column('payment_reference', sa.String(length=255), nullable=True),
        sa.Column('invoice_number', sa.String(length=32), nullable=True),
        sa.Column('invoice_generated_at', sa.DateTime(), nullable=True),
        sa.Column('last_active', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=120), nullable=True),
        sa.Column('recovered_from_payment', sa.Boolean(), nullable=False),
        sa.Column('recovery_notes', sa.String(length=255), nullable=True),
        sa.Column('slot_conflict', sa.Boolean(), nullable=False),
        sa.Column('needs_manual_review', sa.Boolean(), nullable=False),
        sa.Column('refund_reference', sa.String(length=255), nullable=True),
        sa.Column('refund_status', sa.String(length=20), nullable=True),
        sa.Column('refund_amount', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('refund_reason', sa.String(length=255), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('refunded_by', sa.String(length=64), nullable=True),
        sa.Column('email_sent', sa.Boolean(), nullable=False),
        sa.Column('email_sent_at', sa.DateTime(), nullable=True),
        sa.Column('email_retry_count', sa.Integer(), nullable=False),
        sa.Column('email_error', sa.String(length=255), nullable=True),
        sa.Column('email_failed_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('invoice_number')
    )
    with op.batch_alter_table('bookings', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_bookings_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_venue_id'), ['venue_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_court_id'), ['court_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_date'), ['date'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_payment_status'), ['payment_status'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_payment_reference'), ['payment_reference'], unique=True)
        batch_op.create_index(batch_op.f('ix_bookings_created_at'), ['created_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_refund_reference'), ['refund_reference'], unique=False)

    op.create_table(
        'booking_archives',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('archived_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('booking_archives', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_booking_archives_date'), ['date'], unique=False)

    op.create_table(
        'counters',
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('value', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('name')
    )

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=80), nullable=False),
        sa.Column('raw_payload', sa.Text(), nullable=False),
        sa.Column('booking_id', sa.String(length=64), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('result', sa.String(length=40), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.Column('delivery_count', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('webhook_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_webhook_events_type'), ['type'], unique=False)
        batch_op.create_index(batch_op.f('ix_webhook_events_booking_id'), ['booking_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_webhook_events_processed'), ['processed'], unique=False)

    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('booking_id', sa.String(length=64), nullable=True),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('transaction_id', sa.String(length=255), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=True),
        sa.Column('kind', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=40), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(length=10), nullable=True),
        sa.Column('source', sa.String(length=40), nullable=False),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('payment_transactions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_transactions_booking_id'), ['booking_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_transactions_transaction_id'), ['transaction_id'], unique=False)

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        sa.Column('action', sa.String(length=80), nullable=False),
        sa.Column('entity', sa.String(length=80), nullable=True),
        sa.Column('entity_id', sa.String(length=255), nullable=True),
        sa.Column('ip', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(length=255), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('audit_logs', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_audit_logs_action'), ['action'], unique=False)
        batch_op.create_index(batch_op.f('ix_audit_logs_entity_id'), ['entity_id'], unique=False)


def downgrade():
    op.drop_table('audit_logs')
    op.drop_table('payment_transactions')
    op.drop_table('webhook_events')
    op.drop_table('counters')
    op.drop_table('booking_archives')
    op.drop_table('bookings')
    op.drop_table('monthly_availability')
    op.drop_table('courts')
