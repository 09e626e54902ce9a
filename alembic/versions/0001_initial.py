"""initial booking core schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('email', name='users_email_key'),
        sa.UniqueConstraint('phone', name='users_phone_key'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=False)

    op.create_table('routes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('origin', sa.String(length=128), nullable=False),
        sa.Column('destination', sa.String(length=128), nullable=False),
        sa.Column('distance_km', sa.Numeric(8, 2), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint('origin', 'destination', name='uq_route_origin_destination'),
    )
    op.create_index('ix_routes_origin', 'routes', ['origin'], unique=False)
    op.create_index('ix_routes_destination', 'routes', ['destination'], unique=False)
    op.create_index('ix_routes_active', 'routes', ['active'], unique=False)

    op.create_table('buses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('registration_number', sa.String(length=64), nullable=False),
        sa.Column('capacity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('model', sa.String(length=128), nullable=True),
        sa.UniqueConstraint('registration_number', name='buses_registration_number_key'),
    )
    op.create_index('ix_buses_registration_number', 'buses', ['registration_number'], unique=False)

    op.create_table('trips',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('route_id', sa.Integer(), nullable=False),
        sa.Column('bus_id', sa.Integer(), nullable=True),
        sa.Column('departure_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('arrival_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('price', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='scheduled'),
        sa.Column('seats_available', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['route_id'], ['routes.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['bus_id'], ['buses.id'], ondelete='SET NULL'),
        # the ledger never goes negative, whatever the application does
        sa.CheckConstraint('seats_available >= 0', name='ck_trips_seats_available_non_negative'),
    )
    op.create_index('ix_trips_route_id', 'trips', ['route_id'], unique=False)
    op.create_index('ix_trips_bus_id', 'trips', ['bus_id'], unique=False)
    op.create_index('ix_trips_departure_time', 'trips', ['departure_time'], unique=False)
    op.create_index('ix_trips_status', 'trips', ['status'], unique=False)

    op.create_table('seatmaps',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('bus_id', sa.Integer(), nullable=False),
        sa.Column('layout', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['bus_id'], ['buses.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_seatmaps_bus_id', 'seatmaps', ['bus_id'], unique=False)

    op.create_table('seats',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('seatmap_id', sa.Integer(), nullable=False),
        sa.Column('seat_number', sa.String(length=32), nullable=False),
        sa.Column('row', sa.Integer(), nullable=True),
        sa.Column('column', sa.Integer(), nullable=True),
        sa.Column('is_window', sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(['seatmap_id'], ['seatmaps.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('seatmap_id', 'seat_number', name='uq_seatmap_seat_number'),
    )
    op.create_index('ix_seats_seatmap_id', 'seats', ['seatmap_id'], unique=False)

    op.create_table('bookings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('reference', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('trip_id', sa.Integer(), nullable=False),
        sa.Column('seat_numbers', sa.JSON(), nullable=False),
        sa.Column('passenger_name', sa.String(length=255), nullable=True),
        sa.Column('passenger_phone', sa.String(length=32), nullable=True),
        sa.Column('total_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='pending'),
        sa.Column('cancel_reason', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['trip_id'], ['trips.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_bookings_reference', 'bookings', ['reference'], unique=True)
    op.create_index('ix_bookings_user_id', 'bookings', ['user_id'], unique=False)
    op.create_index('ix_bookings_trip_id', 'bookings', ['trip_id'], unique=False)
    op.create_index('ix_bookings_status', 'bookings', ['status'], unique=False)
    # the sweeper scans pending bookings by deadline
    op.create_index('ix_bookings_status_expires_at', 'bookings', ['status', 'expires_at'], unique=False)

    op.create_table('booking_seats',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('booking_id', sa.Integer(), nullable=False),
        sa.Column('trip_id', sa.Integer(), nullable=False),
        sa.Column('seat_number', sa.String(length=32), nullable=False),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['trip_id'], ['trips.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('trip_id', 'seat_number', name='uq_booking_seats_trip_seat'),
    )
    op.create_index('ix_booking_seats_booking_id', 'booking_seats', ['booking_id'], unique=False)

    op.create_table('payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('booking_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='UGX'),
        sa.Column('provider', sa.String(length=128), nullable=False),
        sa.Column('provider_ref', sa.String(length=255), nullable=False),
        sa.Column('phone_number', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='pending'),
        sa.Column('detail', sa.JSON(), nullable=True),
        sa.Column('initiated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('provider_ref', name='payments_provider_ref_key'),
    )
    op.create_index('ix_payments_booking_id', 'payments', ['booking_id'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('object_type', sa.String(length=128), nullable=True),
        sa.Column('object_id', sa.String(length=128), nullable=True),
        sa.Column('detail', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['actor_id'], ['users.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_audit_logs_actor_id', 'audit_logs', ['actor_id'], unique=False)


def downgrade():
    op.drop_index('ix_audit_logs_actor_id', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_booking_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_booking_seats_booking_id', table_name='booking_seats')
    op.drop_table('booking_seats')
    op.drop_index('ix_bookings_status_expires_at', table_name='bookings')
    op.drop_index('ix_bookings_status', table_name='bookings')
    op.drop_index('ix_bookings_trip_id', table_name='bookings')
    op.drop_index('ix_bookings_user_id', table_name='bookings')
    op.drop_index('ix_bookings_reference', table_name='bookings')
    op.drop_table('bookings')
    op.drop_index('ix_seats_seatmap_id', table_name='seats')
    op.drop_table('seats')
    op.drop_index('ix_seatmaps_bus_id', table_name='seatmaps')
    op.drop_table('seatmaps')
    op.drop_index('ix_trips_status', table_name='trips')
    op.drop_index('ix_trips_departure_time', table_name='trips')
    op.drop_index('ix_trips_bus_id', table_name='trips')
    op.drop_index('ix_trips_route_id', table_name='trips')
    op.drop_table('trips')
    op.drop_index('ix_buses_registration_number', table_name='buses')
    op.drop_table('buses')
    op.drop_index('ix_routes_active', table_name='routes')
    op.drop_index('ix_routes_destination', table_name='routes')
    op.drop_index('ix_routes_origin', table_name='routes')
    op.drop_table('routes')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
