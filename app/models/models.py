from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    Numeric,
    JSON,
    UniqueConstraint,
    Index,
    CheckConstraint,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.db.base import Base


class BookingStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    # live bookings hold seat claims
    LIVE = (PENDING, COMPLETED)
    ALL = (PENDING, COMPLETED, FAILED, CANCELLED)


class CancelReason:
    EXPIRED = "expired"
    PAYMENT_FAILED = "payment_failed"
    BY_USER = "cancelled_by_user"
    BY_ADMIN = "cancelled_by_admin"


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


class TripStatus:
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    phone = Column(String(32), nullable=True, unique=True)
    full_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Route(Base):
    __tablename__ = "routes"
    id = Column(Integer, primary_key=True)
    origin = Column(String(128), nullable=False, index=True)
    destination = Column(String(128), nullable=False, index=True)
    distance_km = Column(Numeric(8, 2), nullable=True)
    active = Column(Boolean, default=True, nullable=False, index=True)

    __table_args__ = (UniqueConstraint("origin", "destination", name="uq_route_origin_destination"),)


class Bus(Base):
    __tablename__ = "buses"
    id = Column(Integer, primary_key=True)
    registration_number = Column(String(64), nullable=False, unique=True, index=True)
    # total seats; also the default numbering scheme "1".."capacity"
    capacity = Column(Integer, nullable=False, default=0)
    model = Column(String(128), nullable=True)

    seatmaps = relationship("SeatMap", back_populates="bus")


class Trip(Base):
    __tablename__ = "trips"
    id = Column(Integer, primary_key=True)
    route_id = Column(Integer, ForeignKey("routes.id", ondelete="CASCADE"), nullable=False, index=True)
    bus_id = Column(Integer, ForeignKey("buses.id", ondelete="SET NULL"), nullable=True, index=True)
    departure_time = Column(DateTime(timezone=True), nullable=False, index=True)
    arrival_time = Column(DateTime(timezone=True), nullable=True)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String(50), nullable=False, default=TripStatus.SCHEDULED, index=True)
    # the ledger: unsold seats on this trip
    seats_available = Column(Integer, nullable=False, default=0)

    __table_args__ = (CheckConstraint("seats_available >= 0", name="ck_trips_seats_available_non_negative"),)


class SeatMap(Base):
    __tablename__ = "seatmaps"
    id = Column(Integer, primary_key=True)
    bus_id = Column(Integer, ForeignKey("buses.id", ondelete="CASCADE"), nullable=False, index=True)
    layout = Column(JSON, nullable=True)

    bus = relationship("Bus", back_populates="seatmaps")
    seats = relationship("Seat", back_populates="seatmap")


class Seat(Base):
    __tablename__ = "seats"
    id = Column(Integer, primary_key=True)
    seatmap_id = Column(Integer, ForeignKey("seatmaps.id", ondelete="CASCADE"), nullable=False, index=True)
    seat_number = Column(String(32), nullable=False)
    row = Column(Integer, nullable=True)
    column = Column(Integer, nullable=True)
    is_window = Column(Boolean, default=False)

    seatmap = relationship("SeatMap", back_populates="seats")

    __table_args__ = (UniqueConstraint("seatmap_id", "seat_number", name="uq_seatmap_seat_number"),)


class Booking(Base):
    __tablename__ = "bookings"
    id = Column(Integer, primary_key=True)
    reference = Column(String(32), nullable=False, unique=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id", ondelete="CASCADE"), nullable=False, index=True)
    # seats requested at creation; never changes, survives release for history
    seat_numbers = Column(JSON, nullable=False)
    passenger_name = Column(String(255), nullable=True)
    passenger_phone = Column(String(32), nullable=True)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String(50), nullable=False, default=BookingStatus.PENDING, index=True)
    cancel_reason = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_bookings_status_expires_at", "status", "expires_at"),)


class BookingSeat(Base):
    """A live seat claim. Rows are deleted when the booking releases its seats."""

    __tablename__ = "booking_seats"
    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id", ondelete="CASCADE"), nullable=False)
    seat_number = Column(String(32), nullable=False)

    __table_args__ = (UniqueConstraint("trip_id", "seat_number", name="uq_booking_seats_trip_seat"),)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="UGX")
    provider = Column(String(128), nullable=False)
    provider_ref = Column(String(255), nullable=False, unique=True)
    phone_number = Column(String(32), nullable=False)
    status = Column(String(50), nullable=False, default=PaymentStatus.PENDING, index=True)
    detail = Column(JSON, nullable=True)
    initiated_at = Column(DateTime(timezone=True), nullable=False)
    settled_at = Column(DateTime(timezone=True), nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    actor_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    action = Column(String(255), nullable=False)
    object_type = Column(String(128), nullable=True)
    object_id = Column(String(128), nullable=True)
    detail = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
