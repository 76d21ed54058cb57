"""
Booking store models

A booking is persisted as one JSON document plus append-only child tables
for its audit log, payment records and idempotency markers.
"""

import uuid

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_booking_id():
    """Generate the store-assigned booking identifier"""
    return str(uuid.uuid4())


class Booking(Base):
    """One customer booking request and its lifecycle state"""

    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=generate_booking_id)
    request_id = Column(String(64), nullable=False, index=True)  # Human-facing reference

    # Lifecycle: pending → pending_feedback/confirmed/cancelled → feedback_received
    # → confirmed → paid → partially_scheduled/scheduled → completed
    status = Column(String(50), nullable=False, index=True)

    # Compare-and-swap revision, bumped on every document write
    version = Column(Integer, nullable=False, default=1)

    # Full aggregate (customer, tours, totals, payment link, notifications, ...)
    document = Column(JSON, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    log_entries = relationship(
        "BookingLogEntry", back_populates="booking", order_by="BookingLogEntry.id"
    )
    payments = relationship("BookingPayment", back_populates="booking", order_by="BookingPayment.id")


class BookingLogEntry(Base):
    """Append-only audit trail entry"""

    __tablename__ = "booking_log_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)

    timestamp = Column(DateTime(timezone=True), nullable=False)
    event = Column(String(100), nullable=False)
    changes = Column(JSON, nullable=True)
    processed_by = Column(String(255), nullable=True)

    booking = relationship("Booking", back_populates="log_entries")


class BookingPayment(Base):
    """Payment received against a booking (Stripe or recorded manually by staff)"""

    __tablename__ = "booking_payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)

    amount = Column(Float, nullable=False)
    currency = Column(String(10), default="USD")
    payment_method = Column(String(50), nullable=True)  # card, bank_transfer, cash, stripe_checkout
    transaction_id = Column(String(255), nullable=True, index=True)  # Stripe payment intent id
    session_id = Column(String(255), nullable=True)  # Stripe checkout session id
    receipt_number = Column(String(100), nullable=True)
    status = Column(String(50), default="succeeded")
    payment_date = Column(DateTime(timezone=True), nullable=True)
    processed_by = Column(String(255), nullable=True)  # staff email or stripe_auto
    processed_at = Column(DateTime(timezone=True), nullable=False)
    notes = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)  # Provider extras (customer details, event id)

    booking = relationship("Booking", back_populates="payments")


class BookingMarker(Base):
    """Idempotency key for a side effect that must happen at most once per booking"""

    __tablename__ = "booking_markers"
    __table_args__ = (UniqueConstraint("booking_id", "key", name="uq_booking_marker"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    key = Column(String(255), nullable=False)  # e.g. checkout_session:cs_123
    created_at = Column(DateTime(timezone=True), server_default=func.now())
