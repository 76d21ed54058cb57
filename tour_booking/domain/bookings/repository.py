"""Booking repository - Database operations for bookings"""

import logging
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from ...models import Booking as BookingRow
from ...models import BookingLogEntry, BookingMarker, BookingPayment
from .aggregate import Booking, LogEntry, PaymentRecord, utcnow
from .exceptions import ConcurrentModificationError, DuplicateMarkerError

logger = logging.getLogger(__name__)


def _log_row(booking_id: str, entry: LogEntry) -> BookingLogEntry:
    return BookingLogEntry(
        booking_id=booking_id,
        timestamp=entry.timestamp,
        event=entry.event,
        changes=entry.model_dump(mode="json")["changes"],
        processed_by=entry.processedBy,
    )


def _payment_row(booking_id: str, payment: PaymentRecord) -> BookingPayment:
    return BookingPayment(
        booking_id=booking_id,
        amount=payment.amount,
        currency=payment.currency,
        payment_method=payment.paymentMethod,
        transaction_id=payment.transactionId,
        session_id=payment.sessionId,
        receipt_number=payment.receiptNumber,
        status=payment.status,
        payment_date=payment.paymentDate,
        processed_by=payment.processedBy,
        processed_at=payment.processedAt,
        notes=payment.notes,
        details=payment.model_dump(mode="json")["details"],
    )


def to_aggregate(row: BookingRow) -> Booking:
    """Rebuild the aggregate from its document and child tables"""
    data = dict(row.document)
    data["id"] = row.id
    data["version"] = row.version
    data["log"] = [
        {
            "timestamp": e.timestamp,
            "event": e.event,
            "changes": e.changes or {},
            "processedBy": e.processed_by,
        }
        for e in row.log_entries
    ]
    data["payments"] = [
        {
            "amount": p.amount,
            "currency": p.currency,
            "paymentMethod": p.payment_method,
            "transactionId": p.transaction_id,
            "sessionId": p.session_id,
            "receiptNumber": p.receipt_number,
            "status": p.status,
            "paymentDate": p.payment_date,
            "processedBy": p.processed_by,
            "processedAt": p.processed_at,
            "notes": p.notes,
            "details": p.details or {},
        }
        for p in row.payments
    ]
    return Booking.model_validate(data)


class BookingRepository:
    """Repository for booking database operations"""

    @staticmethod
    def get(db: Session, booking_id: str) -> Optional[Booking]:
        row = db.query(BookingRow).filter(BookingRow.id == booking_id).first()
        return to_aggregate(row) if row else None

    @staticmethod
    def find_by_request_id(db: Session, request_id: str) -> list[Booking]:
        """All bookings sharing a requestId, newest first"""
        rows = (
            db.query(BookingRow)
            .filter(BookingRow.request_id == request_id)
            .order_by(BookingRow.created_at.desc())
            .all()
        )
        return [to_aggregate(row) for row in rows]

    @staticmethod
    def find_by_transaction_id(db: Session, transaction_id: str) -> Optional[Booking]:
        """Booking holding a payment with the given Stripe payment intent id"""
        if not transaction_id:
            return None
        row = (
            db.query(BookingRow)
            .join(BookingPayment, BookingPayment.booking_id == BookingRow.id)
            .filter(BookingPayment.transaction_id == transaction_id)
            .first()
        )
        return to_aggregate(row) if row else None

    @staticmethod
    def has_succeeded_payment(db: Session, booking_id: str, transaction_id: Optional[str]) -> bool:
        if not transaction_id:
            return False
        return (
            db.query(BookingPayment.id)
            .filter(
                BookingPayment.booking_id == booking_id,
                BookingPayment.transaction_id == transaction_id,
                BookingPayment.status == "succeeded",
            )
            .first()
            is not None
        )

    @staticmethod
    def create(db: Session, booking: Booking, log_entries: Iterable[LogEntry]) -> Booking:
        """Insert a new booking with its initial log entries"""
        row = BookingRow(
            id=booking.id,
            request_id=booking.requestId,
            status=booking.status.value,
            version=1,
            document=booking.to_document(),
        )
        db.add(row)
        db.flush()
        for entry in log_entries:
            db.add(_log_row(booking.id, entry))
        db.commit()
        booking.version = 1
        logger.info(f"✅ Booking {booking.requestId} stored as {booking.id}")
        return booking

    @staticmethod
    def save(
        db: Session,
        booking: Booking,
        expected_version: int,
        log_entries: Iterable[LogEntry] = (),
        payments: Iterable[PaymentRecord] = (),
        markers: Iterable[str] = (),
    ) -> Booking:
        """
        Write the booking document if nobody else changed it since it was read.

        Markers, log entries and payments are inserted in the same transaction.

        Raises:
            ConcurrentModificationError: stored version differs from expected_version
            DuplicateMarkerError: one of the markers already exists
        """
        booking.updatedAt = utcnow()
        updated = (
            db.query(BookingRow)
            .filter(BookingRow.id == booking.id, BookingRow.version == expected_version)
            .update(
                {
                    BookingRow.document: booking.to_document(),
                    BookingRow.status: booking.status.value,
                    BookingRow.version: expected_version + 1,
                    BookingRow.updated_at: func.now(),
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            db.rollback()
            logger.warning(
                f"⚠️ Concurrent modification on booking {booking.id} (expected version {expected_version})"
            )
            raise ConcurrentModificationError(booking.id, expected_version)

        markers = list(markers)
        try:
            for key in markers:
                db.add(BookingMarker(booking_id=booking.id, key=key))
            db.flush()
        except IntegrityError as e:
            db.rollback()
            logger.info(f"🔁 Marker already recorded for booking {booking.id}: {markers}")
            raise DuplicateMarkerError(booking.id, ",".join(markers)) from e

        for entry in log_entries:
            db.add(_log_row(booking.id, entry))
        for payment in payments:
            db.add(_payment_row(booking.id, payment))

        db.commit()
        booking.version = expected_version + 1
        return booking

    @staticmethod
    def has_marker(db: Session, booking_id: str, key: str) -> bool:
        return (
            db.query(BookingMarker.id)
            .filter(BookingMarker.booking_id == booking_id, BookingMarker.key == key)
            .first()
            is not None
        )

    @staticmethod
    def add_marker(db: Session, booking_id: str, key: str) -> bool:
        """Record a marker on its own; False when it was already there"""
        db.add(BookingMarker(booking_id=booking_id, key=key))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return False
        return True
