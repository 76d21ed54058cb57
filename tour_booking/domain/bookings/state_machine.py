"""
Booking lifecycle transitions

Every transition takes a loaded booking, works on a deep copy and returns a
Transition holding the new booking, the log entries to append and a details
dict for the response. Guards raise BookingError subclasses before anything
changes; check_invariants() runs on every result.

    pending ──► confirmed ──► paid ──► partially_scheduled ──► scheduled ──► completed
       │            ▲                         │   ▲
       │            │                         └───┘
       ├──► pending_feedback ──► feedback_received
       │                                 │
       └──────────────► cancelled ◄──────┘   (any non-terminal status via cancel)
"""

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from ...shared.validators import is_blank, is_valid_email
from .aggregate import (
    TERMINAL_STATUSES,
    AvailabilityStatus,
    Booking,
    BookingStatus,
    Customer,
    LineStatus,
    LogEntry,
    PaymentAttempt,
    PaymentRecord,
    PaymentStatus,
    ScheduleStatus,
    SchedulingSummary,
    TourDecision,
    TourLineItem,
    TourModifications,
    TourSchedule,
    utcnow,
)
from .exceptions import (
    AlreadyPaidError,
    BookingValidationError,
    InvalidBookingStateError,
    InvariantViolationError,
)
from .pricing import calculate_price
from .schemas import (
    AvailabilityResult,
    BookingSubmitData,
    ModifiedTour,
    TourFeedback,
    TourScheduleInput,
)

logger = logging.getLogger(__name__)

DEFAULT_STEPS = {
    BookingStatus.PENDING: "awaiting_availability_confirmation",
    BookingStatus.PENDING_FEEDBACK: "awaiting_client_feedback",
    BookingStatus.FEEDBACK_RECEIVED: "reviewing_feedback",
    BookingStatus.CONFIRMED: "awaiting_payment",
    BookingStatus.PAID: "payment_received",
    BookingStatus.PARTIALLY_SCHEDULED: "tour_partially_scheduled",
    BookingStatus.SCHEDULED: "tour_scheduled",
    BookingStatus.COMPLETED: "booking_completed",
    BookingStatus.CANCELLED: "booking_cancelled",
}

LINE_MOVES = {
    LineStatus.PENDING: {LineStatus.CONFIRMED, LineStatus.CANCELLED},
    LineStatus.CONFIRMED: {LineStatus.CANCELLED},
    LineStatus.CANCELLED: set(),
}

MONEY_TOLERANCE = 0.005

# Line fields owned by the lifecycle, never taken from the booking cart
SERVER_OWNED_LINE_FIELDS = {
    "calculatedPrice",
    "price",
    "status",
    "availabilityStatus",
    "availabilityNotes",
    "limitedPlaces",
    "alternativeDate",
    "confirmedDate",
    "originalPrice",
    "originalGuests",
    "originalDate",
    "clientDecision",
    "clientNotes",
    "removedFromBooking",
    "cancelledAt",
    "cancelledReason",
    "modifications",
    "schedule",
    "scheduleStatus",
}


@dataclass
class Transition:
    booking: Booking
    log_entries: list[LogEntry] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)


# ============================================================================
# Guards and invariants
# ============================================================================


def require_status(booking: Booking, allowed: Iterable[BookingStatus], action: str) -> None:
    allowed = list(allowed)
    if booking.status not in allowed:
        raise InvalidBookingStateError(
            f"Cannot {action} a booking in status {booking.status.value}",
            current_status=booking.status.value,
            expected_status=[s.value for s in allowed],
        )


def check_invariants(before: Optional[Booking], after: Booking) -> None:
    """Raise InvariantViolationError when a transition result breaks an aggregate rule"""
    expected_total = after.billable_total()
    if abs(after.total - expected_total) > MONEY_TOLERANCE:
        raise InvariantViolationError(
            "Booking total does not match its billable tours",
            {"total": after.total, "billableTotal": expected_total},
        )

    if before is None:
        return

    if after.paidAmount + MONEY_TOLERANCE < before.paidAmount:
        raise InvariantViolationError(
            "Paid amount cannot decrease",
            {"previousPaidAmount": before.paidAmount, "paidAmount": after.paidAmount},
        )

    if [t.id for t in before.tours] != [t.id for t in after.tours]:
        raise InvariantViolationError("Tours cannot be added, removed or reordered after submission")

    for old, new in zip(before.tours, after.tours):
        if old.is_locked and old.model_dump() != new.model_dump():
            raise InvariantViolationError(f"Tour {old.id} is cancelled and cannot change")
        if old.status != new.status:
            if new.status not in LINE_MOVES[old.status]:
                raise InvariantViolationError(
                    f"Tour {old.id} cannot move from {old.status.value} to {new.status.value}"
                )
            if old.status == LineStatus.CONFIRMED and after.status != BookingStatus.CANCELLED:
                raise InvariantViolationError(
                    f"Confirmed tour {old.id} can only be cancelled with the whole booking"
                )


def _set_status(booking: Booking, status: BookingStatus, step: Optional[str] = None) -> None:
    booking.status = status
    booking.currentStep = step or DEFAULT_STEPS[status]


def _move_line(line: TourLineItem, status: LineStatus) -> None:
    if line.status == status:
        return
    if line.is_locked or status not in LINE_MOVES[line.status]:
        raise InvariantViolationError(
            f"Tour {line.id} cannot move from {line.status.value} to {status.value}"
        )
    line.status = status


def _cancel_line(line: TourLineItem, reason: str, now: datetime, zero_price: bool, removed: bool = False) -> None:
    _move_line(line, LineStatus.CANCELLED)
    line.cancelledAt = now
    line.cancelledReason = reason
    if zero_price:
        line.calculatedPrice = 0
    if removed:
        line.removedFromBooking = True


def _recompute_total(booking: Booking) -> None:
    booking.total = booking.billable_total()


def _finish(
    before: Optional[Booking],
    after: Booking,
    entries: list[LogEntry],
    details: Optional[dict[str, Any]] = None,
) -> Transition:
    after.updatedAt = utcnow()
    check_invariants(before, after)
    after.log.extend(entries)
    return Transition(booking=after, log_entries=entries, details=details or {})


def generate_request_id(prefix: str) -> str:
    """Human-facing reference: <prefix>-<epoch ms>-<6 digits>"""
    return f"{prefix}-{int(time.time() * 1000)}-{random.randint(0, 999999):06d}"


# ============================================================================
# Submit
# ============================================================================


def create_booking(
    data: BookingSubmitData,
    request_id: str,
    requester: Optional[dict[str, Any]] = None,
) -> Transition:
    """Validate a cart submission and build the new pending booking"""
    if not data.tours:
        raise BookingValidationError("At least one tour is required")

    customer = data.customer
    if customer is None or is_blank(customer.name):
        raise BookingValidationError("Customer name is required")
    if not is_valid_email(customer.email):
        raise BookingValidationError("A valid customer email is required")

    lines = []
    for tour in data.tours:
        fallback = tour.calculatedPrice if tour.calculatedPrice is not None else tour.price
        price = calculate_price(tour.groupPrices, tour.guests, fallback=fallback)
        fields = tour.model_dump(exclude=SERVER_OWNED_LINE_FIELDS)
        lines.append(TourLineItem(**fields, calculatedPrice=price))

    booking = Booking(
        requestId=request_id,
        customer=Customer(**customer.model_dump(exclude_none=True)),
        tours=lines,
        requester=requester or {},
        submittedAt=data.submittedAt,
    )
    _recompute_total(booking)

    if data.total is not None and abs(data.total - booking.total) > 0.01:
        logger.warning(
            f"⚠️ Client total {data.total} differs from computed total {booking.total} for {request_id}"
        )

    entry = LogEntry(
        event="booking_submitted",
        changes={
            "toursCount": len(lines),
            "total": booking.total,
            "clientTotal": data.total,
        },
        processedBy=booking.customer.email,
    )
    return _finish(None, booking, [entry])


# ============================================================================
# Availability
# ============================================================================


def confirm_availability(
    booking: Booking,
    results: list[AvailabilityResult],
    admin_notes: Optional[str],
    processed_by: str,
) -> Transition:
    """
    Merge staff availability verdicts and classify the booking.

    details["outcome"] is one of no_availability, all_available, partial.
    The caller attaches the payment link (all_available) or feedback link (partial).
    """
    require_status(booking, [BookingStatus.PENDING], "confirm availability for")
    if not results:
        raise BookingValidationError("Availability results are required")

    after = booking.model_copy(deep=True)
    now = utcnow()
    verdicts = {r.id: r for r in results}

    unknown = [tour_id for tour_id in verdicts if after.find_tour(tour_id) is None]
    if unknown:
        logger.warning(f"⚠️ Ignoring availability for unknown tours {unknown} on {after.requestId}")

    for line in after.tours:
        verdict = verdicts.get(line.id)
        if verdict is None or line.is_locked:
            continue
        line.availabilityStatus = verdict.status
        line.availabilityNotes = verdict.notes
        line.limitedPlaces = verdict.limitedPlaces
        line.alternativeDate = verdict.alternativeDate

    active = [line for line in after.tours if not line.is_locked]
    statuses = [line.availabilityStatus for line in active]
    flags = {
        "hasAlternativeDates": AvailabilityStatus.ALTERNATIVE in statuses,
        "hasLimitedPlaces": AvailabilityStatus.LIMITED in statuses,
        "hasUnavailableTours": AvailabilityStatus.UNAVAILABLE in statuses,
        "allToursAvailable": bool(statuses) and all(s == AvailabilityStatus.AVAILABLE for s in statuses),
        "noToursAvailable": bool(statuses) and all(s == AvailabilityStatus.UNAVAILABLE for s in statuses),
    }

    if flags["noToursAvailable"]:
        outcome = "no_availability"
        for line in active:
            _cancel_line(line, "Not available on requested date", now, zero_price=False)
        _set_status(after, BookingStatus.CANCELLED, "no_availability")
        after.cancelledAt = now
        after.cancelledBy = processed_by
    elif flags["allToursAvailable"]:
        outcome = "all_available"
        for line in active:
            _move_line(line, LineStatus.CONFIRMED)
            line.confirmedDate = line.date
        _set_status(after, BookingStatus.CONFIRMED)
    else:
        outcome = "partial"
        _set_status(after, BookingStatus.PENDING_FEEDBACK)

    _recompute_total(after)
    after.availabilityConfirmedAt = now
    after.availabilityConfirmedBy = processed_by
    if admin_notes is not None:
        after.adminNotes = admin_notes

    entry = LogEntry(
        event="availability_checked",
        changes={**flags, "outcome": outcome, "adminNotes": admin_notes},
        processedBy=processed_by,
    )
    return _finish(booking, after, [entry], {"outcome": outcome, **flags})


def apply_feedback_link(booking: Booking, link: str, processed_by: str) -> LogEntry:
    booking.feedbackLink = link
    entry = LogEntry(
        event="feedback_requested",
        changes={"feedbackLinkSent": True},
        processedBy=processed_by,
    )
    booking.log.append(entry)
    return entry


def apply_payment_link(booking: Booking, issue: Any) -> LogEntry:
    """Record an issued (or reused) PaymentLinkIssue on the booking"""
    now = utcnow()
    booking.paymentLink = issue.url
    booking.paymentLinkId = issue.id
    booking.paymentLinkAmount = issue.amount_due
    booking.paymentLinkExpiresAt = issue.expires_at
    booking.paymentLinkActive = True
    booking.paymentLinkDeactivated = False
    if not issue.reused:
        booking.paymentLinkGeneratedAt = now
    booking.log.append(issue.log_entry)
    return issue.log_entry


def mark_link_deactivated(booking: Booking, processed_by: str) -> LogEntry:
    booking.paymentLinkActive = False
    booking.paymentLinkDeactivated = True
    booking.updatedAt = utcnow()
    entry = LogEntry(
        event="payment_link_deactivated",
        changes={"paymentLinkId": booking.paymentLinkId},
        processedBy=processed_by,
    )
    booking.log.append(entry)
    return entry


# ============================================================================
# Client feedback
# ============================================================================


def record_client_feedback(booking: Booking, feedback: list[TourFeedback]) -> Transition:
    require_status(booking, [BookingStatus.PENDING_FEEDBACK], "record feedback for")

    after = booking.model_copy(deep=True)
    now = utcnow()
    by_tour = {f.tourId: f for f in feedback}
    active = [line for line in after.tours if not line.is_locked]

    unknown = [tour_id for tour_id in by_tour if after.find_tour(tour_id) is None]
    if unknown:
        raise BookingValidationError("Feedback references unknown tours", {"unknownTours": unknown})
    missing = [line.id for line in active if line.id not in by_tour]
    if missing:
        raise BookingValidationError("Feedback missing for some tours", {"missingTours": missing})

    decisions = []
    for line in active:
        entry = by_tour[line.id]
        details = entry.modificationDetails

        if line.originalPrice is None:
            line.originalPrice = line.calculatedPrice
            line.originalGuests = line.guests
            line.originalDate = line.date

        change_note = ""
        if entry.decision == TourDecision.MODIFY and details is not None:
            if line.availabilityStatus == AvailabilityStatus.LIMITED and details.guests:
                line.guests = details.guests
                line.calculatedPrice = calculate_price(
                    line.groupPrices, details.guests, fallback=line.calculatedPrice
                )
                change_note = f"Guests {line.originalGuests} → {details.guests}"
            elif line.availabilityStatus == AvailabilityStatus.ALTERNATIVE and details.date:
                line.date = details.date
                line.confirmedDate = details.date
                change_note = f"Date {line.originalDate} → {details.date}"

        line.clientDecision = entry.decision
        notes = entry.notes or (details.notes if details else None)
        if notes:
            line.clientNotes = notes

        decisions.append(
            {
                "tourId": line.id,
                "title": line.title,
                "decision": entry.decision.value,
                "details": "; ".join(p for p in (change_note, notes or "") if p),
            }
        )

    _recompute_total(after)
    _set_status(after, BookingStatus.FEEDBACK_RECEIVED)
    after.feedbackReceivedAt = now
    after.feedbackDecisions = [f.model_dump(mode="json") for f in feedback]

    summary = {
        "totalTours": len(active),
        "toursKept": sum(1 for d in decisions if d["decision"] == TourDecision.KEEP.value),
        "toursModified": sum(1 for d in decisions if d["decision"] == TourDecision.MODIFY.value),
        "toursRemoved": sum(1 for d in decisions if d["decision"] == TourDecision.REMOVE.value),
        "newTotal": after.total,
    }

    log_entry = LogEntry(
        event="feedback_received",
        changes={
            **summary,
            "decisions": [{"tourId": d["tourId"], "decision": d["decision"]} for d in decisions],
        },
        processedBy=after.customer.email,
    )
    return _finish(booking, after, [log_entry], {"summary": summary, "decisions": decisions})


# ============================================================================
# Staff decision after feedback
# ============================================================================


def confirm_after_feedback(
    booking: Booking,
    modified_tours: Optional[list[ModifiedTour]],
    admin_notes: Optional[str],
    processed_by: str,
    client_total: Optional[float] = None,
) -> Transition:
    """Apply the final per-tour decisions; the caller issues the payment link"""
    require_status(booking, [BookingStatus.FEEDBACK_RECEIVED], "confirm")
    if modified_tours is None:
        raise BookingValidationError("Modified tours data is required for confirmation")

    after = booking.model_copy(deep=True)
    now = utcnow()
    decisions = {m.tourId: m for m in modified_tours}

    for line in after.tours:
        if line.is_locked:
            continue

        decision = decisions.get(line.id)
        action = decision.action if decision else (line.clientDecision or TourDecision.KEEP)

        if action == TourDecision.REMOVE:
            _cancel_line(
                line, "Client requested removal after feedback", now, zero_price=True, removed=True
            )
            continue

        new_date = (decision.newDate if decision else None) or line.date
        new_guests = (decision.newGuests if decision else None) or line.guests
        new_price = decision.newPrice if decision else None
        if new_price is None:
            if new_guests != line.guests:
                new_price = calculate_price(line.groupPrices, new_guests, fallback=line.calculatedPrice)
            else:
                new_price = line.calculatedPrice

        original_date = line.originalDate if line.originalDate is not None else line.date
        original_guests = line.originalGuests if line.originalGuests is not None else line.guests
        original_price = line.originalPrice if line.originalPrice is not None else line.calculatedPrice

        _move_line(line, LineStatus.CONFIRMED)
        line.date = new_date
        line.confirmedDate = new_date
        line.guests = new_guests
        line.calculatedPrice = round(new_price, 2)
        line.modifications = TourModifications(
            dateChanged=new_date != original_date,
            guestsChanged=new_guests != original_guests,
            priceChanged=abs(line.calculatedPrice - original_price) > MONEY_TOLERANCE,
            notes=(decision.notes if decision else None) or "",
        )

    if not after.confirmed_tours():
        raise BookingValidationError(
            "At least one tour must be kept to confirm the booking - cancel it instead"
        )

    original_total = booking.total
    _recompute_total(after)
    if client_total is not None and abs(client_total - after.total) > 0.01:
        logger.warning(
            f"⚠️ Ignoring client total {client_total} for {after.requestId}, computed {after.total}"
        )

    _set_status(after, BookingStatus.CONFIRMED)
    after.feedbackProcessedAt = now
    after.feedbackProcessedBy = processed_by
    after.adminNotes = admin_notes or ""

    entry = LogEntry(
        event="feedback_processed",
        changes={
            "action": "confirm",
            "originalStatus": booking.status.value,
            "newStatus": after.status.value,
            "originalTotal": original_total,
            "newTotal": after.total,
            "toursConfirmed": len(after.confirmed_tours()),
            "toursCancelled": sum(1 for t in after.tours if t.status == LineStatus.CANCELLED),
            "adminNotes": admin_notes,
            "cancellationNotes": None,
        },
        processedBy=processed_by,
    )
    return _finish(booking, after, [entry])


def _cancel_everything(after: Booking, notes: str, reason: str, processed_by: str, now: datetime) -> None:
    for line in after.tours:
        if line.is_locked:
            continue
        _cancel_line(line, reason, now, zero_price=True)
    after.cancellationNotes = notes
    after.cancelledAt = now
    after.cancelledBy = processed_by
    _recompute_total(after)


def cancel_after_feedback(
    booking: Booking,
    cancellation_notes: Optional[str],
    admin_notes: Optional[str],
    processed_by: str,
) -> Transition:
    require_status(booking, [BookingStatus.FEEDBACK_RECEIVED], "cancel")
    if is_blank(cancellation_notes):
        raise BookingValidationError("Cancellation notes are required when cancelling a booking")

    after = booking.model_copy(deep=True)
    now = utcnow()
    original_total = booking.total

    _cancel_everything(after, cancellation_notes, "All tours cancelled after client feedback", processed_by, now)
    _set_status(after, BookingStatus.CANCELLED, "cancelled_after_feedback")
    after.feedbackProcessedAt = now
    after.feedbackProcessedBy = processed_by
    after.adminNotes = admin_notes or ""

    entry = LogEntry(
        event="feedback_processed",
        changes={
            "action": "cancel",
            "originalStatus": booking.status.value,
            "newStatus": after.status.value,
            "originalTotal": original_total,
            "newTotal": after.total,
            "toursConfirmed": 0,
            "toursCancelled": len(after.tours),
            "adminNotes": admin_notes,
            "cancellationNotes": cancellation_notes,
        },
        processedBy=processed_by,
    )
    return _finish(booking, after, [entry])


def cancel_booking(booking: Booking, cancellation_notes: Optional[str], processed_by: str) -> Transition:
    """Staff cancellation from any non-terminal status; paid amounts are left for Stripe refunds"""
    non_terminal = [s for s in BookingStatus if s not in TERMINAL_STATUSES]
    require_status(booking, non_terminal, "cancel")
    if is_blank(cancellation_notes):
        raise BookingValidationError("Cancellation notes are required when cancelling a booking")

    after = booking.model_copy(deep=True)
    now = utcnow()
    original_total = booking.total

    _cancel_everything(after, cancellation_notes, "Booking cancelled by staff", processed_by, now)
    _set_status(after, BookingStatus.CANCELLED, "booking_cancelled")

    entry = LogEntry(
        event="booking_cancelled",
        changes={
            "originalStatus": booking.status.value,
            "originalTotal": original_total,
            "paidAmount": after.paidAmount,
            "cancellationNotes": cancellation_notes,
        },
        processedBy=processed_by,
    )
    return _finish(booking, after, [entry])


# ============================================================================
# Payments
# ============================================================================


def apply_payment(
    booking: Booking,
    payment: PaymentRecord,
    source: str,
    mark_fully_paid: bool = False,
) -> Transition:
    """
    Add a received payment (Stripe or manual) to a confirmed booking.

    Raises:
        InvalidBookingStateError: booking is not awaiting payment
        AlreadyPaidError: nothing is left to pay
    """
    require_status(booking, [BookingStatus.CONFIRMED], "record a payment for")
    if booking.total > 0 and booking.is_fully_paid:
        raise AlreadyPaidError("Already paid")

    after = booking.model_copy(deep=True)
    now = utcnow()

    previous_paid = after.paidAmount
    new_paid = round(previous_paid + payment.amount, 2)
    is_fully_paid = mark_fully_paid or new_paid >= after.total

    after.paidAmount = new_paid
    after.paymentStatus = PaymentStatus.FULLY_PAID if is_fully_paid else PaymentStatus.PARTIALLY_PAID
    after.currency = payment.currency
    after.lastPaymentAt = now
    _set_status(after, BookingStatus.PAID if is_fully_paid else BookingStatus.CONFIRMED)
    after.payments.append(payment)

    changes = {
        "amount": payment.amount,
        "previousPaid": previous_paid,
        "newPaid": new_paid,
        "isFullyPaid": is_fully_paid,
        "paymentMethod": payment.paymentMethod,
        "transactionId": payment.transactionId,
        "receiptNumber": payment.receiptNumber,
        "newStatus": after.status.value,
        "currentStep": after.currentStep,
        "source": source,
    }
    if payment.sessionId:
        changes["stripeSessionId"] = payment.sessionId

    entry = LogEntry(event="payment_received", changes=changes, processedBy=payment.processedBy)
    details = {
        "newPaidAmount": new_paid,
        "previousPaidAmount": previous_paid,
        "totalAmount": after.total,
        "isFullyPaid": is_fully_paid,
        "remainingBalance": round(max(after.total - new_paid, 0), 2),
        "newStatus": after.status.value,
        "currentStep": after.currentStep,
    }
    return _finish(booking, after, [entry], details)


def record_unapplied_payment(booking: Booking, payment: PaymentRecord, reason: str) -> Transition:
    """
    Keep a provider payment the booking could not accept (cancelled, already
    paid). Paid amounts and status stay as they are; staff settle it by hand.
    """
    after = booking.model_copy(deep=True)
    payment.status = "unapplied"
    after.payments.append(payment)
    entry = LogEntry(
        event="payment_received_unapplied",
        changes={
            "amount": payment.amount,
            "currency": payment.currency,
            "transactionId": payment.transactionId,
            "stripeSessionId": payment.sessionId,
            "bookingStatus": booking.status.value,
            "paidAmount": booking.paidAmount,
            "reason": reason,
        },
        processedBy=payment.processedBy,
    )
    return _finish(booking, after, [entry], {"reason": reason, "amount": payment.amount})


def record_payment_attempt(
    booking: Booking,
    event: str,
    attempt: PaymentAttempt,
    changes: Optional[dict[str, Any]] = None,
) -> Transition:
    """Note a pending, failed or expired checkout without touching paid amounts"""
    after = booking.model_copy(deep=True)
    after.lastPaymentAttempt = attempt
    entry = LogEntry(
        event=event,
        changes={
            "status": attempt.status,
            "stripeSessionId": attempt.sessionId,
            "paymentIntentId": attempt.paymentIntentId,
            "failureReason": attempt.failureReason,
            **(changes or {}),
        },
        processedBy="stripe_webhook",
    )
    return _finish(booking, after, [entry])


def record_refund(booking: Booking, refund: dict[str, Any]) -> Transition:
    after = booking.model_copy(deep=True)
    after.lastRefund = refund
    entry = LogEntry(event="charge_refunded", changes=refund, processedBy="stripe_webhook")
    return _finish(booking, after, [entry])


def record_dispute(booking: Booking, dispute: dict[str, Any]) -> Transition:
    after = booking.model_copy(deep=True)
    after.lastDispute = dispute
    entry = LogEntry(event="dispute_created", changes=dispute, processedBy="stripe_webhook")
    return _finish(booking, after, [entry])


# ============================================================================
# Scheduling
# ============================================================================


def _as_int(value: Any, default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _assignment(person: Any, now: datetime, keys: tuple[str, ...]) -> Optional[dict[str, Any]]:
    if person is None or not person.assigned:
        return None
    assignment = {key: getattr(person, key, None) or "" for key in keys}
    assignment.update({"assigned": True, "assignedAt": now.isoformat()})
    return assignment


def _point(point: Any) -> dict[str, str]:
    return {
        "location": (point.location if point else None) or "",
        "time": (point.time if point else None) or "",
        "notes": (point.notes if point else None) or "",
    }


def build_schedule(line: TourLineItem, data: TourScheduleInput, processed_by: str, now: datetime) -> TourSchedule:
    is_multi_day = data.tourType == "multi_day_tour"
    if is_multi_day:
        itinerary = [
            {
                "day": day.day,
                "date": day.date,
                "activities": [
                    {"time": i.time, "activity": i.activity, "description": i.description or ""}
                    for i in day.itinerary
                ],
            }
            for day in data.dayItinerary
        ]
    else:
        itinerary = [
            {"time": i.time, "activity": i.activity, "description": i.description or ""}
            for i in data.itinerary
        ]

    return TourSchedule(
        tourId=line.id,
        title=data.title or line.title,
        date=data.date or line.confirmedDate or line.date,
        tourType=data.tourType,
        startTime=data.startTime,
        endTime=data.endTime,
        durationHours=_as_int(data.durationHours, 0),
        durationDays=_as_int(data.durationDays, 1),
        guests=line.guests,
        originalGuests=line.originalGuests if line.originalGuests is not None else line.guests,
        modifications=line.modifications,
        guide=_assignment(data.guide, now, ("name", "phone", "email")),
        driver=_assignment(data.driver, now, ("name", "phone", "vehicle")),
        meetingPoint=_point(data.meetingPoint),
        dropoffPoint=_point(data.dropoffPoint),
        itinerary=itinerary,
        itineraryType="multi_day" if is_multi_day else "single_day",
        equipment=[
            {"item": e.item, "quantity": e.quantity or 1, "notes": e.notes or ""} for e in data.equipment
        ],
        scheduleNotes=data.notes or "",
        scheduledAt=now,
        scheduledBy=processed_by,
    )


def _is_schedulable(line: TourLineItem) -> bool:
    return line.status == LineStatus.CONFIRMED and not line.removedFromBooking


def schedule_tours(booking: Booking, schedules: list[TourScheduleInput], processed_by: str) -> Transition:
    require_status(booking, [BookingStatus.PAID, BookingStatus.PARTIALLY_SCHEDULED], "schedule")

    valid_ids = [line.id for line in booking.tours if _is_schedulable(line)]
    if not schedules:
        raise BookingValidationError("At least one tour schedule is required", {"validTourIds": valid_ids})

    invalid = [s for s in schedules if s.tourId not in valid_ids]
    if invalid:
        raise BookingValidationError(
            "Cannot schedule cancelled or removed tours",
            {
                "invalidTours": [{"tourId": s.tourId, "title": s.title} for s in invalid],
                "validTourIds": valid_ids,
            },
        )

    after = booking.model_copy(deep=True)
    now = utcnow()
    by_tour = {s.tourId: s for s in schedules}
    scheduled_now = []

    for line in after.tours:
        if not _is_schedulable(line):
            if line.is_locked:
                continue
            line.schedule = None
            line.scheduleStatus = ScheduleStatus.NOT_SCHEDULED
            continue
        data = by_tour.get(line.id)
        if data is None:
            continue
        line.schedule = build_schedule(line, data, processed_by, now)
        line.confirmedDate = line.schedule.date
        line.scheduleStatus = ScheduleStatus.SCHEDULED
        scheduled_now.append(line)

    confirmed = [line for line in after.tours if _is_schedulable(line)]
    scheduled = [line for line in confirmed if line.schedule is not None]
    all_scheduled = len(scheduled) == len(confirmed)

    after.schedulingSummary = SchedulingSummary(
        totalTours=len(after.tours),
        confirmedTours=len(confirmed),
        scheduledTours=len(scheduled),
        cancelledTours=sum(1 for t in after.tours if t.status == LineStatus.CANCELLED),
        removedTours=sum(1 for t in after.tours if t.removedFromBooking),
        allConfirmedScheduled=all_scheduled,
    )
    after.scheduledAt = now
    after.scheduledBy = processed_by

    warnings = []
    if all_scheduled:
        _set_status(after, BookingStatus.SCHEDULED)
        after.schedulingWarning = None
    else:
        _set_status(after, BookingStatus.PARTIALLY_SCHEDULED)
        after.schedulingWarning = "Some confirmed tours were not included in schedule"
        warnings = [
            f"Tour '{line.title}' ({line.id}) is confirmed but not yet scheduled"
            for line in confirmed
            if line.schedule is None
        ]

    entry = LogEntry(
        event="tour_scheduled",
        changes={
            "toursScheduled": len(scheduled_now),
            "toursConfirmed": len(confirmed),
            "toursCancelled": after.schedulingSummary.cancelledTours,
            "toursRemoved": after.schedulingSummary.removedTours,
            "hasModifiedTours": any(
                t.modifications and (t.modifications.dateChanged or t.modifications.guestsChanged)
                for t in scheduled_now
            ),
            "hasGuide": any(t.schedule.guide for t in scheduled_now),
            "hasDriver": any(t.schedule.driver for t in scheduled_now),
            "tourTypes": sorted({t.schedule.tourType for t in scheduled_now}),
            "allConfirmedScheduled": all_scheduled,
        },
        processedBy=processed_by,
    )
    return _finish(
        booking,
        after,
        [entry],
        {"scheduledTours": scheduled_now, "warnings": warnings, "allConfirmedScheduled": all_scheduled},
    )


# ============================================================================
# Completion
# ============================================================================


def complete_booking(booking: Booking, processed_by: str) -> Transition:
    require_status(booking, [BookingStatus.SCHEDULED], "complete")

    after = booking.model_copy(deep=True)
    after.completedAt = utcnow()
    after.completedBy = processed_by
    _set_status(after, BookingStatus.COMPLETED)

    entry = LogEntry(
        event="booking_completed",
        changes={"previousStatus": booking.status.value, "newStatus": after.status.value},
        processedBy=processed_by,
    )
    return _finish(booking, after, [entry])
