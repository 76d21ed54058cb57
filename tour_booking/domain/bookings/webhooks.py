"""
Stripe webhook reconciliation

Turns verified Stripe events into booking transitions. Fulfillment is
idempotent: the checkout session marker is written in the same transaction
as the payment, so a replayed or concurrent delivery can never double count.
Failure emails are claimed through their own marker before sending, which
keeps them at most once per checkout session or payment intent. Refunds and
disputes are keyed the same way on their Stripe ids.

A paid session the booking cannot take (cancelled, already paid) is still
stored, as an unapplied payment under the session marker, and staff are told.
"""

import logging
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from . import state_machine as sm
from .aggregate import Booking, PaymentAttempt, PaymentRecord, PaymentStatus, utcnow
from .exceptions import (
    AlreadyPaidError,
    BookingNotFoundError,
    BookingValidationError,
    ConcurrentModificationError,
    DuplicateMarkerError,
    InvalidBookingStateError,
    PaymentGatewayError,
)
from .notifications import BookingNotifier
from .payment_links import StripePaymentLinkGateway, stripe_field
from .repository import BookingRepository

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3


def _metadata_booking_id(obj: Any) -> Optional[str]:
    return stripe_field(stripe_field(obj, "metadata"), "bookingId")


def _cents(value: Any) -> float:
    return round((value or 0) / 100, 2)


def _notification_recorded(booking: Booking, purpose: str, email) -> sm.Transition:
    after = booking.model_copy(deep=True)
    after.record_notification(purpose, email.sent, email.error)
    return sm.Transition(booking=after)


class StripeWebhookReconciler:
    """Apply Stripe events to bookings"""

    def __init__(self, db: Session, notifier: BookingNotifier, gateway: StripePaymentLinkGateway):
        self.db = db
        self.repo = BookingRepository()
        self.notifier = notifier
        self.gateway = gateway

    async def handle(self, event: dict[str, Any]) -> dict[str, Any]:
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        logger.info(f"🔔 Stripe event {event.get('id')} ({event_type})")

        if event_type == "checkout.session.completed":
            if obj.get("payment_status") == "paid":
                return await self.fulfill(obj, event.get("id"))
            return self.async_payment_initiated(obj)
        if event_type == "checkout.session.async_payment_succeeded":
            return await self.fulfill(obj, event.get("id"), notes="Async payment succeeded via Stripe")
        if event_type == "checkout.session.async_payment_failed":
            return await self.session_failed(obj, "payment_failed", "Payment could not be completed")
        if event_type == "checkout.session.expired":
            return await self.session_failed(obj, "payment_session_expired", "Checkout session expired")
        if event_type == "payment_intent.payment_failed":
            return await self.intent_failed(obj)
        if event_type == "charge.refunded":
            return self.charge_refunded(obj)
        if event_type == "charge.dispute.created":
            return self.dispute_created(obj)

        logger.info(f"Unhandled Stripe event type {event_type}")
        return {"handled": False}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _booking_from_metadata(self, obj: Any) -> Booking:
        booking_id = _metadata_booking_id(obj)
        if not booking_id:
            raise BookingValidationError("Booking ID not found in session metadata")
        booking = self.repo.get(self.db, booking_id)
        if not booking:
            raise BookingNotFoundError(details={"bookingId": booking_id})
        return booking

    def _booking_for_intent(self, obj: Any, intent_id: Optional[str]) -> Booking:
        booking_id = _metadata_booking_id(obj)
        booking = self.repo.get(self.db, booking_id) if booking_id else None
        if booking is None:
            booking = self.repo.find_by_transaction_id(self.db, intent_id)
        if booking is None:
            raise BookingNotFoundError(details={"paymentIntentId": intent_id})
        return booking

    def _update(
        self, booking_id: str, change: Callable[[Booking], sm.Transition], markers: tuple[str, ...] = ()
    ) -> Booking:
        """Reload, transform and save, retrying when a concurrent write wins"""
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            current = self.repo.get(self.db, booking_id)
            if current is None:
                raise BookingNotFoundError()
            transition = change(current)
            try:
                return self.repo.save(
                    self.db, transition.booking, current.version, transition.log_entries, markers=markers
                )
            except ConcurrentModificationError:
                if attempt == MAX_WRITE_ATTEMPTS:
                    raise
                logger.info(f"🔁 Retrying webhook write for booking {booking_id} (attempt {attempt})")

    async def _send_failure_email(self, booking: Booking, key: str, reason: str):
        if not self.repo.add_marker(self.db, booking.id, f"email:payment_failed:{key}"):
            logger.info(f"Payment failure email for {key} already sent")
            return None
        return await self.notifier.payment_failed(booking, reason)

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------

    async def fulfill(self, session: dict[str, Any], event_id: Optional[str] = None, notes: Optional[str] = None) -> dict:
        booking = self._booking_from_metadata(session)
        session_id = session.get("id")
        intent_id = session.get("payment_intent")
        marker = f"checkout_session:{session_id}"

        if self.repo.has_marker(self.db, booking.id, marker) or self.repo.has_succeeded_payment(
            self.db, booking.id, intent_id
        ):
            logger.info(f"🔁 Checkout session {session_id} already processed for {booking.requestId}")
            self._retire_paid_link(booking)
            return {"bookingId": booking.id, "alreadyProcessed": True}

        methods = session.get("payment_method_types") or []
        customer = session.get("customer_details") or {}
        payment = PaymentRecord(
            amount=_cents(session.get("amount_total")),
            currency=(session.get("currency") or booking.currency).upper(),
            paymentMethod=methods[0] if methods else "card",
            transactionId=intent_id,
            sessionId=session_id,
            receiptNumber=intent_id,
            paymentDate=utcnow(),
            processedBy="stripe_auto",
            notes=notes or "Paid via Stripe payment link",
            details={
                "billingDetails": {
                    "name": customer.get("name"),
                    "email": customer.get("email"),
                    "phone": customer.get("phone"),
                    "address": customer.get("address"),
                },
                "stripeCustomerId": session.get("customer"),
                "eventId": event_id,
            },
        )

        try:
            transition = sm.apply_payment(booking, payment, source="stripe")
        except (InvalidBookingStateError, AlreadyPaidError) as e:
            return await self._keep_unapplied(booking, payment, marker, e.message)

        after = transition.booking
        after.lastPaymentAttempt = PaymentAttempt(
            status="succeeded", sessionId=session_id, paymentIntentId=intent_id
        )

        try:
            after = self.repo.save(
                self.db,
                after,
                booking.version,
                transition.log_entries,
                payments=[payment],
                markers=[marker],
            )
        except DuplicateMarkerError:
            return {"bookingId": booking.id, "alreadyProcessed": True}

        logger.info(f"💰 Stripe payment of {payment.amount} applied to {after.requestId}")
        await self._after_fulfillment(after, payment, session_id, transition.details["isFullyPaid"])
        return {"bookingId": after.id, "paymentDetails": transition.details}

    async def _keep_unapplied(self, booking: Booking, payment: PaymentRecord, marker: str, reason: str) -> dict:
        """Store a collected payment the booking cannot take and alert staff"""
        transition = sm.record_unapplied_payment(booking, payment, reason)
        try:
            self.repo.save(
                self.db,
                transition.booking,
                booking.version,
                transition.log_entries,
                payments=[payment],
                markers=[marker],
            )
        except DuplicateMarkerError:
            return {"bookingId": booking.id, "alreadyProcessed": True}

        logger.error(
            f"🚨 Stripe payment {payment.transactionId} of {payment.amount} kept unapplied on "
            f"{booking.requestId}: {reason}"
        )
        email = await self.notifier.unapplied_payment_staff(booking, payment, reason)
        self._update(booking.id, lambda current: _notification_recorded(current, "unapplied_payment_staff", email))
        return {
            "bookingId": booking.id,
            "paymentApplied": False,
            "requiresReview": True,
            "error": reason,
            "staffNotified": email.sent,
        }

    async def _after_fulfillment(
        self, booking: Booking, payment: PaymentRecord, session_id: str, fully_paid: bool
    ) -> None:
        email = None
        if self.repo.add_marker(self.db, booking.id, f"email:payment_confirmation:{session_id}"):
            email = await self.notifier.payment_confirmation(booking, payment.amount)
        if email is not None:
            self._update(booking.id, lambda current: _notification_recorded(current, "payment_confirmation", email))
        if fully_paid:
            self._retire_paid_link(booking)

    def _retire_paid_link(self, booking: Booking) -> None:
        """
        Deactivate the link of a fully paid booking.

        Raises PaymentGatewayError while Stripe keeps it live, so the event
        is delivered again and the next attempt retries.
        """
        if booking.paymentStatus != PaymentStatus.FULLY_PAID:
            return
        if not booking.paymentLinkId or not booking.paymentLinkActive:
            return
        if not self.gateway.deactivate(booking.paymentLinkId):
            raise PaymentGatewayError(
                "Payment link is still active at Stripe", {"paymentLinkId": booking.paymentLinkId}
            )

        def change(current: Booking) -> sm.Transition:
            after = current.model_copy(deep=True)
            entries = []
            if after.paymentLinkActive:
                entries.append(sm.mark_link_deactivated(after, "stripe_webhook"))
            return sm.Transition(booking=after, log_entries=entries)

        self._update(booking.id, change)

    def async_payment_initiated(self, session: dict[str, Any]) -> dict:
        booking = self._booking_from_metadata(session)
        attempt = PaymentAttempt(
            status="pending",
            sessionId=session.get("id"),
            paymentIntentId=session.get("payment_intent"),
        )
        methods = session.get("payment_method_types") or []
        self._update(
            booking.id,
            lambda current: sm.record_payment_attempt(
                current,
                "async_payment_initiated",
                attempt,
                {"paymentStatus": session.get("payment_status"), "paymentMethod": methods[0] if methods else None},
            ),
        )
        return {"bookingId": booking.id, "paymentStatus": session.get("payment_status")}

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------

    async def session_failed(self, session: dict[str, Any], event: str, reason: str) -> dict:
        booking = self._booking_from_metadata(session)
        session_id = session.get("id")
        status = "expired" if event == "payment_session_expired" else "failed"
        attempt = PaymentAttempt(
            status=status,
            sessionId=session_id,
            paymentIntentId=session.get("payment_intent"),
            failureReason=reason,
        )
        email = await self._send_failure_email(booking, session_id, reason)
        self._record_failure(booking.id, event, attempt, email)
        return {"bookingId": booking.id, "status": status, "emailSent": bool(email and email.sent)}

    async def intent_failed(self, intent: dict[str, Any]) -> dict:
        intent_id = intent.get("id")
        booking = self._booking_for_intent(intent, intent_id)
        error = intent.get("last_payment_error") or {}
        reason = error.get("message") or "Payment was declined"
        attempt = PaymentAttempt(
            status="failed",
            paymentIntentId=intent_id,
            failureReason=reason,
        )
        email = await self._send_failure_email(booking, intent_id, reason)
        self._record_failure(booking.id, "payment_intent_failed", attempt, email)
        return {"bookingId": booking.id, "status": "failed", "emailSent": bool(email and email.sent)}

    def _record_failure(self, booking_id: str, event: str, attempt: PaymentAttempt, email) -> None:
        def change(current: Booking) -> sm.Transition:
            transition = sm.record_payment_attempt(current, event, attempt)
            if email is not None:
                transition.booking.record_notification("payment_failed", email.sent, email.error)
            return transition

        self._update(booking_id, change)

    # ------------------------------------------------------------------
    # Refunds & disputes
    # ------------------------------------------------------------------

    def _record_once(self, booking: Booking, marker: str, change: Callable[[Booking], sm.Transition]) -> bool:
        """Apply a change keyed on a marker; False when it was already applied"""
        if self.repo.has_marker(self.db, booking.id, marker):
            logger.info(f"🔁 {marker} already recorded for {booking.requestId}")
            return False
        try:
            self._update(booking.id, change, markers=(marker,))
        except DuplicateMarkerError:
            logger.info(f"🔁 {marker} already recorded for {booking.requestId}")
            return False
        return True

    def charge_refunded(self, charge: dict[str, Any]) -> dict:
        intent_id = charge.get("payment_intent")
        booking = self._booking_for_intent(charge, intent_id)
        refunds = (charge.get("refunds") or {}).get("data") or []
        latest = refunds[0] if refunds else {}
        refund = {
            "chargeId": charge.get("id"),
            "refundId": latest.get("id"),
            "paymentIntentId": intent_id,
            "amount": _cents(charge.get("amount_refunded")),
            "reason": latest.get("reason") or "requested_by_customer",
            "timestamp": utcnow().isoformat(),
        }
        # Each partial refund re-sends the charge with a larger amount_refunded
        key = refund["refundId"] or f"{charge.get('id')}:{charge.get('amount_refunded')}"
        if not self._record_once(booking, f"refund:{key}", lambda current: sm.record_refund(current, refund)):
            return {"bookingId": booking.id, "alreadyProcessed": True}

        logger.warning(f"↩️ Charge {charge.get('id')} refunded {refund['amount']} on {booking.requestId}")
        return {"bookingId": booking.id, "refund": refund}

    def dispute_created(self, dispute: dict[str, Any]) -> dict:
        intent_id = dispute.get("payment_intent")
        booking = self._booking_for_intent(dispute, intent_id)
        record = {
            "disputeId": dispute.get("id"),
            "paymentIntentId": intent_id,
            "amount": _cents(dispute.get("amount")),
            "reason": dispute.get("reason"),
            "status": dispute.get("status"),
            "timestamp": utcnow().isoformat(),
        }
        if not self._record_once(
            booking, f"dispute:{dispute.get('id')}", lambda current: sm.record_dispute(current, record)
        ):
            return {"bookingId": booking.id, "alreadyProcessed": True}

        logger.warning(f"⚠️ Dispute {dispute.get('id')} opened on {booking.requestId}")
        return {"bookingId": booking.id, "dispute": record}
