"""Booking service - Business logic for the booking lifecycle endpoints"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from ...config import REQUEST_ID_PREFIX
from ...email_service import EmailResult
from ...security_utils import FeedbackLinkCodec, LinkPurpose
from . import state_machine as sm
from .aggregate import Booking, BookingStatus, LogEntry, PaymentRecord, utcnow
from .exceptions import (
    BookingNotFoundError,
    BookingValidationError,
    InvalidBookingStateError,
    InvalidLinkError,
    NotificationError,
)
from .notifications import BookingNotifier
from .payment_links import PaymentLinkIssuer, StripePaymentLinkGateway
from .repository import BookingRepository
from .schemas import (
    BookingSubmitData,
    CancelBookingRequest,
    ClientFeedbackRequest,
    ConfirmAvailabilityRequest,
    ConfirmBookingRequest,
    ConfirmPaymentRequest,
    CreatePaymentLinkRequest,
    FeedbackAction,
    ScheduleRequest,
)

logger = logging.getLogger(__name__)


def _record(booking: Booking, purpose: str, result: EmailResult) -> None:
    booking.record_notification(purpose, result.sent, result.error)


def _parse_payment_date(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise BookingValidationError("paymentDate must be an ISO date", {"paymentDate": value}) from e


def feedback_view(booking: Booking) -> dict[str, Any]:
    """Customer-safe projection used by the availability feedback page"""
    return {
        "id": booking.id,
        "requestId": booking.requestId,
        "status": booking.status.value,
        "currentStep": booking.currentStep,
        "customer": {"name": booking.customer.name, "email": booking.customer.email},
        "tours": [
            {
                "id": t.id,
                "tourId": t.tourId,
                "title": t.title,
                "slug": (t.model_extra or {}).get("slug"),
                "image": (t.model_extra or {}).get("image"),
                "date": t.date,
                "guests": t.guests,
                "calculatedPrice": t.calculatedPrice,
                "availabilityStatus": t.availabilityStatus.value,
                "availabilityNotes": t.availabilityNotes or "",
                "limitedPlaces": t.limitedPlaces,
                "alternativeDate": t.alternativeDate,
            }
            for t in booking.tours
        ],
        "total": booking.total,
        "submittedAt": booking.submittedAt,
    }


def payment_view(booking: Booking) -> dict[str, Any]:
    return {
        "id": booking.id,
        "requestId": booking.requestId,
        "status": booking.status.value,
        "currentStep": booking.currentStep,
        "customer": {"name": booking.customer.name},
        "total": booking.total,
        "paidAmount": booking.paidAmount,
        "amountDue": booking.amount_due,
        "paymentStatus": booking.paymentStatus.value,
        "currency": booking.currency,
        "tours": [
            {
                "id": t.id,
                "title": t.title,
                "date": t.confirmedDate or t.date,
                "guests": t.guests,
                "calculatedPrice": t.calculatedPrice,
                "status": t.status.value,
            }
            for t in booking.tours
            if not t.removedFromBooking
        ],
    }


class BookingService:
    """Service layer for booking lifecycle operations"""

    def __init__(
        self,
        db: Session,
        notifier: BookingNotifier,
        issuer: PaymentLinkIssuer,
        codec: FeedbackLinkCodec,
        gateway: StripePaymentLinkGateway,
    ):
        self.db = db
        self.repo = BookingRepository()
        self.notifier = notifier
        self.issuer = issuer
        self.codec = codec
        self.gateway = gateway

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.repo.get(self.db, booking_id)
        if not booking:
            raise BookingNotFoundError()
        return booking

    def resolve_token(self, token: Optional[str], purpose: LinkPurpose) -> Booking:
        """Find the booking a signed customer link points at"""
        request_id = self.codec.verify(token, purpose)
        if not request_id:
            raise InvalidLinkError()

        candidates = self.repo.find_by_request_id(self.db, request_id)
        if not candidates:
            raise BookingNotFoundError("Booking not found or no longer available")

        if len(candidates) > 1:
            logger.warning(f"⚠️ {len(candidates)} bookings share requestId {request_id}")
            if purpose == LinkPurpose.FEEDBACK:
                for booking in candidates:
                    if booking.status == BookingStatus.PENDING_FEEDBACK:
                        return booking
        return candidates[0]

    def _save(self, before: Booking, after: Booking, entries: list[LogEntry], **kwargs) -> Booking:
        return self.repo.save(self.db, after, before.version, entries, **kwargs)

    def _deactivate_link(self, booking: Booking, processed_by: str) -> Optional[LogEntry]:
        if not booking.paymentLinkId or not booking.paymentLinkActive:
            return None
        if not self.gateway.deactivate(booking.paymentLinkId):
            logger.warning(f"⚠️ Payment link {booking.paymentLinkId} is still active at Stripe")
            return None
        return sm.mark_link_deactivated(booking, processed_by)

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit(self, data: BookingSubmitData, requester: dict[str, Any]) -> dict:
        request_id = sm.generate_request_id(REQUEST_ID_PREFIX)
        transition = sm.create_booking(data, request_id, requester)
        booking = transition.booking
        logger.info(f"📥 New booking request {request_id} for {booking.customer.email}")

        customer_email = await self.notifier.check_availability(booking)
        if not customer_email.sent:
            raise NotificationError(
                "Failed to send booking confirmation email", {"emailError": customer_email.error}
            )
        _record(booking, "check_availability", customer_email)

        staff_email = await self.notifier.new_booking_staff(booking)
        _record(booking, "new_booking_staff", staff_email)

        self.repo.create(self.db, booking, transition.log_entries)
        return {
            "success": True,
            "message": "Booking request submitted successfully",
            "bookingId": booking.id,
            "requestId": booking.requestId,
        }

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def confirm_availability(self, data: ConfirmAvailabilityRequest, processed_by: str) -> dict:
        booking = self.get_booking(data.bookingId)
        transition = sm.confirm_availability(booking, data.availabilityResults, data.adminNotes, processed_by)
        after = transition.booking
        entries = list(transition.log_entries)
        outcome = transition.details["outcome"]
        response: dict[str, Any] = {}
        issue = None

        if outcome == "all_available":
            issue = self.issuer.create_or_reuse(after, processed_by=processed_by)
            entries.append(sm.apply_payment_link(after, issue))
            email = await self.notifier.all_available(after, issue.url)
            response.update(issue.to_dict())
        elif outcome == "partial":
            link = self.codec.feedback_link(after.requestId)
            entries.append(sm.apply_feedback_link(after, link, processed_by))
            email = await self.notifier.partial_availability(after, link)
            response["feedbackLink"] = link
        else:
            email = await self.notifier.no_availability(after)

        _record(after, "availability", email)
        self._save(booking, after, entries)
        if issue is not None:
            self.issuer.retire_replaced(issue)

        logger.info(f"✅ Availability confirmed for {after.requestId}: {outcome}")
        return {
            "success": True,
            "message": "Availability confirmed",
            "bookingId": after.id,
            "requestId": after.requestId,
            "status": after.status.value,
            "currentStep": after.currentStep,
            "total": after.total,
            **transition.details,
            **response,
            "emailSent": email.sent,
            "emailError": email.error,
        }

    # ------------------------------------------------------------------
    # Client feedback (token authenticated)
    # ------------------------------------------------------------------

    def verify_feedback_request(self, token: Optional[str]) -> dict:
        booking = self.resolve_token(token, LinkPurpose.FEEDBACK)
        if booking.status != BookingStatus.PENDING_FEEDBACK:
            raise InvalidBookingStateError(
                "This booking is not awaiting feedback",
                current_status=booking.status.value,
                expected_status=[BookingStatus.PENDING_FEEDBACK.value],
            )
        return {"success": True, "booking": feedback_view(booking)}

    def acknowledge_feedback_request(self, token: Optional[str]) -> dict:
        request_id = self.codec.verify(token, LinkPurpose.FEEDBACK)
        if not request_id:
            raise InvalidLinkError()
        return {"success": True, "message": "Feedback received successfully", "requestId": request_id}

    async def client_feedback(self, data: ClientFeedbackRequest) -> dict:
        booking = self.resolve_token(data.token, LinkPurpose.FEEDBACK)
        transition = sm.record_client_feedback(booking, data.feedback)
        after = transition.booking
        summary = transition.details["summary"]

        email = await self.notifier.feedback_received(after, transition.details["decisions"], summary)
        _record(after, "feedback_received", email)
        self._save(booking, after, transition.log_entries)

        logger.info(f"📝 Feedback received for {after.requestId}: {summary}")
        return {
            "success": True,
            "message": "Feedback received successfully",
            "bookingId": after.id,
            "requestId": after.requestId,
            "feedbackSummary": {**summary, "notificationSent": email.sent},
        }

    def verify_payment_success(self, token: Optional[str]) -> dict:
        booking = self.resolve_token(token, LinkPurpose.PAYMENT_SUCCESS)
        return {"success": True, "booking": payment_view(booking)}

    # ------------------------------------------------------------------
    # Staff decisions
    # ------------------------------------------------------------------

    async def confirm_booking(self, data: ConfirmBookingRequest, processed_by: str) -> dict:
        booking = self.get_booking(data.bookingId)
        response: dict[str, Any] = {}
        issue = None

        if data.action == FeedbackAction.CONFIRM:
            transition = sm.confirm_after_feedback(
                booking, data.modifiedTours, data.adminNotes, processed_by, client_total=data.totalPrice
            )
            after = transition.booking
            entries = list(transition.log_entries)
            issue = self.issuer.create_or_reuse(after, processed_by=processed_by)
            entries.append(sm.apply_payment_link(after, issue))
            email = await self.notifier.booking_confirmed(after, issue.url)
            _record(after, "booking_confirmed", email)
            response.update(issue.to_dict())
            message = "Booking confirmed and payment link sent"
        else:
            transition = sm.cancel_after_feedback(
                booking, data.cancellationNotes, data.adminNotes, processed_by
            )
            after = transition.booking
            entries = list(transition.log_entries)
            deactivated = self._deactivate_link(after, processed_by)
            if deactivated:
                entries.append(deactivated)
            email = await self.notifier.booking_cancelled(after, data.cancellationNotes)
            _record(after, "booking_cancelled", email)
            message = "Booking cancelled"

        self._save(booking, after, entries)
        if issue is not None:
            self.issuer.retire_replaced(issue)
        return {
            "success": True,
            "message": message,
            "bookingId": after.id,
            "requestId": after.requestId,
            "status": after.status.value,
            "currentStep": after.currentStep,
            "total": after.total,
            **response,
            "emailSent": email.sent,
        }

    async def cancel(self, data: CancelBookingRequest, processed_by: str) -> dict:
        booking = self.get_booking(data.bookingId)
        transition = sm.cancel_booking(booking, data.cancellationNotes, processed_by)
        after = transition.booking
        entries = list(transition.log_entries)

        deactivated = self._deactivate_link(after, processed_by)
        if deactivated:
            entries.append(deactivated)

        email = await self.notifier.booking_cancelled(after, data.cancellationNotes)
        _record(after, "booking_cancelled", email)
        self._save(booking, after, entries)

        logger.info(f"🛑 Booking {after.requestId} cancelled by {processed_by}")
        return {
            "success": True,
            "message": "Booking cancelled",
            "bookingId": after.id,
            "requestId": after.requestId,
            "status": after.status.value,
            "currentStep": after.currentStep,
            "paidAmount": after.paidAmount,
            "emailSent": email.sent,
        }

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def confirm_payment(self, data: ConfirmPaymentRequest, processed_by: str) -> dict:
        booking = self.get_booking(data.bookingId)
        details = data.paymentDetails
        payment = PaymentRecord(
            amount=details.receivedAmount,
            currency=details.currency or "USD",
            paymentMethod=details.paymentMethod,
            transactionId=details.transactionId,
            receiptNumber=details.receiptNumber,
            paymentDate=_parse_payment_date(details.paymentDate),
            processedBy=processed_by,
            notes=details.notes or "",
        )

        transition = sm.apply_payment(booking, payment, source="manual", mark_fully_paid=data.markAsFullyPaid)
        after = transition.booking
        entries = list(transition.log_entries)
        summary = transition.details

        if summary["isFullyPaid"]:
            deactivated = self._deactivate_link(after, processed_by)
            if deactivated:
                entries.append(deactivated)

        email_sent = False
        if data.sendConfirmationEmail:
            email = await self.notifier.payment_confirmation(
                after, payment.amount, payment.paymentDate.strftime("%Y-%m-%d")
            )
            _record(after, "payment_confirmation", email)
            email_sent = email.sent

        self._save(booking, after, entries, payments=[payment])

        logger.info(f"💰 Manual payment of {payment.amount} recorded for {after.requestId}")
        return {
            "success": True,
            "message": (
                "Payment confirmed successfully - Booking is now fully paid"
                if summary["isFullyPaid"]
                else "Partial payment recorded successfully"
            ),
            "bookingId": after.id,
            "requestId": after.requestId,
            "paymentDetails": summary,
            "emailSent": email_sent,
        }

    def create_payment_link(self, data: CreatePaymentLinkRequest, processed_by: str) -> dict:
        booking = self.get_booking(data.bookingId)
        if data.amount is not None and abs(data.amount - booking.total) > 0.01:
            logger.warning(
                f"⚠️ Ignoring requested amount {data.amount} for {booking.requestId}, total is {booking.total}"
            )

        issue = self.issuer.create_or_reuse(booking, processed_by=processed_by)
        after = booking.model_copy(deep=True)
        entry = sm.apply_payment_link(after, issue)
        self._save(booking, after, [entry])
        self.issuer.retire_replaced(issue)

        return {
            "success": True,
            "message": "Existing payment link retrieved" if issue.reused else "Payment link created successfully",
            **issue.to_dict(),
            "bookingId": after.id,
            "requestId": after.requestId,
            "log": entry.model_dump(mode="json"),
        }

    # ------------------------------------------------------------------
    # Scheduling & completion
    # ------------------------------------------------------------------

    async def schedule(self, data: ScheduleRequest, processed_by: str) -> dict:
        booking = self.get_booking(data.bookingId)
        transition = sm.schedule_tours(booking, data.tourSchedules, processed_by)
        after = transition.booking

        email = await self.notifier.tour_scheduled(after, transition.details["scheduledTours"])
        _record(after, "tour_scheduled", email)
        self._save(booking, after, transition.log_entries)

        return {
            "success": True,
            "message": (
                "Tours scheduled successfully"
                if transition.details["allConfirmedScheduled"]
                else "Tours partially scheduled"
            ),
            "bookingId": after.id,
            "requestId": after.requestId,
            "status": after.status.value,
            "currentStep": after.currentStep,
            "schedulingSummary": after.schedulingSummary.model_dump(),
            "warnings": transition.details["warnings"],
            "emailSent": email.sent,
        }

    async def complete(self, booking_id: Optional[str], processed_by: str) -> dict:
        if not booking_id:
            raise BookingValidationError("bookingId is required")
        booking = self.get_booking(booking_id)
        transition = sm.complete_booking(booking, processed_by)
        after = transition.booking

        email = await self.notifier.booking_completed(after)
        _record(after, "booking_completed", email)
        self._save(booking, after, transition.log_entries)

        return {
            "success": True,
            "message": "Booking marked as completed",
            "bookingId": after.id,
            "requestId": after.requestId,
            "status": after.status.value,
            "currentStep": after.currentStep,
            "emailSent": email.sent,
        }
