"""
Booking notifications

Renders the lifecycle templates and hands them to the email service.
Every method returns an EmailResult - callers decide whether a failed
send is fatal (submission) or only recorded on the booking.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from ... import email_templates
from ...config import BUSINESS_NAME, STAFF_NOTIFICATION_EMAIL
from ...email_service import EmailResult, EmailService
from .aggregate import Booking, PaymentRecord, TourLineItem

logger = logging.getLogger(__name__)


class BookingNotifier:
    def __init__(
        self,
        email_service: EmailService,
        staff_email: str = STAFF_NOTIFICATION_EMAIL,
        business_name: str = BUSINESS_NAME,
    ):
        self.email_service = email_service
        self.staff_email = staff_email
        self.business_name = business_name

    async def _deliver(self, purpose: str, to: str, subject: str, mjml_content: str) -> EmailResult:
        try:
            result = await self.email_service.send(
                to=to,
                subject=subject,
                mjml_content=mjml_content,
                sender_name=self.business_name,
            )
        except Exception as e:
            logger.error(f"❌ Failed to send {purpose} email to {to}: {e}")
            return EmailResult(sent=False, error=str(e))

        if result.sent:
            logger.info(f"📧 {purpose} email sent to {to}")
        else:
            logger.warning(f"⚠️ {purpose} email to {to} not sent: {result.error}")
        return result

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def check_availability(self, booking: Booking) -> EmailResult:
        mjml = email_templates.check_availability_template(
            booking.customer.name, booking.requestId, booking.tours, booking.total
        )
        return await self._deliver(
            "check_availability",
            booking.customer.email,
            f"We're checking availability - Booking {booking.requestId}",
            mjml,
        )

    async def new_booking_staff(self, booking: Booking) -> EmailResult:
        mjml = email_templates.new_booking_notification_template(
            booking.customer, booking.requestId, booking.tours, booking.total, booking.requester
        )
        return await self._deliver(
            "new_booking_staff",
            self.staff_email,
            f"New Booking Request {booking.requestId} - {booking.customer.name}",
            mjml,
        )

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def all_available(self, booking: Booking, payment_link: str) -> EmailResult:
        mjml = email_templates.all_tours_available_template(
            booking.customer.name, booking.requestId, booking.tours, booking.amount_due, payment_link
        )
        return await self._deliver(
            "all_available",
            booking.customer.email,
            f"Great news! Your tours are available - Booking {booking.requestId}",
            mjml,
        )

    async def partial_availability(self, booking: Booking, feedback_link: str) -> EmailResult:
        mjml = email_templates.partial_availability_template(
            booking.customer.name, booking.requestId, booking.tours, feedback_link
        )
        return await self._deliver(
            "partial_availability",
            booking.customer.email,
            f"Action needed: availability update - Booking {booking.requestId}",
            mjml,
        )

    async def no_availability(self, booking: Booking) -> EmailResult:
        mjml = email_templates.no_availability_template(
            booking.customer.name, booking.requestId, booking.tours
        )
        return await self._deliver(
            "no_availability",
            booking.customer.email,
            f"Tours unavailable - Booking {booking.requestId}",
            mjml,
        )

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    async def feedback_received(self, booking: Booking, decisions: list[dict], summary: dict) -> EmailResult:
        mjml = email_templates.feedback_received_template(
            booking.customer.name, booking.requestId, decisions, summary
        )
        return await self._deliver(
            "feedback_received",
            self.staff_email,
            f"Client feedback received - Booking {booking.requestId}",
            mjml,
        )

    async def booking_confirmed(self, booking: Booking, payment_link: str) -> EmailResult:
        mjml = email_templates.booking_confirmed_modified_template(
            booking.customer.name,
            booking.requestId,
            booking.confirmed_tours(),
            booking.amount_due,
            payment_link,
        )
        return await self._deliver(
            "booking_confirmed",
            booking.customer.email,
            f"Booking confirmed - {booking.requestId}",
            mjml,
        )

    async def booking_cancelled(self, booking: Booking, notes: str) -> EmailResult:
        mjml = email_templates.booking_cancelled_template(
            booking.customer.name, booking.requestId, notes
        )
        return await self._deliver(
            "booking_cancelled",
            booking.customer.email,
            f"Booking cancelled - {booking.requestId}",
            mjml,
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def payment_confirmation(
        self, booking: Booking, amount: float, payment_date: Optional[str] = None
    ) -> EmailResult:
        mjml = email_templates.payment_confirmation_template(
            booking.customer.name,
            booking.requestId,
            amount,
            booking.paidAmount,
            booking.amount_due,
            payment_date or datetime.now(timezone.utc).strftime("%Y-%m-%d"),
        )
        return await self._deliver(
            "payment_confirmation",
            booking.customer.email,
            f"Payment Received - Booking {booking.requestId}",
            mjml,
        )

    async def payment_failed(self, booking: Booking, reason: str) -> EmailResult:
        link = booking.paymentLink if booking.paymentLinkActive else None
        mjml = email_templates.payment_failed_template(
            booking.customer.name, booking.requestId, reason, link
        )
        return await self._deliver(
            "payment_failed",
            booking.customer.email,
            f"Payment Failed - Action Required for Booking {booking.requestId}",
            mjml,
        )

    async def unapplied_payment_staff(self, booking: Booking, payment: PaymentRecord, reason: str) -> EmailResult:
        mjml = email_templates.unapplied_payment_template(
            booking.requestId,
            booking.status.value,
            payment.amount,
            payment.currency,
            payment.transactionId,
            reason,
        )
        return await self._deliver(
            "unapplied_payment_staff",
            self.staff_email,
            f"Payment needs review - Booking {booking.requestId}",
            mjml,
        )

    # ------------------------------------------------------------------
    # Scheduling & completion
    # ------------------------------------------------------------------

    async def tour_scheduled(self, booking: Booking, scheduled_tours: list[TourLineItem]) -> EmailResult:
        mjml = email_templates.tour_scheduled_template(
            booking.customer.name, booking.requestId, scheduled_tours
        )
        return await self._deliver(
            "tour_scheduled",
            booking.customer.email,
            f"Your tour schedule - Booking {booking.requestId}",
            mjml,
        )

    async def booking_completed(self, booking: Booking) -> EmailResult:
        mjml = email_templates.booking_completed_template(booking.customer.name, booking.requestId)
        return await self._deliver(
            "booking_completed",
            booking.customer.email,
            f"Thank you for travelling with {self.business_name}",
            mjml,
        )
