"""Booking router - FastAPI endpoints for the booking lifecycle, payment links and Stripe webhooks"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ...auth import StaffPrincipal, get_current_staff
from ...database import get_db
from ...rate_limiter import TOUR_BOOKING, create_rate_limiter
from ...webhook_security import verify_stripe_webhook
from .exceptions import BookingError, ConcurrentModificationError
from .schemas import (
    CancelBookingRequest,
    ClientFeedbackRequest,
    CompleteBookingRequest,
    ConfirmAvailabilityRequest,
    ConfirmBookingRequest,
    ConfirmPaymentRequest,
    CreatePaymentLinkRequest,
    ScheduleRequest,
    SubmitBookingRequest,
    VerifyFeedbackAck,
)
from .service import BookingService
from .webhooks import StripeWebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/booking", tags=["Bookings"])
stripe_router = APIRouter(prefix="/stripe", tags=["Payments"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

booking_rate_limit = create_rate_limiter(TOUR_BOOKING)


def get_booking_service(request: Request, db: Session = Depends(get_db)) -> BookingService:
    """Dependency injection for BookingService"""
    state = request.app.state
    return BookingService(
        db,
        notifier=state.notifier,
        issuer=state.payment_link_issuer,
        codec=state.link_codec,
        gateway=state.payment_gateway,
    )


def _requester(request: Request) -> dict:
    """Where a booking submission came from (edge headers when present)"""
    headers = request.headers
    forwarded = headers.get("X-Forwarded-For")
    ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    return {
        "ip": ip,
        "city": headers.get("X-Vercel-IP-City"),
        "region": headers.get("X-Vercel-IP-Country-Region"),
        "country": headers.get("X-Vercel-IP-Country"),
        "userAgent": headers.get("User-Agent"),
    }


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================


@router.post("/submit", dependencies=[Depends(booking_rate_limit)])
async def submit_booking(
    data: SubmitBookingRequest,
    request: Request,
    service: BookingService = Depends(get_booking_service),
):
    """Submit a booking request from the cart and email the customer and staff"""
    return await service.submit(data.bookingData, _requester(request))


@router.post("/client-feedback")
async def client_feedback(
    data: ClientFeedbackRequest,
    service: BookingService = Depends(get_booking_service),
):
    """Customer decisions for partially available tours (token authenticated)"""
    return await service.client_feedback(data)


@router.get("/verify-feedback-request")
async def verify_feedback_request(
    token: Optional[str] = Query(None),
    service: BookingService = Depends(get_booking_service),
):
    return service.verify_feedback_request(token)


@router.post("/verify-feedback-request")
async def acknowledge_feedback_request(
    data: VerifyFeedbackAck,
    service: BookingService = Depends(get_booking_service),
):
    return service.acknowledge_feedback_request(data.token)


@router.get("/verify-payment-success")
async def verify_payment_success(
    token: Optional[str] = Query(None),
    service: BookingService = Depends(get_booking_service),
):
    """Booking payment view for the payment-success page"""
    return service.verify_payment_success(token)


# ============================================================================
# STAFF ENDPOINTS
# ============================================================================


@router.post("/confirm-availability")
async def confirm_availability(
    data: ConfirmAvailabilityRequest,
    staff: StaffPrincipal = Depends(get_current_staff),
    service: BookingService = Depends(get_booking_service),
):
    return await service.confirm_availability(data, staff.processed_by)


@router.post("/confirm-booking")
async def confirm_booking(
    data: ConfirmBookingRequest,
    staff: StaffPrincipal = Depends(get_current_staff),
    service: BookingService = Depends(get_booking_service),
):
    """Confirm (issuing a payment link) or cancel a booking after client feedback"""
    return await service.confirm_booking(data, staff.processed_by)


@router.post("/confirm-payment")
async def confirm_payment(
    data: ConfirmPaymentRequest,
    staff: StaffPrincipal = Depends(get_current_staff),
    service: BookingService = Depends(get_booking_service),
):
    """Record a payment received outside Stripe"""
    return await service.confirm_payment(data, staff.processed_by)


@router.post("/schedule")
async def schedule_tours(
    data: ScheduleRequest,
    staff: StaffPrincipal = Depends(get_current_staff),
    service: BookingService = Depends(get_booking_service),
):
    return await service.schedule(data, staff.processed_by)


@router.post("/complete")
async def complete_booking(
    data: CompleteBookingRequest,
    staff: StaffPrincipal = Depends(get_current_staff),
    service: BookingService = Depends(get_booking_service),
):
    return await service.complete(data.resolve_booking_id(), staff.processed_by)


@router.post("/cancel")
async def cancel_booking(
    data: CancelBookingRequest,
    staff: StaffPrincipal = Depends(get_current_staff),
    service: BookingService = Depends(get_booking_service),
):
    return await service.cancel(data, staff.processed_by)


@stripe_router.post("/create-payment-link")
async def create_payment_link(
    data: CreatePaymentLinkRequest,
    staff: StaffPrincipal = Depends(get_current_staff),
    service: BookingService = Depends(get_booking_service),
):
    """Issue a Stripe payment link for the booking's amount due, or hand back the live one"""
    return service.create_payment_link(data, staff.processed_by)


# ============================================================================
# STRIPE WEBHOOKS
# ============================================================================


@webhooks_router.post("/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Stripe event receiver.

    Logical problems (unknown booking, missing metadata) answer 200 so
    Stripe stops retrying; system failures answer 500 so it retries. Paid
    sessions a booking cannot take are stored unapplied, never dropped.
    """
    state = request.app.state
    payload = await verify_stripe_webhook(request, state.stripe_webhook_secret)

    try:
        event = json.loads(payload)
    except ValueError:
        logger.warning("🚫 Stripe webhook body is not valid JSON")
        return JSONResponse(status_code=400, content={"success": False, "error": "Invalid payload"})

    reconciler = StripeWebhookReconciler(db, state.notifier, state.payment_gateway)
    try:
        result = await reconciler.handle(event)
    except ConcurrentModificationError as e:
        logger.error(f"❌ Webhook {event.get('id')} lost a write race: {e.message}")
        return JSONResponse(status_code=500, content={"received": False, "success": False, "error": e.message})
    except BookingError as e:
        if e.status_code >= 500:
            logger.error(f"❌ Webhook {event.get('id')} failed: {e.message}")
            return JSONResponse(status_code=500, content={"received": False, "success": False, "error": e.message})
        logger.warning(f"⚠️ Webhook {event.get('id')} ignored: {e.message}")
        return {"received": True, "success": True, "error": e.message}
    except Exception:
        logger.exception(f"❌ Webhook {event.get('id')} processing error")
        return JSONResponse(
            status_code=500, content={"received": False, "success": False, "error": "Webhook processing failed"}
        )

    return {"received": True, "success": True, **result}
