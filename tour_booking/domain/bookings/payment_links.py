"""
Stripe Payment Links

The gateway is a thin adapter over ``stripe.PaymentLink``. The issuer decides
whether a booking's stored link can be handed out again or must be replaced,
and never writes to the store - callers persist the returned link fields and
log entry together with their own transition. A replaced link stays live at
Stripe until the caller has saved its successor and calls retire_replaced().
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import stripe

from ...config import BUSINESS_NAME, PAYMENT_CURRENCY, PAYMENT_LINK_TTL_HOURS, STRIPE_SECRET_KEY
from ...security_utils import FeedbackLinkCodec
from .aggregate import Booking, BookingStatus, LogEntry, utcnow
from .exceptions import AlreadyPaidError, PaymentGatewayError, PaymentLinkError
from .state_machine import require_status

logger = logging.getLogger(__name__)


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


def _parse_expiry(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class PaymentLinkInfo:
    id: str
    url: str
    active: bool
    expired: bool
    amount_cents: Optional[int]
    expires_at: Optional[datetime]


def stripe_field(obj: Any, name: str):
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def link_info_from_stripe(link: Any, now: Optional[datetime] = None) -> PaymentLinkInfo:
    """Build PaymentLinkInfo from a Stripe PaymentLink object (or its dict form)"""
    now = now or utcnow()
    metadata = stripe_field(link, "metadata")
    expires_at = _parse_expiry(stripe_field(metadata, "expiresAt"))
    amount_cents = stripe_field(metadata, "amountCents")
    return PaymentLinkInfo(
        id=stripe_field(link, "id"),
        url=stripe_field(link, "url"),
        active=bool(stripe_field(link, "active")),
        expired=expires_at is not None and expires_at <= now,
        amount_cents=int(amount_cents) if amount_cents not in (None, "") else None,
        expires_at=expires_at,
    )


class StripePaymentLinkGateway:
    """Create, retrieve and deactivate Stripe Payment Links"""

    def __init__(self, api_key: Optional[str] = STRIPE_SECRET_KEY, currency: str = PAYMENT_CURRENCY):
        self.api_key = api_key
        self.currency = currency

    def _configure(self) -> None:
        if not self.api_key:
            raise PaymentGatewayError("Payment provider not configured")
        stripe.api_key = self.api_key

    def create_link(
        self, booking: Booking, amount: float, redirect_url: str, expires_at: datetime
    ) -> PaymentLinkInfo:
        self._configure()

        confirmed = booking.confirmed_tours()
        amount_cents = to_cents(amount)
        metadata = {
            "bookingId": booking.id,
            "requestId": booking.requestId,
            "customerEmail": booking.customer.email,
            "customerName": booking.customer.name,
            "tourCount": str(len(confirmed)),
            "confirmedToursNames": ", ".join(t.title for t in confirmed)[:500],
            "expiresAt": expires_at.isoformat(),
            "amountCents": str(amount_cents),
        }

        try:
            link = stripe.PaymentLink.create(
                line_items=[
                    {
                        "price_data": {
                            "currency": self.currency,
                            "product_data": {
                                "name": f"{BUSINESS_NAME} - Booking #{booking.requestId}",
                                "description": f"{len(confirmed)} tour(s) booking",
                            },
                            "unit_amount": amount_cents,
                        },
                        "quantity": 1,
                    }
                ],
                after_completion={"type": "redirect", "redirect": {"url": redirect_url}},
                customer_creation="if_required",
                billing_address_collection="required",
                phone_number_collection={"enabled": True},
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
            )
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe payment link creation failed for {booking.requestId}: {e}")
            raise PaymentGatewayError(
                "Failed to create payment link", {"provider_error": str(e)}
            ) from e

        logger.info(f"💳 Created payment link {stripe_field(link, 'id')} for {booking.requestId}: {amount:.2f}")
        return link_info_from_stripe(link)

    def retrieve(self, link_id: str) -> Optional[PaymentLinkInfo]:
        try:
            self._configure()
            return link_info_from_stripe(stripe.PaymentLink.retrieve(link_id))
        except (stripe.StripeError, PaymentGatewayError) as e:
            logger.warning(f"⚠️ Could not retrieve payment link {link_id}: {e}")
            return None

    def deactivate(self, link_id: str) -> bool:
        try:
            self._configure()
            stripe.PaymentLink.modify(link_id, active=False)
            logger.info(f"🔒 Payment link {link_id} deactivated")
            return True
        except stripe.StripeError as e:
            if getattr(e, "code", None) == "resource_missing":
                logger.info(f"Payment link {link_id} not found, treating as deactivated")
                return True
            logger.error(f"❌ Failed to deactivate payment link {link_id}: {e}")
            return False
        except PaymentGatewayError as e:
            logger.error(f"❌ Failed to deactivate payment link {link_id}: {e}")
            return False


@dataclass
class PaymentLinkIssue:
    url: str
    id: str
    expires_at: Optional[datetime]
    amount_due: float
    reused: bool
    log_entry: LogEntry
    replaced_link_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "paymentLink": self.url,
            "paymentLinkId": self.id,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "amountDue": self.amount_due,
            "reused": self.reused,
        }


class PaymentLinkIssuer:
    def __init__(
        self,
        gateway: StripePaymentLinkGateway,
        codec: FeedbackLinkCodec,
        ttl_hours: int = PAYMENT_LINK_TTL_HOURS,
    ):
        self.gateway = gateway
        self.codec = codec
        self.ttl = timedelta(hours=ttl_hours)

    def _reusable(self, booking: Booking, amount_due: float, now: datetime) -> Optional[PaymentLinkInfo]:
        if not booking.paymentLinkId:
            return None

        info = self.gateway.retrieve(booking.paymentLinkId)
        if info is not None and info.active and not info.expired and info.amount_cents == to_cents(amount_due):
            local_expiry = booking.paymentLinkExpiresAt
            if local_expiry is None or local_expiry > now:
                return info

        logger.info(f"♻️ Stored payment link {booking.paymentLinkId} is stale, replacing it")
        return None

    def create_or_reuse(
        self, booking: Booking, processed_by: str = "system", now: Optional[datetime] = None
    ) -> PaymentLinkIssue:
        """
        Hand out a checkout link for the booking's current amount due.

        Raises:
            AlreadyPaidError: nothing left to pay
            InvalidBookingStateError: booking is not awaiting payment
            PaymentLinkError: no confirmed tours or non-positive amount due
            PaymentGatewayError: Stripe rejected the new link
        """
        now = now or utcnow()

        if booking.total > 0 and booking.is_fully_paid:
            raise AlreadyPaidError()
        require_status(booking, [BookingStatus.CONFIRMED], "issue a payment link for")

        amount_due = booking.amount_due

        existing = self._reusable(booking, amount_due, now)
        if existing is not None:
            logger.info(f"🔁 Reusing payment link {existing.id} for {booking.requestId}")
            return PaymentLinkIssue(
                url=existing.url,
                id=existing.id,
                expires_at=existing.expires_at or booking.paymentLinkExpiresAt,
                amount_due=amount_due,
                reused=True,
                log_entry=LogEntry(
                    event="payment_link_reused",
                    changes={"paymentLinkId": existing.id, "amountDue": amount_due},
                    processedBy=processed_by,
                ),
            )

        if not booking.confirmed_tours():
            raise PaymentLinkError("No confirmed tours to pay for")
        if amount_due <= 0:
            raise PaymentLinkError("Amount due must be greater than 0", {"amountDue": amount_due})

        expires_at = now + self.ttl
        redirect_url = self.codec.payment_success_link(booking.requestId)
        info = self.gateway.create_link(booking, amount_due, redirect_url, expires_at)

        return PaymentLinkIssue(
            url=info.url,
            id=info.id,
            expires_at=expires_at,
            amount_due=amount_due,
            reused=False,
            log_entry=LogEntry(
                event="payment_link_generated",
                changes={
                    "amountDue": amount_due,
                    "paymentLinkId": info.id,
                    "expiresAt": expires_at.isoformat(),
                    "replacedLinkId": booking.paymentLinkId,
                },
                processedBy=processed_by,
            ),
            replaced_link_id=booking.paymentLinkId,
        )

    def retire_replaced(self, issue: PaymentLinkIssue) -> bool:
        """Deactivate the link a saved issue replaced; True when nothing is left live"""
        if issue.reused or not issue.replaced_link_id or issue.replaced_link_id == issue.id:
            return True
        if not self.gateway.deactivate(issue.replaced_link_id):
            logger.warning(f"⚠️ Replaced payment link {issue.replaced_link_id} is still active at Stripe")
            return False
        return True
