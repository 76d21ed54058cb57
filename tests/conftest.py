"""Shared test fixtures: in-memory store, fake Stripe, mailer and identity provider."""

import json
from datetime import timedelta
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tour_booking import models  # noqa: F401
from tour_booking import rate_limiter
from tour_booking.auth import IdentityError, StaffPrincipal
from tour_booking.database import Base, get_db
from tour_booking.domain.bookings import state_machine as sm
from tour_booking.domain.bookings.aggregate import PaymentRecord
from tour_booking.domain.bookings.exceptions import PaymentGatewayError
from tour_booking.domain.bookings.payment_links import PaymentLinkInfo, to_cents
from tour_booking.domain.bookings.schemas import AvailabilityResult, BookingSubmitData
from tour_booking.email_service import EmailResult
from tour_booking.main import create_app
from tour_booking.security_utils import FeedbackLinkCodec
from tour_booking.webhook_security import create_stripe_signature

WEBHOOK_SECRET = "whsec_test_secret"
STAFF_TOKEN = "staff-id-token"
STAFF_EMAIL = "ops@eytravelegypt.com"
LINK_SECRET = "test-link-secret"


class FakeEmailService:
    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.fail = False

    async def send(self, to, subject, mjml_content, cc=None, sender_name=None) -> EmailResult:
        self.sent.append(
            {"to": to, "subject": subject, "mjml": mjml_content, "cc": cc, "sender_name": sender_name}
        )
        if self.fail:
            return EmailResult(sent=False, error="Failed to send email: provider down")
        return EmailResult(sent=True, message_id=f"msg_{len(self.sent)}")

    def subjects_containing(self, text: str) -> list[str]:
        return [m["subject"] for m in self.sent if text in m["subject"]]


class FakePaymentGateway:
    def __init__(self):
        self.links: dict[str, PaymentLinkInfo] = {}
        self.created: list[dict[str, Any]] = []
        self.deactivated: list[str] = []
        self.fail_create = False
        self.deactivate_ok = True

    def create_link(self, booking, amount, redirect_url, expires_at) -> PaymentLinkInfo:
        if self.fail_create:
            raise PaymentGatewayError("Failed to create payment link", {"provider_error": "api down"})
        link_id = f"plink_{len(self.links) + 1}"
        info = PaymentLinkInfo(
            id=link_id,
            url=f"https://buy.stripe.com/test_{link_id}",
            active=True,
            expired=False,
            amount_cents=to_cents(amount),
            expires_at=expires_at,
        )
        self.links[link_id] = info
        self.created.append({"bookingId": booking.id, "amount": amount, "redirectUrl": redirect_url})
        return info

    def retrieve(self, link_id: str) -> Optional[PaymentLinkInfo]:
        return self.links.get(link_id)

    def deactivate(self, link_id: str) -> bool:
        if not self.deactivate_ok:
            return False
        self.deactivated.append(link_id)
        if link_id in self.links:
            self.links[link_id].active = False
        return True


class FakeIdentityProvider:
    def verify(self, token: str) -> StaffPrincipal:
        if token != STAFF_TOKEN:
            raise IdentityError("Invalid or expired token")
        return StaffPrincipal(uid="staff-1", email=STAFF_EMAIL, name="Operations")


class FakeRedis:
    def __init__(self):
        self.store: dict[str, Any] = {}

    def ping(self):
        return True

    def get(self, key):
        return self.store.get(key)

    def ttl(self, key):
        return -2

    def set(self, key, value, ex=None):
        self.store[key] = value


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    client = FakeRedis()
    monkeypatch.setattr(rate_limiter, "redis_client", client)
    rate_limiter.reset_memory_cache()
    yield client
    rate_limiter.reset_memory_cache()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def email_service():
    return FakeEmailService()


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def codec():
    return FeedbackLinkCodec(secret=LINK_SECRET, base_url="https://eytravelegypt.test", ttl=timedelta(days=2))


@pytest.fixture
def app(session_factory, email_service, gateway, codec):
    application = create_app(
        email_service=email_service,
        payment_gateway=gateway,
        identity_provider=FakeIdentityProvider(),
        link_codec=codec,
        stripe_webhook_secret=WEBHOOK_SECRET,
    )

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    application.dependency_overrides[get_db] = override_get_db
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


def staff_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {STAFF_TOKEN}"}


def post_webhook(client: TestClient, event: dict[str, Any], secret: str = WEBHOOK_SECRET):
    payload = json.dumps(event).encode("utf-8")
    return client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": create_stripe_signature(secret, payload), "Content-Type": "application/json"},
    )


def cart_payload(email: str = "amira@example.com") -> dict[str, Any]:
    """Two tours: 2 guests at 50 per person (100) and a flat 150 for a group of 3"""
    return {
        "bookingData": {
            "customer": {"name": "Amira Hassan", "email": email, "phone": "+20 100 000 0000"},
            "tours": [
                {
                    "id": "t1",
                    "tourId": "pyramids-giza",
                    "title": "Pyramids of Giza",
                    "date": "2026-11-10",
                    "guests": 2,
                    "groupPrices": [{"groupSize": "1-3", "price": 50}],
                },
                {
                    "id": "t2",
                    "tourId": "nile-felucca",
                    "title": "Nile Felucca Sunset",
                    "date": "2026-11-11",
                    "guests": 3,
                    "groupPrices": [{"groupSize": 3, "price": 150, "perPerson": False}],
                },
            ],
            "total": 250,
            "submittedAt": "2026-10-19T09:00:00Z",
        }
    }


def checkout_completed_event(
    booking_id: str,
    amount_cents: int,
    session_id: str = "cs_test_1",
    intent_id: str = "pi_test_1",
    payment_status: str = "paid",
    event_type: str = "checkout.session.completed",
) -> dict[str, Any]:
    return {
        "id": f"evt_{session_id}_{event_type}",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "amount_total": amount_cents,
                "currency": "usd",
                "payment_status": payment_status,
                "payment_intent": intent_id,
                "payment_method_types": ["card"],
                "customer": "cus_test",
                "customer_details": {"name": "Amira Hassan", "email": "amira@example.com"},
                "metadata": {"bookingId": booking_id},
            }
        },
    }


# ============================================================================
# Aggregate builders
# ============================================================================

STAFF = STAFF_EMAIL


def make_booking(tours=None):
    data = BookingSubmitData.model_validate(
        {
            "customer": {"name": "Amira Hassan", "email": "amira@example.com"},
            "tours": tours or cart_payload()["bookingData"]["tours"],
            "total": 250,
        }
    )
    return sm.create_booking(data, "EYT-1-000001", {"ip": "127.0.0.1"}).booking


def verdicts(**statuses):
    return [AvailabilityResult(id=tour_id, status=status) for tour_id, status in statuses.items()]


def payment(amount: float):
    return PaymentRecord(amount=amount, paymentMethod="cash", processedBy=STAFF)


def confirmed_booking():
    return sm.confirm_availability(
        make_booking(), verdicts(t1="available", t2="available"), None, STAFF
    ).booking
