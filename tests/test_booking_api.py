"""End-to-end booking lifecycle through the HTTP API"""

from conftest import cart_payload, checkout_completed_event, post_webhook, staff_headers

from tour_booking.domain.bookings.repository import BookingRepository
from tour_booking.models import Booking


def submit(client, email="amira@example.com"):
    response = client.post("/booking/submit", json=cart_payload(email))
    assert response.status_code == 200, response.text
    return response.json()


def confirm_availability(client, booking_id, t1="available", t2="available"):
    return client.post(
        "/booking/confirm-availability",
        json={
            "bookingId": booking_id,
            "availabilityResults": [
                {"id": "t1", "status": t1, "limitedPlaces": 1 if t1 == "limited" else None},
                {"id": "t2", "status": t2},
            ],
            "adminNotes": "Checked with suppliers",
        },
        headers=staff_headers(),
    )


def feedback_token(link: str) -> str:
    return link.split("token=")[1]


def record_payment(client, booking_id, amount, **options):
    response = client.post(
        "/booking/confirm-payment",
        json={"bookingId": booking_id, "paymentDetails": {"receivedAmount": amount}, **options},
        headers=staff_headers(),
    )
    assert response.status_code == 200, response.text
    return response


def paid_booking(client):
    """Submit and confirm every tour, then pay the full 250 through Stripe"""
    booking_id = submit(client)["bookingId"]
    confirm_availability(client, booking_id)
    response = post_webhook(client, checkout_completed_event(booking_id, 25000))
    assert response.json()["paymentDetails"]["isFullyPaid"]
    return booking_id


class TestFullLifecycle:
    def test_partial_availability_to_completion(self, client, email_service, gateway):
        # Submit: customer acknowledgement plus staff notification
        submitted = submit(client)
        booking_id = submitted["bookingId"]
        assert submitted["requestId"].startswith("EYT-")
        assert len(email_service.sent) == 2
        assert email_service.subjects_containing("We're checking availability")
        assert email_service.subjects_containing("New Booking Request")

        # t1 has limited places: the customer is asked for feedback
        response = confirm_availability(client, booking_id, t1="limited")
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["status"] == "pending_feedback"
        assert body["outcome"] == "partial"
        assert body["hasLimitedPlaces"]
        assert "/availability-feedback?token=" in body["feedbackLink"]
        assert email_service.subjects_containing("Action needed")
        token = feedback_token(body["feedbackLink"])

        # Customer opens the feedback page
        response = client.get("/booking/verify-feedback-request", params={"token": token})
        assert response.status_code == 200
        view = response.json()["booking"]
        assert view["id"] == booking_id
        assert [t["availabilityStatus"] for t in view["tours"]] == ["limited", "available"]

        # Customer drops t1
        response = client.post(
            "/booking/client-feedback",
            json={
                "token": token,
                "feedback": [
                    {"tourId": "t1", "decision": "remove", "notes": "Too few seats"},
                    {"tourId": "t2", "decision": "keep"},
                ],
            },
        )
        assert response.status_code == 200, response.text
        summary = response.json()["feedbackSummary"]
        assert summary["toursRemoved"] == 1
        assert summary["newTotal"] == 150
        assert summary["notificationSent"]

        # Staff confirm: a 150 payment link goes out
        response = client.post(
            "/booking/confirm-booking",
            json={
                "bookingId": booking_id,
                "action": "confirm",
                "modifiedTours": [
                    {"tourId": "t1", "action": "remove"},
                    {"tourId": "t2", "action": "keep"},
                ],
                "totalPrice": 150,
            },
            headers=staff_headers(),
        )
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["status"] == "confirmed"
        assert body["total"] == 150
        assert body["amountDue"] == 150
        assert body["paymentLink"] == "https://buy.stripe.com/test_plink_1"
        assert gateway.created[0]["amount"] == 150

        # Stripe pays the link; the same event arrives twice
        event = checkout_completed_event(booking_id, 15000)
        first = post_webhook(client, event)
        second = post_webhook(client, event)

        assert first.status_code == 200
        assert first.json()["paymentDetails"]["isFullyPaid"]
        assert second.status_code == 200
        assert second.json()["alreadyProcessed"]
        assert gateway.deactivated == ["plink_1"]
        assert len(email_service.subjects_containing("Payment Received")) == 1

        # The payment-success page reads the booking back
        redirect = gateway.created[0]["redirectUrl"]
        response = client.get("/booking/verify-payment-success", params={"token": feedback_token(redirect)})
        assert response.status_code == 200
        paid_view = response.json()["booking"]
        assert paid_view["status"] == "paid"
        assert paid_view["paidAmount"] == 150
        assert paid_view["amountDue"] == 0
        assert [t["id"] for t in paid_view["tours"]] == ["t2"]

        # Schedule the remaining tour, then complete
        response = client.post(
            "/booking/schedule",
            json={
                "bookingId": booking_id,
                "tourSchedules": [
                    {
                        "tourId": "t2",
                        "startTime": "16:00",
                        "guide": {"assigned": True, "name": "Omar"},
                        "meetingPoint": {"location": "Four Seasons Nile Plaza", "time": "15:45"},
                    }
                ],
            },
            headers=staff_headers(),
        )
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["status"] == "scheduled"
        assert body["schedulingSummary"]["allConfirmedScheduled"]
        assert body["warnings"] == []

        response = client.post("/booking/complete", json={"bookingId": booking_id}, headers=staff_headers())
        assert response.status_code == 200, response.text
        assert response.json()["status"] == "completed"
        assert email_service.subjects_containing("Thank you for travelling")

    def test_all_available_sends_payment_link(self, client, email_service, gateway):
        booking_id = submit(client)["bookingId"]

        response = confirm_availability(client, booking_id)

        body = response.json()
        assert body["status"] == "confirmed"
        assert body["outcome"] == "all_available"
        assert body["amountDue"] == 250
        assert body["paymentLink"].startswith("https://buy.stripe.com/")
        assert email_service.subjects_containing("Great news")

    def test_no_availability_cancels(self, client, email_service):
        booking_id = submit(client)["bookingId"]

        response = confirm_availability(client, booking_id, t1="unavailable", t2="unavailable")

        assert response.json()["status"] == "cancelled"
        assert email_service.subjects_containing("Tours unavailable")


class TestStaffOperations:
    def test_existing_payment_link_is_reused(self, client, gateway):
        booking_id = submit(client)["bookingId"]
        first = confirm_availability(client, booking_id).json()

        response = client.post(
            "/stripe/create-payment-link",
            json={"bookingId": booking_id, "amount": 1},
            headers=staff_headers(),
        )

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["reused"]
        assert body["paymentLinkId"] == first["paymentLinkId"]
        assert body["amountDue"] == 250
        assert len(gateway.created) == 1

    def test_replacement_link_retires_the_old_one(self, client, db, gateway):
        booking_id = submit(client)["bookingId"]
        confirm_availability(client, booking_id)
        record_payment(client, booking_id, 100)

        response = client.post("/stripe/create-payment-link", json={"bookingId": booking_id}, headers=staff_headers())

        assert response.status_code == 200, response.text
        assert response.json()["paymentLinkId"] == "plink_2"
        assert response.json()["amountDue"] == 150
        assert gateway.deactivated == ["plink_1"]
        booking = BookingRepository.get(db, booking_id)
        assert booking.paymentLinkId == "plink_2"
        assert booking.paymentLinkActive

    def test_failed_replacement_keeps_stored_link(self, client, db, gateway):
        booking_id = submit(client)["bookingId"]
        confirm_availability(client, booking_id)
        record_payment(client, booking_id, 100)
        gateway.fail_create = True

        response = client.post("/stripe/create-payment-link", json={"bookingId": booking_id}, headers=staff_headers())

        assert response.status_code == 502
        assert gateway.deactivated == []
        assert gateway.links["plink_1"].active
        booking = BookingRepository.get(db, booking_id)
        assert booking.paymentLinkId == "plink_1"
        assert booking.paymentLinkActive

    def test_no_link_for_booking_marked_paid(self, client, gateway):
        booking_id = submit(client)["bookingId"]
        confirm_availability(client, booking_id)
        response = record_payment(client, booking_id, 100, markAsFullyPaid=True)
        assert response.json()["paymentDetails"]["newStatus"] == "paid"

        response = client.post("/stripe/create-payment-link", json={"bookingId": booking_id}, headers=staff_headers())

        assert response.status_code == 400
        assert response.json()["currentStatus"] == "paid"
        assert len(gateway.created) == 1

    def test_manual_partial_then_full_payment(self, client, email_service, gateway):
        booking_id = submit(client)["bookingId"]
        confirm_availability(client, booking_id)

        response = client.post(
            "/booking/confirm-payment",
            json={
                "bookingId": booking_id,
                "paymentDetails": {"receivedAmount": 100, "paymentMethod": "cash", "paymentDate": "2026-10-20"},
            },
            headers=staff_headers(),
        )
        assert response.status_code == 200, response.text
        details = response.json()["paymentDetails"]
        assert details["remainingBalance"] == 150
        assert not details["isFullyPaid"]
        assert gateway.deactivated == []

        response = client.post(
            "/booking/confirm-payment",
            json={
                "bookingId": booking_id,
                "paymentDetails": {"receivedAmount": 150, "paymentMethod": "bank_transfer"},
                "sendConfirmationEmail": False,
            },
            headers=staff_headers(),
        )
        assert response.json()["paymentDetails"]["newStatus"] == "paid"
        assert response.json()["emailSent"] is False
        assert gateway.deactivated == ["plink_1"]
        assert len(email_service.subjects_containing("Payment Received")) == 1

    def test_payment_on_paid_booking_is_rejected(self, client):
        booking_id = paid_booking(client)

        response = client.post(
            "/booking/confirm-payment",
            json={"bookingId": booking_id, "paymentDetails": {"receivedAmount": 10}},
            headers=staff_headers(),
        )

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_cancel_keeps_paid_amount(self, client, email_service):
        booking_id = paid_booking(client)

        response = client.post(
            "/booking/cancel",
            json={"bookingId": booking_id, "cancellationNotes": "Customer flight cancelled"},
            headers=staff_headers(),
        )

        assert response.status_code == 200, response.text
        assert response.json()["status"] == "cancelled"
        assert response.json()["paidAmount"] == 250
        assert email_service.subjects_containing("Booking cancelled")

    def test_cancel_after_feedback(self, client):
        booking_id = submit(client)["bookingId"]
        token = feedback_token(confirm_availability(client, booking_id, t1="limited").json()["feedbackLink"])
        client.post(
            "/booking/client-feedback",
            json={"token": token, "feedback": [{"tourId": "t1", "decision": "remove"}, {"tourId": "t2", "decision": "remove"}]},
        )

        response = client.post(
            "/booking/confirm-booking",
            json={"bookingId": booking_id, "action": "cancel", "cancellationNotes": "Nothing left to book"},
            headers=staff_headers(),
        )

        assert response.status_code == 200, response.text
        assert response.json()["status"] == "cancelled"

    def test_partial_schedule_warns(self, client):
        booking_id = paid_booking(client)

        response = client.post(
            "/booking/schedule",
            json={"bookingId": booking_id, "tourSchedules": [{"tourId": "t1"}]},
            headers=staff_headers(),
        )

        body = response.json()
        assert body["status"] == "partially_scheduled"
        assert len(body["warnings"]) == 1


class TestGuards:
    def test_missing_token_is_401(self, client):
        response = client.post("/booking/complete", json={"bookingId": "x"})

        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_bad_token_is_403(self, client):
        response = client.post(
            "/booking/complete", json={"bookingId": "x"}, headers={"Authorization": "Bearer nope"}
        )

        assert response.status_code == 403

    def test_unknown_booking_is_404(self, client):
        response = client.post("/booking/complete", json={"bookingId": "missing"}, headers=staff_headers())

        assert response.status_code == 404

    def test_complete_requires_scheduled(self, client):
        booking_id = paid_booking(client)

        response = client.post("/booking/complete", json={"booking": {"id": booking_id}}, headers=staff_headers())

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_invalid_feedback_token(self, client):
        response = client.get("/booking/verify-feedback-request", params={"token": "forged"})

        assert response.status_code == 400

    def test_payment_token_is_not_a_feedback_token(self, client, gateway):
        booking_id = submit(client)["bookingId"]
        confirm_availability(client, booking_id)
        token = feedback_token(gateway.created[0]["redirectUrl"])

        response = client.get("/booking/verify-feedback-request", params={"token": token})

        assert response.status_code == 400

    def test_feedback_page_closed_once_answered(self, client):
        booking_id = submit(client)["bookingId"]
        token = feedback_token(confirm_availability(client, booking_id, t1="limited").json()["feedbackLink"])
        client.post(
            "/booking/client-feedback",
            json={"token": token, "feedback": [{"tourId": "t1", "decision": "keep"}, {"tourId": "t2", "decision": "keep"}]},
        )

        response = client.get("/booking/verify-feedback-request", params={"token": token})

        assert response.status_code == 400
        assert response.json()["currentStatus"] == "feedback_received"

    def test_acknowledge_rejects_forged_token(self, client):
        response = client.post("/booking/verify-feedback-request", json={"token": "forged"})

        assert response.status_code == 400

    def test_submit_requires_customer(self, client):
        payload = cart_payload()
        del payload["bookingData"]["customer"]

        response = client.post("/booking/submit", json=payload)

        assert response.status_code == 400
        assert "Customer" in response.json()["error"]

    def test_submit_email_failure_stores_nothing(self, client, email_service, db):
        email_service.fail = True

        response = client.post("/booking/submit", json=cart_payload())

        assert response.status_code == 500
        assert response.json()["success"] is False
        assert db.query(Booking).count() == 0


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
