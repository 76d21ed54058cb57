import random

import pytest
from conftest import STAFF, confirmed_booking, make_booking, payment, verdicts

from tour_booking.domain.bookings import state_machine as sm
from tour_booking.domain.bookings.aggregate import (
    AvailabilityStatus,
    BookingStatus,
    LineStatus,
    PaymentStatus,
    TourDecision,
)
from tour_booking.domain.bookings.exceptions import (
    AlreadyPaidError,
    BookingError,
    BookingValidationError,
    InvalidBookingStateError,
    InvariantViolationError,
)
from tour_booking.domain.bookings.schemas import (
    BookingSubmitData,
    ModifiedTour,
    TourFeedback,
    TourScheduleInput,
)


def partial_with_feedback(t1=TourDecision.REMOVE, t2=TourDecision.KEEP):
    booking = make_booking()
    booking = sm.confirm_availability(booking, verdicts(t1="limited", t2="available"), None, STAFF).booking
    feedback = [TourFeedback(tourId="t1", decision=t1), TourFeedback(tourId="t2", decision=t2)]
    return sm.record_client_feedback(booking, feedback).booking


class TestCreateBooking:
    def test_prices_from_tiers_and_logs_submission(self):
        booking = make_booking()

        assert booking.status == BookingStatus.PENDING
        assert [t.calculatedPrice for t in booking.tours] == [100, 150]
        assert booking.total == 250
        assert booking.log[-1].event == "booking_submitted"

    def test_client_supplied_lifecycle_fields_are_ignored(self):
        booking = make_booking(
            [{"id": "t1", "title": "Pyramids", "guests": 1, "price": 80,
              "status": "confirmed", "removedFromBooking": True, "calculatedPrice": 1}]
        )

        line = booking.tours[0]
        assert line.status == LineStatus.PENDING
        assert not line.removedFromBooking
        assert line.calculatedPrice == 1

    def test_requires_tours_and_valid_email(self):
        with pytest.raises(BookingValidationError):
            sm.create_booking(BookingSubmitData(tours=[]), "EYT-X", {})
        data = BookingSubmitData.model_validate(
            {"customer": {"name": "A", "email": "not-an-email"}, "tours": [{"id": "t1"}]}
        )
        with pytest.raises(BookingValidationError, match="email"):
            sm.create_booking(data, "EYT-X", {})


class TestAvailability:
    def test_all_available_confirms_every_line(self):
        transition = sm.confirm_availability(
            make_booking(), verdicts(t1="available", t2="available"), "ok", STAFF
        )
        booking = transition.booking

        assert transition.details["outcome"] == "all_available"
        assert booking.status == BookingStatus.CONFIRMED
        assert all(t.status == LineStatus.CONFIRMED for t in booking.tours)
        assert booking.total == 250
        assert booking.pendingPayment

    def test_partial_goes_to_pending_feedback(self):
        transition = sm.confirm_availability(
            make_booking(), verdicts(t1="limited", t2="available"), None, STAFF
        )

        assert transition.details["outcome"] == "partial"
        assert transition.details["hasLimitedPlaces"]
        assert transition.booking.status == BookingStatus.PENDING_FEEDBACK
        assert transition.booking.total == 250

    def test_nothing_available_cancels(self):
        booking = sm.confirm_availability(
            make_booking(), verdicts(t1="unavailable", t2="unavailable"), None, STAFF
        ).booking

        assert booking.status == BookingStatus.CANCELLED
        assert booking.total == 0
        assert all(t.status == LineStatus.CANCELLED for t in booking.tours)

    def test_only_pending_bookings(self):
        with pytest.raises(InvalidBookingStateError):
            sm.confirm_availability(confirmed_booking(), verdicts(t1="available"), None, STAFF)

    def test_original_is_not_mutated(self):
        booking = make_booking()
        sm.confirm_availability(booking, verdicts(t1="available", t2="available"), None, STAFF)

        assert booking.status == BookingStatus.PENDING
        assert booking.tours[0].availabilityStatus == AvailabilityStatus.PENDING


class TestFeedback:
    def test_remove_decision_drops_line_from_total(self):
        booking = partial_with_feedback()

        assert booking.status == BookingStatus.FEEDBACK_RECEIVED
        assert booking.total == 150
        assert booking.tours[0].clientDecision == TourDecision.REMOVE
        assert booking.tours[0].status == LineStatus.PENDING

    def test_modify_guests_reprices_limited_tour(self):
        booking = make_booking()
        booking = sm.confirm_availability(booking, verdicts(t1="limited", t2="available"), None, STAFF).booking
        feedback = [
            TourFeedback.model_validate({"tourId": "t1", "decision": "modify", "modificationDetails": {"guests": 1}}),
            TourFeedback(tourId="t2", decision=TourDecision.KEEP),
        ]
        booking = sm.record_client_feedback(booking, feedback).booking

        assert booking.tours[0].guests == 1
        assert booking.tours[0].calculatedPrice == 50
        assert booking.tours[0].originalGuests == 2
        assert booking.total == 200

    def test_unknown_tour_rejected(self):
        booking = make_booking()
        booking = sm.confirm_availability(booking, verdicts(t1="limited", t2="available"), None, STAFF).booking
        feedback = [
            TourFeedback(tourId="t1", decision=TourDecision.KEEP),
            TourFeedback(tourId="t2", decision=TourDecision.KEEP),
            TourFeedback(tourId="t9", decision=TourDecision.KEEP),
        ]
        with pytest.raises(BookingValidationError):
            sm.record_client_feedback(booking, feedback)

    def test_confirm_after_feedback_cancels_removed_line_at_zero(self):
        booking = partial_with_feedback()
        booking = sm.confirm_after_feedback(
            booking,
            [ModifiedTour(tourId="t1", action=TourDecision.REMOVE), ModifiedTour(tourId="t2", action=TourDecision.KEEP)],
            None,
            STAFF,
        ).booking

        removed, kept = booking.tours
        assert booking.status == BookingStatus.CONFIRMED
        assert removed.status == LineStatus.CANCELLED
        assert removed.removedFromBooking
        assert removed.calculatedPrice == 0
        assert kept.status == LineStatus.CONFIRMED
        assert booking.total == 150

    def test_confirm_with_nothing_kept_is_rejected(self):
        booking = partial_with_feedback(t1=TourDecision.REMOVE, t2=TourDecision.REMOVE)

        with pytest.raises(BookingValidationError, match="cancel"):
            sm.confirm_after_feedback(booking, [], None, STAFF)

    def test_cancel_after_feedback_needs_notes(self):
        booking = partial_with_feedback()

        with pytest.raises(BookingValidationError):
            sm.cancel_after_feedback(booking, "  ", None, STAFF)
        cancelled = sm.cancel_after_feedback(booking, "Client changed plans", None, STAFF).booking
        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.total == 0


class TestPayments:
    def test_partial_then_full_payment(self):
        booking = confirmed_booking()

        first = sm.apply_payment(booking, payment(100), source="manual")
        assert first.booking.status == BookingStatus.CONFIRMED
        assert first.booking.paymentStatus == PaymentStatus.PARTIALLY_PAID
        assert first.details["remainingBalance"] == 150

        second = sm.apply_payment(first.booking, payment(150), source="manual")
        assert second.booking.status == BookingStatus.PAID
        assert second.booking.paymentStatus == PaymentStatus.FULLY_PAID
        assert second.booking.paidAmount == 250
        assert not second.booking.pendingPayment

    def test_mark_fully_paid_overrides_amount(self):
        transition = sm.apply_payment(confirmed_booking(), payment(200), source="manual", mark_fully_paid=True)

        assert transition.details["isFullyPaid"]
        assert transition.booking.status == BookingStatus.PAID

    def test_payment_requires_confirmed(self):
        with pytest.raises(InvalidBookingStateError):
            sm.apply_payment(make_booking(), payment(10), source="manual")

    def test_already_paid_is_rejected(self):
        booking = confirmed_booking()
        booking.paidAmount = 250

        with pytest.raises(AlreadyPaidError):
            sm.apply_payment(booking, payment(10), source="stripe")

    def test_unapplied_payment_leaves_balance_alone(self):
        booking = sm.cancel_booking(confirmed_booking(), "Changed plans", STAFF).booking

        transition = sm.record_unapplied_payment(booking, payment(250), "booking is cancelled")

        after = transition.booking
        assert after.status == BookingStatus.CANCELLED
        assert after.paidAmount == 0
        assert after.payments[-1].status == "unapplied"
        assert transition.log_entries[0].event == "payment_received_unapplied"
        assert transition.log_entries[0].changes["bookingStatus"] == "cancelled"
        assert booking.payments == []


class TestScheduling:
    def _paid(self):
        return sm.apply_payment(confirmed_booking(), payment(250), source="manual").booking

    def test_partial_then_full_schedule(self):
        booking = self._paid()

        first = sm.schedule_tours(booking, [TourScheduleInput(tourId="t1", startTime="08:00")], STAFF)
        assert first.booking.status == BookingStatus.PARTIALLY_SCHEDULED
        assert first.details["warnings"]

        second = sm.schedule_tours(first.booking, [TourScheduleInput(tourId="t2")], STAFF)
        assert second.booking.status == BookingStatus.SCHEDULED
        assert second.booking.schedulingSummary.allConfirmedScheduled
        assert [t.id for t in second.details["scheduledTours"]] == ["t2"]

    def test_cancelled_tour_cannot_be_scheduled(self):
        booking = partial_with_feedback()
        booking = sm.confirm_after_feedback(
            booking, [ModifiedTour(tourId="t1", action=TourDecision.REMOVE)], None, STAFF
        ).booking
        booking = sm.apply_payment(booking, payment(150), source="manual").booking

        with pytest.raises(BookingValidationError) as exc:
            sm.schedule_tours(booking, [TourScheduleInput(tourId="t1")], STAFF)
        assert exc.value.details["validTourIds"] == ["t2"]

    def test_multi_day_itinerary(self):
        schedule = TourScheduleInput.model_validate(
            {
                "tourId": "t1",
                "tourType": "multi_day_tour",
                "durationDays": "2",
                "dayItinerary": [{"day": 1, "itinerary": [{"time": "09:00", "activity": "Karnak"}]}],
            }
        )
        booking = sm.schedule_tours(self._paid(), [schedule], STAFF).booking

        built = booking.tours[0].schedule
        assert built.itineraryType == "multi_day"
        assert built.durationDays == 2
        assert built.itinerary[0]["activities"][0]["activity"] == "Karnak"

    def test_complete_requires_scheduled(self):
        booking = self._paid()
        with pytest.raises(InvalidBookingStateError):
            sm.complete_booking(booking, STAFF)

        booking = sm.schedule_tours(
            booking, [TourScheduleInput(tourId="t1"), TourScheduleInput(tourId="t2")], STAFF
        ).booking
        completed = sm.complete_booking(booking, STAFF).booking
        assert completed.status == BookingStatus.COMPLETED


class TestCancel:
    def test_cancel_keeps_paid_amount(self):
        booking = sm.apply_payment(confirmed_booking(), payment(100), source="manual").booking
        cancelled = sm.cancel_booking(booking, "Weather", STAFF).booking

        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.paidAmount == 100
        assert cancelled.total == 0

    def test_terminal_bookings_cannot_be_cancelled(self):
        booking = sm.cancel_booking(make_booking(), "Duplicate", STAFF).booking

        with pytest.raises(InvalidBookingStateError):
            sm.cancel_booking(booking, "Again", STAFF)


class TestInvariants:
    def test_total_mismatch_detected(self):
        booking = make_booking()
        broken = booking.model_copy(deep=True)
        broken.total = 999

        with pytest.raises(InvariantViolationError):
            sm.check_invariants(booking, broken)

    def test_locked_line_cannot_change(self):
        booking = partial_with_feedback()
        booking = sm.confirm_after_feedback(
            booking, [ModifiedTour(tourId="t1", action=TourDecision.REMOVE)], None, STAFF
        ).booking
        broken = booking.model_copy(deep=True)
        broken.tours[0].title = "Changed"

        with pytest.raises(InvariantViolationError):
            sm.check_invariants(booking, broken)

    def test_confirmed_line_only_cancelled_with_booking(self):
        booking = confirmed_booking()
        broken = booking.model_copy(deep=True)
        broken.tours[0].status = LineStatus.CANCELLED
        broken.tours[0].calculatedPrice = 0
        broken.total = broken.billable_total()

        with pytest.raises(InvariantViolationError):
            sm.check_invariants(booking, broken)


def _random_step(booking, rng: random.Random):
    choice = rng.choice(["availability", "feedback", "confirm", "cancel_feedback", "pay", "schedule", "complete", "cancel"])
    ids = [t.id for t in booking.tours]
    statuses = ["available", "limited", "alternative", "unavailable"]

    if choice == "availability":
        return sm.confirm_availability(booking, verdicts(**{i: rng.choice(statuses) for i in ids}), None, STAFF)
    if choice == "feedback":
        feedback = [
            TourFeedback.model_validate(
                {"tourId": i, "decision": rng.choice(["keep", "modify", "remove"]),
                 "modificationDetails": {"guests": rng.randint(1, 4), "date": "2026-12-01"}}
            )
            for i in ids
        ]
        return sm.record_client_feedback(booking, feedback)
    if choice == "confirm":
        modified = [
            ModifiedTour(tourId=i, action=rng.choice(list(TourDecision)), newGuests=rng.choice([None, 1, 3]))
            for i in ids
        ]
        return sm.confirm_after_feedback(booking, modified, None, STAFF)
    if choice == "cancel_feedback":
        return sm.cancel_after_feedback(booking, "Client declined", None, STAFF)
    if choice == "pay":
        return sm.apply_payment(booking, payment(rng.choice([25, 100, 150, 400])), source="manual")
    if choice == "schedule":
        targets = rng.sample(ids, rng.randint(1, len(ids)))
        return sm.schedule_tours(booking, [TourScheduleInput(tourId=i) for i in targets], STAFF)
    if choice == "complete":
        return sm.complete_booking(booking, STAFF)
    return sm.cancel_booking(booking, "Staff cancelled", STAFF)


@pytest.mark.parametrize("seed", range(40))
def test_total_invariant_holds_across_random_sequences(seed: int) -> None:
    rng = random.Random(seed)
    booking = make_booking(
        [
            {"id": f"t{i}", "title": f"Tour {i}", "guests": rng.randint(1, 4),
             "groupPrices": [{"groupSize": "1-4", "price": rng.choice([20, 35, 60])}]}
            for i in range(rng.randint(1, 4))
        ]
    )

    for _ in range(25):
        previous_paid = booking.paidAmount
        try:
            booking = _random_step(booking, rng).booking
        except BookingError as e:
            assert not isinstance(e, InvariantViolationError)
            continue

        assert booking.total == pytest.approx(booking.billable_total())
        assert booking.paidAmount >= previous_paid
        assert all(t.calculatedPrice == 0 for t in booking.tours if t.removedFromBooking)
