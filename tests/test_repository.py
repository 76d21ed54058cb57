import pytest
from conftest import confirmed_booking, make_booking, payment

from tour_booking.domain.bookings import state_machine as sm
from tour_booking.domain.bookings.aggregate import BookingStatus
from tour_booking.domain.bookings.exceptions import ConcurrentModificationError, DuplicateMarkerError
from tour_booking.domain.bookings.repository import BookingRepository


@pytest.fixture
def repo():
    return BookingRepository()


def stored(db, repo, booking=None):
    booking = booking or make_booking()
    repo.create(db, booking, booking.log)
    return repo.get(db, booking.id)


class TestCreateAndLoad:
    def test_round_trip_keeps_lines_and_log(self, db, repo):
        booking = stored(db, repo)

        assert booking.version == 1
        assert booking.status == BookingStatus.PENDING
        assert [t.id for t in booking.tours] == ["t1", "t2"]
        assert booking.total == 250
        assert [e.event for e in booking.log] == ["booking_submitted"]

    def test_find_by_request_id(self, db, repo):
        booking = stored(db, repo)

        found = repo.find_by_request_id(db, booking.requestId)

        assert [b.id for b in found] == [booking.id]
        assert repo.find_by_request_id(db, "EYT-0-unknown") == []

    def test_unknown_id(self, db, repo):
        assert repo.get(db, "missing") is None


class TestSave:
    def test_version_advances(self, db, repo):
        booking = stored(db, repo, confirmed_booking())
        transition = sm.apply_payment(booking, payment(100), source="manual")

        saved = repo.save(db, transition.booking, booking.version, transition.log_entries, payments=[payment(100)])

        reloaded = repo.get(db, booking.id)
        assert saved.version == 2
        assert reloaded.version == 2
        assert reloaded.paidAmount == 100
        assert len(reloaded.payments) == 1
        assert reloaded.log[-1].event == "payment_received"

    def test_stale_version_is_rejected(self, db, repo):
        booking = stored(db, repo, confirmed_booking())
        first = sm.apply_payment(booking, payment(100), source="manual")
        repo.save(db, first.booking, booking.version, first.log_entries)

        second = sm.apply_payment(booking, payment(50), source="manual")
        with pytest.raises(ConcurrentModificationError):
            repo.save(db, second.booking, booking.version, second.log_entries)

        assert repo.get(db, booking.id).paidAmount == 100

    def test_duplicate_marker_rolls_back_the_write(self, db, repo):
        booking = stored(db, repo, confirmed_booking())
        first = sm.apply_payment(booking, payment(100), source="manual")
        repo.save(db, first.booking, booking.version, first.log_entries, markers=["checkout_session:cs_1"])

        current = repo.get(db, booking.id)
        second = sm.apply_payment(current, payment(100), source="manual")
        with pytest.raises(DuplicateMarkerError):
            repo.save(db, second.booking, current.version, second.log_entries, markers=["checkout_session:cs_1"])

        reloaded = repo.get(db, booking.id)
        assert reloaded.paidAmount == 100
        assert reloaded.version == current.version


class TestMarkers:
    def test_add_marker_once(self, db, repo):
        booking = stored(db, repo)

        assert repo.add_marker(db, booking.id, "email:payment_failed:cs_1")
        assert not repo.add_marker(db, booking.id, "email:payment_failed:cs_1")
        assert repo.has_marker(db, booking.id, "email:payment_failed:cs_1")
        assert not repo.has_marker(db, booking.id, "email:payment_failed:cs_2")


class TestPaymentLookups:
    def test_find_by_transaction_id(self, db, repo):
        booking = stored(db, repo, confirmed_booking())
        record = payment(250).model_copy(update={"transactionId": "pi_42"})
        transition = sm.apply_payment(booking, record, source="manual")
        repo.save(db, transition.booking, booking.version, transition.log_entries, payments=[record])

        assert repo.find_by_transaction_id(db, "pi_42").id == booking.id
        assert repo.find_by_transaction_id(db, "pi_other") is None
        assert repo.find_by_transaction_id(db, None) is None
        assert repo.has_succeeded_payment(db, booking.id, "pi_42")
        assert not repo.has_succeeded_payment(db, booking.id, None)
