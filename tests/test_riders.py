"""
Rider registry: exclusive claims, releases and manual availability changes.
"""
import threading

import pytest
from sqlalchemy.orm import sessionmaker

from fulfillment_service import riders
from fulfillment_service.errors import (
    InvalidRiderError,
    NotFoundError,
    RiderBusyError,
    RiderUnavailableError,
)
from fulfillment_service.models import Rider
from fulfillment_service.statuses import RiderAvailability, VehicleType


def _add_rider(db, phone="03110000001", **kwargs):
    rider = riders.create_rider(
        db, name=kwargs.pop("name", "Bilal"), phone=phone,
        vehicle_type=VehicleType.BIKE, vehicle_number="LEA-1234", **kwargs,
    )
    db.commit()
    return rider


class TestRegistration:

    def test_new_rider_is_available(self, db):
        rider = _add_rider(db, branch_id="branch-1")
        assert rider.availability == RiderAvailability.AVAILABLE
        assert rider.active_order_id is None
        assert rider.is_active

    def test_duplicate_phone(self, db):
        _add_rider(db)
        with pytest.raises(InvalidRiderError, match="already exists"):
            _add_rider(db)

    def test_unknown_vehicle(self, db):
        with pytest.raises(InvalidRiderError, match="vehicle type"):
            riders.create_rider(db, "Bilal", "0311", "Hovercraft", "X-1")

    def test_missing_rider(self, db):
        with pytest.raises(NotFoundError):
            riders.get_rider(db, 404)


class TestClaim:

    def test_claim_marks_busy(self, db):
        rider = _add_rider(db)
        claimed = riders.claim(db, rider.id, order_id=7)
        assert claimed.availability == RiderAvailability.BUSY
        assert claimed.active_order_id == 7

    def test_busy_rider_cannot_be_claimed(self, db):
        rider = _add_rider(db)
        riders.claim(db, rider.id, order_id=7)
        with pytest.raises(RiderUnavailableError, match="busy"):
            riders.claim(db, rider.id, order_id=8)

    def test_offline_rider_cannot_be_claimed(self, db):
        rider = _add_rider(db)
        riders.set_offline(db, rider.id)
        with pytest.raises(RiderUnavailableError, match="offline"):
            riders.claim(db, rider.id, order_id=7)

    def test_inactive_rider_cannot_be_claimed(self, db):
        rider = _add_rider(db)
        rider.is_active = False
        db.commit()
        with pytest.raises(RiderUnavailableError, match="inactive"):
            riders.claim(db, rider.id, order_id=7)

    def test_claim_of_missing_rider(self, db):
        with pytest.raises(NotFoundError):
            riders.claim(db, 99, order_id=7)

    def test_stale_read_does_not_win(self, file_engine):
        Session = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
        setup = Session()
        rider_id = _add_rider(setup).id
        setup.close()

        first, second = Session(), Session()
        try:
            # the second screen saw the rider as available before the first claimed it
            assert riders.get_rider(second, rider_id).availability == RiderAvailability.AVAILABLE
            second.commit()
            riders.claim(first, rider_id, order_id=1)
            first.commit()

            with pytest.raises(RiderUnavailableError):
                riders.claim(second, rider_id, order_id=2)
            second.rollback()
        finally:
            first.close()
            second.close()

    def test_concurrent_claims_have_one_winner(self, file_engine):
        Session = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
        setup = Session()
        rider_id = _add_rider(setup).id
        setup.close()

        barrier = threading.Barrier(2)
        outcomes = {}

        def attempt(order_id):
            session = Session()
            try:
                barrier.wait()
                riders.claim(session, rider_id, order_id)
                session.commit()
                outcomes[order_id] = "won"
            except RiderUnavailableError:
                session.rollback()
                outcomes[order_id] = "lost"
            finally:
                session.close()

        threads = [threading.Thread(target=attempt, args=(order_id,)) for order_id in (1, 2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert sorted(outcomes.values()) == ["lost", "won"]
        check = Session()
        rider = check.get(Rider, rider_id)
        winner = next(order_id for order_id, result in outcomes.items() if result == "won")
        assert rider.availability == RiderAvailability.BUSY
        assert rider.active_order_id == winner
        check.close()


class TestRelease:

    def test_release_returns_rider(self, db):
        rider = _add_rider(db)
        riders.claim(db, rider.id, order_id=7)
        assert riders.release(db, rider.id, order_id=7) is True
        rider = riders.get_rider(db, rider.id, refresh=True)
        assert rider.availability == RiderAvailability.AVAILABLE
        assert rider.active_order_id is None

    def test_release_is_idempotent(self, db):
        rider = _add_rider(db)
        riders.claim(db, rider.id, order_id=7)
        riders.release(db, rider.id, order_id=7)
        assert riders.release(db, rider.id, order_id=7) is False
        assert riders.get_rider(db, rider.id, refresh=True).availability == RiderAvailability.AVAILABLE

    def test_release_for_other_order_is_ignored(self, db):
        rider = _add_rider(db)
        riders.claim(db, rider.id, order_id=7)
        assert riders.release(db, rider.id, order_id=8) is False
        assert riders.get_rider(db, rider.id, refresh=True).active_order_id == 7


class TestAvailability:

    def test_offline_and_back(self, db):
        rider = _add_rider(db)
        assert riders.set_offline(db, rider.id).availability == RiderAvailability.OFFLINE
        assert riders.set_available(db, rider.id).availability == RiderAvailability.AVAILABLE

    def test_available_twice_is_a_no_op(self, db):
        rider = _add_rider(db)
        assert riders.set_available(db, rider.id).availability == RiderAvailability.AVAILABLE

    def test_busy_rider_cannot_go_offline(self, db):
        rider = _add_rider(db)
        riders.claim(db, rider.id, order_id=7)
        with pytest.raises(RiderBusyError):
            riders.set_offline(db, rider.id)

    def test_busy_rider_cannot_be_forced_available(self, db):
        rider = _add_rider(db)
        riders.claim(db, rider.id, order_id=7)
        with pytest.raises(RiderBusyError):
            riders.set_available(db, rider.id)

    def test_listing(self, db):
        a = _add_rider(db, phone="1", branch_id="north")
        b = _add_rider(db, phone="2", branch_id="south")
        _add_rider(db, phone="3", branch_id="north")
        riders.claim(db, b.id, order_id=7)
        riders.set_offline(db, a.id)
        db.commit()

        assert [r.phone for r in riders.list_available(db)] == ["3"]
        assert [r.phone for r in riders.list_riders(db, branch_id="north")] == ["1", "3"]
        assert [r.phone for r in riders.list_riders(db, availability=RiderAvailability.BUSY)] == ["2"]
