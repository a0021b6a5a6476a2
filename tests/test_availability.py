from datetime import datetime, timedelta

from availability import check_vehicle_availability, ranges_overlap, release_expired_holds
from booking_status import utcnow
from models import Booking, CheckoutHold, VehicleBlock

D = datetime(2099, 12, 1, 10, 0)


def add_booking(db, vehicle, start, end, status="Confirmed", **kwargs):
    b = Booking(vehicle_id=vehicle.id, customer_name="A", customer_email="a@test.com",
                customer_phone="1", pickup_at=start, return_at=end, total_price=100,
                booking_status=status, **kwargs)
    db.add(b)
    db.commit()
    return b


def test_overlap_predicate():
    a = (D, D + timedelta(days=3))
    assert ranges_overlap(*a, D + timedelta(days=1), D + timedelta(days=2))
    assert ranges_overlap(*a, D - timedelta(days=1), D + timedelta(hours=1))
    assert not ranges_overlap(*a, D + timedelta(days=3), D + timedelta(days=5))
    assert not ranges_overlap(*a, D - timedelta(days=2), D)


def test_booked_vehicle_conflicts(db, vehicle):
    add_booking(db, vehicle, D, D + timedelta(days=3))
    result = check_vehicle_availability(db, vehicle.id, D + timedelta(days=1), D + timedelta(days=4))
    assert not result.is_available
    assert result.conflict_type == "booking"


def test_touching_bookings_allowed(db, vehicle):
    add_booking(db, vehicle, D, D + timedelta(days=3))
    result = check_vehicle_availability(db, vehicle.id, D + timedelta(days=3), D + timedelta(days=5))
    assert result.is_available


def test_cancelled_booking_does_not_block(db, vehicle):
    add_booking(db, vehicle, D, D + timedelta(days=3), status="Cancelled")
    assert check_vehicle_availability(db, vehicle.id, D, D + timedelta(days=1)).is_available


def test_exclude_own_booking(db, vehicle):
    b = add_booking(db, vehicle, D, D + timedelta(days=3))
    assert check_vehicle_availability(db, vehicle.id, D, D + timedelta(days=3),
                                      exclude_booking_id=b.id).is_available


def test_admin_block(db, vehicle):
    db.add(VehicleBlock(vehicle_id=vehicle.id, blocked_from=D, blocked_until=D + timedelta(days=2),
                        reason="Service"))
    db.commit()
    result = check_vehicle_availability(db, vehicle.id, D + timedelta(days=1), D + timedelta(days=3))
    assert result.conflict_type == "block"
    assert result.reason == "Service"


def test_active_hold_blocks_until_released(db, vehicle):
    hold = CheckoutHold(vehicle_id=vehicle.id, stripe_session_id="cs_1", pickup_at=D,
                        return_at=D + timedelta(days=2), customer_email="a@test.com",
                        expires_at=utcnow() + timedelta(minutes=30))
    db.add(hold)
    db.commit()

    result = check_vehicle_availability(db, vehicle.id, D, D + timedelta(days=1))
    assert result.conflict_type == "hold"
    assert check_vehicle_availability(db, vehicle.id, D, D + timedelta(days=1), include_holds=False).is_available

    release_expired_holds(db, now=utcnow() + timedelta(minutes=31))
    assert hold.status == "expired"
    assert check_vehicle_availability(db, vehicle.id, D, D + timedelta(days=1)).is_available


def test_stale_pending_verification_expires(db, vehicle):
    b = add_booking(db, vehicle, D, D + timedelta(days=2), status="PendingVerification")
    holds, stale = release_expired_holds(db, now=utcnow() + timedelta(minutes=21))
    assert (holds, stale) == (0, 1)
    db.refresh(b)
    assert b.booking_status == "Expired"


def test_abandoned_card_setup_expires(db, vehicle):
    verified = utcnow()
    b = add_booking(db, vehicle, D, D + timedelta(days=2), status="PendingPayment",
                    email_verified_at=verified, stripe_setup_intent_id="seti_1")

    # still inside the card setup window
    assert release_expired_holds(db, now=verified + timedelta(minutes=61)) == (0, 0)
    assert not check_vehicle_availability(db, vehicle.id, D, D + timedelta(days=1)).is_available

    assert release_expired_holds(db, now=verified + timedelta(minutes=121)) == (0, 1)
    db.refresh(b)
    assert b.booking_status == "Expired"
    assert check_vehicle_availability(db, vehicle.id, D, D + timedelta(days=1)).is_available


def test_availability_endpoint(client, db, vehicle):
    add_booking(db, vehicle, D, D + timedelta(days=3))
    response = client.get(f"/api/vehicles/{vehicle.id}/availability", params={
        "pickup_at": "2099-12-02T10:00:00",
        "return_at": "2099-12-05T10:00:00",
    })
    assert response.status_code == 200
    assert response.json()["available"] is False

    response = client.get(f"/api/vehicles/{vehicle.id}/availability", params={
        "pickup_at": "2099-12-04T10:00:00",
        "return_at": "2099-12-05T10:00:00",
    })
    assert response.json()["available"] is True


def test_unknown_vehicle_404(client):
    response = client.get("/api/vehicles/nope")
    assert response.status_code == 404
