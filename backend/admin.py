import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from booking_status import BookingStatus, PaymentStatus, transition_booking, transition_payment
from config import settings
from database import get_db
from models import Booking, SiteSetting, Vehicle, VehicleBlock
from schemas import SettingIn, StatusUpdate, VehicleBlockIn, VehicleIn, VehicleUpdate
from services import stripe_service
from site_settings import OBJECT_SETTINGS, get_site_settings

logger = logging.getLogger(__name__)

security = HTTPBasic()


def check_credentials(user: str, password: str) -> bool:
    return (secrets.compare_digest(user.encode(), settings.ADMIN_USER.encode())
            and secrets.compare_digest(password.encode(), settings.ADMIN_PASS.encode()))


def require_admin(credentials: HTTPBasicCredentials = Depends(security)):
    if not check_credentials(credentials.username, credentials.password):
        raise HTTPException(401, "Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


router = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])


def _booking_or_404(db, booking_id):
    booking = db.get(Booking, booking_id)
    if not booking:
        raise HTTPException(404, "Booking not found")
    return booking


def _vehicle_or_404(db, vehicle_id):
    vehicle = db.get(Vehicle, vehicle_id)
    if not vehicle:
        raise HTTPException(404, "Vehicle not found")
    return vehicle


# ================== BOOKINGS ==================
@router.get("/bookings")
def admin_bookings(status: Optional[str] = None, db=Depends(get_db)):
    query = db.query(Booking)
    if status:
        try:
            query = query.filter(Booking.booking_status == BookingStatus.parse(status).value)
        except ValueError as e:
            raise HTTPException(400, str(e))
    bookings = query.order_by(Booking.pickup_at.desc()).all()

    result = []
    for b in bookings:
        data = b.to_dict()
        data["vehicle"] = f"{b.vehicle.brand} {b.vehicle.model}" if b.vehicle else "–"
        data["date"] = b.pickup_at.strftime("%d.%m.%Y")
        data["time"] = b.pickup_at.strftime("%H:%M")
        result.append(data)
    return result


@router.get("/bookings/{booking_id}")
def admin_booking_detail(booking_id: str, db=Depends(get_db)):
    booking = _booking_or_404(db, booking_id)
    data = booking.to_dict()
    data.update({
        "contract_number": booking.contract_number,
        "stripe_session_id": booking.stripe_session_id,
        "stripe_payment_intent_id": booking.stripe_payment_intent_id,
        "stripe_setup_intent_id": booking.stripe_setup_intent_id,
        "email_verified_at": booking.email_verified_at.isoformat() if booking.email_verified_at else None,
        "confirmed_at": booking.confirmed_at.isoformat() if booking.confirmed_at else None,
        "cancelled_at": booking.cancelled_at.isoformat() if booking.cancelled_at else None,
        "vehicle": booking.vehicle.to_dict() if booking.vehicle else None,
    })
    return data


@router.post("/cancel/{booking_id}")
def admin_cancel(booking_id: str, refund: bool = False, db=Depends(get_db)):
    booking = _booking_or_404(db, booking_id)
    transition_booking(booking, BookingStatus.CANCELLED)
    db.commit()
    logger.info("Booking %s cancelled by admin", booking.id)

    refunded = False
    paid = booking.payment_status in (PaymentStatus.PAID.value, PaymentStatus.PARTIAL.value)
    if refund and paid and booking.stripe_payment_intent_id:
        stripe_service.create_refund(booking.stripe_payment_intent_id)
        transition_payment(booking, PaymentStatus.REFUNDED)
        db.commit()
        refunded = True
    return {"ok": True, "refunded": refunded}


@router.post("/bookings/{booking_id}/status")
def admin_booking_status(booking_id: str, body: StatusUpdate, db=Depends(get_db)):
    booking = _booking_or_404(db, booking_id)
    try:
        new_status = BookingStatus.parse(body.status)
    except ValueError as e:
        raise HTTPException(400, str(e))
    transition_booking(booking, new_status)
    db.commit()
    return {"ok": True, "booking_status": booking.booking_status}


@router.post("/bookings/{booking_id}/payment-status")
def admin_payment_status(booking_id: str, body: StatusUpdate, db=Depends(get_db)):
    booking = _booking_or_404(db, booking_id)
    try:
        new_status = PaymentStatus.parse(body.status)
    except ValueError as e:
        raise HTTPException(400, str(e))
    transition_payment(booking, new_status)
    db.commit()
    return {"ok": True, "payment_status": booking.payment_status}


# ================== VEHICLES ==================
@router.post("/vehicles")
def admin_create_vehicle(body: VehicleIn, db=Depends(get_db)):
    vehicle = Vehicle(**body.model_dump())
    db.add(vehicle)
    db.commit()
    db.refresh(vehicle)
    return vehicle.to_dict()


@router.put("/vehicles/{vehicle_id}")
def admin_update_vehicle(vehicle_id: str, body: VehicleUpdate, db=Depends(get_db)):
    vehicle = _vehicle_or_404(db, vehicle_id)
    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(vehicle, field, value)
    db.commit()
    db.refresh(vehicle)
    return vehicle.to_dict()


@router.post("/vehicles/{vehicle_id}/status")
def admin_vehicle_status(vehicle_id: str, body: StatusUpdate, db=Depends(get_db)):
    if body.status not in ("available", "rented", "maintenance"):
        raise HTTPException(400, f"Unknown vehicle status: {body.status}")
    vehicle = _vehicle_or_404(db, vehicle_id)
    vehicle.status = body.status
    db.commit()
    return {"ok": True, "status": vehicle.status}


# ================== BLOCKS ==================
@router.get("/blocks")
def admin_blocks(vehicle_id: Optional[str] = None, db=Depends(get_db)):
    query = db.query(VehicleBlock)
    if vehicle_id:
        query = query.filter(VehicleBlock.vehicle_id == vehicle_id)
    return [b.to_dict() for b in query.order_by(VehicleBlock.blocked_from).all()]


@router.post("/blocks")
def admin_create_block(body: VehicleBlockIn, db=Depends(get_db)):
    _vehicle_or_404(db, body.vehicle_id)
    block = VehicleBlock(**body.model_dump())
    db.add(block)
    db.commit()
    db.refresh(block)
    return block.to_dict()


@router.delete("/blocks/{block_id}")
def admin_delete_block(block_id: int, db=Depends(get_db)):
    block = db.get(VehicleBlock, block_id)
    if not block:
        raise HTTPException(404, "Block not found")
    db.delete(block)
    db.commit()
    return {"ok": True}


# ================== SITE SETTINGS ==================
@router.get("/settings")
def admin_settings(site=Depends(get_site_settings)):
    return site.all()


@router.put("/settings/{key}")
def admin_update_setting(key: str, body: SettingIn, site=Depends(get_site_settings)):
    if key in OBJECT_SETTINGS and not isinstance(body.value, dict):
        raise HTTPException(400, f"Setting {key} must be a JSON object")
    row: SiteSetting = site.set_value(key, body.value)
    logger.info("Site setting %s updated", key)
    return {"key": row.key, "value": row.value}
