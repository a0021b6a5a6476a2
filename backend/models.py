import uuid

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text,
)
from sqlalchemy.orm import relationship

from booking_status import BookingStatus, PaymentStatus, utcnow
from database import Base


def new_id():
    return str(uuid.uuid4())


class Vehicle(Base):
    __tablename__ = "vehicles"

    id = Column(String(36), primary_key=True, default=new_id)
    brand = Column(String, nullable=False)
    model = Column(String, nullable=False)
    year = Column(Integer)
    category = Column(String, default="Standard")  # Economy | Standard | Premium | Luxury
    transmission = Column(String, default="Manual")  # Manual | Automatic
    fuel_type = Column(String, default="Petrol")
    seats = Column(Integer, default=5)
    doors = Column(Integer, default=4)
    price_per_day = Column(Float, nullable=False)
    minimum_age = Column(Integer, default=21)
    status = Column(String, default="available")  # available | rented | maintenance
    images = Column(JSON, default=list)
    features = Column(JSON, default=dict)
    is_featured = Column(Boolean, default=False)
    badge_text = Column(String)
    badge_expires_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    bookings = relationship("Booking", back_populates="vehicle")
    blocks = relationship("VehicleBlock", back_populates="vehicle", cascade="all, delete-orphan")

    @property
    def active_badge(self):
        if not self.badge_text:
            return None
        if self.badge_expires_at and self.badge_expires_at <= utcnow():
            return None
        return self.badge_text

    def to_dict(self):
        return {
            "id": self.id,
            "brand": self.brand,
            "model": self.model,
            "year": self.year,
            "category": self.category,
            "transmission": self.transmission,
            "fuel_type": self.fuel_type,
            "seats": self.seats,
            "doors": self.doors,
            "price_per_day": self.price_per_day,
            "minimum_age": self.minimum_age,
            "status": self.status,
            "images": list(self.images or []),
            "features": dict(self.features or {}),
            "is_featured": self.is_featured,
            "badge": self.active_badge,
        }


class VehicleBlock(Base):
    __tablename__ = "vehicle_blocks"

    id = Column(Integer, primary_key=True)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=False, index=True)
    blocked_from = Column(DateTime, nullable=False)
    blocked_until = Column(DateTime, nullable=False)
    reason = Column(String)
    created_at = Column(DateTime, default=utcnow)

    vehicle = relationship("Vehicle", back_populates="blocks")

    def to_dict(self):
        return {
            "id": self.id,
            "vehicle_id": self.vehicle_id,
            "blocked_from": self.blocked_from.isoformat(),
            "blocked_until": self.blocked_until.isoformat(),
            "reason": self.reason,
        }


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=new_id)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=False, index=True)

    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False, index=True)
    customer_phone = Column(String, nullable=False)
    customer_age = Column(Integer)

    pickup_at = Column(DateTime, nullable=False)
    return_at = Column(DateTime, nullable=False)
    pickup_location = Column(String)
    return_location = Column(String)
    pickup_location_address = Column(String)
    return_location_address = Column(String)

    rental_days = Column(Integer, nullable=False, default=1)
    rental_cost = Column(Float, default=0)
    cleaning_fee = Column(Float, default=0)
    pickup_fee = Column(Float, default=0)
    return_fee = Column(Float, default=0)
    after_hours_fee = Column(Float, default=0)
    unlimited_kilometers = Column(Boolean, default=False)
    unlimited_km_fee = Column(Float, default=0)
    total_price = Column(Float, nullable=False)

    booking_status = Column(String, nullable=False, default=BookingStatus.PENDING_VERIFICATION.value)
    payment_method = Column(String, nullable=False, default="stripe")  # stripe | cash
    payment_status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    deposit_amount = Column(Float)
    remaining_amount = Column(Float)

    stripe_session_id = Column(String, unique=True)
    stripe_payment_intent_id = Column(String)
    stripe_setup_intent_id = Column(String, index=True)
    stripe_customer_id = Column(String)
    stripe_payment_method_id = Column(String)

    language = Column(String, default="de")
    notes = Column(Text)
    contract_number = Column(String)
    guest_link_token = Column(String, default=new_id)
    is_test_mode = Column(Boolean, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    email_verified_at = Column(DateTime)
    confirmed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    expired_at = Column(DateTime)
    paid_at = Column(DateTime)
    deposit_paid_at = Column(DateTime)

    vehicle = relationship("Vehicle", back_populates="bookings")
    verifications = relationship("EmailVerification", back_populates="booking")

    @property
    def location_fees(self):
        return round((self.pickup_fee or 0) + (self.return_fee or 0), 2)

    def to_dict(self):
        return {
            "id": self.id,
            "vehicle_id": self.vehicle_id,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "customer_age": self.customer_age,
            "pickup_at": self.pickup_at.isoformat(),
            "return_at": self.return_at.isoformat(),
            "pickup_location": self.pickup_location,
            "return_location": self.return_location,
            "pickup_location_address": self.pickup_location_address,
            "return_location_address": self.return_location_address,
            "rental_days": self.rental_days,
            "rental_cost": self.rental_cost,
            "cleaning_fee": self.cleaning_fee,
            "pickup_fee": self.pickup_fee,
            "return_fee": self.return_fee,
            "after_hours_fee": self.after_hours_fee,
            "unlimited_kilometers": self.unlimited_kilometers,
            "unlimited_km_fee": self.unlimited_km_fee,
            "total_price": self.total_price,
            "booking_status": self.booking_status,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "deposit_amount": self.deposit_amount,
            "remaining_amount": self.remaining_amount,
            "language": self.language,
            "notes": self.notes,
            "is_test_mode": self.is_test_mode,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class EmailVerification(Base):
    __tablename__ = "email_verifications"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    email = Column(String, nullable=False)
    token = Column(String, unique=True, nullable=False, default=new_id)
    expires_at = Column(DateTime, nullable=False)
    verified = Column(Boolean, default=False)
    verified_at = Column(DateTime)
    attempts = Column(Integer, default=0)
    ip_address = Column(String)
    created_at = Column(DateTime, default=utcnow)

    booking = relationship("Booking", back_populates="verifications")


class BookingAttempt(Base):
    __tablename__ = "booking_attempts"

    id = Column(Integer, primary_key=True)
    ip_address = Column(String, index=True)
    email = Column(String, index=True)
    phone = Column(String, index=True)
    fingerprint = Column(String)
    success = Column(Boolean, default=False)
    blocked = Column(Boolean, default=False)
    blocked_reason = Column(String)
    created_at = Column(DateTime, default=utcnow, index=True)


class CheckoutHold(Base):
    __tablename__ = "checkout_holds"

    id = Column(Integer, primary_key=True)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=False, index=True)
    stripe_session_id = Column(String, unique=True)
    pickup_at = Column(DateTime, nullable=False)
    return_at = Column(DateTime, nullable=False)
    customer_email = Column(String)
    expires_at = Column(DateTime, nullable=False)
    status = Column(String, default="active")  # active | converted | expired
    created_at = Column(DateTime, default=utcnow)


class StripeCustomer(Base):
    __tablename__ = "stripe_customers"

    id = Column(Integer, primary_key=True)
    customer_id = Column(String, unique=True, nullable=False)
    email = Column(String, unique=True, nullable=False)
    name = Column(String)
    created_at = Column(DateTime, default=utcnow)


class SiteSetting(Base):
    __tablename__ = "site_settings"

    id = Column(Integer, primary_key=True)
    key = Column(String, unique=True, nullable=False)
    value = Column(JSON)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
