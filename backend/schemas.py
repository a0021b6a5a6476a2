"""
Request schemas

Bodies accepted by the public booking endpoints and the admin router.
"""
from datetime import date, datetime, time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator


class BookingRequest(BaseModel):
    vehicle_id: str
    customer_name: str = Field(..., min_length=1, max_length=200)
    customer_email: EmailStr
    customer_phone: str = Field(..., min_length=3, max_length=40)
    customer_age: int = Field(..., ge=18, le=120)
    pickup_date: date
    return_date: date
    pickup_time: time = time(10, 0)
    return_time: time = time(10, 0)
    pickup_location: str = "headquarters"
    return_location: str = "headquarters"
    pickup_location_address: Optional[str] = None
    return_location_address: Optional[str] = None
    unlimited_kilometers: bool = False
    payment_method: Literal["stripe", "cash"] = "stripe"
    language: str = "de"
    notes: Optional[str] = Field(None, max_length=2000)
    contract_number: Optional[str] = None
    total_amount: Optional[float] = Field(None, description="Total as computed by the client")

    @model_validator(mode="after")
    def check_dates(self):
        if self.return_at <= self.pickup_at:
            raise ValueError("return must be after pickup")
        return self

    @property
    def pickup_at(self) -> datetime:
        return datetime.combine(self.pickup_date, self.pickup_time)

    @property
    def return_at(self) -> datetime:
        return datetime.combine(self.return_date, self.return_time)


class CheckoutRequest(BookingRequest):
    success_url: str
    cancel_url: str


class FraudCheckRequest(BaseModel):
    email: str = Field(..., min_length=3)
    phone: str = Field(..., min_length=3)
    fingerprint: Optional[str] = None


class CardVerificationRequest(BaseModel):
    booking_id: str
    customer_email: Optional[str] = None


class PaymentIntentRequest(BaseModel):
    amount: int = Field(..., description="Amount in cents")
    booking_details: Optional[Dict[str, Any]] = None


class BookingEmailRequest(BaseModel):
    booking_id: str
    customer_email: str


class ContactRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    phone: Optional[str] = None
    message: str = Field(..., min_length=1, max_length=5000)
    language: str = "en"


class EmailVerificationRequest(BaseModel):
    booking_id: str
    email: str
    language: str = "en"


class VerifyTokenRequest(BaseModel):
    token: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    session_id: Optional[str] = None


# ================== ADMIN ==================
class VehicleIn(BaseModel):
    brand: str
    model: str
    year: Optional[int] = Field(None, ge=1950, le=2100)
    category: Literal["Economy", "Standard", "Premium", "Luxury"] = "Standard"
    transmission: Literal["Manual", "Automatic"] = "Manual"
    fuel_type: Literal["Petrol", "Diesel", "Electric", "Hybrid"] = "Petrol"
    seats: int = Field(5, ge=1, le=9)
    doors: int = Field(4, ge=2, le=5)
    price_per_day: float = Field(..., gt=0)
    minimum_age: int = Field(21, ge=18)
    status: Literal["available", "rented", "maintenance"] = "available"
    images: List[str] = []
    features: Dict[str, Any] = {}
    is_featured: bool = False
    badge_text: Optional[str] = None
    badge_expires_at: Optional[datetime] = None


class VehicleUpdate(BaseModel):
    brand: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    category: Optional[Literal["Economy", "Standard", "Premium", "Luxury"]] = None
    transmission: Optional[Literal["Manual", "Automatic"]] = None
    fuel_type: Optional[Literal["Petrol", "Diesel", "Electric", "Hybrid"]] = None
    seats: Optional[int] = None
    doors: Optional[int] = None
    price_per_day: Optional[float] = Field(None, gt=0)
    minimum_age: Optional[int] = None
    status: Optional[Literal["available", "rented", "maintenance"]] = None
    images: Optional[List[str]] = None
    features: Optional[Dict[str, Any]] = None
    is_featured: Optional[bool] = None
    badge_text: Optional[str] = None
    badge_expires_at: Optional[datetime] = None


class VehicleBlockIn(BaseModel):
    vehicle_id: str
    blocked_from: datetime
    blocked_until: datetime
    reason: Optional[str] = None

    @model_validator(mode="after")
    def check_range(self):
        if self.blocked_until <= self.blocked_from:
            raise ValueError("blocked_until must be after blocked_from")
        return self


class StatusUpdate(BaseModel):
    status: str


class SettingIn(BaseModel):
    value: Any
