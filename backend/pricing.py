import logging
from collections import namedtuple
from datetime import date, time

logger = logging.getLogger(__name__)

# ================== LOCATIONS ==================
LOCATIONS = {
    "headquarters": {
        "name": "Firmensitz",
        "address": "Alte Poststraße 152, 8020 Graz",
        "fee": 0,
    },
    "airport": {
        "name": "Flughafen",
        "address": "Flughafenstraße 51, 8073 Feldkirchen bei Graz",
        "fee": 20,
    },
    "train_station": {
        "name": "Hauptbahnhof",
        "address": "Europaplatz 12, 8020 Graz",
        "fee": 20,
    },
    # any custom address is charged the same flat fee
    "custom": {
        "name": "Custom Location",
        "address": None,
        "fee": 20,
    },
}

DEFAULT_CLEANING_FEE = 7
DEFAULT_UNLIMITED_KM_FEE_PER_DAY = 15
DEFAULT_AFTER_HOURS_FEE = 30

OPENING_HOUR = 7
CLOSING_HOUR = 20

PRICE_TOLERANCE = 0.01

FeeBreakdown = namedtuple("FeeBreakdown", [
    "rental_days", "price_per_day", "rental_cost", "cleaning_fee",
    "pickup_fee", "return_fee", "location_fees", "after_hours_fee",
    "unlimited_km_fee", "total",
])

PaymentSplit = namedtuple("PaymentSplit", ["payment_type", "amount_due_now", "deposit_amount", "remaining_amount"])


class PriceMismatch(Exception):
    def __init__(self, client_total, server_total):
        self.client_total = client_total
        self.server_total = server_total
        super().__init__(f"Total mismatch: client {client_total}, server {server_total}")


def to_cents(amount) -> int:
    return int(round(amount * 100))


def location_fee(key: str, address: str = None) -> float:
    try:
        location = LOCATIONS[key]
    except KeyError:
        raise ValueError(f"Unknown location: {key}")
    if key == "custom" and not (address or "").strip():
        raise ValueError("A custom location requires an address")
    return location["fee"]


def location_address(key: str, address: str = None):
    if key == "custom":
        return address
    return LOCATIONS[key]["address"]


def rental_days(pickup_date: date, return_date: date) -> int:
    return max(1, (return_date - pickup_date).days)


def is_after_hours(t: time) -> bool:
    return t.hour < OPENING_HOUR or t.hour >= CLOSING_HOUR


def after_hours_fee(pickup_time: time, return_time: time, fee=DEFAULT_AFTER_HOURS_FEE) -> float:
    if is_after_hours(pickup_time) or is_after_hours(return_time):
        return fee
    return 0


def compute_fees(price_per_day, days, cleaning_fee=DEFAULT_CLEANING_FEE,
                 pickup_fee=0, return_fee=0, after_hours=0,
                 unlimited_km=False,
                 unlimited_km_fee_per_day=DEFAULT_UNLIMITED_KM_FEE_PER_DAY) -> FeeBreakdown:
    """Server-side total: days x price + cleaning + location fees + after-hours + unlimited km."""
    if days < 1:
        raise ValueError("rental_days must be at least 1")

    rental_cost = round(days * price_per_day, 2)
    unlimited_km_fee = round(unlimited_km_fee_per_day * days, 2) if unlimited_km else 0
    total = rental_cost + cleaning_fee + pickup_fee + return_fee + after_hours + unlimited_km_fee

    return FeeBreakdown(
        rental_days=days,
        price_per_day=price_per_day,
        rental_cost=rental_cost,
        cleaning_fee=cleaning_fee,
        pickup_fee=pickup_fee,
        return_fee=return_fee,
        location_fees=round(pickup_fee + return_fee, 2),
        after_hours_fee=after_hours,
        unlimited_km_fee=unlimited_km_fee,
        total=round(total, 2),
    )


def check_client_total(client_total, server_total, reject=False) -> bool:
    """True when the client's total matches the server's within one cent."""
    if client_total is None:
        return True
    if abs(client_total - server_total) <= PRICE_TOLERANCE + 1e-9:
        return True

    logger.warning("Total mismatch: client %s, server %s", client_total, server_total)
    if reject:
        raise PriceMismatch(client_total, server_total)
    return False


def split_payment(total, price_per_day, payment_method) -> PaymentSplit:
    # cash customers pay one rental day online, the rest at pickup
    if payment_method == "cash":
        deposit = round(min(price_per_day, total), 2)
        return PaymentSplit("deposit", deposit, deposit, round(total - deposit, 2))
    return PaymentSplit("full", total, None, 0)
