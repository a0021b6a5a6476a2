import json
import logging

import stripe

from config import settings
from pricing import to_cents

logger = logging.getLogger(__name__)

stripe.set_app_info("EasyRentCars Integration", version="1.0.0")


class PaymentProviderError(Exception):
    pass


class WebhookSignatureError(Exception):
    pass


def is_stripe_configured() -> bool:
    return bool(settings.STRIPE_SECRET_KEY)


def _client():
    if not is_stripe_configured():
        raise PaymentProviderError("Stripe secret key not configured")
    stripe.api_key = settings.STRIPE_SECRET_KEY
    return stripe


def _line(name, description, unit_amount, quantity=1):
    return {
        "price_data": {
            "currency": settings.CURRENCY,
            "product_data": {"name": name, "description": description},
            "unit_amount": to_cents(unit_amount),
        },
        "quantity": quantity,
    }


def build_line_items(vehicle_name, fees, split):
    """Checkout lines: one deposit line for cash bookings, an itemised bill otherwise."""
    if split.payment_type == "deposit":
        return [_line(
            f"Deposit - {vehicle_name}",
            f"1 day rental deposit (remaining EUR{split.remaining_amount:.2f} due at pickup)",
            split.deposit_amount,
        )]

    days_label = "Tag" if fees.rental_days == 1 else "Tage"
    items = [_line(vehicle_name, f"{fees.rental_days} {days_label} Miete", fees.price_per_day, fees.rental_days)]
    if fees.cleaning_fee > 0:
        items.append(_line("Cleaning Fee", "One-time cleaning fee", fees.cleaning_fee))
    if fees.location_fees > 0:
        items.append(_line("Location Fees", "Pickup and Return Fees", fees.location_fees))
    if fees.after_hours_fee > 0:
        items.append(_line("After Hours Service", "Service outside regular business hours", fees.after_hours_fee))
    if fees.unlimited_km_fee > 0:
        items.append(_line("Unlimited Kilometers", f"{fees.rental_days} x unlimited kilometers", fees.unlimited_km_fee))
    return items


def create_checkout_session(line_items, metadata, customer_email, success_url, cancel_url, expires_at):
    try:
        session = _client().checkout.Session.create(
            payment_method_types=["card"],
            line_items=line_items,
            mode="payment",
            success_url=f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=cancel_url,
            customer_email=customer_email,
            metadata=metadata,
            expires_at=expires_at,
        )
    except stripe.StripeError as e:
        logger.error("Stripe checkout session creation failed: %s", e)
        raise PaymentProviderError(str(e)) from e
    return {"id": session.id, "url": session.url}


def retrieve_checkout_session(session_id):
    try:
        session = _client().checkout.Session.retrieve(session_id)
    except stripe.StripeError as e:
        logger.error("Stripe session lookup failed for %s: %s", session_id, e)
        raise PaymentProviderError(str(e)) from e
    return {
        "id": session.id,
        "payment_status": session.payment_status,
        "payment_intent": session.payment_intent,
        "metadata": session.metadata.to_dict() if session.metadata else {},
    }


def create_customer(email, name, metadata=None):
    try:
        customer = _client().Customer.create(email=email, name=name, metadata=metadata or {})
    except stripe.StripeError as e:
        logger.error("Stripe customer creation failed: %s", e)
        raise PaymentProviderError(str(e)) from e
    return customer.id


def create_setup_intent(customer_id, metadata):
    try:
        intent = _client().SetupIntent.create(
            customer=customer_id,
            payment_method_types=["card"],
            usage="off_session",
            metadata=metadata,
        )
    except stripe.StripeError as e:
        logger.error("Stripe setup intent creation failed: %s", e)
        raise PaymentProviderError(str(e)) from e
    return {"id": intent.id, "client_secret": intent.client_secret}


def create_payment_intent(amount_cents, metadata):
    try:
        intent = _client().PaymentIntent.create(
            amount=int(amount_cents),
            currency=settings.CURRENCY,
            automatic_payment_methods={"enabled": True},
            metadata=metadata,
        )
    except stripe.StripeError as e:
        logger.error("Stripe payment intent creation failed: %s", e)
        raise PaymentProviderError(str(e)) from e
    return {"id": intent.id, "client_secret": intent.client_secret}


def create_refund(payment_intent_id):
    try:
        refund = _client().Refund.create(payment_intent=payment_intent_id, reason="requested_by_customer")
    except stripe.StripeError as e:
        logger.error("Stripe refund failed for %s: %s", payment_intent_id, e)
        raise PaymentProviderError(str(e)) from e
    logger.info("Refund %s initiated for %s", refund.id, payment_intent_id)
    return refund.id


def construct_webhook_event(payload: bytes, signature: str) -> dict:
    """Verify the Stripe-Signature header and return the event as a plain dict."""
    try:
        stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as e:
        raise WebhookSignatureError(str(e)) from e
    return json.loads(payload)
