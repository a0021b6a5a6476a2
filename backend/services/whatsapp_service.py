import logging

from twilio.rest import Client

from config import settings

logger = logging.getLogger(__name__)


def send_whatsapp(message: str) -> bool:
    if not settings.whatsapp_enabled:
        return False

    client = Client(settings.TWILIO_SID, settings.TWILIO_AUTH_TOKEN)
    try:
        client.messages.create(
            body=message,
            from_=f'whatsapp:{settings.TWILIO_WHATSAPP_FROM}',
            to=f'whatsapp:{settings.ADMIN_WHATSAPP_TO}'
        )
    except Exception:
        logger.exception("WhatsApp notification failed")
        return False
    return True


def booking_summary(booking, vehicle) -> str:
    lines = [
        "Neue Buchung bestätigt",
        f"Fahrzeug: {vehicle.brand} {vehicle.model}",
        f"Kunde: {booking.customer_name} ({booking.customer_phone})",
        f"Abholung: {booking.pickup_at.strftime('%d.%m.%Y %H:%M')}",
        f"Rückgabe: {booking.return_at.strftime('%d.%m.%Y %H:%M')}",
        f"Gesamt: €{booking.total_price:.2f} ({booking.payment_method})",
    ]
    if booking.is_test_mode:
        lines.insert(0, "[TEST]")
    return "\n".join(lines)
