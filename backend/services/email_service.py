import logging
from html import escape

from fastapi_mail import ConnectionConfig, FastMail, MessageSchema

from config import VERIFICATION_TTL_MINUTES, settings

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("en", "de")


def mail_config() -> ConnectionConfig:
    return ConnectionConfig(
        MAIL_USERNAME=settings.MAIL_USERNAME,
        MAIL_PASSWORD=settings.MAIL_PASSWORD,
        MAIL_FROM=settings.MAIL_FROM,
        MAIL_FROM_NAME=settings.MAIL_FROM_NAME,
        MAIL_PORT=settings.MAIL_PORT,
        MAIL_SERVER=settings.MAIL_SERVER,
        MAIL_STARTTLS=True,
        MAIL_SSL_TLS=False,
        USE_CREDENTIALS=True,
    )


async def send_email(recipients, subject, html_body, reply_to=None) -> bool:
    """Send an HTML mail; returns False instead of raising so callers can carry on."""
    if not settings.mail_enabled:
        logger.info("Mail not configured, skipping '%s' to %s", subject, recipients)
        return False

    message = MessageSchema(
        subject=subject,
        recipients=list(recipients),
        body=html_body,
        subtype="html",
        reply_to=[reply_to] if reply_to else [],
    )
    try:
        await FastMail(mail_config()).send_message(message)
    except Exception:
        logger.exception("Failed to send email '%s' to %s", subject, recipients)
        return False
    return True


def _lang(language):
    return language if language in SUPPORTED_LANGUAGES else "en"


def _layout(title, content, logo_url=""):
    logo = f'<img src="{escape(logo_url)}" alt="EasyRentCars" style="max-height:60px">' if logo_url else "<h1>EasyRentCars</h1>"
    return f"""
    <html>
    <body style="font-family:Segoe UI,Tahoma,sans-serif;color:#333;max-width:600px;margin:0 auto">
        <div style="background:#0B0C0F;color:#D4AF37;padding:30px;text-align:center">{logo}</div>
        <div style="padding:30px">
            <h2>{title}</h2>
            {content}
        </div>
        <hr>
        <p style="font-size:12px;color:#666;text-align:center">
            EasyRentCars | Alte Poststraße 152, 8020 Graz, Austria | {escape(settings.MAIL_FROM)}
        </p>
    </body>
    </html>
    """


# ================== VERIFICATION ==================
VERIFICATION_TEXT = {
    "en": {
        "subject": "Confirm Your Booking - EasyRentCars",
        "title": "Confirm Your Email Address",
        "intro": "Thank you for choosing EasyRentCars! To complete your booking, please verify your email address.",
        "button": "Verify Email",
        "expires": f"This link will expire in {VERIFICATION_TTL_MINUTES} minutes.",
        "ignore": "If you didn't request this booking, please ignore this email.",
    },
    "de": {
        "subject": "Bestätigen Sie Ihre Buchung - EasyRentCars",
        "title": "Bestätigen Sie Ihre E-Mail-Adresse",
        "intro": "Vielen Dank, dass Sie sich für EasyRentCars entschieden haben! "
                 "Um Ihre Buchung abzuschließen, verifizieren Sie bitte Ihre E-Mail-Adresse.",
        "button": "E-Mail verifizieren",
        "expires": f"Dieser Link läuft in {VERIFICATION_TTL_MINUTES} Minuten ab.",
        "ignore": "Wenn Sie diese Buchung nicht angefordert haben, ignorieren Sie bitte diese E-Mail.",
    },
}


def render_verification_email(link, language="en", logo_url=""):
    t = VERIFICATION_TEXT[_lang(language)]
    content = f"""
        <p>{t['intro']}</p>
        <p style="text-align:center">
            <a href="{escape(link)}" style="display:inline-block;padding:16px 32px;background-color:#D4AF37;color:#000;text-decoration:none;border-radius:8px;font-weight:bold">{t['button']}</a>
        </p>
        <p style="word-break:break-all;font-family:monospace">{escape(link)}</p>
        <p><strong>{t['expires']}</strong></p>
        <p style="color:#666;font-size:14px">{t['ignore']}</p>
    """
    return t["subject"], _layout(t["title"], content, logo_url)


async def send_verification_email(email, link, language="en", logo_url="") -> bool:
    subject, body = render_verification_email(link, language, logo_url)
    sent = await send_email([email], subject, body)
    if not sent:
        logger.info("Verification link for %s: %s", email, link)
    return sent


# ================== BOOKING CONFIRMATION ==================
CONFIRMATION_TEXT = {
    "en": {
        "subject": "Booking Confirmation - EasyRentCars Graz",
        "title": "Booking Confirmation",
        "thank_you": "Thank you for choosing EasyRentCars!",
        "booking_id": "Booking ID",
        "vehicle": "Vehicle",
        "pickup": "Pickup",
        "return": "Return",
        "rental": "Rental Cost",
        "days": "days",
        "day": "day",
        "cleaning_fee": "Cleaning Fee",
        "location_fee": "Location Fees",
        "after_hours_fee": "After Hours Service",
        "unlimited_km": "Unlimited Kilometers",
        "total": "Total",
        "deposit_paid": "Deposit Paid Online",
        "remaining_due": "Remaining Due at Pickup (cash)",
        "paid_in_full": "Full payment completed online. No additional payment required at pickup.",
        "bring": "Please bring a valid driving license and an ID card or passport.",
        "date_format": "%B %d, %Y %H:%M",
    },
    "de": {
        "subject": "Buchungsbestätigung - EasyRentCars Graz",
        "title": "Buchungsbestätigung",
        "thank_you": "Vielen Dank, dass Sie sich für EasyRentCars entschieden haben!",
        "booking_id": "Buchungs-ID",
        "vehicle": "Fahrzeug",
        "pickup": "Abholung",
        "return": "Rückgabe",
        "rental": "Mietkosten",
        "days": "Tage",
        "day": "Tag",
        "cleaning_fee": "Reinigungsgebühr",
        "location_fee": "Standortgebühren",
        "after_hours_fee": "Außerhalb der Geschäftszeiten",
        "unlimited_km": "Unbegrenzte Kilometer",
        "total": "Gesamt",
        "deposit_paid": "Online bezahlte Anzahlung",
        "remaining_due": "Restbetrag bei Abholung (bar)",
        "paid_in_full": "Vollständig online bezahlt. Bei der Abholung ist keine weitere Zahlung nötig.",
        "bring": "Bitte bringen Sie einen gültigen Führerschein und einen Ausweis oder Reisepass mit.",
        "date_format": "%d.%m.%Y um %H:%M",
    },
}


def _row(label, amount):
    return f"<tr><td>{label}</td><td style='text-align:right'>€{amount:.2f}</td></tr>"


def render_booking_confirmation(booking, vehicle, logo_url=""):
    t = CONFIRMATION_TEXT[_lang(booking.language)]
    days_label = t["day"] if booking.rental_days == 1 else t["days"]

    rows = [_row(f"{t['rental']} ({booking.rental_days} {days_label})", booking.rental_cost or 0)]
    if booking.cleaning_fee:
        rows.append(_row(t["cleaning_fee"], booking.cleaning_fee))
    if booking.location_fees:
        rows.append(_row(t["location_fee"], booking.location_fees))
    if booking.after_hours_fee:
        rows.append(_row(t["after_hours_fee"], booking.after_hours_fee))
    if booking.unlimited_km_fee:
        rows.append(_row(t["unlimited_km"], booking.unlimited_km_fee))
    rows.append(f"<tr><th>{t['total']}</th><th style='text-align:right'>€{booking.total_price:.2f}</th></tr>")

    if booking.payment_method == "cash" and booking.deposit_amount:
        payment_info = (f"<p>{t['deposit_paid']}: €{booking.deposit_amount:.2f}<br>"
                        f"{t['remaining_due']}: €{(booking.remaining_amount or 0):.2f}</p>")
    else:
        payment_info = f"<p>{t['paid_in_full']}</p>"

    content = f"""
        <p>{t['thank_you']}</p>
        <p><b>{t['booking_id']}:</b> {booking.id}</p>
        <p><b>{t['vehicle']}:</b> {escape(vehicle.brand)} {escape(vehicle.model)}</p>
        <p><b>{t['pickup']}:</b> {booking.pickup_at.strftime(t['date_format'])} - {escape(booking.pickup_location_address or booking.pickup_location or '')}</p>
        <p><b>{t['return']}:</b> {booking.return_at.strftime(t['date_format'])} - {escape(booking.return_location_address or booking.return_location or '')}</p>
        <table style="width:100%">{''.join(rows)}</table>
        {payment_info}
        <p>{t['bring']}</p>
    """
    return t["subject"], _layout(t["title"], content, logo_url)


async def send_booking_confirmation(booking, vehicle, logo_url="") -> bool:
    subject, body = render_booking_confirmation(booking, vehicle, logo_url)
    return await send_email([booking.customer_email, settings.BUSINESS_EMAIL], subject, body)


# ================== CONTACT ==================
def render_contact_message(name, email, phone, message):
    content = f"""
        <p>You have received a new message from your website contact form.</p>
        <p><b>Name:</b> {escape(name)}</p>
        <p><b>Email:</b> {escape(email)}</p>
        <p><b>Phone:</b> {escape(phone or '-')}</p>
        <p><b>Message:</b></p>
        <p style="white-space:pre-wrap">{escape(message)}</p>
    """
    return "New Contact Form Message - EasyRentCars", _layout("New Contact Form Submission", content)


async def send_contact_message(name, email, phone, message) -> bool:
    subject, body = render_contact_message(name, email, phone, message)
    return await send_email([settings.BUSINESS_EMAIL], subject, body, reply_to=email)
