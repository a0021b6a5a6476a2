from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


# ================== SETTINGS ==================
class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./easyrent.db"
    SITE_URL: str = "https://easyrentcars.rentals"
    ALLOWED_ORIGINS: List[str] = [
        "https://easyrentcars.rentals",
        "https://www.easyrentcars.rentals",
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # mail relay; sending is skipped while MAIL_USERNAME is empty
    MAIL_USERNAME: str = ""
    MAIL_PASSWORD: str = ""
    MAIL_FROM: str = "info@easyrentcars.rentals"
    MAIL_FROM_NAME: str = "EasyRentCars"
    MAIL_SERVER: str = "smtp.gmail.com"
    MAIL_PORT: int = 587
    BUSINESS_EMAIL: str = "easyrentgraz@gmail.com"

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    CURRENCY: str = "eur"

    ADMIN_USER: str = "admin"
    ADMIN_PASS: str = "admin123"

    TWILIO_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_WHATSAPP_FROM: Optional[str] = None
    ADMIN_WHATSAPP_TO: Optional[str] = None

    LOG_LEVEL: str = "INFO"
    REJECT_PRICE_MISMATCH: bool = False
    SETTINGS_CACHE_TTL: int = 300

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow"
    )

    @property
    def mail_enabled(self) -> bool:
        return bool(self.MAIL_USERNAME and self.MAIL_PASSWORD)

    @property
    def whatsapp_enabled(self) -> bool:
        return all([self.TWILIO_SID, self.TWILIO_AUTH_TOKEN,
                    self.TWILIO_WHATSAPP_FROM, self.ADMIN_WHATSAPP_TO])


settings = Settings()

# ================== BOOKING CONSTANTS ==================
VERIFICATION_TTL_MINUTES = 20
CHECKOUT_SESSION_TTL_MINUTES = 30
HOLD_GRACE_MINUTES = 5
PENDING_PAYMENT_TTL_MINUTES = 60
CARD_SETUP_TTL_MINUTES = 120
