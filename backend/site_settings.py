"""Runtime-editable site settings backed by the ``site_settings`` table."""
import logging
import time

from fastapi import Depends, Request

from database import get_db
from fraud import normalize_phone
from pricing import (
    DEFAULT_AFTER_HOURS_FEE, DEFAULT_CLEANING_FEE, DEFAULT_UNLIMITED_KM_FEE_PER_DAY,
)
from models import SiteSetting

logger = logging.getLogger(__name__)

_MISSING = object()

# settings read through typed accessors; their value must be a JSON object
OBJECT_SETTINGS = {"cleaning_fee", "unlimited_km_fee", "after_hours_fee", "test_mode", "site_logo", "blacklist"}


class SettingsCache:
    """Small TTL cache; one instance lives on ``app.state`` and is injected per request."""

    def __init__(self, ttl: float = 300, clock=time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries = {}

    def get(self, key, loader):
        entry = self._entries.get(key)
        now = self.clock()
        if entry is not None and entry[1] > now:
            return entry[0]
        value = loader()
        self._entries[key] = (value, now + self.ttl)
        return value

    def invalidate(self, key=None):
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __contains__(self, key):
        entry = self._entries.get(key)
        return entry is not None and entry[1] > self.clock()


class SiteSettingsService:
    def __init__(self, db, cache: SettingsCache):
        self.db = db
        self.cache = cache

    def _load(self, key):
        row = self.db.query(SiteSetting).filter(SiteSetting.key == key).first()
        return row.value if row else _MISSING

    def get_value(self, key, default=None):
        value = self.cache.get(key, lambda: self._load(key))
        return default if value is _MISSING else value

    def set_value(self, key, value):
        row = self.db.query(SiteSetting).filter(SiteSetting.key == key).first()
        if row is None:
            row = SiteSetting(key=key, value=value)
            self.db.add(row)
        else:
            row.value = value
        self.db.commit()
        self.cache.invalidate(key)
        return row

    def all(self):
        return {row.key: row.value for row in self.db.query(SiteSetting).order_by(SiteSetting.key).all()}

    # ---- typed accessors ----
    def _field(self, key, field, default):
        value = self.get_value(key)
        if not isinstance(value, dict):
            return default
        return value.get(field, default)

    def _amount(self, key, field, default):
        amount = self._field(key, field, default)
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount < 0:
            logger.warning("Ignoring invalid %s.%s=%r, using %s", key, field, amount, default)
            return default
        return amount

    def cleaning_fee(self):
        return self._amount("cleaning_fee", "amount", DEFAULT_CLEANING_FEE)

    def unlimited_km_fee_per_day(self):
        return self._amount("unlimited_km_fee", "amount_per_day", DEFAULT_UNLIMITED_KM_FEE_PER_DAY)

    def after_hours_fee(self):
        return self._amount("after_hours_fee", "amount", DEFAULT_AFTER_HOURS_FEE)

    def test_mode_enabled(self) -> bool:
        return bool(self._field("test_mode", "enabled", False))

    def logo_url(self) -> str:
        url = self._field("site_logo", "url", "")
        return url if isinstance(url, str) else ""

    def blacklist(self):
        emails = self._field("blacklist", "emails", [])
        phones = self._field("blacklist", "phones", [])
        if not isinstance(emails, list):
            emails = []
        if not isinstance(phones, list):
            phones = []
        return (
            {e.strip().lower() for e in emails if isinstance(e, str)},
            {normalize_phone(p) for p in phones if isinstance(p, str)},
        )


def get_site_settings(request: Request, db=Depends(get_db)) -> SiteSettingsService:
    return SiteSettingsService(db, request.app.state.settings_cache)
