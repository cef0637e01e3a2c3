"""Admin-tunable business parameters stored in the app_settings table."""

import math
from dataclasses import dataclass
from datetime import datetime

from creditflow.credits.models import AppSetting
from creditflow.logging_config import get_logger
from creditflow.settings import settings as config
from creditflow.storage.db import Database, db

logger = get_logger(__name__)

DEFAULT_REGISTRATION_CREDITS = "default_registration_credits"
REFERRAL_BONUS_CREDITS = "referral_bonus_credits"
CREDITS_PER_EUR = "credits_per_eur"
FREE_MONTHLY_CREDITS = "free_monthly_credits"

KNOWN_KEYS = (
    DEFAULT_REGISTRATION_CREDITS,
    REFERRAL_BONUS_CREDITS,
    CREDITS_PER_EUR,
    FREE_MONTHLY_CREDITS,
)


@dataclass(frozen=True)
class CreditSettings:
    """Snapshot of the settings a request needs, read once and passed along."""

    signup_bonus: int = 0
    referral_bonus: int = 0
    credits_per_eur: float = 0.0
    free_monthly_credits: int = 0


def parse_number(raw: str | None, fallback: float = 0) -> float:
    """Coerce a stored string to a number; non-numeric or non-finite gives fallback."""
    if raw is None or raw.strip() == "":
        return fallback
    try:
        value = float(raw)
    except ValueError:
        return fallback
    return value if math.isfinite(value) else fallback


class AppSettingsService:
    """Key/value settings store."""

    def __init__(self, database: Database | None = None):
        self.db = database or db

    def get_setting(self, key: str) -> str:
        """Return the raw value for key, or an empty string."""
        with self.db.session() as session:
            row = session.get(AppSetting, key)
            return row.value if row else ""

    def get_number_setting(self, key: str, fallback: float = 0) -> float:
        return parse_number(self.get_setting(key), fallback)

    def all_settings(self) -> dict[str, str]:
        with self.db.session() as session:
            return {row.key: row.value for row in session.query(AppSetting).all()}

    def upsert_setting(self, key: str, value: str) -> None:
        """Insert or overwrite a setting."""
        with self.db.session() as session:
            row = session.get(AppSetting, key)
            if row:
                row.value = value
                row.updated_at = datetime.utcnow()
            else:
                session.add(AppSetting(key=key, value=value))

        logger.info("app_setting_saved", key=key, value=value)

    def snapshot(self) -> CreditSettings:
        """Read every credit-related setting in one query."""
        raw = self.all_settings()
        free_monthly = parse_number(raw.get(FREE_MONTHLY_CREDITS), math.nan)
        if not math.isfinite(free_monthly):
            free_monthly = config.free_monthly_credits

        return CreditSettings(
            signup_bonus=int(parse_number(raw.get(DEFAULT_REGISTRATION_CREDITS))),
            referral_bonus=int(parse_number(raw.get(REFERRAL_BONUS_CREDITS))),
            credits_per_eur=parse_number(raw.get(CREDITS_PER_EUR)),
            free_monthly_credits=int(free_monthly),
        )


# Singleton instance
app_settings_service = AppSettingsService()
