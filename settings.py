"""Runtime configuration for the reservation engine, loaded from the environment."""

from dataclasses import dataclass
from datetime import timedelta, timezone as dt_timezone, tzinfo as TzInfo
from typing import Optional
from zoneinfo import ZoneInfo
import os

from dotenv import load_dotenv


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class Settings:
    """Explicit configuration handed to the store, services and HTTP app."""

    database_url: Optional[str] = None
    hold_ttl_seconds: int = 600
    lock_timeout_seconds: float = 5.0
    sweep_interval_seconds: int = 60
    timezone: str = 'UTC'
    enforce_operating_hours: bool = False
    max_recurrence_days: int = 366
    run_sweeper: bool = True
    port: int = 5000

    @property
    def hold_ttl(self) -> timedelta:
        return timedelta(seconds=self.hold_ttl_seconds)

    @property
    def tzinfo(self) -> TzInfo:
        if self.timezone.upper() == "UTC":
            return dt_timezone.utc
        return ZoneInfo(self.timezone)

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from the process environment, reading a local .env first."""
        load_dotenv()
        return cls(
            database_url=os.getenv('DATABASE_URL'),
            hold_ttl_seconds=int(os.getenv('HOLD_TTL_SECONDS', 600)),
            lock_timeout_seconds=float(os.getenv('LOCK_TIMEOUT_SECONDS', 5)),
            sweep_interval_seconds=int(os.getenv('SWEEP_INTERVAL_SECONDS', 60)),
            timezone=os.getenv('BOOKING_TIMEZONE', 'UTC'),
            enforce_operating_hours=_env_bool('ENFORCE_OPERATING_HOURS', False),
            max_recurrence_days=int(os.getenv('MAX_RECURRENCE_DAYS', 366)),
            run_sweeper=_env_bool('RUN_SWEEPER', True),
            port=int(os.getenv('PORT', 5000)),
        )
