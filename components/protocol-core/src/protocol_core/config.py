"""Configuration for the protocol core.

Shared by the scheduler and the API service so that env var semantics stay
consistent.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "UTC"
DEFAULT_STORE_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class CoreConfig:
    """Configuration for scheduling and store access.

    Attributes:
        timezone: IANA zone used to interpret ``scheduled`` trigger times.
        store_timeout_seconds: Upper bound for a single store call.
    """

    timezone: str = DEFAULT_TIMEZONE
    store_timeout_seconds: float = DEFAULT_STORE_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> "CoreConfig":
        """Create CoreConfig from environment variables."""
        raw_zone = (os.getenv("PROTOCOL_TIMEZONE") or DEFAULT_TIMEZONE).strip()
        try:
            ZoneInfo(raw_zone)
            zone = raw_zone
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown PROTOCOL_TIMEZONE %r, using UTC", raw_zone)
            zone = DEFAULT_TIMEZONE

        raw_timeout = os.getenv("STORE_TIMEOUT_SECONDS", "")
        try:
            timeout = float(raw_timeout) if raw_timeout else DEFAULT_STORE_TIMEOUT_SECONDS
        except ValueError:
            timeout = DEFAULT_STORE_TIMEOUT_SECONDS
        if timeout <= 0:
            timeout = DEFAULT_STORE_TIMEOUT_SECONDS
        return cls(timezone=zone, store_timeout_seconds=timeout)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)
