"""Runtime configuration for the work queue."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(slots=True)
class Settings:
    """Engine settings. Every field can be overridden from the environment."""

    db_path: str = "walletqueue.db"
    relay_poll_interval: float = 0.5
    # None waits for relays forever.
    relay_connect_timeout: float | None = 60.0
    max_attempts: int = 5
    preferred_currency: str = "USD"

    @classmethod
    def from_env(cls, db_path: str | None = None) -> Settings:
        """Load settings from WALLETQUEUE_* environment variables."""

        return cls(
            db_path=db_path or os.getenv("WALLETQUEUE_DB_PATH", "walletqueue.db"),
            relay_poll_interval=float(os.getenv("WALLETQUEUE_RELAY_POLL_INTERVAL", "0.5")),
            relay_connect_timeout=_env_optional_float("WALLETQUEUE_RELAY_CONNECT_TIMEOUT", 60.0),
            max_attempts=int(os.getenv("WALLETQUEUE_MAX_ATTEMPTS", "5")),
            preferred_currency=os.getenv("WALLETQUEUE_PREFERRED_CURRENCY", "USD").upper(),
        )

    def validate(self) -> None:
        """Raise ValueError for settings the engine cannot work with."""

        if self.relay_poll_interval <= 0:
            raise ValueError("WALLETQUEUE_RELAY_POLL_INTERVAL must be > 0.")
        if self.relay_connect_timeout is not None and self.relay_connect_timeout <= 0:
            raise ValueError("WALLETQUEUE_RELAY_CONNECT_TIMEOUT must be > 0 or 'none'.")
        if self.max_attempts < 1:
            raise ValueError("WALLETQUEUE_MAX_ATTEMPTS must be >= 1.")


def _env_optional_float(name: str, default: float | None) -> float | None:
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip().lower()
    if raw in ("", "none", "off"):
        return None
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid {name} value: {raw!r}") from error
