"""Runtime configuration for token-warden, read from the environment."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 1800  # 30 minutes
DEFAULT_REFRESH_BUFFER = 3600  # refresh tokens expiring within 1 hour
DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8321


def _default_data_dir() -> Path:
    return Path.home() / ".warden"


def _env_int(name: str, default: int) -> int:
    """Read an integer env var, falling back to *default* when unparseable.

    >>> _env_int("WARDEN_TEST_UNSET_VARIABLE", 42)
    42
    """
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s %r, falling back to %d", name, raw, default)
        return default


@dataclass
class WardenConfig:
    """Settings shared by the API server, the scheduler and the CLI.

    >>> cfg = WardenConfig(db_path=":memory:")
    >>> cfg.refresh_interval
    1800
    """

    db_path: str = field(default_factory=lambda: str(_default_data_dir() / "warden.db"))
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    refresh_interval: int = DEFAULT_REFRESH_INTERVAL
    refresh_buffer: int = DEFAULT_REFRESH_BUFFER
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    token_url: str | None = None
    client_id: str | None = None
    recovery_path: str = field(
        default_factory=lambda: str(_default_data_dir() / ".token_recovery.json")
    )
    autostart: bool = True

    def __post_init__(self):
        if self.refresh_interval <= 0:
            raise ValueError("refresh_interval must be positive")
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        if self.refresh_buffer < 0:
            raise ValueError("refresh_buffer cannot be negative")

    @classmethod
    def from_env(cls) -> "WardenConfig":
        """Build a config from ``WARDEN_*`` environment variables."""
        kwargs: dict = {
            "host": os.environ.get("WARDEN_HOST", DEFAULT_HOST),
            "port": _env_int("WARDEN_PORT", DEFAULT_PORT),
            "refresh_interval": _env_int(
                "WARDEN_REFRESH_INTERVAL", DEFAULT_REFRESH_INTERVAL
            ),
            "refresh_buffer": _env_int("WARDEN_REFRESH_BUFFER", DEFAULT_REFRESH_BUFFER),
            "max_concurrency": _env_int(
                "WARDEN_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY
            ),
            "token_url": os.environ.get("WARDEN_TOKEN_URL") or None,
            "client_id": os.environ.get("WARDEN_CLIENT_ID") or None,
            "autostart": os.environ.get("WARDEN_AUTOSTART", "1") not in ("0", "false", "no"),
        }
        if os.environ.get("WARDEN_DB_PATH"):
            kwargs["db_path"] = os.environ["WARDEN_DB_PATH"]
        if os.environ.get("WARDEN_RECOVERY_PATH"):
            kwargs["recovery_path"] = os.environ["WARDEN_RECOVERY_PATH"]
        return cls(**kwargs)
