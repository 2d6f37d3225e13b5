"""
config.py

Runtime settings for the Construction Site Tracker, read from environment
variables, plus process-wide logging setup.

Variables
---------
    SITE_TRACKER_LOG_LEVEL              INFO
    SITE_TRACKER_HOST                   127.0.0.1
    SITE_TRACKER_PORT                   8000
    SITE_TRACKER_SEED_DEMO              false   seed demo plots at startup
    SITE_TRACKER_API_URL                http://127.0.0.1:8000
    SITE_TRACKER_SAVE_DEBOUNCE_SECONDS  2.0
    SITE_TRACKER_HTTP_TIMEOUT           10.0
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


@dataclass(frozen=True)
class Settings:
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000
    seed_demo: bool = False
    api_url: str = "http://127.0.0.1:8000"
    save_debounce_seconds: float = 2.0
    http_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            log_level=os.getenv("SITE_TRACKER_LOG_LEVEL", "INFO").upper(),
            host=os.getenv("SITE_TRACKER_HOST", "127.0.0.1"),
            port=int(os.getenv("SITE_TRACKER_PORT", "8000")),
            seed_demo=_env_bool("SITE_TRACKER_SEED_DEMO", False),
            api_url=os.getenv("SITE_TRACKER_API_URL", "http://127.0.0.1:8000").rstrip("/"),
            save_debounce_seconds=float(os.getenv("SITE_TRACKER_SAVE_DEBOUNCE_SECONDS", "2.0")),
            http_timeout=float(os.getenv("SITE_TRACKER_HTTP_TIMEOUT", "10.0")),
        )


def configure_logging(level_name: str = "INFO") -> logging.Logger:
    """Configure root logging to stdout with a uniform line format."""

    log_level = getattr(logging, level_name.upper(), logging.INFO)

    # ``basicConfig`` is a no-op if the root logger already has handlers,
    # which is the case under uvicorn, hence ``force``.
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    logger = logging.getLogger(__name__)
    logger.debug("Logging configured at %s", level_name)
    return logger
