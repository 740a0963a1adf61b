"""
TILEGUARD engine configuration.

Retry, backoff and notification thresholds for the tile recovery engine,
loaded once from environment variables. Supports .env files for local
development.

Usage:
    from src.config import recovery_config

    print(recovery_config.max_retries)
    print(recovery_config.protocol_max_delay_ms)
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional
import logging

from dotenv import load_dotenv

# Load .env file if present
env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def get_float(key: str, default: float) -> float:
    """Get float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def get_int(key: str, default: int) -> int:
    """Get int from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


# (field name, lower bound, upper bound) checked in __post_init__
_BOUNDS = (
    ("max_retries", 1, 50),
    ("base_delay_ms", 1, 60_000),
    ("max_delay_ms", 1, 300_000),
    ("backoff_multiplier", 1.0, 10.0),
    ("jitter_ratio", 0.0, 1.0),
    ("protocol_base_delay_ms", 1, 60_000),
    ("protocol_delay_step_ms", 0, 60_000),
    ("protocol_max_delay_ms", 1, 60_000),
    ("step_timeout_s", 0.1, 300.0),
    ("protocol_step_timeout_s", 0.1, 300.0),
    ("protocol_notice_at", 1, 50),
    ("protocol_warning_at", 1, 50),
    ("server_error_notify_at", 1, 50),
    ("problematic_after", 0, 50),
    ("transport_switch_attempt", 1, 50),
)


@dataclass(frozen=True)
class RecoveryConfig:
    """Process-wide recovery settings. Immutable once built."""

    # Retry budget
    max_retries: int = field(default_factory=lambda: get_int("TILE_MAX_RETRIES", 6))

    # Exponential backoff (all categories except protocol errors)
    base_delay_ms: int = field(default_factory=lambda: get_int("TILE_BASE_DELAY_MS", 1000))
    max_delay_ms: int = field(default_factory=lambda: get_int("TILE_MAX_DELAY_MS", 8000))
    backoff_multiplier: float = field(
        default_factory=lambda: get_float("TILE_BACKOFF_MULTIPLIER", 1.5)
    )
    jitter_ratio: float = field(default_factory=lambda: get_float("TILE_JITTER_RATIO", 0.3))

    # Linear backoff for protocol errors
    protocol_base_delay_ms: int = field(
        default_factory=lambda: get_int("TILE_PROTOCOL_BASE_DELAY_MS", 500)
    )
    protocol_delay_step_ms: int = field(
        default_factory=lambda: get_int("TILE_PROTOCOL_DELAY_STEP_MS", 200)
    )
    protocol_max_delay_ms: int = field(
        default_factory=lambda: get_int("TILE_PROTOCOL_MAX_DELAY_MS", 1500)
    )

    # Per-step fetch timeouts (seconds)
    step_timeout_s: float = field(default_factory=lambda: get_float("TILE_STEP_TIMEOUT_S", 12.0))
    protocol_step_timeout_s: float = field(
        default_factory=lambda: get_float("TILE_PROTOCOL_STEP_TIMEOUT_S", 8.0)
    )

    # Notification tiers (consecutive error counts)
    protocol_notice_at: int = field(default_factory=lambda: get_int("TILE_PROTOCOL_NOTICE_AT", 2))
    protocol_warning_at: int = field(
        default_factory=lambda: get_int("TILE_PROTOCOL_WARNING_AT", 4)
    )
    server_error_notify_at: int = field(
        default_factory=lambda: get_int("TILE_SERVER_ERROR_NOTIFY_AT", 5)
    )

    # Health reporting
    problematic_after: int = field(default_factory=lambda: get_int("TILE_PROBLEMATIC_AFTER", 3))

    # Ladder
    transport_switch_attempt: int = field(
        default_factory=lambda: get_int("TILE_TRANSPORT_SWITCH_ATTEMPT", 5)
    )
    alternate_base_url: Optional[str] = field(
        default_factory=lambda: os.getenv("TILE_ALTERNATE_BASE_URL") or None
    )
    user_agent: str = field(default_factory=lambda: os.getenv("TILE_USER_AGENT", "Tileguard/1.0"))

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = field(
        default_factory=lambda: os.getenv(
            "LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    )

    def __post_init__(self):
        """Replace out-of-range values with their defaults."""
        for name, low, high in _BOUNDS:
            value = getattr(self, name)
            if not low <= value <= high:
                default = _STATIC_DEFAULTS[name]
                logging.warning(
                    f"Recovery setting {name}={value} outside [{low}, {high}], using {default}"
                )
                object.__setattr__(self, name, default)

        if self.max_delay_ms < self.base_delay_ms:
            logging.warning(
                f"max_delay_ms {self.max_delay_ms} below base_delay_ms "
                f"{self.base_delay_ms}, raising cap to base delay"
            )
            object.__setattr__(self, "max_delay_ms", self.base_delay_ms)

        if self.protocol_max_delay_ms < self.protocol_base_delay_ms:
            object.__setattr__(self, "protocol_max_delay_ms", self.protocol_base_delay_ms)

    def timeout_for(self, protocol_error: bool) -> float:
        """Per-step timeout in seconds."""
        return self.protocol_step_timeout_s if protocol_error else self.step_timeout_s

    def configure_logging(self):
        """Configure logging based on settings."""
        level = getattr(logging, self.log_level.upper(), logging.INFO)
        logging.basicConfig(level=level, format=self.log_format)


_STATIC_DEFAULTS = {
    "max_retries": 6,
    "base_delay_ms": 1000,
    "max_delay_ms": 8000,
    "backoff_multiplier": 1.5,
    "jitter_ratio": 0.3,
    "protocol_base_delay_ms": 500,
    "protocol_delay_step_ms": 200,
    "protocol_max_delay_ms": 1500,
    "step_timeout_s": 12.0,
    "protocol_step_timeout_s": 8.0,
    "protocol_notice_at": 2,
    "protocol_warning_at": 4,
    "server_error_notify_at": 5,
    "problematic_after": 3,
    "transport_switch_attempt": 5,
}


# Built once at import; pass an explicit RecoveryConfig for anything else.
recovery_config = RecoveryConfig()


def get_recovery_config() -> RecoveryConfig:
    """Get the process-wide config (useful for dependency injection)."""
    return recovery_config
