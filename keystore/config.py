"""
Configuration module for the keystore runtime.

Centralizes configuration with environment variable support and
validation. ``load_settings()`` reads the environment; the runtime and the HTTP
surface take the resulting ``RuntimeSettings``.
"""

import os
from dataclasses import dataclass
from typing import Optional

# ============================================================
# Environment Configuration
# ============================================================

VALID_ENVS = ("dev", "stage", "prod")
VALID_LAYOUTS = ("v1", "v2")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class RuntimeSettings:
    """Validated runtime settings."""
    env: str = "dev"
    # Rent-exempt minimum for a zero-data account on the host chain
    min_balance: int = 890880
    # v1 = legacy 13-byte offsets header, v2 = 16-byte header
    verify_layout: str = "v2"
    log_level: str = "INFO"
    log_json: bool = True
    # Receipts kept in the execution journal
    journal_size: int = 10_000

    def __post_init__(self):
        if self.env not in VALID_ENVS:
            raise ValueError(f"KEYSTORE_ENV must be one of {VALID_ENVS}, got {self.env!r}")
        if self.min_balance < 0:
            raise ValueError("KEYSTORE_MIN_BALANCE must not be negative")
        if self.verify_layout not in VALID_LAYOUTS:
            raise ValueError(
                f"KEYSTORE_VERIFY_LAYOUT must be one of {VALID_LAYOUTS}, got {self.verify_layout!r}"
            )
        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"KEYSTORE_LOG_LEVEL must be one of {VALID_LOG_LEVELS}")
        if self.journal_size < 1:
            raise ValueError("KEYSTORE_JOURNAL_SIZE must be at least 1")

    def is_production(self) -> bool:
        return self.env == "prod"


def load_settings(environ: Optional[dict] = None) -> RuntimeSettings:
    """
    Build settings from environment variables.

    Args:
        environ: Mapping to read from (default: os.environ)

    Raises:
        ValueError: if a variable is present but invalid
    """
    environ = os.environ if environ is None else environ
    try:
        min_balance = int(environ.get("KEYSTORE_MIN_BALANCE", "890880"))
    except ValueError:
        raise ValueError("KEYSTORE_MIN_BALANCE must be an integer")
    try:
        journal_size = int(environ.get("KEYSTORE_JOURNAL_SIZE", "10000"))
    except ValueError:
        raise ValueError("KEYSTORE_JOURNAL_SIZE must be an integer")

    return RuntimeSettings(
        env=environ.get("KEYSTORE_ENV", "dev"),
        min_balance=min_balance,
        verify_layout=environ.get("KEYSTORE_VERIFY_LAYOUT", "v2").lower(),
        log_level=environ.get("KEYSTORE_LOG_LEVEL", "INFO").upper(),
        log_json=environ.get("KEYSTORE_LOG_JSON", "1").lower() in ("1", "true", "yes"),
        journal_size=journal_size,
    )

