"""
Centralized settings for parcelspine.

:class:`ParcelSpineSettings` is the single validated source for the
process-wide lifecycle defaults: per-phase timeouts, the watchdog warning
interval, logging options and the documentation host used in error
messages. Values come from ``PARCELSPINE_*`` environment variables or a
``.env`` file.

Tags:
    parcelspine, configuration, settings, pydantic, caching, validation

Doc-Types:
    api-reference
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import DEFAULT_ERROR_DOCS_URL


class ParcelSpineSettings(BaseSettings):
    """parcelspine centralized configuration.

    All fields can be set via ``PARCELSPINE_*`` environment variables (e.g.
    ``PARCELSPINE_MOUNT_TIMEOUT_MILLIS=5000``).
    """

    model_config = SettingsConfigDict(
        env_prefix="PARCELSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Lifecycle timeouts ───────────────────────────────────────
    bootstrap_timeout_millis: float = Field(default=4000)
    mount_timeout_millis: float = Field(default=3000)
    unmount_timeout_millis: float = Field(default=3000)
    update_timeout_millis: float = Field(default=3000)
    warning_millis: float = Field(default=1000, description="Watchdog interval for slow-lifecycle warnings")
    die_on_timeout: bool = Field(default=False, description="Fail phases that exceed their deadline")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")
    service_name: str = Field(default="parcelspine")

    # ── Diagnostics ──────────────────────────────────────────────
    error_docs_url: str = Field(default=DEFAULT_ERROR_DOCS_URL)

    @field_validator(
        "bootstrap_timeout_millis",
        "mount_timeout_millis",
        "unmount_timeout_millis",
        "update_timeout_millis",
        "warning_millis",
    )
    @classmethod
    def _positive_millis(cls, value: float) -> float:
        if value <= 0:
            raise ValueError(f"must be a positive number of milliseconds, got {value}")
        return value

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "console"):
            raise ValueError(f"log_format must be 'json' or 'console', got {value!r}")
        return value


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: ParcelSpineSettings | None = None


def get_settings(*, _force_reload: bool = False) -> ParcelSpineSettings:
    """Load, validate, and cache a :class:`ParcelSpineSettings` instance."""
    global _settings_cache
    if _settings_cache is None or _force_reload:
        _settings_cache = ParcelSpineSettings()
    return _settings_cache


def clear_settings_cache() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings_cache
    _settings_cache = None


__all__ = ["ParcelSpineSettings", "get_settings", "clear_settings_cache"]
