"""
Structured error types for parcelspine.

Every failure the lifecycle engine produces is one of the types below. They
share a category, an optional numeric message code and an optional chained
cause, so handlers can route, log and cross-reference them without parsing
message text.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────┐
        │                    ParcelSpineError                          │
        │              (category, code, cause, unit_name)              │
        ├─────────────────────────────────────────────────────────────┤
        │                                                              │
        │  ValidationError      ConfigError        LifecycleError      │
        │  (VALIDATION)         (CONFIG)           (LIFECYCLE)         │
        │       │                                       │              │
        │  InvalidStatusError                    LifecycleTimeout      │
        │                                        ParcelUnmountError    │
        │                                                              │
        │  InvalidTransitionError (ValueError, status model guard)     │
        └─────────────────────────────────────────────────────────────┘

Message codes:
    All rejection paths build their text with :func:`format_error_message`,
    which appends a stable documentation link keyed by the numeric code and
    positional arguments. Grep for ``#<code>`` to find every raise site.

Examples:
    >>> format_error_message(28, "error handler must be callable")
    'parcelspine message #28: error handler must be callable See https://...?code=28'

Tags:
    error-handling, exception-hierarchy, parcelspine

Doc-Types:
    api-reference
"""

from __future__ import annotations

from enum import Enum
from typing import Any

DEFAULT_ERROR_DOCS_URL = "https://parcelspine.readthedocs.io/en/latest/errors.html"

_docs_url = DEFAULT_ERROR_DOCS_URL


class ErrorCategory(str, Enum):
    """Error categories used for classification and routing."""

    VALIDATION = "VALIDATION"     # Bad arguments at a public entry point
    CONFIG = "CONFIG"             # Invalid timeout or settings values
    LIFECYCLE = "LIFECYCLE"       # A unit's own lifecycle call failed
    TIMEOUT = "TIMEOUT"           # Hard deadline elapsed with die_on_timeout
    CASCADE = "CASCADE"           # A child parcel failed during parent teardown
    INTERNAL = "INTERNAL"         # Bugs, unexpected state


def set_error_docs_url(url: str) -> None:
    """Point generated message links at a different documentation host."""
    global _docs_url
    _docs_url = url


def format_error_message(code: int, message: str | None, *args: Any) -> str:
    """Build a stable, greppable diagnostic string.

    Args:
        code: Numeric message code, unique per rejection path
        message: Human readable text (may be empty)
        *args: Positional values appended to the link as ``arg=`` params

    Returns:
        ``"parcelspine message #<code>: <message> See <url>?code=<code>&arg=..."``
    """
    text = f"{message} " if message else ""
    query = f"?code={code}"
    if args:
        query += "".join(f"&arg={arg}" for arg in args)
    return f"parcelspine message #{code}: {text}See {_docs_url}{query}"


class ParcelSpineError(Exception):
    """
    Base exception for all parcelspine errors.

    Carries a category, the optional message code it was built with, an
    optional chained cause and, once escalated, the name of the unit it is
    attributed to.

    The ``message`` attribute is writable: escalation prefixes it with the
    unit's identity, and ``str(error)`` always reflects the current value.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        code: int | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.code = code
        self.cause = cause
        self.unit_name: str | None = None

        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }
        if self.code is not None:
            result["code"] = self.code
        if self.unit_name is not None:
            result["unit_name"] = self.unit_name
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION / CONFIGURATION ERRORS
# =============================================================================


class ValidationError(ParcelSpineError):
    """Invalid argument passed to a public entry point.

    Always raised synchronously to the immediate caller.
    """

    default_category = ErrorCategory.VALIDATION


class InvalidStatusError(ValidationError):
    """An imperative operation was requested from a status that forbids it."""

    def __init__(self, message: str, *, status: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status = status


class ConfigError(ParcelSpineError):
    """Configuration value is invalid (never clamped or coerced)."""

    default_category = ErrorCategory.CONFIG

    def __init__(self, message: str, *, key: str | None = None, value: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.key = key
        self.value = value


# =============================================================================
# LIFECYCLE ERRORS
# =============================================================================


class LifecycleError(ParcelSpineError):
    """A unit's definition or lifecycle call failed."""

    default_category = ErrorCategory.LIFECYCLE


class LifecycleTimeout(LifecycleError, TimeoutError):
    """Raised when a lifecycle phase exceeds its hard deadline.

    Only produced when the phase is configured with ``die_on_timeout``.

    Attributes:
        phase: Lifecycle phase that timed out
        millis: The deadline that was exceeded
    """

    default_category = ErrorCategory.TIMEOUT

    def __init__(self, message: str, *, phase: str, millis: float, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.phase = phase
        self.millis = millis


class ParcelUnmountError(LifecycleError):
    """One or more child parcels failed to unmount during a parent teardown."""

    default_category = ErrorCategory.CASCADE

    def __init__(self, message: str, *, child_errors: list[BaseException] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.child_errors = child_errors or []


class InvalidTransitionError(ValueError):
    """Raised when an illegal status transition is attempted.

    Transition validation is deliberately strict. If a legitimate
    transition is blocked, add it to ``VALID_TRANSITIONS`` explicitly.
    """

    def __init__(self, current: str, target: str, enum_name: str = "Status") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


def is_timeout(error: BaseException) -> bool:
    """Check if an error was produced by a hard lifecycle deadline."""
    return isinstance(error, LifecycleTimeout)


__all__ = [
    "DEFAULT_ERROR_DOCS_URL",
    "ErrorCategory",
    "ParcelSpineError",
    "ValidationError",
    "InvalidStatusError",
    "ConfigError",
    "LifecycleError",
    "LifecycleTimeout",
    "ParcelUnmountError",
    "InvalidTransitionError",
    "format_error_message",
    "set_error_docs_url",
    "is_timeout",
]
