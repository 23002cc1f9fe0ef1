"""Error escalation for failed lifecycle transitions.

A failure leaves a transition driver through exactly one of two doors:

- **hard-fail**: :func:`transform_error` stamps the failure and the driver
  raises it to its caller (nested parcels, parent teardown)
- **soft-fail**: :func:`handle_error` stamps it and hands it to the
  registered error handlers, or re-raises it on the event loop when nobody
  is listening (independently scheduled applications)

Either way the message reads
``"<kind> '<name>' died in status <STATUS>: <original message>"`` where
``<STATUS>`` is the status the unit was in *before* the failure; the new
status is applied only after the message is built.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from parcelspine.core.errors import LifecycleError, ParcelSpineError, ValidationError, format_error_message
from parcelspine.core.logging import get_logger
from parcelspine.lifecycle.status import Status

if TYPE_CHECKING:
    from parcelspine.lifecycle.units import Unit

logger = get_logger(__name__)

ErrorHandler = Callable[[BaseException], Any]


def _prefix_message(error: BaseException, prefix: str) -> BaseException:
    """Prefix ``error``'s rendered message, in place when its type allows it.

    Exceptions whose ``str()`` does not simply echo their first argument
    (``KeyError`` quoting, custom ``__str__``) keep their args untouched and
    are chained under a :class:`LifecycleError` carrying the prefixed text.
    """
    if isinstance(error, ParcelSpineError):
        error.message = prefix + error.message
        error.args = (error.message,) + error.args[1:]
        return error

    text = prefix + str(error)
    original_args = error.args
    try:
        error.args = (text,)
    except (AttributeError, TypeError):
        return LifecycleError(text, cause=error)
    if str(error) == text:
        return error
    error.args = original_args
    return LifecycleError(text, cause=error)


def transform_error(error: Any, unit: Unit, new_status: Status) -> BaseException:
    """Normalize ``error`` into an exception attributed to ``unit``.

    Exceptions get their message prefixed in place where possible, otherwise
    they are chained under a prefixed :class:`LifecycleError`. Any other value is
    wrapped in a :class:`LifecycleError` carrying its JSON form (or the raw
    value when it cannot be serialized), with a warning because the stack
    trace will point here instead of at the lifecycle.

    Sets ``unit.status = new_status`` after the message is built.
    """
    prefix = f"{unit.kind.value} '{unit.name}' died in status {unit.status.value}: "

    if isinstance(error, BaseException):
        result = _prefix_message(error, prefix)
    else:
        logger.warning(
            "non_exception_rejection",
            unit=unit.name,
            status=unit.status.value,
            message=format_error_message(
                30,
                f"While {unit.status.value}, '{unit.name}' failed its lifecycle with a non-exception "
                f"value. This will cause stack traces to not be accurate.",
                unit.status.value,
                unit.name,
            ),
        )
        try:
            rendered = json.dumps(error)
        except (TypeError, ValueError):
            rendered = repr(error)
        result = LifecycleError(prefix + rendered, code=30)
        result.original_value = error

    try:
        result.unit_name = unit.name
    except AttributeError:
        pass

    unit.set_status(new_status)
    return result


def _raise_unhandled(error: BaseException) -> None:
    raise error


class ErrorHandlerRegistry:
    """Ordered, duplicate-tolerant list of failure observers.

    Every handler sees the same normalized failure object in registration
    order. A handler that raises does not stop the ones after it; its own
    exception is logged and re-raised on the event loop.
    """

    def __init__(self) -> None:
        self._handlers: list[ErrorHandler] = []

    def add(self, handler: ErrorHandler) -> None:
        if not callable(handler):
            raise ValidationError(
                format_error_message(28, "an error handler must be a callable"), code=28
            )
        self._handlers.append(handler)

    def remove(self, handler: ErrorHandler) -> bool:
        """Remove every registration equal to ``handler``.

        Returns:
            True if at least one registration was removed
        """
        if not callable(handler):
            raise ValidationError(
                format_error_message(29, "an error handler must be a callable"), code=29
            )
        remaining = [h for h in self._handlers if h != handler]
        removed = len(remaining) != len(self._handlers)
        self._handlers = remaining
        return removed

    def clear(self) -> None:
        self._handlers = []

    def __len__(self) -> int:
        return len(self._handlers)

    def dispatch(self, error: BaseException) -> None:
        """Deliver ``error`` to every handler, or surface it as unhandled."""
        if not self._handlers:
            logger.debug("unhandled_lifecycle_error", error=str(error))
            _raise_later(error)
            return

        for handler in list(self._handlers):
            try:
                handler(error)
            except Exception as handler_error:
                logger.error(
                    "error_handler_failed",
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(handler_error),
                )
                _raise_later(handler_error)


def _raise_later(error: BaseException) -> None:
    """Re-raise ``error`` outside the current call stack.

    On a running loop the error reaches the loop's exception handler. With
    no loop there is nowhere to defer to, so it is logged with its traceback.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.error("unhandled_lifecycle_error", error=str(error), exc_info=error)
        return
    loop.call_soon(_raise_unhandled, error)


def handle_error(registry: ErrorHandlerRegistry, error: Any, unit: Unit, new_status: Status) -> BaseException:
    """Soft-fail escalation: transform, then dispatch to handlers."""
    transformed = transform_error(error, unit, new_status)
    registry.dispatch(transformed)
    return transformed


__all__ = [
    "ErrorHandler",
    "ErrorHandlerRegistry",
    "handle_error",
    "transform_error",
]
