"""
Feed Broker Exceptions

Every error the broker raises on purpose derives from FeedBrokerError and
carries an optional context dict that is rendered into str(exc).
"""
from __future__ import annotations

from typing import Any, Optional


class FeedBrokerError(Exception):
    """Base exception for all feed broker errors."""

    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class ValidationError(FeedBrokerError):
    """Raised when a channel, document or command is malformed."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        ctx = context or {}
        if field:
            ctx["field"] = field
        if value is not None:
            ctx["value"] = repr(value)[:100]
        super().__init__(message, ctx)
        self.field = field
        self.value = value


class FilterError(ValidationError):
    """Raised when a filter cannot be compiled into a predicate."""


class ProjectionError(ValidationError):
    """Raised when a projection spec is malformed."""


class BrokerClosedError(FeedBrokerError):
    """Raised when an operation is attempted on a closed broker."""


class InvariantError(FeedBrokerError):
    """Raised when internal bookkeeping is found inconsistent. Always fatal."""
