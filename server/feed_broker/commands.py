"""
Command Handler

Logical command surface of the broker. A transport decodes client requests
into command dicts and hands them to CommandHandler.handle(); the reply is
a plain dict with an "ok" field.

    handler = CommandHandler(broker)
    handler.handle({"subscribe": "A", "filter": {"count": {"$gt": 3}}})
        -> {"ok": 1, "subscriptionId": "5f2c..."}
    handler.handle({"publish": "A", "message": {"count": 4}})
        -> {"ok": 1}
    handler.handle({"poll": ["5f2c..."]})
        -> {"ok": 1, "messages": {"5f2c...": {"A": [{"count": 4}]}}, "errors": {}}

Validation failures come back as {"ok": 0, "errmsg": ..., "code": ...};
anything else propagates to the caller.
"""
from __future__ import annotations

import logging
from typing import Any, Callable

from .broker import FeedBroker
from .errors import FeedBrokerError, ValidationError
from .poller import SUBSCRIPTION_NOT_FOUND
from .serializer import SerializationError, deserialize_command, serialize_response

logger = logging.getLogger(__name__)

Response = dict[str, Any]


class CommandHandler:
    """Dispatches subscribe / unsubscribe / publish / poll command dicts to a FeedBroker."""

    def __init__(self, broker: FeedBroker) -> None:
        self._broker = broker
        self._handlers: dict[str, Callable[[dict[str, Any]], Response]] = {
            "subscribe": self._subscribe,
            "unsubscribe": self._unsubscribe,
            "publish": self._publish,
            "poll": self._poll,
        }

    @property
    def commands(self) -> list[str]:
        return list(self._handlers)

    def handle(self, command: dict[str, Any]) -> Response:
        """
        Run one command. The command name is the first key of the dict.

        Returns:
            {"ok": 1, ...} on success, {"ok": 0, "errmsg": ..., "code": ...}
            when the command or its arguments are invalid.
        """
        if not isinstance(command, dict) or not command:
            return _error(ValidationError("command must be a non-empty mapping"))

        name = next(iter(command))
        handler = self._handlers.get(name)
        if handler is None:
            return _error(ValidationError(f"no such command: '{name}'", field="command"))

        try:
            return handler(command)
        except FeedBrokerError as exc:
            logger.debug("Command '%s' rejected: %s", name, exc)
            return _error(exc)

    def handle_raw(self, raw: str | bytes) -> str:
        """Decode a JSON command, run it, and encode the JSON reply."""
        try:
            _, command = deserialize_command(raw)
        except SerializationError as exc:
            return serialize_response({"ok": 0, "errmsg": str(exc), "code": type(exc).__name__})
        return serialize_response(self.handle(command))

    # ── Commands ──────────────────────────────────────────────────────────────

    def _subscribe(self, command: dict[str, Any]) -> Response:
        subscription_id = self._broker.subscribe(
            command["subscribe"],
            filter=_optional_mapping(command, "filter"),
            projection=_optional_mapping(command, "projection"),
        )
        return {"ok": 1, "subscriptionId": subscription_id}

    def _unsubscribe(self, command: dict[str, Any]) -> Response:
        subscription_id = command["unsubscribe"]
        if not isinstance(subscription_id, str):
            raise ValidationError(
                "unsubscribe expects a subscription id string",
                field="unsubscribe",
                value=subscription_id,
            )
        if self._broker.unsubscribe(subscription_id):
            return {"ok": 1}
        return {"ok": 1, "errors": {subscription_id: SUBSCRIPTION_NOT_FOUND}}

    def _publish(self, command: dict[str, Any]) -> Response:
        if "message" not in command:
            raise ValidationError("publish requires a 'message' field", field="message")
        self._broker.publish(command["publish"], command["message"])
        return {"ok": 1}

    def _poll(self, command: dict[str, Any]) -> Response:
        ids = command["poll"]
        if isinstance(ids, str):
            ids = [ids]
        if not isinstance(ids, (list, tuple)) or not all(isinstance(i, str) for i in ids):
            raise ValidationError(
                "poll expects a subscription id or a list of ids",
                field="poll",
                value=ids,
            )
        result = self._broker.poll(ids)
        return {"ok": 1, **result.to_dict()}


def _optional_mapping(command: dict[str, Any], key: str) -> dict[str, Any] | None:
    value = command.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValidationError(f"'{key}' must be an object", field=key, value=value)
    return value


def _error(exc: FeedBrokerError) -> Response:
    return {"ok": 0, "errmsg": str(exc), "code": type(exc).__name__}
