"""Requests clients send to the server, and the responses they get back."""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from typing import Any, Mapping

_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


class ProtocolError(ValueError):
    """A request could not be decoded."""

    def __init__(self, message: str = "invalid JSON") -> None:
        super().__init__(message)


def _fits(value: Any, kind: type | None) -> bool:
    if kind is None:
        return True
    if kind is int:
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, kind)


@dataclass
class Request:
    """An action from a client; absent fields take empty values."""

    action: str = ""
    sheet: str = ""
    password: str = ""
    key: str = ""
    value: Any = None
    ttl: int = 0
    prefix: str = ""
    suffix: str = ""
    jitter: bool = False
    instance_id: str = ""
    started_at: str = ""
    lock_ttl: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "Request":
        """Build a request from a decoded JSON object.

        Field names match case-insensitively when there is no exact match;
        unknown fields and nulls are ignored. Raises ProtocolError when
        `data` is not an object or a field has the wrong type.
        """
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ProtocolError()
        values: dict[str, Any] = {}
        for raw_name, value in data.items():
            name = raw_name if raw_name in _REQUEST_KINDS else _REQUEST_FOLDED.get(str(raw_name).lower())
            if name is None or value is None:
                continue
            if not _fits(value, _REQUEST_KINDS[name]):
                raise ProtocolError()
            values[name] = value
        return cls(**values)

    @classmethod
    def from_json(cls, text: str | bytes) -> "Request":
        """Decode a request; raises ProtocolError on malformed input."""
        try:
            data = json.loads(text)
        except (ValueError, TypeError):
            raise ProtocolError() from None
        return cls.from_dict(data)


_REQUEST_KINDS: dict[str, type | None] = {
    spec.name: (None if spec.default is None else type(spec.default)) for spec in fields(Request)
}
_REQUEST_FOLDED = {name.lower(): name for name in _REQUEST_KINDS}


@dataclass
class Response:
    """A reply to a client; empty optional fields are left out of the JSON."""

    success: bool = False
    sheet: str = ""
    key: str = ""
    value: Any = None
    deleted: int = 0
    error: str = ""
    count: int = 0

    def to_dict(self) -> dict[str, Any]:
        """The response as a JSON-ready dict."""
        result: dict[str, Any] = {"success": self.success}
        if self.sheet:
            result["sheet"] = self.sheet
        if self.key:
            result["key"] = self.key
        if self.value is not None:
            result["value"] = self.value
        if self.deleted:
            result["deleted"] = self.deleted
        if self.error:
            result["error"] = self.error
        if self.count:
            result["count"] = self.count
        return result

    def to_json(self) -> str:
        """Compact JSON with HTML-sensitive characters escaped."""
        text = json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)
        for char, escape in _HTML_ESCAPES.items():
            text = text.replace(char, escape)
        return text


def error_response(message: str) -> Response:
    """A failed response carrying `message`."""
    return Response(success=False, error=message)