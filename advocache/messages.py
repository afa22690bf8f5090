"""JSON messages exchanged between the leader, replicas and readers."""

from __future__ import annotations

import json
from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime
from typing import Any, Mapping

# How an optional field is left out of the encoded form.
_OMIT_ZERO = "zero"  # left out when empty, false or zero
_OMIT_NIL = "nil"  # left out only when None


def _json(name: str, kind: type, default: Any = MISSING, *, factory: Any = None, omit: str | None = None) -> Any:
    metadata = {"json": name, "kind": kind, "omit": omit}
    if factory is not None:
        return field(default_factory=factory, metadata=metadata)
    return field(default=default, metadata=metadata)


def _fits(value: Any, kind: type) -> bool:
    if kind is object:
        return True
    if kind is int:
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, kind)


class Message:
    """Base for the wire messages; subclasses are dataclasses."""

    def to_dict(self) -> dict[str, Any]:
        """The message as a JSON-ready dict, with empty optional fields left out."""
        result: dict[str, Any] = {}
        for spec in fields(self):
            value = getattr(self, spec.name)
            omit = spec.metadata["omit"]
            if omit == _OMIT_NIL and value is None:
                continue
            if omit == _OMIT_ZERO and (value is None or not value):
                continue
            result[spec.metadata["json"]] = value
        return result

    def to_json(self) -> str:
        """The message encoded as compact JSON."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]):
        """Build a message from decoded JSON; missing or null fields take defaults.

        Raises ValueError if `data` is not an object or a field has the wrong type.
        """
        if not isinstance(data, Mapping):
            raise ValueError(f"{cls.__name__}: expected a JSON object")
        values: dict[str, Any] = {}
        for spec in fields(cls):
            name = spec.metadata["json"]
            value = data.get(name)
            if value is None:
                continue
            kind = spec.metadata["kind"]
            if not _fits(value, kind):
                raise ValueError(f"{cls.__name__}.{name}: expected {kind.__name__}")
            values[spec.name] = value
        return cls(**values)


@dataclass(eq=False)
class ReplicaInfo:
    """A replica connected to this leader."""

    conn: Any
    instance_id: str
    started_at: datetime


@dataclass
class ReplicateMsg(Message):
    """A set (type "replicate") or delete ("replicate_delete") sent to replicas."""

    type: str = _json("type", str, "replicate")
    sheet: str = _json("sheet", str, "")
    key: str = _json("key", str, "")
    value: Any = _json("value", object, None, omit=_OMIT_NIL)
    jitter: bool = _json("jitter", bool, False, omit=_OMIT_ZERO)


@dataclass
class FullStateMsg(Message):
    """Every sheet's data, sent to a replica when it registers."""

    type: str = _json("type", str, "full_state")
    sheets: dict[str, dict[str, Any]] = _json("sheets", dict, factory=dict)


@dataclass
class RegisterReplicaRequest(Message):
    """Sent by a replica to the leader to register itself."""

    action: str = _json("action", str, "register_replica")
    instance_id: str = _json("instance_id", str, "")
    started_at: str = _json("started_at", str, "")


@dataclass
class SheetStateMsg(Message):
    """A sheet's current data, sent to a client that opens it."""

    type: str = _json("type", str, "sheet_state")
    data: dict[str, Any] = _json("data", dict, factory=dict)


@dataclass
class InvalidateMsg(Message):
    """Tells collaborators that a key, prefix or suffix was deleted."""

    type: str = _json("type", str, "invalidate")
    key: str = _json("key", str, "", omit=_OMIT_ZERO)
    prefix: str = _json("prefix", str, "", omit=_OMIT_ZERO)
    suffix: str = _json("suffix", str, "", omit=_OMIT_ZERO)


@dataclass
class ReplicateDeletePrefixMsg(Message):
    """A prefix deletion sent to replicas."""

    type: str = _json("type", str, "replicate_delete_prefix")
    sheet: str = _json("sheet", str, "")
    prefix: str = _json("prefix", str, "")


@dataclass
class ReplicateDeleteSuffixMsg(Message):
    """A suffix deletion sent to replicas."""

    type: str = _json("type", str, "replicate_delete_suffix")
    sheet: str = _json("sheet", str, "")
    suffix: str = _json("suffix", str, "")


@dataclass
class ReplicateLockMsg(Message):
    """A lock acquisition sent to replicas; `expires_at` is RFC 3339."""

    type: str = _json("type", str, "replicate_lock")
    sheet: str = _json("sheet", str, "")
    key: str = _json("key", str, "")
    owner: str = _json("owner", str, "")
    expires_at: str = _json("expires_at", str, "")


@dataclass
class ReplicateUnlockMsg(Message):
    """A lock release sent to replicas."""

    type: str = _json("type", str, "replicate_unlock")
    sheet: str = _json("sheet", str, "")
    key: str = _json("key", str, "")


@dataclass
class ReplicateEvictMsg(Message):
    """An LRU eviction sent to replicas."""

    type: str = _json("type", str, "replicate_evict")
    sheet: str = _json("sheet", str, "")
    key: str = _json("key", str, "")