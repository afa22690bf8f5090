"""Embeddable client that mirrors one sheet locally and forwards writes.

Reads are served from a local dictionary without touching the network.
Writes update the local copy at once and are sent to the server; changes
made by other clients arrive as broadcasts and are applied automatically.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import websockets

from .cache import NULL_PLACEHOLDER

DEFAULT_MAX_RECONNECT_ATTEMPTS = 3
DEFAULT_RECONNECT_DELAY = 1.0


class ReaderError(Exception):
    """Base class for reader errors."""


class NotConnectedError(ReaderError):
    """The reader has no live connection to a server."""

    def __init__(self, message: str = "not connected to server") -> None:
        super().__init__(message)


class AuthFailedError(ReaderError):
    """The server refused the sheet name or password."""

    def __init__(self, message: str = "authentication failed") -> None:
        super().__init__(message)


class ReaderClosedError(ReaderError):
    """The reader has been closed."""

    def __init__(self, message: str = "reader is closed") -> None:
        super().__init__(message)


@dataclass
class ReaderConfig:
    """Where to connect and which sheet to join.

    A reconnect attempt count or delay of 0 takes the default (3 attempts,
    1 second); the delay grows linearly with each attempt.
    """

    leader_addr: str = ""
    backup_addr: str = ""
    sheet: str = ""
    password: str = ""
    max_reconnect_attempts: int = 0
    reconnect_delay: float = 0.0

    def __post_init__(self) -> None:
        if self.max_reconnect_attempts == 0:
            self.max_reconnect_attempts = DEFAULT_MAX_RECONNECT_ATTEMPTS
        if self.reconnect_delay == 0:
            self.reconnect_delay = DEFAULT_RECONNECT_DELAY


def _decode(data: str | bytes | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(data, Mapping):
        return dict(data)
    try:
        decoded = json.loads(data)
    except (ValueError, TypeError):
        return {}
    return decoded if isinstance(decoded, dict) else {}


def _text(message: Mapping[str, Any], name: str) -> str:
    value = message.get(name)
    return value if isinstance(value, str) else ""


def _state_data(message: Mapping[str, Any]) -> dict[str, Any]:
    data = message.get("data")
    return data if isinstance(data, dict) else {}


class Reader:
    """A local mirror of one sheet on an advocache server."""

    def __init__(self, config: ReaderConfig) -> None:
        self.config = config
        self._cache: dict[str, Any] = {}
        self._conn: Any = None
        self._connected = False
        self._closed = False
        self._done = asyncio.Event()
        self._listeners: set[asyncio.Task] = set()
        self._current_addr = ""

    @classmethod
    async def connect(cls, config: ReaderConfig) -> "Reader":
        """Create a reader, join the sheet and load its current state.

        Falls back to the backup address if the leader cannot be reached.
        """
        reader = cls(config)
        await reader._open()
        return reader

    async def _open(self) -> None:
        try:
            await self._connect_to(self.config.leader_addr)
        except Exception:
            if not self.config.backup_addr:
                raise
            await self._connect_to(self.config.backup_addr)

    # -- reads ------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """The locally cached value for `key`, or `default`."""
        return self._cache.get(key, default)

    def get_string(self, key: str) -> str | None:
        """The value for `key` if it is a string, else None."""
        value = self._cache.get(key)
        return value if isinstance(value, str) else None

    def get_map(self, key: str) -> dict[str, Any] | None:
        """The value for `key` if it is a JSON object, else None."""
        value = self._cache.get(key)
        return value if isinstance(value, dict) else None

    def has(self, key: str) -> bool:
        """True if `key` is in the local cache."""
        return key in self._cache

    def is_null(self, key: str) -> bool:
        """True if `key` holds the null placeholder."""
        value = self._cache.get(key)
        return isinstance(value, str) and value == NULL_PLACEHOLDER

    # -- writes -----------------------------------------------------------

    def _check_writable(self) -> None:
        if self._closed:
            raise ReaderClosedError()
        if not self._connected:
            raise NotConnectedError()

    async def set(self, key: str, value: Any) -> None:
        """Store `value` locally and forward the write to the server."""
        self._check_writable()
        self._cache[key] = value
        await self._send({"action": "set", "key": key, "value": value})

    async def delete(self, key: str) -> None:
        """Remove `key` locally and forward the delete to the server."""
        self._check_writable()
        self._cache.pop(key, None)
        await self._send({"action": "delete", "key": key})

    async def delete_prefix(self, prefix: str) -> None:
        """Remove keys starting with `prefix` locally and on the server."""
        self._check_writable()
        self._drop(lambda key: key.startswith(prefix))
        await self._send({"action": "delete_prefix", "prefix": prefix})

    async def delete_suffix(self, suffix: str) -> None:
        """Remove keys ending with `suffix` locally and on the server."""
        self._check_writable()
        self._drop(lambda key: key.endswith(suffix))
        await self._send({"action": "delete_suffix", "suffix": suffix})

    def _drop(self, predicate: Callable[[str], bool]) -> None:
        for key in [key for key in self._cache if predicate(key)]:
            del self._cache[key]

    async def _send(self, message: Mapping[str, Any]) -> None:
        conn = self._conn
        if conn is None:
            raise NotConnectedError()
        await conn.send(json.dumps(message))

    # -- lifecycle --------------------------------------------------------

    async def close(self) -> None:
        """Disconnect and stop background work; closing twice is harmless."""
        if self._closed:
            return
        self._closed = True
        self._connected = False
        self._done.set()
        conn, self._conn = self._conn, None
        if conn is not None:
            await conn.close()
        while True:
            pending = [task for task in self._listeners if not task.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)

    def is_connected(self) -> bool:
        """True while a server connection is up."""
        return self._connected

    def current_server(self) -> str:
        """Address of the server last connected to."""
        return self._current_addr

    def cache_size(self) -> int:
        """Number of entries in the local cache."""
        return len(self._cache)

    async def __aenter__(self) -> "Reader":
        if self._closed:
            raise ReaderClosedError()
        if not self._connected:
            await self._open()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # -- server messages --------------------------------------------------

    def load_state(self, data: Mapping[str, Any]) -> None:
        """Replace the whole local cache with `data`."""
        self._cache.clear()
        self._cache.update(data)

    def apply_message(self, data: str | bytes | Mapping[str, Any]) -> None:
        """Apply a broadcast from the server; unknown or malformed ones are ignored."""
        message = _decode(data)
        kind = message.get("type")
        if kind == "sheet_state":
            self.load_state(_state_data(message))
        elif kind == "replicate":
            self._cache[_text(message, "key")] = message.get("value")
        elif kind == "invalidate":
            key = _text(message, "key")
            prefix = _text(message, "prefix")
            suffix = _text(message, "suffix")
            if key:
                self._cache.pop(key, None)
            elif prefix:
                self._drop(lambda name: name.startswith(prefix))
            elif suffix:
                self._drop(lambda name: name.endswith(suffix))

    # -- connection management --------------------------------------------

    async def _connect_to(self, addr: str) -> None:
        conn = await websockets.connect(addr)
        try:
            await conn.send(
                json.dumps(
                    {"action": "open", "sheet": self.config.sheet, "password": self.config.password}
                )
            )
            authenticated = False
            while True:
                message = _decode(await conn.recv())
                if not authenticated:
                    if message.get("success") is True:
                        authenticated = True
                    elif _text(message, "error"):
                        raise AuthFailedError()
                    continue
                if message.get("type") == "sheet_state":
                    self.load_state(_state_data(message))
                    break
            if self._closed:
                raise ReaderClosedError()
        except BaseException:
            await conn.close()
            raise

        self._conn = conn
        self._connected = True
        self._current_addr = addr
        task = asyncio.create_task(self._listen(conn))
        self._listeners.add(task)
        task.add_done_callback(self._listeners.discard)

    async def _listen(self, conn: Any) -> None:
        while not self._done.is_set():
            try:
                data = await conn.recv()
            except Exception:
                await self._handle_disconnect()
                return
            self.apply_message(data)

    async def _stopped_within(self, delay: float) -> bool:
        try:
            await asyncio.wait_for(self._done.wait(), delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _handle_disconnect(self) -> None:
        if self._closed:
            return
        self._connected = False
        conn, self._conn = self._conn, None
        if conn is not None:
            await conn.close()

        targets = [self._current_addr]
        if self.config.backup_addr and self._current_addr != self.config.backup_addr:
            targets.append(self.config.backup_addr)
        if self.config.leader_addr and self._current_addr != self.config.leader_addr:
            targets.append(self.config.leader_addr)

        for addr in targets:
            for attempt in range(1, self.config.max_reconnect_attempts + 1):
                if await self._stopped_within(self.config.reconnect_delay * attempt):
                    return
                try:
                    await self._connect_to(addr)
                except Exception:
                    continue
                return