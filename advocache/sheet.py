"""A sheet: one tenant's password-protected cache and its collaborators."""

from __future__ import annotations

import asyncio
import json
import threading
from typing import Any, Mapping

import bcrypt

from . import logger
from .cache import DEFAULT_CAPACITY, Cache
from .messages import Message

BCRYPT_COST = 10
_BCRYPT_MAX_BYTES = 72


def _hash_password(password: str) -> bytes:
    raw = password.encode("utf-8")
    if len(raw) > _BCRYPT_MAX_BYTES:
        raise ValueError(f"password length exceeds {_BCRYPT_MAX_BYTES} bytes")
    return bcrypt.hashpw(raw, bcrypt.gensalt(rounds=BCRYPT_COST))


def _encode(message: Message | Mapping[str, Any]) -> str:
    if isinstance(message, Message):
        return message.to_json()
    return json.dumps(dict(message), separators=(",", ":"), ensure_ascii=False)


class Sheet(Cache):
    """An isolated cache plus the connections working on it.

    A sheet made with no password (a replica sheet) takes the first
    password it is asked to validate as its own.
    """

    def __init__(self, sheet_id: str, password: str | None, capacity: int = DEFAULT_CAPACITY) -> None:
        password_hash = None
        if password is not None:
            try:
                password_hash = _hash_password(password)
            except ValueError:
                logger.error(f"Failed to hash password for sheet: {sheet_id}")
                raise
        super().__init__(capacity)
        self.id = sheet_id
        self.password_hash: bytes | None = password_hash
        self.collaborators: set[Any] = set()
        self._members_lock = threading.Lock()
        self._password_lock = threading.Lock()

    @classmethod
    def replica(cls, sheet_id: str, capacity: int = DEFAULT_CAPACITY) -> "Sheet":
        """A sheet without a password, filled by replication from a leader."""
        sheet = cls(sheet_id, None, capacity)
        logger.info(f"Replica sheet created: {sheet_id}")
        return sheet

    def validate_password(self, password: str) -> bool:
        """True if `password` matches; a replica sheet adopts it instead."""
        with self._password_lock:
            if self.password_hash is None:
                try:
                    self.password_hash = _hash_password(password)
                except ValueError:
                    return False
                logger.info(f"Password set for promoted replica sheet: {self.id}")
                return True
            stored = self.password_hash
        raw = password.encode("utf-8")
        if len(raw) > _BCRYPT_MAX_BYTES:
            return False
        try:
            return bcrypt.checkpw(raw, stored)
        except ValueError:
            return False

    def add_collaborator(self, conn: Any) -> None:
        """Register a connection as working on this sheet."""
        with self._members_lock:
            self.collaborators.add(conn)
            count = len(self.collaborators)
        logger.info(f"Client joined sheet: {self.id} (collaborators: {count})")

    def remove_collaborator(self, conn: Any) -> int:
        """Forget a connection; return how many collaborators remain."""
        with self._members_lock:
            self.collaborators.discard(conn)
            count = len(self.collaborators)
        logger.info(f"Client left sheet: {self.id} (collaborators: {count})")
        return count

    def collaborator_count(self) -> int:
        """Number of connected collaborators."""
        with self._members_lock:
            return len(self.collaborators)

    async def _send_to_others(self, sender: Any, payload: str) -> None:
        with self._members_lock:
            targets = [conn for conn in self.collaborators if conn is not sender]
        if targets:
            # Delivery failures to one collaborator do not affect the others.
            await asyncio.gather(*(conn.send(payload) for conn in targets), return_exceptions=True)

    async def broadcast(self, sender: Any, message: Message | Mapping[str, Any]) -> None:
        """Send `message` as JSON to every collaborator except `sender`."""
        await self._send_to_others(sender, _encode(message))

    async def broadcast_set(self, sender: Any, key: str, value: Any) -> None:
        """Tell every collaborator except `sender` that `key` now holds `value`."""
        await self._send_to_others(sender, _encode({"type": "replicate", "key": key, "value": value}))