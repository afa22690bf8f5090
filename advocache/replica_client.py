"""Replica side of replication: follows a leader and takes over if it goes quiet."""

from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine

import websockets

from . import logger
from .config import Config
from .manager import SheetManager
from .messages import (
    FullStateMsg,
    Message,
    RegisterReplicaRequest,
    ReplicateDeletePrefixMsg,
    ReplicateDeleteSuffixMsg,
    ReplicateEvictMsg,
    ReplicateMsg,
)
from .sheet import Sheet

RECONNECT_ATTEMPTS = 3
_BANNER = "═" * 63


def _rfc3339(moment: datetime) -> str:
    """Format `moment` to the second; naive times are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.replace(microsecond=0).isoformat()
    if text.endswith("+00:00"):
        return text[: -len("+00:00")] + "Z"
    return text


def _seconds(value: float) -> str:
    return f"{value:g}s"


class ReplicaClient:
    """Receives replicated writes from a leader and applies them locally.

    If the leader stops sending heartbeats, or the connection drops and
    cannot be re-established, the replica promotes itself to leader.
    """

    def __init__(
        self,
        manager: SheetManager,
        instance_id: str,
        started_at: datetime,
        leader_addr: str,
        config: Config | None = None,
    ) -> None:
        self.manager = manager
        self.instance_id = instance_id
        self.started_at = started_at
        self.leader_addr = leader_addr
        self.config = config if config is not None else Config()
        self.registered = False
        self.ignored_lock_events = 0
        self._conn: Any = None
        self._done = asyncio.Event()
        self._last_heartbeat = time.monotonic()
        self._promoted = False
        self._tasks: set[asyncio.Task] = set()
        self._monitor: asyncio.Task | None = None
        self._dispatch: dict[str, Callable[[dict[str, Any]], None]] = {
            "heartbeat": self._on_heartbeat,
            "success": self._on_success,
            "full_state": self._on_full_state,
            "replicate": self._on_replicate,
            "replicate_delete": self._on_delete,
            "replicate_delete_prefix": self._on_delete_prefix,
            "replicate_delete_suffix": self._on_delete_suffix,
            "replicate_lock": self._on_lock,
            "replicate_unlock": self._on_unlock,
            "replicate_evict": self._on_evict,
        }

    # -- connection -------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def connect(self) -> None:
        """Connect to the leader, register as a replica and start listening."""
        conn = await websockets.connect(self.leader_addr)
        self._conn = conn
        self._last_heartbeat = time.monotonic()
        self.registered = False

        request = RegisterReplicaRequest(
            instance_id=self.instance_id, started_at=_rfc3339(self.started_at)
        )
        try:
            await conn.send(request.to_json())
        except Exception:
            self._conn = None
            await conn.close()
            raise

        logger.info(f"Connected to leader: {self.leader_addr}")
        self._spawn(self._listen(conn))
        if self._monitor is None or self._monitor.done():
            self._monitor = self._spawn(self._monitor_heartbeat())

    async def _listen(self, conn: Any) -> None:
        while not self._done.is_set():
            if self._conn is not conn:
                return
            try:
                data = await conn.recv()
            except Exception as exc:
                if self._done.is_set() or self._promoted:
                    return
                logger.error(f"Leader connection lost: {exc}")
                await self._handle_leader_disconnect()
                return
            self.handle_message(data)

    async def _stopped_within(self, delay: float) -> bool:
        try:
            await asyncio.wait_for(self._done.wait(), delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _handle_leader_disconnect(self) -> None:
        if self._promoted:
            return
        for attempt in range(1, RECONNECT_ATTEMPTS + 1):
            logger.info(
                f"Attempting to reconnect to leader (attempt {attempt}/{RECONNECT_ATTEMPTS})..."
            )
            if await self._stopped_within(float(attempt)):
                return
            try:
                await self.connect()
            except Exception:
                continue
            logger.info("Reconnected to leader successfully")
            return
        logger.warning(f"Failed to reconnect to leader after {RECONNECT_ATTEMPTS} attempts")
        await self.promote_to_leader()

    async def _monitor_heartbeat(self) -> None:
        interval = self.config.heartbeat_interval()
        timeout = self.config.heartbeat_timeout()
        while True:
            if await self._stopped_within(interval):
                return
            if self._promoted:
                return
            if time.monotonic() - self._last_heartbeat > timeout:
                logger.warning(
                    f"Leader heartbeat timeout ({_seconds(timeout)}) - promoting to leader"
                )
                await self.promote_to_leader()
                return

    # -- messages ---------------------------------------------------------

    def handle_message(self, data: str | bytes) -> None:
        """Apply one message from the leader; malformed ones are dropped."""
        try:
            message = json.loads(data)
        except (ValueError, TypeError):
            return
        if message is None:
            message = {}
        if not isinstance(message, dict):
            return
        kind = message.get("type")
        if kind is None:
            kind = ""
        if not isinstance(kind, str):
            return
        handler = self._dispatch.get(kind)
        if handler is None:
            logger.warning(f"Unknown message type from leader: {kind}")
            return
        handler(message)

    @staticmethod
    def _parse(kind: str, cls: type[Message], message: dict[str, Any]) -> Any:
        try:
            return cls.from_dict(message)
        except ValueError as exc:
            logger.error(f"Failed to parse {kind}: {exc}")
            return None

    def _sheet(self, sheet_id: str) -> Sheet:
        sheet = self.manager.get_sheet(sheet_id)
        if sheet is None:
            sheet = Sheet.replica(sheet_id)
            self.manager.add_sheet(sheet_id, sheet)
        return sheet

    def _on_heartbeat(self, message: dict[str, Any]) -> None:
        self._last_heartbeat = time.monotonic()
        logger.info("Heartbeat received from leader")

    def _on_success(self, message: dict[str, Any]) -> None:
        self.registered = True
        logger.info("Replica registration acknowledged by leader")

    def _on_full_state(self, message: dict[str, Any]) -> None:
        state = self._parse("full_state", FullStateMsg, message)
        if state is None:
            return
        bad = [
            sheet_id
            for sheet_id, data in state.sheets.items()
            if data is not None and not isinstance(data, dict)
        ]
        if bad:
            logger.error(f"Failed to parse full_state: sheet {bad[0]} is not an object")
            return
        ttl = self.config.cache_ttl()
        for sheet_id, data in state.sheets.items():
            sheet = self._sheet(sheet_id)
            for key, value in (data or {}).items():
                sheet.set(key, value, ttl)
        logger.info(f"Applied full state from leader ({len(state.sheets)} sheets)")

    def _on_replicate(self, message: dict[str, Any]) -> None:
        msg = self._parse("replicate", ReplicateMsg, message)
        if msg is None:
            return
        sheet = self._sheet(msg.sheet)
        if msg.jitter:
            sheet.set_with_jitter(
                msg.key, msg.value, self.config.cache_ttl(), self.config.jitter_percent
            )
        else:
            sheet.set(msg.key, msg.value, self.config.cache_ttl())

    def _on_delete(self, message: dict[str, Any]) -> None:
        msg = self._parse("replicate_delete", ReplicateMsg, message)
        if msg is None:
            return
        sheet = self.manager.get_sheet(msg.sheet)
        if sheet is not None:
            sheet.delete(msg.key)

    def _on_delete_prefix(self, message: dict[str, Any]) -> None:
        msg = self._parse("replicate_delete_prefix", ReplicateDeletePrefixMsg, message)
        if msg is None:
            return
        sheet = self.manager.get_sheet(msg.sheet)
        if sheet is not None:
            sheet.delete_prefix(msg.prefix)

    def _on_delete_suffix(self, message: dict[str, Any]) -> None:
        msg = self._parse("replicate_delete_suffix", ReplicateDeleteSuffixMsg, message)
        if msg is None:
            return
        sheet = self.manager.get_sheet(msg.sheet)
        if sheet is not None:
            sheet.delete_suffix(msg.suffix)

    def _on_lock(self, message: dict[str, Any]) -> None:
        # Locks belong to client connections on the leader, so they are not applied here.
        self.ignored_lock_events += 1
        logger.info("Lock replication received (ignored - locks are connection-specific)")

    def _on_unlock(self, message: dict[str, Any]) -> None:
        self.ignored_lock_events += 1
        logger.info("Unlock replication received (ignored)")

    def _on_evict(self, message: dict[str, Any]) -> None:
        msg = self._parse("replicate_evict", ReplicateEvictMsg, message)
        if msg is None:
            return
        sheet = self.manager.get_sheet(msg.sheet)
        if sheet is not None:
            sheet.delete(msg.key)
            logger.info(f"Applied LRU eviction from leader: {msg.sheet}/{msg.key}")

    # -- lifecycle --------------------------------------------------------

    async def promote_to_leader(self) -> None:
        """Stop following the leader; this instance now serves as leader."""
        if self._promoted:
            return
        self._promoted = True
        conn, self._conn = self._conn, None
        if conn is not None:
            await conn.close()
        logger.info(_BANNER)
        logger.info("  PROMOTED TO LEADER - now accepting clients")
        logger.info(_BANNER)

    async def close(self) -> None:
        """Disconnect from the leader and stop background work."""
        if self._done.is_set():
            return
        self._done.set()
        conn, self._conn = self._conn, None
        if conn is not None:
            await conn.close()
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current and not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def is_promoted(self) -> bool:
        """True once this replica has taken over as leader."""
        return self._promoted