"""Server side of the client protocol: sheets, locks and replication fan-out."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from websockets.exceptions import ConnectionClosed

from . import logger
from .cache import NULL_PLACEHOLDER
from .config import Config
from .lock import LockHeldError, LockManager, LockNotFoundError, NotOwnerError
from .manager import InvalidPasswordError, SheetManager
from .messages import (
    FullStateMsg,
    InvalidateMsg,
    Message,
    ReplicaInfo,
    ReplicateDeletePrefixMsg,
    ReplicateDeleteSuffixMsg,
    ReplicateEvictMsg,
    ReplicateLockMsg,
    ReplicateMsg,
    ReplicateUnlockMsg,
    SheetStateMsg,
)
from .protocol import ProtocolError, Request, Response, error_response
from .sheet import Sheet

_HEARTBEAT = '{"type":"heartbeat"}'

_RFC3339 = re.compile(
    r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})"
)


def _parse_rfc3339(text: str) -> datetime:
    """Parse an RFC 3339 timestamp; raises ValueError if malformed."""
    match = _RFC3339.fullmatch(text)
    if match is None:
        raise ValueError(f"not an RFC 3339 timestamp: {text!r}")
    stamp, fraction, zone = match.groups()
    digits = (fraction or ".")[1:7].ljust(6, "0")
    offset = "+00:00" if zone == "Z" else zone
    return datetime.fromisoformat(f"{stamp}.{digits}{offset}")


def _format_epoch(seconds: float) -> str:
    moment = datetime.fromtimestamp(seconds, timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(eq=False)
class ClientSession:
    """A connected client and the sheet it has opened, if any."""

    conn: Any
    sheet: Sheet | None = None

    @property
    def owner_id(self) -> str:
        """Identifier under which this client's locks are held."""
        return f"{id(self.conn):#x}"


class Handler:
    """Routes client requests to sheets and fans changes out to replicas."""

    def __init__(
        self,
        manager: SheetManager,
        instance_id: str,
        started_at: datetime,
        config: Config | None = None,
    ) -> None:
        self.manager = manager
        self.instance_id = instance_id
        self.started_at = started_at
        self.config = config if config is not None else Config()
        self.is_leader = True
        self._locks = LockManager()
        self._clients: dict[Any, ClientSession] = {}
        self._replicas: dict[Any, ReplicaInfo] = {}
        self._routes: dict[str, Callable[[ClientSession, Request], Awaitable[None]]] = {
            "get": self._handle_get,
            "set": self._handle_set,
            "delete": self._handle_delete,
            "delete_prefix": self._handle_delete_prefix,
            "delete_suffix": self._handle_delete_suffix,
            "dump": self._handle_dump,
            "lock": self._handle_lock,
            "unlock": self._handle_unlock,
            "set_null": self._handle_set_null,
        }

    def lock_manager(self) -> LockManager:
        """The lock table, for periodic cleanup."""
        return self._locks

    # -- connection lifecycle ---------------------------------------------

    async def serve(self, conn: Any) -> None:
        """Handle one connection until it closes, then clean up after it."""
        client = ClientSession(conn)
        self._clients[conn] = client
        logger.info("Client connected (no sheet yet)")
        try:
            async for data in conn:
                await self.handle_message(client, data)
        except ConnectionClosed:
            pass
        finally:
            await self.disconnect(client)

    async def disconnect(self, client: ClientSession) -> None:
        """Forget a connection: drop its locks, leave its sheet, close it."""
        conn = client.conn
        if self._replicas.pop(conn, None) is not None:
            await self._close(conn)
            logger.info("Replica disconnected")
            return

        released = self._locks.release_all_by_owner(client.owner_id)
        if released:
            logger.info(f"Released {released} locks on disconnect")

        self._clients.pop(conn, None)

        if client.sheet is not None:
            remaining = client.sheet.remove_collaborator(conn)
            if remaining == 0:
                self.manager.delete_sheet(client.sheet.id)

        await self._close(conn)
        logger.info("Client disconnected")

    @staticmethod
    async def _close(conn: Any) -> None:
        try:
            await conn.close()
        except Exception:
            pass

    # -- routing ----------------------------------------------------------

    async def handle_message(self, client: ClientSession, text: str | bytes) -> None:
        """Decode one raw message and act on it."""
        try:
            request = Request.from_json(text)
        except ProtocolError:
            await self._send_error(client.conn, "invalid JSON")
            return
        await self.handle_action(client, request)

    async def handle_action(self, client: ClientSession, request: Request) -> None:
        """Carry out one request; all but open and register_replica need a sheet."""
        if request.action == "open":
            await self._handle_open(client, request)
            return
        if request.action == "register_replica":
            await self._handle_register_replica(client, request)
            return
        if client.sheet is None:
            logger.warning("Action rejected - no sheet open")
            await self._send_error(client.conn, "must open sheet first")
            return
        route = self._routes.get(request.action)
        if route is None:
            await self._send_error(client.conn, f"unknown action: {request.action}")
            return
        await route(client, request)

    # -- open -------------------------------------------------------------

    async def _handle_open(self, client: ClientSession, request: Request) -> None:
        if client.sheet is not None:
            await self._send_error(client.conn, f"already in sheet: {client.sheet.id}")
            return
        if not request.sheet or not request.password:
            await self._send_error(client.conn, "sheet and password required")
            return
        try:
            sheet = await asyncio.to_thread(
                self.manager.get_or_create_sheet, request.sheet, request.password
            )
        except (ValueError, InvalidPasswordError):
            await self._send_error(client.conn, "invalid password")
            await self._close(client.conn)
            return

        client.sheet = sheet
        sheet.add_collaborator(client.conn)
        await self._send_response(client.conn, Response(success=True, sheet=request.sheet))
        await self._send_text(client.conn, SheetStateMsg(data=sheet.dump()).to_json())

    # -- sheet actions ----------------------------------------------------

    async def _handle_get(self, client: ClientSession, request: Request) -> None:
        try:
            value = client.sheet.get(request.key)
        except KeyError:
            await self._send_error(client.conn, "key not found")
            return
        await self._send_response(
            client.conn, Response(success=True, key=request.key, value=value)
        )

    async def _handle_set(self, client: ClientSession, request: Request) -> None:
        sheet = client.sheet
        ttl = self.config.cache_ttl()
        if request.jitter:
            evicted = sheet.set_with_jitter(
                request.key, request.value, ttl, self.config.jitter_percent
            )
        else:
            evicted = sheet.set(request.key, request.value, ttl)
        await self._send_response(client.conn, Response(success=True, key=request.key))
        await sheet.broadcast_set(client.conn, request.key, request.value)
        await self._replicate(
            ReplicateMsg(sheet=sheet.id, key=request.key, value=request.value, jitter=request.jitter)
        )
        await self._announce_eviction(client, evicted)

    async def _announce_eviction(self, client: ClientSession, evicted: str | None) -> None:
        if not evicted:
            return
        await client.sheet.broadcast(client.conn, InvalidateMsg(key=evicted))
        await self._replicate(ReplicateEvictMsg(sheet=client.sheet.id, key=evicted))
        logger.info(f"LRU eviction replicated: {client.sheet.id}/{evicted}")

    async def _handle_delete(self, client: ClientSession, request: Request) -> None:
        sheet = client.sheet
        sheet.delete(request.key)
        await self._send_response(
            client.conn, Response(success=True, key=request.key, deleted=1)
        )
        await sheet.broadcast(client.conn, InvalidateMsg(key=request.key))
        await self._replicate(ReplicateMsg(type="replicate_delete", sheet=sheet.id, key=request.key))

    async def _handle_delete_prefix(self, client: ClientSession, request: Request) -> None:
        sheet = client.sheet
        count = sheet.delete_prefix(request.prefix)
        await self._send_response(client.conn, Response(success=True, deleted=count))
        await sheet.broadcast(client.conn, InvalidateMsg(prefix=request.prefix))
        await self._replicate(ReplicateDeletePrefixMsg(sheet=sheet.id, prefix=request.prefix))

    async def _handle_delete_suffix(self, client: ClientSession, request: Request) -> None:
        sheet = client.sheet
        count = sheet.delete_suffix(request.suffix)
        await self._send_response(client.conn, Response(success=True, deleted=count))
        await sheet.broadcast(client.conn, InvalidateMsg(suffix=request.suffix))
        await self._replicate(ReplicateDeleteSuffixMsg(sheet=sheet.id, suffix=request.suffix))

    async def _handle_dump(self, client: ClientSession, request: Request) -> None:
        data = client.sheet.dump()
        await self._send_response(
            client.conn, Response(success=True, value=data, count=len(data))
        )

    # -- locks ------------------------------------------------------------

    async def _handle_lock(self, client: ClientSession, request: Request) -> None:
        sheet_id = client.sheet.id
        owner = client.owner_id
        ttl = self.config.lock_ttl()
        if request.lock_ttl > 0:
            ttl = float(request.lock_ttl)
        try:
            acquired = self._locks.try_acquire(sheet_id, request.key, owner, ttl)
        except LockHeldError as exc:
            if self._locks.is_locked(sheet_id, request.key) is not None:
                await self._send_response(
                    client.conn,
                    Response(success=False, error="lock held by another client", key=request.key),
                )
            else:
                await self._send_error(client.conn, str(exc))
            return
        await self._send_response(client.conn, Response(success=True, key=request.key))
        await self._replicate(
            ReplicateLockMsg(
                sheet=sheet_id,
                key=request.key,
                owner=owner,
                expires_at=_format_epoch(acquired.expires_at),
            )
        )

    async def _handle_unlock(self, client: ClientSession, request: Request) -> None:
        sheet_id = client.sheet.id
        try:
            self._locks.release(sheet_id, request.key, client.owner_id)
        except NotOwnerError:
            await self._send_error(client.conn, "not lock owner")
            return
        except LockNotFoundError:
            await self._send_error(client.conn, "lock not found")
            return
        await self._send_response(client.conn, Response(success=True, key=request.key))
        await self._replicate(ReplicateUnlockMsg(sheet=sheet_id, key=request.key))

    # -- null placeholder -------------------------------------------------

    async def _handle_set_null(self, client: ClientSession, request: Request) -> None:
        sheet = client.sheet
        evicted = sheet.set_null(request.key, self.config.cache_ttl())
        await self._send_response(client.conn, Response(success=True, key=request.key))
        await self._replicate(ReplicateMsg(sheet=sheet.id, key=request.key, value=NULL_PLACEHOLDER))
        await self._announce_eviction(client, evicted)

    # -- replication ------------------------------------------------------

    async def _handle_register_replica(self, client: ClientSession, request: Request) -> None:
        try:
            started_at = _parse_rfc3339(request.started_at)
        except ValueError:
            await self._send_error(client.conn, "invalid started_at timestamp (use RFC3339)")
            return
        if not request.instance_id:
            await self._send_error(client.conn, "instance_id required")
            return

        self._replicas[client.conn] = ReplicaInfo(client.conn, request.instance_id, started_at)
        self._clients.pop(client.conn, None)
        logger.info(f"Replica registered: {request.instance_id} (started: {request.started_at})")

        await self._send_full_state(client.conn)
        await self._send_response(client.conn, Response(success=True))

    async def _send_full_state(self, conn: Any) -> None:
        sheets = {sheet_id: sheet.dump() for sheet_id, sheet in self.manager.items()}
        await self._send_text(conn, FullStateMsg(sheets=sheets).to_json())
        logger.info(f"Sent full state to replica ({len(sheets)} sheets)")

    async def _replicate(self, message: Message) -> None:
        payload = message.to_json()
        for conn in list(self._replicas):
            await self._send_text(conn, payload)

    def replica_count(self) -> int:
        """Number of registered replicas."""
        return len(self._replicas)

    # -- heartbeat --------------------------------------------------------

    async def broadcast_heartbeat(self) -> int:
        """Send a heartbeat to every replica; return how many received it."""
        delivered = 0
        for conn in list(self._replicas):
            try:
                await conn.send(_HEARTBEAT)
            except Exception:
                logger.warning("Failed to send heartbeat to replica")
            else:
                delivered += 1
        if delivered:
            logger.info(f"Heartbeat sent to {delivered} replica(s)")
        return delivered

    def start_heartbeat(self) -> asyncio.Task:
        """Start sending heartbeats periodically; returns the running task."""
        interval = self.config.heartbeat_interval()

        async def beat() -> None:
            while True:
                await asyncio.sleep(interval)
                await self.broadcast_heartbeat()

        task = asyncio.create_task(beat())
        logger.info(f"Heartbeat started (interval: {interval:g}s)")
        return task

    # -- sending ----------------------------------------------------------

    @staticmethod
    async def _send_text(conn: Any, payload: str) -> None:
        # A failed write surfaces as a closed connection on the read side.
        try:
            await conn.send(payload)
        except Exception:
            pass

    async def _send_response(self, conn: Any, response: Response) -> None:
        await self._send_text(conn, response.to_json())

    async def _send_error(self, conn: Any, message: str) -> None:
        await self._send_response(conn, error_response(message))

    # -- statistics -------------------------------------------------------

    def client_count(self) -> int:
        """Number of connected, non-replica clients."""
        return len(self._clients)

    def stats(self) -> str:
        """One-line summary of clients, sheets and replicas."""
        return (
            f"Clients: {self.client_count()}, Sheets: {self.manager.sheet_count()}, "
            f"Replicas: {self.replica_count()}"
        )