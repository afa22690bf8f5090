import asyncio
import json
from datetime import datetime, timezone

import pytest
import websockets

from advocache.manager import SheetManager
from advocache.replica_client import ReplicaClient


@pytest.fixture
def manager():
    return SheetManager()


@pytest.fixture
def client(manager):
    return ReplicaClient(
        manager, "replica-1", datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc), "ws://127.0.0.1:1/ws"
    )


def send(client, message):
    client.handle_message(json.dumps(message))


def test_full_state_creates_sheets_with_data(client, manager):
    send(client, {"type": "full_state", "sheets": {"s1": {"a": 1, "b": "x"}, "s2": {}}})
    assert manager.sheet_count() == 2
    assert manager.get_sheet("s1").dump() == {"a": 1, "b": "x"}
    assert manager.get_sheet("s1").get("a") == 1


def test_replicated_sheet_has_no_password(client, manager):
    send(client, {"type": "replicate", "sheet": "s", "key": "k", "value": 1})
    assert manager.get_sheet("s").password_hash is None


def test_full_state_reuses_existing_sheet(client, manager):
    password = "password"
    existing = manager.get_or_create_sheet("s1", password)
    send(client, {"type": "full_state", "sheets": {"s1": {"k": "v"}}})
    assert manager.get_sheet("s1") is existing
    assert existing.dump() == {"k": "v"}


def test_full_state_with_bad_sheet_is_ignored(client, manager):
    send(client, {"type": "full_state", "sheets": {"s1": [1, 2]}})
    assert manager.sheet_count() == 0


def test_replicate_sets_value(client, manager):
    send(client, {"type": "replicate", "sheet": "s", "key": "user:1", "value": {"name": "John"}})
    assert manager.get_sheet("s").get("user:1") == {"name": "John"}


def test_replicate_with_jitter_sets_value(client, manager):
    send(client, {"type": "replicate", "sheet": "s", "key": "k", "value": "v", "jitter": True})
    assert manager.get_sheet("s").get("k") == "v"


def test_replicate_delete_removes_key(client, manager):
    send(client, {"type": "replicate", "sheet": "s", "key": "k", "value": "v"})
    send(client, {"type": "replicate_delete", "sheet": "s", "key": "k"})
    with pytest.raises(KeyError):
        manager.get_sheet("s").get("k")


def test_delete_prefix_and_suffix(client, manager):
    for key in ["user:1", "user:2", "item:1", "a:tmp"]:
        send(client, {"type": "replicate", "sheet": "s", "key": key, "value": 1})
    send(client, {"type": "replicate_delete_prefix", "sheet": "s", "prefix": "user:"})
    assert sorted(manager.get_sheet("s").dump()) == ["a:tmp", "item:1"]
    send(client, {"type": "replicate_delete_suffix", "sheet": "s", "suffix": ":tmp"})
    assert manager.get_sheet("s").dump() == {"item:1": 1}


def test_evict_removes_key(client, manager):
    send(client, {"type": "replicate", "sheet": "s", "key": "old", "value": 1})
    send(client, {"type": "replicate_evict", "sheet": "s", "key": "old"})
    assert manager.get_sheet("s").count() == 0


def test_deletes_on_unknown_sheet_create_nothing(client, manager):
    send(client, {"type": "replicate_delete", "sheet": "nope", "key": "k"})
    send(client, {"type": "replicate_delete_prefix", "sheet": "nope", "prefix": "k"})
    send(client, {"type": "replicate_evict", "sheet": "nope", "key": "k"})
    assert manager.sheet_count() == 0


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        json.dumps({"type": 5}),
        json.dumps({"type": "mystery", "sheet": "s", "key": "k"}),
        json.dumps({"type": "replicate_lock", "sheet": "s", "key": "k", "owner": "o"}),
        json.dumps({"type": "replicate", "sheet": "s", "key": 3}),
    ],
)
def test_ignored_messages_change_nothing(client, manager, raw):
    client.handle_message(raw)
    assert manager.sheet_count() == 0


@pytest.mark.asyncio
async def test_promote_to_leader_without_connection(client):
    assert client.is_promoted() is False
    await client.promote_to_leader()
    await client.promote_to_leader()
    assert client.is_promoted() is True
    await client.close()


@pytest.mark.asyncio
async def test_connect_registers_and_promotion_closes_connection(client):
    received = asyncio.Queue()
    closed = asyncio.Event()

    async def handler(ws):
        received.put_nowait(json.loads(await ws.recv()))
        try:
            async for _ in ws:
                pass
        except websockets.ConnectionClosed:
            pass
        finally:
            closed.set()

    async with websockets.serve(handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        client.leader_addr = f"ws://127.0.0.1:{port}/ws"
        await client.connect()
        registration = await asyncio.wait_for(received.get(), 5)
        assert registration == {
            "action": "register_replica",
            "instance_id": "replica-1",
            "started_at": "2024-01-02T03:04:05Z",
        }
        await client.promote_to_leader()
        await asyncio.wait_for(closed.wait(), 5)
        assert client.is_promoted() is True
        await client.close()