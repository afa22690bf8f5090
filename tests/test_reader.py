import asyncio
import json
import socket
from contextlib import asynccontextmanager

import pytest
import websockets

from advocache.reader import (
    AuthFailedError,
    NotConnectedError,
    Reader,
    ReaderClosedError,
    ReaderConfig,
)

PASSWORD = "password"
SHEET = "tenant-1"


class FakeServer:
    def __init__(self, state, expected_password):
        self.state = state
        self.expected_password = expected_password
        self.received = []
        self.connections = []
        self.url = ""

    async def handler(self, ws, *args):
        async for raw in ws:
            message = json.loads(raw)
            if message.get("action") == "open":
                if message.get("password") != self.expected_password:
                    await ws.send(json.dumps({"success": False, "error": "invalid password"}))
                    await ws.close()
                    return
                await ws.send(json.dumps({"success": True, "sheet": message["sheet"]}))
                await ws.send(json.dumps({"type": "sheet_state", "data": self.state}))
                self.connections.append(ws)
            else:
                self.received.append(message)

    async def push(self, message):
        for ws in self.connections:
            await ws.send(json.dumps(message))


@asynccontextmanager
async def running_server(state=None, expected_password=PASSWORD):
    server = FakeServer(dict(state or {}), expected_password)
    async with websockets.serve(server.handler, "127.0.0.1", 0) as ws_server:
        port = next(iter(ws_server.sockets)).getsockname()[1]
        server.url = f"ws://127.0.0.1:{port}/ws"
        yield server


def unused_url():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return f"ws://127.0.0.1:{port}/ws"


async def wait_until(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def make_config(leader, backup=""):
    return ReaderConfig(leader_addr=leader, backup_addr=backup, sheet=SHEET, password=PASSWORD)


def offline_reader():
    return Reader(ReaderConfig(sheet=SHEET))


# -- configuration --------------------------------------------------------


def test_config_applies_defaults():
    config = ReaderConfig()
    assert config.max_reconnect_attempts == 3
    assert config.reconnect_delay == 1.0


def test_config_keeps_explicit_values():
    config = ReaderConfig(max_reconnect_attempts=7, reconnect_delay=0.25)
    assert (config.max_reconnect_attempts, config.reconnect_delay) == (7, 0.25)


# -- local state and broadcasts ------------------------------------------


def test_replicate_stores_value():
    reader = offline_reader()
    reader.apply_message(json.dumps({"type": "replicate", "key": "user:1", "value": {"name": "John"}}))
    assert reader.get("user:1") == {"name": "John"}
    assert reader.cache_size() == 1


@pytest.mark.parametrize(
    "message, remaining",
    [
        ({"type": "invalidate", "key": "user:1"}, {"user:2", "order:1"}),
        ({"type": "invalidate", "prefix": "user:"}, {"order:1"}),
        ({"type": "invalidate", "suffix": ":1"}, {"user:2"}),
    ],
)
def test_invalidate(message, remaining):
    reader = offline_reader()
    reader.load_state({"user:1": 1, "user:2": 2, "order:1": 3})
    reader.apply_message(json.dumps(message))
    assert {key for key in ["user:1", "user:2", "order:1"] if reader.has(key)} == remaining


def test_invalidate_key_takes_precedence_over_prefix():
    reader = offline_reader()
    reader.load_state({"a1": 1, "a2": 2})
    reader.apply_message({"type": "invalidate", "key": "a1", "prefix": "a"})
    assert not reader.has("a1")
    assert reader.get("a2") == 2


def test_sheet_state_replaces_cache():
    reader = offline_reader()
    reader.load_state({"old": 1})
    reader.apply_message(json.dumps({"type": "sheet_state", "data": {"new": 2}}))
    assert not reader.has("old")
    assert reader.get("new") == 2


@pytest.mark.parametrize("raw", ["not json", "[1, 2]", json.dumps({"type": "mystery", "key": "k"})])
def test_malformed_or_unknown_messages_are_ignored(raw):
    reader = offline_reader()
    reader.load_state({"k": "v"})
    reader.apply_message(raw)
    assert reader.get("k") == "v"
    assert reader.cache_size() == 1


def test_typed_getters():
    reader = offline_reader()
    reader.load_state({"s": "text", "m": {"a": 1}, "n": 5})
    assert reader.get_string("s") == "text"
    assert reader.get_string("n") is None
    assert reader.get_map("m") == {"a": 1}
    assert reader.get_map("s") is None
    assert reader.get("missing", "fallback") == "fallback"


def test_is_null():
    reader = offline_reader()
    reader.load_state({"gone": "__NULL__", "here": "value"})
    assert reader.is_null("gone")
    assert not reader.is_null("here")
    assert not reader.is_null("absent")


# -- connection lifecycle -------------------------------------------------


@pytest.mark.asyncio
async def test_write_before_connect_raises():
    reader = offline_reader()
    with pytest.raises(NotConnectedError):
        await reader.set("k", 1)
    assert not reader.has("k")


@pytest.mark.asyncio
async def test_write_after_close_raises():
    reader = offline_reader()
    await reader.close()
    with pytest.raises(ReaderClosedError):
        await reader.delete("k")


@pytest.mark.asyncio
async def test_connect_loads_state():
    async with running_server({"user:1": {"name": "John"}}) as server:
        reader = await Reader.connect(make_config(server.url))
        try:
            assert reader.is_connected()
            assert reader.current_server() == server.url
            assert reader.get_map("user:1") == {"name": "John"}
        finally:
            await reader.close()
        assert not reader.is_connected()


@pytest.mark.asyncio
async def test_set_forwards_and_updates_local():
    async with running_server() as server:
        async with await Reader.connect(make_config(server.url)) as reader:
            await reader.set("user:1", {"name": "John"})
            assert reader.get("user:1") == {"name": "John"}
            await wait_until(lambda: server.received)
            assert server.received[0] == {"action": "set", "key": "user:1", "value": {"name": "John"}}


@pytest.mark.asyncio
async def test_deletes_forward_and_update_local():
    state = {"user:1": 1, "user:2": 2, "order:9": 3, "misc": 4}
    async with running_server(state) as server:
        async with await Reader.connect(make_config(server.url)) as reader:
            await reader.delete("misc")
            await reader.delete_prefix("user:")
            await reader.delete_suffix(":9")
            assert reader.cache_size() == 0
            await wait_until(lambda: len(server.received) == 3)
            assert server.received == [
                {"action": "delete", "key": "misc"},
                {"action": "delete_prefix", "prefix": "user:"},
                {"action": "delete_suffix", "suffix": ":9"},
            ]


@pytest.mark.asyncio
async def test_broadcast_from_server_is_applied():
    async with running_server({"stale": 1}) as server:
        async with await Reader.connect(make_config(server.url)) as reader:
            await server.push({"type": "replicate", "key": "fresh", "value": [1, 2]})
            await server.push({"type": "invalidate", "key": "stale"})
            await wait_until(lambda: not reader.has("stale"))
            assert reader.get("fresh") == [1, 2]


@pytest.mark.asyncio
async def test_wrong_password_fails_authentication():
    async with running_server() as server:
        password = "secret"
        config = ReaderConfig(leader_addr=server.url, sheet=SHEET, password=password)
        with pytest.raises(AuthFailedError):
            await Reader.connect(config)


@pytest.mark.asyncio
async def test_falls_back_to_backup_when_leader_unreachable():
    async with running_server({"k": "v"}) as backup:
        async with await Reader.connect(make_config(unused_url(), backup.url)) as reader:
            assert reader.current_server() == backup.url
            assert reader.get_string("k") == "v"


@pytest.mark.asyncio
async def test_unreachable_leader_without_backup_raises():
    with pytest.raises(OSError):
        await Reader.connect(make_config(unused_url()))


@pytest.mark.asyncio
async def test_context_manager_connects_and_closes():
    async with running_server({"k": 1}) as server:
        reader = Reader(make_config(server.url))
        async with reader:
            assert reader.is_connected()
            assert reader.get("k") == 1
        assert not reader.is_connected()
        with pytest.raises(ReaderClosedError):
            await reader.set("k", 2)