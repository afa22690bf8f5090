# advocache

An in-memory cache built around *sheets*. A sheet is a password-protected,
tenant-isolated cache that many clients share over WebSocket. Each sheet is an
LRU cache with per-entry TTL. The server logic keeps every collaborator and
every replica in step as data changes.

All durations are in seconds.

## Modules

- **`advocache.cache`**: `Cache` is a thread-safe LRU cache. A capacity of 0
  means unlimited. Expired entries are dropped lazily on `get`, and also by a
  background thread that runs `cleanup_expired` every `cleanup_interval`
  seconds (60 by default). Pass `None` or `0` to turn that thread off, and call
  `stop_ttl_cleaner` to stop it later. `get` raises `KeyError` for a missing or
  expired key. `set(key, value, ttl)` returns the key it evicted to make room,
  or `None`. `set_with_jitter` adds a random 0 to `jitter_percent` % to the TTL.
  `set_null` stores the `NULL_PLACEHOLDER` string (`"__NULL__"`) for keys known
  to be missing, and `is_null` recognises it. Other methods are `delete`,
  `delete_prefix`, `delete_suffix` (the last two return how many keys went),
  `dump`, `count` / `len()` and `capacity`.
- **`advocache.sheet`**: `Sheet` is a `Cache` with an ID, a bcrypt password
  hash (cost 10) and a set of collaborator connections. Passwords longer than
  72 bytes are rejected. `Sheet.replica(sheet_id)` makes a sheet without a
  password, and that sheet adopts the first password passed to
  `validate_password`. `broadcast` and `broadcast_set` are coroutines. They send
  JSON to every collaborator except the sender.
- **`advocache.manager`**: `SheetManager` holds sheets by ID.
  `get_or_create_sheet(sheet_id, password)` returns the sheet or creates it. It
  raises `ValueError` for an empty ID or password and `InvalidPasswordError` for
  a wrong password. Other methods are `get_sheet`, `add_sheet`, `delete_sheet`
  (which also stops the sheet's cleaner thread), `sheet_count` and `items`.
- **`advocache.lock`**: `LockManager` keeps locks with an owner and an expiry,
  scoped by sheet.
  - `try_acquire(sheet_id, key, owner, ttl)` never waits. The current owner
    refreshes the expiry, and anyone may take an expired lock. Otherwise it
    raises `LockHeldError`.
  - `release` raises `LockNotFoundError` or `NotOwnerError`.
  - `is_locked` returns the live `Lock` or `None`.
  - The table is also managed with `release_all_by_owner`, `cleanup_expired`,
    `get_all_by_sheet` and `set_lock`.

  All lock errors derive from `LockError`.
- **`advocache.config`**: `Config` is a frozen dataclass of settings, and
  `load_config(path=".", environ=None)` builds one (see below).
- **`advocache.messages`**: the JSON messages exchanged between leader, replicas
  and readers. These are `ReplicateMsg`, `FullStateMsg`, `SheetStateMsg`,
  `InvalidateMsg`, `RegisterReplicaRequest` and the `Replicate*Msg` family.
  Each has `to_dict`, `to_json` and `from_dict`, and empty optional fields are
  left out when encoding.
- **`advocache.protocol`**: `Request` is decoded from client JSON with
  `from_json`, which raises `ProtocolError` on malformed input. `Response` is
  encoded with `to_json`. `error_response(message)` builds a failed response.
- **`advocache.handler`**: `Handler` holds the server logic. `serve(conn)`
  handles one WebSocket connection until it closes. It routes the actions
  `open`, `get`, `set`, `delete`, `delete_prefix`, `delete_suffix`, `dump`,
  `lock`, `unlock`, `set_null` and `register_replica`. It broadcasts changes to
  the other collaborators in a sheet and replicates them to registered replicas.
  `start_heartbeat()` starts an asyncio task that sends heartbeats to replicas.
  `stats()` returns a one-line count of clients, sheets and replicas.
- **`advocache.replica_client`**: `ReplicaClient` connects to a leader and
  registers itself. It applies the full state and then each replicated change
  to its `SheetManager`. It promotes itself (`is_promoted()`) when heartbeats
  stop for longer than the configured timeout, or when three reconnect attempts
  fail. Lock and unlock events from the leader are counted but not applied.
- **`advocache.reader`**: `Reader` is an embeddable asyncio client that mirrors
  one sheet locally.
- **`advocache.logger`**: levelled, colour-prefixed output to standard output
  through `info`, `warning` and `error`. `set_level(Level.WARNING)` and similar
  calls set the minimum level.

## Running a server

The package has no command and no server start-up of its own. You wire
`Handler.serve` into a WebSocket server yourself, for example with the
`websockets` library:

```python
import asyncio
from datetime import datetime, timezone

import websockets

from advocache.config import load_config
from advocache.handler import Handler
from advocache.manager import SheetManager


async def main():
    config = load_config(".")
    manager = SheetManager(config.cache_capacity)
    handler = Handler(manager, "node-1", datetime.now(timezone.utc), config)
    handler.start_heartbeat()
    async with websockets.serve(handler.serve, "localhost", 8081):
        await asyncio.Future()


asyncio.run(main())
```

Note the following about the pieces you wire together yourself:

- The `port` setting is read but not used to listen on anything.
- `log_level` is not applied to the logger automatically.
- Expired locks are not swept on a timer: call
  `handler.lock_manager().cleanup_expired()` yourself if you want that.
- Sheets always run their own cleaner every 60 seconds, whatever
  `ttl_cleanup_seconds` says.
- A promoted `ReplicaClient` only stops following its leader. Serving clients is
  up to the `Handler` you run alongside it.
- There is no persistent storage. All data lives in memory.

## Configuration

`load_config` reads a `.env` file from the given directory. Non-empty
environment variables override it, and defaults fill the rest. An empty value
for a numeric setting reads as 0. A value that is not an integer raises
`ValueError`. The duration helpers `cache_ttl()`, `lock_ttl()`,
`heartbeat_interval()` and the like return seconds.

| Variable | Default |
| --- | --- |
| `ADVO_PORT` | `:8081` |
| `ADVO_ENVIRONMENT` | `development` |
| `ADVO_LOG_LEVEL` | `info` |
| `ADVO_CACHE_TTL_MINUTES` | `15` |
| `ADVO_JITTER_PERCENT` | `20` |
| `ADVO_CACHE_CAPACITY` | `10000` |
| `ADVO_TTL_CLEANUP_SECONDS` | `60` |
| `ADVO_LOCK_TTL_SECONDS` | `30` |
| `ADVO_LOCK_CLEANUP_SECONDS` | `5` |
| `ADVO_HEARTBEAT_INTERVAL_SECONDS` | `5` |
| `ADVO_HEARTBEAT_TIMEOUT_SECONDS` | `10` |
| `ADVO_LEADER_ADDRESS` | *(empty)* |
| `ADVO_ROLE` | `leader` |

`Config.is_replica()` returns true for the role `replica` and false for
`leader`. For any other role it is true when `leader_address` is set.
`Config.role_name()` returns the declared role, or infers one from the leader
address when the role is empty.

## Wire protocol

Clients send JSON objects with an `action` field.

- **Opening a sheet.** The first action is `open`, with `sheet` and
  `password`. The server replies `{"success":true,"sheet":...}` and then sends
  a `sheet_state` message with the sheet's data. A wrong password gets
  `"invalid password"` and the connection is closed. Any other action sent
  before `open` gets `"must open sheet first"`.
- **Data actions.** `set` and `set_null` store with the configured cache TTL,
  with jitter if the request has `"jitter": true`. `get` answers
  `"key not found"` for a missing key. `dump` returns the data and a `count`.
- **Locks.** `lock` takes an optional `lock_ttl` in seconds. `unlock` answers
  `"not lock owner"` or `"lock not found"` when it cannot release the lock.
- **Messages to other collaborators.** When a key is set, the other
  collaborators in the sheet receive `{"type":"replicate","key":...,"value":...}`.
  On deletes and LRU evictions they receive `{"type":"invalidate", ...}` with
  `key`, `prefix` or `suffix`.
- **Disconnecting.** A client's locks are released when it disconnects. A sheet
  is deleted when its last collaborator leaves.

## Using the reader

```python
import asyncio

from advocache.reader import Reader, ReaderConfig


async def main():
    password = "password"
    config = ReaderConfig(
        leader_addr="ws://localhost:8081",
        backup_addr="ws://localhost:8082",
        sheet="tenant-123",
        password=password,
    )
    async with await Reader.connect(config) as reader:
        await reader.set("user:1", {"name": "Ann"})
        print(reader.get_map("user:1"))


asyncio.run(main())
```

`Reader.connect` returns once the reader is authenticated and holds the sheet's
state. It falls back to `backup_addr` if the leader cannot be reached, and it
raises `AuthFailedError` if the server refuses the sheet or password.

Reads come from the local copy and are not awaited: `get(key, default=None)`,
`get_string`, `get_map`, `has`, `is_null` and `cache_size`.

Writes are awaited: `set`, `delete`, `delete_prefix` and `delete_suffix`. Each
updates the local copy and then sends the change to the server. A write raises
`ReaderClosedError` after `close()` and `NotConnectedError` while disconnected.

When the connection drops, the reader retries with a delay that grows with each
attempt. It tries the current server first, then the backup, then the leader.
`max_reconnect_attempts` (default 3) and `reconnect_delay` (default 1 second)
set how it retries.