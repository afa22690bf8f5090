"""Application settings, read from a .env file and overridden by the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

from dotenv import dotenv_values

ENV_FILE_NAME = ".env"


def _setting(env_name: str, default: Any) -> Any:
    return field(default=default, metadata={"env": env_name})


@dataclass(frozen=True)
class Config:
    """All server settings; durations are exposed in seconds."""

    port: str = _setting("ADVO_PORT", ":8081")
    environment: str = _setting("ADVO_ENVIRONMENT", "development")
    log_level: str = _setting("ADVO_LOG_LEVEL", "info")

    cache_ttl_minutes: int = _setting("ADVO_CACHE_TTL_MINUTES", 15)
    jitter_percent: int = _setting("ADVO_JITTER_PERCENT", 20)
    cache_capacity: int = _setting("ADVO_CACHE_CAPACITY", 10000)
    ttl_cleanup_seconds: int = _setting("ADVO_TTL_CLEANUP_SECONDS", 60)

    lock_ttl_seconds: int = _setting("ADVO_LOCK_TTL_SECONDS", 30)
    lock_cleanup_seconds: int = _setting("ADVO_LOCK_CLEANUP_SECONDS", 5)

    heartbeat_interval_seconds: int = _setting("ADVO_HEARTBEAT_INTERVAL_SECONDS", 5)
    heartbeat_timeout_seconds: int = _setting("ADVO_HEARTBEAT_TIMEOUT_SECONDS", 10)
    leader_address: str = _setting("ADVO_LEADER_ADDRESS", "")

    role: str = _setting("ADVO_ROLE", "leader")

    def cache_ttl(self) -> float:
        """Cache entry lifetime in seconds."""
        return float(self.cache_ttl_minutes * 60)

    def ttl_cleanup_interval(self) -> float:
        """Seconds between sweeps for expired cache entries."""
        return float(self.ttl_cleanup_seconds)

    def lock_ttl(self) -> float:
        """Default lock lifetime in seconds."""
        return float(self.lock_ttl_seconds)

    def lock_cleanup_interval(self) -> float:
        """Seconds between sweeps for expired locks."""
        return float(self.lock_cleanup_seconds)

    def heartbeat_interval(self) -> float:
        """Seconds between heartbeats sent to replicas."""
        return float(self.heartbeat_interval_seconds)

    def heartbeat_timeout(self) -> float:
        """Seconds of silence after which a replica gives up on its leader."""
        return float(self.heartbeat_timeout_seconds)

    def is_development(self) -> bool:
        return self.environment == "development"

    def is_production(self) -> bool:
        return self.environment == "production"

    def is_replica(self) -> bool:
        """Explicit role wins; an unknown role falls back to the leader address."""
        if self.role == "replica":
            return True
        if self.role == "leader":
            return False
        return self.leader_address != ""

    def role_name(self) -> str:
        """The declared role, or one inferred from the leader address."""
        if self.role:
            return self.role
        if self.leader_address:
            return "replica"
        return "leader"


def _coerce(raw: str, default: Any, env_name: str) -> Any:
    if isinstance(default, int):
        if raw == "":
            return 0
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"{env_name}: cannot parse {raw!r} as an integer") from None
    return raw


def load_config(path: str | os.PathLike[str] = ".", environ: Mapping[str, str] | None = None) -> Config:
    """Build a Config from `path`/.env, then non-empty environment variables.

    A missing .env file is not an error; defaults fill any gaps.
    Raises ValueError when a numeric setting cannot be parsed.
    """
    env = os.environ if environ is None else environ
    file_values: dict[str, str] = {}
    env_file = Path(path) / ENV_FILE_NAME
    if env_file.is_file():
        file_values = {
            key.upper(): "" if value is None else value
            for key, value in dotenv_values(env_file).items()
        }

    values: dict[str, Any] = {}
    for setting in fields(Config):
        env_name = setting.metadata["env"]
        raw = env.get(env_name)
        if not raw:
            raw = file_values.get(env_name)
        if raw is None:
            continue
        values[setting.name] = _coerce(raw, setting.default, env_name)
    return Config(**values)