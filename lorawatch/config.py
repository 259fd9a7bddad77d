"""
lorawatch configuration
=======================
Tracker settings with defaults matching the original LoRa dashboard:
two nodes, 5 minute offline threshold, 30s poll, 10s liveness recheck.

All values can be overridden from the environment:
    LORAWATCH_NODES              - Comma-separated known node ids
    LORAWATCH_STALENESS_SECONDS  - Offline threshold (default: 300)
    LORAWATCH_HYSTERESIS_LIMIT   - Stale ticks before declaring offline (default: 0 = off)
    LORAWATCH_POLL_SECONDS       - Full-window refresh interval (default: 30)
    LORAWATCH_LIVENESS_SECONDS   - Liveness recheck interval (default: 10)
    LORAWATCH_WINDOW_DAYS        - Resolution window (default: 7)
    LORAWATCH_FETCH_LIMIT        - Max rows per refresh (default: 1000)
    LORAWATCH_TABLE              - Row store table name (default: LoRaData)
    LORAWATCH_STORE_URL          - Supabase / PostgREST base URL
    LORAWATCH_STORE_KEY          - Supabase anon / service key
    DATABASE_URL                 - SQLAlchemy URL (used when no store URL is set)
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping, Optional

from .errors import ConfigError

DEFAULT_NODES: tuple[str, ...] = ("Node_1", "Node_2")
DEFAULT_STALENESS_THRESHOLD = timedelta(minutes=5)
DEFAULT_HYSTERESIS_LIMIT: int = 0
DEFAULT_POLL_INTERVAL: float = 30.0
DEFAULT_LIVENESS_INTERVAL: float = 10.0
DEFAULT_WINDOW = timedelta(days=7)
DEFAULT_FETCH_LIMIT: int = 1000
DEFAULT_HISTORY_LIMIT: int = 5000
DEFAULT_TABLE: str = "LoRaData"


@dataclass
class TrackerConfig:
    known_nodes: tuple[str, ...] = DEFAULT_NODES
    staleness_threshold: timedelta = DEFAULT_STALENESS_THRESHOLD
    hysteresis_limit: int = DEFAULT_HYSTERESIS_LIMIT
    poll_interval: float = DEFAULT_POLL_INTERVAL        # seconds
    liveness_interval: float = DEFAULT_LIVENESS_INTERVAL  # seconds
    window: timedelta = DEFAULT_WINDOW
    fetch_limit: int = DEFAULT_FETCH_LIMIT
    table: str = DEFAULT_TABLE
    store_url: Optional[str] = None
    store_key: Optional[str] = field(default=None, repr=False)
    database_url: Optional[str] = None

    def __post_init__(self):
        self.known_nodes = tuple(self.known_nodes)

    def validate(self) -> "TrackerConfig":
        """Raise ConfigError on the first invalid setting, else return self."""
        if not self.known_nodes:
            raise ConfigError("At least one known node id is required")
        for node_id in self.known_nodes:
            if not isinstance(node_id, str) or not node_id.strip():
                raise ConfigError(f"Invalid node id: {node_id!r}")
        if len(set(self.known_nodes)) != len(self.known_nodes):
            raise ConfigError(f"Duplicate node ids in {list(self.known_nodes)}")
        if self.staleness_threshold <= timedelta(0):
            raise ConfigError(
                f"staleness_threshold must be positive, got {self.staleness_threshold}"
            )
        if isinstance(self.hysteresis_limit, bool) or not isinstance(self.hysteresis_limit, int):
            raise ConfigError(f"hysteresis_limit must be an integer, got {self.hysteresis_limit!r}")
        if self.hysteresis_limit < 0:
            raise ConfigError(f"hysteresis_limit must be >= 0, got {self.hysteresis_limit}")
        if self.poll_interval <= 0:
            raise ConfigError(f"poll_interval must be positive, got {self.poll_interval}")
        if self.liveness_interval <= 0:
            raise ConfigError(f"liveness_interval must be positive, got {self.liveness_interval}")
        if self.window <= timedelta(0):
            raise ConfigError(f"window must be positive, got {self.window}")
        if self.fetch_limit <= 0:
            raise ConfigError(f"fetch_limit must be positive, got {self.fetch_limit}")
        if not self.table:
            raise ConfigError("table name must not be empty")
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TrackerConfig":
        env = os.environ if environ is None else environ

        nodes_raw = env.get("LORAWATCH_NODES")
        nodes = (
            tuple(n.strip() for n in nodes_raw.split(",") if n.strip())
            if nodes_raw is not None
            else DEFAULT_NODES
        )

        config = cls(
            known_nodes=nodes,
            staleness_threshold=timedelta(
                seconds=_env_float(env, "LORAWATCH_STALENESS_SECONDS",
                                   DEFAULT_STALENESS_THRESHOLD.total_seconds())
            ),
            hysteresis_limit=_env_int(env, "LORAWATCH_HYSTERESIS_LIMIT", DEFAULT_HYSTERESIS_LIMIT),
            poll_interval=_env_float(env, "LORAWATCH_POLL_SECONDS", DEFAULT_POLL_INTERVAL),
            liveness_interval=_env_float(env, "LORAWATCH_LIVENESS_SECONDS", DEFAULT_LIVENESS_INTERVAL),
            window=timedelta(days=_env_float(env, "LORAWATCH_WINDOW_DAYS", DEFAULT_WINDOW.days)),
            fetch_limit=_env_int(env, "LORAWATCH_FETCH_LIMIT", DEFAULT_FETCH_LIMIT),
            table=env.get("LORAWATCH_TABLE", DEFAULT_TABLE),
            store_url=env.get("LORAWATCH_STORE_URL") or None,
            store_key=env.get("LORAWATCH_STORE_KEY") or None,
            database_url=env.get("DATABASE_URL") or None,
        )
        return config.validate()


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return float(default)
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
