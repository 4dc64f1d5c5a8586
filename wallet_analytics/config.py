"""Configuration helpers for the wallet analytics engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DATA_DIR = Path(os.getenv("WALLET_ANALYTICS_DATA_DIR", "data"))
RAW_DATA_DIR = DATA_DIR / "raw"
CACHE_DIR = DATA_DIR / "cache"
DUCKDB_PATH = CACHE_DIR / "wallet_analytics.duckdb"

TX_FEED_BASE = os.getenv("TX_FEED_BASE", "http://localhost:3001/api")
TX_FEED_API_KEY_ENV = "TX_FEED_API_KEY"

RAW_DATA_DIR.mkdir(parents=True, exist_ok=True)
CACHE_DIR.mkdir(parents=True, exist_ok=True)


def env_int(name: str, default: int) -> int:
    """Read an integer override from the environment, falling back on bad input."""
    value = os.getenv(name)
    if value:
        try:
            return int(value)
        except ValueError:
            pass
    return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value:
        try:
            return float(value)
        except ValueError:
            pass
    return default


@dataclass(frozen=True)
class RetryConfig:
    """Settings for HTTP retry/backoff behaviour."""

    wait_min_seconds: float = 0.5
    wait_max_seconds: float = 8.0
    max_attempts: int = 5
    status_forcelist: tuple[int, ...] = field(
        default_factory=lambda: (429, 500, 502, 503, 504)
    )


@dataclass(frozen=True)
class PersistenceRetryConfig:
    """Settings for DuckDB retry/backoff behaviour.

    timeout_seconds bounds the total time spent retrying a single operation so
    that no batch step blocks indefinitely.
    """

    wait_min_seconds: float = 0.05
    wait_max_seconds: float = 2.0
    max_attempts: int = env_int("PERSISTENCE_MAX_ATTEMPTS", 5)
    timeout_seconds: float = env_float("PERSISTENCE_TIMEOUT_SECONDS", 30.0)


DEFAULT_RETRY_CONFIG = RetryConfig()
DEFAULT_PERSISTENCE_RETRY = PersistenceRetryConfig()

DEFAULT_MAX_WORKERS = env_int("WALLET_ANALYTICS_MAX_WORKERS", 8)


def resolve_cache_path(prefix: str, key: str, suffix: str = ".json") -> Path:
    """Return a deterministic cache path under data/raw for a given key."""
    sanitized_prefix = prefix.replace("/", "_")
    filename = f"{sanitized_prefix}_{key}{suffix}"
    return RAW_DATA_DIR / filename
