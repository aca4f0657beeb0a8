"""
Application settings and environment configuration.

Responsibilities:
- Load configuration from environment variables and .env files.
- Validate settings and provide defaults for optional ones.
- Expose typed settings (RPC URL, history API, DB URL, engine knobs, API port)
  for use across clients, reconciliation engine, API server, and entrypoint.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from royalty_guard.config.env import (
    get_database_url,
    get_history_api_key,
    get_history_api_url,
    get_solana_rpc_url,
    get_solana_ws_url,
    load_guard_env,
)

# Magic Eden v2: aggregator-reported prices are unreliable, the program log is authoritative
MAGIC_EDEN_V2_PROGRAM_ID = "M2mx93ekt1fmXSVkTrUL9xVcTkLmsSpG4P6kiSDPwyo"

DEFAULT_CHUNK_SIZE = 100
DEFAULT_CHUNK_RETRIES = 1
DEFAULT_COLLECTION_ATTEMPTS = 3
DEFAULT_LOOKBACK_HOURS = 730
DEFAULT_DUST_THRESHOLD_LAMPORTS = 5000


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _env_list(name: str, default: tuple[str, ...]) -> frozenset[str]:
    raw = os.getenv(name)
    if raw is None:
        return frozenset(default)
    return frozenset(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    """Resolved runtime configuration."""

    solana_rpc_url: str
    solana_ws_url: str
    history_api_url: str
    history_api_key: str
    database_url: str
    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk_retries: int = DEFAULT_CHUNK_RETRIES
    collection_attempts: int = DEFAULT_COLLECTION_ATTEMPTS
    lookback_hours: int = DEFAULT_LOOKBACK_HOURS
    dust_threshold_lamports: int = DEFAULT_DUST_THRESHOLD_LAMPORTS
    patch_eligible_program_ids: frozenset[str] = field(
        default_factory=lambda: frozenset({MAGIC_EDEN_V2_PROGRAM_ID})
    )
    log_payload_program_ids: frozenset[str] = field(
        default_factory=lambda: frozenset({MAGIC_EDEN_V2_PROGRAM_ID})
    )
    pass_interval_sec: float = 0.0
    request_timeout_sec: float = 30.0
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    enable_live: bool = False

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        if self.chunk_retries < 0:
            raise ValueError("chunk_retries must be >= 0")
        if self.collection_attempts < 1:
            raise ValueError("collection_attempts must be >= 1")
        if self.lookback_hours <= 0:
            raise ValueError("lookback_hours must be positive")
        if self.dust_threshold_lamports < 0:
            raise ValueError("dust_threshold_lamports must be >= 0")

    @property
    def lookback_sec(self) -> int:
        return self.lookback_hours * 3600


def get_settings() -> Settings:
    """
    Return the current application settings.

    Returns:
        Settings with solana_rpc_url, history_api_url, database_url, engine
        knobs (chunk size, retries, lookback, dust threshold), api_host, api_port.
    """
    load_guard_env()
    return Settings(
        solana_rpc_url=get_solana_rpc_url(),
        solana_ws_url=get_solana_ws_url(),
        history_api_url=get_history_api_url(),
        history_api_key=get_history_api_key(),
        database_url=get_database_url(),
        chunk_size=_env_int("CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
        chunk_retries=_env_int("CHUNK_RETRIES", DEFAULT_CHUNK_RETRIES),
        collection_attempts=_env_int("COLLECTION_ATTEMPTS", DEFAULT_COLLECTION_ATTEMPTS),
        lookback_hours=_env_int("LOOKBACK_HOURS", DEFAULT_LOOKBACK_HOURS),
        dust_threshold_lamports=_env_int("DUST_THRESHOLD_LAMPORTS", DEFAULT_DUST_THRESHOLD_LAMPORTS),
        patch_eligible_program_ids=_env_list("PATCH_ELIGIBLE_PROGRAM_IDS", (MAGIC_EDEN_V2_PROGRAM_ID,)),
        log_payload_program_ids=_env_list("LOG_PAYLOAD_PROGRAM_IDS", (MAGIC_EDEN_V2_PROGRAM_ID,)),
        pass_interval_sec=_env_float("PASS_INTERVAL_SEC", 0.0),
        request_timeout_sec=_env_float("REQUEST_TIMEOUT_SEC", 30.0),
        api_host=(os.getenv("API_HOST") or "0.0.0.0").strip(),
        api_port=_env_int("API_PORT", 8000),
        enable_live=_env_bool("ENABLE_LIVE"),
    )
