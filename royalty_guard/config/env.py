"""
Environment variable loading for Royalty Guard.

- SOLANA_RPC_URL: RPC endpoint (read from .env)
- SOLANA_WS_URL: websocket endpoint for live program subscriptions
- HELIUS_API_KEY: Helius API key (fallback for RPC URL; also serves DAS getAssetBatch)
- HISTORY_API_URL / HISTORY_API_KEY: marketplace history indexer
- DATABASE_URL: SQLAlchemy URL (default: sqlite:///royalty_guard.db)
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Project root: config is royalty_guard/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_PACKAGE_DIR = _CONFIG_DIR.parent
_ROOT = _PACKAGE_DIR.parent
_ENV_PATH = _ROOT / ".env"

MAINNET_RPC_URL = "https://api.mainnet-beta.solana.com"
HELIUS_MAINNET_URL_TEMPLATE = "https://mainnet.helius-rpc.com/?api-key={key}"
DEFAULT_HISTORY_API_URL = "https://beta.api.solanalysis.com/rest"
DEFAULT_DATABASE_URL = "sqlite:///royalty_guard.db"


def load_guard_env() -> None:
    """Load .env from project root. Safe to call multiple times."""
    load_dotenv(_ENV_PATH)


def get_solana_rpc_url() -> str:
    """
    Resolve Solana RPC URL from env.
    Order: SOLANA_RPC_URL > HELIUS_API_KEY > public mainnet.
    """
    load_guard_env()
    url = (os.getenv("SOLANA_RPC_URL") or os.getenv("RPC_HOST") or "").strip()
    if url:
        return url
    key = (os.getenv("HELIUS_API_KEY") or "").strip()
    if key:
        return HELIUS_MAINNET_URL_TEMPLATE.format(key=key)
    return MAINNET_RPC_URL


def http_to_ws(url: str) -> str:
    """Convert https:// or http:// to wss:// or ws:// for subscriptions."""
    s = url.strip()
    if s.startswith("https://"):
        return "wss://" + s[8:]
    if s.startswith("http://"):
        return "ws://" + s[7:]
    return s


def get_solana_ws_url() -> str:
    """SOLANA_WS_URL, else the RPC URL with a websocket scheme."""
    load_guard_env()
    url = (os.getenv("SOLANA_WS_URL") or "").strip()
    if url:
        return url
    return http_to_ws(get_solana_rpc_url())


def get_history_api_url() -> str:
    load_guard_env()
    return (os.getenv("HISTORY_API_URL") or DEFAULT_HISTORY_API_URL).strip().rstrip("/")


def get_history_api_key() -> str:
    load_guard_env()
    return (os.getenv("HISTORY_API_KEY") or os.getenv("API_KEY") or "").strip()


def get_database_url() -> str:
    """DATABASE_URL if set; else SQLite from DB_PATH or the default file."""
    load_guard_env()
    url = (os.getenv("DATABASE_URL") or "").strip()
    if url:
        return url
    path = (os.getenv("DB_PATH") or "").strip()
    if path:
        return f"sqlite:///{path}"
    return DEFAULT_DATABASE_URL


def mask_url(url: str) -> str:
    """Hide api-key query values before logging a URL."""
    if "api-key=" in url:
        return url.split("api-key=")[0] + "api-key=***"
    return url
