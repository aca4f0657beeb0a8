"""
Marketplace history indexer client (httpx, async).

POSTs token addresses to the indexer's token-history endpoint and returns the
sale actions ("TRANSACTION" action type) grouped by token address.
"""

from __future__ import annotations

from typing import Any, Sequence

import httpx

from royalty_guard.core.exceptions import FetchError
from royalty_guard.guard_logging import get_logger
from royalty_guard.reconciliation.interfaces import HistorySource
from royalty_guard.solana_listener.models import MarketplaceAction

logger = get_logger(__name__)

TOKEN_HISTORY_PATH = "/get-token-history"
SALE_ACTION_TYPE = "TRANSACTION"


def parse_history_response(data: Any) -> dict[str, list[MarketplaceAction]]:
    """
    Parse {"getMarketPlaceActionsByToken": [{"token_address", "market_place_actions": [...]}]}.
    Items without a signature are skipped.
    """
    if not isinstance(data, dict):
        raise FetchError("History API returned a non-object response", source="history")
    rows = data.get("getMarketPlaceActionsByToken")
    if rows is None:
        rows = (data.get("data") or {}).get("getMarketPlaceActionsByToken")
    if not isinstance(rows, list):
        raise FetchError("History API response missing getMarketPlaceActionsByToken", source="history")
    out: dict[str, list[MarketplaceAction]] = {}
    for row in rows:
        if not isinstance(row, dict) or not row.get("token_address"):
            continue
        actions = out.setdefault(row["token_address"], [])
        for item in row.get("market_place_actions") or []:
            if not isinstance(item, dict) or not item.get("signature"):
                continue
            try:
                actions.append(MarketplaceAction.from_api_item(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("history_skip_invalid_action", token_address=row["token_address"], error=str(e))
    return out


class MarketplaceHistoryClient(HistorySource):
    """Indexer client authenticated with an API key header."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        client: httpx.AsyncClient | None = None,
        timeout_sec: float = 30.0,
    ) -> None:
        if not base_url.strip():
            raise ValueError("base_url must be non-empty")
        self._url = base_url.rstrip("/") + TOKEN_HISTORY_PATH
        self._api_key = api_key
        self._client = client
        self._timeout = timeout_sec

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = self._api_key
        return headers

    async def fetch_marketplace_history(
        self, token_addresses: Sequence[str]
    ) -> dict[str, list[MarketplaceAction]]:
        if not token_addresses:
            return {}
        body = {
            "condition": {
                "token_addresses": list(token_addresses),
                "action_type": SALE_ACTION_TYPE,
            }
        }
        try:
            if self._client is not None:
                resp = await self._client.post(self._url, json=body, headers=self._headers())
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout)) as client:
                    resp = await client.post(self._url, json=body, headers=self._headers())
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise FetchError(
                f"History API HTTP {e.response.status_code}",
                source="history",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise FetchError(f"History API request failed: {e}", source="history") from e
        history = parse_history_response(data)
        logger.debug(
            "history_fetched",
            tokens=len(token_addresses),
            actions=sum(len(v) for v in history.values()),
        )
        return history
