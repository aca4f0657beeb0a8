"""
NFT metadata client: royalty basis points and creators via DAS getAssetBatch.

Served by Helius (and other DAS-capable RPC providers) on the RPC URL.
"""

from __future__ import annotations

from typing import Any, Sequence

import httpx

from royalty_guard.core.exceptions import FetchError
from royalty_guard.guard_logging import get_logger
from royalty_guard.reconciliation.interfaces import MetadataSource
from royalty_guard.solana_listener.models import NftMetadata

logger = get_logger(__name__)

# DAS getAssetBatch accepts up to 1000 ids per request
DAS_BATCH_LIMIT = 1000


class NftMetadataClient(MetadataSource):
    def __init__(
        self,
        rpc_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_sec: float = 30.0,
    ) -> None:
        self._rpc_url = rpc_url.rstrip("/")
        self._client = client
        self._timeout = timeout_sec

    async def _post(self, body: dict[str, Any]) -> Any:
        try:
            if self._client is not None:
                resp = await self._client.post(self._rpc_url, json=body)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout)) as client:
                    resp = await client.post(self._rpc_url, json=body)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            raise FetchError(
                f"Metadata HTTP {e.response.status_code}",
                source="metadata",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise FetchError(f"Metadata request failed: {e}", source="metadata") from e

    async def fetch_nft_metadata(self, mint_addresses: Sequence[str]) -> list[NftMetadata | None]:
        by_id: dict[str, NftMetadata] = {}
        for start in range(0, len(mint_addresses), DAS_BATCH_LIMIT):
            ids = list(mint_addresses[start:start + DAS_BATCH_LIMIT])
            data = await self._post(
                {"jsonrpc": "2.0", "id": "royalty-guard", "method": "getAssetBatch", "params": {"ids": ids}}
            )
            if not isinstance(data, dict) or data.get("error"):
                raise FetchError(f"getAssetBatch error: {data.get('error') if isinstance(data, dict) else data}", source="metadata")
            for asset in data.get("result") or []:
                if not isinstance(asset, dict) or not asset.get("id"):
                    continue
                try:
                    meta = NftMetadata.from_das_asset(asset)
                except (KeyError, TypeError, ValueError) as e:
                    logger.debug("metadata_skip_invalid_asset", mint_id=asset.get("id"), error=str(e))
                    continue
                by_id[meta.mint_address] = meta
        return [by_id.get(m) for m in mint_addresses]
