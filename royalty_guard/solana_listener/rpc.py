"""
Solana JSON-RPC client (httpx, async).

- getTransaction in JSON-RPC batches, order-preserving.
- Versioned transactions the node refuses at the default API version are
  reported per item as TransactionVersionError so the caller can re-fetch
  them with maxSupportedTransactionVersion.
- getSignaturesForAddress (limit 1) for the live path.

Transport failures, HTTP errors and timeouts raise FetchError.
"""

from __future__ import annotations

import itertools
from typing import Any, Sequence

import httpx

from royalty_guard.config.env import mask_url
from royalty_guard.core.exceptions import FetchError, TransactionVersionError
from royalty_guard.guard_logging import get_logger
from royalty_guard.reconciliation.interfaces import TransactionResult, TransactionSource
from royalty_guard.solana_listener.models import TransactionRecord

logger = get_logger(__name__)

# Node answers this when a v0 transaction is requested without maxSupportedTransactionVersion
UNSUPPORTED_VERSION_CODE = -32015
RPC_BATCH_LIMIT = 100
DEFAULT_COMMITMENT = "confirmed"


def _is_version_error(err: dict[str, Any]) -> bool:
    if err.get("code") == UNSUPPORTED_VERSION_CODE:
        return True
    return "maxSupportedTransactionVersion" in str(err.get("message", ""))


class SolanaRpcClient(TransactionSource):
    """
    Async JSON-RPC client. Pass a shared httpx.AsyncClient to reuse connections;
    otherwise one is created per call.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_sec: float = 30.0,
        batch_limit: int = RPC_BATCH_LIMIT,
        commitment: str = DEFAULT_COMMITMENT,
    ) -> None:
        if not rpc_url.strip():
            raise ValueError("rpc_url must be non-empty")
        self._rpc_url = rpc_url.rstrip("/")
        self._client = client
        self._timeout = timeout_sec
        self._batch_limit = max(1, batch_limit)
        self._commitment = commitment
        self._ids = itertools.count(1)

    def _body(self, method: str, params: list[Any]) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

    async def _post(self, payload: Any) -> Any:
        try:
            if self._client is not None:
                resp = await self._client.post(self._rpc_url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout)) as client:
                    resp = await client.post(self._rpc_url, json=payload)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            raise FetchError(
                f"Solana RPC HTTP {e.response.status_code}",
                source="rpc",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("rpc_request_failed", rpc_url=mask_url(self._rpc_url), error=str(e))
            raise FetchError(f"Solana RPC request failed: {e}", source="rpc") from e

    async def call(self, method: str, params: list[Any]) -> Any:
        """Single JSON-RPC call; returns result or raises FetchError on RPC error."""
        data = await self._post(self._body(method, params))
        if not isinstance(data, dict):
            raise FetchError("Solana RPC returned a non-object response", source="rpc")
        if "error" in data:
            err = data["error"] or {}
            raise FetchError(
                f"Solana RPC error: {err.get('message', err)} (code={err.get('code')})",
                source="rpc",
            )
        return data.get("result")

    async def fetch_transactions(
        self,
        signatures: Sequence[str],
        *,
        max_supported_version: int | None = None,
    ) -> list[TransactionResult]:
        out: list[TransactionResult] = []
        for start in range(0, len(signatures), self._batch_limit):
            out.extend(
                await self._fetch_batch(signatures[start:start + self._batch_limit], max_supported_version)
            )
        return out

    async def _fetch_batch(
        self,
        signatures: Sequence[str],
        max_supported_version: int | None,
    ) -> list[TransactionResult]:
        if not signatures:
            return []
        opts: dict[str, Any] = {"encoding": "json", "commitment": self._commitment}
        if max_supported_version is not None:
            opts["maxSupportedTransactionVersion"] = max_supported_version
        bodies = [self._body("getTransaction", [sig, dict(opts)]) for sig in signatures]
        data = await self._post(bodies)
        if not isinstance(data, list):
            err = data.get("error") if isinstance(data, dict) else data
            raise FetchError(f"Solana RPC batch rejected: {err}", source="rpc")
        by_id = {item.get("id"): item for item in data if isinstance(item, dict)}
        results: list[TransactionResult] = []
        for body, sig in zip(bodies, signatures):
            item = by_id.get(body["id"])
            if item is None:
                results.append(None)
                continue
            err = item.get("error")
            if err:
                if _is_version_error(err):
                    results.append(TransactionVersionError(sig, str(err.get("message", ""))))
                else:
                    logger.debug("rpc_get_transaction_error", signature=sig, error=str(err))
                    results.append(None)
                continue
            result = item.get("result")
            if result and result.get("meta") is None:
                # No balances to reconcile against; same as not found
                logger.debug("rpc_transaction_without_meta", signature=sig)
                result = None
            results.append(TransactionRecord.from_rpc(result, signature=sig) if result else None)
        return results

    async def get_recent_signature(self, address: str) -> str | None:
        result = await self.call(
            "getSignaturesForAddress",
            [address, {"limit": 1, "commitment": self._commitment}],
        )
        if not isinstance(result, list) or not result:
            return None
        first = result[0]
        return first.get("signature") if isinstance(first, dict) else None
