"""
Tests for the httpx clients (RPC, history indexer, DAS metadata) using
httpx.MockTransport.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from royalty_guard.core.exceptions import FetchError, TransactionVersionError
from royalty_guard.solana_listener.history import MarketplaceHistoryClient, parse_history_response
from royalty_guard.solana_listener.metadata import NftMetadataClient
from royalty_guard.solana_listener.models import TransactionRecord
from royalty_guard.solana_listener.rpc import UNSUPPORTED_VERSION_CODE, SolanaRpcClient
from support import BUYER, CREATOR, MINT, MINT_2, NOW, SELLER

RPC_URL = "http://rpc.test"


def _tx_result(signature: str) -> dict:
    return {
        "slot": 10,
        "blockTime": NOW,
        "transaction": {"signatures": [signature], "message": {"accountKeys": [BUYER, SELLER]}},
        "meta": {
            "preBalances": [10, 0],
            "postBalances": [4, 6],
            "logMessages": ["Program log: hi"],
            "preTokenBalances": [{"mint": MINT}],
            "loadedAddresses": {"writable": [CREATOR], "readonly": []},
        },
    }


def _run(coro_factory, handler):
    async def _main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await coro_factory(http)

    return asyncio.run(_main())


def test_rpc_batch_maps_results_by_id():
    def handler(request: httpx.Request) -> httpx.Response:
        bodies = json.loads(request.content)
        out = []
        # Answer in reverse order to check id mapping
        for body in reversed(bodies):
            sig, opts = body["params"]
            if sig == "sig-v0" and "maxSupportedTransactionVersion" not in opts:
                out.append({"id": body["id"], "error": {"code": UNSUPPORTED_VERSION_CODE, "message": "unsupported"}})
            elif sig == "sig-missing":
                out.append({"id": body["id"], "result": None})
            else:
                out.append({"id": body["id"], "result": _tx_result(sig)})
        return httpx.Response(200, json=out)

    results = _run(
        lambda http: SolanaRpcClient(RPC_URL, client=http).fetch_transactions(["sig-a", "sig-v0", "sig-missing"]),
        handler,
    )
    assert isinstance(results[0], TransactionRecord)
    assert results[0].signature == "sig-a"
    assert results[0].account_keys == (BUYER, SELLER, CREATOR)
    assert results[0].token_mints == (MINT,)
    assert isinstance(results[1], TransactionVersionError)
    assert results[1].signature == "sig-v0"
    assert results[2] is None


def test_rpc_transaction_without_meta_is_missing():
    def handler(request: httpx.Request) -> httpx.Response:
        [body] = json.loads(request.content)
        result = dict(_tx_result("sig-a"), meta=None)
        return httpx.Response(200, json=[{"id": body["id"], "result": result}])

    results = _run(lambda http: SolanaRpcClient(RPC_URL, client=http).fetch_transactions(["sig-a"]), handler)
    assert results == [None]


def test_rpc_http_error_raises_fetch_error():
    def handler(request):
        return httpx.Response(429, json={"error": "rate limited"})

    with pytest.raises(FetchError) as exc_info:
        _run(lambda http: SolanaRpcClient(RPC_URL, client=http).fetch_transactions(["sig-a"]), handler)
    assert exc_info.value.status_code == 429


def test_rpc_recent_signature():
    def handler(request):
        body = json.loads(request.content)
        assert body["method"] == "getSignaturesForAddress"
        assert body["params"][1]["limit"] == 1
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": [{"signature": "sig-z"}]})

    assert _run(lambda http: SolanaRpcClient(RPC_URL, client=http).get_recent_signature(SELLER), handler) == "sig-z"


def test_history_client_posts_token_addresses():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "getMarketPlaceActionsByToken": [
                    {
                        "token_address": MINT,
                        "market_place_actions": [
                            {"signature": "sig-1", "price": 1.5, "buyer_address": BUYER, "block_timestamp": NOW},
                            {"price": 2},
                        ],
                    }
                ]
            },
        )

    history = _run(
        lambda http: MarketplaceHistoryClient("http://history.test/rest/", "key-1", client=http).fetch_marketplace_history([MINT]),
        handler,
    )
    assert seen["url"] == "http://history.test/rest/get-token-history"
    assert seen["auth"] == "key-1"
    assert seen["body"] == {"condition": {"token_addresses": [MINT], "action_type": "TRANSACTION"}}
    assert [a.signature for a in history[MINT]] == ["sig-1"]
    assert history[MINT][0].price == 1.5


def test_history_response_without_actions_key_is_an_error():
    with pytest.raises(FetchError):
        parse_history_response({"unexpected": []})


def test_metadata_client_preserves_order():
    def handler(request):
        body = json.loads(request.content)
        assert body["method"] == "getAssetBatch"
        return httpx.Response(
            200,
            json={
                "jsonrpc": "2.0",
                "id": body["id"],
                "result": [
                    {
                        "id": MINT,
                        "royalty": {"basis_points": 500},
                        "creators": [{"address": CREATOR, "verified": True, "share": 100}],
                        "content": {"json_uri": "https://example.invalid/1.json", "metadata": {"name": "Ape #1"}},
                    }
                ],
            },
        )

    metas = _run(lambda http: NftMetadataClient(RPC_URL, client=http).fetch_nft_metadata([MINT_2, MINT]), handler)
    assert metas[0] is None
    assert metas[1].seller_fee_basis_points == 500
    assert metas[1].creator_addresses == (CREATOR,)
    assert metas[1].name == "Ape #1"
