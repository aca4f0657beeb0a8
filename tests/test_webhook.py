"""
Pytest tests for the FastAPI surface: webhook ingestion and debt lookups.

The store and engine dependencies are overridden with the temporary SQLite
store and in-memory collaborators from conftest.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from royalty_guard.api_server.server import app, get_engine, get_store
from support import (
    BUYER,
    COLLECTION_ID,
    MINT,
    NOW,
    SELLER,
    FakeHistory,
    FakeMetadata,
    FakeTransactions,
    metadata,
    sale_tx,
)


def _event(signature: str, mint: str = MINT, amount: float = 100) -> dict:
    return {
        "signature": signature,
        "timestamp": NOW - 60,
        "type": "NFT_SALE",
        "events": {"nft": {"amount": amount, "buyer": BUYER, "seller": SELLER, "nfts": [{"mint": mint}]}},
    }


@pytest.fixture
def client(seeded_store, make_engine):
    txs = FakeTransactions({"sig-1": sale_tx("sig-1", NOW - 60, royalty_paid=4_500_000_000)})
    engine = make_engine(FakeHistory(), txs, FakeMetadata({MINT: metadata()}))
    app.dependency_overrides[get_store] = lambda: seeded_store
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_webhook_records_sale_and_debt_is_readable(client):
    r = client.post("/webhook", json=[_event("sig-1")])
    assert r.status_code == 200
    assert r.json() == {"received": 1, "candidates": 1, "invalid": [], "recorded": 1}

    debt = client.get(f"/mints/{MINT}/debt")
    assert debt.status_code == 200
    body = debt.json()
    assert body["has_debt"] is True
    assert body["collection_id"] == COLLECTION_ID
    assert body["sale"]["signature"] == "sig-1"
    assert body["sale"]["debt_lamports"] == 500_000_000
    assert body["sale"]["debt"] == 0.5

    debts = client.get(f"/collections/{COLLECTION_ID}/debts")
    assert debts.status_code == 200
    assert debts.json()["total_debt_lamports"] == 500_000_000
    assert [s["mint"] for s in debts.json()["sales"]] == [MINT]


def test_webhook_replay_is_harmless(client, seeded_store):
    client.post("/webhook", json=[_event("sig-1")])
    r = client.post("/webhook", json=[_event("sig-1")])
    assert r.status_code == 200
    assert r.json()["recorded"] == 0
    assert len(seeded_store.get_sales(MINT)) == 1


def test_webhook_rejects_invalid_mints(client):
    r = client.post("/webhook", json=[_event("sig-2", mint="not-a-mint"), {"signature": "sig-3"}])
    assert r.status_code == 200
    data = r.json()
    assert data["received"] == 2
    assert data["candidates"] == 0
    assert data["invalid"] == ["not-a-mint"]
    assert data["recorded"] == 0


def test_webhook_negative_amount_is_invalid_not_an_error(client, seeded_store):
    r = client.post("/webhook", json=[_event("sig-neg", amount=-1), _event("sig-1")])
    assert r.status_code == 200
    data = r.json()
    assert data["invalid"] == ["sig-neg"]
    assert data["recorded"] == 1
    assert [s.signature for s in seeded_store.get_sales(MINT)] == ["sig-1"]


def test_webhook_rejects_non_list_body(client):
    r = client.post("/webhook", json={"signature": "sig-1"})
    assert r.status_code == 422


def test_mint_debt_errors(client):
    assert client.get("/mints/not-a-mint/debt").status_code == 400
    missing = client.get("/mints/So11111111111111111111111111111111111111112/debt")
    assert missing.status_code == 404


def test_mint_without_debt(client):
    r = client.get(f"/mints/{MINT}/debt")
    assert r.status_code == 200
    assert r.json()["has_debt"] is False
    assert r.json()["sale"] is None


def test_unknown_collection_is_404(client):
    assert client.get("/collections/unknown/debts").status_code == 404


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
