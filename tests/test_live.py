"""
Tests for the live sale monitor: classification, claim-before-process and
listing updates.
"""

from __future__ import annotations

import asyncio

import pytest
from structlog.testing import capture_logs

from royalty_guard.core.exceptions import FetchError
from royalty_guard.solana_listener.live import (
    ACTIVITY_DELIST,
    ACTIVITY_LIST,
    ACTIVITY_PURCHASE,
    LiveSaleMonitor,
    classify_transaction,
)
from support import (
    COLLECTION_ID,
    MARKETPLACE,
    MINT,
    NOW,
    SELLER,
    SOL,
    FakeHistory,
    FakeMetadata,
    FakeTransactions,
    action,
    make_tx,
    metadata,
    program,
    sale_tx,
)

PURCHASE_LOG = "Program log: Instruction: ExecuteSaleV2"
LISTING_LOG = "Program log: Instruction: Sell"
DELISTING_LOG = "Program log: Instruction: CancelSell"
OWNER = SELLER


def _monitor(make_engine, seeded_store, txs: FakeTransactions) -> LiveSaleMonitor:
    engine = make_engine(transactions=txs, metadata=FakeMetadata({MINT: metadata()}))
    return LiveSaleMonitor(txs, seeded_store, engine)


def test_classify_transaction_matches_exact_lines():
    p = program()
    assert classify_transaction(["x", PURCHASE_LOG], p) == ACTIVITY_PURCHASE
    assert classify_transaction([LISTING_LOG], p) == ACTIVITY_LIST
    assert classify_transaction([DELISTING_LOG], p) == ACTIVITY_DELIST
    assert classify_transaction([PURCHASE_LOG + " extra"], p) is None
    assert classify_transaction([], p) is None


def test_live_purchase_is_recorded_once(make_engine, seeded_store):
    tx = sale_tx(
        "sig-live",
        NOW - 5,
        price=100 * SOL,
        royalty_paid=4_500_000_000,
        logs=[PURCHASE_LOG],
        token_mints=[MINT],
        with_rent=True,
    )
    txs = FakeTransactions({"sig-live": tx}, recent={OWNER: "sig-live"})
    monitor = _monitor(make_engine, seeded_store, txs)

    outcome = asyncio.run(monitor.handle_account_change(program(), OWNER))
    repeat = asyncio.run(monitor.handle_account_change(program(), OWNER))

    assert outcome.activity_type == ACTIVITY_PURCHASE
    assert outcome.sale_recorded
    assert outcome.debt_lamports == 500_000_000
    assert repeat is None
    [sale] = seeded_store.get_sales(MINT)
    assert sale.source == "live"
    assert sale.marketplace_program_id == MARKETPLACE
    assert seeded_store.check_log_entry("sig-live").activity_type == ACTIVITY_PURCHASE


def test_concurrent_notifications_write_one_sale(make_engine, seeded_store):
    tx = sale_tx("sig-live", NOW - 5, logs=[PURCHASE_LOG], token_mints=[MINT], with_rent=True)
    txs = FakeTransactions({"sig-live": tx}, recent={OWNER: "sig-live"})
    monitor = _monitor(make_engine, seeded_store, txs)

    async def _both():
        return await asyncio.gather(
            monitor.handle_account_change(program(), OWNER),
            monitor.handle_account_change(program(), OWNER),
        )

    outcomes = asyncio.run(_both())

    assert sum(1 for o in outcomes if o is not None and o.sale_recorded) == 1
    assert len(seeded_store.get_sales(MINT)) == 1


def test_already_claimed_signature_is_reported_duplicate(make_engine, seeded_store):
    tx = sale_tx("sig-live", NOW - 5, logs=[PURCHASE_LOG], token_mints=[MINT])
    txs = FakeTransactions({"sig-live": tx}, recent={OWNER: "sig-live"})
    monitor = _monitor(make_engine, seeded_store, txs)
    # Claimed between the fast-path check and the claim
    seeded_store.check_log_entry = lambda signature: None
    seeded_store.append_log_entry("sig-live", MINT, ACTIVITY_PURCHASE)

    outcome = asyncio.run(monitor.handle_account_change(program(), OWNER))

    assert outcome.duplicate
    assert not outcome.sale_recorded
    assert seeded_store.get_sales(MINT) == []


def test_listing_and_delisting_update_flag(make_engine, seeded_store):
    list_tx = make_tx("sig-list", NOW, [(SELLER, 10, 9)], logs=[LISTING_LOG], token_mints=[MINT])
    delist_tx = make_tx("sig-delist", NOW, [(SELLER, 10, 9)], logs=[DELISTING_LOG], token_mints=[MINT])
    txs = FakeTransactions({"sig-list": list_tx, "sig-delist": delist_tx}, recent={OWNER: "sig-list"})
    monitor = _monitor(make_engine, seeded_store, txs)

    asyncio.run(monitor.handle_account_change(program(), OWNER))
    assert seeded_store.get_mint(MINT).listed is True

    txs.recent[OWNER] = "sig-delist"
    outcome = asyncio.run(monitor.handle_account_change(program(), OWNER))
    assert outcome.activity_type == ACTIVITY_DELIST
    assert seeded_store.get_mint(MINT).listed is False
    assert seeded_store.get_sales(MINT) == []


def test_unprotected_mint_and_unknown_activity_are_ignored(make_engine, seeded_store):
    other = make_tx("sig-x", NOW, [(SELLER, 10, 9)], logs=[PURCHASE_LOG], token_mints=["unknown-mint"])
    noise = make_tx("sig-y", NOW, [(SELLER, 10, 9)], logs=["Program log: Instruction: Deposit"], token_mints=[MINT])
    txs = FakeTransactions({"sig-x": other, "sig-y": noise}, recent={OWNER: "sig-x"})
    monitor = _monitor(make_engine, seeded_store, txs)

    assert asyncio.run(monitor.handle_account_change(program(), OWNER)) is None
    txs.recent[OWNER] = "sig-y"
    assert asyncio.run(monitor.handle_account_change(program(), OWNER)) is None
    assert asyncio.run(monitor.handle_account_change(program(), "no-signatures")) is None
    assert seeded_store.check_log_entry("sig-x") is None
    assert seeded_store.check_log_entry("sig-y") is None


def test_live_purchase_does_not_rewrite_reconciled_sale(make_engine, seeded_store):
    tx = sale_tx(
        "sig-1",
        NOW - 60,
        royalty_paid=4_500_000_000,
        logs=[PURCHASE_LOG],
        token_mints=[MINT],
        with_rent=True,
    )
    txs = FakeTransactions({"sig-1": tx}, recent={OWNER: "sig-1"})
    engine = make_engine(
        FakeHistory({MINT: [action("sig-1", NOW - 60)]}),
        txs,
        FakeMetadata({MINT: metadata()}),
    )
    asyncio.run(engine.reconcile_collection(seeded_store.get_collection(COLLECTION_ID)))
    [before] = seeded_store.get_sales(MINT)
    assert before.source == "history"

    outcome = asyncio.run(LiveSaleMonitor(txs, seeded_store, engine).handle_account_change(program(), OWNER))

    assert outcome.activity_type == ACTIVITY_PURCHASE
    assert not outcome.sale_recorded
    assert seeded_store.get_sales(MINT) == [before]


def test_metadata_failure_after_claim_is_logged(make_engine, seeded_store):
    class FailingMetadata(FakeMetadata):
        async def fetch_nft_metadata(self, mint_addresses):
            raise FetchError("das unavailable", source="metadata", status_code=503)

    tx = sale_tx("sig-live", NOW - 5, logs=[PURCHASE_LOG], token_mints=[MINT], with_rent=True)
    txs = FakeTransactions({"sig-live": tx}, recent={OWNER: "sig-live"})
    engine = make_engine(transactions=txs, metadata=FailingMetadata())
    monitor = LiveSaleMonitor(txs, seeded_store, engine)

    with capture_logs() as logs:
        with pytest.raises(FetchError):
            asyncio.run(monitor.handle_account_change(program(), OWNER))

    assert seeded_store.check_log_entry("sig-live").activity_type == ACTIVITY_PURCHASE
    assert seeded_store.get_sales(MINT) == []
    lost = [e for e in logs if e["event"] == "live_sale_lost_after_claim"]
    assert lost and lost[0]["signature"] == "sig-live"
