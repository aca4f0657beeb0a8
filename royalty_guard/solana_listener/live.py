"""
Live sale detection from marketplace program subscriptions.

One websocket programSubscribe per marketplace program. Each notification is
handled on its own: resolve the latest signature for the changed account's
owner, fetch the transaction, classify it (purchase / list / delist) by the
program's log fingerprints, claim the signature in the activity log, then
record the sale (purchase) or update the mint's listed flag.

The claim is a single insert against a unique key; a rejected insert means
another notification already handled the signature. Concurrent notifications
for the same signature therefore produce at most one sale write.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from dataclasses import dataclass
from typing import Any, Sequence

import websockets
from websockets.exceptions import ConnectionClosed

from royalty_guard.core.exceptions import FetchError, PersistError
from royalty_guard.database.database import SaleStore
from royalty_guard.database.models import MarketplaceProgram
from royalty_guard.guard_logging import bind_mint, get_logger
from royalty_guard.reconciliation.engine import ReconciliationEngine
from royalty_guard.reconciliation.interfaces import TransactionSource
from royalty_guard.reconciliation.normalizer import (
    fetch_transactions_with_fallback,
    from_live_transaction,
)

logger = get_logger(__name__)

ACTIVITY_PURCHASE = "purchase"
ACTIVITY_LIST = "list"
ACTIVITY_DELIST = "delist"

DEFAULT_RECONNECT_MIN_SEC = 1.0
DEFAULT_RECONNECT_MAX_SEC = 60.0
DEFAULT_WS_PING_INTERVAL = 30.0
DEFAULT_WS_PING_TIMEOUT = 10.0
_WS_CLOSE_TIMEOUT = 5.0
_RECV_POLL_SEC = 1.0


def classify_transaction(log_messages: Sequence[str], program: MarketplaceProgram) -> str | None:
    """Match an exact log line against the program's purchase / list / delist fingerprints."""
    lines = set(log_messages)
    for activity, fingerprint in (
        (ACTIVITY_PURCHASE, program.purchase_log),
        (ACTIVITY_LIST, program.listing_log),
        (ACTIVITY_DELIST, program.delisting_log),
    ):
        if fingerprint and fingerprint in lines:
            return activity
    return None


@dataclass(frozen=True)
class LiveOutcome:
    """What one notification did; None-returning paths did nothing."""

    signature: str
    mint: str
    activity_type: str
    duplicate: bool = False
    sale_recorded: bool = False
    debt_lamports: int | None = None


class LiveSaleMonitor:
    """Handles program account-change notifications for protected mints."""

    def __init__(
        self,
        rpc: TransactionSource,
        store: SaleStore,
        engine: ReconciliationEngine,
        *,
        ws_url: str | None = None,
        reconnect_min_sec: float = DEFAULT_RECONNECT_MIN_SEC,
        reconnect_max_sec: float = DEFAULT_RECONNECT_MAX_SEC,
    ) -> None:
        self._rpc = rpc
        self._store = store
        self._engine = engine
        self._ws_url = ws_url
        self._reconnect_min = reconnect_min_sec
        self._reconnect_max = reconnect_max_sec
        self._ids = itertools.count(1)
        self._tasks: set[asyncio.Task[Any]] = set()

    async def handle_account_change(
        self,
        program: MarketplaceProgram,
        account_owner: str,
    ) -> LiveOutcome | None:
        signature = await self._rpc.get_recent_signature(account_owner)
        if not signature:
            return None
        # Cheap early exit; the claim below is what actually prevents reprocessing
        if await asyncio.to_thread(self._store.check_log_entry, signature):
            return None
        [tx] = await fetch_transactions_with_fallback(self._rpc, [signature])
        if tx is None:
            return None
        activity = classify_transaction(tx.log_messages, program)
        if activity is None or not tx.token_mints:
            return None
        mint_id = tx.token_mints[0]
        mint = await asyncio.to_thread(self._store.get_mint, mint_id)
        if mint is None:
            return None
        collection = await asyncio.to_thread(self._store.get_collection, mint.collection_id)
        if collection is None or not collection.active:
            return None
        log = bind_mint(mint_id, collection.id)
        claimed = await asyncio.to_thread(self._store.append_log_entry, signature, mint_id, activity)
        if not claimed:
            log.info("live_already_processed", signature=signature)
            return LiveOutcome(signature=signature, mint=mint_id, activity_type=activity, duplicate=True)

        if activity == ACTIVITY_PURCHASE:
            candidate = from_live_transaction(mint_id, tx, program.program_id)
            try:
                sale = await self._engine.record_transaction_sale(candidate, tx, mint, collection)
            except (FetchError, PersistError) as e:
                # Claimed but not written; only the batch pass can still record it
                log.error("live_sale_lost_after_claim", signature=signature, program=program.name, error=str(e))
                raise
            log.info(
                "live_purchase",
                signature=signature,
                program=program.name,
                recorded=sale is not None,
                debt_lamports=sale.debt_lamports if sale else None,
            )
            return LiveOutcome(
                signature=signature,
                mint=mint_id,
                activity_type=activity,
                sale_recorded=sale is not None,
                debt_lamports=sale.debt_lamports if sale else None,
            )
        listed = activity == ACTIVITY_LIST
        await asyncio.to_thread(self._store.set_listed, mint_id, listed)
        log.info("live_listing_changed", signature=signature, listed=listed, program=program.name)
        return LiveOutcome(signature=signature, mint=mint_id, activity_type=activity)

    # --- Websocket subscription ---

    def _spawn(self, program: MarketplaceProgram, owner: str) -> None:
        async def _handle() -> None:
            try:
                await self.handle_account_change(program, owner)
            except Exception as e:
                logger.exception("live_notification_failed", program=program.name, owner=owner, error=str(e))

        task = asyncio.create_task(_handle())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _owner_from_notification(self, msg: dict[str, Any], program: MarketplaceProgram) -> str:
        value = ((msg.get("params") or {}).get("result") or {}).get("value") or {}
        account = value.get("account") or {}
        return account.get("owner") or program.program_id

    async def run(self, program: MarketplaceProgram, stop_event: asyncio.Event | None = None) -> None:
        """Subscribe to the program and handle notifications; reconnect with backoff until stopped."""
        if not self._ws_url:
            raise ValueError("ws_url is required to run the live monitor")
        stop_event = stop_event or asyncio.Event()
        backoff = self._reconnect_min
        while not stop_event.is_set():
            try:
                async with websockets.connect(
                    self._ws_url,
                    ping_interval=DEFAULT_WS_PING_INTERVAL,
                    ping_timeout=DEFAULT_WS_PING_TIMEOUT,
                    close_timeout=_WS_CLOSE_TIMEOUT,
                ) as ws:
                    await ws.send(json.dumps({
                        "jsonrpc": "2.0",
                        "id": next(self._ids),
                        "method": "programSubscribe",
                        "params": [program.program_id, {"encoding": "base64", "commitment": "confirmed"}],
                    }))
                    backoff = self._reconnect_min
                    logger.info("live_subscribed", program=program.name, program_id=program.program_id)
                    while not stop_event.is_set():
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=_RECV_POLL_SEC)
                        except asyncio.TimeoutError:
                            continue
                        try:
                            msg = json.loads(raw)
                        except json.JSONDecodeError:
                            continue
                        if msg.get("method") == "programNotification":
                            self._spawn(program, self._owner_from_notification(msg, program))
            except asyncio.CancelledError:
                break
            except ConnectionClosed as e:
                logger.warning("live_disconnected", program=program.name, code=e.code, reason=e.reason)
            except Exception as e:
                logger.exception("live_stream_error", program=program.name, error=str(e))
            if stop_event.is_set():
                break
            logger.info("live_reconnect", program=program.name, backoff_sec=round(backoff, 1))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=backoff)
            except asyncio.TimeoutError:
                pass
            backoff = min(backoff * 2, self._reconnect_max)
        logger.info("live_stopped", program=program.name)
