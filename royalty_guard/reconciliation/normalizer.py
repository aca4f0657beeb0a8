"""
Sale event normalizer: heterogeneous sale events to one SaleCandidate.

Sources:
- history indexer batch (MarketplaceAction per mint)
- pushed webhook payload (buyer / seller / amount / nfts)
- live program subscription (signature + fetched transaction)

Price and royalty-paid extraction is a strategy selected by marketplace
program id, so marketplaces whose program log is authoritative can be added
with register_strategy() without touching the engine.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Sequence

from royalty_guard.core.exceptions import LogPayloadError, TransactionVersionError
from royalty_guard.guard_logging import get_logger
from royalty_guard.reconciliation.analyzer import infer_sale_price, sol_to_lamports
from royalty_guard.reconciliation.interfaces import TransactionSource
from royalty_guard.solana_listener.models import MarketplaceAction, TransactionRecord

logger = get_logger(__name__)

SOURCE_HISTORY = "history"
SOURCE_WEBHOOK = "webhook"
SOURCE_LIVE = "live"

PROGRAM_LOG_PREFIX = "Program log: "
# Highest transaction version the engine can interpret
MAX_SUPPORTED_TRANSACTION_VERSION = 0


@dataclass(frozen=True)
class SaleCandidate:
    """A sale seen by one source; discarded after the pass that produced it."""

    mint: str
    signature: str
    price_lamports: int
    buyer: str | None
    seller: str | None
    block_time: int | None
    program_id: str | None = None
    source: str = SOURCE_HISTORY
    royalty_paid_lamports: int | None = None
    """Set only when an authoritative source (program log) reported it."""


def from_marketplace_action(mint: str, action: MarketplaceAction) -> SaleCandidate:
    return SaleCandidate(
        mint=mint,
        signature=action.signature,
        price_lamports=sol_to_lamports(action.price or 0),
        buyer=action.buyer_address,
        seller=action.seller_address,
        block_time=action.block_timestamp,
        program_id=action.marketplace_program_id,
        source=SOURCE_HISTORY,
    )


def from_history(history: dict[str, list[MarketplaceAction]]) -> list[SaleCandidate]:
    """Flatten a history response keyed by mint into candidates."""
    out: list[SaleCandidate] = []
    for mint, actions in history.items():
        for action in actions:
            out.append(from_marketplace_action(mint, action))
    return out


def from_webhook_event(event: dict[str, Any]) -> list[SaleCandidate]:
    """
    One candidate per NFT in a pushed event:
    {signature, timestamp?, source?, events: {nft: {amount, buyer, seller, nfts: [{mint}]}}}.
    amount is in SOL. Events without an nft section yield nothing.
    """
    signature = (event.get("signature") or "").strip()
    nft = (event.get("events") or {}).get("nft") or {}
    if not signature or not nft:
        return []
    price = sol_to_lamports(nft.get("amount") or 0)
    if price < 0:
        raise ValueError(f"Negative sale amount for {signature}")
    block_time = event.get("timestamp") or nft.get("timestamp")
    out: list[SaleCandidate] = []
    for item in nft.get("nfts") or []:
        mint = (item or {}).get("mint")
        if not mint:
            continue
        out.append(
            SaleCandidate(
                mint=mint,
                signature=signature,
                price_lamports=price,
                buyer=nft.get("buyer"),
                seller=nft.get("seller"),
                block_time=int(block_time) if block_time is not None else None,
                program_id=nft.get("programId") or event.get("programId"),
                source=SOURCE_WEBHOOK,
            )
        )
    return out


def from_live_transaction(
    mint: str,
    tx: TransactionRecord,
    program_id: str,
) -> SaleCandidate:
    """Live purchases carry no reported price; infer it from the buyer's debit."""
    buyer = tx.account_keys[0] if tx.account_keys else None
    return SaleCandidate(
        mint=mint,
        signature=tx.signature,
        price_lamports=infer_sale_price(tx),
        buyer=buyer,
        seller=None,
        block_time=tx.block_time,
        program_id=program_id,
        source=SOURCE_LIVE,
    )


# -----------------------------------------------------------------------------
# Price / royalty extraction strategies
# -----------------------------------------------------------------------------


class ExtractionStrategy(ABC):
    """Refines a candidate's price and royalty paid using its full transaction."""

    @abstractmethod
    def extract(self, candidate: SaleCandidate, tx: TransactionRecord) -> SaleCandidate:
        ...


class DefaultExtraction(ExtractionStrategy):
    """Trust the price the source reported; royalty paid comes from balances."""

    def extract(self, candidate: SaleCandidate, tx: TransactionRecord) -> SaleCandidate:
        return candidate


class LogPayloadExtraction(ExtractionStrategy):
    """
    Program logs a JSON payload with total_price and royalty_paid (lamports).
    When present it overrides whatever the indexer reported.
    """

    required_keys = ("total_price", "royalty_paid")

    def extract(self, candidate: SaleCandidate, tx: TransactionRecord) -> SaleCandidate:
        payload = self.find_payload(tx)
        if payload is None:
            return candidate
        return replace(
            candidate,
            price_lamports=int(payload["total_price"]),
            royalty_paid_lamports=int(payload["royalty_paid"]),
        )

    def find_payload(self, tx: TransactionRecord) -> dict[str, Any] | None:
        for line in tx.log_messages:
            if not line.startswith(PROGRAM_LOG_PREFIX):
                continue
            body = line[len(PROGRAM_LOG_PREFIX):].strip()
            if not body.startswith("{"):
                continue
            try:
                payload = json.loads(body)
            except json.JSONDecodeError as e:
                raise LogPayloadError(tx.signature, line, f"invalid JSON: {e}") from e
            if not isinstance(payload, dict):
                raise LogPayloadError(tx.signature, line, "payload is not an object")
            if not any(k in payload for k in self.required_keys):
                # Other JSON the program logs (e.g. listing info)
                continue
            missing = [k for k in self.required_keys if k not in payload]
            if missing:
                raise LogPayloadError(tx.signature, line, f"missing {', '.join(missing)}")
            try:
                int(payload["total_price"])
                int(payload["royalty_paid"])
            except (TypeError, ValueError) as e:
                raise LogPayloadError(tx.signature, line, f"non-integer amount: {e}") from e
            return payload
        return None


_DEFAULT_STRATEGY = DefaultExtraction()
_STRATEGIES: dict[str, ExtractionStrategy] = {}


def register_strategy(program_id: str, strategy: ExtractionStrategy) -> None:
    _STRATEGIES[program_id] = strategy


def strategy_for(program_id: str | None) -> ExtractionStrategy:
    if program_id is None:
        return _DEFAULT_STRATEGY
    return _STRATEGIES.get(program_id, _DEFAULT_STRATEGY)


def configure_strategies(log_payload_program_ids: Sequence[str] | frozenset[str]) -> None:
    """Register LogPayloadExtraction for each configured program id."""
    for program_id in log_payload_program_ids:
        if not isinstance(_STRATEGIES.get(program_id), LogPayloadExtraction):
            register_strategy(program_id, LogPayloadExtraction())


# -----------------------------------------------------------------------------
# Transaction fetch with version fallback
# -----------------------------------------------------------------------------


async def fetch_transactions_with_fallback(
    client: TransactionSource,
    signatures: Sequence[str],
) -> list[TransactionRecord | None]:
    """
    Batch-fetch transactions; any reported as needing an explicit version are
    re-fetched once with maxSupportedTransactionVersion. Still unusable -> None.
    """
    if not signatures:
        return []
    results = list(await client.fetch_transactions(signatures))
    retry_idx = [i for i, r in enumerate(results) if isinstance(r, TransactionVersionError)]
    if retry_idx:
        logger.info("normalizer_tx_version_retry", count=len(retry_idx))
        retried = await client.fetch_transactions(
            [signatures[i] for i in retry_idx],
            max_supported_version=MAX_SUPPORTED_TRANSACTION_VERSION,
        )
        for i, r in zip(retry_idx, retried):
            results[i] = r
    out: list[TransactionRecord | None] = []
    for sig, r in zip(signatures, results):
        if isinstance(r, TransactionRecord):
            out.append(r)
        else:
            if isinstance(r, TransactionVersionError):
                logger.warning("normalizer_tx_version_unsupported", signature=sig)
            out.append(None)
    return out
