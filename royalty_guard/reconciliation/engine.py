"""
Reconciliation engine: history → candidates → filter → transactions + metadata → Sale → store.

Works per collection, split into chunks of mints that run concurrently. Each
chunk gets one immediate retry; a collection whose chunks still fail is retried
as a whole a bounded number of times and then skipped for this pass. Store
writes are idempotent upserts keyed by (signature, mint), so retries never
duplicate sales.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Sequence

from royalty_guard.config.settings import (
    DEFAULT_CHUNK_RETRIES,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_COLLECTION_ATTEMPTS,
    DEFAULT_DUST_THRESHOLD_LAMPORTS,
    DEFAULT_LOOKBACK_HOURS,
    Settings,
)
from royalty_guard.core.exceptions import (
    ChunkFailedError,
    LogPayloadError,
    MissingDataError,
    ResolutionError,
)
from royalty_guard.database.database import SaleStore
from royalty_guard.database.models import Collection, Mint, Sale
from royalty_guard.guard_logging import get_logger
from royalty_guard.reconciliation.analyzer import (
    actual_commission,
    assess_debt,
    expected_commission,
)
from royalty_guard.reconciliation.dedup import evaluate_candidate, filter_candidates
from royalty_guard.reconciliation.interfaces import HistorySource, MetadataSource, TransactionSource
from royalty_guard.reconciliation.normalizer import (
    SaleCandidate,
    fetch_transactions_with_fallback,
    from_history,
    strategy_for,
)
from royalty_guard.reconciliation.policy import resolve_royalty
from royalty_guard.solana_listener.models import NftMetadata, TransactionRecord

logger = get_logger(__name__)


@dataclass
class EngineConfig:
    """Engine knobs; defaults match production."""

    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk_retries: int = DEFAULT_CHUNK_RETRIES
    collection_attempts: int = DEFAULT_COLLECTION_ATTEMPTS
    lookback_sec: int = DEFAULT_LOOKBACK_HOURS * 3600
    dust_threshold_lamports: int = DEFAULT_DUST_THRESHOLD_LAMPORTS
    patch_eligible_programs: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            chunk_size=settings.chunk_size,
            chunk_retries=settings.chunk_retries,
            collection_attempts=settings.collection_attempts,
            lookback_sec=settings.lookback_sec,
            dust_threshold_lamports=settings.dust_threshold_lamports,
            patch_eligible_programs=settings.patch_eligible_program_ids,
        )


@dataclass
class ChunkResult:
    """Outcome of one chunk of mints."""

    mint_count: int
    candidates: int = 0
    accepted: int = 0
    persisted: int = 0
    skipped: int = 0
    failed: bool = False
    error: str | None = None
    attempts: int = 1


@dataclass
class CollectionResult:
    """Outcome of one collection within a pass."""

    collection_id: str
    attempts: int = 0
    chunks: list[ChunkResult] = field(default_factory=list)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def persisted(self) -> int:
        return sum(c.persisted for c in self.chunks)


def chunked(items: Sequence[Mint], size: int) -> list[list[Mint]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class ReconciliationEngine:
    """
    Orchestrates royalty reconciliation for collections.

    Collaborators: store (SaleStore; sync, run in worker threads), history
    (HistorySource), transactions (TransactionSource), metadata (MetadataSource).
    clock returns the current Unix time; injectable for tests.
    """

    def __init__(
        self,
        store: SaleStore,
        history: HistorySource,
        transactions: TransactionSource,
        metadata: MetadataSource,
        config: EngineConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._history = history
        self._transactions = transactions
        self._metadata = metadata
        self._config = config or EngineConfig()
        self._clock = clock

    @property
    def config(self) -> EngineConfig:
        return self._config

    # --- Collection level ---

    async def reconcile_collection(self, collection: Collection) -> CollectionResult:
        """
        Reconcile all mints of a collection. Retries the whole collection up to
        collection_attempts times; exhausting them is logged, not raised.
        """
        result = CollectionResult(collection_id=collection.id)
        attempts_left = self._config.collection_attempts
        while attempts_left > 0:
            attempts_left -= 1
            result.attempts += 1
            logger.info("collection_reconcile_started", collection_id=collection.id, attempt=result.attempts)
            try:
                result.chunks = await self._reconcile_once(collection)
                result.error = None
                logger.info(
                    "collection_reconcile_finished",
                    collection_id=collection.id,
                    attempt=result.attempts,
                    chunks=len(result.chunks),
                    persisted=result.persisted,
                )
                return result
            except Exception as e:
                result.error = str(e)
                logger.warning(
                    "collection_reconcile_failed",
                    collection_id=collection.id,
                    attempt=result.attempts,
                    attempts_left=attempts_left,
                    error=str(e),
                )
        logger.error(
            "collection_reconcile_gave_up",
            collection_id=collection.id,
            attempts=result.attempts,
            error=result.error,
        )
        return result

    async def _reconcile_once(self, collection: Collection) -> list[ChunkResult]:
        mints = await asyncio.to_thread(self._store.get_mints, collection.id)
        if not mints:
            logger.debug("collection_no_mints", collection_id=collection.id)
            return []
        chunks = chunked(mints, self._config.chunk_size)
        results = await asyncio.gather(*(self.reconcile_chunk(collection, c) for c in chunks))
        failed = sum(1 for r in results if r.failed)
        if failed:
            raise ChunkFailedError(collection.id, failed)
        return list(results)

    # --- Chunk level ---

    async def reconcile_chunk(self, collection: Collection, mints: Sequence[Mint]) -> ChunkResult:
        """Run one chunk with an immediate retry. Never raises; failure is reported in the result."""
        tries = 1 + self._config.chunk_retries
        last_error: Exception | None = None
        for attempt in range(1, tries + 1):
            try:
                result = await self._process_chunk(collection, mints)
                result.attempts = attempt
                return result
            except Exception as e:
                last_error = e
                logger.warning(
                    "chunk_failed",
                    collection_id=collection.id,
                    mint_count=len(mints),
                    attempt=attempt,
                    max_attempts=tries,
                    error=str(e),
                )
        return ChunkResult(
            mint_count=len(mints),
            failed=True,
            error=str(last_error),
            attempts=tries,
        )

    async def _process_chunk(self, collection: Collection, mints: Sequence[Mint]) -> ChunkResult:
        result = ChunkResult(mint_count=len(mints))
        mints_by_id = {m.mint: m for m in mints}
        history = await self._history.fetch_marketplace_history(list(mints_by_id))
        # Indexer may answer for mints we did not ask about
        candidates = [c for c in from_history(history) if c.mint in mints_by_id]
        result.candidates = len(candidates)
        accepted = self.select_new(mints_by_id, candidates)
        result.accepted = len(accepted)
        if not accepted:
            return result
        sales, skipped = await self._build_sales(accepted, mints_by_id, {collection.id: collection})
        result.skipped = skipped
        if sales:
            result.persisted = await asyncio.to_thread(self._store.upsert_sales, sales)
        logger.info(
            "chunk_reconciled",
            collection_id=collection.id,
            mint_count=len(mints),
            candidates=result.candidates,
            accepted=result.accepted,
            persisted=result.persisted,
            skipped=result.skipped,
        )
        return result

    def select_new(
        self,
        mints_by_id: dict[str, Mint],
        candidates: Sequence[SaleCandidate],
    ) -> list[SaleCandidate]:
        """Apply the dedup & ordering filter per mint."""
        now = int(self._clock())
        by_mint: dict[str, list[SaleCandidate]] = {}
        for c in candidates:
            by_mint.setdefault(c.mint, []).append(c)
        accepted: list[SaleCandidate] = []
        for mint_id, items in by_mint.items():
            mint = mints_by_id.get(mint_id)
            if mint is None:
                continue
            for candidate, decision in filter_candidates(
                mint.sales,
                items,
                now=now,
                lookback_sec=self._config.lookback_sec,
                patch_eligible_programs=self._config.patch_eligible_programs,
            ):
                if decision.accepted:
                    accepted.append(candidate)
                else:
                    logger.debug(
                        "candidate_dropped",
                        mint_id=mint_id,
                        signature=candidate.signature,
                        reason=decision.reason,
                    )
        return accepted

    async def _build_sales(
        self,
        candidates: Sequence[SaleCandidate],
        mints_by_id: dict[str, Mint],
        collections: dict[str, Collection],
    ) -> tuple[list[Sale], int]:
        """Fetch transactions and metadata concurrently, then price each candidate."""
        signatures = [c.signature for c in candidates]
        mint_ids = list(dict.fromkeys(c.mint for c in candidates))
        txs, metas = await asyncio.gather(
            fetch_transactions_with_fallback(self._transactions, signatures),
            self._metadata.fetch_nft_metadata(mint_ids),
        )
        metadata_by_mint = {mid: meta for mid, meta in zip(mint_ids, metas)}
        sales: list[Sale] = []
        skipped = 0
        for candidate, tx in zip(candidates, txs):
            mint = mints_by_id[candidate.mint]
            collection = collections[mint.collection_id]
            try:
                sales.append(
                    self.build_sale(candidate, tx, metadata_by_mint.get(candidate.mint), mint, collection)
                )
            except ResolutionError as e:
                skipped += 1
                logger.info(
                    "candidate_unresolved",
                    mint_id=candidate.mint,
                    signature=candidate.signature,
                    reason=type(e).__name__,
                    error=str(e),
                )
            except LogPayloadError as e:
                skipped += 1
                logger.error(
                    "candidate_log_payload_invalid",
                    mint_id=candidate.mint,
                    signature=candidate.signature,
                    program_id=candidate.program_id,
                    error=str(e),
                    exc_info=True,
                )
            except ValueError as e:
                # Malformed transaction or price; siblings in the chunk still count
                skipped += 1
                logger.error(
                    "candidate_invalid",
                    mint_id=candidate.mint,
                    signature=candidate.signature,
                    error=str(e),
                    exc_info=True,
                )
        return sales, skipped

    # --- Pricing one candidate ---

    def build_sale(
        self,
        candidate: SaleCandidate,
        tx: TransactionRecord | None,
        metadata: NftMetadata | None,
        mint: Mint,
        collection: Collection,
    ) -> Sale:
        """
        Price one candidate: extraction strategy, effective royalty at sale
        time, creator credits from balances, debt. Raises ResolutionError when
        the transaction or royalty data is missing, LogPayloadError on a
        malformed marketplace log.
        """
        if tx is None:
            raise MissingDataError(f"Transaction {candidate.signature} not found")
        candidate = strategy_for(candidate.program_id).extract(candidate, tx)
        sale_time = tx.block_time if tx.block_time is not None else candidate.block_time
        if sale_time is None:
            raise MissingDataError(f"No block time for {candidate.signature}")
        if metadata is not None:
            fallback_bps: int | None = metadata.seller_fee_basis_points
            fallback_creators: tuple[str, ...] | None = metadata.creator_addresses
        elif mint.seller_fee_basis_points is not None:
            fallback_bps = mint.seller_fee_basis_points
            fallback_creators = mint.creator_addresses
        else:
            fallback_bps = None
            fallback_creators = None
        royalty = resolve_royalty(
            collection.policies,
            sale_time,
            fallback_basis_points=fallback_bps,
            fallback_creators=fallback_creators,
        )
        if candidate.royalty_paid_lamports is not None:
            paid = candidate.royalty_paid_lamports
        else:
            paid = actual_commission(
                tx,
                royalty.creators,
                buyer=candidate.buyer if candidate.buyer in royalty.creators else None,
                sale_price_lamports=candidate.price_lamports,
            )
        expected = expected_commission(candidate.price_lamports, royalty.basis_points)
        assessment = assess_debt(expected, paid, dust_threshold=self._config.dust_threshold_lamports)
        if assessment.debt_lamports is not None:
            logger.info(
                "sale_debt_detected",
                mint_id=candidate.mint,
                signature=candidate.signature,
                debt_lamports=assessment.debt_lamports,
                debt_sol=assessment.debt_sol,
            )
        elif mint.outstanding_debt_lamports is not None:
            logger.info("sale_debt_cleared", mint_id=candidate.mint, signature=candidate.signature)
        return Sale(
            signature=candidate.signature,
            mint=candidate.mint,
            collection_id=collection.id,
            sale_date=int(sale_time),
            sale_price_lamports=candidate.price_lamports,
            buyer=candidate.buyer,
            seller=candidate.seller,
            expected_royalties_lamports=assessment.expected_lamports,
            royalties_paid_lamports=assessment.actual_lamports,
            debt_lamports=assessment.debt_lamports,
            seller_fee_basis_points=royalty.basis_points,
            creators=sorted(royalty.creators),
            marketplace_program_id=candidate.program_id,
            source=candidate.source,
            patched=candidate.program_id in self._config.patch_eligible_programs,
        )

    # --- Pushed candidates (webhook / live) ---

    async def record_transaction_sale(
        self,
        candidate: SaleCandidate,
        tx: TransactionRecord,
        mint: Mint,
        collection: Collection,
    ) -> Sale | None:
        """
        Price and persist one sale whose transaction is already in hand (live path).
        Returns the stored sale, or None when it was already recorded or could
        not be resolved.
        """
        decision = evaluate_candidate(
            mint.sales,
            candidate,
            now=int(self._clock()),
            lookback_sec=self._config.lookback_sec,
            patch_eligible_programs=self._config.patch_eligible_programs,
        )
        if not decision.accepted:
            logger.info(
                "live_sale_not_new",
                mint_id=candidate.mint,
                signature=candidate.signature,
                reason=decision.reason,
            )
            return None
        [metadata] = await self._metadata.fetch_nft_metadata([candidate.mint])
        try:
            sale = self.build_sale(candidate, tx, metadata, mint, collection)
        except ResolutionError as e:
            logger.info("live_sale_unresolved", mint_id=candidate.mint, signature=candidate.signature, error=str(e))
            return None
        except LogPayloadError as e:
            logger.error(
                "live_sale_log_payload_invalid",
                mint_id=candidate.mint,
                signature=candidate.signature,
                error=str(e),
                exc_info=True,
            )
            return None
        except ValueError as e:
            logger.error(
                "live_sale_invalid",
                mint_id=candidate.mint,
                signature=candidate.signature,
                error=str(e),
                exc_info=True,
            )
            return None
        await asyncio.to_thread(self._store.upsert_sales, [sale])
        return sale

    async def record_candidates(self, candidates: Sequence[SaleCandidate]) -> int:
        """
        Filter and persist candidates that arrived outside the batch pass.
        Unknown mints and mints of inactive collections are ignored.
        Returns the number of sales written.
        """
        if not candidates:
            return 0
        mints_by_id: dict[str, Mint] = {}
        collections: dict[str, Collection] = {}
        for mint_id in dict.fromkeys(c.mint for c in candidates):
            mint = await asyncio.to_thread(self._store.get_mint, mint_id)
            if mint is None:
                logger.debug("pushed_candidate_unknown_mint", mint_id=mint_id)
                continue
            if mint.collection_id not in collections:
                collection = await asyncio.to_thread(self._store.get_collection, mint.collection_id)
                if collection is None:
                    continue
                collections[mint.collection_id] = collection
            if not collections[mint.collection_id].active:
                logger.debug("pushed_candidate_inactive_collection", mint_id=mint_id)
                continue
            mints_by_id[mint_id] = mint
        accepted = self.select_new(mints_by_id, candidates)
        if not accepted:
            return 0
        sales, skipped = await self._build_sales(accepted, mints_by_id, collections)
        written = await asyncio.to_thread(self._store.upsert_sales, sales) if sales else 0
        logger.info(
            "pushed_candidates_recorded",
            candidates=len(candidates),
            accepted=len(accepted),
            persisted=written,
            skipped=skipped,
        )
        return written
