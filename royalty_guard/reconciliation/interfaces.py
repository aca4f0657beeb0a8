"""
Abstract collaborators consumed by the reconciliation engine.

The engine only sees these interfaces; httpx-backed implementations live in
royalty_guard.solana_listener and tests supply in-memory ones.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from royalty_guard.core.exceptions import TransactionVersionError
from royalty_guard.solana_listener.models import MarketplaceAction, NftMetadata, TransactionRecord

TransactionResult = TransactionRecord | TransactionVersionError | None


class HistorySource(ABC):
    """Marketplace history indexer."""

    @abstractmethod
    async def fetch_marketplace_history(
        self, token_addresses: Sequence[str]
    ) -> dict[str, list[MarketplaceAction]]:
        """Return sale actions per token address. Raises FetchError on outage."""
        ...


class TransactionSource(ABC):
    """Solana RPC transaction access."""

    @abstractmethod
    async def fetch_transactions(
        self,
        signatures: Sequence[str],
        *,
        max_supported_version: int | None = None,
    ) -> list[TransactionResult]:
        """
        Order-preserving batch fetch. Items are None when the transaction is
        unknown and TransactionVersionError when the RPC needs an explicit
        max supported version. Raises FetchError when the request itself fails.
        """
        ...

    @abstractmethod
    async def get_recent_signature(self, address: str) -> str | None:
        """Most recent signature touching address, or None."""
        ...


class MetadataSource(ABC):
    """NFT metadata (royalty basis points and creators)."""

    @abstractmethod
    async def fetch_nft_metadata(self, mint_addresses: Sequence[str]) -> list[NftMetadata | None]:
        """Order-preserving; None for mints without metadata."""
        ...
