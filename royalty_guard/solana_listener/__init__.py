"""
Solana data access package.

RPC transactions, marketplace history indexer, NFT metadata (DAS) and the
live program-subscription monitor. Normalizes raw responses into the models
consumed by the reconciliation engine.
"""

from royalty_guard.solana_listener.models import (
    MarketplaceAction,
    NftMetadata,
    TransactionRecord,
)

__all__ = [
    "MarketplaceAction",
    "NftMetadata",
    "TransactionRecord",
]
