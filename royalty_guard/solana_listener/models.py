"""
Data models for listener client output.

Normalized shapes for what the RPC, history indexer and metadata service
return: confirmed transactions (balances and logs), marketplace actions,
and NFT royalty metadata.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from royalty_guard.database.models import Creator


def _account_keys(message: dict[str, Any], meta: dict[str, Any]) -> list[str]:
    """
    Resolve accountKeys to base58 strings (handles json vs jsonParsed).
    For versioned transactions, appends meta.loadedAddresses (writable + readonly).
    """
    keys = message.get("accountKeys") or message.get("staticAccountKeys") or []
    out: list[str] = []
    for k in keys:
        if isinstance(k, str):
            out.append(k)
        elif isinstance(k, dict):
            out.append(str(k.get("pubkey", "")))
    loaded = meta.get("loadedAddresses") or {}
    for role in ("writable", "readonly"):
        for addr in loaded.get(role) or []:
            out.append(str(addr))
    return out


@dataclass(frozen=True)
class TransactionRecord:
    """
    Confirmed transaction reduced to what royalty reconciliation needs.

    pre_balances / post_balances are parallel to account_keys, in lamports.
    """

    signature: str
    block_time: int | None
    account_keys: tuple[str, ...]
    pre_balances: tuple[int, ...]
    post_balances: tuple[int, ...]
    log_messages: tuple[str, ...] = ()
    token_mints: tuple[str, ...] = ()
    """Mints from meta.preTokenBalances, in order."""
    slot: int | None = None

    @classmethod
    def from_rpc(cls, result: dict[str, Any], signature: str | None = None) -> "TransactionRecord":
        """Build from a getTransaction result object (json or jsonParsed encoding)."""
        tx_obj = result.get("transaction") or {}
        message = tx_obj.get("message") or {}
        meta = result.get("meta") or {}
        if signature is None:
            sigs = tx_obj.get("signatures") or []
            signature = sigs[0] if sigs else ""
        block_time = result.get("blockTime")
        slot = result.get("slot")
        return cls(
            signature=signature,
            block_time=int(block_time) if block_time is not None else None,
            account_keys=tuple(_account_keys(message, meta)),
            pre_balances=tuple(int(b) for b in meta.get("preBalances") or []),
            post_balances=tuple(int(b) for b in meta.get("postBalances") or []),
            log_messages=tuple(meta.get("logMessages") or []),
            token_mints=tuple(
                str(tb["mint"]) for tb in meta.get("preTokenBalances") or [] if tb.get("mint")
            ),
            slot=int(slot) if slot is not None else None,
        )


@dataclass(frozen=True)
class MarketplaceAction:
    """One sale reported by the marketplace history indexer."""

    signature: str
    price: float | None
    """Sale price in SOL, as reported by the indexer."""
    buyer_address: str | None
    seller_address: str | None
    block_timestamp: int | None
    marketplace_program_id: str | None = None

    @classmethod
    def from_api_item(cls, item: dict[str, Any]) -> "MarketplaceAction":
        ts = item.get("block_timestamp")
        price = item.get("price")
        return cls(
            signature=item["signature"],
            price=float(price) if price is not None else None,
            buyer_address=item.get("buyer_address"),
            seller_address=item.get("seller_address"),
            block_timestamp=int(ts) if ts is not None else None,
            marketplace_program_id=item.get("marketplace_program_id"),
        )


@dataclass(frozen=True)
class NftMetadata:
    """On-chain royalty metadata for a mint."""

    mint_address: str
    seller_fee_basis_points: int
    creators: tuple[Creator, ...] = field(default_factory=tuple)
    uri: str | None = None
    name: str | None = None

    @property
    def creator_addresses(self) -> tuple[str, ...]:
        return tuple(c.address for c in self.creators)

    @classmethod
    def from_das_asset(cls, asset: dict[str, Any]) -> "NftMetadata":
        """Build from a DAS getAsset / getAssetBatch item."""
        royalty = asset.get("royalty") or {}
        content = asset.get("content") or {}
        metadata = content.get("metadata") or {}
        return cls(
            mint_address=str(asset["id"]),
            seller_fee_basis_points=int(royalty.get("basis_points") or 0),
            creators=tuple(Creator.from_dict(c) for c in asset.get("creators") or []),
            uri=content.get("json_uri"),
            name=metadata.get("name"),
        )
