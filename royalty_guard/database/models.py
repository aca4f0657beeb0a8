"""
Domain models for database entities.

Collections, royalty policies, mints, sales, marketplace programs and the
live-path activity log. Used by the store and the reconciliation engine; no
ORM coupling so the engine stays testable without a database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

LAMPORTS_PER_SOL = 1_000_000_000


@dataclass(frozen=True)
class Creator:
    """Creator entry from NFT metadata."""

    address: str
    verified: bool = False
    share: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"address": self.address, "verified": self.verified, "share": self.share}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Creator":
        return cls(
            address=str(data["address"]),
            verified=bool(data.get("verified", False)),
            share=data.get("share"),
        )


@dataclass(frozen=True)
class RoyaltyPolicy:
    """Royalty rate and creator set effective over [active_from, active_to)."""

    basis_points: int
    creators: tuple[str, ...]
    active_from: int | None = None
    """Unix timestamp (seconds); None = open start."""
    active_to: int | None = None
    """Unix timestamp (seconds), exclusive; None = open end."""

    def contains(self, timestamp: int) -> bool:
        start = self.active_from if self.active_from is not None else 0
        if timestamp < start:
            return False
        return self.active_to is None or timestamp < self.active_to


@dataclass
class Collection:
    """Protected collection. Created by onboarding; read-only to the engine."""

    id: str
    name: str = ""
    active: bool = True
    policies: list[RoyaltyPolicy] = field(default_factory=list)


@dataclass
class Sale:
    """Persisted secondary sale with its royalty reconciliation result."""

    signature: str
    mint: str
    collection_id: str
    sale_date: int
    """Unix timestamp (seconds) of the block containing the sale."""
    sale_price_lamports: int
    buyer: str | None
    seller: str | None
    expected_royalties_lamports: int
    royalties_paid_lamports: int
    debt_lamports: int | None
    seller_fee_basis_points: int
    creators: list[str] = field(default_factory=list)
    marketplace_program_id: str | None = None
    source: str = "history"
    patched: bool = False

    @property
    def sale_price(self) -> float:
        """Sale price in SOL; display only."""
        return round(self.sale_price_lamports / LAMPORTS_PER_SOL, 9)

    @property
    def debt(self) -> float | None:
        """Debt in SOL; display only."""
        if self.debt_lamports is None:
            return None
        return round(self.debt_lamports / LAMPORTS_PER_SOL, 9)

    def needs_patch(self, patch_eligible_programs: frozenset[str]) -> bool:
        """True when this sale came from a patch-eligible marketplace and has not been recomputed."""
        return (
            not self.patched
            and self.marketplace_program_id is not None
            and self.marketplace_program_id in patch_eligible_programs
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "mint": self.mint,
            "collection_id": self.collection_id,
            "sale_date": self.sale_date,
            "sale_price_lamports": self.sale_price_lamports,
            "sale_price": self.sale_price,
            "buyer": self.buyer,
            "seller": self.seller,
            "expected_royalties_lamports": self.expected_royalties_lamports,
            "royalties_paid_lamports": self.royalties_paid_lamports,
            "debt_lamports": self.debt_lamports,
            "debt": self.debt,
            "seller_fee_basis_points": self.seller_fee_basis_points,
            "creators": list(self.creators),
            "marketplace_program_id": self.marketplace_program_id,
            "source": self.source,
            "patched": self.patched,
        }


@dataclass
class Mint:
    """Monitored NFT. Belongs to exactly one collection; owns its sale history."""

    mint: str
    collection_id: str
    seller_fee_basis_points: int | None = None
    creators: list[Creator] = field(default_factory=list)
    sales: list[Sale] = field(default_factory=list)
    """Recorded sales ordered by sale_date ascending."""
    listed: bool = False

    @property
    def latest_sale(self) -> Sale | None:
        if not self.sales:
            return None
        return max(self.sales, key=lambda s: s.sale_date)

    @property
    def outstanding_debt_lamports(self) -> int | None:
        """Debt of the most recent sale; a fully paid later sale clears earlier debt."""
        latest = self.latest_sale
        return latest.debt_lamports if latest else None

    @property
    def creator_addresses(self) -> tuple[str, ...]:
        return tuple(c.address for c in self.creators)


@dataclass(frozen=True)
class MarketplaceProgram:
    """Marketplace program watched by the live path, with its log fingerprints."""

    program_id: str
    name: str
    purchase_log: str | None = None
    listing_log: str | None = None
    delisting_log: str | None = None
    active: bool = True


@dataclass(frozen=True)
class LogEntry:
    """Write-ahead log row: a signature handled by the live path."""

    signature: str
    mint: str | None
    activity_type: str
    created_at: int | None = None
