"""
Transaction balance analyzer: creator royalty actually paid vs. expected.

Works on pre/post lamport balances of a confirmed transaction. All lamport
math is done with Python ints; SOL floats are only produced at the boundary
(display / storage of derived fields). Pure functions; no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Sequence

from royalty_guard.database.models import LAMPORTS_PER_SOL
from royalty_guard.solana_listener.models import TransactionRecord

ROYALTY_DENOMINATOR = 10_000
# One base transaction fee; shortfalls at or below this are fee rounding noise
DUST_THRESHOLD_LAMPORTS = 5000
# Rent-exempt minimum for a token account created for the buyer
TOKEN_ACCOUNT_RENT_LAMPORTS = 2_039_280
BASE_FEE_LAMPORTS = 5000


@dataclass(frozen=True)
class BalanceDelta:
    """Signed lamport change of one account within a transaction."""

    key: str
    change: int


@dataclass(frozen=True)
class DebtAssessment:
    """Expected vs. actual creator royalty for one sale."""

    expected_lamports: int
    actual_lamports: int
    debt_lamports: int | None

    @property
    def owing_lamports(self) -> int:
        return self.expected_lamports - self.actual_lamports

    @property
    def debt_sol(self) -> float | None:
        if self.debt_lamports is None:
            return None
        return lamports_to_sol(self.debt_lamports)


def sol_to_lamports(amount: float | int | str | Decimal) -> int:
    """Convert a SOL amount to lamports without binary float error (truncates sub-lamport dust)."""
    return int(Decimal(str(amount)) * LAMPORTS_PER_SOL)


def lamports_to_sol(lamports: int) -> float:
    return round(lamports / LAMPORTS_PER_SOL, 9)


def balance_deltas(
    account_keys: Sequence[str],
    pre_balances: Sequence[int],
    post_balances: Sequence[int],
) -> list[BalanceDelta]:
    """Per-account signed change; zero-change accounts are omitted."""
    if not (len(account_keys) == len(pre_balances) == len(post_balances)):
        raise ValueError(
            f"balance arrays misaligned: {len(account_keys)} keys, "
            f"{len(pre_balances)} pre, {len(post_balances)} post"
        )
    out: list[BalanceDelta] = []
    for key, before, after in zip(account_keys, pre_balances, post_balances):
        change = int(after) - int(before)
        if change:
            out.append(BalanceDelta(key=key, change=change))
    return out


def actual_commission(
    tx: TransactionRecord,
    creators: Iterable[str],
    *,
    buyer: str | None = None,
    sale_price_lamports: int | None = None,
) -> int:
    """
    Sum of lamport changes on creator accounts.

    When buyer is passed and is itself a creator, the buyer paid the sale price
    out of that same account; the payment leg is added back so only the royalty
    credit is counted.
    """
    creator_set = frozenset(creators)
    if buyer is not None and buyer in creator_set and sale_price_lamports is None:
        raise ValueError("sale_price_lamports is required when the buyer is a creator")
    total = 0
    for delta in balance_deltas(tx.account_keys, tx.pre_balances, tx.post_balances):
        if delta.key not in creator_set:
            continue
        if buyer is not None and delta.key == buyer:
            total += delta.change + int(sale_price_lamports or 0)
        else:
            total += delta.change
    return total


def expected_commission(sale_price_lamports: int, basis_points: int) -> int:
    """Royalty owed: price per ten-thousand times basis points (integer division)."""
    if sale_price_lamports < 0:
        raise ValueError("sale price cannot be negative")
    if basis_points < 0:
        raise ValueError("basis points cannot be negative")
    return (sale_price_lamports // ROYALTY_DENOMINATOR) * basis_points


def assess_debt(
    expected_lamports: int,
    actual_lamports: int,
    *,
    dust_threshold: int = DUST_THRESHOLD_LAMPORTS,
) -> DebtAssessment:
    owing = expected_lamports - actual_lamports
    debt = owing if owing > dust_threshold else None
    return DebtAssessment(
        expected_lamports=expected_lamports,
        actual_lamports=actual_lamports,
        debt_lamports=debt,
    )


def infer_sale_price(tx: TransactionRecord) -> int:
    """
    Estimate the sale price from balances when no marketplace reports one.

    The buyer's debit is the largest negative change; it includes rent for the
    new token account and the base fee, which are subtracted.
    """
    deltas = balance_deltas(tx.account_keys, tx.pre_balances, tx.post_balances)
    debits = [d.change for d in deltas if d.change < 0]
    if not debits:
        return 0
    price = -min(debits) - TOKEN_ACCOUNT_RENT_LAMPORTS - BASE_FEE_LAMPORTS
    return max(price, 0)
