"""
Royalty policy resolver.

Collections may change their royalty over time; each change is a policy with
an [active_from, active_to) window. The policy containing the sale time wins;
with no policies (or none covering the time) the mint's static royalty applies.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from royalty_guard.core.exceptions import PolicyConflictError, RoyaltyResolutionError
from royalty_guard.database.models import RoyaltyPolicy
from royalty_guard.guard_logging import get_logger

logger = get_logger(__name__)

SOURCE_POLICY = "policy"
SOURCE_STATIC = "static"


@dataclass(frozen=True)
class EffectiveRoyalty:
    basis_points: int
    creators: frozenset[str]
    source: str


def resolve_royalty(
    policies: Sequence[RoyaltyPolicy],
    sale_timestamp: int,
    *,
    fallback_basis_points: int | None = None,
    fallback_creators: Iterable[str] | None = None,
) -> EffectiveRoyalty:
    """
    Return the royalty rate and creator set effective at sale_timestamp.

    Raises PolicyConflictError when windows overlap at that time and
    RoyaltyResolutionError when nothing covers it and there is no fallback.
    """
    matches = [p for p in policies if p.contains(sale_timestamp)]
    if len(matches) > 1:
        logger.error(
            "royalty_policy_conflict",
            sale_timestamp=sale_timestamp,
            matches=len(matches),
            windows=[(p.active_from, p.active_to) for p in matches],
        )
        raise PolicyConflictError(sale_timestamp, len(matches))
    if matches:
        policy = matches[0]
        return EffectiveRoyalty(
            basis_points=policy.basis_points,
            creators=frozenset(policy.creators),
            source=SOURCE_POLICY,
        )
    if fallback_basis_points is None or fallback_creators is None:
        raise RoyaltyResolutionError(f"No royalty policy or static royalty for sale at {sale_timestamp}")
    return EffectiveRoyalty(
        basis_points=int(fallback_basis_points),
        creators=frozenset(fallback_creators),
        source=SOURCE_STATIC,
    )
