"""
Dedup & ordering filter: which candidates are new for a mint.

Pure functions of (history, candidate, now, lookback, patch-eligible programs);
no hidden state, so every decision can be reproduced in tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from royalty_guard.database.models import Sale
from royalty_guard.reconciliation.normalizer import SaleCandidate

REASON_FIRST_SALE = "first_sale"
REASON_NEWER = "newer_than_latest"
REASON_PATCH = "patch_recompute"
REASON_REPROCESS = "reprocess_eligible"
REASON_ALREADY_RECORDED = "already_recorded"
REASON_OUT_OF_ORDER = "not_after_latest"
REASON_STALE = "outside_lookback"
REASON_DUPLICATE = "duplicate_in_batch"


@dataclass(frozen=True)
class FilterDecision:
    accepted: bool
    reason: str


def _ordering_decision(
    history: Sequence[Sale],
    candidate: SaleCandidate,
    event_time: int,
    patch_eligible_programs: frozenset[str],
) -> FilterDecision:
    if not history:
        return FilterDecision(True, REASON_FIRST_SALE)
    existing = next((s for s in history if s.signature == candidate.signature), None)
    if existing is not None:
        if existing.needs_patch(patch_eligible_programs):
            return FilterDecision(True, REASON_PATCH)
        return FilterDecision(False, REASON_ALREADY_RECORDED)
    latest = max(s.sale_date for s in history)
    if event_time > latest:
        return FilterDecision(True, REASON_NEWER)
    if candidate.program_id is not None and candidate.program_id in patch_eligible_programs:
        return FilterDecision(True, REASON_REPROCESS)
    return FilterDecision(False, REASON_OUT_OF_ORDER)


def evaluate_candidate(
    history: Sequence[Sale],
    candidate: SaleCandidate,
    *,
    now: int,
    lookback_sec: int,
    patch_eligible_programs: frozenset[str] = frozenset(),
) -> FilterDecision:
    """
    Decide whether candidate is new relative to the mint's recorded history.

    Ordering first (signature already recorded, strictly after latest sale,
    or reprocess-eligible marketplace), then the lookback staleness check.
    A candidate without block time is treated as happening now.
    """
    event_time = candidate.block_time if candidate.block_time is not None else now
    decision = _ordering_decision(history, candidate, event_time, patch_eligible_programs)
    if not decision.accepted:
        return decision
    if event_time <= now - lookback_sec:
        return FilterDecision(False, REASON_STALE)
    return decision


def filter_candidates(
    history: Sequence[Sale],
    candidates: Iterable[SaleCandidate],
    *,
    now: int,
    lookback_sec: int,
    patch_eligible_programs: frozenset[str] = frozenset(),
) -> list[tuple[SaleCandidate, FilterDecision]]:
    """
    Evaluate candidates for one mint; later repeats of a signature already
    accepted in this batch are dropped (overlapping sources).
    """
    seen: set[str] = set()
    out: list[tuple[SaleCandidate, FilterDecision]] = []
    for candidate in candidates:
        if candidate.signature in seen:
            out.append((candidate, FilterDecision(False, REASON_DUPLICATE)))
            continue
        decision = evaluate_candidate(
            history,
            candidate,
            now=now,
            lookback_sec=lookback_sec,
            patch_eligible_programs=patch_eligible_programs,
        )
        if decision.accepted:
            seen.add(candidate.signature)
        out.append((candidate, decision))
    return out
