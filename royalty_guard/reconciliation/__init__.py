"""
Royalty reconciliation package.

Compares the royalty each secondary sale should have paid against what the
creators actually received, and records the shortfall (debt) per sale.
Import the engine and scheduler from their modules.
"""

from royalty_guard.reconciliation.analyzer import (
    DebtAssessment,
    actual_commission,
    assess_debt,
    expected_commission,
)
from royalty_guard.reconciliation.policy import EffectiveRoyalty, resolve_royalty

__all__ = [
    "DebtAssessment",
    "EffectiveRoyalty",
    "actual_commission",
    "assess_debt",
    "expected_commission",
    "resolve_royalty",
]
