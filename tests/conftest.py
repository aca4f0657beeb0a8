"""
Pytest fixtures for Royalty Guard tests. Uses a temporary SQLite store and
in-memory history / transaction / metadata collaborators.
"""

from __future__ import annotations

import pytest

from support import (
    COLLECTION_ID,
    CREATOR,
    MINT,
    NOW,
    FakeHistory,
    FakeMetadata,
    FakeTransactions,
)


@pytest.fixture(autouse=True)
def isolated_strategies(monkeypatch):
    """Each test starts with an empty extraction strategy registry."""
    import royalty_guard.reconciliation.normalizer as normalizer

    monkeypatch.setattr(normalizer, "_STRATEGIES", {})


@pytest.fixture
def store(tmp_path, monkeypatch):
    """Fresh SQLite SaleStore with tables created. Unset DATABASE_URL so nothing leaks in."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    from royalty_guard.database.database import SaleStore

    sale_store = SaleStore(f"sqlite:///{tmp_path / 'royalty_guard.db'}")
    sale_store.init_db()
    yield sale_store
    sale_store.dispose()


@pytest.fixture
def seeded_store(store):
    """Store with one active collection and one mint carrying static royalty fields (5%)."""
    from royalty_guard.database.models import Creator

    store.add_collection(COLLECTION_ID, "Degen Apes")
    store.add_mint(
        MINT,
        COLLECTION_ID,
        seller_fee_basis_points=500,
        creators=[Creator(address=CREATOR, verified=True, share=100)],
    )
    return store


@pytest.fixture
def make_engine(seeded_store):
    """Factory: engine over seeded_store with fakes and a fixed clock (NOW)."""
    from royalty_guard.reconciliation.engine import EngineConfig, ReconciliationEngine

    def _make(history=None, transactions=None, metadata=None, **config):
        return ReconciliationEngine(
            seeded_store,
            history if history is not None else FakeHistory(),
            transactions if transactions is not None else FakeTransactions(),
            metadata if metadata is not None else FakeMetadata(),
            EngineConfig(**config),
            clock=lambda: NOW,
        )

    return _make
