"""
SQLAlchemy-backed store for collections, mints, sales and the live activity log.

Uses DATABASE_URL for PostgreSQL when set; otherwise SQLite. Sales are unique
per (signature, mint) and written with INSERT ... ON CONFLICT DO UPDATE so a
retried batch is idempotent. The activity log relies on its primary key for
dedup: a rejected insert means the signature was already handled.
"""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    select,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from royalty_guard.core.exceptions import PersistError
from royalty_guard.database.models import (
    Collection,
    Creator,
    LogEntry,
    MarketplaceProgram,
    Mint,
    RoyaltyPolicy,
    Sale,
)
from royalty_guard.guard_logging import get_logger

logger = get_logger(__name__)

Base = declarative_base()

# -----------------------------------------------------------------------------
# SQLAlchemy models
# -----------------------------------------------------------------------------


class CollectionRow(Base):
    __tablename__ = "collections"

    id = Column(String(64), primary_key=True)
    name = Column(String(256), nullable=True)
    active = Column(Boolean, nullable=False, default=True, index=True)


class RoyaltyPolicyRow(Base):
    """Royalty period for a collection; windows of one collection must not overlap."""

    __tablename__ = "royalty_policies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection_id = Column(String(64), ForeignKey("collections.id"), nullable=False, index=True)
    basis_points = Column(Integer, nullable=False)
    creators = Column(Text, nullable=False)  # JSON array of addresses
    active_from = Column(BigInteger, nullable=True)  # Unix seconds; NULL = open start
    active_to = Column(BigInteger, nullable=True)  # Unix seconds, exclusive; NULL = open end


class MintRow(Base):
    __tablename__ = "mints"

    mint = Column(String(64), primary_key=True)
    collection_id = Column(String(64), ForeignKey("collections.id"), nullable=False, index=True)
    seller_fee_basis_points = Column(Integer, nullable=True)
    creators = Column(Text, nullable=True)  # JSON array of {address, verified, share}
    listed = Column(Boolean, nullable=False, default=False)


class SaleRow(Base):
    """One reconciled secondary sale. Lamport amounts are integers; SOL floats are derived."""

    __tablename__ = "sales"
    __table_args__ = (UniqueConstraint("signature", "mint", name="uq_sales_signature_mint"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    signature = Column(String(128), nullable=False, index=True)
    mint = Column(String(64), nullable=False, index=True)
    collection_id = Column(String(64), nullable=False, index=True)
    sale_date = Column(BigInteger, nullable=False, index=True)
    sale_price_lamports = Column(BigInteger, nullable=False)
    sale_price = Column(Float, nullable=False)
    buyer = Column(String(64), nullable=True)
    seller = Column(String(64), nullable=True)
    expected_royalties_lamports = Column(BigInteger, nullable=False)
    royalties_paid_lamports = Column(BigInteger, nullable=False)
    debt_lamports = Column(BigInteger, nullable=True)
    debt = Column(Float, nullable=True)
    seller_fee_basis_points = Column(Integer, nullable=False)
    creators = Column(Text, nullable=True)  # JSON array of addresses used for the royalty
    marketplace_program_id = Column(String(64), nullable=True)
    source = Column(String(32), nullable=False, default="history")
    patched = Column(Boolean, nullable=False, default=False)
    updated_at = Column(BigInteger, nullable=True)


class ProgramRow(Base):
    """Marketplace program watched by the live path, with log fingerprints."""

    __tablename__ = "programs"

    program_id = Column(String(64), primary_key=True)
    name = Column(String(128), nullable=False)
    purchase_log = Column(String(256), nullable=True)
    listing_log = Column(String(256), nullable=True)
    delisting_log = Column(String(256), nullable=True)
    active = Column(Boolean, nullable=False, default=True)


class ActivityLogRow(Base):
    """Write-ahead log for the live path; the primary key is the dedup decision."""

    __tablename__ = "activity_log"

    signature = Column(String(128), primary_key=True)
    mint = Column(String(64), nullable=True, index=True)
    activity_type = Column(String(16), nullable=False)
    created_at = Column(BigInteger, nullable=False)


_SALE_UPDATE_COLUMNS = (
    "collection_id",
    "sale_date",
    "sale_price_lamports",
    "sale_price",
    "buyer",
    "seller",
    "expected_royalties_lamports",
    "royalties_paid_lamports",
    "debt_lamports",
    "debt",
    "seller_fee_basis_points",
    "creators",
    "marketplace_program_id",
    "source",
    "patched",
    "updated_at",
)


def _sale_from_row(row: SaleRow) -> Sale:
    return Sale(
        signature=row.signature,
        mint=row.mint,
        collection_id=row.collection_id,
        sale_date=row.sale_date,
        sale_price_lamports=row.sale_price_lamports,
        buyer=row.buyer,
        seller=row.seller,
        expected_royalties_lamports=row.expected_royalties_lamports,
        royalties_paid_lamports=row.royalties_paid_lamports,
        debt_lamports=row.debt_lamports,
        seller_fee_basis_points=row.seller_fee_basis_points,
        creators=json.loads(row.creators) if row.creators else [],
        marketplace_program_id=row.marketplace_program_id,
        source=row.source,
        patched=bool(row.patched),
    )


def _sale_to_values(sale: Sale, now: int) -> dict[str, Any]:
    return {
        "signature": sale.signature,
        "mint": sale.mint,
        "collection_id": sale.collection_id,
        "sale_date": sale.sale_date,
        "sale_price_lamports": sale.sale_price_lamports,
        "sale_price": sale.sale_price,
        "buyer": sale.buyer,
        "seller": sale.seller,
        "expected_royalties_lamports": sale.expected_royalties_lamports,
        "royalties_paid_lamports": sale.royalties_paid_lamports,
        "debt_lamports": sale.debt_lamports,
        "debt": sale.debt,
        "seller_fee_basis_points": sale.seller_fee_basis_points,
        "creators": json.dumps(list(sale.creators)),
        "marketplace_program_id": sale.marketplace_program_id,
        "source": sale.source,
        "patched": sale.patched,
        "updated_at": now,
    }


def _mint_from_row(row: MintRow, sales: list[Sale]) -> Mint:
    creators = [Creator.from_dict(c) for c in json.loads(row.creators)] if row.creators else []
    return Mint(
        mint=row.mint,
        collection_id=row.collection_id,
        seller_fee_basis_points=row.seller_fee_basis_points,
        creators=creators,
        sales=sorted(sales, key=lambda s: s.sale_date),
        listed=bool(row.listed),
    )


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------


class SaleStore:
    """
    Persistence for the reconciliation core.

    Reads: collections (with policies), mints (with sale history), programs.
    Writes: idempotent sale upserts, activity log claims, listed flags.
    Onboarding helpers (add_collection, add_policy, add_mint, add_program) are
    used by tooling and tests; the engine never calls them.
    """

    def __init__(self, url: str) -> None:
        connect_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self._url = url
        self._engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)
        logger.info("store_engine", url=url.split("?")[0].split("//")[-1], dialect=self._engine.dialect.name)

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        """Single session; commits on success, rolls back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        Base.metadata.create_all(bind=self._engine)
        logger.info("store_schema_ready", tables=sorted(Base.metadata.tables))

    def dispose(self) -> None:
        self._engine.dispose()

    # --- Onboarding ---

    def add_collection(self, collection_id: str, name: str = "", active: bool = True) -> None:
        with self._session_scope() as session:
            session.merge(CollectionRow(id=collection_id, name=name, active=active))

    def add_policy(self, collection_id: str, policy: RoyaltyPolicy) -> None:
        with self._session_scope() as session:
            session.add(
                RoyaltyPolicyRow(
                    collection_id=collection_id,
                    basis_points=policy.basis_points,
                    creators=json.dumps(list(policy.creators)),
                    active_from=policy.active_from,
                    active_to=policy.active_to,
                )
            )

    def add_mint(
        self,
        mint: str,
        collection_id: str,
        *,
        seller_fee_basis_points: int | None = None,
        creators: Sequence[Creator] = (),
    ) -> None:
        with self._session_scope() as session:
            session.merge(
                MintRow(
                    mint=mint,
                    collection_id=collection_id,
                    seller_fee_basis_points=seller_fee_basis_points,
                    creators=json.dumps([c.to_dict() for c in creators]),
                    listed=False,
                )
            )

    def add_program(self, program: MarketplaceProgram) -> None:
        with self._session_scope() as session:
            session.merge(
                ProgramRow(
                    program_id=program.program_id,
                    name=program.name,
                    purchase_log=program.purchase_log,
                    listing_log=program.listing_log,
                    delisting_log=program.delisting_log,
                    active=program.active,
                )
            )

    # --- Collections and mints ---

    def _policies_by_collection(self, session: Session, ids: Sequence[str]) -> dict[str, list[RoyaltyPolicy]]:
        out: dict[str, list[RoyaltyPolicy]] = {cid: [] for cid in ids}
        if not ids:
            return out
        rows = session.execute(
            select(RoyaltyPolicyRow)
            .where(RoyaltyPolicyRow.collection_id.in_(ids))
            .order_by(RoyaltyPolicyRow.active_from)
        ).scalars()
        for row in rows:
            out[row.collection_id].append(
                RoyaltyPolicy(
                    basis_points=row.basis_points,
                    creators=tuple(json.loads(row.creators)),
                    active_from=row.active_from,
                    active_to=row.active_to,
                )
            )
        return out

    def get_collections(self, *, active_only: bool = False) -> list[Collection]:
        with self._session_scope() as session:
            stmt = select(CollectionRow).order_by(CollectionRow.id)
            if active_only:
                stmt = stmt.where(CollectionRow.active.is_(True))
            rows = list(session.execute(stmt).scalars())
            policies = self._policies_by_collection(session, [r.id for r in rows])
            return [
                Collection(id=r.id, name=r.name or "", active=bool(r.active), policies=policies[r.id])
                for r in rows
            ]

    def get_collection(self, collection_id: str) -> Collection | None:
        with self._session_scope() as session:
            row = session.get(CollectionRow, collection_id)
            if row is None:
                return None
            policies = self._policies_by_collection(session, [row.id])
            return Collection(id=row.id, name=row.name or "", active=bool(row.active), policies=policies[row.id])

    def _sales_by_mint(self, session: Session, mints: Sequence[str]) -> dict[str, list[Sale]]:
        out: dict[str, list[Sale]] = {m: [] for m in mints}
        if not mints:
            return out
        rows = session.execute(
            select(SaleRow).where(SaleRow.mint.in_(mints)).order_by(SaleRow.sale_date, SaleRow.id)
        ).scalars()
        for row in rows:
            out.setdefault(row.mint, []).append(_sale_from_row(row))
        return out

    def get_mints(self, collection_id: str) -> list[Mint]:
        """All mints of a collection, each with its recorded sales."""
        with self._session_scope() as session:
            rows = list(
                session.execute(
                    select(MintRow).where(MintRow.collection_id == collection_id).order_by(MintRow.mint)
                ).scalars()
            )
            sales = self._sales_by_mint(session, [r.mint for r in rows])
            return [_mint_from_row(r, sales.get(r.mint, [])) for r in rows]

    def get_mint(self, mint: str) -> Mint | None:
        with self._session_scope() as session:
            row = session.get(MintRow, mint)
            if row is None:
                return None
            sales = self._sales_by_mint(session, [mint])
            return _mint_from_row(row, sales.get(mint, []))

    def set_listed(self, mint: str, listed: bool) -> bool:
        """Update the listed flag; returns False for an unknown mint."""
        with self._session_scope() as session:
            row = session.get(MintRow, mint)
            if row is None:
                return False
            row.listed = listed
            return True

    # --- Sales ---

    def _insert(self):
        dialect = self._engine.dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise PersistError(f"Upsert not supported for dialect {dialect}")
        return insert

    def upsert_sales(self, sales: Sequence[Sale]) -> int:
        """
        Insert sales keyed by (signature, mint). Safe to repeat.

        A recorded sale is only overwritten by its patch recomputation: the
        stored row is unpatched and the incoming one is patched. Any other
        conflict keeps the stored row and counts as already recorded.
        Returns the number of sales written or already present.
        """
        if not sales:
            return 0
        now = int(time.time())
        # Last write wins for repeats inside one batch
        by_key = {(s.signature, s.mint): _sale_to_values(s, now) for s in sales}
        insert = self._insert()
        stmt = insert(SaleRow).values(list(by_key.values()))
        stmt = stmt.on_conflict_do_update(
            index_elements=["signature", "mint"],
            set_={c: getattr(stmt.excluded, c) for c in _SALE_UPDATE_COLUMNS},
            where=and_(SaleRow.patched.is_(False), stmt.excluded.patched.is_(True)),
        )
        with self._session_scope() as session:
            session.execute(stmt)
        return len(by_key)

    def get_sales(self, mint: str) -> list[Sale]:
        with self._session_scope() as session:
            return self._sales_by_mint(session, [mint]).get(mint, [])

    def get_outstanding_debt(self, mint: str) -> Sale | None:
        """Latest sale for the mint if it carries debt; None when paid up or never sold."""
        with self._session_scope() as session:
            row = session.execute(
                select(SaleRow)
                .where(SaleRow.mint == mint)
                .order_by(SaleRow.sale_date.desc(), SaleRow.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if row is None or row.debt_lamports is None:
                return None
            return _sale_from_row(row)

    def list_outstanding_debts(self, collection_id: str) -> list[Sale]:
        """Per mint of the collection, the latest sale when it carries debt."""
        return [
            mint.latest_sale
            for mint in self.get_mints(collection_id)
            if mint.latest_sale is not None and mint.outstanding_debt_lamports is not None
        ]

    # --- Live path ---

    def get_programs(self, *, active_only: bool = True) -> list[MarketplaceProgram]:
        with self._session_scope() as session:
            stmt = select(ProgramRow).order_by(ProgramRow.name)
            if active_only:
                stmt = stmt.where(ProgramRow.active.is_(True))
            return [
                MarketplaceProgram(
                    program_id=r.program_id,
                    name=r.name,
                    purchase_log=r.purchase_log,
                    listing_log=r.listing_log,
                    delisting_log=r.delisting_log,
                    active=bool(r.active),
                )
                for r in session.execute(stmt).scalars()
            ]

    def check_log_entry(self, signature: str) -> LogEntry | None:
        with self._session_scope() as session:
            row = session.get(ActivityLogRow, signature)
            if row is None:
                return None
            return LogEntry(
                signature=row.signature,
                mint=row.mint,
                activity_type=row.activity_type,
                created_at=row.created_at,
            )

    def append_log_entry(self, signature: str, mint: str | None, activity_type: str) -> bool:
        """
        Claim a signature for processing with a single insert.
        Returns False when the unique key rejects it (already processed).
        """
        session = self._session_factory()
        try:
            session.add(
                ActivityLogRow(
                    signature=signature,
                    mint=mint,
                    activity_type=activity_type,
                    created_at=int(time.time()),
                )
            )
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
            return False
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistError(str(e)) from e
        finally:
            session.close()


def get_store(url: str | None = None) -> SaleStore:
    """
    Return an initialised SaleStore.

    url: SQLAlchemy URL. Default: DATABASE_URL / DB_PATH from env, else sqlite:///royalty_guard.db.
    """
    if url is None:
        from royalty_guard.config.env import get_database_url

        url = get_database_url()
    store = SaleStore(url)
    store.init_db()
    return store
