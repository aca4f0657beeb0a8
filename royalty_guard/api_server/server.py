"""
FastAPI server: sale webhook and royalty debt lookups.

POST /webhook records pushed sale events through the reconciliation engine
(same filter, pricing and idempotent upsert as the batch pass). GET routes
read recorded debt from the store only.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from royalty_guard.config.settings import Settings, get_settings
from royalty_guard.core.exceptions import FetchError, PersistError
from royalty_guard.database.database import SaleStore
from royalty_guard.database.database import get_store as open_store
from royalty_guard.database.models import LAMPORTS_PER_SOL, Sale
from royalty_guard.guard_logging import get_logger
from royalty_guard.reconciliation.engine import EngineConfig, ReconciliationEngine
from royalty_guard.reconciliation.normalizer import SaleCandidate, configure_strategies, from_webhook_event
from royalty_guard.utils.address_utils import is_valid_address, normalize_address

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Config and dependencies
# -----------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_app_settings() -> Settings:
    return get_settings()


@lru_cache(maxsize=1)
def _shared_store() -> SaleStore:
    return open_store(get_app_settings().database_url)


def get_store() -> SaleStore:
    """Dependency: process-wide SaleStore."""
    return _shared_store()


def get_engine(store: SaleStore = Depends(get_store)) -> ReconciliationEngine:
    """Dependency: engine wired to the live RPC, history and metadata clients."""
    from royalty_guard.solana_listener.history import MarketplaceHistoryClient
    from royalty_guard.solana_listener.metadata import NftMetadataClient
    from royalty_guard.solana_listener.rpc import SolanaRpcClient

    settings = get_app_settings()
    return ReconciliationEngine(
        store,
        MarketplaceHistoryClient(
            settings.history_api_url,
            settings.history_api_key,
            timeout_sec=settings.request_timeout_sec,
        ),
        SolanaRpcClient(settings.solana_rpc_url, timeout_sec=settings.request_timeout_sec),
        NftMetadataClient(settings.solana_rpc_url, timeout_sec=settings.request_timeout_sec),
        EngineConfig.from_settings(settings),
    )


# -----------------------------------------------------------------------------
# Request / response models
# -----------------------------------------------------------------------------

class WebhookResponse(BaseModel):
    """POST /webhook response."""

    received: int = Field(..., description="Events in the request body")
    candidates: int = Field(..., description="Sale candidates extracted (one per NFT)")
    invalid: list[str] = Field(default_factory=list, description="Rejected mint addresses or signatures")
    recorded: int = Field(..., description="Sales written to the store")


class SaleResponse(BaseModel):
    """A recorded sale and its royalty outcome."""

    signature: str
    mint: str
    collection_id: str
    sale_date: int = Field(..., description="Unix timestamp of the sale block")
    sale_price_lamports: int
    sale_price: float = Field(..., description="Sale price in SOL")
    buyer: str | None = None
    seller: str | None = None
    expected_royalties_lamports: int
    royalties_paid_lamports: int
    debt_lamports: int | None = None
    debt: float | None = Field(None, description="Debt in SOL; null when royalties were paid")
    seller_fee_basis_points: int
    marketplace_program_id: str | None = None

    @classmethod
    def from_sale(cls, sale: Sale) -> "SaleResponse":
        data = sale.to_dict()
        return cls(**{k: data[k] for k in cls.model_fields})


class MintDebtResponse(BaseModel):
    """GET /mints/{mint}/debt response."""

    mint: str
    collection_id: str
    listed: bool = False
    has_debt: bool
    sale: SaleResponse | None = Field(None, description="Latest sale when it carries debt")


class CollectionDebtsResponse(BaseModel):
    """GET /collections/{collection_id}/debts response."""

    collection_id: str
    total_debt_lamports: int
    total_debt: float
    sales: list[SaleResponse] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# App and routes
# -----------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise extraction strategies and the store before serving."""
    settings = get_app_settings()
    configure_strategies(settings.log_payload_program_ids)
    try:
        get_store()
    except PersistError as e:
        logger.warning("api_store_init_failed", error=str(e))
    logger.info("api_started")
    yield
    logger.info("api_stopped")


app = FastAPI(
    title="Royalty Guard API",
    description="Sale webhook and recorded royalty debt for protected NFT collections.",
    version="0.1.0",
    lifespan=lifespan,
)


def _candidates_from_events(events: list[dict[str, Any]]) -> tuple[list[SaleCandidate], list[str]]:
    candidates: list[SaleCandidate] = []
    invalid: list[str] = []
    for event in events:
        if not isinstance(event, dict):
            invalid.append(str(event)[:64])
            continue
        try:
            extracted = from_webhook_event(event)
        except (ValueError, TypeError, ArithmeticError) as e:
            logger.info("webhook_event_invalid", signature=event.get("signature"), error=str(e))
            invalid.append(str(event.get("signature") or "")[:128])
            continue
        for candidate in extracted:
            if not is_valid_address(candidate.mint):
                invalid.append(candidate.mint)
                continue
            candidates.append(candidate)
    return candidates, invalid


@app.post("/webhook", response_model=WebhookResponse)
async def webhook(
    events: list[dict[str, Any]],
    engine: ReconciliationEngine = Depends(get_engine),
) -> WebhookResponse:
    """
    Record pushed NFT sale events. Unknown mints and already recorded
    signatures are ignored; replays are harmless.
    """
    candidates, invalid = _candidates_from_events(events)
    logger.info("webhook_received", events=len(events), candidates=len(candidates), invalid=len(invalid))
    try:
        recorded = await engine.record_candidates(candidates)
    except FetchError as e:
        logger.warning("webhook_fetch_failed", source=e.source, error=str(e))
        raise HTTPException(status_code=502, detail="Upstream fetch failed") from e
    except PersistError as e:
        logger.exception("webhook_persist_failed", error=str(e))
        raise HTTPException(status_code=503, detail="Store unavailable") from e
    return WebhookResponse(
        received=len(events),
        candidates=len(candidates),
        invalid=invalid,
        recorded=recorded,
    )


@app.get("/mints/{mint}/debt", response_model=MintDebtResponse)
def get_mint_debt(mint: str, store: SaleStore = Depends(get_store)) -> MintDebtResponse:
    """Outstanding debt of a mint: the latest recorded sale, if it underpaid."""
    normalized = normalize_address(mint)
    if normalized is None:
        raise HTTPException(status_code=400, detail="Invalid Solana mint address")
    mint = normalized
    record = store.get_mint(mint)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Mint {mint[:8]}... is not monitored")
    sale = store.get_outstanding_debt(mint)
    return MintDebtResponse(
        mint=mint,
        collection_id=record.collection_id,
        listed=record.listed,
        has_debt=sale is not None,
        sale=SaleResponse.from_sale(sale) if sale else None,
    )


@app.get("/collections/{collection_id}/debts", response_model=CollectionDebtsResponse)
def get_collection_debts(collection_id: str, store: SaleStore = Depends(get_store)) -> CollectionDebtsResponse:
    """All mints of a collection whose latest sale carries debt."""
    if store.get_collection(collection_id) is None:
        raise HTTPException(status_code=404, detail="Collection not found")
    sales = store.list_outstanding_debts(collection_id)
    total = sum(s.debt_lamports or 0 for s in sales)
    return CollectionDebtsResponse(
        collection_id=collection_id,
        total_debt_lamports=total,
        total_debt=round(total / LAMPORTS_PER_SOL, 9),
        sales=[SaleResponse.from_sale(s) for s in sales],
    )


@app.get("/health")
def health() -> dict[str, str]:
    """Liveness probe: API is up."""
    return {"status": "ok"}


@app.exception_handler(HTTPException)
def http_exception_handler(request: Any, exc: HTTPException) -> JSONResponse:
    """Consistent JSON error response for HTTPException."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )
