"""
In-memory collaborators and builders shared by the royalty_guard tests.
"""

from __future__ import annotations

from typing import Sequence

from royalty_guard.core.exceptions import FetchError, TransactionVersionError
from royalty_guard.database.models import Creator, LAMPORTS_PER_SOL, MarketplaceProgram
from royalty_guard.reconciliation.analyzer import BASE_FEE_LAMPORTS, TOKEN_ACCOUNT_RENT_LAMPORTS
from royalty_guard.reconciliation.interfaces import HistorySource, MetadataSource, TransactionSource
from royalty_guard.solana_listener.models import MarketplaceAction, NftMetadata, TransactionRecord

# Valid Solana pubkeys (base58, 32 bytes)
MINT = "9QCfNuQuxct1Xk9ytFYgxc5fThmTzL4pHQnSjjrVUrka"
MINT_2 = "7F1WzVNQ1Qpurqxxdyv3UrFQR3uoNepULVW9A4bAJ5nZ"
BUYER = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SELLER = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
CREATOR = "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R"
MARKETPLACE = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"
OTHER_PROGRAM = "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc"

COLLECTION_ID = "degen-apes"
NOW = 1_700_000_000
SOL = LAMPORTS_PER_SOL


def make_tx(
    signature: str,
    block_time: int | None,
    balances: Sequence[tuple[str, int, int]],
    *,
    logs: Sequence[str] = (),
    token_mints: Sequence[str] = (),
) -> TransactionRecord:
    """balances: (account, pre, post) lamports."""
    return TransactionRecord(
        signature=signature,
        block_time=block_time,
        account_keys=tuple(b[0] for b in balances),
        pre_balances=tuple(b[1] for b in balances),
        post_balances=tuple(b[2] for b in balances),
        log_messages=tuple(logs),
        token_mints=tuple(token_mints),
    )


def sale_tx(
    signature: str,
    block_time: int | None,
    *,
    price: int = 100 * SOL,
    royalty_paid: int = 0,
    logs: Sequence[str] = (),
    token_mints: Sequence[str] = (),
    with_rent: bool = False,
) -> TransactionRecord:
    """Buyer pays price; creator receives royalty_paid; seller keeps the rest."""
    buyer_debit = price + BASE_FEE_LAMPORTS
    if with_rent:
        buyer_debit += TOKEN_ACCOUNT_RENT_LAMPORTS
    return make_tx(
        signature,
        block_time,
        [
            (BUYER, 500 * SOL, 500 * SOL - buyer_debit),
            (SELLER, 10 * SOL, 10 * SOL + price - royalty_paid),
            (CREATOR, 1 * SOL, 1 * SOL + royalty_paid),
            (MARKETPLACE, 1, 1),
        ],
        logs=logs,
        token_mints=token_mints,
    )


def action(signature: str, block_time: int | None, *, price_sol: float = 100.0, program_id: str | None = None) -> MarketplaceAction:
    return MarketplaceAction(
        signature=signature,
        price=price_sol,
        buyer_address=BUYER,
        seller_address=SELLER,
        block_timestamp=block_time,
        marketplace_program_id=program_id,
    )


def metadata(mint: str = MINT, basis_points: int = 500) -> NftMetadata:
    return NftMetadata(
        mint_address=mint,
        seller_fee_basis_points=basis_points,
        creators=(Creator(address=CREATOR, verified=True, share=100),),
    )


def program(program_id: str = MARKETPLACE) -> MarketplaceProgram:
    return MarketplaceProgram(
        program_id=program_id,
        name="test-market",
        purchase_log="Program log: Instruction: ExecuteSaleV2",
        listing_log="Program log: Instruction: Sell",
        delisting_log="Program log: Instruction: CancelSell",
    )


class FakeHistory(HistorySource):
    """
    Serves fixed actions per mint; fails the first fail_times calls, and every
    call that asks for a mint in fail_mints.
    """

    def __init__(
        self,
        actions: dict[str, list[MarketplaceAction]] | None = None,
        *,
        fail_times: int = 0,
        fail_mints: set[str] | None = None,
    ) -> None:
        self.actions = actions or {}
        self.fail_times = fail_times
        self.fail_mints = fail_mints or set()
        self.calls: list[list[str]] = []

    async def fetch_marketplace_history(self, token_addresses):
        self.calls.append(list(token_addresses))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise FetchError("history unavailable", source="history", status_code=503)
        if self.fail_mints.intersection(token_addresses):
            raise FetchError("history unavailable for mint", source="history", status_code=500)
        return {m: list(self.actions[m]) for m in token_addresses if m in self.actions}


class FakeTransactions(TransactionSource):
    """
    Serves fixed transactions. Signatures in version_errors are refused until
    requested with max_supported_version.
    """

    def __init__(
        self,
        txs: dict[str, TransactionRecord] | None = None,
        *,
        version_errors: set[str] | None = None,
        recent: dict[str, str] | None = None,
    ) -> None:
        self.txs = txs or {}
        self.version_errors = version_errors or set()
        self.recent = recent or {}
        self.calls: list[tuple[list[str], int | None]] = []

    @property
    def requested(self) -> list[str]:
        return [sig for sigs, _ in self.calls for sig in sigs]

    async def fetch_transactions(self, signatures, *, max_supported_version=None):
        self.calls.append((list(signatures), max_supported_version))
        out = []
        for sig in signatures:
            if sig in self.version_errors and max_supported_version is None:
                out.append(TransactionVersionError(sig))
            else:
                out.append(self.txs.get(sig))
        return out

    async def get_recent_signature(self, address):
        return self.recent.get(address)


class FakeMetadata(MetadataSource):
    def __init__(self, by_mint: dict[str, NftMetadata] | None = None) -> None:
        self.by_mint = by_mint or {}
        self.calls: list[list[str]] = []

    async def fetch_nft_metadata(self, mint_addresses):
        self.calls.append(list(mint_addresses))
        return [self.by_mint.get(m) for m in mint_addresses]
