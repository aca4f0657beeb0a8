"""
Application-level exceptions.

Taxonomy used by the reconciliation engine to decide what happens next:
- FetchError: transient network/API failure; retried at chunk and collection level.
- ResolutionError: a single candidate cannot be priced (no policy, no metadata,
  no transaction); the candidate is dropped and logged.
- PersistError: store failure; treated like a transient failure of the chunk.
- LogPayloadError: a marketplace log payload violates its contract; fails that
  candidate only.
"""

from __future__ import annotations


class RoyaltyGuardError(Exception):
    """Base class for all Royalty Guard errors."""


class FetchError(RoyaltyGuardError):
    """Network or API failure while talking to an external collaborator."""

    def __init__(self, message: str, *, source: str = "", status_code: int | None = None) -> None:
        super().__init__(message)
        self.source = source
        self.status_code = status_code


class TransactionVersionError(FetchError):
    """RPC refused to return a versioned transaction at the default API version."""

    def __init__(self, signature: str, message: str = "") -> None:
        super().__init__(message or f"Transaction {signature} requires maxSupportedTransactionVersion", source="rpc")
        self.signature = signature


class ResolutionError(RoyaltyGuardError):
    """A candidate sale cannot be resolved into a Sale record."""


class RoyaltyResolutionError(ResolutionError):
    """No royalty policy covers the sale time and no static fallback exists."""


class PolicyConflictError(ResolutionError):
    """More than one royalty policy window contains the sale time."""

    def __init__(self, sale_timestamp: int, matches: int) -> None:
        super().__init__(f"{matches} royalty policies overlap at {sale_timestamp}")
        self.sale_timestamp = sale_timestamp
        self.matches = matches


class MissingDataError(ResolutionError):
    """Transaction or NFT metadata needed to price a candidate was not found."""


class PersistError(RoyaltyGuardError):
    """Store operation failed."""


class LogPayloadError(RoyaltyGuardError):
    """Marketplace program log line is not the JSON payload it claims to be."""

    def __init__(self, signature: str, line: str, reason: str) -> None:
        super().__init__(f"Malformed log payload in {signature}: {reason}")
        self.signature = signature
        self.line = line
        self.reason = reason


class ChunkFailedError(RoyaltyGuardError):
    """One or more chunks of a collection failed after their retry."""

    def __init__(self, collection_id: str, failed_chunks: int) -> None:
        super().__init__(f"{failed_chunks} chunk(s) failed for collection {collection_id}")
        self.collection_id = collection_id
        self.failed_chunks = failed_chunks
