"""Mint and account address validation (base58 Solana public keys)."""

from __future__ import annotations

from solders.pubkey import Pubkey


def parse_address(address: str | None) -> Pubkey | None:
    """Pubkey for a base58 address, or None when it is not a 32-byte key."""
    if not address:
        return None
    try:
        return Pubkey.from_string(address.strip())
    except ValueError:
        return None


def is_valid_address(address: str | None) -> bool:
    return parse_address(address) is not None


def normalize_address(address: str | None) -> str | None:
    """Canonical base58 form (surrounding whitespace dropped), or None if invalid."""
    key = parse_address(address)
    return str(key) if key is not None else None
