"""
Tests for address validation.
"""

from __future__ import annotations

from royalty_guard.utils.address_utils import is_valid_address, normalize_address
from support import MINT


def test_valid_and_invalid_addresses():
    assert is_valid_address(MINT)
    assert is_valid_address(f"  {MINT} ")
    assert not is_valid_address("not-a-mint")
    assert not is_valid_address("")
    assert not is_valid_address(None)
    # Valid base58 but not 32 bytes
    assert not is_valid_address("abc")


def test_normalize_address():
    assert normalize_address(f" {MINT}\n") == MINT
    assert normalize_address("0OIl") is None
