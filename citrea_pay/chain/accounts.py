"""
Deterministic one-time receiving accounts.

Every invoice gets its own child account of the treasury mnemonic:

    index   = int(sha256(invoice_id)[:8 hex], 16) % index_range
    account = m/44'/60'/0'/0/{index}

The index space is finite, so two invoice ids can map to the same account.
Nothing here detects that; callers that care must check themselves.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from functools import lru_cache

from eth_account import Account
from eth_account.hdaccount import key_from_seed, seed_from_mnemonic

DEFAULT_INDEX_RANGE = 1_000_000
DERIVATION_PATH = "m/44'/60'/0'/0/{index}"
TREASURY_INDEX = 0


@dataclass(frozen=True)
class DerivedAccount:
    index: int
    address: str
    private_key: bytes = field(repr=False)


def derivation_index(invoice_id: str, index_range: int = DEFAULT_INDEX_RANGE) -> int:
    """Map an invoice id onto the bounded child index space."""
    digest = hashlib.sha256(invoice_id.encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % index_range


class AddressDeriver:
    """Pure function from (mnemonic, invoice id) to a child account."""

    def __init__(self, mnemonic: str, index_range: int = DEFAULT_INDEX_RANGE, passphrase: str = "") -> None:
        if index_range <= 1:
            raise ValueError("index_range must be greater than 1")
        self.index_range = index_range
        # PBKDF2 is slow; the seed is the only state and never changes
        self._seed = seed_from_mnemonic(mnemonic, passphrase)
        self._derive_at = lru_cache(maxsize=4096)(self._derive_uncached)

    def _derive_uncached(self, index: int) -> DerivedAccount:
        key = key_from_seed(self._seed, DERIVATION_PATH.format(index=index))
        return DerivedAccount(index=index, address=Account.from_key(key).address, private_key=bytes(key))

    def derive_at(self, index: int) -> DerivedAccount:
        if index < 0:
            raise ValueError(f"Derivation index must be non-negative, got {index}")
        return self._derive_at(index)

    def index_for(self, invoice_id: str) -> int:
        return derivation_index(invoice_id, self.index_range)

    def derive(self, invoice_id: str) -> DerivedAccount:
        """Receiving account (address + signing key) for an invoice id."""
        if not invoice_id:
            raise ValueError("invoice_id must not be empty")
        return self.derive_at(self.index_for(invoice_id))

    def treasury(self) -> DerivedAccount:
        return self.derive_at(TREASURY_INDEX)
