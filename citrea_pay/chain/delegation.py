"""
Signed delegations letting the sweep contract act for a receiving address.

A delegation is an EIP-7702 set-code authorization signed by the one-time key:

    hash = keccak(0x05 || rlp([chain_id, contract, nonce]))

Signing uses eth-account's `sign_authorization`; the hash above is rebuilt
locally to recover and check the signer of a stored delegation.

It is signed once, when the invoice is created, and replayed verbatim at sweep
time inside the treasury's transaction. The record keeps every field as a
plain integer (r/s are 256-bit) so nothing is re-parsed from loose text.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import rlp
from eth_account import Account
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError
from web3 import Web3

logger = logging.getLogger(__name__)

SET_CODE_MAGIC = b"\x05"

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
UINT64_MAX = 2**64 - 1


class DelegationError(Exception):
    """Raised when a delegation is malformed or does not authorize the expected contract."""


@dataclass(frozen=True)
class SignedDelegation:
    chain_id: int
    contract: str
    nonce: int
    y_parity: int
    r: int
    s: int

    @classmethod
    def from_fields(
        cls,
        chain_id: int,
        contract: str,
        nonce: int,
        y_parity: int,
        r: str,
        s: str,
    ) -> "SignedDelegation":
        """Rebuild from persisted columns (r and s stored as 0x-prefixed hex)."""
        try:
            return cls(
                chain_id=int(chain_id),
                contract=Web3.to_checksum_address(contract),
                nonce=int(nonce),
                y_parity=int(y_parity),
                r=int(r, 16),
                s=int(s, 16),
            )
        except (TypeError, ValueError) as e:
            raise DelegationError(f"Malformed delegation record: {e}") from e

    @property
    def r_hex(self) -> str:
        return f"0x{self.r:064x}"

    @property
    def s_hex(self) -> str:
        return f"0x{self.s:064x}"

    def signing_hash(self) -> bytes:
        return authorization_hash(self.chain_id, self.contract, self.nonce)

    def authority(self) -> str:
        """Recover the address that signed this delegation."""
        self._check_ranges()
        try:
            signature = keys.Signature(vrs=(self.y_parity, self.r, self.s))
            public_key = keys.PublicKey.recover_from_msg_hash(self.signing_hash(), signature)
        except (BadSignature, ValidationError) as e:
            raise DelegationError(f"Delegation signature cannot be recovered: {e}") from e
        return public_key.to_checksum_address()

    def _check_ranges(self) -> None:
        if not 0 <= self.chain_id <= 2**256 - 1:
            raise DelegationError(f"chain_id out of range: {self.chain_id}")
        if not 0 <= self.nonce <= UINT64_MAX:
            raise DelegationError(f"nonce out of range: {self.nonce}")
        if self.y_parity not in (0, 1):
            raise DelegationError(f"y_parity must be 0 or 1, got {self.y_parity}")
        if not 0 < self.r < SECP256K1_N or not 0 < self.s < SECP256K1_N:
            raise DelegationError("Signature values r/s out of range")

    def ensure_valid(self, authority: str, contract: str, chain_id: Optional[int] = None) -> None:
        """Check the delegation lets exactly `contract` act for `authority`.

        Raises:
            DelegationError: If any field is malformed or points elsewhere
        """
        if self.contract.lower() != contract.lower():
            raise DelegationError(f"Delegation targets {self.contract}, expected {contract}")
        if chain_id is not None and self.chain_id != chain_id:
            raise DelegationError(f"Delegation is for chain {self.chain_id}, expected {chain_id}")
        signer = self.authority()
        if signer.lower() != authority.lower():
            raise DelegationError(f"Delegation signed by {signer}, expected {authority}")

    def to_authorization(self) -> Dict[str, object]:
        """Entry for a transaction's `authorizationList`."""
        return {
            "chainId": self.chain_id,
            "address": self.contract,
            "nonce": self.nonce,
            "yParity": self.y_parity,
            "r": self.r,
            "s": self.s,
        }


def authorization_hash(chain_id: int, contract: str, nonce: int) -> bytes:
    payload = rlp.encode([chain_id, bytes.fromhex(contract[2:]), nonce])
    return bytes(Web3.keccak(SET_CODE_MAGIC + payload))


def sign_delegation(private_key: bytes, contract: str, chain_id: int, nonce: int = 0) -> SignedDelegation:
    """Sign a delegation of `private_key`'s account to `contract`."""
    contract = Web3.to_checksum_address(contract)
    signed = Account.sign_authorization(
        {"chainId": chain_id, "address": contract, "nonce": nonce},
        private_key,
    )
    return SignedDelegation(
        chain_id=chain_id,
        contract=contract,
        nonce=nonce,
        y_parity=int(signed.y_parity),
        r=int(signed.r),
        s=int(signed.s),
    )


class AuthorizationIssuer:
    """Issues the sweep delegation for a freshly derived receiving account."""

    def __init__(self, chain_client, sweep_contract: str) -> None:
        """
        Args:
            chain_client: Anything exposing `sign_delegation(private_key, contract)`
                and `chain_id` (see ChainClient)
            sweep_contract: Address of the fixed sweep contract
        """
        self.chain_client = chain_client
        self.sweep_contract = Web3.to_checksum_address(sweep_contract)

    def issue(self, account, sweep_contract: Optional[str] = None) -> SignedDelegation:
        """Sign and verify a delegation for `account` (a DerivedAccount).

        Must run while the one-time key is at hand; it is never persisted.
        """
        contract = Web3.to_checksum_address(sweep_contract or self.sweep_contract)
        delegation = self.chain_client.sign_delegation(account.private_key, contract)
        delegation.ensure_valid(account.address, contract, chain_id=self.chain_client.chain_id)
        logger.info(f"Issued sweep delegation for {account.address} (nonce={delegation.nonce})")
        return delegation
