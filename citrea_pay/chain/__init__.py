"""
Citrea chain integration.

This package provides:
- Static network config and minimal ABIs
- RpcPool with failover and FeeEstimator for EIP-1559 fees
- ChainClient for reads, native transfers and delegated token sweeps
- AddressDeriver for per-invoice accounts and AuthorizationIssuer for delegations
"""

from .accounts import AddressDeriver, DerivedAccount, derivation_index
from .client import (
    Block,
    BlockTransaction,
    ChainClient,
    ChainClientError,
    TokenTransfer,
    TransferRejected,
    create_chain_client,
)
from .config import CITREA_TESTNET, NetworkConfig
from .delegation import AuthorizationIssuer, DelegationError, SignedDelegation, sign_delegation
from .gas import FeeEstimator, FeeQuote
from .providers import RpcPool, RPCProviderError

__all__ = [
    "AddressDeriver",
    "DerivedAccount",
    "derivation_index",
    "Block",
    "BlockTransaction",
    "ChainClient",
    "ChainClientError",
    "TokenTransfer",
    "TransferRejected",
    "create_chain_client",
    "CITREA_TESTNET",
    "NetworkConfig",
    "AuthorizationIssuer",
    "DelegationError",
    "SignedDelegation",
    "sign_delegation",
    "FeeEstimator",
    "FeeQuote",
    "RpcPool",
    "RPCProviderError",
]
