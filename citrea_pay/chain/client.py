"""
ChainClient: thin Web3 wrapper for everything the watcher reads from or
writes to the chain.

Reads:
- head height, blocks with transactions, ERC-20 Transfer logs, balances

Writes:
- native value transfers signed by a one-time key
- the sweep contract call carrying a receiving address' delegation

Every RPC failure is raised as ChainClientError so callers can treat it as
transient; rejected submissions raise TransferRejected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception
from requests.exceptions import RequestException

from .config import ERC20_ABI, SWEEPER_ABI, TRANSFER_EVENT_TOPIC
from .delegation import SignedDelegation, sign_delegation
from .gas import DEFAULT_GAS_LIMIT, NATIVE_TRANSFER_GAS, FeeEstimator, FeeQuote
from .providers import RpcPool, RPCProviderError

logger = logging.getLogger(__name__)

# Errors raised by web3 / the HTTP transport during a call
RPC_ERRORS = (Web3Exception, RequestException, RPCProviderError, ValueError, TimeoutError)


# --- Exceptions / types -----------------------------------------------------------


class ChainClientError(Exception):
    """Transient failure talking to the chain."""


class TransferRejected(ChainClientError):
    """Submission was rejected (underpriced, reverted, or never confirmed).

    `tx_hash` is set once the transaction reached a node; a tx that timed out
    waiting for its receipt may still be mined later.
    """

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


@dataclass(frozen=True)
class BlockTransaction:
    hash: str
    to: Optional[str]
    value: int


@dataclass(frozen=True)
class Block:
    number: int
    transactions: List[BlockTransaction] = field(default_factory=list)


@dataclass(frozen=True)
class TokenTransfer:
    token: str
    sender: str
    to: str
    value: int
    tx_hash: str
    block_number: int


# --- Client -----------------------------------------------------------------------


class ChainClient:
    """Chain access for the observer, the sweeper and invoice creation."""

    def __init__(self, pool: RpcPool, receipt_timeout: int = 120) -> None:
        self.pool = pool
        self.chain_id = pool.chain_id
        self.receipt_timeout = receipt_timeout

    @property
    def web3(self) -> Web3:
        try:
            return self.pool.get_web3()
        except RPCProviderError as e:
            raise ChainClientError(str(e)) from e

    def _fail(self, operation: str, error: Exception) -> ChainClientError:
        self.pool.mark_unhealthy(f"{operation}: {error}")
        return ChainClientError(f"{operation} failed: {error}")

    # --- Read methods -----------------------------------------------------------

    def get_head_height(self) -> int:
        try:
            return int(self.web3.eth.block_number)
        except RPC_ERRORS as e:
            raise self._fail("eth_blockNumber", e) from e

    def get_block(self, height: int) -> Block:
        """Fetch a block with full transaction objects."""
        try:
            raw = self.web3.eth.get_block(height, full_transactions=True)
        except RPC_ERRORS as e:
            raise self._fail(f"eth_getBlockByNumber({height})", e) from e

        transactions = [
            BlockTransaction(
                hash=Web3.to_hex(tx["hash"]),
                to=tx.get("to"),
                value=int(tx.get("value", 0)),
            )
            for tx in raw.get("transactions", [])
            if not isinstance(tx, (bytes, str))
        ]
        return Block(number=int(raw["number"]), transactions=transactions)

    def get_token_transfers(
        self,
        token: str,
        recipients: Sequence[str],
        from_block: int,
        to_block: int,
    ) -> List[TokenTransfer]:
        """ERC-20 Transfer events of `token` to any of `recipients` in a block range."""
        if not recipients:
            return []
        recipient_topics = [_address_topic(addr) for addr in recipients]
        params = {
            "address": Web3.to_checksum_address(token),
            "topics": [TRANSFER_EVENT_TOPIC, None, recipient_topics],
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        try:
            logs = self.web3.eth.get_logs(params)
        except RPC_ERRORS as e:
            raise self._fail(f"eth_getLogs({token}, {from_block}-{to_block})", e) from e

        transfers = []
        for log in logs:
            topics = log["topics"]
            if len(topics) < 3:
                continue
            transfers.append(
                TokenTransfer(
                    token=token,
                    sender=_topic_address(topics[1]),
                    to=_topic_address(topics[2]),
                    value=_data_int(log["data"]),
                    tx_hash=Web3.to_hex(log["transactionHash"]),
                    block_number=int(log["blockNumber"]),
                )
            )
        return transfers

    def get_balance(self, address: str) -> int:
        try:
            return int(self.web3.eth.get_balance(Web3.to_checksum_address(address)))
        except RPC_ERRORS as e:
            raise self._fail(f"eth_getBalance({address})", e) from e

    def get_token_balance(self, token: str, address: str) -> int:
        try:
            contract = self.web3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
            return int(contract.functions.balanceOf(Web3.to_checksum_address(address)).call())
        except RPC_ERRORS as e:
            raise self._fail(f"balanceOf({token}, {address})", e) from e

    def get_nonce(self, address: str) -> int:
        """Confirmed transaction count; pending replacements reuse it."""
        try:
            return int(self.web3.eth.get_transaction_count(Web3.to_checksum_address(address)))
        except RPC_ERRORS as e:
            raise self._fail(f"eth_getTransactionCount({address})", e) from e

    def estimate_native_transfer_fee(self, sender: str, to: str) -> FeeQuote:
        """Gas estimate for a plain transfer times the current fee-per-gas estimate."""
        web3 = self.web3
        try:
            gas = web3.eth.estimate_gas(
                {"from": Web3.to_checksum_address(sender), "to": Web3.to_checksum_address(to), "value": 0}
            )
            return FeeEstimator(web3).quote(gas_limit=int(gas) or NATIVE_TRANSFER_GAS)
        except RPC_ERRORS as e:
            raise self._fail("fee estimation", e) from e

    # --- Write methods ----------------------------------------------------------

    def sign_delegation(self, private_key: bytes, contract: str) -> SignedDelegation:
        address = Account.from_key(private_key).address
        return sign_delegation(private_key, contract, chain_id=self.chain_id, nonce=self.get_nonce(address))

    def get_receipt_status(self, tx_hash: str) -> Optional[int]:
        """Receipt status (1 success, 0 reverted) or None while the tx is not mined."""
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except RPC_ERRORS as e:
            raise self._fail(f"eth_getTransactionReceipt({tx_hash})", e) from e
        return int(receipt["status"])

    def _send_signed(self, tx: dict, private_key: bytes) -> str:
        web3 = self.web3
        try:
            signed = web3.eth.account.sign_transaction(tx, private_key=private_key)
            raw_tx = getattr(signed, "raw_transaction", getattr(signed, "rawTransaction", None))
            tx_hash = Web3.to_hex(web3.eth.send_raw_transaction(raw_tx))
        except RPC_ERRORS as e:
            raise TransferRejected(f"Submission failed: {e}") from e

        try:
            receipt = web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except RPC_ERRORS as e:
            raise TransferRejected(f"No receipt for {tx_hash}: {e}", tx_hash=tx_hash) from e

        if receipt["status"] != 1:
            raise TransferRejected(f"Transaction reverted; tx_hash={tx_hash}", tx_hash=tx_hash)
        return tx_hash

    def send_native_transfer(
        self,
        private_key: bytes,
        to: str,
        value: int,
        quote: FeeQuote,
        nonce: Optional[int] = None,
    ) -> str:
        """Send `value` wei from the key's account and wait for the receipt.

        `nonce` defaults to the confirmed count, so a retry replaces any
        earlier pending attempt.

        Raises:
            TransferRejected: If the node refuses the tx or it reverts / times out
        """
        sender = Account.from_key(private_key).address
        tx = {
            "from": sender,
            "to": Web3.to_checksum_address(to),
            "value": value,
            "nonce": self.get_nonce(sender) if nonce is None else nonce,
            "chainId": self.chain_id,
            "type": 2,
            **quote.as_tx_params(),
        }
        return self._send_signed(tx, private_key)

    def sweep_tokens(
        self,
        signer_key: bytes,
        target: str,
        tokens: Sequence[str],
        treasury: str,
        delegation: SignedDelegation,
    ) -> str:
        """Call `sweep(tokens, treasury)` on `target` under its delegation.

        The signer (the treasury) pays gas; `target` runs the sweep contract's
        code for the duration of the call.
        """
        signer = Account.from_key(signer_key).address
        web3 = self.web3
        try:
            contract = web3.eth.contract(address=Web3.to_checksum_address(target), abi=SWEEPER_ABI)
            func = contract.functions.sweep(
                [Web3.to_checksum_address(t) for t in tokens],
                Web3.to_checksum_address(treasury),
            )
            base = {
                "from": signer,
                "nonce": self.get_nonce(signer),
                "chainId": self.chain_id,
                "authorizationList": [delegation.to_authorization()],
            }
            try:
                gas_estimate = func.estimate_gas(base)
            except RPC_ERRORS as e:
                logger.warning(f"Sweep gas estimation failed: {e}. Using default gas limit.")
                gas_estimate = DEFAULT_GAS_LIMIT
            quote = FeeEstimator(web3).quote(gas_limit=int(gas_estimate * 1.2))
            tx = func.build_transaction({**base, **quote.as_tx_params()})
        except RPC_ERRORS as e:
            raise self._fail(f"sweep({target})", e) from e
        return self._send_signed(tx, signer_key)


def create_chain_client(rpc_urls: List[str], chain_id: int, timeout: int = 10, receipt_timeout: int = 120) -> ChainClient:
    return ChainClient(RpcPool(rpc_urls, chain_id=chain_id, timeout=timeout), receipt_timeout=receipt_timeout)


# --- Log decoding helpers ---------------------------------------------------------


def _address_topic(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")


def _topic_address(topic) -> str:
    hex_topic = Web3.to_hex(topic) if isinstance(topic, (bytes, bytearray)) else topic
    return "0x" + hex_topic[-40:].lower()


def _data_int(data) -> int:
    if isinstance(data, (bytes, bytearray)):
        return int.from_bytes(data, "big") if data else 0
    return int(data, 16) if data not in ("", "0x") else 0
