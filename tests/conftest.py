import itertools

import pytest
from eth_account import Account

from citrea_pay.chain.accounts import AddressDeriver
from citrea_pay.chain.client import Block, BlockTransaction, ChainClientError, TokenTransfer, TransferRejected
from citrea_pay.chain.delegation import AuthorizationIssuer, sign_delegation
from citrea_pay.chain.gas import FeeQuote
from citrea_pay.invoices.models import Invoice, now_ms
from citrea_pay.invoices.service import InvoiceService
from citrea_pay.invoices.store import InvoiceStore
from citrea_pay.settings import Settings

# Well-known development seed; child 0 is 0xf39F...2266
MNEMONIC = "test test test test test test test test test test test junk"
TREASURY_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

CHAIN_ID = 5115
SWEEPER = "0x" + "5e" * 20
USDC = "0x" + "11" * 20
WBTC = "0x" + "22" * 20
TOKENS = {"USDC": USDC, "WBTC": WBTC}


class FakeChain:
    """In-memory stand-in for ChainClient."""

    def __init__(self):
        self.chain_id = CHAIN_ID
        self.head = 100
        self.blocks = {}
        self.token_logs = {}
        self.failing_blocks = set()
        self.failing_log_blocks = set()
        self.failing_fee_addresses = set()
        self.log_queries = []
        self.fee_quote = FeeQuote(gas_limit=25_000, max_fee_per_gas=2, max_priority_fee_per_gas=1)
        self.reject_sends = 0
        # Sends that time out waiting for a receipt; "mined" ones land anyway
        self.unconfirmed_sends = 0
        self.mined_unconfirmed = False
        self.nonces = {}
        self.receipts = {}
        self.failing_sweep_targets = set()
        self.native_sends = []
        self.sweeps = []
        self.balances = {}
        self._hashes = itertools.count(1)

    # --- helpers used by tests

    def add_block(self, number, transactions=()):
        self.blocks[number] = Block(number=number, transactions=list(transactions))
        self.head = max(self.head, number)

    def tx(self, to, value):
        return BlockTransaction(hash=f"0x{next(self._hashes):064x}", to=to, value=value)

    def add_token_transfer(self, token, block, to, value):
        transfer = TokenTransfer(
            token=token,
            sender="0x" + "99" * 20,
            to=to.lower(),
            value=value,
            tx_hash=f"0x{next(self._hashes):064x}",
            block_number=block,
        )
        self.token_logs.setdefault((token, block), []).append(transfer)

    # --- ChainClient surface

    def get_head_height(self):
        return self.head

    def get_block(self, height):
        if height in self.failing_blocks:
            raise ChainClientError(f"block {height} unavailable")
        return self.blocks.get(height, Block(number=height))

    def get_token_transfers(self, token, recipients, from_block, to_block):
        self.log_queries.append((token, list(recipients), from_block, to_block))
        if from_block in self.failing_log_blocks:
            raise ChainClientError(f"logs for {from_block} unavailable")
        return [
            t for t in self.token_logs.get((token, from_block), [])
            if t.to.lower() in {r.lower() for r in recipients}
        ]

    def get_balance(self, address):
        return self.balances.get(address, 0)

    def get_token_balance(self, token, address):
        return self.balances.get((token, address), 0)

    def get_nonce(self, address):
        return self.nonces.get(address, 0)

    def get_receipt_status(self, tx_hash):
        return self.receipts.get(tx_hash)

    def estimate_native_transfer_fee(self, sender, to):
        if sender in self.failing_fee_addresses:
            raise ChainClientError("fee estimation failed")
        return self.fee_quote

    def send_native_transfer(self, private_key, to, value, quote, nonce=None):
        sender = Account.from_key(private_key).address
        nonce = self.get_nonce(sender) if nonce is None else nonce
        self.native_sends.append({"to": to, "value": value, "quote": quote, "nonce": nonce})
        if self.reject_sends:
            self.reject_sends -= 1
            raise TransferRejected("replacement transaction underpriced")
        tx_hash = f"0x{next(self._hashes):064x}"
        if self.unconfirmed_sends:
            self.unconfirmed_sends -= 1
            if self.mined_unconfirmed:
                self.receipts[tx_hash] = 1
                self.nonces[sender] = nonce + 1
            raise TransferRejected(f"No receipt for {tx_hash}: timed out", tx_hash=tx_hash)
        self.receipts[tx_hash] = 1
        self.nonces[sender] = nonce + 1
        return tx_hash

    def sweep_tokens(self, signer_key, target, tokens, treasury, delegation):
        self.sweeps.append(
            {"target": target, "tokens": list(tokens), "treasury": treasury, "delegation": delegation}
        )
        if target in self.failing_sweep_targets:
            raise ChainClientError("eth_estimateGas: execution reverted")
        return f"0x{next(self._hashes):064x}"

    def sign_delegation(self, private_key, contract):
        return sign_delegation(private_key, contract, chain_id=self.chain_id, nonce=0)


@pytest.fixture(scope="session")
def deriver():
    return AddressDeriver(MNEMONIC)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        mnemonic=MNEMONIC,
        sweeper_contract_address=SWEEPER,
        token_addresses=TOKENS,
        native_symbol="BTC",
        database_url=f"sqlite:///{tmp_path / 'citrea-pay.db'}",
        start_block=100,
        citrea_chain_id=CHAIN_ID,
    )


@pytest.fixture
def store(settings):
    return InvoiceStore.from_url(settings.database_url)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def service(settings, store, deriver, chain):
    issuer = AuthorizationIssuer(chain, SWEEPER)
    return InvoiceService(settings, store, deriver, issuer, chain_client=chain)


@pytest.fixture
def make_invoice(store, deriver):
    """Persist an invoice directly, bypassing the service."""
    counter = itertools.count(1)

    def _make(amount=1_000_000, asset="BTC", expiration=None, fulfilled=False, swept=False, invoice_id=None):
        invoice_id = invoice_id or f"inv_test_{next(counter)}"
        account = deriver.derive(invoice_id)
        invoice = Invoice(
            invoice_id=invoice_id,
            amount=amount,
            asset=asset,
            receiving_address=account.address,
            expiration=expiration if expiration is not None else now_ms() + 900_000,
            fulfilled=fulfilled,
            swept=swept,
        )
        if asset != "BTC":
            invoice.delegation = sign_delegation(account.private_key, SWEEPER, chain_id=CHAIN_ID)
        return store.add(invoice)

    return _make
