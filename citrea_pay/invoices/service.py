"""
Invoice Service Layer

Request-path operations on invoices:
- Creation (derive receiving account, issue sweep delegation, persist)
- Lookup, listing and deletion
- Treasury / unswept / pending balance summary
"""

from __future__ import annotations

import logging
import secrets
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Dict, List, Optional

from citrea_pay.chain.accounts import AddressDeriver
from citrea_pay.chain.delegation import AuthorizationIssuer
from citrea_pay.settings import Settings

from .models import Invoice, now_ms
from .store import InvoiceStore

logger = logging.getLogger(__name__)


class InvoiceError(Exception):
    """Invalid invoice request."""


class InvoiceNotFound(InvoiceError):
    def __init__(self, invoice_id: str):
        super().__init__(f"Invoice not found: {invoice_id}")
        self.invoice_id = invoice_id


def new_invoice_id() -> str:
    return f"inv_{now_ms()}_{secrets.token_hex(4)}"


class InvoiceService:
    """Creates invoices and answers status / balance queries."""

    def __init__(
        self,
        settings: Settings,
        store: InvoiceStore,
        deriver: AddressDeriver,
        issuer: AuthorizationIssuer,
        chain_client=None,
    ) -> None:
        """
        Args:
            settings: Loaded configuration
            store: Invoice persistence
            deriver: Per-invoice account derivation
            issuer: Sweep delegation issuer for token invoices
            chain_client: Optional ChainClient, only needed for `balances()`
        """
        self.settings = settings
        self.store = store
        self.deriver = deriver
        self.issuer = issuer
        self.chain_client = chain_client

    # --- Utility Methods ---

    def to_base_units(self, amount: Decimal) -> int:
        """Convert a whole-unit amount to the smallest on-chain unit (floor)."""
        scaled = (Decimal(amount) * (Decimal(10) ** self.settings.asset_decimals)).to_integral_value(ROUND_FLOOR)
        return int(scaled)

    def from_base_units(self, amount: int) -> Decimal:
        return Decimal(amount) / (Decimal(10) ** self.settings.asset_decimals)

    def format_units(self, amount: int) -> str:
        """Whole-unit decimal string without exponent or trailing zeros."""
        return format(self.from_base_units(amount).normalize(), "f")

    # --- Operations ---

    def create_invoice(
        self,
        amount: int,
        asset: str,
        description: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> Invoice:
        """Create and persist an invoice for `amount` base units of `asset`.

        Raises:
            InvoiceError: On a non-positive amount or unknown asset
        """
        if amount <= 0:
            raise InvoiceError("Amount must be greater than zero")
        if not self.settings.is_known_asset(asset):
            raise InvoiceError(f"Unknown asset: {asset}")

        invoice_id = invoice_id or new_invoice_id()
        account = self.deriver.derive(invoice_id)

        invoice = Invoice(
            invoice_id=invoice_id,
            amount=amount,
            asset=asset,
            receiving_address=account.address,
            expiration=now_ms() + self.settings.invoice_ttl_seconds * 1000,
            description=description,
            fulfilled=False,
            swept=False,
        )
        # Token sweeps need the delegation; the one-time key is not kept
        if asset != self.settings.native_symbol:
            invoice.delegation = self.issuer.issue(account)

        self.store.add(invoice)
        logger.info(
            f"Created invoice {invoice_id}: {amount} {asset} to {account.address} "
            f"(index={account.index}, expires={invoice.expiration})"
        )
        return invoice

    def create_invoice_from_units(self, amount: str, asset: str, description: Optional[str] = None) -> Invoice:
        try:
            base_units = self.to_base_units(Decimal(str(amount)))
        except (InvalidOperation, ValueError) as e:
            raise InvoiceError(f"Invalid amount: {amount}") from e
        return self.create_invoice(base_units, asset, description)

    def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.store.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFound(invoice_id)
        return invoice

    def delete_invoice(self, invoice_id: str) -> None:
        if not self.store.delete(invoice_id):
            raise InvoiceNotFound(invoice_id)
        logger.info(f"Deleted invoice {invoice_id}")

    def list_invoices(
        self,
        page: int = 1,
        page_size: int = 20,
        asset: Optional[str] = None,
        fulfilled: Optional[bool] = None,
        swept: Optional[bool] = None,
    ) -> List[Invoice]:
        return self.store.list(page=page, page_size=page_size, asset=asset, fulfilled=fulfilled, swept=swept)

    def balances(self) -> Dict[str, Dict[str, str]]:
        """Treasury balances per asset plus unswept and pending invoice totals."""
        treasury: Dict[str, str] = {}
        if self.chain_client is not None:
            address = self.deriver.treasury().address
            treasury[self.settings.native_symbol] = self.format_units(self.chain_client.get_balance(address))
            for symbol, token in self.settings.token_addresses.items():
                treasury[symbol] = self.format_units(self.chain_client.get_token_balance(token, address))

        return {
            "treasury": treasury,
            "unswept": {k: self.format_units(v) for k, v in self.store.unswept_totals().items()},
            "pending": {k: self.format_units(v) for k, v in self.store.pending_totals().items()},
        }
