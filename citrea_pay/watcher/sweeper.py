"""
SweepEngine: moves fulfilled funds from receiving addresses to the treasury.

Native invoices are swept with the re-derived one-time key:
    payout = amount - gas_limit * max_fee_per_gas
and every rejected submission raises the fee per gas by a fixed percentage,
up to a fixed number of attempts. Invoices whose payout would not be positive
stay unswept ("stuck") until fees come down.

Token invoices are swept by the treasury calling the sweep contract through
the invoice's stored delegation, moving every configured token at once.

A submission that times out waiting for its receipt may still be mined. The
nonce and hash of every attempt are stored on the invoice and checked before
the next retry and at the start of later cycles; a mined attempt marks the
invoice swept instead of sending again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from citrea_pay.chain.accounts import AddressDeriver
from citrea_pay.chain.client import ChainClientError, TransferRejected
from citrea_pay.chain.delegation import DelegationError
from citrea_pay.invoices.models import Invoice
from citrea_pay.invoices.store import InvoiceStore

from .latch import SingleFlight

logger = logging.getLogger(__name__)

FEE_BUMP_PERCENT = 5
MAX_ATTEMPTS = 5


class SweepError(Exception):
    """Invoice cannot be swept with the current configuration."""


class SweepOutcome(str, Enum):
    SWEPT = "swept"
    STUCK = "stuck"  # payout <= 0 after fees
    EXHAUSTED = "exhausted"  # every attempt rejected
    FAILED = "failed"  # chain / store / delegation error
    SKIPPED = "skipped"  # store refused the swept flag


@dataclass
class SweepReport:
    skipped: bool = False
    outcomes: Dict[str, SweepOutcome] = field(default_factory=dict)
    error: Optional[str] = None

    def count(self, outcome: SweepOutcome) -> int:
        return sum(1 for value in self.outcomes.values() if value == outcome)


class SweepEngine:
    def __init__(
        self,
        store: InvoiceStore,
        chain_client,
        deriver: AddressDeriver,
        native_symbol: str,
        token_addresses: Dict[str, str],
        sweep_contract: str,
        fee_bump_percent: int = FEE_BUMP_PERCENT,
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        self.store = store
        self.chain_client = chain_client
        self.deriver = deriver
        self.native_symbol = native_symbol
        self.token_addresses = dict(token_addresses)
        self.sweep_contract = sweep_contract
        self.fee_bump_percent = fee_bump_percent
        self.max_attempts = max_attempts
        self.latch = SingleFlight("sweep-engine")

    @property
    def token_list(self) -> List[str]:
        return list(self.token_addresses.values())

    def run_cycle(self) -> SweepReport:
        """Attempt to sweep every fulfilled, unswept invoice once."""
        with self.latch.acquire() as acquired:
            if not acquired:
                logger.info("Skipping sweep: previous cycle still running")
                return SweepReport(skipped=True)
            return self._sweep_all()

    def _sweep_all(self) -> SweepReport:
        report = SweepReport()
        try:
            candidates = self.store.list_sweep_candidates()
        except SQLAlchemyError as e:
            logger.error(f"Sweep cycle aborted, cannot load candidates: {e}")
            report.error = str(e)
            return report

        treasury = self.deriver.treasury()
        for invoice in candidates:
            try:
                if invoice.asset == self.native_symbol:
                    outcome = self.sweep_native(invoice, treasury.address)
                else:
                    outcome = self.sweep_tokens(invoice, treasury)
            except (ChainClientError, DelegationError, SweepError, SQLAlchemyError) as e:
                logger.error(f"Sweep of invoice {invoice.invoice_id} failed: {e}")
                outcome = SweepOutcome.FAILED
            except Exception:
                logger.exception(f"Unexpected error sweeping invoice {invoice.invoice_id}")
                outcome = SweepOutcome.FAILED
            report.outcomes[invoice.invoice_id] = outcome

        if candidates:
            logger.info(
                f"Sweep cycle done: {report.count(SweepOutcome.SWEPT)}/{len(candidates)} swept, "
                f"{report.count(SweepOutcome.STUCK)} stuck, {report.count(SweepOutcome.EXHAUSTED)} exhausted, "
                f"{report.count(SweepOutcome.FAILED)} failed"
            )
        return report

    def _mark_swept(self, invoice: Invoice, tx_hash: str) -> SweepOutcome:
        if not self.store.mark_swept(invoice.invoice_id):
            logger.warning(
                f"Invoice {invoice.invoice_id} was already swept or is not fulfilled; not recording {tx_hash}"
            )
            return SweepOutcome.SKIPPED
        logger.info(f"Swept invoice {invoice.invoice_id} in {tx_hash}")
        return SweepOutcome.SWEPT

    def _confirmed_sweep(
        self, tx_hashes: List[str], sender: Optional[str] = None, nonce: Optional[int] = None
    ) -> Optional[str]:
        """Return proof that an earlier submission was mined, or None.

        A successful receipt for any of `tx_hashes` counts. For native sweeps
        the one-time account signs nothing but sweeps, so its confirmed nonce
        moving past `nonce` counts as well.
        """
        for tx_hash in tx_hashes:
            if self.chain_client.get_receipt_status(tx_hash) == 1:
                return tx_hash
        if sender is not None and nonce is not None and self.chain_client.get_nonce(sender) > nonce:
            return tx_hashes[-1] if tx_hashes else f"nonce {nonce} of {sender}"
        return None

    def sweep_native(self, invoice: Invoice, treasury: str) -> SweepOutcome:
        """Transfer amount minus fee to `treasury`, escalating the fee on rejection."""
        account = self.deriver.derive(invoice.invoice_id)
        if account.address.lower() != invoice.receiving_address.lower():
            raise SweepError(
                f"Derived {account.address} does not match stored {invoice.receiving_address}; "
                f"was the mnemonic or index range changed?"
            )

        tx_hashes = [invoice.sweep_tx_hash] if invoice.sweep_tx_hash else []
        if invoice.sweep_nonce is not None:
            earlier = self._confirmed_sweep(tx_hashes, account.address, invoice.sweep_nonce)
            if earlier is not None:
                logger.info(f"Earlier sweep of invoice {invoice.invoice_id} was mined")
                return self._mark_swept(invoice, earlier)

        quote = self.chain_client.estimate_native_transfer_fee(account.address, treasury)
        payout = invoice.amount - quote.total
        if payout <= 0:
            logger.warning(
                f"Invoice {invoice.invoice_id} is stuck: amount {invoice.amount} does not cover fee {quote.total}"
            )
            return SweepOutcome.STUCK

        nonce = self.chain_client.get_nonce(account.address)
        self.store.record_sweep_attempt(invoice.invoice_id, nonce=nonce)

        for attempt in range(1, self.max_attempts + 1):
            try:
                tx_hash = self.chain_client.send_native_transfer(
                    account.private_key, treasury, payout, quote, nonce=nonce
                )
            except TransferRejected as e:
                if e.tx_hash:
                    tx_hashes.append(e.tx_hash)
                    self.store.record_sweep_attempt(invoice.invoice_id, tx_hash=e.tx_hash)
                landed = self._confirmed_sweep(tx_hashes, account.address, nonce)
                if landed is not None:
                    logger.info(f"Sweep of invoice {invoice.invoice_id} was mined despite: {e}")
                    return self._mark_swept(invoice, landed)

                logger.warning(
                    f"Sweep attempt {attempt}/{self.max_attempts} for {invoice.invoice_id} "
                    f"rejected (fee {quote.total}): {e}"
                )
                quote = quote.bumped(self.fee_bump_percent)
                payout = invoice.amount - quote.total
                if payout <= 0:
                    logger.warning(f"Invoice {invoice.invoice_id}: escalated fee {quote.total} exceeds amount")
                    break
                continue
            self.store.record_sweep_attempt(invoice.invoice_id, tx_hash=tx_hash)
            return self._mark_swept(invoice, tx_hash)

        logger.warning(f"Giving up on invoice {invoice.invoice_id} this cycle")
        return SweepOutcome.EXHAUSTED

    def sweep_tokens(self, invoice: Invoice, treasury) -> SweepOutcome:
        """Call the sweep contract through the invoice's delegation.

        `treasury` is the DerivedAccount that signs and pays for the call.
        """
        if invoice.sweep_tx_hash:
            earlier = self._confirmed_sweep([invoice.sweep_tx_hash])
            if earlier is not None:
                logger.info(f"Earlier sweep of invoice {invoice.invoice_id} was mined")
                return self._mark_swept(invoice, earlier)

        delegation = invoice.delegation
        if delegation is None:
            raise DelegationError(f"Token invoice {invoice.invoice_id} has no delegation")
        delegation.ensure_valid(invoice.receiving_address, self.sweep_contract)

        try:
            tx_hash = self.chain_client.sweep_tokens(
                treasury.private_key,
                invoice.receiving_address,
                self.token_list,
                treasury.address,
                delegation,
            )
        except TransferRejected as e:
            if e.tx_hash:
                self.store.record_sweep_attempt(invoice.invoice_id, tx_hash=e.tx_hash)
            raise
        self.store.record_sweep_attempt(invoice.invoice_id, tx_hash=tx_hash)
        return self._mark_swept(invoice, tx_hash)
