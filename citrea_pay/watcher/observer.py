"""
ChainObserver: block-by-block scan that marks invoices fulfilled.

Each tick walks every block after the persisted cursor up to the current head,
in increasing order:

1. fetch the block with its transactions
2. persist cursor = block height
3. load pending invoices, keyed by lower-cased receiving address per asset
4. native: any tx to a pending address with value >= amount fulfills it
5. tokens: Transfer logs of this block to pending addresses, same rule

The cursor is committed before matching, so a crash between steps 2 and 5
loses that block's matches. Any chain or store error abandons the block and
ends the tick; the next tick resumes after the committed cursor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from citrea_pay.chain.client import Block, ChainClientError
from citrea_pay.invoices.models import Invoice, now_ms
from citrea_pay.invoices.store import InvoiceStore

from .latch import SingleFlight

logger = logging.getLogger(__name__)

AddressMap = Dict[str, Invoice]


@dataclass
class ScanReport:
    skipped: bool = False
    blocks_scanned: int = 0
    fulfilled: List[str] = field(default_factory=list)
    cursor: Optional[int] = None
    error: Optional[str] = None


class ChainObserver:
    def __init__(
        self,
        store: InvoiceStore,
        chain_client,
        native_symbol: str,
        token_addresses: Dict[str, str],
        start_block: int = 0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """
        Args:
            store: Invoice records and the scan cursor
            chain_client: ChainClient (or anything with the same read methods)
            native_symbol: Asset symbol of the chain's native currency
            token_addresses: Token symbol -> contract address
            start_block: Cursor value assumed when none is persisted yet
            clock: Epoch-ms clock deciding which invoices are still pending
        """
        self.store = store
        self.chain_client = chain_client
        self.native_symbol = native_symbol
        self.token_addresses = dict(token_addresses)
        self.start_block = start_block
        self.clock = clock
        self.latch = SingleFlight("chain-observer")

    def tick(self) -> ScanReport:
        """Scan every block after the cursor up to the current head."""
        with self.latch.acquire() as acquired:
            if not acquired:
                logger.debug("Skipping scan: previous tick still running")
                return ScanReport(skipped=True)
            return self._scan()

    def _scan(self) -> ScanReport:
        report = ScanReport()
        try:
            head = self.chain_client.get_head_height()
            cursor = self.store.get_cursor(default=self.start_block)
        except (ChainClientError, SQLAlchemyError) as e:
            logger.error(f"Scan tick aborted before the first block: {e}")
            report.error = str(e)
            return report

        report.cursor = cursor
        if head <= cursor:
            return report

        for height in range(cursor + 1, head + 1):
            try:
                block = self.chain_client.get_block(height)
                report.cursor = self.store.set_cursor(height)
                report.blocks_scanned += 1
                report.fulfilled.extend(self._match_block(block))
            except (ChainClientError, SQLAlchemyError) as e:
                logger.error(f"Abandoning block {height} for this tick: {e}")
                report.error = str(e)
                break

        if report.fulfilled:
            logger.info(
                f"Scanned {report.blocks_scanned} block(s) up to {report.cursor}; "
                f"fulfilled {len(report.fulfilled)} invoice(s)"
            )
        return report

    def _partition(self, pending: List[Invoice]) -> Tuple[AddressMap, Dict[str, AddressMap]]:
        native: AddressMap = {}
        tokens: Dict[str, AddressMap] = {}
        for invoice in pending:
            if invoice.asset == self.native_symbol:
                target = native
            elif invoice.asset in self.token_addresses:
                target = tokens.setdefault(invoice.asset, {})
            else:
                continue
            address = invoice.receiving_address.lower()
            if address in target:
                logger.warning(
                    f"Pending invoices {target[address].invoice_id} and {invoice.invoice_id} "
                    f"share receiving address {address}"
                )
            target[address] = invoice
        return native, tokens

    def _fulfill(self, invoice: Invoice, now: int, tx_hash: str) -> bool:
        if self.store.mark_fulfilled(invoice.invoice_id, now=now):
            logger.info(f"Invoice {invoice.invoice_id} fulfilled by {tx_hash}")
            return True
        logger.info(f"Invoice {invoice.invoice_id} no longer pending; ignoring {tx_hash}")
        return False

    def _match_block(self, block: Block) -> List[str]:
        now = self.clock()
        pending = self.store.list_pending(now=now)
        if not pending:
            return []

        native, tokens = self._partition(pending)
        fulfilled: List[str] = []

        for tx in block.transactions:
            if not native or tx.to is None:
                continue
            invoice = native.get(tx.to.lower())
            if invoice is not None and tx.value >= invoice.amount:
                if self._fulfill(invoice, now, tx.hash):
                    fulfilled.append(invoice.invoice_id)
                del native[tx.to.lower()]

        for symbol, by_address in tokens.items():
            if not by_address:
                continue
            transfers = self.chain_client.get_token_transfers(
                self.token_addresses[symbol], list(by_address), block.number, block.number
            )
            for transfer in transfers:
                invoice = by_address.get(transfer.to.lower())
                if invoice is not None and transfer.value >= invoice.amount:
                    if self._fulfill(invoice, now, transfer.tx_hash):
                        fulfilled.append(invoice.invoice_id)
                    del by_address[transfer.to.lower()]

        return fulfilled
