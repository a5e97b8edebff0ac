"""
InvoiceStore: persisted invoice records and the scan cursor.

State transitions are conditional UPDATEs so the request path, the observer and
the sweeper can share the database without a cross-step transaction:

- fulfilled: only when still unfulfilled and not yet expired
- swept:     only when fulfilled and not yet swept
- attempts:  last sweep nonce / tx hash, so a late-mined sweep is recognized
- cursor:    never lowered
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy import create_engine, delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .models import Base, Invoice, Meta, now_ms

logger = logging.getLogger(__name__)

CURSOR_KEY = "block_counter"


class InvoiceStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._session = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str) -> "InvoiceStore":
        """Create the engine (and tables) for a database URL."""
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        engine = create_engine(database_url, connect_args=connect_args, future=True)
        store = cls(engine)
        store.create_all()
        return store

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    # --- Records ----------------------------------------------------------------

    def add(self, invoice: Invoice) -> Invoice:
        with self._session.begin() as session:
            session.add(invoice)
        return invoice

    def get(self, invoice_id: str) -> Optional[Invoice]:
        with self._session() as session:
            return session.scalars(select(Invoice).where(Invoice.invoice_id == invoice_id)).first()

    def delete(self, invoice_id: str) -> bool:
        with self._session.begin() as session:
            result = session.execute(delete(Invoice).where(Invoice.invoice_id == invoice_id))
            return result.rowcount > 0

    def list(
        self,
        page: int = 1,
        page_size: int = 20,
        asset: Optional[str] = None,
        fulfilled: Optional[bool] = None,
        swept: Optional[bool] = None,
    ) -> List[Invoice]:
        stmt = select(Invoice)
        if asset is not None:
            stmt = stmt.where(Invoice.asset == asset)
        if fulfilled is not None:
            stmt = stmt.where(Invoice.fulfilled.is_(fulfilled))
        if swept is not None:
            stmt = stmt.where(Invoice.swept.is_(swept))
        stmt = (
            stmt.order_by(Invoice.created_at.desc(), Invoice.id.desc())
            .limit(page_size)
            .offset((max(page, 1) - 1) * page_size)
        )
        with self._session() as session:
            return list(session.scalars(stmt))

    def list_pending(self, now: Optional[int] = None, asset: Optional[str] = None) -> List[Invoice]:
        """Unfulfilled invoices whose expiration is not yet past."""
        now = now_ms() if now is None else now
        stmt = select(Invoice).where(Invoice.fulfilled.is_(False), Invoice.expiration >= now)
        if asset is not None:
            stmt = stmt.where(Invoice.asset == asset)
        with self._session() as session:
            return list(session.scalars(stmt.order_by(Invoice.id)))

    def list_sweep_candidates(self) -> List[Invoice]:
        stmt = select(Invoice).where(Invoice.fulfilled.is_(True), Invoice.swept.is_(False)).order_by(Invoice.id)
        with self._session() as session:
            return list(session.scalars(stmt))

    # --- Transitions ------------------------------------------------------------

    def mark_fulfilled(self, invoice_id: str, now: Optional[int] = None) -> bool:
        """Flip fulfilled if still unfulfilled and unexpired; False otherwise."""
        now = now_ms() if now is None else now
        stmt = (
            update(Invoice)
            .where(
                Invoice.invoice_id == invoice_id,
                Invoice.fulfilled.is_(False),
                Invoice.expiration >= now,
            )
            .values(fulfilled=True)
        )
        with self._session.begin() as session:
            return session.execute(stmt).rowcount == 1

    def mark_swept(self, invoice_id: str) -> bool:
        """Flip swept if fulfilled and not swept yet; False otherwise."""
        stmt = (
            update(Invoice)
            .where(
                Invoice.invoice_id == invoice_id,
                Invoice.fulfilled.is_(True),
                Invoice.swept.is_(False),
            )
            .values(swept=True)
        )
        with self._session.begin() as session:
            return session.execute(stmt).rowcount == 1

    def record_sweep_attempt(
        self, invoice_id: str, nonce: Optional[int] = None, tx_hash: Optional[str] = None
    ) -> None:
        """Remember the nonce and/or hash of a sweep submission; None leaves a field as is."""
        values = {}
        if nonce is not None:
            values["sweep_nonce"] = nonce
        if tx_hash is not None:
            values["sweep_tx_hash"] = tx_hash
        if not values:
            return
        with self._session.begin() as session:
            session.execute(update(Invoice).where(Invoice.invoice_id == invoice_id).values(**values))

    # --- Cursor -----------------------------------------------------------------

    def get_cursor(self, default: int = 0) -> int:
        with self._session() as session:
            row = session.get(Meta, CURSOR_KEY)
            return int(row.value) if row is not None else default

    def set_cursor(self, height: int) -> int:
        """Persist `height` as last processed block unless the stored one is higher."""
        with self._session.begin() as session:
            row = session.get(Meta, CURSOR_KEY)
            if row is None:
                session.add(Meta(key=CURSOR_KEY, value=str(height)))
                return height
            current = int(row.value)
            if height < current:
                logger.warning(f"Refusing to move scan cursor back from {current} to {height}")
                return current
            row.value = str(height)
            return height

    # --- Summaries --------------------------------------------------------------

    def unswept_totals(self) -> Dict[str, int]:
        return self._totals(Invoice.fulfilled.is_(True), Invoice.swept.is_(False))

    def pending_totals(self, now: Optional[int] = None) -> Dict[str, int]:
        now = now_ms() if now is None else now
        return self._totals(Invoice.fulfilled.is_(False), Invoice.expiration >= now)

    def _totals(self, *conditions) -> Dict[str, int]:
        totals: Dict[str, int] = defaultdict(int)
        with self._session() as session:
            for asset, amount in session.execute(select(Invoice.asset, Invoice.amount_raw).where(*conditions)):
                totals[asset] += int(amount)
        return dict(totals)

    def count(self) -> int:
        with self._session() as session:
            return session.scalar(select(func.count()).select_from(Invoice)) or 0
