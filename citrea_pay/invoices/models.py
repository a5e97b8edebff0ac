"""Invoice records and the key/value meta table holding the scan cursor."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, SmallInteger, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from citrea_pay.chain.delegation import SignedDelegation


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def now_ms() -> int:
    return int(time.time() * 1000)


class Base(DeclarativeBase):
    pass


class Invoice(Base):
    """A payment request for a fixed amount of one asset to a derived address."""

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    # Decimal string; 256-bit amounts do not fit SQLite integers
    amount_raw: Mapped[str] = mapped_column("amount", String(78), nullable=False)
    asset: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    receiving_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    expiration: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="epoch ms")
    description: Mapped[Optional[str]] = mapped_column(Text)
    fulfilled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    swept: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # Sweep delegation, token invoices only
    auth_chain_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    auth_contract: Mapped[Optional[str]] = mapped_column(String(42))
    auth_nonce: Mapped[Optional[int]] = mapped_column(BigInteger)
    auth_y_parity: Mapped[Optional[int]] = mapped_column(SmallInteger)
    auth_r: Mapped[Optional[str]] = mapped_column(String(66))
    auth_s: Mapped[Optional[str]] = mapped_column(String(66))

    # Last native / token sweep submission, checked before sweeping again
    sweep_nonce: Mapped[Optional[int]] = mapped_column(BigInteger)
    sweep_tx_hash: Mapped[Optional[str]] = mapped_column(String(66))

    @property
    def amount(self) -> int:
        return int(self.amount_raw)

    @amount.setter
    def amount(self, value: int) -> None:
        self.amount_raw = str(int(value))

    @property
    def delegation(self) -> Optional[SignedDelegation]:
        if self.auth_contract is None:
            return None
        return SignedDelegation.from_fields(
            chain_id=self.auth_chain_id,
            contract=self.auth_contract,
            nonce=self.auth_nonce,
            y_parity=self.auth_y_parity,
            r=self.auth_r,
            s=self.auth_s,
        )

    @delegation.setter
    def delegation(self, value: Optional[SignedDelegation]) -> None:
        if value is None:
            self.auth_chain_id = self.auth_contract = self.auth_nonce = None
            self.auth_y_parity = self.auth_r = self.auth_s = None
            return
        self.auth_chain_id = value.chain_id
        self.auth_contract = value.contract
        self.auth_nonce = value.nonce
        self.auth_y_parity = value.y_parity
        self.auth_r = value.r_hex
        self.auth_s = value.s_hex

    def is_pending(self, now: Optional[int] = None) -> bool:
        return not self.fulfilled and (now if now is not None else now_ms()) <= self.expiration

    def to_dict(self) -> dict:
        return {
            "invoiceId": self.invoice_id,
            "amount": str(self.amount),
            "asset": self.asset,
            "receivingAddress": self.receiving_address,
            "expiration": self.expiration,
            "description": self.description,
            "fulfilled": self.fulfilled,
            "swept": self.swept,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_id} asset={self.asset} fulfilled={self.fulfilled} swept={self.swept}>"


class Meta(Base):
    __tablename__ = "meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(128), nullable=False)
