"""
Invoice Module

Invoice records, their persistence and the request-path service.
"""

from citrea_pay.invoices.models import Invoice, Meta, now_ms
from citrea_pay.invoices.service import InvoiceError, InvoiceNotFound, InvoiceService
from citrea_pay.invoices.store import InvoiceStore

__all__ = [
    "Invoice",
    "Meta",
    "now_ms",
    "InvoiceError",
    "InvoiceNotFound",
    "InvoiceService",
    "InvoiceStore",
]
