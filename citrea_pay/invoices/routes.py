"""
Invoice API Routes.

Endpoints for invoice creation, lookup, listing, deletion and the balance summary.
"""

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from citrea_pay.chain.client import ChainClientError

from .service import InvoiceError, InvoiceNotFound, InvoiceService

router = APIRouter(tags=["invoice"])


class CreateInvoiceRequest(BaseModel):
    """Request body for invoice creation. `amount` is in whole units."""
    amount: str
    asset: str
    description: Optional[str] = None


class InvoiceResponse(BaseModel):
    invoiceId: str
    amount: str
    asset: str
    receivingAddress: str
    expiration: int
    description: Optional[str] = None
    fulfilled: bool
    swept: bool
    createdAt: Optional[str] = None


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceResponse]
    page: int
    pageSize: int


def get_service(request: Request) -> InvoiceService:
    service = getattr(request.app.state, "invoice_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Invoice service not configured")
    return service


@router.post("/invoice", response_model=InvoiceResponse)
async def create_invoice(body: CreateInvoiceRequest, request: Request) -> InvoiceResponse:
    """Create an invoice with a freshly derived receiving address.

    Raises:
        HTTPException: 400 on invalid amount / asset, 503 if chain access fails
    """
    service = get_service(request)
    try:
        invoice = service.create_invoice_from_units(body.amount, body.asset, body.description)
    except InvoiceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ChainClientError as e:
        raise HTTPException(status_code=503, detail=f"Failed to create invoice: {e}")
    return InvoiceResponse(**invoice.to_dict())


@router.get("/invoice/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(invoice_id: str, request: Request) -> InvoiceResponse:
    try:
        invoice = get_service(request).get_invoice(invoice_id)
    except InvoiceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return InvoiceResponse(**invoice.to_dict())


@router.delete("/invoice/{invoice_id}")
async def delete_invoice(invoice_id: str, request: Request) -> dict:
    try:
        get_service(request).delete_invoice(invoice_id)
    except InvoiceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"message": "Invoice deleted successfully."}


@router.get("/invoice", response_model=InvoiceListResponse)
async def list_invoices(
    request: Request,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200, alias="pageSize"),
    asset: Optional[str] = None,
    fulfilled: Optional[bool] = None,
    swept: Optional[bool] = None,
) -> InvoiceListResponse:
    invoices = get_service(request).list_invoices(
        page=page, page_size=page_size, asset=asset, fulfilled=fulfilled, swept=swept
    )
    return InvoiceListResponse(
        invoices=[InvoiceResponse(**invoice.to_dict()) for invoice in invoices],
        page=page,
        pageSize=page_size,
    )


@router.get("/balance")
async def get_balance(request: Request) -> dict:
    try:
        return get_service(request).balances()
    except ChainClientError as e:
        raise HTTPException(status_code=500, detail=f"Failed to get balances: {e}")
