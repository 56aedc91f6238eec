from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID
from datetime import date

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import ALL_ROLES, BILLING_ROLES, FISCAL_ADMIN_ROLES
from app.modules.fiscal.models import FiscalDocumentType
from app.modules.invoices.service import InvoiceService
from app.modules.invoices.payments import PaymentLedger
from app.modules.invoices.schemas import (
    InvoiceCreate, InvoiceOut, InvoiceDetail, InvoiceList, InvoiceUpdate, InvoiceFinalizeRequest,
    InvoiceCancelRequest, InvoiceFilters, InvoiceStatus, BillingStats,
    PaymentCreate, PaymentOut, PaymentList, PaymentReverseRequest
)

# Router principal del módulo de facturas
router = APIRouter(prefix="/invoices", tags=["Invoices"])


@router.post("/", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def create_invoice(
    invoice_data: InvoiceCreate,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(BILLING_ROLES))
):
    """
    Crear una factura en borrador

    La factura no recibe número fiscal hasta que se finaliza.
    """
    service = InvoiceService(db)
    return service.create_invoice(invoice_data, auth_context.tenant_id, auth_context.user_id)


@router.get("/", response_model=InvoiceList)
def list_invoices(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    start_date: Optional[date] = Query(None, description="Fecha inicial (YYYY-MM-DD)"),
    end_date: Optional[date] = Query(None, description="Fecha final (YYYY-MM-DD)"),
    customer_id: Optional[UUID] = Query(None, description="Filtrar por cliente"),
    status: Optional[InvoiceStatus] = Query(None, description="Estado de la factura"),
    fiscal_document_type: Optional[FiscalDocumentType] = Query(None, description="Tipo de comprobante"),
    has_fiscal_number: Optional[bool] = Query(None, description="Con o sin NCF"),
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    search: Optional[str] = Query(None, description="Buscar por número, NCF, cliente o notas"),
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(ALL_ROLES))
):
    """
    Listar facturas con filtros y conteo por estado
    """
    service = InvoiceService(db)
    filters = InvoiceFilters(
        status=status,
        customer_id=customer_id,
        fiscal_document_type=fiscal_document_type,
        has_fiscal_number=has_fiscal_number,
        currency=currency,
        date_from=start_date,
        date_to=end_date,
        search=search
    )
    return service.get_invoices(auth_context.tenant_id, filters, limit, offset)


@router.get("/stats", response_model=BillingStats)
def get_billing_stats(
    currency: Optional[str] = Query(None, min_length=3, max_length=3, description="Por defecto la moneda local"),
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(ALL_ROLES))
):
    """
    Indicadores de facturación y cobro en una moneda
    """
    service = InvoiceService(db)
    return service.get_billing_stats(auth_context.tenant_id, currency)


@router.get("/{invoice_id}", response_model=InvoiceDetail)
def get_invoice(
    invoice_id: UUID,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(ALL_ROLES))
):
    """
    Obtener detalles completos de una factura
    """
    service = InvoiceService(db)
    return service.get_invoice_by_id(invoice_id, auth_context.tenant_id)


@router.patch("/{invoice_id}", response_model=InvoiceOut)
def update_invoice(
    invoice_id: UUID,
    invoice_update: InvoiceUpdate,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(BILLING_ROLES))
):
    """
    Actualizar una factura (solo en borrador)
    """
    service = InvoiceService(db)
    return service.update_invoice(invoice_id, invoice_update, auth_context.tenant_id)


@router.post("/{invoice_id}/finalize", response_model=InvoiceOut)
def finalize_invoice(
    invoice_id: UUID,
    request: Optional[InvoiceFinalizeRequest] = None,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(BILLING_ROLES))
):
    """
    Emitir la factura y asignarle el número fiscal (NCF)

    Falla si no hay secuencia activa, si está vencida o agotada; en ese caso
    la factura sigue en borrador.
    """
    service = InvoiceService(db)
    document_type = request.fiscal_document_type if request else None
    return service.finalize_invoice(invoice_id, auth_context.tenant_id, document_type)


@router.post("/{invoice_id}/cancel", response_model=InvoiceOut)
def cancel_invoice(
    invoice_id: UUID,
    request: InvoiceCancelRequest,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(FISCAL_ADMIN_ROLES))
):
    """
    Anular una factura emitida

    El NCF queda consumido y la factura sale de los reportes fiscales.
    No se pueden anular borradores ni facturas pagadas.
    """
    service = InvoiceService(db)
    return service.cancel_invoice(invoice_id, request.reason, auth_context.tenant_id, auth_context.user_id)


@router.post("/{invoice_id}/payments", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
def add_payment(
    invoice_id: UUID,
    payment_data: PaymentCreate,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(BILLING_ROLES))
):
    """
    Registrar un pago

    Envíe `idempotency_key` para que un reintento no duplique el pago.
    """
    ledger = PaymentLedger(db)
    return ledger.apply_payment(invoice_id, auth_context.tenant_id, payment_data, auth_context.user_id)


@router.get("/{invoice_id}/payments", response_model=PaymentList)
def list_invoice_payments(
    invoice_id: UUID,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(ALL_ROLES))
):
    ledger = PaymentLedger(db)
    payments = ledger.get_invoice_payments(invoice_id, auth_context.tenant_id)
    invoice = InvoiceService(db).get_invoice_by_id(invoice_id, auth_context.tenant_id)
    return PaymentList(
        payments=payments,
        total=len(payments),
        paid_amount=invoice.paid_amount,
        amount_due=invoice.amount_due
    )


@router.post("/payments/{payment_id}/reverse", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
def reverse_payment(
    payment_id: UUID,
    request: PaymentReverseRequest,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(FISCAL_ADMIN_ROLES))
):
    """
    Revertir un pago registrando un movimiento negativo
    """
    ledger = PaymentLedger(db)
    return ledger.reverse_payment(payment_id, auth_context.tenant_id, request.reason, auth_context.user_id)
