from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import ALL_ROLES, BILLING_ROLES
from app.modules.invoices.schemas import InvoiceOut
from app.modules.quotations.service import QuotationService
from app.modules.quotations.schemas import (
    QuotationCreate, QuotationUpdate, QuotationOut, QuotationDetail, QuotationList,
    QuotationConvertRequest, QuotationStats
)
from app.modules.quotations.models import QuotationStatus

router = APIRouter(prefix="/quotations", tags=["Quotations"])


@router.post("/", response_model=QuotationDetail, status_code=status.HTTP_201_CREATED)
def create_quotation(
    quotation_data: QuotationCreate,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(BILLING_ROLES))
):
    """
    Crear una cotización (COT-YYYY-0001) en borrador
    """
    service = QuotationService(db)
    return service.create_quotation(quotation_data, auth_context.tenant_id, auth_context.user_id)


@router.get("/", response_model=QuotationList)
def list_quotations(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    status: Optional[QuotationStatus] = Query(None, description="Estado (incluye expired y converted)"),
    customer_id: Optional[UUID] = Query(None),
    search: Optional[str] = Query(None, description="Buscar por número, cliente o notas"),
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(ALL_ROLES))
):
    service = QuotationService(db)
    return service.get_quotations(auth_context.tenant_id, status, customer_id, search, limit, offset)


@router.get("/stats", response_model=QuotationStats)
def get_quotation_stats(
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(ALL_ROLES))
):
    service = QuotationService(db)
    return service.get_quotation_stats(auth_context.tenant_id, currency)


@router.get("/{quotation_id}", response_model=QuotationDetail)
def get_quotation(
    quotation_id: UUID,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(ALL_ROLES))
):
    service = QuotationService(db)
    return service.get_quotation_by_id(quotation_id, auth_context.tenant_id)


@router.patch("/{quotation_id}", response_model=QuotationDetail)
def update_quotation(
    quotation_id: UUID,
    quotation_update: QuotationUpdate,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(BILLING_ROLES))
):
    """
    Actualizar una cotización en borrador o enviada
    """
    service = QuotationService(db)
    return service.update_quotation(quotation_id, quotation_update, auth_context.tenant_id)


@router.post("/{quotation_id}/send", response_model=QuotationOut)
def send_quotation(
    quotation_id: UUID,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(BILLING_ROLES))
):
    service = QuotationService(db)
    return service.send_quotation(quotation_id, auth_context.tenant_id)


@router.post("/{quotation_id}/accept", response_model=QuotationOut)
def accept_quotation(
    quotation_id: UUID,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(BILLING_ROLES))
):
    service = QuotationService(db)
    return service.accept_quotation(quotation_id, auth_context.tenant_id)


@router.post("/{quotation_id}/reject", response_model=QuotationOut)
def reject_quotation(
    quotation_id: UUID,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(BILLING_ROLES))
):
    service = QuotationService(db)
    return service.reject_quotation(quotation_id, auth_context.tenant_id)


@router.post("/{quotation_id}/convert", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def convert_quotation(
    quotation_id: UUID,
    request: Optional[QuotationConvertRequest] = None,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(BILLING_ROLES))
):
    """
    Convertir la cotización en factura

    Por defecto la factura se emite con NCF en la misma operación. Una
    cotización vencida, rechazada o ya convertida no se puede convertir.
    """
    service = QuotationService(db)
    return service.convert_to_invoice(quotation_id, auth_context.tenant_id, auth_context.user_id, request)
