from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID
from datetime import date

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import ALL_ROLES, FISCAL_ADMIN_ROLES
from app.modules.bills.service import BillService
from app.modules.bills.schemas import BillCreate, BillDetail, BillOut, BillList, BillCancelRequest
from app.modules.bills.models import BillStatus

router = APIRouter(prefix="/bills", tags=["Supplier Bills"])


@router.post("/", response_model=BillDetail, status_code=status.HTTP_201_CREATED)
def create_bill(
    bill_data: BillCreate,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(FISCAL_ADMIN_ROLES))
):
    """
    Registrar una factura de proveedor con su NCF

    El RNC del proveedor se valida con el dígito verificador de la DGII.
    """
    service = BillService(db)
    return service.create_bill(bill_data, auth_context.tenant_id, auth_context.user_id)


@router.get("/", response_model=BillList)
def list_bills(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    status: Optional[BillStatus] = Query(None),
    supplier_id: Optional[UUID] = Query(None),
    start_date: Optional[date] = Query(None, description="Fecha inicial (YYYY-MM-DD)"),
    end_date: Optional[date] = Query(None, description="Fecha final (YYYY-MM-DD)"),
    search: Optional[str] = Query(None, description="Buscar por proveedor, RNC o NCF"),
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(ALL_ROLES))
):
    service = BillService(db)
    return service.get_bills(auth_context.tenant_id, limit, offset, status, supplier_id, start_date, end_date, search)


@router.get("/{bill_id}", response_model=BillDetail)
def get_bill(
    bill_id: UUID,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(ALL_ROLES))
):
    service = BillService(db)
    return service.get_bill_by_id(bill_id, auth_context.tenant_id)


@router.post("/{bill_id}/cancel", response_model=BillOut)
def cancel_bill(
    bill_id: UUID,
    request: BillCancelRequest,
    db: Session = Depends(get_db),
    auth_context = Depends(AuthDependencies.require_role(FISCAL_ADMIN_ROLES))
):
    """
    Anular una factura de proveedor
    """
    service = BillService(db)
    return service.cancel_bill(bill_id, request.reason, auth_context.tenant_id, auth_context.user_id)
