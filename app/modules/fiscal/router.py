from fastapi import APIRouter, Depends, status, Query
from typing import Optional
from uuid import UUID

from app.dependencies.dbDependecies import db_dependency
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import ALL_ROLES, FISCAL_ADMIN_ROLES
from app.modules.fiscal.models import FiscalDocumentType
from app.modules.fiscal.service import FiscalSequenceService
from app.modules.fiscal.schemas import (
    FiscalSequenceCreate, FiscalSequenceOut, FiscalSequenceStatus, FiscalSequenceList
)

router = APIRouter(prefix="/fiscal-sequences", tags=["Fiscal Sequences"])


@router.post("/", response_model=FiscalSequenceOut, status_code=status.HTTP_201_CREATED)
def create_sequence(
    sequence_data: FiscalSequenceCreate,
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_role(FISCAL_ADMIN_ROLES))
):
    """
    Registrar un rango de comprobantes (NCF) autorizado por la DGII

    El prefijo por defecto es el código DGII del tipo (B01, B02...). Solo puede
    haber una secuencia activa por tipo; use `replace_active` para reemplazar
    una secuencia agotada o vencida.
    """
    service = FiscalSequenceService(db)
    return service.create_sequence(sequence_data, auth_context.tenant_id)


@router.get("/", response_model=FiscalSequenceList)
def list_sequences(
    db: db_dependency,
    document_type: Optional[FiscalDocumentType] = Query(None, description="Filtrar por tipo de comprobante"),
    active_only: bool = Query(False, description="Solo secuencias activas"),
    auth_context = Depends(AuthDependencies.require_role(ALL_ROLES))
):
    """
    Listar secuencias con números restantes, vencimiento y alerta de stock bajo
    """
    service = FiscalSequenceService(db)
    sequences = service.list_sequences(auth_context.tenant_id, document_type, active_only)
    return FiscalSequenceList(sequences=sequences, total=len(sequences))


@router.get("/{sequence_id}", response_model=FiscalSequenceStatus)
def get_sequence(
    sequence_id: UUID,
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_role(ALL_ROLES))
):
    service = FiscalSequenceService(db)
    sequence = service.get_sequence(sequence_id, auth_context.tenant_id)
    return service.sequence_status(sequence)


@router.post("/{sequence_id}/deactivate", response_model=FiscalSequenceOut)
def deactivate_sequence(
    sequence_id: UUID,
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_role(FISCAL_ADMIN_ROLES))
):
    """
    Retirar una secuencia

    Los números no emitidos de una secuencia retirada no se vuelven a usar.
    """
    service = FiscalSequenceService(db)
    return service.deactivate_sequence(sequence_id, auth_context.tenant_id)
