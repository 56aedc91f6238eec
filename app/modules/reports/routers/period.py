"""
Period Reports Router

Endpoints to generate, inspect, export and submit the DGII 606/607
period reports, plus the ITBIS balance of a period.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import ALL_ROLES, FISCAL_ADMIN_ROLES, AuthContext
from app.modules.reports.models import ReportStatus, ReportType
from ..services import FiscalReportService
from ..schemas import (
    PeriodReportDetail,
    PeriodReportList,
    PeriodReportOut,
    ReportGenerateRequest,
    ReportResolveRequest,
    ReportSubmitRequest,
    TaxBalanceOut
)
from ..utils import CSV_HEADERS, create_csv_response, prepare_report_entries_csv, report_filename


router = APIRouter(prefix="/reports/fiscal", tags=["Reports"])


@router.post("/generate", response_model=PeriodReportDetail, status_code=status.HTTP_201_CREATED)
def generate_report(
    request: ReportGenerateRequest,
    auth_context: AuthContext = Depends(AuthDependencies.require_role(FISCAL_ADMIN_ROLES)),
    db: Session = Depends(get_db)
):
    """
    Generate (or regenerate) the 606/607 report of a YYYYMM period.

    Draft and rejected reports are overwritten; submitted or accepted
    reports answer 409 REPORT_LOCKED.
    """
    service = FiscalReportService(db, auth_context.tenant_id)
    return service.generate_report(request.period, request.report_type, request.currency, auth_context.user_id)


@router.get("/", response_model=PeriodReportList)
def list_reports(
    period: Optional[str] = Query(None, pattern=r"^\d{4}(0[1-9]|1[0-2])$", description="YYYYMM"),
    report_type: Optional[ReportType] = Query(None),
    status: Optional[ReportStatus] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(ALL_ROLES)),
    db: Session = Depends(get_db)
):
    service = FiscalReportService(db, auth_context.tenant_id)
    return service.list_reports(period, report_type, status, limit, offset)


@router.get("/tax-balance", response_model=TaxBalanceOut)
def get_tax_balance(
    period: str = Query(..., pattern=r"^\d{4}(0[1-9]|1[0-2])$", description="YYYYMM"),
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(FISCAL_ADMIN_ROLES)),
    db: Session = Depends(get_db)
):
    """
    ITBIS collected (607) minus ITBIS paid (606) for a period.

    Both reports must already be generated.
    """
    service = FiscalReportService(db, auth_context.tenant_id)
    return service.get_tax_balance(period, currency)


@router.get("/{report_id}", response_model=None)
def get_report(
    report_id: UUID,
    export: Optional[str] = Query(None, pattern="^(csv)$", description="Export format: csv"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(ALL_ROLES)),
    db: Session = Depends(get_db)
):
    """
    Report detail with one entry per document; `export=csv` downloads the entries.
    """
    service = FiscalReportService(db, auth_context.tenant_id)
    report = service.get_report(report_id)

    if export == "csv":
        return create_csv_response(
            data=prepare_report_entries_csv(report),
            filename=report_filename(report),
            headers=CSV_HEADERS[report.report_type.value]
        )

    return PeriodReportDetail.model_validate(report)


@router.post("/{report_id}/submit", response_model=PeriodReportOut)
def submit_report(
    report_id: UUID,
    request: Optional[ReportSubmitRequest] = None,
    auth_context: AuthContext = Depends(AuthDependencies.require_role(FISCAL_ADMIN_ROLES)),
    db: Session = Depends(get_db)
):
    """
    Mark a draft report as submitted to the DGII. Locks its figures.
    """
    service = FiscalReportService(db, auth_context.tenant_id)
    reference = request.dgii_reference if request else None
    return service.submit_report(report_id, auth_context.user_id, reference)


@router.post("/{report_id}/resolve", response_model=PeriodReportOut)
def resolve_report(
    report_id: UUID,
    request: ReportResolveRequest,
    auth_context: AuthContext = Depends(AuthDependencies.require_role(FISCAL_ADMIN_ROLES)),
    db: Session = Depends(get_db)
):
    """
    Record the DGII answer for a submitted report.
    """
    service = FiscalReportService(db, auth_context.tenant_id)
    return service.resolve_report(report_id, request.accepted, request.errors, request.dgii_reference)
