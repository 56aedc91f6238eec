"""
Pydantic schemas for Reports module

Request and response models for the period (606/607) report endpoints.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from app.common.validators import validate_period
from app.modules.reports.models import ReportStatus, ReportType


class PeriodParams(BaseModel):
    """Period key plus optional report currency"""
    period: str = Field(..., description="Período en formato YYYYMM")
    currency: Optional[str] = Field(None, min_length=3, max_length=3, description="Por defecto la moneda local")

    @field_validator('period')
    @classmethod
    def validate_period_key(cls, v):
        if not validate_period(v):
            raise ValueError('El período debe tener formato YYYYMM')
        return v

    @field_validator('currency')
    @classmethod
    def upper_currency(cls, v):
        return v.upper() if v else v


class ReportGenerateRequest(PeriodParams):
    report_type: ReportType


class ReportSubmitRequest(BaseModel):
    dgii_reference: Optional[str] = Field(None, max_length=100, description="Número de recepción de la DGII")


class ReportResolveRequest(BaseModel):
    accepted: bool
    dgii_reference: Optional[str] = Field(None, max_length=100)
    errors: Optional[List[str]] = Field(None, description="Errores reportados por la DGII")

    @model_validator(mode='after')
    def require_errors_on_rejection(self):
        if not self.accepted and not self.errors:
            raise ValueError('Un reporte rechazado debe incluir los errores de la DGII')
        return self


class BreakdownRow(BaseModel):
    """Totals for one fiscal document type"""
    fiscal_document_type: str
    dgii_code: str
    count: int
    taxable_amount: Decimal
    exempt_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal


class ReportEntry(BaseModel):
    """One fiscal document inside a report"""
    document_id: UUID
    document_number: Optional[str] = None
    fiscal_number: str
    fiscal_document_type: str
    dgii_code: str
    counterparty_tax_id: Optional[str] = None
    counterparty_name: Optional[str] = None
    issue_date: date
    original_currency: str
    exchange_rate: Decimal
    taxable_amount: Decimal
    exempt_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    currency: str


class PeriodReportOut(BaseModel):
    id: UUID
    period: str
    report_type: ReportType
    currency: str
    status: ReportStatus
    total_records: int
    total_amount: Decimal
    total_tax: Decimal
    breakdown: List[BreakdownRow]
    checksum: str
    generated_at: datetime
    submitted_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    dgii_reference: Optional[str] = None
    rejection_errors: Optional[List[str]] = None

    class Config:
        from_attributes = True


class PeriodReportDetail(PeriodReportOut):
    entries: List[ReportEntry]


class PeriodReportList(BaseModel):
    reports: List[PeriodReportOut]
    total: int
    limit: int
    offset: int


class TaxBalanceOut(BaseModel):
    """ITBIS balance of a period: positive means payable, negative a credit"""
    period: str
    currency: str
    tax_collected: Decimal = Field(description="ITBIS facturado en ventas (607)")
    tax_paid: Decimal = Field(description="ITBIS pagado en compras (606)")
    balance: Decimal
    sales_report_status: ReportStatus
    purchases_report_status: ReportStatus

    class Config:
        from_attributes = True
