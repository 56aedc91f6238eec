from pydantic import BaseModel, Field, field_validator, model_validator
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import date, datetime

from app.common.validators import validate_tax_id, format_tax_id
from app.modules.fiscal.models import FiscalDocumentType
from app.modules.invoices.models import InvoiceStatus, PaymentMethod
from app.modules.taxes.calculator import PaymentTerms
from app.modules.taxes.schemas import LineItemBase, LineItemOut


def _clean_tax_id(v: Optional[str]) -> Optional[str]:
    if v is None or v.strip() == "":
        return None
    if not validate_tax_id(v):
        raise ValueError('RNC o cédula inválido. El RNC tiene 9 dígitos y la cédula 11, con dígito verificador')
    return format_tax_id(v)


# Invoice Schemas
class InvoiceCreate(BaseModel):
    customer_id: Optional[UUID] = Field(None, description="Paciente o empresa a facturar")
    customer_name: Optional[str] = Field(None, max_length=200)
    customer_tax_id: Optional[str] = Field(None, max_length=20, description="RNC o cédula")
    issue_date: date = Field(default_factory=date.today)
    due_date: Optional[date] = None
    payment_terms: PaymentTerms = PaymentTerms.IMMEDIATE
    custom_days: Optional[int] = Field(None, ge=0, le=365, description="Días de crédito para términos 'custom'")
    currency: str = Field('DOP', min_length=3, max_length=3)
    exchange_rate: Decimal = Field(Decimal('1'), gt=0, description="Unidades de moneda local por unidad")
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100, description="Porcentaje; por defecto ITBIS 18")
    fiscal_document_type: Optional[FiscalDocumentType] = None
    notes: Optional[str] = None
    items: List[LineItemBase] = Field(default_factory=list)

    @field_validator('currency')
    @classmethod
    def upper_currency(cls, v):
        return v.upper()

    @field_validator('customer_tax_id')
    @classmethod
    def validate_customer_tax_id(cls, v):
        return _clean_tax_id(v)

    @model_validator(mode='after')
    def validate_due_date(self):
        if self.due_date and self.issue_date and self.due_date < self.issue_date:
            raise ValueError('La fecha de vencimiento no puede ser anterior a la fecha de emisión')
        return self


class InvoiceUpdate(BaseModel):
    customer_id: Optional[UUID] = None
    customer_name: Optional[str] = Field(None, max_length=200)
    customer_tax_id: Optional[str] = Field(None, max_length=20)
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    payment_terms: Optional[PaymentTerms] = None
    custom_days: Optional[int] = Field(None, ge=0, le=365)
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    fiscal_document_type: Optional[FiscalDocumentType] = None
    notes: Optional[str] = None
    items: Optional[List[LineItemBase]] = None

    @field_validator('customer_tax_id')
    @classmethod
    def validate_customer_tax_id(cls, v):
        return _clean_tax_id(v)

    @model_validator(mode='after')
    def validate_due_date(self):
        if self.due_date and self.issue_date and self.due_date < self.issue_date:
            raise ValueError('La fecha de vencimiento no puede ser anterior a la fecha de emisión')
        return self


class InvoiceFinalizeRequest(BaseModel):
    fiscal_document_type: Optional[FiscalDocumentType] = Field(
        None, description="Por defecto el tipo guardado en la factura, o consumidor final"
    )


class InvoiceCancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class InvoiceOut(BaseModel):
    id: UUID
    number: str
    status: InvoiceStatus
    customer_id: Optional[UUID] = None
    customer_name: Optional[str] = None
    customer_tax_id: Optional[str] = None
    quotation_id: Optional[UUID] = None
    fiscal_document_type: Optional[FiscalDocumentType] = None
    fiscal_number: Optional[str] = None
    fiscal_expiration_date: Optional[date] = None
    issue_date: date
    due_date: Optional[date] = None
    payment_terms: PaymentTerms
    notes: Optional[str] = None
    currency: str
    exchange_rate: Decimal
    subtotal: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    taxable_amount: Decimal
    exempt_amount: Decimal
    tax_amount: Decimal
    total: Decimal
    paid_amount: Decimal
    amount_due: Decimal
    finalized_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class InvoiceDetail(InvoiceOut):
    """Esquema detallado que incluye line items y pagos"""
    line_items: List[LineItemOut]
    payments: List['PaymentOut'] = []

    class Config:
        from_attributes = True


class InvoiceStatusCount(BaseModel):
    status: InvoiceStatus
    count: int


# Search y Filter Schemas
class InvoiceFilters(BaseModel):
    """Filtros para búsqueda de facturas"""
    status: Optional[InvoiceStatus] = None
    customer_id: Optional[UUID] = None
    fiscal_document_type: Optional[FiscalDocumentType] = None
    has_fiscal_number: Optional[bool] = None
    currency: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    search: Optional[str] = Field(None, description="Buscar en número, NCF, nombre del cliente o notas")


class InvoiceList(BaseModel):
    invoices: List[InvoiceOut]
    total: int
    limit: int
    offset: int
    applied_filters: Optional[InvoiceFilters] = None
    counts_by_status: List[InvoiceStatusCount] = Field(default_factory=list)


class BillingStats(BaseModel):
    """Indicadores de cobro por moneda"""
    currency: str
    total_invoiced: Decimal
    invoiced_this_month: Decimal
    total_collected: Decimal
    pending_collection: Decimal
    overdue_amount: Decimal
    invoices_count: int
    pending_count: int
    overdue_count: int


# Payment Schemas
class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., max_digits=15, decimal_places=2)
    method: PaymentMethod
    reference: Optional[str] = Field(None, max_length=100)
    idempotency_key: Optional[str] = Field(
        None, min_length=1, max_length=100,
        description="Clave del cliente para reintentos seguros; el mismo valor devuelve el pago original"
    )
    notes: Optional[str] = None


class PaymentReverseRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class PaymentOut(BaseModel):
    id: UUID
    invoice_id: UUID
    amount: Decimal
    method: PaymentMethod
    reference: Optional[str] = None
    idempotency_key: Optional[str] = None
    reverses_payment_id: Optional[UUID] = None
    notes: Optional[str] = None
    applied_at: datetime
    created_by: UUID

    class Config:
        from_attributes = True


class PaymentList(BaseModel):
    payments: List[PaymentOut]
    total: int
    paid_amount: Decimal
    amount_due: Decimal


class ReconciliationResult(BaseModel):
    invoice_id: UUID
    recorded_paid_amount: Decimal
    ledger_paid_amount: Decimal
    corrected: bool


InvoiceDetail.model_rebuild()
