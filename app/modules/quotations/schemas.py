from pydantic import BaseModel, Field, field_validator, model_validator
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import date, datetime

from app.common.validators import validate_tax_id, format_tax_id
from app.modules.fiscal.models import FiscalDocumentType
from app.modules.quotations.models import QuotationStatus
from app.modules.taxes.calculator import PaymentTerms
from app.modules.taxes.schemas import LineItemBase, LineItemOut


class QuotationCreate(BaseModel):
    customer_id: Optional[UUID] = None
    customer_name: Optional[str] = Field(None, max_length=200)
    customer_tax_id: Optional[str] = Field(None, max_length=20)
    issue_date: date = Field(default_factory=date.today)
    valid_until: Optional[date] = Field(None, description="Por defecto 15 días desde la emisión")
    currency: str = Field('DOP', min_length=3, max_length=3)
    exchange_rate: Decimal = Field(Decimal('1'), gt=0)
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    notes: Optional[str] = None
    terms_conditions: Optional[str] = None
    items: List[LineItemBase] = Field(..., min_length=1, description="Debe incluir al menos un item")

    @field_validator('currency')
    @classmethod
    def upper_currency(cls, v):
        return v.upper()

    @field_validator('customer_tax_id')
    @classmethod
    def validate_customer_tax_id(cls, v):
        if v is None or v.strip() == "":
            return None
        if not validate_tax_id(v):
            raise ValueError('RNC o cédula inválido')
        return format_tax_id(v)

    @model_validator(mode='after')
    def validate_dates(self):
        if self.valid_until and self.valid_until < self.issue_date:
            raise ValueError('La fecha de validez no puede ser anterior a la fecha de emisión')
        return self


class QuotationUpdate(BaseModel):
    customer_id: Optional[UUID] = None
    customer_name: Optional[str] = Field(None, max_length=200)
    customer_tax_id: Optional[str] = Field(None, max_length=20)
    valid_until: Optional[date] = None
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    notes: Optional[str] = None
    terms_conditions: Optional[str] = None
    items: Optional[List[LineItemBase]] = Field(None, min_length=1)

    @field_validator('customer_tax_id')
    @classmethod
    def validate_customer_tax_id(cls, v):
        if v is None or v.strip() == "":
            return None
        if not validate_tax_id(v):
            raise ValueError('RNC o cédula inválido')
        return format_tax_id(v)


class QuotationConvertRequest(BaseModel):
    finalize: bool = Field(True, description="Emitir la factura con NCF en la misma operación")
    fiscal_document_type: Optional[FiscalDocumentType] = None
    payment_terms: PaymentTerms = PaymentTerms.IMMEDIATE
    custom_days: Optional[int] = Field(None, ge=0, le=365)
    issue_date: Optional[date] = None


class QuotationOut(BaseModel):
    id: UUID
    number: str
    status: QuotationStatus
    customer_id: Optional[UUID] = None
    customer_name: Optional[str] = None
    customer_tax_id: Optional[str] = None
    issue_date: date
    valid_until: date
    currency: str
    exchange_rate: Decimal
    subtotal: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    taxable_amount: Decimal
    exempt_amount: Decimal
    tax_amount: Decimal
    total: Decimal
    notes: Optional[str] = None
    terms_conditions: Optional[str] = None
    sent_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    converted_invoice_id: Optional[UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


class QuotationDetail(QuotationOut):
    line_items: List[LineItemOut]


class QuotationList(BaseModel):
    quotations: List[QuotationOut]
    total: int
    limit: int
    offset: int


class QuotationStats(BaseModel):
    currency: str
    total: int
    pending: int
    accepted: int
    rejected: int
    expired: int
    converted: int
    accepted_value: Decimal
    conversion_rate: Decimal
