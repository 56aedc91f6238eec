from pydantic import BaseModel, Field, field_validator
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import date, datetime

from app.common.validators import validate_tax_id, format_tax_id
from app.modules.bills.models import BillStatus
from app.modules.fiscal.models import FiscalDocumentType
from app.modules.taxes.schemas import LineItemBase, LineItemOut


class BillCreate(BaseModel):
    supplier_id: Optional[UUID] = None
    supplier_name: str = Field(..., min_length=1, max_length=200)
    supplier_tax_id: str = Field(..., description="RNC o cédula del proveedor")
    fiscal_document_type: FiscalDocumentType = FiscalDocumentType.CREDIT_FISCAL
    fiscal_number: str = Field(..., min_length=3, max_length=20, description="NCF recibido")
    issue_date: date = Field(default_factory=date.today)
    currency: str = Field('DOP', min_length=3, max_length=3)
    exchange_rate: Decimal = Field(Decimal('1'), gt=0)
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    notes: Optional[str] = None
    items: List[LineItemBase] = Field(..., min_length=1, description="Debe incluir al menos un item")

    @field_validator('currency')
    @classmethod
    def upper_currency(cls, v):
        return v.upper()

    @field_validator('fiscal_number')
    @classmethod
    def clean_fiscal_number(cls, v):
        return v.strip().upper()

    @field_validator('supplier_tax_id')
    @classmethod
    def validate_supplier_tax_id(cls, v):
        if not validate_tax_id(v):
            raise ValueError('RNC o cédula del proveedor inválido')
        return format_tax_id(v)


class BillCancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class BillOut(BaseModel):
    id: UUID
    supplier_id: Optional[UUID] = None
    supplier_name: str
    supplier_tax_id: str
    fiscal_document_type: FiscalDocumentType
    fiscal_number: str
    issue_date: date
    currency: str
    exchange_rate: Decimal
    subtotal: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    taxable_amount: Decimal
    exempt_amount: Decimal
    tax_amount: Decimal
    total: Decimal
    status: BillStatus
    notes: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class BillDetail(BillOut):
    line_items: List[LineItemOut]


class BillList(BaseModel):
    bills: List[BillOut]
    total: int
    limit: int
    offset: int
