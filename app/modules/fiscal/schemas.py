from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List
from uuid import UUID
from datetime import date, datetime

from app.modules.fiscal.models import FiscalDocumentType


class FiscalSequenceCreate(BaseModel):
    """Alta de un rango NCF autorizado por la DGII"""
    document_type: FiscalDocumentType
    prefix: Optional[str] = Field(None, max_length=10, description="Por defecto el código DGII (ej. B02)")
    start_number: int = Field(..., ge=1)
    end_number: int = Field(..., ge=1)
    padding: Optional[int] = Field(None, ge=1, le=12)
    expiration_date: Optional[date] = None
    replace_active: bool = Field(False, description="Desactivar la secuencia activa del mismo tipo")

    @field_validator('prefix')
    @classmethod
    def clean_prefix(cls, v):
        if v is None:
            return v
        v = v.strip().upper()
        if not v:
            raise ValueError('El prefijo no puede estar vacío')
        return v

    @model_validator(mode='after')
    def validate_range(self):
        if self.start_number > self.end_number:
            raise ValueError('El número inicial no puede ser mayor que el final')
        return self


class FiscalSequenceOut(BaseModel):
    id: UUID
    document_type: FiscalDocumentType
    prefix: str
    start_number: int
    end_number: int
    current_number: int
    padding: int
    expiration_date: Optional[date] = None
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class FiscalSequenceStatus(BaseModel):
    """Estado operativo de una secuencia"""
    sequence: FiscalSequenceOut
    dgii_code: str
    next_number: Optional[str] = None
    issued: int
    remaining: int
    is_expired: bool
    is_exhausted: bool
    is_low_stock: bool


class FiscalSequenceList(BaseModel):
    sequences: List[FiscalSequenceStatus]
    total: int


class AllocatedNumberOut(BaseModel):
    number: str
    value: int
    sequence_id: UUID
    expiration_date: Optional[date] = None
