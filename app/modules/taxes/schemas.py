from pydantic import BaseModel, Field, field_validator, model_validator
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from enum import Enum

from app.modules.taxes.calculator import DiscountType, LineInput


class ItemType(str, Enum):
    TREATMENT = "treatment"  # Tratamiento o procedimiento
    PRODUCT = "product"      # Producto vendido en clínica
    PACKAGE = "package"      # Paquete de sesiones
    CUSTOM = "custom"        # Concepto libre


class LineItemBase(BaseModel):
    """Línea de documento (factura, cotización o factura de proveedor)"""
    item_type: ItemType = ItemType.CUSTOM
    reference_id: Optional[UUID] = Field(None, description="ID del tratamiento, producto o paquete")
    description: str = Field(..., min_length=1, max_length=500)
    # Mismas escalas que las columnas de línea, para que lo guardado recalcule igual
    quantity: Decimal = Field(..., gt=0, decimal_places=3, description="Cantidad (admite decimales)")
    unit_price: Decimal = Field(..., ge=0, decimal_places=2, description="Precio unitario sin impuestos")
    discount: Decimal = Field(Decimal('0'), ge=0, decimal_places=2)
    discount_type: DiscountType = DiscountType.PERCENTAGE
    taxable: bool = Field(True, description="False para conceptos exentos de ITBIS")

    @model_validator(mode='after')
    def validate_discount(self):
        if self.discount_type == DiscountType.PERCENTAGE and self.discount > 100:
            raise ValueError('El descuento porcentual debe estar entre 0 y 100')
        return self

    def to_line_input(self) -> LineInput:
        return LineInput(
            quantity=self.quantity,
            unit_price=self.unit_price,
            discount=self.discount,
            discount_type=self.discount_type,
            taxable=self.taxable,
        )


class LineItemOut(BaseModel):
    id: UUID
    position: int
    item_type: ItemType
    reference_id: Optional[UUID] = None
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount: Decimal
    discount_type: DiscountType
    taxable: bool
    line_total: Decimal

    class Config:
        from_attributes = True


class TotalsPreviewRequest(BaseModel):
    """Cálculo previo de totales sin persistir nada"""
    items: List[LineItemBase] = Field(..., min_length=1)
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100, description="Porcentaje; por defecto ITBIS 18")
    currency: str = Field('DOP', min_length=3, max_length=3)

    @field_validator('currency')
    @classmethod
    def upper_currency(cls, v):
        return v.upper()


class TotalsOut(BaseModel):
    currency: str
    tax_rate: Decimal
    subtotal: Decimal
    discount_total: Decimal
    taxable_amount: Decimal
    exempt_amount: Decimal
    tax_amount: Decimal
    total: Decimal
