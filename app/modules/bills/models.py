"""
Modelos SQLAlchemy para facturas de proveedor (gastos)

Cada factura recibida de un proveedor trae su propio NCF (emitido por el
proveedor) y alimenta el reporte 606 de compras del período.

Arquitectura multi-tenant: todas las tablas incluyen tenant_id
"""

from app.database.database import Base
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint, Numeric, Enum, Date, Text, Uuid
from sqlalchemy.orm import relationship
from datetime import date
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
from app.modules.fiscal.models import FiscalDocumentType
from app.modules.taxes.calculator import DiscountType
from app.modules.taxes.schemas import ItemType
import enum


class BillStatus(str, enum.Enum):
    """Estados de facturas de proveedor"""
    OPEN = "open"   # Registrada, cuenta en el 606
    VOID = "void"   # Anulada, sale del 606


class SupplierBill(Base, TenantMixin, TimestampMixin):
    __tablename__ = "supplier_bills"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Proveedor (vive en otro servicio; se guarda la foto de sus datos)
    supplier_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    supplier_name = Column(String(200), nullable=False)
    supplier_tax_id = Column(String(20), nullable=False)  # RNC formateado

    # Comprobante recibido
    fiscal_document_type = Column(Enum(FiscalDocumentType), nullable=False)
    fiscal_number = Column(String(20), nullable=False)
    issue_date = Column(Date, nullable=False, default=date.today)

    currency = Column(String(3), nullable=False, default="DOP")
    exchange_rate = Column(Numeric(12, 6), nullable=False, default=1)
    notes = Column(Text, nullable=True)

    # Totales (calculados)
    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(15, 2), nullable=False, default=0)
    tax_rate = Column(Numeric(7, 4), nullable=False, default=18)
    taxable_amount = Column(Numeric(15, 2), nullable=False, default=0)
    exempt_amount = Column(Numeric(15, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(15, 2), nullable=False, default=0)
    total = Column(Numeric(15, 2), nullable=False, default=0)

    status = Column(Enum(BillStatus), nullable=False, default=BillStatus.OPEN)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_reason = Column(Text, nullable=True)
    cancelled_by = Column(Uuid(as_uuid=True), nullable=True)
    created_by = Column(Uuid(as_uuid=True), nullable=False)

    line_items = relationship(
        "SupplierBillLineItem",
        back_populates="bill",
        cascade="all, delete-orphan",
        order_by="SupplierBillLineItem.position"
    )

    __table_args__ = (
        # Un mismo NCF de un mismo proveedor no se registra dos veces
        UniqueConstraint("tenant_id", "supplier_tax_id", "fiscal_number", name="uq_bill_supplier_fiscal_number"),
    )

    @property
    def is_cancelled(self) -> bool:
        return self.status == BillStatus.VOID


class SupplierBillLineItem(Base, TimestampMixin):
    __tablename__ = "supplier_bill_line_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    bill_id = Column(Uuid(as_uuid=True), ForeignKey("supplier_bills.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    item_type = Column(Enum(ItemType), nullable=False, default=ItemType.CUSTOM)
    reference_id = Column(Uuid(as_uuid=True), nullable=True)
    description = Column(String(500), nullable=False)

    quantity = Column(Numeric(10, 3), nullable=False)
    unit_price = Column(Numeric(15, 2), nullable=False)
    discount = Column(Numeric(15, 2), nullable=False, default=0)
    discount_type = Column(Enum(DiscountType), nullable=False, default=DiscountType.PERCENTAGE)
    taxable = Column(Boolean, nullable=False, default=True)
    line_total = Column(Numeric(15, 2), nullable=False)

    bill = relationship("SupplierBill", back_populates="line_items")
