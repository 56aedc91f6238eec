from app.database.database import Base
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint, Numeric, Enum, Date, Text, Uuid
)
from sqlalchemy.orm import relationship
from datetime import date
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
from app.modules.taxes.calculator import DiscountType
from app.modules.taxes.schemas import ItemType
import enum


class QuotationStatus(str, enum.Enum):
    DRAFT = "draft"          # Borrador
    SENT = "sent"            # Enviada al paciente
    ACCEPTED = "accepted"    # Aceptada
    REJECTED = "rejected"    # Rechazada
    EXPIRED = "expired"      # Derivado: venció sin respuesta
    CONVERTED = "converted"  # Derivado: ya tiene factura


class Quotation(Base, TenantMixin, TimestampMixin):
    __tablename__ = "quotations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    number = Column(String(50), nullable=False)  # COT-2026-0001

    # References
    customer_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    customer_name = Column(String(200), nullable=True)
    customer_tax_id = Column(String(20), nullable=True)
    created_by = Column(Uuid(as_uuid=True), nullable=False)

    stored_status = Column("status", Enum(QuotationStatus), nullable=False, default=QuotationStatus.DRAFT)
    issue_date = Column(Date, nullable=False, default=date.today)
    valid_until = Column(Date, nullable=False)

    # Content
    notes = Column(Text, nullable=True)
    terms_conditions = Column(Text, nullable=True)
    currency = Column(String(3), nullable=False, default="DOP")
    exchange_rate = Column(Numeric(12, 6), nullable=False, default=1)

    # Totals (calculated)
    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(15, 2), nullable=False, default=0)
    tax_rate = Column(Numeric(7, 4), nullable=False, default=18)
    taxable_amount = Column(Numeric(15, 2), nullable=False, default=0)
    exempt_amount = Column(Numeric(15, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(15, 2), nullable=False, default=0)
    total = Column(Numeric(15, 2), nullable=False, default=0)

    # Lifecycle
    sent_at = Column(DateTime(timezone=True), nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    converted_invoice_id = Column(Uuid(as_uuid=True), ForeignKey("invoices.id"), nullable=True, unique=True)

    # Relationships
    line_items = relationship(
        "QuotationLineItem",
        back_populates="quotation",
        cascade="all, delete-orphan",
        order_by="QuotationLineItem.position"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "number", name="uq_quotation_tenant_number"),
    )

    def is_expired(self, today: date = None) -> bool:
        today = today or date.today()
        return (
            self.stored_status in (QuotationStatus.DRAFT, QuotationStatus.SENT)
            and self.valid_until is not None
            and self.valid_until < today
        )

    def status_on(self, today: date) -> QuotationStatus:
        if self.converted_invoice_id is not None:
            return QuotationStatus.CONVERTED
        if self.is_expired(today):
            return QuotationStatus.EXPIRED
        return self.stored_status

    @property
    def status(self) -> QuotationStatus:
        return self.status_on(date.today())


class QuotationLineItem(Base, TimestampMixin):
    __tablename__ = "quotation_line_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    quotation_id = Column(Uuid(as_uuid=True), ForeignKey("quotations.id", ondelete="CASCADE"), nullable=False, index=True)
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

    quotation = relationship("Quotation", back_populates="line_items")
