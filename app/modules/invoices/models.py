from app.database.database import Base
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint, CheckConstraint,
    Numeric, Enum, Date, Text, Uuid, case, and_, event
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import uuid4
from app.common.exceptions import ImmutableRecordError
from app.common.mixins import TenantMixin, TimestampMixin, utcnow
from app.modules.fiscal.models import FiscalDocumentType
from app.modules.taxes.calculator import DiscountType, PaymentTerms
from app.modules.taxes.schemas import ItemType
import enum


class InvoiceStatus(str, enum.Enum):
    """Estado derivado; nunca se almacena."""
    DRAFT = "draft"          # Borrador, sin número fiscal
    PENDING = "pending"      # Emitida, sin pagos
    PARTIAL = "partial"      # Con abonos
    PAID = "paid"            # Saldo en cero
    OVERDUE = "overdue"      # Vencida con saldo
    CANCELLED = "cancelled"  # Anulada


class PaymentMethod(enum.Enum):
    CASH = "cash"           # Efectivo
    CARD = "card"           # Tarjeta
    TRANSFER = "transfer"   # Transferencia
    CHECK = "check"         # Cheque
    OTHER = "other"         # Otro


def derive_invoice_status(
    total: Decimal,
    paid_amount: Decimal,
    due_date: Optional[date],
    today: date,
    finalized: bool = True,
    cancelled: bool = False,
) -> InvoiceStatus:
    """
    Estado de la factura a partir de sus montos y fechas.

    Precedencia: anulada, borrador, pagada, vencida, parcial, pendiente.
    """
    if cancelled:
        return InvoiceStatus.CANCELLED
    if not finalized:
        return InvoiceStatus.DRAFT
    if total - paid_amount <= 0:
        return InvoiceStatus.PAID
    if due_date is not None and due_date < today:
        return InvoiceStatus.OVERDUE
    if paid_amount > 0:
        return InvoiceStatus.PARTIAL
    return InvoiceStatus.PENDING


class Invoice(Base, TenantMixin, TimestampMixin):
    __tablename__ = "invoices"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Numeración interna (FAC-2026-00001) y comprobante fiscal (B0200001892)
    number = Column(String(50), nullable=False)
    fiscal_document_type = Column(Enum(FiscalDocumentType), nullable=True)
    fiscal_number = Column(String(20), nullable=True)
    fiscal_sequence_id = Column(Uuid(as_uuid=True), ForeignKey("fiscal_sequences.id"), nullable=True)
    fiscal_expiration_date = Column(Date, nullable=True)

    # References (pacientes y empresas viven en otros servicios)
    quotation_id = Column(Uuid(as_uuid=True), nullable=True, unique=True)
    customer_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    customer_name = Column(String(200), nullable=True)
    customer_tax_id = Column(String(20), nullable=True)  # RNC o cédula
    created_by = Column(Uuid(as_uuid=True), nullable=False)

    # Dates
    issue_date = Column(Date, nullable=False, default=date.today)
    due_date = Column(Date, nullable=True)
    payment_terms = Column(Enum(PaymentTerms), nullable=False, default=PaymentTerms.IMMEDIATE)

    # Content
    notes = Column(Text, nullable=True)
    currency = Column(String(3), nullable=False, default="DOP")
    exchange_rate = Column(Numeric(12, 6), nullable=False, default=1)  # Unidades locales por unidad

    # Totals (calculated)
    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(15, 2), nullable=False, default=0)
    tax_rate = Column(Numeric(7, 4), nullable=False, default=18)
    taxable_amount = Column(Numeric(15, 2), nullable=False, default=0)
    exempt_amount = Column(Numeric(15, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(15, 2), nullable=False, default=0)
    total = Column(Numeric(15, 2), nullable=False, default=0)

    # Snapshot de la suma del ledger de pagos
    paid_amount = Column(Numeric(15, 2), nullable=False, default=0)

    # Lifecycle
    finalized_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_reason = Column(Text, nullable=True)
    cancelled_by = Column(Uuid(as_uuid=True), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    # Relationships
    line_items = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.position"
    )
    payments = relationship("Payment", back_populates="invoice", order_by="Payment.applied_at")
    fiscal_sequence = relationship("FiscalSequence")

    __table_args__ = (
        UniqueConstraint("tenant_id", "number", name="uq_invoice_tenant_number"),
        UniqueConstraint("tenant_id", "fiscal_number", name="uq_invoice_tenant_fiscal_number"),
        CheckConstraint("paid_amount >= 0", name="ck_invoice_paid_non_negative"),
        CheckConstraint("paid_amount <= total", name="ck_invoice_paid_within_total"),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def amount_due(self) -> Decimal:
        """Saldo pendiente"""
        return Decimal(self.total or 0) - Decimal(self.paid_amount or 0)

    @property
    def is_finalized(self) -> bool:
        return self.finalized_at is not None

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None

    def status_on(self, today: date) -> InvoiceStatus:
        return derive_invoice_status(
            Decimal(self.total or 0),
            Decimal(self.paid_amount or 0),
            self.due_date,
            today,
            finalized=self.is_finalized,
            cancelled=self.is_cancelled,
        )

    @hybrid_property
    def status(self) -> InvoiceStatus:
        return self.status_on(date.today())

    @status.expression
    def status(cls):
        return case(
            (cls.cancelled_at.isnot(None), InvoiceStatus.CANCELLED.value),
            (cls.finalized_at.is_(None), InvoiceStatus.DRAFT.value),
            (cls.total - cls.paid_amount <= 0, InvoiceStatus.PAID.value),
            (and_(cls.due_date.isnot(None), cls.due_date < func.current_date()), InvoiceStatus.OVERDUE.value),
            (cls.paid_amount > 0, InvoiceStatus.PARTIAL.value),
            else_=InvoiceStatus.PENDING.value,
        )


class InvoiceLineItem(Base, TimestampMixin):
    __tablename__ = "invoice_line_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    invoice_id = Column(Uuid(as_uuid=True), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    # Snapshot del concepto (tratamiento, producto o paquete)
    item_type = Column(Enum(ItemType), nullable=False, default=ItemType.CUSTOM)
    reference_id = Column(Uuid(as_uuid=True), nullable=True)
    description = Column(String(500), nullable=False)

    # Line calculations
    quantity = Column(Numeric(10, 3), nullable=False)
    unit_price = Column(Numeric(15, 2), nullable=False)
    discount = Column(Numeric(15, 2), nullable=False, default=0)
    discount_type = Column(Enum(DiscountType), nullable=False, default=DiscountType.PERCENTAGE)
    taxable = Column(Boolean, nullable=False, default=True)
    line_total = Column(Numeric(15, 2), nullable=False)  # Redondeado solo para mostrar

    # Relationships
    invoice = relationship("Invoice", back_populates="line_items")


class Payment(Base, TenantMixin):
    """
    Registro del ledger de pagos. Solo se inserta: una reversión es otro
    registro con monto negativo que apunta al original.
    """
    __tablename__ = "payments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    invoice_id = Column(Uuid(as_uuid=True), ForeignKey("invoices.id"), nullable=False, index=True)

    amount = Column(Numeric(15, 2), nullable=False)
    method = Column(Enum(PaymentMethod), nullable=False)
    reference = Column(String(100), nullable=True)  # Número de referencia, cheque, etc.
    idempotency_key = Column(String(100), nullable=True)
    reverses_payment_id = Column(Uuid(as_uuid=True), ForeignKey("payments.id"), nullable=True, unique=True)
    notes = Column(Text, nullable=True)
    applied_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_by = Column(Uuid(as_uuid=True), nullable=False)

    # Relationships
    invoice = relationship("Invoice", back_populates="payments")

    __table_args__ = (
        UniqueConstraint("invoice_id", "idempotency_key", name="uq_payment_invoice_idempotency_key"),
        CheckConstraint("amount <> 0", name="ck_payment_amount_non_zero"),
    )

    @property
    def is_reversal(self) -> bool:
        return self.reverses_payment_id is not None


@event.listens_for(Payment, "before_update")
def _block_payment_update(mapper, connection, target):
    raise ImmutableRecordError("Payment", target.id)


@event.listens_for(Payment, "before_delete")
def _block_payment_delete(mapper, connection, target):
    raise ImmutableRecordError("Payment", target.id)
