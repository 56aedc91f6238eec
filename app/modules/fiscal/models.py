from app.database.database import Base
from sqlalchemy import Column, Integer, String, Boolean, Date, Index, UniqueConstraint, CheckConstraint, Enum, Uuid
from datetime import date
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
import enum


class FiscalDocumentType(str, enum.Enum):
    CREDIT_FISCAL = "credit-fiscal"          # B01 Crédito fiscal
    FINAL_CONSUMER = "final-consumer"        # B02 Consumidor final
    DEBIT_NOTE = "debit-note"                # B03 Nota de débito
    CREDIT_NOTE = "credit-note"              # B04 Nota de crédito
    INFORMAL_PURCHASE = "informal-purchase"  # B11 Comprobante de compras
    MINOR_EXPENSES = "minor-expenses"        # B13 Gastos menores
    SPECIAL_REGIME = "special-regime"        # B14 Regímenes especiales
    GOVERNMENTAL = "governmental"            # B15 Gubernamental
    EXPORT = "export"                        # B16 Exportaciones

    @property
    def dgii_code(self) -> str:
        return DGII_CODES[self]


DGII_CODES = {
    FiscalDocumentType.CREDIT_FISCAL: "B01",
    FiscalDocumentType.FINAL_CONSUMER: "B02",
    FiscalDocumentType.DEBIT_NOTE: "B03",
    FiscalDocumentType.CREDIT_NOTE: "B04",
    FiscalDocumentType.INFORMAL_PURCHASE: "B11",
    FiscalDocumentType.MINOR_EXPENSES: "B13",
    FiscalDocumentType.SPECIAL_REGIME: "B14",
    FiscalDocumentType.GOVERNMENTAL: "B15",
    FiscalDocumentType.EXPORT: "B16",
}


class FiscalSequence(Base, TenantMixin, TimestampMixin):
    """
    Rango de comprobantes fiscales (NCF) autorizado por la DGII.

    `current_number` es el último número emitido; una secuencia recién
    configurada tiene `current_number = start_number - 1`. El contador solo
    avanza mediante el UPDATE condicional de `SequenceAllocator`.
    """
    __tablename__ = "fiscal_sequences"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    document_type = Column(Enum(FiscalDocumentType), nullable=False)
    prefix = Column(String(10), nullable=False)  # Ej: "B02"
    start_number = Column(Integer, nullable=False)
    end_number = Column(Integer, nullable=False)
    current_number = Column(Integer, nullable=False)
    padding = Column(Integer, nullable=False, default=8)
    expiration_date = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("start_number >= 1", name="ck_fiscal_sequence_start_positive"),
        CheckConstraint("start_number <= end_number", name="ck_fiscal_sequence_range"),
        CheckConstraint(
            "current_number >= start_number - 1 AND current_number <= end_number",
            name="ck_fiscal_sequence_current_in_range"
        ),
        # Una sola secuencia activa por clínica y tipo de comprobante
        Index(
            "uq_fiscal_sequence_active_type",
            "tenant_id", "document_type",
            unique=True,
            postgresql_where=(is_active == True),  # noqa: E712
            sqlite_where=(is_active == True),  # noqa: E712
        ),
    )

    @property
    def remaining(self) -> int:
        return self.end_number - self.current_number

    @property
    def is_exhausted(self) -> bool:
        return self.current_number >= self.end_number

    def is_expired(self, today: date = None) -> bool:
        today = today or date.today()
        return self.expiration_date is not None and self.expiration_date < today


class DocumentKind(enum.Enum):
    INVOICE = "invoice"
    QUOTATION = "quotation"


class DocumentCounter(Base, TenantMixin):
    """Contador anual para la numeración interna (FAC-2026-00001, COT-2026-0001)"""
    __tablename__ = "document_counters"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    kind = Column(Enum(DocumentKind), nullable=False)
    year = Column(Integer, nullable=False)
    current_number = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("tenant_id", "kind", "year", name="uq_document_counter_tenant_kind_year"),
    )
