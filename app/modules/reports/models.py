"""
Reportes fiscales por período (606 compras / 607 ventas)

Un reporte es un resumen derivado: se puede regenerar mientras esté en
borrador (o rechazado). Una vez enviado a la DGII sus cifras quedan fijas.
"""

from app.database.database import Base
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint, Numeric, Enum, Text, JSON, Uuid
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
import enum


class ReportType(str, enum.Enum):
    PURCHASES = "606"  # Compras de bienes y servicios
    SALES = "607"      # Ventas de bienes y servicios


class ReportStatus(str, enum.Enum):
    DRAFT = "draft"          # Generado, se puede regenerar
    SUBMITTED = "submitted"  # Enviado a la DGII, bloqueado
    ACCEPTED = "accepted"    # Aceptado por la DGII
    REJECTED = "rejected"    # Rechazado; se puede corregir y regenerar


LOCKED_STATUSES = (ReportStatus.SUBMITTED, ReportStatus.ACCEPTED)


class PeriodReport(Base, TenantMixin, TimestampMixin):
    __tablename__ = "period_reports"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    period = Column(String(6), nullable=False)  # YYYYMM
    report_type = Column(Enum(ReportType), nullable=False)
    currency = Column(String(3), nullable=False, default="DOP")
    status = Column(Enum(ReportStatus), nullable=False, default=ReportStatus.DRAFT)

    # Resumen
    total_records = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(15, 2), nullable=False, default=0)
    total_tax = Column(Numeric(15, 2), nullable=False, default=0)
    breakdown = Column(JSON, nullable=False, default=list)  # Totales por tipo de comprobante
    entries = Column(JSON, nullable=False, default=list)    # Una fila por documento
    checksum = Column(String(64), nullable=False)

    generated_at = Column(DateTime(timezone=True), nullable=False)
    generated_by = Column(Uuid(as_uuid=True), nullable=True)

    # Envío a la DGII
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    submitted_by = Column(Uuid(as_uuid=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    dgii_reference = Column(String(100), nullable=True)
    rejection_errors = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("tenant_id", "period", "report_type", "currency", name="uq_period_report_key"),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_locked(self) -> bool:
        return self.status in LOCKED_STATUSES
