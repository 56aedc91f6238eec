"""
Asignación de números de comprobante fiscal (NCF) y numeración interna.

Cada número fiscal sale de un único UPDATE condicional

    UPDATE fiscal_sequences SET current_number = current_number + 1
    WHERE id = :id AND current_number = :expected AND is_active

Si otra transacción avanzó el contador primero, el UPDATE no afecta filas y
se reintenta leyendo el valor vigente. Así dos finalizaciones concurrentes
nunca obtienen el mismo número y no quedan huecos: el contador solo avanza
cuando la transacción que lo avanzó confirma.
"""
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Union
from uuid import UUID
import logging

from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.common.exceptions import (
    FiscalError, InvariantViolation, NoSequenceConfigured, SequenceConflict,
    SequenceExhausted, SequenceExpired, SequenceNotFound, ValidationError
)
from app.modules.fiscal.models import (
    DocumentCounter, DocumentKind, FiscalDocumentType, FiscalSequence
)
from app.modules.fiscal.schemas import (
    FiscalSequenceCreate, FiscalSequenceOut, FiscalSequenceStatus
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllocatedNumber:
    number: str
    value: int
    sequence_id: UUID
    expiration_date: Optional[date]


def format_fiscal_number(prefix: str, value: int, padding: int) -> str:
    """B02 + 1892 con padding 8 -> B0200001892"""
    return f"{prefix}{str(value).zfill(padding)}"


class SequenceAllocator:
    """Entrega el siguiente NCF de la secuencia activa de un tipo de comprobante."""

    def __init__(self, db: Session, max_retries: Optional[int] = None):
        self.db = db
        self.max_retries = max_retries or settings.SEQUENCE_MAX_RETRIES

    def _read_active(self, tenant_id: UUID, document_type: FiscalDocumentType):
        # Lectura de columnas (no entidades) para no depender del identity map
        return self.db.execute(
            select(
                FiscalSequence.id,
                FiscalSequence.prefix,
                FiscalSequence.current_number,
                FiscalSequence.end_number,
                FiscalSequence.padding,
                FiscalSequence.expiration_date,
            ).where(
                FiscalSequence.tenant_id == tenant_id,
                FiscalSequence.document_type == document_type,
                FiscalSequence.is_active == True,  # noqa: E712
            )
        ).first()

    def allocate(
        self,
        tenant_id: UUID,
        document_type: Union[FiscalDocumentType, str],
        today: Optional[date] = None,
        commit: bool = True,
    ) -> AllocatedNumber:
        """
        Asignar el siguiente número fiscal.

        Args:
            tenant_id: clínica
            document_type: tipo de comprobante
            today: fecha de referencia para el vencimiento
            commit: False cuando el llamador confirma el incremento junto con
                el documento que lo usa (finalización de factura)

        Raises:
            NoSequenceConfigured, SequenceExpired, SequenceExhausted,
            SequenceConflict (tras agotar los reintentos)
        """
        document_type = FiscalDocumentType(document_type)
        today = today or date.today()

        for attempt in range(1, self.max_retries + 1):
            row = self._read_active(tenant_id, document_type)

            if row is None:
                logger.warning(f"No active fiscal sequence for {document_type.value} (tenant {tenant_id})")
                raise NoSequenceConfigured(document_type)

            if row.expiration_date is not None and row.expiration_date < today:
                logger.warning(f"Fiscal sequence {row.id} for {document_type.value} expired on {row.expiration_date}")
                raise SequenceExpired(document_type, row.expiration_date)

            if row.current_number >= row.end_number:
                logger.warning(f"Fiscal sequence {row.id} for {document_type.value} exhausted at {row.end_number}")
                raise SequenceExhausted(document_type, row.end_number)

            result = self.db.execute(
                update(FiscalSequence)
                .where(
                    FiscalSequence.id == row.id,
                    FiscalSequence.current_number == row.current_number,
                    FiscalSequence.is_active == True,  # noqa: E712
                )
                .values(current_number=FiscalSequence.current_number + 1)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 1:
                value = row.current_number + 1
                if commit:
                    self.db.commit()

                number = format_fiscal_number(row.prefix, value, row.padding)
                remaining = row.end_number - value
                logger.info(f"Allocated fiscal number {number} from sequence {row.id} (attempt {attempt})")
                if remaining <= settings.SEQUENCE_LOW_STOCK_THRESHOLD:
                    logger.warning(
                        f"Fiscal sequence {row.id} for {document_type.value} has {remaining} numbers left"
                    )

                return AllocatedNumber(
                    number=number,
                    value=value,
                    sequence_id=row.id,
                    expiration_date=row.expiration_date,
                )

            logger.debug(
                f"Fiscal sequence {row.id} moved past {row.current_number}; retrying ({attempt}/{self.max_retries})"
            )

        logger.error(f"Could not allocate {document_type.value} after {self.max_retries} attempts")
        raise SequenceConflict(document_type, self.max_retries)


class FiscalSequenceService:
    """Aprovisionamiento y consulta de secuencias NCF."""

    def __init__(self, db: Session):
        self.db = db

    def create_sequence(self, data: FiscalSequenceCreate, tenant_id: UUID) -> FiscalSequence:
        """
        Registrar un nuevo rango autorizado.

        El rango no puede solaparse con otro del mismo prefijo (los números
        nunca se reutilizan). Si ya hay una secuencia activa del mismo tipo
        se rechaza, salvo `replace_active`, que la retira.
        """
        prefix = data.prefix or data.document_type.dgii_code
        padding = data.padding or settings.FISCAL_NUMBER_PADDING

        if len(str(data.end_number)) > padding:
            raise ValidationError(
                f"El número final {data.end_number} no cabe en {padding} dígitos",
                field="end_number"
            )

        try:
            overlapping = self.db.query(FiscalSequence).filter(
                FiscalSequence.tenant_id == tenant_id,
                FiscalSequence.prefix == prefix,
                FiscalSequence.start_number <= data.end_number,
                FiscalSequence.end_number >= data.start_number
            ).first()
            if overlapping:
                raise ValidationError(
                    f"El rango {data.start_number}-{data.end_number} se solapa con la secuencia "
                    f"{overlapping.start_number}-{overlapping.end_number}",
                    field="start_number",
                    sequence_id=overlapping.id
                )

            active = self.db.query(FiscalSequence).filter(
                FiscalSequence.tenant_id == tenant_id,
                FiscalSequence.document_type == data.document_type,
                FiscalSequence.is_active == True  # noqa: E712
            ).first()
            if active:
                if not data.replace_active:
                    raise InvariantViolation(
                        f"Ya existe una secuencia activa para '{data.document_type.value}'",
                        document_type=data.document_type.value,
                        sequence_id=active.id
                    )
                active.is_active = False
                # La secuencia retirada debe quedar inactiva antes de insertar la nueva
                self.db.flush()
                logger.info(f"Retired fiscal sequence {active.id} ({data.document_type.value})")

            sequence = FiscalSequence(
                tenant_id=tenant_id,
                document_type=data.document_type,
                prefix=prefix,
                start_number=data.start_number,
                end_number=data.end_number,
                current_number=data.start_number - 1,
                padding=padding,
                expiration_date=data.expiration_date,
                is_active=True
            )
            self.db.add(sequence)
            self.db.commit()
            self.db.refresh(sequence)

            logger.info(
                f"Created fiscal sequence {sequence.id}: {prefix} {data.start_number}-{data.end_number} "
                f"(tenant {tenant_id})"
            )
            return sequence

        except FiscalError:
            self.db.rollback()
            raise
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"Integrity error creating fiscal sequence: {e}")
            raise InvariantViolation(
                f"Ya existe una secuencia activa para '{data.document_type.value}'",
                document_type=data.document_type.value
            )

    def get_sequence(self, sequence_id: UUID, tenant_id: UUID) -> FiscalSequence:
        sequence = self.db.query(FiscalSequence).filter(
            FiscalSequence.id == sequence_id,
            FiscalSequence.tenant_id == tenant_id
        ).first()
        if not sequence:
            raise SequenceNotFound(sequence_id)
        return sequence

    def list_sequences(
        self,
        tenant_id: UUID,
        document_type: Optional[FiscalDocumentType] = None,
        active_only: bool = False,
        today: Optional[date] = None
    ) -> List[FiscalSequenceStatus]:
        query = self.db.query(FiscalSequence).filter(FiscalSequence.tenant_id == tenant_id)
        if document_type:
            query = query.filter(FiscalSequence.document_type == document_type)
        if active_only:
            query = query.filter(FiscalSequence.is_active == True)  # noqa: E712

        sequences = query.order_by(FiscalSequence.document_type, FiscalSequence.start_number).all()
        return [self.sequence_status(s, today) for s in sequences]

    def sequence_status(self, sequence: FiscalSequence, today: Optional[date] = None) -> FiscalSequenceStatus:
        issued = sequence.current_number - sequence.start_number + 1
        next_number = None
        if sequence.is_active and not sequence.is_exhausted and not sequence.is_expired(today):
            next_number = format_fiscal_number(sequence.prefix, sequence.current_number + 1, sequence.padding)

        return FiscalSequenceStatus(
            sequence=FiscalSequenceOut.model_validate(sequence),
            dgii_code=sequence.document_type.dgii_code,
            next_number=next_number,
            issued=issued,
            remaining=sequence.remaining,
            is_expired=sequence.is_expired(today),
            is_exhausted=sequence.is_exhausted,
            is_low_stock=sequence.remaining <= settings.SEQUENCE_LOW_STOCK_THRESHOLD
        )

    def deactivate_sequence(self, sequence_id: UUID, tenant_id: UUID) -> FiscalSequence:
        """Retirar una secuencia. Los números no emitidos no se reutilizan."""
        sequence = self.get_sequence(sequence_id, tenant_id)
        if not sequence.is_active:
            return sequence

        sequence.is_active = False
        self.db.commit()
        self.db.refresh(sequence)
        logger.info(f"Deactivated fiscal sequence {sequence.id} at {sequence.current_number}")
        return sequence


class DocumentNumberService:
    """Numeración interna anual: FAC-2026-00001, COT-2026-0001."""

    WIDTHS = {
        DocumentKind.INVOICE: 5,
        DocumentKind.QUOTATION: 4,
    }

    def __init__(self, db: Session, max_retries: Optional[int] = None):
        self.db = db
        self.max_retries = max_retries or settings.SEQUENCE_MAX_RETRIES

    def _prefix(self, kind: DocumentKind) -> str:
        if kind == DocumentKind.INVOICE:
            return settings.INVOICE_NUMBER_PREFIX
        return settings.QUOTE_NUMBER_PREFIX

    def _ensure_counter(self, tenant_id: UUID, kind: DocumentKind, year: int) -> None:
        """
        Crea el contador del año si no existe.
        Debe llamarse antes de cualquier otro cambio pendiente en la sesión.
        """
        exists = self.db.execute(
            select(DocumentCounter.id).where(
                DocumentCounter.tenant_id == tenant_id,
                DocumentCounter.kind == kind,
                DocumentCounter.year == year
            )
        ).first()
        if exists:
            return

        try:
            self.db.add(DocumentCounter(tenant_id=tenant_id, kind=kind, year=year, current_number=0))
            self.db.commit()
        except IntegrityError:
            # Otro proceso lo creó primero
            self.db.rollback()

    def next_number(self, tenant_id: UUID, kind: DocumentKind, year: Optional[int] = None) -> str:
        year = year or date.today().year
        self._ensure_counter(tenant_id, kind, year)

        for attempt in range(1, self.max_retries + 1):
            current = self.db.execute(
                select(DocumentCounter.current_number).where(
                    DocumentCounter.tenant_id == tenant_id,
                    DocumentCounter.kind == kind,
                    DocumentCounter.year == year
                )
            ).scalar_one()

            result = self.db.execute(
                update(DocumentCounter)
                .where(and_(
                    DocumentCounter.tenant_id == tenant_id,
                    DocumentCounter.kind == kind,
                    DocumentCounter.year == year,
                    DocumentCounter.current_number == current
                ))
                .values(current_number=DocumentCounter.current_number + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return f"{self._prefix(kind)}-{year}-{str(current + 1).zfill(self.WIDTHS[kind])}"

        raise SequenceConflict(kind.value, self.max_retries)
