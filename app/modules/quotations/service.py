from sqlalchemy import or_, desc
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError
from decimal import Decimal
from typing import Optional
from uuid import UUID
from datetime import date, timedelta
import logging

from app.core.config import settings
from app.common.exceptions import (
    ConcurrencyConflict, FiscalError, InvalidTransition, QuotationNotFound
)
from app.common.mixins import utcnow
from app.modules.fiscal.models import DocumentKind
from app.modules.fiscal.service import DocumentNumberService
from app.modules.invoices.models import Invoice
from app.modules.invoices.schemas import InvoiceCreate
from app.modules.invoices.service import InvoiceService, apply_totals, build_line_items, validate_currency
from app.modules.quotations.models import Quotation, QuotationLineItem, QuotationStatus
from app.modules.quotations.schemas import (
    QuotationConvertRequest, QuotationCreate, QuotationStats, QuotationUpdate
)
from app.modules.taxes.calculator import compute_document_totals, round_money, sum_money
from app.modules.taxes.schemas import LineItemBase

logger = logging.getLogger(__name__)


def _line_items_from_rows(rows) -> list:
    return [
        LineItemBase(
            item_type=row.item_type,
            reference_id=row.reference_id,
            description=row.description,
            quantity=row.quantity,
            unit_price=row.unit_price,
            discount=row.discount,
            discount_type=row.discount_type,
            taxable=row.taxable
        )
        for row in rows
    ]


class QuotationService:
    def __init__(self, db: Session):
        self.db = db

    def _get_quotation(self, quotation_id: UUID, tenant_id: UUID) -> Quotation:
        quotation = self.db.query(Quotation).filter(
            Quotation.id == quotation_id,
            Quotation.tenant_id == tenant_id
        ).first()
        if not quotation:
            raise QuotationNotFound(quotation_id)
        return quotation

    def _compute(self, quotation: Quotation, items, tax_rate: Decimal) -> None:
        quotation.line_items = build_line_items(items, QuotationLineItem, quotation.currency)
        totals = compute_document_totals([item.to_line_input() for item in items], tax_rate, quotation.currency)
        apply_totals(quotation, totals, tax_rate)

    def create_quotation(self, quotation_data: QuotationCreate, tenant_id: UUID, user_id: UUID) -> Quotation:
        """Crear cotización en borrador"""
        validate_currency(quotation_data.currency, quotation_data.exchange_rate)
        tax_rate = quotation_data.tax_rate if quotation_data.tax_rate is not None else settings.DEFAULT_TAX_RATE
        valid_until = quotation_data.valid_until or (
            quotation_data.issue_date + timedelta(days=settings.DEFAULT_QUOTE_VALIDITY_DAYS)
        )

        try:
            number = DocumentNumberService(self.db).next_number(
                tenant_id, DocumentKind.QUOTATION, quotation_data.issue_date.year
            )
            quotation = Quotation(
                tenant_id=tenant_id,
                number=number,
                customer_id=quotation_data.customer_id,
                customer_name=quotation_data.customer_name,
                customer_tax_id=quotation_data.customer_tax_id,
                stored_status=QuotationStatus.DRAFT,
                issue_date=quotation_data.issue_date,
                valid_until=valid_until,
                currency=quotation_data.currency,
                exchange_rate=quotation_data.exchange_rate,
                notes=quotation_data.notes,
                terms_conditions=quotation_data.terms_conditions,
                created_by=user_id
            )
            self._compute(quotation, quotation_data.items, tax_rate)
            self.db.add(quotation)
            self.db.commit()
            self.db.refresh(quotation)

            logger.info(f"Created quotation {quotation.number} (tenant {tenant_id}, total {quotation.total})")
            return quotation

        except FiscalError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating quotation: {e}", exc_info=True)
            raise

    def update_quotation(self, quotation_id: UUID, quotation_data: QuotationUpdate, tenant_id: UUID) -> Quotation:
        """Editar una cotización en borrador o enviada"""
        quotation = self._get_quotation(quotation_id, tenant_id)
        current = quotation.status
        if current not in (QuotationStatus.DRAFT, QuotationStatus.SENT):
            raise InvalidTransition("la cotización", current, "editar")

        try:
            fields = quotation_data.model_dump(exclude_unset=True, exclude={"items", "tax_rate"})
            for field, value in fields.items():
                setattr(quotation, field, value)

            tax_rate = quotation_data.tax_rate if quotation_data.tax_rate is not None else Decimal(quotation.tax_rate)
            if quotation_data.items is not None:
                self._compute(quotation, quotation_data.items, tax_rate)
            elif quotation_data.tax_rate is not None:
                self._compute(quotation, _line_items_from_rows(quotation.line_items), tax_rate)

            self.db.commit()
            self.db.refresh(quotation)
            logger.info(f"Updated quotation {quotation.number}")
            return quotation

        except Exception as e:
            self.db.rollback()
            logger.error(f"Error updating quotation {quotation_id}: {e}", exc_info=True)
            raise

    def _transition(self, quotation_id: UUID, tenant_id: UUID, target: QuotationStatus, action: str) -> Quotation:
        quotation = self._get_quotation(quotation_id, tenant_id)
        current = quotation.status

        allowed = {
            QuotationStatus.SENT: (QuotationStatus.DRAFT,),
            QuotationStatus.ACCEPTED: (QuotationStatus.DRAFT, QuotationStatus.SENT),
            QuotationStatus.REJECTED: (QuotationStatus.DRAFT, QuotationStatus.SENT),
        }
        if current not in allowed[target]:
            raise InvalidTransition("la cotización", current, action)

        quotation.stored_status = target
        now = utcnow()
        if target == QuotationStatus.SENT:
            quotation.sent_at = now
        elif target == QuotationStatus.ACCEPTED:
            quotation.accepted_at = now
        else:
            quotation.rejected_at = now

        self.db.commit()
        self.db.refresh(quotation)
        logger.info(f"Quotation {quotation.number} {current.value} -> {target.value}")
        return quotation

    def send_quotation(self, quotation_id: UUID, tenant_id: UUID) -> Quotation:
        return self._transition(quotation_id, tenant_id, QuotationStatus.SENT, "enviar")

    def accept_quotation(self, quotation_id: UUID, tenant_id: UUID) -> Quotation:
        return self._transition(quotation_id, tenant_id, QuotationStatus.ACCEPTED, "aceptar")

    def reject_quotation(self, quotation_id: UUID, tenant_id: UUID) -> Quotation:
        return self._transition(quotation_id, tenant_id, QuotationStatus.REJECTED, "rechazar")

    def convert_to_invoice(
        self,
        quotation_id: UUID,
        tenant_id: UUID,
        user_id: UUID,
        request: Optional[QuotationConvertRequest] = None,
        today: Optional[date] = None
    ) -> Invoice:
        """
        Convertir una cotización en factura

        Copia líneas y totales, enlaza la factura con `quotation_id` y marca
        la cotización como aceptada. Con `finalize` la factura se emite con
        NCF; todo ocurre en una sola transacción.
        """
        request = request or QuotationConvertRequest()
        today = today or date.today()
        quotation = self._get_quotation(quotation_id, tenant_id)
        current = quotation.status_on(today)

        if current not in (QuotationStatus.DRAFT, QuotationStatus.SENT, QuotationStatus.ACCEPTED):
            raise InvalidTransition("la cotización", current, "convertir en factura")

        invoice_data = InvoiceCreate(
            customer_id=quotation.customer_id,
            customer_name=quotation.customer_name,
            customer_tax_id=quotation.customer_tax_id,
            issue_date=request.issue_date or today,
            payment_terms=request.payment_terms,
            custom_days=request.custom_days,
            currency=quotation.currency,
            exchange_rate=quotation.exchange_rate,
            tax_rate=quotation.tax_rate,
            fiscal_document_type=request.fiscal_document_type,
            notes=f"Generada desde la cotización {quotation.number}",
            items=_line_items_from_rows(quotation.line_items)
        )

        invoice_service = InvoiceService(self.db)
        try:
            invoice = invoice_service.create_invoice(
                invoice_data, tenant_id, user_id, quotation_id=quotation.id, commit=False
            )

            if request.finalize:
                invoice_service.finalize_invoice(
                    invoice.id, tenant_id, request.fiscal_document_type, today=today, commit=False
                )

            if quotation.stored_status != QuotationStatus.ACCEPTED:
                quotation.stored_status = QuotationStatus.ACCEPTED
                quotation.accepted_at = utcnow()
            quotation.converted_invoice_id = invoice.id

            self.db.commit()
            self.db.refresh(invoice)

            logger.info(f"Converted quotation {quotation.number} into invoice {invoice.number}")
            return invoice

        except FiscalError:
            self.db.rollback()
            raise
        except StaleDataError:
            self.db.rollback()
            raise ConcurrencyConflict("Cotización", quotation_id)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error converting quotation {quotation_id}: {e}", exc_info=True)
            raise

    def get_quotation_by_id(self, quotation_id: UUID, tenant_id: UUID) -> Quotation:
        quotation = self.db.query(Quotation).options(
            selectinload(Quotation.line_items)
        ).filter(
            Quotation.id == quotation_id,
            Quotation.tenant_id == tenant_id
        ).first()
        if not quotation:
            raise QuotationNotFound(quotation_id)
        return quotation

    def get_quotations(
        self,
        tenant_id: UUID,
        status: Optional[QuotationStatus] = None,
        customer_id: Optional[UUID] = None,
        search: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
        today: Optional[date] = None
    ) -> dict:
        """
        Listar cotizaciones

        `expired` y `converted` se derivan, así que el filtro por estado se
        traduce a condiciones sobre las columnas.
        """
        today = today or date.today()
        query = self.db.query(Quotation).filter(Quotation.tenant_id == tenant_id)

        if customer_id:
            query = query.filter(Quotation.customer_id == customer_id)
        if search:
            query = query.filter(or_(
                Quotation.number.ilike(f"%{search}%"),
                Quotation.customer_name.ilike(f"%{search}%"),
                Quotation.notes.ilike(f"%{search}%")
            ))

        if status == QuotationStatus.CONVERTED:
            query = query.filter(Quotation.converted_invoice_id.isnot(None))
        elif status == QuotationStatus.EXPIRED:
            query = query.filter(
                Quotation.converted_invoice_id.is_(None),
                Quotation.stored_status.in_([QuotationStatus.DRAFT, QuotationStatus.SENT]),
                Quotation.valid_until < today
            )
        elif status in (QuotationStatus.DRAFT, QuotationStatus.SENT):
            query = query.filter(
                Quotation.converted_invoice_id.is_(None),
                Quotation.stored_status == status,
                Quotation.valid_until >= today
            )
        elif status:
            query = query.filter(
                Quotation.converted_invoice_id.is_(None),
                Quotation.stored_status == status
            )

        query = query.order_by(desc(Quotation.created_at), desc(Quotation.number))
        total = query.count()
        quotations = query.offset(offset).limit(limit).all()

        return {
            "quotations": quotations,
            "total": total,
            "limit": limit,
            "offset": offset
        }

    def get_quotation_stats(
        self, tenant_id: UUID, currency: Optional[str] = None, today: Optional[date] = None
    ) -> QuotationStats:
        """Resumen de cotizaciones en una moneda"""
        currency = (currency or settings.LOCAL_CURRENCY).upper()
        today = today or date.today()

        quotations = self.db.query(Quotation).filter(
            Quotation.tenant_id == tenant_id,
            Quotation.currency == currency
        ).all()

        counts = {st: 0 for st in QuotationStatus}
        won_amounts = []
        for quotation in quotations:
            st = quotation.status_on(today)
            counts[st] += 1
            if st in (QuotationStatus.ACCEPTED, QuotationStatus.CONVERTED):
                won_amounts.append((quotation.total, quotation.currency))
        accepted_value = sum_money(won_amounts, currency)

        total = len(quotations)
        won = counts[QuotationStatus.ACCEPTED] + counts[QuotationStatus.CONVERTED]
        conversion_rate = (
            (Decimal(counts[QuotationStatus.CONVERTED]) / Decimal(total) * 100).quantize(Decimal('0.01'))
            if total else Decimal('0.00')
        )

        return QuotationStats(
            currency=currency,
            total=total,
            pending=counts[QuotationStatus.DRAFT] + counts[QuotationStatus.SENT],
            accepted=won,
            rejected=counts[QuotationStatus.REJECTED],
            expired=counts[QuotationStatus.EXPIRED],
            converted=counts[QuotationStatus.CONVERTED],
            accepted_value=round_money(accepted_value, currency),
            conversion_rate=conversion_rate
        )
