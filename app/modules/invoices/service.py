from sqlalchemy import or_, desc, func
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError
from decimal import Decimal
from typing import List, Optional
from uuid import UUID
from datetime import date
import logging

from app.core.config import settings
from app.common.exceptions import (
    ConcurrencyConflict, FiscalError, InvalidTransition, InvoiceNotFound, ValidationError
)
from app.common.mixins import utcnow
from app.modules.fiscal.models import DocumentKind, FiscalDocumentType
from app.modules.fiscal.service import DocumentNumberService, SequenceAllocator
from app.modules.invoices.models import Invoice, InvoiceLineItem, InvoiceStatus
from app.modules.invoices.schemas import (
    BillingStats, InvoiceCreate, InvoiceFilters, InvoiceUpdate
)
from app.modules.taxes.calculator import (
    DocumentTotals, compute_document_totals, compute_due_date, compute_line_total, round_money, sum_money
)
from app.modules.taxes.schemas import LineItemBase

logger = logging.getLogger(__name__)


def build_line_items(items: List[LineItemBase], model, currency: str) -> list:
    """Crea las filas de línea (InvoiceLineItem, QuotationLineItem...) en orden."""
    rows = []
    for position, item in enumerate(items, start=1):
        rows.append(model(
            position=position,
            item_type=item.item_type,
            reference_id=item.reference_id,
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            discount=item.discount,
            discount_type=item.discount_type,
            taxable=item.taxable,
            line_total=round_money(
                compute_line_total(item.quantity, item.unit_price, item.discount, item.discount_type),
                currency
            )
        ))
    return rows


def apply_totals(document, totals: DocumentTotals, tax_rate: Decimal) -> None:
    document.tax_rate = tax_rate
    document.subtotal = totals.subtotal
    document.discount_amount = totals.discount_total
    document.taxable_amount = totals.taxable_amount
    document.exempt_amount = totals.exempt_amount
    document.tax_amount = totals.tax_amount
    document.total = totals.total


def validate_currency(currency: str, exchange_rate: Decimal) -> None:
    if currency not in settings.SUPPORTED_CURRENCIES:
        raise ValidationError(
            f"Moneda no soportada: {currency}. Use una de {', '.join(settings.SUPPORTED_CURRENCIES)}",
            field="currency"
        )
    if currency == settings.LOCAL_CURRENCY and Decimal(exchange_rate) != Decimal('1'):
        raise ValidationError(
            f"La tasa de cambio debe ser 1 para documentos en {settings.LOCAL_CURRENCY}",
            field="exchange_rate"
        )


class InvoiceService:
    def __init__(self, db: Session):
        self.db = db

    def _get_invoice(self, invoice_id: UUID, tenant_id: UUID) -> Invoice:
        invoice = self.db.query(Invoice).filter(
            Invoice.id == invoice_id,
            Invoice.tenant_id == tenant_id
        ).first()
        if not invoice:
            raise InvoiceNotFound(invoice_id)
        return invoice

    def _compute(self, invoice: Invoice, items: List[LineItemBase], tax_rate: Decimal) -> None:
        rows = build_line_items(items, InvoiceLineItem, invoice.currency)
        totals = compute_document_totals([item.to_line_input() for item in items], tax_rate, invoice.currency)
        invoice.line_items = rows
        apply_totals(invoice, totals, tax_rate)

    def create_invoice(
        self,
        invoice_data: InvoiceCreate,
        tenant_id: UUID,
        user_id: UUID,
        quotation_id: Optional[UUID] = None,
        commit: bool = True
    ) -> Invoice:
        """
        Crear factura en borrador

        Los totales salen de la calculadora; la fecha de vencimiento se deriva
        de los términos de pago si no se indica. La factura no recibe número
        fiscal hasta que se finaliza.
        """
        validate_currency(invoice_data.currency, invoice_data.exchange_rate)
        tax_rate = invoice_data.tax_rate if invoice_data.tax_rate is not None else settings.DEFAULT_TAX_RATE
        due_date = invoice_data.due_date or compute_due_date(
            invoice_data.issue_date, invoice_data.payment_terms, invoice_data.custom_days
        )

        try:
            number = DocumentNumberService(self.db).next_number(
                tenant_id, DocumentKind.INVOICE, invoice_data.issue_date.year
            )

            invoice = Invoice(
                tenant_id=tenant_id,
                number=number,
                quotation_id=quotation_id,
                customer_id=invoice_data.customer_id,
                customer_name=invoice_data.customer_name,
                customer_tax_id=invoice_data.customer_tax_id,
                fiscal_document_type=invoice_data.fiscal_document_type,
                issue_date=invoice_data.issue_date,
                due_date=due_date,
                payment_terms=invoice_data.payment_terms,
                currency=invoice_data.currency,
                exchange_rate=invoice_data.exchange_rate,
                notes=invoice_data.notes,
                paid_amount=Decimal('0'),
                created_by=user_id
            )
            self._compute(invoice, invoice_data.items, tax_rate)
            self.db.add(invoice)

            if commit:
                self.db.commit()
                self.db.refresh(invoice)
                logger.info(f"Created draft invoice {invoice.number} (tenant {tenant_id}, total {invoice.total})")
            else:
                self.db.flush()

            return invoice

        except FiscalError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating invoice: {e}", exc_info=True)
            raise

    def update_invoice(self, invoice_id: UUID, invoice_data: InvoiceUpdate, tenant_id: UUID) -> Invoice:
        """Editar un borrador; reemplaza las líneas si se envían."""
        invoice = self._get_invoice(invoice_id, tenant_id)

        if invoice.status != InvoiceStatus.DRAFT:
            raise InvalidTransition("la factura", invoice.status, "editar")

        try:
            fields = invoice_data.model_dump(exclude_unset=True, exclude={"items", "tax_rate", "custom_days"})
            for field, value in fields.items():
                setattr(invoice, field, value)

            if invoice_data.payment_terms is not None and invoice_data.due_date is None:
                invoice.due_date = compute_due_date(
                    invoice.issue_date, invoice.payment_terms, invoice_data.custom_days
                )
            if invoice.due_date and invoice.due_date < invoice.issue_date:
                raise ValidationError(
                    "La fecha de vencimiento no puede ser anterior a la fecha de emisión", field="due_date"
                )

            tax_rate = invoice_data.tax_rate if invoice_data.tax_rate is not None else Decimal(invoice.tax_rate)
            if invoice_data.items is not None:
                self._compute(invoice, invoice_data.items, tax_rate)
            elif invoice_data.tax_rate is not None:
                items = [
                    LineItemBase(
                        item_type=line.item_type,
                        reference_id=line.reference_id,
                        description=line.description,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        discount=line.discount,
                        discount_type=line.discount_type,
                        taxable=line.taxable
                    )
                    for line in invoice.line_items
                ]
                self._compute(invoice, items, tax_rate)

            self.db.commit()
            self.db.refresh(invoice)
            logger.info(f"Updated draft invoice {invoice.number}")
            return invoice

        except FiscalError:
            self.db.rollback()
            raise
        except StaleDataError:
            self.db.rollback()
            raise ConcurrencyConflict("Factura", invoice_id)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error updating invoice {invoice_id}: {e}", exc_info=True)
            raise

    def finalize_invoice(
        self,
        invoice_id: UUID,
        tenant_id: UUID,
        fiscal_document_type: Optional[FiscalDocumentType] = None,
        today: Optional[date] = None,
        commit: bool = True
    ) -> Invoice:
        """
        Emitir la factura: draft -> pending

        Asigna el NCF y lo estampa en la misma transacción que el avance del
        contador de la secuencia. Si algo falla, ni la factura ni la
        secuencia cambian.
        """
        invoice = self._get_invoice(invoice_id, tenant_id)

        if invoice.is_cancelled or invoice.is_finalized:
            raise InvalidTransition("la factura", invoice.status, "finalizar")
        if not invoice.line_items:
            raise ValidationError("La factura debe tener al menos una línea", field="items")
        if invoice.customer_id is None:
            raise ValidationError("La factura debe tener un cliente", field="customer_id")

        document_type = FiscalDocumentType(
            fiscal_document_type or invoice.fiscal_document_type or FiscalDocumentType.FINAL_CONSUMER
        )
        if document_type == FiscalDocumentType.CREDIT_FISCAL and not invoice.customer_tax_id:
            raise ValidationError(
                "Las facturas de crédito fiscal requieren el RNC o cédula del cliente",
                field="customer_tax_id"
            )

        try:
            allocated = SequenceAllocator(self.db).allocate(tenant_id, document_type, today=today, commit=False)

            invoice.fiscal_document_type = document_type
            invoice.fiscal_number = allocated.number
            invoice.fiscal_sequence_id = allocated.sequence_id
            invoice.fiscal_expiration_date = allocated.expiration_date
            invoice.finalized_at = utcnow()
            if invoice.due_date is None:
                invoice.due_date = compute_due_date(invoice.issue_date, invoice.payment_terms)

            if commit:
                self.db.commit()
                self.db.refresh(invoice)
            else:
                self.db.flush()

            logger.info(f"Finalized invoice {invoice.number} with fiscal number {invoice.fiscal_number}")
            return invoice

        except FiscalError:
            self.db.rollback()
            raise
        except StaleDataError:
            self.db.rollback()
            logger.warning(f"Invoice {invoice_id} changed during finalization")
            raise ConcurrencyConflict("Factura", invoice_id)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error finalizing invoice {invoice_id}: {e}", exc_info=True)
            raise

    def cancel_invoice(self, invoice_id: UUID, reason: str, tenant_id: UUID, user_id: UUID) -> Invoice:
        """
        Anular una factura emitida

        Se permite desde pending, partial y overdue. El número fiscal queda
        consumido: la secuencia no se toca y la factura sale de los reportes.
        Los pagos existentes permanecen en el ledger.
        """
        if not reason or not reason.strip():
            raise ValidationError("Debe indicar el motivo de la anulación", field="reason")

        invoice = self._get_invoice(invoice_id, tenant_id)
        current = invoice.status

        if current == InvoiceStatus.CANCELLED:
            raise InvalidTransition("la factura", current, "anular", "La factura ya está anulada")
        if current == InvoiceStatus.DRAFT:
            raise InvalidTransition(
                "la factura", current, "anular", "Los borradores no se anulan; edítelos o descártelos"
            )
        if current == InvoiceStatus.PAID:
            raise InvalidTransition("la factura", current, "anular", "No se pueden anular facturas pagadas")

        try:
            invoice.cancelled_at = utcnow()
            invoice.cancelled_reason = reason.strip()
            invoice.cancelled_by = user_id

            self.db.commit()
            self.db.refresh(invoice)

            logger.info(f"Cancelled invoice {invoice.number} ({invoice.fiscal_number}) - Reason: {reason}")
            return invoice

        except StaleDataError:
            self.db.rollback()
            raise ConcurrencyConflict("Factura", invoice_id)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error cancelling invoice {invoice_id}: {e}", exc_info=True)
            raise

    def get_invoice_by_id(self, invoice_id: UUID, tenant_id: UUID) -> Invoice:
        """Obtener factura por ID con líneas y pagos"""
        invoice = self.db.query(Invoice).options(
            selectinload(Invoice.line_items),
            selectinload(Invoice.payments)
        ).filter(
            Invoice.id == invoice_id,
            Invoice.tenant_id == tenant_id
        ).first()

        if not invoice:
            raise InvoiceNotFound(invoice_id)

        return invoice

    def _filtered_query(self, tenant_id: UUID, filters: InvoiceFilters, with_status: bool = True):
        query = self.db.query(Invoice).filter(Invoice.tenant_id == tenant_id)

        if with_status and filters.status:
            query = query.filter(Invoice.status == filters.status.value)
        if filters.customer_id:
            query = query.filter(Invoice.customer_id == filters.customer_id)
        if filters.fiscal_document_type:
            query = query.filter(Invoice.fiscal_document_type == filters.fiscal_document_type)
        if filters.has_fiscal_number is not None:
            if filters.has_fiscal_number:
                query = query.filter(Invoice.fiscal_number.isnot(None))
            else:
                query = query.filter(Invoice.fiscal_number.is_(None))
        if filters.currency:
            query = query.filter(Invoice.currency == filters.currency.upper())
        if filters.date_from:
            query = query.filter(Invoice.issue_date >= filters.date_from)
        if filters.date_to:
            query = query.filter(Invoice.issue_date <= filters.date_to)
        if filters.search:
            query = query.filter(or_(
                Invoice.number.ilike(f"%{filters.search}%"),
                Invoice.fiscal_number.ilike(f"%{filters.search}%"),
                Invoice.customer_name.ilike(f"%{filters.search}%"),
                Invoice.notes.ilike(f"%{filters.search}%")
            ))
        return query

    def get_invoices(self, tenant_id: UUID, filters: InvoiceFilters, limit: int = 100, offset: int = 0) -> dict:
        """Obtener lista de facturas con filtros y conteo por estado"""
        query = self._filtered_query(tenant_id, filters).order_by(desc(Invoice.created_at), desc(Invoice.number))

        total = query.count()
        invoices = query.offset(offset).limit(limit).all()

        # Conteos por estado con los demás filtros aplicados
        status_rows = self._filtered_query(tenant_id, filters, with_status=False).with_entities(
            Invoice.status, func.count(Invoice.id)
        ).group_by(Invoice.status).all()
        counts = {InvoiceStatus(value): count for value, count in status_rows}

        counts_by_status = []
        for st in InvoiceStatus:
            count = counts.get(st, 0)
            if filters.status and filters.status != st:
                count = 0
            counts_by_status.append({"status": st, "count": count})

        return {
            "invoices": invoices,
            "total": total,
            "limit": limit,
            "offset": offset,
            "applied_filters": filters,
            "counts_by_status": counts_by_status
        }

    def get_billing_stats(self, tenant_id: UUID, currency: Optional[str] = None, today: Optional[date] = None) -> BillingStats:
        """
        Indicadores de cobro de facturas emitidas y no anuladas, en una sola moneda.
        """
        currency = (currency or settings.LOCAL_CURRENCY).upper()
        today = today or date.today()
        month_start = today.replace(day=1)

        invoices = self.db.query(Invoice).filter(
            Invoice.tenant_id == tenant_id,
            Invoice.currency == currency,
            Invoice.finalized_at.isnot(None),
            Invoice.cancelled_at.is_(None)
        ).all()

        statuses = {invoice.id: invoice.status_on(today) for invoice in invoices}
        open_statuses = (InvoiceStatus.PENDING, InvoiceStatus.PARTIAL, InvoiceStatus.OVERDUE)
        pending = [i for i in invoices if statuses[i.id] in open_statuses]
        overdue = [i for i in invoices if statuses[i.id] == InvoiceStatus.OVERDUE]
        this_month = [i for i in invoices if i.issue_date >= month_start]

        def total_of(rows, attribute):
            return round_money(sum_money(((getattr(i, attribute), i.currency) for i in rows), currency), currency)

        pending_count = len(pending)
        overdue_count = len(overdue)

        return BillingStats(
            currency=currency,
            total_invoiced=total_of(invoices, "total"),
            invoiced_this_month=total_of(this_month, "total"),
            total_collected=total_of(invoices, "paid_amount"),
            pending_collection=total_of(pending, "amount_due"),
            overdue_amount=total_of(overdue, "amount_due"),
            invoices_count=len(invoices),
            pending_count=pending_count,
            overdue_count=overdue_count
        )
