"""
Period report service (DGII 606 / 607)

Aggregates the fiscal documents issued in a calendar month:

- 607 (sales): issued, non-cancelled invoices with a fiscal number.
- 606 (purchases): non-voided supplier bills.

Documents are grouped by fiscal document type (ordered by DGII code) and
normalized to the report currency. Generation is deterministic: the same
documents always produce the same entries, breakdown and checksum, so a
draft report can be regenerated at will; an unchanged draft is left exactly
as stored. Submitted and accepted reports are locked.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import desc, select, union
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.common.exceptions import (
    ConcurrencyConflict, CurrencyMismatch, InvalidTransition, InvariantViolation,
    ReportLocked, ReportNotFound, ValidationError
)
from app.common.mixins import utcnow
from app.modules.bills.models import BillStatus, SupplierBill
from app.modules.fiscal.models import FiscalDocumentType
from app.modules.invoices.models import Invoice
from app.modules.reports.models import PeriodReport, ReportStatus, ReportType
from app.modules.reports.services.base import BaseReportService, period_bounds
from app.modules.taxes.calculator import convert_to_currency, round_money, sum_money

logger = logging.getLogger(__name__)

AMOUNT_FIELDS = ("taxable_amount", "exempt_amount", "tax_amount", "total_amount")


@dataclass(frozen=True)
class TaxBalance:
    period: str
    currency: str
    tax_collected: Decimal
    tax_paid: Decimal
    balance: Decimal
    sales_report_status: ReportStatus
    purchases_report_status: ReportStatus


def compute_tax_balance(sales_report: PeriodReport, purchases_report: PeriodReport) -> TaxBalance:
    """
    ITBIS a pagar (positivo) o saldo a favor (negativo) de un período.

    Función pura sobre dos reportes ya generados del mismo período y moneda.
    """
    if ReportType(sales_report.report_type) != ReportType.SALES:
        raise ValidationError("Se esperaba un reporte 607 de ventas", field="sales_report")
    if ReportType(purchases_report.report_type) != ReportType.PURCHASES:
        raise ValidationError("Se esperaba un reporte 606 de compras", field="purchases_report")
    if sales_report.period != purchases_report.period:
        raise ValidationError(
            "Los reportes deben ser del mismo período",
            sales_period=sales_report.period,
            purchases_period=purchases_report.period
        )
    if sales_report.currency != purchases_report.currency:
        raise CurrencyMismatch(sales_report.currency, purchases_report.currency)

    tax_collected = Decimal(sales_report.total_tax)
    tax_paid = Decimal(purchases_report.total_tax)
    return TaxBalance(
        period=sales_report.period,
        currency=sales_report.currency,
        tax_collected=tax_collected,
        tax_paid=tax_paid,
        balance=round_money(tax_collected - tax_paid, sales_report.currency),
        sales_report_status=ReportStatus(sales_report.status),
        purchases_report_status=ReportStatus(purchases_report.status)
    )


def sum_entries(entries: List[Dict], field: str, currency: str) -> Decimal:
    """Sum one amount column; every entry must already be in `currency`"""
    return round_money(sum_money(((entry[field], entry["currency"]) for entry in entries), currency), currency)


def summarize_entries(entries: List[Dict], currency: str) -> List[Dict]:
    """Per document type totals, ordered by DGII code"""
    groups: Dict[str, List[Dict]] = {}
    for entry in entries:
        groups.setdefault(entry["fiscal_document_type"], []).append(entry)

    breakdown = []
    for document_type, rows in sorted(groups.items(), key=lambda item: item[1][0]["dgii_code"]):
        breakdown.append({
            "fiscal_document_type": document_type,
            "dgii_code": rows[0]["dgii_code"],
            "count": len(rows),
            **{field: str(sum_entries(rows, field, currency)) for field in AMOUNT_FIELDS}
        })
    return breakdown


def report_checksum(period: str, report_type: ReportType, currency: str, entries: List[Dict]) -> str:
    payload = json.dumps(
        {"period": period, "report_type": report_type.value, "currency": currency, "entries": entries},
        sort_keys=True,
        separators=(",", ":")
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class FiscalReportService(BaseReportService):
    """Generation and DGII lifecycle of 606/607 period reports"""

    def __init__(self, db: Session, tenant_id: UUID):
        super().__init__(db, tenant_id)

    # ===== Recolección =====

    def _normalize(self, document, currency: str) -> Dict[str, str]:
        amounts = {}
        for field, value in (
            ("taxable_amount", document.taxable_amount),
            ("exempt_amount", document.exempt_amount),
            ("tax_amount", document.tax_amount),
            ("total_amount", document.total),
        ):
            amounts[field] = str(round_money(
                convert_to_currency(
                    value, document.currency, document.exchange_rate, currency, settings.LOCAL_CURRENCY
                ),
                currency
            ))
        amounts["currency"] = currency
        return amounts

    def _entry(self, document, document_number, tax_id, name, currency: str) -> Dict:
        document_type = FiscalDocumentType(document.fiscal_document_type)
        return {
            "document_id": str(document.id),
            "document_number": document_number,
            "fiscal_number": document.fiscal_number,
            "fiscal_document_type": document_type.value,
            "dgii_code": document_type.dgii_code,
            "counterparty_tax_id": tax_id,
            "counterparty_name": name,
            "issue_date": document.issue_date.isoformat(),
            "original_currency": document.currency,
            "exchange_rate": str(Decimal(document.exchange_rate)),
            **self._normalize(document, currency)
        }

    def _collect_entries(self, report_type: ReportType, start: date, end: date, currency: str) -> List[Dict]:
        if report_type == ReportType.SALES:
            query = self._apply_date_filter(self._get_base_invoice_query(), Invoice.issue_date, start, end)
            if currency != settings.LOCAL_CURRENCY:
                query = query.filter(Invoice.currency == currency)
            invoices = query.order_by(Invoice.issue_date, Invoice.fiscal_number, Invoice.id).all()
            return [
                self._entry(invoice, invoice.number, invoice.customer_tax_id, invoice.customer_name, currency)
                for invoice in invoices
            ]

        query = self._apply_date_filter(self._get_base_bill_query(), SupplierBill.issue_date, start, end)
        if currency != settings.LOCAL_CURRENCY:
            query = query.filter(SupplierBill.currency == currency)
        bills = query.order_by(SupplierBill.issue_date, SupplierBill.fiscal_number, SupplierBill.id).all()
        return [
            self._entry(bill, None, bill.supplier_tax_id, bill.supplier_name, currency)
            for bill in bills
        ]

    def _resolve_currency(self, currency: Optional[str]) -> str:
        currency = (currency or settings.LOCAL_CURRENCY).upper()
        if currency not in settings.SUPPORTED_CURRENCIES:
            raise ValidationError(f"Moneda no soportada: {currency}", field="currency")
        return currency

    def _find(self, period: str, report_type: ReportType, currency: str) -> Optional[PeriodReport]:
        return self.db.query(PeriodReport).filter(
            PeriodReport.tenant_id == self.tenant_id,
            PeriodReport.period == period,
            PeriodReport.report_type == report_type,
            PeriodReport.currency == currency
        ).first()

    # ===== Generación =====

    def generate_report(
        self,
        period: str,
        report_type: ReportType,
        currency: Optional[str] = None,
        user_id: Optional[UUID] = None,
        today: Optional[date] = None
    ) -> PeriodReport:
        """
        Generar (o regenerar) el reporte de un período

        Sobrescribe un borrador o un reporte rechazado; falla con
        ReportLocked si el reporte ya fue enviado o aceptado. Un período
        abierto produce un borrador que se puede regenerar al cierre.
        """
        report_type = ReportType(report_type)
        currency = self._resolve_currency(currency)
        start, end = period_bounds(period)
        today = today or date.today()
        if start > today:
            raise ValidationError(f"No se puede generar el reporte de un período futuro ({period})", field="period")

        existing = self._find(period, report_type, currency)
        if existing is not None and existing.is_locked:
            logger.warning(f"Report {report_type.value} {period} ({currency}) is {existing.status.value}; regeneration refused")
            raise ReportLocked(period, report_type, existing.status)

        entries = self._collect_entries(report_type, start, end, currency)
        checksum = report_checksum(period, report_type, currency, entries)
        if existing is not None and existing.status == ReportStatus.DRAFT and existing.checksum == checksum:
            logger.debug(f"Report {report_type.value} {period} ({currency}) unchanged")
            return existing

        breakdown = summarize_entries(entries, currency)

        try:
            report = existing or PeriodReport(
                tenant_id=self.tenant_id,
                period=period,
                report_type=report_type,
                currency=currency
            )
            report.status = ReportStatus.DRAFT
            report.entries = entries
            report.breakdown = breakdown
            report.total_records = len(entries)
            report.total_amount = sum_entries(entries, "total_amount", currency)
            report.total_tax = sum_entries(entries, "tax_amount", currency)
            report.checksum = checksum
            report.generated_at = utcnow()
            report.generated_by = user_id
            report.submitted_at = None
            report.submitted_by = None
            report.resolved_at = None
            report.dgii_reference = None
            report.rejection_errors = None

            if existing is None:
                self.db.add(report)
            self.db.commit()
            self.db.refresh(report)

            logger.info(
                f"Generated {report_type.value} report for {period} ({currency}): "
                f"{report.total_records} records, total {report.total_amount}, tax {report.total_tax}"
            )
            return report

        except (StaleDataError, IntegrityError):
            self.db.rollback()
            logger.warning(f"Concurrent generation of {report_type.value} report for {period}")
            raise ConcurrencyConflict("Reporte", f"{report_type.value}-{period}")
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error generating {report_type.value} report for {period}: {e}", exc_info=True)
            raise

    # ===== Ciclo de vida DGII =====

    def submit_report(
        self,
        report_id: UUID,
        user_id: UUID,
        dgii_reference: Optional[str] = None,
        today: Optional[date] = None
    ) -> PeriodReport:
        """
        Marcar un borrador como enviado a la DGII (draft -> submitted)

        Solo períodos cerrados. Si los documentos cambiaron desde la última
        generación el envío se rechaza y hay que regenerar primero.
        """
        report = self.get_report(report_id)
        if report.status != ReportStatus.DRAFT:
            raise InvalidTransition("el reporte", report.status, "enviar")

        _, end = period_bounds(report.period)
        today = today or date.today()
        if end >= today:
            raise ValidationError(
                f"El período {report.period} aún no ha cerrado; no se puede enviar", field="period"
            )

        start, _ = period_bounds(report.period)
        current = self._collect_entries(ReportType(report.report_type), start, end, report.currency)
        if report_checksum(report.period, ReportType(report.report_type), report.currency, current) != report.checksum:
            raise InvariantViolation(
                "Los documentos del período cambiaron desde la generación; regenere el reporte antes de enviarlo",
                report_id=report.id
            )

        try:
            report.status = ReportStatus.SUBMITTED
            report.submitted_at = utcnow()
            report.submitted_by = user_id
            report.dgii_reference = dgii_reference

            self.db.commit()
            self.db.refresh(report)

            logger.info(f"Submitted {report.report_type.value} report for {report.period} ({report.total_records} records)")
            return report

        except StaleDataError:
            self.db.rollback()
            raise ConcurrencyConflict("Reporte", report_id)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error submitting report {report_id}: {e}", exc_info=True)
            raise

    def resolve_report(
        self,
        report_id: UUID,
        accepted: bool,
        errors: Optional[List[str]] = None,
        dgii_reference: Optional[str] = None
    ) -> PeriodReport:
        """Registrar la respuesta de la DGII (submitted -> accepted | rejected)."""
        report = self.get_report(report_id)
        if report.status != ReportStatus.SUBMITTED:
            raise InvalidTransition("el reporte", report.status, "resolver")

        try:
            report.status = ReportStatus.ACCEPTED if accepted else ReportStatus.REJECTED
            report.resolved_at = utcnow()
            report.rejection_errors = None if accepted else list(errors or [])
            if dgii_reference:
                report.dgii_reference = dgii_reference

            self.db.commit()
            self.db.refresh(report)

            logger.info(f"Report {report.report_type.value} {report.period} resolved as {report.status.value}")
            return report

        except StaleDataError:
            self.db.rollback()
            raise ConcurrencyConflict("Reporte", report_id)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error resolving report {report_id}: {e}", exc_info=True)
            raise

    # ===== Consultas =====

    def get_report(self, report_id: UUID) -> PeriodReport:
        report = self.db.query(PeriodReport).filter(
            PeriodReport.id == report_id,
            PeriodReport.tenant_id == self.tenant_id
        ).first()
        if not report:
            raise ReportNotFound(report_id=report_id)
        return report

    def find_report(self, period: str, report_type: ReportType, currency: Optional[str] = None) -> PeriodReport:
        currency = self._resolve_currency(currency)
        report = self._find(period, ReportType(report_type), currency)
        if not report:
            raise ReportNotFound(period=period, report_type=ReportType(report_type).value, currency=currency)
        return report

    def list_reports(
        self,
        period: Optional[str] = None,
        report_type: Optional[ReportType] = None,
        status: Optional[ReportStatus] = None,
        limit: int = 100,
        offset: int = 0
    ) -> dict:
        query = self.db.query(PeriodReport).filter(PeriodReport.tenant_id == self.tenant_id)
        if period:
            query = query.filter(PeriodReport.period == period)
        if report_type:
            query = query.filter(PeriodReport.report_type == report_type)
        if status:
            query = query.filter(PeriodReport.status == status)

        total = query.count()
        reports = query.order_by(
            desc(PeriodReport.period), PeriodReport.report_type, PeriodReport.currency
        ).offset(offset).limit(limit).all()

        return {"reports": reports, "total": total, "limit": limit, "offset": offset}

    def get_tax_balance(self, period: str, currency: Optional[str] = None) -> TaxBalance:
        """Balance de ITBIS a partir de los reportes 607 y 606 ya generados"""
        sales = self.find_report(period, ReportType.SALES, currency)
        purchases = self.find_report(period, ReportType.PURCHASES, currency)
        return compute_tax_balance(sales, purchases)


def tenants_with_activity(db: Session, period: str) -> List[UUID]:
    """Clinics with invoices or supplier bills issued in the period"""
    start, end = period_bounds(period)
    invoices = select(Invoice.tenant_id).where(
        Invoice.issue_date >= start,
        Invoice.issue_date <= end,
        Invoice.fiscal_number.isnot(None)
    )
    bills = select(SupplierBill.tenant_id).where(
        SupplierBill.issue_date >= start,
        SupplierBill.issue_date <= end,
        SupplierBill.status != BillStatus.VOID
    )
    return sorted(db.execute(union(invoices, bills)).scalars().all(), key=str)
