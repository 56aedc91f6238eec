"""
Base service class for Reports module

Provides tenant-scoped base queries over the fiscal documents that feed
the period reports, plus period key helpers.
"""

import calendar
from datetime import date, timedelta
from typing import Tuple
from uuid import UUID

from sqlalchemy import and_
from sqlalchemy.orm import Session

from app.common.exceptions import ValidationError
from app.common.validators import validate_period
from app.modules.bills.models import BillStatus, SupplierBill
from app.modules.invoices.models import Invoice


def period_bounds(period: str) -> Tuple[date, date]:
    """First and last calendar day of a YYYYMM period"""
    if not validate_period(period):
        raise ValidationError("El período debe tener formato YYYYMM", field="period", value=period)
    year, month = int(period[:4]), int(period[4:])
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


def period_key(day: date) -> str:
    return f"{day.year:04d}{day.month:02d}"


def previous_period(today: date = None) -> str:
    """Period key of the month before `today`"""
    today = today or date.today()
    return period_key(today.replace(day=1) - timedelta(days=1))


class BaseReportService:
    """Base service class for all report services"""

    def __init__(self, db: Session, tenant_id: UUID):
        self.db = db
        self.tenant_id = tenant_id

    def _get_base_invoice_query(self):
        """Issued, non-cancelled invoices that carry a fiscal number"""
        return self.db.query(Invoice).filter(
            Invoice.tenant_id == self.tenant_id,
            Invoice.finalized_at.isnot(None),
            Invoice.cancelled_at.is_(None),
            Invoice.fiscal_number.isnot(None)
        )

    def _get_base_bill_query(self):
        """Non-voided supplier bills"""
        return self.db.query(SupplierBill).filter(
            SupplierBill.tenant_id == self.tenant_id,
            SupplierBill.status != BillStatus.VOID
        )

    def _apply_date_filter(self, query, date_field, start_date: date, end_date: date):
        """Apply date range filter to a query"""
        return query.filter(
            and_(
                date_field >= start_date,
                date_field <= end_date
            )
        )
