"""
Background tasks for fiscal reports and ledger reconciliation
"""
from datetime import date
from typing import Dict, Optional
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from app.core.celery import celery_app
from app.database.database import SessionLocal
from app.common.exceptions import ReportLocked, TransientError
from app.modules.invoices.payments import PaymentLedger
from app.modules.reports.models import ReportType
from app.modules.reports.services.base import previous_period
from app.modules.reports.services.period import FiscalReportService, tenants_with_activity

logger = logging.getLogger(__name__)


def generate_period_reports(db: Session, period: Optional[str] = None, today: Optional[date] = None) -> Dict:
    """
    Regenerate the draft 606 and 607 of every clinic with activity in the
    period (previous month by default). Locked reports are left untouched.
    """
    period = period or previous_period(today)
    generated, locked = 0, 0

    for tenant_id in tenants_with_activity(db, period):
        service = FiscalReportService(db, tenant_id)
        for report_type in (ReportType.SALES, ReportType.PURCHASES):
            try:
                service.generate_report(period, report_type, today=today)
                generated += 1
            except ReportLocked:
                locked += 1

    logger.info(f"Period {period}: {generated} reports generated, {locked} locked")
    return {"period": period, "generated": generated, "locked": locked}


@celery_app.task(bind=True)
def generate_period_reports_task(self, period: Optional[str] = None):
    """
    Periodic task: keep last month's draft reports up to date
    """
    db = SessionLocal()
    try:
        return generate_period_reports(db, period)
    except TransientError as e:
        logger.warning(f"Transient error generating period reports: {e.message}")
        raise self.retry(exc=e, countdown=60, max_retries=3)
    except Exception as e:
        logger.error(f"Period report generation failed: {str(e)}", exc_info=True)
        raise
    finally:
        db.close()


@celery_app.task(bind=True)
def reconcile_invoice_balances_task(self, tenant_id: str):
    """
    Recompute invoice paid_amount from the payment ledger for one clinic
    """
    db = SessionLocal()
    try:
        results = PaymentLedger(db).reconcile_tenant(UUID(tenant_id))
        corrected = [str(r.invoice_id) for r in results if r.corrected]
        return {"status": "completed", "checked": len(results), "corrected": corrected}
    except Exception as e:
        logger.error(f"Balance reconciliation failed for tenant {tenant_id}: {str(e)}", exc_info=True)
        raise
    finally:
        db.close()
