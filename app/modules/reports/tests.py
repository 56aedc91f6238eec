"""
Tests para los reportes fiscales 606/607 y el balance de ITBIS
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import (
    CurrencyMismatch, InvalidTransition, InvariantViolation, ReportLocked, ReportNotFound, ValidationError
)
from app.modules.bills.service import BillService
from app.modules.fiscal.models import FiscalDocumentType
from app.modules.invoices.service import InvoiceService
from app.modules.reports.models import PeriodReport, ReportStatus, ReportType
from app.modules.reports.services import FiscalReportService, compute_tax_balance
from app.modules.reports.services.base import period_bounds, previous_period
from app.modules.reports.services.period import report_checksum, summarize_entries
from app.modules.reports.tasks import generate_period_reports
from app.modules.taxes.schemas import LineItemBase


PERIOD = "202603"
AFTER_CLOSE = date(2026, 4, 2)


def item(description="Consulta", quantity="1", unit_price="1000.00", **kwargs):
    return LineItemBase(
        description=description, quantity=Decimal(quantity), unit_price=Decimal(unit_price), **kwargs
    )


@pytest.fixture
def sequences(make_sequence):
    make_sequence()
    make_sequence(document_type=FiscalDocumentType.CREDIT_FISCAL)


@pytest.fixture
def service(db_session, tenant_id):
    return FiscalReportService(db_session, tenant_id)


class TestPeriodHelpers:

    def test_bounds(self):
        assert period_bounds("202602") == (date(2026, 2, 1), date(2026, 2, 28))
        assert period_bounds("202802") == (date(2028, 2, 1), date(2028, 2, 29))

    def test_invalid_period(self):
        with pytest.raises(ValidationError):
            period_bounds("2026-03")

    def test_previous_period(self):
        assert previous_period(date(2026, 4, 2)) == "202603"
        assert previous_period(date(2026, 1, 15)) == "202512"


class TestSalesReport:

    def test_only_issued_active_invoices(self, db_session, tenant_id, user_id, sequences, make_invoice, issued_invoice, service, today):
        issued_invoice(items=[item(unit_price="423.73")], tax_rate=Decimal("18"))
        issued_invoice(issue_date=date(2026, 3, 2))
        make_invoice()
        cancelled = issued_invoice()
        InvoiceService(db_session).cancel_invoice(cancelled.id, "Duplicada", tenant_id, user_id)
        issued_invoice(issue_date=date(2026, 2, 27))

        report = service.generate_report(PERIOD, ReportType.SALES, today=today)

        assert report.status == ReportStatus.DRAFT
        assert report.total_records == 2
        assert report.total_amount == Decimal("1500.00")
        assert report.total_tax == Decimal("76.27")
        assert [e["issue_date"] for e in report.entries] == ["2026-03-02", "2026-03-10"]
        assert cancelled.fiscal_number not in [e["fiscal_number"] for e in report.entries]

    def test_entry_amounts_are_strings(self, sequences, issued_invoice, service, today):
        issued_invoice(items=[item(unit_price="423.73")], tax_rate=Decimal("18"))

        entry = service.generate_report(PERIOD, ReportType.SALES, today=today).entries[0]

        assert entry["taxable_amount"] == "423.73"
        assert entry["tax_amount"] == "76.27"
        assert entry["total_amount"] == "500.00"
        assert entry["dgii_code"] == "B02"
        assert entry["fiscal_number"] == "B0200000001"

    def test_report_total_matches_invoice_totals(self, sequences, issued_invoice, service, today):
        """Un descuento de fracción de centavo no descuadra el 607"""
        discounted = issued_invoice(
            items=[item(unit_price="10.00", discount=Decimal("0.05"))], tax_rate=Decimal("18")
        )
        foreign = issued_invoice(
            currency="USD", exchange_rate=Decimal("58.00"),
            items=[item(unit_price="10.00", discount=Decimal("0.05"))], tax_rate=Decimal("18")
        )

        report = service.generate_report(PERIOD, ReportType.SALES, today=today)

        assert discounted.total == Decimal("11.79")
        by_id = {e["document_id"]: e for e in report.entries}
        assert Decimal(by_id[str(discounted.id)]["total_amount"]) == discounted.total
        assert Decimal(by_id[str(foreign.id)]["total_amount"]) == foreign.total * Decimal("58.00")
        assert report.total_amount == discounted.total + foreign.total * Decimal("58.00")
        assert all(e["currency"] == "DOP" for e in report.entries)

    def test_breakdown_by_document_type(self, sequences, issued_invoice, service, today):
        issued_invoice()
        issued_invoice(customer_tax_id="101000005", document_type=FiscalDocumentType.CREDIT_FISCAL)
        issued_invoice()

        report = service.generate_report(PERIOD, ReportType.SALES, today=today)

        assert [row["dgii_code"] for row in report.breakdown] == ["B01", "B02"]
        assert [row["count"] for row in report.breakdown] == [1, 2]
        assert report.breakdown[1]["total_amount"] == "2000.00"

    def test_regeneration_is_idempotent(self, sequences, issued_invoice, service, today):
        issued_invoice()
        issued_invoice(issue_date=date(2026, 3, 12))

        first = service.generate_report(PERIOD, ReportType.SALES, today=today)
        first_id, checksum, entries = first.id, first.checksum, list(first.entries)
        generated_at, version = first.generated_at, first.version
        second = service.generate_report(PERIOD, ReportType.SALES, today=today)

        assert second.id == first_id
        assert second.checksum == checksum
        assert second.entries == entries
        assert second.generated_at == generated_at
        assert second.version == version
        assert len(service.list_reports(period=PERIOD)["reports"]) == 1

    def test_regeneration_picks_up_new_documents(self, sequences, issued_invoice, service, today):
        issued_invoice()
        checksum = service.generate_report(PERIOD, ReportType.SALES, today=today).checksum

        issued_invoice()
        report = service.generate_report(PERIOD, ReportType.SALES, today=today)

        assert report.checksum != checksum
        assert report.total_records == 2

    def test_foreign_currency_is_normalized_to_local(self, sequences, issued_invoice, service, today):
        issued_invoice()
        issued_invoice(currency="USD", exchange_rate=Decimal("58.50"), items=[item(unit_price="100.00")])

        local = service.generate_report(PERIOD, ReportType.SALES, today=today)
        usd = service.generate_report(PERIOD, ReportType.SALES, currency="usd", today=today)

        assert local.currency == "DOP"
        assert local.total_amount == Decimal("6850.00")
        assert usd.currency == "USD"
        assert usd.total_records == 1
        assert usd.total_amount == Decimal("100.00")
        assert usd.id != local.id

    def test_tenant_isolation(self, tenant_id, other_tenant_id, make_sequence, sequences, issued_invoice, service, today):
        make_sequence(tenant_id=other_tenant_id)
        issued_invoice(tenant=other_tenant_id)

        report = service.generate_report(PERIOD, ReportType.SALES, today=today)

        assert report.total_records == 0
        assert report.total_amount == Decimal("0.00")

    def test_future_period_rejected(self, service, today):
        with pytest.raises(ValidationError):
            service.generate_report("202604", ReportType.SALES, today=today)

    def test_unsupported_currency(self, service, today):
        with pytest.raises(ValidationError):
            service.generate_report(PERIOD, ReportType.SALES, currency="EUR", today=today)


class TestPurchasesReport:

    def test_void_bills_excluded(self, db_session, tenant_id, user_id, make_bill, service, today):
        make_bill()
        make_bill(items=[item("Anestesia", unit_price="200.00")])
        void = make_bill()
        BillService(db_session).cancel_bill(void.id, "Duplicada", tenant_id, user_id)

        report = service.generate_report(PERIOD, ReportType.PURCHASES, today=today)

        assert report.total_records == 2
        assert report.total_tax == Decimal("126.00")
        assert report.total_amount == Decimal("826.00")
        assert report.entries[0]["counterparty_tax_id"] == "130-00000-6"
        assert report.entries[0]["document_number"] is None


class TestReportLifecycle:

    def test_submit_locks_report(self, sequences, issued_invoice, user_id, service, today):
        issued_invoice()
        report = service.generate_report(PERIOD, ReportType.SALES, today=today)

        report = service.submit_report(report.id, user_id, "REC-001", today=AFTER_CLOSE)

        assert report.status == ReportStatus.SUBMITTED
        assert report.dgii_reference == "REC-001"
        with pytest.raises(ReportLocked):
            service.generate_report(PERIOD, ReportType.SALES, today=AFTER_CLOSE)

    def test_open_period_cannot_be_submitted(self, user_id, service, today):
        report = service.generate_report(PERIOD, ReportType.SALES, today=today)

        with pytest.raises(ValidationError):
            service.submit_report(report.id, user_id, today=date(2026, 3, 31))

    def test_stale_report_cannot_be_submitted(self, sequences, issued_invoice, user_id, service, today):
        issued_invoice()
        report = service.generate_report(PERIOD, ReportType.SALES, today=today)
        issued_invoice(issue_date=date(2026, 3, 20))

        with pytest.raises(InvariantViolation):
            service.submit_report(report.id, user_id, today=AFTER_CLOSE)

    def test_accepted_report_stays_locked(self, user_id, service, today):
        report = service.generate_report(PERIOD, ReportType.PURCHASES, today=today)
        service.submit_report(report.id, user_id, today=AFTER_CLOSE)

        report = service.resolve_report(report.id, accepted=True, dgii_reference="ACK-99")

        assert report.status == ReportStatus.ACCEPTED
        assert report.dgii_reference == "ACK-99"
        with pytest.raises(ReportLocked):
            service.generate_report(PERIOD, ReportType.PURCHASES, today=AFTER_CLOSE)

    def test_rejected_report_can_be_regenerated(self, user_id, make_bill, service, today):
        make_bill()
        report = service.generate_report(PERIOD, ReportType.PURCHASES, today=today)
        service.submit_report(report.id, user_id, today=AFTER_CLOSE)
        rejected = service.resolve_report(report.id, accepted=False, errors=["RNC inválido en línea 1"])
        assert rejected.rejection_errors == ["RNC inválido en línea 1"]

        report = service.generate_report(PERIOD, ReportType.PURCHASES, today=AFTER_CLOSE)

        assert report.status == ReportStatus.DRAFT
        assert report.rejection_errors is None
        assert report.submitted_at is None

    def test_only_drafts_can_be_submitted(self, user_id, service, today):
        report = service.generate_report(PERIOD, ReportType.SALES, today=today)
        service.submit_report(report.id, user_id, today=AFTER_CLOSE)

        with pytest.raises(InvalidTransition):
            service.submit_report(report.id, user_id, today=AFTER_CLOSE)

    def test_only_submitted_can_be_resolved(self, service, today):
        report = service.generate_report(PERIOD, ReportType.SALES, today=today)

        with pytest.raises(InvalidTransition):
            service.resolve_report(report.id, accepted=True)

    def test_report_of_other_tenant_not_found(self, db_session, other_tenant_id, service, today):
        report = service.generate_report(PERIOD, ReportType.SALES, today=today)

        with pytest.raises(ReportNotFound):
            FiscalReportService(db_session, other_tenant_id).get_report(report.id)


class TestTaxBalance:

    def test_payable_and_credit(self, sequences, issued_invoice, make_bill, service, today):
        issued_invoice(items=[item(unit_price="423.73")], tax_rate=Decimal("18"))
        make_bill()
        service.generate_report(PERIOD, ReportType.SALES, today=today)
        service.generate_report(PERIOD, ReportType.PURCHASES, today=today)

        balance = service.get_tax_balance(PERIOD)

        assert balance.tax_collected == Decimal("76.27")
        assert balance.tax_paid == Decimal("90.00")
        assert balance.balance == Decimal("-13.73")
        assert balance.sales_report_status == ReportStatus.DRAFT

    def test_requires_both_reports(self, service, today):
        service.generate_report(PERIOD, ReportType.SALES, today=today)

        with pytest.raises(ReportNotFound):
            service.get_tax_balance(PERIOD)

    def _report(self, report_type, period=PERIOD, currency="DOP", total_tax="0"):
        return PeriodReport(
            period=period, report_type=report_type, currency=currency,
            status=ReportStatus.DRAFT, total_tax=Decimal(total_tax)
        )

    def test_pure_computation(self):
        balance = compute_tax_balance(
            self._report(ReportType.SALES, total_tax="1800.00"),
            self._report(ReportType.PURCHASES, total_tax="540.00")
        )
        assert balance.balance == Decimal("1260.00")

    def test_swapped_reports_rejected(self):
        with pytest.raises(ValidationError):
            compute_tax_balance(self._report(ReportType.PURCHASES), self._report(ReportType.SALES))

    def test_different_periods_rejected(self):
        with pytest.raises(ValidationError):
            compute_tax_balance(self._report(ReportType.SALES), self._report(ReportType.PURCHASES, period="202602"))

    def test_different_currencies_rejected(self):
        with pytest.raises(CurrencyMismatch):
            compute_tax_balance(self._report(ReportType.SALES), self._report(ReportType.PURCHASES, currency="USD"))


class TestDeterminism:

    def _entry(self, code, document_type, total, currency="DOP"):
        return {
            "fiscal_document_type": document_type, "dgii_code": code,
            "taxable_amount": total, "exempt_amount": "0.00", "tax_amount": "0.00", "total_amount": total,
            "currency": currency
        }

    def test_summary_sorted_by_code(self):
        entries = [
            self._entry("B02", "final-consumer", "10.00"),
            self._entry("B01", "credit-fiscal", "5.00"),
            self._entry("B02", "final-consumer", "2.50"),
        ]

        breakdown = summarize_entries(entries, "DOP")

        assert [row["dgii_code"] for row in breakdown] == ["B01", "B02"]
        assert breakdown[1]["total_amount"] == "12.50"
        assert breakdown[1]["count"] == 2

    def test_summary_rejects_entries_in_another_currency(self):
        entries = [
            self._entry("B02", "final-consumer", "10.00"),
            self._entry("B02", "final-consumer", "3.00", currency="USD"),
        ]

        with pytest.raises(CurrencyMismatch):
            summarize_entries(entries, "DOP")

    def test_checksum_depends_on_content(self):
        entries = [self._entry("B02", "final-consumer", "10.00")]

        same = report_checksum(PERIOD, ReportType.SALES, "DOP", entries)
        assert same == report_checksum(PERIOD, ReportType.SALES, "DOP", [dict(e) for e in entries])
        assert same != report_checksum(PERIOD, ReportType.PURCHASES, "DOP", entries)
        assert same != report_checksum("202602", ReportType.SALES, "DOP", entries)
        assert len(same) == 64


class TestPeriodTask:

    def test_generates_both_reports_for_active_tenants(self, db_session, tenant_id, sequences, issued_invoice, make_bill):
        issued_invoice()
        make_bill()

        result = generate_period_reports(db_session, today=AFTER_CLOSE)

        assert result == {"period": PERIOD, "generated": 2, "locked": 0}
        reports = FiscalReportService(db_session, tenant_id).list_reports(period=PERIOD)
        assert reports["total"] == 2

    def test_locked_reports_are_skipped(self, db_session, tenant_id, user_id, sequences, issued_invoice):
        issued_invoice()
        service = FiscalReportService(db_session, tenant_id)
        report = service.generate_report(PERIOD, ReportType.SALES, today=AFTER_CLOSE)
        service.submit_report(report.id, user_id, today=AFTER_CLOSE)

        result = generate_period_reports(db_session, PERIOD, today=AFTER_CLOSE)

        assert result["generated"] == 1
        assert result["locked"] == 1

    def test_no_activity(self, db_session):
        assert generate_period_reports(db_session, PERIOD, today=AFTER_CLOSE)["generated"] == 0


class TestReportsAPI:

    def test_generate_export_and_submit(self, client, auth_headers, sequences, issued_invoice):
        issued_invoice(items=[item(unit_price="423.73")], tax_rate=Decimal("18"))

        response = client.post(
            "/reports/fiscal/generate",
            json={"period": PERIOD, "report_type": "607"},
            headers=auth_headers("accountant")
        )
        assert response.status_code == 201
        report = response.json()
        assert report["total_records"] == 1
        assert Decimal(report["total_tax"]) == Decimal("76.27")
        assert report["breakdown"][0]["dgii_code"] == "B02"

        csv_response = client.get(f"/reports/fiscal/{report['id']}?export=csv", headers=auth_headers("viewer"))
        assert csv_response.status_code == 200
        assert "DGII_607_202603_DOP.csv" in csv_response.headers["content-disposition"]
        lines = csv_response.text.strip().splitlines()
        assert len(lines) == 2
        assert "B0200000001" in lines[1]

        response = client.post(
            f"/reports/fiscal/{report['id']}/submit", json={"dgii_reference": "REC-1"}, headers=auth_headers()
        )
        assert response.status_code == 200
        assert response.json()["status"] == "submitted"

        response = client.post(
            "/reports/fiscal/generate",
            json={"period": PERIOD, "report_type": "607"},
            headers=auth_headers()
        )
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "REPORT_LOCKED"

    def test_tax_balance_endpoint(self, client, auth_headers, make_bill):
        make_bill()
        for report_type in ("607", "606"):
            client.post(
                "/reports/fiscal/generate",
                json={"period": PERIOD, "report_type": report_type},
                headers=auth_headers()
            )

        response = client.get(f"/reports/fiscal/tax-balance?period={PERIOD}", headers=auth_headers())

        assert response.status_code == 200
        assert Decimal(response.json()["balance"]) == Decimal("-90.00")

    def test_invalid_period_is_422(self, client, auth_headers):
        response = client.post(
            "/reports/fiscal/generate",
            json={"period": "2026-03", "report_type": "607"},
            headers=auth_headers()
        )
        assert response.status_code == 422

    def test_rejection_requires_errors(self, client, auth_headers):
        response = client.post(
            f"/reports/fiscal/{uuid4()}/resolve", json={"accepted": False}, headers=auth_headers()
        )
        assert response.status_code == 422

    def test_viewer_cannot_generate(self, client, auth_headers):
        response = client.post(
            "/reports/fiscal/generate",
            json={"period": PERIOD, "report_type": "606"},
            headers=auth_headers("viewer")
        )
        assert response.status_code == 403
