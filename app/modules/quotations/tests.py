"""
Tests para cotizaciones y su conversión en factura
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import InvalidTransition, NoSequenceConfigured
from app.modules.invoices.models import Invoice, InvoiceStatus
from app.modules.quotations.models import Quotation, QuotationStatus
from app.modules.quotations.schemas import QuotationConvertRequest, QuotationCreate, QuotationUpdate
from app.modules.quotations.service import QuotationService
from app.modules.taxes.schemas import LineItemBase


def item(description="Blanqueamiento", quantity="1", unit_price="423.73", **kwargs):
    return LineItemBase(
        description=description, quantity=Decimal(quantity), unit_price=Decimal(unit_price), **kwargs
    )


@pytest.fixture
def make_quotation(db_session, tenant_id, user_id):
    def _make(**kwargs):
        kwargs.setdefault("customer_id", uuid4())
        kwargs.setdefault("customer_name", "Paciente de prueba")
        kwargs.setdefault("tax_rate", Decimal("18"))
        kwargs.setdefault("items", [item()])
        return QuotationService(db_session).create_quotation(QuotationCreate(**kwargs), tenant_id, user_id)
    return _make


class TestQuotationStatus:

    def test_create_draft(self, make_quotation):
        quotation = make_quotation()

        assert quotation.number.startswith("COT-")
        assert quotation.number.endswith("-0001")
        assert quotation.status == QuotationStatus.DRAFT
        assert quotation.valid_until == quotation.issue_date + timedelta(days=15)
        assert quotation.total == Decimal("500.00")

    def test_expired_is_derived(self, make_quotation):
        quotation = make_quotation(issue_date=date(2026, 3, 1), valid_until=date(2026, 3, 10))

        assert quotation.status_on(date(2026, 3, 10)) == QuotationStatus.DRAFT
        assert quotation.status_on(date(2026, 3, 11)) == QuotationStatus.EXPIRED
        assert quotation.stored_status == QuotationStatus.DRAFT

    def test_accepted_quotation_does_not_expire(self, db_session, tenant_id, make_quotation):
        quotation = make_quotation()
        quotation = QuotationService(db_session).accept_quotation(quotation.id, tenant_id)

        later = quotation.valid_until + timedelta(days=30)
        assert quotation.status_on(later) == QuotationStatus.ACCEPTED

    def test_send_then_accept(self, db_session, tenant_id, make_quotation):
        service = QuotationService(db_session)
        quotation = make_quotation()

        quotation = service.send_quotation(quotation.id, tenant_id)
        assert quotation.status == QuotationStatus.SENT
        assert quotation.sent_at is not None

        quotation = service.accept_quotation(quotation.id, tenant_id)
        assert quotation.status == QuotationStatus.ACCEPTED

    def test_rejected_cannot_be_sent(self, db_session, tenant_id, make_quotation):
        service = QuotationService(db_session)
        quotation = make_quotation()
        service.reject_quotation(quotation.id, tenant_id)

        with pytest.raises(InvalidTransition):
            service.send_quotation(quotation.id, tenant_id)

    def test_expired_cannot_be_accepted(self, db_session, tenant_id, make_quotation):
        issued = date.today() - timedelta(days=40)
        quotation = make_quotation(issue_date=issued, valid_until=issued + timedelta(days=15))

        with pytest.raises(InvalidTransition):
            QuotationService(db_session).accept_quotation(quotation.id, tenant_id)

    def test_update_recomputes_totals(self, db_session, tenant_id, make_quotation):
        quotation = make_quotation()

        quotation = QuotationService(db_session).update_quotation(
            quotation.id, QuotationUpdate(tax_rate=Decimal("0")), tenant_id
        )

        assert quotation.total == Decimal("423.73")


class TestConversion:

    def test_convert_and_finalize(self, db_session, tenant_id, user_id, make_sequence, make_quotation):
        make_sequence(current_number=1891)
        quotation = make_quotation(items=[item(), item("Radiografía", "2", "150.00", taxable=False)])

        invoice = QuotationService(db_session).convert_to_invoice(quotation.id, tenant_id, user_id)

        assert invoice.quotation_id == quotation.id
        assert invoice.fiscal_number == "B0200001892"
        assert invoice.total == quotation.total
        assert invoice.tax_amount == quotation.tax_amount
        assert [line.description for line in invoice.line_items] == ["Blanqueamiento", "Radiografía"]

        db_session.refresh(quotation)
        assert quotation.status == QuotationStatus.CONVERTED
        assert quotation.converted_invoice_id == invoice.id
        assert quotation.accepted_at is not None

    def test_converted_totals_match_quotation_with_discount(self, db_session, tenant_id, user_id, make_quotation):
        quotation = make_quotation(items=[
            item("Limpieza", "1", "10.00", discount=Decimal("0.05")),
            item("Sellante", "3", "33.33", discount=Decimal("1.25"), taxable=False),
        ])

        invoice = QuotationService(db_session).convert_to_invoice(
            quotation.id, tenant_id, user_id, QuotationConvertRequest(finalize=False)
        )

        assert invoice.subtotal == quotation.subtotal
        assert invoice.discount_amount == quotation.discount_amount
        assert invoice.tax_amount == quotation.tax_amount
        assert invoice.total == quotation.total

    def test_convert_as_draft(self, db_session, tenant_id, user_id, make_quotation):
        quotation = make_quotation()

        invoice = QuotationService(db_session).convert_to_invoice(
            quotation.id, tenant_id, user_id, QuotationConvertRequest(finalize=False)
        )

        assert invoice.fiscal_number is None
        assert invoice.status == InvoiceStatus.DRAFT

    def test_failed_finalization_rolls_back_conversion(self, db_session, tenant_id, user_id, make_quotation):
        quotation = make_quotation()

        with pytest.raises(NoSequenceConfigured):
            QuotationService(db_session).convert_to_invoice(quotation.id, tenant_id, user_id)

        assert db_session.query(Invoice).count() == 0
        quotation = db_session.get(Quotation, quotation.id)
        assert quotation.converted_invoice_id is None
        assert quotation.status == QuotationStatus.DRAFT

    def test_cannot_convert_twice(self, db_session, tenant_id, user_id, make_sequence, make_quotation):
        make_sequence()
        quotation = make_quotation()
        service = QuotationService(db_session)
        service.convert_to_invoice(quotation.id, tenant_id, user_id)

        with pytest.raises(InvalidTransition):
            service.convert_to_invoice(quotation.id, tenant_id, user_id)

    def test_rejected_cannot_be_converted(self, db_session, tenant_id, user_id, make_quotation):
        service = QuotationService(db_session)
        quotation = make_quotation()
        service.reject_quotation(quotation.id, tenant_id)

        with pytest.raises(InvalidTransition):
            service.convert_to_invoice(quotation.id, tenant_id, user_id)

    def test_expired_cannot_be_converted(self, db_session, tenant_id, user_id, make_sequence, make_quotation):
        make_sequence()
        quotation = make_quotation(issue_date=date(2026, 3, 1), valid_until=date(2026, 3, 10))

        with pytest.raises(InvalidTransition):
            QuotationService(db_session).convert_to_invoice(
                quotation.id, tenant_id, user_id, today=date(2026, 3, 15)
            )


class TestQuotationQueries:

    def test_filter_by_derived_status(self, db_session, tenant_id, user_id, make_sequence, make_quotation):
        make_sequence()
        service = QuotationService(db_session)
        today = date.today()
        make_quotation()
        make_quotation(issue_date=today - timedelta(days=40), valid_until=today - timedelta(days=25))
        converted = make_quotation()
        service.convert_to_invoice(converted.id, tenant_id, user_id)

        assert service.get_quotations(tenant_id, QuotationStatus.DRAFT)["total"] == 1
        assert service.get_quotations(tenant_id, QuotationStatus.EXPIRED)["total"] == 1
        assert service.get_quotations(tenant_id, QuotationStatus.CONVERTED)["total"] == 1

    def test_stats(self, db_session, tenant_id, user_id, make_sequence, make_quotation):
        make_sequence()
        service = QuotationService(db_session)
        make_quotation()
        rejected = make_quotation()
        service.reject_quotation(rejected.id, tenant_id)
        converted = make_quotation()
        service.convert_to_invoice(converted.id, tenant_id, user_id)
        make_quotation(currency="USD", exchange_rate=Decimal("58.50"))

        stats = service.get_quotation_stats(tenant_id)

        assert stats.currency == "DOP"
        assert stats.total == 3
        assert stats.pending == 1
        assert stats.rejected == 1
        assert stats.converted == 1
        assert stats.accepted_value == Decimal("500.00")
        assert stats.conversion_rate == Decimal("33.33")


class TestQuotationAPI:

    def test_create_and_convert(self, client, auth_headers, make_sequence):
        make_sequence()
        response = client.post(
            "/quotations/",
            json={
                "customer_id": str(uuid4()),
                "items": [{"description": "Ortodoncia", "quantity": "1", "unit_price": "1000.00"}]
            },
            headers=auth_headers("receptionist")
        )
        assert response.status_code == 201
        quotation = response.json()
        assert quotation["status"] == "draft"
        assert len(quotation["line_items"]) == 1

        response = client.post(f"/quotations/{quotation['id']}/convert", headers=auth_headers("receptionist"))
        assert response.status_code == 201
        invoice = response.json()
        assert invoice["quotation_id"] == quotation["id"]
        assert invoice["fiscal_number"] == "B0200000001"

        response = client.get(f"/quotations/{quotation['id']}", headers=auth_headers("viewer"))
        assert response.json()["status"] == "converted"

    def test_items_required(self, client, auth_headers):
        response = client.post("/quotations/", json={"items": []}, headers=auth_headers())
        assert response.status_code == 422
