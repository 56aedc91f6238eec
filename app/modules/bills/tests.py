"""
Tests para facturas de proveedor
"""

import pytest
from datetime import date
from decimal import Decimal

from app.common.exceptions import BillNotFound, InvalidTransition, InvariantViolation, ValidationError
from app.modules.bills.models import BillStatus
from app.modules.bills.service import BillService


class TestBillService:

    def test_create_computes_totals(self, make_bill):
        bill = make_bill()

        assert bill.supplier_tax_id == "130-00000-6"
        assert bill.fiscal_number == "B0100000001"
        assert bill.tax_amount == Decimal("90.00")
        assert bill.total == Decimal("590.00")
        assert bill.status == BillStatus.OPEN
        assert len(bill.line_items) == 1

    def test_invalid_supplier_tax_id(self, make_bill):
        with pytest.raises(ValueError):
            make_bill(supplier_tax_id="130000007")

    def test_duplicate_supplier_ncf_rejected(self, make_bill):
        make_bill(fiscal_number="B0100000777")

        with pytest.raises(InvariantViolation):
            make_bill(fiscal_number="b0100000777")

    def test_same_ncf_from_another_supplier_is_allowed(self, make_bill):
        make_bill(fiscal_number="B0100000777")
        other = make_bill(fiscal_number="B0100000777", supplier_tax_id="101000005")

        assert other.supplier_tax_id == "101-00000-5"

    def test_unsupported_currency(self, make_bill):
        with pytest.raises(ValidationError):
            make_bill(currency="EUR", exchange_rate=Decimal("64"))

    def test_cancel(self, db_session, tenant_id, user_id, make_bill):
        bill = make_bill()
        service = BillService(db_session)

        bill = service.cancel_bill(bill.id, "Registrada por error", tenant_id, user_id)

        assert bill.status == BillStatus.VOID
        assert bill.is_cancelled is True
        with pytest.raises(InvalidTransition):
            service.cancel_bill(bill.id, "Otra vez", tenant_id, user_id)

    def test_cancel_requires_reason(self, db_session, tenant_id, user_id, make_bill):
        bill = make_bill()

        with pytest.raises(ValidationError):
            BillService(db_session).cancel_bill(bill.id, "", tenant_id, user_id)

    def test_other_tenant_cannot_read(self, db_session, other_tenant_id, make_bill):
        bill = make_bill()

        with pytest.raises(BillNotFound):
            BillService(db_session).get_bill_by_id(bill.id, other_tenant_id)

    def test_list_filters(self, db_session, tenant_id, user_id, make_bill):
        make_bill(issue_date=date(2026, 2, 20))
        march = make_bill()
        void = make_bill(supplier_name="Laboratorio Central")
        service = BillService(db_session)
        service.cancel_bill(void.id, "Duplicada", tenant_id, user_id)

        in_march = service.get_bills(tenant_id, start_date=date(2026, 3, 1), end_date=date(2026, 3, 31))
        open_bills = service.get_bills(tenant_id, status=BillStatus.OPEN)
        by_name = service.get_bills(tenant_id, search="laboratorio")

        assert in_march["total"] == 2
        assert open_bills["total"] == 2
        assert [b.id for b in by_name["bills"]] == [void.id]
        assert march.id in [b.id for b in in_march["bills"]]


class TestBillAPI:

    def test_create_list_and_cancel(self, client, auth_headers):
        body = {
            "supplier_name": "Suplidora Dental SRL",
            "supplier_tax_id": "130-00000-6",
            "fiscal_number": "B0100000123",
            "issue_date": "2026-03-05",
            "tax_rate": "18",
            "items": [{"description": "Guantes", "quantity": "10", "unit_price": "50.00"}]
        }

        response = client.post("/bills/", json=body, headers=auth_headers("accountant"))
        assert response.status_code == 201
        bill = response.json()
        assert Decimal(bill["total"]) == Decimal("590.00")

        duplicate = client.post("/bills/", json=body, headers=auth_headers("accountant"))
        assert duplicate.status_code == 409

        listing = client.get("/bills/", headers=auth_headers("viewer")).json()
        assert listing["total"] == 1

        response = client.post(f"/bills/{bill['id']}/cancel", json={"reason": "Error"}, headers=auth_headers())
        assert response.status_code == 200
        assert response.json()["status"] == "void"

    def test_receptionist_cannot_register(self, client, auth_headers):
        response = client.post(
            "/bills/",
            json={
                "supplier_name": "X",
                "supplier_tax_id": "130000006",
                "fiscal_number": "B0100000001",
                "items": [{"description": "Guantes", "quantity": "1", "unit_price": "1"}]
            },
            headers=auth_headers("receptionist")
        )
        assert response.status_code == 403

    def test_invalid_tax_id_is_422(self, client, auth_headers):
        response = client.post(
            "/bills/",
            json={
                "supplier_name": "X",
                "supplier_tax_id": "123",
                "fiscal_number": "B0100000001",
                "items": [{"description": "Guantes", "quantity": "1", "unit_price": "1"}]
            },
            headers=auth_headers()
        )
        assert response.status_code == 422
