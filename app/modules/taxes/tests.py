"""
Tests para la calculadora de montos e ITBIS y la validación de RNC/cédula
"""

import pytest
from datetime import date
from decimal import Decimal
from pydantic import ValidationError as PydanticValidationError

from app.common.exceptions import CurrencyMismatch, ValidationError
from app.common.validators import (
    format_tax_id, validate_cedula, validate_period, validate_rnc, validate_tax_id
)
from app.modules.taxes.calculator import (
    DiscountType, LineInput, PaymentTerms, compute_document_totals, compute_due_date,
    compute_line_total, compute_tax, convert_to_currency, round_money, sum_money
)
from app.modules.taxes.schemas import LineItemBase


class TestRounding:

    def test_round_half_up(self):
        assert round_money(Decimal("0.005")) == Decimal("0.01")
        assert round_money(Decimal("2.675")) == Decimal("2.68")
        assert round_money("10") == Decimal("10.00")

    def test_float_input_does_not_leak_binary_error(self):
        assert round_money(0.1 + 0.2) == Decimal("0.30")


class TestLineTotals:

    def test_percentage_discount(self):
        assert compute_line_total("2", "150.00", "10", DiscountType.PERCENTAGE) == Decimal("270.0000")

    def test_fixed_discount_is_clamped_to_gross(self):
        assert compute_line_total("1", "100.00", "250.00", DiscountType.FIXED) == Decimal("0")

    def test_zero_quantity_rejected(self):
        with pytest.raises(ValidationError):
            compute_line_total("0", "100.00")

    def test_negative_price_rejected(self):
        with pytest.raises(ValidationError):
            compute_line_total("1", "-1.00")

    def test_percentage_over_100_rejected(self):
        with pytest.raises(ValidationError):
            compute_line_total("1", "100.00", "101", DiscountType.PERCENTAGE)


class TestDocumentTotals:

    def test_itbis_18_on_423_73(self):
        """423.73 al 18% -> ITBIS 76.27, total 500.00"""
        totals = compute_document_totals([LineInput(Decimal("1"), Decimal("423.73"))], Decimal("18"))

        assert totals.subtotal == Decimal("423.73")
        assert totals.tax_amount == Decimal("76.27")
        assert totals.total == Decimal("500.00")

    def test_total_identity(self):
        lines = [
            LineInput(Decimal("3"), Decimal("33.33"), Decimal("5"), DiscountType.PERCENTAGE),
            LineInput(Decimal("1.5"), Decimal("199.99"), Decimal("20.00"), DiscountType.FIXED),
            LineInput(Decimal("2"), Decimal("75.00"), taxable=False),
        ]
        totals = compute_document_totals(lines, Decimal("18"))

        assert totals.total == totals.subtotal - totals.discount_total + totals.tax_amount
        assert totals.taxable_amount + totals.exempt_amount == totals.subtotal - totals.discount_total
        assert totals.exempt_amount == Decimal("150.00")

    def test_fractional_discount_reduces_tax_base(self):
        """10.00 con 0.05% de descuento: la base es 9.99, no 10.00"""
        totals = compute_document_totals([LineInput(Decimal("1"), Decimal("10.00"), Decimal("0.05"))], Decimal("18"))

        assert totals.discount_total == Decimal("0.01")
        assert totals.taxable_amount == Decimal("9.99")
        assert totals.tax_amount == Decimal("1.80")
        assert totals.total == Decimal("11.79")

    @pytest.mark.parametrize("lines", [
        [
            LineInput(Decimal("1"), Decimal("10.00"), Decimal("0.05")),
            LineInput(Decimal("1"), Decimal("5.00"), Decimal("0.05"), taxable=False),
        ],
        [
            LineInput(Decimal("3"), Decimal("0.35"), Decimal("0.5")),
            LineInput(Decimal("7"), Decimal("1.15"), Decimal("1.5"), taxable=False),
            LineInput(Decimal("1"), Decimal("2.03"), Decimal("0.25")),
        ],
        [LineInput(Decimal("1"), Decimal("9.99"), Decimal("0.05"), taxable=False)],
    ])
    def test_tax_base_identity_with_fractional_cents(self, lines):
        totals = compute_document_totals(lines, Decimal("18"))

        assert totals.taxable_amount + totals.exempt_amount == totals.subtotal - totals.discount_total
        assert totals.tax_amount == compute_tax(totals.taxable_amount, Decimal("18"))
        assert totals.total == totals.subtotal - totals.discount_total + totals.tax_amount

    def test_order_independent(self):
        lines = [
            LineInput(Decimal("1"), Decimal("0.015")),
            LineInput(Decimal("7"), Decimal("12.345"), Decimal("3"), DiscountType.PERCENTAGE),
            LineInput(Decimal("1"), Decimal("0.005")),
        ]
        forward = compute_document_totals(lines, Decimal("18"))
        backward = compute_document_totals(list(reversed(lines)), Decimal("18"))

        assert forward == backward

    def test_sums_are_rounded_once(self):
        """Tres líneas de 0.005 suman 0.02, no 0.03"""
        lines = [LineInput(Decimal("1"), Decimal("0.005")) for _ in range(3)]
        totals = compute_document_totals(lines, Decimal("0"))
        assert totals.subtotal == Decimal("0.02")

    def test_exempt_lines_do_not_pay_tax(self):
        totals = compute_document_totals([LineInput(Decimal("1"), Decimal("1000"), taxable=False)], Decimal("18"))
        assert totals.tax_amount == Decimal("0.00")
        assert totals.total == Decimal("1000.00")

    def test_empty_document(self):
        totals = compute_document_totals([], Decimal("18"))
        assert totals.total == Decimal("0.00")

    def test_rate_out_of_range(self):
        with pytest.raises(ValidationError):
            compute_document_totals([LineInput(Decimal("1"), Decimal("10"))], Decimal("120"))

    def test_compute_tax(self):
        assert compute_tax(Decimal("423.73"), Decimal("18")) == Decimal("76.27")


class TestLineItemSchema:

    def test_amounts_limited_to_stored_scale(self):
        with pytest.raises(PydanticValidationError):
            LineItemBase(description="Consulta", quantity=Decimal("1"), unit_price=Decimal("10.005"))
        with pytest.raises(PydanticValidationError):
            LineItemBase(description="Consulta", quantity=Decimal("1.0005"), unit_price=Decimal("10.00"))
        with pytest.raises(PydanticValidationError):
            LineItemBase(description="Consulta", quantity=Decimal("1"), unit_price=Decimal("10.00"), discount=Decimal("0.125"))

    def test_trailing_zeros_are_accepted(self):
        line = LineItemBase(description="Consulta", quantity=Decimal("2.000"), unit_price=Decimal("10.50"))
        assert line.unit_price == Decimal("10.50")


class TestCurrency:

    def test_sum_money_same_currency(self):
        assert sum_money([(Decimal("1.10"), "DOP"), (Decimal("2.20"), "dop")], "DOP") == Decimal("3.30")

    def test_sum_money_rejects_mixed_currencies(self):
        with pytest.raises(CurrencyMismatch):
            sum_money([(Decimal("1"), "DOP"), (Decimal("1"), "USD")], "DOP")

    def test_convert_to_local(self):
        assert convert_to_currency(Decimal("100.00"), "USD", Decimal("58.50"), "DOP") == Decimal("5850.00")

    def test_identity_conversion(self):
        assert convert_to_currency(Decimal("10.00"), "USD", None, "USD") == Decimal("10.00")

    def test_conversion_to_foreign_currency_rejected(self):
        with pytest.raises(CurrencyMismatch):
            convert_to_currency(Decimal("100.00"), "DOP", Decimal("1"), "USD")

    def test_conversion_requires_rate(self):
        with pytest.raises(ValidationError):
            convert_to_currency(Decimal("100.00"), "USD", Decimal("0"), "DOP")


class TestDueDate:

    def test_net30(self):
        assert compute_due_date(date(2026, 1, 15), PaymentTerms.NET30) == date(2026, 2, 14)

    def test_immediate(self):
        assert compute_due_date(date(2026, 1, 15), PaymentTerms.IMMEDIATE) == date(2026, 1, 15)

    def test_custom_requires_days(self):
        with pytest.raises(ValidationError):
            compute_due_date(date(2026, 1, 15), PaymentTerms.CUSTOM)
        assert compute_due_date(date(2026, 1, 15), PaymentTerms.CUSTOM, 10) == date(2026, 1, 25)


class TestTaxIdValidation:
    """RNC (9 dígitos, pesos 7-9-8-6-5-4-3-2) y cédula (11 dígitos, Luhn)"""

    def test_valid_rnc(self):
        assert validate_rnc("101000005") is True
        assert validate_rnc("130-00000-6") is True

    def test_invalid_rnc_check_digit(self):
        assert validate_rnc("101000006") is False
        assert validate_rnc("12345") is False

    def test_valid_cedula(self):
        assert validate_cedula("00100000009") is True
        assert validate_cedula("00100000008") is False

    def test_validate_tax_id_by_length(self):
        assert validate_tax_id("101-00000-5") is True
        assert validate_tax_id("001-0000000-9") is True
        assert validate_tax_id("abc") is False

    def test_format_tax_id(self):
        assert format_tax_id("101000005") == "101-00000-5"
        assert format_tax_id("00100000009") == "001-0000000-9"

    def test_validate_period(self):
        assert validate_period("202603") is True
        assert validate_period("202613") is False
        assert validate_period("2026-03") is False


class TestTotalsPreviewAPI:

    def test_preview(self, client, auth_headers):
        response = client.post(
            "/taxes/preview",
            json={"items": [{"description": "Limpieza dental", "quantity": "1", "unit_price": "423.73"}]},
            headers=auth_headers("viewer")
        )

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["tax_amount"]) == Decimal("76.27")
        assert Decimal(data["total"]) == Decimal("500.00")

    def test_preview_requires_token(self, client):
        response = client.post("/taxes/preview", json={"items": [{"description": "x", "quantity": "1", "unit_price": "1"}]})
        assert response.status_code in (401, 403)
