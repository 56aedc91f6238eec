"""
Tests para el ciclo de vida de facturas y el ledger de pagos
"""

import threading

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import (
    ConcurrencyConflict, ImmutableRecordError, InvalidAmount, InvalidTransition, InvoiceCancelled, InvoiceNotFound,
    NoSequenceConfigured, OverpaymentRejected, SequenceExpired, ValidationError
)
from app.modules.fiscal.models import FiscalDocumentType, FiscalSequence
from app.modules.invoices.models import Invoice, InvoiceStatus, Payment, PaymentMethod, derive_invoice_status
from app.modules.invoices.payments import PaymentLedger
from app.modules.invoices.schemas import InvoiceCreate, InvoiceFilters, InvoiceUpdate, PaymentCreate
from app.modules.invoices.service import InvoiceService
from app.modules.taxes.schemas import LineItemBase


DUE_LATER = date(2026, 4, 9)


def item(description="Consulta general", quantity="1", unit_price="1000.00", **kwargs):
    return LineItemBase(
        description=description, quantity=Decimal(quantity), unit_price=Decimal(unit_price), **kwargs
    )


def payment(amount, key=None, method=PaymentMethod.CASH):
    return PaymentCreate(amount=Decimal(amount), method=method, idempotency_key=key)


class TestStatusDerivation:
    """Precedencia: anulada, borrador, pagada, vencida, parcial, pendiente"""

    def test_precedence(self):
        today = date(2026, 3, 15)
        past, future = date(2026, 3, 1), date(2026, 4, 1)
        d = Decimal

        assert derive_invoice_status(d("100"), d("100"), past, today, cancelled=True) == InvoiceStatus.CANCELLED
        assert derive_invoice_status(d("100"), d("0"), past, today, finalized=False) == InvoiceStatus.DRAFT
        assert derive_invoice_status(d("100"), d("100"), past, today) == InvoiceStatus.PAID
        assert derive_invoice_status(d("100"), d("40"), past, today) == InvoiceStatus.OVERDUE
        assert derive_invoice_status(d("100"), d("40"), future, today) == InvoiceStatus.PARTIAL
        assert derive_invoice_status(d("100"), d("0"), future, today) == InvoiceStatus.PENDING

    def test_due_today_is_not_overdue(self):
        today = date(2026, 3, 15)
        assert derive_invoice_status(Decimal("100"), Decimal("0"), today, today) == InvoiceStatus.PENDING


class TestInvoiceLifecycle:

    def test_create_draft(self, make_invoice, today):
        invoice = make_invoice(items=[item(unit_price="423.73")], tax_rate=Decimal("18"))

        assert invoice.number == "FAC-2026-00001"
        assert invoice.fiscal_number is None
        assert invoice.status_on(today) == InvoiceStatus.DRAFT
        assert invoice.tax_amount == Decimal("76.27")
        assert invoice.total == Decimal("500.00")
        assert invoice.paid_amount == Decimal("0")

    def test_internal_numbers_are_consecutive(self, make_invoice):
        assert make_invoice().number == "FAC-2026-00001"
        assert make_invoice().number == "FAC-2026-00002"

    def test_due_date_from_payment_terms(self, make_invoice):
        invoice = make_invoice(payment_terms="net30")
        assert invoice.due_date == date(2026, 4, 9)

    def test_unsupported_currency(self, make_invoice):
        with pytest.raises(ValidationError):
            make_invoice(currency="EUR", exchange_rate=Decimal("64"))

    def test_local_currency_requires_unit_rate(self, make_invoice):
        with pytest.raises(ValidationError):
            make_invoice(exchange_rate=Decimal("2"))

    def test_finalize_assigns_fiscal_number(self, db_session, tenant_id, make_sequence, make_invoice, today):
        make_sequence(current_number=1891)
        invoice = make_invoice(due_date=DUE_LATER)

        invoice = InvoiceService(db_session).finalize_invoice(invoice.id, tenant_id, today=today)

        assert invoice.fiscal_number == "B0200001892"
        assert invoice.fiscal_document_type == FiscalDocumentType.FINAL_CONSUMER
        assert invoice.fiscal_expiration_date == date(2027, 12, 31)
        assert invoice.finalized_at is not None
        assert invoice.status_on(today) == InvoiceStatus.PENDING

    def test_finalize_without_sequence_keeps_draft(self, db_session, tenant_id, make_invoice, today):
        invoice = make_invoice()

        with pytest.raises(NoSequenceConfigured):
            InvoiceService(db_session).finalize_invoice(invoice.id, tenant_id, today=today)

        invoice = InvoiceService(db_session).get_invoice_by_id(invoice.id, tenant_id)
        assert invoice.fiscal_number is None
        assert invoice.status_on(today) == InvoiceStatus.DRAFT

    def test_finalize_with_expired_sequence_leaves_counter(self, db_session, tenant_id, make_sequence, make_invoice, today):
        sequence = make_sequence(current_number=3, expiration_date=date(2026, 3, 1))
        invoice = make_invoice()

        with pytest.raises(SequenceExpired):
            InvoiceService(db_session).finalize_invoice(invoice.id, tenant_id, today=today)

        db_session.refresh(sequence)
        assert sequence.current_number == 3

    def test_finalize_twice_rejected(self, db_session, tenant_id, make_sequence, issued_invoice, today):
        make_sequence()
        invoice = issued_invoice()

        with pytest.raises(InvalidTransition):
            InvoiceService(db_session).finalize_invoice(invoice.id, tenant_id, today=today)

    def test_finalize_requires_lines(self, db_session, tenant_id, make_sequence, make_invoice, today):
        make_sequence()
        invoice = make_invoice(items=[])

        with pytest.raises(ValidationError):
            InvoiceService(db_session).finalize_invoice(invoice.id, tenant_id, today=today)

    def test_credit_fiscal_requires_tax_id(self, db_session, tenant_id, make_sequence, make_invoice, today):
        make_sequence(document_type=FiscalDocumentType.CREDIT_FISCAL)
        invoice = make_invoice()

        with pytest.raises(ValidationError):
            InvoiceService(db_session).finalize_invoice(
                invoice.id, tenant_id, FiscalDocumentType.CREDIT_FISCAL, today=today
            )

    def test_credit_fiscal_with_rnc(self, db_session, tenant_id, make_sequence, make_invoice, today):
        make_sequence(document_type=FiscalDocumentType.CREDIT_FISCAL)
        invoice = make_invoice(customer_tax_id="101000005")

        invoice = InvoiceService(db_session).finalize_invoice(
            invoice.id, tenant_id, FiscalDocumentType.CREDIT_FISCAL, today=today
        )

        assert invoice.customer_tax_id == "101-00000-5"
        assert invoice.fiscal_number == "B0100000001"

    def test_update_draft_recomputes_totals(self, db_session, tenant_id, make_invoice):
        invoice = make_invoice()

        invoice = InvoiceService(db_session).update_invoice(
            invoice.id, InvoiceUpdate(items=[item(quantity="2", unit_price="250.00")]), tenant_id
        )

        assert invoice.total == Decimal("500.00")
        assert len(invoice.line_items) == 1

    def test_issued_invoice_cannot_be_edited(self, db_session, tenant_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()

        with pytest.raises(InvalidTransition):
            InvoiceService(db_session).update_invoice(invoice.id, InvoiceUpdate(notes="x"), tenant_id)

    def test_other_tenant_cannot_read(self, db_session, other_tenant_id, make_invoice):
        invoice = make_invoice()

        with pytest.raises(InvoiceNotFound):
            InvoiceService(db_session).get_invoice_by_id(invoice.id, other_tenant_id)


class TestCancellation:

    def test_cancel_keeps_fiscal_number_and_sequence(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        sequence = make_sequence()
        invoice = issued_invoice()

        invoice = InvoiceService(db_session).cancel_invoice(invoice.id, "Error en datos del paciente", tenant_id, user_id)

        assert invoice.status == InvoiceStatus.CANCELLED
        assert invoice.fiscal_number == "B0200000001"
        assert invoice.cancelled_reason == "Error en datos del paciente"
        db_session.refresh(sequence)
        assert sequence.current_number == 1

    def test_next_invoice_does_not_reuse_cancelled_number(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        make_sequence()
        first = issued_invoice()
        InvoiceService(db_session).cancel_invoice(first.id, "Duplicada", tenant_id, user_id)

        second = issued_invoice()

        assert second.fiscal_number == "B0200000002"

    def test_reason_required(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()

        with pytest.raises(ValidationError):
            InvoiceService(db_session).cancel_invoice(invoice.id, "  ", tenant_id, user_id)

    def test_draft_cannot_be_cancelled(self, db_session, tenant_id, user_id, make_invoice):
        invoice = make_invoice()

        with pytest.raises(InvalidTransition):
            InvoiceService(db_session).cancel_invoice(invoice.id, "No aplica", tenant_id, user_id)

    def test_cancel_twice_rejected(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()
        service = InvoiceService(db_session)
        service.cancel_invoice(invoice.id, "Duplicada", tenant_id, user_id)

        with pytest.raises(InvalidTransition):
            service.cancel_invoice(invoice.id, "Duplicada", tenant_id, user_id)

    def test_paid_invoice_cannot_be_cancelled(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()
        PaymentLedger(db_session).apply_payment(invoice.id, tenant_id, payment("1000.00"), user_id)

        with pytest.raises(InvalidTransition):
            InvoiceService(db_session).cancel_invoice(invoice.id, "Devolución", tenant_id, user_id)

    def test_payments_survive_cancellation(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()
        ledger = PaymentLedger(db_session)
        ledger.apply_payment(invoice.id, tenant_id, payment("400.00"), user_id)

        InvoiceService(db_session).cancel_invoice(invoice.id, "Cambio de tratamiento", tenant_id, user_id)

        assert ledger.ledger_total(invoice.id) == Decimal("400.00")
        with pytest.raises(InvoiceCancelled):
            ledger.apply_payment(invoice.id, tenant_id, payment("100.00"), user_id)


class TestPaymentLedger:

    def test_partial_then_full_then_overpayment(self, db_session, tenant_id, user_id, make_sequence, issued_invoice, today):
        """1000 -> abono 400 (parcial) -> 600 (pagada) -> 0.01 rechazado"""
        make_sequence()
        invoice = issued_invoice(due_date=DUE_LATER)
        ledger = PaymentLedger(db_session)

        ledger.apply_payment(invoice.id, tenant_id, payment("400.00"), user_id)
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("400.00")
        assert invoice.status_on(today) == InvoiceStatus.PARTIAL

        ledger.apply_payment(invoice.id, tenant_id, payment("600.00"), user_id)
        db_session.refresh(invoice)
        assert invoice.amount_due == Decimal("0.00")
        assert invoice.status_on(today) == InvoiceStatus.PAID

        with pytest.raises(OverpaymentRejected):
            ledger.apply_payment(invoice.id, tenant_id, payment("0.01"), user_id)
        assert ledger.ledger_total(invoice.id) == Decimal("1000.00")

    def test_overpayment_leaves_ledger_untouched(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()
        ledger = PaymentLedger(db_session)

        with pytest.raises(OverpaymentRejected):
            ledger.apply_payment(invoice.id, tenant_id, payment("1000.01"), user_id)

        assert ledger.get_invoice_payments(invoice.id, tenant_id) == []

    @pytest.mark.parametrize("amount", ["0", "-50.00"])
    def test_non_positive_amount(self, db_session, tenant_id, user_id, make_sequence, issued_invoice, amount):
        make_sequence()
        invoice = issued_invoice()

        with pytest.raises(InvalidAmount):
            PaymentLedger(db_session).apply_payment(invoice.id, tenant_id, payment(amount), user_id)

    def test_draft_invoice_rejects_payments(self, db_session, tenant_id, user_id, make_invoice):
        invoice = make_invoice()

        with pytest.raises(InvalidTransition):
            PaymentLedger(db_session).apply_payment(invoice.id, tenant_id, payment("100.00"), user_id)

    def test_idempotent_retry_returns_original(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()
        ledger = PaymentLedger(db_session)

        first = ledger.apply_payment(invoice.id, tenant_id, payment("400.00", key="caja-1-0001"), user_id)
        retry = ledger.apply_payment(invoice.id, tenant_id, payment("400.00", key="caja-1-0001"), user_id)

        assert retry.id == first.id
        assert len(ledger.get_invoice_payments(invoice.id, tenant_id)) == 1
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("400.00")

    def test_retry_after_full_payment_is_not_overpayment(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()
        ledger = PaymentLedger(db_session)

        first = ledger.apply_payment(invoice.id, tenant_id, payment("1000.00", key="pago-total"), user_id)
        retry = ledger.apply_payment(invoice.id, tenant_id, payment("1000.00", key="pago-total"), user_id)

        assert retry.id == first.id

    def test_retry_with_different_data_is_rejected(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()
        ledger = PaymentLedger(db_session)
        ledger.apply_payment(invoice.id, tenant_id, payment("400.00", key="caja-1-0002"), user_id)

        with pytest.raises(ValidationError):
            ledger.apply_payment(invoice.id, tenant_id, payment("450.00", key="caja-1-0002"), user_id)
        with pytest.raises(ValidationError):
            ledger.apply_payment(
                invoice.id, tenant_id, payment("400.00", key="caja-1-0002", method=PaymentMethod.CARD), user_id
            )

        assert len(ledger.get_invoice_payments(invoice.id, tenant_id)) == 1
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("400.00")

    def test_reversal(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()
        ledger = PaymentLedger(db_session)
        original = ledger.apply_payment(invoice.id, tenant_id, payment("400.00"), user_id)

        reversal = ledger.reverse_payment(original.id, tenant_id, "Cheque devuelto", user_id)

        assert reversal.amount == Decimal("-400.00")
        assert reversal.reverses_payment_id == original.id
        db_session.refresh(original)
        assert original.amount == Decimal("400.00")
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("0.00")
        assert ledger.ledger_total(invoice.id) == Decimal("0.00")

    def test_payment_reversed_only_once(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()
        ledger = PaymentLedger(db_session)
        original = ledger.apply_payment(invoice.id, tenant_id, payment("400.00"), user_id)
        reversal = ledger.reverse_payment(original.id, tenant_id, "Cheque devuelto", user_id)

        with pytest.raises(InvalidTransition):
            ledger.reverse_payment(original.id, tenant_id, "Otra vez", user_id)
        with pytest.raises(InvalidTransition):
            ledger.reverse_payment(reversal.id, tenant_id, "Revertir la reversión", user_id)

    def test_payment_rows_are_immutable(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()
        recorded = PaymentLedger(db_session).apply_payment(invoice.id, tenant_id, payment("400.00"), user_id)

        recorded.amount = Decimal("1.00")
        with pytest.raises(ImmutableRecordError):
            db_session.commit()
        db_session.rollback()

        db_session.delete(recorded)
        with pytest.raises(ImmutableRecordError):
            db_session.commit()
        db_session.rollback()

        assert db_session.query(Payment).count() == 1

    def test_reconcile_fixes_drifted_snapshot(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()
        ledger = PaymentLedger(db_session)
        ledger.apply_payment(invoice.id, tenant_id, payment("400.00"), user_id)

        db_session.query(Invoice).filter(Invoice.id == invoice.id).update(
            {Invoice.paid_amount: Decimal("100.00")}, synchronize_session=False
        )
        db_session.commit()

        results = ledger.reconcile_tenant(tenant_id)

        assert len(results) == 1
        assert results[0].corrected is True
        assert results[0].recorded_paid_amount == Decimal("100.00")
        assert results[0].ledger_paid_amount == Decimal("400.00")
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("400.00")

    def test_reconcile_consistent_invoice(self, db_session, tenant_id, user_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()
        PaymentLedger(db_session).apply_payment(invoice.id, tenant_id, payment("250.00"), user_id)

        result = PaymentLedger(db_session).reconcile_invoice(invoice)

        assert result.corrected is False


class TestConcurrentPayments:

    def test_two_payments_cannot_overpay(self, file_session_factory, today):
        """Dos pagos simultáneos de 600.00 sobre 1,000.00: solo uno queda registrado"""
        tenant_id, user_id = uuid4(), uuid4()
        setup = file_session_factory()
        setup.add(FiscalSequence(
            tenant_id=tenant_id,
            document_type=FiscalDocumentType.FINAL_CONSUMER,
            prefix="B02",
            start_number=1,
            end_number=100,
            current_number=0,
            padding=8,
            expiration_date=date(2027, 12, 31),
            is_active=True,
        ))
        setup.commit()
        service = InvoiceService(setup)
        invoice = service.create_invoice(
            InvoiceCreate(customer_id=uuid4(), issue_date=date(2026, 3, 10), tax_rate=Decimal("0"), items=[item()]),
            tenant_id, user_id
        )
        invoice_id = service.finalize_invoice(invoice.id, tenant_id, today=today).id
        setup.close()

        barrier = threading.Barrier(2)
        results, errors = [], []
        lock = threading.Lock()

        def pay():
            session = file_session_factory()
            try:
                barrier.wait()
                recorded = PaymentLedger(session).apply_payment(invoice_id, tenant_id, payment("600.00"), user_id)
                with lock:
                    results.append(recorded.id)
            except Exception as e:
                with lock:
                    errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=pay) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], (ConcurrencyConflict, OverpaymentRejected))

        check = file_session_factory()
        stored = check.get(Invoice, invoice_id)
        assert check.query(Payment).filter(Payment.invoice_id == invoice_id).count() == 1
        assert stored.paid_amount == Decimal("600.00")
        assert PaymentLedger(check).ledger_total(invoice_id) == stored.paid_amount
        check.close()


class TestInvoiceQueries:

    def test_filter_by_fiscal_number(self, db_session, tenant_id, make_sequence, make_invoice, issued_invoice):
        make_sequence()
        make_invoice()
        issued_invoice()
        service = InvoiceService(db_session)

        issued = service.get_invoices(tenant_id, InvoiceFilters(has_fiscal_number=True))
        drafts = service.get_invoices(tenant_id, InvoiceFilters(has_fiscal_number=False))

        assert issued["total"] == 1
        assert drafts["total"] == 1

    def test_search_by_fiscal_number(self, db_session, tenant_id, make_sequence, issued_invoice):
        make_sequence()
        invoice = issued_invoice()

        result = InvoiceService(db_session).get_invoices(tenant_id, InvoiceFilters(search="B0200000001"))

        assert [i.id for i in result["invoices"]] == [invoice.id]

    def test_billing_stats(self, db_session, tenant_id, user_id, make_sequence, make_invoice, issued_invoice, today):
        make_sequence()
        make_invoice()
        overdue = issued_invoice()
        current = issued_invoice(due_date=DUE_LATER)
        PaymentLedger(db_session).apply_payment(current.id, tenant_id, payment("300.00"), user_id)

        stats = InvoiceService(db_session).get_billing_stats(tenant_id, today=today)

        assert stats.invoices_count == 2
        assert stats.total_invoiced == Decimal("2000.00")
        assert stats.total_collected == Decimal("300.00")
        assert stats.pending_collection == Decimal("1700.00")
        assert stats.overdue_amount == overdue.total
        assert stats.overdue_count == 1


class TestInvoiceAPI:

    def _create(self, client, auth_headers, **body):
        body.setdefault("customer_id", str(uuid4()))
        body.setdefault("tax_rate", "18")
        body.setdefault("items", [{"description": "Limpieza dental", "quantity": "1", "unit_price": "423.73"}])
        return client.post("/invoices/", json=body, headers=auth_headers("receptionist"))

    def test_create_and_finalize(self, client, auth_headers, make_sequence):
        make_sequence()

        response = self._create(client, auth_headers)
        assert response.status_code == 201
        invoice = response.json()
        assert invoice["status"] == "draft"
        assert Decimal(invoice["total"]) == Decimal("500.00")

        response = client.post(f"/invoices/{invoice['id']}/finalize", headers=auth_headers("receptionist"))
        assert response.status_code == 200
        assert response.json()["fiscal_number"] == "B0200000001"

    def test_finalize_without_sequence_is_conflict(self, client, auth_headers):
        invoice = self._create(client, auth_headers).json()

        response = client.post(f"/invoices/{invoice['id']}/finalize", headers=auth_headers())

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "NO_SEQUENCE_CONFIGURED"

    def test_payment_flow(self, client, auth_headers, make_sequence):
        make_sequence()
        invoice = self._create(client, auth_headers).json()
        client.post(f"/invoices/{invoice['id']}/finalize", headers=auth_headers())
        url = f"/invoices/{invoice['id']}/payments"

        first = client.post(url, json={"amount": "200.00", "method": "card", "idempotency_key": "k1"}, headers=auth_headers())
        retry = client.post(url, json={"amount": "200.00", "method": "card", "idempotency_key": "k1"}, headers=auth_headers())
        assert first.status_code == 201
        assert retry.json()["id"] == first.json()["id"]

        over = client.post(url, json={"amount": "300.01", "method": "cash"}, headers=auth_headers())
        assert over.status_code == 409
        assert over.json()["detail"]["code"] == "OVERPAYMENT_REJECTED"

        listing = client.get(url, headers=auth_headers("viewer")).json()
        assert listing["total"] == 1
        assert Decimal(listing["amount_due"]) == Decimal("300.00")

    def test_receptionist_cannot_cancel(self, client, auth_headers, make_sequence):
        make_sequence()
        invoice = self._create(client, auth_headers).json()
        client.post(f"/invoices/{invoice['id']}/finalize", headers=auth_headers())

        response = client.post(
            f"/invoices/{invoice['id']}/cancel", json={"reason": "Error"}, headers=auth_headers("receptionist")
        )

        assert response.status_code == 403

    def test_other_tenant_gets_404(self, client, auth_headers, other_tenant_id):
        invoice = self._create(client, auth_headers).json()

        response = client.get(f"/invoices/{invoice['id']}", headers=auth_headers(tenant=other_tenant_id))

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "INVOICE_NOT_FOUND"
