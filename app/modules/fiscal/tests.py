"""
Tests para la asignación de NCF y la numeración interna
"""

import threading
from datetime import date
from types import SimpleNamespace
from decimal import Decimal
from uuid import uuid4

import pytest

from app.common.exceptions import (
    InvariantViolation, NoSequenceConfigured, SequenceConflict, SequenceExhausted,
    SequenceExpired, ValidationError
)
from app.modules.fiscal.models import DocumentKind, FiscalDocumentType, FiscalSequence
from app.modules.fiscal.schemas import FiscalSequenceCreate
from app.modules.fiscal.service import (
    DocumentNumberService, FiscalSequenceService, SequenceAllocator, format_fiscal_number
)
from app.modules.invoices.schemas import InvoiceCreate
from app.modules.invoices.service import InvoiceService
from app.modules.taxes.schemas import LineItemBase


def seed_sequence(session, tenant_id, current_number, end_number=5000):
    sequence = FiscalSequence(
        tenant_id=tenant_id,
        document_type=FiscalDocumentType.FINAL_CONSUMER,
        prefix="B02",
        start_number=1,
        end_number=end_number,
        current_number=current_number,
        padding=8,
        expiration_date=date(2027, 12, 31),
        is_active=True,
    )
    session.add(sequence)
    session.commit()
    return sequence.id


def run_in_threads(target, count):
    """Ejecuta `target(i)` en `count` hilos que arrancan a la vez; devuelve (resultados, errores)"""
    barrier = threading.Barrier(count)
    results, errors = [], []
    lock = threading.Lock()

    def worker(i):
        barrier.wait()
        try:
            value = target(i)
            with lock:
                results.append(value)
        except Exception as e:
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


class TestFormat:

    def test_prefix_and_padding(self):
        assert format_fiscal_number("B02", 1892, 8) == "B0200001892"
        assert format_fiscal_number("B01", 1, 8) == "B0100000001"


class TestSequenceAllocator:

    def test_allocates_next_number(self, db_session, tenant_id, make_sequence, today):
        sequence = make_sequence(current_number=1891)

        allocated = SequenceAllocator(db_session).allocate(tenant_id, FiscalDocumentType.FINAL_CONSUMER, today=today)

        assert allocated.number == "B0200001892"
        assert allocated.value == 1892
        assert allocated.sequence_id == sequence.id
        assert allocated.expiration_date == date(2027, 12, 31)

        db_session.refresh(sequence)
        assert sequence.current_number == 1892

    def test_consecutive_allocations_are_dense(self, db_session, tenant_id, make_sequence, today):
        make_sequence(current_number=1891)
        allocator = SequenceAllocator(db_session)

        numbers = [allocator.allocate(tenant_id, "final-consumer", today=today).number for _ in range(3)]

        assert numbers == ["B0200001892", "B0200001893", "B0200001894"]

    def test_no_sequence_configured(self, db_session, tenant_id, today):
        with pytest.raises(NoSequenceConfigured):
            SequenceAllocator(db_session).allocate(tenant_id, FiscalDocumentType.CREDIT_FISCAL, today=today)

    def test_inactive_sequence_is_ignored(self, db_session, tenant_id, make_sequence, today):
        make_sequence(is_active=False)

        with pytest.raises(NoSequenceConfigured):
            SequenceAllocator(db_session).allocate(tenant_id, FiscalDocumentType.FINAL_CONSUMER, today=today)

    def test_expired_sequence(self, db_session, tenant_id, make_sequence, today):
        sequence = make_sequence(current_number=10, expiration_date=date(2026, 3, 14))

        with pytest.raises(SequenceExpired):
            SequenceAllocator(db_session).allocate(tenant_id, FiscalDocumentType.FINAL_CONSUMER, today=today)

        db_session.refresh(sequence)
        assert sequence.current_number == 10

    def test_sequence_valid_on_expiration_day(self, db_session, tenant_id, make_sequence, today):
        make_sequence(expiration_date=today)

        allocated = SequenceAllocator(db_session).allocate(tenant_id, FiscalDocumentType.FINAL_CONSUMER, today=today)
        assert allocated.value == 1

    def test_exhausted_sequence(self, db_session, tenant_id, make_sequence, today):
        make_sequence(current_number=1891, end_number=1893)
        allocator = SequenceAllocator(db_session)

        assert allocator.allocate(tenant_id, FiscalDocumentType.FINAL_CONSUMER, today=today).value == 1892
        assert allocator.allocate(tenant_id, FiscalDocumentType.FINAL_CONSUMER, today=today).value == 1893
        with pytest.raises(SequenceExhausted):
            allocator.allocate(tenant_id, FiscalDocumentType.FINAL_CONSUMER, today=today)

    def test_tenants_do_not_share_sequences(self, db_session, tenant_id, other_tenant_id, make_sequence, today):
        make_sequence(current_number=100)
        make_sequence(tenant_id=other_tenant_id, current_number=7)
        allocator = SequenceAllocator(db_session)

        assert allocator.allocate(tenant_id, FiscalDocumentType.FINAL_CONSUMER, today=today).value == 101
        assert allocator.allocate(other_tenant_id, FiscalDocumentType.FINAL_CONSUMER, today=today).value == 8

    def test_uncommitted_allocation_rolls_back(self, db_session, tenant_id, make_sequence, today):
        sequence = make_sequence(current_number=1891)

        SequenceAllocator(db_session).allocate(tenant_id, FiscalDocumentType.FINAL_CONSUMER, today=today, commit=False)
        db_session.rollback()

        db_session.refresh(sequence)
        assert sequence.current_number == 1891

    def test_conflict_after_exhausting_retries(self, db_session, tenant_id, make_sequence, today, monkeypatch):
        """Si otro proceso siempre gana la carrera, el allocator se rinde con SequenceConflict"""
        make_sequence(current_number=5)
        allocator = SequenceAllocator(db_session, max_retries=3)
        original_read = allocator._read_active

        def stale_read(*args):
            row = original_read(*args)._asdict()
            row["current_number"] -= 1
            return SimpleNamespace(**row)

        monkeypatch.setattr(allocator, "_read_active", stale_read)

        with pytest.raises(SequenceConflict):
            allocator.allocate(tenant_id, FiscalDocumentType.FINAL_CONSUMER, today=today)


class TestConcurrentAllocation:

    def test_two_finalizations_get_distinct_consecutive_numbers(self, file_session_factory, today):
        """Con la secuencia en 1891, dos finalizaciones simultáneas obtienen 1892 y 1893"""
        tenant_id, user_id = uuid4(), uuid4()
        setup = file_session_factory()
        seed_sequence(setup, tenant_id, current_number=1891)
        invoice_ids = []
        for _ in range(2):
            invoice = InvoiceService(setup).create_invoice(
                InvoiceCreate(
                    customer_id=uuid4(),
                    issue_date=date(2026, 3, 10),
                    tax_rate=Decimal("0"),
                    items=[LineItemBase(description="Consulta", quantity=Decimal("1"), unit_price=Decimal("500"))]
                ),
                tenant_id, user_id
            )
            invoice_ids.append(invoice.id)
        setup.close()

        def finalize(i):
            session = file_session_factory()
            try:
                invoice = InvoiceService(session).finalize_invoice(invoice_ids[i], tenant_id, today=today)
                return invoice.fiscal_number
            finally:
                session.close()

        numbers, errors = run_in_threads(finalize, 2)

        assert errors == []
        assert sorted(numbers) == ["B0200001892", "B0200001893"]

        check = file_session_factory()
        sequence = check.query(FiscalSequence).filter(FiscalSequence.tenant_id == tenant_id).one()
        assert sequence.current_number == 1893
        check.close()

    def test_many_allocations_are_unique_and_dense(self, file_session_factory, today):
        tenant_id = uuid4()
        workers = 8
        setup = file_session_factory()
        seed_sequence(setup, tenant_id, current_number=0)
        setup.close()

        def allocate(i):
            session = file_session_factory()
            try:
                allocator = SequenceAllocator(session, max_retries=workers + 2)
                return allocator.allocate(tenant_id, FiscalDocumentType.FINAL_CONSUMER, today=today).value
            finally:
                session.close()

        values, errors = run_in_threads(allocate, workers)

        assert errors == []
        assert sorted(values) == list(range(1, workers + 1))


class TestFiscalSequenceService:

    def _data(self, **kwargs):
        kwargs.setdefault("document_type", FiscalDocumentType.CREDIT_FISCAL)
        kwargs.setdefault("start_number", 1)
        kwargs.setdefault("end_number", 1000)
        return FiscalSequenceCreate(**kwargs)

    def test_create_defaults_prefix_and_counter(self, db_session, tenant_id):
        sequence = FiscalSequenceService(db_session).create_sequence(self._data(start_number=501), tenant_id)

        assert sequence.prefix == "B01"
        assert sequence.current_number == 500
        assert sequence.padding == 8
        assert sequence.is_active is True

    def test_overlapping_range_rejected(self, db_session, tenant_id):
        service = FiscalSequenceService(db_session)
        first = service.create_sequence(self._data(), tenant_id)
        service.deactivate_sequence(first.id, tenant_id)

        with pytest.raises(ValidationError):
            service.create_sequence(self._data(start_number=1000, end_number=2000), tenant_id)

    def test_second_active_sequence_rejected(self, db_session, tenant_id):
        service = FiscalSequenceService(db_session)
        service.create_sequence(self._data(), tenant_id)

        with pytest.raises(InvariantViolation):
            service.create_sequence(self._data(start_number=1001, end_number=2000), tenant_id)

    def test_replace_active_retires_previous(self, db_session, tenant_id):
        service = FiscalSequenceService(db_session)
        old = service.create_sequence(self._data(), tenant_id)

        new = service.create_sequence(self._data(start_number=1001, end_number=2000, replace_active=True), tenant_id)

        db_session.refresh(old)
        assert old.is_active is False
        assert new.is_active is True

    def test_end_number_must_fit_padding(self, db_session, tenant_id):
        with pytest.raises(ValidationError):
            FiscalSequenceService(db_session).create_sequence(
                self._data(end_number=1000, padding=3), tenant_id
            )

    def test_status(self, db_session, make_sequence, today):
        sequence = make_sequence(current_number=4960, end_number=5000)

        status = FiscalSequenceService(db_session).sequence_status(sequence, today)

        assert status.dgii_code == "B02"
        assert status.next_number == "B0200004961"
        assert status.issued == 4960
        assert status.remaining == 40
        assert status.is_low_stock is True
        assert status.is_exhausted is False

    def test_status_of_expired_sequence_has_no_next_number(self, db_session, make_sequence, today):
        sequence = make_sequence(expiration_date=date(2026, 1, 31))

        status = FiscalSequenceService(db_session).sequence_status(sequence, today)

        assert status.is_expired is True
        assert status.next_number is None


class TestDocumentNumbers:

    def test_invoice_and_quotation_formats(self, db_session, tenant_id):
        service = DocumentNumberService(db_session)

        assert service.next_number(tenant_id, DocumentKind.INVOICE, 2026) == "FAC-2026-00001"
        assert service.next_number(tenant_id, DocumentKind.INVOICE, 2026) == "FAC-2026-00002"
        assert service.next_number(tenant_id, DocumentKind.QUOTATION, 2026) == "COT-2026-0001"
        db_session.commit()

    def test_counter_restarts_each_year(self, db_session, tenant_id):
        service = DocumentNumberService(db_session)
        service.next_number(tenant_id, DocumentKind.INVOICE, 2026)
        db_session.commit()

        assert service.next_number(tenant_id, DocumentKind.INVOICE, 2027) == "FAC-2027-00001"
        db_session.commit()


class TestFiscalSequenceAPI:

    def test_create_and_get_status(self, client, auth_headers):
        response = client.post(
            "/fiscal-sequences/",
            json={"document_type": "final-consumer", "start_number": 1, "end_number": 100},
            headers=auth_headers("accountant")
        )
        assert response.status_code == 201
        sequence_id = response.json()["id"]

        response = client.get(f"/fiscal-sequences/{sequence_id}", headers=auth_headers("viewer"))
        assert response.status_code == 200
        assert response.json()["next_number"] == "B0200000001"

    def test_receptionist_cannot_create(self, client, auth_headers):
        response = client.post(
            "/fiscal-sequences/",
            json={"document_type": "final-consumer", "start_number": 1, "end_number": 100},
            headers=auth_headers("receptionist")
        )
        assert response.status_code == 403

    def test_duplicate_active_returns_conflict(self, client, auth_headers):
        body = {"document_type": "credit-fiscal", "start_number": 1, "end_number": 100}
        client.post("/fiscal-sequences/", json=body, headers=auth_headers())

        response = client.post(
            "/fiscal-sequences/",
            json={**body, "start_number": 101, "end_number": 200},
            headers=auth_headers()
        )
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "INVARIANT_VIOLATION"
