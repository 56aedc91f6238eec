"""
Fixtures compartidos por las pruebas de cada módulo (app/modules/*/tests.py)

La base de datos es SQLite en memoria; las tablas se crean y se eliminan en
cada prueba. Los tokens se firman con la misma clave que valida la API.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DEBUG", "false")

from datetime import date
from decimal import Decimal
from uuid import uuid4

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.main import app
from app.core.config import settings
from app.database.database import Base, engine, get_db
from app.modules.bills.schemas import BillCreate
from app.modules.bills.service import BillService
from app.modules.fiscal.models import FiscalDocumentType, FiscalSequence
from app.modules.invoices.schemas import InvoiceCreate
from app.modules.invoices.service import InvoiceService
from app.modules.taxes.schemas import LineItemBase


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# ===== BASE DE DATOS =====

@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def file_session_factory(tmp_path):
    """Sesiones independientes sobre un archivo SQLite, para pruebas con hilos"""
    file_engine = create_engine(
        f"sqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False, "timeout": 30}
    )
    Base.metadata.create_all(bind=file_engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    finally:
        file_engine.dispose()


# ===== CONTEXTO =====

@pytest.fixture
def tenant_id():
    return uuid4()


@pytest.fixture
def other_tenant_id():
    return uuid4()


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def today():
    return date(2026, 3, 15)


# ===== FÁBRICAS =====

def build_sequence(
    tenant_id,
    document_type=FiscalDocumentType.FINAL_CONSUMER,
    start_number=1,
    end_number=5000,
    current_number=None,
    expiration_date=date(2027, 12, 31),
    is_active=True,
):
    return FiscalSequence(
        tenant_id=tenant_id,
        document_type=document_type,
        prefix=document_type.dgii_code,
        start_number=start_number,
        end_number=end_number,
        current_number=start_number - 1 if current_number is None else current_number,
        padding=settings.FISCAL_NUMBER_PADDING,
        expiration_date=expiration_date,
        is_active=is_active,
    )


@pytest.fixture
def make_sequence(db_session, tenant_id):
    def _make(**kwargs):
        kwargs.setdefault("tenant_id", tenant_id)
        sequence = build_sequence(**kwargs)
        db_session.add(sequence)
        db_session.commit()
        db_session.refresh(sequence)
        return sequence
    return _make


def line(description="Consulta general", quantity="1", unit_price="1000.00", **kwargs):
    return LineItemBase(
        description=description,
        quantity=Decimal(quantity),
        unit_price=Decimal(unit_price),
        **kwargs
    )


@pytest.fixture
def make_invoice(db_session, tenant_id, user_id):
    """Crea una factura en borrador con totales calculados"""
    def _make(items=None, tax_rate=Decimal("0"), tenant=None, **kwargs):
        kwargs.setdefault("customer_id", uuid4())
        kwargs.setdefault("customer_name", "Paciente de prueba")
        kwargs.setdefault("issue_date", date(2026, 3, 10))
        data = InvoiceCreate(
            items=items if items is not None else [line()],
            tax_rate=tax_rate,
            **kwargs
        )
        return InvoiceService(db_session).create_invoice(data, tenant or tenant_id, user_id)
    return _make


@pytest.fixture
def issued_invoice(db_session, tenant_id, make_sequence, make_invoice, today):
    """Factura emitida de 1,000.00 DOP sin ITBIS"""
    def _make(**kwargs):
        document_type = kwargs.pop("document_type", FiscalDocumentType.FINAL_CONSUMER)
        invoice = make_invoice(**kwargs)
        return InvoiceService(db_session).finalize_invoice(
            invoice.id, kwargs.get("tenant") or tenant_id, document_type, today=today
        )
    return _make


@pytest.fixture
def make_bill(db_session, tenant_id, user_id):
    """Registra una factura de proveedor con crédito fiscal"""
    counter = {"n": 0}

    def _make(items=None, tax_rate=Decimal("18"), tenant=None, **kwargs):
        counter["n"] += 1
        kwargs.setdefault("supplier_name", "Suplidora Dental SRL")
        kwargs.setdefault("supplier_tax_id", "130000006")
        kwargs.setdefault("fiscal_number", f"B01{counter['n']:08d}")
        kwargs.setdefault("issue_date", date(2026, 3, 5))
        data = BillCreate(
            items=items if items is not None else [line("Resinas", unit_price="500.00")],
            tax_rate=tax_rate,
            **kwargs
        )
        return BillService(db_session).create_bill(data, tenant or tenant_id, user_id)
    return _make


# ===== API =====

def make_token(user_id, tenant_id, role="owner"):
    payload = {"sub": str(user_id), "tenant_id": str(tenant_id), "role": role}
    return jwt.encode(payload, settings.APP_SECRET_STRING, algorithm=settings.ALGORITHM)


@pytest.fixture
def auth_headers(user_id, tenant_id):
    def _headers(role="owner", tenant=None):
        return {"Authorization": f"Bearer {make_token(user_id, tenant or tenant_id, role)}"}
    return _headers


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
