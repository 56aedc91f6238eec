from sqlalchemy import or_, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from typing import Optional
from uuid import UUID
from datetime import date
import logging

from app.core.config import settings
from app.common.exceptions import BillNotFound, FiscalError, InvalidTransition, InvariantViolation, ValidationError
from app.common.mixins import utcnow
from app.modules.bills.models import BillStatus, SupplierBill, SupplierBillLineItem
from app.modules.bills.schemas import BillCreate
from app.modules.invoices.service import apply_totals, build_line_items, validate_currency
from app.modules.taxes.calculator import compute_document_totals

logger = logging.getLogger(__name__)


class BillService:
    """Servicio para facturas de proveedor (lado compras del 606)"""

    def __init__(self, db: Session):
        self.db = db

    def create_bill(self, bill_data: BillCreate, tenant_id: UUID, user_id: UUID) -> SupplierBill:
        """
        Registrar una factura de proveedor

        Los totales salen de la misma calculadora que las facturas de venta.
        Un NCF ya registrado para el mismo proveedor se rechaza.
        """
        validate_currency(bill_data.currency, bill_data.exchange_rate)
        tax_rate = bill_data.tax_rate if bill_data.tax_rate is not None else settings.DEFAULT_TAX_RATE

        try:
            bill = SupplierBill(
                tenant_id=tenant_id,
                supplier_id=bill_data.supplier_id,
                supplier_name=bill_data.supplier_name,
                supplier_tax_id=bill_data.supplier_tax_id,
                fiscal_document_type=bill_data.fiscal_document_type,
                fiscal_number=bill_data.fiscal_number,
                issue_date=bill_data.issue_date,
                currency=bill_data.currency,
                exchange_rate=bill_data.exchange_rate,
                notes=bill_data.notes,
                status=BillStatus.OPEN,
                created_by=user_id
            )
            bill.line_items = build_line_items(bill_data.items, SupplierBillLineItem, bill.currency)
            totals = compute_document_totals(
                [item.to_line_input() for item in bill_data.items], tax_rate, bill.currency
            )
            apply_totals(bill, totals, tax_rate)

            self.db.add(bill)
            self.db.commit()
            self.db.refresh(bill)

            logger.info(f"Registered supplier bill {bill.fiscal_number} from {bill.supplier_tax_id} (total {bill.total})")
            return bill

        except FiscalError:
            self.db.rollback()
            raise
        except IntegrityError:
            self.db.rollback()
            raise InvariantViolation(
                f"El NCF {bill_data.fiscal_number} ya fue registrado para el proveedor {bill_data.supplier_tax_id}",
                fiscal_number=bill_data.fiscal_number,
                supplier_tax_id=bill_data.supplier_tax_id
            )
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating supplier bill: {e}", exc_info=True)
            raise

    def get_bill_by_id(self, bill_id: UUID, tenant_id: UUID) -> SupplierBill:
        bill = self.db.query(SupplierBill).options(
            selectinload(SupplierBill.line_items)
        ).filter(
            SupplierBill.id == bill_id,
            SupplierBill.tenant_id == tenant_id
        ).first()

        if not bill:
            raise BillNotFound(bill_id)

        return bill

    def get_bills(
        self,
        tenant_id: UUID,
        limit: int = 100,
        offset: int = 0,
        status: Optional[BillStatus] = None,
        supplier_id: Optional[UUID] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        search: Optional[str] = None
    ) -> dict:
        """Listar facturas de proveedor con filtros"""
        query = self.db.query(SupplierBill).filter(SupplierBill.tenant_id == tenant_id)

        if status:
            query = query.filter(SupplierBill.status == status)
        if supplier_id:
            query = query.filter(SupplierBill.supplier_id == supplier_id)
        if start_date:
            query = query.filter(SupplierBill.issue_date >= start_date)
        if end_date:
            query = query.filter(SupplierBill.issue_date <= end_date)
        if search:
            query = query.filter(or_(
                SupplierBill.supplier_name.ilike(f"%{search}%"),
                SupplierBill.supplier_tax_id.ilike(f"%{search}%"),
                SupplierBill.fiscal_number.ilike(f"%{search}%")
            ))

        total = query.count()
        bills = query.order_by(desc(SupplierBill.issue_date), desc(SupplierBill.created_at)).offset(offset).limit(limit).all()

        return {
            "bills": bills,
            "total": total,
            "limit": limit,
            "offset": offset
        }

    def cancel_bill(self, bill_id: UUID, reason: str, tenant_id: UUID, user_id: UUID) -> SupplierBill:
        """Anular una factura de proveedor; deja de contar en el 606."""
        if not reason or not reason.strip():
            raise ValidationError("Debe indicar el motivo de la anulación", field="reason")

        bill = self.get_bill_by_id(bill_id, tenant_id)
        if bill.status == BillStatus.VOID:
            raise InvalidTransition("la factura de proveedor", bill.status, "anular", "La factura ya está anulada")

        try:
            bill.status = BillStatus.VOID
            bill.cancelled_at = utcnow()
            bill.cancelled_reason = reason.strip()
            bill.cancelled_by = user_id

            self.db.commit()
            self.db.refresh(bill)

            logger.info(f"Voided supplier bill {bill.fiscal_number} - Reason: {reason}")
            return bill

        except Exception as e:
            self.db.rollback()
            logger.error(f"Error voiding supplier bill {bill_id}: {e}", exc_info=True)
            raise
