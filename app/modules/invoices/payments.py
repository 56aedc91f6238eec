"""
Ledger de pagos de facturas.

Los pagos solo se agregan. `Invoice.paid_amount` es una copia de la suma del
ledger que se escribe en la misma transacción que el nuevo registro; el
`version_id_col` de Invoice hace que dos pagos simultáneos no puedan pisar la
misma copia (el segundo recibe ConcurrencyConflict y debe reintentar).
"""
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from decimal import Decimal
from typing import List, Optional
from uuid import UUID
import logging

from app.common.exceptions import (
    ConcurrencyConflict, FiscalError, InvalidAmount, InvalidTransition, InvoiceCancelled,
    InvoiceNotFound, OverpaymentRejected, PaymentNotFound, ValidationError
)
from app.common.mixins import utcnow
from app.modules.invoices.models import Invoice, Payment
from app.modules.invoices.schemas import PaymentCreate, ReconciliationResult
from app.modules.taxes.calculator import round_money

logger = logging.getLogger(__name__)


class PaymentLedger:
    def __init__(self, db: Session):
        self.db = db

    def _get_invoice(self, invoice_id: UUID, tenant_id: UUID) -> Invoice:
        invoice = self.db.query(Invoice).filter(
            Invoice.id == invoice_id,
            Invoice.tenant_id == tenant_id
        ).populate_existing().first()
        if not invoice:
            raise InvoiceNotFound(invoice_id)
        return invoice

    def _find_by_key(self, invoice_id: UUID, idempotency_key: Optional[str]) -> Optional[Payment]:
        if not idempotency_key:
            return None
        return self.db.query(Payment).filter(
            Payment.invoice_id == invoice_id,
            Payment.idempotency_key == idempotency_key
        ).first()

    def _replay(self, existing: Payment, payment_data: PaymentCreate, currency: str) -> Payment:
        """Un reintento debe repetir el mismo pago; otro monto o método es un error del cliente"""
        if (
            Decimal(existing.amount) != round_money(payment_data.amount, currency)
            or existing.method != payment_data.method
        ):
            logger.warning(f"Idempotency key {payment_data.idempotency_key} reused with different payment data")
            raise ValidationError(
                "La clave de idempotencia ya se usó con otro monto o método de pago",
                field="idempotency_key",
                amount=str(existing.amount),
                method=existing.method.value
            )
        return existing

    def ledger_total(self, invoice_id: UUID, currency: str = "DOP") -> Decimal:
        """Suma de todos los registros (pagos y reversiones) de la factura."""
        total = self.db.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
            Payment.invoice_id == invoice_id
        ).scalar()
        return round_money(Decimal(str(total)), currency)

    def apply_payment(self, invoice_id: UUID, tenant_id: UUID, payment_data: PaymentCreate, user_id: UUID) -> Payment:
        """
        Registrar un pago

        Rechaza montos <= 0, facturas anuladas o en borrador, y pagos que
        excedan el saldo. Un reintento con la misma `idempotency_key`
        devuelve el pago original sin duplicarlo.
        """
        amount = Decimal(payment_data.amount)
        if amount <= 0:
            raise InvalidAmount(amount)

        invoice = self._get_invoice(invoice_id, tenant_id)

        existing = self._find_by_key(invoice_id, payment_data.idempotency_key)
        if existing:
            logger.info(f"Payment retry with key {payment_data.idempotency_key} returns {existing.id}")
            return self._replay(existing, payment_data, invoice.currency)

        if invoice.is_cancelled:
            raise InvoiceCancelled(invoice_id)
        if not invoice.is_finalized:
            raise InvalidTransition("la factura", invoice.status, "registrar pagos")

        currency = invoice.currency
        amount = round_money(amount, currency)
        ledger_paid = self.ledger_total(invoice_id, invoice.currency)
        amount_due = Decimal(invoice.total) - ledger_paid
        if amount > amount_due:
            logger.warning(f"Overpayment rejected on invoice {invoice.number}: {amount} > {amount_due}")
            raise OverpaymentRejected(amount, amount_due)

        try:
            payment = Payment(
                tenant_id=tenant_id,
                invoice_id=invoice_id,
                amount=amount,
                method=payment_data.method,
                reference=payment_data.reference,
                idempotency_key=payment_data.idempotency_key,
                notes=payment_data.notes,
                applied_at=utcnow(),
                created_by=user_id
            )
            self.db.add(payment)
            invoice.paid_amount = ledger_paid + amount

            self.db.commit()
            self.db.refresh(payment)

            logger.info(
                f"Applied payment {payment.id} of {amount} {invoice.currency} to invoice {invoice.number} "
                f"(paid {invoice.paid_amount} of {invoice.total})"
            )
            return payment

        except IntegrityError:
            self.db.rollback()
            # Otra petición con la misma clave se confirmó primero
            existing = self._find_by_key(invoice_id, payment_data.idempotency_key)
            if existing:
                logger.info(f"Concurrent payment retry with key {payment_data.idempotency_key} returns {existing.id}")
                return self._replay(existing, payment_data, currency)
            raise
        except StaleDataError:
            self.db.rollback()
            existing = self._find_by_key(invoice_id, payment_data.idempotency_key)
            if existing:
                return self._replay(existing, payment_data, currency)
            logger.warning(f"Invoice {invoice_id} balance changed concurrently; payment not applied")
            raise ConcurrencyConflict("Factura", invoice_id)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error applying payment to invoice {invoice_id}: {e}", exc_info=True)
            raise

    def reverse_payment(self, payment_id: UUID, tenant_id: UUID, reason: str, user_id: UUID) -> Payment:
        """
        Revertir un pago con un registro negativo enlazado al original

        El pago original no se modifica. Cada pago admite una sola reversión.
        """
        if not reason or not reason.strip():
            raise ValidationError("Debe indicar el motivo de la reversión", field="reason")

        original = self.db.query(Payment).filter(
            Payment.id == payment_id,
            Payment.tenant_id == tenant_id
        ).first()
        if not original:
            raise PaymentNotFound(payment_id)
        if original.is_reversal:
            raise InvalidTransition("el pago", "reversal", "revertir", "Una reversión no puede revertirse")

        already = self.db.query(Payment).filter(Payment.reverses_payment_id == payment_id).first()
        if already:
            raise InvalidTransition("el pago", "reversed", "revertir", "El pago ya fue revertido")

        invoice = self._get_invoice(original.invoice_id, tenant_id)

        try:
            ledger_paid = self.ledger_total(invoice.id, invoice.currency)
            reversal = Payment(
                tenant_id=tenant_id,
                invoice_id=invoice.id,
                amount=-Decimal(original.amount),
                method=original.method,
                reference=original.reference,
                reverses_payment_id=original.id,
                notes=reason.strip(),
                applied_at=utcnow(),
                created_by=user_id
            )
            self.db.add(reversal)
            invoice.paid_amount = ledger_paid - Decimal(original.amount)

            self.db.commit()
            self.db.refresh(reversal)

            logger.info(f"Reversed payment {original.id} on invoice {invoice.number} ({original.amount})")
            return reversal

        except IntegrityError:
            self.db.rollback()
            raise InvalidTransition("el pago", "reversed", "revertir", "El pago ya fue revertido")
        except StaleDataError:
            self.db.rollback()
            raise ConcurrencyConflict("Factura", invoice.id)
        except FiscalError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error reversing payment {payment_id}: {e}", exc_info=True)
            raise

    def get_invoice_payments(self, invoice_id: UUID, tenant_id: UUID) -> List[Payment]:
        """Obtener el ledger de una factura en orden de aplicación"""
        self._get_invoice(invoice_id, tenant_id)
        return self.db.query(Payment).filter(
            Payment.invoice_id == invoice_id,
            Payment.tenant_id == tenant_id
        ).order_by(Payment.applied_at).all()

    def reconcile_invoice(self, invoice: Invoice) -> ReconciliationResult:
        """
        Recalcula `paid_amount` desde el ledger y corrige la copia si difiere.
        No confirma la transacción.
        """
        recorded = Decimal(invoice.paid_amount or 0)
        ledger = self.ledger_total(invoice.id, invoice.currency)
        corrected = recorded != ledger
        if corrected:
            logger.warning(f"Invoice {invoice.number} paid_amount {recorded} differs from ledger {ledger}; fixing")
            invoice.paid_amount = ledger

        return ReconciliationResult(
            invoice_id=invoice.id,
            recorded_paid_amount=recorded,
            ledger_paid_amount=ledger,
            corrected=corrected
        )

    def reconcile_tenant(self, tenant_id: UUID) -> List[ReconciliationResult]:
        """Conciliar todas las facturas emitidas de la clínica."""
        invoices = self.db.query(Invoice).filter(
            Invoice.tenant_id == tenant_id,
            Invoice.finalized_at.isnot(None)
        ).all()

        try:
            results = [self.reconcile_invoice(invoice) for invoice in invoices]
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error reconciling invoices for tenant {tenant_id}: {e}", exc_info=True)
            raise

        fixed = sum(1 for r in results if r.corrected)
        logger.info(f"Reconciled {len(results)} invoices for tenant {tenant_id} ({fixed} corrected)")
        return results
