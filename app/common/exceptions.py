"""
Errores tipados del subsistema de facturación fiscal

Cada error lleva un `code` estable (para clientes de la API), un
`status_code` HTTP y datos estructurados en `extra`. Los servicios lanzan
estas excepciones; `app.main` las traduce a respuestas JSON.

    FiscalError
    |
    +-- ValidationError            (entrada inválida, nada se modificó)
    |   +-- InvalidAmount
    +-- NotFoundError
    |   +-- InvoiceNotFound, QuotationNotFound, PaymentNotFound,
    |       SequenceNotFound, BillNotFound, ReportNotFound
    +-- InvariantViolation
    |   +-- InvalidTransition, OverpaymentRejected, InvoiceCancelled,
    |       ReportLocked, CurrencyMismatch, ImmutableRecordError
    +-- SequenceUnavailable        (operador debe aprovisionar otra secuencia)
    |   +-- NoSequenceConfigured, SequenceExpired, SequenceExhausted
    +-- TransientError             (el llamador puede reintentar)
        +-- SequenceConflict, ConcurrencyConflict
"""

from typing import Any, Dict, Optional


class FiscalError(Exception):
    """Base de todos los errores del dominio fiscal."""

    code: str = "FISCAL_ERROR"
    status_code: int = 400

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code, "message": self.message}
        data.update({k: str(v) if v is not None else None for k, v in self.extra.items()})
        return data


# ===== VALIDACIÓN =====

class ValidationError(FiscalError):
    code = "VALIDATION_ERROR"
    status_code = 422


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"

    def __init__(self, amount: Any):
        super().__init__(f"El monto debe ser mayor a 0 (recibido: {amount})", amount=amount)


# ===== NO ENCONTRADO =====

class NotFoundError(FiscalError):
    code = "NOT_FOUND"
    status_code = 404


class InvoiceNotFound(NotFoundError):
    code = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: Any):
        super().__init__("Factura no encontrada", invoice_id=invoice_id)


class QuotationNotFound(NotFoundError):
    code = "QUOTATION_NOT_FOUND"

    def __init__(self, quotation_id: Any):
        super().__init__("Cotización no encontrada", quotation_id=quotation_id)


class PaymentNotFound(NotFoundError):
    code = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: Any):
        super().__init__("Pago no encontrado", payment_id=payment_id)


class SequenceNotFound(NotFoundError):
    code = "SEQUENCE_NOT_FOUND"

    def __init__(self, sequence_id: Any):
        super().__init__("Secuencia fiscal no encontrada", sequence_id=sequence_id)


class BillNotFound(NotFoundError):
    code = "BILL_NOT_FOUND"

    def __init__(self, bill_id: Any):
        super().__init__("Factura de proveedor no encontrada", bill_id=bill_id)


class ReportNotFound(NotFoundError):
    code = "REPORT_NOT_FOUND"

    def __init__(self, **extra: Any):
        super().__init__("Reporte fiscal no encontrado", **extra)


# ===== INVARIANTES =====

class InvariantViolation(FiscalError):
    code = "INVARIANT_VIOLATION"
    status_code = 409


class InvalidTransition(InvariantViolation):
    code = "INVALID_TRANSITION"

    def __init__(self, entity: str, current_status: Any, action: str, message: Optional[str] = None):
        super().__init__(
            message or f"No se puede {action}: {entity} está en estado '{getattr(current_status, 'value', current_status)}'",
            entity=entity,
            current_status=getattr(current_status, "value", current_status),
            action=action,
        )


class OverpaymentRejected(InvariantViolation):
    code = "OVERPAYMENT_REJECTED"

    def __init__(self, amount: Any, amount_due: Any):
        super().__init__(
            f"El pago de {amount} excede el saldo pendiente de {amount_due}",
            amount=amount,
            amount_due=amount_due,
        )


class InvoiceCancelled(InvariantViolation):
    code = "INVOICE_CANCELLED"

    def __init__(self, invoice_id: Any):
        super().__init__("No se pueden registrar pagos en facturas anuladas", invoice_id=invoice_id)


class ReportLocked(InvariantViolation):
    code = "REPORT_LOCKED"

    def __init__(self, period: str, report_type: Any, status: Any):
        super().__init__(
            f"El reporte {getattr(report_type, 'value', report_type)} del período {period} "
            f"ya fue enviado y no puede regenerarse",
            period=period,
            report_type=getattr(report_type, "value", report_type),
            status=getattr(status, "value", status),
        )


class CurrencyMismatch(InvariantViolation):
    code = "CURRENCY_MISMATCH"

    def __init__(self, expected: str, received: str):
        super().__init__(
            f"No se pueden mezclar monedas: se esperaba {expected} y se recibió {received}",
            expected=expected,
            received=received,
        )


class ImmutableRecordError(InvariantViolation):
    code = "IMMUTABLE_RECORD"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} es inmutable y no puede modificarse ni eliminarse", entity=entity, entity_id=entity_id)


# ===== SECUENCIAS NO DISPONIBLES =====

class SequenceUnavailable(FiscalError):
    code = "SEQUENCE_UNAVAILABLE"
    status_code = 409


class NoSequenceConfigured(SequenceUnavailable):
    code = "NO_SEQUENCE_CONFIGURED"

    def __init__(self, document_type: Any):
        value = getattr(document_type, "value", document_type)
        super().__init__(f"No hay una secuencia activa configurada para '{value}'", document_type=value)


class SequenceExpired(SequenceUnavailable):
    code = "SEQUENCE_EXPIRED"

    def __init__(self, document_type: Any, expiration_date: Any):
        value = getattr(document_type, "value", document_type)
        super().__init__(
            f"La secuencia de '{value}' venció el {expiration_date}",
            document_type=value,
            expiration_date=expiration_date,
        )


class SequenceExhausted(SequenceUnavailable):
    code = "SEQUENCE_EXHAUSTED"

    def __init__(self, document_type: Any, end_number: int):
        value = getattr(document_type, "value", document_type)
        super().__init__(
            f"La secuencia de '{value}' se agotó (último número: {end_number})",
            document_type=value,
            end_number=end_number,
        )


# ===== TRANSITORIOS =====

class TransientError(FiscalError):
    code = "TRANSIENT_ERROR"
    status_code = 503


class SequenceConflict(TransientError):
    code = "SEQUENCE_CONFLICT"

    def __init__(self, document_type: Any, attempts: int):
        value = getattr(document_type, "value", document_type)
        super().__init__(
            f"No se pudo asignar un número fiscal para '{value}' tras {attempts} intentos; reintente",
            document_type=value,
            attempts=attempts,
        )


class ConcurrencyConflict(TransientError):
    code = "CONCURRENCY_CONFLICT"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} fue modificado por otra operación; reintente", entity=entity, entity_id=entity_id)
