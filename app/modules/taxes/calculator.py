"""
Cálculo de montos e ITBIS para facturas, cotizaciones y facturas de proveedor

Funciones puras sobre Decimal. Los montos por línea se mantienen exactos; cada
suma del documento se redondea una sola vez (ROUND_HALF_UP) a la unidad mínima
de la moneda. La base del impuesto es siempre subtotal - descuento, repartida
entre gravable y exento sin perder centavos.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Iterable, Optional, Sequence, Union

from app.common.exceptions import CurrencyMismatch, ValidationError

Number = Union[Decimal, int, str]

ZERO = Decimal('0')
HUNDRED = Decimal('100')

# Decimales por moneda (ISO 4217)
CURRENCY_MINOR_UNITS = {
    "DOP": 2,
    "USD": 2,
    "EUR": 2,
}


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class PaymentTerms(str, Enum):
    IMMEDIATE = "immediate"
    NET15 = "net15"
    NET30 = "net30"
    NET45 = "net45"
    NET60 = "net60"
    CUSTOM = "custom"


PAYMENT_TERMS_DAYS = {
    PaymentTerms.IMMEDIATE: 0,
    PaymentTerms.NET15: 15,
    PaymentTerms.NET30: 30,
    PaymentTerms.NET45: 45,
    PaymentTerms.NET60: 60,
}


@dataclass(frozen=True)
class LineInput:
    """Datos mínimos de una línea para el cálculo de totales."""
    quantity: Decimal
    unit_price: Decimal
    discount: Decimal = ZERO
    discount_type: DiscountType = DiscountType.PERCENTAGE
    taxable: bool = True


@dataclass(frozen=True)
class DocumentTotals:
    subtotal: Decimal
    discount_total: Decimal
    taxable_amount: Decimal
    exempt_amount: Decimal
    tax_amount: Decimal
    total: Decimal


def to_decimal(value: Number, field: str = "monto") -> Decimal:
    """Convierte a Decimal sin pasar por float."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        try:
            result = Decimal(value)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"El valor de {field} no es un número válido", field=field, value=value)
    if not result.is_finite():
        raise ValidationError(f"El valor de {field} no es un número válido", field=field, value=value)
    return result


def minor_units(currency: str) -> int:
    return CURRENCY_MINOR_UNITS.get((currency or "").upper(), 2)


def _quantum(currency: str) -> Decimal:
    return Decimal(1).scaleb(-minor_units(currency))


def round_money(amount: Number, currency: str = "DOP") -> Decimal:
    """Redondeo comercial a la unidad mínima de la moneda."""
    return to_decimal(amount).quantize(_quantum(currency), rounding=ROUND_HALF_UP)


def _validate_line(quantity: Decimal, unit_price: Decimal, discount: Decimal, discount_type: DiscountType) -> None:
    if quantity <= ZERO:
        raise ValidationError("La cantidad debe ser mayor a 0", field="quantity", value=quantity)
    if unit_price < ZERO:
        raise ValidationError("El precio unitario no puede ser negativo", field="unit_price", value=unit_price)
    if discount < ZERO:
        raise ValidationError("El descuento no puede ser negativo", field="discount", value=discount)
    if discount_type == DiscountType.PERCENTAGE and discount > HUNDRED:
        raise ValidationError("El descuento porcentual debe estar entre 0 y 100", field="discount", value=discount)


def compute_line_discount(
    quantity: Number,
    unit_price: Number,
    discount: Number = ZERO,
    discount_type: Union[DiscountType, str] = DiscountType.PERCENTAGE,
) -> Decimal:
    """
    Descuento exacto de una línea.

    Un descuento fijo mayor que el bruto se limita al bruto, de modo que
    ninguna línea queda negativa.
    """
    qty = to_decimal(quantity, "quantity")
    price = to_decimal(unit_price, "unit_price")
    disc = to_decimal(discount or ZERO, "discount")
    dtype = DiscountType(discount_type)
    _validate_line(qty, price, disc, dtype)

    gross = qty * price
    if dtype == DiscountType.PERCENTAGE:
        return gross * disc / HUNDRED
    return min(disc, gross)


def compute_line_total(
    quantity: Number,
    unit_price: Number,
    discount: Number = ZERO,
    discount_type: Union[DiscountType, str] = DiscountType.PERCENTAGE,
) -> Decimal:
    """Monto de la línea después del descuento, sin redondear."""
    gross = to_decimal(quantity, "quantity") * to_decimal(unit_price, "unit_price")
    return gross - compute_line_discount(quantity, unit_price, discount, discount_type)


def compute_document_totals(
    lines: Sequence[LineInput],
    tax_rate: Number,
    currency: str = "DOP",
) -> DocumentTotals:
    """
    Totales de un documento.

    `tax_rate` es un porcentaje (18 = 18%). El resultado no depende del orden
    de las líneas y cumple total = subtotal - discount_total + tax_amount.
    """
    rate = to_decimal(tax_rate, "tax_rate")
    if rate < ZERO or rate > HUNDRED:
        raise ValidationError("La tasa de impuesto debe estar entre 0 y 100", field="tax_rate", value=rate)

    gross_sum = ZERO
    discount_sum = ZERO
    exempt_sum = ZERO
    has_taxable = False

    for line in lines:
        qty = to_decimal(line.quantity, "quantity")
        price = to_decimal(line.unit_price, "unit_price")
        discount = compute_line_discount(qty, price, line.discount, line.discount_type)
        gross = qty * price
        net = gross - discount

        gross_sum += gross
        discount_sum += discount
        if line.taxable:
            has_taxable = True
        else:
            exempt_sum += net

    subtotal = round_money(gross_sum, currency)
    discount_total = round_money(discount_sum, currency)
    base = subtotal - discount_total

    # La parte gravable absorbe el centavo de redondeo: gravable + exento == base
    if has_taxable:
        exempt_amount = min(round_money(exempt_sum, currency), base)
        taxable_amount = base - exempt_amount
    else:
        exempt_amount = base
        taxable_amount = round_money(ZERO, currency)
    tax_amount = compute_tax(taxable_amount, rate, currency)

    return DocumentTotals(
        subtotal=subtotal,
        discount_total=discount_total,
        taxable_amount=taxable_amount,
        exempt_amount=exempt_amount,
        tax_amount=tax_amount,
        total=subtotal - discount_total + tax_amount,
    )


def compute_tax(base_amount: Number, tax_rate: Number, currency: str = "DOP") -> Decimal:
    """ITBIS sobre una base, redondeado."""
    return round_money(to_decimal(base_amount) * to_decimal(tax_rate, "tax_rate") / HUNDRED, currency)


def sum_money(items: Iterable[tuple], currency: str) -> Decimal:
    """
    Suma pares (monto, moneda) en una sola moneda.

    Mezclar monedas es un error; para consolidar hay que normalizar primero
    con `convert_to_currency`.
    """
    expected = currency.upper()
    total = ZERO
    for amount, item_currency in items:
        if (item_currency or "").upper() != expected:
            raise CurrencyMismatch(expected, item_currency)
        total += to_decimal(amount)
    return total


def convert_to_currency(
    amount: Number,
    source_currency: str,
    exchange_rate: Optional[Number],
    target_currency: str,
    local_currency: str = "DOP",
) -> Decimal:
    """
    Normaliza un monto a la moneda del reporte.

    Solo se admite la identidad o la conversión a moneda local usando la tasa
    registrada en el documento (unidades locales por unidad de origen).
    """
    source = (source_currency or "").upper()
    target = (target_currency or "").upper()
    value = to_decimal(amount)

    if source == target:
        return value
    if target != local_currency.upper():
        raise CurrencyMismatch(target, source)

    rate = to_decimal(exchange_rate if exchange_rate is not None else ZERO, "exchange_rate")
    if rate <= ZERO:
        raise ValidationError(
            f"Se requiere una tasa de cambio válida para convertir {source} a {target}",
            field="exchange_rate",
            value=exchange_rate,
        )
    return round_money(value * rate, target)


def compute_due_date(
    issue_date: date,
    payment_terms: Union[PaymentTerms, str],
    custom_days: Optional[int] = None,
) -> date:
    terms = PaymentTerms(payment_terms)
    if terms == PaymentTerms.CUSTOM:
        if custom_days is None or custom_days < 0:
            raise ValidationError("Los términos personalizados requieren días de crédito", field="custom_days")
        return issue_date + timedelta(days=custom_days)
    return issue_date + timedelta(days=PAYMENT_TERMS_DAYS[terms])
