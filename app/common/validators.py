"""
Validadores específicos para República Dominicana (RNC, cédula, NCF)
"""
import re

RNC_WEIGHTS = [7, 9, 8, 6, 5, 4, 3, 2]
PERIOD_PATTERN = re.compile(r'^\d{4}(0[1-9]|1[0-2])$')


def clean_tax_id(value: str) -> str:
    """Elimina guiones, puntos y espacios."""
    return re.sub(r'[\.\s\-]', '', value or '')


def validate_rnc(rnc: str) -> bool:
    """
    Valida RNC dominicano (9 dígitos).
    El último dígito es verificador: pesos 7,9,8,6,5,4,3,2 sobre los
    primeros ocho y dígito = (10 - suma % 10) % 10.
    """
    cleaned = clean_tax_id(rnc)

    if not cleaned.isdigit() or len(cleaned) != 9:
        return False

    suma = sum(int(d) * w for d, w in zip(cleaned[:8], RNC_WEIGHTS))
    digito_calculado = (10 - suma % 10) % 10

    return digito_calculado == int(cleaned[8])


def validate_cedula(cedula: str) -> bool:
    """
    Valida cédula dominicana (11 dígitos, formato XXX-XXXXXXX-X).
    Usa el algoritmo de Luhn con pesos alternos 1 y 2.
    """
    cleaned = clean_tax_id(cedula)

    if not cleaned.isdigit() or len(cleaned) != 11:
        return False

    suma = 0
    for i, digito in enumerate(cleaned[:10]):
        producto = int(digito) * (1 if i % 2 == 0 else 2)
        suma += producto // 10 + producto % 10

    digito_calculado = (10 - suma % 10) % 10
    return digito_calculado == int(cleaned[10])


def validate_tax_id(value: str) -> bool:
    """RNC (9 dígitos) o cédula (11 dígitos)."""
    cleaned = clean_tax_id(value)
    if len(cleaned) == 9:
        return validate_rnc(cleaned)
    if len(cleaned) == 11:
        return validate_cedula(cleaned)
    return False


def format_tax_id(value: str) -> str:
    """
    Formatea RNC como XXX-XXXXX-X y cédula como XXX-XXXXXXX-X
    """
    if not validate_tax_id(value):
        return value  # Retorna sin cambios si no es válido

    cleaned = clean_tax_id(value)
    if len(cleaned) == 9:
        return f"{cleaned[:3]}-{cleaned[3:8]}-{cleaned[8]}"
    return f"{cleaned[:3]}-{cleaned[3:10]}-{cleaned[10]}"


def validate_period(period: str) -> bool:
    """Período fiscal en formato YYYYMM."""
    return bool(period) and PERIOD_PATTERN.match(period) is not None
