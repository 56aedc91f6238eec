"""
Utilities for Reports module

CSV export of period report entries.
"""

import csv
import io
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List

from fastapi import Response


def create_csv_response(
    data: List[Dict[str, Any]],
    filename: str,
    headers: Dict[str, str] = None
) -> Response:
    """
    Create a CSV response from a list of dictionaries.

    Args:
        data: List of dictionaries with report data
        filename: Name for the CSV file
        headers: Optional mapping of field names to CSV headers

    Returns:
        FastAPI Response with CSV content
    """
    output = io.StringIO()
    fieldnames = list(headers.keys()) if headers else (list(data[0].keys()) if data else [])
    csv_headers = list(headers.values()) if headers else fieldnames

    if fieldnames:
        writer = csv.DictWriter(output, fieldnames=fieldnames, extrasaction="ignore")
        writer.writerow(dict(zip(fieldnames, csv_headers)))
        for row in data:
            writer.writerow({key: format_csv_value(row.get(key)) for key in fieldnames})

    csv_content = output.getvalue()
    output.close()

    return Response(
        content=csv_content,
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename={filename}",
            "Content-Type": "text/csv; charset=utf-8"
        }
    )


def format_csv_value(value: Any) -> str:
    """Format a value for CSV export."""
    if value is None:
        return ""
    elif isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, (date, datetime)):
        return value.isoformat()
    elif isinstance(value, bool):
        return "Sí" if value else "No"
    return str(value)


def prepare_report_entries_csv(report) -> List[Dict[str, Any]]:
    """One CSV row per document, in report order"""
    return [dict(entry, period=report.period, currency=report.currency) for entry in (report.entries or [])]


def report_filename(report) -> str:
    return f"DGII_{report.report_type.value}_{report.period}_{report.currency}.csv"


# CSV Headers mapping for better column names
CSV_HEADERS = {
    "607": {
        "period": "Período",
        "counterparty_tax_id": "RNC/Cédula Cliente",
        "counterparty_name": "Cliente",
        "dgii_code": "Tipo NCF",
        "fiscal_number": "NCF",
        "document_number": "Factura",
        "issue_date": "Fecha Comprobante",
        "taxable_amount": "Monto Gravado",
        "exempt_amount": "Monto Exento",
        "tax_amount": "ITBIS Facturado",
        "total_amount": "Monto Total",
        "original_currency": "Moneda Original",
        "exchange_rate": "Tasa",
        "currency": "Moneda Reporte"
    },
    "606": {
        "period": "Período",
        "counterparty_tax_id": "RNC/Cédula Proveedor",
        "counterparty_name": "Proveedor",
        "dgii_code": "Tipo NCF",
        "fiscal_number": "NCF",
        "issue_date": "Fecha Comprobante",
        "taxable_amount": "Monto Gravado",
        "exempt_amount": "Monto Exento",
        "tax_amount": "ITBIS Facturado",
        "total_amount": "Monto Total",
        "original_currency": "Moneda Original",
        "exchange_rate": "Tasa",
        "currency": "Moneda Reporte"
    }
}
