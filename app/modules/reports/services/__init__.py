"""
Services package for Reports module
"""

from .period import FiscalReportService, TaxBalance, compute_tax_balance

__all__ = [
    "FiscalReportService",
    "TaxBalance",
    "compute_tax_balance"
]
