"""
Routers package for Reports module
"""

from .period import router as fiscal_reports_router

__all__ = [
    "fiscal_reports_router"
]
