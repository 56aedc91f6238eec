from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
import logging

# Import database components
from app.database.database import engine, Base

# Import middleware
from app.common.middleware import RequestContextMiddleware, SecurityHeadersMiddleware
from app.common.exceptions import FiscalError

# Import routers
from app.modules.taxes.router import taxes_router
from app.modules.fiscal.router import router as fiscal_router
from app.modules.invoices.router import router as invoices_router
from app.modules.quotations.router import router as quotations_router
from app.modules.bills.router import router as bills_router
from app.modules.reports.routers import fiscal_reports_router

# Import models for table creation
import app.modules.fiscal.models
import app.modules.invoices.models
import app.modules.quotations.models
import app.modules.bills.models
import app.modules.reports.models

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Clinic Billing API",
    description="Facturación fiscal de clínicas: NCF, facturas, cotizaciones, pagos y reportes 606/607",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestContextMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Add your frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FiscalError)
async def fiscal_error_handler(request: Request, exc: FiscalError):
    if exc.status_code >= 500:
        logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


# Include routers
app.include_router(taxes_router, tags=["Taxes"])
app.include_router(fiscal_router)
app.include_router(invoices_router)
app.include_router(quotations_router)
app.include_router(bills_router)
app.include_router(fiscal_reports_router)

# Create database tables (only for development - use migrations in production)
if settings.ENVIRONMENT == "development":
    Base.metadata.create_all(bind=engine)


@app.get("/")
async def read_root():
    return {
        "message": "Clinic Billing API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}
