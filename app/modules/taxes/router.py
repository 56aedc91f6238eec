from dataclasses import asdict
from fastapi import APIRouter, Depends

from app.core.config import settings
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext, ALL_ROLES
from app.modules.taxes.calculator import compute_document_totals
from app.modules.taxes.schemas import TotalsPreviewRequest, TotalsOut

taxes_router = APIRouter(prefix="/taxes", tags=["Taxes"])


@taxes_router.post("/preview", response_model=TotalsOut)
def preview_totals(
    request: TotalsPreviewRequest,
    auth_context: AuthContext = Depends(AuthDependencies.require_role(ALL_ROLES))
):
    """
    Calcular subtotal, descuentos, ITBIS y total de un conjunto de líneas

    Usa las mismas reglas de redondeo que facturas y cotizaciones, por lo que
    el resultado coincide con el documento que se crearía con esas líneas.
    """
    tax_rate = request.tax_rate if request.tax_rate is not None else settings.DEFAULT_TAX_RATE
    totals = compute_document_totals(
        [item.to_line_input() for item in request.items],
        tax_rate,
        request.currency
    )
    return TotalsOut(currency=request.currency, tax_rate=tax_rate, **asdict(totals))
