"""
Reports Module - reportes fiscales por período

Genera los resúmenes mensuales que la clínica presenta a la DGII:

- 607: ventas (facturas emitidas con NCF, no anuladas)
- 606: compras (facturas de proveedor no anuladas)

Cada reporte agrupa por tipo de comprobante, normaliza montos a la moneda
del reporte y se puede regenerar mientras esté en borrador. Una vez enviado
queda bloqueado. El balance de ITBIS del período sale de ambos reportes.

Architecture Pattern: Service Layer
- routers/ -> Endpoints FastAPI
- services/ -> Generación y ciclo de vida de los reportes
- schemas/ -> Modelos Pydantic
- utils/ -> Exportación CSV
- tasks.py -> Generación programada con Celery
"""
