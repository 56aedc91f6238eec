"""
Módulo de Gastos (Bills)

Facturas recibidas de proveedores con su NCF, RNC del proveedor e ITBIS.
Alimentan el reporte 606 del período; una factura anulada sale del reporte.

ESTADOS:
- open: Registrada
- void: Anulada
"""
