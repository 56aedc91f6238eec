"""
Módulo de Facturación (Invoices)

- Facturas de la clínica en borrador, emitidas con NCF y anuladas
- Totales calculados con la calculadora de ITBIS
- Estado derivado: draft, pending, partial, paid, overdue, cancelled
- Ledger de pagos de solo inserción con claves de idempotencia

Arquitectura multi-tenant: cada consulta filtra por tenant_id (clínica).

Tablas principales:
- invoices: Facturas
- invoice_line_items: Líneas de factura
- payments: Pagos y reversiones (inmutables)
"""
