"""
Pruebas de reportes: PDF de pagos pendientes, pólizas a mandar y exportación a Excel.
"""

import io
from datetime import datetime

from openpyxl import load_workbook

from excel_import import REQUIRED_HEADERS, map_row, validate_row
from models import Pago, Policy, TipoPoliza
from payment_calculator import calcular_polizas_pendientes
from reports import EXCEL_HEADERS, formatear_polizas_a_mandar, generar_excel_polizas, generar_pdf_pagos_pendientes


def test_pdf_is_generated():
    policies = [
        Policy(titular="A", numero_poliza=f"PDF-{i}", fecha_emision=datetime(2024, 1, 1 + i),
               pagos=[Pago(monto=950, fecha_pago=datetime(2024, 1, 1))])
        for i in range(3)
    ]
    pendientes = calcular_polizas_pendientes(policies, now=datetime(2024, 3, 5))
    pdf = generar_pdf_pagos_pendientes(pendientes, now=datetime(2024, 3, 5))
    assert pdf.startswith(b"%PDF")
    assert len(pdf) > 1000


def test_pdf_without_pending_policies():
    assert generar_pdf_pagos_pendientes([]).startswith(b"%PDF")


def test_polizas_a_mandar_messages(sample_policy):
    niv = sample_policy.model_copy(update={"numero_poliza": "NIV-1", "tipo_poliza": TipoPoliza.NIV})
    mensajes = formatear_polizas_a_mandar([
        {"policy": sample_policy, "posicion": 1, "calificacion": 90, "total_servicios": 1,
         "dias_gracia": 3, "mensaje_especial": "⚠️ URGENTE - 1 SERVICIO"},
        {"policy": niv, "posicion": 2, "calificacion": 95, "total_servicios": 0,
         "dias_gracia": None, "mensaje_especial": None},
    ])
    assert len(mensajes) == 2
    assert mensajes[0].startswith("**⚠️ URGENTE - 1 SERVICIO**")
    assert "📋 **Póliza:** POL-001" in mensajes[0]
    assert "⏳ Días de gracia: 3" in mensajes[0]
    assert "⚡ Tipo: NIV" in mensajes[1]
    assert "⏳ Días de gracia: N/A" in mensajes[1]


def test_polizas_a_mandar_empty():
    assert formatear_polizas_a_mandar([]) == ["✅ No hay pólizas para mandar en este momento."]


def test_excel_export_can_be_imported_back(sample_policy):
    policy = sample_policy.model_copy(update={"rfc": "PEGJ800101AB1"})
    data = generar_excel_polizas([policy])
    ws = load_workbook(io.BytesIO(data)).active
    rows = list(ws.iter_rows(values_only=True))

    headers = list(rows[0])
    assert headers == EXCEL_HEADERS
    assert all(h in headers for h in REQUIRED_HEADERS)

    fila = dict(zip(headers, rows[1]))
    assert fila["# DE POLIZA"] == "POL-001"
    assert fila["PAGOS REALIZADOS"] == 1
    assert fila["TOTAL PAGADO"] == 1500
    assert fila["SERVICIOS"] == 1

    datos = map_row(headers, list(rows[1]))
    assert validate_row(datos) == []
    assert datos["fecha_emision"] == datetime(2024, 1, 15)
