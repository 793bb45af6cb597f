"""
Reportes: pagos pendientes en PDF (reportlab), pólizas a mandar en texto y
exportación de pólizas a Excel (openpyxl).
"""

import io
import logging
from datetime import datetime
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter
from reportlab.lib import colors
from reportlab.lib.pagesizes import landscape, letter
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from models import EstadoPago, Policy
from payment_calculator import GRUPOS_SEMANALES, PendingPolicy, agrupar_por_semana, calcular_estadisticas
from utils import format_date, format_datetime, format_money, now_local

logger = logging.getLogger(__name__)

PDF_HEADERS = ["Póliza", "Días impago", "Monto", "Fuente", "Pagos", "Fin cobertura", "Servicios", "Días p/vencer"]

EXCEL_HEADERS = [
    "TITULAR", "RFC", "TELEFONO", "CORREO ELECTRONICO", "CALLE", "COLONIA", "MUNICIPIO", "ESTADO", "CP",
    "MARCA", "SUBMARCA", "AÑO", "COLOR", "SERIE", "PLACAS", "AGENTE COTIZADOR", "ASEGURADORA",
    "# DE POLIZA", "FECHA DE EMISION", "ESTADO POLIZA", "PAGOS REALIZADOS", "TOTAL PAGADO",
    "SERVICIOS", "CALIFICACION",
]

_HEADER_FILL = PatternFill("solid", fgColor="1F4E78")


def _pendiente_row(p: PendingPolicy) -> list[str]:
    monto = format_money(p.monto_requerido) if p.monto_requerido else (
        f"{format_money(p.monto_referencia)} (ref)" if p.monto_referencia else "-"
    )
    return [
        p.numero_poliza,
        str(p.dias_de_impago),
        monto,
        p.fuente_monto,
        str(p.pagos_realizados),
        format_date(p.fecha_limite_cobertura),
        str(p.total_servicios),
        "-" if p.dias_hasta_vencer is None else str(p.dias_hasta_vencer),
    ]


def generar_pdf_pagos_pendientes(pendientes: list[PendingPolicy], now: datetime | None = None) -> bytes:
    """
    PDF con resumen y una tabla por grupo semanal.

    Args:
        pendientes: Resultado de calcular_polizas_pendientes
        now: Fecha de referencia del reporte

    Returns:
        bytes: Contenido del PDF
    """
    now = now or now_local()
    stats = calcular_estadisticas(pendientes, now)
    grupos = agrupar_por_semana(pendientes, now)

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=landscape(letter),
        leftMargin=0.5 * inch,
        rightMargin=0.5 * inch,
        topMargin=0.5 * inch,
        bottomMargin=0.5 * inch,
        title="Pagos pendientes",
    )
    styles = getSampleStyleSheet()
    story: list[Any] = [
        Paragraph("Reporte de pagos pendientes", styles["Title"]),
        Paragraph(f"Generado: {format_datetime(now)}", styles["Normal"]),
        Spacer(1, 0.2 * inch),
        Paragraph(
            f"Total de pólizas: {stats.total_policies} &nbsp;&nbsp; "
            f"Monto total: {format_money(stats.total_amount)} &nbsp;&nbsp; "
            f"Críticas: {stats.critical} &nbsp;&nbsp; Urgentes: {stats.urgent} &nbsp;&nbsp; Normales: {stats.normal}",
            styles["Normal"],
        ),
        Spacer(1, 0.3 * inch),
    ]

    if not pendientes:
        story.append(Paragraph("No hay pólizas con pagos pendientes.", styles["Normal"]))

    for nombre in GRUPOS_SEMANALES:
        items = grupos[nombre]
        if not items:
            continue
        subtotal = sum(p.monto for p in items)
        story.append(Paragraph(f"{nombre} ({len(items)} pólizas, {format_money(subtotal)})", styles["Heading2"]))
        table = Table([PDF_HEADERS] + [_pendiente_row(p) for p in items], repeatRows=1)
        table.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1F4E78")),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 8),
            ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
            ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#F2F2F2")]),
        ]))
        story.extend([table, Spacer(1, 0.25 * inch)])

    doc.build(story)
    pdf = buffer.getvalue()
    logger.info(f"PDF de pagos pendientes generado: {len(pendientes)} pólizas, {len(pdf)} bytes")
    return pdf


def formatear_polizas_a_mandar(resultados: list[dict[str, Any]]) -> list[str]:
    """
    Mensajes del reporte de pólizas a mandar, uno por póliza.

    Args:
        resultados: Salida de get_old_unused_policies()
    """
    if not resultados:
        return ["✅ No hay pólizas para mandar en este momento."]

    mensajes = []
    for item in resultados:
        policy: Policy = item["policy"]
        dias = item.get("dias_gracia")
        lineas = []
        if item.get("mensaje_especial"):
            lineas.append(f"**{item['mensaje_especial']}**")
        lineas.extend([
            f"🏆 **#{item['posicion']}** - Calificación: {item['calificacion']}",
            f"📋 **Póliza:** {policy.numero_poliza}",
            f"🚗 {policy.marca} {policy.submarca} {policy.anio or ''}".rstrip(),
            f"🏢 {policy.aseguradora or 'Sin aseguradora'}",
            f"🔧 Servicios: {item['total_servicios']}",
            f"⏳ Días de gracia: {'N/A' if dias is None else dias}",
        ])
        if policy.is_niv:
            lineas.append("⚡ Tipo: NIV")
        mensajes.append("\n".join(lineas))
    return mensajes


def _fila_excel(policy: Policy) -> list[Any]:
    realizados = [p for p in policy.pagos if p.estado == EstadoPago.REALIZADO]
    return [
        policy.titular, policy.rfc, policy.telefono, policy.correo, policy.calle, policy.colonia,
        policy.municipio, policy.estado_region, policy.cp, policy.marca, policy.submarca, policy.anio,
        policy.color, policy.serie, policy.placas, policy.agente_cotizador, policy.aseguradora,
        policy.numero_poliza, format_date(policy.fecha_emision), policy.estado_poliza,
        len(realizados), round(sum(p.monto for p in realizados), 2), len(policy.servicios), policy.calificacion,
    ]


def generar_excel_polizas(policies: list[Policy]) -> bytes:
    """Exporta pólizas a .xlsx con los mismos encabezados que la importación."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Polizas"
    ws.append(EXCEL_HEADERS)
    for cell in ws[1]:
        cell.font = Font(bold=True, color="FFFFFF")
        cell.fill = _HEADER_FILL

    for policy in policies:
        ws.append(_fila_excel(policy))

    for index, column in enumerate(ws.columns, start=1):
        max_length = max(len(str(cell.value)) if cell.value is not None else 0 for cell in column)
        ws.column_dimensions[get_column_letter(index)].width = min(max_length + 2, 50)
    ws.freeze_panes = "A2"

    buffer = io.BytesIO()
    wb.save(buffer)
    logger.info(f"Excel exportado con {len(policies)} pólizas")
    return buffer.getvalue()
