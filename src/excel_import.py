"""
Importación masiva de pólizas desde un archivo Excel (.xlsx).

La primera fila son los encabezados; cada fila siguiente es una póliza.
Las filas se procesan en lotes de EXCEL_BATCH_SIZE y al final se envía un
resumen con las pólizas registradas y las que fallaron.
"""

import asyncio
import io
import logging
from typing import Any

from openpyxl import load_workbook
from pyrogram import Client, enums
from pyrogram.types import Message

from config import EXCEL_BATCH_SIZE, MAX_IMPORT_FILE_SIZE
from db_handler.policies import save_policies_batch
from parser import parse_excel_date
from state_keys import get_thread_id
from utils import chunk_lines, safe_send

logger = logging.getLogger(__name__)

REQUIRED_HEADERS = [
    "TITULAR",
    "RFC",
    "MARCA",
    "SUBMARCA",
    "AÑO",
    "COLOR",
    "SERIE",
    "PLACAS",
    "AGENTE COTIZADOR",
    "ASEGURADORA",
    "# DE POLIZA",
    "FECHA DE EMISION",
]

HEADER_TO_FIELD = {
    "TITULAR": "titular",
    "CORREO ELECTRONICO": "correo",
    "CONTRASEÑA": "contrasena",
    "TELEFONO": "telefono",
    "CALLE": "calle",
    "COLONIA": "colonia",
    "MUNICIPIO": "municipio",
    "ESTADO": "estado_region",
    "CP": "cp",
    "RFC": "rfc",
    "MARCA": "marca",
    "SUBMARCA": "submarca",
    "AÑO": "anio",
    "COLOR": "color",
    "SERIE": "serie",
    "PLACAS": "placas",
    "AGENTE COTIZADOR": "agente_cotizador",
    "ASEGURADORA": "aseguradora",
    "# DE POLIZA": "numero_poliza",
    "FECHA DE EMISION": "fecha_emision",
}

UPPERCASE_HEADERS = {"RFC", "MARCA", "SUBMARCA", "COLOR", "SERIE", "PLACAS", "ASEGURADORA", "# DE POLIZA"}

EXCEL_MIME_TYPES = {
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel",
    "application/octet-stream",
    "application/msexcel",
    "application/x-msexcel",
    "application/excel",
    "application/x-excel",
}

ITEMS_PER_MESSAGE = 10


class ExcelImportError(Exception):
    """El archivo no se puede importar (formato, tamaño o encabezados)"""
    pass


def is_excel_document(document: Any) -> bool:
    """True si el documento parece un libro de Excel por extensión o MIME."""
    if not document:
        return False
    file_name = (getattr(document, "file_name", None) or "").lower()
    if file_name.endswith((".xlsx", ".xlsm")):
        return True
    return getattr(document, "mime_type", None) in EXCEL_MIME_TYPES and file_name.endswith(".xls")


def read_workbook(data: bytes) -> tuple[list[str], list[list[Any]]]:
    """
    Lee la primera hoja del libro.

    Returns:
        tuple: (encabezados normalizados, filas no vacías)
    """
    try:
        wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as e:
        raise ExcelImportError(f"No se pudo leer el archivo Excel: {e}") from e

    try:
        rows = list(wb.worksheets[0].iter_rows(values_only=True))
    finally:
        wb.close()

    if not rows:
        raise ExcelImportError("El archivo está vacío")

    headers = [str(h).strip().upper() if h is not None else "" for h in rows[0]]
    data_rows = [list(r) for r in rows[1:] if any(c not in (None, "") for c in r)]
    return headers, data_rows


def missing_headers(headers: list[str]) -> list[str]:
    return [h for h in REQUIRED_HEADERS if h not in headers]


def _format_value(header: str, value: Any) -> str:
    if value is None:
        return ""
    text = str(value).strip()
    return text.upper() if header in UPPERCASE_HEADERS else text


def map_row(headers: list[str], row: list[Any]) -> dict[str, Any]:
    """Convierte una fila en el dict de datos de una póliza."""
    data: dict[str, Any] = {}
    for index, header in enumerate(headers):
        field = HEADER_TO_FIELD.get(header)
        if not field:
            continue
        value = row[index] if index < len(row) else None

        if header == "AÑO":
            try:
                data[field] = int(str(value).strip()) if value not in (None, "") else None
            except ValueError:
                data[field] = value
        elif header == "FECHA DE EMISION":
            data[field] = parse_excel_date(value)
        elif header == "CORREO ELECTRONICO":
            text = _format_value(header, value)
            data[field] = "" if text.lower() == "sin correo" else text
        elif header in ("TELEFONO", "CP") and isinstance(value, float) and value.is_integer():
            # openpyxl entrega números enteros como float
            data[field] = str(int(value))
        else:
            data[field] = _format_value(header, value)
    return data


def validate_row(data: dict[str, Any]) -> list[str]:
    """Errores de una fila ya mapeada; lista vacía si es válida."""
    errors = []
    for header in REQUIRED_HEADERS:
        field = HEADER_TO_FIELD[header]
        if header == "FECHA DE EMISION":
            continue
        if data.get(field) in (None, ""):
            errors.append(f"Falta {header}")

    anio = data.get("anio")
    if anio not in (None, "") and not isinstance(anio, int):
        errors.append("AÑO debe ser un número válido")
    if data.get("fecha_emision") is None:
        errors.append("FECHA DE EMISION no es válida")
    return errors


def import_rows(headers: list[str], rows: list[list[Any]]) -> dict[str, Any]:
    """
    Valida y guarda un conjunto de filas.

    Returns:
        dict: {total, successful, failed, details} como save_policies_batch
    """
    results: dict[str, Any] = {"total": len(rows), "successful": 0, "failed": 0, "details": []}
    validas = []
    for row in rows:
        data = map_row(headers, row)
        errors = validate_row(data)
        if errors:
            results["failed"] += 1
            results["details"].append({
                "numero_poliza": data.get("numero_poliza") or "Desconocido",
                "status": "ERROR",
                "message": ", ".join(errors),
            })
        else:
            validas.append(data)

    if validas:
        saved = save_policies_batch(validas)
        results["successful"] += saved["successful"]
        results["failed"] += saved["failed"]
        results["details"].extend(saved["details"])
    return results


def build_summary(results: dict[str, Any]) -> list[str]:
    """Mensajes del resumen: totales, registradas y fallidas en bloques de 10."""
    mensajes = [
        "📊 *Resumen del Procesamiento*\n\n"
        f"Total de pólizas procesadas: {results['total']}\n"
        f"✅ Registradas correctamente: {results['successful']}\n"
        f"❌ Fallidas: {results['failed']}"
    ]
    exitosas = [d for d in results["details"] if d["status"] == "SUCCESS"]
    fallidas = [d for d in results["details"] if d["status"] == "ERROR"]

    if exitosas:
        mensajes.append("✅ *Pólizas Registradas Correctamente:*")
        mensajes.extend(chunk_lines((d["numero_poliza"] for d in exitosas), ITEMS_PER_MESSAGE))
    if fallidas:
        mensajes.append("❌ *Pólizas con Errores:*")
        mensajes.extend(chunk_lines(
            (f"*{d['numero_poliza']}*: {d['message']}" for d in fallidas), ITEMS_PER_MESSAGE
        ))
    return mensajes


async def procesar_excel(app: Client, message: Message) -> bool:
    """
    Descarga el Excel del mensaje, importa sus pólizas y envía el resumen.

    Returns:
        bool: True si el archivo se procesó (aunque haya filas con error)
    """
    chat_id = message.chat.id
    thread_id = get_thread_id(message)
    document = message.document

    if not is_excel_document(document):
        await safe_send(app, chat_id, "⚠️ El archivo debe ser un Excel (.xlsx).", thread_id)
        return False
    if document.file_size and document.file_size > MAX_IMPORT_FILE_SIZE:
        await safe_send(app, chat_id, "⚠️ El archivo es demasiado grande.", thread_id)
        return False

    try:
        buffer = await app.download_media(message, in_memory=True)
        headers, rows = read_workbook(bytes(buffer.getbuffer()))
        faltantes = missing_headers(headers)
        if faltantes:
            raise ExcelImportError("Faltan columnas obligatorias: " + ", ".join(faltantes))
    except ExcelImportError as e:
        logger.warning(f"Excel rechazado en chat {chat_id}: {e}")
        await safe_send(app, chat_id, f"❌ {e}", thread_id)
        return False

    if not rows:
        await safe_send(app, chat_id, "⚠️ El archivo no contiene pólizas.", thread_id)
        return False

    batches = (len(rows) + EXCEL_BATCH_SIZE - 1) // EXCEL_BATCH_SIZE
    intro = f"📊 Procesando {len(rows)} pólizas en {batches} lotes..."
    progress = await safe_send(app, chat_id, intro, thread_id)

    results: dict[str, Any] = {"total": len(rows), "successful": 0, "failed": 0, "details": []}
    for index in range(batches):
        batch = rows[index * EXCEL_BATCH_SIZE:(index + 1) * EXCEL_BATCH_SIZE]
        if progress and batches > 1:
            try:
                await progress.edit_text(f"{intro}\n\n🔄 Procesando lote {index + 1}/{batches}...")
            except Exception as e:
                logger.warning(f"No se pudo actualizar el progreso: {e}")

        parcial = await asyncio.to_thread(import_rows, headers, batch)
        results["successful"] += parcial["successful"]
        results["failed"] += parcial["failed"]
        results["details"].extend(parcial["details"])

    if progress:
        try:
            await progress.delete()
        except Exception as e:
            logger.warning(f"No se pudo borrar el mensaje de progreso: {e}")

    for texto in build_summary(results):
        await safe_send(app, chat_id, texto, thread_id, parse_mode=enums.ParseMode.MARKDOWN)

    logger.info(
        f"Importación Excel en chat {chat_id}: {results['successful']} registradas, {results['failed']} fallidas"
    )
    return True
