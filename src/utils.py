import calendar
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from pyrogram import Client

from config import TIMEZONE

DIAS_SEMANA = ["Lunes", "Martes", "Miércoles", "Jueves", "Viernes", "Sábado", "Domingo"]
MESES = [
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
]

TELEGRAM_MAX_MESSAGE = 4096


def get_timezone() -> ZoneInfo:
    return ZoneInfo(TIMEZONE)


def now_local() -> datetime:
    """Hora actual con zona horaria de operación (America/Mexico_City por defecto)."""
    return datetime.now(get_timezone())


def ensure_aware(value: datetime) -> datetime:
    """Las fechas sin zona se interpretan en la zona de operación."""
    if value.tzinfo is None:
        return value.replace(tzinfo=get_timezone())
    return value


def add_months(value: datetime, months: int) -> datetime:
    """Suma meses conservando el día cuando existe (31 ene + 1 mes = 28/29 feb)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_years(value: datetime, years: int) -> datetime:
    return add_months(value, 12 * years)


def format_date(value: datetime | None) -> str:
    if not value:
        return "N/A"
    return value.strftime("%d/%m/%Y")


def format_datetime(value: datetime | None) -> str:
    if not value:
        return "N/A"
    return ensure_aware(value).astimezone(get_timezone()).strftime("%d/%m/%Y %H:%M")


def format_time(value: datetime) -> str:
    return ensure_aware(value).astimezone(get_timezone()).strftime("%H:%M")


def format_money(amount: float | int | None) -> str:
    return f"${(amount or 0):,.2f}"


def day_name(value: datetime) -> str:
    return DIAS_SEMANA[value.weekday()]


def chunk_lines(lines: Iterable[str], lines_per_chunk: int = 10) -> list[str]:
    """Agrupa líneas en bloques de texto de como máximo lines_per_chunk líneas."""
    chunks: list[str] = []
    current: list[str] = []
    for line in lines:
        current.append(line)
        if len(current) >= lines_per_chunk:
            chunks.append("\n".join(current))
            current = []
    if current:
        chunks.append("\n".join(current))
    return chunks


async def split_and_send_long_text(
    text: str,
    chat_id: int,
    app: Client,
    chunk_size: int = TELEGRAM_MAX_MESSAGE,
    **kwargs: Any,
):
    """
    Envía textos largos partidos en bloques de 4096 caracteres, cortando en saltos de línea
    cuando es posible.
    """
    while text:
        if len(text) <= chunk_size:
            await app.send_message(chat_id, text, **kwargs)
            return
        cut = text.rfind("\n", 0, chunk_size)
        if cut <= 0:
            cut = chunk_size
        await app.send_message(chat_id, text[:cut], **kwargs)
        text = text[cut:].lstrip("\n")


def thread_kwargs(thread_id: Optional[int]) -> dict[str, Any]:
    """En grupos con temas se publica respondiendo al mensaje raíz del tema."""
    return {"reply_to_message_id": thread_id} if thread_id else {}


async def safe_send(app: Client, chat_id: int, text: str, thread_id: Optional[int] = None, **kwargs: Any):
    """send_message que respeta el tema del grupo y registra errores sin propagarlos."""
    try:
        kwargs.update(thread_kwargs(thread_id))
        return await app.send_message(chat_id, text, **kwargs)
    except Exception as e:
        logging.error(f"No se pudo enviar mensaje a {chat_id}: {e}")
        return None


def days_between(later: datetime, earlier: datetime) -> float:
    return (ensure_aware(later) - ensure_aware(earlier)) / timedelta(days=1)
