from __future__ import annotations
from datetime import datetime, timedelta
import re
import unicodedata

COORD_PAIR_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)\s*$")
GMAPS_AT_RE = re.compile(r"@(-?\d+(?:\.\d+)?),(-?\d+(?:\.\d+)?)")
GMAPS_3D4D_RE = re.compile(r"!3d(-?\d+(?:\.\d+)?)!4d(-?\d+(?:\.\d+)?)")
GMAPS_QUERY_RE = re.compile(r"[?&](?:q|query|ll)=(-?\d+(?:\.\d+)?),\s*(-?\d+(?:\.\d+)?)")

POLICY_SPLIT_RE = re.compile(r"[\n, ]+")
DATE_SLASH_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{2}|\d{4})$")

# Día 0 de Excel (sistema 1900, con el bug del 29/02/1900)
EXCEL_EPOCH = datetime(1899, 12, 30)


def strip_accents(text: str) -> str:
    """'Árbol Ñandú' -> 'Arbol Nandu'"""
    normalized = unicodedata.normalize("NFD", text or "")
    return "".join(c for c in normalized if unicodedata.category(c) != "Mn")


def _valid_coords(lat: float, lng: float) -> bool:
    return -90 <= lat <= 90 and -180 <= lng <= 180


def parse_coordinates(text: str | None) -> dict | None:
    """
    Extrae coordenadas de texto libre.

    Acepta "lat,lng", enlaces de Google Maps con "@lat,lng", "!3dlat!4dlng"
    o "?q=lat,lng".

    Returns:
        dict | None: {"lat": float, "lng": float} o None si no hay coordenadas válidas
    """
    if not text:
        return None
    text = text.strip()

    for pattern in (COORD_PAIR_RE, GMAPS_3D4D_RE, GMAPS_AT_RE, GMAPS_QUERY_RE):
        match = pattern.search(text)
        if match:
            lat, lng = float(match.group(1)), float(match.group(2))
            if _valid_coords(lat, lng):
                return {"lat": lat, "lng": lng}
    return None


_DECIMAL_COMMA_RE = re.compile(r"-?\d+,\d{1,2}")
_DOT_THOUSANDS_RE = re.compile(r"-?\d{1,3}(\.\d{3})+,\d{1,2}")


def parse_amount(text: str | None, allow_decimal_comma: bool = False) -> float | None:
    """
    "$1,234.50" -> 1234.5

    Con allow_decimal_comma la coma es el separador decimal cuando va seguida
    de 1 o 2 decimales: "450,50" -> 450.5, "1.500,50" -> 1500.5 y "1,500" -> 1500.
    Una coma después del último punto sin ese formato es ambigua y devuelve None.
    """
    if text is None:
        return None
    clean = str(text).strip().replace("$", "").replace(" ", "")
    if not clean:
        return None
    if allow_decimal_comma and _DECIMAL_COMMA_RE.fullmatch(clean):
        clean = clean.replace(",", ".")
    elif allow_decimal_comma and _DOT_THOUSANDS_RE.fullmatch(clean):
        clean = clean.replace(".", "").replace(",", ".")
    elif "." in clean and clean.rfind(",") > clean.rfind("."):
        return None
    else:
        clean = clean.replace(",", "")
    try:
        return float(clean)
    except ValueError:
        return None


def parse_policy_numbers(text: str | None) -> list[str]:
    """Separa números de póliza por saltos de línea, comas o espacios; sin repetidos."""
    seen: list[str] = []
    for part in POLICY_SPLIT_RE.split(text or ""):
        numero = part.strip().upper()
        if numero and numero not in seen:
            seen.append(numero)
    return seen


def parse_excel_date(value) -> datetime | None:
    """
    Convierte el valor de una celda de Excel a datetime.

    Soporta datetime, número de serie de Excel, "DD/MM/YYYY", "DD-MM-YY"
    (año de 2 dígitos -> 20YY) e ISO "YYYY-MM-DD".
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return EXCEL_EPOCH + timedelta(days=float(value))

    text = str(value).strip()
    match = DATE_SLASH_RE.match(text)
    if match:
        day, month, year = match.groups()
        if len(year) == 2:
            year = f"20{year}"
        try:
            return datetime(int(year), int(month), int(day))
        except ValueError:
            return None
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None
