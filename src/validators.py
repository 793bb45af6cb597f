"""
Validadores de los datos capturados en los formularios del bot.

Todos devuelven una tupla (is_valid, error, value):
- is_valid: True si el dato es aceptable
- error: mensaje para el usuario (vacío si es válido)
- value: valor normalizado listo para guardar (None si no es válido)
"""

import logging
import re
from datetime import datetime
from typing import Any, Callable

from parser import parse_amount, strip_accents

ValidationResult = tuple[bool, str, Any]

SERIE_MIN_LENGTH = 5
VIN_LENGTH = 17
ANIO_MINIMO = 1900
SIN_PLACAS = "SIN PLACAS"

CONTACT_TIME_RE = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")
FECHA_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")


def validate_serie(serie: str | None) -> ValidationResult:
    """
    Número de serie: sin espacios, en mayúsculas, solo letras y números.

    Returns:
        ValidationResult: value es un dict {"serie", "es_vin"}
    """
    limpia = "".join((serie or "").split()).upper()
    if len(limpia) < SERIE_MIN_LENGTH:
        return False, f"La serie debe tener al menos {SERIE_MIN_LENGTH} caracteres.", None
    if not limpia.isalnum():
        return False, "La serie solo puede contener letras y números.", None
    return True, "", {"serie": limpia, "es_vin": len(limpia) == VIN_LENGTH}


def validate_marca(marca: str | None) -> ValidationResult:
    marca = (marca or "").strip()
    if len(marca) < 2:
        return False, "La marca debe tener al menos 2 caracteres.", None
    return True, "", marca.upper()


def validate_submarca(submarca: str | None) -> ValidationResult:
    submarca = (submarca or "").strip()
    if not submarca:
        return False, "La submarca/modelo es requerida.", None
    return True, "", submarca.upper()


def validate_anio(anio: str | None, now: datetime | None = None) -> ValidationResult:
    texto = (anio or "").strip()
    if not texto:
        return False, "El año es requerido.", None
    maximo = (now or datetime.now()).year + 2
    if not texto.isdigit() or not ANIO_MINIMO <= int(texto) <= maximo:
        return False, f"El año debe estar entre {ANIO_MINIMO} y {maximo}.", None
    return True, "", int(texto)


def validate_color(color: str | None) -> ValidationResult:
    color = (color or "").strip()
    if len(color) < 2:
        return False, "El color debe tener al menos 2 caracteres.", None
    if color.isdigit():
        return False, "El color no puede ser solo números. Ingresa un color válido (ej: ROJO, BLANCO, NEGRO).", None
    return True, "", color.upper()


def validate_placas(placas: str | None) -> ValidationResult:
    texto = (placas or "").strip().upper()
    if texto in ("", "N/A", "NA", SIN_PLACAS):
        return True, "", SIN_PLACAS
    if not 3 <= len(texto) <= 10:
        return False, "Las placas deben tener entre 3 y 10 caracteres.", None
    return True, "", texto


def validate_numero_poliza(numero: str | None) -> ValidationResult:
    numero = (numero or "").strip()
    if not numero:
        return False, "Ingresa un número de póliza válido.", None
    return True, "", numero.upper()


def validate_nombre_persona(nombre: str | None) -> ValidationResult:
    nombre = (nombre or "").strip()
    if len(nombre) < 3:
        return False, "El nombre debe tener al menos 3 caracteres.", None
    return True, "", nombre


def validate_monto(texto: str | None) -> ValidationResult:
    if not (texto or "").strip():
        return False, "Ingresa un monto.", None
    monto = parse_amount(texto)
    if monto is None or monto <= 0:
        return False, "Ingresa un monto válido (solo números).", None
    return True, "", monto


def validate_fecha(fecha: str | None) -> ValidationResult:
    """Fecha en formato DD/MM/AAAA; value es un datetime sin zona."""
    match = FECHA_RE.match((fecha or "").strip())
    if not match:
        return False, "Formato de fecha inválido. Usa DD/MM/AAAA.", None
    dia, mes, anio = (int(g) for g in match.groups())
    try:
        return True, "", datetime(anio, mes, dia)
    except ValueError:
        return False, "Fecha inválida.", None


def validate_aseguradora(
    aseguradora: str | None,
    lookup: Callable[[str], Any] | None = None,
) -> ValidationResult:
    """
    Normaliza la aseguradora contra el catálogo.

    Args:
        aseguradora: Texto capturado
        lookup: Función de búsqueda en catálogo (por defecto db_handler.policies.find_aseguradora)

    Returns:
        ValidationResult: value es el nombre corto del catálogo o el texto en mayúsculas
    """
    texto = (aseguradora or "").strip()
    if len(texto) < 2:
        return False, "La aseguradora debe tener al menos 2 caracteres.", None

    if lookup is None:
        from db_handler.policies import find_aseguradora
        lookup = find_aseguradora

    try:
        encontrada = lookup(strip_accents(texto).upper())
    except Exception as e:
        logging.warning(f"Error buscando aseguradora '{texto}': {e}")
        encontrada = None

    return True, "", encontrada.nombre_corto if encontrada else texto.upper()


def validate_phone(telefono: str | None) -> ValidationResult:
    digits = (telefono or "").strip()
    if not re.fullmatch(r"\d{10}", digits):
        return False, "❌ Teléfono inválido (requiere 10 dígitos)", None
    return True, "", digits


def validate_contact_time(hora: str | None) -> ValidationResult:
    """Hora HH:mm en formato 24 h; value es (hora, minuto)."""
    match = CONTACT_TIME_RE.match((hora or "").strip())
    if not match:
        return False, "⚠️ Formato de hora inválido. Debe ser HH:mm (24 horas). Ejemplo: 15:30", None
    return True, "", (int(match.group(1)), int(match.group(2)))


def validate_expediente(expediente: str | None) -> ValidationResult:
    expediente = (expediente or "").strip()
    if len(expediente) < 3:
        return False, "❌ Número de expediente inválido. Ingresa al menos 3 caracteres.", None
    return True, "", expediente


def validate_archivo_poliza(message: Any) -> ValidationResult:
    """
    Acepta un PDF (document) o una foto de un Message de pyrogram.

    Returns:
        ValidationResult: value es un dict {type, file_id, file_name, mime_type, file_size}
    """
    document = getattr(message, "document", None)
    photo = getattr(message, "photo", None)

    if document and document.mime_type == "application/pdf":
        return True, "", {
            "type": "pdf",
            "file_id": document.file_id,
            "file_name": document.file_name or "documento.pdf",
            "mime_type": "application/pdf",
            "file_size": document.file_size,
        }
    if photo:
        return True, "", {
            "type": "photo",
            "file_id": photo.file_id,
            "file_name": f"foto_{int(datetime.now().timestamp() * 1000)}.jpg",
            "mime_type": "image/jpeg",
            "file_size": photo.file_size,
        }
    if document:
        return False, f"Formato no válido: {document.mime_type}. Solo se aceptan PDF, JPG o PNG.", None
    return False, "Envía un PDF o una foto de la póliza.", None
