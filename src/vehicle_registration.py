"""
Registro de vehículos en la base de autos (formulario de 6 pasos + fotos).

El estado de cada registro vive en vehiculos_en_proceso con clave
"user:chat[:thread]" y se elimina al finalizar, cancelar o expirar.
"""

import asyncio
import logging
import time
from typing import Any

from pyrogram import Client, enums
from pyrogram.types import Message

from constants import CREADO_POR_SISTEMA, CREADO_VIA_BOT
from db_handler.vehicles import DuplicateVehicleError, create_vehicle, get_vehicle_by_serie
from markups import main_menu_markup, vehiculo_cancel_markup, vehiculo_fotos_markup
from mexican_data import datos_titular_pendiente, generar_datos_mexicanos
from models import Archivo, Vehicle
from r2_storage import get_r2_storage
from state_keys import ThreadSafeStateMap, get_thread_id, get_user_state_key
from utils import safe_send
from validators import (
    validate_anio,
    validate_color,
    validate_marca,
    validate_placas,
    validate_serie,
    validate_submarca,
)

logger = logging.getLogger(__name__)

ESPERANDO_SERIE = "esperando_serie"
ESPERANDO_MARCA = "esperando_marca"
ESPERANDO_SUBMARCA = "esperando_submarca"
ESPERANDO_ANIO = "esperando_anio"
ESPERANDO_COLOR = "esperando_color"
ESPERANDO_PLACAS = "esperando_placas"
ESPERANDO_FOTOS = "esperando_fotos"
COMPLETADO = "completado"

PROMPTS = {
    ESPERANDO_MARCA: "*Paso 2/6:* Ingresa la *MARCA*\n📝 Ejemplo: Toyota, Nissan, Volkswagen",
    ESPERANDO_SUBMARCA: "*Paso 3/6:* Ingresa la *SUBMARCA/MODELO*\n📝 Ejemplo: Corolla, Sentra, Jetta",
    ESPERANDO_ANIO: "*Paso 4/6:* Ingresa el *AÑO*\n📝 Ejemplo: 2022, 2023, 2024",
    ESPERANDO_COLOR: "*Paso 5/6:* Ingresa el *COLOR*\n📝 Ejemplo: Blanco, Negro, Rojo, Gris",
    ESPERANDO_PLACAS: "*Paso 6/6:* Ingresa las *PLACAS*\n📝 Formato: ABC-1234 o N/A si no tiene",
}

# (validador, campo, siguiente estado, etiqueta de confirmación)
PASOS = {
    ESPERANDO_MARCA: (validate_marca, "marca", ESPERANDO_SUBMARCA, "Marca"),
    ESPERANDO_SUBMARCA: (validate_submarca, "submarca", ESPERANDO_ANIO, "Modelo"),
    ESPERANDO_ANIO: (validate_anio, "anio", ESPERANDO_COLOR, "Año"),
    ESPERANDO_COLOR: (validate_color, "color", ESPERANDO_PLACAS, "Color"),
}

vehiculos_en_proceso = ThreadSafeStateMap()


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _reply(app: Client, registro: dict[str, Any], text: str, **kwargs):
    return await safe_send(app, registro["chat_id"], text, registro.get("thread_id"), **kwargs)


async def iniciar_registro(app: Client, chat_id: int, user_id: int, thread_id: int | None = None) -> bool:
    state_key = get_user_state_key(user_id, chat_id, thread_id)
    vehiculos_en_proceso.delete(state_key)

    registro = {
        "estado": ESPERANDO_SERIE,
        "chat_id": chat_id,
        "thread_id": thread_id,
        "datos": {},
        "fotos": [],
        "iniciado": _now_ms(),
        "last_activity": _now_ms(),
    }
    vehiculos_en_proceso.set(state_key, registro)

    await _reply(
        app, registro,
        "🚗 **REGISTRO DE AUTO**\n\n"
        "*Paso 1/6:* Ingresa el *NÚMERO DE SERIE* (VIN)\n"
        "📝 Ejemplo: 3VWHP6BU9RM073778",
        parse_mode=enums.ParseMode.MARKDOWN,
        reply_markup=vehiculo_cancel_markup(),
    )
    logger.info(f"Registro de vehículo iniciado: {state_key}")
    return True


def tiene_registro_en_proceso(user_id: int, chat_id: int, thread_id: int | None = None) -> bool:
    return vehiculos_en_proceso.has(get_user_state_key(user_id, chat_id, thread_id))


def cancelar_registro(user_id: int, chat_id: int, thread_id: int | None = None) -> bool:
    return vehiculos_en_proceso.delete(get_user_state_key(user_id, chat_id, thread_id))


async def procesar_mensaje(app: Client, message: Message, user_id: int) -> bool:
    """
    Procesa un mensaje dentro del registro activo del usuario.

    Returns:
        bool: True si el mensaje pertenecía al registro (aunque fuera inválido)
    """
    chat_id = message.chat.id
    thread_id = get_thread_id(message)
    state_key = get_user_state_key(user_id, chat_id, thread_id)
    registro = vehiculos_en_proceso.get(state_key)
    if not registro:
        return False
    registro["last_activity"] = _now_ms()

    texto = (message.text or "").strip()
    try:
        estado = registro["estado"]
        if estado == ESPERANDO_FOTOS:
            return await _procesar_foto(app, message, registro)
        if estado == ESPERANDO_SERIE:
            return await _procesar_serie(app, texto, registro, state_key)
        if estado == ESPERANDO_PLACAS:
            return await _procesar_placas(app, texto, registro, state_key)
        if estado in PASOS:
            return await _procesar_campo(app, texto, registro, state_key)
        return False
    except Exception as e:
        logger.error(f"Error procesando registro de vehículo {state_key}: {e}")
        await _reply(app, registro, "❌ Error en el registro. Intenta nuevamente.")
        return True


async def _procesar_serie(app: Client, texto: str, registro: dict[str, Any], state_key: str) -> bool:
    ok, error, value = validate_serie(texto)
    if not ok:
        await _reply(app, registro, f"❌ {error}\nIntenta nuevamente:")
        return True

    serie = value["serie"]
    existente = get_vehicle_by_serie(serie)
    if existente:
        await _reply(
            app, registro,
            "❌ Este vehículo ya existe.\n\n"
            f"🚗 **{existente.marca} {existente.submarca}**\n"
            f"📅 Año: {existente.anio}\n"
            f"🎨 Color: {existente.color}\n"
            f"👤 Titular: {existente.titular or 'Sin titular'}",
            parse_mode=enums.ParseMode.MARKDOWN,
        )
        vehiculos_en_proceso.delete(state_key)
        return True

    registro["datos"]["serie"] = serie
    registro["estado"] = ESPERANDO_MARCA
    vehiculos_en_proceso.set(state_key, registro)

    aviso = "" if value["es_vin"] else "\n⚠️ La serie no tiene 17 caracteres (no es un VIN estándar)."
    await _reply(
        app, registro,
        f"✅ Serie: **{serie}**{aviso}\n\n{PROMPTS[ESPERANDO_MARCA]}",
        parse_mode=enums.ParseMode.MARKDOWN,
    )
    return True


async def _procesar_campo(app: Client, texto: str, registro: dict[str, Any], state_key: str) -> bool:
    validator, campo, siguiente, etiqueta = PASOS[registro["estado"]]
    ok, error, value = validator(texto)
    if not ok:
        await _reply(app, registro, f"❌ {error}\nIntenta nuevamente:")
        return True

    registro["datos"][campo] = value
    registro["estado"] = siguiente
    vehiculos_en_proceso.set(state_key, registro)
    await _reply(
        app, registro,
        f"✅ {etiqueta}: **{value}**\n\n{PROMPTS[siguiente]}",
        parse_mode=enums.ParseMode.MARKDOWN,
    )
    return True


async def _procesar_placas(app: Client, texto: str, registro: dict[str, Any], state_key: str) -> bool:
    ok, error, value = validate_placas(texto)
    if not ok:
        await _reply(app, registro, f"❌ {error}\nIntenta nuevamente:")
        return True

    registro["datos"]["placas"] = value
    registro["estado"] = ESPERANDO_FOTOS
    vehiculos_en_proceso.set(state_key, registro)

    datos = registro["datos"]
    await _reply(
        app, registro,
        "✅ **DATOS RECOPILADOS**\n\n"
        f"🚗 {datos['marca']} {datos['submarca']} {datos['anio']}\n"
        f"🎨 Color: {datos['color']}\n"
        f"🔢 Placas: {value}\n\n"
        "📸 **OBLIGATORIO:** Envía AL MENOS 1 foto del auto para continuar",
        parse_mode=enums.ParseMode.MARKDOWN,
        reply_markup=vehiculo_cancel_markup(),
    )
    return True


async def _procesar_foto(app: Client, message: Message, registro: dict[str, Any]) -> bool:
    if not message.photo:
        await _reply(app, registro, "📸 Envía una foto del vehículo o presiona \"✅ Finalizar Registro\" para completar.")
        return True

    serie = registro["datos"]["serie"]
    try:
        buffer = await app.download_media(message, in_memory=True)
        data = bytes(buffer.getbuffer())
    except Exception as e:
        logger.error(f"Error descargando foto del vehículo {serie}: {e}")
        await _reply(app, registro, "❌ Error al procesar la foto. Por favor, intenta enviarla nuevamente.")
        return True

    indice = len(registro["fotos"]) + 1
    key = f"vehiculos/{serie}/foto_{indice}_{_now_ms()}.jpg"
    try:
        archivo = await asyncio.to_thread(
            get_r2_storage().upload_bytes,
            data, key, "image/jpeg",
            {"vehicle_serie": serie, "type": "vehiculo_foto"},
            f"foto_{indice}.jpg",
        )
    except Exception as e:
        logger.error(f"Error subiendo foto del vehículo {serie} a R2: {e}")
        await _reply(app, registro, "❌ Error al subir la foto. Intenta nuevamente.")
        return True

    registro["fotos"].append(archivo)
    await _reply(
        app, registro,
        f"✅ Foto {indice} guardada\n📊 Total de fotos: {len(registro['fotos'])}\n\n"
        "Puedes enviar más fotos o finalizar el registro",
        reply_markup=vehiculo_fotos_markup(),
    )
    return True


async def finalizar_registro(app: Client, chat_id: int, user_id: int, thread_id: int | None = None) -> bool:
    state_key = get_user_state_key(user_id, chat_id, thread_id)
    registro = vehiculos_en_proceso.get(state_key)
    if not registro:
        await safe_send(app, chat_id, "❌ No hay registro en proceso para finalizar.", thread_id)
        return False
    if registro["estado"] != ESPERANDO_FOTOS:
        await _reply(app, registro, "❌ Completa todos los pasos antes de finalizar.")
        return False
    if not registro["fotos"]:
        await _reply(
            app, registro,
            "❌ **ERROR:** No se puede finalizar el registro sin fotos.\n\n"
            "📸 Debes subir AL MENOS 1 foto del vehículo para continuar.",
            parse_mode=enums.ParseMode.MARKDOWN,
        )
        return False

    try:
        titular = generar_datos_mexicanos()
    except Exception as e:
        logger.warning(f"No se pudieron generar datos de titular: {e}")
        titular = datos_titular_pendiente()

    try:
        vehicle = create_vehicle(Vehicle(
            **registro["datos"],
            **titular,
            fotos=[Archivo.model_validate(f) for f in registro["fotos"]],
            creado_por=CREADO_POR_SISTEMA,
            creado_via=CREADO_VIA_BOT,
        ))
    except DuplicateVehicleError as e:
        vehiculos_en_proceso.delete(state_key)
        await _reply(app, registro, f"❌ {e}")
        return False
    except Exception as e:
        logger.error(f"Error finalizando registro de vehículo {state_key}: {e}")
        await _reply(app, registro, "❌ Error al finalizar el registro.")
        return False

    registro["estado"] = COMPLETADO
    vehiculos_en_proceso.delete(state_key)
    await _reply(
        app, registro,
        "🎉 **REGISTRO COMPLETADO**\n\n"
        f"🆔 ID: {vehicle.id}\n"
        f"🚗 Vehículo: {vehicle.descripcion}\n"
        f"🔢 Serie: {vehicle.serie}\n"
        f"👤 Titular: {vehicle.titular}\n"
        f"📱 Teléfono: {vehicle.telefono or 'N/A'}\n"
        f"📸 Fotos: {len(vehicle.fotos)}\n"
        "✅ Estado: *SIN PÓLIZA*\n\n"
        "El vehículo ya está disponible para asignarle una póliza.",
        parse_mode=enums.ParseMode.MARKDOWN,
        reply_markup=main_menu_markup(),
    )
    logger.info(f"Vehículo registrado desde el bot: {vehicle.serie} ({state_key})")
    return True


class VehicleRegistrationCleanup:
    """Proveedor para StateCleanupService: borra registros sin actividad reciente."""

    def cleanup(self, cutoff_ms: int) -> int:
        removed = 0
        for key, registro in vehiculos_en_proceso.items():
            if registro.get("last_activity", 0) < cutoff_ms and vehiculos_en_proceso.delete(key):
                removed += 1
        return removed
