"""
Asignación de póliza a un vehículo de la base de autos.

Pasos: número de póliza, aseguradora, persona que cotizó, fecha de emisión
(botones o DD/MM/AAAA), primer pago, segundo pago y archivo (PDF o foto)
obligatorio. Al recibir el archivo se crea la póliza y el vehículo pasa a
CON_POLIZA.
"""

import asyncio
import logging
import os
import time
from datetime import datetime
from typing import Any

from pyrogram import Client, enums
from pyrogram.types import Message

from constants import CREADO_VIA_BOT, VEHICULOS_POR_PAGINA
from db_handler.policies import DuplicatePolicyError, add_file_to_policy, save_policy_for_vehicle
from db_handler.vehicles import VehicleUnavailableError, get_vehicle_by_id, get_vehicles_without_policy
from markups import (
    asignacion_cancel_markup,
    base_autos_markup,
    fecha_emision_markup,
    main_menu_markup,
    vehicle_list_markup,
)
from models import Archivo, EstadoPago, EstadoVehiculo, Pago, Policy, Vehicle
from r2_storage import R2StorageError, generate_file_name, get_r2_storage
from state_keys import ThreadSafeStateMap, get_thread_id, get_user_state_key
from utils import add_months, add_years, format_date, format_money, get_timezone, now_local, safe_send
from validators import (
    validate_archivo_poliza,
    validate_aseguradora,
    validate_fecha,
    validate_monto,
    validate_nombre_persona,
    validate_numero_poliza,
)

logger = logging.getLogger(__name__)

ESPERANDO_NUMERO_POLIZA = "esperando_numero_poliza"
ESPERANDO_ASEGURADORA = "esperando_aseguradora"
ESPERANDO_NOMBRE_PERSONA = "esperando_nombre_persona"
SELECCIONANDO_FECHA_EMISION = "seleccionando_fecha_emision"
ESPERANDO_PRIMER_PAGO = "esperando_primer_pago"
ESPERANDO_SEGUNDO_PAGO = "esperando_segundo_pago"
ESPERANDO_PDF = "esperando_pdf"

asignaciones_en_proceso = ThreadSafeStateMap()


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _reply(app: Client, asignacion: dict[str, Any], text: str, **kwargs):
    return await safe_send(app, asignacion["chat_id"], text, asignacion.get("thread_id"), **kwargs)


def _markdown(**kwargs) -> dict[str, Any]:
    return {"parse_mode": enums.ParseMode.MARKDOWN, **kwargs}


async def mostrar_vehiculos_disponibles(app: Client, chat_id: int, page: int = 1, thread_id: int | None = None) -> bool:
    try:
        vehicles, total, total_pages = get_vehicles_without_policy(limit=VEHICULOS_POR_PAGINA, page=page)
    except Exception as e:
        logger.error(f"Error consultando vehículos sin póliza: {e}")
        await safe_send(app, chat_id, "❌ Error al consultar vehículos disponibles.", thread_id)
        return False

    if not vehicles:
        await safe_send(
            app, chat_id,
            "📋 **NO HAY VEHÍCULOS DISPONIBLES**\n\n"
            "No hay vehículos registrados sin póliza.\n"
            "Registra un auto primero desde la Base de Autos.",
            thread_id,
            **_markdown(reply_markup=base_autos_markup()),
        )
        return True

    lines = [
        "🚗 **VEHÍCULOS DISPONIBLES PARA ASEGURAR**\n",
        f"📊 Página {page} de {total_pages}",
        f"📈 Total: {total} vehículos\n",
    ]
    for index, vehicle in enumerate(vehicles, start=(page - 1) * VEHICULOS_POR_PAGINA + 1):
        lines.append(
            f"**{index}.** 🚗 {vehicle.descripcion}\n"
            f"   🎨 Color: {vehicle.color}\n"
            f"   🔢 Serie: {vehicle.serie}\n"
            f"   🚙 Placas: {vehicle.placas}\n"
        )

    await safe_send(
        app, chat_id, "\n".join(lines), thread_id,
        **_markdown(reply_markup=vehicle_list_markup(vehicles, page, total_pages)),
    )
    return True


def _resumen_vehiculo(vehicle: Vehicle) -> str:
    return (
        "🚗 **VEHÍCULO SELECCIONADO**\n\n"
        f"**{vehicle.descripcion}**\n"
        f"🎨 Color: {vehicle.color}\n"
        f"🔢 Serie: {vehicle.serie}\n"
        f"🚙 Placas: {vehicle.placas}\n\n"
        "**Datos del titular:**\n"
        f"👤 {vehicle.titular}\n"
        f"🆔 RFC: {vehicle.rfc}\n"
        f"📧 {vehicle.correo or 'Sin correo'}\n\n"
        "💼 **INICIAR ASIGNACIÓN DE PÓLIZA**\n\n"
        "*Paso 1/5:* Ingresa el *número de póliza*"
    )


async def iniciar_asignacion(
    app: Client, chat_id: int, user_id: int, vehicle_id: int, thread_id: int | None = None
) -> bool:
    try:
        vehicle = get_vehicle_by_id(vehicle_id)
        if not vehicle:
            await safe_send(app, chat_id, "❌ Vehículo no encontrado.", thread_id)
            return False
        if vehicle.estado != EstadoVehiculo.SIN_POLIZA:
            await safe_send(
                app, chat_id,
                f"❌ Este vehículo ya tiene póliza asignada.\nEstado actual: {vehicle.estado.value}",
                thread_id,
            )
            return False

        state_key = get_user_state_key(user_id, chat_id, thread_id)
        asignacion = {
            "estado": ESPERANDO_NUMERO_POLIZA,
            "chat_id": chat_id,
            "thread_id": thread_id,
            "vehicle_id": vehicle.id,
            "datos_poliza": {},
            "iniciado": _now_ms(),
            "last_activity": _now_ms(),
        }
        asignaciones_en_proceso.set(state_key, asignacion)
        await _reply(app, asignacion, _resumen_vehiculo(vehicle), **_markdown(reply_markup=asignacion_cancel_markup()))
        logger.info(f"Asignación de póliza iniciada para vehículo {vehicle.serie} ({state_key})")
        return True
    except Exception as e:
        logger.error(f"Error iniciando asignación: {e}")
        await safe_send(app, chat_id, "❌ Error al iniciar la asignación de póliza.", thread_id)
        return False


def tiene_asignacion_en_proceso(user_id: int, chat_id: int, thread_id: int | None = None) -> bool:
    return asignaciones_en_proceso.has(get_user_state_key(user_id, chat_id, thread_id))


def cancelar_asignacion(user_id: int, chat_id: int, thread_id: int | None = None) -> bool:
    return asignaciones_en_proceso.delete(get_user_state_key(user_id, chat_id, thread_id))


async def procesar_mensaje(app: Client, message: Message, user_id: int) -> bool:
    """
    Procesa un mensaje del flujo de asignación.

    Returns:
        bool: True si el mensaje fue consumido por el flujo
    """
    chat_id = message.chat.id
    thread_id = get_thread_id(message)
    state_key = get_user_state_key(user_id, chat_id, thread_id)
    asignacion = asignaciones_en_proceso.get(state_key)
    if not asignacion:
        return False
    asignacion["last_activity"] = _now_ms()

    texto = (message.text or "").strip()
    estado = asignacion["estado"]
    datos = asignacion["datos_poliza"]

    try:
        if estado == ESPERANDO_PDF:
            return await _procesar_archivo(app, message, asignacion, state_key)

        if estado == ESPERANDO_NUMERO_POLIZA:
            ok, error, value = validate_numero_poliza(texto)
            if not ok:
                await _reply(app, asignacion, f"❌ {error}")
                return True
            datos["numero_poliza"] = value
            asignacion["estado"] = ESPERANDO_ASEGURADORA
            await _reply(
                app, asignacion,
                f"✅ Número de póliza: **{value}**\n\n"
                "*Paso 2/5:* Ingresa la *aseguradora*\n📝 Ejemplo: GNP, Seguros Monterrey, AXA",
                **_markdown(),
            )

        elif estado == ESPERANDO_ASEGURADORA:
            ok, error, value = validate_aseguradora(texto)
            if not ok:
                await _reply(app, asignacion, f"❌ {error}")
                return True
            datos["aseguradora"] = value
            asignacion["estado"] = ESPERANDO_NOMBRE_PERSONA
            await _reply(
                app, asignacion,
                f"✅ Aseguradora: **{value}**\n\n"
                "*Paso 3/5:* Ingresa el *nombre de la persona* que cotizó\n📝 Ejemplo: Juan Pérez",
                **_markdown(),
            )

        elif estado == ESPERANDO_NOMBRE_PERSONA:
            ok, error, value = validate_nombre_persona(texto)
            if not ok:
                await _reply(app, asignacion, f"❌ {error}")
                return True
            datos["nombre_persona"] = value
            asignacion["estado"] = SELECCIONANDO_FECHA_EMISION
            await _reply(
                app, asignacion,
                f"✅ Persona: **{value}**\n\n"
                "*Paso 4/5:* Selecciona la *fecha de emisión*\n📅 Elige el día o escríbela como DD/MM/AAAA:",
                **_markdown(reply_markup=fecha_emision_markup()),
            )

        elif estado == SELECCIONANDO_FECHA_EMISION:
            ok, error, value = validate_fecha(texto)
            if not ok:
                await _reply(app, asignacion, f"❌ {error}")
                return True
            await _confirmar_fecha(app, asignacion, value.replace(tzinfo=get_timezone()))

        elif estado == ESPERANDO_PRIMER_PAGO:
            ok, error, value = validate_monto(texto)
            if not ok:
                await _reply(app, asignacion, f"❌ {error}\n💰 Solo números\n📝 Ejemplo: 8500")
                return True
            datos["primer_pago"] = value
            asignacion["estado"] = ESPERANDO_SEGUNDO_PAGO
            await _reply(
                app, asignacion,
                f"✅ Primer pago: {format_money(value)}\n\n"
                "Ahora ingresa el *SEGUNDO PAGO*\n💰 Solo el monto\n📝 Ejemplo: 3500",
                **_markdown(),
            )

        elif estado == ESPERANDO_SEGUNDO_PAGO:
            ok, error, value = validate_monto(texto)
            if not ok:
                await _reply(app, asignacion, f"❌ {error}\n💰 Solo números\n📝 Ejemplo: 3500")
                return True
            datos["segundo_pago"] = value
            asignacion["estado"] = ESPERANDO_PDF
            total = datos["primer_pago"] + value
            await _reply(
                app, asignacion,
                f"✅ Segundo pago: {format_money(value)}\n\n"
                f"💰 **Total de la póliza: {format_money(total)}**\n\n"
                "📎 **OBLIGATORIO:** Envía el PDF o foto de la póliza\n🔗 Formatos: PDF, JPG, PNG",
                **_markdown(),
            )
        else:
            return False

        asignaciones_en_proceso.set(state_key, asignacion)
        return True
    except Exception as e:
        logger.error(f"Error en asignación de póliza {state_key}: {e}")
        await _reply(app, asignacion, "❌ Error en la asignación. Intenta nuevamente.")
        return True


async def _confirmar_fecha(app: Client, asignacion: dict[str, Any], fecha: datetime):
    datos = asignacion["datos_poliza"]
    datos["fecha_emision"] = fecha
    datos["fecha_fin_cobertura"] = add_years(fecha, 1)
    asignacion["estado"] = ESPERANDO_PRIMER_PAGO
    await _reply(
        app, asignacion,
        f"✅ Fecha de emisión: {format_date(fecha)}\n"
        f"📅 Fin de cobertura: {format_date(datos['fecha_fin_cobertura'])}\n\n"
        "*Paso 5/5:* Ingresa el *PRIMER PAGO*\n💰 Solo el monto\n📝 Ejemplo: 8500",
        **_markdown(),
    )


async def seleccionar_fecha_emision(
    app: Client, chat_id: int, user_id: int, fecha_iso: str, thread_id: int | None = None
) -> bool:
    """Callback fecha_emision_{YYYY-MM-DD}."""
    state_key = get_user_state_key(user_id, chat_id, thread_id)
    asignacion = asignaciones_en_proceso.get(state_key)
    if not asignacion or asignacion["estado"] != SELECCIONANDO_FECHA_EMISION:
        await safe_send(app, chat_id, "❌ No hay asignación de póliza en proceso.", thread_id)
        return False
    asignacion["last_activity"] = _now_ms()

    try:
        fecha = datetime.strptime(fecha_iso, "%Y-%m-%d").replace(tzinfo=get_timezone())
    except ValueError:
        await _reply(app, asignacion, "❌ Fecha inválida.")
        return False

    await _confirmar_fecha(app, asignacion, fecha)
    asignaciones_en_proceso.set(state_key, asignacion)
    return True


async def _procesar_archivo(app: Client, message: Message, asignacion: dict[str, Any], state_key: str) -> bool:
    if message.text and not message.document and not message.photo:
        await _reply(app, asignacion, "❌ **ARCHIVO OBLIGATORIO**\n\n📎 Envía un PDF o foto de la póliza", **_markdown())
        return True

    ok, error, info = validate_archivo_poliza(message)
    if not ok:
        await _reply(app, asignacion, f"❌ {error}")
        return True

    try:
        buffer = await app.download_media(message, in_memory=True)
        info["buffer"] = bytes(buffer.getbuffer())
    except Exception as e:
        logger.error(f"Error descargando archivo de póliza: {e}")
        await _reply(app, asignacion, "❌ Error al procesar el archivo. Intenta nuevamente.")
        return True

    asignacion["datos_poliza"]["archivo"] = info
    await _reply(
        app, asignacion,
        f"✅ {'PDF' if info['type'] == 'pdf' else 'Foto'} guardado: {info['file_name']}\n\n"
        "🎉 ¡Todos los datos completos!\nProcesando asignación...",
    )
    return await finalizar_asignacion(app, asignacion, state_key)


def construir_pagos(datos: dict[str, Any]) -> list[Pago]:
    """Primer pago en la emisión y segundo un mes después, ambos PLANIFICADO."""
    pagos = []
    fecha = datos["fecha_emision"]
    if datos.get("primer_pago"):
        pagos.append(Pago(monto=datos["primer_pago"], fecha_pago=fecha, estado=EstadoPago.PLANIFICADO, notas="Pago inicial"))
    if datos.get("segundo_pago"):
        pagos.append(Pago(
            monto=datos["segundo_pago"],
            fecha_pago=add_months(fecha, 1),
            estado=EstadoPago.PLANIFICADO,
            notas="Pago mensual",
        ))
    return pagos


def construir_poliza(vehicle: Vehicle, datos: dict[str, Any]) -> Policy:
    return Policy(
        titular=vehicle.titular or "TITULAR PENDIENTE",
        rfc=vehicle.rfc,
        telefono=vehicle.telefono,
        correo=vehicle.correo,
        calle=vehicle.calle,
        colonia=vehicle.colonia,
        municipio=vehicle.municipio,
        estado_region=vehicle.estado_region,
        cp=vehicle.cp,
        marca=vehicle.marca,
        submarca=vehicle.submarca,
        anio=vehicle.anio,
        color=vehicle.color,
        serie=vehicle.serie,
        placas=vehicle.placas,
        numero_poliza=datos["numero_poliza"],
        aseguradora=datos["aseguradora"],
        agente_cotizador=datos["nombre_persona"],
        fecha_emision=datos["fecha_emision"],
        fecha_fin_cobertura=datos["fecha_fin_cobertura"],
        pagos=construir_pagos(datos),
        vehicle_id=vehicle.id,
        creado_via=CREADO_VIA_BOT,
    )


def _copiar_fotos_vehiculo(vehicle: Vehicle, numero_poliza: str) -> list[Archivo]:
    """Copia las fotos del vehículo bajo el prefijo de la póliza en R2."""
    storage = get_r2_storage()
    fotos = []
    for foto in vehicle.fotos:
        nombre = foto.original_name or os.path.basename(foto.key)
        try:
            copia = storage.copy_file(foto.key, generate_file_name(numero_poliza, nombre, "fotos"))
        except R2StorageError as e:
            # se conserva la referencia a la foto del vehículo
            logger.warning(f"No se pudo copiar la foto {foto.key} a la póliza {numero_poliza}: {e}")
            fotos.append(foto)
            continue
        fotos.append(foto.model_copy(update={"url": copia["url"], "key": copia["key"], "uploaded_at": now_local()}))
    return fotos


async def finalizar_asignacion(app: Client, asignacion: dict[str, Any], state_key: str) -> bool:
    datos = asignacion["datos_poliza"]
    try:
        vehicle = get_vehicle_by_id(asignacion["vehicle_id"])
        if not vehicle or vehicle.estado != EstadoVehiculo.SIN_POLIZA:
            await _reply(app, asignacion, "❌ El vehículo ya no está disponible para asignar póliza.")
            return True

        try:
            policy, vehicle = save_policy_for_vehicle(construir_poliza(vehicle, datos), vehicle.id)
        except VehicleUnavailableError:
            await _reply(app, asignacion, "❌ El vehículo ya no está disponible para asignar póliza.")
            return True
        except DuplicatePolicyError:
            await _reply(
                app, asignacion,
                "⚠️ **PÓLIZA DUPLICADA**\n\n"
                f"El número de póliza **{datos['numero_poliza']}** ya existe en el sistema.\n"
                "El vehículo permanece sin póliza asignada.",
                **_markdown(),
            )
            return True

        fotos = await asyncio.to_thread(_copiar_fotos_vehiculo, vehicle, policy.numero_poliza)
        for foto in fotos:
            add_file_to_policy(policy.numero_poliza, "fotos", foto)

        archivo = datos.get("archivo")
        if archivo and archivo.get("buffer"):
            storage = get_r2_storage()
            upload = storage.upload_policy_pdf if archivo["type"] == "pdf" else storage.upload_policy_photo
            try:
                subido = await asyncio.to_thread(upload, archivo["buffer"], policy.numero_poliza, archivo["file_name"])
                add_file_to_policy(policy.numero_poliza, "pdfs" if archivo["type"] == "pdf" else "fotos", subido)
            except Exception as e:
                logger.error(f"Error subiendo archivo de la póliza {policy.numero_poliza}: {e}")

        total = datos.get("primer_pago", 0) + datos.get("segundo_pago", 0)
        await _reply(
            app, asignacion,
            "🎉 **PÓLIZA ASIGNADA EXITOSAMENTE**\n\n"
            f"📋 **Póliza:** {policy.numero_poliza}\n"
            f"🏢 **Aseguradora:** {policy.aseguradora}\n"
            f"👨‍💼 **Persona:** {policy.agente_cotizador}\n"
            f"📅 **Emisión:** {format_date(policy.fecha_emision)}\n"
            f"📅 **Vence:** {format_date(policy.fecha_fin_cobertura)}\n\n"
            "💰 **Pagos:**\n"
            f"• Primer pago: {format_money(datos.get('primer_pago'))}\n"
            f"• Segundo pago: {format_money(datos.get('segundo_pago'))}\n"
            f"• Total: {format_money(total)}\n\n"
            f"🚗 **Vehículo:** {vehicle.descripcion}\n\n"
            f"🆔 ID: {policy.id}",
            **_markdown(reply_markup=main_menu_markup()),
        )
        logger.info(f"Póliza {policy.numero_poliza} asignada al vehículo {vehicle.serie}")
        return True
    except Exception as e:
        logger.error(f"Error finalizando asignación {state_key}: {e}")
        await _reply(app, asignacion, "❌ Error al finalizar la asignación de póliza.")
        return True
    finally:
        asignaciones_en_proceso.delete(state_key)


class PolicyAssignmentCleanup:
    """Proveedor para StateCleanupService."""

    def cleanup(self, cutoff_ms: int) -> int:
        removed = 0
        for key, asignacion in asignaciones_en_proceso.items():
            if asignacion.get("last_activity", 0) < cutoff_ms and asignaciones_en_proceso.delete(key):
                removed += 1
        return removed
