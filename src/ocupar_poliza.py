"""
Flujo "Ocupar póliza": teléfono, origen y destino, registro del servicio y
programación de las notificaciones de contacto y término.

Los estados se guardan por contexto (chat o chat:tema) en mapas separados por
paso, igual que el resto de formularios del bot.
"""

import asyncio
import logging
import random
import time
from datetime import datetime, timedelta
from typing import Any

from pyrogram import Client, enums
from pyrogram.types import Message

from config import TELEGRAM_GROUP_ID
from constants import COSTO_BASE_SERVICIO, COSTO_POR_KM, MOTIVO_NIV_UTILIZADO
from db_handler.policies import (
    add_registro,
    convertir_registro_a_servicio,
    find_policies_by_phone,
    get_policy_by_number,
    mark_policy_as_deleted,
    marcar_registro_no_asignado,
    update_policy_phone,
)
from db_handler.vehicles import mark_vehicle_deleted
from here_maps import build_service_legend, get_here_maps_service
from markups import assignment_markup, day_selector_markup, phone_choice_markup, service_decision_markup
from models import Policy, TipoNotificacion
from parser import parse_coordinates
from state_keys import ThreadSafeStateMap, get_context_key, get_thread_id
from utils import day_name, format_datetime, format_money, format_time, now_local, safe_send
from validators import validate_contact_time, validate_expediente, validate_phone

logger = logging.getLogger(__name__)

USAR_ANTERIOR = "ANTERIOR"
MAX_INTENTOS_TELEFONO = 2

poliza_cache = ThreadSafeStateMap()
awaiting_phone_number = ThreadSafeStateMap()
phone_attempts = ThreadSafeStateMap()
awaiting_origen = ThreadSafeStateMap()
awaiting_destino = ThreadSafeStateMap()
awaiting_service_data = ThreadSafeStateMap()
awaiting_contact_time = ThreadSafeStateMap()
scheduled_service_info = ThreadSafeStateMap()
flow_states = ThreadSafeStateMap()
# Última actividad por contexto, para la limpieza por TTL
last_activity = ThreadSafeStateMap()

processing_callbacks: set[str] = set()
_background_tasks: set[asyncio.Task] = set()

_STATE_MAPS = (
    poliza_cache,
    awaiting_phone_number,
    phone_attempts,
    awaiting_origen,
    awaiting_destino,
    awaiting_service_data,
    awaiting_contact_time,
    scheduled_service_info,
    flow_states,
    last_activity,
)


def _touch(key: str) -> None:
    last_activity.set(key, int(time.time() * 1000))


def _markdown(**kwargs) -> dict[str, Any]:
    return {"parse_mode": enums.ParseMode.MARKDOWN, **kwargs}


def calcular_horas_automaticas(
    fecha_base: datetime, tiempo_trayecto_minutos: float = 0, rng: random.Random | None = None
) -> dict[str, Any]:
    """
    Contacto entre 22 y 39 minutos después de fecha_base; término tras el
    trayecto multiplicado por 1.6.
    """
    rng = rng or random.Random()
    minutos_contacto = rng.randint(22, 39)
    fecha_contacto = fecha_base + timedelta(minutes=minutos_contacto)
    minutos_termino = round((tiempo_trayecto_minutos or 0) * 1.6)
    return {
        "fecha_contacto": fecha_contacto,
        "fecha_termino": fecha_contacto + timedelta(minutes=minutos_termino),
        "minutos_contacto": minutos_contacto,
        "minutos_termino": minutos_termino,
    }


def calcular_costo_servicio(distancia_km: float | None) -> float:
    return round((distancia_km or 0) * COSTO_POR_KM + COSTO_BASE_SERVICIO, 2)


def _clear_context(key: str) -> None:
    for state_map in _STATE_MAPS:
        state_map.delete(key)


def cleanup_all_states(chat_id: int, thread_id: int | None = None) -> None:
    """Elimina todos los sub-estados del flujo para el contexto (o el chat completo sin tema)."""
    if thread_id:
        _clear_context(get_context_key(chat_id, thread_id))
    else:
        for state_map in _STATE_MAPS:
            state_map.delete_all(chat_id)
    logger.info(f"Estados de ocupar póliza limpiados para {chat_id} (tema {thread_id})")


def tiene_flujo_activo(chat_id: int, thread_id: int | None = None) -> bool:
    key = get_context_key(chat_id, thread_id)
    return any(
        state_map.has(key)
        for state_map in (awaiting_phone_number, awaiting_origen, awaiting_destino, awaiting_service_data, awaiting_contact_time)
    )


def _cached_policy(key: str, numero_poliza: str) -> Policy | None:
    cached = poliza_cache.get(key)
    if cached and cached["numero_poliza"] == numero_poliza:
        return cached["policy"]
    return get_policy_by_number(numero_poliza)


def _destino_previo(policy: Policy) -> dict[str, float] | None:
    servicio = policy.last_servicio()
    if not servicio or not servicio.coordenadas:
        return None
    destino = servicio.coordenadas.get("destino") or {}
    if destino.get("lat") is None or destino.get("lng") is None:
        return None
    return {"lat": destino["lat"], "lng": destino["lng"]}


async def iniciar_ocupar(app: Client, chat_id: int, numero_poliza: str, thread_id: int | None = None) -> bool:
    """Callback ocuparPoliza:{n}."""
    key = get_context_key(chat_id, thread_id)
    try:
        policy = get_policy_by_number(numero_poliza)
        if not policy:
            await safe_send(app, chat_id, f"❌ Póliza {numero_poliza} no encontrada.", thread_id)
            return False

        _clear_context(key)
        poliza_cache.set(key, {"numero_poliza": policy.numero_poliza, "policy": policy})
        _touch(key)

        if policy.archivos.fotos or policy.archivos.pdfs:
            await safe_send(
                app, chat_id,
                f"📎 Archivos de la póliza: 📸 {len(policy.archivos.fotos)} fotos, 📄 {len(policy.archivos.pdfs)} PDFs",
                thread_id,
            )

        if policy.telefono:
            await safe_send(
                app, chat_id, f"📱 {policy.telefono}", thread_id,
                reply_markup=phone_choice_markup(policy.numero_poliza),
            )
        else:
            awaiting_phone_number.set(key, policy.numero_poliza)
            await safe_send(app, chat_id, "📱 Ingresa el *número telefónico* (10 dígitos):", thread_id, **_markdown())
        logger.info(f"Ocupar póliza iniciado para {policy.numero_poliza} en {key}")
        return True
    except Exception as e:
        logger.error(f"Error en ocupar póliza {numero_poliza}: {e}")
        await safe_send(app, chat_id, "❌ Error al procesar ocupación de póliza.", thread_id)
        return False


async def _pedir_origen(app: Client, chat_id: int, thread_id: int | None, policy: Policy) -> None:
    key = get_context_key(chat_id, thread_id)
    flow = flow_states.get(key) or {}
    flow["numero_poliza"] = policy.numero_poliza
    destino_previo = _destino_previo(policy)
    flow["destino_previo"] = destino_previo
    flow_states.set(key, flow)
    awaiting_origen.set(key, policy.numero_poliza)
    _touch(key)

    mensaje = "📍indica *ORIGEN*"
    if destino_previo:
        mensaje += (
            f"\n\n_Destino del servicio anterior: {destino_previo['lat']}, {destino_previo['lng']}_\n"
            f"Escribe *{USAR_ANTERIOR}* para usarlo como origen."
        )
    await safe_send(app, chat_id, mensaje, thread_id, **_markdown())


async def keep_phone(app: Client, chat_id: int, numero_poliza: str, thread_id: int | None = None) -> bool:
    key = get_context_key(chat_id, thread_id)
    try:
        policy = _cached_policy(key, numero_poliza)
        if not policy:
            await safe_send(app, chat_id, f"❌ Póliza {numero_poliza} no encontrada.", thread_id)
            return False
        awaiting_phone_number.delete(key)
        await _pedir_origen(app, chat_id, thread_id, policy)
        return True
    except Exception as e:
        logger.error(f"Error en keepPhone {numero_poliza}: {e}")
        await safe_send(app, chat_id, "❌ Error al procesar la acción.", thread_id)
        return False


async def change_phone(app: Client, chat_id: int, numero_poliza: str, thread_id: int | None = None) -> bool:
    key = get_context_key(chat_id, thread_id)
    awaiting_phone_number.set(key, numero_poliza)
    _touch(key)
    await safe_send(app, chat_id, "📱 Ingresa el *número telefónico* (10 dígitos):", thread_id, **_markdown())
    return True


async def procesar_telefono(app: Client, chat_id: int, texto: str, thread_id: int | None = None) -> bool:
    key = get_context_key(chat_id, thread_id)
    numero_poliza = awaiting_phone_number.get(key)
    if not numero_poliza:
        return False

    ok, _, telefono = validate_phone(texto)
    if not ok:
        intentos = (phone_attempts.get(key) or 0) + 1
        phone_attempts.set(key, intentos)
        if intentos >= MAX_INTENTOS_TELEFONO:
            awaiting_phone_number.delete(key)
            phone_attempts.delete(key)
            await safe_send(app, chat_id, "❌ Teléfono inválido. Proceso cancelado.", thread_id)
        else:
            await safe_send(app, chat_id, "❌ Teléfono inválido (10 dígitos). Intenta de nuevo:", thread_id)
        return True

    phone_attempts.delete(key)
    try:
        policy = _cached_policy(key, numero_poliza)
        if not policy:
            awaiting_phone_number.delete(key)
            await safe_send(app, chat_id, f"❌ Error: Póliza {numero_poliza} no encontrada. Operación cancelada.", thread_id)
            return True

        duplicadas = find_policies_by_phone(telefono, exclude_numero=policy.numero_poliza)
        if duplicadas:
            info = "\n".join(f"• *{p.numero_poliza}* - {p.titular or 'Sin titular'}" for p in duplicadas)
            await safe_send(app, chat_id, f"⚠️ *Teléfono en uso:*\n{info}", thread_id, **_markdown())
            logger.warning(f"Teléfono {telefono} ya registrado en {[p.numero_poliza for p in duplicadas]}")

        updated = update_policy_phone(policy.numero_poliza, telefono)
        if not updated:
            raise RuntimeError("No se pudo actualizar el teléfono en la base de datos")
        poliza_cache.set(key, {"numero_poliza": updated.numero_poliza, "policy": updated})
        awaiting_phone_number.delete(key)
        logger.info(f"Teléfono actualizado para póliza {updated.numero_poliza}: {telefono}")
        await _pedir_origen(app, chat_id, thread_id, updated)
        return True
    except Exception as e:
        logger.error(f"Error guardando teléfono para póliza {numero_poliza}: {e}")
        awaiting_phone_number.delete(key)
        await safe_send(app, chat_id, "❌ Error al guardar el teléfono. Operación cancelada.", thread_id)
        return True


def _extraer_coordenadas(message: Message) -> dict[str, float] | None:
    location = getattr(message, "location", None)
    if location:
        return {"lat": location.latitude, "lng": location.longitude}
    return parse_coordinates(message.text or "")


async def procesar_origen(app: Client, message: Message) -> bool:
    chat_id = message.chat.id
    thread_id = get_thread_id(message)
    key = get_context_key(chat_id, thread_id)
    numero_poliza = awaiting_origen.get(key)
    if not numero_poliza:
        return False

    flow = flow_states.get(key) or {"numero_poliza": numero_poliza}
    texto = (message.text or "").strip().upper()
    if texto == USAR_ANTERIOR and flow.get("destino_previo"):
        coordenadas = flow["destino_previo"]
    else:
        coordenadas = _extraer_coordenadas(message)
    if not coordenadas:
        await safe_send(app, chat_id, "❌ Formato inválido. 📍indica *ORIGEN*", thread_id, **_markdown())
        return True

    flow["origen_coords"] = coordenadas
    flow_states.set(key, flow)
    awaiting_origen.delete(key)
    awaiting_destino.set(key, numero_poliza)
    _touch(key)
    logger.info(f"Origen registrado para {numero_poliza}: {coordenadas}")
    await safe_send(app, chat_id, "📍indica *DESTINO*", thread_id, **_markdown())
    return True


async def _enviar_leyenda_grupo(app: Client, leyenda: str) -> None:
    try:
        await app.send_message(TELEGRAM_GROUP_ID, leyenda)
        logger.info(f"Leyenda enviada al grupo {TELEGRAM_GROUP_ID}")
    except Exception as e:
        logger.error(f"Error al enviar leyenda al grupo: {e}")


def _respuesta_destino(geocoding: dict[str, Any], ruta: dict[str, Any]) -> str:
    origen = geocoding["origen"].get("direccion_completa") or geocoding["origen"]["ubicacion_corta"]
    destino = geocoding["destino"].get("direccion_completa") or geocoding["destino"]["ubicacion_corta"]
    texto = (
        "📍 *Ubicaciones:*\n"
        f"🔹 Origen: {origen}\n"
        f"🔹 Destino: {destino}\n\n"
        "🗺️ *Información de ruta:*\n"
        f"📏 Distancia: {ruta['distancia_km']} km\n"
        f"⏱️ Tiempo estimado: {ruta['tiempo_minutos']} minutos"
    )
    if ruta.get("aproximado"):
        texto += " (aproximado)"
    texto += f"\n🔗 [Ver ruta en Google Maps]({ruta['google_maps_url']})"
    return texto


async def procesar_destino(app: Client, message: Message) -> bool:
    chat_id = message.chat.id
    thread_id = get_thread_id(message)
    key = get_context_key(chat_id, thread_id)
    numero_poliza = awaiting_destino.get(key)
    if not numero_poliza:
        return False

    destino = _extraer_coordenadas(message)
    if not destino:
        await safe_send(app, chat_id, "❌ Formato inválido. 📍indica *DESTINO*", thread_id, **_markdown())
        return True

    try:
        flow = flow_states.get(key) or {}
        origen = flow.get("origen_coords")
        if not origen:
            awaiting_destino.delete(key)
            await safe_send(
                app, chat_id, "❌ Error: No se encontraron las coordenadas del origen. Reinicia el proceso.", thread_id
            )
            return True

        policy = _cached_policy(key, numero_poliza)
        if not policy:
            awaiting_destino.delete(key)
            await safe_send(app, chat_id, "❌ Error: Póliza no encontrada.", thread_id)
            return True

        here = get_here_maps_service()
        ruta = await here.calculate_route(origen, destino)
        origen_geo, destino_geo = await asyncio.gather(
            here.reverse_geocode(origen["lat"], origen["lng"]),
            here.reverse_geocode(destino["lat"], destino["lng"]),
        )
        geocoding = {"origen": origen_geo, "destino": destino_geo}
        leyenda = build_service_legend(
            policy, origen_geo["ubicacion_corta"], destino_geo["ubicacion_corta"], ruta["google_maps_url"]
        )

        flow.update({
            "destino_coords": destino,
            "coordenadas": {"origen": origen, "destino": destino},
            "ruta_info": ruta,
            "geocoding": geocoding,
            "google_maps_url": ruta["google_maps_url"],
            "origen_destino": f"{origen_geo['ubicacion_corta']} - {destino_geo['ubicacion_corta']}",
            "leyenda": leyenda,
        })
        flow_states.set(key, flow)
        awaiting_destino.delete(key)
        _touch(key)

        # La leyenda al grupo no bloquea la respuesta al operador
        task = asyncio.create_task(_enviar_leyenda_grupo(app, leyenda))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

        await safe_send(
            app, chat_id, _respuesta_destino(geocoding, ruta), thread_id,
            **_markdown(reply_markup=service_decision_markup(numero_poliza), disable_web_page_preview=True),
        )
        return True
    except Exception as e:
        logger.error(f"Error procesando destino de {numero_poliza}: {e}")
        awaiting_destino.delete(key)
        await safe_send(app, chat_id, "❌ Error al procesar la ubicación del destino.", thread_id)
        return True


async def registrar_servicio(app: Client, chat_id: int, numero_poliza: str, thread_id: int | None = None) -> bool:
    """Callback registrar_servicio_{n}: pide el número de expediente."""
    key = get_context_key(chat_id, thread_id)
    awaiting_service_data.set(key, numero_poliza)
    _touch(key)
    await safe_send(app, chat_id, "🚗 **INGRESA EL NÚMERO DE EXPEDIENTE:**", thread_id, **_markdown())
    return True


async def no_registrar(app: Client, chat_id: int, numero_poliza: str, thread_id: int | None = None) -> bool:
    await safe_send(
        app, chat_id,
        f"✅ Proceso finalizado para póliza *{numero_poliza}*.\n\n"
        "📝 Los datos de origen-destino y teléfono han sido guardados.\n"
        "🚫 No se registrará ningún servicio en este momento.",
        thread_id,
        **_markdown(),
    )
    cleanup_all_states(chat_id, thread_id)
    return True


async def procesar_expediente(app: Client, chat_id: int, texto: str, thread_id: int | None = None) -> bool:
    key = get_context_key(chat_id, thread_id)
    numero_poliza = awaiting_service_data.get(key)
    if not numero_poliza:
        return False

    lineas = [linea.strip() for linea in texto.splitlines() if linea.strip()]
    if len(lineas) != 1:
        await safe_send(
            app, chat_id,
            "❌ Formato inválido. Debes ingresar solo el número de expediente:\n"
            "📝 Ejemplo: EXP-2025-001\n\n"
            "✅ Los demás datos se calculan automáticamente.",
            thread_id,
        )
        return True
    ok, error, expediente = validate_expediente(lineas[0])
    if not ok:
        await safe_send(app, chat_id, f"❌ {error}", thread_id)
        return True

    flow = flow_states.get(key) or {}
    ruta = flow.get("ruta_info")
    if not ruta:
        await safe_send(app, chat_id, "❌ No se encontraron datos de ruta. Reinicia el proceso.", thread_id)
        return True

    try:
        costo = calcular_costo_servicio(ruta.get("distancia_km"))
        resultado = add_registro(
            numero_poliza,
            costo,
            now_local(),
            expediente,
            flow.get("origen_destino", ""),
            coordenadas=flow.get("coordenadas"),
            ruta_info={**ruta, "google_maps_url": flow.get("google_maps_url") or ruta.get("google_maps_url")},
        )
        if not resultado:
            await safe_send(app, chat_id, f"❌ No se encontró la póliza *{numero_poliza}*. Proceso cancelado.", thread_id, **_markdown())
            return True

        _, registro = resultado
        flow["expediente"] = expediente
        flow_states.set(key, flow)
        awaiting_service_data.delete(key)
        _touch(key)

        await safe_send(
            app, chat_id,
            f"✅ Se ha hecho el registro #{registro.numero_registro} en la póliza *{numero_poliza}*, "
            f"con el expediente {expediente}\n💰 Costo calculado: {format_money(costo)}",
            thread_id,
            **_markdown(),
        )
        await safe_send(
            app, chat_id, "🤔 **INDICAME SI EL SERVICIO ESTA...**", thread_id,
            **_markdown(reply_markup=assignment_markup(numero_poliza, registro.numero_registro)),
        )
        return True
    except Exception as e:
        logger.error(f"Error registrando servicio para {numero_poliza}: {e}")
        await safe_send(app, chat_id, "❌ Error al registrar el servicio.", thread_id)
        return True


def _datos_notificacion(policy: Policy, registro: Any) -> dict[str, Any]:
    return {
        "numero_poliza": policy.numero_poliza,
        "target_group_id": TELEGRAM_GROUP_ID,
        "expediente_num": registro.numero_expediente,
        "origen_destino": registro.origen_destino or "Origen - Destino",
        "marca_modelo": f"{policy.marca} {policy.submarca} ({policy.anio or ''})",
        "color": policy.color,
        "placas": policy.placas,
        "telefono": policy.telefono,
    }


async def _programar_notificaciones(policy: Policy, registro: Any, horas: dict[str, Any]) -> None:
    from notification_manager import get_notification_manager

    manager = get_notification_manager()
    datos = _datos_notificacion(policy, registro)
    for tipo, fecha in (
        (TipoNotificacion.CONTACTO, horas["fecha_contacto"]),
        (TipoNotificacion.TERMINO, horas["fecha_termino"]),
    ):
        try:
            await manager.schedule_notification({
                **datos,
                "contact_time": format_time(fecha),
                "scheduled_date": fecha,
                "tipo_notificacion": tipo,
            })
            logger.info(f"Notificación {tipo.value} programada para {format_time(fecha)}")
        except Exception as e:
            logger.error(f"Error programando notificación {tipo.value}: {e}")


async def _consumir_niv(app: Client, chat_id: int, thread_id: int | None, policy: Policy) -> bool:
    """Un NIV con al menos un servicio se elimina junto con su vehículo."""
    if not policy.is_niv or policy.total_servicios < 1:
        return False
    try:
        mark_policy_as_deleted(policy.numero_poliza, MOTIVO_NIV_UTILIZADO)
        if policy.vehicle_id:
            mark_vehicle_deleted(policy.vehicle_id)
        logger.info(f"NIV utilizado: {policy.numero_poliza}. Eliminado automáticamente.")
        await safe_send(
            app, chat_id,
            "⚡ *NIV CONSUMIDO*\n\n"
            f"El NIV `{policy.numero_poliza}` ha sido utilizado y se ha eliminado automáticamente.\n"
            "Ya no aparecerá en reportes futuros.",
            thread_id,
            **_markdown(),
        )
        return True
    except Exception as e:
        logger.error(f"Error procesando NIV {policy.numero_poliza}: {e}")
        return False


async def asignar_registro(
    app: Client, chat_id: int, numero_poliza: str, numero_registro: int, thread_id: int | None = None
) -> bool:
    """
    Callback asig_yes_{n}_{reg}.

    Returns:
        bool: False si el mismo registro ya se está procesando (doble clic)
    """
    processing_key = f"{chat_id}_{numero_poliza}_{numero_registro}"
    if processing_key in processing_callbacks:
        logger.warning(f"Callback ya procesándose: {processing_key}")
        return False
    processing_callbacks.add(processing_key)
    try:
        policy = get_policy_by_number(numero_poliza)
        if not policy:
            await safe_send(app, chat_id, f"❌ Póliza {numero_poliza} no encontrada.", thread_id)
            return True
        registro = next((r for r in policy.registros if r.numero_registro == numero_registro), None)
        if not registro:
            await safe_send(app, chat_id, f"❌ Registro {numero_registro} no encontrado.", thread_id)
            return True

        tiempo = (registro.ruta_info or {}).get("tiempo_minutos") or 0
        horas = calcular_horas_automaticas(now_local(), tiempo)
        resultado = convertir_registro_a_servicio(
            numero_poliza, numero_registro, horas["fecha_contacto"], horas["fecha_termino"]
        )
        if not resultado:
            await safe_send(app, chat_id, f"❌ Error al convertir registro {numero_registro} a servicio.", thread_id)
            return True
        updated, servicio = resultado

        await _consumir_niv(app, chat_id, thread_id, updated)
        await safe_send(
            app, chat_id,
            f"✅ *Registro convertido a Servicio #{servicio.numero_servicio}*\n\n"
            "✨Los cálculos fueron realizados✨\n\n"
            "⏰ *Programación:*\n"
            f"📞 Contacto: {format_datetime(horas['fecha_contacto'])}\n"
            f"🏁 Término: {format_datetime(horas['fecha_termino'])}\n\n"
            "🤖 Las notificaciones se enviarán automáticamente.",
            thread_id,
            **_markdown(),
        )
        await _programar_notificaciones(updated, registro, horas)
        logger.info(f"Servicio #{servicio.numero_servicio} confirmado para {numero_poliza}")
        cleanup_all_states(chat_id, thread_id)
        return True
    except Exception as e:
        logger.error(f"Error en asignación de registro {processing_key}: {e}")
        await safe_send(app, chat_id, "❌ Error al procesar la asignación del servicio.", thread_id)
        return True
    finally:
        processing_callbacks.discard(processing_key)


async def no_asignar_registro(
    app: Client, chat_id: int, numero_poliza: str, numero_registro: int, thread_id: int | None = None
) -> bool:
    try:
        if marcar_registro_no_asignado(numero_poliza, numero_registro):
            await safe_send(
                app, chat_id,
                f"✅ Registro {numero_registro} marcado como *NO ASIGNADO* para póliza {numero_poliza}.\n\n"
                "📝 El registro permanecerá en la base de datos pero no se programará ningún servicio.",
                thread_id,
                **_markdown(),
            )
            cleanup_all_states(chat_id, thread_id)
            return True
        await safe_send(app, chat_id, f"❌ Error al marcar registro {numero_registro} como NO ASIGNADO.", thread_id)
        return False
    except Exception as e:
        logger.error(f"Error marcando registro {numero_registro} de {numero_poliza} como no asignado: {e}")
        await safe_send(app, chat_id, "❌ Error al procesar la NO asignación del servicio.", thread_id)
        return False


async def iniciar_contacto_manual(
    app: Client, chat_id: int, numero_poliza: str, numero_registro: int, thread_id: int | None = None
) -> bool:
    """Callback contactoManual:{n}:{reg}: pide la hora HH:mm."""
    key = get_context_key(chat_id, thread_id)
    policy = get_policy_by_number(numero_poliza)
    registro = next((r for r in policy.registros if r.numero_registro == numero_registro), None) if policy else None
    if not registro:
        await safe_send(app, chat_id, f"❌ Registro {numero_registro} no encontrado.", thread_id)
        return False

    scheduled_service_info.set(key, {
        "numero_poliza": numero_poliza,
        "numero_registro": numero_registro,
        "expediente": registro.numero_expediente,
        "origen_destino": registro.origen_destino,
    })
    awaiting_contact_time.set(key, numero_poliza)
    _touch(key)
    await safe_send(app, chat_id, "⏰ Ingresa la *hora de contacto* (HH:mm, 24 horas):", thread_id, **_markdown())
    return True


async def procesar_hora_contacto(app: Client, chat_id: int, texto: str, thread_id: int | None = None) -> bool:
    key = get_context_key(chat_id, thread_id)
    numero_poliza = awaiting_contact_time.get(key)
    if not numero_poliza:
        return False

    ok, _, _ = validate_contact_time(texto)
    if not ok:
        await safe_send(
            app, chat_id,
            "⚠️ Formato de hora inválido. Debe ser HH:mm (24 horas).\nEjemplos válidos: 09:30, 14:45, 23:15",
            thread_id,
        )
        return True

    info = scheduled_service_info.get(key)
    if not info:
        awaiting_contact_time.delete(key)
        await safe_send(app, chat_id, "❌ Error al procesar la hora. Operación cancelada.", thread_id)
        return True
    if not info.get("expediente"):
        info["expediente"] = f"EXP-{now_local().strftime('%Y-%m-%d')}"
    info["contact_time"] = texto.strip()
    scheduled_service_info.set(key, info)
    awaiting_contact_time.delete(key)
    _touch(key)

    await safe_send(
        app, chat_id,
        f"✅ Hora registrada: *{info['contact_time']}*\n\n📅 ¿Para qué día programar la alerta de contacto?",
        thread_id,
        **_markdown(reply_markup=day_selector_markup(numero_poliza)),
    )
    return True


def calcular_fecha_programada(offset: int, contact_time: str, today: datetime | None = None) -> datetime:
    today = today or now_local()
    hours, minutes = (int(part) for part in contact_time.split(":"))
    dia = today + timedelta(days=offset)
    return dia.replace(hour=hours, minute=minutes, second=0, microsecond=0)


async def seleccionar_dia(
    app: Client, chat_id: int, offset: int, numero_poliza: str, thread_id: int | None = None
) -> bool:
    """Callback selectDay:{offset}:{n}: programa la alerta de CONTACTO."""
    key = get_context_key(chat_id, thread_id)
    info = scheduled_service_info.get(key)
    if not info or not info.get("contact_time"):
        await safe_send(app, chat_id, "❌ Error: No se encontró la información de la hora de contacto.", thread_id)
        return False

    try:
        fecha = calcular_fecha_programada(offset, info["contact_time"])
        policy = get_policy_by_number(numero_poliza)
        if not policy:
            await safe_send(app, chat_id, f"❌ Póliza {numero_poliza} no encontrada.", thread_id)
            return False

        from notification_manager import get_notification_manager

        await get_notification_manager().schedule_notification({
            "numero_poliza": policy.numero_poliza,
            "target_group_id": TELEGRAM_GROUP_ID,
            "expediente_num": info["expediente"],
            "origen_destino": info.get("origen_destino") or "",
            "marca_modelo": f"{policy.marca} {policy.submarca} ({policy.anio or ''})",
            "color": policy.color,
            "placas": policy.placas,
            "telefono": policy.telefono,
            "contact_time": info["contact_time"],
            "scheduled_date": fecha,
            "tipo_notificacion": TipoNotificacion.CONTACTO,
        })
        await safe_send(
            app, chat_id,
            f"✅ Alerta programada para: *{day_name(fecha)}, {fecha.strftime('%d/%m/%Y')} a las {info['contact_time']}*\n\n"
            "El servicio ha sido registrado correctamente.",
            thread_id,
            **_markdown(),
        )
        cleanup_all_states(chat_id, thread_id)
        return True
    except Exception as e:
        logger.error(f"Error al procesar selección de día: {e}")
        await safe_send(app, chat_id, "❌ Error al procesar la selección de día.", thread_id)
        return False


async def cancelar_seleccion_dia(app: Client, chat_id: int, numero_poliza: str, thread_id: int | None = None) -> bool:
    cleanup_all_states(chat_id, thread_id)
    await safe_send(app, chat_id, f"❌ Programación de alerta cancelada para la póliza {numero_poliza}.", thread_id)
    return True


async def procesar_mensaje(app: Client, message: Message) -> bool:
    """
    Despacha texto o ubicación al paso pendiente del contexto.

    Returns:
        bool: True si algún paso del flujo consumió el mensaje
    """
    chat_id = message.chat.id
    thread_id = get_thread_id(message)
    key = get_context_key(chat_id, thread_id)
    texto = (message.text or "").strip()

    if awaiting_phone_number.has(key) and texto:
        return await procesar_telefono(app, chat_id, texto, thread_id)
    if awaiting_origen.has(key):
        return await procesar_origen(app, message)
    if awaiting_destino.has(key):
        return await procesar_destino(app, message)
    if awaiting_service_data.has(key) and texto:
        return await procesar_expediente(app, chat_id, texto, thread_id)
    if awaiting_contact_time.has(key) and texto:
        return await procesar_hora_contacto(app, chat_id, texto, thread_id)
    return False


class OcuparPolizaCleanup:
    """Proveedor para StateCleanupService: limpia contextos sin actividad."""

    def cleanup(self, cutoff_ms: int) -> int:
        removed = 0
        for key, ts in last_activity.items():
            if ts >= cutoff_ms:
                continue
            _clear_context(key)
            removed += 1
        return removed
