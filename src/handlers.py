import asyncio
import io
import logging
import time
from typing import Any

from pyrogram import Client, enums, filters
from pyrogram.types import CallbackQuery, Message

import excel_import
import ocupar_poliza
import policy_assignment
import vehicle_registration
from auth_filters import admin_filter, allowed_chat_filter, is_admin
from config import user_states
from constants import (
    COMMAND_CANCEL,
    COMMAND_EXPORT,
    COMMAND_HELP,
    COMMAND_IMPORT,
    COMMAND_START,
    ERROR_GENERIC,
    ERROR_NO_PERMISSION,
    HELP_TEXT,
)
from db_handler.policies import (
    add_file_to_policy,
    add_payment,
    add_service,
    get_active_policies,
    get_old_unused_policies,
    get_policy_any_state,
    get_policy_by_number,
    mark_policy_as_deleted,
    restore_policy,
)
from markups import (
    administracion_menu_markup,
    back_to_menu_markup,
    base_autos_markup,
    main_menu_markup,
    mas_acciones_markup,
    policy_actions_markup,
    policy_not_found_markup,
    polizas_menu_markup,
    reportes_menu_markup,
    restore_policy_markup,
)
from models import EstadoPago, EstadoPoliza, Policy
from parser import parse_amount, parse_policy_numbers
from payment_calculator import calcular_polizas_pendientes
from r2_storage import get_r2_storage
from reports import formatear_polizas_a_mandar, generar_excel_polizas, generar_pdf_pagos_pendientes
from state_keys import get_thread_id
from utils import format_date, format_datetime, format_money, now_local, safe_send, thread_kwargs
from validators import validate_archivo_poliza, validate_expediente, validate_fecha

logger = logging.getLogger(__name__)

MARKDOWN = enums.ParseMode.MARKDOWN

# Pasos de los avisos de un solo paso en config.user_states
PASO_CONSULTA = "consulta"
PASO_PAGO_POLIZA = "pago_poliza"
PASO_PAGO_DATOS = "pago_datos"
PASO_SERVICIO_POLIZA = "servicio_poliza"
PASO_SERVICIO_DATOS = "servicio_datos"
PASO_ELIMINAR_POLIZAS = "eliminar_polizas"
PASO_ELIMINAR_MOTIVO = "eliminar_motivo"
PASO_RESTAURAR = "restaurar"
PASO_SUBIR_POLIZA = "subir_poliza"
PASO_SUBIR_ARCHIVOS = "subir_archivos"
PASO_IMPORTAR = "importar"

ACCIONES_ADMIN = {"accion:delete", "accion:restore", "accion:exportar", "accion:importar"}


def set_user_state(user_id: int, step: str, chat_id: int, thread_id: int | None = None, **data: Any) -> None:
    user_states[user_id] = {
        "step": step,
        "chat_id": chat_id,
        "thread_id": thread_id,
        "timestamp": int(time.time() * 1000),
        **data,
    }


def clear_user_state(user_id: int) -> None:
    user_states.pop(user_id, None)


def get_active_user_state(user_id: int, chat_id: int, thread_id: int | None = None) -> dict[str, Any] | None:
    """Estado de un solo paso del usuario, solo si se abrió en este chat y tema."""
    st = user_states.get(user_id)
    if not st or st.get("chat_id") != chat_id or st.get("thread_id") != thread_id:
        return None
    return st


def format_policy_info(policy: Policy) -> str:
    """Ficha de la póliza con resumen de servicios y pagos realizados."""
    servicios_info = "*Servicios:* Sin servicios registrados"
    if policy.servicios:
        ultimo = policy.servicios[-1]
        servicios_info = (
            f"*Servicios:* {len(policy.servicios)}\n"
            f"*Último Servicio:* {format_date(ultimo.fecha_servicio)}\n"
            f"*Origen/Destino:* {ultimo.origen_destino or '(Sin Origen/Destino)'}"
        )

    realizados = [p for p in policy.pagos if p.estado == EstadoPago.REALIZADO]
    pagos_info = "*Pagos:* Sin pagos registrados"
    if realizados:
        pagos_info = f"*Pagos:* {len(realizados)} pago(s), total {format_money(sum(p.monto for p in realizados))}"

    lineas = [
        "📋 *Información de la Póliza*",
        f"*Número:* {policy.numero_poliza}",
        f"*Titular:* {policy.titular}",
        f"📞 *Cel:* {policy.telefono or 'SIN NÚMERO'}",
        "",
        "🚗 *Datos del Vehículo:*",
        f"*Marca:* {policy.marca}",
        f"*Submarca:* {policy.submarca}",
        f"*Año:* {policy.anio or 'N/A'}",
        f"*Color:* {policy.color}",
        f"*Serie:* {policy.serie}",
        f"*Placas:* {policy.placas}",
        "",
        f"*Aseguradora:* {policy.aseguradora}",
        f"*Agente:* {policy.agente_cotizador}",
    ]
    if policy.is_niv:
        lineas.append("⚡ *Tipo:* NIV")
    if policy.estado_poliza:
        lineas.append(f"*Estado:* {policy.estado_poliza}")
    lineas.extend(["", servicios_info, "", pagos_info])
    return "\n".join(lineas)


def parse_service_data(texto: str) -> tuple[bool, str, dict[str, Any] | None]:
    """
    Datos de un servicio manual, uno por línea:
    expediente, origen - destino, costo y fecha opcional (DD/MM/AAAA).
    """
    lineas = [l.strip() for l in texto.split("\n") if l.strip()]
    if len(lineas) < 3:
        return False, (
            "Formato inválido. Ingresa:\n1) Expediente\n2) Origen - Destino\n3) Costo\n4) Fecha (opcional)"
        ), None

    ok, error, expediente = validate_expediente(lineas[0])
    if not ok:
        return False, error.replace("❌ ", ""), None
    costo = parse_amount(lineas[2], allow_decimal_comma=True)
    if costo is None or costo <= 0:
        return False, "Costo inválido. Ingresa un número mayor a 0.", None

    fecha = now_local()
    if len(lineas) > 3:
        ok, error, fecha_manual = validate_fecha(lineas[3])
        if not ok:
            return False, error, None
        fecha = fecha_manual

    return True, "", {
        "numero_expediente": expediente,
        "origen_destino": lineas[1],
        "costo": costo,
        "fecha_servicio": fecha,
    }


def parse_payment_data(texto: str) -> tuple[bool, str, dict[str, Any] | None]:
    """Monto en la primera línea y fecha opcional en la segunda."""
    lineas = [l.strip() for l in texto.split("\n") if l.strip()]
    monto = parse_amount(lineas[0], allow_decimal_comma=True) if lineas else None
    if monto is None or monto <= 0:
        return False, "Monto inválido. Ingresa un número mayor a 0.", None
    fecha = now_local()
    if len(lineas) > 1:
        ok, error, fecha_manual = validate_fecha(lineas[1])
        if not ok:
            return False, error, None
        fecha = fecha_manual
    return True, "", {"monto": monto, "fecha_pago": fecha}


async def send_main_menu(app: Client, chat_id: int, thread_id: int | None = None):
    await safe_send(
        app, chat_id,
        "🤖 **Bot de Pólizas**\n\nSelecciona una opción:",
        thread_id,
        parse_mode=MARKDOWN,
        reply_markup=main_menu_markup(),
    )


async def show_policy_info(app: Client, chat_id: int, numero_poliza: str, thread_id: int | None = None) -> bool:
    policy = get_policy_by_number(numero_poliza)
    if not policy:
        await safe_send(
            app, chat_id,
            "⚠️ **PÓLIZA NO ENCONTRADA**\n\n"
            f"No existe una póliza activa con el número: **{numero_poliza.strip().upper()}**\n\n"
            "¿Qué deseas hacer?",
            thread_id,
            parse_mode=MARKDOWN,
            reply_markup=policy_not_found_markup(),
        )
        return False
    await safe_send(
        app, chat_id, format_policy_info(policy), thread_id,
        parse_mode=MARKDOWN, reply_markup=policy_actions_markup(policy.numero_poliza),
    )
    return True


async def _pedir(app: Client, chat_id: int, thread_id: int | None, texto: str):
    await safe_send(app, chat_id, texto, thread_id, parse_mode=MARKDOWN)


async def start_payment(app: Client, user_id: int, chat_id: int, numero_poliza: str, thread_id: int | None = None):
    set_user_state(user_id, PASO_PAGO_DATOS, chat_id, thread_id, numero_poliza=numero_poliza)
    await _pedir(
        app, chat_id, thread_id,
        f"💰 *AGREGAR PAGO*\n\nPóliza: *{numero_poliza}*\n\n"
        "Ingresa el monto del pago.\n_Opcional: en la segunda línea la fecha (DD/MM/AAAA)._",
    )


async def start_service(app: Client, user_id: int, chat_id: int, numero_poliza: str, thread_id: int | None = None):
    set_user_state(user_id, PASO_SERVICIO_DATOS, chat_id, thread_id, numero_poliza=numero_poliza)
    await _pedir(
        app, chat_id, thread_id,
        f"🔧 *AGREGAR SERVICIO*\n\nPóliza: *{numero_poliza}*\n\n"
        "Ingresa los datos del servicio en el siguiente formato:\n\n"
        "`Expediente`\n`Origen - Destino`\n`Costo`\n`Fecha (DD/MM/YYYY)` _(opcional)_",
    )


async def start_upload(app: Client, user_id: int, chat_id: int, numero_poliza: str, thread_id: int | None = None):
    set_user_state(user_id, PASO_SUBIR_ARCHIVOS, chat_id, thread_id, numero_poliza=numero_poliza, subidos=0)
    await _pedir(
        app, chat_id, thread_id,
        f"📁 *SUBIR ARCHIVOS*\n\nPóliza: *{numero_poliza}*\n\n"
        "Envía las fotos o PDFs que deseas agregar a esta póliza.\nUsa /cancelar al terminar.",
    )


async def start_delete(app: Client, user_id: int, chat_id: int, numeros: list[str], thread_id: int | None = None):
    set_user_state(user_id, PASO_ELIMINAR_MOTIVO, chat_id, thread_id, numeros=numeros)
    await _pedir(
        app, chat_id, thread_id,
        f"🗑️ Vas a eliminar {len(numeros)} póliza(s): {', '.join(numeros)}\n\n"
        "Escribe el motivo de la baja (o escribe \"ninguno\" si no hay motivo):",
    )


async def handle_payment_data(app: Client, user_id: int, state: dict[str, Any], texto: str):
    chat_id, thread_id = state["chat_id"], state["thread_id"]
    ok, error, datos = parse_payment_data(texto)
    if not ok:
        await safe_send(app, chat_id, f"❌ {error}", thread_id)
        return
    numero = state["numero_poliza"]
    policy = add_payment(numero, datos["monto"], datos["fecha_pago"])
    clear_user_state(user_id)
    if not policy:
        await safe_send(app, chat_id, f"❌ No se encontró la póliza {numero}.", thread_id)
        return
    await safe_send(
        app, chat_id,
        f"✅ Pago de {format_money(datos['monto'])} registrado en la póliza *{numero}* "
        f"({format_date(datos['fecha_pago'])}).",
        thread_id, parse_mode=MARKDOWN, reply_markup=back_to_menu_markup(),
    )


async def handle_service_data(app: Client, user_id: int, state: dict[str, Any], texto: str):
    chat_id, thread_id = state["chat_id"], state["thread_id"]
    ok, error, datos = parse_service_data(texto)
    if not ok:
        await safe_send(app, chat_id, f"❌ {error}", thread_id)
        return
    numero = state["numero_poliza"]
    policy = add_service(numero, **datos)
    clear_user_state(user_id)
    if not policy:
        await safe_send(app, chat_id, f"❌ No se encontró la póliza {numero}.", thread_id)
        return
    servicio = policy.servicios[-1]
    await safe_send(
        app, chat_id,
        f"✅ Se agregó el servicio #{servicio.numero_servicio} a la póliza *{numero}*.\n\n"
        f"Costo: {format_money(servicio.costo)}\n"
        f"Fecha: {format_date(servicio.fecha_servicio)}\n"
        f"Expediente: {servicio.numero_expediente}\n"
        f"Origen y Destino: {servicio.origen_destino}",
        thread_id, parse_mode=MARKDOWN, reply_markup=back_to_menu_markup(),
    )


async def handle_delete_numbers(app: Client, user_id: int, state: dict[str, Any], texto: str):
    chat_id, thread_id = state["chat_id"], state["thread_id"]
    numeros = parse_policy_numbers(texto)
    if not numeros:
        await safe_send(app, chat_id, "❌ No se detectaron números de póliza válidos.", thread_id)
        return
    encontradas = [n for n in numeros if get_policy_by_number(n)]
    no_encontradas = [n for n in numeros if n not in encontradas]
    if no_encontradas:
        await safe_send(app, chat_id, f"❌ Pólizas no encontradas: {', '.join(no_encontradas)}", thread_id)
    if not encontradas:
        clear_user_state(user_id)
        return
    await start_delete(app, user_id, chat_id, encontradas, thread_id)


async def handle_delete_reason(app: Client, user_id: int, state: dict[str, Any], texto: str):
    chat_id, thread_id = state["chat_id"], state["thread_id"]
    motivo = "" if texto.lower() == "ninguno" else texto
    eliminadas = [n for n in state["numeros"] if mark_policy_as_deleted(n, motivo)]
    clear_user_state(user_id)
    await safe_send(
        app, chat_id,
        f"✅ {len(eliminadas)} póliza(s) marcada(s) como eliminada(s).",
        thread_id, reply_markup=back_to_menu_markup(),
    )
    logger.info(f"Pólizas eliminadas por {user_id}: {eliminadas} (motivo: {motivo or 'sin motivo'})")


async def handle_restore(app: Client, user_id: int, chat_id: int, numero: str, thread_id: int | None = None):
    clear_user_state(user_id)
    numero = numero.strip().upper()
    policy = get_policy_any_state(numero)
    if not policy:
        await safe_send(app, chat_id, f"❌ No se encontró la póliza {numero}.", thread_id)
        return
    if policy.estado != EstadoPoliza.ELIMINADO:
        await safe_send(app, chat_id, f"ℹ️ La póliza {numero} no está eliminada.", thread_id)
        return
    restored = restore_policy(numero)
    if restored:
        await safe_send(
            app, chat_id, f"♻️ Póliza *{numero}* restaurada.", thread_id,
            parse_mode=MARKDOWN, reply_markup=back_to_menu_markup(),
        )
    else:
        await safe_send(app, chat_id, f"❌ No se pudo restaurar la póliza {numero}.", thread_id)


async def handle_restore_prompt(app: Client, user_id: int, chat_id: int, numero: str, thread_id: int | None = None):
    """Muestra la póliza eliminada con el botón de restaurar."""
    clear_user_state(user_id)
    numero = numero.strip().upper()
    policy = get_policy_any_state(numero)
    if not policy or policy.estado != EstadoPoliza.ELIMINADO:
        await safe_send(app, chat_id, f"❌ No hay una póliza eliminada con el número {numero}.", thread_id)
        return
    await safe_send(
        app, chat_id,
        f"🗑️ Póliza *{numero}* eliminada el {format_date(policy.fecha_eliminacion)}\n"
        f"Motivo: {policy.motivo_eliminacion or 'sin motivo'}",
        thread_id, parse_mode=MARKDOWN, reply_markup=restore_policy_markup(numero),
    )


async def handle_policy_file(app: Client, message: Message, state: dict[str, Any]) -> bool:
    """Sube una foto o PDF a R2 y lo agrega a la póliza en espera de archivos."""
    chat_id, thread_id = state["chat_id"], state["thread_id"]
    numero = state["numero_poliza"]
    ok, error, info = validate_archivo_poliza(message)
    if not ok:
        await safe_send(app, chat_id, f"❌ {error}", thread_id)
        return True

    try:
        buffer = await app.download_media(message, in_memory=True)
        data = bytes(buffer.getbuffer())
        storage = get_r2_storage()
        if info["type"] == "pdf":
            subido = await asyncio.to_thread(storage.upload_policy_pdf, data, numero, info["file_name"])
            kind = "pdfs"
        else:
            subido = await asyncio.to_thread(storage.upload_policy_photo, data, numero, info["file_name"])
            kind = "fotos"
        if not add_file_to_policy(numero, kind, subido):
            await safe_send(app, chat_id, f"❌ No se encontró la póliza {numero}.", thread_id)
            return True
    except Exception as e:
        logger.error(f"Error subiendo archivo a la póliza {numero}: {e}")
        await safe_send(app, chat_id, "❌ Error al subir el archivo. Intenta nuevamente.", thread_id)
        return True

    state["subidos"] = state.get("subidos", 0) + 1
    await safe_send(
        app, chat_id,
        f"✅ {'PDF' if kind == 'pdfs' else 'Foto'} guardado en la póliza {numero} ({state['subidos']} en total).",
        thread_id,
    )
    return True


async def handle_report_payments_pdf(app: Client, chat_id: int, thread_id: int | None = None):
    await safe_send(app, chat_id, "⏳ Generando reporte de pagos pendientes...", thread_id)
    now = now_local()
    policies = get_active_policies()
    pendientes = calcular_polizas_pendientes(policies, now)
    pdf = await asyncio.to_thread(generar_pdf_pagos_pendientes, pendientes, now)
    document = io.BytesIO(pdf)
    document.name = f"pagos_pendientes_{now.strftime('%Y%m%d_%H%M')}.pdf"
    await app.send_document(
        chat_id, document,
        caption=f"📄 Pagos pendientes: {len(pendientes)} póliza(s)",
        **thread_kwargs(thread_id),
    )


async def handle_report_used(app: Client, chat_id: int, thread_id: int | None = None):
    await safe_send(app, chat_id, "⏳ Buscando pólizas a mandar...", thread_id)
    resultados = await asyncio.to_thread(get_old_unused_policies)
    for texto in formatear_polizas_a_mandar(resultados):
        await safe_send(app, chat_id, texto, thread_id, parse_mode=MARKDOWN)


async def handle_export(app: Client, chat_id: int, thread_id: int | None = None):
    policies = get_active_policies()
    if not policies:
        await safe_send(app, chat_id, "ℹ️ No hay pólizas activas para exportar.", thread_id)
        return
    data = await asyncio.to_thread(generar_excel_polizas, policies)
    document = io.BytesIO(data)
    document.name = f"polizas_{now_local().strftime('%Y%m%d_%H%M')}.xlsx"
    await app.send_document(
        chat_id, document,
        caption=f"📤 {len(policies)} póliza(s) exportada(s)",
        **thread_kwargs(thread_id),
    )


async def start_import(app: Client, user_id: int, chat_id: int, thread_id: int | None = None):
    set_user_state(user_id, PASO_IMPORTAR, chat_id, thread_id)
    await _pedir(
        app, chat_id, thread_id,
        "📥 *IMPORTAR PÓLIZAS*\n\n"
        "Envía un archivo Excel (.xlsx) con los encabezados en la primera fila.\n"
        f"Columnas obligatorias: {', '.join(excel_import.REQUIRED_HEADERS)}",
    )


async def handle_notifications_list(app: Client, chat_id: int, thread_id: int | None = None):
    from notification_manager import get_notification_manager

    pendientes = await get_notification_manager().get_pending_notifications()
    if not pendientes:
        await safe_send(app, chat_id, "🔔 No hay notificaciones programadas.", thread_id)
        return
    lineas = ["🔔 **Notificaciones programadas**", ""]
    for n in sorted(pendientes, key=lambda n: n.scheduled_date):
        lineas.append(
            f"• {format_datetime(n.scheduled_date)} | {n.tipo_notificacion.value} | "
            f"{n.numero_poliza} | Exp. {n.expediente_num} | {n.status.value}"
        )
    await safe_send(app, chat_id, "\n".join(lineas), thread_id, parse_mode=MARKDOWN)


async def handle_cancel(app: Client, user_id: int, chat_id: int, thread_id: int | None = None):
    cancelados = [
        vehicle_registration.cancelar_registro(user_id, chat_id, thread_id),
        policy_assignment.cancelar_asignacion(user_id, chat_id, thread_id),
        ocupar_poliza.tiene_flujo_activo(chat_id, thread_id),
        user_states.pop(user_id, None) is not None,
    ]
    ocupar_poliza.cleanup_all_states(chat_id, thread_id)
    texto = "❌ Proceso cancelado." if any(cancelados) else "ℹ️ No hay ningún proceso activo."
    await safe_send(app, chat_id, texto, thread_id, reply_markup=main_menu_markup())


async def handle_authorized_text(app: Client, message: Message):
    """
    Texto libre: primero los flujos de varios pasos, luego los avisos de un
    solo paso guardados en user_states.
    """
    user_id = message.from_user.id
    chat_id = message.chat.id
    thread_id = get_thread_id(message)
    texto = message.text.strip()

    if await vehicle_registration.procesar_mensaje(app, message, user_id):
        return
    if await policy_assignment.procesar_mensaje(app, message, user_id):
        return
    if await ocupar_poliza.procesar_mensaje(app, message):
        return

    st = get_active_user_state(user_id, chat_id, thread_id)
    if not st:
        return
    step = st.get("step")
    logger.info(f"Usuario {user_id} en paso '{step}' envió '{texto[:50]}'")

    if step == PASO_CONSULTA:
        clear_user_state(user_id)
        await show_policy_info(app, chat_id, texto, thread_id)
    elif step == PASO_PAGO_POLIZA:
        numero = texto.upper()
        if get_policy_by_number(numero):
            await start_payment(app, user_id, chat_id, numero, thread_id)
        else:
            await safe_send(app, chat_id, f"❌ No se encontró la póliza {numero}. Intenta de nuevo.", thread_id)
    elif step == PASO_PAGO_DATOS:
        await handle_payment_data(app, user_id, st, texto)
    elif step == PASO_SERVICIO_POLIZA:
        numero = texto.upper()
        if get_policy_by_number(numero):
            await start_service(app, user_id, chat_id, numero, thread_id)
        else:
            await safe_send(app, chat_id, f"❌ No se encontró la póliza {numero}. Intenta de nuevo.", thread_id)
    elif step == PASO_SERVICIO_DATOS:
        await handle_service_data(app, user_id, st, texto)
    elif step == PASO_ELIMINAR_POLIZAS:
        await handle_delete_numbers(app, user_id, st, texto)
    elif step == PASO_ELIMINAR_MOTIVO:
        await handle_delete_reason(app, user_id, st, texto)
    elif step == PASO_RESTAURAR:
        await handle_restore_prompt(app, user_id, chat_id, texto, thread_id)
    elif step == PASO_SUBIR_POLIZA:
        numero = texto.upper()
        if get_policy_by_number(numero):
            await start_upload(app, user_id, chat_id, numero, thread_id)
        else:
            await safe_send(app, chat_id, f"❌ No se encontró la póliza {numero}. Intenta de nuevo.", thread_id)
    elif step == PASO_SUBIR_ARCHIVOS:
        await safe_send(app, chat_id, "📎 Envía una foto o un PDF, o usa /cancelar para terminar.", thread_id)


async def handle_media(app: Client, message: Message):
    """Fotos y documentos: flujos activos, subida a póliza o importación Excel."""
    user_id = message.from_user.id
    chat_id = message.chat.id

    if await vehicle_registration.procesar_mensaje(app, message, user_id):
        return
    if await policy_assignment.procesar_mensaje(app, message, user_id):
        return

    st = get_active_user_state(user_id, chat_id, get_thread_id(message))
    if not st:
        return

    if st["step"] == PASO_SUBIR_ARCHIVOS:
        await handle_policy_file(app, message, st)
    elif st["step"] == PASO_IMPORTAR and message.document:
        clear_user_state(user_id)
        await excel_import.procesar_excel(app, message)


async def _ask(app: Client, user_id: int, chat_id: int, thread_id: int | None, step: str, texto: str):
    set_user_state(user_id, step, chat_id, thread_id)
    await _pedir(app, chat_id, thread_id, texto)


async def _edit_menu(callback: CallbackQuery, texto: str, markup):
    try:
        await callback.message.edit_text(texto, parse_mode=MARKDOWN, reply_markup=markup)
    except Exception as e:
        # Mensajes viejos o sin cambios no se pueden editar
        logger.debug(f"No se pudo editar el menú: {e}")
        await callback.message.reply_text(texto, parse_mode=MARKDOWN, reply_markup=markup)


async def handle_accion(app: Client, callback: CallbackQuery, accion: str):
    chat_id = callback.message.chat.id
    thread_id = get_thread_id(callback.message)
    user_id = callback.from_user.id

    if accion in ("start", "volver_menu"):
        await _edit_menu(callback, "🤖 **Bot de Pólizas**\n\nSelecciona una opción:", main_menu_markup())
    elif accion == "polizas":
        await _edit_menu(callback, "📋 **PÓLIZAS**\n\nSelecciona una opción:", polizas_menu_markup())
    elif accion == "consultar":
        await _ask(app, user_id, chat_id, thread_id, PASO_CONSULTA, "🔍 Ingresa el número de póliza a consultar:")
    elif accion == "administracion":
        await _edit_menu(callback, "🔧 **ADMINISTRACIÓN**\n\nSelecciona una opción:", administracion_menu_markup())
    elif accion == "reportes":
        await _edit_menu(callback, "📊 **REPORTES Y ESTADÍSTICAS**\n\nSelecciona el tipo de reporte:", reportes_menu_markup())
    elif accion == "base_autos":
        await _edit_menu(callback, "🚗 **BASE DE AUTOS**\n\nSelecciona una opción:", base_autos_markup())
    elif accion == "registrar":
        await vehicle_registration.iniciar_registro(app, chat_id, user_id, thread_id)
    elif accion == "addpayment":
        await _ask(app, user_id, chat_id, thread_id, PASO_PAGO_POLIZA, "💰 Ingresa el número de póliza para el pago:")
    elif accion == "addservice":
        await _ask(app, user_id, chat_id, thread_id, PASO_SERVICIO_POLIZA, "🚗 Ingresa el número de póliza para el servicio:")
    elif accion == "upload":
        await _ask(app, user_id, chat_id, thread_id, PASO_SUBIR_POLIZA, "📁 Ingresa el número de póliza para subir archivos:")
    elif accion == "delete":
        await _ask(
            app, user_id, chat_id, thread_id, PASO_ELIMINAR_POLIZAS,
            "🗑️ Ingresa el número (o números separados por coma o salto de línea) de las pólizas a eliminar:",
        )
    elif accion == "restore":
        await _ask(app, user_id, chat_id, thread_id, PASO_RESTAURAR, "♻️ Ingresa el número de la póliza a restaurar:")
    elif accion == "exportar":
        await handle_export(app, chat_id, thread_id)
    elif accion == "importar":
        await start_import(app, user_id, chat_id, thread_id)
    elif accion == "notificaciones":
        await handle_notifications_list(app, chat_id, thread_id)
    elif accion == "reportPaymentPDF":
        await handle_report_payments_pdf(app, chat_id, thread_id)
    elif accion == "reportUsed":
        await handle_report_used(app, chat_id, thread_id)
    else:
        logger.warning(f"Acción desconocida: {accion}")


async def handle_callback(app: Client, callback: CallbackQuery):
    data = callback.data
    chat_id = callback.message.chat.id
    thread_id = get_thread_id(callback.message)
    user_id = callback.from_user.id

    if data in ACCIONES_ADMIN or data.startswith(("deletePolicy:", "restorePolicy:")):
        if not is_admin(user_id):
            await callback.answer(ERROR_NO_PERMISSION, show_alert=True)
            return
    await callback.answer()

    if data.startswith("accion:"):
        await handle_accion(app, callback, data.split(":", 1)[1])

    # Base de autos
    elif data == "base_autos:registrar":
        await vehicle_registration.iniciar_registro(app, chat_id, user_id, thread_id)
    elif data == "base_autos:asegurar":
        await policy_assignment.mostrar_vehiculos_disponibles(app, chat_id, 1, thread_id)
    elif data == "vehiculo_finalizar":
        await vehicle_registration.finalizar_registro(app, chat_id, user_id, thread_id)
    elif data == "vehiculo_cancelar":
        vehicle_registration.cancelar_registro(user_id, chat_id, thread_id)
        await safe_send(app, chat_id, "❌ Registro de vehículo cancelado.", thread_id, reply_markup=main_menu_markup())
    elif data.startswith("vehiculos_pag_"):
        await policy_assignment.mostrar_vehiculos_disponibles(app, chat_id, int(data.rsplit("_", 1)[1]), thread_id)
    elif data.startswith("asignar_"):
        await policy_assignment.iniciar_asignacion(app, chat_id, user_id, int(data.split("_", 1)[1]), thread_id)
    elif data.startswith("fecha_emision_"):
        await policy_assignment.seleccionar_fecha_emision(app, chat_id, user_id, data[len("fecha_emision_"):], thread_id)
    elif data == "poliza_cancelar":
        policy_assignment.cancelar_asignacion(user_id, chat_id, thread_id)
        await safe_send(app, chat_id, "❌ Asignación de póliza cancelada.", thread_id, reply_markup=main_menu_markup())

    # Ficha de póliza
    elif data.startswith("getPoliza:"):
        await show_policy_info(app, chat_id, data.split(":", 1)[1], thread_id)
    elif data.startswith("masAcciones:"):
        numero = data.split(":", 1)[1]
        await _edit_menu(callback, f"⚙️ **Más acciones**\n\nPóliza: *{numero}*", mas_acciones_markup(numero))
    elif data.startswith("addPayment:"):
        await start_payment(app, user_id, chat_id, data.split(":", 1)[1], thread_id)
    elif data.startswith("addService:"):
        await start_service(app, user_id, chat_id, data.split(":", 1)[1], thread_id)
    elif data.startswith("uploadFiles:"):
        await start_upload(app, user_id, chat_id, data.split(":", 1)[1], thread_id)
    elif data.startswith("deletePolicy:"):
        await start_delete(app, user_id, chat_id, [data.split(":", 1)[1]], thread_id)
    elif data.startswith("restorePolicy:"):
        await handle_restore(app, user_id, chat_id, data.split(":", 1)[1], thread_id)

    # Ocupar póliza
    elif data.startswith("ocuparPoliza:"):
        await ocupar_poliza.iniciar_ocupar(app, chat_id, data.split(":", 1)[1], thread_id)
    elif data.startswith("keepPhone:"):
        await ocupar_poliza.keep_phone(app, chat_id, data.split(":", 1)[1], thread_id)
    elif data.startswith("changePhone:"):
        await ocupar_poliza.change_phone(app, chat_id, data.split(":", 1)[1], thread_id)
    elif data.startswith("registrar_servicio_"):
        await ocupar_poliza.registrar_servicio(app, chat_id, data[len("registrar_servicio_"):], thread_id)
    elif data.startswith("no_registrar_"):
        await ocupar_poliza.no_registrar(app, chat_id, data[len("no_registrar_"):], thread_id)
    elif data.startswith("asig_yes_"):
        numero, registro = data[len("asig_yes_"):].rsplit("_", 1)
        await ocupar_poliza.asignar_registro(app, chat_id, numero, int(registro), thread_id)
    elif data.startswith("asig_no_"):
        numero, registro = data[len("asig_no_"):].rsplit("_", 1)
        await ocupar_poliza.no_asignar_registro(app, chat_id, numero, int(registro), thread_id)
    elif data.startswith("contactoManual:"):
        _, numero, registro = data.rsplit(":", 2)
        await ocupar_poliza.iniciar_contacto_manual(app, chat_id, numero, int(registro), thread_id)
    elif data.startswith("selectDay:"):
        _, offset, numero = data.split(":", 2)
        await ocupar_poliza.seleccionar_dia(app, chat_id, int(offset), numero, thread_id)
    elif data.startswith("cancelSelectDay:"):
        await ocupar_poliza.cancelar_seleccion_dia(app, chat_id, data.split(":", 1)[1], thread_id)
    else:
        logger.warning(f"Callback no reconocido: {data}")


def register_handlers(app: Client):

    @app.on_message(filters.command(COMMAND_START) & allowed_chat_filter)  # type: ignore[misc,reportUntypedFunctionDecorator]
    async def cmd_start(client: Client, message: Message):
        clear_user_state(message.from_user.id)
        await send_main_menu(client, message.chat.id, get_thread_id(message))

    @app.on_message(filters.command(COMMAND_HELP) & allowed_chat_filter)  # type: ignore[misc,reportUntypedFunctionDecorator]
    async def cmd_help(client: Client, message: Message):
        await safe_send(client, message.chat.id, HELP_TEXT, get_thread_id(message), parse_mode=MARKDOWN)

    @app.on_message(filters.command(COMMAND_CANCEL) & allowed_chat_filter)  # type: ignore[misc,reportUntypedFunctionDecorator]
    async def cmd_cancel(client: Client, message: Message):
        await handle_cancel(client, message.from_user.id, message.chat.id, get_thread_id(message))

    @app.on_message(filters.command(COMMAND_EXPORT) & allowed_chat_filter & admin_filter)  # type: ignore[misc,reportUntypedFunctionDecorator]
    async def cmd_export(client: Client, message: Message):
        try:
            await handle_export(client, message.chat.id, get_thread_id(message))
        except Exception as e:
            logger.error(f"Error exportando pólizas: {e}")
            await safe_send(client, message.chat.id, "❌ Error al exportar las pólizas.", get_thread_id(message))

    @app.on_message(filters.command(COMMAND_IMPORT) & allowed_chat_filter & admin_filter)  # type: ignore[misc,reportUntypedFunctionDecorator]
    async def cmd_import(client: Client, message: Message):
        await start_import(client, message.from_user.id, message.chat.id, get_thread_id(message))

    @app.on_message(filters.text & ~filters.regex(r"^/") & allowed_chat_filter)  # type: ignore[misc,reportUntypedFunctionDecorator]
    async def handle_text(client: Client, message: Message):
        if not message.from_user:
            return
        try:
            await handle_authorized_text(client, message)
        except Exception as e:
            logger.error(f"Error procesando texto en chat {message.chat.id}: {e}", exc_info=True)
            clear_user_state(message.from_user.id)
            await safe_send(client, message.chat.id, ERROR_GENERIC, get_thread_id(message))

    @app.on_message((filters.photo | filters.document) & allowed_chat_filter)  # type: ignore[misc,reportUntypedFunctionDecorator]
    async def handle_media_msg(client: Client, message: Message):
        if not message.from_user:
            return
        try:
            await handle_media(client, message)
        except Exception as e:
            logger.error(f"Error procesando archivo en chat {message.chat.id}: {e}", exc_info=True)
            await safe_send(client, message.chat.id, ERROR_GENERIC, get_thread_id(message))

    @app.on_message(filters.location & allowed_chat_filter)  # type: ignore[misc,reportUntypedFunctionDecorator]
    async def handle_location(client: Client, message: Message):
        try:
            await ocupar_poliza.procesar_mensaje(client, message)
        except Exception as e:
            logger.error(f"Error procesando ubicación en chat {message.chat.id}: {e}", exc_info=True)
            await safe_send(client, message.chat.id, ERROR_GENERIC, get_thread_id(message))

    @app.on_callback_query(allowed_chat_filter)  # type: ignore[misc,reportUntypedFunctionDecorator]
    async def callback_query_handler(client: Client, callback: CallbackQuery):
        try:
            await handle_callback(client, callback)
        except Exception as e:
            logger.error(f"Error en callback '{callback.data}': {e}", exc_info=True)
            await safe_send(client, callback.message.chat.id, ERROR_GENERIC, get_thread_id(callback.message))
