from datetime import datetime, timedelta

from pyrogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from constants import BUTTON_BACK, BUTTON_CANCEL
from utils import DIAS_SEMANA, MESES, now_local


def main_menu_markup():
    """Menú principal."""
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("📋 Pólizas", callback_data="accion:polizas")],
        [InlineKeyboardButton("🔧 Administración", callback_data="accion:administracion")],
        [InlineKeyboardButton("📊 Reportes", callback_data="accion:reportes")],
        [InlineKeyboardButton("🚗 Base de Autos", callback_data="accion:base_autos")],
    ])


def back_to_menu_markup():
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(BUTTON_BACK, callback_data="accion:volver_menu")]
    ])


def polizas_menu_markup():
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("🔍 Consultar Póliza", callback_data="accion:consultar")],
        [InlineKeyboardButton("💰 Añadir Pago", callback_data="accion:addpayment")],
        [InlineKeyboardButton("🚗 Añadir Servicio", callback_data="accion:addservice")],
        [InlineKeyboardButton("📁 Subir Archivos", callback_data="accion:upload")],
        [InlineKeyboardButton(BUTTON_BACK, callback_data="accion:volver_menu")],
    ])


def administracion_menu_markup():
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("🗑️ Eliminar Póliza", callback_data="accion:delete")],
        [InlineKeyboardButton("♻️ Restaurar Póliza", callback_data="accion:restore")],
        [InlineKeyboardButton("📤 Exportar a Excel", callback_data="accion:exportar")],
        [InlineKeyboardButton("📥 Importar desde Excel", callback_data="accion:importar")],
        [InlineKeyboardButton("🔔 Notificaciones programadas", callback_data="accion:notificaciones")],
        [InlineKeyboardButton(BUTTON_BACK, callback_data="accion:volver_menu")],
    ])


def reportes_menu_markup():
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("💰 Pagos Pendientes (PDF)", callback_data="accion:reportPaymentPDF")],
        [InlineKeyboardButton("🚗 Pólizas a Mandar", callback_data="accion:reportUsed")],
        [InlineKeyboardButton(BUTTON_BACK, callback_data="accion:volver_menu")],
    ])


def base_autos_markup():
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("🚗 Registrar Auto", callback_data="base_autos:registrar")],
        [InlineKeyboardButton("📋 Asegurar Auto", callback_data="base_autos:asegurar")],
        [InlineKeyboardButton(BUTTON_BACK, callback_data="accion:volver_menu")],
    ])


def policy_actions_markup(numero_poliza: str):
    """Acciones de la ficha de una póliza."""
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("🚗 Ocupar Póliza", callback_data=f"ocuparPoliza:{numero_poliza}")],
        [InlineKeyboardButton("➕ Más acciones", callback_data=f"masAcciones:{numero_poliza}")],
        [InlineKeyboardButton(BUTTON_BACK, callback_data="accion:volver_menu")],
    ])


def mas_acciones_markup(numero_poliza: str):
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("💰 Añadir Pago", callback_data=f"addPayment:{numero_poliza}")],
        [InlineKeyboardButton("🚗 Añadir Servicio", callback_data=f"addService:{numero_poliza}")],
        [InlineKeyboardButton("📁 Subir Archivos", callback_data=f"uploadFiles:{numero_poliza}")],
        [InlineKeyboardButton("🗑️ Eliminar Póliza", callback_data=f"deletePolicy:{numero_poliza}")],
        [InlineKeyboardButton("⬅️ Volver a la póliza", callback_data=f"getPoliza:{numero_poliza}")],
    ])


def policy_not_found_markup():
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("🚗 Registrar auto nuevo", callback_data="accion:registrar")],
        [InlineKeyboardButton("📋 Menú de pólizas", callback_data="accion:polizas")],
    ])


def phone_choice_markup(numero_poliza: str):
    return InlineKeyboardMarkup([
        [
            InlineKeyboardButton("🔄 Cambiar teléfono", callback_data=f"changePhone:{numero_poliza}"),
            InlineKeyboardButton("✅ Mantener", callback_data=f"keepPhone:{numero_poliza}"),
        ]
    ])


def service_decision_markup(numero_poliza: str):
    return InlineKeyboardMarkup([
        [
            InlineKeyboardButton("✅ Registrar Servicio", callback_data=f"registrar_servicio_{numero_poliza}"),
            InlineKeyboardButton("❌ No registrar", callback_data=f"no_registrar_{numero_poliza}"),
        ]
    ])


def assignment_markup(numero_poliza: str, numero_registro: int):
    return InlineKeyboardMarkup([
        [
            InlineKeyboardButton("✅ Asignado", callback_data=f"asig_yes_{numero_poliza}_{numero_registro}"),
            InlineKeyboardButton("❌ No asignado", callback_data=f"asig_no_{numero_poliza}_{numero_registro}"),
        ],
        [InlineKeyboardButton("⏰ Hora de contacto manual", callback_data=f"contactoManual:{numero_poliza}:{numero_registro}")],
    ])


def day_selector_markup(numero_poliza: str, today: datetime | None = None):
    """Hoy, Mañana y los siguientes 5 días con nombre."""
    today = today or now_local()
    rows = []
    for offset in range(7):
        day = today + timedelta(days=offset)
        if offset == 0:
            label = "Hoy"
        elif offset == 1:
            label = "Mañana"
        else:
            label = f"{DIAS_SEMANA[day.weekday()]} {day.day} {MESES[day.month - 1][:3]}"
        rows.append([InlineKeyboardButton(label, callback_data=f"selectDay:{offset}:{numero_poliza}")])
    rows.append([InlineKeyboardButton(BUTTON_CANCEL, callback_data=f"cancelSelectDay:{numero_poliza}")])
    return InlineKeyboardMarkup(rows)


def fecha_emision_markup(today: datetime | None = None):
    """Hoy y los 6 días anteriores."""
    today = today or now_local()
    rows = []
    for offset in range(7):
        day = today - timedelta(days=offset)
        label = "Hoy" if offset == 0 else "Ayer" if offset == 1 else f"{DIAS_SEMANA[day.weekday()]} {day.strftime('%d/%m')}"
        rows.append([InlineKeyboardButton(f"📅 {label}", callback_data=f"fecha_emision_{day.strftime('%Y-%m-%d')}")])
    return InlineKeyboardMarkup(rows)


def vehiculo_cancel_markup():
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(BUTTON_CANCEL, callback_data="vehiculo_cancelar")]
    ])


def vehiculo_fotos_markup():
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("✅ Finalizar Registro", callback_data="vehiculo_finalizar")],
        [InlineKeyboardButton(BUTTON_CANCEL, callback_data="vehiculo_cancelar")],
    ])


def asignacion_cancel_markup():
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(BUTTON_CANCEL, callback_data="poliza_cancelar")]
    ])


def vehicle_list_markup(vehicles, page: int, total_pages: int):
    """Un botón por vehículo (asignar_{id}) más navegación."""
    rows = [
        [InlineKeyboardButton(
            f"🚗 {v.marca} {v.submarca} {v.anio} - {v.serie[-6:]}",
            callback_data=f"asignar_{v.id}",
        )]
        for v in vehicles
    ]
    nav = []
    if page > 1:
        nav.append(InlineKeyboardButton("⬅️ Anterior", callback_data=f"vehiculos_pag_{page - 1}"))
    if page < total_pages:
        nav.append(InlineKeyboardButton("Siguiente ➡️", callback_data=f"vehiculos_pag_{page + 1}"))
    if nav:
        rows.append(nav)
    rows.append([InlineKeyboardButton("🏠 Menú Principal", callback_data="accion:start")])
    return InlineKeyboardMarkup(rows)


def restore_policy_markup(numero_poliza: str):
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("♻️ Restaurar", callback_data=f"restorePolicy:{numero_poliza}")]
    ])
