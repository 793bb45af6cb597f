"""
Constantes de interfaz del bot de pólizas.
"""

# Textos de botones
BUTTON_BACK = "⬅️ Volver al menú"
BUTTON_CANCEL = "❌ Cancelar"

# Mensajes de error genéricos
ERROR_GENERIC = "❌ Error al procesar la solicitud. Intenta de nuevo."
ERROR_POLICY_NOT_FOUND = "❌ No se encontró la póliza"
ERROR_NO_PERMISSION = "⛔ No tienes permiso para usar esta función."

# Comandos
COMMAND_START = "start"
COMMAND_HELP = "help"
COMMAND_CANCEL = "cancelar"
COMMAND_EXPORT = "exportar"
COMMAND_IMPORT = "importar"

# Costos de servicio: costo = km * COSTO_POR_KM + COSTO_BASE
COSTO_POR_KM = 20
COSTO_BASE_SERVICIO = 650

# Paginación de la lista de vehículos sin póliza
VEHICULOS_POR_PAGINA = 10

# Fotos de vehículo que acompañan la notificación de contacto
MAX_FOTOS_NOTIFICACION = 2

# Valores por defecto de vehículos creados desde el bot
CREADO_POR_SISTEMA = "SISTEMA"
CREADO_VIA_BOT = "TELEGRAM_BOT"
CREADO_VIA_EXCEL = "EXCEL_IMPORT"

MOTIVO_NIV_UTILIZADO = "NIV utilizado - Eliminación automática"

HELP_TEXT = (
    "🤖 **Bot de Pólizas**\n\n"
    "/start - Menú principal\n"
    "/cancelar - Cancela cualquier proceso en curso\n"
    "/exportar - Exporta las pólizas activas a Excel\n"
    "/importar - Instrucciones para importar pólizas desde Excel\n"
    "/help - Esta ayuda"
)
