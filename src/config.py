import os
import sys
import logging
from dotenv import load_dotenv

logging.basicConfig(level=logging.INFO, format='[%(asctime)s] %(levelname)s: %(message)s')

# Primero .env y, en pruebas, .env.test encima
_ = load_dotenv(override=True)
if 'pytest' in sys.modules or os.getenv('IS_TESTING', '').lower() == 'true' or os.getenv('RUN_MODE', '').upper() == 'TEST':
    _ = load_dotenv('.env.test', override=True)


def is_testing_environment() -> bool:
    """
    Detecta si se está ejecutando en un entorno de pruebas.
    Usa varios métodos de detección en orden de prioridad.
    """
    # Método 1: ejecución bajo pytest
    if os.getenv("PYTEST_CURRENT_TEST") is not None:
        return True

    # Método 2: módulo pytest cargado
    if "pytest" in sys.modules:
        return True

    # Método 3: bandera IS_TESTING
    if os.getenv("IS_TESTING", "false").lower() == "true":
        return True

    # Método 4: RUN_MODE
    if os.getenv("RUN_MODE", "").upper() == "TEST":
        return True

    return False


IS_TESTING = is_testing_environment()
RUN_MODE = os.getenv("RUN_MODE")


def get_api_id() -> str | None:
    """Obtiene API_ID con valor de respaldo en pruebas."""
    api_id = os.getenv("API_ID")
    if not api_id and IS_TESTING:
        return "12345"
    return api_id


def get_api_hash() -> str | None:
    """Obtiene API_HASH con valor de respaldo en pruebas."""
    api_hash = os.getenv("API_HASH")
    if not api_hash and IS_TESTING:
        return "test_api_hash"
    return api_hash


def get_telegram_bot_token() -> str | None:
    """Token del bot según el entorno."""
    if IS_TESTING or RUN_MODE == "TEST":
        return os.getenv("TELEGRAM_BOT_TOKEN_TEST", os.getenv("TELEGRAM_BOT_TOKEN", "test_token"))
    else:
        return os.getenv("TELEGRAM_BOT_TOKEN")


def get_session_name() -> str | None:
    """Nombre de la sesión de pyrogram según el entorno."""
    if IS_TESTING or RUN_MODE == "TEST":
        return os.getenv("SESSION_BOT_NAME_TEST", os.getenv("SESSION_BOT_NAME", "test_session"))
    else:
        return os.getenv("SESSION_BOT_NAME", "polizas_bot")


def get_db_config() -> dict[str, str | None]:
    """Configuración de PostgreSQL según el entorno."""
    if IS_TESTING or RUN_MODE == "TEST":
        return {
            "dbname": os.getenv("TEST_DB_NAME", "polizas_test"),
            "user": os.getenv("TEST_DB_USER", "test_user"),
            "password": os.getenv("TEST_DB_PASSWORD", "test_password"),
            "host": os.getenv("TEST_DB_HOST", "localhost"),
            "port": os.getenv("TEST_DB_PORT", "5432"),
        }
    else:
        return {
            "dbname": os.getenv("DB_NAME"),
            "user": os.getenv("DB_USER"),
            "password": os.getenv("DB_PASSWORD"),
            "host": os.getenv("DB_HOST"),
            "port": os.getenv("DB_PORT"),
        }


def _parse_id_list(raw: str | None) -> set[int]:
    ids: set[int] = set()
    for part in (raw or "").split(","):
        part = part.strip()
        if part.lstrip("-").isdigit():
            ids.add(int(part))
    return ids


API_ID = get_api_id()
API_HASH = get_api_hash()
TELEGRAM_BOT_TOKEN = get_telegram_bot_token()
SESSION_NAME = get_session_name()
SESSION_DIR = os.getenv("SESSION_DIR", "/app/telegram_sessions")

DB_CONFIG = get_db_config()

# Grupo donde se publican leyendas y notificaciones de servicio
TELEGRAM_GROUP_ID = int(os.getenv("TELEGRAM_GROUP_ID", "-1002212807945"))

# Acceso: listas vacías significan "sin restricción"
ALLOWED_CHAT_IDS = _parse_id_list(os.getenv("ALLOWED_CHAT_IDS"))
ADMIN_USER_IDS = _parse_id_list(os.getenv("ADMIN_USER_IDS"))

# HERE Maps
HERE_API_KEY = os.getenv("HERE_API_KEY", "" if IS_TESTING else None)
HERE_TIMEOUT_SECONDS = float(os.getenv("HERE_TIMEOUT_SECONDS", "10"))

# Cloudflare R2 (API S3)
CLOUDFLARE_R2_ENDPOINT = os.getenv("CLOUDFLARE_R2_ENDPOINT", "https://test.r2.cloudflarestorage.com" if IS_TESTING else None)
CLOUDFLARE_R2_ACCESS_KEY = os.getenv("CLOUDFLARE_R2_ACCESS_KEY", "test_access" if IS_TESTING else None)
CLOUDFLARE_R2_SECRET_KEY = os.getenv("CLOUDFLARE_R2_SECRET_KEY", "test_secret" if IS_TESTING else None)
CLOUDFLARE_R2_BUCKET = os.getenv("CLOUDFLARE_R2_BUCKET", "test-bucket" if IS_TESTING else None)
CLOUDFLARE_R2_PUBLIC_URL = os.getenv("CLOUDFLARE_R2_PUBLIC_URL")
R2_HEALTH_CHECK_INTERVAL = int(os.getenv("R2_HEALTH_CHECK_INTERVAL", "60"))
R2_MAX_RETRIES = int(os.getenv("R2_MAX_RETRIES", "3"))
R2_RETRY_BACKOFF = float(os.getenv("R2_RETRY_BACKOFF", "2.0"))
R2_SIGNED_URL_EXPIRES = int(os.getenv("R2_SIGNED_URL_EXPIRES", "3600"))

# Estados de conversación
SESSION_TTL_MS = int(os.getenv("SESSION_TTL_MS", "3600000"))  # 1 hora
STATE_CLEANUP_INTERVAL_MS = int(os.getenv("STATE_CLEANUP_INTERVAL_MS", "900000"))  # 15 minutos

TIMEZONE = os.getenv("TIMEZONE", "America/Mexico_City")

# Importación Excel
EXCEL_BATCH_SIZE = int(os.getenv("EXCEL_BATCH_SIZE", "50"))
MAX_IMPORT_FILE_SIZE = int(os.getenv("MAX_IMPORT_FILE_SIZE", str(20 * 1024 * 1024)))

# Estados simples de un solo paso (pago, servicio, eliminación, consulta...)
user_states: dict[int, dict] = {}


if not IS_TESTING:
    # En producción las credenciales de Telegram son obligatorias
    missing_keys = []
    if not TELEGRAM_BOT_TOKEN: missing_keys.append("TELEGRAM_BOT_TOKEN")
    if not API_ID: missing_keys.append("API_ID")
    if not API_HASH: missing_keys.append("API_HASH")

    if missing_keys:
        raise ValueError(f"Missing required API keys in production: {', '.join(missing_keys)}")
else:
    logging.info("Entorno de pruebas detectado: usando valores de respaldo de configuración")
