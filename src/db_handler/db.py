import logging
import psycopg2  # pyright: ignore[reportMissingModuleSource]
from functools import wraps
from typing import Any, Callable, TypeVar

from config import DB_CONFIG

# Type variable for generic function decoration
F = TypeVar('F', bound=Callable[..., Any])


def db_transaction(commit: bool = True):
    """
    Decorador que ejecuta la función dentro de una conexión a la base de datos
    y le inyecta el cursor como primer argumento.

    :param commit: Si es True (por defecto) se hace conn.commit() al terminar.
                   Ante una excepción la transacción se revierte.
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            conn = get_db_connection()
            try:
                with conn.cursor() as cursor:
                    result = func(cursor, *args, **kwargs)
                if commit:
                    conn.commit()
                else:
                    conn.rollback()
                return result
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        return wrapper
    return decorator


def get_db_connection():
    # Solo se pasan a psycopg2 los parámetros configurados
    config = {}
    if DB_CONFIG.get("dbname"):
        config["dbname"] = DB_CONFIG["dbname"]
    if DB_CONFIG.get("user"):
        config["user"] = DB_CONFIG["user"]
    if DB_CONFIG.get("password"):
        config["password"] = DB_CONFIG["password"]
    if DB_CONFIG.get("host"):
        config["host"] = DB_CONFIG["host"]
    if DB_CONFIG.get("port"):
        config["port"] = DB_CONFIG["port"]

    return psycopg2.connect(**config)


SCHEMA_SQL = '''
CREATE TABLE IF NOT EXISTS "policies" (
    "policy_id" SERIAL PRIMARY KEY,
    "numero_poliza" VARCHAR(64) NOT NULL UNIQUE,
    "estado" VARCHAR(16) NOT NULL DEFAULT 'ACTIVO',
    "tipo_poliza" VARCHAR(16) NOT NULL DEFAULT 'REGULAR',
    "doc" JSONB NOT NULL,
    "created_at" TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    "updated_at" TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS "idx_policies_estado" ON "policies" ("estado");

CREATE TABLE IF NOT EXISTS "vehicles" (
    "vehicle_id" SERIAL PRIMARY KEY,
    "serie" VARCHAR(32) NOT NULL UNIQUE,
    "estado" VARCHAR(16) NOT NULL DEFAULT 'SIN_POLIZA',
    "doc" JSONB NOT NULL,
    "created_at" TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    "updated_at" TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS "idx_vehicles_estado" ON "vehicles" ("estado");

CREATE TABLE IF NOT EXISTS "aseguradoras" (
    "aseguradora_id" SERIAL PRIMARY KEY,
    "nombre" VARCHAR(128) NOT NULL UNIQUE,
    "nombre_corto" VARCHAR(64) NOT NULL,
    "aliases" TEXT[] NOT NULL DEFAULT '{}',
    "activo" BOOLEAN NOT NULL DEFAULT TRUE
);

CREATE TABLE IF NOT EXISTS "scheduled_notifications" (
    "notification_id" SERIAL PRIMARY KEY,
    "numero_poliza" VARCHAR(64) NOT NULL,
    "expediente_num" VARCHAR(64) NOT NULL,
    "tipo_notificacion" VARCHAR(16) NOT NULL DEFAULT 'CONTACTO',
    "status" VARCHAR(16) NOT NULL DEFAULT 'PENDING',
    "scheduled_date" TIMESTAMPTZ NOT NULL,
    "target_group_id" BIGINT NOT NULL,
    "retry_count" INTEGER NOT NULL DEFAULT 0,
    "last_retry_at" TIMESTAMPTZ,
    "processing_started_at" TIMESTAMPTZ,
    "last_scheduled_at" TIMESTAMPTZ,
    "sent_at" TIMESTAMPTZ,
    "error" TEXT NOT NULL DEFAULT '',
    "payload" JSONB NOT NULL DEFAULT '{}',
    "created_at" TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    "updated_at" TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS "idx_notifications_status_date"
    ON "scheduled_notifications" ("status", "scheduled_date");
CREATE INDEX IF NOT EXISTS "idx_notifications_expediente"
    ON "scheduled_notifications" ("numero_poliza", "expediente_num", "tipo_notificacion");
'''


@db_transaction(commit=True)
def init_schema(cursor) -> None:
    """Crea las tablas si no existen."""
    cursor.execute(SCHEMA_SQL)
    logging.info("Esquema de base de datos verificado")
