"""
Persistencia de notificaciones programadas.

Las transiciones de estado que compiten entre timers y recuperaciones se hacen
con un único UPDATE ... WHERE "status" IN (...) RETURNING, de modo que solo un
proceso gana cada transición.
"""

import logging
from datetime import datetime
from typing import Any, Iterable

from psycopg2.extras import Json  # pyright: ignore[reportMissingModuleSource]

from db_handler.db import db_transaction
from models import NotificationStatus, ScheduledNotification, TipoNotificacion

_COLUMNS = (
    '"notification_id", "numero_poliza", "expediente_num", "tipo_notificacion", "status", '
    '"scheduled_date", "target_group_id", "retry_count", "last_retry_at", '
    '"processing_started_at", "last_scheduled_at", "sent_at", "error", "payload", "created_at"'
)

_PAYLOAD_FIELDS = (
    "origen_destino", "marca_modelo", "color", "placas", "telefono",
    "contact_time", "created_by", "additional_data",
)


def _row_to_notification(row) -> ScheduledNotification:
    payload = row[13] or {}
    return ScheduledNotification.model_validate({
        **payload,
        "id": row[0],
        "numero_poliza": row[1],
        "expediente_num": row[2],
        "tipo_notificacion": row[3],
        "status": row[4],
        "scheduled_date": row[5],
        "target_group_id": row[6],
        "retry_count": row[7],
        "last_retry_at": row[8],
        "processing_started_at": row[9],
        "last_scheduled_at": row[10],
        "sent_at": row[11],
        "error": row[12],
        "created_at": row[14],
    })


def _payload(notification: ScheduledNotification) -> Json:
    return Json(notification.model_dump(mode="json", include=set(_PAYLOAD_FIELDS)))


def _statuses(values: Iterable[NotificationStatus]) -> list[str]:
    return [v.value for v in values]


@db_transaction(commit=True)
def insert_notification(cursor, notification: ScheduledNotification) -> ScheduledNotification:
    cursor.execute(
        '''INSERT INTO "scheduled_notifications"
           ("numero_poliza", "expediente_num", "tipo_notificacion", "status", "scheduled_date",
            "target_group_id", "retry_count", "error", "payload")
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
           RETURNING "notification_id";
        ''',
        (
            notification.numero_poliza,
            notification.expediente_num,
            notification.tipo_notificacion.value,
            notification.status.value,
            notification.scheduled_date,
            notification.target_group_id,
            notification.retry_count,
            notification.error,
            _payload(notification),
        )
    )
    notification.id = cursor.fetchone()[0]
    logging.info(
        f"Notificación {notification.tipo_notificacion.value} creada: id = {notification.id}, "
        f"expediente = {notification.expediente_num}"
    )
    return notification


@db_transaction(commit=True)
def save_notification(cursor, notification: ScheduledNotification) -> ScheduledNotification:
    """Persiste el estado completo del modelo (tras mark_*, cancel o reschedule)."""
    cursor.execute(
        '''UPDATE "scheduled_notifications"
           SET "status" = %s, "scheduled_date" = %s, "retry_count" = %s, "last_retry_at" = %s,
               "processing_started_at" = %s, "last_scheduled_at" = %s, "sent_at" = %s,
               "error" = %s, "payload" = %s, "updated_at" = NOW()
           WHERE "notification_id" = %s
        ''',
        (
            notification.status.value,
            notification.scheduled_date,
            notification.retry_count,
            notification.last_retry_at,
            notification.processing_started_at,
            notification.last_scheduled_at,
            notification.sent_at,
            notification.error,
            _payload(notification),
            notification.id,
        )
    )
    return notification


@db_transaction(commit=False)
def get_notification(cursor, notification_id: int) -> ScheduledNotification | None:
    cursor.execute(
        f'SELECT {_COLUMNS} FROM "scheduled_notifications" WHERE "notification_id" = %s',
        (notification_id,)
    )
    row = cursor.fetchone()
    return _row_to_notification(row) if row else None


@db_transaction(commit=True)
def transition_status(
    cursor,
    notification_id: int,
    from_statuses: Iterable[NotificationStatus],
    to_status: NotificationStatus,
    now: datetime,
) -> ScheduledNotification | None:
    """
    Cambia el estado solo si el actual está en from_statuses.

    Al pasar a SCHEDULED se registra last_scheduled_at; a PROCESSING,
    processing_started_at; a PENDING se limpian ambos.

    Returns:
        ScheduledNotification | None: La notificación actualizada, o None si otro proceso ganó
    """
    extra = ""
    params: list[Any] = [to_status.value]
    if to_status == NotificationStatus.SCHEDULED:
        extra = ', "last_scheduled_at" = %s'
        params.append(now)
    elif to_status == NotificationStatus.PROCESSING:
        extra = ', "processing_started_at" = %s'
        params.append(now)
    elif to_status == NotificationStatus.PENDING:
        extra = ', "processing_started_at" = NULL, "last_scheduled_at" = NULL'
    params.extend([notification_id, _statuses(from_statuses)])

    cursor.execute(
        f'''UPDATE "scheduled_notifications"
            SET "status" = %s{extra}, "updated_at" = NOW()
            WHERE "notification_id" = %s AND "status" = ANY(%s)
            RETURNING {_COLUMNS}
        ''',
        params
    )
    row = cursor.fetchone()
    return _row_to_notification(row) if row else None


@db_transaction(commit=False)
def find_active_duplicate(
    cursor, numero_poliza: str, expediente_num: str, tipo: TipoNotificacion
) -> ScheduledNotification | None:
    cursor.execute(
        f'''SELECT {_COLUMNS} FROM "scheduled_notifications"
            WHERE "numero_poliza" = %s AND "expediente_num" = %s AND "tipo_notificacion" = %s
              AND "status" IN ('PENDING', 'SCHEDULED', 'PROCESSING')
            ORDER BY "created_at" DESC
            LIMIT 1
        ''',
        (numero_poliza, expediente_num, tipo.value)
    )
    row = cursor.fetchone()
    return _row_to_notification(row) if row else None


@db_transaction(commit=False)
def get_loadable_pending(cursor, now: datetime, rescheduled_before: datetime) -> list[ScheduledNotification]:
    """PENDING futuras no programadas recientemente, por fecha ascendente."""
    cursor.execute(
        f'''SELECT {_COLUMNS} FROM "scheduled_notifications"
            WHERE "status" = 'PENDING' AND "scheduled_date" > %s
              AND ("last_scheduled_at" IS NULL OR "last_scheduled_at" < %s)
            ORDER BY "scheduled_date" ASC
        ''',
        (now, rescheduled_before)
    )
    return [_row_to_notification(row) for row in cursor.fetchall()]


@db_transaction(commit=False)
def get_recoverable_failed(cursor, since: datetime, max_retries: int) -> list[ScheduledNotification]:
    cursor.execute(
        f'''SELECT {_COLUMNS} FROM "scheduled_notifications"
            WHERE "status" = 'FAILED' AND "updated_at" >= %s AND "retry_count" < %s
            ORDER BY "scheduled_date" ASC
        ''',
        (since, max_retries)
    )
    return [_row_to_notification(row) for row in cursor.fetchall()]


@db_transaction(commit=False)
def get_by_status(cursor, statuses: Iterable[NotificationStatus]) -> list[ScheduledNotification]:
    cursor.execute(
        f'''SELECT {_COLUMNS} FROM "scheduled_notifications"
            WHERE "status" = ANY(%s)
            ORDER BY "scheduled_date" ASC
        ''',
        (_statuses(statuses),)
    )
    return [_row_to_notification(row) for row in cursor.fetchall()]


@db_transaction(commit=False)
def get_active_by_expediente(cursor, expediente_num: str) -> list[ScheduledNotification]:
    cursor.execute(
        f'''SELECT {_COLUMNS} FROM "scheduled_notifications"
            WHERE "expediente_num" = %s AND "status" IN ('PENDING', 'SCHEDULED')
        ''',
        (expediente_num,)
    )
    return [_row_to_notification(row) for row in cursor.fetchall()]


@db_transaction(commit=True)
def reset_stuck_processing(cursor, started_before: datetime) -> int:
    """PROCESSING colgadas (bot reiniciado a mitad de envío) vuelven a PENDING."""
    cursor.execute(
        '''UPDATE "scheduled_notifications"
           SET "status" = 'PENDING', "processing_started_at" = NULL, "last_scheduled_at" = NULL,
               "updated_at" = NOW()
           WHERE "status" = 'PROCESSING'
             AND ("processing_started_at" IS NULL OR "processing_started_at" < %s)
        ''',
        (started_before,)
    )
    count = cursor.rowcount
    if count:
        logging.warning(f"{count} notificaciones PROCESSING colgadas devueltas a PENDING")
    return count


@db_transaction(commit=False)
def count_by_status(cursor) -> dict[str, int]:
    cursor.execute('SELECT "status", COUNT(*) FROM "scheduled_notifications" GROUP BY "status"')
    return {row[0]: row[1] for row in cursor.fetchall()}
