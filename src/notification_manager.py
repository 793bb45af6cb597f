"""
Programación y envío de notificaciones al grupo de operación.

Cada notificación PENDING con fecha dentro de las próximas 24 horas recibe un
timer (asyncio.Task). Las transiciones de estado se hacen en la base de datos
de forma atómica, así que un timer duplicado o una recuperación concurrente
nunca envían dos veces el mismo mensaje.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

from pyrogram import Client, enums

from config import TELEGRAM_GROUP_ID
from constants import MAX_FOTOS_NOTIFICACION
from db_handler import notifications as store
from db_handler.policies import get_policy_by_number
from models import NotificationStatus, ScheduledNotification, TipoNotificacion
from utils import ensure_aware, format_datetime, now_local

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAYS = (5, 15, 60)
RECOVERY_INTERVAL_SECONDS = 5 * 60
STUCK_PROCESSING_MINUTES = 10
RESCHEDULE_GUARD_MINUTES = 2
MAX_TIMER_HOURS = 24
LATE_SEND_MINUTES = 30
SEND_TIMEOUT_SECONDS = 30

RETRYABLE_MARKERS = ("ETIMEOUT", "ECONNRESET", "ENOTFOUND", "ECONNREFUSED", "socket hang up", "Timeout")


class NotificationError(Exception):
    """Error de validación al programar una notificación"""
    pass


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return True
    message = str(error)
    return any(marker in message for marker in RETRYABLE_MARKERS)


def _destino_final(origen_destino: str) -> str:
    return origen_destino.split(" - ")[-1] if origen_destino else ""


def format_notification_message(notification: ScheduledNotification) -> str:
    """Mensaje HTML según el tipo de notificación."""
    if notification.tipo_notificacion == TipoNotificacion.MANUAL:
        lines = [
            "📋 <b>RECORDATORIO</b>",
            f"🔸 <b>{notification.expediente_num}</b>",
            f"🔸 Póliza: {notification.numero_poliza}",
        ]
        if notification.marca_modelo:
            lines.append(f"🔸 {notification.marca_modelo} {notification.color}".rstrip())
        if notification.telefono:
            lines.append(f"📱 {notification.telefono}")
        if notification.origen_destino:
            lines.append(f"📍 {notification.origen_destino}")
        return "\n".join(lines)

    if notification.tipo_notificacion == TipoNotificacion.TERMINO:
        banner, title, footer = "🟩" * 10, "✅ SERVICIO EN TÉRMINO ✅", "✅ Confirmar cierre ✅"
    else:
        banner, title, footer = "🟨" * 10, "⚠️ SERVICIO EN CONTACTO ⚠️", "⚠️ Seguimiento en chat ⚠️"

    lines = [banner, title, banner, f"🔸 <b><u>{notification.expediente_num}</u></b>"]
    if notification.marca_modelo and notification.color:
        lines.append(f"🔸 {notification.marca_modelo} {notification.color}")
    elif notification.marca_modelo:
        lines.append(f"🔸 {notification.marca_modelo}")
    if notification.placas:
        lines.append(f"🔸 {notification.placas}")
    if notification.origen_destino:
        lines.append(f"🔸 ➡️ {_destino_final(notification.origen_destino)}")
    lines.append(footer)
    return "\n".join(lines)


class NotificationManager:
    """
    Administra los timers de notificaciones programadas.

    Attributes:
        active_timers: Tareas de espera por id de notificación
        processing_locks: Ids que se están programando en este momento
    """

    def __init__(self, app: Client | None = None):
        self.app = app
        self.active_timers: dict[int, asyncio.Task] = {}
        self.processing_locks: set[int] = set()
        self._recovery_task: asyncio.Task | None = None
        self._retry_tasks: set[asyncio.Task] = set()
        self.is_initialized = False

    async def initialize(self, app: Client | None = None) -> None:
        if app is not None:
            self.app = app
        if self.is_initialized:
            return
        if self.app is None:
            raise RuntimeError("NotificationManager requiere un cliente de Telegram")

        store.reset_stuck_processing(now_local() - timedelta(minutes=STUCK_PROCESSING_MINUTES))
        await self.load_pending_notifications()
        await self.recover_scheduled_notifications()
        self._recovery_task = asyncio.create_task(self._recovery_loop())
        self.is_initialized = True
        logger.info("✅ NotificationManager inicializado correctamente")

    async def _recovery_loop(self) -> None:
        while True:
            await asyncio.sleep(RECOVERY_INTERVAL_SECONDS)
            try:
                await self.recover_failed_notifications()
                await self.recover_scheduled_notifications()
                await self.load_pending_notifications()
            except Exception as e:
                logger.error(f"Error en job de recuperación de notificaciones: {e}")

    async def load_pending_notifications(self) -> int:
        now = now_local()
        pending = store.get_loadable_pending(now, now - timedelta(minutes=RESCHEDULE_GUARD_MINUTES))
        limite = now + timedelta(hours=MAX_TIMER_HOURS)
        count = 0
        for notification in pending:
            if notification.id in self.active_timers:
                continue
            if ensure_aware(notification.scheduled_date) > limite:
                continue
            await self.schedule_existing_notification(notification)
            count += 1
        if count:
            logger.info(f"{count} notificaciones pendientes programadas")
        return count

    def _start_timer(self, notification_id: int, delay_seconds: float) -> None:
        async def timer():
            try:
                await asyncio.sleep(delay_seconds)
                await self.send_notification_with_retry(notification_id)
            finally:
                self.active_timers.pop(notification_id, None)

        self.active_timers[notification_id] = asyncio.create_task(timer())

    async def schedule_existing_notification(self, notification: ScheduledNotification) -> bool:
        """
        Pasa la notificación de PENDING a SCHEDULED y arma su timer.

        Returns:
            bool: True si quedó programada
        """
        notification_id = notification.id
        if notification_id in self.processing_locks:
            logger.warning(f"[LOCK] {notification_id} ya está siendo procesada")
            return False
        if notification_id in self.active_timers:
            logger.warning(f"[DUPLICATE_PREVENTED] {notification_id} ya tiene timer activo")
            return False

        self.processing_locks.add(notification_id)
        try:
            now = now_local()
            updated = store.transition_status(
                notification_id, [NotificationStatus.PENDING], NotificationStatus.SCHEDULED, now
            )
            if not updated:
                logger.warning(f"[INVALID_STATE] {notification_id} no se pudo actualizar a SCHEDULED")
                return False

            scheduled = ensure_aware(updated.scheduled_date)
            if scheduled <= now:
                logger.warning(f"[EXPIRED] Notificación {notification_id} expirada")
                store.save_notification(updated.mark_failed("Tiempo de programación ya pasó"))
                return False

            delay = (scheduled - now).total_seconds()
            self._start_timer(notification_id, delay)
            logger.info(f"✅ [SCHEDULED] {notification_id} para {format_datetime(scheduled)} (en {round(delay / 60)} min)")
            return True
        except Exception as e:
            logger.error(f"Error al programar notificación {notification_id}: {e}")
            try:
                store.transition_status(
                    notification_id, [NotificationStatus.SCHEDULED], NotificationStatus.PENDING, now_local()
                )
            except Exception as revert_error:
                logger.error(f"Error al revertir estado de {notification_id}: {revert_error}")
            return False
        finally:
            self.processing_locks.discard(notification_id)

    async def schedule_notification(self, data: dict[str, Any]) -> ScheduledNotification:
        """
        Crea (o reutiliza) una notificación y la programa si vence en las próximas 24 horas.

        Args:
            data: numero_poliza, contact_time y expediente_num obligatorios; scheduled_date,
                tipo_notificacion y datos del vehículo opcionales

        Returns:
            ScheduledNotification: La notificación creada o el duplicado activo existente
        """
        for field in ("numero_poliza", "contact_time", "expediente_num"):
            if not data.get(field):
                raise NotificationError(f"Campo requerido faltante: {field}")

        tipo = TipoNotificacion(data.get("tipo_notificacion") or TipoNotificacion.MANUAL)
        numero_poliza = str(data["numero_poliza"]).strip().upper()
        expediente = str(data["expediente_num"]).strip()

        existente = store.find_active_duplicate(numero_poliza, expediente, tipo)
        if existente:
            logger.warning(f"[DUPLICATE] Ya existe notificación {tipo.value} activa para {expediente}: {existente.id}")
            return existente

        payload = dict(data)
        if not (payload.get("marca_modelo") and payload.get("telefono")):
            policy = get_policy_by_number(numero_poliza)
            if policy:
                payload["marca_modelo"] = payload.get("marca_modelo") or f"{policy.marca} {policy.submarca} ({policy.anio or ''})"
                payload["color"] = payload.get("color") or policy.color
                payload["placas"] = payload.get("placas") or policy.placas
                payload["telefono"] = payload.get("telefono") or policy.telefono

        scheduled_date = payload.get("scheduled_date") or self._fecha_desde_hora(payload["contact_time"])
        notification = ScheduledNotification(
            numero_poliza=numero_poliza,
            expediente_num=expediente,
            origen_destino=payload.get("origen_destino") or "",
            marca_modelo=payload.get("marca_modelo") or "",
            color=payload.get("color") or "",
            placas=payload.get("placas") or "",
            telefono=payload.get("telefono") or "",
            contact_time=payload["contact_time"],
            scheduled_date=ensure_aware(scheduled_date),
            tipo_notificacion=tipo,
            target_group_id=payload.get("target_group_id") or TELEGRAM_GROUP_ID,
            created_by=payload.get("created_by") or {},
            additional_data=payload.get("additional_data") or {},
        )
        notification = store.insert_notification(notification)

        wait = (notification.scheduled_date - now_local()).total_seconds()
        if 0 < wait < MAX_TIMER_HOURS * 3600:
            await self.schedule_existing_notification(notification)
        return notification

    @staticmethod
    def _fecha_desde_hora(contact_time: str) -> datetime:
        """Hoy a la hora indicada, o mañana si esa hora ya pasó."""
        now = now_local()
        hours, minutes = (int(part) for part in contact_time.split(":"))
        fecha = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
        return fecha if fecha > now else fecha + timedelta(days=1)

    async def send_notification_with_retry(self, notification_id: int, retry_count: int = 0) -> None:
        try:
            await self.send_notification(notification_id)
        except Exception as e:
            if retry_count < MAX_RETRIES and is_retryable_error(e):
                delay = RETRY_DELAYS[retry_count]
                logger.warning(f"⚠️ Reintentando {notification_id} en {delay}s (intento {retry_count + 1}/{MAX_RETRIES})")
                store.transition_status(
                    notification_id, [NotificationStatus.FAILED], NotificationStatus.PENDING, now_local()
                )
                task = asyncio.create_task(self._retry_later(notification_id, retry_count + 1, delay))
                self._retry_tasks.add(task)
                task.add_done_callback(self._retry_tasks.discard)
            else:
                logger.error(f"❌ Notificación {notification_id} falló definitivamente: {e}")

    async def _retry_later(self, notification_id: int, retry_count: int, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.send_notification_with_retry(notification_id, retry_count)

    async def _send_vehicle_photos(self, notification: ScheduledNotification) -> None:
        try:
            policy = get_policy_by_number(notification.numero_poliza)
            if not policy or not policy.archivos.fotos:
                logger.info(f"[PHOTOS] No hay fotos disponibles para póliza {notification.numero_poliza}")
                return
            fotos = policy.archivos.fotos[:MAX_FOTOS_NOTIFICACION]
            for i, foto in enumerate(fotos, start=1):
                caption = f"📸 {notification.numero_poliza} - {notification.marca_modelo or 'Vehículo'} ({i}/{len(fotos)})"
                try:
                    await asyncio.wait_for(
                        self.app.send_photo(notification.target_group_id, foto.url, caption=caption),
                        SEND_TIMEOUT_SECONDS,
                    )
                    if i < len(fotos):
                        await asyncio.sleep(1)
                except Exception as e:
                    logger.error(f"Error enviando foto {i} para {notification.numero_poliza}: {e}")
        except Exception as e:
            logger.error(f"Error general enviando fotos para {notification.numero_poliza}: {e}")

    async def send_notification(self, notification_id: int) -> bool:
        """
        Envía la notificación si sigue PENDING o SCHEDULED.

        Raises:
            Exception: El error de envío, tras marcar la notificación como FAILED
        """
        notification = store.transition_status(
            notification_id,
            [NotificationStatus.PENDING, NotificationStatus.SCHEDULED],
            NotificationStatus.PROCESSING,
            now_local(),
        )
        if not notification:
            logger.warning(f"[SEND_BLOCKED] {notification_id} no está disponible para envío")
            return False

        try:
            if notification.tipo_notificacion == TipoNotificacion.CONTACTO:
                await self._send_vehicle_photos(notification)
            await asyncio.wait_for(
                self.app.send_message(
                    notification.target_group_id,
                    format_notification_message(notification),
                    parse_mode=enums.ParseMode.HTML,
                ),
                SEND_TIMEOUT_SECONDS,
            )
            store.save_notification(notification.mark_sent())
            logger.info(f"✅ [SENT] Notificación {notification_id} enviada exitosamente")
            return True
        except Exception as e:
            logger.error(f"Error al enviar notificación {notification_id}: {e}")
            store.save_notification(notification.mark_failed(str(e) or type(e).__name__))
            raise

    async def recover_failed_notifications(self) -> int:
        now = now_local()
        failed = store.get_recoverable_failed(now - timedelta(hours=24), MAX_RETRIES)
        recovered = 0
        for notification in failed:
            notification.reschedule(now + timedelta(minutes=5))
            store.save_notification(notification)
            recovered += 1
        if recovered:
            logger.info(f"[RECOVERY] {recovered} notificaciones fallidas reprogramadas")
        return recovered

    async def recover_scheduled_notifications(self) -> dict[str, int]:
        now = now_local()
        result = {"sent": 0, "expired": 0, "rescheduled": 0}
        for notification in store.get_by_status([NotificationStatus.SCHEDULED]):
            if notification.id in self.active_timers:
                continue
            scheduled = ensure_aware(notification.scheduled_date)
            if scheduled <= now:
                minutes_late = round((now - scheduled).total_seconds() / 60)
                if minutes_late <= LATE_SEND_MINUTES:
                    logger.warning(f"[SCHEDULED_RECOVERY] Enviando notificación tardía {notification.id} ({minutes_late} min tarde)")
                    await self.send_notification_with_retry(notification.id)
                    result["sent"] += 1
                else:
                    logger.warning(f"[SCHEDULED_RECOVERY] Marcando como fallida {notification.id} ({minutes_late} min tarde)")
                    store.save_notification(notification.mark_failed(f"Perdida al reiniciar bot, {minutes_late} minutos tarde"))
                    result["expired"] += 1
            else:
                updated = store.transition_status(
                    notification.id, [NotificationStatus.SCHEDULED], NotificationStatus.PENDING, now
                )
                if updated and await self.schedule_existing_notification(updated):
                    result["rescheduled"] += 1
        return result

    def _cancel_timer(self, notification_id: int) -> None:
        task = self.active_timers.pop(notification_id, None)
        if task:
            task.cancel()

    async def cancel_notification(self, notification_id: int) -> bool:
        notification = store.transition_status(
            notification_id,
            [NotificationStatus.PENDING, NotificationStatus.SCHEDULED],
            NotificationStatus.CANCELLED,
            now_local(),
        )
        if not notification:
            return False
        self._cancel_timer(notification_id)
        logger.info(f"Notificación {notification_id} cancelada")
        return True

    async def cancel_notifications_by_expediente(self, expediente_num: str) -> int:
        cancelled = 0
        for notification in store.get_active_by_expediente(expediente_num):
            if await self.cancel_notification(notification.id):
                cancelled += 1
        return cancelled

    async def get_pending_notifications(self) -> list[ScheduledNotification]:
        return store.get_by_status([NotificationStatus.PENDING, NotificationStatus.SCHEDULED])

    def get_stats(self) -> dict[str, Any]:
        return {
            "active_timers": len(self.active_timers),
            "processing_locks": len(self.processing_locks),
            "by_status": store.count_by_status(),
        }

    async def stop(self) -> None:
        if self._recovery_task:
            self._recovery_task.cancel()
            self._recovery_task = None
        for notification_id in list(self.active_timers):
            self._cancel_timer(notification_id)
        for task in list(self._retry_tasks):
            task.cancel()
        self.is_initialized = False
        logger.info("NotificationManager detenido")


_manager: NotificationManager | None = None


def get_notification_manager(app: Client | None = None) -> NotificationManager:
    global _manager
    if _manager is None:
        _manager = NotificationManager(app)
    elif app is not None and _manager.app is None:
        _manager.app = app
    return _manager
