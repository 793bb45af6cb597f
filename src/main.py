import asyncio
import logging
from datetime import timedelta
from pathlib import Path

import nest_asyncio
from pyrogram import Client, idle

import handlers
from config import API_HASH, API_ID, SESSION_DIR, SESSION_NAME, TELEGRAM_BOT_TOKEN
from db_handler.db import init_schema
from db_handler.fill_aseguradoras_table import fill_aseguradoras
from notification_manager import get_notification_manager
from payment_calculator import actualizar_estados_polizas
from state_cleanup import get_state_cleanup_service, register_default_providers
from utils import now_local

nest_asyncio.apply()

# Hora local del recálculo diario de estados de pólizas
HORA_CALCULO_ESTADOS = 3


def seconds_until_next_run(hour: int = HORA_CALCULO_ESTADOS) -> float:
    now = now_local()
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def periodic_policy_states():
    """Recalcula estado, días restantes y calificación de las pólizas una vez al día."""
    while True:
        await asyncio.sleep(seconds_until_next_run())
        try:
            resultado = await asyncio.to_thread(actualizar_estados_polizas)
            logging.info(f"✅ Estados de pólizas actualizados: {resultado}")
        except Exception as e:
            logging.warning(f"❌ No se pudieron actualizar los estados de pólizas: {e}")


async def main():
    session_dir = Path(SESSION_DIR)
    session_dir.mkdir(parents=True, exist_ok=True)
    session_path = session_dir / SESSION_NAME

    app = Client(
        str(session_path),
        api_id=int(API_ID),
        api_hash=API_HASH,
        bot_token=TELEGRAM_BOT_TOKEN
    )

    init_schema()
    fill_aseguradoras()

    handlers.register_handlers(app)

    await app.start()

    notification_manager = get_notification_manager(app)
    await notification_manager.initialize(app)

    cleanup_service = get_state_cleanup_service()
    register_default_providers(cleanup_service)
    cleanup_service.start()

    states_task = asyncio.create_task(periodic_policy_states())

    logging.info("Bot de pólizas iniciado. Esperando mensajes...")
    await idle()

    states_task.cancel()
    cleanup_service.stop()
    await notification_manager.stop()
    await app.stop()


if __name__ == "__main__":
    asyncio.run(main())
