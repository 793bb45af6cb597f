"""
Limpieza periódica de estados de conversación abandonados.

Cada flujo registra un proveedor con un método cleanup(cutoff_ms) -> int que
elimina las entradas con actividad anterior a cutoff_ms y devuelve cuántas borró.
"""

import asyncio
import logging
import time
from typing import Protocol

from config import SESSION_TTL_MS, STATE_CLEANUP_INTERVAL_MS

logger = logging.getLogger(__name__)


class StateProvider(Protocol):
    def cleanup(self, cutoff_ms: int) -> int: ...


class StateCleanupService:
    def __init__(self):
        self._providers: dict[str, StateProvider] = {}
        self._task: asyncio.Task | None = None

    def register_state_provider(self, provider: StateProvider, name: str) -> None:
        self._providers[name] = provider
        logger.info(f"Proveedor de estados registrado: {name}")

    @property
    def providers(self) -> list[str]:
        return list(self._providers)

    def run_cleanup(self, max_age_ms: int = SESSION_TTL_MS) -> dict[str, int]:
        """
        Ejecuta una pasada de limpieza en todos los proveedores.

        Args:
            max_age_ms: Antigüedad máxima permitida de un estado

        Returns:
            dict: {nombre: estados eliminados}, -1 si el proveedor falló
        """
        cutoff_ms = int(time.time() * 1000) - max_age_ms
        results: dict[str, int] = {}
        for name, provider in self._providers.items():
            try:
                results[name] = provider.cleanup(cutoff_ms)
            except Exception as e:
                logger.error(f"Error limpiando estados de {name}: {e}", exc_info=True)
                results[name] = -1

        total = sum(count for count in results.values() if count > 0)
        if total:
            logger.info(f"Limpieza de estados: {total} eliminados {results}")
        return results

    async def _loop(self, interval_ms: int, max_age_ms: int) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            self.run_cleanup(max_age_ms)

    def start(self, interval_ms: int = STATE_CLEANUP_INTERVAL_MS, max_age_ms: int = SESSION_TTL_MS) -> None:
        if self._task and not self._task.done():
            logger.warning("El servicio de limpieza ya está en marcha")
            return
        self._task = asyncio.create_task(self._loop(interval_ms, max_age_ms))
        logger.info(
            f"Limpieza de estados cada {interval_ms // 1000}s (antigüedad máxima {max_age_ms // 1000}s)"
        )

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None
            logger.info("Servicio de limpieza detenido")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()


_service: StateCleanupService | None = None


def get_state_cleanup_service() -> StateCleanupService:
    global _service
    if _service is None:
        _service = StateCleanupService()
    return _service


def register_default_providers(service: StateCleanupService) -> None:
    """Registra los flujos conversacionales del bot."""
    from ocupar_poliza import OcuparPolizaCleanup
    from policy_assignment import PolicyAssignmentCleanup
    from vehicle_registration import VehicleRegistrationCleanup

    service.register_state_provider(VehicleRegistrationCleanup(), "vehicle_registration")
    service.register_state_provider(PolicyAssignmentCleanup(), "policy_assignment")
    service.register_state_provider(OcuparPolizaCleanup(), "ocupar_poliza")
    service.register_state_provider(UserStatesCleanup(), "user_states")


class UserStatesCleanup:
    """Borra los avisos de un solo paso (config.user_states) que llevan demasiado tiempo abiertos."""

    def cleanup(self, cutoff_ms: int) -> int:
        from config import user_states

        viejos = [uid for uid, st in list(user_states.items()) if st.get("timestamp", 0) < cutoff_ms]
        for uid in viejos:
            user_states.pop(uid, None)
        return len(viejos)

