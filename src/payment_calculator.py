"""
Cálculos de cobertura, pagos pendientes y estados de pólizas.

Todas las funciones son puras: reciben pólizas ya cargadas y la fecha "ahora",
y no tocan la base de datos salvo actualizar_estados_polizas().
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from models import EstadoPago, EstadoPoliza, Pago, Policy
from utils import add_months, ensure_aware, now_local

logger = logging.getLogger(__name__)

ESTADO_VIGENTE = "VIGENTE"
ESTADO_GRACIA = "PERIODO DE GRACIA"
ESTADO_VENCIDA = "VENCIDA"

GRUPO_URGENTE = "URGENTE ESTA SEMANA (Lun-Dom)"
GRUPO_PROXIMAS = "PROXIMAS 2 SEMANAS"
GRUPO_SIGUIENTES = "SIGUIENTES 2 SEMANAS"
GRUPO_MAS_DE_MES = "MAS DE 1 MES"
GRUPO_VENCIDAS = "YA VENCIDAS +30 DIAS"

GRUPOS_SEMANALES = [GRUPO_URGENTE, GRUPO_PROXIMAS, GRUPO_SIGUIENTES, GRUPO_MAS_DE_MES, GRUPO_VENCIDAS]

_DAY = timedelta(days=1)


@dataclass
class PendingPolicy:
    """Póliza activa con días de impago."""
    numero_poliza: str
    dias_de_impago: int
    monto_requerido: float
    monto_referencia: float | None
    fuente_monto: str
    estado_poliza: str
    pagos_realizados: int
    dias_transcurridos: int
    fecha_limite_cobertura: datetime
    fecha_emision: datetime
    total_servicios: int = 0
    dias_hasta_vencer: int | None = None
    prioridad: int | None = None

    @property
    def monto(self) -> float:
        return self.monto_requerido or self.monto_referencia or 0


@dataclass
class ReportStats:
    total_policies: int = 0
    total_amount: float = 0.0
    polizas_con_costo: int = 0
    critical: int = 0
    urgent: int = 0
    normal: int = 0
    extra: dict[str, Any] = field(default_factory=dict)


def _pagos(policy: Policy, estado: EstadoPago) -> list[Pago]:
    return [p for p in policy.pagos if p.estado == estado]


def calcular_fecha_fin_cobertura(fecha_emision: datetime, pagos_realizados: int) -> datetime:
    """Fin de cobertura: emisión + N meses pagados - 1 día."""
    return add_months(ensure_aware(fecha_emision), pagos_realizados) - _DAY


def calcular_dias_de_impago(fecha_limite_cobertura: datetime, now: datetime | None = None) -> int:
    """Días completos transcurridos desde el fin de la cobertura pagada (0 si sigue cubierta)."""
    now = ensure_aware(now or now_local())
    limite = ensure_aware(fecha_limite_cobertura)
    if now <= limite:
        return 0
    return math.floor((now - limite) / _DAY)


def calcular_dias_hasta_siguiente_mes_sin_pago(fecha_limite_cobertura: datetime, now: datetime | None = None) -> int:
    now = now or now_local()
    siguiente = add_months(ensure_aware(fecha_limite_cobertura), 1)
    return math.ceil((siguiente - ensure_aware(now)) / _DAY)


def calcular_monto_requerido(
    planificados: list[Pago], realizados: list[Pago]
) -> tuple[float, float | None, str]:
    """
    Determina el monto a cobrar de una póliza con impago.

    Returns:
        tuple: (monto_requerido, monto_referencia, fuente_monto)
    """
    monto_requerido = 0.0
    monto_referencia = None
    fuente = "SIN_DATOS"

    if planificados:
        if not realizados:
            monto_requerido = planificados[0].monto
            fuente = "PLANIFICADO_P1"
        elif len(planificados) > 1:
            monto_requerido = planificados[1].monto
            fuente = "PLANIFICADO_P2"
        else:
            monto_requerido = planificados[0].monto
            fuente = "PLANIFICADO_P1_FALLBACK"

    if monto_requerido == 0 and realizados:
        monto_referencia = realizados[-1].monto
        fuente = "REFERENCIA_ULTIMO_PAGO"

    return monto_requerido, monto_referencia, fuente


def calcular_polizas_pendientes(policies: list[Policy], now: datetime | None = None) -> list[PendingPolicy]:
    """Pólizas activas cuya cobertura pagada ya terminó, ordenadas por días de impago desc."""
    now = ensure_aware(now or now_local())
    pendientes: list[PendingPolicy] = []

    for policy in policies:
        if policy.estado != EstadoPoliza.ACTIVO or not policy.fecha_emision:
            continue

        realizados = _pagos(policy, EstadoPago.REALIZADO)
        planificados = _pagos(policy, EstadoPago.PLANIFICADO)
        limite = calcular_fecha_fin_cobertura(policy.fecha_emision, len(realizados))

        dias_impago = calcular_dias_de_impago(limite, now)
        if dias_impago <= 0:
            continue

        requerido, referencia, fuente = calcular_monto_requerido(planificados, realizados)
        pendientes.append(PendingPolicy(
            numero_poliza=policy.numero_poliza,
            dias_de_impago=dias_impago,
            monto_requerido=requerido,
            monto_referencia=referencia,
            fuente_monto=fuente,
            estado_poliza=policy.estado_poliza or "SIN_ESTADO",
            pagos_realizados=len(realizados),
            dias_transcurridos=math.floor((now - ensure_aware(policy.fecha_emision)) / _DAY),
            fecha_limite_cobertura=limite,
            fecha_emision=ensure_aware(policy.fecha_emision),
            total_servicios=len(policy.servicios),
        ))

    return sorted(pendientes, key=lambda p: p.dias_de_impago, reverse=True)


def calcular_estadisticas(pendientes: list[PendingPolicy], now: datetime | None = None) -> ReportStats:
    stats = ReportStats(total_policies=len(pendientes))
    for pendiente in pendientes:
        monto = pendiente.monto
        stats.total_amount += monto
        if monto > 0:
            stats.polizas_con_costo += 1

        dias = calcular_dias_hasta_siguiente_mes_sin_pago(pendiente.fecha_limite_cobertura, now)
        if 0 < dias <= 2:
            stats.critical += 1
        elif 0 < dias <= 15:
            stats.urgent += 1
        else:
            stats.normal += 1
    return stats


def agrupar_por_semana(pendientes: list[PendingPolicy], now: datetime | None = None) -> dict[str, list[PendingPolicy]]:
    """Agrupa por días hasta el siguiente mes sin pago (prioridad 1 a 5)."""
    grupos: dict[str, list[PendingPolicy]] = {nombre: [] for nombre in GRUPOS_SEMANALES}

    for pendiente in pendientes:
        dias = calcular_dias_hasta_siguiente_mes_sin_pago(pendiente.fecha_limite_cobertura, now)
        pendiente.dias_hasta_vencer = dias
        if 0 < dias <= 7:
            grupo, prioridad = GRUPO_URGENTE, 1
        elif 7 < dias <= 14:
            grupo, prioridad = GRUPO_PROXIMAS, 2
        elif 14 < dias <= 28:
            grupo, prioridad = GRUPO_SIGUIENTES, 3
        elif dias > 28:
            grupo, prioridad = GRUPO_MAS_DE_MES, 4
        else:
            grupo, prioridad = GRUPO_VENCIDAS, 5
        pendiente.prioridad = prioridad
        grupos[grupo].append(pendiente)

    return grupos


def _diff_days(target: datetime, now: datetime) -> int:
    return math.ceil((ensure_aware(target) - ensure_aware(now)) / _DAY)


def calcular_puntaje(estado: str, dias_cobertura: int, dias_gracia: int, servicios: int) -> int:
    """Calificación de prioridad para usar una póliza (0 a 100)."""
    if servicios >= 2:
        return 10
    if estado == ESTADO_VENCIDA:
        return 0

    dias = dias_gracia if estado == ESTADO_GRACIA else dias_cobertura

    puntaje = 0
    if servicios == 0:
        puntaje = 100 if dias <= 1 else 80 if dias <= 3 else 60 if dias <= 7 else 40
    elif servicios == 1:
        puntaje = 90 if dias <= 1 else 70 if dias <= 3 else 50 if dias <= 7 else 30

    if estado == ESTADO_VIGENTE:
        puntaje = max(puntaje - 10, 0)
    return puntaje


def calcular_estado_poliza(policy: Policy, now: datetime | None = None) -> dict[str, Any]:
    """
    Calcula estado de vigencia, fechas límite y calificación de una póliza.

    Args:
        policy: Póliza con pagos y servicios cargados
        now: Fecha de referencia (por defecto ahora)

    Returns:
        dict: estado_poliza, fecha_fin_cobertura, fecha_fin_gracia,
              dias_restantes_cobertura, dias_restantes_gracia, total_servicios, calificacion
    """
    now = ensure_aware(now or now_local())
    emision = ensure_aware(policy.fecha_emision)
    num_pagos = len(_pagos(policy, EstadoPago.REALIZADO))
    servicios = len(policy.servicios)

    if num_pagos == 0:
        fin_cobertura = add_months(emision, 1)
        fin_gracia = fin_cobertura
        dias_cobertura = _diff_days(fin_cobertura, now)
        dias_gracia = dias_cobertura
        estado = ESTADO_VENCIDA if dias_cobertura < 0 else ESTADO_GRACIA
    else:
        fin_cobertura = add_months(emision, num_pagos)
        fin_gracia = add_months(emision, num_pagos + 1)
        dias_cobertura = _diff_days(fin_cobertura, now)
        dias_gracia = _diff_days(fin_gracia, now)
        if dias_cobertura >= 0:
            estado = ESTADO_VIGENTE
        else:
            estado = ESTADO_GRACIA if dias_gracia >= 0 else ESTADO_VENCIDA

    return {
        "estado_poliza": estado,
        "fecha_fin_cobertura": fin_cobertura,
        "fecha_fin_gracia": fin_gracia,
        "dias_restantes_cobertura": dias_cobertura,
        "dias_restantes_gracia": dias_gracia,
        "total_servicios": servicios,
        "calificacion": calcular_puntaje(estado, dias_cobertura, dias_gracia, servicios),
    }


def actualizar_estados_polizas(now: datetime | None = None) -> dict[str, Any]:
    """Recalcula y guarda el estado de todas las pólizas activas."""
    from db_handler.policies import PolicyNotFoundError, get_active_policies, update_policy_fields

    resultado: dict[str, Any] = {
        "procesadas": 0,
        "omitidas": 0,
        "errores": 0,
        "estados": {ESTADO_VIGENTE: 0, ESTADO_GRACIA: 0, ESTADO_VENCIDA: 0},
    }
    policies = get_active_policies()
    logger.info(f"Calculando estados de {len(policies)} pólizas activas")

    for policy in policies:
        try:
            datos = calcular_estado_poliza(policy, now)
            update_policy_fields(policy.id, datos)
            resultado["estados"][datos["estado_poliza"]] += 1
            resultado["procesadas"] += 1
        except PolicyNotFoundError:
            logger.warning(f"La póliza {policy.numero_poliza} dejó de estar activa durante el cálculo")
            resultado["omitidas"] += 1
        except Exception as e:
            logger.error(f"Error calculando estado de la póliza {policy.numero_poliza}: {e}")
            resultado["errores"] += 1

    logger.info(
        f"Estados calculados: {resultado['procesadas']} procesadas, {resultado['errores']} errores"
    )
    return resultado
