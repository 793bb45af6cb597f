"""
Persistencia de pólizas en PostgreSQL.

Cada póliza es un documento JSONB en "policies"."doc"; las columnas
numero_poliza, estado y tipo_poliza se duplican para indexar y filtrar.
Las operaciones que modifican el documento lo bloquean con SELECT ... FOR UPDATE
dentro de la misma transacción.
"""

import logging
import unicodedata
from datetime import datetime
from typing import Any

import psycopg2  # pyright: ignore[reportMissingModuleSource]
from psycopg2.extras import Json  # pyright: ignore[reportMissingModuleSource]

from db_handler.db import db_transaction
from db_handler.vehicles import VehicleUnavailableError, select_vehicle_for_update, store_vehicle
from models import (
    Archivo,
    Aseguradora,
    EstadoPago,
    EstadoPoliza,
    EstadoRegistro,
    EstadoVehiculo,
    Pago,
    Policy,
    Registro,
    Servicio,
    Vehicle,
)
from utils import now_local


class PolicyError(Exception):
    """Error base de operaciones con pólizas"""
    pass


class DuplicatePolicyError(PolicyError):
    """Ya existe una póliza con ese número"""
    pass


class PolicyNotFoundError(PolicyError):
    """La póliza no existe o no está activa"""
    pass


def normalize_numero_poliza(numero: str | None) -> str:
    return (numero or "").strip().upper()


def _dump(policy: Policy) -> Json:
    return Json(policy.model_dump(mode="json", exclude={"id"}))


def _row_to_policy(row) -> Policy:
    policy_id, doc = row[0], row[1]
    return Policy.model_validate({**doc, "id": policy_id})


def _select_policy(cursor, numero: str, only_active: bool = True, for_update: bool = False) -> Policy | None:
    query = 'SELECT "policy_id", "doc" FROM "policies" WHERE "numero_poliza" = %s'
    if only_active:
        query += ' AND "estado" = \'ACTIVO\''
    if for_update:
        query += ' FOR UPDATE'
    cursor.execute(query, (normalize_numero_poliza(numero),))
    row = cursor.fetchone()
    return _row_to_policy(row) if row else None


def _store(cursor, policy: Policy) -> Policy:
    cursor.execute(
        '''UPDATE "policies"
           SET "doc" = %s, "estado" = %s, "tipo_poliza" = %s, "updated_at" = NOW()
           WHERE "policy_id" = %s
        ''',
        (_dump(policy), policy.estado.value, policy.tipo_poliza.value, policy.id)
    )
    return policy


def _insert(cursor, policy: Policy) -> Policy:
    try:
        cursor.execute(
            '''INSERT INTO "policies" ("numero_poliza", "estado", "tipo_poliza", "doc")
               VALUES (%s, %s, %s, %s)
               RETURNING "policy_id";
            ''',
            (policy.numero_poliza, policy.estado.value, policy.tipo_poliza.value, _dump(policy))
        )
    except psycopg2.errors.UniqueViolation:
        raise DuplicatePolicyError(f"Ya existe una póliza con el número: {policy.numero_poliza}")
    policy.id = cursor.fetchone()[0]
    return policy


@db_transaction(commit=True)
def save_policy(cursor, data: Policy | dict[str, Any]) -> Policy:
    """
    Guarda una póliza nueva en estado ACTIVO.

    Args:
        data: Policy o dict con los campos de la póliza

    Returns:
        Policy: Póliza guardada con id asignado

    Raises:
        DuplicatePolicyError: Si el número ya existe (en cualquier estado)
    """
    policy = data if isinstance(data, Policy) else Policy.model_validate(data)
    policy.estado = EstadoPoliza.ACTIVO
    _insert(cursor, policy)
    logging.info(f"Póliza guardada: numero_poliza = {policy.numero_poliza}")
    return policy


@db_transaction(commit=True)
def save_policy_for_vehicle(cursor, data: Policy | dict[str, Any], vehicle_id: int) -> tuple[Policy, Vehicle]:
    """
    Crea la póliza de un vehículo de la base de autos y marca el vehículo CON_POLIZA
    en la misma transacción.

    El vehículo se bloquea con FOR UPDATE antes de comprobar su estado.

    Raises:
        VehicleUnavailableError: El vehículo no existe o ya no está SIN_POLIZA
        DuplicatePolicyError: Si el número de póliza ya existe
    """
    vehicle = select_vehicle_for_update(cursor, vehicle_id)
    if not vehicle or vehicle.estado != EstadoVehiculo.SIN_POLIZA:
        raise VehicleUnavailableError(f"El vehículo {vehicle_id} ya no está disponible")

    policy = data if isinstance(data, Policy) else Policy.model_validate(data)
    policy.estado = EstadoPoliza.ACTIVO
    policy.vehicle_id = vehicle.id
    _insert(cursor, policy)

    vehicle.estado = EstadoVehiculo.CON_POLIZA
    vehicle.policy_id = policy.id
    store_vehicle(cursor, vehicle)
    logging.info(f"Póliza {policy.numero_poliza} guardada y asignada al vehículo {vehicle.serie}")
    return policy, vehicle


@db_transaction(commit=False)
def get_policy_by_number(cursor, numero: str) -> Policy | None:
    """Póliza ACTIVA por número (normalizado)."""
    if not normalize_numero_poliza(numero):
        return None
    return _select_policy(cursor, numero)


@db_transaction(commit=False)
def get_policy_any_state(cursor, numero: str) -> Policy | None:
    return _select_policy(cursor, numero, only_active=False)


@db_transaction(commit=False)
def get_active_policies(cursor) -> list[Policy]:
    cursor.execute(
        'SELECT "policy_id", "doc" FROM "policies" WHERE "estado" = \'ACTIVO\' ORDER BY "policy_id"'
    )
    return [_row_to_policy(row) for row in cursor.fetchall()]


@db_transaction(commit=False)
def find_policies_by_phone(cursor, telefono: str, exclude_numero: str | None = None) -> list[Policy]:
    cursor.execute(
        '''SELECT "policy_id", "doc" FROM "policies"
           WHERE "estado" = 'ACTIVO' AND "doc"->>'telefono' = %s AND "numero_poliza" <> %s
        ''',
        (telefono.strip(), normalize_numero_poliza(exclude_numero))
    )
    return [_row_to_policy(row) for row in cursor.fetchall()]


@db_transaction(commit=True)
def update_policy_fields(cursor, policy_id: int, fields: dict[str, Any]) -> None:
    """
    Mezcla solo los campos indicados en el documento de una póliza ACTIVA.

    No reescribe el resto del documento (pagos, servicios, teléfono).

    Raises:
        PolicyNotFoundError: La póliza ya no existe o dejó de estar activa
    """
    doc = {k: v.isoformat() if isinstance(v, datetime) else v for k, v in fields.items()}
    cursor.execute(
        '''UPDATE "policies"
           SET "doc" = "doc" || %s, "updated_at" = NOW()
           WHERE "policy_id" = %s AND "estado" = 'ACTIVO'
        ''',
        (Json(doc), policy_id)
    )
    if cursor.rowcount != 1:
        raise PolicyNotFoundError(f"La póliza {policy_id} ya no está activa")


@db_transaction(commit=True)
def update_policy_phone(cursor, numero: str, telefono: str) -> Policy | None:
    policy = _select_policy(cursor, numero, only_active=False, for_update=True)
    if not policy:
        return None
    policy.telefono = telefono.strip()
    logging.info(f"Teléfono actualizado en la póliza {policy.numero_poliza}")
    return _store(cursor, policy)


@db_transaction(commit=True)
def mark_policy_as_deleted(cursor, numero: str, motivo: str = "") -> Policy | None:
    """Baja lógica: estado ELIMINADO con fecha y motivo."""
    policy = _select_policy(cursor, numero, only_active=False, for_update=True)
    if not policy:
        return None
    policy.estado = EstadoPoliza.ELIMINADO
    policy.fecha_eliminacion = now_local()
    policy.motivo_eliminacion = motivo
    logging.info(f"Póliza {policy.numero_poliza} marcada como ELIMINADO: {motivo}")
    return _store(cursor, policy)


@db_transaction(commit=True)
def restore_policy(cursor, numero: str) -> Policy | None:
    policy = _select_policy(cursor, numero, only_active=False, for_update=True)
    if not policy or policy.estado != EstadoPoliza.ELIMINADO:
        return None
    policy.estado = EstadoPoliza.ACTIVO
    policy.fecha_eliminacion = None
    policy.motivo_eliminacion = ""
    logging.info(f"Póliza {policy.numero_poliza} restaurada")
    return _store(cursor, policy)


@db_transaction(commit=True)
def add_payment(cursor, numero: str, monto: float, fecha_pago: datetime) -> Policy | None:
    policy = _select_policy(cursor, numero, for_update=True)
    if not policy:
        return None
    policy.pagos.append(Pago(
        monto=monto,
        fecha_pago=fecha_pago,
        estado=EstadoPago.REALIZADO,
        notas="Pago registrado manualmente",
    ))
    logging.info(f"Pago de {monto} registrado en la póliza {policy.numero_poliza}")
    return _store(cursor, policy)


@db_transaction(commit=True)
def add_service(
    cursor,
    numero: str,
    costo: float,
    fecha_servicio: datetime,
    numero_expediente: str,
    origen_destino: str,
    coordenadas: dict[str, Any] | None = None,
    ruta_info: dict[str, Any] | None = None,
) -> Policy | None:
    """Servicio directo (sin registro previo); incrementa contador y total."""
    policy = _select_policy(cursor, numero, for_update=True)
    if not policy:
        return None
    policy.servicio_counter += 1
    policy.total_servicios += 1
    policy.servicios.append(Servicio(
        numero_servicio=policy.servicio_counter,
        costo=costo,
        fecha_servicio=fecha_servicio,
        numero_expediente=numero_expediente,
        origen_destino=origen_destino,
        coordenadas=coordenadas,
        ruta_info=ruta_info,
    ))
    logging.info(f"Servicio #{policy.servicio_counter} agregado a la póliza {policy.numero_poliza}")
    return _store(cursor, policy)


@db_transaction(commit=True)
def add_registro(
    cursor,
    numero: str,
    costo: float,
    fecha_registro: datetime,
    numero_expediente: str,
    origen_destino: str,
    coordenadas: dict[str, Any] | None = None,
    ruta_info: dict[str, Any] | None = None,
) -> tuple[Policy, Registro] | None:
    policy = _select_policy(cursor, numero, for_update=True)
    if not policy:
        return None
    policy.registro_counter += 1
    registro = Registro(
        numero_registro=policy.registro_counter,
        costo=costo,
        fecha_registro=fecha_registro,
        numero_expediente=numero_expediente,
        origen_destino=origen_destino,
        estado=EstadoRegistro.PENDIENTE,
        coordenadas=coordenadas,
        ruta_info=ruta_info,
    )
    policy.registros.append(registro)
    _store(cursor, policy)
    logging.info(f"Registro #{registro.numero_registro} agregado a la póliza {policy.numero_poliza}")
    return policy, registro


@db_transaction(commit=True)
def convertir_registro_a_servicio(
    cursor,
    numero: str,
    numero_registro: int,
    fecha_contacto: datetime,
    fecha_termino: datetime,
) -> tuple[Policy, Servicio] | None:
    """
    Marca el registro como ASIGNADO y crea el servicio correspondiente.

    Returns:
        tuple: (póliza actualizada, servicio creado) o None si no existe
    """
    policy = _select_policy(cursor, numero, for_update=True)
    if not policy:
        return None
    registro = next((r for r in policy.registros if r.numero_registro == numero_registro), None)
    if not registro:
        return None

    registro.estado = EstadoRegistro.ASIGNADO
    registro.fecha_contacto_programada = fecha_contacto
    registro.fecha_termino_programada = fecha_termino
    policy.servicio_counter += 1
    policy.total_servicios += 1
    servicio = Servicio(
        numero_servicio=policy.servicio_counter,
        costo=registro.costo,
        fecha_servicio=registro.fecha_registro,
        numero_expediente=registro.numero_expediente,
        origen_destino=registro.origen_destino,
        fecha_contacto_programada=fecha_contacto,
        fecha_termino_programada=fecha_termino,
        numero_registro_origen=numero_registro,
        coordenadas=registro.coordenadas,
        ruta_info=registro.ruta_info,
    )
    policy.servicios.append(servicio)
    _store(cursor, policy)
    logging.info(
        f"Registro #{numero_registro} convertido en servicio #{servicio.numero_servicio} "
        f"en la póliza {policy.numero_poliza}"
    )
    return policy, servicio


@db_transaction(commit=True)
def marcar_registro_no_asignado(cursor, numero: str, numero_registro: int) -> Policy | None:
    policy = _select_policy(cursor, numero, for_update=True)
    if not policy:
        return None
    registro = next((r for r in policy.registros if r.numero_registro == numero_registro), None)
    if not registro:
        return None
    registro.estado = EstadoRegistro.NO_ASIGNADO
    return _store(cursor, policy)


@db_transaction(commit=True)
def add_file_to_policy(cursor, numero: str, kind: str, archivo: Archivo | dict[str, Any]) -> Policy | None:
    """
    Adjunta un archivo (ya subido a R2) a la póliza.

    Args:
        numero: Número de póliza
        kind: "fotos" o "pdfs"
        archivo: Datos del archivo subido
    """
    if kind not in ("fotos", "pdfs"):
        raise ValueError(f"Tipo de archivo no soportado: {kind}")
    policy = _select_policy(cursor, numero, for_update=True)
    if not policy:
        return None
    item = archivo if isinstance(archivo, Archivo) else Archivo.model_validate(archivo)
    getattr(policy.archivos, kind).append(item)
    return _store(cursor, policy)


def save_policies_batch(policies_data: list[dict[str, Any]]) -> dict[str, Any]:
    """
    Guarda varias pólizas, cada una en su propia transacción.

    Returns:
        dict: {total, successful, failed, details: [{numero_poliza, status, message}]}
    """
    results: dict[str, Any] = {"total": len(policies_data), "successful": 0, "failed": 0, "details": []}

    for data in policies_data:
        numero = normalize_numero_poliza(data.get("numero_poliza")) or "Desconocido"
        try:
            if numero == "Desconocido":
                raise ValueError("Número de póliza es requerido")
            saved = save_policy(data)
            results["successful"] += 1
            results["details"].append({"numero_poliza": saved.numero_poliza, "status": "SUCCESS", "message": "Registrada"})
        except DuplicatePolicyError:
            results["failed"] += 1
            results["details"].append({"numero_poliza": numero, "status": "ERROR", "message": "Póliza duplicada"})
        except Exception as e:
            results["failed"] += 1
            results["details"].append({"numero_poliza": numero, "status": "ERROR", "message": str(e)})

    return results


def calcular_calificacion_gracia(dias_gracia: int | None) -> int:
    if dias_gracia is None:
        return 10
    for limite, calificacion in ((0, 100), (5, 90), (10, 80), (15, 70), (20, 60), (25, 50), (30, 40)):
        if dias_gracia <= limite:
            return calificacion
    return 10


def seleccionar_polizas_a_mandar(policies: list[Policy], now: datetime | None = None) -> list[dict[str, Any]]:
    """
    Pólizas recomendadas para usar: 10 regulares sin servicios, 10 con un servicio
    (ambas por días de gracia ascendentes) y 4 NIV sin servicios por año ascendente.
    """
    from payment_calculator import calcular_estado_poliza

    def dias_gracia(policy: Policy) -> int | None:
        if policy.dias_restantes_gracia is not None:
            return policy.dias_restantes_gracia
        return calcular_estado_poliza(policy, now)["dias_restantes_gracia"]

    activas = [p for p in policies if p.estado == EstadoPoliza.ACTIVO]
    regulares = sorted(
        (p for p in activas if not p.is_niv),
        key=lambda p: (dias_gracia(p) is None, dias_gracia(p) or 0),
    )
    cero = [p for p in regulares if len(p.servicios) == 0][:10]
    uno = [p for p in regulares if len(p.servicios) == 1][:10]
    nivs = sorted(
        (p for p in activas if p.is_niv and p.total_servicios == 0),
        key=lambda p: (p.anio or 0, -(p.id or 0)),
    )[:4]

    resultado: list[dict[str, Any]] = []
    for policy in cero:
        dias = dias_gracia(policy)
        resultado.append({
            "policy": policy,
            "total_servicios": 0,
            "dias_gracia": dias,
            "calificacion": calcular_calificacion_gracia(dias),
            "tipo_grupo": "SIN_SERVICIOS",
            "mensaje_especial": "🚨 URGENTE - PERÍODO DE GRACIA" if dias is not None and dias <= 5 else None,
        })
    for policy in uno:
        dias = dias_gracia(policy)
        resultado.append({
            "policy": policy,
            "total_servicios": 1,
            "dias_gracia": dias,
            "calificacion": calcular_calificacion_gracia(dias),
            "tipo_grupo": "UN_SERVICIO",
            "mensaje_especial": "⚠️ URGENTE - 1 SERVICIO" if dias is not None and dias <= 5 else None,
        })
    for policy in nivs:
        resultado.append({
            "policy": policy,
            "total_servicios": 0,
            "dias_gracia": dias_gracia(policy),
            "calificacion": 95,
            "tipo_grupo": "NIV",
            "mensaje_especial": "⚡ NIV DISPONIBLE",
        })

    for posicion, item in enumerate(resultado, start=1):
        item["posicion"] = posicion
    return resultado


def get_old_unused_policies() -> list[dict[str, Any]]:
    """Reporte de pólizas a mandar a partir de las pólizas activas."""
    resultado = seleccionar_polizas_a_mandar(get_active_policies())
    logging.info(f"Pólizas a mandar calculadas: {len(resultado)} resultados")
    return resultado


def _strip_accents(text: str) -> str:
    return "".join(
        c for c in unicodedata.normalize("NFD", text) if unicodedata.category(c) != "Mn"
    )


@db_transaction(commit=False)
def get_aseguradoras(cursor) -> list[Aseguradora]:
    cursor.execute(
        'SELECT "nombre", "nombre_corto", "aliases", "activo" FROM "aseguradoras" WHERE "activo" = TRUE'
    )
    return [
        Aseguradora(nombre=row[0], nombre_corto=row[1], aliases=list(row[2] or []), activo=row[3])
        for row in cursor.fetchall()
    ]


def find_aseguradora(nombre: str) -> Aseguradora | None:
    """
    Busca una aseguradora sin distinguir acentos ni mayúsculas: primero por nombre
    o nombre corto exactos, luego por alias y al final por coincidencia parcial.
    """
    buscado = _strip_accents(nombre).strip().upper()
    if not buscado:
        return None
    aseguradoras = get_aseguradoras()

    def norm(text: str) -> str:
        return _strip_accents(text).strip().upper()

    for aseguradora in aseguradoras:
        if buscado in (norm(aseguradora.nombre), norm(aseguradora.nombre_corto)):
            return aseguradora
    for aseguradora in aseguradoras:
        if buscado in (norm(a) for a in aseguradora.aliases):
            return aseguradora
    for aseguradora in aseguradoras:
        if buscado in norm(aseguradora.nombre) or buscado in norm(aseguradora.nombre_corto):
            return aseguradora
    return None
