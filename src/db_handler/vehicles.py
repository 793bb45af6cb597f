"""
Persistencia de vehículos registrados desde el bot (base de autos).
"""

import logging
import math
from typing import Any

import psycopg2  # pyright: ignore[reportMissingModuleSource]
from psycopg2.extras import Json  # pyright: ignore[reportMissingModuleSource]

from db_handler.db import db_transaction
from models import EstadoVehiculo, Vehicle


class DuplicateVehicleError(Exception):
    """Ya existe un vehículo con esa serie o placas"""
    pass


class VehicleUnavailableError(Exception):
    """El vehículo no existe o ya no está SIN_POLIZA"""
    pass


SIN_PLACAS = "SIN PLACAS"


def _dump(vehicle: Vehicle) -> Json:
    return Json(vehicle.model_dump(mode="json", exclude={"id"}))


def _row_to_vehicle(row) -> Vehicle:
    return Vehicle.model_validate({**row[1], "id": row[0]})


def store_vehicle(cursor, vehicle: Vehicle) -> Vehicle:
    cursor.execute(
        'UPDATE "vehicles" SET "doc" = %s, "estado" = %s, "updated_at" = NOW() WHERE "vehicle_id" = %s',
        (_dump(vehicle), vehicle.estado.value, vehicle.id)
    )
    return vehicle


def select_vehicle_for_update(cursor, vehicle_id: int) -> Vehicle | None:
    cursor.execute('SELECT "vehicle_id", "doc" FROM "vehicles" WHERE "vehicle_id" = %s FOR UPDATE', (vehicle_id,))
    row = cursor.fetchone()
    return _row_to_vehicle(row) if row else None


@db_transaction(commit=True)
def create_vehicle(cursor, data: Vehicle | dict[str, Any]) -> Vehicle:
    """
    Registra un vehículo nuevo en estado SIN_POLIZA.

    Raises:
        DuplicateVehicleError: Serie ya registrada o placas en uso por otro vehículo activo
    """
    vehicle = data if isinstance(data, Vehicle) else Vehicle.model_validate(data)
    vehicle.estado = EstadoVehiculo.SIN_POLIZA

    if vehicle.placas and vehicle.placas != SIN_PLACAS:
        cursor.execute(
            '''SELECT 1 FROM "vehicles"
               WHERE "doc"->>'placas' = %s AND "estado" <> 'ELIMINADO'
            ''',
            (vehicle.placas,)
        )
        if cursor.fetchone():
            raise DuplicateVehicleError(f"Ya existe un vehículo registrado con las placas: {vehicle.placas}")

    try:
        cursor.execute(
            '''INSERT INTO "vehicles" ("serie", "estado", "doc")
               VALUES (%s, %s, %s)
               RETURNING "vehicle_id";
            ''',
            (vehicle.serie, vehicle.estado.value, _dump(vehicle))
        )
    except psycopg2.errors.UniqueViolation:
        raise DuplicateVehicleError(f"Ya existe un vehículo registrado con la serie: {vehicle.serie}")

    vehicle.id = cursor.fetchone()[0]
    logging.info(f"Vehículo registrado: serie = {vehicle.serie}, id = {vehicle.id}")
    return vehicle


@db_transaction(commit=False)
def get_vehicle_by_serie(cursor, serie: str) -> Vehicle | None:
    cursor.execute(
        'SELECT "vehicle_id", "doc" FROM "vehicles" WHERE "serie" = %s',
        ("".join(serie.split()).upper(),)
    )
    row = cursor.fetchone()
    return _row_to_vehicle(row) if row else None


@db_transaction(commit=False)
def get_vehicle_by_id(cursor, vehicle_id: int) -> Vehicle | None:
    cursor.execute('SELECT "vehicle_id", "doc" FROM "vehicles" WHERE "vehicle_id" = %s', (vehicle_id,))
    row = cursor.fetchone()
    return _row_to_vehicle(row) if row else None


@db_transaction(commit=False)
def get_vehicles_without_policy(cursor, limit: int = 10, page: int = 1) -> tuple[list[Vehicle], int, int]:
    """
    Vehículos SIN_POLIZA, más recientes primero.

    Returns:
        tuple: (vehículos de la página, total, total de páginas)
    """
    offset = (max(page, 1) - 1) * limit
    cursor.execute('SELECT COUNT(*) FROM "vehicles" WHERE "estado" = \'SIN_POLIZA\'')
    total = cursor.fetchone()[0]
    cursor.execute(
        '''SELECT "vehicle_id", "doc" FROM "vehicles"
           WHERE "estado" = 'SIN_POLIZA'
           ORDER BY "created_at" DESC
           LIMIT %s OFFSET %s
        ''',
        (limit, offset)
    )
    vehicles = [_row_to_vehicle(row) for row in cursor.fetchall()]
    return vehicles, total, max(math.ceil(total / limit), 1)


@db_transaction(commit=True)
def mark_vehicle_deleted(cursor, vehicle_id: int) -> Vehicle | None:
    vehicle = select_vehicle_for_update(cursor, vehicle_id)
    if not vehicle:
        return None
    vehicle.estado = EstadoVehiculo.ELIMINADO
    logging.info(f"Vehículo {vehicle.serie} marcado ELIMINADO")
    return store_vehicle(cursor, vehicle)
