"""
Pruebas de la asignación de pólizas a vehículos de la base de autos.
"""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

import policy_assignment as pa
from conftest import MockDocument, MockMessage, MockUser
from db_handler.policies import DuplicatePolicyError
from db_handler.vehicles import VehicleUnavailableError
from models import EstadoPago, EstadoVehiculo
from r2_storage import R2StorageError
from state_keys import get_user_state_key
from utils import get_timezone

USER_ID = 100001
CHAT_ID = -100123


def state():
    return pa.asignaciones_en_proceso.get(get_user_state_key(USER_ID, CHAT_ID))


async def send(client, text=None, document=None):
    message = MockMessage(text=text, from_user=MockUser(USER_ID), document=document)
    return await pa.procesar_mensaje(client, message, USER_ID)


async def capturar_datos(client, vehicle):
    """Lleva la asignación hasta el paso del archivo."""
    with patch("policy_assignment.get_vehicle_by_id", return_value=vehicle):
        assert await pa.iniciar_asignacion(client, CHAT_ID, USER_ID, vehicle.id) is True
    with patch("db_handler.policies.find_aseguradora", return_value=None):
        for texto in ("pol-900", "gnp", "Laura Gómez", "15/01/2024", "8500", "3500"):
            assert await send(client, texto) is True


class TestVehiculosDisponibles:
    @pytest.mark.asyncio
    async def test_list(self, mock_client, sample_vehicle):
        with patch("policy_assignment.get_vehicles_without_policy", return_value=([sample_vehicle], 11, 2)):
            assert await pa.mostrar_vehiculos_disponibles(mock_client, CHAT_ID, page=2) is True
        texto = mock_client.sent_texts()[0]
        assert "Página 2 de 2" in texto
        assert "**11.** 🚗 VOLKSWAGEN JETTA 2022" in texto

    @pytest.mark.asyncio
    async def test_empty(self, mock_client):
        with patch("policy_assignment.get_vehicles_without_policy", return_value=([], 0, 0)):
            await pa.mostrar_vehiculos_disponibles(mock_client, CHAT_ID)
        assert "NO HAY VEHÍCULOS DISPONIBLES" in mock_client.sent_texts()[0]


class TestIniciar:
    @pytest.mark.asyncio
    async def test_vehicle_with_policy_rejected(self, mock_client, sample_vehicle):
        vehicle = sample_vehicle.model_copy(update={"estado": EstadoVehiculo.CON_POLIZA})
        with patch("policy_assignment.get_vehicle_by_id", return_value=vehicle):
            assert await pa.iniciar_asignacion(mock_client, CHAT_ID, USER_ID, 7) is False
        assert state() is None

    @pytest.mark.asyncio
    async def test_missing_vehicle(self, mock_client):
        with patch("policy_assignment.get_vehicle_by_id", return_value=None):
            assert await pa.iniciar_asignacion(mock_client, CHAT_ID, USER_ID, 99) is False


class TestPasos:
    @pytest.mark.asyncio
    async def test_collects_all_data(self, mock_client, sample_vehicle):
        await capturar_datos(mock_client, sample_vehicle)
        asignacion = state()
        datos = asignacion["datos_poliza"]
        assert asignacion["estado"] == pa.ESPERANDO_PDF
        assert datos["numero_poliza"] == "POL-900"
        assert datos["aseguradora"] == "GNP"
        assert datos["nombre_persona"] == "Laura Gómez"
        assert datos["fecha_emision"] == datetime(2024, 1, 15, tzinfo=get_timezone())
        assert datos["fecha_fin_cobertura"].year == 2025
        assert datos["primer_pago"] == 8500
        assert datos["segundo_pago"] == 3500
        assert "Total de la póliza: $12,000.00" in mock_client.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_invalid_amount(self, mock_client, sample_vehicle):
        with patch("policy_assignment.get_vehicle_by_id", return_value=sample_vehicle):
            await pa.iniciar_asignacion(mock_client, CHAT_ID, USER_ID, 7)
        with patch("db_handler.policies.find_aseguradora", return_value=None):
            for texto in ("POL-1", "GNP", "Laura", "01/02/2024"):
                await send(mock_client, texto)
        await send(mock_client, "ocho mil")
        assert state()["estado"] == pa.ESPERANDO_PRIMER_PAGO
        assert "Solo números" in mock_client.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_date_button(self, mock_client, sample_vehicle):
        with patch("policy_assignment.get_vehicle_by_id", return_value=sample_vehicle):
            await pa.iniciar_asignacion(mock_client, CHAT_ID, USER_ID, 7)
        with patch("db_handler.policies.find_aseguradora", return_value=None):
            for texto in ("POL-1", "GNP", "Laura"):
                await send(mock_client, texto)

        assert await pa.seleccionar_fecha_emision(mock_client, CHAT_ID, USER_ID, "2024-03-10") is True
        assert state()["estado"] == pa.ESPERANDO_PRIMER_PAGO
        assert state()["datos_poliza"]["fecha_emision"].day == 10

    @pytest.mark.asyncio
    async def test_date_button_out_of_step(self, mock_client):
        assert await pa.seleccionar_fecha_emision(mock_client, CHAT_ID, USER_ID, "2024-03-10") is False

    @pytest.mark.asyncio
    async def test_text_instead_of_file(self, mock_client, sample_vehicle):
        await capturar_datos(mock_client, sample_vehicle)
        assert await send(mock_client, "aquí va") is True
        assert "ARCHIVO OBLIGATORIO" in mock_client.sent_texts()[-1]
        assert state()["estado"] == pa.ESPERANDO_PDF

    @pytest.mark.asyncio
    async def test_cancel(self, mock_client, sample_vehicle):
        with patch("policy_assignment.get_vehicle_by_id", return_value=sample_vehicle):
            await pa.iniciar_asignacion(mock_client, CHAT_ID, USER_ID, 7)
        assert pa.tiene_asignacion_en_proceso(USER_ID, CHAT_ID)
        assert pa.cancelar_asignacion(USER_ID, CHAT_ID)
        assert not pa.tiene_asignacion_en_proceso(USER_ID, CHAT_ID)


class TestConstruccion:
    def test_pagos(self):
        fecha = datetime(2024, 1, 31, tzinfo=get_timezone())
        pagos = pa.construir_pagos({"fecha_emision": fecha, "primer_pago": 8500, "segundo_pago": 3500})
        assert [p.monto for p in pagos] == [8500, 3500]
        assert all(p.estado == EstadoPago.PLANIFICADO for p in pagos)
        assert pagos[1].fecha_pago.day == 29

    def test_poliza_copies_vehicle(self, sample_vehicle):
        fecha = datetime(2024, 1, 15, tzinfo=get_timezone())
        policy = pa.construir_poliza(sample_vehicle, {
            "numero_poliza": "POL-5",
            "aseguradora": "GNP",
            "nombre_persona": "Laura",
            "fecha_emision": fecha,
            "fecha_fin_cobertura": fecha.replace(year=2025),
            "primer_pago": 1000,
        })
        assert policy.serie == sample_vehicle.serie
        assert policy.titular == "MARÍA LÓPEZ PÉREZ"
        assert policy.vehicle_id == 7
        assert policy.agente_cotizador == "Laura"
        assert len(policy.pagos) == 1


def guardado(sample_vehicle):
    """Simula la transacción póliza + vehículo."""
    def save(policy, vehicle_id):
        vehicle = sample_vehicle.model_copy(update={"estado": EstadoVehiculo.CON_POLIZA, "policy_id": 55})
        return policy.model_copy(update={"id": 55}), vehicle
    return save


def r2_storage():
    storage = MagicMock()
    storage.copy_file.side_effect = lambda src, dst: {"url": f"https://files/{dst}", "key": dst}
    storage.upload_policy_pdf.return_value = {"url": "https://files/p.pdf", "key": "pdfs/POL-900/p.pdf"}
    return storage


class TestFinalizar:
    @pytest.mark.asyncio
    async def test_creates_policy_with_files(self, mock_client, sample_vehicle):
        await capturar_datos(mock_client, sample_vehicle)
        storage = r2_storage()

        with patch("policy_assignment.get_vehicle_by_id", return_value=sample_vehicle), \
             patch("policy_assignment.save_policy_for_vehicle", side_effect=guardado(sample_vehicle)) as save, \
             patch("policy_assignment.add_file_to_policy") as add_file, \
             patch("policy_assignment.get_r2_storage", return_value=storage):
            assert await send(mock_client, document=MockDocument()) is True

        policy, vehicle_id = save.call_args.args
        assert policy.numero_poliza == "POL-900"
        assert vehicle_id == 7
        kinds = [c.args[1] for c in add_file.call_args_list]
        assert kinds == ["fotos", "pdfs"]
        storage.upload_policy_pdf.assert_called_once()
        assert state() is None
        assert "PÓLIZA ASIGNADA EXITOSAMENTE" in mock_client.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_vehicle_photos_copied_under_policy(self, mock_client, sample_vehicle):
        await capturar_datos(mock_client, sample_vehicle)
        storage = r2_storage()

        with patch("policy_assignment.get_vehicle_by_id", return_value=sample_vehicle), \
             patch("policy_assignment.save_policy_for_vehicle", side_effect=guardado(sample_vehicle)), \
             patch("policy_assignment.add_file_to_policy") as add_file, \
             patch("policy_assignment.get_r2_storage", return_value=storage):
            await send(mock_client, document=MockDocument())

        origen, destino = storage.copy_file.call_args.args
        assert origen == "vehiculos/ABC123/foto_1.jpg"
        assert destino.startswith("fotos/POL-900/")
        assert destino.endswith("_foto_1.jpg")
        foto = add_file.call_args_list[0].args[2]
        assert foto.key == destino
        assert foto.original_name == "foto_1.jpg"

    @pytest.mark.asyncio
    async def test_copy_failure_keeps_vehicle_reference(self, mock_client, sample_vehicle):
        await capturar_datos(mock_client, sample_vehicle)
        storage = r2_storage()
        storage.copy_file.side_effect = R2StorageError("sin conexión")

        with patch("policy_assignment.get_vehicle_by_id", return_value=sample_vehicle), \
             patch("policy_assignment.save_policy_for_vehicle", side_effect=guardado(sample_vehicle)), \
             patch("policy_assignment.add_file_to_policy") as add_file, \
             patch("policy_assignment.get_r2_storage", return_value=storage):
            await send(mock_client, document=MockDocument())

        assert add_file.call_args_list[0].args[2].key == "vehiculos/ABC123/foto_1.jpg"
        assert "PÓLIZA ASIGNADA EXITOSAMENTE" in mock_client.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_duplicate_policy(self, mock_client, sample_vehicle):
        await capturar_datos(mock_client, sample_vehicle)
        with patch("policy_assignment.get_vehicle_by_id", return_value=sample_vehicle), \
             patch("policy_assignment.save_policy_for_vehicle", side_effect=DuplicatePolicyError("dup")), \
             patch("policy_assignment.add_file_to_policy") as add_file:
            await send(mock_client, document=MockDocument())

        add_file.assert_not_called()
        assert "PÓLIZA DUPLICADA" in mock_client.sent_texts()[-1]
        assert state() is None

    @pytest.mark.asyncio
    async def test_vehicle_taken_meanwhile(self, mock_client, sample_vehicle):
        await capturar_datos(mock_client, sample_vehicle)
        tomado = sample_vehicle.model_copy(update={"estado": EstadoVehiculo.CON_POLIZA})
        with patch("policy_assignment.get_vehicle_by_id", return_value=tomado), \
             patch("policy_assignment.save_policy_for_vehicle") as save:
            await send(mock_client, document=MockDocument())
        save.assert_not_called()
        assert "ya no está disponible" in mock_client.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_second_assignment_of_same_vehicle_rejected(self, mock_client, sample_vehicle):
        otro_usuario = USER_ID + 1
        await capturar_datos(mock_client, sample_vehicle)
        with patch("policy_assignment.get_vehicle_by_id", return_value=sample_vehicle):
            await pa.iniciar_asignacion(mock_client, CHAT_ID, otro_usuario, sample_vehicle.id)
        with patch("db_handler.policies.find_aseguradora", return_value=None):
            for texto in ("pol-901", "axa", "Pedro Ruiz", "15/01/2024", "8000", "3000"):
                await pa.procesar_mensaje(mock_client, MockMessage(text=texto, from_user=MockUser(otro_usuario)), otro_usuario)

        numeros = []

        def save_once(policy, vehicle_id):
            numeros.append(policy.numero_poliza)
            if len(numeros) > 1:
                raise VehicleUnavailableError(f"El vehículo {vehicle_id} ya no está disponible")
            return guardado(sample_vehicle)(policy, vehicle_id)

        # ambos pasan la lectura previa; la transacción solo deja pasar al primero
        with patch("policy_assignment.get_vehicle_by_id", return_value=sample_vehicle), \
             patch("policy_assignment.save_policy_for_vehicle", side_effect=save_once), \
             patch("policy_assignment.add_file_to_policy"), \
             patch("policy_assignment.get_r2_storage", return_value=r2_storage()):
            await send(mock_client, document=MockDocument())
            await pa.procesar_mensaje(
                mock_client, MockMessage(from_user=MockUser(otro_usuario), document=MockDocument()), otro_usuario
            )

        assert numeros == ["POL-900", "POL-901"]
        textos = mock_client.sent_texts()
        assert sum("PÓLIZA ASIGNADA EXITOSAMENTE" in t for t in textos) == 1
        assert "ya no está disponible" in textos[-1]
        assert pa.asignaciones_en_proceso.size() == 0


class TestCleanup:
    def test_removes_inactive(self):
        pa.asignaciones_en_proceso.set("1:-1", {"iniciado": 10, "last_activity": 10})
        pa.asignaciones_en_proceso.set("2:-1", {"iniciado": 10, "last_activity": 50})
        assert pa.PolicyAssignmentCleanup().cleanup(20) == 1
        assert pa.asignaciones_en_proceso.has("2:-1")

    @pytest.mark.asyncio
    async def test_step_refreshes_activity(self, mock_client, sample_vehicle):
        with patch("policy_assignment.get_vehicle_by_id", return_value=sample_vehicle):
            await pa.iniciar_asignacion(mock_client, CHAT_ID, USER_ID, sample_vehicle.id)
        state()["last_activity"] = 10
        await send(mock_client, "pol-900")
        assert pa.PolicyAssignmentCleanup().cleanup(20) == 0
