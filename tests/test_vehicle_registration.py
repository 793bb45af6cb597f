"""
Pruebas del flujo de registro de vehículos.

Cubre los 6 pasos del formulario, la subida de fotos y el cierre del registro.
"""

from unittest.mock import MagicMock, patch

import pytest
import pytest_asyncio

import vehicle_registration as vr
from conftest import MockMessage, MockPhoto, MockUser
from db_handler.vehicles import DuplicateVehicleError
from state_keys import get_user_state_key

USER_ID = 100001
CHAT_ID = -100123


def state():
    return vr.vehiculos_en_proceso.get(get_user_state_key(USER_ID, CHAT_ID))


async def send(client, text=None, photo=None):
    message = MockMessage(text=text, from_user=MockUser(USER_ID), photo=photo)
    return await vr.procesar_mensaje(client, message, USER_ID)


def fake_storage():
    storage = MagicMock()
    storage.upload_bytes.side_effect = lambda data, key, content_type, metadata, name: {
        "url": f"https://files.example.com/{key}",
        "key": key,
        "size": len(data),
        "content_type": content_type,
        "original_name": name,
    }
    return storage


@pytest_asyncio.fixture
async def registro_en_fotos(mock_client):
    """Registro con los 6 pasos capturados, esperando fotos."""
    await vr.iniciar_registro(mock_client, CHAT_ID, USER_ID)
    with patch("vehicle_registration.get_vehicle_by_serie", return_value=None):
        for texto in ("3vwhp6bu9rm073778", "volkswagen", "jetta", "2022", "blanco", "jal-1234"):
            await send(mock_client, texto)
    return mock_client


class TestFormulario:
    @pytest.mark.asyncio
    async def test_full_form(self, registro_en_fotos):
        registro = state()
        assert registro["estado"] == vr.ESPERANDO_FOTOS
        assert registro["datos"] == {
            "serie": "3VWHP6BU9RM073778",
            "marca": "VOLKSWAGEN",
            "submarca": "JETTA",
            "anio": 2022,
            "color": "BLANCO",
            "placas": "JAL-1234",
        }
        assert "AL MENOS 1 foto" in registro_en_fotos.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_invalid_value_keeps_step(self, mock_client):
        await vr.iniciar_registro(mock_client, CHAT_ID, USER_ID)
        with patch("vehicle_registration.get_vehicle_by_serie", return_value=None):
            await send(mock_client, "ABC123")
        assert await send(mock_client, "x") is True
        assert state()["estado"] == vr.ESPERANDO_MARCA
        assert mock_client.sent_texts()[-1].startswith("❌")

    @pytest.mark.asyncio
    async def test_short_serie_warns(self, mock_client):
        await vr.iniciar_registro(mock_client, CHAT_ID, USER_ID)
        with patch("vehicle_registration.get_vehicle_by_serie", return_value=None):
            await send(mock_client, "ABC123")
        assert "no es un VIN estándar" in mock_client.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_existing_vehicle_cancels(self, mock_client, sample_vehicle):
        await vr.iniciar_registro(mock_client, CHAT_ID, USER_ID)
        with patch("vehicle_registration.get_vehicle_by_serie", return_value=sample_vehicle):
            await send(mock_client, sample_vehicle.serie)
        assert state() is None
        assert "ya existe" in mock_client.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_message_without_registration(self, mock_client):
        assert await send(mock_client, "hola") is False

    @pytest.mark.asyncio
    async def test_cancel(self, mock_client):
        await vr.iniciar_registro(mock_client, CHAT_ID, USER_ID)
        assert vr.tiene_registro_en_proceso(USER_ID, CHAT_ID)
        assert vr.cancelar_registro(USER_ID, CHAT_ID)
        assert not vr.tiene_registro_en_proceso(USER_ID, CHAT_ID)

    @pytest.mark.asyncio
    async def test_threads_are_independent(self, mock_client):
        await vr.iniciar_registro(mock_client, CHAT_ID, USER_ID, thread_id=5)
        assert vr.tiene_registro_en_proceso(USER_ID, CHAT_ID, 5)
        assert not vr.tiene_registro_en_proceso(USER_ID, CHAT_ID)


class TestFotos:
    @pytest.mark.asyncio
    async def test_photo_upload(self, registro_en_fotos):
        storage = fake_storage()
        with patch("vehicle_registration.get_r2_storage", return_value=storage):
            assert await send(registro_en_fotos, photo=MockPhoto()) is True

        fotos = state()["fotos"]
        assert len(fotos) == 1
        assert fotos[0]["key"].startswith("vehiculos/3VWHP6BU9RM073778/foto_1_")
        assert "Foto 1 guardada" in registro_en_fotos.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_text_while_waiting_photos(self, registro_en_fotos):
        assert await send(registro_en_fotos, "listo") is True
        assert "Envía una foto" in registro_en_fotos.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_upload_error(self, registro_en_fotos):
        storage = MagicMock()
        storage.upload_bytes.side_effect = RuntimeError("R2 caído")
        with patch("vehicle_registration.get_r2_storage", return_value=storage):
            await send(registro_en_fotos, photo=MockPhoto())
        assert state()["fotos"] == []
        assert "Error al subir la foto" in registro_en_fotos.sent_texts()[-1]


class TestFinalizar:
    @pytest.mark.asyncio
    async def test_requires_photo(self, registro_en_fotos):
        with patch("vehicle_registration.create_vehicle") as create:
            assert await vr.finalizar_registro(registro_en_fotos, CHAT_ID, USER_ID) is False
        create.assert_not_called()
        assert "sin fotos" in registro_en_fotos.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_requires_all_steps(self, mock_client):
        await vr.iniciar_registro(mock_client, CHAT_ID, USER_ID)
        assert await vr.finalizar_registro(mock_client, CHAT_ID, USER_ID) is False

    @pytest.mark.asyncio
    async def test_without_registration(self, mock_client):
        assert await vr.finalizar_registro(mock_client, CHAT_ID, USER_ID) is False

    @pytest.mark.asyncio
    async def test_creates_vehicle(self, registro_en_fotos):
        with patch("vehicle_registration.get_r2_storage", return_value=fake_storage()):
            await send(registro_en_fotos, photo=MockPhoto())

        with patch("vehicle_registration.create_vehicle", side_effect=lambda v: v.model_copy(update={"id": 42})) as create:
            assert await vr.finalizar_registro(registro_en_fotos, CHAT_ID, USER_ID) is True

        vehicle = create.call_args.args[0]
        assert vehicle.serie == "3VWHP6BU9RM073778"
        assert vehicle.estado_region == "JALISCO"
        assert len(vehicle.telefono) == 10
        assert len(vehicle.fotos) == 1
        assert vehicle.creado_via == "TELEGRAM_BOT"
        assert state() is None
        assert "REGISTRO COMPLETADO" in registro_en_fotos.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_titular_fallback(self, registro_en_fotos):
        with patch("vehicle_registration.get_r2_storage", return_value=fake_storage()):
            await send(registro_en_fotos, photo=MockPhoto())

        with patch("vehicle_registration.generar_datos_mexicanos", side_effect=RuntimeError("x")), \
             patch("vehicle_registration.create_vehicle", side_effect=lambda v: v) as create:
            await vr.finalizar_registro(registro_en_fotos, CHAT_ID, USER_ID)
        assert create.call_args.args[0].titular == "TITULAR PENDIENTE"

    @pytest.mark.asyncio
    async def test_duplicate_on_save(self, registro_en_fotos):
        with patch("vehicle_registration.get_r2_storage", return_value=fake_storage()):
            await send(registro_en_fotos, photo=MockPhoto())

        with patch("vehicle_registration.create_vehicle", side_effect=DuplicateVehicleError("Ya existe un vehículo con esa serie")):
            assert await vr.finalizar_registro(registro_en_fotos, CHAT_ID, USER_ID) is False
        assert state() is None


class TestCleanup:
    def test_cleanup_removes_inactive(self):
        vr.vehiculos_en_proceso.set("1:-1", {"iniciado": 100, "last_activity": 100})
        vr.vehiculos_en_proceso.set("2:-1", {"iniciado": 100, "last_activity": 5000})
        assert vr.VehicleRegistrationCleanup().cleanup(1000) == 1
        assert vr.vehiculos_en_proceso.has("2:-1")

    @pytest.mark.asyncio
    async def test_each_step_refreshes_activity(self, mock_client):
        await vr.iniciar_registro(mock_client, CHAT_ID, USER_ID)
        state()["iniciado"] = 100
        state()["last_activity"] = 100

        with patch("vehicle_registration.get_vehicle_by_serie", return_value=None):
            await send(mock_client, "3VWHP6BU9RM073778")

        assert state()["last_activity"] > 1000
        assert vr.VehicleRegistrationCleanup().cleanup(1000) == 0
        assert state()["estado"] == vr.ESPERANDO_MARCA
