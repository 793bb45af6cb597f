"""
Fixtures y mocks compartidos por las pruebas del bot de pólizas.

Proporciona:
- Mocks de Pyrogram (MockUser, MockChat, MockMessage, MockClient)
- Pólizas y vehículos de ejemplo
- Limpieza de los mapas de estado entre pruebas
"""

import asyncio
import io
import os
import sys
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

os.environ.setdefault("IS_TESTING", "true")
os.environ.setdefault("TIMEZONE", "America/Mexico_City")

# Agregar src al PYTHONPATH para importar los módulos
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from models import Archivo, Pago, Policy, Servicio, Vehicle  # noqa: E402


# ========================================
# MOCKS DE PYROGRAM
# ========================================

class MockUser:
    """Mock de pyrogram User."""
    def __init__(self, id: int = 100001, username: str = "operador"):
        self.id = id
        self.username = username


class MockChat:
    """Mock de pyrogram Chat."""
    def __init__(self, id: int = -100123):
        self.id = id


class MockPhoto:
    def __init__(self, file_id: str = "photo_1", file_size: int = 2048):
        self.file_id = file_id
        self.file_size = file_size


class MockDocument:
    def __init__(
        self,
        file_name: str = "poliza.pdf",
        mime_type: str = "application/pdf",
        file_id: str = "doc_1",
        file_size: int = 4096,
    ):
        self.file_name = file_name
        self.mime_type = mime_type
        self.file_id = file_id
        self.file_size = file_size


class MockLocation:
    def __init__(self, latitude: float, longitude: float):
        self.latitude = latitude
        self.longitude = longitude


class MockMessage:
    """Mock de pyrogram Message."""
    def __init__(
        self,
        text: str | None = "",
        from_user: MockUser | None = None,
        chat: MockChat | None = None,
        thread_id: int | None = None,
        photo: MockPhoto | None = None,
        document: MockDocument | None = None,
        location: MockLocation | None = None,
    ):
        self.text = text
        self.from_user = from_user or MockUser()
        self.chat = chat or MockChat()
        self.message_thread_id = thread_id
        self.reply_to_top_message_id = None
        self.photo = photo
        self.document = document
        self.location = location
        self.caption = None
        self.id = 123456

    async def reply_text(self, text: str, **kwargs):
        await asyncio.sleep(0)
        return MockMessage(text=text)

    async def edit_text(self, text: str, **kwargs):
        await asyncio.sleep(0)
        return self

    async def delete(self):
        await asyncio.sleep(0)
        return True


class MockClient:
    """Mock de pyrogram Client."""
    def __init__(self, media: bytes = b"\x89PNG fake"):
        self.send_message = AsyncMock(return_value=MockMessage())
        self.send_photo = AsyncMock(return_value=MockMessage())
        self.send_document = AsyncMock(return_value=MockMessage())
        self.edit_message_text = AsyncMock()
        self.download_media = AsyncMock(side_effect=lambda *a, **kw: io.BytesIO(media))

    def sent_texts(self) -> list[str]:
        """Textos enviados con send_message, en orden."""
        return [c.args[1] if len(c.args) > 1 else c.kwargs.get("text") for c in self.send_message.call_args_list]


# ========================================
# FIXTURES
# ========================================

@pytest.fixture
def mock_client():
    return MockClient()


@pytest.fixture
def archivo():
    return Archivo(
        url="https://files.example.com/vehiculos/ABC123/foto_1.jpg",
        key="vehiculos/ABC123/foto_1.jpg",
        size=1024,
        content_type="image/jpeg",
        original_name="foto_1.jpg",
    )


@pytest.fixture
def sample_vehicle(archivo):
    return Vehicle(
        id=7,
        serie="3VWHP6BU9RM073778",
        marca="VOLKSWAGEN",
        submarca="JETTA",
        anio=2022,
        color="BLANCO",
        placas="JAL-1234",
        titular="María López Pérez",
        telefono="3312345678",
        fotos=[archivo],
    )


@pytest.fixture
def sample_policy():
    return Policy(
        id=1,
        titular="Juan Pérez García",
        telefono="3311122233",
        marca="NISSAN",
        submarca="SENTRA",
        anio=2020,
        color="GRIS",
        serie="1N4AL3AP8JC123456",
        placas="JKL-9876",
        aseguradora="GNP",
        agente_cotizador="Laura",
        numero_poliza="POL-001",
        fecha_emision=datetime(2024, 1, 15),
        pagos=[Pago(monto=1500.0, fecha_pago=datetime(2024, 1, 15))],
        servicios=[
            Servicio(
                numero_servicio=1,
                costo=900.0,
                fecha_servicio=datetime(2024, 2, 1),
                numero_expediente="EXP-1",
                origen_destino="Centro - Zapopan",
                coordenadas={"origen": {"lat": 20.67, "lng": -103.35}, "destino": {"lat": 20.72, "lng": -103.39}},
            )
        ],
    )


@pytest.fixture(autouse=True)
def clean_states():
    """Vacía los mapas de estado de todos los flujos antes y después de cada prueba."""
    import config
    import ocupar_poliza
    import policy_assignment
    import vehicle_registration

    maps = [
        vehicle_registration.vehiculos_en_proceso,
        policy_assignment.asignaciones_en_proceso,
        ocupar_poliza.poliza_cache,
        ocupar_poliza.awaiting_phone_number,
        ocupar_poliza.phone_attempts,
        ocupar_poliza.awaiting_origen,
        ocupar_poliza.awaiting_destino,
        ocupar_poliza.awaiting_service_data,
        ocupar_poliza.awaiting_contact_time,
        ocupar_poliza.scheduled_service_info,
        ocupar_poliza.flow_states,
        ocupar_poliza.last_activity,
    ]
    for state_map in maps:
        state_map.clear()
    ocupar_poliza.processing_callbacks.clear()
    config.user_states.clear()
    yield
    for state_map in maps:
        state_map.clear()
    ocupar_poliza.processing_callbacks.clear()
    config.user_states.clear()
