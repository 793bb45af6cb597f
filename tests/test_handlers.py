"""
Pruebas de los handlers: avisos de un solo paso, ficha de póliza y
enrutamiento de callbacks hacia los flujos.
"""

from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import handlers
from config import user_states
from conftest import MockDocument, MockMessage, MockPhoto, MockUser
from constants import ERROR_NO_PERMISSION
from models import EstadoPoliza, Servicio

USER_ID = 100001
CHAT_ID = -100123


def text(texto):
    return MockMessage(text=texto, from_user=MockUser(USER_ID))


def callback(data, user_id=USER_ID):
    message = MockMessage(text="menú")
    message.edit_text = AsyncMock()
    return SimpleNamespace(data=data, message=message, from_user=MockUser(user_id), answer=AsyncMock())


def set_step(step, **data):
    handlers.set_user_state(USER_ID, step, CHAT_ID, None, **data)


class TestParsers:
    def test_service_with_date(self):
        ok, error, datos = handlers.parse_service_data("EXP-9\nCentro - Zapopan\n1,250.50\n05/03/2024")
        assert ok, error
        assert datos == {
            "numero_expediente": "EXP-9",
            "origen_destino": "Centro - Zapopan",
            "costo": 1250.5,
            "fecha_servicio": datetime(2024, 3, 5),
        }

    def test_service_without_date_uses_now(self):
        ok, _, datos = handlers.parse_service_data("EXP-9\nA - B\n900")
        assert ok
        assert datos["fecha_servicio"].tzinfo is not None

    @pytest.mark.parametrize("texto,error", [
        ("EXP-9\nA - B", "Formato inválido"),
        ("EXP-9\nA - B\ncero", "Costo inválido"),
        ("EX\nA - B\n900", "expediente inválido"),
        ("EXP-9\nA - B\n900\nayer", "Formato de fecha inválido"),
    ])
    def test_service_errors(self, texto, error):
        ok, mensaje, datos = handlers.parse_service_data(texto)
        assert not ok
        assert datos is None
        assert error in mensaje

    def test_payment(self):
        ok, _, datos = handlers.parse_payment_data("$1,500\n01/02/2024")
        assert ok
        assert datos == {"monto": 1500.0, "fecha_pago": datetime(2024, 2, 1)}

    def test_payment_decimal_comma(self):
        assert handlers.parse_payment_data("450,50")[2]["monto"] == 450.5

    @pytest.mark.parametrize("texto", ["", "-20", "mil pesos"])
    def test_payment_invalid(self, texto):
        assert handlers.parse_payment_data(texto)[0] is False


class TestPolicyInfo:
    def test_format(self, sample_policy):
        info = handlers.format_policy_info(sample_policy)
        assert "*Número:* POL-001" in info
        assert "*Titular:* JUAN PÉREZ GARCÍA" in info
        assert "*Servicios:* 1" in info
        assert "*Último Servicio:* 01/02/2024" in info
        assert "*Origen/Destino:* Centro - Zapopan" in info
        assert "*Pagos:* 1 pago(s), total $1,500.00" in info
        assert "NIV" not in info

    def test_without_phone_or_services(self, sample_policy):
        policy = sample_policy.model_copy(update={"telefono": "", "servicios": [], "pagos": []})
        info = handlers.format_policy_info(policy)
        assert "SIN NÚMERO" in info
        assert "Sin servicios registrados" in info
        assert "Sin pagos registrados" in info

    @pytest.mark.asyncio
    async def test_not_found(self, mock_client):
        with patch("handlers.get_policy_by_number", return_value=None):
            assert await handlers.show_policy_info(mock_client, CHAT_ID, " pol-9 ") is False
        assert "PÓLIZA NO ENCONTRADA" in mock_client.sent_texts()[0]
        assert "POL-9" in mock_client.sent_texts()[0]


class TestTextSteps:
    @pytest.mark.asyncio
    async def test_consulta(self, mock_client, sample_policy):
        set_step(handlers.PASO_CONSULTA)
        with patch("handlers.get_policy_by_number", return_value=sample_policy):
            await handlers.handle_authorized_text(mock_client, text("pol-001"))
        assert USER_ID not in user_states
        assert "Información de la Póliza" in mock_client.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_other_chat_is_ignored(self, mock_client):
        handlers.set_user_state(USER_ID, handlers.PASO_CONSULTA, -999)
        await handlers.handle_authorized_text(mock_client, text("POL-001"))
        mock_client.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_topic_is_ignored(self, mock_client):
        handlers.set_user_state(USER_ID, handlers.PASO_CONSULTA, CHAT_ID, 42)
        with patch("handlers.get_policy_by_number") as get_policy:
            await handlers.handle_authorized_text(
                mock_client, MockMessage(text="POL-001", from_user=MockUser(USER_ID), thread_id=77)
            )
        get_policy.assert_not_called()
        mock_client.send_message.assert_not_called()
        assert user_states[USER_ID]["step"] == handlers.PASO_CONSULTA

    @pytest.mark.asyncio
    async def test_same_topic_continues(self, mock_client, sample_policy):
        handlers.set_user_state(USER_ID, handlers.PASO_CONSULTA, CHAT_ID, 42)
        with patch("handlers.get_policy_by_number", return_value=sample_policy):
            await handlers.handle_authorized_text(
                mock_client, MockMessage(text="POL-001", from_user=MockUser(USER_ID), thread_id=42)
            )
        assert USER_ID not in user_states

    def test_active_state_requires_same_chat_and_topic(self):
        handlers.set_user_state(USER_ID, handlers.PASO_CONSULTA, CHAT_ID, 42)
        assert handlers.get_active_user_state(USER_ID, CHAT_ID, 42)["step"] == handlers.PASO_CONSULTA
        assert handlers.get_active_user_state(USER_ID, CHAT_ID) is None
        assert handlers.get_active_user_state(USER_ID, -999, 42) is None

    @pytest.mark.asyncio
    async def test_payment(self, mock_client, sample_policy):
        set_step(handlers.PASO_PAGO_POLIZA)
        with patch("handlers.get_policy_by_number", return_value=sample_policy):
            await handlers.handle_authorized_text(mock_client, text("pol-001"))
        assert user_states[USER_ID]["step"] == handlers.PASO_PAGO_DATOS
        assert user_states[USER_ID]["numero_poliza"] == "POL-001"

        with patch("handlers.add_payment", return_value=sample_policy) as add:
            await handlers.handle_authorized_text(mock_client, text("1500\n01/03/2024"))
        add.assert_called_once_with("POL-001", 1500.0, datetime(2024, 3, 1))
        assert USER_ID not in user_states
        assert "Pago de $1,500.00" in mock_client.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_invalid_payment_keeps_step(self, mock_client):
        set_step(handlers.PASO_PAGO_DATOS, numero_poliza="POL-001")
        with patch("handlers.add_payment") as add:
            await handlers.handle_authorized_text(mock_client, text("mucho"))
        add.assert_not_called()
        assert user_states[USER_ID]["step"] == handlers.PASO_PAGO_DATOS

    @pytest.mark.asyncio
    async def test_service(self, mock_client, sample_policy):
        set_step(handlers.PASO_SERVICIO_DATOS, numero_poliza="POL-001")
        nuevo = Servicio(numero_servicio=2, costo=900, fecha_servicio=datetime(2024, 3, 5),
                         numero_expediente="EXP-9", origen_destino="A - B")
        updated = sample_policy.model_copy(update={"servicios": [*sample_policy.servicios, nuevo]})

        with patch("handlers.add_service", return_value=updated) as add:
            await handlers.handle_authorized_text(mock_client, text("EXP-9\nA - B\n900\n05/03/2024"))

        assert add.call_args.args == ("POL-001",)
        assert add.call_args.kwargs["costo"] == 900.0
        assert "servicio #2" in mock_client.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_delete_flow(self, mock_client, sample_policy):
        set_step(handlers.PASO_ELIMINAR_POLIZAS)
        encontrada = lambda n: sample_policy if n == "POL-001" else None
        with patch("handlers.get_policy_by_number", side_effect=encontrada):
            await handlers.handle_authorized_text(mock_client, text("pol-001, pol-404"))
        assert "POL-404" in mock_client.sent_texts()[-2]
        assert user_states[USER_ID]["numeros"] == ["POL-001"]

        with patch("handlers.mark_policy_as_deleted", return_value=True) as delete:
            await handlers.handle_authorized_text(mock_client, text("ninguno"))
        delete.assert_called_once_with("POL-001", "")
        assert "1 póliza(s) marcada(s)" in mock_client.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_restore(self, mock_client, sample_policy):
        eliminada = sample_policy.model_copy(update={"estado": EstadoPoliza.ELIMINADO})
        with patch("handlers.get_policy_any_state", return_value=eliminada), \
             patch("handlers.restore_policy", return_value=sample_policy) as restore:
            await handlers.handle_restore(mock_client, USER_ID, CHAT_ID, "pol-001")
        restore.assert_called_once_with("POL-001")
        assert "restaurada" in mock_client.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_restore_active_policy(self, mock_client, sample_policy):
        with patch("handlers.get_policy_any_state", return_value=sample_policy), \
             patch("handlers.restore_policy") as restore:
            await handlers.handle_restore(mock_client, USER_ID, CHAT_ID, "POL-001")
        restore.assert_not_called()
        assert "no está eliminada" in mock_client.sent_texts()[-1]


class TestMedia:
    @pytest.mark.asyncio
    async def test_upload_pdf_to_policy(self, mock_client):
        set_step(handlers.PASO_SUBIR_ARCHIVOS, numero_poliza="POL-001", subidos=0)
        storage = MagicMock()
        storage.upload_policy_pdf.return_value = {"url": "https://files/p.pdf", "key": "pdfs/POL-001/p.pdf"}
        message = MockMessage(text=None, from_user=MockUser(USER_ID), document=MockDocument())

        with patch("handlers.get_r2_storage", return_value=storage), \
             patch("handlers.add_file_to_policy", return_value=True) as add:
            await handlers.handle_media(mock_client, message)

        storage.upload_policy_pdf.assert_called_once()
        assert add.call_args.args[:2] == ("POL-001", "pdfs")
        assert user_states[USER_ID]["subidos"] == 1
        assert "PDF guardado" in mock_client.sent_texts()[-1]

    @pytest.mark.asyncio
    async def test_upload_photo(self, mock_client):
        set_step(handlers.PASO_SUBIR_ARCHIVOS, numero_poliza="POL-001")
        storage = MagicMock()
        message = MockMessage(text=None, from_user=MockUser(USER_ID), photo=MockPhoto())
        with patch("handlers.get_r2_storage", return_value=storage), \
             patch("handlers.add_file_to_policy", return_value=True) as add:
            await handlers.handle_media(mock_client, message)
        assert add.call_args.args[1] == "fotos"

    @pytest.mark.asyncio
    async def test_import_excel(self, mock_client):
        set_step(handlers.PASO_IMPORTAR)
        message = MockMessage(text=None, from_user=MockUser(USER_ID), document=MockDocument(file_name="p.xlsx"))
        with patch("excel_import.procesar_excel", new=AsyncMock(return_value=True)) as procesar:
            await handlers.handle_media(mock_client, message)
        procesar.assert_awaited_once_with(mock_client, message)
        assert USER_ID not in user_states


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_admin_action_denied(self, mock_client):
        query = callback("accion:exportar")
        with patch("handlers.is_admin", return_value=False), \
             patch("handlers.handle_export") as export:
            await handlers.handle_callback(mock_client, query)
        query.answer.assert_awaited_once_with(ERROR_NO_PERMISSION, show_alert=True)
        export.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_policy_denied(self, mock_client):
        query = callback("deletePolicy:POL-001")
        with patch("handlers.is_admin", return_value=False):
            await handlers.handle_callback(mock_client, query)
        assert USER_ID not in user_states

    @pytest.mark.asyncio
    async def test_menu_edit(self, mock_client):
        query = callback("accion:polizas")
        await handlers.handle_callback(mock_client, query)
        assert "PÓLIZAS" in query.message.edit_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_consultar_sets_step(self, mock_client):
        await handlers.handle_callback(mock_client, callback("accion:consultar"))
        assert user_states[USER_ID]["step"] == handlers.PASO_CONSULTA
        assert user_states[USER_ID]["chat_id"] == CHAT_ID

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data,target,args", [
        ("asig_yes_POL-1_2", "ocupar_poliza.asignar_registro", (CHAT_ID, "POL-1", 2, None)),
        ("asig_no_POL_X_3", "ocupar_poliza.no_asignar_registro", (CHAT_ID, "POL_X", 3, None)),
        ("contactoManual:POL-1:4", "ocupar_poliza.iniciar_contacto_manual", (CHAT_ID, "POL-1", 4, None)),
        ("selectDay:1:POL-1", "ocupar_poliza.seleccionar_dia", (CHAT_ID, 1, "POL-1", None)),
        ("cancelSelectDay:POL-1", "ocupar_poliza.cancelar_seleccion_dia", (CHAT_ID, "POL-1", None)),
        ("ocuparPoliza:POL-1", "ocupar_poliza.iniciar_ocupar", (CHAT_ID, "POL-1", None)),
        ("keepPhone:POL-1", "ocupar_poliza.keep_phone", (CHAT_ID, "POL-1", None)),
        ("changePhone:POL-1", "ocupar_poliza.change_phone", (CHAT_ID, "POL-1", None)),
        ("registrar_servicio_POL-1", "ocupar_poliza.registrar_servicio", (CHAT_ID, "POL-1", None)),
        ("no_registrar_POL-1", "ocupar_poliza.no_registrar", (CHAT_ID, "POL-1", None)),
        ("vehiculos_pag_3", "policy_assignment.mostrar_vehiculos_disponibles", (CHAT_ID, 3, None)),
        ("asignar_7", "policy_assignment.iniciar_asignacion", (CHAT_ID, USER_ID, 7, None)),
        ("fecha_emision_2024-05-01", "policy_assignment.seleccionar_fecha_emision", (CHAT_ID, USER_ID, "2024-05-01", None)),
        ("vehiculo_finalizar", "vehicle_registration.finalizar_registro", (CHAT_ID, USER_ID, None)),
        ("base_autos:registrar", "vehicle_registration.iniciar_registro", (CHAT_ID, USER_ID, None)),
    ])
    async def test_routing(self, mock_client, data, target, args):
        with patch(target, new=AsyncMock()) as handler:
            await handlers.handle_callback(mock_client, callback(data))
        handler.assert_awaited_once_with(mock_client, *args)

    @pytest.mark.asyncio
    async def test_cancel(self, mock_client):
        set_step(handlers.PASO_CONSULTA)
        await handlers.handle_cancel(mock_client, USER_ID, CHAT_ID)
        assert USER_ID not in user_states
        assert mock_client.sent_texts()[-1] == "❌ Proceso cancelado."

    @pytest.mark.asyncio
    async def test_cancel_without_process(self, mock_client):
        await handlers.handle_cancel(mock_client, USER_ID, CHAT_ID)
        assert "No hay ningún proceso activo" in mock_client.sent_texts()[-1]


class TestReports:
    @pytest.mark.asyncio
    async def test_export(self, mock_client, sample_policy):
        with patch("handlers.get_active_policies", return_value=[sample_policy]):
            await handlers.handle_export(mock_client, CHAT_ID)
        document = mock_client.send_document.call_args.args[1]
        assert document.name.startswith("polizas_") and document.name.endswith(".xlsx")
        assert "1 póliza(s)" in mock_client.send_document.call_args.kwargs["caption"]

    @pytest.mark.asyncio
    async def test_export_empty(self, mock_client):
        with patch("handlers.get_active_policies", return_value=[]):
            await handlers.handle_export(mock_client, CHAT_ID)
        mock_client.send_document.assert_not_called()

    @pytest.mark.asyncio
    async def test_payments_pdf(self, mock_client, sample_policy):
        with patch("handlers.get_active_policies", return_value=[sample_policy]):
            await handlers.handle_report_payments_pdf(mock_client, CHAT_ID)
        document = mock_client.send_document.call_args.args[1]
        assert document.getvalue().startswith(b"%PDF")

    @pytest.mark.asyncio
    async def test_notifications_list_empty(self, mock_client):
        manager = MagicMock()
        manager.get_pending_notifications = AsyncMock(return_value=[])
        with patch("notification_manager.get_notification_manager", return_value=manager):
            await handlers.handle_notifications_list(mock_client, CHAT_ID)
        assert "No hay notificaciones" in mock_client.sent_texts()[-1]
