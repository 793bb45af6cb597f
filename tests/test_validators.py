"""
Pruebas de validadores de formularios y del parser de texto libre.
"""

from datetime import datetime
from types import SimpleNamespace

import pytest

from conftest import MockDocument, MockMessage, MockPhoto
from parser import parse_amount, parse_coordinates, parse_excel_date, parse_policy_numbers, strip_accents
from validators import (
    SIN_PLACAS,
    validate_anio,
    validate_archivo_poliza,
    validate_aseguradora,
    validate_color,
    validate_contact_time,
    validate_expediente,
    validate_fecha,
    validate_marca,
    validate_monto,
    validate_phone,
    validate_placas,
    validate_serie,
)


class TestVehicleValidators:
    def test_serie_vin(self):
        ok, error, value = validate_serie(" 3vwhp6bu9rm073778 ")
        assert ok and error == ""
        assert value == {"serie": "3VWHP6BU9RM073778", "es_vin": True}

    def test_serie_short_non_vin(self):
        ok, _, value = validate_serie("AB 123")
        assert ok
        assert value["serie"] == "AB123"
        assert value["es_vin"] is False

    def test_serie_rejects(self):
        assert validate_serie("ab1")[0] is False
        assert validate_serie("ABC-12345")[0] is False
        assert validate_serie(None)[0] is False

    def test_marca_uppercase(self):
        assert validate_marca(" nissan ") == (True, "", "NISSAN")
        assert validate_marca("n")[0] is False

    def test_anio_range(self):
        now = datetime(2025, 6, 1)
        assert validate_anio("2027", now) == (True, "", 2027)
        assert validate_anio("2028", now)[0] is False
        assert validate_anio("1899", now)[0] is False
        assert validate_anio("dos mil", now)[0] is False

    def test_color(self):
        assert validate_color("rojo")[2] == "ROJO"
        assert validate_color("123")[0] is False

    def test_placas(self):
        for texto in ("", "n/a", "NA", "sin placas"):
            assert validate_placas(texto) == (True, "", SIN_PLACAS)
        assert validate_placas("jal-1234")[2] == "JAL-1234"
        assert validate_placas("AB")[0] is False
        assert validate_placas("ABCDEFGHIJK")[0] is False


class TestServiceValidators:
    def test_phone(self):
        assert validate_phone("3312345678") == (True, "", "3312345678")
        ok, error, _ = validate_phone("33123")
        assert not ok
        assert error.startswith("❌")

    def test_contact_time(self):
        assert validate_contact_time("09:05")[2] == (9, 5)
        assert validate_contact_time("23:59")[0]
        assert validate_contact_time("24:00")[0] is False
        assert validate_contact_time("9h")[0] is False

    def test_expediente(self):
        assert validate_expediente(" EXP-1 ")[2] == "EXP-1"
        ok, error, _ = validate_expediente("E1")
        assert not ok
        assert error.startswith("❌")

    def test_fecha(self):
        assert validate_fecha("15/01/2024")[2] == datetime(2024, 1, 15)
        assert validate_fecha("31/02/2024")[0] is False
        assert validate_fecha("2024-01-15")[0] is False

    def test_monto(self):
        assert validate_monto("$1,500.50")[2] == 1500.5
        assert validate_monto("0")[0] is False
        assert validate_monto("")[0] is False


class TestAseguradora:
    def test_uses_catalog_short_name(self):
        lookup = lambda texto: SimpleNamespace(nombre_corto="QUALITAS") if texto == "QUALITAS SEGUROS" else None
        assert validate_aseguradora("Quálitas Seguros", lookup) == (True, "", "QUALITAS")

    def test_unknown_is_uppercased(self):
        assert validate_aseguradora("nueva", lambda texto: None) == (True, "", "NUEVA")

    def test_lookup_error_does_not_fail(self):
        def broken(texto):
            raise RuntimeError("db caída")

        assert validate_aseguradora("gnp", broken) == (True, "", "GNP")

    def test_too_short(self):
        assert validate_aseguradora("g", lambda t: None)[0] is False


class TestArchivoPoliza:
    def test_pdf(self):
        ok, _, value = validate_archivo_poliza(MockMessage(document=MockDocument()))
        assert ok
        assert value["type"] == "pdf"
        assert value["file_name"] == "poliza.pdf"

    def test_photo(self):
        ok, _, value = validate_archivo_poliza(MockMessage(photo=MockPhoto()))
        assert ok
        assert value["type"] == "photo"
        assert value["mime_type"] == "image/jpeg"

    def test_other_document(self):
        msg = MockMessage(document=MockDocument(file_name="a.zip", mime_type="application/zip"))
        ok, error, _ = validate_archivo_poliza(msg)
        assert not ok
        assert "application/zip" in error

    def test_nothing(self):
        assert validate_archivo_poliza(MockMessage(text="hola"))[0] is False


class TestParser:
    def test_coordinates_pair(self):
        assert parse_coordinates("20.6736, -103.344") == {"lat": 20.6736, "lng": -103.344}

    def test_coordinates_google_maps(self):
        assert parse_coordinates("https://www.google.com/maps/@20.67,-103.35,15z") == {"lat": 20.67, "lng": -103.35}
        assert parse_coordinates("https://maps.google.com/?q=20.5,-103.1") == {"lat": 20.5, "lng": -103.1}
        assert parse_coordinates("https://www.google.com/maps/place/x/data=!3d20.1!4d-103.2") == {
            "lat": 20.1, "lng": -103.2
        }

    def test_coordinates_invalid(self):
        assert parse_coordinates("95, 10") is None
        assert parse_coordinates("centro de la ciudad") is None
        assert parse_coordinates(None) is None

    def test_amount(self):
        assert parse_amount("$ 2,300") == 2300.0
        assert parse_amount("450,50", allow_decimal_comma=True) == 450.5
        assert parse_amount("1,500", allow_decimal_comma=True) == 1500.0
        assert parse_amount("450,50") == 45050.0
        assert parse_amount("abc") is None

    @pytest.mark.parametrize("texto, esperado", [
        ("1.500,50", 1500.5),
        ("12.345.678,9", 12345678.9),
        ("1,250.50", 1250.5),
        ("1.500", 1.5),
        ("1.500,505", None),
        ("1.5,50", None),
    ])
    def test_amount_with_dot_thousands(self, texto, esperado):
        assert parse_amount(texto, allow_decimal_comma=True) == esperado

    def test_amount_comma_after_dot_without_decimal_comma(self):
        assert parse_amount("1.500,50") is None

    def test_policy_numbers(self):
        assert parse_policy_numbers("pol-1, POL-2\npol-1  pol-3") == ["POL-1", "POL-2", "POL-3"]
        assert parse_policy_numbers("") == []

    def test_excel_dates(self):
        assert parse_excel_date(datetime(2024, 3, 1)) == datetime(2024, 3, 1)
        assert parse_excel_date(45292) == datetime(2024, 1, 1)
        assert parse_excel_date("05/02/24") == datetime(2024, 2, 5)
        assert parse_excel_date("05-02-2024") == datetime(2024, 2, 5)
        assert parse_excel_date("2024-02-05") == datetime(2024, 2, 5)
        assert parse_excel_date("32/01/2024") is None
        assert parse_excel_date("mañana") is None
        assert parse_excel_date("") is None

    def test_strip_accents(self):
        assert strip_accents("Árbol Ñandú") == "Arbol Nandu"
