"""
Pruebas del cliente HERE Maps y sus resultados aproximados.
"""

from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from here_maps import (
    HereMapsService,
    approximate_route,
    build_service_legend,
    calculate_haversine_distance,
    fallback_geocode,
    format_ubicacion_corta,
    generate_google_maps_url,
)

GDL = {"lat": 20.6767, "lng": -103.3475}
CDMX = {"lat": 19.4326, "lng": -99.1332}


class TestHelpers:
    def test_haversine(self):
        assert calculate_haversine_distance(GDL, GDL) == 0
        distancia = calculate_haversine_distance(GDL, CDMX)
        assert 450 < distancia < 470
        assert distancia == calculate_haversine_distance(CDMX, GDL)

    def test_google_maps_url(self):
        assert generate_google_maps_url(GDL, CDMX) == (
            "https://www.google.com/maps/dir/20.6767,-103.3475/19.4326,-99.1332"
        )

    def test_ubicacion_corta(self):
        assert format_ubicacion_corta({"district": "Providencia", "city": "Guadalajara"}) == "Providencia - Guadalajara"
        assert format_ubicacion_corta({"city": "Zapopan"}) == "Zapopan"
        assert format_ubicacion_corta({"label": "Jalisco, México"}) == "Jalisco, México"
        assert format_ubicacion_corta({}) == "Ubicación desconocida"

    def test_fallback_geocode(self):
        geo = fallback_geocode(20.123456, -103.987654)
        assert geo["fallback"] is True
        assert geo["ubicacion_corta"] == "20.1235, -103.9877"

    def test_approximate_route(self):
        ruta = approximate_route(GDL, CDMX)
        assert ruta["aproximado"] is True
        assert ruta["tiempo_minutos"] == round(ruta["distancia_km"] * 2)

    def test_legend(self, sample_policy):
        leyenda = build_service_legend(sample_policy, "Centro", "Zapopan", "https://maps")
        assert "GNP" in leyenda
        assert "NISSAN - SENTRA - 2020" in leyenda
        assert "🔸 ORIGEN: Centro" in leyenda
        assert "🔸 DESTINO: Zapopan" in leyenda


class TestHereMapsService:
    @pytest.mark.asyncio
    async def test_without_api_key_uses_fallbacks(self):
        service = HereMapsService(api_key="")
        ruta = await service.calculate_route(GDL, CDMX)
        assert ruta["aproximado"] is True
        geo = await service.reverse_geocode(20.0, -103.0)
        assert geo["fallback"] is True

    @pytest.mark.asyncio
    async def test_route_from_api(self):
        service = HereMapsService(api_key="key")
        data = {"routes": [{"sections": [{"summary": {"length": 12340, "duration": 1500}}]}]}
        with patch.object(service, "_get_json", AsyncMock(return_value=data)):
            ruta = await service.calculate_route(GDL, CDMX)
        assert ruta == {
            "distancia_km": 12.34,
            "tiempo_minutos": 25,
            "google_maps_url": generate_google_maps_url(GDL, CDMX),
            "aproximado": False,
        }

    @pytest.mark.asyncio
    async def test_route_api_error_falls_back(self):
        service = HereMapsService(api_key="key")
        with patch.object(service, "_get_json", AsyncMock(side_effect=aiohttp.ClientError("down"))):
            ruta = await service.calculate_route(GDL, CDMX)
        assert ruta["aproximado"] is True

    @pytest.mark.asyncio
    async def test_route_without_results_falls_back(self):
        service = HereMapsService(api_key="key")
        with patch.object(service, "_get_json", AsyncMock(return_value={"routes": []})):
            ruta = await service.calculate_route(GDL, CDMX)
        assert ruta["aproximado"] is True

    @pytest.mark.asyncio
    async def test_reverse_geocode_from_api(self):
        service = HereMapsService(api_key="key")
        data = {"items": [{
            "title": "Av. Chapultepec 100, Americana, Guadalajara",
            "address": {"district": "Americana", "city": "Guadalajara", "state": "Jalisco", "postalCode": "44160"},
        }]}
        with patch.object(service, "_get_json", AsyncMock(return_value=data)):
            geo = await service.reverse_geocode(20.67, -103.36)
        assert geo["ubicacion_corta"] == "Americana - Guadalajara"
        assert geo["codigo_postal"] == "44160"
        assert geo["fallback"] is False

    @pytest.mark.asyncio
    async def test_reverse_geocode_error_falls_back(self):
        service = HereMapsService(api_key="key")
        with patch.object(service, "_get_json", AsyncMock(side_effect=RuntimeError("HERE Maps API error 401"))):
            geo = await service.reverse_geocode(20.67, -103.36)
        assert geo["fallback"] is True
