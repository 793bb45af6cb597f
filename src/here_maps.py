"""
Cliente de HERE Maps: cálculo de rutas y geocodificación inversa.

Los errores de red o de la API nunca se propagan a los flujos: se registra un
warning y se devuelve un resultado aproximado (Haversine o coordenadas).
"""

import asyncio
import logging
import math
from typing import Any

import aiohttp

from config import HERE_API_KEY, HERE_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

ROUTING_URL = "https://router.hereapi.com/v8/routes"
REVGEOCODE_URL = "https://revgeocode.search.hereapi.com/v1/revgeocode"
EARTH_RADIUS_KM = 6371


def calculate_haversine_distance(origen: dict[str, float], destino: dict[str, float]) -> float:
    """Distancia en km en línea recta, redondeada a 2 decimales."""
    d_lat = math.radians(destino["lat"] - origen["lat"])
    d_lng = math.radians(destino["lng"] - origen["lng"])
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(origen["lat"])) * math.cos(math.radians(destino["lat"])) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(EARTH_RADIUS_KM * c, 2)


def generate_google_maps_url(origen: dict[str, float], destino: dict[str, float]) -> str:
    return f"https://www.google.com/maps/dir/{origen['lat']},{origen['lng']}/{destino['lat']},{destino['lng']}"


def format_ubicacion_corta(address: dict[str, Any]) -> str:
    """"Colonia - Municipio", o lo que haya disponible."""
    colonia = address.get("district") or address.get("subDistrict") or ""
    municipio = address.get("city") or address.get("county") or ""
    if colonia and municipio:
        return f"{colonia} - {municipio}"
    return municipio or colonia or address.get("label") or "Ubicación desconocida"


def fallback_geocode(lat: float, lng: float) -> dict[str, Any]:
    return {
        "colonia": "",
        "municipio": "",
        "estado": "",
        "pais": "",
        "codigo_postal": "",
        "direccion_completa": f"{lat}, {lng}",
        "ubicacion_corta": f"{lat:.4f}, {lng:.4f}",
        "fallback": True,
    }


def approximate_route(origen: dict[str, float], destino: dict[str, float]) -> dict[str, Any]:
    """Ruta aproximada: ~2 minutos por km en ciudad."""
    distancia = calculate_haversine_distance(origen, destino)
    return {
        "distancia_km": distancia,
        "tiempo_minutos": round(distancia * 2),
        "google_maps_url": generate_google_maps_url(origen, destino),
        "aproximado": True,
    }


def build_service_legend(policy: Any, origen_texto: str, destino_texto: str, google_maps_url: str) -> str:
    """Leyenda de nuevo servicio que se envía al grupo de operación."""
    return (
        "⚡️⚡️⚡️⚡️⚡️⚡️⚡️⚡️⚡️⚡️⚡️⚡️⚡️⚡️\n"
        f"🔥 A L E R T A.    {policy.aseguradora} 🔥\n"
        "🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀\n\n"
        f"🚗 {policy.marca} - {policy.submarca} - {policy.anio or ''}\n\n"
        f"🔸 ORIGEN: {origen_texto}\n"
        f"🔸 DESTINO: {destino_texto}\n\n"
        f"🗺️ {google_maps_url}\n\n"
        "🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀\n"
        "🌟 S E R V I C I O     A C T I V O 🌟\n"
        "🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀🚀"
    )


class HereMapsService:
    """
    Cliente asíncrono de HERE Maps sobre una sesión aiohttp compartida.

    Sin API key configurada todas las llamadas usan directamente los fallbacks.
    """

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        self.api_key = api_key if api_key is not None else HERE_API_KEY
        self.timeout = aiohttp.ClientTimeout(total=timeout or HERE_TIMEOUT_SECONDS)
        self._session: aiohttp.ClientSession | None = None
        if not self.api_key:
            logger.warning("HERE_API_KEY no configurada: se usarán rutas aproximadas")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def _get_json(self, url: str, params: dict[str, str]) -> dict[str, Any]:
        session = await self._get_session()
        async with session.get(url, params={**params, "apikey": self.api_key}) as response:
            if response.status != 200:
                text = await response.text()
                raise RuntimeError(f"HERE Maps API error {response.status}: {text[:200]}")
            return await response.json()

    async def calculate_route(self, origen: dict[str, float], destino: dict[str, float]) -> dict[str, Any]:
        """
        Calcula la ruta en coche entre dos puntos.

        Args:
            origen: {"lat", "lng"}
            destino: {"lat", "lng"}

        Returns:
            dict: distancia_km, tiempo_minutos, google_maps_url, aproximado
        """
        if not self.api_key:
            return approximate_route(origen, destino)

        try:
            data = await self._get_json(ROUTING_URL, {
                "origin": f"{origen['lat']},{origen['lng']}",
                "destination": f"{destino['lat']},{destino['lng']}",
                "transportMode": "car",
                "return": "summary",
            })
            routes = data.get("routes") or []
            if not routes:
                raise RuntimeError("No se encontraron rutas")
            summary = routes[0]["sections"][0]["summary"]
            resultado = {
                "distancia_km": round(summary["length"] / 1000, 2),
                "tiempo_minutos": round(summary["duration"] / 60),
                "google_maps_url": generate_google_maps_url(origen, destino),
                "aproximado": False,
            }
            logger.info(f"Ruta calculada: {resultado['distancia_km']}km, {resultado['tiempo_minutos']}min")
            return resultado
        except (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError, KeyError, IndexError) as e:
            resultado = approximate_route(origen, destino)
            logger.warning(
                f"Error calculando ruta con HERE Maps ({e}); usando aproximación: "
                f"{resultado['distancia_km']}km, {resultado['tiempo_minutos']}min"
            )
            return resultado

    async def reverse_geocode(self, lat: float, lng: float) -> dict[str, Any]:
        if not self.api_key:
            return fallback_geocode(lat, lng)

        try:
            data = await self._get_json(REVGEOCODE_URL, {"at": f"{lat},{lng}", "lang": "es-MX"})
            items = data.get("items") or []
            if not items:
                raise RuntimeError("Sin resultados de geocodificación")
            item = items[0]
            address = item.get("address", {})
            resultado = {
                "colonia": address.get("district") or address.get("subDistrict") or "",
                "municipio": address.get("city") or address.get("county") or "",
                "estado": address.get("state", ""),
                "pais": address.get("countryName", ""),
                "codigo_postal": address.get("postalCode", ""),
                "direccion_completa": item.get("title", ""),
                "ubicacion_corta": format_ubicacion_corta(address),
                "fallback": False,
            }
            logger.info(f"Geocoding reverso exitoso: {resultado['ubicacion_corta']}")
            return resultado
        except (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError) as e:
            logger.warning(f"Error en geocoding reverso ({lat}, {lng}): {e}")
            return fallback_geocode(lat, lng)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


_here_service: HereMapsService | None = None


def get_here_maps_service() -> HereMapsService:
    global _here_service
    if _here_service is None:
        _here_service = HereMapsService()
    return _here_service
