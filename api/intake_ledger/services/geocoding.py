from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any
from urllib.parse import quote

import httpx

from intake_ledger.core.config import get_settings

logger = logging.getLogger(__name__)


class GeocodingError(Exception):
    """Raised when the geocoding service does not return a usable match."""


@dataclass(slots=True)
class GeocodeResult:
    coordinates: list[float]
    place_name: str | None = None


class MapboxGeocoder:
    def __init__(
        self,
        access_token: str | None,
        *,
        base_url: str = "https://api.mapbox.com",
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def geocode(self, address: str) -> GeocodeResult:
        if not self.access_token:
            raise GeocodingError("IL_MAPBOX_ACCESS_TOKEN is required")
        if not isinstance(address, str) or not address.strip():
            raise GeocodingError("address must be a non-empty string")

        url = f"{self.base_url}/geocoding/v5/mapbox.places/{quote(address.strip(), safe='')}.json"
        params = {"types": "address", "access_token": self.access_token}

        try:
            if self._client is not None:
                response = await self._client.get(url, params=params)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.get(url, params=params)
        except httpx.HTTPError as exc:
            raise GeocodingError(f"geocoding request failed: {exc.__class__.__name__}") from exc

        if not response.is_success:
            raise GeocodingError(f"geocoding service returned status {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise GeocodingError("geocoding service returned invalid JSON") from exc

        return _first_match(payload)


def _first_match(payload: Any) -> GeocodeResult:
    features = payload.get("features") if isinstance(payload, dict) else None
    if not isinstance(features, list) or not features:
        raise GeocodingError("geocoding service returned no matches")

    first = features[0] if isinstance(features[0], dict) else {}
    geometry = first.get("geometry")
    coordinates = geometry.get("coordinates") if isinstance(geometry, dict) else None
    if (
        not isinstance(coordinates, list)
        or len(coordinates) < 2
        or not all(isinstance(value, (int, float)) and not isinstance(value, bool) for value in coordinates)
    ):
        raise GeocodingError("geocoding match has no coordinate pair")

    place_name = first.get("place_name")
    return GeocodeResult(
        coordinates=list(coordinates),
        place_name=place_name if isinstance(place_name, str) else None,
    )


@lru_cache
def get_geocoder() -> MapboxGeocoder:
    settings = get_settings()
    return MapboxGeocoder(
        settings.mapbox_access_token,
        base_url=settings.mapbox_base_url,
        timeout_seconds=settings.geocode_timeout_seconds,
    )
