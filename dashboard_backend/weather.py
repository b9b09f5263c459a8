from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import requests

from .errors import WeatherLookupError
from .utils import to_finite_float

logger = logging.getLogger("dashboard.weather")


class WeatherClient:
    """OpenWeatherMap geocoding and current-conditions lookups."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openweathermap.org",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        # Every lookup failure is reported as WeatherLookupError.
        if not self._api_key:
            raise WeatherLookupError("Weather lookup is not configured (WEATHER_API_KEY missing)")
        query = dict(params, appid=self._api_key)
        try:
            response = self._session.get(f"{self._base_url}{path}", params=query, timeout=self._timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            raise WeatherLookupError(f"Weather service request failed: {exc}") from exc
        except ValueError as exc:
            raise WeatherLookupError("Weather service returned invalid JSON") from exc

    def geocode_city(self, city: str) -> Tuple[float, float]:
        """Purpose: Resolve a city name to (lat, lon).
        Inputs/Outputs: Input is the city name; output is a coordinate tuple.
        Side Effects / State: One HTTP request to the geocoding API.
        Dependencies: Uses requests via _get_json.
        Failure Modes: Unknown city or transport failure raises WeatherLookupError.
        If Removed: get_weather only works with explicit coordinates.
        Testing Notes: Fake the session to return [] and expect WeatherLookupError.
        """
        # Take the best match only.
        data = self._get_json("/geo/1.0/direct", {"q": city, "limit": 1})
        if not isinstance(data, list) or not data:
            raise WeatherLookupError(f"No coordinates found for {city}")
        try:
            return float(data[0]["lat"]), float(data[0]["lon"])
        except (KeyError, TypeError, ValueError) as exc:
            raise WeatherLookupError(f"Geocoding response for {city} is malformed") from exc

    def get_weather(self, lat: float, lon: float) -> Dict[str, Any]:
        """Purpose: Fetch current conditions for a coordinate pair.
        Inputs/Outputs: Inputs are lat/lon; output is {description, icon, temp, coordinates}.
        Side Effects / State: One HTTP request to the weather API (metric units).
        Dependencies: Uses requests via _get_json.
        Failure Modes: Transport or payload errors raise WeatherLookupError.
        If Removed: Weather widgets cannot show temperatures.
        Testing Notes: Verify missing fields fall back to "unknown"/"01d"/0.
        """
        # Missing optional fields get neutral defaults.
        data = self._get_json("/data/2.5/weather", {"lat": lat, "lon": lon, "units": "metric"})
        if not isinstance(data, dict):
            raise WeatherLookupError("Weather response is malformed")
        conditions = (data.get("weather") or [{}])[0] or {}
        main = data.get("main") or {}
        coord = data.get("coord") or {}
        report = {
            "description": conditions.get("description", "unknown"),
            "icon": conditions.get("icon", "01d"),
            "temp": {
                "current": to_finite_float(main.get("temp")) or 0.0,
                "min": to_finite_float(main.get("temp_min")) or 0.0,
                "max": to_finite_float(main.get("temp_max")) or 0.0,
            },
            "coordinates": [_coordinate(coord.get("lat"), lat), _coordinate(coord.get("lon"), lon)],
        }
        logger.info("weather lat=%s lon=%s description=%s", lat, lon, report["description"])
        return report


def _coordinate(value, requested: float) -> float:
    number = to_finite_float(value)
    return number if number is not None else float(requested)
