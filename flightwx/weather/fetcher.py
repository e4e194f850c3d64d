"""
Weather integration — fetches current conditions for a lat/lon from
OpenWeatherMap and turns them into a cacheable WeatherObservation.

Flow:
  fetch_observation(lat, lon) → raw JSON payload (one bounded HTTP call)
  build_observation(raw, ...) → unit conversion + derived flags → row to cache
  Any failure → ExternalServiceError; the caller skips the booking this pass.
"""
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from datetime import datetime, timedelta, timezone
from typing import Optional

from flightwx.errors import ExternalServiceError
from flightwx.models import WeatherObservation

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://api.openweathermap.org/data/2.5/weather"
CACHE_TTL_MINUTES = 30

METERS_TO_MILES = 0.000621371
MPS_TO_KNOTS = 1.94384
KELVIN_OFFSET = 273.15

ICING_CONDITIONS = ("Rain", "Drizzle", "Clouds", "Snow")


# ── Client ────────────────────────────────────────────────────────────────────

class OpenWeatherClient:
    def __init__(self, api_key: Optional[str], url: str = DEFAULT_URL, timeout: float = 10.0):
        self.api_key = api_key
        self.url = url
        self.timeout = timeout

    def fetch_observation(self, lat: float, lon: float) -> dict:
        """Fetch the raw current-weather payload for a location."""
        if not self.api_key:
            raise ExternalServiceError("openweathermap", "OPENWEATHER_API_KEY not set")

        logger.debug("fetching weather for %s,%s", lat, lon)
        query = urllib.parse.urlencode({"lat": lat, "lon": lon, "appid": self.api_key})
        req = urllib.request.Request(
            f"{self.url}?{query}", headers={"User-Agent": "flightwx/1.0"}
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                data = json.loads(resp.read().decode())
        except urllib.error.HTTPError as e:
            raise ExternalServiceError("openweathermap", f"HTTP {e.code} {e.reason}") from e
        except (urllib.error.URLError, TimeoutError, ValueError) as e:
            raise ExternalServiceError("openweathermap", str(e)) from e

        if not data or "main" not in data:
            raise ExternalServiceError("openweathermap", f"no weather returned for {lat},{lon}")
        return data


# ── Conversions ───────────────────────────────────────────────────────────────

def meters_to_miles(meters: float) -> float:
    return meters * METERS_TO_MILES


def mps_to_knots(mps: float) -> float:
    return mps * MPS_TO_KNOTS


def kelvin_to_celsius(kelvin: float) -> float:
    return kelvin - KELVIN_OFFSET


def estimate_ceiling(cloud_coverage: float) -> Optional[int]:
    """
    Rough ceiling from cloud cover percentage.
    None means clear skies (no ceiling at all).
    """
    if cloud_coverage == 0:
        return None
    if cloud_coverage < 25:
        return 7000
    if cloud_coverage < 50:
        return 4000
    if cloud_coverage < 75:
        return 2000
    return 1000


def has_thunderstorms(conditions: list[dict]) -> bool:
    # condition codes 2xx are thunderstorms
    return any(200 <= c.get("id", 0) < 300 for c in conditions)


def has_icing(temperature_c: float, conditions: list[dict]) -> bool:
    """Icing is likely between 0 and 10 °C with visible moisture."""
    if temperature_c < 0 or temperature_c > 10:
        return False
    return any(c.get("main") in ICING_CONDITIONS for c in conditions)


# ── Builder ───────────────────────────────────────────────────────────────────

def build_observation(
    raw: dict,
    location_name: str,
    lat: float,
    lon: float,
    fetched_at: datetime,
    ttl: timedelta = timedelta(minutes=CACHE_TTL_MINUTES),
) -> WeatherObservation:
    """Convert a raw payload into an (unsaved) WeatherObservation."""
    try:
        conditions = raw.get("weather") or []
        temperature_c = kelvin_to_celsius(float(raw["main"]["temp"]))
        wind = raw.get("wind") or {}
        observed = raw.get("dt")
        observed_at = (
            datetime.fromtimestamp(observed, tz=timezone.utc).replace(tzinfo=None)
            if observed else fetched_at
        )

        return WeatherObservation(
            location_name=location_name,
            lat=lat,
            lon=lon,
            observed_at=observed_at,
            fetched_at=fetched_at,
            expires_at=fetched_at + ttl,
            visibility_mi=meters_to_miles(float(raw.get("visibility", 10000))),
            ceiling_ft=estimate_ceiling(float((raw.get("clouds") or {}).get("all", 0))),
            wind_speed_kt=mps_to_knots(float(wind.get("speed", 0.0))),
            wind_direction_deg=wind.get("deg"),
            temperature_c=temperature_c,
            conditions=conditions[0]["main"] if conditions else "Unknown",
            has_thunderstorms=has_thunderstorms(conditions),
            has_icing=has_icing(temperature_c, conditions),
            raw=raw,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ExternalServiceError("openweathermap", f"unparseable payload: {e}") from e


# ── Mock payloads for testing (no internet needed) ───────────────────────────

def mock_payload(scenario: str = "good", observed_at: int = 1_752_000_000) -> dict:
    """
    Deterministic OpenWeatherMap-shaped payloads.
    scenario: "good" | "low_vis" | "overcast" | "high_wind" | "thunderstorm" | "icing"
    """
    base = {
        "coord": {"lon": -97.04, "lat": 32.9},
        "weather": [{"id": 800, "main": "Clear", "description": "clear sky"}],
        "main": {"temp": 293.15, "feels_like": 293.0, "pressure": 1015, "humidity": 40},
        "visibility": 10000,
        "wind": {"speed": 2.5, "deg": 180},
        "clouds": {"all": 0},
        "dt": observed_at,
        "name": "Mock Field",
    }
    overrides = {
        "good":         {},
        "low_vis":      {"visibility": 3000,
                         "weather": [{"id": 701, "main": "Mist", "description": "mist"}]},
        "overcast":     {"clouds": {"all": 90},
                         "weather": [{"id": 804, "main": "Clouds", "description": "overcast clouds"}]},
        "high_wind":    {"wind": {"speed": 12.0, "deg": 270}},
        "thunderstorm": {"clouds": {"all": 80}, "wind": {"speed": 9.0, "deg": 240},
                         "weather": [{"id": 211, "main": "Thunderstorm", "description": "thunderstorm"}]},
        "icing":        {"main": {"temp": 276.15, "feels_like": 273.0, "pressure": 1002, "humidity": 95},
                         "clouds": {"all": 60},
                         "weather": [{"id": 500, "main": "Rain", "description": "light rain"}]},
    }
    payload = dict(base)
    payload.update(overrides.get(scenario, {}))
    return payload


class MockWeatherClient:
    """Stands in for OpenWeatherClient; fails on request when `fail` is set."""

    def __init__(self, scenario: str = "good", fail: bool = False):
        self.scenario = scenario
        self.fail = fail
        self.calls: list[tuple[float, float]] = []

    def fetch_observation(self, lat: float, lon: float) -> dict:
        self.calls.append((lat, lon))
        if self.fail:
            raise ExternalServiceError("openweathermap", "simulated timeout")
        return mock_payload(self.scenario)
