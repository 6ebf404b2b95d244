"""
Atmosphere model and pressure-level wind lookup.

Converts altitude to pressure with the layered ISA barometric formula, holds
hourly pressure-level wind forecasts (Open-Meteo layout) and interpolates the
wind at an arbitrary altitude. Wind speeds are m/s; directions are the
meteorological "coming from" bearing in degrees.
"""
import hashlib
import json
import logging
import math
import re
import threading
from datetime import datetime
from functools import lru_cache

import numpy as np

from hablive.classes import parse_time, to_unix
from hablive.errors import InvalidParametersError, WeatherUnavailableError

logger = logging.getLogger(__name__)

# Standard pressure levels reported by the forecast provider (hPa)
PRESSURE_LEVELS = (1000, 975, 950, 925, 900, 850, 800, 750, 700, 650, 600, 550, 500,
                   450, 400, 350, 300, 250, 200, 150, 100, 70, 50, 30, 20, 10, 7, 5, 3, 2, 1)

SEA_LEVEL_PRESSURE_HPA = 1013.25
SEA_LEVEL_TEMP_K = 288.15
SPECIFIC_GAS_CONSTANT_AIR = 287.05  # J/(kg·K)
GRAVITY = 9.80665
# g·M/R* for dry air, K/m
_GMR = 0.0341632

# ISA layers: (base altitude m, lapse rate K/m)
_ISA_LAYERS = ((0.0, -0.0065), (11000.0, 0.0), (20000.0, 0.001), (32000.0, 0.0028),
               (47000.0, 0.0), (51000.0, -0.0028), (71000.0, -0.002))
MODEL_CEILING_M = 84852.0


def _layer_bases():
    """Base temperature and pressure of every ISA layer, integrated upwards from sea level."""
    bases = []
    temp, pressure = SEA_LEVEL_TEMP_K, SEA_LEVEL_PRESSURE_HPA
    for i, (base_alt, lapse) in enumerate(_ISA_LAYERS):
        bases.append((base_alt, lapse, temp, pressure))
        if i + 1 < len(_ISA_LAYERS):
            top = _ISA_LAYERS[i + 1][0]
            pressure = _pressure_in_layer(top, base_alt, lapse, temp, pressure)
            temp = temp + lapse * (top - base_alt)
    return tuple(bases)


def _pressure_in_layer(altitude, base_alt, lapse, base_temp, base_pressure):
    if lapse == 0:
        return base_pressure * math.exp(-_GMR * (altitude - base_alt) / base_temp)
    return base_pressure * (base_temp / (base_temp + lapse * (altitude - base_alt))) ** (_GMR / lapse)


_LAYERS = _layer_bases()


def _layer_for_altitude(altitude):
    for layer in reversed(_LAYERS):
        if altitude >= layer[0]:
            return layer
    return _LAYERS[0]


def pressure_at(altitude):
    """Pressure in hPa at a geopotential altitude in meters."""
    altitude = min(float(altitude), MODEL_CEILING_M)
    base_alt, lapse, base_temp, base_pressure = _layer_for_altitude(altitude)
    return _pressure_in_layer(altitude, base_alt, lapse, base_temp, base_pressure)


def temperature_at(altitude):
    """ISA temperature in kelvin."""
    altitude = min(float(altitude), MODEL_CEILING_M)
    base_alt, lapse, base_temp, _ = _layer_for_altitude(altitude)
    return base_temp + lapse * (altitude - base_alt)


def air_density(altitude):
    """Air density in kg/m³ (ideal gas, ISA pressure and temperature)."""
    return pressure_at(altitude) * 100.0 / (SPECIFIC_GAS_CONSTANT_AIR * temperature_at(altitude))


# Cache altitude-to-pressure conversions (the integrator revisits the same altitudes)
@lru_cache(maxsize=10000)
def _alt_to_hpa_cached(altitude_rounded):
    """Cached altitude to pressure conversion"""
    return pressure_at(altitude_rounded)


def alt_to_hpa(altitude):
    """Convert altitude to hectopascals (with caching on the rounded meter)"""
    return _alt_to_hpa_cached(round(altitude))


def hpa_to_alt(pressure):
    """Convert hectopascals to altitude by inverting the layer the pressure falls in"""
    if pressure <= 0:
        raise InvalidParametersError(f"Pressure must be positive, got {pressure}")
    for base_alt, lapse, base_temp, base_pressure in reversed(_LAYERS):
        if pressure <= base_pressure:
            break
    if lapse == 0:
        return base_alt - base_temp * math.log(pressure / base_pressure) / _GMR
    return base_alt + base_temp / lapse * ((pressure / base_pressure) ** (-lapse / _GMR) - 1)


def interpolate_direction(from_deg, to_deg, weight):
    """Blend two bearings along the shorter arc (359 -> 1 passes through 0)."""
    diff = (to_deg - from_deg + 540.0) % 360.0 - 180.0
    return (from_deg + diff * weight) % 360.0


def wind_components(speed, direction):
    """
    Meteorological wind (speed, direction it blows FROM) to (u east, v north) in m/s.

    A 180° (southerly) wind pushes the balloon north: v > 0.
    """
    rad = math.radians(direction)
    return -speed * math.sin(rad), -speed * math.cos(rad)


class WindField:
    """
    Pressure-level wind at one instant.

    levels maps pressure (hPa) to (speed m/s, direction deg); levels whose
    speed or direction is missing are dropped. surface carries the
    provider's surface fields unchanged.
    """

    def __init__(self, levels, surface=None, time=None):
        valid = sorted((float(p), float(s), float(d)) for p, (s, d) in levels.items()
                       if s is not None and d is not None
                       and math.isfinite(s) and math.isfinite(d))
        if not valid:
            raise WeatherUnavailableError("No pressure level carries wind data")
        table = np.array(valid, dtype=float)
        # Ascending pressure, i.e. descending altitude
        self.pressures = table[:, 0]
        self.speeds = table[:, 1]
        self.directions = table[:, 2]
        self.surface = dict(surface or {})
        self.time = time

    def __len__(self):
        return len(self.pressures)

    def level(self, pressure):
        """(speed, direction) reported at exactly this level, or None."""
        idx = np.nonzero(self.pressures == float(pressure))[0]
        if idx.size == 0:
            return None
        i = int(idx[0])
        return float(self.speeds[i]), float(self.directions[i])

    def wind_at(self, altitude):
        return wind_at(altitude, self)


def wind_at(altitude, wind_field):
    """
    Wind (speed, direction) at an altitude.

    The altitude is converted to pressure and bracketed by the two nearest
    reported levels; speed is interpolated linearly in pressure and direction
    along the shorter arc. Outside the reported range the nearest level is
    used unchanged.
    """
    pressure = alt_to_hpa(altitude)
    pressures = wind_field.pressures
    if pressure <= pressures[0]:
        return float(wind_field.speeds[0]), float(wind_field.directions[0])
    if pressure >= pressures[-1]:
        return float(wind_field.speeds[-1]), float(wind_field.directions[-1])

    # pressures[i-1] < pressure <= pressures[i]
    i = int(np.searchsorted(pressures, pressure))
    upper, lower = i - 1, i
    weight = (pressure - pressures[upper]) / (pressures[lower] - pressures[upper])
    speed = wind_field.speeds[upper] * (1 - weight) + wind_field.speeds[lower] * weight
    direction = interpolate_direction(wind_field.directions[upper], wind_field.directions[lower], weight)
    return float(speed), float(direction)


_LEVEL_KEY = re.compile(r'^wind(speed|direction)_(\d+)hPa$')


class WeatherData:
    """
    Hourly forecast in the Open-Meteo layout.

    hourly['time'] holds ISO-8601 timestamps; per-level series are named
    windspeed_{p}hPa / winddirection_{p}hPa; every other hourly series is a
    surface field. Speeds must be requested in m/s.
    """
    MAX_FIELD_CACHE = 64

    def __init__(self, hourly, latitude=None, longitude=None, elevation=None):
        if not hourly or not hourly.get('time'):
            raise WeatherUnavailableError("Weather data has no hourly timestamps")
        self.hourly = hourly
        self.latitude = latitude
        self.longitude = longitude
        self.elevation = elevation
        self.times = np.array([to_unix(t) for t in hourly['time']], dtype=float)
        if np.any(np.diff(self.times) <= 0):
            raise InvalidParametersError("Weather timestamps must be strictly increasing")

        levels = {}
        self.surface_keys = []
        for key in hourly:
            if key == 'time':
                continue
            match = _LEVEL_KEY.match(key)
            if match:
                levels.setdefault(int(match.group(2)), set()).add(match.group(1))
            else:
                self.surface_keys.append(key)
        self.levels = tuple(sorted((p for p, kinds in levels.items() if len(kinds) == 2), reverse=True))

        self._fingerprint = None
        self._field_cache = {}
        self._lock = threading.Lock()

    @classmethod
    def from_open_meteo(cls, payload):
        """Build from a raw Open-Meteo forecast response (dict or JSON string)."""
        if isinstance(payload, (str, bytes)):
            payload = json.loads(payload)
        if 'hourly' not in payload:
            raise WeatherUnavailableError("Weather response has no 'hourly' block")
        return cls(payload['hourly'], payload.get('latitude'), payload.get('longitude'),
                   payload.get('elevation'))

    def to_dict(self):
        return {"latitude": self.latitude, "longitude": self.longitude,
                "elevation": self.elevation, "hourly": self.hourly}

    @property
    def fingerprint(self):
        """md5 of the payload; stable cache key across equal forecasts."""
        if self._fingerprint is None:
            blob = json.dumps(self.hourly, sort_keys=True, default=str).encode()
            self._fingerprint = hashlib.md5(blob).hexdigest()
        return self._fingerprint

    @property
    def start(self):
        return parse_time(float(self.times[0]))

    @property
    def end(self):
        return parse_time(float(self.times[-1]))

    def time_index(self, instant):
        """Index of the hourly slot at or before the instant (first slot if earlier)."""
        t = to_unix(instant) if isinstance(instant, (datetime, str)) else float(instant)
        return max(0, int(np.searchsorted(self.times, t, side='right')) - 1)

    def _series_value(self, key, idx):
        series = self.hourly.get(key)
        if series is None or idx >= len(series):
            return None
        value = series[idx]
        return None if value is None else float(value)

    def wind_field_at(self, instant):
        """WindField for the slot at or before the instant; raises WeatherUnavailableError without data."""
        idx = self.time_index(instant)
        with self._lock:
            field = self._field_cache.get(idx)
        if field is not None:
            return field

        levels = {p: (self._series_value(f'windspeed_{p}hPa', idx),
                      self._series_value(f'winddirection_{p}hPa', idx)) for p in self.levels}
        try:
            field = WindField(levels, self.surface_at(idx), float(self.times[idx]))
        except WeatherUnavailableError:
            raise WeatherUnavailableError(
                f"No wind data at any pressure level for {self.hourly['time'][idx]}"
            )

        with self._lock:
            # Simple bounded cache: clear when full
            if len(self._field_cache) >= self.MAX_FIELD_CACHE:
                self._field_cache.clear()
            self._field_cache[idx] = field
        return field

    def surface_at(self, instant_or_index):
        idx = instant_or_index if isinstance(instant_or_index, (int, np.integer)) else self.time_index(instant_or_index)
        return {key: self._series_value(key, idx) for key in self.surface_keys}

    def wind_at(self, altitude, instant):
        return wind_at(altitude, self.wind_field_at(instant))


class WeatherWind:
    """
    Wind source for the Simulator backed by a single-site forecast.

    get() ignores lat/lon: the forecast is for the launch site.
    """

    def __init__(self, weather):
        self.weather = weather

    def get(self, lat, lon, altitude, time):
        speed, direction = self.weather.wind_at(altitude, time)
        return wind_components(speed, direction)


class ConstantWind:
    """Uniform wind everywhere (tests and ground drift)."""

    def __init__(self, speed=0.0, direction=0.0):
        self.u, self.v = wind_components(speed, direction)

    def get(self, lat, lon, altitude, time):
        return self.u, self.v


# Banded summary levels for display
WEATHER_BANDS = (('ground', 1000), ('mid', 500), ('jet', 250))


def launch_weather(weather, instant):
    """
    Banded wind summary (ground ≈1000 hPa, mid ≈500 hPa, jet ≈250 hPa) plus surface fields.

    Display only; a band whose level is not reported is interpolated from its
    neighbours.
    """
    field = weather.wind_field_at(instant)
    summary = {}
    for name, pressure in WEATHER_BANDS:
        reported = field.level(pressure)
        speed, direction = reported if reported else wind_at(hpa_to_alt(pressure), field)
        summary[name] = {"pressure": pressure, "speed": speed, "direction": direction,
                         "altitude": hpa_to_alt(pressure)}
    summary['surface'] = field.surface
    summary['time'] = parse_time(field.time).isoformat()
    return summary


class WeatherProvider:
    """Interface for forecast sources; fetching over HTTP is left to implementations."""

    def fetch(self, lat, lon, start, end):
        """Return WeatherData covering [start, end] at (lat, lon)."""
        raise NotImplementedError


class StaticWeatherProvider(WeatherProvider):
    """Serves one preloaded forecast; raises WeatherUnavailableError outside its window."""

    def __init__(self, weather):
        if not isinstance(weather, WeatherData):
            weather = WeatherData.from_open_meteo(weather)
        self.weather = weather

    def fetch(self, lat, lon, start, end=None):
        start_t = to_unix(start)
        # An hourly slot covers the hour after its timestamp
        if start_t < self.weather.times[0] or start_t > self.weather.times[-1] + 3600:
            raise WeatherUnavailableError(
                f"Forecast covers {self.weather.start.isoformat()} to {self.weather.end.isoformat()}, "
                f"not {parse_time(start).isoformat()}"
            )
        logger.debug("Serving static forecast %s for (%.4f, %.4f)", self.weather.fingerprint[:8], lat, lon)
        return self.weather
