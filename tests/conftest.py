from datetime import datetime, timedelta, timezone

import pytest

import simulate
from hablive import LaunchParameters
from windfield import PRESSURE_LEVELS, WeatherData

LAUNCH_TIME = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def open_meteo_payload(speed=0.0, direction=0.0, hours=8, start=LAUNCH_TIME, temperature=15.0):
    """Open-Meteo style hourly forecast with the same wind on every pressure level."""
    times = [(start + timedelta(hours=h)).strftime('%Y-%m-%dT%H:%M') for h in range(hours)]
    hourly = {"time": times, "temperature_2m": [temperature] * hours}
    for p in PRESSURE_LEVELS:
        hourly[f"windspeed_{p}hPa"] = [speed] * hours
        hourly[f"winddirection_{p}hPa"] = [direction] * hours
    return {"latitude": 40.4, "longitude": -86.9, "elevation": 190.0, "hourly": hourly}


@pytest.fixture
def calm_payload():
    return open_meteo_payload()


@pytest.fixture
def windy_payload():
    # 10 m/s from the west at every level
    return open_meteo_payload(speed=10.0, direction=270.0)


@pytest.fixture
def calm_weather(calm_payload):
    return WeatherData.from_open_meteo(calm_payload)


@pytest.fixture
def windy_weather(windy_payload):
    return WeatherData.from_open_meteo(windy_payload)


@pytest.fixture
def launch_dict():
    return {
        "lat": 40.4123,
        "lon": -86.9369,
        "launch_time": "2026-06-01T12:00:00Z",
        "launch_altitude": 204.0,
        "ascent_rate": 5.0,
        "burst_altitude": 30000.0,
        "descent_rate": 6.0,
    }


@pytest.fixture
def params(launch_dict):
    return LaunchParameters.from_dict(launch_dict)


@pytest.fixture
def calm_prediction(params, calm_weather):
    return simulate.predict(params, calm_weather, ground_elevation=0.0)


@pytest.fixture
def windy_prediction(params, windy_weather):
    return simulate.predict(params, windy_weather, ground_elevation=0.0)


@pytest.fixture(autouse=True)
def clear_prediction_cache():
    simulate.clear_cache()
    yield
    simulate.clear_cache()
