import pytest

import elev
import simulate
from hablive import (Balloon, InvalidParametersError, LaunchParameters, PredictionResult,
                     SimulationDivergenceError, Simulator, WeatherUnavailableError)
from windfield import ConstantWind, WeatherData

from conftest import LAUNCH_TIME


def test_calm_flight_lands_where_it_launched(params, calm_weather):
    """With no wind the balloon goes straight up and down."""
    result = simulate.predict(params, calm_weather, ground_elevation=0.0)
    assert result.landing_point.lat == pytest.approx(params.lat)
    assert result.landing_point.lon == pytest.approx(params.lon)
    assert result.distance == pytest.approx(0.0, abs=1e-6)


def test_calm_flight_timing(params, calm_weather):
    """5959.2 s up from 204 m to 30 km, 5000 s down to sea level."""
    result = simulate.predict(params, calm_weather, ground_elevation=0.0)
    assert result.total_time == pytest.approx(10959.2)
    assert result.burst_point.time == pytest.approx(5959.2)
    assert result.max_altitude == pytest.approx(30000.0)
    assert result.landing_point.altitude == pytest.approx(0.0)
    assert result.nominal_ascent_rate() == pytest.approx(5.0)


def test_path_shape(params, calm_weather):
    """Altitude rises to burst then falls; times strictly increase."""
    result = simulate.predict(params, calm_weather, ground_elevation=0.0)
    times = [p.time for p in result.path]
    assert all(b > a for a, b in zip(times, times[1:]))
    burst_idx = result.path.index(result.burst_point)
    ascent = [p.altitude for p in result.path[:burst_idx + 1]]
    descent = [p.altitude for p in result.path[burst_idx:]]
    assert ascent == sorted(ascent)
    assert descent == sorted(descent, reverse=True)
    assert all(p.altitude >= 0 for p in result.path)


def test_westerly_wind_drifts_east(params, windy_weather):
    """10 m/s from the west for about three hours moves the landing ~110 km east."""
    result = simulate.predict(params, windy_weather, ground_elevation=0.0)
    assert result.landing_point.lon > params.lon
    assert result.landing_point.lat == pytest.approx(params.lat, abs=1e-6)
    assert result.distance == pytest.approx(10.0 * result.total_time, rel=0.01)


def test_ground_elevation_shortens_descent(params, calm_weather):
    """Landing at the launch site's own elevation ends the descent 204 m early."""
    result = simulate.predict(params, calm_weather, ground_elevation=204.0)
    assert result.total_time == pytest.approx(5959.2 + (30000 - 204) / 6.0)
    assert result.landing_point.altitude == pytest.approx(204.0)


def test_ground_above_launch_is_capped(params, calm_weather):
    """The landing level never sits above the launch altitude."""
    result = simulate.predict(params, calm_weather, ground_elevation=1000.0)
    assert result.landing_point.altitude == pytest.approx(params.launch_altitude)


def test_elevation_provider_failure_falls_back_to_sea_level(params, calm_weather):
    """A broken provider does not fail the prediction."""
    class Broken(elev.ElevationProvider):
        def elevation(self, lat, lon):
            raise IOError("grid missing")

    result = simulate.predict(params, calm_weather, elevation_provider=Broken())
    assert result.landing_point.altitude == pytest.approx(elev.DEFAULT_GROUND_ELEVATION_M)


def test_invalid_parameters_rejected(launch_dict, calm_weather):
    """Burst below launch and non-positive rates are refused before simulating."""
    for field, value in (("burst_altitude", 100.0), ("ascent_rate", 0.0), ("descent_rate", -1.0),
                         ("lat", 95.0)):
        bad = dict(launch_dict, **{field: value})
        with pytest.raises(InvalidParametersError):
            simulate.predict(bad, calm_weather)


def test_missing_parameter_rejected(launch_dict):
    """Every launch field is required."""
    del launch_dict["descent_rate"]
    with pytest.raises(InvalidParametersError):
        LaunchParameters.from_dict(launch_dict)


def test_predict_caches_results(params, calm_weather):
    """The same request is served from the cache."""
    first = simulate.predict(params, calm_weather, ground_elevation=0.0)
    second = simulate.predict(params, calm_weather, ground_elevation=0.0)
    assert first is second
    assert simulate.cache_size() == 1
    uncached = simulate.predict(params, calm_weather, ground_elevation=0.0, use_cache=False)
    assert uncached is not first
    assert uncached.total_time == first.total_time


def test_cache_evicts_oldest(params, calm_weather, monkeypatch):
    """At the size limit the oldest entry goes first."""
    monkeypatch.setattr(simulate, "MAX_CACHE_SIZE", 2)
    for burst in (20000.0, 25000.0, 30000.0):
        simulate.predict(params.replace(burst_altitude=burst), calm_weather, ground_elevation=0.0)
    assert simulate.cache_size() == 2


def test_weather_without_levels_is_unavailable(params):
    """A forecast with no wind levels surfaces as WeatherUnavailableError."""
    weather = WeatherData({"time": ["2026-06-01T12:00"], "temperature_2m": [10.0]})
    with pytest.raises(WeatherUnavailableError):
        simulate.predict(params, weather, ground_elevation=0.0)


def test_runaway_simulation_diverges():
    """A vertical rate in the wrong unit never reaches burst within the cap."""
    simulator = Simulator(ConstantWind(), step_size=60.0, max_duration=3600.0)
    balloon = Balloon(location=(0.0, 0.0), alt=0.0)
    with pytest.raises(SimulationDivergenceError):
        simulator.simulate(balloon, LAUNCH_TIME, 0.005, 30000.0, 5.0)


def test_partial_steps_land_exactly():
    """Burst and landing points sit exactly on their limits."""
    simulator = Simulator(ConstantWind(5.0, 90.0), step_size=60.0)
    balloon = Balloon(location=(10.0, 20.0), alt=0.0)
    path = simulator.simulate(balloon, LAUNCH_TIME, 4.0, 1000.0, 3.0, ground_elev=0.0)
    assert max(p.altitude for p in path) == pytest.approx(1000.0)
    assert path[-1].altitude == pytest.approx(0.0)
    assert path[-1].time == pytest.approx(1000 / 4.0 + 1000 / 3.0)
    # From the east: drifting west
    assert path[-1].lon < 20.0


def test_predict_from_state_descending(params, calm_weather):
    """A descending state skips the ascent and keeps launch-relative times."""
    position_time = LAUNCH_TIME.timestamp() + 7000
    result = simulate.predict_from_state(params, calm_weather, position_time, params.lat, params.lon,
                                         12000.0, descending=True, ground_elevation=0.0)
    assert result.launch_point.time == pytest.approx(7000)
    assert result.max_altitude == pytest.approx(12000.0)
    assert result.total_time == pytest.approx(7000 + 12000 / 6.0)


def test_predict_from_state_above_burst_descends(params, calm_weather):
    """A state already above the burst altitude is treated as descending."""
    result = simulate.predict_from_state(params, calm_weather, LAUNCH_TIME, params.lat, params.lon,
                                         31000.0, ground_elevation=0.0)
    assert result.path[1].altitude < 31000.0


def test_prediction_round_trips_through_dict(calm_prediction):
    """to_dict/from_dict preserve the path and derived points."""
    restored = PredictionResult.from_dict(calm_prediction.to_dict())
    assert restored.total_time == pytest.approx(calm_prediction.total_time)
    assert restored.burst_point == calm_prediction.burst_point
    assert "path" not in calm_prediction.to_dict(include_path=False)


def test_landing_time(calm_prediction):
    """Absolute landing instant is launch plus flight time."""
    assert (simulate.landing_time(calm_prediction) - LAUNCH_TIME).total_seconds() == pytest.approx(10959.2)
