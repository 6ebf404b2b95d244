"""
Prediction entry points with a bounded TTL cache.

predict() validates launch parameters, resolves ground level, runs the
fixed-step Simulator against the forecast winds and caches the immutable
result keyed by rounded parameters and the forecast fingerprint.
predict_from_state() seeds a run from an in-flight position for the live
comparison.
"""
import hashlib
import logging
import threading
import time
from datetime import timedelta

import elev
from hablive import (Balloon, InvalidParametersError, LaunchParameters, PredictionResult,
                     Simulator, TIME_STEP, MAX_FLIGHT_SECONDS, parse_time)
from windfield import WeatherWind

logger = logging.getLogger(__name__)

_prediction_cache = {}
_cache_access_times = {}
_cache_lock = threading.Lock()
MAX_CACHE_SIZE = 200
CACHE_TTL = 3600

STEP_SIZE = TIME_STEP
MAX_DURATION = MAX_FLIGHT_SECONDS


def configure(settings):
    """Apply cache limits and the elevation source from a config.Settings."""
    global MAX_CACHE_SIZE, CACHE_TTL
    MAX_CACHE_SIZE = settings.prediction_cache_size
    CACHE_TTL = settings.prediction_cache_ttl
    if settings.elevation_path:
        elev.set_default_provider(elev.GridElevationProvider(settings.elevation_path))
    clear_cache()


def _cache_key(params, ground, weather, descending=False, start_time=0.0):
    """Generate cache key from prediction parameters"""
    # Round floats to reduce cache misses from tiny differences
    key_str = (f"{params.launch_time.timestamp():.0f}_{params.lat:.5f}_{params.lon:.5f}_"
               f"{params.launch_altitude:.1f}_{params.ascent_rate:.3f}_{params.burst_altitude:.1f}_"
               f"{params.descent_rate:.3f}_{ground:.1f}_{descending}_{start_time:.1f}_{weather.fingerprint}")
    return hashlib.md5(key_str.encode()).hexdigest()


def _get_cached_prediction(cache_key):
    """Get cached prediction if available and not expired"""
    with _cache_lock:
        if cache_key in _prediction_cache:
            if time.time() - _cache_access_times[cache_key] < CACHE_TTL:
                return _prediction_cache[cache_key]
            # Expired, remove
            del _prediction_cache[cache_key]
            del _cache_access_times[cache_key]
    return None


def _cache_prediction(cache_key, result):
    """Cache prediction result with TTL and size limit, evicting the oldest entry when full"""
    with _cache_lock:
        if len(_prediction_cache) >= MAX_CACHE_SIZE and _prediction_cache:
            oldest_key = min(_cache_access_times, key=_cache_access_times.get)
            del _prediction_cache[oldest_key]
            del _cache_access_times[oldest_key]
        _prediction_cache[cache_key] = result
        _cache_access_times[cache_key] = time.time()


def clear_cache():
    with _cache_lock:
        _prediction_cache.clear()
        _cache_access_times.clear()


def cache_size():
    return len(_prediction_cache)


def resolve_ground_elevation(lat, lon, ground_elevation=None, elevation_provider=None):
    """Explicit ground level wins; otherwise ask the elevation provider (0 m on failure)."""
    if ground_elevation is not None:
        ground = float(ground_elevation)
        if ground < 0:
            raise InvalidParametersError("Ground elevation must not be negative")
        return ground
    return elev.getElevation(lat, lon, elevation_provider)


def predict(params, weather, ground_elevation=None, elevation_provider=None, use_cache=True):
    """
    Predict a full flight from launch to landing.

    params is a LaunchParameters (or a dict accepted by LaunchParameters.from_dict),
    weather a windfield.WeatherData. Returns an immutable PredictionResult.
    Raises InvalidParametersError, WeatherUnavailableError or
    SimulationDivergenceError.
    """
    if not isinstance(params, LaunchParameters):
        params = LaunchParameters.from_dict(params)
    params.validate()
    ground = resolve_ground_elevation(params.lat, params.lon, ground_elevation, elevation_provider)
    # Launch site cannot sit below the ground it lands on
    ground = min(ground, params.launch_altitude)

    cache_key = _cache_key(params, ground, weather)
    if use_cache:
        cached = _get_cached_prediction(cache_key)
        if cached is not None:
            return cached

    func_start = time.time()
    simulator = Simulator(WeatherWind(weather), STEP_SIZE, MAX_DURATION)
    balloon = Balloon(location=(params.lat, params.lon), alt=params.launch_altitude)
    try:
        path = simulator.simulate(balloon, params.launch_time, params.ascent_rate,
                                  params.burst_altitude, params.descent_rate, ground)
    except Exception as e:
        # Don't cache errors
        logger.error("predict() failed after %.2fs: %s", time.time() - func_start, e)
        raise
    result = PredictionResult(path, params.launch_time)
    logger.debug("predict(): %d points, %.0f s flight, %.0f m drift in %.3fs",
                 len(result.path), result.total_time, result.distance, time.time() - func_start)

    if use_cache:
        _cache_prediction(cache_key, result)
    return result


def predict_from_state(params, weather, position_time, lat, lon, altitude, descending=False,
                       ascent_rate=None, burst_altitude=None, descent_rate=None,
                       ground_elevation=None, elevation_provider=None):
    """
    Predict the rest of a flight from an in-flight state.

    position_time is the absolute time of the state (datetime or unix seconds);
    path times stay offsets from the original launch so the result lines up
    with the original prediction. Rates and burst altitude default to the
    nominal values in params. A descending state, or one already above the
    burst altitude, skips the ascent.
    """
    ascent_rate = params.ascent_rate if ascent_rate is None else ascent_rate
    burst_altitude = params.burst_altitude if burst_altitude is None else burst_altitude
    descent_rate = params.descent_rate if descent_rate is None else descent_rate
    if descent_rate <= 0:
        raise InvalidParametersError("Descent rate must be greater than 0 m/s")

    start = (parse_time(position_time) - params.launch_time).total_seconds()
    altitude = max(0.0, float(altitude))
    ground = resolve_ground_elevation(lat, lon, ground_elevation, elevation_provider)
    ground = min(ground, altitude)
    descending = descending or altitude >= burst_altitude

    seeded = params.replace(lat=lat, lon=lon, launch_altitude=altitude, ascent_rate=ascent_rate or params.ascent_rate,
                            burst_altitude=burst_altitude, descent_rate=descent_rate)
    cache_key = _cache_key(seeded, ground, weather, descending, start)
    cached = _get_cached_prediction(cache_key)
    if cached is not None:
        return cached

    simulator = Simulator(WeatherWind(weather), STEP_SIZE, start + MAX_DURATION)
    balloon = Balloon(location=(lat, lon), alt=altitude, time=start)
    path = simulator.simulate(balloon, params.launch_time, seeded.ascent_rate, burst_altitude,
                              descent_rate, ground, descending=descending)
    result = PredictionResult(path, params.launch_time)
    _cache_prediction(cache_key, result)
    return result


def landing_time(result):
    """Absolute landing instant of a PredictionResult."""
    return result.launch_time + timedelta(seconds=result.total_time)
