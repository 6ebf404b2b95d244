"""
Flask WSGI application serving the REST API for HABLIVE.

Provides endpoints for:
- Trajectory prediction from launch parameters and an Open-Meteo forecast (/sim/predict)
- Burst calculator, forward and goal mode (/calc/burst, /calc/goal)
- Reference validation of the physics constants and calculator (/calc/validation)
- Live comparison of telemetry against a prediction (/live/compare)
- Elevation lookup (/sim/elev) and health polling (/sim/status)
- Persisted APRS credentials (/settings/aprs)

Errors raised by the core carry a category; each endpoint maps it to an HTTP
status (bad input 400, unavailable or transient upstream 503, internal 500).
"""
from flask import Flask, jsonify, request, make_response
from flask_cors import CORS
from flask_compress import Compress
from functools import wraps
import logging
import math

import burst
import elev
import simulate
from config import APRS_API_KEY_KEY, APRS_CALLSIGN_KEY, Settings, setup_logging
from hablive import (BAD_INPUT, INTERNAL, TRANSIENT, UPSTREAM_UNAVAILABLE, InvalidParametersError,
                     LaunchParameters, PredictionError, PredictionResult, TelemetryPosition)
from live import compare_live
from validation import validation_report
from windfield import WeatherData

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)
Compress(app)

STATUS_BY_CATEGORY = {
    BAD_INPUT: 400,
    UPSTREAM_UNAVAILABLE: 503,
    TRANSIENT: 503,
    INTERNAL: 500,
}


# Suppress /sim/status access logs (polled by health checks, creates log spam)
class StatusLogFilter(logging.Filter):
    def filter(self, record):
        return '/sim/status' not in record.getMessage()


logging.getLogger('werkzeug').addFilter(StatusLogFilter())
logging.getLogger('gunicorn.access').addFilter(StatusLogFilter())


def init_app(settings=None):
    """Apply Settings to the core modules; called once at import with the environment settings."""
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)
    simulate.configure(settings)
    app.config['HABLIVE_SETTINGS'] = settings
    app.config['HABLIVE_STORE'] = settings.open_store()
    logger.info("HABLIVE configured: %r", settings)
    return app


def cache_for(seconds=300):
    """Add HTTP cache headers to responses."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            response = make_response(f(*args, **kwargs))
            if response.status_code == 200:
                response.headers['Cache-Control'] = f'public, max-age={seconds}'
            return response
        return decorated_function
    return decorator


def api_errors(f):
    """Turn core errors into JSON error responses with the status for their category."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except PredictionError as e:
            status = STATUS_BY_CATEGORY.get(e.category, 500)
            if status >= 500:
                logger.warning("%s failed: %s", request.path, e)
            return make_response(jsonify(e.to_dict()), status)
        except ValueError as e:
            return make_response(jsonify({"error": str(e), "category": BAD_INPUT}), 400)
        except Exception:
            logger.exception("Unexpected error in %s", request.path)
            return make_response(jsonify({"error": "Internal server error", "category": INTERNAL}), 500)
    return decorated_function


def get_arg(args, key, type_func=float, default=None, required=True):
    """Parse and validate request argument with type conversion and NaN/Inf checks."""
    val = args.get(key, default)
    if required and val is None:
        raise InvalidParametersError(f"Missing required parameter: {key}")
    if val is None:
        return None
    try:
        result = type_func(val)
    except (ValueError, TypeError) as e:
        raise InvalidParametersError(f"Invalid parameter {key}: {e}")
    if isinstance(result, float) and not math.isfinite(result):
        raise InvalidParametersError(f"Parameter {key} is not a finite number")
    return result


def _json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidParametersError("Request body must be a JSON object")
    return body


def _weather(body):
    if 'weather' not in body:
        raise InvalidParametersError("Missing required parameter: weather")
    return WeatherData.from_open_meteo(body['weather'])


def _launch(body):
    if not isinstance(body.get('launch'), dict):
        raise InvalidParametersError("Missing required parameter: launch")
    return LaunchParameters.from_dict(body['launch']).validate()


@app.route('/sim/status')
def status():
    """Status endpoint - fast and non-blocking. Access logging is suppressed for this endpoint."""
    return jsonify({"status": "Ready", "cachedPredictions": simulate.cache_size()})


@app.route('/sim/elev')
@cache_for(3600)
@api_errors
def elevation():
    """Get elevation at specified coordinates (falls back to sea level)."""
    lat = get_arg(request.args, 'lat')
    lon = get_arg(request.args, 'lon')
    if not (-90 <= lat <= 90):
        raise InvalidParametersError("Latitude must be between -90 and 90")
    return str(elev.getElevation(lat, lon))


@app.route('/sim/predict', methods=['POST'])
@api_errors
def predict():
    """
    Body: {"launch": LaunchParameters, "weather": Open-Meteo payload,
           "ground_elevation": optional meters, "include_path": optional bool}
    """
    body = _json_body()
    params = _launch(body)
    weather = _weather(body)
    ground = get_arg(body, 'ground_elevation', required=False)
    logger.info("Predict: lat=%.4f lon=%.4f alt=%.0f burst=%.0f ascent=%.1fm/s descent=%.1fm/s",
                params.lat, params.lon, params.launch_altitude, params.burst_altitude,
                params.ascent_rate, params.descent_rate)
    result = simulate.predict(params, weather, ground_elevation=ground)
    return jsonify(result.to_dict(include_path=bool(body.get('include_path', True))))


@app.route('/calc/burst', methods=['POST'])
@api_errors
def calc_burst():
    """Body: payload_weight, balloon_weight, parachute_weight, neck_lift (grams), gas, launch_altitude."""
    body = _json_body()
    launch_altitude = get_arg(body, 'launch_altitude', default=0.0)
    performance = burst.calculate_burst_performance(body, launch_altitude)
    return jsonify(performance.to_dict())


@app.route('/calc/goal', methods=['POST'])
@api_errors
def calc_goal():
    """Body: target_burst_altitude (m), balloon_weight, parachute_weight (g), gas, launch_altitude."""
    body = _json_body()
    result = burst.calculate_goal_options(
        get_arg(body, 'target_burst_altitude'),
        get_arg(body, 'balloon_weight'),
        get_arg(body, 'parachute_weight'),
        body.get('gas', 'Helium'),
        get_arg(body, 'launch_altitude', default=0.0),
    )
    return jsonify(result.to_dict())


@app.route('/calc/validation')
@cache_for(3600)
@api_errors
def calc_validation():
    """Physics constants and reference flights checked against the CUSF and HABHUB values."""
    return jsonify(validation_report())


@app.route('/live/compare', methods=['POST'])
@api_errors
def live_compare():
    """
    Body: {"launch": ..., "weather": ..., "telemetry": [positions],
           "prediction": optional PredictionResult dict, "ground_elevation": optional}

    Without a prediction the original one is computed (and cached) first.
    An empty telemetry list yields {"comparison": null}.
    """
    body = _json_body()
    params = _launch(body)
    weather = _weather(body)
    ground = get_arg(body, 'ground_elevation', required=False)
    raw_telemetry = body.get('telemetry') or []
    if not isinstance(raw_telemetry, list):
        raise InvalidParametersError("telemetry must be a list of positions")
    try:
        telemetry = [TelemetryPosition.from_dict(p) for p in raw_telemetry]
    except KeyError as e:
        raise InvalidParametersError(f"Telemetry position is missing {e.args[0]}")

    if body.get('prediction'):
        original = PredictionResult.from_dict(body['prediction'])
    else:
        original = simulate.predict(params, weather, ground_elevation=ground)

    comparison = compare_live(telemetry, original, params, weather, ground_elevation=ground)
    return jsonify({"comparison": comparison.to_dict() if comparison else None})


@app.route('/settings/aprs', methods=['GET', 'POST'])
@api_errors
def aprs_settings():
    """
    Persisted APRS callsign and API key.

    POST {"callsign": ..., "api_key": ...} stores non-empty values and
    deletes empty ones. The key itself is never returned.
    """
    store = app.config['HABLIVE_STORE']
    if request.method == 'POST':
        body = _json_body()
        for field, key in (('callsign', APRS_CALLSIGN_KEY), ('api_key', APRS_API_KEY_KEY)):
            if field not in body:
                continue
            value = str(body[field] or '').strip()
            if value:
                store.set(key, value.upper() if field == 'callsign' else value)
            else:
                store.delete(key)
    return jsonify({"callsign": store.get(APRS_CALLSIGN_KEY),
                    "hasApiKey": bool(store.get(APRS_API_KEY_KEY))})


init_app()


if __name__ == '__main__':
    app.run(debug=app.config['HABLIVE_SETTINGS'].debug, port=5000)
