import pytest

import app as app_module
from conftest import LAUNCH_TIME, open_meteo_payload


@pytest.fixture
def client():
    app_module.app.config['TESTING'] = True
    with app_module.app.test_client() as client:
        yield client


@pytest.fixture
def predict_body(launch_dict, calm_payload):
    return {"launch": launch_dict, "weather": calm_payload, "ground_elevation": 0.0}


def test_status(client):
    """Health endpoint answers immediately."""
    response = client.get('/sim/status')
    assert response.status_code == 200
    assert response.get_json()["status"] == "Ready"


def test_status_requests_are_filtered_from_access_logs():
    """The access log filter drops /sim/status lines only."""
    import logging
    log_filter = app_module.StatusLogFilter()
    status = logging.LogRecord('werkzeug', logging.INFO, __file__, 1, '"GET /sim/status HTTP/1.1" 200', None, None)
    other = logging.LogRecord('werkzeug', logging.INFO, __file__, 1, '"POST /sim/predict HTTP/1.1" 200', None, None)
    assert not log_filter.filter(status)
    assert log_filter.filter(other)


def test_predict(client, predict_body):
    """A calm forecast predicts the full up-and-down flight."""
    response = client.post('/sim/predict', json=predict_body)
    assert response.status_code == 200
    data = response.get_json()
    assert data["totalTime"] == pytest.approx(10959.2)
    assert data["maxAltitude"] == pytest.approx(30000.0)
    assert data["path"][0]["altitude"] == pytest.approx(204.0)


def test_predict_without_path(client, predict_body):
    """include_path=false returns the summary only."""
    predict_body["include_path"] = False
    data = client.post('/sim/predict', json=predict_body).get_json()
    assert "path" not in data
    assert "landingPoint" in data


def test_predict_bad_input(client, predict_body):
    """Invalid launch parameters are a 400 with the bad_input category."""
    predict_body["launch"]["burst_altitude"] = 100.0
    response = client.post('/sim/predict', json=predict_body)
    assert response.status_code == 400
    assert response.get_json()["category"] == "bad_input"


def test_predict_missing_fields(client, predict_body):
    """Missing launch, weather or body are refused."""
    assert client.post('/sim/predict', json={"weather": predict_body["weather"]}).status_code == 400
    assert client.post('/sim/predict', json={"launch": predict_body["launch"]}).status_code == 400
    assert client.post('/sim/predict', data="not json").status_code == 400


def test_predict_rejects_non_finite_ground(client, predict_body):
    """NaN and infinity never reach the simulator."""
    predict_body["ground_elevation"] = "inf"
    response = client.post('/sim/predict', json=predict_body)
    assert response.status_code == 400


def test_predict_weather_unavailable(client, predict_body):
    """A forecast with no wind levels maps to 503."""
    predict_body["weather"] = {"hourly": {"time": ["2026-06-01T12:00"], "temperature_2m": [10.0]}}
    response = client.post('/sim/predict', json=predict_body)
    assert response.status_code == 503
    assert response.get_json()["category"] == "upstream_unavailable"


def test_calc_burst(client):
    """Forward calculator returns rates and the displayed steps."""
    response = client.post('/calc/burst', json={"payload_weight": 1000, "balloon_weight": 1200,
                                                "parachute_weight": 150, "neck_lift": 1500, "gas": "Helium"})
    assert response.status_code == 200
    data = response.get_json()
    assert data["ascentRate"] > 0
    assert data["steps"][0]["name"] == "Free Lift"


def test_calc_burst_infeasible(client):
    """Not enough neck lift is a 400 naming the error."""
    response = client.post('/calc/burst', json={"payload_weight": 1000, "balloon_weight": 1200,
                                                "parachute_weight": 150, "neck_lift": 900})
    assert response.status_code == 400
    assert response.get_json()["type"] == "InfeasibleAscentError"


def test_calc_goal(client):
    """Goal mode lists options for the target."""
    response = client.post('/calc/goal', json={"target_burst_altitude": 30000, "balloon_weight": 1200,
                                               "parachute_weight": 150})
    assert response.status_code == 200
    data = response.get_json()
    assert data["options"]
    assert data["targetBurstAltitude"] == 30000


def test_calc_goal_requires_target(client):
    """The target altitude is mandatory."""
    response = client.post('/calc/goal', json={"balloon_weight": 1200, "parachute_weight": 150})
    assert response.status_code == 400


def test_live_compare(client, predict_body):
    """Telemetry on the predicted path compares cleanly."""
    prediction = client.post('/sim/predict', json=predict_body).get_json()
    launch = LAUNCH_TIME.timestamp()
    telemetry = [{"time": launch + p["time"], "lat": p["lat"], "lng": p["lon"], "altitude": p["altitude"]}
                 for p in prediction["path"] if p["time"] <= 1800]
    body = dict(predict_body, telemetry=telemetry, prediction=prediction)
    response = client.post('/live/compare', json=body)
    assert response.status_code == 200
    comparison = response.get_json()["comparison"]
    assert comparison["actualMetrics"]["flightPhase"]["phase"] == "ascent"
    assert comparison["accuracy"]["overallAccuracy"] >= 0.95


def test_live_compare_empty_telemetry(client, predict_body):
    """No telemetry gives a null comparison."""
    body = dict(predict_body, telemetry=[])
    response = client.post('/live/compare', json=body)
    assert response.status_code == 200
    assert response.get_json() == {"comparison": None}


def test_live_compare_bad_position(client, predict_body):
    """A position without coordinates is bad input."""
    body = dict(predict_body, telemetry=[{"time": LAUNCH_TIME.timestamp(), "altitude": 100}])
    assert client.post('/live/compare', json=body).status_code == 400


def test_elevation_default(client):
    """Without a grid the ground is at sea level."""
    response = client.get('/sim/elev?lat=40.4&lon=-86.9')
    assert response.status_code == 200
    assert float(response.get_data(as_text=True)) == 0.0
    assert response.headers['Cache-Control'] == 'public, max-age=3600'


def test_elevation_validates_latitude(client):
    """Latitude outside ±90 is refused and not cached."""
    response = client.get('/sim/elev?lat=100&lon=0')
    assert response.status_code == 400
    assert 'Cache-Control' not in response.headers
    assert client.get('/sim/elev?lat=abc&lon=0').status_code == 400


def test_windy_prediction_over_http(client, launch_dict):
    """Westerly winds move the landing east over HTTP too."""
    body = {"launch": launch_dict, "weather": open_meteo_payload(speed=10.0, direction=270.0),
            "ground_elevation": 0.0, "include_path": False}
    data = client.post('/sim/predict', json=body).get_json()
    assert data["landingPoint"]["lon"] > launch_dict["lon"]


def test_live_compare_rejects_malformed_prediction(client, predict_body):
    """A prediction without a path is bad input, not a server error."""
    body = dict(predict_body, telemetry=[], prediction={"launch_time": "2026-06-01T12:00:00Z"})
    response = client.post('/live/compare', json=body)
    assert response.status_code == 400
    assert response.get_json()["category"] == "bad_input"


def test_aprs_settings_round_trip(client, monkeypatch):
    """Credentials are stored, the key is never echoed and empty values delete."""
    from config import MemoryStore
    monkeypatch.setitem(app_module.app.config, 'HABLIVE_STORE', MemoryStore())
    assert client.get('/settings/aprs').get_json() == {"callsign": None, "hasApiKey": False}

    data = client.post('/settings/aprs', json={"callsign": "kd9abc-11", "api_key": "12345.abc"}).get_json()
    assert data == {"callsign": "KD9ABC-11", "hasApiKey": True}

    data = client.post('/settings/aprs', json={"api_key": ""}).get_json()
    assert data == {"callsign": "KD9ABC-11", "hasApiKey": False}


def test_calc_validation(client):
    """The validation report lists the constant checks and the reference flights."""
    response = client.get('/calc/validation')
    assert response.status_code == 200
    assert response.headers['Cache-Control'] == 'public, max-age=3600'
    data = response.get_json()
    assert data["constantsScore"] == 1.0
    assert len(data["cases"]) == 3
    assert data["assessment"] in {"EXCELLENT", "GOOD", "ACCEPTABLE", "NEEDS_IMPROVEMENT", "POOR"}
