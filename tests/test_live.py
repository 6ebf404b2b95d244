import pytest

from hablive import (ASCENT, BURST, DESCENT, LANDED, UNKNOWN, FlightPhase, Location,
                     TelemetryGapError, TelemetryPosition)
from live import (MIN_ACCURACY, FlightPhaseTracker, LandingWatch, LiveComparator,
                  calculate_accuracy, calculate_actual_flight_metrics, calculate_deviation,
                  classify_flight_phase, compare_live, estimate_wind_from_trajectory,
                  extract_ascent_rate, extract_descent_rate, generate_updated_prediction,
                  has_peak_then_descent, is_assumed_landed, window_vertical_rate)

from conftest import LAUNCH_TIME

T0 = LAUNCH_TIME.timestamp()


def track(altitudes, start=T0, interval=15.0, lat=40.0, lng=-86.0):
    return [TelemetryPosition(start + i * interval, lat, lng, alt) for i, alt in enumerate(altitudes)]


def telemetry_from_prediction(prediction, until=None):
    """Telemetry that follows the predicted path exactly."""
    return [TelemetryPosition(T0 + p.time, p.lat, p.lon, p.altitude)
            for p in prediction.path if until is None or p.time <= until]


# -- phase classification --

def test_single_sample_is_unknown():
    """One report says nothing about the phase."""
    phase = classify_flight_phase(track([1000]))
    assert phase.phase == UNKNOWN
    assert phase.confidence == 0.0


def test_missing_altitudes_are_unknown():
    """Reports without altitude give a low-confidence unknown."""
    phase = classify_flight_phase(track([None, None, 1200]))
    assert (phase.phase, phase.confidence) == (UNKNOWN, 0.3)


def test_steady_climb_is_ascent():
    """5 m/s up."""
    phase = classify_flight_phase(track([1000, 1075, 1150, 1225, 1300]))
    assert (phase.phase, phase.confidence) == (ASCENT, 0.8)
    assert phase.detected_at == T0 + 60


def test_rapid_fall_is_descent():
    """More than 3 m/s down."""
    phase = classify_flight_phase(track([20000, 19900, 19800, 19700, 19600]))
    assert (phase.phase, phase.confidence) == (DESCENT, 0.9)


def test_peak_then_falling_is_descent():
    """A peak followed by a strictly falling run of more than 50 m."""
    assert has_peak_then_descent([8000, 8050, 8040, 8020, 7990])
    assert not has_peak_then_descent([8000, 8050, 8040, 8045, 7990])
    phase = classify_flight_phase(track([8000, 8050, 8040, 8020, 7990], interval=60))
    assert phase.phase == DESCENT


def test_slow_sink_is_low_confidence_descent():
    """Sinking between 0.5 and 3 m/s below 10 km."""
    phase = classify_flight_phase(track([5000, 4980, 4985, 4960, 4955]))
    assert (phase.phase, phase.confidence) == (DESCENT, 0.7)


def test_hovering_high_is_burst():
    """Near the apex with no clear vertical motion."""
    phase = classify_flight_phase(track([29990, 30000, 29995, 30000, 29998]))
    assert (phase.phase, phase.confidence) == (BURST, 0.6)


def test_still_and_low_is_landed():
    """Below 1 km and under 1 m/s."""
    phase = classify_flight_phase(track([300, 300.5, 300, 300.2, 300]))
    assert (phase.phase, phase.confidence) == (LANDED, 0.9)


def test_classifier_sorts_out_of_order_reports():
    """Batches arrive in any order."""
    positions = track([1000, 1075, 1150, 1225, 1300])
    phase = classify_flight_phase(list(reversed(positions)))
    assert phase.phase == ASCENT


def test_window_vertical_rate_needs_two_altitudes():
    """Gaps are reported, not guessed."""
    assert window_vertical_rate(track([100, 160], interval=60)) == pytest.approx(1.0)
    with pytest.raises(TelemetryGapError):
        window_vertical_rate(track([100, None]))
    with pytest.raises(TelemetryGapError):
        window_vertical_rate(track([100, 200], interval=0))


# -- phase progression --

def test_tracker_reports_regression_as_unknown():
    """Ascent after descent is noise, not a new ascent."""
    tracker = FlightPhaseTracker()
    assert tracker.update(FlightPhase(ASCENT, 0.8, 1)).phase == ASCENT
    assert tracker.update(FlightPhase(DESCENT, 0.9, 2)).phase == DESCENT
    regressed = tracker.update(FlightPhase(ASCENT, 0.8, 3))
    assert regressed.phase == UNKNOWN
    assert regressed.confidence <= 0.4
    assert tracker.current == DESCENT


def test_tracker_landed_is_terminal():
    """Once confidently landed, the flight stays landed until reset."""
    tracker = FlightPhaseTracker()
    tracker.update(FlightPhase(DESCENT, 0.9, 1))
    tracker.update(FlightPhase(LANDED, 0.9, 2))
    assert tracker.update(FlightPhase(ASCENT, 0.8, 3)).phase == LANDED
    tracker.reset()
    assert tracker.update(FlightPhase(ASCENT, 0.8, 4)).phase == ASCENT


def test_tracker_ignores_landed_on_the_pad():
    """Still readings before launch do not end the flight."""
    tracker = FlightPhaseTracker()
    assert tracker.update(FlightPhase(LANDED, 0.9, 1)).phase == LANDED
    assert not tracker.terminal
    assert tracker.update(FlightPhase(ASCENT, 0.8, 2)).phase == ASCENT


# -- assumed landed --

@pytest.mark.parametrize("altitude,silence,expected", [
    (150, 301, True), (80, 181, True), (40, 61, True), (400, 30, True),
    (400, 20, False), (600, 1000, False), (40, 10, False),
])
def test_assumed_landed_rules(altitude, silence, expected):
    """Low altitude plus enough silence reads as landed (15 s beacons)."""
    assert is_assumed_landed(altitude, silence, 15.0) is expected


def test_landing_watch_is_sticky():
    """The flag and site stay put until reset, even if beacons resume."""
    watch = LandingWatch(beacon_interval=15.0)
    last = TelemetryPosition(T0, 40.1, -86.1, 120.0)
    watch.record_beacon(last)
    assert not watch.check(T0 + 15)
    assert watch.check(T0 + 400)
    assert watch.landing_location == {"lat": 40.1, "lng": -86.1, "altitude": 120.0, "time": T0}
    watch.record_beacon(TelemetryPosition(T0 + 500, 41.0, -87.0, 5000.0))
    assert watch.assumed_landed
    assert watch.landing_location["lat"] == 40.1
    watch.reset()
    assert not watch.assumed_landed and watch.landing_location is None


# -- metrics and scoring --

def test_deviation_zero_on_predicted_path(calm_prediction):
    """A report on the predicted point has no deviation."""
    point = calm_prediction.path[10]
    deviation = calculate_deviation(TelemetryPosition(T0 + point.time, point.lat, point.lon, point.altitude),
                                    calm_prediction)
    assert deviation.distance == pytest.approx(0.0, abs=1e-6)
    assert deviation.altitude_difference == pytest.approx(0.0)


def test_deviation_direction_and_size(calm_prediction):
    """A report 1 km east of the path deviates ~1 km at ~90°."""
    point = calm_prediction.path[10]
    east = Location(point.lat, point.lon).offset(1000.0, 0.0)
    deviation = calculate_deviation(TelemetryPosition(T0 + point.time, east[0], east[1], point.altitude + 300),
                                    calm_prediction)
    assert deviation.distance == pytest.approx(1000.0, rel=0.01)
    assert deviation.bearing == pytest.approx(90.0, abs=0.5)
    assert deviation.altitude_difference == pytest.approx(300.0)


def test_deviation_without_altitude(calm_prediction):
    """No altitude, no altitude deviation."""
    deviation = calculate_deviation(TelemetryPosition(T0 + 600, 40.4123, -86.9369, None), calm_prediction)
    assert deviation.altitude_difference == 0.0


def test_rate_extraction():
    """Ascent from samples above 500 m; descent from the peak onwards."""
    climb = track([200, 400, 600, 800, 1000], interval=40)
    assert extract_ascent_rate(climb) == pytest.approx(5.0)
    arc = track([29000, 30000, 29400, 28800], interval=100)
    assert extract_descent_rate(arc) == pytest.approx(6.0)
    assert extract_descent_rate(track([1000])) is None


def test_burst_altitude_only_reported_in_descent(calm_prediction):
    """The highest report counts as the burst altitude once descending."""
    climbing = track([10000, 10075, 10150, 10225, 10300])
    assert calculate_actual_flight_metrics(climbing, calm_prediction).actual_burst_altitude is None
    falling = track([28000, 28500, 27900, 27300, 26700], interval=60)
    metrics = calculate_actual_flight_metrics(falling, calm_prediction)
    assert metrics.flight_phase.phase == DESCENT
    assert metrics.actual_burst_altitude == 28500
    assert metrics.actual_descent_rate == pytest.approx(10.0)
    assert metrics.time_to_landing == pytest.approx(26700 / 10.0)


def test_metrics_need_telemetry(calm_prediction):
    """An empty batch cannot be analysed."""
    with pytest.raises(TelemetryGapError):
        calculate_actual_flight_metrics([], calm_prediction)


def test_accuracy_is_bounded(calm_prediction):
    """Far-off reports bottom out at 0.1, never below."""
    far = [TelemetryPosition(T0 + 600, 10.0, 10.0, 99999.0)]
    metrics = calculate_actual_flight_metrics(far, calm_prediction)
    accuracy = calculate_accuracy(calm_prediction, metrics)
    assert accuracy.trajectory == MIN_ACCURACY
    assert accuracy.altitude == MIN_ACCURACY
    assert MIN_ACCURACY <= accuracy.timing <= 1.0
    assert MIN_ACCURACY <= accuracy.overall <= 1.0


def test_following_the_prediction_scores_high(params, calm_weather, calm_prediction):
    """Telemetry that is the prediction itself scores at least 0.95 overall."""
    telemetry = telemetry_from_prediction(calm_prediction, until=3000)
    comparison = compare_live(telemetry, calm_prediction, params, calm_weather, ground_elevation=0.0)
    assert comparison.actual_metrics.deviation.distance == pytest.approx(0.0, abs=1e-6)
    assert comparison.accuracy.trajectory == pytest.approx(1.0)
    assert comparison.accuracy.altitude == pytest.approx(1.0)
    assert comparison.accuracy.overall >= 0.95
    assert comparison.actual_metrics.flight_phase.phase == ASCENT
    assert comparison.recommendations == []


def test_following_a_windy_prediction_scores_high(params, windy_weather, windy_prediction):
    """Self-comparison holds in a 10 m/s westerly, where the path drifts tens of kilometres."""
    telemetry = telemetry_from_prediction(windy_prediction, until=3000)
    assert Location.haversine(params.lat, params.lon, telemetry[-1].lat, telemetry[-1].lng) > 20000
    comparison = compare_live(telemetry, windy_prediction, params, windy_weather, ground_elevation=0.0)
    assert comparison.actual_metrics.deviation.distance == pytest.approx(0.0, abs=1e-6)
    assert comparison.accuracy.overall >= 0.95
    updated = comparison.updated_prediction
    assert updated.landing_point.lon == pytest.approx(windy_prediction.landing_point.lon, abs=0.02)


def test_updated_prediction_continues_from_current_position(params, calm_weather, calm_prediction):
    """The regenerated path starts at the last report and lands at the same place in calm air."""
    telemetry = telemetry_from_prediction(calm_prediction, until=3000)
    comparison = compare_live(telemetry, calm_prediction, params, calm_weather, ground_elevation=0.0)
    updated = comparison.updated_prediction
    assert updated.launch_point.time == pytest.approx(telemetry[-1].time - T0)
    assert updated.launch_point.altitude == pytest.approx(telemetry[-1].altitude)
    assert updated.total_time == pytest.approx(calm_prediction.total_time, abs=1.0)


def test_no_updated_prediction_once_landed(params, calm_weather, calm_prediction):
    """A landed flight is not re-predicted."""
    landed = track([40, 40.2, 40.1, 40, 40.3])
    metrics = calculate_actual_flight_metrics(landed, calm_prediction)
    assert metrics.flight_phase.phase == LANDED
    assert generate_updated_prediction(metrics, params, calm_weather, ground_elevation=0.0) is None


def test_compare_live_empty_batch(params, calm_weather, calm_prediction):
    """No telemetry, no comparison."""
    assert compare_live([], calm_prediction, params, calm_weather) is None


def test_slow_ascent_recommendation(params, calm_weather, calm_prediction):
    """A 2 m/s climb warns about a lower burst."""
    slow = track([1000, 1030, 1060, 1090, 1120])
    comparison = compare_live(slow, calm_prediction, params, calm_weather, ground_elevation=0.0)
    assert any("Slower than expected" in r for r in comparison.recommendations)


def test_comparison_serializes(params, calm_weather, calm_prediction):
    """to_dict exposes the display shape."""
    telemetry = telemetry_from_prediction(calm_prediction, until=1200)
    data = compare_live(telemetry, calm_prediction, params, calm_weather, ground_elevation=0.0).to_dict()
    assert {"originalPrediction", "updatedPrediction", "actualMetrics", "accuracy",
            "recommendations", "assumedLanded"} <= set(data)
    assert data["accuracy"]["overallAccuracy"] >= 0.95


def test_wind_estimate_from_drift():
    """Eastward drift of 10 m/s reads as a 10 m/s wind towards 90°."""
    start = Location(40.0, -86.0)
    positions = []
    for i in range(4):
        loc = start.offset(10.0 * 60 * i, 0.0)
        positions.append(TelemetryPosition(T0 + 60 * i, loc[0], loc[1], 1000.0 + 300 * i))
    estimates = estimate_wind_from_trajectory(positions)
    assert len(estimates) == 2
    assert estimates[0].speed == pytest.approx(10.0, rel=0.01)
    assert estimates[0].direction == pytest.approx(90.0, abs=0.5)


# -- stateful comparator --

def test_comparator_recomputes_only_on_material_change(params, calm_weather, calm_prediction):
    """Repeating the same batch reuses the last comparison."""
    comparator = LiveComparator(calm_prediction, params, calm_weather, ground_elevation=0.0)
    telemetry = telemetry_from_prediction(calm_prediction, until=1200)
    first = comparator.update(telemetry)
    again = comparator.update(list(telemetry))
    assert again is first
    assert comparator.recomputations == 1
    more = telemetry_from_prediction(calm_prediction, until=1260)
    comparator.update(more)
    assert comparator.recomputations == 2


def test_comparator_small_jitter_is_not_material(params, calm_weather, calm_prediction):
    """A resend of the newest report with 1 m of altitude jitter is ignored."""
    comparator = LiveComparator(calm_prediction, params, calm_weather, ground_elevation=0.0)
    telemetry = telemetry_from_prediction(calm_prediction, until=1200)
    comparator.update(telemetry)
    last = telemetry[-1]
    jittered = telemetry[:-1] + [TelemetryPosition(last.time, last.lat, last.lng, last.altitude + 1.0)]
    comparator.update(jittered)
    assert comparator.recomputations == 1


def test_comparator_assumes_landing_after_silence(params, calm_weather, calm_prediction):
    """Silence after a low report flags the landing and adds a recommendation."""
    comparator = LiveComparator(calm_prediction, params, calm_weather, beacon_interval=15.0,
                                ground_elevation=0.0)
    low = track([900, 600, 300, 120], interval=60)
    comparison = comparator.update(low, now=low[-1].time)
    assert not comparison.assumed_landed
    comparison = comparator.update(low, now=low[-1].time + 400)
    assert comparison.assumed_landed
    assert comparison.assumed_landing_location["altitude"] == 120
    assert any("assumed landed" in r for r in comparison.recommendations)
    comparator.reset()
    assert comparator.last_comparison is None


def test_comparator_stays_in_descent_after_inconclusive_batch(params, calm_weather, calm_prediction):
    """Once committed to descent, a slow-sinking batch neither re-climbs nor forgets the burst."""
    comparator = LiveComparator(calm_prediction, params, calm_weather, ground_elevation=0.0)
    start = T0 + 9000
    falling = track([9500, 9140, 8780, 8420, 8060], start=start, interval=60)
    comparison = comparator.update(falling)
    assert comparison.actual_metrics.flight_phase.phase == DESCENT
    assert comparator.tracker.current == DESCENT

    sinking = falling + track([8054, 8048, 8042, 8036, 8030], start=start + 300, interval=60)
    comparison = comparator.update(sinking)
    metrics = comparison.actual_metrics
    assert metrics.flight_phase.phase == UNKNOWN
    assert metrics.committed_phase == DESCENT
    assert metrics.actual_burst_altitude == 9500
    updated = comparison.updated_prediction
    assert updated.max_altitude <= 8030 + 1e-6
    assert updated.landing_point.altitude == pytest.approx(0.0)


def test_committed_descent_survives_phase_regression(params, calm_weather, calm_prediction):
    """A climb reading after descent is unknown to the tracker and the updated path still only falls."""
    unknown = FlightPhase(UNKNOWN, 0.4, T0 + 9600)
    sinking = track([9000, 9200, 9400], start=T0 + 9480, interval=60)
    metrics = calculate_actual_flight_metrics(sinking, calm_prediction, unknown, committed_phase=DESCENT)
    assert metrics.descending
    assert metrics.actual_burst_altitude == 9400
    updated = generate_updated_prediction(metrics, params, calm_weather, ground_elevation=0.0)
    assert updated.max_altitude == pytest.approx(9400)
    assert all(b.altitude <= a.altitude for a, b in zip(updated.path, updated.path[1:]))
