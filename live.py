"""
Live comparison of telemetry against a prediction.

Classifies the flight phase from the most recent samples, extracts actual
ascent/descent rates and burst altitude, scores the deviation from the
predicted path and regenerates the rest of the flight from the current
position. LiveComparator keeps the per-flight state (phase progression,
assumed-landed watch, last processed sample) between telemetry batches.
"""
import logging

from hablive import (ASCENT, BURST, DESCENT, LANDED, UNKNOWN, PHASE_ORDER, Accuracy,
                     ActualFlightMetrics, Deviation, FlightPhase, LivePredictionComparison,
                     Location, TelemetryGapError, TelemetryPosition, to_unix)
import simulate

logger = logging.getLogger(__name__)

# Deviations at which trajectory/altitude accuracy bottoms out
MAX_REASONABLE_DEVIATION_M = 50000.0
MAX_ALTITUDE_DEVIATION_M = 5000.0
MIN_ACCURACY = 0.1
BASE_TIMING_ACCURACY = 0.7

PHASE_WINDOW = 5
ASCENT_RATE_FLOOR_M = 500.0
DEFAULT_DESCENT_RATE = 5.0
# Rates below this are treated as noise when seeding an updated prediction
MIN_USABLE_RATE = 0.5
LANDED_TERMINAL_CONFIDENCE = 0.9


def sort_positions(positions):
    """Time-ordered list of TelemetryPosition (dicts are converted)."""
    converted = [p if isinstance(p, TelemetryPosition) else TelemetryPosition.from_dict(p) for p in positions]
    return sorted(converted, key=lambda p: p.time)


def window_vertical_rate(window):
    """
    Vertical rate in m/s between the first and last altitude-bearing samples of the window.

    Raises TelemetryGapError with fewer than two such samples or no elapsed time.
    """
    samples = [p for p in window if p.altitude is not None]
    if len(samples) < 2:
        raise TelemetryGapError(f"Need two samples with altitude, got {len(samples)}")
    span = samples[-1].time - samples[0].time
    if span <= 0:
        raise TelemetryGapError("Telemetry samples share a timestamp")
    return (samples[-1].altitude - samples[0].altitude) / span


def has_peak_then_descent(altitudes):
    """
    Peak followed by a strictly decreasing run totalling more than 50 m.

    Looks at the last five altitudes; the peak is the first maximum and at least
    one sample must follow it.
    """
    if len(altitudes) < 3:
        return False
    recent = altitudes[-PHASE_WINDOW:]
    peak = max(recent)
    after = recent[recent.index(peak) + 1:]
    if not after:
        return False
    strictly_falling = all(b < a for a, b in zip([peak] + after[:-1], after))
    return strictly_falling and peak - recent[-1] > 50


def classify_flight_phase(positions):
    """
    Confidence-scored phase from the last five samples.

    First match wins: landed, descent (rapid, peak pattern, high altitude),
    ascent, slow descent, near-apex burst, unknown.
    """
    positions = sort_positions(positions)
    if len(positions) < 2:
        return FlightPhase(UNKNOWN, 0.0, positions[0].time if positions else 0)

    recent = positions[-PHASE_WINDOW:]
    detected_at = recent[-1].time
    altitudes = [p.altitude for p in recent if p.altitude is not None]
    if len(altitudes) < 2:
        return FlightPhase(UNKNOWN, 0.3, detected_at)
    try:
        rate = window_vertical_rate(recent)
    except TelemetryGapError as e:
        logger.debug("Phase unknown: %s", e)
        return FlightPhase(UNKNOWN, 0.0, detected_at)

    altitude = altitudes[-1]
    rapid_descent = rate < -3
    high_altitude_descent = altitude > 10000 and rate < -0.5

    if altitude < 1000 and abs(rate) < 1:
        return FlightPhase(LANDED, 0.9, detected_at)
    if rapid_descent or has_peak_then_descent(altitudes) or high_altitude_descent:
        return FlightPhase(DESCENT, 0.9, detected_at)
    if rate > 2:
        return FlightPhase(ASCENT, 0.8, detected_at)
    if rate < -0.5:
        return FlightPhase(DESCENT, 0.7, detected_at)
    if altitude > 15000 and abs(rate) < 1.5:
        return FlightPhase(BURST, 0.6, detected_at)
    return FlightPhase(UNKNOWN, 0.4, detected_at)


class FlightPhaseTracker:
    """
    One-way phase progression ascent -> burst -> descent -> landed.

    A classification that would move backwards is reported as unknown. A
    confident landed after the balloon has been airborne is terminal; landed
    readings before any flight phase (pad samples) are passed through without
    being recorded.
    """

    def __init__(self):
        self.current = None
        self.terminal = False

    def update(self, phase):
        if self.terminal:
            return FlightPhase(LANDED, LANDED_TERMINAL_CONFIDENCE, phase.detected_at)
        if phase.phase == UNKNOWN:
            return phase
        if phase.phase == LANDED and self.current is None:
            return phase
        if self.current is not None and PHASE_ORDER.index(phase.phase) < PHASE_ORDER.index(self.current):
            logger.debug("Ignoring phase regression %s -> %s", self.current, phase.phase)
            return FlightPhase(UNKNOWN, min(phase.confidence, 0.4), phase.detected_at)
        self.current = phase.phase
        if phase.phase == LANDED and phase.confidence >= LANDED_TERMINAL_CONFIDENCE:
            self.terminal = True
        return phase

    def reset(self):
        self.current = None
        self.terminal = False


def is_assumed_landed(altitude, silence, beacon_interval):
    """Beacon silence at low altitude reads as a landing rather than signal loss."""
    missed_beacons = silence / beacon_interval if beacon_interval > 0 else 0
    return ((altitude < 200 and silence > 300)
            or (altitude < 100 and silence > 180)
            or (altitude < 50 and silence > 60)
            or (altitude < 500 and missed_beacons >= 2))


class LandingWatch:
    """
    Sticky assumed-landed flag with the last known position as landing site.

    Once set the flag stays until reset().
    """

    def __init__(self, beacon_interval=15.0):
        self.beacon_interval = float(beacon_interval)
        self.reset()

    def reset(self):
        self.assumed_landed = False
        self.landing_location = None
        self.last_beacon_time = None
        self.last_position = None

    def record_beacon(self, position):
        if self.assumed_landed:
            return
        self.last_position = position
        self.last_beacon_time = position.time

    def check(self, now):
        """Evaluate the hysteresis at clock time now (unix seconds); returns the flag."""
        if self.assumed_landed or self.last_position is None:
            return self.assumed_landed
        altitude = self.last_position.altitude or 0.0
        silence = now - self.last_beacon_time
        if is_assumed_landed(altitude, silence, self.beacon_interval):
            self.assumed_landed = True
            self.landing_location = {"lat": self.last_position.lat, "lng": self.last_position.lng,
                                     "altitude": altitude, "time": self.last_position.time}
            logger.info("Beacon silent for %.0fs at %.0f m; assuming landed at (%.5f, %.5f)",
                        silence, altitude, self.last_position.lat, self.last_position.lng)
        return self.assumed_landed


def calculate_deviation(position, prediction):
    """
    Deviation of a sample from the predicted point nearest in flight-elapsed time.

    Bearing is from the predicted point towards the sample. A sample without
    altitude contributes no altitude difference.
    """
    flight_time = position.time - to_unix(prediction.launch_time)
    closest = prediction.trajectory.nearest(flight_time)
    if closest is None:
        return Deviation()
    distance = Location.haversine(position.lat, position.lng, closest.lat, closest.lon)
    bearing = Location.initial_bearing(closest.lat, closest.lon, position.lat, position.lng)
    altitude_difference = 0.0 if position.altitude is None else position.altitude - closest.altitude
    return Deviation(distance, bearing, altitude_difference)


def _rate_between(first, last):
    span = last.time - first.time
    if span <= 0:
        return None
    return (last.altitude - first.altitude) / span


def extract_ascent_rate(positions):
    """Climb rate from the first/last samples above 500 m, falling back to any altitude gain."""
    for floor in (ASCENT_RATE_FLOOR_M, 0.0):
        samples = [p for p in positions if p.altitude is not None and p.altitude > floor]
        if len(samples) >= 2 and samples[-1].altitude > samples[0].altitude:
            rate = _rate_between(samples[0], samples[-1])
            if rate:
                return rate
    return None


def extract_descent_rate(positions):
    """
    Sink rate from the highest sample onwards (the burst), falling back to the last three samples.

    Returned positive.
    """
    samples = [p for p in positions if p.altitude is not None]
    if len(samples) < 2:
        return None
    peak_idx = max(range(len(samples)), key=lambda i: samples[i].altitude)
    after_peak = samples[peak_idx:]
    if len(after_peak) >= 2 and after_peak[0].altitude > after_peak[-1].altitude:
        rate = _rate_between(after_peak[0], after_peak[-1])
        if rate:
            return -rate
    recent = samples[-3:]
    if len(recent) >= 2 and recent[0].altitude > recent[-1].altitude:
        rate = _rate_between(recent[0], recent[-1])
        if rate:
            return -rate
    return None


def calculate_actual_flight_metrics(positions, prediction, flight_phase=None, committed_phase=None):
    """
    Actual flight metrics for a telemetry batch.

    Burst altitude is only reported once the phase is descent, so a noisy dip
    during ascent never registers as a burst. committed_phase is the furthest
    phase a FlightPhaseTracker has accepted; once that is descent or landed an
    inconclusive batch still counts as descending.
    """
    positions = sort_positions(positions)
    if not positions:
        raise TelemetryGapError("No telemetry to analyse")
    current = positions[-1]
    flight_phase = flight_phase or classify_flight_phase(positions)

    descending = flight_phase.phase == DESCENT or committed_phase in (DESCENT, LANDED)
    actual_ascent_rate = extract_ascent_rate(positions)

    actual_burst_altitude = None
    altitudes = [p.altitude for p in positions if p.altitude is not None]
    if altitudes and descending:
        actual_burst_altitude = max(altitudes)

    try:
        current_rate = window_vertical_rate(positions[-PHASE_WINDOW:])
    except TelemetryGapError:
        current_rate = 0.0

    actual_descent_rate = None
    if descending or current_rate < -0.5:
        actual_descent_rate = extract_descent_rate(positions)

    deviation = calculate_deviation(current, prediction)
    time_to_landing = _time_to_landing(current, flight_phase, descending, prediction, actual_ascent_rate,
                                       actual_descent_rate, actual_burst_altitude)
    return ActualFlightMetrics(current, flight_phase, deviation, actual_ascent_rate,
                               actual_descent_rate, actual_burst_altitude, time_to_landing,
                               committed_phase)


def _time_to_landing(current, flight_phase, descending, prediction, ascent_rate, descent_rate,
                     burst_altitude):
    altitude = current.altitude or 0.0
    ground = prediction.landing_point.altitude
    if flight_phase.phase == LANDED:
        return 0.0
    if descending:
        if descent_rate and descent_rate > 0:
            return max(0.0, altitude - ground) / descent_rate
        return None
    if flight_phase.phase in (ASCENT, BURST):
        if ascent_rate and ascent_rate > 0:
            burst = burst_altitude or prediction.burst_point.altitude
            to_burst = max(0.0, burst - altitude) / ascent_rate
            return to_burst + max(0.0, burst - ground) / (descent_rate or DEFAULT_DESCENT_RATE)
        flight_time = current.time - to_unix(prediction.launch_time)
        return max(0.0, prediction.total_time - flight_time)
    return None


def _clamp_accuracy(value):
    return max(MIN_ACCURACY, min(1.0, value))


def calculate_accuracy(prediction, metrics):
    """
    Trajectory, altitude and timing accuracy in [0.1, 1].

    Timing starts at 0.7 and rises towards 0.9 as the actual ascent rate
    approaches the predicted mean ascent rate.
    """
    deviation = metrics.deviation
    trajectory = _clamp_accuracy(1 - deviation.distance / MAX_REASONABLE_DEVIATION_M)
    altitude = _clamp_accuracy(1 - abs(deviation.altitude_difference) / MAX_ALTITUDE_DEVIATION_M)

    timing = BASE_TIMING_ACCURACY
    nominal = prediction.nominal_ascent_rate()
    if metrics.actual_ascent_rate and metrics.actual_ascent_rate > 0 and nominal:
        ratio = min(metrics.actual_ascent_rate, nominal) / max(metrics.actual_ascent_rate, nominal)
        timing = max(timing, ratio * 0.9)
    return Accuracy(trajectory, altitude, _clamp_accuracy(timing))


def generate_recommendations(comparison):
    recommendations = []
    metrics, accuracy = comparison.actual_metrics, comparison.accuracy

    if accuracy.trajectory < 0.7:
        recommendations.append('Significant trajectory deviation detected. Consider updated landing zone predictions.')
    if metrics.actual_ascent_rate and metrics.actual_ascent_rate < 3:
        recommendations.append('Slower than expected ascent rate. Burst altitude may be lower than predicted.')
    if metrics.actual_ascent_rate and metrics.actual_ascent_rate > 8:
        recommendations.append('Faster than expected ascent rate. Monitor for early burst.')
    if metrics.deviation.distance > 10000:
        recommendations.append('Flight path deviating significantly from prediction. Check wind conditions.')
    if metrics.flight_phase.phase == DESCENT and not metrics.actual_descent_rate:
        recommendations.append('Descent phase detected but descent rate unknown. Monitor closely.')
    if comparison.assumed_landed:
        recommendations.append('Beacon silent at low altitude. Flight assumed landed near the last known position.')
    return recommendations


class WindEstimate:
    def __init__(self, speed, direction, altitude, confidence=0.7):
        self.speed = speed
        self.direction = direction
        self.altitude = altitude
        self.confidence = confidence

    def to_dict(self):
        return {"estimatedWindSpeed": self.speed, "estimatedWindDirection": self.direction,
                "confidence": self.confidence, "altitude": self.altitude,
                "derivedFrom": "trajectory_analysis"}


def estimate_wind_from_trajectory(positions):
    """
    Wind estimates assuming the balloon drifts with the air.

    One estimate per interior sample, from the displacement between its two
    neighbours. direction is the bearing the balloon travels towards.
    """
    positions = sort_positions(positions)
    estimates = []
    for prev, curr, nxt in zip(positions, positions[1:], positions[2:]):
        if prev.altitude is None or curr.altitude is None or nxt.altitude is None:
            continue
        span = nxt.time - prev.time
        if span <= 0:
            continue
        distance = Location.haversine(prev.lat, prev.lng, nxt.lat, nxt.lng)
        direction = Location.initial_bearing(prev.lat, prev.lng, nxt.lat, nxt.lng)
        estimates.append(WindEstimate(distance / span, direction, curr.altitude))
    return estimates


def estimate_burst_altitude(metrics, params):
    """Actual burst altitude only once in descent; otherwise the planned one."""
    if metrics.actual_burst_altitude and metrics.descending:
        return metrics.actual_burst_altitude
    return params.burst_altitude


def generate_updated_prediction(metrics, params, weather, ground_elevation=None, elevation_provider=None):
    """
    Re-run the integrator from the current position, or None once landed.

    Measured rates replace the nominal ones when usable. In descent (reported by
    this batch or committed earlier) the ascent is skipped and the current
    altitude is the top of the new path.
    WeatherUnavailableError and other prediction errors propagate.
    """
    phase = metrics.flight_phase.phase
    if phase == LANDED:
        return None
    current = metrics.current_position
    altitude = current.altitude if current.altitude is not None else params.launch_altitude
    burst_altitude = estimate_burst_altitude(metrics, params)

    ascent_rate = metrics.actual_ascent_rate
    if not ascent_rate or ascent_rate < MIN_USABLE_RATE:
        ascent_rate = params.ascent_rate
    descent_rate = metrics.actual_descent_rate
    if not descent_rate or descent_rate < MIN_USABLE_RATE:
        descent_rate = params.descent_rate

    descending = metrics.descending
    if descending:
        burst_altitude = altitude
    return simulate.predict_from_state(
        params, weather, current.time, current.lat, current.lng, altitude,
        descending=descending, ascent_rate=ascent_rate, burst_altitude=burst_altitude,
        descent_rate=descent_rate, ground_elevation=ground_elevation,
        elevation_provider=elevation_provider,
    )


def compare_live(telemetry, original_prediction, params, weather, flight_phase=None,
                 landing_watch=None, ground_elevation=None, elevation_provider=None,
                 committed_phase=None):
    """
    Compare a telemetry batch against the original prediction.

    Returns None for an empty batch. landing_watch, when given, contributes the
    assumed-landed flag and site.
    """
    positions = sort_positions(telemetry)
    if not positions:
        return None
    metrics = calculate_actual_flight_metrics(positions, original_prediction, flight_phase, committed_phase)
    updated = generate_updated_prediction(metrics, params, weather, ground_elevation, elevation_provider)
    accuracy = calculate_accuracy(original_prediction, metrics)
    comparison = LivePredictionComparison(original_prediction, metrics, accuracy, updated)
    if landing_watch is not None:
        comparison.assumed_landed = landing_watch.assumed_landed
        comparison.assumed_landing_location = landing_watch.landing_location
    comparison.recommendations = generate_recommendations(comparison)
    logger.debug("Live comparison: phase=%s alt=%s deviation=%.0f m overall=%.2f",
                 metrics.flight_phase.phase, metrics.current_position.altitude,
                 metrics.deviation.distance, accuracy.overall)
    return comparison


class LiveComparator:
    """
    Stateful wrapper around compare_live for a stream of telemetry batches.

    The comparison is recomputed only when the newest sample differs
    materially from the last processed one (new time, moved more than 10 m, or
    changed altitude by more than 5 m).
    """
    MATERIAL_DISTANCE_M = 10.0
    MATERIAL_ALTITUDE_M = 5.0

    def __init__(self, original_prediction, params, weather, beacon_interval=15.0,
                 ground_elevation=None, elevation_provider=None):
        self.original_prediction = original_prediction
        self.params = params
        self.weather = weather
        self.ground_elevation = ground_elevation
        self.elevation_provider = elevation_provider
        self.tracker = FlightPhaseTracker()
        self.landing_watch = LandingWatch(beacon_interval)
        self.last_sample = None
        self.last_comparison = None
        self.recomputations = 0

    def is_material_change(self, sample):
        last = self.last_sample
        if last is None:
            return True
        if sample.time != last.time:
            return True
        if Location.haversine(sample.lat, sample.lng, last.lat, last.lng) > self.MATERIAL_DISTANCE_M:
            return True
        if (sample.altitude is None) != (last.altitude is None):
            return True
        return sample.altitude is not None and abs(sample.altitude - last.altitude) > self.MATERIAL_ALTITUDE_M

    def update(self, telemetry, now=None):
        """Latest comparison for the batch; now (unix seconds) drives the assumed-landed check."""
        positions = sort_positions(telemetry)
        if not positions:
            return None
        newest = positions[-1]
        if self.is_material_change(newest):
            phase = self.tracker.update(classify_flight_phase(positions))
            self.landing_watch.record_beacon(newest)
            self.last_comparison = compare_live(positions, self.original_prediction, self.params,
                                                self.weather, phase, self.landing_watch,
                                                self.ground_elevation, self.elevation_provider,
                                                self.tracker.current)
            self.last_sample = newest
            self.recomputations += 1

        if now is not None and self.last_comparison is not None:
            was_landed = self.last_comparison.assumed_landed
            if self.landing_watch.check(now) and not was_landed:
                self.last_comparison.assumed_landed = True
                self.last_comparison.assumed_landing_location = self.landing_watch.landing_location
                self.last_comparison.recommendations = generate_recommendations(self.last_comparison)
        return self.last_comparison

    def reset(self):
        self.tracker.reset()
        self.landing_watch.reset()
        self.last_sample = None
        self.last_comparison = None
