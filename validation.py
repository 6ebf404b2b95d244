"""
Reference validation of the flight physics.

Checks the physical constants in use against the values published with the
CUSF and HABHUB predictors, and runs named reference flights through the
burst calculator and the trajectory simulator. Each result is compared with
the reference value within a per-metric tolerance; validation_report() rolls
both into a score, an assessment and recommendations.
"""
import logging
import math

import burst
import simulate
from hablive import (EARTH_RADIUS, GAS_DENSITIES, TIME_STEP, CalculatorParameters, Gas,
                     LaunchParameters, PredictionError)
from windfield import GRAVITY, SEA_LEVEL_PRESSURE_HPA, SEA_LEVEL_TEMP_K, WeatherData, temperature_at

logger = logging.getLogger(__name__)

# name: (reference value, acceptable difference in percent, source)
REFERENCE_CONSTANTS = {
    'earth_radius_m': (6371000.0, 0.1, 'IUGG mean radius (CUSF predictor)'),
    'gravity_ms2': (9.80665, 0.1, 'standard gravity'),
    'air_density_kgm3': (1.225, 1.0, 'ISA sea level'),
    'helium_density_kgm3': (0.1786, 1.0, 'STP'),
    'hydrogen_density_kgm3': (0.0899, 1.0, 'STP'),
    'drag_coefficient': (0.3, 5.0, 'HABHUB burst calculator'),
    'burst_radius_coefficient': (0.479, 2.0, 'HABHUB burst calculator'),
    'burst_radius_exponent': (0.3115, 1.0, 'HABHUB burst calculator'),
    'troposphere_lapse_rate_km': (0.0065, 1.0, 'ISA'),
    'stratosphere_temp_k': (216.65, 1.0, 'ISA'),
    'sea_level_temp_k': (288.15, 0.1, 'ISA'),
    'sea_level_pressure_hpa': (1013.25, 0.1, 'ISA'),
    'time_step_s': (60.0, 0.0, 'CUSF predictor'),
}

ASSESSMENTS = ((0.95, 'EXCELLENT'), (0.85, 'GOOD'), (0.70, 'ACCEPTABLE'), (0.50, 'NEEDS_IMPROVEMENT'))

# Winds by pressure level (hPa): (speed m/s, from direction deg)
REFERENCE_WINDS = {
    10: (15, 270), 50: (25, 260), 100: (30, 250), 200: (35, 240), 300: (20, 230),
    500: (15, 220), 700: (10, 210), 850: (8, 200), 925: (6, 190), 1000: (5, 180),
}


def constants_in_use():
    return {
        'earth_radius_m': EARTH_RADIUS,
        'gravity_ms2': GRAVITY,
        'air_density_kgm3': burst.AIR_DENSITY_SEA_LEVEL,
        'helium_density_kgm3': GAS_DENSITIES[Gas.HELIUM],
        'hydrogen_density_kgm3': GAS_DENSITIES[Gas.HYDROGEN],
        'drag_coefficient': burst.DRAG_COEFFICIENT,
        'burst_radius_coefficient': burst.BURST_RADIUS_COEFFICIENT,
        'burst_radius_exponent': burst.BURST_RADIUS_EXPONENT,
        'troposphere_lapse_rate_km': (SEA_LEVEL_TEMP_K - temperature_at(1000.0)) / 1000.0,
        'stratosphere_temp_k': temperature_at(11000.0),
        'sea_level_temp_k': SEA_LEVEL_TEMP_K,
        'sea_level_pressure_hpa': SEA_LEVEL_PRESSURE_HPA,
        'time_step_s': TIME_STEP,
    }


class ConstantCheck:
    def __init__(self, name, ours, reference, tolerance_pct, source):
        self.name = name
        self.ours = ours
        self.reference = reference
        self.tolerance_pct = tolerance_pct
        self.source = source
        self.difference_pct = abs(ours - reference) / abs(reference) * 100 if reference else 0.0
        # A zero tolerance still allows float rounding
        self.matches = self.difference_pct <= max(tolerance_pct, 1e-9)

    @property
    def note(self):
        if self.matches:
            return f"{self.name}: {self.ours:g} matches {self.reference:g} ({self.source})"
        return (f"{self.name}: {self.ours:g} differs from {self.reference:g} by "
                f"{self.difference_pct:.2f}% (acceptable {self.tolerance_pct:g}%, {self.source})")

    def to_dict(self):
        return {"name": self.name, "ours": self.ours, "reference": self.reference,
                "differencePct": self.difference_pct, "tolerancePct": self.tolerance_pct,
                "matches": self.matches, "source": self.source}


def compare_physics_constants(constants=None):
    """ConstantCheck per reference constant; constants defaults to constants_in_use()."""
    constants = constants or constants_in_use()
    checks = []
    for name, (reference, tolerance, source) in REFERENCE_CONSTANTS.items():
        check = ConstantCheck(name, float(constants[name]), reference, tolerance, source)
        if not check.matches:
            logger.warning("Constant mismatch: %s", check.note)
        checks.append(check)
    return checks


class ValidationCase:
    """
    A reference flight: launch, balloon and the expected results with tolerances.

    expected and tolerance are keyed by burst_altitude (m), ascent_rate (m/s)
    and ascent_time (s, launch to burst).
    """

    def __init__(self, name, description, launch, balloon, expected, tolerance):
        self.name = name
        self.description = description
        self.launch = launch
        self.balloon = balloon
        self.expected = expected
        self.tolerance = tolerance

    def launch_parameters(self):
        return LaunchParameters.from_dict(self.launch)

    def calculator_parameters(self):
        return CalculatorParameters.from_dict(self.balloon)


VALIDATION_CASES = (
    ValidationCase(
        'CUSF Standard Case', 'Cambridge launch with typical parameters',
        launch={"lat": 52.2135, "lon": 0.0964, "launch_time": "2024-01-15T12:00:00Z",
                "launch_altitude": 50.0, "ascent_rate": 5.0, "burst_altitude": 30000.0,
                "descent_rate": 5.0},
        balloon={"payload_weight": 500, "balloon_weight": 800, "parachute_weight": 50,
                 "neck_lift": 1500, "gas": "Helium"},
        expected={"burst_altitude": 30000.0, "ascent_rate": 5.0, "ascent_time": 6000.0},
        tolerance={"burst_altitude": 2000.0, "ascent_rate": 0.5, "ascent_time": 600.0},
    ),
    ValidationCase(
        'HABHUB High Altitude', 'High altitude balloon flight',
        launch={"lat": 40.7128, "lon": -74.0060, "launch_time": "2024-02-01T15:00:00Z",
                "launch_altitude": 0.0, "ascent_rate": 4.5, "burst_altitude": 35000.0,
                "descent_rate": 5.5},
        balloon={"payload_weight": 800, "balloon_weight": 1200, "parachute_weight": 100,
                 "neck_lift": 2000, "gas": "Helium"},
        expected={"burst_altitude": 35000.0, "ascent_rate": 4.5, "ascent_time": 7778.0},
        tolerance={"burst_altitude": 3000.0, "ascent_rate": 0.5, "ascent_time": 900.0},
    ),
    ValidationCase(
        'Launch With Us Example', 'Denver launch at altitude',
        launch={"lat": 39.7392, "lon": -104.9903, "launch_time": "2024-03-01T18:00:00Z",
                "launch_altitude": 1600.0, "ascent_rate": 4.2, "burst_altitude": 28000.0,
                "descent_rate": 5.0},
        balloon={"payload_weight": 600, "balloon_weight": 600, "parachute_weight": 80,
                 "neck_lift": 1300, "gas": "Helium"},
        expected={"burst_altitude": 28000.0, "ascent_rate": 4.2, "ascent_time": 6286.0},
        tolerance={"burst_altitude": 2500.0, "ascent_rate": 0.4, "ascent_time": 700.0},
    ),
)

METRICS = ('burst_altitude', 'ascent_rate', 'ascent_time')


def reference_weather(launch_time):
    """Single-slot Open-Meteo payload with a fixed wind profile, valid from launch_time."""
    hourly = {"time": [launch_time.strftime('%Y-%m-%dT%H:%M')]}
    for level, (speed, direction) in REFERENCE_WINDS.items():
        hourly[f"windspeed_{level}hPa"] = [speed]
        hourly[f"winddirection_{level}hPa"] = [direction]
    return WeatherData(hourly)


class ValidationResult:
    def __init__(self, case, results=None, deviations=None, within=None, notes=None, error=None):
        self.case = case
        self.results = {} if results is None else results
        self.deviations = {m: math.inf for m in METRICS} if deviations is None else deviations
        self.within = {m: False for m in METRICS} if within is None else within
        self.notes = [] if notes is None else notes
        self.error = error

    @property
    def passed(self):
        return self.error is None and all(self.within.values())

    def to_dict(self):
        return {
            "name": self.case.name,
            "description": self.case.description,
            "expected": self.case.expected,
            "tolerance": self.case.tolerance,
            "results": self.results,
            # JSON has no infinity; a failed run reports no deviation
            "deviations": {m: (d if math.isfinite(d) else None) for m, d in self.deviations.items()},
            "withinTolerance": dict(self.within, overall=self.passed),
            "notes": self.notes,
        }


def _note(metric, deviation, tolerance):
    if metric == 'burst_altitude':
        return f"Burst altitude deviation: {deviation:.0f} m (tolerance: ±{tolerance:g} m)"
    if metric == 'ascent_rate':
        return f"Ascent rate deviation: {deviation:.2f} m/s (tolerance: ±{tolerance:g} m/s)"
    return f"Ascent time deviation: {deviation / 60:.1f} min (tolerance: ±{tolerance / 60:g} min)"


def run_case(case, weather=None):
    """
    Burst calculation, then a prediction flown with the calculated ascent rate
    and burst altitude. Calculation or prediction errors make a failed result.
    """
    try:
        params = case.launch_parameters()
        performance = burst.calculate_burst_performance(case.calculator_parameters(), params.launch_altitude)
        flown = params.replace(ascent_rate=performance.ascent_rate,
                               burst_altitude=performance.burst_altitude).validate()
        if weather is None:
            weather = reference_weather(params.launch_time)
        prediction = simulate.predict(flown, weather, ground_elevation=params.launch_altitude)
    except PredictionError as e:
        logger.warning("Validation case %r failed: %s", case.name, e)
        return ValidationResult(case, notes=[f"Calculation failed: {e}"], error=e)

    results = {
        "burst_altitude": performance.burst_altitude,
        "ascent_rate": performance.ascent_rate,
        "ascent_time": prediction.burst_point.time - prediction.launch_point.time,
        "flight_time": prediction.total_time,
    }
    deviations, within, notes = {}, {}, []
    for metric in METRICS:
        deviations[metric] = results[metric] - case.expected[metric]
        within[metric] = abs(deviations[metric]) <= case.tolerance[metric]
        if not within[metric]:
            notes.append(_note(metric, deviations[metric], case.tolerance[metric]))
    result = ValidationResult(case, results, deviations, within, notes)
    if result.passed:
        notes.append("All metrics within acceptable tolerance")
    logger.info("Validation case %r: %s", case.name, "passed" if result.passed else "; ".join(notes))
    return result


def run_validation(cases=VALIDATION_CASES, weather=None):
    return [run_case(case, weather) for case in cases]


def assessment(score):
    for threshold, label in ASSESSMENTS:
        if score >= threshold:
            return label
    return 'POOR'


def validation_report(cases=VALIDATION_CASES, weather=None, constants=None):
    """Constant checks and reference flights rolled into one scored report."""
    checks = compare_physics_constants(constants)
    results = run_validation(cases, weather)
    constants_score = sum(c.matches for c in checks) / len(checks)
    cases_score = sum(r.passed for r in results) / len(results) if results else 0.0
    score = (constants_score + cases_score) / 2

    recommendations = []
    mismatched = [c.name for c in checks if not c.matches]
    if mismatched:
        recommendations.append(f"Review physics constants: {', '.join(mismatched)}")
    if cases_score < 0.8:
        recommendations.append("Several reference flights fall outside tolerance; review the calculation parameters.")
    if score >= 0.9:
        recommendations.append("Results agree closely with the reference predictors.")
    elif score >= 0.7:
        recommendations.append("Results are broadly consistent with the reference predictors.")
    else:
        recommendations.append("Results differ markedly from the reference predictors.")
    if any(not r.within['burst_altitude'] for r in results):
        recommendations.append("Review the burst altitude model (burst radius fit and gas expansion).")
    if any(not r.within['ascent_rate'] for r in results):
        recommendations.append("Review the ascent rate model (drag coefficient and launch volume).")

    return {
        "score": score,
        "constantsScore": constants_score,
        "casesScore": cases_score,
        "assessment": assessment(score),
        "constants": [c.to_dict() for c in checks],
        "cases": [r.to_dict() for r in results],
        "recommendations": recommendations,
    }
