"""
Burst performance calculator.

Forward mode turns masses, neck lift and gas into an ascent rate and a burst
altitude; goal mode inverts it, listing payload / neck lift combinations that
burst at a target altitude ranked by how sane their ascent rate is.

All masses are grams, altitudes meters, rates m/s.
"""
import logging
import math

from hablive import CalculatorParameters, Gas, InfeasibleAscentError, InvalidParametersError
from windfield import GRAVITY, MODEL_CEILING_M, air_density, pressure_at, temperature_at

logger = logging.getLogger(__name__)

DRAG_COEFFICIENT = 0.3
AIR_DENSITY_SEA_LEVEL = 1.225  # kg/m³
# Allometric fit of burst radius (m) against envelope weight (g)
BURST_RADIUS_COEFFICIENT = 0.479
BURST_RADIUS_EXPONENT = 0.3115

# Goal mode
GOAL_TOLERANCE_M = 50.0
MIN_SENSIBLE_TARGET_M = 5000.0
MAX_SENSIBLE_TARGET_M = 45000.0
IDEAL_ASCENT_RATE = 5.0
MAX_GOAL_OPTIONS = 6
FEASIBILITY_RANK = {'excellent': 0, 'good': 1, 'marginal': 2, 'poor': 3}

_BISECTION_TOLERANCE_M = 0.01
_BISECTION_MAX_ITER = 100


class CalculationStep:
    """One displayed step of the burst calculation."""

    def __init__(self, name, formula, calculation, result, unit):
        self.name = name
        self.formula = formula
        self.calculation = calculation
        self.result = result
        self.unit = unit

    def to_dict(self):
        return {"name": self.name, "formula": self.formula, "calculation": self.calculation,
                "result": self.result, "unit": self.unit}


class BurstPerformance:
    def __init__(self, ascent_rate, burst_altitude, free_lift, launch_volume, burst_volume, steps):
        self.ascent_rate = ascent_rate
        self.burst_altitude = burst_altitude
        self.free_lift = free_lift
        self.launch_volume = launch_volume
        self.burst_volume = burst_volume
        self.steps = steps

    def to_dict(self):
        return {"ascentRate": self.ascent_rate, "burstAltitude": self.burst_altitude,
                "freeLift": self.free_lift, "launchVolume": self.launch_volume,
                "burstVolume": self.burst_volume, "steps": [s.to_dict() for s in self.steps]}


class GoalOption:
    def __init__(self, payload_weight, neck_lift, total_system_weight, ascent_rate, burst_altitude,
                 description, feasibility, notes=None):
        self.payload_weight = payload_weight
        self.neck_lift = neck_lift
        self.total_system_weight = total_system_weight
        self.ascent_rate = ascent_rate
        self.burst_altitude = burst_altitude
        self.description = description
        self.feasibility = feasibility
        self.notes = notes

    def to_dict(self):
        return {"payloadWeight": self.payload_weight, "neckLift": self.neck_lift,
                "totalSystemWeight": self.total_system_weight, "ascentRate": self.ascent_rate,
                "burstAltitude": self.burst_altitude, "description": self.description,
                "feasibility": self.feasibility, "notes": self.notes}


class GoalResult:
    def __init__(self, target_burst_altitude, options, warnings):
        self.target_burst_altitude = target_burst_altitude
        self.options = options
        self.warnings = warnings

    def to_dict(self):
        return {"targetBurstAltitude": self.target_burst_altitude,
                "options": [o.to_dict() for o in self.options], "warnings": self.warnings}


def lift_per_cubic_meter(gas, altitude=0.0):
    """Buoyant lift of one m³ of gas in kg; both densities scale with the ambient air."""
    scale = air_density(altitude) / AIR_DENSITY_SEA_LEVEL
    return (AIR_DENSITY_SEA_LEVEL - Gas.parse(gas).density) * scale


def burst_radius(balloon_weight):
    return BURST_RADIUS_COEFFICIENT * balloon_weight ** BURST_RADIUS_EXPONENT


def sphere_volume(radius):
    return 4.0 / 3.0 * math.pi * radius ** 3


def sphere_radius(volume):
    return (3.0 * volume / (4.0 * math.pi)) ** (1.0 / 3.0)


def expansion_ratio(launch_altitude, altitude):
    """V(altitude) / V(launch) for a free gas parcel (ideal gas, ambient P and T)."""
    return (pressure_at(launch_altitude) / pressure_at(altitude)) * (temperature_at(altitude) / temperature_at(launch_altitude))


def solve_burst_altitude(launch_volume, burst_volume, launch_altitude=0.0):
    """
    Altitude at which the launch volume has expanded to the burst volume.

    Bisection between launch altitude and the model ceiling; the expansion
    ratio grows monotonically with altitude.
    """
    if launch_volume >= burst_volume:
        raise InvalidParametersError(
            f"Launch gas volume {launch_volume:.2f} m³ already exceeds the burst volume "
            f"{burst_volume:.2f} m³; reduce neck lift or use a larger balloon"
        )
    target = burst_volume / launch_volume
    lo, hi = float(launch_altitude), MODEL_CEILING_M
    if expansion_ratio(launch_altitude, hi) < target:
        raise InvalidParametersError(
            f"Balloon would not burst below {MODEL_CEILING_M:.0f} m; increase neck lift"
        )
    for _ in range(_BISECTION_MAX_ITER):
        mid = (lo + hi) / 2
        if expansion_ratio(launch_altitude, mid) < target:
            lo = mid
        else:
            hi = mid
        if hi - lo < _BISECTION_TOLERANCE_M:
            break
    return (lo + hi) / 2


def terminal_ascent_rate(free_lift, launch_volume, launch_altitude=0.0):
    """v = sqrt(2·F_free / (ρ_air · Cd · π r²)) with free lift in grams."""
    force = free_lift / 1000.0 * GRAVITY
    area = math.pi * sphere_radius(launch_volume) ** 2
    return math.sqrt(2 * force / (air_density(launch_altitude) * DRAG_COEFFICIENT * area))


def calculate_burst_performance(params, launch_altitude=0.0):
    """
    Forward burst calculation.

    Free lift is the neck lift minus what it has to carry (payload and
    parachute); free lift <= 0 raises InfeasibleAscentError. Returns a
    BurstPerformance with the intermediate steps for display.
    """
    if not isinstance(params, CalculatorParameters):
        params = CalculatorParameters.from_dict(params)
    params.validate()
    launch_altitude = float(launch_altitude or 0.0)
    steps = []

    deficit = params.carried_weight
    free_lift = params.neck_lift - deficit
    steps.append(CalculationStep(
        "Free Lift", "Lift_free = Lift_neck - (W_payload + W_parachute)",
        f"Lift_free = {params.neck_lift:g} - ({params.payload_weight:g} + {params.parachute_weight:g})",
        round(free_lift, 1), "g"))
    if free_lift <= 0:
        raise InfeasibleAscentError(params.neck_lift, deficit)

    gross_lift = (params.neck_lift + params.balloon_weight) / 1000.0
    lift_density = lift_per_cubic_meter(params.gas, launch_altitude)
    launch_volume = gross_lift / lift_density
    steps.append(CalculationStep(
        "Gas Lift per m³", "Lift_per_m³ = (ρ_air - ρ_gas) · ρ(h) / ρ0",
        f"Lift_per_m³ = ({AIR_DENSITY_SEA_LEVEL} - {params.gas.density}) at {launch_altitude:.0f} m",
        round(lift_density, 4), "kg/m³"))
    steps.append(CalculationStep(
        "Gas Volume at Launch", "V_launch = (Lift_neck + W_balloon) / Lift_per_m³",
        f"V_launch = {gross_lift:.3f} / {lift_density:.4f}", round(launch_volume, 3), "m³"))

    ascent_rate = terminal_ascent_rate(free_lift, launch_volume, launch_altitude)
    steps.append(CalculationStep(
        "Ascent Rate", "v_ascent = (2 · F_free / (ρ_air · π · r_launch² · C_d)) ^ 0.5",
        f"v_ascent = (2 · {free_lift / 1000.0:.3f} · {GRAVITY} / ({air_density(launch_altitude):.4f} · π · "
        f"{sphere_radius(launch_volume):.3f}² · {DRAG_COEFFICIENT})) ^ 0.5",
        round(ascent_rate, 3), "m/s"))

    radius = burst_radius(params.balloon_weight)
    burst_volume = sphere_volume(radius)
    steps.append(CalculationStep(
        "Burst Radius (Empirical)", f"r_burst = {BURST_RADIUS_COEFFICIENT} · W_balloon ^ {BURST_RADIUS_EXPONENT}",
        f"r_burst = {BURST_RADIUS_COEFFICIENT} · {params.balloon_weight:g} ^ {BURST_RADIUS_EXPONENT}",
        round(radius, 3), "m"))
    steps.append(CalculationStep(
        "Burst Volume", "V_burst = (4/3) · π · r_burst³",
        f"V_burst = (4/3) · π · {radius:.3f}³", round(burst_volume, 3), "m³"))

    burst_altitude = solve_burst_altitude(launch_volume, burst_volume, launch_altitude)
    steps.append(CalculationStep(
        "Burst Altitude", "V_launch · (P_launch / P(h)) · (T(h) / T_launch) = V_burst",
        f"expansion {burst_volume / launch_volume:.1f}x reached at {burst_altitude:.0f} m",
        round(burst_altitude), "m"))

    return BurstPerformance(ascent_rate, burst_altitude, free_lift, launch_volume, burst_volume, steps)


def required_neck_lift(target_burst_altitude, balloon_weight, gas, launch_altitude=0.0):
    """
    Neck lift in grams that bursts the balloon at the target altitude.

    The burst altitude only depends on the launch volume, so the inverse is
    analytic: V_launch = V_burst / expansion(target), gross lift = V_launch ·
    lift per m³, neck lift = gross lift - balloon weight.
    """
    launch_volume = sphere_volume(burst_radius(balloon_weight)) / expansion_ratio(launch_altitude, target_burst_altitude)
    return launch_volume * lift_per_cubic_meter(gas, launch_altitude) * 1000.0 - balloon_weight


def classify_ascent_rate(rate):
    """excellent 4-6 m/s, good 3-4 / 6-7, marginal 2-3 / 7-8, poor otherwise."""
    if 4 <= rate <= 6:
        return 'excellent'
    if 3 <= rate < 4 or 6 < rate <= 7:
        return 'good'
    if 2 <= rate < 3 or 7 < rate <= 8:
        return 'marginal'
    return 'poor'


_FEASIBILITY_NOTES = {
    'excellent': None,
    'good': None,
    'marginal': "Ascent rate is near the edge of the usual 4-6 m/s window.",
}


def _option_notes(feasibility, rate):
    if feasibility != 'poor':
        return _FEASIBILITY_NOTES[feasibility]
    if rate < 2:
        return "Very slow ascent: long exposure, large drift and risk of a floater."
    return "Very fast ascent: risk of early burst and structural stress."


def calculate_goal_options(target_burst_altitude, balloon_weight, parachute_weight, gas=Gas.HELIUM,
                           launch_altitude=0.0):
    """
    Payload / neck lift combinations that burst at the target altitude.

    Every option is checked through calculate_burst_performance and kept only
    if it reproduces the target within GOAL_TOLERANCE_M. Options are ranked by
    feasibility, then by closeness to a 5 m/s ascent; the best
    MAX_GOAL_OPTIONS are returned with any warnings.
    """
    target = float(target_burst_altitude)
    balloon_weight = float(balloon_weight)
    parachute_weight = float(parachute_weight)
    launch_altitude = float(launch_altitude or 0.0)
    gas = Gas.parse(gas)
    if balloon_weight <= 0 or parachute_weight <= 0:
        raise InvalidParametersError("Balloon and parachute weights must be greater than 0 g")

    warnings = []
    if target < MIN_SENSIBLE_TARGET_M:
        warnings.append(f"Target burst altitude {target:.0f} m is below {MIN_SENSIBLE_TARGET_M:.0f} m; "
                        f"most latex balloons burst far higher.")
    if target > MAX_SENSIBLE_TARGET_M:
        warnings.append(f"Target burst altitude {target:.0f} m is above {MAX_SENSIBLE_TARGET_M:.0f} m; "
                        f"few balloons reach it reliably.")
    if target <= launch_altitude or target >= MODEL_CEILING_M:
        warnings.append(f"Target burst altitude {target:.0f} m cannot be reached from {launch_altitude:.0f} m.")
        return GoalResult(target, [], warnings)

    neck_lift = round(required_neck_lift(target, balloon_weight, gas, launch_altitude), 1)
    max_payload = neck_lift - parachute_weight
    if max_payload <= 0:
        warnings.append(
            f"A {balloon_weight:g} g balloon needs only {max(neck_lift, 0):.0f} g of neck lift to burst at "
            f"{target:.0f} m, which cannot carry a {parachute_weight:g} g parachute. Choose a larger balloon."
        )
        return GoalResult(target, [], warnings)

    step = 100 if max_payload > 2000 else 50
    candidates = []
    payload = step
    while payload < max_payload:
        params = CalculatorParameters(payload, balloon_weight, parachute_weight, neck_lift, gas)
        try:
            performance = calculate_burst_performance(params, launch_altitude)
        except (InfeasibleAscentError, InvalidParametersError) as e:
            logger.debug("Goal candidate payload=%s rejected: %s", payload, e)
            payload += step
            continue
        if abs(performance.burst_altitude - target) <= GOAL_TOLERANCE_M:
            feasibility = classify_ascent_rate(performance.ascent_rate)
            candidates.append(GoalOption(
                payload_weight=payload,
                neck_lift=neck_lift,
                total_system_weight=payload + balloon_weight + parachute_weight,
                ascent_rate=performance.ascent_rate,
                burst_altitude=performance.burst_altitude,
                description=f"{payload:g} g payload at {performance.ascent_rate:.1f} m/s",
                feasibility=feasibility,
                notes=_option_notes(feasibility, performance.ascent_rate),
            ))
        payload += step

    candidates.sort(key=lambda o: (FEASIBILITY_RANK[o.feasibility], abs(o.ascent_rate - IDEAL_ASCENT_RATE)))
    options = candidates[:MAX_GOAL_OPTIONS]
    if not options:
        warnings.append("No payload fits the target burst altitude with this balloon and parachute.")
    elif all(o.feasibility == 'poor' for o in options):
        warnings.append("No option reaches a sensible ascent rate (2-8 m/s); consider a different balloon.")
    return GoalResult(target, options, warnings)
