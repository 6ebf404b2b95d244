"""
Synthetic telemetry generator.

Turns a PredictionResult into a beacon stream under a configurable failure or
weather scenario. Each sample is built in layers: base position from the
prediction, scenario modifier, physics refinement (basic drift or a force
balance), forecast temperature bias, turbulence, thermal bias and sensor
noise. Every layer is a deterministic function of flight time, so the same
configuration always yields the same stream.
"""
import logging
import math
from datetime import timedelta

import numpy as np

from hablive import (ASCENT, DESCENT, LANDED, CalculatorParameters, InvalidParametersError,
                     Location, TelemetryPosition, WeatherUnavailableError, to_unix)
from burst import calculate_burst_performance
from live import LandingWatch
from windfield import air_density

logger = logging.getLogger(__name__)

STANDARD = 'standard'
EARLY_BURST = 'early_burst'
WIND_SHEAR = 'wind_shear'
SLOW_ASCENT = 'slow_ascent'
FAST_DESCENT = 'fast_descent'
EQUIPMENT_FAILURE = 'equipment_failure'
SCENARIO_TYPES = (STANDARD, EARLY_BURST, WIND_SHEAR, SLOW_ASCENT, FAST_DESCENT, EQUIPMENT_FAILURE)

BASIC = 'basic'
ADVANCED = 'advanced'
REALISTIC = 'realistic'
PHYSICS_MODELS = (BASIC, ADVANCED, REALISTIC)

# Ground drift once the balloon is down: 3 m/s towards the south
GROUND_WIND_SPEED_MS = 3.0
GROUND_WIND_DIRECTION_DEG = 180.0
JET_STREAM_ALTITUDE_M = 10000.0
METERS_PER_DEGREE = 111320.0

BEACON_STOP_ALTITUDE_M = 50.0
GROUND_STABLE_ALTITUDE_M = 100.0
THERMAL_CEILING_M = 5000.0
# Playback keeps beaconing this long past the predicted landing
PLAYBACK_GRACE_S = 1800.0

PROFILE_STEP_S = 1.0
# Isothermal scale height used by the advanced model
SCALE_HEIGHT_M = 8000.0
DEFAULT_SYSTEM_MASS_KG = 2.0
DEFAULT_FREE_LIFT_RATIO = 0.25
CACHE_SIZE = 512


class Scenario:
    """Named perturbation profile: type plus numeric parameters."""

    def __init__(self, type=STANDARD, name=None, description='', **parameters):
        if type not in SCENARIO_TYPES:
            raise InvalidParametersError(f"Unknown scenario type {type!r}; expected one of {', '.join(SCENARIO_TYPES)}")
        self.type = type
        self.name = name or type.replace('_', ' ').title()
        self.description = description
        self.parameters = parameters

    def param(self, name, default):
        value = self.parameters.get(name)
        return default if value is None else float(value)

    def to_dict(self):
        return {"type": self.type, "name": self.name, "description": self.description,
                "parameters": dict(self.parameters)}

    @classmethod
    def from_dict(cls, data):
        if isinstance(data, str):
            return SCENARIO_PRESETS[data] if data in SCENARIO_PRESETS else cls(data)
        return cls(data.get('type', STANDARD), data.get('name'), data.get('description', ''),
                   **data.get('parameters', {}))


SCENARIO_PRESETS = {
    STANDARD: Scenario(STANDARD, 'Standard Flight', 'Normal balloon flight with realistic variations'),
    EARLY_BURST: Scenario(EARLY_BURST, 'Early Burst', 'Balloon bursts at 75% of predicted altitude due to UV damage',
                          burst_altitude_modifier=0.75, descent_rate_modifier=1.2),
    WIND_SHEAR: Scenario(WIND_SHEAR, 'Wind Shear', 'Severe wind shear at 5km altitude causing trajectory deviation',
                         wind_shear_altitude=5000, wind_shear_intensity=0.8, turbulence_level=0.6),
    SLOW_ASCENT: Scenario(SLOW_ASCENT, 'Slow Ascent', 'Reduced ascent rate due to thermal cycles',
                          ascent_rate_modifier=0.7),
    FAST_DESCENT: Scenario(FAST_DESCENT, 'Fast Descent', 'Rapid descent due to parachute deployment issues',
                           descent_rate_modifier=2.0),
    EQUIPMENT_FAILURE: Scenario(EQUIPMENT_FAILURE, 'Equipment Failure', 'Erratic altitude 30 minutes after launch',
                                equipment_failure_time=1800),
}


class EquipmentFailure:
    """Scheduled failure; a 'beacon' failure ends the telemetry stream at its time (s after launch)."""
    TYPES = ('parachute', 'beacon', 'balloon', 'payload')

    def __init__(self, type, time, severity='moderate', description=''):
        if type not in self.TYPES:
            raise InvalidParametersError(f"Unknown equipment failure type {type!r}")
        self.type = type
        self.time = float(time)
        self.severity = severity
        self.description = description

    def to_dict(self):
        return {"type": self.type, "time": self.time, "severity": self.severity,
                "description": self.description}

    @classmethod
    def from_dict(cls, data):
        return cls(data['type'], data['time'], data.get('severity', 'moderate'), data.get('description', ''))


class ScenarioConfig:
    """
    Scenario simulator configuration plus its mutable run state.

    The run state (last_beacon_time, assumed_landed, assumed_landing_location)
    is written by the simulator during playback and cleared by reset_run_state().
    """

    def __init__(self, scenario=None, beacon_interval=15.0, simulation_speed=1.0, noise_level=0.3,
                 physics_model=ADVANCED, weather_integration=True, turbulence_model=True,
                 thermal_effects=True, equipment_failures=None, balloon=None):
        self.scenario = scenario if isinstance(scenario, Scenario) else Scenario.from_dict(scenario or STANDARD)
        self.beacon_interval = float(beacon_interval)
        self.simulation_speed = float(simulation_speed)
        self.noise_level = float(noise_level)
        self.physics_model = physics_model
        self.weather_integration = bool(weather_integration)
        self.turbulence_model = bool(turbulence_model)
        self.thermal_effects = bool(thermal_effects)
        self.equipment_failures = [f if isinstance(f, EquipmentFailure) else EquipmentFailure.from_dict(f)
                                   for f in (equipment_failures or [])]
        if balloon is not None and not isinstance(balloon, CalculatorParameters):
            balloon = CalculatorParameters.from_dict(balloon)
        self.balloon = balloon
        self.validate()
        self.reset_run_state()

    def validate(self):
        if self.beacon_interval <= 0:
            raise InvalidParametersError("Beacon interval must be greater than 0 s")
        if self.simulation_speed <= 0:
            raise InvalidParametersError("Simulation speed must be greater than 0")
        if not 0 <= self.noise_level <= 1:
            raise InvalidParametersError("Noise level must be between 0 and 1")
        if self.physics_model not in PHYSICS_MODELS:
            raise InvalidParametersError(f"Unknown physics model {self.physics_model!r}")
        return self

    def reset_run_state(self):
        self.last_beacon_time = None
        self.assumed_landed = False
        self.assumed_landing_location = None

    @classmethod
    def from_settings(cls, settings, **overrides):
        values = dict(beacon_interval=settings.beacon_interval, simulation_speed=settings.simulation_speed,
                      noise_level=settings.noise_level, physics_model=settings.physics_model)
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_dict(cls, data):
        fields = ('scenario', 'beacon_interval', 'simulation_speed', 'noise_level', 'physics_model',
                  'weather_integration', 'turbulence_model', 'thermal_effects', 'equipment_failures', 'balloon')
        return cls(**{k: data[k] for k in fields if k in data})

    def to_dict(self):
        return {
            "scenario": self.scenario.to_dict(),
            "beacon_interval": self.beacon_interval,
            "simulation_speed": self.simulation_speed,
            "noise_level": self.noise_level,
            "physics_model": self.physics_model,
            "weather_integration": self.weather_integration,
            "turbulence_model": self.turbulence_model,
            "thermal_effects": self.thermal_effects,
            "equipment_failures": [f.to_dict() for f in self.equipment_failures],
            "balloon": self.balloon.to_dict() if self.balloon else None,
            "last_beacon_time": self.last_beacon_time,
            "assumed_landed": self.assumed_landed,
            "assumed_landing_location": self.assumed_landing_location,
        }


class _Sample:
    """Mutable working copy of one sample while the layers are applied."""
    __slots__ = ('lat', 'lon', 'altitude')

    def __init__(self, lat, lon, altitude):
        self.lat = lat
        self.lon = lon
        self.altitude = altitude


def drift(lat, lon, distance, bearing):
    """Move distance meters towards bearing using 111320 m per degree."""
    rad = math.radians(bearing)
    dlat = distance * math.cos(rad) / METERS_PER_DEGREE
    dlon = distance * math.sin(rad) / (METERS_PER_DEGREE * math.cos(math.radians(lat)))
    return lat + dlat, lon + dlon


def synthetic_wind(altitude):
    """
    Synthetic wind profile as (speed m/s, travel bearing deg).

    3 m/s towards the south at the ground, strengthening 1 m/s per 100 m
    above 1 km, and a westerly jet above 10 km.
    """
    speed, bearing = GROUND_WIND_SPEED_MS, GROUND_WIND_DIRECTION_DEG
    if altitude > 1000:
        speed = GROUND_WIND_SPEED_MS + (altitude - 1000) * 0.01
    if altitude > JET_STREAM_ALTITUDE_M:
        speed = 30 + math.sin(altitude / 1000) * 10
        # A westerly blows towards the east
        bearing = (90 + math.sin(altitude / 2000) * 30) % 360
    return speed, bearing


class VerticalProfile:
    """
    Altitude over time from a lift / drag / gravity force balance.

    Ascent: constant free lift F (the gas expands as it rises) against drag
    ½·ρ·Cd·A·v², with the envelope cross-section growing as the gas expands
    (A ∝ (ρ_launch/ρ)^(2/3)). Drag is calibrated so the terminal velocity at
    launch equals the nominal ascent rate. advanced uses an isothermal
    exponential atmosphere; realistic uses ISA pressure and temperature.
    Descent: payload weight against parachute drag calibrated to the nominal
    descent rate at launch density, so the balloon falls faster where the air
    is thin.
    Velocity relaxes towards the local terminal velocity with the linearised
    drag time constant, which stays stable at 1 s steps.
    """
    MAX_SECONDS = 24 * 3600

    def __init__(self, model, launch_altitude, burst_altitude, ascent_rate, descent_rate, ground,
                 mass, free_lift_force):
        self.model = model
        times, altitudes = [0.0], [float(launch_altitude)]

        rho_launch = self.density(launch_altitude)
        drag_ascent = 2 * free_lift_force / (rho_launch * ascent_rate ** 2)  # Cd·A at launch
        weight = mass * 9.80665
        drag_descent = 2 * weight / (rho_launch * descent_rate ** 2)

        t, h, v = 0.0, float(launch_altitude), 0.0
        while h < burst_altitude and t < self.MAX_SECONDS:
            rho = self.density(h)
            area_scale = self.area_scale(launch_altitude, h)
            v_term = math.sqrt(2 * free_lift_force / (rho * drag_ascent * area_scale))
            tau = mass * v_term / (2 * free_lift_force)
            v = v_term + (v - v_term) * math.exp(-PROFILE_STEP_S / tau)
            h = min(burst_altitude, h + v * PROFILE_STEP_S)
            t += PROFILE_STEP_S
            times.append(t)
            altitudes.append(h)
        burst_time = t

        v = 0.0
        while h > ground and t < self.MAX_SECONDS:
            rho = self.density(h)
            v_term = math.sqrt(2 * weight / (rho * drag_descent))
            tau = v_term / (2 * 9.80665)
            v = v_term + (v - v_term) * math.exp(-PROFILE_STEP_S / tau)
            h = max(ground, h - v * PROFILE_STEP_S)
            t += PROFILE_STEP_S
            times.append(t)
            altitudes.append(h)

        self.times = np.array(times)
        self.altitudes = np.array(altitudes)
        self.burst_time = burst_time
        self.landing_time = t

    def density(self, altitude):
        if self.model == REALISTIC:
            return air_density(altitude)
        return 1.225 * math.exp(-altitude / SCALE_HEIGHT_M)

    def area_scale(self, launch_altitude, altitude):
        # V ∝ T/P for a fixed gas mass; ρ ∝ P/T
        expansion = self.density(launch_altitude) / self.density(altitude)
        return expansion ** (2.0 / 3.0)

    def altitude_at(self, flight_time):
        return float(np.interp(flight_time, self.times, self.altitudes))


class ScenarioSimulator:
    """
    Generates TelemetryPosition streams for one prediction under a ScenarioConfig.

    generate_positions(now) emits every beacon from launch up to the clock
    time now (unix seconds), continuing where the last call stopped. After the
    stream stops (ground or beacon failure) further calls only evaluate the
    assumed-landed hysteresis.
    """

    def __init__(self, config, params, prediction, weather=None):
        self.config = config
        self.params = params
        self.prediction = prediction
        self.weather = weather
        self.start_time = to_unix(prediction.launch_time)
        self._trajectory = prediction.trajectory
        self._pred_times = np.array([p.time for p in prediction.path])
        self._pred_alts = np.array([p.altitude for p in prediction.path])
        self._wind_cache = {}
        self._turbulence_cache = {}
        self._profile = None
        self.positions = []
        self.stopped = False
        self.stop_reason = None
        self.airborne = False
        self.landing_watch = LandingWatch(config.beacon_interval)
        self._next_time = self.start_time

    # -- lifecycle --

    def clear_cache(self):
        self._wind_cache.clear()
        self._turbulence_cache.clear()
        self._profile = None

    def update_config(self, **changes):
        """Change configuration fields; derived caches are invalidated."""
        for name, value in changes.items():
            if not hasattr(self.config, name):
                raise InvalidParametersError(f"Unknown scenario setting {name!r}")
            setattr(self.config, name, value)
        self.config.validate()
        self.landing_watch.beacon_interval = self.config.beacon_interval
        self.clear_cache()

    def reset(self):
        """Forget generated positions, run state and caches."""
        self.positions = []
        self.stopped = False
        self.stop_reason = None
        self.airborne = False
        self._next_time = self.start_time
        self.landing_watch.reset()
        self.config.reset_run_state()
        self.clear_cache()

    @property
    def end_time(self):
        """Clock time after which playback has nothing left to show."""
        return self.start_time + self.prediction.total_time + PLAYBACK_GRACE_S

    # -- generation --

    def generate_positions(self, now):
        if not self.stopped:
            t = self._next_time
            while t <= now:
                position = self.position_at(t)
                self.positions.append(position)
                self.landing_watch.record_beacon(position)
                self._next_time = t + self.config.beacon_interval
                self._check_airborne(position, t)
                reason = self._stop_condition(position, t)
                if reason:
                    self.stopped = True
                    self.stop_reason = reason
                    logger.info("Beacon stopped at %.0f m (%s) after %d positions",
                                position.altitude, reason, len(self.positions))
                    break
                t = self._next_time
        if self.stopped:
            self.landing_watch.check(now)
        self._sync_run_state()
        return list(self.positions)

    def _sync_run_state(self):
        self.config.last_beacon_time = self.landing_watch.last_beacon_time
        self.config.assumed_landed = self.landing_watch.assumed_landed
        self.config.assumed_landing_location = self.landing_watch.landing_location

    def _check_airborne(self, position, t):
        if self.airborne:
            return
        climbed = (position.altitude or 0.0) > self.params.launch_altitude + BEACON_STOP_ALTITUDE_M
        if climbed or t - self.start_time >= self._nominal_burst_time():
            self.airborne = True

    def _stop_condition(self, position, t):
        # Launch sites below the stop altitude must not end the stream on the pad
        if self.airborne and (position.altitude or 0.0) < BEACON_STOP_ALTITUDE_M:
            return 'ground'
        for failure in self.config.equipment_failures:
            if failure.type == 'beacon' and t >= self.start_time + failure.time:
                return 'beacon_failure'
        return None

    def position_at(self, timestamp):
        """One telemetry sample at an absolute time (unix seconds)."""
        flight_time = timestamp - self.start_time
        sample = self._base_position(flight_time)
        self._apply_scenario(sample, flight_time)
        self._apply_physics(sample, flight_time)
        if self.config.weather_integration:
            self._apply_weather(sample, flight_time)
        if self.config.turbulence_model:
            self._apply_turbulence(sample, flight_time)
        if self.config.thermal_effects:
            self._apply_thermal(sample, flight_time)
        self._apply_noise(sample, flight_time)

        if sample.altitude < GROUND_STABLE_ALTITUDE_M:
            sample.altitude = max(0.0, sample.altitude)
            ground_noise = self.config.noise_level * 0.3
            sample.lat += math.sin(flight_time * 2.345) * math.cos(flight_time * 1.876) * ground_noise * 0.000005
            sample.lon += math.sin(flight_time * 3.456) * math.cos(flight_time * 2.987) * ground_noise * 0.000005

        speed, course = 0.0, 0.0
        if self.positions:
            last = self.positions[-1]
            span = timestamp - last.time
            if span > 0:
                speed = Location.haversine(last.lat, last.lng, sample.lat, sample.lon) / span
            course = Location.initial_bearing(last.lat, last.lng, sample.lat, sample.lon)
        phase = self._phase_label(sample.altitude, flight_time)
        return TelemetryPosition(timestamp, sample.lat, sample.lon, sample.altitude, speed, course,
                                 f"{phase.upper()} {round(sample.altitude)}m")

    # -- layers --

    def _base_position(self, flight_time):
        """Nearest-in-time predicted point; ground drift after the predicted landing."""
        if flight_time > self.prediction.total_time:
            landing = self.prediction.landing_point
            extra = flight_time - self.prediction.total_time
            lat, lon = drift(landing.lat, landing.lon, GROUND_WIND_SPEED_MS * extra, GROUND_WIND_DIRECTION_DEG)
            return _Sample(lat, lon, landing.altitude)
        point = self._trajectory.nearest(flight_time)
        return _Sample(point.lat, point.lon, point.altitude)

    def _nominal_burst_time(self):
        return (self.params.burst_altitude - self.params.launch_altitude) / self.params.ascent_rate

    def _apply_scenario(self, sample, t):
        scenario = self.config.scenario
        launch_alt = self.params.launch_altitude
        burst_alt = self.params.burst_altitude

        if scenario.type == EARLY_BURST:
            burst_at = burst_alt * scenario.param('burst_altitude_modifier', 0.75)
            burst_time = max(0.0, (burst_at - launch_alt) / self.params.ascent_rate)
            if t >= burst_time:
                rate = self.params.descent_rate * scenario.param('descent_rate_modifier', 1.0)
                sample.altitude = max(0.0, burst_at - rate * (t - burst_time))
        elif scenario.type == WIND_SHEAR:
            if sample.altitude >= scenario.param('wind_shear_altitude', 5000):
                shear = math.sin(t * 0.1) * scenario.param('wind_shear_intensity', 0.5)
                sample.lat += shear * 0.001
                sample.lon += shear * 0.001
        elif scenario.type == SLOW_ASCENT:
            rate = self.params.ascent_rate * scenario.param('ascent_rate_modifier', 0.8)
            burst_time = (burst_alt - launch_alt) / rate
            if t < burst_time:
                sample.altitude = launch_alt + rate * t
            else:
                sample.altitude = max(0.0, burst_alt - self.params.descent_rate * (t - burst_time))
        elif scenario.type == FAST_DESCENT:
            burst_time = self._nominal_burst_time()
            if t >= burst_time:
                rate = self.params.descent_rate * scenario.param('descent_rate_modifier', 1.5)
                sample.altitude = max(0.0, burst_alt - rate * (t - burst_time))
        elif scenario.type == EQUIPMENT_FAILURE:
            if t >= scenario.param('equipment_failure_time', 1800):
                sample.altitude += math.sin(t * 0.2) * 0.5 * 100

    def _apply_physics(self, sample, t):
        if self.config.physics_model == BASIC:
            if not self.uses_forecast:
                speed, _ = synthetic_wind(sample.altitude)
                bearing = GROUND_WIND_DIRECTION_DEG + sample.altitude / 1000 * 10
                sample.lat, sample.lon = drift(sample.lat, sample.lon, speed * 0.1, bearing)
            return

        speed, bearing = self.wind_profile(sample.altitude, t)
        sample.lat, sample.lon = drift(sample.lat, sample.lon, speed * self.config.beacon_interval, bearing)
        if t <= self.prediction.total_time:
            profile = self.vertical_profile()
            kinematic = float(np.interp(t, self._pred_times, self._pred_alts))
            sample.altitude = max(0.0, sample.altitude + profile.altitude_at(t) - kinematic)

    def _apply_weather(self, sample, t):
        """
        Forecast drift over one beacon interval for the basic model, then the
        surface temperature bias on lift. The other models already drift with
        wind_profile in _apply_physics.
        """
        if self.weather is None:
            return
        if self.config.physics_model == BASIC:
            speed, bearing = self.wind_profile(sample.altitude, t)
            sample.lat, sample.lon = drift(sample.lat, sample.lon, speed * self.config.beacon_interval, bearing)
        surface = self.weather.surface_at(self.params.launch_time + timedelta(seconds=t))
        temperature = surface.get('temperature_2m')
        if temperature is not None:
            sample.altitude += (temperature - 15) / 30 * 50

    def _apply_turbulence(self, sample, t):
        intensity = self.turbulence_intensity(sample.altitude, t)
        sample.lat += math.sin(t * 3.14159) * math.cos(t * 2.718) * intensity * 0.0001
        sample.lon += math.cos(t * 2.718) * math.sin(t * 3.14159) * intensity * 0.0001
        sample.altitude += math.sin(t * 0.5) * intensity * 10

    def _apply_thermal(self, sample, t):
        """Daytime (local solar 06-18) periodic lift below 5 km."""
        instant = self.params.launch_time + timedelta(seconds=t)
        solar_hour = (instant.hour + instant.minute / 60 + sample.lon / 15) % 24
        if 6 <= solar_hour <= 18 and sample.altitude < THERMAL_CEILING_M:
            hours_since_launch = t / 3600
            sample.altitude += math.sin(hours_since_launch * 2) * 0.5 * 50

    def _apply_noise(self, sample, t):
        """GPS-like noise shrinking with altitude."""
        factor = max(0.1, 1 - sample.altitude / 30000)
        noise = self.config.noise_level * factor
        sample.lat += math.sin(t * 1.234) * math.cos(t * 2.345) * noise * 0.00001
        sample.lon += math.cos(t * 2.345) * math.sin(t * 3.456) * noise * 0.00001
        sample.altitude += math.sin(t * 0.789) * noise * 10

    def _phase_label(self, altitude, t):
        if altitude < GROUND_STABLE_ALTITUDE_M:
            return LANDED
        scenario = self.config.scenario
        burst_time = self._nominal_burst_time()
        if scenario.type == EARLY_BURST:
            burst_at = self.params.burst_altitude * scenario.param('burst_altitude_modifier', 0.75)
            burst_time = (burst_at - self.params.launch_altitude) / self.params.ascent_rate
        elif scenario.type == SLOW_ASCENT:
            burst_time /= scenario.param('ascent_rate_modifier', 0.8)
        return DESCENT if t >= burst_time else ASCENT

    # -- cached lookups --

    @property
    def uses_forecast(self):
        return self.config.weather_integration and self.weather is not None

    def _forecast_slot(self, t):
        if not self.uses_forecast:
            return None
        return self.weather.time_index(self.params.launch_time + timedelta(seconds=t))

    def wind_profile(self, altitude, t):
        """
        (speed, travel bearing) at altitude, from the forecast when weather
        integration is on, else the synthetic profile. Cached per 100 m bucket
        and forecast slot.
        """
        use_weather = self.uses_forecast
        key = (int(round(altitude / 100)) * 100, self._forecast_slot(t))
        cached = self._wind_cache.get(key)
        if cached is not None:
            return cached
        if use_weather:
            try:
                speed, from_dir = self.weather.wind_at(altitude, self.params.launch_time + timedelta(seconds=t))
                wind = (speed, (from_dir + 180) % 360)
            except WeatherUnavailableError as e:
                logger.warning("Forecast wind unavailable at %.0f m, using synthetic profile: %s", altitude, e)
                wind = synthetic_wind(altitude)
        else:
            wind = synthetic_wind(altitude)
        # Simple bounded cache: clear when full
        if len(self._wind_cache) >= CACHE_SIZE:
            self._wind_cache.clear()
        self._wind_cache[key] = wind
        return wind

    def turbulence_intensity(self, altitude, t):
        level = self.config.scenario.param('turbulence_level', 0.3)
        key = (int(round(altitude / 100)) * 100, self._forecast_slot(t))
        base = self._turbulence_cache.get(key)
        if base is None:
            speed, _ = self.wind_profile(altitude, t)
            base = (max(altitude, 0.0) / 10000) * (speed / 10)
            if len(self._turbulence_cache) >= CACHE_SIZE:
                self._turbulence_cache.clear()
            self._turbulence_cache[key] = base
        return level * base

    def vertical_profile(self):
        if self._profile is None:
            mass, free_lift_force = self._balloon_forces()
            self._profile = VerticalProfile(
                self.config.physics_model, self.params.launch_altitude, self.params.burst_altitude,
                self.params.ascent_rate, self.params.descent_rate, self.prediction.landing_point.altitude,
                mass, free_lift_force)
        return self._profile

    def _balloon_forces(self):
        """System mass (kg) and free lift (N), from the configured balloon when there is one."""
        balloon = self.config.balloon
        if balloon is None:
            mass = DEFAULT_SYSTEM_MASS_KG
            return mass, DEFAULT_FREE_LIFT_RATIO * mass * 9.80665
        performance = calculate_burst_performance(balloon, self.params.launch_altitude)
        mass = (balloon.payload_weight + balloon.balloon_weight + balloon.parachute_weight) / 1000.0
        return mass, performance.free_lift / 1000.0 * 9.80665

    def summary(self):
        """Playback metrics for display."""
        if not self.positions:
            return None
        current = self.positions[-1]
        altitudes = [p.altitude or 0.0 for p in self.positions]
        total_distance = sum(Location.haversine(a.lat, a.lng, b.lat, b.lng)
                             for a, b in zip(self.positions, self.positions[1:]))
        landing = self.prediction.landing_point
        return {
            "currentAltitude": current.altitude,
            "currentSpeed": current.speed,
            "currentCourse": current.course,
            "maxAltitude": max(altitudes),
            "totalDistance": total_distance,
            "flightPhase": self._phase_label(current.altitude or 0.0, current.time - self.start_time),
            "deviations": {
                "fromPredictedAltitude": abs((current.altitude or 0.0) - landing.altitude),
                "fromPredictedPosition": Location.haversine(current.lat, current.lng, landing.lat, landing.lon),
                "fromPredictedTime": abs(current.time - self.start_time - self.prediction.total_time),
            },
            "stopped": self.stopped,
            "stopReason": self.stop_reason,
            "assumedLanded": self.landing_watch.assumed_landed,
        }
