"""
Core balloon flight classes.

Provides Location (geographic coordinates), FlightPoint and Trajectory (path
containers), the parameter records for a launch and for the burst calculator,
PredictionResult, the telemetry and live-analysis records, Balloon (integrator
state), Simulator (fixed-step three-phase integrator) and ElevationFile
(ground elevation grid). Used by simulate.py, scenario.py and live.py.
"""
import math
from datetime import datetime, timedelta, timezone
from enum import Enum

import numpy as np

from .errors import InvalidParametersError, SimulationDivergenceError

# Earth radius in meters (used for coordinate transformations and distances)
EARTH_RADIUS = float(6.371e6)
# Integrator step in seconds
TIME_STEP = 60.0
# Simulated-time cap for a single run (24 h)
MAX_FLIGHT_SECONDS = 24 * 3600.0

ASCENT = 'ascent'
BURST = 'burst'
DESCENT = 'descent'
LANDED = 'landed'
UNKNOWN = 'unknown'
# One-way progression of a flight; unknown sits outside it
PHASE_ORDER = (ASCENT, BURST, DESCENT, LANDED)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_time(value):
    """Coerce an ISO-8601 string, unix seconds or datetime into an aware UTC datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise InvalidParametersError(f"Invalid timestamp {value!r}: {e}")
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise InvalidParametersError(f"Unsupported time value {value!r}")


def to_unix(value):
    """Seconds since the unix epoch for a datetime (naive values are taken as UTC)."""
    return (parse_time(value) - _EPOCH).total_seconds()


def _finite(name, value):
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise InvalidParametersError(f"Parameter {name} must be a number, got {value!r}")
    if not math.isfinite(value):
        raise InvalidParametersError(f"Parameter {name} is not a finite number")
    return value


class Location(tuple):
    """
    Geographic location as immutable tuple (lat, lon).

    Distances use the haversine formula for great circle distance (accounts for
    Earth's curvature) and are returned in meters.
    """

    def __new__(cls, lat, lon):
        return tuple.__new__(cls, (lat, lon))

    def getLat(self):
        return self[0]

    def getLon(self):
        return self[1]

    def distance(self, other):
        """Great circle distance to another location in meters."""
        return self.haversine(self[0], self[1], other[0], other[1])

    def bearing(self, other):
        """Initial bearing towards another location in degrees [0, 360)."""
        return self.initial_bearing(self[0], self[1], other[0], other[1])

    def offset(self, east, north):
        """
        Move by a local displacement in meters.

        dlat = north / R, dlon = east / (R * cos(lat)); a flat-earth step that is
        accurate for the displacement of one integration step.
        """
        dlat = math.degrees(north / EARTH_RADIUS)
        cos_lat = math.cos(math.radians(self[0]))
        dlon = math.degrees(east / (EARTH_RADIUS * cos_lat)) if cos_lat > 1e-10 else 0.0
        return Location(self[0] + dlat, self[1] + dlon)

    @staticmethod
    def haversine(lat1, lon1, lat2, lon2):
        """
        Great circle distance between two points in meters.

        Formula: a = sin²(Δlat/2) + cos(lat1) × cos(lat2) × sin²(Δlon/2)
                 c = 2 × atan2(√a, √(1-a))
                 distance = R × c
        """
        lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])
        dlat = lat2 - lat1
        dlon = lon2 - lon1
        a = math.sin(dlat/2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon/2) ** 2
        c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
        return EARTH_RADIUS * c

    @staticmethod
    def initial_bearing(lat1, lon1, lat2, lon2):
        lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])
        dlon = lon2 - lon1
        y = math.sin(dlon) * math.cos(lat2)
        x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlon)
        return (math.degrees(math.atan2(y, x)) + 360) % 360


class FlightPoint(tuple):
    """Immutable (time, lat, lon, altitude); time is seconds from launch."""

    def __new__(cls, time, lat, lon, altitude):
        return tuple.__new__(cls, (float(time), float(lat), float(lon), float(altitude)))

    @property
    def time(self):
        return self[0]

    @property
    def lat(self):
        return self[1]

    @property
    def lon(self):
        return self[2]

    @property
    def altitude(self):
        return self[3]

    @property
    def location(self):
        return Location(self[1], self[2])

    def to_dict(self):
        return {"time": self.time, "lat": self.lat, "lon": self.lon, "altitude": self.altitude}

    @classmethod
    def from_dict(cls, data):
        return cls(data['time'], data['lat'], data['lon'], data['altitude'])


class Trajectory(list):
    """Ordered list of FlightPoints with strictly increasing time."""

    def duration(self):
        """Returns duration in seconds."""
        if len(self) < 2:
            return 0.0
        return self[-1].time - self[0].time

    def length(self):
        """Distance travelled along the trajectory in meters."""
        return sum(i.location.distance(j.location) for i, j in zip(self[:-1], self[1:]))

    def highest(self):
        """First point of maximum altitude."""
        return max(self, key=lambda p: p.altitude)

    def nearest(self, time):
        """
        Point whose time is closest to the given time offset.

        Uses bisection over the sorted times; ties resolve to the earlier point.
        """
        if not self:
            return None
        times = np.fromiter((p.time for p in self), dtype=float, count=len(self))
        idx = int(np.searchsorted(times, time))
        if idx <= 0:
            return self[0]
        if idx >= len(self):
            return self[-1]
        before, after = self[idx - 1], self[idx]
        return before if abs(time - before.time) <= abs(after.time - time) else after


class Gas(Enum):
    """Lifting gas with its density at sea level in kg/m³."""
    HELIUM = 'Helium'
    HYDROGEN = 'Hydrogen'

    @property
    def density(self):
        return GAS_DENSITIES[self]

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        for gas in cls:
            if str(value).lower() == gas.value.lower():
                return gas
        raise InvalidParametersError(f"Unknown gas {value!r}; expected Helium or Hydrogen")


GAS_DENSITIES = {Gas.HELIUM: 0.1786, Gas.HYDROGEN: 0.0899}


class LaunchParameters:
    """
    Launch site, time and nominal flight profile. Read-only for a prediction run.

    Altitudes in meters, rates in m/s (both rates positive).
    """
    __slots__ = ('lat', 'lon', 'launch_time', 'launch_altitude',
                 'ascent_rate', 'burst_altitude', 'descent_rate')

    def __init__(self, lat, lon, launch_time, launch_altitude, ascent_rate, burst_altitude, descent_rate):
        object.__setattr__(self, 'lat', _finite('lat', lat))
        object.__setattr__(self, 'lon', _finite('lon', lon))
        object.__setattr__(self, 'launch_time', parse_time(launch_time))
        object.__setattr__(self, 'launch_altitude', _finite('launch_altitude', launch_altitude))
        object.__setattr__(self, 'ascent_rate', _finite('ascent_rate', ascent_rate))
        object.__setattr__(self, 'burst_altitude', _finite('burst_altitude', burst_altitude))
        object.__setattr__(self, 'descent_rate', _finite('descent_rate', descent_rate))

    def __setattr__(self, name, value):
        raise AttributeError("LaunchParameters is immutable; use replace()")

    def validate(self):
        """Raise InvalidParametersError unless the parameters describe a flyable profile."""
        if not -90 <= self.lat <= 90:
            raise InvalidParametersError("Latitude must be between -90 and 90")
        if not -180 <= self.lon <= 360:
            raise InvalidParametersError("Longitude must be between -180 and 360")
        if self.launch_altitude < 0:
            raise InvalidParametersError("Launch altitude must not be negative")
        if self.ascent_rate <= 0:
            raise InvalidParametersError("Ascent rate must be greater than 0 m/s")
        if self.descent_rate <= 0:
            raise InvalidParametersError("Descent rate must be greater than 0 m/s")
        if self.burst_altitude <= self.launch_altitude:
            raise InvalidParametersError("Burst altitude must be above the launch altitude")
        return self

    def replace(self, **changes):
        values = {name: getattr(self, name) for name in self.__slots__}
        values.update(changes)
        return LaunchParameters(**values)

    def to_dict(self):
        data = {name: getattr(self, name) for name in self.__slots__}
        data['launch_time'] = self.launch_time.isoformat()
        return data

    @classmethod
    def from_dict(cls, data):
        try:
            return cls(**{name: data[name] for name in cls.__slots__})
        except KeyError as e:
            raise InvalidParametersError(f"Missing required parameter: {e.args[0]}")

    def __eq__(self, other):
        return isinstance(other, LaunchParameters) and self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"LaunchParameters({self.to_dict()})"


class CalculatorParameters:
    """Masses for the burst calculator, all in grams."""

    def __init__(self, payload_weight, balloon_weight, parachute_weight, neck_lift, gas=Gas.HELIUM):
        self.payload_weight = _finite('payload_weight', payload_weight)
        self.balloon_weight = _finite('balloon_weight', balloon_weight)
        self.parachute_weight = _finite('parachute_weight', parachute_weight)
        self.neck_lift = _finite('neck_lift', neck_lift)
        self.gas = Gas.parse(gas)

    def validate(self):
        for name in ('payload_weight', 'balloon_weight', 'parachute_weight', 'neck_lift'):
            if getattr(self, name) <= 0:
                raise InvalidParametersError(f"{name} must be greater than 0 g")
        return self

    @property
    def carried_weight(self):
        """Weight the neck lift has to carry (payload + parachute), grams."""
        return self.payload_weight + self.parachute_weight

    def to_dict(self):
        return {
            "payload_weight": self.payload_weight,
            "balloon_weight": self.balloon_weight,
            "parachute_weight": self.parachute_weight,
            "neck_lift": self.neck_lift,
            "gas": self.gas.value,
        }

    @classmethod
    def from_dict(cls, data):
        try:
            return cls(data['payload_weight'], data['balloon_weight'], data['parachute_weight'],
                       data['neck_lift'], data.get('gas', Gas.HELIUM))
        except KeyError as e:
            raise InvalidParametersError(f"Missing required parameter: {e.args[0]}")


class PredictionResult:
    """
    Immutable outcome of one trajectory run.

    burst_point is the first point of maximum altitude; landing_point is the last
    point. Path times are offsets in seconds from launch_time.
    """

    def __init__(self, path, launch_time):
        if not path:
            raise InvalidParametersError("Prediction path is empty")
        self.path = tuple(path)
        self.launch_time = parse_time(launch_time)
        self.launch_point = self.path[0]
        self.burst_point = max(self.path, key=lambda p: p.altitude)
        self.landing_point = self.path[-1]
        self.total_time = self.landing_point.time
        self.flight_duration = self.landing_point.time
        self.max_altitude = self.burst_point.altitude
        self.distance = self.launch_point.location.distance(self.landing_point.location)

    @property
    def trajectory(self):
        return Trajectory(self.path)

    def nominal_ascent_rate(self):
        """Mean ascent rate between launch and burst, or None without an ascent leg."""
        climb_time = self.burst_point.time - self.launch_point.time
        if climb_time <= 0:
            return None
        return (self.burst_point.altitude - self.launch_point.altitude) / climb_time

    def to_dict(self, include_path=True):
        data = {
            "launch_time": self.launch_time.isoformat(),
            "launchPoint": self.launch_point.to_dict(),
            "burstPoint": self.burst_point.to_dict(),
            "landingPoint": self.landing_point.to_dict(),
            "totalTime": self.total_time,
            "maxAltitude": self.max_altitude,
            "distance": self.distance,
            "flightDuration": self.flight_duration,
        }
        if include_path:
            data["path"] = [p.to_dict() for p in self.path]
        return data

    @classmethod
    def from_dict(cls, data):
        try:
            return cls([FlightPoint.from_dict(p) for p in data['path']], data['launch_time'])
        except (KeyError, TypeError) as e:
            raise InvalidParametersError(f"Invalid prediction: {e}")


class TelemetryPosition:
    """One position report (APRS or simulated). time is unix seconds."""
    __slots__ = ('time', 'lat', 'lng', 'altitude', 'speed', 'course', 'comment')

    def __init__(self, time, lat, lng, altitude=None, speed=None, course=None, comment=None):
        self.time = float(time)
        self.lat = float(lat)
        self.lng = float(lng)
        self.altitude = None if altitude is None else float(altitude)
        self.speed = None if speed is None else float(speed)
        self.course = None if course is None else float(course)
        self.comment = comment

    @property
    def location(self):
        return Location(self.lat, self.lng)

    def to_dict(self):
        return {name: getattr(self, name) for name in self.__slots__}

    @classmethod
    def from_dict(cls, data):
        lng = data['lng'] if 'lng' in data else data['lon']
        return cls(data['time'], data['lat'], lng, data.get('altitude'), data.get('speed'),
                   data.get('course'), data.get('comment'))

    def __repr__(self):
        return f"TelemetryPosition(time={self.time}, lat={self.lat}, lng={self.lng}, altitude={self.altitude})"


class FlightPhase:
    def __init__(self, phase, confidence, detected_at):
        self.phase = phase
        self.confidence = float(confidence)
        self.detected_at = detected_at

    def to_dict(self):
        return {"phase": self.phase, "confidence": self.confidence, "detectedAt": self.detected_at}

    def __repr__(self):
        return f"FlightPhase({self.phase!r}, {self.confidence})"


class Deviation:
    def __init__(self, distance=0.0, bearing=0.0, altitude_difference=0.0):
        self.distance = distance
        self.bearing = bearing
        self.altitude_difference = altitude_difference

    def to_dict(self):
        return {"distance": self.distance, "bearing": self.bearing,
                "altitudeDifference": self.altitude_difference}


class ActualFlightMetrics:
    def __init__(self, current_position, flight_phase, deviation, actual_ascent_rate=None,
                 actual_descent_rate=None, actual_burst_altitude=None, time_to_landing=None,
                 committed_phase=None):
        self.current_position = current_position
        self.flight_phase = flight_phase
        self.deviation = deviation
        self.actual_ascent_rate = actual_ascent_rate
        self.actual_descent_rate = actual_descent_rate
        self.actual_burst_altitude = actual_burst_altitude
        self.time_to_landing = time_to_landing
        self.committed_phase = committed_phase

    @property
    def descending(self):
        """In descent by this batch, or committed to descent by an earlier one."""
        return self.flight_phase.phase == DESCENT or self.committed_phase in (DESCENT, LANDED)

    def to_dict(self):
        return {
            "currentPosition": self.current_position.to_dict(),
            "flightPhase": self.flight_phase.to_dict(),
            "actualAscentRate": self.actual_ascent_rate,
            "actualDescentRate": self.actual_descent_rate,
            "actualBurstAltitude": self.actual_burst_altitude,
            "timeToLanding": self.time_to_landing,
            "committedPhase": self.committed_phase,
            "deviationFromPredicted": self.deviation.to_dict(),
        }


class Accuracy:
    """Scores in [0.1, 1]; overall = 0.5·trajectory + 0.3·altitude + 0.2·timing."""

    def __init__(self, trajectory, altitude, timing):
        self.trajectory = trajectory
        self.altitude = altitude
        self.timing = timing
        self.overall = trajectory * 0.5 + altitude * 0.3 + timing * 0.2

    def to_dict(self):
        return {"trajectoryAccuracy": self.trajectory, "altitudeAccuracy": self.altitude,
                "timingAccuracy": self.timing, "overallAccuracy": self.overall}


class LivePredictionComparison:
    def __init__(self, original_prediction, actual_metrics, accuracy, updated_prediction=None,
                 recommendations=None, assumed_landed=False, assumed_landing_location=None):
        self.original_prediction = original_prediction
        self.updated_prediction = updated_prediction
        self.actual_metrics = actual_metrics
        self.accuracy = accuracy
        self.recommendations = list(recommendations or [])
        self.assumed_landed = assumed_landed
        self.assumed_landing_location = assumed_landing_location

    def to_dict(self):
        return {
            "originalPrediction": self.original_prediction.to_dict(include_path=False),
            "updatedPrediction": self.updated_prediction.to_dict() if self.updated_prediction else None,
            "actualMetrics": self.actual_metrics.to_dict(),
            "accuracy": self.accuracy.to_dict(),
            "recommendations": self.recommendations,
            "assumedLanded": self.assumed_landed,
            "assumedLandingLocation": self.assumed_landing_location,
        }


class ElevationFile:
    """
    Ground elevation data access with bilinear interpolation.

    Loads a world elevation grid (.npy, memory-mapped) and provides bilinear
    interpolation for elevation at arbitrary lat/lon coordinates. Errors
    propagate; elev.py owns the fallback policy.
    """
    MIN_LON = -180.00013888888893
    MAX_LON = 179.99985967111152
    MAX_LAT = 83.99986041511133
    MIN_LAT = -90.0001388888889

    def __init__(self, path):
        # Memory-map elevation data (only accessed pages are loaded)
        self.data = np.load(path, mmap_mode='r')
        if self.data.ndim != 2:
            raise ValueError(f"Elevation grid {path} must be 2D, got shape {self.data.shape}")

    def elev(self, lat, lon):
        """Return bilinearly interpolated, non-negative elevation for (lat, lon) in meters."""
        rows, cols = self.data.shape
        # Clip latitude to valid range, normalize longitude to [-180, 180)
        lat = float(np.clip(lat, self.MIN_LAT, self.MAX_LAT))
        lon = ((lon + 180) % 360) - 180

        # Convert lat/lon to floating-point grid indices
        col_f = (lon - self.MIN_LON) / (self.MAX_LON - self.MIN_LON) * (cols - 1)
        row_f = (self.MAX_LAT - lat) / (self.MAX_LAT - self.MIN_LAT) * (rows - 1)

        x0, y0 = int(np.floor(col_f)), int(np.floor(row_f))
        x0, y0 = max(0, min(x0, cols - 1)), max(0, min(y0, rows - 1))
        x1, y1 = min(x0 + 1, cols - 1), min(y0 + 1, rows - 1)
        fx, fy = col_f - x0, row_f - y0

        v00, v10 = float(self.data[y0, x0]), float(self.data[y0, x1])
        v01, v11 = float(self.data[y1, x0]), float(self.data[y1, x1])

        v_top = v00 * (1 - fx) + v10 * fx
        v_bottom = v01 * (1 - fx) + v11 * fx
        elev = v_top * (1 - fy) + v_bottom * fy

        # Ocean/sea level is 0
        return float(max(0, elev))


class Balloon:
    """
    Integrator state with trajectory history.

    Uses history-based state: the current position is always the last
    FlightPoint in history, so balloon.altitude, balloon.time etc. read the
    current state while the full path is kept for the result.
    """

    def __init__(self, location, alt, time=0.0, vertical_rate=0.0):
        self.history = Trajectory([FlightPoint(time, location[0], location[1], alt)])
        self.vertical_rate = vertical_rate

    def update(self, time, location, alt):
        self.history.append(FlightPoint(time, location[0], location[1], alt))

    @property
    def location(self):
        return self.history[-1].location

    def __getattr__(self, name):
        """Delegate time/lat/lon/altitude to the current state (last point in history)."""
        if name in ('time', 'lat', 'lon', 'altitude'):
            return getattr(self.__dict__['history'][-1], name)
        raise AttributeError(name)


class Simulator:
    """
    Deterministic fixed-step integrator for the ascent, burst and descent phases.

    The wind source must provide get(lat, lon, altitude, time) returning the
    (u, v) wind vector in m/s (u eastward, v northward) at an absolute time.
    The last step of each phase is shortened so burst and landing points sit
    exactly on burst altitude and ground level.
    """

    def __init__(self, wind_source, step_size=TIME_STEP, max_duration=MAX_FLIGHT_SECONDS):
        if step_size <= 0:
            raise InvalidParametersError("step size must be positive")
        self.wind_source = wind_source
        self.step_size = float(step_size)
        self.max_duration = float(max_duration)

    def step(self, balloon, step_size, launch_time, target_alt=None):
        """
        Advance one explicit Euler step.

        The wind is sampled at the current (start of step) altitude and time;
        target_alt pins the new altitude when the step was shortened to reach it.
        """
        h = float(step_size)
        t0 = balloon.time
        u, v = self.wind_source.get(balloon.lat, balloon.lon, balloon.altitude,
                                    launch_time + timedelta(seconds=t0))
        new_alt = balloon.altitude + balloon.vertical_rate * h if target_alt is None else target_alt
        new_loc = balloon.location.offset(float(u) * h, float(v) * h)

        assert not math.isnan(new_alt) and new_alt >= 0, f"integrator produced altitude {new_alt}"
        balloon.update(t0 + h, new_loc, new_alt)
        return balloon.history[-1]

    def _run_phase(self, balloon, launch_time, limit):
        """Step until the balloon reaches limit (burst altitude going up, ground going down)."""
        rate = balloon.vertical_rate
        while True:
            remaining = (limit - balloon.altitude) if rate > 0 else (balloon.altitude - limit)
            if remaining <= 0:
                return
            time_to_limit = remaining / abs(rate)
            if time_to_limit <= self.step_size:
                step_size, target = time_to_limit, limit
            else:
                step_size, target = self.step_size, None
            if balloon.time + step_size > self.max_duration:
                raise SimulationDivergenceError(
                    f"Simulation exceeded {self.max_duration / 3600:.0f} h of flight time "
                    f"(vertical rate {rate} m/s); check rates and units"
                )
            self.step(balloon, step_size, launch_time, target_alt=target)

    def simulate(self, balloon, launch_time, ascent_rate, burst_altitude, descent_rate,
                 ground_elev=0.0, descending=False):
        """
        Run ascent (unless descending) and descent, returning the full Trajectory.

        Ascent ends on burst_altitude, descent on ground_elev. A balloon seeded
        above burst_altitude skips straight to descent.
        """
        launch_time = launch_time if isinstance(launch_time, datetime) else parse_time(launch_time)
        ground_elev = max(0.0, float(ground_elev or 0.0))
        if not descending:
            if ascent_rate <= 0:
                raise InvalidParametersError("Ascent rate must be greater than 0 m/s")
            balloon.vertical_rate = float(ascent_rate)
            self._run_phase(balloon, launch_time, float(burst_altitude))
        if descent_rate <= 0:
            raise InvalidParametersError("Descent rate must be greater than 0 m/s")
        balloon.vertical_rate = -float(descent_rate)
        self._run_phase(balloon, launch_time, ground_elev)
        return balloon.history
