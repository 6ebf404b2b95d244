"""
Error taxonomy for prediction, burst calculation and live analysis.

Every error carries a category so the HTTP layer (and any other caller) can
tell bad input apart from an unavailable upstream provider or a transient
failure without string matching on messages.
"""

BAD_INPUT = 'bad_input'
UPSTREAM_UNAVAILABLE = 'upstream_unavailable'
TRANSIENT = 'transient'
INTERNAL = 'internal'


class PredictionError(Exception):
    """Base class for all errors raised by the flight prediction core."""
    category = INTERNAL

    def __init__(self, message, category=None):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category

    def to_dict(self):
        return {"error": self.message, "category": self.category, "type": type(self).__name__}


class InvalidParametersError(PredictionError, ValueError):
    """Launch or calculator parameters violate a documented constraint."""
    category = BAD_INPUT


class InfeasibleAscentError(PredictionError):
    """Neck lift does not exceed the weight it has to carry; the balloon cannot rise."""
    category = BAD_INPUT

    def __init__(self, neck_lift, deficit):
        super().__init__(
            f"Neck lift {neck_lift:.1f} g does not exceed the carried weight of {deficit:.1f} g "
            f"(free lift {neck_lift - deficit:.1f} g). Increase neck lift or reduce payload/parachute weight."
        )
        self.neck_lift = neck_lift
        self.deficit = deficit


class WeatherUnavailableError(PredictionError):
    """No usable wind data for the requested location or time window."""
    category = UPSTREAM_UNAVAILABLE


class ProviderTimeoutError(PredictionError):
    """An external provider did not answer in time; retrying later may succeed."""
    category = TRANSIENT


class SimulationDivergenceError(PredictionError):
    """The integrator ran past its iteration cap, usually a unit or parameter bug."""
    category = INTERNAL


class TelemetryGapError(PredictionError):
    """Fewer than two usable telemetry samples to derive a vertical rate from."""
    category = BAD_INPUT


__all__ = [
    'BAD_INPUT', 'UPSTREAM_UNAVAILABLE', 'TRANSIENT', 'INTERNAL',
    'PredictionError', 'InvalidParametersError', 'InfeasibleAscentError',
    'WeatherUnavailableError', 'ProviderTimeoutError', 'SimulationDivergenceError',
    'TelemetryGapError',
]
