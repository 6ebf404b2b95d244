"""
HABLIVE
=======

Core balloon flight classes.

Classes
-------------------
Location                  Geographic (lat, lon) with great-circle helpers
FlightPoint               One (time, lat, lon, altitude) sample of a path
Trajectory                Container for trajectory points
LaunchParameters          Launch site, time and nominal profile
CalculatorParameters      Masses and gas for the burst calculator
PredictionResult          Immutable predicted flight
TelemetryPosition         One position report
FlightPhase               Classified phase with confidence
Balloon                   Integrator state (position, altitude, vertical rate)
Simulator                 Fixed-step three-phase integrator
ElevationFile             Ground elevation data wrapper
PredictionError           Base of the error taxonomy (see errors.py)
"""

from .classes import *
from .errors import *
