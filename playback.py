"""
Scenario playback driven by an injected clock.

FlightPlayback owns a ScenarioSimulator and a LiveComparator and advances
simulated flight time by one beacon interval per tick. Ticks are scheduled on
a Clock (real interval = beacon interval / simulation speed). Weather and
elevation lookups run as futures on a small thread pool and are cancelled
when the playback is closed.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

import elev
import simulate
from hablive import PredictionError, ProviderTimeoutError, to_unix
from live import LiveComparator
from scenario import ScenarioSimulator

logger = logging.getLogger(__name__)

PROVIDER_TIMEOUT_S = 30.0


class Clock:
    """Time source and repeating scheduler."""

    def now(self):
        raise NotImplementedError

    def schedule_repeating(self, interval, callback):
        """Call callback every interval seconds; returns a handle with cancel()."""
        raise NotImplementedError


class _RepeatingTimer:
    def __init__(self, interval, callback):
        self.interval = interval
        self.callback = callback
        self._timer = None
        self._cancelled = False
        self._lock = threading.Lock()
        self._schedule()

    def _schedule(self):
        with self._lock:
            if self._cancelled:
                return
            self._timer = threading.Timer(self.interval, self._run)
            self._timer.daemon = True
            self._timer.start()

    def _run(self):
        if self._cancelled:
            return
        try:
            self.callback()
        except Exception:
            logger.exception("Scheduled callback failed")
        self._schedule()

    def cancel(self):
        with self._lock:
            self._cancelled = True
            if self._timer is not None:
                self._timer.cancel()


class SystemClock(Clock):
    def now(self):
        return time.time()

    def schedule_repeating(self, interval, callback):
        return _RepeatingTimer(interval, callback)


class _ManualTimer:
    def __init__(self, due, interval, callback):
        self.due = due
        self.interval = interval
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualClock(Clock):
    """Deterministic clock for tests: time only moves on advance()."""

    def __init__(self, start=0.0):
        self._now = float(start)
        self.timers = []

    def now(self):
        return self._now

    def schedule_repeating(self, interval, callback):
        timer = _ManualTimer(self._now + interval, interval, callback)
        self.timers.append(timer)
        return timer

    def advance(self, seconds):
        """Move time forward, firing every timer that falls due on the way."""
        target = self._now + seconds
        while True:
            active = [t for t in self.timers if not t.cancelled and t.due <= target]
            if not active:
                break
            timer = min(active, key=lambda t: t.due)
            self._now = timer.due
            timer.due += timer.interval
            timer.callback()
        self.timers = [t for t in self.timers if not t.cancelled]
        self._now = target


class FlightPlayback:
    """
    Plays a scenario flight and keeps the live comparison current.

    stop() cancels the tick timer and keeps the generated positions; reset()
    also clears the run state and caches and rewinds to launch.
    """

    def __init__(self, params, config, weather=None, weather_provider=None, prediction=None,
                 clock=None, elevation_provider=None, ground_elevation=None):
        self.params = params
        self.config = config
        self.weather = weather
        self.weather_provider = weather_provider
        self.prediction = prediction
        self.clock = clock or SystemClock()
        self.elevation_provider = elevation_provider
        self.ground_elevation = ground_elevation

        self.scenario = None
        self.comparator = None
        self.sim_time = to_unix(params.launch_time)
        self.last_comparison = None
        self.last_error = None
        self.ticks = 0
        self._timer = None
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='hablive-provider')
        self._pending = []
        self._lock = threading.RLock()

    # -- preparation --

    def _submit(self, fn, *args):
        future = self._executor.submit(fn, *args)
        self._pending.append(future)
        return future

    def _await(self, future, what):
        try:
            return future.result(timeout=PROVIDER_TIMEOUT_S)
        except FutureTimeout:
            future.cancel()
            raise ProviderTimeoutError(f"{what} did not answer within {PROVIDER_TIMEOUT_S:.0f}s")
        finally:
            if future in self._pending:
                self._pending.remove(future)

    def prepare(self):
        """Fetch weather and ground level if needed, then predict the flight."""
        if self.scenario is not None:
            return
        if self.weather is None:
            if self.weather_provider is None:
                raise PredictionError("Playback needs weather data or a weather provider")
            launch = self.params.launch_time
            self.weather = self._await(self._submit(self.weather_provider.fetch, self.params.lat,
                                                    self.params.lon, launch, launch), "Weather provider")
        if self.ground_elevation is None:
            try:
                self.ground_elevation = self._await(
                    self._submit(elev.getElevation, self.params.lat, self.params.lon, self.elevation_provider),
                    "Elevation provider")
            except ProviderTimeoutError as e:
                logger.warning("%s; using %.0f m ground level", e, elev.DEFAULT_GROUND_ELEVATION_M)
                self.ground_elevation = elev.DEFAULT_GROUND_ELEVATION_M
        if self.prediction is None:
            self.prediction = simulate.predict(self.params, self.weather, self.ground_elevation)

        self.scenario = ScenarioSimulator(self.config, self.params, self.prediction, self.weather)
        self.comparator = LiveComparator(self.prediction, self.params, self.weather,
                                         self.config.beacon_interval, self.ground_elevation)
        logger.info("Playback prepared: scenario=%s physics=%s predicted flight %.0f s",
                    self.config.scenario.type, self.config.physics_model, self.prediction.total_time)

    # -- control --

    @property
    def running(self):
        return self._timer is not None

    @property
    def real_interval(self):
        return self.config.beacon_interval / self.config.simulation_speed

    def start(self):
        self.prepare()
        with self._lock:
            if self._timer is None:
                self._timer = self.clock.schedule_repeating(self.real_interval, self.tick)
                logger.info("Playback started (tick every %.2fs real time)", self.real_interval)

    def stop(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
                logger.info("Playback stopped at flight time %.0fs", self.flight_time)

    def reset(self):
        self.stop()
        with self._lock:
            if self.scenario is not None:
                self.scenario.reset()
                self.comparator.reset()
            self.sim_time = to_unix(self.params.launch_time)
            self.last_comparison = None
            self.last_error = None
            self.ticks = 0

    def close(self):
        """Stop playback and abandon outstanding provider lookups."""
        self.stop()
        for future in self._pending:
            future.cancel()
        self._pending.clear()
        self._executor.shutdown(wait=False)

    @property
    def flight_time(self):
        return self.sim_time - to_unix(self.params.launch_time)

    def tick(self):
        """Advance one beacon interval of simulated time and refresh the comparison."""
        with self._lock:
            if self.scenario is None:
                self.prepare()
            self.sim_time += self.config.beacon_interval
            self.ticks += 1
            try:
                positions = self.scenario.generate_positions(self.sim_time)
                if positions:
                    self.last_comparison = self.comparator.update(positions, now=self.sim_time)
                self.last_error = None
            except PredictionError as e:
                self.last_error = e
                logger.warning("Playback tick at flight time %.0fs failed: %s", self.flight_time, e)
            if self.sim_time > self.scenario.end_time:
                logger.info("Playback passed the end of the predicted flight")
                self.stop()
        return self.last_comparison

    def status(self):
        return {
            "running": self.running,
            "flightTime": self.flight_time,
            "ticks": self.ticks,
            "positions": len(self.scenario.positions) if self.scenario else 0,
            "config": self.config.to_dict(),
            "metrics": self.scenario.summary() if self.scenario else None,
            "comparison": self.last_comparison.to_dict() if self.last_comparison else None,
            "error": self.last_error.to_dict() if self.last_error else None,
        }
