"""
Runtime configuration for the flight predictor.

Settings come from the environment (HABLIVE_ prefix), after an optional
.env file has been loaded without overriding variables that are already set.
The Settings object is passed explicitly to the modules that need it
(simulate.configure, ScenarioConfig.from_settings, app.init_app).

Small persisted values such as the APRS callsign or API key go through a
KeyValueStore: MemoryStore for tests, JsonFileStore for a single JSON file.
"""
import json
import logging
import os
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

ENV_PREFIX = 'HABLIVE_'
LOG_FORMAT = '%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

APRS_CALLSIGN_KEY = 'aprs_callsign'
APRS_API_KEY_KEY = 'aprs_api_key'


def _load_env_file(path='.env'):
    """Load environment variables from a .env file if present.
    Does not override existing environment variables; an unreadable file is logged and skipped.
    """
    env_file = Path(path)
    if not env_file.exists():
        return
    try:
        with open(env_file) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    os.environ.setdefault(key.strip(), value.strip().strip('"\''))
    except OSError as e:
        logger.warning("Could not read %s: %s", env_file, e)


def setup_logging(level='INFO', logfile=None):
    logging.basicConfig(
        filename=logfile,
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )


def _env(environ, name, default, type_func=str):
    raw = environ.get(ENV_PREFIX + name)
    if raw is None or raw == '':
        return default
    try:
        return type_func(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name}: {raw!r}")


def _bool(raw):
    value = str(raw).strip().lower()
    if value in ('1', 'true', 'yes', 'on'):
        return True
    if value in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(raw)


class Settings:
    """Process-wide settings with defaults suitable for local use."""

    def __init__(self, elevation_path=None, prediction_cache_size=200, prediction_cache_ttl=3600.0,
                 beacon_interval=15.0, simulation_speed=1.0, noise_level=0.3, physics_model='advanced',
                 log_level='INFO', store_path=None, debug=False):
        self.elevation_path = elevation_path
        self.prediction_cache_size = int(prediction_cache_size)
        self.prediction_cache_ttl = float(prediction_cache_ttl)
        self.beacon_interval = float(beacon_interval)
        self.simulation_speed = float(simulation_speed)
        self.noise_level = float(noise_level)
        self.physics_model = physics_model
        self.log_level = log_level
        self.store_path = store_path
        self.debug = debug

    @classmethod
    def from_env(cls, environ=None, env_file='.env'):
        if environ is None:
            _load_env_file(env_file)
            environ = os.environ
        return cls(
            elevation_path=_env(environ, 'ELEVATION_PATH', None),
            prediction_cache_size=_env(environ, 'PREDICTION_CACHE_SIZE', 200, int),
            prediction_cache_ttl=_env(environ, 'PREDICTION_CACHE_TTL', 3600.0, float),
            beacon_interval=_env(environ, 'BEACON_INTERVAL', 15.0, float),
            simulation_speed=_env(environ, 'SIMULATION_SPEED', 1.0, float),
            noise_level=_env(environ, 'NOISE_LEVEL', 0.3, float),
            physics_model=_env(environ, 'PHYSICS_MODEL', 'advanced'),
            log_level=_env(environ, 'LOG_LEVEL', 'INFO'),
            store_path=_env(environ, 'STORE_PATH', None),
            debug=_env(environ, 'DEBUG', False, _bool),
        )

    def open_store(self):
        if self.store_path:
            return JsonFileStore(self.store_path)
        return MemoryStore()

    def __repr__(self):
        return (f"Settings(elevation_path={self.elevation_path!r}, cache={self.prediction_cache_size}/"
                f"{self.prediction_cache_ttl:.0f}s, physics={self.physics_model!r})")


class KeyValueStore:
    """Persisted string settings (callsign, API key)."""

    def get(self, key, default=None):
        raise NotImplementedError

    def set(self, key, value):
        raise NotImplementedError

    def delete(self, key):
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    def __init__(self, initial=None):
        self._data = dict(initial or {})

    def get(self, key, default=None):
        return self._data.get(key, default)

    def set(self, key, value):
        self._data[key] = value

    def delete(self, key):
        self._data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """
    Stores values in one JSON object on disk.

    Writes go to a temporary file that replaces the target, so a crash never
    leaves a half-written store behind.
    """

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self):
        if not self.path.exists():
            return {}
        with open(self.path) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not contain a JSON object")
        return data

    def _write(self, data):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + '.tmp')
        with open(tmp, 'w') as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    def get(self, key, default=None):
        with self._lock:
            return self._read().get(key, default)

    def set(self, key, value):
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key):
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)
