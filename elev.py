"""
Ground elevation providers.

GridElevationProvider memory-maps a world elevation grid (.npy) and
bilinearly interpolates it. Thread-safe lazy loading ensures the grid is
opened only once per process. Any lookup failure falls back to
DEFAULT_GROUND_ELEVATION_M with a logged warning; elevation is not critical
enough to fail a prediction over.
"""
import logging
import threading

from hablive import ElevationFile

logger = logging.getLogger(__name__)

# Ground level assumed when no elevation source can answer (sea level)
DEFAULT_GROUND_ELEVATION_M = 0.0


class ElevationProvider:
    def elevation(self, lat, lon):
        """Ground elevation in meters at (lat, lon); may raise."""
        raise NotImplementedError


class FixedElevationProvider(ElevationProvider):
    def __init__(self, elevation=DEFAULT_GROUND_ELEVATION_M):
        self.value = float(elevation)

    def elevation(self, lat, lon):
        return self.value


class GridElevationProvider(ElevationProvider):
    """
    Elevation from a memory-mapped world grid.

    Uses double-checked locking: check the loaded file first (fast path), then
    acquire the lock and check again so concurrent callers open the grid once.
    """

    def __init__(self, path):
        self.path = path
        self._file = None
        self._lock = threading.Lock()

    def _get_file(self):
        if self._file is not None:
            return self._file
        with self._lock:
            if self._file is None:
                self._file = ElevationFile(self.path)
                logger.info("Loaded elevation grid %s with shape %s", self.path, self._file.data.shape)
            return self._file

    def elevation(self, lat, lon):
        return self._get_file().elev(lat, lon)


_default_provider = FixedElevationProvider()


def set_default_provider(provider):
    global _default_provider
    _default_provider = provider


def get_default_provider():
    return _default_provider


def getElevation(lat, lon, provider=None):
    """
    Return ground elevation for (lat, lon) in meters, never raising.

    Errors from the provider are logged and replaced by
    DEFAULT_GROUND_ELEVATION_M so a prediction can still land on a known level.
    """
    provider = provider or _default_provider
    try:
        return max(0.0, float(provider.elevation(lat, lon)))
    except Exception as e:
        logger.warning("Elevation lookup failed at (%.4f, %.4f): %s; using %.1f m",
                       lat, lon, e, DEFAULT_GROUND_ELEVATION_M)
        return DEFAULT_GROUND_ELEVATION_M
