"""
Per-node concurrent-user ceiling estimation
"""

from typing import Optional

from ..core.config import Settings, config
from ..core.logging import get_logger


logger = get_logger(__name__)


class CapacityEstimator:
    """Derives a recommended max-users value from throughput and load.

    The raw estimate is ``throughput / per_user_mbps`` clamped to the
    configured bounds, derated once ``max(cpu, ram)`` passes the soft
    threshold. The derating is linear from 1.0 at the threshold down to
    ``capacity_min_fraction`` at 100% load. Consecutive estimates are
    exponentially smoothed so one noisy heartbeat cannot swing the value.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or config.settings

    def load_factor(self, cpu: Optional[float], ram: Optional[float]) -> float:
        s = self.settings
        load = max(cpu or 0.0, ram or 0.0)
        load = min(max(load, 0.0), 100.0)
        if load <= s.capacity_soft_threshold:
            return 1.0
        span = 100.0 - s.capacity_soft_threshold
        if span <= 0:
            return s.capacity_min_fraction
        over = (load - s.capacity_soft_threshold) / span
        factor = 1.0 - over * (1.0 - s.capacity_min_fraction)
        return max(s.capacity_min_fraction, factor)

    def raw_estimate(self, speed_mbps: float, cpu: Optional[float], ram: Optional[float]) -> int:
        s = self.settings
        base = speed_mbps / s.capacity_per_user_mbps
        base = min(max(base, float(s.capacity_min_users)), float(s.capacity_max_users))
        return max(1, round(base * self.load_factor(cpu, ram)))

    def estimate(
        self,
        speed_mbps: Optional[float],
        cpu: Optional[float],
        ram: Optional[float],
        previous: Optional[int] = None,
    ) -> int:
        """Return the smoothed estimate; never raises"""
        fallback = previous if previous and previous > 0 else self.settings.capacity_floor_users
        try:
            if speed_mbps is None or speed_mbps <= 0:
                return fallback

            raw = self.raw_estimate(speed_mbps, cpu, ram)
            if not previous or previous <= 0:
                return raw

            alpha = self.settings.capacity_smoothing
            smoothed = alpha * raw + (1.0 - alpha) * previous
            return max(self.settings.capacity_floor_users, round(smoothed))
        except (TypeError, ValueError, ZeroDivisionError) as e:
            logger.warning(f"Capacity estimate fell back to {fallback}: {e}")
            return fallback


def current_load(active_connections: int, max_users: int) -> float:
    """Fraction of the ceiling currently in use"""
    if max_users <= 0:
        return 0.0
    return round(active_connections / max_users, 4)
