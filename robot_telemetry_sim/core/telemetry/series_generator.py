"""
Synthetic Series Generator

Produces a reproducible, bounded-length time series for one telemetry metric
of one robot. Each tick advances a seeded stochastic process and overlays
the currently configured fault effects:

    base[n+1] = clip(base[n] + trend_delta + periodic + noise_delta, min, max)
    output    = round(clip(base[n+1] + overlay(now), min, max), decimals)

where

    trend_delta = (mid - base[n]) * trend           mean reversion, mid = (min + max) / 2
    periodic    = 0.1 * sin(2 pi elapsed / period)
    noise_delta = noise * N(0, 1)                   Box-Muller over two seeded uniforms

The fault overlay is added to the emitted point only; it is not fed back into
the base level, so an injection's contribution never compounds across ticks
and disappears as soon as its window ends.

Determinism:
-----------
All randomness comes from a ``numpy.random.Generator`` seeded explicitly.
For a fixed seed, configuration and sequence of tick instants the buffer is
bit-for-bit reproducible.
"""

import math
from collections import deque
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Deque, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from robot_telemetry_sim.core.faults.fault_effects import EffectLike, metric_overlay
from robot_telemetry_sim.core.faults.fault_templates import now_iso
from robot_telemetry_sim.core.telemetry.tick_scheduler import (
    AsyncioTickScheduler,
    TickScheduler,
    TimerHandle,
)

BACKFILL_WINDOW_S = 120.0      # history synthesized by start() [s]
PERIODIC_AMPLITUDE = 0.1


@dataclass
class SeriesConfig:
    """
    Configuration for one metric series.

    Attributes
    ----------
    metric : str
        Metric name (current, vibration, temperature)
    start_value : float
        Initial signal level
    min_value, max_value : float
        Clamp bounds for every emitted point
    noise : float
        Standard deviation of the per-tick Gaussian step
    trend : float
        Mean-reversion coefficient toward the range midpoint (0..1)
    period : float
        Period of the sinusoidal component [s]
    interval_s : float
        Tick interval [s]
    max_points : int
        Rolling buffer length
    seed : int
        RNG seed
    decimals : int
        Rounding precision of emitted values
    """
    metric: str
    start_value: float
    min_value: float
    max_value: float
    noise: float = 0.0
    trend: float = 0.0
    period: float = 300.0
    interval_s: float = 1.0
    max_points: int = 120
    seed: int = 42
    decimals: int = 4

    def validate(self) -> None:
        if self.min_value > self.max_value:
            raise ValueError(
                f"min_value ({self.min_value}) must not exceed max_value ({self.max_value})"
            )
        if self.period <= 0:
            raise ValueError(f"period must be positive, got {self.period}")
        if self.interval_s <= 0:
            raise ValueError(f"interval_s must be positive, got {self.interval_s}")
        if int(self.max_points) < 1:
            raise ValueError(f"max_points must be at least 1, got {self.max_points}")
        if self.noise < 0:
            raise ValueError(f"noise must be non-negative, got {self.noise}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SeriesConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SeriesPoint:
    timestamp: float    # epoch seconds
    value: float

    def to_dict(self) -> dict:
        return {'ts': now_iso(self.timestamp), 'timestamp': self.timestamp, 'value': self.value}


class SeededGaussian:
    """Seeded uniform source with a Box-Muller Gaussian on top."""

    def __init__(self, seed: int):
        self.seed = seed
        self.rng = np.random.default_rng(seed)

    def uniform(self) -> float:
        return float(self.rng.random())

    def gaussian(self) -> float:
        # 1 - U keeps u1 in (0, 1] so the log is finite
        u1 = 1.0 - self.uniform()
        u2 = self.uniform()
        return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)


class SeriesGenerator:
    """
    Seeded synthetic generator for one metric.

    Parameters
    ----------
    config : SeriesConfig
        Signal configuration
    scheduler : TickScheduler, optional
        Clock and periodic timer (defaults to the asyncio wall clock)
    fault_effects : Iterable, optional
        Initial fault effects (FaultEffect or FaultInjection)
    """

    def __init__(
        self,
        config: SeriesConfig,
        scheduler: Optional[TickScheduler] = None,
        fault_effects: Optional[Iterable[EffectLike]] = None
    ):
        config.validate()
        self.config = config
        self.scheduler = scheduler or AsyncioTickScheduler()
        self.value = float(config.start_value)
        self.start_time = self.scheduler.now()

        self._rng = SeededGaussian(config.seed)
        self._buffer: Deque[SeriesPoint] = deque()
        self._fault_effects: List[EffectLike] = list(fault_effects or [])
        self._timer: Optional[TimerHandle] = None
        self._in_tick = False

    @property
    def metric(self) -> str:
        return self.config.metric

    @property
    def is_running(self) -> bool:
        return self._timer is not None

    @property
    def fault_effects(self) -> Tuple[EffectLike, ...]:
        return tuple(self._fault_effects)

    def backfill_count(self) -> int:
        """Number of history points synthesized by ``start()``."""
        return min(int(math.floor(BACKFILL_WINDOW_S / self.config.interval_s)),
                   int(self.config.max_points))

    def start(self) -> None:
        """
        Reset the buffer, back-fill history and begin periodic ticking.

        Back-filled points are spaced one interval apart and end one
        interval before the new origin. No-op while already running.
        """
        if self.is_running:
            return

        # Timer is registered before any state changes
        interval = self.config.interval_s
        origin = self.scheduler.now()
        self._timer = self.scheduler.call_every(interval, self.tick)

        self.start_time = origin
        self._buffer.clear()

        count = self.backfill_count()
        for i in range(count):
            self.tick(origin - (count - i) * interval)

    def stop(self) -> None:
        """Halt periodic ticking; idempotent."""
        if self._timer is not None:
            self.scheduler.cancel(self._timer)
            self._timer = None

    def reset(self, origin: Optional[float] = None) -> None:
        """
        Restore the initial state (level, seed, empty buffer) for a replay.

        Parameters
        ----------
        origin : float, optional
            New elapsed-time origin (defaults to the scheduler's now)
        """
        self.stop()
        self.value = float(self.config.start_value)
        self._rng = SeededGaussian(self.config.seed)
        self._buffer.clear()
        self.start_time = self.scheduler.now() if origin is None else origin

    def _clamp(self, value: float) -> float:
        return min(self.config.max_value, max(self.config.min_value, value))

    def tick(self, now: Optional[float] = None) -> Optional[SeriesPoint]:
        """
        Advance the process by one step and append a point.

        Parameters
        ----------
        now : float, optional
            Tick instant (defaults to the scheduler's now)

        Returns
        -------
        SeriesPoint or None
            The appended point; None if called re-entrantly
        """
        if self._in_tick:
            return None
        self._in_tick = True
        try:
            cfg = self.config
            now = self.scheduler.now() if now is None else now
            elapsed = now - self.start_time

            midpoint = (cfg.min_value + cfg.max_value) / 2.0
            trend_delta = (midpoint - self.value) * cfg.trend
            periodic = math.sin(2.0 * math.pi * elapsed / cfg.period) * PERIODIC_AMPLITUDE
            noise_delta = self._rng.gaussian() * cfg.noise

            self.value = self._clamp(self.value + trend_delta + periodic + noise_delta)

            overlay = metric_overlay(cfg.metric, self._fault_effects, now)
            point = SeriesPoint(
                timestamp=now,
                value=round(self._clamp(self.value + overlay), cfg.decimals),
            )

            self._buffer.append(point)
            while len(self._buffer) > cfg.max_points:
                self._buffer.popleft()
            return point
        finally:
            self._in_tick = False

    def get_series(self) -> Tuple[SeriesPoint, ...]:
        """Immutable snapshot of the buffer."""
        return tuple(self._buffer)

    def get_series_array(self) -> np.ndarray:
        """Buffer as an (N, 2) array of [timestamp, value]."""
        if not self._buffer:
            return np.empty((0, 2))
        return np.array([[p.timestamp, p.value] for p in self._buffer], dtype=float)

    def set_seed(self, seed: int) -> None:
        """Replace the RNG state; level and buffer are kept."""
        self.config = replace(self.config, seed=seed)
        self._rng = SeededGaussian(seed)

    def update_params(self, params: Optional[Mapping[str, Any]] = None, **kwargs) -> None:
        """
        Merge configuration fields into the live configuration.

        Changes apply from the next tick; the existing buffer is left as is
        and a running timer keeps its interval until restarted.

        Raises
        ------
        ValueError
            If the merged configuration is invalid (the old one is kept)
        """
        merged = dict(params or {})
        merged.update(kwargs)
        known = {f.name for f in fields(SeriesConfig)}
        unknown = set(merged) - known
        if unknown:
            raise ValueError(f"Unknown series parameters: {sorted(unknown)}")

        candidate = replace(self.config, **merged)
        candidate.validate()
        self.config = candidate

    def set_fault_effects(self, effects: Iterable[EffectLike]) -> None:
        """Replace the fault effects considered by the overlay, in place."""
        self._fault_effects[:] = list(effects)
