"""
Robot Telemetry Source

Consumer-facing side of the simulation:

- ``RobotTelemetrySource`` keeps one ``SeriesGenerator`` per (robot, metric),
  re-syncs their fault effects whenever the injection collection changes,
  and answers metric range queries from the live buffer or from a
  deterministic historical replay.
- ``JointTelemetrySampler`` produces labeled multi-metric joint frames by
  overlaying the active injections onto a seeded noisy base reading.

Both use the injection scheduler's clock, so the tick scheduler and the
fault scheduler must share one time source.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from robot_telemetry_sim.core.faults.fault_effects import (
    METRICS,
    TelemetryFrame,
    apply_fault_effects,
)
from robot_telemetry_sim.core.faults.fault_injector import (
    FaultInjection,
    FaultInjectionScheduler,
    InjectionStatus,
)
from robot_telemetry_sim.core.telemetry.series_generator import (
    SeriesConfig,
    SeriesGenerator,
    SeriesPoint,
)
from robot_telemetry_sim.core.telemetry.tick_scheduler import TickScheduler

logger = logging.getLogger(__name__)

# Nominal joint operating point: current [A], vibration RMS [mm/s], temperature [degC]
NOMINAL_FRAME = TelemetryFrame(current=2.5, vibration=0.1, temperature=40.0)
NOMINAL_NOISE = TelemetryFrame(current=0.1, vibration=0.02, temperature=2.0)

METRIC_PRESETS: Dict[str, dict] = {
    'current': {
        'start_value': 2.5, 'min_value': 0.0, 'max_value': 15.0,
        'noise': 0.05, 'trend': 0.05,
    },
    'vibration': {
        'start_value': 0.1, 'min_value': 0.0, 'max_value': 5.0,
        'noise': 0.01, 'trend': 0.1,
    },
    'temperature': {
        'start_value': 40.0, 'min_value': 20.0, 'max_value': 90.0,
        'noise': 0.5, 'trend': 0.05,
    },
}


def stable_seed(*parts) -> int:
    """Deterministic 32-bit seed derived from arbitrary identifiers."""
    digest = hashlib.md5("|".join(str(p) for p in parts).encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


def default_series_config(metric: str, seed: int = 42, **overrides) -> SeriesConfig:
    """Preset configuration for a joint metric, with field overrides."""
    if metric not in METRIC_PRESETS:
        raise ValueError(f"Unknown metric: {metric}. Valid: {list(METRIC_PRESETS)}")
    params = dict(METRIC_PRESETS[metric])
    params.update(overrides)
    params.pop('metric', None)
    seed = params.pop('seed', seed)
    return SeriesConfig(metric=metric, seed=seed, **params)


@dataclass(frozen=True)
class MetricQuery:
    """Range query for one metric of one robot (epoch seconds, step in seconds)."""
    robot_id: str
    metric: str
    start: float
    end: float
    step: float = 1.0

    def validate(self) -> None:
        if self.step <= 0:
            raise ValueError(f"Query step must be positive, got {self.step}")
        if self.end < self.start:
            raise ValueError(f"Query end ({self.end}) precedes start ({self.start})")


_LIVE_STATUSES = (InjectionStatus.PENDING, InjectionStatus.ACTIVE)


class RobotTelemetrySource:
    """
    Per-robot set of live series generators kept in sync with injections.

    Parameters
    ----------
    fault_scheduler : FaultInjectionScheduler
        Source of injections (subscribed to for change notifications)
    tick_scheduler : TickScheduler
        Clock and timer shared by all generators
    seed : int
        Base seed; each (robot, metric) generator derives its own
    series_overrides : Dict[str, dict], optional
        Per-metric SeriesConfig field overrides
    """

    def __init__(
        self,
        fault_scheduler: FaultInjectionScheduler,
        tick_scheduler: TickScheduler,
        seed: int = 42,
        series_overrides: Optional[Dict[str, dict]] = None
    ):
        self.fault_scheduler = fault_scheduler
        self.tick_scheduler = tick_scheduler
        self.seed = seed
        self.series_overrides = series_overrides or {}
        self._generators: Dict[Tuple[str, str], SeriesGenerator] = {}
        self._unsubscribe = fault_scheduler.subscribe(self.refresh_fault_effects)

    def _config_for(self, robot_id: str, metric: str, **extra) -> SeriesConfig:
        overrides = dict(self.series_overrides.get(metric, {}))
        overrides.update(extra)
        return default_series_config(metric, seed=stable_seed(self.seed, robot_id, metric),
                                     **overrides)

    def generator(self, robot_id: str, metric: str) -> SeriesGenerator:
        """Get or create the generator for (robot, metric)."""
        key = (robot_id, metric)
        if key not in self._generators:
            gen = SeriesGenerator(self._config_for(robot_id, metric), self.tick_scheduler)
            gen.set_fault_effects(self._live_effects(robot_id))
            self._generators[key] = gen
        return self._generators[key]

    def start(self, robot_id: str, metrics: Iterable[str] = METRICS) -> List[SeriesGenerator]:
        generators = [self.generator(robot_id, m) for m in metrics]
        for gen in generators:
            gen.start()
        return generators

    def stop(self, robot_id: Optional[str] = None) -> None:
        for (rid, _), gen in self._generators.items():
            if robot_id is None or rid == robot_id:
                gen.stop()

    def close(self) -> None:
        """Stop every generator and drop the injection subscription."""
        self.stop()
        self._unsubscribe()

    def _live_effects(self, robot_id: str):
        injections = self.fault_scheduler.list_injections_by_robot(
            robot_id, statuses=_LIVE_STATUSES, now=self.tick_scheduler.now()
        )
        return [inj.to_effect() for inj in injections]

    def refresh_fault_effects(self) -> None:
        """Re-query pending/active injections for every robot with generators."""
        robots = {rid for rid, _ in self._generators}
        for robot_id in robots:
            effects = self._live_effects(robot_id)
            for (rid, _), gen in self._generators.items():
                if rid == robot_id:
                    gen.set_fault_effects(effects)

    def latest_frame(self, robot_id: str) -> Optional[TelemetryFrame]:
        """Most recent value of each metric, or None until every metric has a point."""
        values = {}
        for metric in METRICS:
            gen = self._generators.get((robot_id, metric))
            series = gen.get_series() if gen is not None else ()
            if not series:
                return None
            values[metric] = series[-1].value
        return TelemetryFrame(**values)

    def query(self, query: MetricQuery) -> List[SeriesPoint]:
        """
        Points of one metric within [start, end].

        A running generator answers from its live buffer. Otherwise the
        range is replayed deterministically: a fresh generator seeded from
        the (robot, metric) pair ticks at ``start + i * step`` with every
        injection of the robot in play.
        """
        query.validate()
        gen = self._generators.get((query.robot_id, query.metric))
        if gen is not None and gen.is_running:
            return [p for p in gen.get_series() if query.start <= p.timestamp <= query.end]
        return self.replay(query)

    def replay(self, query: MetricQuery) -> List[SeriesPoint]:
        query.validate()
        count = int(np.floor((query.end - query.start) / query.step + 1e-9)) + 1
        config = self._config_for(query.robot_id, query.metric, max_points=count)
        injections = self.fault_scheduler.list_injections_by_robot(query.robot_id)
        replay = SeriesGenerator(config, self.tick_scheduler,
                                 fault_effects=[inj.to_effect() for inj in injections])
        replay.reset(origin=query.start)
        for i in range(count):
            replay.tick(query.start + i * query.step)
        return list(replay.get_series())


class SampleLabel(Enum):
    NORMAL = "NORMAL"
    FAULT_OVERHEAT = "FAULT_OVERHEAT"
    FAULT_HIGH_VIBRATION = "FAULT_HIGH_VIBRATION"
    FAULT_CURRENT_SPIKE = "FAULT_CURRENT_SPIKE"
    FAULT_SENSOR_DRIFT = "FAULT_SENSOR_DRIFT"
    FAULT_CUSTOM = "FAULT_CUSTOM"


@dataclass
class JointSample:
    """Labeled telemetry frame for one robot joint."""
    ts: float
    robot_id: str
    joint_index: int
    frame: TelemetryFrame
    label: SampleLabel = SampleLabel.NORMAL
    active_injection_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {
            'ts': self.ts,
            'robot_id': self.robot_id,
            'joint_index': self.joint_index,
            'label': self.label.value,
            'active_injection_ids': list(self.active_injection_ids),
        }
        data.update(self.frame.to_dict())
        return data


class JointTelemetrySampler:
    """
    Generates labeled joint frames with the fault overlay applied.

    Parameters
    ----------
    fault_scheduler : FaultInjectionScheduler
        Source of active injections
    seed : int
        RNG seed for the base-reading noise
    nominal : TelemetryFrame
        Mean base reading
    noise : TelemetryFrame
        Per-metric standard deviation of the base reading
    """

    def __init__(
        self,
        fault_scheduler: FaultInjectionScheduler,
        seed: int = 42,
        nominal: TelemetryFrame = NOMINAL_FRAME,
        noise: TelemetryFrame = NOMINAL_NOISE
    ):
        self.fault_scheduler = fault_scheduler
        self.seed = seed
        self.nominal = nominal
        self.noise = noise
        self.rng = np.random.default_rng(seed)

    def set_seed(self, seed: int) -> None:
        self.seed = seed
        self.rng = np.random.default_rng(seed)

    def base_frame(self) -> TelemetryFrame:
        means = np.array([self.nominal.get(m) for m in METRICS])
        stds = np.array([self.noise.get(m) for m in METRICS])
        values = means + self.rng.normal(0.0, 1.0, size=len(METRICS)) * stds
        return TelemetryFrame(**{m: float(v) for m, v in zip(METRICS, values)})

    @staticmethod
    def label_for(active: List[FaultInjection]) -> SampleLabel:
        """Label after the most recently started active injection."""
        if not active:
            return SampleLabel.NORMAL
        latest = max(active, key=lambda inj: inj.start_ts)
        return SampleLabel(f"FAULT_{latest.template_snapshot.fault_type.value}")

    def sample(self, robot_id: str, joint_index: int, now: Optional[float] = None) -> JointSample:
        now = self.fault_scheduler.time_source() if now is None else now
        active = self.fault_scheduler.list_active_injections(robot_id, now)
        frame = apply_fault_effects(self.base_frame(), active, now)

        # Physical readings cannot go negative
        frame = TelemetryFrame(**{m: max(0.0, frame.get(m)) for m in METRICS})
        return JointSample(
            ts=now,
            robot_id=robot_id,
            joint_index=joint_index,
            frame=frame,
            label=self.label_for(active),
            active_injection_ids=[inj.id for inj in active],
        )

    def sample_robot(self, robot_id: str, joint_count: int,
                     now: Optional[float] = None) -> List[JointSample]:
        """One sample per joint at a shared instant."""
        now = self.fault_scheduler.time_source() if now is None else now
        return [self.sample(robot_id, j, now) for j in range(joint_count)]
