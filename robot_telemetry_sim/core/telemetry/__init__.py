"""
Synthetic telemetry package.

Seeded per-metric series generators, the timers that drive them, and the
robot-level source that keeps generators in sync with fault injections.
"""

from .tick_scheduler import (
    TickScheduler,
    ManualTickScheduler,
    AsyncioTickScheduler,
    TimerHandle,
)
from .series_generator import (
    SeriesConfig,
    SeriesGenerator,
    SeriesPoint,
    SeededGaussian,
    BACKFILL_WINDOW_S,
    PERIODIC_AMPLITUDE,
)
from .telemetry_source import (
    RobotTelemetrySource,
    JointTelemetrySampler,
    JointSample,
    SampleLabel,
    MetricQuery,
    METRIC_PRESETS,
    default_series_config,
    stable_seed,
)

__all__ = [
    'TickScheduler',
    'ManualTickScheduler',
    'AsyncioTickScheduler',
    'TimerHandle',
    'SeriesConfig',
    'SeriesGenerator',
    'SeriesPoint',
    'SeededGaussian',
    'BACKFILL_WINDOW_S',
    'PERIODIC_AMPLITUDE',
    'RobotTelemetrySource',
    'JointTelemetrySampler',
    'JointSample',
    'SampleLabel',
    'MetricQuery',
    'METRIC_PRESETS',
    'default_series_config',
    'stable_seed',
]
