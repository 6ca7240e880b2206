"""
Fault Effect Model

Pure functions mapping active fault windows onto additive perturbations of
joint telemetry. The same model serves two call sites:

1. Per-metric: a series generator adds ``metric_overlay(metric, ...)`` to
   its base signal on every tick.
2. Per-frame: ``apply_fault_effects`` perturbs a whole
   (current, vibration, temperature) reading at once.

Overlay Formulas:
----------------
With t = seconds since window start, dur = window length and
t01 = clip(t / dur, 0, 1):

- OVERHEAT:        temperature += deltaC * (1 - exp(-3 k)),  k = clip(t / rampSeconds, 0, 1)
                   current     += 0.6 * k
- HIGH_VIBRATION:  vibration   += rmsDelta
- CURRENT_SPIKE:   current     += amplitude * exp(-((t01 - 0.5) / sigma)^2),
                   sigma = max(widthSeconds, 0.05) / 6
- SENSOR_DRIFT:    temperature += driftPerSec * t
- CUSTOM / other:  <metric>    += params['<metric>Delta']

Contributions of simultaneous faults are summed. Effects outside their
window contribute nothing.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Union

import numpy as np

METRICS = ('current', 'vibration', 'temperature')

# Defaults used when a template omits a parameter
DEFAULT_PARAMS: Dict[str, Dict[str, float]] = {
    'OVERHEAT': {'deltaC': 20.0, 'rampSeconds': 15.0},
    'HIGH_VIBRATION': {'rmsDelta': 0.6},
    'CURRENT_SPIKE': {'amplitude': 6.0, 'widthSeconds': 6.0},
    'SENSOR_DRIFT': {'driftPerSec': 0.02},
}

OVERHEAT_CURRENT_GAIN = 0.6     # current rise at full ramp [A]
OVERHEAT_RAMP_RATE = 3.0        # exponent at k = 1
MIN_RAMP_SECONDS = 1.0
MIN_SPIKE_WIDTH = 0.05
MIN_WINDOW_SECONDS = 1e-3


@dataclass
class TelemetryFrame:
    """One multi-metric joint reading."""
    current: float = 0.0        # [A]
    vibration: float = 0.0      # RMS [mm/s]
    temperature: float = 0.0    # [degC]

    def get(self, metric: str) -> float:
        if metric not in METRICS:
            raise KeyError(f"Unknown metric: {metric}. Valid: {list(METRICS)}")
        return getattr(self, metric)

    def to_dict(self) -> Dict[str, float]:
        return {m: float(getattr(self, m)) for m in METRICS}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TelemetryFrame":
        return cls(**{m: float(data.get(m, 0.0)) for m in METRICS})


@dataclass
class FaultEffect:
    """
    Time-windowed fault as seen by the overlay model.

    Attributes
    ----------
    fault_type : str
        Fault type name (OVERHEAT, HIGH_VIBRATION, ...)
    start_ts, end_ts : float
        Window bounds, epoch seconds (inclusive)
    params : Dict
        Template parameters
    severity : str
        Severity label (informational)
    """
    fault_type: str
    start_ts: float
    end_ts: float
    params: Dict[str, Any] = field(default_factory=dict)
    severity: str = "LOW"

    def __post_init__(self):
        if isinstance(self.fault_type, Enum):
            self.fault_type = self.fault_type.value
        self.fault_type = str(self.fault_type).upper()
        if isinstance(self.severity, Enum):
            self.severity = self.severity.value

    def is_active(self, now: float) -> bool:
        return self.start_ts <= now <= self.end_ts


EffectLike = Union[FaultEffect, Any]


def as_effect(obj: EffectLike) -> FaultEffect:
    """Accept a FaultEffect or anything exposing ``to_effect()`` (e.g. FaultInjection)."""
    if isinstance(obj, FaultEffect):
        return obj
    to_effect = getattr(obj, 'to_effect', None)
    if to_effect is None:
        raise TypeError(f"Cannot derive a fault effect from {type(obj).__name__}")
    return to_effect()


def _param(params: Mapping[str, Any], name: str, default: float) -> float:
    value = params.get(name) if params else None
    if value is None:
        return float(default)
    try:
        value = float(value)
    except (TypeError, ValueError):
        return float(default)
    if not np.isfinite(value):
        return float(default)
    return value


def compute_fault_deltas(effect: EffectLike, now: float) -> Dict[str, float]:
    """
    Per-metric additive deltas contributed by one fault at ``now``.

    Parameters
    ----------
    effect : FaultEffect or FaultInjection
        Fault window and parameters
    now : float
        Query instant, epoch seconds

    Returns
    -------
    Dict[str, float]
        Delta for each of current, vibration, temperature (zeros when the
        fault is not active at ``now``)
    """
    effect = as_effect(effect)
    deltas = {m: 0.0 for m in METRICS}
    if not effect.is_active(now):
        return deltas

    params = effect.params or {}
    t = now - effect.start_ts
    duration = max(effect.end_ts - effect.start_ts, MIN_WINDOW_SECONDS)
    t01 = float(np.clip(t / duration, 0.0, 1.0))
    defaults = DEFAULT_PARAMS.get(effect.fault_type, {})

    if effect.fault_type == 'OVERHEAT':
        delta_c = _param(params, 'deltaC', defaults['deltaC'])
        ramp = max(MIN_RAMP_SECONDS, _param(params, 'rampSeconds', defaults['rampSeconds']))
        k = float(np.clip(t / ramp, 0.0, 1.0))
        deltas['temperature'] += delta_c * (1.0 - np.exp(-OVERHEAT_RAMP_RATE * k))
        deltas['current'] += OVERHEAT_CURRENT_GAIN * k

    elif effect.fault_type == 'HIGH_VIBRATION':
        deltas['vibration'] += _param(params, 'rmsDelta', defaults['rmsDelta'])

    elif effect.fault_type == 'CURRENT_SPIKE':
        amplitude = _param(params, 'amplitude', defaults['amplitude'])
        width = max(MIN_SPIKE_WIDTH, _param(params, 'widthSeconds', defaults['widthSeconds']))
        sigma = width / 6.0
        deltas['current'] += amplitude * np.exp(-((t01 - 0.5) / sigma) ** 2)

    elif effect.fault_type == 'SENSOR_DRIFT':
        deltas['temperature'] += _param(params, 'driftPerSec', defaults['driftPerSec']) * t

    else:
        for metric in METRICS:
            deltas[metric] += _param(params, f'{metric}Delta', 0.0)

    return {m: float(v) for m, v in deltas.items()}


def metric_overlay(metric: str, effects: Iterable[EffectLike], now: float) -> float:
    """Summed overlay for a single metric."""
    if metric not in METRICS:
        # Metrics outside the joint model are never perturbed
        return 0.0
    return float(sum(compute_fault_deltas(e, now)[metric] for e in effects))


def apply_fault_effects(
    base: Union[TelemetryFrame, Mapping[str, float]],
    effects: Iterable[EffectLike],
    now: float
) -> TelemetryFrame:
    """
    Overlay all active faults onto a base reading.

    Parameters
    ----------
    base : TelemetryFrame or Mapping
        Unperturbed reading
    effects : Iterable
        FaultEffect or FaultInjection instances; inactive ones are ignored
    now : float
        Query instant, epoch seconds

    Returns
    -------
    TelemetryFrame
        New frame, base plus the sum of all deltas
    """
    if not isinstance(base, TelemetryFrame):
        base = TelemetryFrame.from_mapping(base)

    totals = {m: 0.0 for m in METRICS}
    for effect in effects:
        for metric, delta in compute_fault_deltas(effect, now).items():
            totals[metric] += delta

    return replace(
        base,
        current=base.current + totals['current'],
        vibration=base.vibration + totals['vibration'],
        temperature=base.temperature + totals['temperature'],
    )
