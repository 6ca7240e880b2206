"""
Fault modeling package.

Template catalog, the pure fault effect (overlay) model, and the injection
scheduler that binds template snapshots to runs and robots.
"""

from .fault_templates import (
    FaultType,
    Severity,
    FaultTemplate,
    FaultTemplateRegistry,
    FaultConfigurationError,
    builtin_templates,
)
from .fault_effects import (
    FaultEffect,
    TelemetryFrame,
    METRICS,
    DEFAULT_PARAMS,
    compute_fault_deltas,
    metric_overlay,
    apply_fault_effects,
)
from .fault_injector import (
    FaultInjection,
    FaultInjectionScheduler,
    InjectionStatus,
    get_injection_status,
)

__all__ = [
    'FaultType',
    'Severity',
    'FaultTemplate',
    'FaultTemplateRegistry',
    'FaultConfigurationError',
    'builtin_templates',
    'FaultEffect',
    'TelemetryFrame',
    'METRICS',
    'DEFAULT_PARAMS',
    'compute_fault_deltas',
    'metric_overlay',
    'apply_fault_effects',
    'FaultInjection',
    'FaultInjectionScheduler',
    'InjectionStatus',
    'get_injection_status',
]
