"""
Robot Telemetry Simulation
==========================
Deterministic synthetic joint telemetry (current, vibration, temperature)
with time-windowed fault injection driven by a reusable template catalog.

Subpackages:
------------
- core.faults: template registry, fault effect model, injection scheduler
- core.telemetry: seeded series generators, tick schedulers, telemetry source
- core.persistence: JSON key-value stores with change notification
- core.simulation: simulation run records
"""

__version__ = '1.0.0'
