"""
Simulation Run Registry

Local records of simulation runs (the ids fault injections are filed under)
and the per-robot telemetry mode switch: "mock" robots are fed by the
synthetic generators, "real" robots by a live backend.
"""

import logging
import threading
import time
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, List, Mapping, Optional

from robot_telemetry_sim.core.faults.fault_templates import generate_id, now_iso
from robot_telemetry_sim.core.persistence.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

TELEMETRY_MODES = ('mock', 'real')


@dataclass
class SimRun:
    id: str
    scene_name: str
    mode: str = 'REALTIME'
    status: str = 'RUNNING'
    sampling_hz: float = 1.0
    created_at: str = ''
    seed: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SimRun":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class SimRunRegistry:
    """
    Persistent list of simulation runs.

    Parameters
    ----------
    store : KeyValueStore
        Backing store
    time_source : Callable[[], float]
        Epoch-seconds clock for ``created_at``
    """

    STORAGE_KEY = 'sim_runs_v1'
    MODE_KEY = 'robot_telemetry_mode_v1'
    DEMO_SCENE = 'Demonstration scenario'

    def __init__(self, store: KeyValueStore, time_source: Callable[[], float] = time.time):
        self.store = store
        self.time_source = time_source
        self._lock = threading.RLock()

    def subscribe(self, handler: Callable[[], None]) -> Callable[[], None]:
        return self.store.on_change(self.STORAGE_KEY, handler)

    def get_all_runs(self) -> List[SimRun]:
        raw = self.store.load(self.STORAGE_KEY, [])
        if not isinstance(raw, list):
            return []
        runs = []
        for record in raw:
            try:
                runs.append(SimRun.from_dict(record))
            except (TypeError, AttributeError):
                logger.warning("Skipping malformed run record: %r", record)
        return runs

    def save_all_runs(self, runs: List[SimRun]) -> bool:
        return self.store.save(self.STORAGE_KEY, [run.to_dict() for run in runs])

    def get_run(self, run_id: str) -> Optional[SimRun]:
        return next((run for run in self.get_all_runs() if run.id == run_id), None)

    def ensure_demo_run(self, seed: Optional[int] = None) -> SimRun:
        """Return the first stored run, creating a demo run if there is none."""
        with self._lock:
            runs = self.get_all_runs()
            if runs:
                return runs[0]

            demo = SimRun(
                id=generate_id('mock-run'),
                scene_name=self.DEMO_SCENE,
                created_at=now_iso(self.time_source()),
                seed=seed,
            )
            self.save_all_runs([demo])
            return demo

    def get_robot_telemetry_mode(self, robot_id: str) -> str:
        """Telemetry mode of a robot; anything but an explicit "real" is "mock"."""
        modes = self.store.load(self.MODE_KEY, {})
        if isinstance(modes, dict) and modes.get(robot_id) == 'real':
            return 'real'
        return 'mock'

    def set_robot_telemetry_mode(self, robot_id: str, mode: str) -> bool:
        if mode not in TELEMETRY_MODES:
            raise ValueError(f"Unknown telemetry mode: {mode}. Valid: {list(TELEMETRY_MODES)}")
        with self._lock:
            modes = self.store.load(self.MODE_KEY, {})
            if not isinstance(modes, dict):
                modes = {}
            modes[robot_id] = mode
            return self.store.save(self.MODE_KEY, modes)
