"""
Fault Injection Scheduler

Schedules time-windowed fault injections against a simulation run and a
robot. Each injection binds a deep-copied snapshot of its template, so later
edits or deletion of the template never alter what was injected.

Design Philosophy:
-----------------
Injections are never mutated after creation and their status is never
stored. PENDING / ACTIVE / EXPIRED is derived from the query instant:

    now <  start_ts            -> PENDING
    start_ts <= now <= end_ts  -> ACTIVE
    now >  end_ts              -> EXPIRED

Usage Pattern:
-------------
The scheduler is the only writer of the injection collection. Readers
(series generators, dashboards) subscribe to change notifications and
re-query ``list_active_injections`` / ``list_injections_by_run``.

Example:
--------
>>> store = InMemoryStore()
>>> scheduler = FaultInjectionScheduler(store, FaultTemplateRegistry(store))
>>> created = scheduler.inject_faults('run-1', 'robot-1',
...                                   ['builtin-overheat-high'], interval_seconds=30)
>>> scheduler.get_injection_status(created[0])
<InjectionStatus.ACTIVE: 'ACTIVE'>
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from robot_telemetry_sim.core.faults.fault_effects import FaultEffect
from robot_telemetry_sim.core.faults.fault_templates import (
    FaultConfigurationError,
    FaultTemplate,
    FaultTemplateRegistry,
    generate_id,
    now_iso,
)
from robot_telemetry_sim.core.persistence.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

Timestamp = Union[float, int, datetime, str]


class InjectionStatus(Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"


def to_epoch_seconds(value: Timestamp) -> float:
    """Convert epoch seconds, a datetime or an ISO-8601 string to epoch seconds."""
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace('Z', '+00:00')).timestamp()
    return float(value)


@dataclass(frozen=True)
class FaultInjection:
    """
    A scheduled application of a fault template.

    Attributes
    ----------
    id : str
        Unique injection identifier
    run_id : str
        Simulation run the injection belongs to
    robot_id : str
        Target robot
    template_id : str
        Id of the template at creation time
    template_snapshot : FaultTemplate
        Deep copy of the template taken at creation time
    start_ts, end_ts : float
        Window bounds, epoch seconds (end_ts > start_ts)
    created_at : str
        ISO-8601 creation timestamp
    """
    id: str
    run_id: str
    robot_id: str
    template_id: str
    template_snapshot: FaultTemplate
    start_ts: float
    end_ts: float
    created_at: str

    def __post_init__(self):
        if not self.end_ts > self.start_ts:
            raise FaultConfigurationError(
                f"Injection window must have end_ts > start_ts "
                f"(got start={self.start_ts}, end={self.end_ts})"
            )

    @property
    def duration(self) -> float:
        return self.end_ts - self.start_ts

    def is_active(self, current_time: float) -> bool:
        """True if ``current_time`` lies inside the (inclusive) window."""
        return self.start_ts <= current_time <= self.end_ts

    def get_elapsed_time(self, current_time: float) -> float:
        """
        Get time since window start.

        Returns
        -------
        float
            Elapsed time [s], or 0 if the injection is not active
        """
        if not self.is_active(current_time):
            return 0.0
        return current_time - self.start_ts

    def status(self, current_time: float) -> InjectionStatus:
        if current_time < self.start_ts:
            return InjectionStatus.PENDING
        if current_time > self.end_ts:
            return InjectionStatus.EXPIRED
        return InjectionStatus.ACTIVE

    def to_effect(self) -> FaultEffect:
        tpl = self.template_snapshot
        return FaultEffect(
            fault_type=tpl.fault_type,
            start_ts=self.start_ts,
            end_ts=self.end_ts,
            params=dict(tpl.params),
            severity=tpl.severity,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'run_id': self.run_id,
            'robot_id': self.robot_id,
            'template_id': self.template_id,
            'template_snapshot': self.template_snapshot.to_dict(),
            'start_ts': self.start_ts,
            'end_ts': self.end_ts,
            'created_at': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FaultInjection":
        for key in ('id', 'run_id', 'robot_id', 'template_id', 'created_at'):
            if not isinstance(data[key], str):
                raise TypeError(f"Injection '{key}' must be a string, got {data[key]!r}")
        return cls(
            id=data['id'],
            run_id=data['run_id'],
            robot_id=data['robot_id'],
            template_id=data['template_id'],
            template_snapshot=FaultTemplate.from_dict(data['template_snapshot']),
            start_ts=float(data['start_ts']),
            end_ts=float(data['end_ts']),
            created_at=data['created_at'],
        )


def get_injection_status(injection: FaultInjection, now: Optional[float] = None) -> InjectionStatus:
    """Derive status at ``now`` (defaults to wall-clock time)."""
    return injection.status(time.time() if now is None else now)


class FaultInjectionScheduler:
    """
    Creates, stores and queries fault injections.

    Parameters
    ----------
    store : KeyValueStore
        Backing store for the injection collection
    registry : FaultTemplateRegistry
        Template catalog used to resolve template ids
    time_source : Callable[[], float]
        Epoch-seconds clock ("now" for scheduling and queries)
    """

    STORAGE_KEY = 'fault_injections_v1'

    def __init__(
        self,
        store: KeyValueStore,
        registry: FaultTemplateRegistry,
        time_source: Callable[[], float] = time.time
    ):
        self.store = store
        self.registry = registry
        self.time_source = time_source
        self._lock = threading.RLock()

    def subscribe(self, handler: Callable[[], None]) -> Callable[[], None]:
        """Register an "injections changed" handler; returns an unsubscribe callable."""
        return self.store.on_change(self.STORAGE_KEY, handler)

    # ------------------------------------------------------------------
    # Collection access
    # ------------------------------------------------------------------

    def get_all_injections(self) -> List[FaultInjection]:
        raw = self.store.load(self.STORAGE_KEY, [])
        if not isinstance(raw, list):
            logger.warning("Injection collection is not a list; treating as empty")
            return []

        injections = []
        for record in raw:
            try:
                injections.append(FaultInjection.from_dict(record))
            except (KeyError, TypeError, AttributeError, ValueError):
                logger.warning("Skipping malformed injection record: %r", record)
        return injections

    def save_all_injections(self, injections: Iterable[FaultInjection]) -> bool:
        """Bulk-replace the collection and broadcast a change."""
        with self._lock:
            return self.store.save(self.STORAGE_KEY, [inj.to_dict() for inj in injections])

    def _append(self, created: List[FaultInjection]) -> None:
        with self._lock:
            self.save_all_injections(self.get_all_injections() + created)

    def clear_run(self, run_id: str) -> int:
        """
        Remove every injection of a run.

        Returns
        -------
        int
            Number of injections removed
        """
        with self._lock:
            injections = self.get_all_injections()
            kept = [inj for inj in injections if inj.run_id != run_id]
            self.save_all_injections(kept)
            return len(injections) - len(kept)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _create(
        self,
        run_id: str,
        robot_id: str,
        template: FaultTemplate,
        start_ts: float,
        created_at: str
    ) -> FaultInjection:
        template.validate()
        return FaultInjection(
            id=generate_id('inj'),
            run_id=run_id,
            robot_id=robot_id,
            template_id=template.id,
            template_snapshot=template.snapshot(),
            start_ts=start_ts,
            end_ts=start_ts + float(template.duration_seconds),
            created_at=created_at,
        )

    def inject_faults(
        self,
        run_id: str,
        robot_id: str,
        template_ids: Iterable[str],
        interval_seconds: float = 0.0
    ) -> List[FaultInjection]:
        """
        Inject one fault per known template id, starting now.

        The i-th resolved template starts at ``now + i * interval_seconds``
        and lasts its ``duration_seconds``. Unknown ids are skipped.

        Parameters
        ----------
        run_id, robot_id : str
            Target run and robot
        template_ids : Iterable[str]
            Template ids in injection order
        interval_seconds : float
            Spacing between consecutive window starts [s]

        Returns
        -------
        List[FaultInjection]
            Created injections (persisted in a single write)

        Raises
        ------
        FaultConfigurationError
            If a resolved template has a non-positive duration; nothing is
            written in that case
        """
        with self._lock:
            templates = {tpl.id: tpl for tpl in self.registry.get_all_templates()}
            now = self.time_source()
            created_at = now_iso(now)

            created: List[FaultInjection] = []
            for template_id in template_ids:
                template = templates.get(template_id)
                if template is None:
                    logger.warning("Skipping unknown fault template '%s'", template_id)
                    continue
                start = now + len(created) * float(interval_seconds)
                created.append(self._create(run_id, robot_id, template, start, created_at))

            if created:
                self._append(created)
            return created

    def build_batch_from_templates(
        self,
        run: Any,
        robot_id: str,
        templates: Iterable[Union[FaultTemplate, Mapping[str, Any]]],
        start_ts: Timestamp,
        gap_seconds: float
    ) -> List[FaultInjection]:
        """
        Lay templates end to end starting at ``start_ts``.

        Each window starts ``gap_seconds`` after the previous one ends:
        ``cursor += duration + gap`` after every template. Records are
        returned in input order and are not persisted (see ``schedule_batch``).

        Parameters
        ----------
        run : str or object with ``id``
            Target run
        robot_id : str
            Target robot
        templates : Iterable
            FaultTemplate instances or template dicts
        start_ts : float, datetime or ISO string
            Start of the first window
        gap_seconds : float
            Idle time between consecutive windows [s]

        Returns
        -------
        List[FaultInjection]
        """
        run_id = run if isinstance(run, str) else getattr(run, 'id', str(run))
        cursor = to_epoch_seconds(start_ts)
        created_at = now_iso(self.time_source())

        batch = []
        for template in templates:
            if not isinstance(template, FaultTemplate):
                template = FaultTemplate.from_dict(template)
            injection = self._create(run_id, robot_id, template, cursor, created_at)
            batch.append(injection)
            cursor = injection.end_ts + float(gap_seconds)
        return batch

    def schedule_batch(
        self,
        run: Any,
        robot_id: str,
        templates: Iterable[Union[FaultTemplate, Mapping[str, Any]]],
        start_ts: Timestamp,
        gap_seconds: float
    ) -> List[FaultInjection]:
        """Build a sequential batch and persist it in one write."""
        with self._lock:
            batch = self.build_batch_from_templates(run, robot_id, templates, start_ts, gap_seconds)
            if batch:
                self._append(batch)
            return batch

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_injections_by_run(self, run_id: str) -> List[FaultInjection]:
        """Injections of a run, most recently created first."""
        matching = [inj for inj in self.get_all_injections() if inj.run_id == run_id]
        # Stable sort: ties on created_at keep stored (input) order
        matching.sort(key=lambda inj: inj.created_at, reverse=True)
        return matching

    def list_active_injections(self, robot_id: str, now: Optional[float] = None) -> List[FaultInjection]:
        """Injections of a robot whose window contains ``now``."""
        now = self.time_source() if now is None else now
        return [
            inj for inj in self.get_all_injections()
            if inj.robot_id == robot_id and inj.is_active(now)
        ]

    def list_injections_by_robot(
        self,
        robot_id: str,
        statuses: Optional[Iterable[InjectionStatus]] = None,
        now: Optional[float] = None
    ) -> List[FaultInjection]:
        """Injections of a robot, optionally filtered by derived status."""
        now = self.time_source() if now is None else now
        wanted = set(statuses) if statuses is not None else None
        return [
            inj for inj in self.get_all_injections()
            if inj.robot_id == robot_id and (wanted is None or inj.status(now) in wanted)
        ]

    def get_injection_status(
        self,
        injection: FaultInjection,
        now: Optional[float] = None
    ) -> InjectionStatus:
        return injection.status(self.time_source() if now is None else now)
