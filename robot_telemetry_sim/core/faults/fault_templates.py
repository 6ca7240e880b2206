"""
Fault Template Catalog

Reusable fault definitions ("templates") and the registry that owns them.
A template names a fault type, a severity, a default window length and the
type-specific parameters read by the fault effect model.

Built-in Templates:
------------------
A fixed set of built-in templates is always present. They are seeded into an
empty store on first read and merged back by id on every later read, so a
deleted built-in reappears. Deleting a built-in only disables it.

Example:
--------
>>> registry = FaultTemplateRegistry(InMemoryStore())
>>> tpl = registry.upsert_template({'name': 'Hot joint', 'fault_type': 'OVERHEAT',
...                                 'params': {'deltaC': 30}})
>>> registry.delete_template(tpl.id)
"""

import copy
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from robot_telemetry_sim.core.persistence.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


class FaultType(Enum):
    """Enumeration of supported fault types."""
    OVERHEAT = "OVERHEAT"
    HIGH_VIBRATION = "HIGH_VIBRATION"
    CURRENT_SPIKE = "CURRENT_SPIKE"
    SENSOR_DRIFT = "SENSOR_DRIFT"
    CUSTOM = "CUSTOM"

    @classmethod
    def parse(cls, value: Any) -> "FaultType":
        """Coerce a name or enum to FaultType; unrecognized names map to CUSTOM."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            logger.warning("Unrecognized fault type %r treated as CUSTOM", value)
            return cls.CUSTOM


class Severity(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            logger.warning("Unrecognized severity %r treated as LOW", value)
            return cls.LOW


class FaultConfigurationError(ValueError):
    """Raised when a fault window would have zero or negative length."""


def now_iso(timestamp: Optional[float] = None) -> str:
    """UTC ISO-8601 string with millisecond precision."""
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat(timespec='milliseconds')


def generate_id(prefix: str = 'id') -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


def coerce_params(params: Any) -> Dict[str, Any]:
    """
    Normalize template parameters to a plain dict.

    Parameters may arrive as a JSON object string (as entered in a form);
    anything that is not a mapping after parsing becomes an empty dict.
    """
    if isinstance(params, str):
        try:
            params = json.loads(params)
        except ValueError:
            return {}
    if isinstance(params, Mapping):
        return dict(params)
    return {}


@dataclass
class FaultTemplate:
    """
    Reusable fault definition.

    Attributes
    ----------
    id : str
        Unique template identifier
    name : str
        Display name
    fault_type : FaultType
        Fault family; selects the overlay formula
    severity : Severity
        Alarm severity shown to operators
    duration_seconds : float
        Default injection window length [s]
    enabled : bool
        Whether the template is offered for injection
    params : Dict
        Fault-type-specific parameters (deltaC, rmsDelta, amplitude, ...)
    created_at, updated_at : str
        ISO-8601 timestamps
    builtin : bool
        Built-in templates cannot be removed, only disabled
    """
    id: str
    name: str
    fault_type: FaultType = FaultType.CUSTOM
    severity: Severity = Severity.LOW
    duration_seconds: float = 60.0
    enabled: bool = True
    params: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    builtin: bool = False

    def __post_init__(self):
        self.fault_type = FaultType.parse(self.fault_type)
        self.severity = Severity.parse(self.severity)
        self.params = coerce_params(self.params)

    def validate(self) -> None:
        """Raise FaultConfigurationError unless the default window is positive."""
        try:
            duration = float(self.duration_seconds)
        except (TypeError, ValueError):
            raise FaultConfigurationError(
                f"Template '{self.id}' has non-numeric duration: {self.duration_seconds!r}"
            )
        if not duration > 0:
            raise FaultConfigurationError(
                f"Template '{self.id}' has non-positive duration: {self.duration_seconds}"
            )

    def snapshot(self) -> "FaultTemplate":
        """Deep copy, detached from this record and its params."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'fault_type': self.fault_type.value,
            'severity': self.severity.value,
            'duration_seconds': self.duration_seconds,
            'enabled': self.enabled,
            'params': copy.deepcopy(self.params),
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'builtin': self.builtin,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FaultTemplate":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        if 'id' not in kwargs:
            raise KeyError("Fault template record has no 'id'")
        for key in ('id', 'created_at', 'updated_at'):
            if key in kwargs and not isinstance(kwargs[key], str):
                raise TypeError(f"Fault template '{key}' must be a string, got {kwargs[key]!r}")
        kwargs.setdefault('name', kwargs['id'])
        return cls(**kwargs)


def builtin_templates(timestamp: Optional[str] = None) -> List[FaultTemplate]:
    """Fresh copies of the built-in template set."""
    ts = timestamp or now_iso()
    specs = [
        ('builtin-overheat-high', 'Overheat example', FaultType.OVERHEAT, Severity.HIGH,
         120, {'deltaC': 25, 'rampSeconds': 20}),
        ('builtin-high-vibration-medium', 'High vibration example', FaultType.HIGH_VIBRATION,
         Severity.MEDIUM, 120, {'rmsDelta': 0.8}),
        ('builtin-current-spike-high', 'Current spike example', FaultType.CURRENT_SPIKE,
         Severity.HIGH, 60, {'amplitude': 8, 'widthSeconds': 8}),
        ('builtin-sensor-drift-low', 'Sensor drift example', FaultType.SENSOR_DRIFT,
         Severity.LOW, 180, {'driftPerSec': 0.03}),
    ]
    return [
        FaultTemplate(
            id=tid, name=name, fault_type=ftype, severity=sev,
            duration_seconds=float(duration), enabled=True, params=params,
            created_at=ts, updated_at=ts, builtin=True,
        )
        for tid, name, ftype, sev, duration, params in specs
    ]


class FaultTemplateRegistry:
    """
    CRUD over fault templates with a protected built-in set.

    The registry keeps no cached copy of the catalog: every operation loads
    the collection from the store, modifies it and saves it back while
    holding the registry lock, so no other registry operation can interleave
    between the load and the save.

    Parameters
    ----------
    store : KeyValueStore
        Backing store shared with other collections
    builtins : List[FaultTemplate], optional
        Built-in set (defaults to ``builtin_templates()``)
    time_source : Callable[[], float]
        Epoch-seconds clock used for created/updated timestamps
    """

    STORAGE_KEY = 'fault_templates_v1'

    def __init__(
        self,
        store: KeyValueStore,
        builtins: Optional[List[FaultTemplate]] = None,
        time_source: Callable[[], float] = time.time
    ):
        self.store = store
        self.time_source = time_source
        if builtins is None:
            builtins = builtin_templates(now_iso(time_source()))
        for tpl in builtins:
            tpl.builtin = True
        self._builtins = [tpl.snapshot() for tpl in builtins]
        self._builtin_ids = {tpl.id for tpl in self._builtins}
        self._lock = threading.RLock()

    @property
    def builtin_ids(self) -> List[str]:
        return [tpl.id for tpl in self._builtins]

    def subscribe(self, handler: Callable[[], None]) -> Callable[[], None]:
        """Register a "templates changed" handler; returns an unsubscribe callable."""
        return self.store.on_change(self.STORAGE_KEY, handler)

    def _load(self) -> List[FaultTemplate]:
        raw = self.store.load(self.STORAGE_KEY, [])
        if not isinstance(raw, list):
            logger.warning("Template collection is not a list; treating as empty")
            return []

        templates = []
        for record in raw:
            try:
                templates.append(FaultTemplate.from_dict(record))
            except (KeyError, TypeError, AttributeError, ValueError):
                logger.warning("Skipping malformed template record: %r", record)
        return templates

    def _normalize(self, templates: List[FaultTemplate]) -> List[FaultTemplate]:
        # Later records win; first-seen position is kept
        by_id: Dict[str, FaultTemplate] = {}
        for tpl in templates:
            by_id[tpl.id] = tpl
        merged = list(by_id.values())
        for tpl in merged:
            if tpl.id in self._builtin_ids:
                tpl.builtin = True
        # Stable sort: built-ins first, otherwise insertion order
        return sorted(merged, key=lambda t: not t.builtin)

    def get_all_templates(self) -> List[FaultTemplate]:
        """
        Load the catalog, repairing missing built-ins.

        Returns
        -------
        List[FaultTemplate]
            De-duplicated templates, built-ins first
        """
        with self._lock:
            saved = self._load()
            if not saved:
                merged = self._normalize([tpl.snapshot() for tpl in self._builtins])
                self._persist(merged, notify=False)
                return merged

            merged = self._normalize([tpl.snapshot() for tpl in self._builtins] + saved)
            if len(merged) != len(saved):
                self._persist(merged, notify=False)
            return merged

    def get_template(self, template_id: str) -> Optional[FaultTemplate]:
        for tpl in self.get_all_templates():
            if tpl.id == template_id:
                return tpl
        return None

    def save_all_templates(self, templates: List[FaultTemplate]) -> bool:
        """Replace the whole catalog (normalized) and broadcast a change."""
        with self._lock:
            return self._persist(self._normalize(list(templates)))

    def _persist(self, templates: List[FaultTemplate], notify: bool = True) -> bool:
        return self.store.save(self.STORAGE_KEY, [tpl.to_dict() for tpl in templates],
                               notify=notify)

    def upsert_template(self, patch: Mapping[str, Any]) -> FaultTemplate:
        """
        Merge ``patch`` into an existing template or create a new one.

        Parameters
        ----------
        patch : Mapping
            Template fields. If ``patch['id']`` names an existing template
            its fields are merged and ``updated_at`` refreshed. Otherwise a
            new non-built-in template is created with the given id (or a
            generated one) and defaults for the missing fields.

        Returns
        -------
        FaultTemplate
            The stored template
        """
        patch = dict(patch)
        with self._lock:
            templates = self.get_all_templates()
            now = now_iso(self.time_source())
            template_id = patch.get('id')

            if template_id:
                for idx, existing in enumerate(templates):
                    if existing.id != template_id:
                        continue
                    data = existing.to_dict()
                    for key, value in patch.items():
                        # Identity and provenance are fixed at creation
                        if key in ('id', 'builtin', 'created_at'):
                            continue
                        data[key] = value
                    data['updated_at'] = now
                    updated = FaultTemplate.from_dict(data)
                    templates[idx] = updated
                    self._persist(self._normalize(templates))
                    return updated

            created = FaultTemplate(
                id=template_id or generate_id('tpl'),
                name=patch.get('name', 'New template'),
                fault_type=patch.get('fault_type', FaultType.CUSTOM),
                severity=patch.get('severity', Severity.LOW),
                duration_seconds=patch.get('duration_seconds', 60.0),
                enabled=patch.get('enabled', True),
                params=patch.get('params', {}),
                created_at=now,
                updated_at=now,
                builtin=False,
            )
            self._persist(self._normalize(templates + [created]))
            return created

    def delete_template(self, template_id: str) -> None:
        """Remove a user template; built-ins are disabled instead."""
        with self._lock:
            templates = self.get_all_templates()
            target = next((t for t in templates if t.id == template_id), None)
            if target is not None and target.builtin:
                self.upsert_template({'id': template_id, 'enabled': False})
                return
            self._persist(self._normalize([t for t in templates if t.id != template_id]))
