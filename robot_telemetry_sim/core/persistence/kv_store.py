"""
Key-Value Persistence Facade

Small JSON key-value stores used to persist the fault template catalog, the
fault injection collection and simulation runs. Every store exposes the same
three operations:

- ``load(key, default)``: read the JSON value stored under ``key``
- ``save(key, value)``: replace the value and notify ``key`` subscribers
- ``on_change(key, handler)``: subscribe, returns an unsubscribe callable

Failure Policy:
--------------
Storage never raises into the simulation loop. A missing, unreadable or
corrupt entry reads as ``default``; a value that cannot be serialized or
written is dropped (``save`` returns False) and no notification is sent.

Change notifications carry no payload. Subscribers are expected to re-query
the store, since delivery order relative to other writers is not guaranteed.
"""

import copy
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Union

import numpy as np

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[], None]


class NumpyEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy scalars/arrays and str enums."""

    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, (np.bool_,)):
            return bool(obj)
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


class ChangeNotifier:
    """
    Observer list for one logical collection.

    Handlers are called synchronously in subscription order. A handler that
    raises is logged and skipped so the remaining handlers still run.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._handlers: List[ChangeHandler] = []

    def subscribe(self, handler: ChangeHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def notify(self) -> None:
        # Copy so handlers may unsubscribe while being notified
        for handler in list(self._handlers):
            try:
                handler()
            except Exception:
                logger.warning("Change handler for '%s' failed", self.name, exc_info=True)

    def __len__(self) -> int:
        return len(self._handlers)


class KeyValueStore(ABC):
    """
    Abstract JSON key-value store with per-key change notification.

    Subclasses implement ``_read_raw`` / ``_write_raw`` on serialized text;
    encoding, decoding, fallbacks and notification live here.
    """

    def __init__(self):
        self._notifiers: Dict[str, ChangeNotifier] = defaultdict(ChangeNotifier)

    @abstractmethod
    def _read_raw(self, key: str) -> Union[str, None]:
        """Return the serialized text for ``key`` or None when absent."""
        pass

    @abstractmethod
    def _write_raw(self, key: str, text: str) -> None:
        """Persist serialized text for ``key``."""
        pass

    def load(self, key: str, default: Any = None) -> Any:
        """
        Load the JSON value stored under ``key``.

        Parameters
        ----------
        key : str
            Collection key
        default : Any
            Value returned when the key is absent, unreadable or corrupt.
            A deep copy is returned so callers may mutate it freely.

        Returns
        -------
        Any
            Decoded JSON value or a copy of ``default``
        """
        try:
            raw = self._read_raw(key)
        except OSError:
            logger.warning("Failed to read key '%s'", key, exc_info=True)
            return copy.deepcopy(default)

        if not raw:
            return copy.deepcopy(default)

        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed JSON stored under '%s'", key)
            return copy.deepcopy(default)

    def save(self, key: str, value: Any, notify: bool = True) -> bool:
        """
        Replace the value stored under ``key`` and notify subscribers.

        Parameters
        ----------
        key : str
            Collection key
        value : Any
            JSON-serializable value
        notify : bool
            Broadcast the change; False for silent repairs made while reading

        Returns
        -------
        bool
            True if the value was written, False if the write was dropped
        """
        try:
            text = json.dumps(value, cls=NumpyEncoder)
        except (TypeError, ValueError):
            logger.warning("Dropping write to '%s': value is not JSON-serializable", key,
                           exc_info=True)
            return False

        try:
            self._write_raw(key, text)
        except OSError:
            logger.warning("Dropping write to '%s': storage error", key, exc_info=True)
            return False

        if notify:
            self._notifiers[key].name = key
            self._notifiers[key].notify()
        return True

    def on_change(self, key: str, handler: ChangeHandler) -> Callable[[], None]:
        """Subscribe ``handler`` to writes of ``key``; returns an unsubscribe callable."""
        notifier = self._notifiers[key]
        notifier.name = key
        return notifier.subscribe(handler)


class InMemoryStore(KeyValueStore):
    """
    Process-local store.

    Values are kept in serialized form, so every ``load`` returns a fresh
    object and no caller can alias stored state.
    """

    def __init__(self, initial: Union[Dict[str, str], None] = None):
        super().__init__()
        self._data: Dict[str, str] = dict(initial or {})

    def _read_raw(self, key: str) -> Union[str, None]:
        return self._data.get(key)

    def _write_raw(self, key: str, text: str) -> None:
        self._data[key] = text

    def keys(self) -> List[str]:
        return list(self._data.keys())


class JsonFileStore(KeyValueStore):
    """
    Directory-backed store: one ``<key>.json`` file per key.

    Parameters
    ----------
    directory : Path or str
        Storage directory, created on first write
    pretty_print : bool
        Indent JSON files for readability
    """

    def __init__(self, directory: Union[Path, str], pretty_print: bool = True):
        super().__init__()
        self.directory = Path(directory)
        self.pretty_print = pretty_print

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def _read_raw(self, key: str) -> Union[str, None]:
        path = self.path_for(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _write_raw(self, key: str, text: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        if self.pretty_print:
            text = json.dumps(json.loads(text), indent=2, ensure_ascii=False)

        # Write-then-rename so a crash never leaves a half-written file
        path = self.path_for(key)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(text, encoding="utf-8")
        tmp_path.replace(path)
