"""In-memory Kubernetes-style object store and a gateway lister built on it."""

from __future__ import annotations

import copy
import enum
import itertools
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

Object = dict[str, Any]
Callback = Callable[["Operation", Object, Optional[Object]], None]


class NotFoundError(LookupError):
    """Raised when a requested object does not exist."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f'{kind} "{name}" not found')
        self.kind = kind
        self.name = name


class AlreadyExistsError(Exception):
    """Raised when creating an object whose key is already taken."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f'{kind} "{name}" already exists')
        self.kind = kind
        self.name = name


class Operation(str, enum.Enum):
    """Kind of change made to a stored object."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


def labels_match(labels: Optional[Mapping[str, str]], selector: Optional[Mapping[str, str]]) -> bool:
    """Return True if every key/value of ``selector`` appears in ``labels``."""
    if not selector:
        return True
    labels = labels or {}
    return all(key in labels and labels[key] == value for key, value in selector.items())


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def _key(obj: Mapping[str, Any]) -> tuple[str, str]:
    meta = _metadata(obj)
    name = meta.get("name")
    if not name:
        raise ValueError("object has no name")
    return meta.get("namespace") or "", name


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class InMemoryClient:
    """A thread-safe object store with the semantics of a Kubernetes API client.

    Objects are plain dicts with ``metadata``, ``spec`` and ``status`` keys.
    ``update`` leaves ``status`` untouched; ``update_status`` changes only it.
    Deleting an object that carries finalizers marks it with a
    ``deletionTimestamp`` instead; it goes away once its finalizers are cleared.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._store: dict[str, dict[tuple[str, str], Object]] = defaultdict(dict)
        self._subscribers: dict[str, list[Callback]] = defaultdict(list)
        self._versions = itertools.count(1)

    def get(self, kind: str, name: str, namespace: str = "") -> Object:
        with self._lock:
            try:
                return copy.deepcopy(self._store[kind][(namespace or "", name)])
            except KeyError:
                raise NotFoundError(kind, name) from None

    def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Mapping[str, str]] = None,
    ) -> list[Object]:
        with self._lock:
            items = sorted(self._store[kind].items())
            return [
                copy.deepcopy(obj)
                for (ns, _), obj in items
                if (namespace is None or ns == namespace)
                and labels_match(_metadata(obj).get("labels"), labels)
            ]

    def create(self, kind: str, obj: Mapping[str, Any]) -> Object:
        key = _key(obj)
        stored = copy.deepcopy(dict(obj))
        meta = stored.setdefault("metadata", {})
        with self._lock:
            if key in self._store[kind]:
                raise AlreadyExistsError(kind, key[1])
            meta["namespace"] = key[0]
            meta["resourceVersion"] = str(next(self._versions))
            self._store[kind][key] = stored
            result = copy.deepcopy(stored)
        self._emit(kind, Operation.CREATE, result, None)
        return copy.deepcopy(result)

    def update(self, kind: str, obj: Mapping[str, Any]) -> Object:
        key = _key(obj)
        new = copy.deepcopy(dict(obj))
        with self._lock:
            try:
                existing = self._store[kind][key]
            except KeyError:
                raise NotFoundError(kind, key[1]) from None
            if "status" in existing:
                new["status"] = copy.deepcopy(existing["status"])
            else:
                new.pop("status", None)
            meta = new.setdefault("metadata", {})
            meta["namespace"] = key[0]
            deletion = _metadata(existing).get("deletionTimestamp")
            if deletion:
                meta["deletionTimestamp"] = deletion
            meta["resourceVersion"] = str(next(self._versions))
            old = copy.deepcopy(existing)
            if deletion and not meta.get("finalizers"):
                del self._store[kind][key]
                operation = Operation.DELETE
            else:
                self._store[kind][key] = new
                operation = Operation.UPDATE
            result = copy.deepcopy(new)
        if operation is Operation.DELETE:
            self._emit(kind, operation, result, None)
        else:
            self._emit(kind, operation, result, old)
        return copy.deepcopy(result)

    def update_status(self, kind: str, obj: Mapping[str, Any]) -> Object:
        key = _key(obj)
        with self._lock:
            try:
                existing = self._store[kind][key]
            except KeyError:
                raise NotFoundError(kind, key[1]) from None
            old = copy.deepcopy(existing)
            existing["status"] = copy.deepcopy(obj.get("status") or {})
            existing.setdefault("metadata", {})["resourceVersion"] = str(next(self._versions))
            result = copy.deepcopy(existing)
        self._emit(kind, Operation.UPDATE, result, old)
        return copy.deepcopy(result)

    def delete(self, kind: str, obj: Mapping[str, Any]) -> None:
        key = _key(obj)
        with self._lock:
            try:
                existing = self._store[kind][key]
            except KeyError:
                raise NotFoundError(kind, key[1]) from None
            meta = existing.setdefault("metadata", {})
            if meta.get("finalizers"):
                if meta.get("deletionTimestamp"):
                    return
                old = copy.deepcopy(existing)
                meta["deletionTimestamp"] = _timestamp()
                meta["resourceVersion"] = str(next(self._versions))
                result, operation = copy.deepcopy(existing), Operation.UPDATE
            else:
                old = None
                result, operation = self._store[kind].pop(key), Operation.DELETE
        self._emit(kind, operation, result, old)

    def subscribe(self, kind: str, callback: Callback) -> Callable[[], None]:
        """Call ``callback(operation, obj, old_obj)`` on every change of ``kind``.

        Returns a function that cancels the subscription.
        """
        with self._lock:
            self._subscribers[kind].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers[kind]:
                    self._subscribers[kind].remove(callback)

        return unsubscribe

    def _emit(self, kind: str, operation: Operation, obj: Object, old: Optional[Object]) -> None:
        with self._lock:
            callbacks = list(self._subscribers[kind])
        for callback in callbacks:
            callback(operation, copy.deepcopy(obj), copy.deepcopy(old) if old is not None else None)


class GatewayLister:
    """Read access to VpcNatGateway objects held by a client."""

    def __init__(self, client: InMemoryClient, kind: str = "VpcNatGateway") -> None:
        self.client = client
        self.kind = kind

    def fetch(self, name: str) -> Object:
        """Return the gateway called ``name``; raise NotFoundError if absent."""
        return self.client.get(self.kind, name)

    def retrieve_all(self, selector: Optional[Mapping[str, str]] = None) -> list[Object]:
        """Return every gateway whose labels match ``selector``."""
        return self.client.list(self.kind, labels=selector)