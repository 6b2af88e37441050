"""Shared key-value tree with full-snapshot change notification.

Every client of a competition reads and writes one tree::

    performances/{id}
    judges/{id}
    scores/{judgeId}_{performanceId}
    settings/activePerformanceId
    settings/maxScore

Writers never see their change applied locally. A write bumps the store
version and the whole tree is pushed to every subscriber, the writer
included. Subscribers only ever move forward: a snapshot older than the last
one a subscriber received is dropped.

Two backends live here. ``MemoryStore`` keeps the tree in a nested dict and
is what tests and single-process tools use. ``SqlStore`` persists one row per
leaf through Flask-SQLAlchemy and is what the server hosts.
"""

import copy
import itertools
import json
import logging
import threading
import uuid
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from .errors import TransportError, ValidationError
from .models import StoreNode, db

logger = logging.getLogger(__name__)

COLLECTIONS = ('performances', 'judges', 'scores', 'settings')


def split_path(path) -> list[str]:
    """Turn ``"a/b/c"`` (or a list of segments) into ``["a", "b", "c"]``."""
    if isinstance(path, (list, tuple)):
        segments = [str(segment) for segment in path]
    elif isinstance(path, str):
        segments = path.strip('/').split('/')
    else:
        raise ValidationError(f"Invalid store path: {path!r}")
    if not segments or any(not segment.strip() or '/' in segment for segment in segments):
        raise ValidationError(f"Invalid store path: {path!r}")
    return segments


def join_path(*segments) -> str:
    return '/'.join(str(segment) for segment in segments)


def normalize_value(value):
    """Copy ``value`` dropping ``None`` members and empty mappings.

    Returns ``None`` when nothing is left, which callers treat as a delete.
    """
    if isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            key = str(key)
            if not key or '/' in key:
                raise ValidationError(f"Invalid key in store value: {key!r}")
            item = normalize_value(item)
            if item is not None:
                cleaned[key] = item
        return cleaned or None
    return copy.deepcopy(value)


def set_in(tree: dict, segments: list[str], value) -> None:
    node = tree
    for segment in segments[:-1]:
        child = node.get(segment)
        if not isinstance(child, dict):
            child = node[segment] = {}
        node = child
    node[segments[-1]] = value


def flatten(segments: list[str], value):
    """Yield ``(path, leaf)`` for every non-mapping value under ``segments``."""
    if isinstance(value, dict):
        for key, item in value.items():
            yield from flatten(segments + [key], item)
    else:
        yield join_path(*segments), value


@dataclass(frozen=True)
class Snapshot:
    """The full tree as of one store version.

    ``epoch`` identifies the store instance, so a restarted server (whose
    versions start again from zero) is not mistaken for a stale one.
    Subscribers share the tree and must treat it as read-only.
    """
    epoch: str
    version: int
    tree: dict[str, Any] = field(default_factory=dict)

    def is_newer_than(self, other: "Snapshot | None") -> bool:
        if other is None or other.epoch != self.epoch:
            return True
        return self.version > other.version

    def to_payload(self) -> dict[str, Any]:
        return {'epoch': self.epoch, 'version': self.version, 'tree': self.tree}

    @classmethod
    def from_payload(cls, payload) -> "Snapshot":
        if not isinstance(payload, dict):
            raise ValidationError("Snapshot payload must be a mapping.")
        tree = payload.get('tree')
        try:
            version = int(payload.get('version', 0))
        except (TypeError, ValueError):
            raise ValidationError("Snapshot version must be an integer.")
        return cls(
            epoch=str(payload.get('epoch') or ''),
            version=version,
            tree=tree if isinstance(tree, dict) else {},
        )


class _Subscriber:
    def __init__(self, callback: Callable[[Snapshot], None]):
        self.callback = callback
        self.active = True
        self.last: Snapshot | None = None
        # Re-entrant: a callback may write to the store and receive the
        # resulting snapshot before it returns.
        self._lock = threading.RLock()

    def deliver(self, snapshot: Snapshot) -> bool:
        with self._lock:
            if not self.active or not snapshot.is_newer_than(self.last):
                return False
            self.last = snapshot
            try:
                self.callback(snapshot)
            except Exception:
                logger.exception("Store subscriber %r failed on version %s", self.callback, snapshot.version)
            return True


class SubscriberHub:
    """Fan-out of snapshots to registered callbacks, newest-only per callback."""

    def __init__(self):
        self._subscribers: dict[int, _Subscriber] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._subscribers)

    def add(self, callback):
        subscriber = _Subscriber(callback)
        with self._lock:
            token = next(self._ids)
            self._subscribers[token] = subscriber

        def unsubscribe():
            subscriber.active = False
            with self._lock:
                self._subscribers.pop(token, None)

        return subscriber, unsubscribe

    def publish(self, snapshot: Snapshot) -> None:
        with self._lock:
            subscribers = list(self._subscribers.values())
        for subscriber in subscribers:
            subscriber.deliver(snapshot)


class TreeStore:
    """Behaviour shared by the server-side backends.

    Subclasses provide ``_read_tree``, ``_set`` and ``_apply_delete``; the
    transaction hooks default to no-ops.
    """

    def __init__(self):
        self.epoch = uuid.uuid4().hex
        self._version = 0
        self._lock = threading.RLock()
        self._hub = SubscriberHub()

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> Snapshot:
        with self._lock, self._context():
            return Snapshot(self.epoch, self._version, self._read_tree())

    def subscribe(self, callback: Callable[[Snapshot], None]) -> Callable[[], None]:
        """Register ``callback`` and call it at once with the current tree."""
        subscriber, unsubscribe = self._hub.add(callback)
        subscriber.deliver(self.snapshot())
        return unsubscribe

    def write_path(self, path, value) -> None:
        segments = split_path(path)
        self._mutate(self._apply_write, segments, normalize_value(value))

    def patch_path(self, path, fields) -> None:
        segments = split_path(path)
        if not isinstance(fields, dict):
            raise ValidationError("patch_path expects a mapping of fields.")
        cleaned = {}
        for key, value in fields.items():
            split_path([*segments, key])
            cleaned[str(key)] = normalize_value(value)
        self._mutate(self._apply_patch, segments, cleaned)

    def delete_path(self, path) -> None:
        self._mutate(self._apply_delete, split_path(path))

    def _apply_write(self, segments, value):
        if value is None:
            self._apply_delete(segments)
        else:
            self._set(segments, value)

    def _apply_patch(self, segments, fields):
        for key, value in fields.items():
            self._apply_write([*segments, key], value)

    def _mutate(self, operation, *args):
        with self._lock, self._context():
            try:
                operation(*args)
                self._commit()
            except Exception:
                self._rollback()
                raise
            self._version += 1
            snapshot = Snapshot(self.epoch, self._version, self._read_tree())
        self._hub.publish(snapshot)
        return snapshot

    def _context(self):
        return nullcontext()

    def _commit(self):
        pass

    def _rollback(self):
        pass

    def _read_tree(self) -> dict:
        raise NotImplementedError

    def _set(self, segments, value):
        raise NotImplementedError

    def _apply_delete(self, segments):
        raise NotImplementedError


class MemoryStore(TreeStore):
    """In-process tree. Values are validated before a mutation starts, so a
    mutation cannot fail halfway and there is nothing to roll back."""

    def __init__(self, initial: dict | None = None):
        super().__init__()
        self._root = normalize_value(initial or {}) or {}

    def _read_tree(self):
        return copy.deepcopy(self._root)

    def _set(self, segments, value):
        set_in(self._root, segments, value)

    def _apply_delete(self, segments):
        trail = []
        node = self._root
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                return
            trail.append((node, segment))
            node = child
        node.pop(segments[-1], None)
        for parent, segment in reversed(trail):
            if parent[segment]:
                break
            del parent[segment]


class SqlStore(TreeStore):
    """Tree persisted as one ``StoreNode`` row per leaf.

    Branches are implicit: ``performances/p1`` exists while at least one
    ``performances/p1/...`` row does. Every operation runs in its own app
    context, so it can be used from socket handlers and background threads.
    """

    def __init__(self, app=None):
        super().__init__()
        self.app = app

    def _context(self):
        if self.app is None:
            return nullcontext()
        return self.app.app_context()

    def _commit(self):
        try:
            db.session.commit()
        except SQLAlchemyError as exc:
            raise TransportError(f"Store write failed: {exc}", retryable=True) from exc

    def _rollback(self):
        db.session.rollback()

    def _read_tree(self):
        try:
            nodes = StoreNode.query.order_by(StoreNode.path).all()
        except SQLAlchemyError as exc:
            raise TransportError(f"Store read failed: {exc}", retryable=True) from exc
        tree = {}
        for node in nodes:
            set_in(tree, node.path.split('/'), json.loads(node.value))
        return tree

    def _set(self, segments, value):
        self._apply_delete(segments)
        # A leaf stored at an ancestor path is replaced by the new branch.
        ancestors = [join_path(*segments[:depth]) for depth in range(1, len(segments))]
        if ancestors:
            StoreNode.query.filter(StoreNode.path.in_(ancestors)).delete(synchronize_session='fetch')
        for path, leaf in flatten(segments, value):
            db.session.add(StoreNode(path=path, value=json.dumps(leaf)))

    def _apply_delete(self, segments):
        path = join_path(*segments)
        StoreNode.query.filter(or_(
            StoreNode.path == path,
            StoreNode.path.startswith(path + '/', autoescape=True)
        )).delete(synchronize_session='fetch')
