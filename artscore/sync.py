"""Typed view over the shared tree, and the write operations clients use."""

import logging
import math
import secrets
import threading
import time
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Self

from .errors import ValidationError
from .store import Snapshot, join_path

logger = logging.getLogger(__name__)

DEFAULT_MAX_SCORE = 10
MAX_INLINE_IMAGE_BYTES = 2 * 1024 * 1024
ACCESS_CODE_MIN = 1000
ACCESS_CODE_MAX = 9999
ACCESS_CODE_ATTEMPTS = 100


def score_step(max_score: float) -> float:
    """Granularity judges score on: half points, whole points above 20."""
    return 1 if max_score > 20 else 0.5


def score_key(judge_id: str, performance_id: str) -> str:
    return f"{judge_id}_{performance_id}"


def now_ms() -> int:
    return int(time.time() * 1000)


def _as_number(value, default=None):
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)) and math.isfinite(value):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


@dataclass
class Performance:
    id: str
    name: str
    performer: str = ''
    image_url: str = ''
    order: int = 0

    def to_record(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'performer': self.performer,
            'imageUrl': self.image_url,
            'order': self.order,
        }

    @classmethod
    def from_record(cls, key: str, record: dict[str, Any]) -> Self:
        order = _as_number(record.get('order'), 0)
        return cls(
            id=str(record.get('id') or key),
            name=str(record.get('name') or ''),
            performer=str(record.get('performer') or ''),
            image_url=str(record.get('imageUrl') or ''),
            order=int(order),
        )


@dataclass
class Judge:
    id: str
    name: str
    access_code: str = ''

    def to_record(self) -> dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'accessCode': self.access_code}

    @classmethod
    def from_record(cls, key: str, record: dict[str, Any]) -> Self:
        return cls(
            id=str(record.get('id') or key),
            name=str(record.get('name') or ''),
            access_code=str(record.get('accessCode') or ''),
        )


@dataclass
class Score:
    performance_id: str
    judge_id: str
    value: float
    comment: str = ''
    timestamp: int = 0

    @property
    def key(self) -> str:
        return score_key(self.judge_id, self.performance_id)

    def to_record(self) -> dict[str, Any]:
        record = {
            'performanceId': self.performance_id,
            'judgeId': self.judge_id,
            'value': self.value,
            'timestamp': self.timestamp,
        }
        if self.comment:
            record['comment'] = self.comment
        return record

    @classmethod
    def from_record(cls, key: str, record: dict[str, Any]) -> Self | None:
        performance_id = record.get('performanceId')
        judge_id = record.get('judgeId')
        value = _as_number(record.get('value'))
        if not performance_id or not judge_id or value is None:
            return None
        return cls(
            performance_id=str(performance_id),
            judge_id=str(judge_id),
            value=value,
            comment=str(record.get('comment') or ''),
            timestamp=int(_as_number(record.get('timestamp'), 0)),
        )


@dataclass
class Settings:
    active_performance_id: str | None = None
    max_score: float = DEFAULT_MAX_SCORE

    @property
    def step(self) -> float:
        return score_step(self.max_score)

    def to_dict(self) -> dict[str, Any]:
        return {
            'activePerformanceId': self.active_performance_id,
            'maxScore': self.max_score,
            'step': self.step,
        }


@dataclass
class AppData:
    """Everything a client knows, as of one snapshot."""
    performances: list[Performance] = field(default_factory=list)
    judges: list[Judge] = field(default_factory=list)
    scores: list[Score] = field(default_factory=list)
    settings: Settings = field(default_factory=Settings)
    version: int = 0

    @property
    def active_performance_id(self) -> str | None:
        return self.settings.active_performance_id

    @property
    def max_score(self) -> float:
        return self.settings.max_score

    @property
    def active_performance(self) -> Performance | None:
        return self.get_performance(self.settings.active_performance_id)

    def get_performance(self, performance_id) -> Performance | None:
        if not performance_id:
            return None
        return next((p for p in self.performances if p.id == performance_id), None)

    def get_judge(self, judge_id) -> Judge | None:
        if not judge_id:
            return None
        return next((j for j in self.judges if j.id == judge_id), None)

    def find_score(self, judge_id, performance_id) -> Score | None:
        return next(
            (s for s in self.scores if s.judge_id == judge_id and s.performance_id == performance_id),
            None
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            'version': self.version,
            'performances': [p.to_record() for p in self.performances],
            'judges': [j.to_record() for j in self.judges],
            'scores': [s.to_record() for s in self.scores],
            'settings': self.settings.to_dict(),
        }


def _records(tree: dict, name: str):
    branch = tree.get(name)
    if not isinstance(branch, dict):
        return
    for key, record in branch.items():
        if isinstance(record, dict):
            yield str(key), record
        else:
            logger.debug("Skipping malformed %s record %r", name, key)


def materialize(tree, version: int = 0) -> AppData:
    """Map a raw tree onto typed collections.

    Any sub-tree may be missing or malformed; missing collections are empty
    and settings fall back to their defaults. Performances come back sorted
    by ``order`` (ties by id).
    """
    if not isinstance(tree, dict):
        tree = {}

    performances = [Performance.from_record(key, record) for key, record in _records(tree, 'performances')]
    performances.sort(key=lambda p: (p.order, p.id))

    judges = [Judge.from_record(key, record) for key, record in _records(tree, 'judges')]

    scores = []
    for key, record in _records(tree, 'scores'):
        score = Score.from_record(key, record)
        if score is None:
            logger.debug("Skipping incomplete score record %r", key)
            continue
        scores.append(score)

    raw_settings = tree.get('settings')
    if not isinstance(raw_settings, dict):
        raw_settings = {}
    active_id = raw_settings.get('activePerformanceId') or None
    max_score = _as_number(raw_settings.get('maxScore'))
    if max_score is None or max_score <= 0:
        max_score = DEFAULT_MAX_SCORE
    settings = Settings(
        active_performance_id=str(active_id) if active_id is not None else None,
        max_score=max_score,
    )

    return AppData(
        performances=performances,
        judges=judges,
        scores=scores,
        settings=settings,
        version=version,
    )


def validate_score_value(value, max_score: float) -> float:
    number = _as_number(value)
    if number is None:
        raise ValidationError("Invalid score value.")
    if number < 0 or number > max_score:
        raise ValidationError(f"Score must be between 0 and {max_score:g}.")
    steps = number / score_step(max_score)
    if not math.isclose(steps, round(steps), abs_tol=1e-9):
        raise ValidationError(f"Score must be a multiple of {score_step(max_score):g}.")
    return number


def validate_image_url(image_url: str) -> str:
    image_url = (image_url or '').strip()
    if image_url.startswith('data:'):
        # base64 inflates by 4/3
        _, _, encoded = image_url.partition(',')
        if len(encoded) * 3 // 4 > MAX_INLINE_IMAGE_BYTES:
            raise ValidationError("Image must be smaller than 2MB.")
    return image_url


def as_future(result) -> Future:
    """Wrap a store write result in a future.

    Remote stores already return one. Local stores finish (or raise) before
    returning, so their result is wrapped as done.
    """
    if isinstance(result, Future):
        return result
    future = Future()
    future.set_result(result)
    return future


@dataclass
class Submission:
    """A score handed to the store. ``outcome`` resolves once the store has
    accepted or rejected the write."""
    score: Score
    outcome: Future


def _required(value, label: str) -> str:
    value = str(value or '').strip()
    if not value:
        raise ValidationError(f"{label} is required.")
    return value


class SyncClient:
    """Keeps a materialized view of a store and writes back to it.

    The view only changes when the store delivers a snapshot; writes are not
    applied locally. Validation runs against the last delivered view.
    """

    def __init__(self, store, id_factory: Callable[[], str] | None = None,
                 code_factory: Callable[[], str] | None = None,
                 clock: Callable[[], int] = now_ms):
        self.store = store
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._code_factory = code_factory or (
            lambda: str(ACCESS_CODE_MIN + secrets.randbelow(ACCESS_CODE_MAX - ACCESS_CODE_MIN + 1))
        )
        self._clock = clock
        self._data = AppData()
        self._received = threading.Event()
        self._listeners: list[Callable[[AppData], None]] = []
        self._unsubscribe = None

    @property
    def data(self) -> AppData:
        return self._data

    @property
    def started(self) -> bool:
        return self._unsubscribe is not None

    def start(self) -> Self:
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._on_snapshot)
        return self

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def wait_until_loaded(self, timeout: float | None = None) -> bool:
        return self._received.wait(timeout)

    def add_listener(self, listener: Callable[[AppData], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _on_snapshot(self, snapshot: Snapshot) -> None:
        self._data = materialize(snapshot.tree, version=snapshot.version)
        self._received.set()
        for listener in list(self._listeners):
            listener(self._data)

    # Performances

    def add_performance(self, name, performer='', image_url='') -> Performance:
        performance = Performance(
            id=self._id_factory(),
            name=_required(name, "Performance name"),
            performer=(performer or '').strip(),
            image_url=validate_image_url(image_url),
            order=len(self._data.performances) + 1,
        )
        self.store.write_path(join_path('performances', performance.id), performance.to_record())
        return performance

    def update_performance(self, performance_id, name=None, performer=None, image_url=None, order=None) -> None:
        if self._data.get_performance(performance_id) is None:
            raise ValidationError("Performance not found.")
        fields = {}
        if name is not None:
            fields['name'] = _required(name, "Performance name")
        if performer is not None:
            fields['performer'] = performer.strip()
        if image_url is not None:
            fields['imageUrl'] = validate_image_url(image_url)
        if order is not None:
            order = _as_number(order)
            if order is None or order < 1 or order != int(order):
                raise ValidationError("Order must be a positive integer.")
            fields['order'] = int(order)
        if fields:
            self.store.patch_path(join_path('performances', performance_id), fields)

    def delete_performance(self, performance_id) -> None:
        """Delete a performance, then its scores, as separate writes."""
        data = self._data
        self.store.delete_path(join_path('performances', performance_id))
        for score in data.scores:
            if score.performance_id == performance_id:
                self.store.delete_path(join_path('scores', score.key))
        if data.active_performance_id == performance_id:
            self.set_active_performance(None)

    def set_active_performance(self, performance_id) -> None:
        if performance_id and self._data.get_performance(performance_id) is None:
            raise ValidationError("Performance not found.")
        self.store.write_path('settings/activePerformanceId', performance_id or None)

    # Scores

    def submit_score(self, judge_id, performance_id, value, comment='') -> Submission:
        if not judge_id or not performance_id:
            raise ValidationError("Judge and performance are required.")
        score = Score(
            performance_id=str(performance_id),
            judge_id=str(judge_id),
            value=validate_score_value(value, self._data.max_score),
            comment=(comment or '').strip(),
            timestamp=self._clock(),
        )
        result = self.store.write_path(join_path('scores', score.key), score.to_record())
        return Submission(score=score, outcome=as_future(result))

    def prune_orphaned_scores(self) -> list[str]:
        """Remove scores whose performance or judge no longer exists."""
        data = self._data
        performance_ids = {p.id for p in data.performances}
        judge_ids = {j.id for j in data.judges}
        removed = []
        for score in data.scores:
            if score.performance_id in performance_ids and score.judge_id in judge_ids:
                continue
            self.store.delete_path(join_path('scores', score.key))
            removed.append(score.key)
        return removed

    # Judges

    def _new_access_code(self) -> str:
        taken = {j.access_code for j in self._data.judges}
        if len(taken) >= ACCESS_CODE_MAX - ACCESS_CODE_MIN + 1:
            raise ValidationError("No access codes left.")
        for _ in range(ACCESS_CODE_ATTEMPTS):
            code = self._code_factory()
            if code not in taken:
                return code
        raise ValidationError("Could not generate a unique access code.")

    def add_judge(self, name) -> Judge:
        judge = Judge(
            id=f"j{self._id_factory()[:12]}",
            name=_required(name, "Judge name"),
            access_code=self._new_access_code(),
        )
        self.store.write_path(join_path('judges', judge.id), judge.to_record())
        return judge

    def update_judge(self, judge_id, name) -> None:
        if self._data.get_judge(judge_id) is None:
            raise ValidationError("Judge not found.")
        self.store.patch_path(join_path('judges', judge_id), {'name': _required(name, "Judge name")})

    def delete_judge(self, judge_id) -> None:
        self.store.delete_path(join_path('judges', judge_id))

    # Settings

    def set_max_score(self, value) -> None:
        number = _as_number(value)
        if number is None or number <= 0:
            raise ValidationError("Max score must be greater than 0.")
        self.store.write_path('settings/maxScore', number)
