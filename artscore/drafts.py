"""Client-local drafts of scores a judge has not submitted yet.

Drafts never go to the shared store. They sit in a small JSON file on the
judge's machine so a reload does not lose what was typed, and disappear as
soon as the real score is submitted.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Callable

from .errors import ScoringError
from .sync import AppData, Submission, SyncClient

logger = logging.getLogger(__name__)

DRAFT_DEBOUNCE_SECONDS = 0.5

QUICK_COMMENTS = [
    "Creative and original", "Expressive", "Excellent technique",
    "Beautiful costumes", "Polished staging", "Could be more confident",
    "Well-chosen piece", "Great teamwork",
]


class LocalStorage:
    """String-keyed JSON values persisted in one file."""

    def __init__(self, path: str):
        self.path = path
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._lock = threading.Lock()
        self._state: dict[str, Any] = {}
        self.load()

    def load(self):
        with self._lock:
            self._state = {}
            if not os.path.exists(self.path):
                return
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    state = json.load(f)
            except (OSError, ValueError):
                logger.warning("Ignoring unreadable local storage at %s", self.path)
                return
            if isinstance(state, dict):
                self._state = state

    def _save(self):
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._state, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)

    def get(self, key: str, default=None):
        with self._lock:
            return self._state.get(key, default)

    def set(self, key: str, value) -> None:
        with self._lock:
            self._state[key] = value
            self._save()

    def remove(self, key: str) -> None:
        with self._lock:
            if self._state.pop(key, None) is not None:
                self._save()

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._state)


@dataclass
class Draft:
    score: float = 0
    comment: str = ''

    def to_dict(self) -> dict[str, Any]:
        return {'score': self.score, 'comment': self.comment}


def draft_key(judge_id: str, performance_id: str) -> str:
    return f"draft_{judge_id}_{performance_id}"


class _PendingSave:
    def __init__(self, draft: Draft):
        self.draft = draft
        self.timer = None


class DraftCache:
    """Debounced draft persistence, at most one pending save per key.

    ``schedule_save`` replaces any pending save for the same key, so a burst
    of edits produces one write once the judge pauses. A pending save is
    either flushed or dropped, never both.
    """

    def __init__(self, storage: LocalStorage, debounce_seconds: float = DRAFT_DEBOUNCE_SECONDS,
                 timer_factory: Callable[..., Any] = threading.Timer):
        self.storage = storage
        self.debounce_seconds = debounce_seconds
        self._timer_factory = timer_factory
        self._pending: dict[str, _PendingSave] = {}
        # Held across storage writes, so a timer firing late cannot write
        # over a draft that was discarded in the meantime.
        self._lock = threading.RLock()

    def load(self, judge_id, performance_id) -> Draft | None:
        raw = self.storage.get(draft_key(judge_id, performance_id))
        if not isinstance(raw, dict):
            return None
        try:
            score = float(raw.get('score') or 0)
        except (TypeError, ValueError):
            logger.warning("Discarding malformed draft for %s/%s", judge_id, performance_id)
            return None
        return Draft(score=score, comment=str(raw.get('comment') or ''))

    def save(self, judge_id, performance_id, draft: Draft) -> None:
        with self._lock:
            self.storage.set(draft_key(judge_id, performance_id), draft.to_dict())

    def schedule_save(self, judge_id, performance_id, draft: Draft) -> None:
        key = draft_key(judge_id, performance_id)
        pending = _PendingSave(Draft(draft.score, draft.comment))
        pending.timer = self._timer_factory(self.debounce_seconds, self._fire, args=(key, pending))
        pending.timer.daemon = True
        with self._lock:
            previous = self._pending.get(key)
            self._pending[key] = pending
            if previous is not None:
                previous.timer.cancel()
            pending.timer.start()

    def _fire(self, key: str, pending: _PendingSave) -> None:
        with self._lock:
            if self._pending.get(key) is not pending:
                return
            del self._pending[key]
            self.storage.set(key, pending.draft.to_dict())

    def _take(self, key: str) -> _PendingSave | None:
        pending = self._pending.pop(key, None)
        if pending is not None:
            pending.timer.cancel()
        return pending

    def is_saved(self, judge_id, performance_id) -> bool:
        with self._lock:
            return draft_key(judge_id, performance_id) not in self._pending

    def flush(self, judge_id, performance_id) -> bool:
        """Write a pending save now. Returns whether there was one."""
        key = draft_key(judge_id, performance_id)
        with self._lock:
            pending = self._take(key)
            if pending is None:
                return False
            self.storage.set(key, pending.draft.to_dict())
            return True

    def drop(self, judge_id, performance_id) -> bool:
        """Cancel a pending save without writing it."""
        with self._lock:
            return self._take(draft_key(judge_id, performance_id)) is not None

    def discard(self, judge_id, performance_id) -> None:
        key = draft_key(judge_id, performance_id)
        with self._lock:
            self._take(key)
            self.storage.remove(key)

    def close(self, flush: bool = True) -> None:
        with self._lock:
            for key in list(self._pending):
                pending = self._take(key)
                if flush:
                    self.storage.set(key, pending.draft.to_dict())


class JudgeSession:
    """One judge's scoring form, following the active performance.

    A submitted score always wins over a draft: it is shown read-only until
    ``begin_edit`` is called. Without one, the saved draft (or a blank form)
    is loaded and every edit is autosaved through the draft cache.

    ``submit`` does not mark the form as submitted by itself. The draft is
    kept until the store confirms the score, either by sending it back in a
    snapshot or by reporting the write as done. If the write fails the form
    stays editable, the draft stays stored and ``submit_error`` says why.
    """

    def __init__(self, sync_client: SyncClient, judge_id: str, drafts: DraftCache):
        self.sync_client = sync_client
        self.judge_id = judge_id
        self.drafts = drafts
        self.performance_id = None
        self.score = 0
        self.comment = ''
        self.submitted = False
        self.editing = False
        self.submit_error = None
        self._awaiting = None
        self._remove_listener = None
        # Snapshots and write outcomes may arrive on transport threads.
        self._lock = threading.RLock()

    def start(self):
        self._remove_listener = self.sync_client.add_listener(self.on_data)
        self.on_data(self.sync_client.data)
        return self

    def close(self):
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        if self.performance_id:
            self.drafts.flush(self.judge_id, self.performance_id)

    @property
    def max_score(self) -> float:
        return self.sync_client.data.max_score

    @property
    def step(self) -> float:
        return self.sync_client.data.settings.step

    @property
    def draft_saved(self) -> bool:
        if not self.performance_id or self.submitted:
            return True
        return self.drafts.is_saved(self.judge_id, self.performance_id)

    @property
    def read_only(self) -> bool:
        return self.submitted and not self.editing

    @property
    def pending(self) -> bool:
        """Whether a submission is still waiting for the store."""
        return self._awaiting is not None

    def on_data(self, data: AppData) -> None:
        with self._lock:
            active_id = data.active_performance_id if data.active_performance else None
            if active_id != self.performance_id:
                if self.performance_id:
                    self.drafts.flush(self.judge_id, self.performance_id)
                self.performance_id = active_id
                self.editing = False
                self._load(data)
                return
            # A score for this form may have arrived (our own submission
            # echoed back, or one made from another device).
            existing = data.find_score(self.judge_id, active_id) if active_id else None
            if existing is not None and (self._is_awaited(existing) or not self.editing):
                self._receive(existing)

    def _load(self, data: AppData) -> None:
        self.submitted = False
        self.submit_error = None
        self.score = 0
        self.comment = ''
        if not self.performance_id:
            return
        existing = data.find_score(self.judge_id, self.performance_id)
        if existing is not None:
            self._receive(existing)
            return
        draft = self.drafts.load(self.judge_id, self.performance_id)
        if draft is not None:
            self.score = draft.score
            self.comment = draft.comment

    def _is_awaited(self, score) -> bool:
        return self._awaiting == (score.performance_id, score.value, score.comment)

    def _receive(self, score) -> None:
        if self._is_awaited(score):
            self._awaiting = None
            self.editing = False
            self.submit_error = None
            self.drafts.discard(self.judge_id, score.performance_id)
        self.score = score.value
        self.comment = score.comment
        self.submitted = True

    def _edited(self) -> None:
        if not self.performance_id or self.read_only:
            return
        self.drafts.schedule_save(self.judge_id, self.performance_id, Draft(self.score, self.comment))

    def set_score(self, value) -> None:
        if self.read_only:
            return
        self.score = min(max(float(value), 0), self.max_score)
        self._edited()

    def adjust_score(self, delta) -> None:
        self.set_score(self.score + delta)

    def set_comment(self, text) -> None:
        if self.read_only:
            return
        self.comment = text or ''
        self._edited()

    def add_quick_comment(self, text) -> None:
        if self.read_only or text in self.comment:
            return
        self.set_comment(f"{self.comment}, {text}" if self.comment else text)

    def suggest_comment(self, suggester) -> str:
        performance = self.sync_client.data.get_performance(self.performance_id)
        if performance is None or self.read_only:
            return self.comment
        self.set_comment(suggester.suggest(self.score, performance.name, self.max_score))
        return self.comment

    def begin_edit(self) -> None:
        if self.submitted:
            self.editing = True

    def submit(self) -> Submission | None:
        """Hand the form to the store. Returns the submission, whose
        ``outcome`` future resolves when the store accepts or rejects it."""
        with self._lock:
            if not self.performance_id or self.read_only:
                return None
            performance_id = self.performance_id
            self.drafts.flush(self.judge_id, performance_id)
            self.submit_error = None
            self._awaiting = (performance_id, float(self.score), self.comment.strip())
            try:
                submission = self.sync_client.submit_score(self.judge_id, performance_id, self.score, self.comment)
            except ScoringError:
                self._awaiting = None
                raise
        submission.outcome.add_done_callback(lambda future: self._submission_done(submission, future))
        return submission

    def _submission_done(self, submission: Submission, future) -> None:
        exc = future.exception()
        score = submission.score
        with self._lock:
            if not self._is_awaited(score):
                return
            if exc is None:
                if score.performance_id == self.performance_id:
                    self._receive(score)
                else:
                    self._awaiting = None
                    self.drafts.discard(self.judge_id, score.performance_id)
                return
            self._awaiting = None
            logger.warning("Score for %s was not saved: %s", score.performance_id, exc)
            if score.performance_id == self.performance_id:
                self.submit_error = str(exc)

    def to_dict(self) -> dict[str, Any]:
        return {
            'performanceId': self.performance_id,
            'score': self.score,
            'comment': self.comment,
            'submitted': self.submitted,
            'editing': self.editing,
            'pending': self.pending,
            'submitError': self.submit_error,
            'draftSaved': self.draft_saved,
            'maxScore': self.max_score,
            'step': self.step,
        }
