"""Ranking of performances from judges' scores.

This is the only place averages are computed. Everything here is pure: the
same performances and scores always give the same rows, whatever order the
scores arrive in.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Iterable

from .sync import Judge, Performance, Score


@dataclass(frozen=True)
class ResultRow:
    """One performance's standing.

    Attributes:
        rank: 1-indexed position in the ranking
        performance: The performance this row describes
        votes: Number of judges who scored it
        total: Sum of their scores
        raw_average: ``total / votes`` (0 without votes), unrounded; used for sorting
    """
    rank: int
    performance: Performance
    votes: int
    total: float
    raw_average: float

    @property
    def average(self) -> float:
        """Average rounded to two places, for display."""
        return round(self.raw_average, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            'rank': self.rank,
            'performance': self.performance.to_record(),
            'votes': self.votes,
            'total': self.total,
            'average': self.average,
        }


@dataclass(frozen=True)
class JudgeEntry:
    judge: Judge
    score: Score | None = None

    @property
    def scored(self) -> bool:
        return self.score is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            'judge': {'id': self.judge.id, 'name': self.judge.name},
            'scored': self.scored,
            'value': self.score.value if self.score else None,
            'comment': self.score.comment if self.score else None,
        }


@dataclass(frozen=True)
class PerformanceDetail:
    performance: Performance
    entries: list[JudgeEntry] = field(default_factory=list)
    votes: int = 0
    total: float = 0
    raw_average: float = 0

    @property
    def average(self) -> float:
        return round(self.raw_average, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            'performance': self.performance.to_record(),
            'votes': self.votes,
            'judges': len(self.entries),
            'total': self.total,
            'average': self.average,
            'entries': [entry.to_dict() for entry in self.entries],
        }


def latest_scores(scores: Iterable[Score]) -> dict[str, Score]:
    """Collapse scores to one per (judge, performance), keeping the newest.

    The store already keys scores that way; this only matters for lists put
    together by hand.
    """
    latest: dict[str, Score] = {}
    for score in scores:
        current = latest.get(score.key)
        # exact ties on timestamp and value fall to the comment
        candidate = (score.timestamp, score.value, score.comment)
        if current is None or candidate > (current.timestamp, current.value, current.comment):
            latest[score.key] = score
    return latest


def _summarize(values: list[float]) -> tuple[int, float, float]:
    votes = len(values)
    # fsum is exact, so the total does not depend on the order of the scores
    total = math.fsum(values)
    return votes, total, (total / votes if votes else 0)


def compute_results(performances: Iterable[Performance], scores: Iterable[Score],
                    judges: Iterable[Judge] | None = None) -> list[ResultRow]:
    """Rank performances by average score.

    Scores for performances not in ``performances`` are ignored, as are
    scores from judges missing from ``judges`` when it is given. Ties on the
    average fall back to the higher total, then the lower ``order``, then id.

    Example:
        >>> rows = compute_results(
        ...     [Performance("p1", "Dance", order=1), Performance("p2", "Song", order=2)],
        ...     [Score("p1", "j1", 8), Score("p1", "j2", 9), Score("p2", "j1", 6)],
        ... )
        >>> [(row.performance.id, row.votes, row.total, row.average) for row in rows]
        [('p1', 2, 17.0, 8.5), ('p2', 1, 6.0, 6.0)]
    """
    judge_ids = None if judges is None else {judge.id for judge in judges}

    values_by_performance: dict[str, list[float]] = {}
    for score in latest_scores(scores).values():
        if judge_ids is not None and score.judge_id not in judge_ids:
            continue
        values_by_performance.setdefault(score.performance_id, []).append(score.value)

    unranked = []
    seen = set()
    for performance in performances:
        if performance.id in seen:
            continue
        seen.add(performance.id)
        votes, total, raw_average = _summarize(values_by_performance.get(performance.id, []))
        unranked.append((performance, votes, total, raw_average))

    unranked.sort(key=lambda item: (-item[3], -item[2], item[0].order, item[0].id))
    return [
        ResultRow(rank=index, performance=performance, votes=votes, total=total, raw_average=raw_average)
        for index, (performance, votes, total, raw_average) in enumerate(unranked, 1)
    ]


def performance_detail(performance: Performance, judges: Iterable[Judge],
                       scores: Iterable[Score]) -> PerformanceDetail:
    """Per-judge breakdown for one performance.

    Every judge gets an entry; judges who have not scored yet carry
    ``score=None`` rather than a number. The summary figures only count
    scores from the listed judges.
    """
    own_scores = {
        score.judge_id: score
        for score in latest_scores(scores).values()
        if score.performance_id == performance.id
    }
    entries = [JudgeEntry(judge=judge, score=own_scores.get(judge.id)) for judge in judges]
    votes, total, raw_average = _summarize([entry.score.value for entry in entries if entry.score])
    return PerformanceDetail(
        performance=performance,
        entries=entries,
        votes=votes,
        total=total,
        raw_average=raw_average,
    )
