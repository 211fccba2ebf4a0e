from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from core.models import (
    AddedBefore,
    Criteria,
    LastWatchedBefore,
    LibraryMembership,
    MaxPlayCount,
    MaxQuality,
    MaxRating,
    MediaSnapshot,
    MinFileSize,
    NeverWatched,
    condition_to_dict,
)
from core.utils import quality_rank, to_bytes, to_days, whole_days_between


MATCHED = 'matched'
NOT_MATCHED = 'not_matched'
NOT_EVALUATED = 'not_evaluated'


class Evaluation(NamedTuple):
    matched: bool
    trace: List[Tuple[int, str]]


def _elapsed_at_least(ts: Optional[datetime], now: datetime, value: float, unit: str) -> bool:
    if ts is None:
        return False
    return whole_days_between(ts, now) >= to_days(value, unit)


def check_never_watched(cond: NeverWatched, snap: MediaSnapshot, now: datetime) -> bool:
    if snap.play_count is None:
        return False
    return snap.play_count == 0 and snap.last_watched_at is None


def check_last_watched_before(cond: LastWatchedBefore, snap: MediaSnapshot, now: datetime) -> bool:
    if snap.last_watched_at is None:
        # A known never-watched item counts as old enough
        return snap.play_count == 0
    return _elapsed_at_least(snap.last_watched_at, now, cond.value, cond.unit)


def check_added_before(cond: AddedBefore, snap: MediaSnapshot, now: datetime) -> bool:
    return _elapsed_at_least(snap.added_at, now, cond.value, cond.unit)


def check_min_file_size(cond: MinFileSize, snap: MediaSnapshot, now: datetime) -> bool:
    if snap.file_size_bytes is None:
        return False
    return snap.file_size_bytes >= to_bytes(cond.value, cond.unit)


def check_max_play_count(cond: MaxPlayCount, snap: MediaSnapshot, now: datetime) -> bool:
    if snap.play_count is None:
        return False
    return snap.play_count <= cond.value


def check_max_quality(cond: MaxQuality, snap: MediaSnapshot, now: datetime) -> bool:
    have = quality_rank(snap.quality)
    limit = quality_rank(cond.value)
    if have is None or limit is None:
        return False
    return have <= limit


def check_max_rating(cond: MaxRating, snap: MediaSnapshot, now: datetime) -> bool:
    if snap.rating is None:
        return False
    return snap.rating <= cond.value


def check_library_membership(cond: LibraryMembership, snap: MediaSnapshot, now: datetime) -> bool:
    if snap.library_id is None:
        return False
    return str(snap.library_id) in cond.library_ids


CONDITION_CHECKS: Dict[type, Callable[[Any, MediaSnapshot, datetime], bool]] = {
    NeverWatched: check_never_watched,
    LastWatchedBefore: check_last_watched_before,
    AddedBefore: check_added_before,
    MinFileSize: check_min_file_size,
    MaxPlayCount: check_max_play_count,
    MaxQuality: check_max_quality,
    MaxRating: check_max_rating,
    LibraryMembership: check_library_membership,
}


def evaluate(criteria: Criteria, snapshot: MediaSnapshot, now: datetime) -> Evaluation:
    """Evaluate criteria against one snapshot at the supplied instant.

    AND stops at the first condition that fails, OR at the first that
    matches; the remaining conditions are traced as not evaluated. Missing
    snapshot fields make a condition fail rather than raise.
    """
    is_and = criteria.operator == 'AND'
    trace: List[Tuple[int, str]] = []
    result = is_and
    decided = False
    for idx, cond in enumerate(criteria.conditions):
        if decided:
            trace.append((idx, NOT_EVALUATED))
            continue
        ok = bool(CONDITION_CHECKS[type(cond)](cond, snapshot, now))
        trace.append((idx, MATCHED if ok else NOT_MATCHED))
        if is_and and not ok:
            result = False
            decided = True
        elif not is_and and ok:
            result = True
            decided = True
    if not criteria.conditions:
        result = False
    return Evaluation(matched=result, trace=trace)


def _describe(cond: Any) -> str:
    d = condition_to_dict(cond)
    ctype = d.pop('type')
    if not d:
        return ctype
    if 'library_ids' in d:
        return f"{ctype}({', '.join(d['library_ids'])})"
    if 'unit' in d:
        return f"{ctype}({d['value']:g} {d['unit']})"
    return f"{ctype}({d['value']})"


def explain(criteria: Criteria, evaluation: Evaluation) -> List[str]:
    lines = [f"{criteria.operator} -> {'MATCH' if evaluation.matched else 'NO MATCH'}"]
    for idx, outcome in evaluation.trace:
        lines.append(f"  [{idx}] {_describe(criteria.conditions[idx])}: {outcome}")
    return lines
