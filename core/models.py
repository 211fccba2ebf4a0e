from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from core.utils import parse_ts, to_iso


MOVIE = 'MOVIE'
TV_SERIES = 'TV_SERIES'
EPISODE = 'EPISODE'
MEDIA_TYPES = (MOVIE, TV_SERIES, EPISODE)

FLAG_FOR_REVIEW = 'FLAG_FOR_REVIEW'
AUTO_DELETE = 'AUTO_DELETE'
UNMONITOR_AND_DELETE = 'UNMONITOR_AND_DELETE'
UNMONITOR_AND_KEEP = 'UNMONITOR_AND_KEEP'
DO_NOTHING = 'DO_NOTHING'
ACTION_TYPES = (FLAG_FOR_REVIEW, AUTO_DELETE, UNMONITOR_AND_DELETE, UNMONITOR_AND_KEEP, DO_NOTHING)
# Action types that complete without touching any external service
LOCAL_ACTION_TYPES = frozenset({FLAG_FOR_REVIEW, DO_NOTHING})

SCHEDULED = 'SCHEDULED'
ELIGIBLE = 'ELIGIBLE'
EXECUTED = 'EXECUTED'
CANCELLED = 'CANCELLED'
FAILED = 'FAILED'
OPEN_STATES = frozenset({SCHEDULED, ELIGIBLE})
TERMINAL_STATES = frozenset({EXECUTED, CANCELLED, FAILED})

SUCCESS = 'SUCCESS'
ERROR = 'ERROR'

# Review of flagged items
REVIEW_PENDING = 'PENDING'
REVIEW_APPROVED = 'APPROVED'
REVIEW_REJECTED = 'REJECTED'
REVIEW_DELETED = 'DELETED'
REVIEW_STATUSES = (REVIEW_PENDING, REVIEW_APPROVED, REVIEW_REJECTED, REVIEW_DELETED)
# Action types whose execution removes files
DESTRUCTIVE_ACTION_TYPES = frozenset({AUTO_DELETE, UNMONITOR_AND_DELETE})

OPERATORS = ('AND', 'OR')


# ---- Conditions ----

@dataclass(frozen=True)
class NeverWatched:
    type = 'never_watched'


@dataclass(frozen=True)
class LastWatchedBefore:
    value: float
    unit: str = 'days'
    type = 'last_watched_before'


@dataclass(frozen=True)
class AddedBefore:
    value: float
    unit: str = 'days'
    type = 'added_before'


@dataclass(frozen=True)
class MinFileSize:
    value: float
    unit: str = 'GB'
    type = 'min_file_size'


@dataclass(frozen=True)
class MaxPlayCount:
    value: int
    type = 'max_play_count'


@dataclass(frozen=True)
class MaxQuality:
    value: str
    type = 'max_quality'


@dataclass(frozen=True)
class MaxRating:
    value: float
    type = 'max_rating'


@dataclass(frozen=True)
class LibraryMembership:
    library_ids: FrozenSet[str]
    type = 'library_membership'


CONDITION_TYPES = {
    cls.type: cls
    for cls in (
        NeverWatched,
        LastWatchedBefore,
        AddedBefore,
        MinFileSize,
        MaxPlayCount,
        MaxQuality,
        MaxRating,
        LibraryMembership,
    )
}


@dataclass(frozen=True)
class Criteria:
    operator: str
    conditions: Tuple[Any, ...]


def condition_to_dict(cond: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {'type': cond.type}
    if isinstance(cond, LibraryMembership):
        out['library_ids'] = sorted(cond.library_ids)
    elif isinstance(cond, (LastWatchedBefore, AddedBefore, MinFileSize)):
        out['value'] = cond.value
        out['unit'] = cond.unit
    elif not isinstance(cond, NeverWatched):
        out['value'] = cond.value
    return out


def criteria_to_dict(criteria: Criteria) -> Dict[str, Any]:
    return {
        'operator': criteria.operator,
        'conditions': [condition_to_dict(c) for c in criteria.conditions],
    }


# ---- Rules ----

@dataclass
class Rule:
    id: str
    name: str
    media_type: str
    criteria: Criteria
    action_type: str
    enabled: bool = True
    description: Optional[str] = None
    action_delay_days: Optional[int] = None
    target_service_id: Optional[str] = None
    schedule: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_triggered_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
    last_run_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'enabled': self.enabled,
            'media_type': self.media_type,
            'criteria': criteria_to_dict(self.criteria),
            'action_type': self.action_type,
            'action_delay_days': self.action_delay_days,
            'target_service_id': self.target_service_id,
            'schedule': self.schedule,
            'created_at': to_iso(self.created_at),
            'updated_at': to_iso(self.updated_at),
            'last_triggered_at': to_iso(self.last_triggered_at),
            'last_run_at': to_iso(self.last_run_at),
            'last_run_status': self.last_run_status,
            'last_run_error': self.last_run_error,
        }


# ---- Evaluation inputs/outputs ----

@dataclass
class MediaSnapshot:
    external_id: str
    title: str
    year: Optional[int] = None
    added_at: Optional[datetime] = None
    last_watched_at: Optional[datetime] = None
    play_count: Optional[int] = None
    file_size_bytes: Optional[int] = None
    quality: Optional[str] = None
    rating: Optional[float] = None
    library_id: Optional[str] = None
    service_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'external_id': self.external_id,
            'title': self.title,
            'year': self.year,
            'added_at': to_iso(self.added_at),
            'last_watched_at': to_iso(self.last_watched_at),
            'play_count': self.play_count,
            'file_size_bytes': self.file_size_bytes,
            'quality': self.quality,
            'rating': self.rating,
            'library_id': self.library_id,
            'service_id': self.service_id,
        }


def snapshot_from_dict(data: Dict[str, Any]) -> MediaSnapshot:
    def _int(v):
        try:
            return int(v) if v is not None else None
        except (TypeError, ValueError):
            return None

    def _float(v):
        try:
            return float(v) if v is not None else None
        except (TypeError, ValueError):
            return None

    return MediaSnapshot(
        external_id=str(data.get('external_id') or data.get('id') or ''),
        title=str(data.get('title') or ''),
        year=_int(data.get('year')),
        added_at=parse_ts(data.get('added_at')),
        last_watched_at=parse_ts(data.get('last_watched_at')),
        play_count=_int(data.get('play_count')),
        file_size_bytes=_int(data.get('file_size_bytes')),
        quality=data.get('quality'),
        rating=_float(data.get('rating')),
        library_id=str(data['library_id']) if data.get('library_id') is not None else None,
        service_id=data.get('service_id'),
    )


@dataclass
class Decision:
    rule_id: str
    media_external_id: str
    matched: bool
    evaluated_at: datetime
    condition_trace: List[Tuple[int, str]] = field(default_factory=list)
    title: Optional[str] = None
    file_size_bytes: Optional[int] = None


# ---- Pending actions and audit ----

@dataclass
class PendingAction:
    id: str
    rule_id: str
    media_external_id: str
    state: str
    first_matched_at: datetime
    eligible_at: datetime
    action_type: str
    media_type: str
    title: Optional[str] = None
    target_service_id: Optional[str] = None
    last_reevaluated_at: Optional[datetime] = None
    attempts: int = 0
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None
    file_size_bytes: Optional[int] = None
    # Only flagged actions carry a review status once executed
    review_status: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.rule_id, self.media_external_id)

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'rule_id': self.rule_id,
            'media_external_id': self.media_external_id,
            'state': self.state,
            'first_matched_at': to_iso(self.first_matched_at),
            'eligible_at': to_iso(self.eligible_at),
            'action_type': self.action_type,
            'media_type': self.media_type,
            'title': self.title,
            'target_service_id': self.target_service_id,
            'last_reevaluated_at': to_iso(self.last_reevaluated_at),
            'attempts': self.attempts,
            'closed_at': to_iso(self.closed_at),
            'close_reason': self.close_reason,
            'file_size_bytes': self.file_size_bytes,
            'review_status': self.review_status,
            'reviewed_at': to_iso(self.reviewed_at),
        }


def pending_action_from_dict(data: Dict[str, Any]) -> PendingAction:
    return PendingAction(
        id=str(data['id']),
        rule_id=str(data['rule_id']),
        media_external_id=str(data['media_external_id']),
        state=str(data['state']),
        first_matched_at=parse_ts(data.get('first_matched_at')),
        eligible_at=parse_ts(data.get('eligible_at')),
        action_type=str(data.get('action_type') or FLAG_FOR_REVIEW),
        media_type=str(data.get('media_type') or MOVIE),
        title=data.get('title'),
        target_service_id=data.get('target_service_id'),
        last_reevaluated_at=parse_ts(data.get('last_reevaluated_at')),
        attempts=int(data.get('attempts') or 0),
        closed_at=parse_ts(data.get('closed_at')),
        close_reason=data.get('close_reason'),
        file_size_bytes=int(data['file_size_bytes']) if data.get('file_size_bytes') is not None else None,
        review_status=data.get('review_status'),
        reviewed_at=parse_ts(data.get('reviewed_at')),
    )


@dataclass(frozen=True)
class ExecutionResult:
    id: str
    pending_action_id: str
    outcome: str
    executed_at: datetime
    message: Optional[str] = None
    attempt: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'pending_action_id': self.pending_action_id,
            'outcome': self.outcome,
            'message': self.message,
            'executed_at': to_iso(self.executed_at),
            'attempt': self.attempt,
        }


def execution_result_from_dict(data: Dict[str, Any]) -> ExecutionResult:
    return ExecutionResult(
        id=str(data['id']),
        pending_action_id=str(data['pending_action_id']),
        outcome=str(data['outcome']),
        executed_at=parse_ts(data.get('executed_at')),
        message=data.get('message'),
        attempt=int(data.get('attempt') or 1),
    )
