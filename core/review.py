from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from core.actions import ActionsDeps, attempt_action, describe_action
from core.errors import ActionNotFound, ExecutionError, ValidationError
from core.models import (
    AUTO_DELETE,
    DESTRUCTIVE_ACTION_TYPES,
    ERROR,
    EXECUTED,
    FLAG_FOR_REVIEW,
    REVIEW_APPROVED,
    REVIEW_DELETED,
    REVIEW_PENDING,
    REVIEW_REJECTED,
    SUCCESS,
    PendingAction,
)


# Statuses an operator may set; DELETED is only reached through delete_reviewed
REVIEW_DECISIONS = (REVIEW_APPROVED, REVIEW_REJECTED)


def is_flagged(action: PendingAction) -> bool:
    return action.action_type == FLAG_FOR_REVIEW and action.state == EXECUTED


def review_queue(
    store,
    rule_id: Optional[str] = None,
    statuses: Optional[Iterable[str]] = None,
) -> List[PendingAction]:
    """Flagged items, by default those still waiting for a decision."""
    wanted = set(statuses) if statuses else {REVIEW_PENDING}
    return [
        a for a in store.list(rule_id=rule_id, states=[EXECUTED])
        if is_flagged(a) and (a.review_status or REVIEW_PENDING) in wanted
    ]


def set_review_status(store, action_ids: Iterable[str], status: str, now: datetime) -> List[PendingAction]:
    """Approve or reject flagged items; nothing changes unless every id is valid.

    A decision can be changed until the item is deleted.
    """
    if status not in REVIEW_DECISIONS:
        raise ValidationError([f'status: must be one of {", ".join(REVIEW_DECISIONS)}'])
    ids = list(dict.fromkeys(str(a) for a in action_ids))
    if not ids:
        raise ValidationError(['action_ids: at least one id is required'])
    errors: List[str] = []
    found: List[PendingAction] = []
    for action_id in ids:
        action = store.get(action_id)
        if action is None:
            errors.append(f'{action_id}: pending action not found')
        elif not is_flagged(action):
            errors.append(f'{action_id}: not a flagged item')
        elif action.review_status == REVIEW_DELETED:
            errors.append(f'{action_id}: already deleted')
        else:
            found.append(action)
    if errors:
        raise ValidationError(errors)
    return [store.put(replace(a, review_status=status, reviewed_at=now)) for a in found]


async def delete_reviewed(
    session: aiohttp.ClientSession,
    action_id: str,
    deps: ActionsDeps,
    delete_action: str = AUTO_DELETE,
) -> Optional[PendingAction]:
    """Delete an approved flagged item through its library service.

    Returns the updated action, or None when nothing ran (dry run, a delete
    of the same item already in flight, or the item is no longer approved).
    A failed delete is recorded and re-raised; the item stays approved.
    """
    if delete_action not in DESTRUCTIVE_ACTION_TYPES:
        raise ValidationError([f'delete_action: must be one of {", ".join(sorted(DESTRUCTIVE_ACTION_TYPES))}'])
    action = deps.store.get(action_id)
    if action is None:
        raise ActionNotFound(action_id)
    if not is_flagged(action) or action.review_status != REVIEW_APPROVED:
        raise ValidationError([f'{action_id}: only approved flagged items can be deleted (status {action.review_status})'])

    key = ('review', action.id)
    if key in deps.inflight:
        return None
    if deps.dry_run:
        deps.event_bus.log('dry_review_delete', delete_action=delete_action, **describe_action(action))
        return None

    deps.inflight.add(key)
    try:
        current = deps.store.get(action_id)
        if current is None or current.review_status != REVIEW_APPROVED:
            return None
        attempt_no = current.attempts + 1
        try:
            message = await attempt_action(session, replace(current, action_type=delete_action), deps)
        except ExecutionError as e:
            deps.store.append_result(current.id, ERROR, deps.clock(), message=str(e), attempt=attempt_no)
            deps.store.put(replace(current, attempts=attempt_no))
            deps.event_bus.log('review_delete_failed', error=str(e), delete_action=delete_action, **describe_action(current))
            raise
        now = deps.clock()
        deps.store.append_result(current.id, SUCCESS, now, message=message, attempt=attempt_no)
        current = deps.store.put(replace(
            current,
            attempts=attempt_no,
            review_status=REVIEW_DELETED,
            reviewed_at=now,
            close_reason=message,
        ))
        deps.event_bus.log('review_delete', message=message, delete_action=delete_action, **describe_action(current))
        return current
    finally:
        deps.inflight.discard(key)


# ---- history and stats ----

def is_deletion(action: PendingAction) -> bool:
    if action.state != EXECUTED:
        return False
    return action.action_type in DESTRUCTIVE_ACTION_TYPES or action.review_status == REVIEW_DELETED


def deleted_at(action: PendingAction) -> Optional[datetime]:
    if action.review_status == REVIEW_DELETED:
        return action.reviewed_at
    return action.closed_at


def deletion_history(
    store,
    rule_id: Optional[str] = None,
    media_type: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> List[PendingAction]:
    """Executed deletions, newest first."""
    out = []
    for a in store.list(rule_id=rule_id, states=[EXECUTED]):
        if not is_deletion(a):
            continue
        if media_type is not None and a.media_type != media_type:
            continue
        at = deleted_at(a)
        if since is not None and (at is None or at < since):
            continue
        if until is not None and (at is None or at > until):
            continue
        out.append(a)
    out.sort(key=lambda a: (deleted_at(a) or a.first_matched_at, a.id), reverse=True)
    return out


def deletion_stats(
    store,
    now: datetime,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> Dict[str, Any]:
    deletions = deletion_history(store, since=since, until=until)
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    per_rule: Dict[str, Dict[str, int]] = {}
    by_media_type: Dict[str, int] = {}
    for a in deletions:
        entry = per_rule.setdefault(a.rule_id, {'deletions': 0, 'bytes_freed': 0})
        entry['deletions'] += 1
        entry['bytes_freed'] += a.file_size_bytes or 0
        by_media_type[a.media_type] = by_media_type.get(a.media_type, 0) + 1
    flagged = [a for a in store.list(states=[EXECUTED]) if is_flagged(a)]
    review = {status.lower(): 0 for status in (REVIEW_PENDING, REVIEW_APPROVED, REVIEW_REJECTED, REVIEW_DELETED)}
    for a in flagged:
        review[(a.review_status or REVIEW_PENDING).lower()] += 1
    return {
        'total_deletions': len(deletions),
        'bytes_freed': sum(a.file_size_bytes or 0 for a in deletions),
        'deletions_this_month': sum(1 for a in deletions if deleted_at(a) is not None and deleted_at(a) >= month_start),
        'by_media_type': by_media_type,
        'per_rule': per_rule,
        'review': review,
    }
