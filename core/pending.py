from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Iterable, List

from core.models import (
    CANCELLED,
    ELIGIBLE,
    SCHEDULED,
    Decision,
    PendingAction,
    Rule,
)


NO_LONGER_MATCHES = 'no_longer_matches'
MISSING_FROM_CATALOG = 'missing_from_catalog'


@dataclass
class ReconcileEffects:
    created: List[PendingAction] = field(default_factory=list)
    cancelled: List[PendingAction] = field(default_factory=list)
    became_eligible: List[PendingAction] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.cancelled or self.became_eligible)


def eligible_at_for(rule: Rule, first_matched_at: datetime) -> datetime:
    return first_matched_at + timedelta(days=rule.action_delay_days or 0)


def reconcile(rule: Rule, decisions: Iterable[Decision], now: datetime, store) -> ReconcileEffects:
    """Bring the rule's pending actions in line with a complete set of decisions.

    Matches without an open action get one; open actions whose item no
    longer matches, or is gone from the listing, are cancelled; scheduled
    actions whose delay has elapsed become eligible. Running it twice with
    the same inputs changes nothing the second time.
    """
    effects = ReconcileEffects()
    latest = {}
    for d in decisions:
        if d.rule_id == rule.id:
            latest[d.media_external_id] = d

    for ext_id, d in latest.items():
        if not d.matched or store.get_open(rule.id, ext_id) is not None:
            continue
        eligible_at = eligible_at_for(rule, now)
        action = PendingAction(
            id=str(uuid.uuid4()),
            rule_id=rule.id,
            media_external_id=ext_id,
            state=ELIGIBLE if eligible_at <= now else SCHEDULED,
            first_matched_at=now,
            eligible_at=eligible_at,
            action_type=rule.action_type,
            media_type=rule.media_type,
            title=d.title,
            target_service_id=rule.target_service_id,
            last_reevaluated_at=now,
            file_size_bytes=d.file_size_bytes,
        )
        store.add(action)
        effects.created.append(action)

    created_ids = {a.id for a in effects.created}
    for action in store.open_for_rule(rule.id):
        if action.id in created_ids:
            continue
        d = latest.get(action.media_external_id)
        if d is None or not d.matched:
            closed = replace(
                action,
                state=CANCELLED,
                last_reevaluated_at=now,
                closed_at=now,
                close_reason=MISSING_FROM_CATALOG if d is None else NO_LONGER_MATCHES,
            )
            store.put(closed)
            effects.cancelled.append(closed)
            continue
        size = d.file_size_bytes if d.file_size_bytes is not None else action.file_size_bytes
        if action.state == SCHEDULED and action.eligible_at <= now:
            promoted = replace(action, state=ELIGIBLE, last_reevaluated_at=now, file_size_bytes=size)
            store.put(promoted)
            effects.became_eligible.append(promoted)
        elif action.last_reevaluated_at != now or action.file_size_bytes != size:
            store.put(replace(action, last_reevaluated_at=now, file_size_bytes=size))
    return effects
