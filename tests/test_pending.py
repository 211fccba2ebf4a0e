import importlib
from datetime import datetime, timedelta, timezone

from core.models import (
    CANCELLED,
    ELIGIBLE,
    SCHEDULED,
    AddedBefore,
    Criteria,
    Decision,
    NeverWatched,
    Rule,
)
from storage.actions import ActionStore


T0 = datetime(2024, 6, 1, 3, 0, tzinfo=timezone.utc)


def _rule(delay=7, action_type='AUTO_DELETE'):
    return Rule(
        id='r1',
        name='Old unwatched',
        media_type='MOVIE',
        criteria=Criteria('AND', (NeverWatched(), AddedBefore(365))),
        action_type=action_type,
        action_delay_days=delay,
    )


def _decide(now, **matches):
    return [
        Decision(rule_id='r1', media_external_id=ext, matched=m, evaluated_at=now, title=f'Movie {ext}')
        for ext, m in matches.items()
    ]


def test_match_creates_scheduled_action_with_delay():
    pending = importlib.import_module('core.pending')
    store = ActionStore()
    effects = pending.reconcile(_rule(), _decide(T0, m1=True, m2=False), T0, store)
    assert len(effects.created) == 1
    action = effects.created[0]
    assert action.media_external_id == 'm1'
    assert action.state == SCHEDULED
    assert action.first_matched_at == T0
    assert action.eligible_at == T0 + timedelta(days=7)
    assert action.action_type == 'AUTO_DELETE'
    assert action.title == 'Movie m1'
    assert store.get_open('r1', 'm2') is None


def test_zero_delay_is_immediately_eligible():
    pending = importlib.import_module('core.pending')
    store = ActionStore()
    for delay in (0, None):
        store = ActionStore()
        effects = pending.reconcile(_rule(delay=delay), _decide(T0, m1=True), T0, store)
        assert effects.created[0].state == ELIGIBLE
        assert effects.created[0].eligible_at == T0


def test_reconcile_is_idempotent():
    pending = importlib.import_module('core.pending')
    store = ActionStore()
    rule = _rule()
    decisions = _decide(T0, m1=True, m2=True)
    pending.reconcile(rule, decisions, T0, store)
    snapshot = [a.to_dict() for a in store.list()]

    again = pending.reconcile(rule, decisions, T0, store)
    assert not again.changed
    assert [a.to_dict() for a in store.list()] == snapshot


def test_repeat_match_keeps_first_matched_at():
    pending = importlib.import_module('core.pending')
    store = ActionStore()
    rule = _rule()
    pending.reconcile(rule, _decide(T0, m1=True), T0, store)
    later = T0 + timedelta(days=2)
    effects = pending.reconcile(rule, _decide(later, m1=True), later, store)
    assert not effects.created
    action = store.get_open('r1', 'm1')
    assert action.first_matched_at == T0
    assert action.last_reevaluated_at == later
    assert len(store.list()) == 1


def test_eligibility_boundary_is_inclusive():
    pending = importlib.import_module('core.pending')
    store = ActionStore()
    rule = _rule()
    pending.reconcile(rule, _decide(T0, m1=True), T0, store)

    just_before = T0 + timedelta(days=7) - timedelta(seconds=1)
    effects = pending.reconcile(rule, _decide(just_before, m1=True), just_before, store)
    assert not effects.became_eligible
    assert store.get_open('r1', 'm1').state == SCHEDULED

    at = T0 + timedelta(days=7)
    effects = pending.reconcile(rule, _decide(at, m1=True), at, store)
    assert [a.media_external_id for a in effects.became_eligible] == ['m1']
    assert store.get_open('r1', 'm1').state == ELIGIBLE


def test_no_longer_matching_cancels_before_eligibility():
    pending = importlib.import_module('core.pending')
    store = ActionStore()
    rule = _rule()
    created = pending.reconcile(rule, _decide(T0, m1=True), T0, store).created[0]

    # Watched on day 3
    day3 = T0 + timedelta(days=3)
    effects = pending.reconcile(rule, _decide(day3, m1=False), day3, store)
    assert [a.id for a in effects.cancelled] == [created.id]
    closed = store.get(created.id)
    assert closed.state == CANCELLED
    assert closed.close_reason == pending.NO_LONGER_MATCHES
    assert closed.closed_at == day3
    assert store.get_open('r1', 'm1') is None

    # A fresh match later opens a new action with a new clock
    day10 = T0 + timedelta(days=10)
    fresh = pending.reconcile(rule, _decide(day10, m1=True), day10, store).created[0]
    assert fresh.id != created.id
    assert fresh.first_matched_at == day10
    assert fresh.state == SCHEDULED


def test_item_missing_from_listing_is_cancelled():
    pending = importlib.import_module('core.pending')
    store = ActionStore()
    rule = _rule(delay=0)
    pending.reconcile(rule, _decide(T0, m1=True, m2=True), T0, store)
    later = T0 + timedelta(hours=1)
    effects = pending.reconcile(rule, _decide(later, m1=True), later, store)
    assert [a.media_external_id for a in effects.cancelled] == ['m2']
    assert effects.cancelled[0].close_reason == pending.MISSING_FROM_CATALOG
    assert store.get_open('r1', 'm1').state == ELIGIBLE


def test_other_rules_are_untouched():
    pending = importlib.import_module('core.pending')
    store = ActionStore()
    pending.reconcile(_rule(), _decide(T0, m1=True), T0, store)
    other = Rule(
        id='r2', name='other', media_type='MOVIE',
        criteria=Criteria('AND', (NeverWatched(),)), action_type='FLAG_FOR_REVIEW',
    )
    pending.reconcile(other, [], T0, store)
    assert store.get_open('r1', 'm1') is not None


def test_action_stores_sharing_a_file_stay_consistent(tmp_path):
    pending = importlib.import_module('core.pending')
    path = str(tmp_path / 'actions.json')
    daemon = ActionStore(path)
    reader = ActionStore(path)

    pending.reconcile(_rule(), _decide(T0, m1=True), T0, daemon)
    opened = reader.list(rule_id='r1')
    assert [(a.media_external_id, a.state) for a in opened] == [('m1', SCHEDULED)]

    reader.append_result(opened[0].id, 'ERROR', T0, message='noted elsewhere')
    pending.reconcile(_rule(), _decide(T0 + timedelta(days=1), m1=True, m2=True), T0 + timedelta(days=1), daemon)

    fresh = ActionStore(path)
    assert sorted(a.media_external_id for a in fresh.list()) == ['m1', 'm2']
    assert [r.message for r in fresh.results(opened[0].id)] == ['noted elsewhere']


def test_action_keeps_latest_known_file_size():
    pending = importlib.import_module('core.pending')
    store = ActionStore()
    first = Decision(rule_id='r1', media_external_id='m1', matched=True, evaluated_at=T0, file_size_bytes=100)
    pending.reconcile(_rule(), [first], T0, store)
    assert store.get_open('r1', 'm1').file_size_bytes == 100

    later = T0 + timedelta(days=1)
    pending.reconcile(_rule(), [Decision(rule_id='r1', media_external_id='m1', matched=True, evaluated_at=later,
                                         file_size_bytes=250)], later, store)
    assert store.get_open('r1', 'm1').file_size_bytes == 250

    # Unknown size on a later pass keeps the last known one
    again = T0 + timedelta(days=2)
    pending.reconcile(_rule(), [Decision(rule_id='r1', media_external_id='m1', matched=True, evaluated_at=again)], again, store)
    assert store.get_open('r1', 'm1').file_size_bytes == 250
