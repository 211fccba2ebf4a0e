import importlib
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from core.actions import ActionsDeps
from core.errors import ActionNotFound, NonRetryableExecutionError, ValidationError
from core.models import EXECUTED, PendingAction
from storage.actions import ActionStore


pytestmark = pytest.mark.asyncio

NOW = datetime(2024, 6, 10, 3, 0, tzinfo=timezone.utc)


class DummySession:
    pass


class DummyBus:
    def __init__(self):
        self.events = []

    def log(self, event, **fields):
        self.events.append({'event': event, **fields})


def _executed(ext, action_type='FLAG_FOR_REVIEW', rule_id='r1', size=None, review_status='PENDING',
              closed_at=NOW, media_type='MOVIE'):
    return PendingAction(
        id=f'a-{ext}',
        rule_id=rule_id,
        media_external_id=ext,
        state=EXECUTED,
        first_matched_at=NOW - timedelta(days=7),
        eligible_at=NOW,
        action_type=action_type,
        media_type=media_type,
        title=f'Movie {ext}',
        attempts=1,
        closed_at=closed_at,
        close_reason='flagged for review',
        file_size_bytes=size,
        review_status=review_status if action_type == 'FLAG_FOR_REVIEW' else None,
    )


def _deps(perform, store=None, **kw):
    return ActionsDeps(
        store=store or ActionStore(),
        perform_action=perform,
        event_bus=DummyBus(),
        clock=lambda: NOW,
        **kw,
    )


async def test_flagged_execution_waits_for_review():
    actions = importlib.import_module('core.actions')
    review = importlib.import_module('core.review')

    async def perform(*a, **k):
        raise AssertionError('flagging never calls a service')

    deps = _deps(perform)
    action = deps.store.add(PendingAction(
        id='a1', rule_id='r1', media_external_id='42', state='ELIGIBLE', first_matched_at=NOW,
        eligible_at=NOW, action_type='FLAG_FOR_REVIEW', media_type='MOVIE', title='Flagged',
    ))
    final = await actions.execute_pending_action(DummySession(), action, deps)
    assert final.review_status == 'PENDING'
    assert [a.id for a in review.review_queue(deps.store)] == ['a1']


async def test_approve_and_reject_in_bulk():
    review = importlib.import_module('core.review')
    store = ActionStore()
    for ext in ('1', '2', '3'):
        store.add(_executed(ext))

    approved = review.set_review_status(store, ['a-1', 'a-2'], 'APPROVED', NOW)
    assert [a.review_status for a in approved] == ['APPROVED', 'APPROVED']
    review.set_review_status(store, ['a-3'], 'REJECTED', NOW)

    assert review.review_queue(store) == []
    assert [a.id for a in review.review_queue(store, statuses=['APPROVED'])] == ['a-1', 'a-2']
    assert store.get('a-3').reviewed_at == NOW


async def test_invalid_review_batch_changes_nothing():
    review = importlib.import_module('core.review')
    store = ActionStore()
    store.add(_executed('1'))
    store.add(_executed('2', action_type='AUTO_DELETE'))

    with pytest.raises(ValidationError) as exc:
        review.set_review_status(store, ['a-1', 'a-2', 'missing'], 'APPROVED', NOW)
    assert exc.value.errors == ['a-2: not a flagged item', 'missing: pending action not found']
    assert store.get('a-1').review_status == 'PENDING'

    with pytest.raises(ValidationError):
        review.set_review_status(store, ['a-1'], 'DELETED', NOW)
    with pytest.raises(ValidationError):
        review.set_review_status(store, [], 'APPROVED', NOW)


async def test_delete_reviewed_removes_approved_item_once():
    review = importlib.import_module('core.review')
    calls = []

    async def perform(session, media_type, service_id, action_type, external_id):
        calls.append((media_type, action_type, external_id))
        return 'deleted movie and files'

    deps = _deps(perform)
    deps.store.add(_executed('7', size=3 * 1024 ** 3))
    review.set_review_status(deps.store, ['a-7'], 'APPROVED', NOW)

    done = await review.delete_reviewed(DummySession(), 'a-7', deps)
    assert calls == [('MOVIE', 'AUTO_DELETE', '7')]
    assert done.review_status == 'DELETED'
    assert done.attempts == 2
    assert [r.outcome for r in deps.store.results('a-7')] == ['SUCCESS']
    assert deps.event_bus.events[-1]['event'] == 'review_delete'

    # Deleted items can be neither deleted again nor re-decided
    with pytest.raises(ValidationError):
        await review.delete_reviewed(DummySession(), 'a-7', deps)
    with pytest.raises(ValidationError):
        review.set_review_status(deps.store, ['a-7'], 'REJECTED', NOW)
    assert len(calls) == 1


async def test_delete_reviewed_requires_approval():
    review = importlib.import_module('core.review')

    async def perform(*a, **k):
        raise AssertionError('not approved')

    deps = _deps(perform)
    deps.store.add(_executed('1'))
    with pytest.raises(ValidationError):
        await review.delete_reviewed(DummySession(), 'a-1', deps)
    with pytest.raises(ActionNotFound):
        await review.delete_reviewed(DummySession(), 'nope', deps)
    with pytest.raises(ValidationError):
        await review.delete_reviewed(DummySession(), 'a-1', deps, delete_action='UNMONITOR_AND_KEEP')


async def test_failed_delete_keeps_item_approved():
    review = importlib.import_module('core.review')

    async def perform(*a, **k):
        raise NonRetryableExecutionError('Service Radarr: HTTP 404: gone', status=404)

    deps = _deps(perform)
    deps.store.add(_executed('9'))
    review.set_review_status(deps.store, ['a-9'], 'APPROVED', NOW)
    with pytest.raises(NonRetryableExecutionError):
        await review.delete_reviewed(DummySession(), 'a-9', deps, delete_action='UNMONITOR_AND_DELETE')

    stored = deps.store.get('a-9')
    assert stored.review_status == 'APPROVED'
    assert [(r.outcome, r.attempt) for r in deps.store.results('a-9')] == [('ERROR', 2)]
    assert deps.event_bus.events[-1]['event'] == 'review_delete_failed'
    assert deps.inflight == set()


async def test_dry_run_delete_changes_nothing():
    review = importlib.import_module('core.review')

    async def perform(*a, **k):
        raise AssertionError('dry run')

    deps = _deps(perform, dry_run=True)
    deps.store.add(_executed('5'))
    review.set_review_status(deps.store, ['a-5'], 'APPROVED', NOW)
    assert await review.delete_reviewed(DummySession(), 'a-5', deps) is None
    assert deps.store.get('a-5').review_status == 'APPROVED'
    assert deps.event_bus.events[-1]['event'] == 'dry_review_delete'


async def test_deletion_history_and_stats():
    review = importlib.import_module('core.review')
    store = ActionStore()
    store.add(_executed('1', action_type='AUTO_DELETE', size=2 * 1024 ** 3, closed_at=NOW - timedelta(days=1)))
    store.add(_executed('2', action_type='UNMONITOR_AND_DELETE', rule_id='r2', size=1024,
                        closed_at=NOW - timedelta(days=40), media_type='EPISODE'))
    store.add(_executed('3', action_type='UNMONITOR_AND_KEEP'))
    store.add(replace(_executed('4', review_status='DELETED', size=5, closed_at=NOW - timedelta(days=3)), reviewed_at=NOW))
    store.add(_executed('5'))
    store.add(_executed('6', review_status='REJECTED'))

    history = review.deletion_history(store)
    assert [a.id for a in history] == ['a-4', 'a-1', 'a-2']
    assert [a.id for a in review.deletion_history(store, rule_id='r2')] == ['a-2']
    assert [a.id for a in review.deletion_history(store, media_type='EPISODE')] == ['a-2']
    assert [a.id for a in review.deletion_history(store, since=NOW - timedelta(days=2))] == ['a-4', 'a-1']

    stats = review.deletion_stats(store, NOW)
    assert stats['total_deletions'] == 3
    assert stats['bytes_freed'] == 2 * 1024 ** 3 + 1024 + 5
    assert stats['deletions_this_month'] == 2
    assert stats['by_media_type'] == {'MOVIE': 2, 'EPISODE': 1}
    assert stats['per_rule'] == {
        'r1': {'deletions': 2, 'bytes_freed': 2 * 1024 ** 3 + 5},
        'r2': {'deletions': 1, 'bytes_freed': 1024},
    }
    assert stats['review'] == {'pending': 1, 'approved': 0, 'rejected': 1, 'deleted': 1}
