import argparse
import json
import os
import sys
import time
from typing import Any

from core.errors import ActionNotFound, ExecutionError, RuleNotFound, ValidationError
from core.models import (
    AUTO_DELETE,
    MEDIA_TYPES,
    MOVIE,
    OPEN_STATES,
    REVIEW_APPROVED,
    REVIEW_REJECTED,
    REVIEW_STATUSES,
    UNMONITOR_AND_DELETE,
    snapshot_from_dict,
)
from core.review import deleted_at, deletion_history, deletion_stats, review_queue, set_review_status
from core.rules import evaluate, explain
from core.utils import parse_ts, to_iso, utcnow
from core.validation import parse_criteria, validate_criteria
from storage.actions import ActionStore
from storage.rules import RuleStore


def _env(key: str, default: Any) -> Any:
    return os.environ.get(key, default)


def _rules_path() -> str:
    return _env('RULES_FILE_PATH', '/app/data/rules.json')


def _actions_path() -> str:
    return _env('ACTIONS_FILE_PATH', '/app/data/actions.json')


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2))


def _load_json(path: str) -> Any:
    with open(path, 'r') as f:
        return json.load(f)


def cmd_rules_list(args):
    store = RuleStore(_rules_path())
    _print([
        {
            'id': r.id,
            'name': r.name,
            'enabled': r.enabled,
            'media_type': r.media_type,
            'action_type': r.action_type,
            'schedule': r.schedule,
            'last_run_status': r.last_run_status,
        }
        for r in store.list()
    ])


def cmd_rules_show(args):
    _print(RuleStore(_rules_path()).get(args.rule_id).to_dict())


def cmd_rules_add(args):
    rule = RuleStore(_rules_path()).create(_load_json(args.rule_json), utcnow())
    _print(rule.to_dict())


def cmd_rules_enable(args):
    rule = RuleStore(_rules_path()).set_enabled(args.rule_id, True, utcnow())
    print(f"Enabled {rule.id}")


def cmd_rules_disable(args):
    rule = RuleStore(_rules_path()).set_enabled(args.rule_id, False, utcnow())
    print(f"Disabled {rule.id}")


def cmd_rules_delete(args):
    RuleStore(_rules_path()).delete(args.rule_id)
    print(f"Deleted {args.rule_id}")


def cmd_review_list(args):
    store = ActionStore(_actions_path())
    _print([a.to_dict() for a in review_queue(store, args.rule, args.status)])


def _review_decision(args, status):
    store = ActionStore(_actions_path())
    updated = set_review_status(store, args.action_ids, status, utcnow())
    print(f"{status.capitalize()} {len(updated)} item(s)")


def cmd_review_approve(args):
    _review_decision(args, REVIEW_APPROVED)


def cmd_review_reject(args):
    _review_decision(args, REVIEW_REJECTED)


def cmd_review_delete(args):
    import asyncio
    import aiohttp
    import maintainer

    async def _delete():
        async with aiohttp.ClientSession() as session:
            return await maintainer.delete_flagged(
                session, args.action_id, UNMONITOR_AND_DELETE if args.unmonitor else AUTO_DELETE,
            )

    try:
        action = asyncio.run(_delete())
    except ExecutionError as e:
        print(f"Delete failed: {e}")
        sys.exit(1)
    if action is None:
        print(f"Nothing deleted for {args.action_id}")
    else:
        print(f"Deleted {action.media_external_id}: {action.close_reason}")


def cmd_history(args):
    store = ActionStore(_actions_path())
    _print([
        {
            'action': a.id,
            'rule_id': a.rule_id,
            'media_type': a.media_type,
            'id': a.media_external_id,
            'title': a.title,
            'action_type': a.action_type,
            'deleted_at': to_iso(deleted_at(a)),
            'file_size_bytes': a.file_size_bytes,
        }
        for a in deletion_history(store, args.rule, args.media_type)
    ])


def cmd_stats(args):
    store = ActionStore(_actions_path())
    _print(deletion_stats(store, utcnow()))


def cmd_pending(args):
    store = ActionStore(_actions_path())
    states = args.state or (None if args.all else sorted(OPEN_STATES))
    _print([a.to_dict() for a in store.list(rule_id=args.rule, states=states)])


def cmd_results(args):
    store = ActionStore(_actions_path())
    _print([r.to_dict() for r in store.results(args.action)])


def cmd_simulate(args):
    errors = []
    criteria = parse_criteria(_load_json(args.criteria_json), errors)
    if criteria is not None:
        errors.extend(validate_criteria(criteria, args.media_type))
    if errors:
        raise ValidationError(errors)
    snap = snapshot_from_dict(_load_json(args.item_json))
    now = parse_ts(args.now) if args.now else utcnow()
    ev = evaluate(criteria, snap, now)
    _print({
        'matched': ev.matched,
        'trace': [[idx, outcome] for idx, outcome in ev.trace],
        'explain': explain(criteria, ev),
    })


def cmd_status(args):
    rules = RuleStore(_rules_path()).list()
    actions = ActionStore(_actions_path())
    try:
        tick_seconds = int(_env('TICK_SECONDS', 60))
    except ValueError:
        tick_seconds = 60
    now = utcnow()
    _print({
        'rules_file': _rules_path(),
        'actions_file': _actions_path(),
        'rules': len(rules),
        'enabled_rules': sum(1 for r in rules if r.enabled),
        'due_now': [r.id for r in RuleStore(_rules_path()).list_due(now)],
        'failed_rules': [r.id for r in rules if r.last_run_status == 'FAILED'],
        'pending_by_state': actions.counts_by_state(),
        'tick_seconds': tick_seconds,
        'next_tick': time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(time.time() + tick_seconds)),
    })


def main(argv=None):
    ap = argparse.ArgumentParser(description="Media Library Maintainer CLI")
    sub = ap.add_subparsers(dest='cmd')

    p_rules = sub.add_parser('rules', help='Manage maintenance rules')
    rsub = p_rules.add_subparsers(dest='rules_cmd')
    p = rsub.add_parser('list', help='List rules')
    p.set_defaults(func=cmd_rules_list)
    p = rsub.add_parser('show', help='Show one rule')
    p.add_argument('rule_id')
    p.set_defaults(func=cmd_rules_show)
    p = rsub.add_parser('add', help='Create a rule from a JSON file')
    p.add_argument('rule_json', help='Path to rule JSON file')
    p.set_defaults(func=cmd_rules_add)
    for name, func in (('enable', cmd_rules_enable), ('disable', cmd_rules_disable), ('delete', cmd_rules_delete)):
        p = rsub.add_parser(name, help=f'{name.capitalize()} a rule')
        p.add_argument('rule_id')
        p.set_defaults(func=func)

    p_pending = sub.add_parser('pending', help='List pending actions (open ones by default)')
    p_pending.add_argument('--rule', help='Only actions of this rule id')
    p_pending.add_argument('--state', action='append', help='Filter by state (repeatable)')
    p_pending.add_argument('--all', action='store_true', help='Include closed actions')
    p_pending.set_defaults(func=cmd_pending)

    p_results = sub.add_parser('results', help='List execution results')
    p_results.add_argument('--action', help='Only results of this pending action id')
    p_results.set_defaults(func=cmd_results)

    p_sim = sub.add_parser('simulate', help='Evaluate criteria JSON against an item JSON offline')
    p_sim.add_argument('criteria_json', help='Path to criteria JSON file')
    p_sim.add_argument('item_json', help='Path to snapshot JSON file')
    p_sim.add_argument('--media-type', default=MOVIE, choices=MEDIA_TYPES)
    p_sim.add_argument('--now', help='Evaluation instant (ISO 8601); defaults to the current time')
    p_sim.set_defaults(func=cmd_simulate)

    p_review = sub.add_parser('review', help='Review items flagged by rules')
    vsub = p_review.add_subparsers(dest='review_cmd')
    p = vsub.add_parser('list', help='List flagged items (awaiting a decision by default)')
    p.add_argument('--rule', help='Only items of this rule id')
    p.add_argument('--status', action='append', choices=REVIEW_STATUSES, help='Filter by review status (repeatable)')
    p.set_defaults(func=cmd_review_list)
    for name, func in (('approve', cmd_review_approve), ('reject', cmd_review_reject)):
        p = vsub.add_parser(name, help=f'{name.capitalize()} flagged items')
        p.add_argument('action_ids', nargs='+')
        p.set_defaults(func=func)
    p = vsub.add_parser('delete', help='Delete an approved item through its library service')
    p.add_argument('action_id')
    p.add_argument('--unmonitor', action='store_true', help='Unmonitor and delete files instead of removing the entry')
    p.set_defaults(func=cmd_review_delete)

    p_history = sub.add_parser('history', help='List executed deletions, newest first')
    p_history.add_argument('--rule', help='Only deletions of this rule id')
    p_history.add_argument('--media-type', choices=MEDIA_TYPES)
    p_history.set_defaults(func=cmd_history)

    p_stats = sub.add_parser('stats', help='Deletion counts, bytes freed and review totals')
    p_stats.set_defaults(func=cmd_stats)

    p_status = sub.add_parser('status', help='Show rule and pending action summary')
    p_status.set_defaults(func=cmd_status)

    args = ap.parse_args(argv)
    if not hasattr(args, 'func'):
        ap.print_help()
        sys.exit(1)
    try:
        args.func(args)
    except ValidationError as e:
        _print({'errors': e.errors})
        sys.exit(2)
    except (RuleNotFound, ActionNotFound) as e:
        print(str(e))
        sys.exit(1)


if __name__ == '__main__':
    main()
