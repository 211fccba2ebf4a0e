from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.actions import ActionsDeps, execute_pending_action
from core.errors import GatewayUnavailable, PassCancelled, RuleNotFound
from core.models import ELIGIBLE, EXECUTED, FAILED
from core.pending import reconcile
from core.planner import PlanDeps, plan
from core.utils import utcnow


COMPLETED = 'COMPLETED'
RUN_FAILED = 'FAILED'
RUN_CANCELLED = 'CANCELLED'
SKIPPED = 'SKIPPED'


class RunRegistry:
    """Which rules have a pass in progress, keyed by rule id."""

    def __init__(self) -> None:
        self._running: Dict[str, str] = {}

    def try_acquire(self, rule_id: str) -> Optional[str]:
        if rule_id in self._running:
            return None
        token = str(uuid.uuid4())
        self._running[rule_id] = token
        return token

    def release(self, rule_id: str, token: str) -> bool:
        if self._running.get(rule_id) != token:
            return False
        del self._running[rule_id]
        return True

    def is_running(self, rule_id: str) -> bool:
        return rule_id in self._running

    def running(self) -> List[str]:
        return sorted(self._running)


@dataclass
class RunnerDeps:
    rule_store: Any
    action_store: Any
    registry: RunRegistry
    # list_items(session, media_type, service_id) -> CatalogListing
    list_items: Callable[..., Any]
    actions: ActionsDeps
    event_bus: Any
    explain_decisions: bool = False
    debug_logging: bool = False
    tick_seconds: float = 60
    clock: Callable[[], Any] = utcnow


@dataclass
class RunReport:
    rule_id: str
    trigger: str
    status: str
    error: Optional[str] = None
    evaluated: int = 0
    matched: int = 0
    created: int = 0
    cancelled: int = 0
    became_eligible: int = 0
    executed: int = 0
    failed: int = 0
    degraded_sources: List[str] = field(default_factory=list)


async def run_rule(session: Any, rule_id: str, trigger: str, deps: RunnerDeps) -> RunReport:
    """One pass for one rule: plan, reconcile, execute its eligible actions.

    Rule-level failures are recorded on the rule and logged, never raised.
    A rule that already has a pass in progress is skipped.
    """
    token = deps.registry.try_acquire(rule_id)
    if token is None:
        deps.event_bus.log('run_skipped', rule=rule_id, trigger=trigger, reason='already_running')
        return RunReport(rule_id=rule_id, trigger=trigger, status=SKIPPED, error='already running')
    try:
        try:
            rule = deps.rule_store.get(rule_id)
        except RuleNotFound as e:
            deps.event_bus.log('run_skipped', rule=rule_id, trigger=trigger, reason='not_found')
            return RunReport(rule_id=rule_id, trigger=trigger, status=SKIPPED, error=str(e))
        if not rule.enabled:
            deps.event_bus.rule_event('run_skipped', rule, trigger=trigger, reason='disabled')
            return RunReport(rule_id=rule_id, trigger=trigger, status=SKIPPED, error='rule disabled')

        report = RunReport(rule_id=rule_id, trigger=trigger, status=COMPLETED)
        now = deps.clock()
        deps.event_bus.rule_event('run_start', rule, trigger=trigger)
        plan_deps = PlanDeps(
            list_items=deps.list_items,
            should_continue=lambda: deps.rule_store.is_enabled(rule_id),
            explain_decisions=deps.explain_decisions,
            log_event=deps.event_bus.log,
            debug_logging=deps.debug_logging,
        )
        try:
            result = await plan(session, rule, now, plan_deps)
        except GatewayUnavailable as e:
            report.status = RUN_FAILED
            report.error = str(e)
        except PassCancelled as e:
            report.status = RUN_CANCELLED
            report.error = str(e)
        if report.status != COMPLETED:
            deps.rule_store.record_run(rule_id, report.status, report.error, deps.clock())
            deps.event_bus.rule_event('run_end', rule, trigger=trigger, status=report.status, error=report.error)
            return report

        report.evaluated = result.total
        report.matched = result.matched
        report.degraded_sources = list(result.degraded_sources)
        effects = reconcile(rule, result.decisions, now, deps.action_store)
        report.created = len(effects.created)
        report.cancelled = len(effects.cancelled)
        report.became_eligible = len(effects.became_eligible)
        for action in effects.cancelled:
            deps.event_bus.rule_event('cancel', rule, id=action.media_external_id, title=action.title, reason=action.close_reason)

        for action in deps.action_store.list(rule_id=rule_id, states=[ELIGIBLE]):
            done = await execute_pending_action(session, action, deps.actions)
            if done is None:
                continue
            if done.state == EXECUTED:
                report.executed += 1
            elif done.state == FAILED:
                report.failed += 1

        deps.rule_store.record_run(rule_id, COMPLETED, None, deps.clock())
        deps.event_bus.rule_event(
            'run_end',
            rule,
            trigger=trigger,
            status=COMPLETED,
            evaluated=report.evaluated,
            matched=report.matched,
            created=report.created,
            cancelled=report.cancelled,
            executed=report.executed,
            failed=report.failed,
            degraded=report.degraded_sources,
        )
        return report
    finally:
        deps.registry.release(rule_id, token)


async def run_tick(session: Any, now: Any, deps: RunnerDeps, metrics: Optional['Metrics'] = None) -> List[RunReport]:
    due = deps.rule_store.list_due(now)
    for rule in due:
        deps.rule_store.mark_triggered(rule.id, now)
    results = await asyncio.gather(*(run_rule(session, r.id, 'schedule', deps) for r in due), return_exceptions=True)
    reports: List[RunReport] = []
    for rule, res in zip(due, results):
        if isinstance(res, Exception):
            import logging
            logging.error(f'Rule {rule.id}: unhandled error in pass: {res!r}')
            deps.rule_store.record_run(rule.id, RUN_FAILED, repr(res), deps.clock())
            res = RunReport(rule_id=rule.id, trigger='schedule', status=RUN_FAILED, error=repr(res))
        reports.append(res)
        if metrics is not None:
            metrics.add_report(res)
    return reports


class Metrics:
    FIELDS = ('rules_run', 'rules_failed', 'rules_skipped', 'evaluated', 'matched', 'created', 'cancelled', 'executed', 'failed')

    def __init__(self) -> None:
        self.rules_run = 0
        self.rules_failed = 0
        self.rules_skipped = 0
        self.evaluated = 0
        self.matched = 0
        self.created = 0
        self.cancelled = 0
        self.executed = 0
        self.failed = 0
        # per-rule counters as 'rule:<id>:<field>'
        self.extra: Dict[str, int] = {}

    def get(self, key: str, default: int = 0) -> int:
        if key in self.FIELDS:
            return getattr(self, key)
        return self.extra.get(key, default)

    def __getitem__(self, key: str) -> int:
        return self.get(key, 0)

    def __setitem__(self, key: str, value: int) -> None:
        if key in self.FIELDS:
            setattr(self, key, value)
        else:
            self.extra[key] = value

    def add_report(self, report: RunReport) -> None:
        if report.status == SKIPPED:
            self['rules_skipped'] += 1
            return
        self['rules_run'] += 1
        if report.status == RUN_FAILED:
            self['rules_failed'] += 1
        for name in ('evaluated', 'matched', 'created', 'cancelled', 'executed', 'failed'):
            value = getattr(report, name)
            self[name] += value
            key = f'rule:{report.rule_id}:{name}'
            self[key] = self.get(key) + value


def summarize(metrics: Metrics, action_store: Any, tick_seconds: float) -> Dict[str, Any]:
    next_run_ts = time.time() + tick_seconds
    per_rule: Dict[str, Dict[str, int]] = {}
    for key in list(metrics.extra.keys()):
        parts = key.split(':', 2)
        if len(parts) == 3 and parts[0] == 'rule':
            per_rule.setdefault(parts[1], {})[parts[2]] = metrics.extra[key]
    out = {name: metrics.get(name) for name in Metrics.FIELDS}
    out['pending_by_state'] = action_store.counts_by_state()
    out['per_rule'] = per_rule
    out['next_run'] = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(next_run_ts))
    return out


async def run_forever(
    session: Any,
    deps: RunnerDeps,
    log_fn: Callable[[str], None],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    while True:
        metrics = Metrics()
        await run_tick(session, deps.clock(), deps, metrics)
        if metrics.rules_run or metrics.rules_skipped:
            summary = summarize(metrics, deps.action_store, deps.tick_seconds)
            log_fn("Run summary:")
            log_fn(
                f"  rules: run={summary['rules_run']} failed={summary['rules_failed']} skipped={summary['rules_skipped']}"
            )
            log_fn(
                f"  items: evaluated={summary['evaluated']} matched={summary['matched']}"
            )
            log_fn(
                f"  actions: created={summary['created']} cancelled={summary['cancelled']} executed={summary['executed']} failed={summary['failed']}"
            )
            for rid, s in summary['per_rule'].items():
                log_fn(
                    f"  {rid}: evaluated={s.get('evaluated', 0)} matched={s.get('matched', 0)} created={s.get('created', 0)} executed={s.get('executed', 0)} failed={s.get('failed', 0)}"
                )
            log_fn(f"Next tick: {summary['next_run']} (in {deps.tick_seconds}s)")
        await sleep(deps.tick_seconds)
