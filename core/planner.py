from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional

from core.errors import PassCancelled
from core.models import Decision, Rule
from core.rules import evaluate, explain


@dataclass
class PlanDeps:
    # list_items(session, media_type, service_id) -> CatalogListing
    list_items: Callable[..., Any]
    # Polled per item; False cancels the pass
    should_continue: Optional[Callable[[], bool]] = None
    explain_decisions: bool = False
    log_event: Optional[Callable[..., None]] = None
    debug_logging: bool = False


@dataclass
class PlanResult:
    rule_id: str
    decisions: List[Decision] = field(default_factory=list)
    degraded: bool = False
    degraded_sources: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.decisions)

    @property
    def matched(self) -> int:
        return sum(1 for d in self.decisions if d.matched)


async def plan(session: Any, rule: Rule, now: datetime, deps: PlanDeps) -> PlanResult:
    """Evaluate the rule against every item of its media type.

    GatewayUnavailable from the listing propagates so the caller can fail
    this rule's pass alone.
    """
    listing = deps.list_items(session, rule.media_type, rule.target_service_id)
    result = PlanResult(rule_id=rule.id)
    async for snap in listing:
        if deps.should_continue is not None and not deps.should_continue():
            raise PassCancelled(f'Rule {rule.id} was disabled during its pass')
        ev = evaluate(rule.criteria, snap, now)
        result.decisions.append(
            Decision(
                rule_id=rule.id,
                media_external_id=snap.external_id,
                matched=ev.matched,
                evaluated_at=now,
                condition_trace=list(ev.trace),
                title=snap.title,
                file_size_bytes=snap.file_size_bytes,
            )
        )
        if deps.explain_decisions and deps.log_event is not None:
            deps.log_event(
                'decision',
                rule=rule.id,
                id=snap.external_id,
                title=snap.title,
                matched=ev.matched,
                trace=explain(rule.criteria, ev),
            )
    result.degraded = listing.degraded
    result.degraded_sources = list(listing.degraded_sources)
    if result.degraded and deps.log_event is not None:
        deps.log_event('degraded', rule=rule.id, sources=result.degraded_sources)
    if deps.debug_logging:
        import logging
        logging.info(f'Rule {rule.id}: evaluated {result.total} item(s), {result.matched} matched')
    return result
