from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Set, Tuple

import aiohttp

from core.errors import ExecutionError, NonRetryableExecutionError, TransientExecutionError
from core.models import (
    DO_NOTHING,
    ELIGIBLE,
    ERROR,
    EXECUTED,
    FAILED,
    FLAG_FOR_REVIEW,
    LOCAL_ACTION_TYPES,
    REVIEW_PENDING,
    SUCCESS,
    PendingAction,
)
from core.utils import utcnow


@dataclass
class ActionsDeps:
    store: Any  # storage.actions.ActionStore
    # perform_action(session, media_type, service_id, action_type, external_id) -> message
    perform_action: Callable[..., Awaitable[str]]
    event_bus: Any  # expects .log(event, **fields)
    retry_attempts: int = 3
    retry_backoff: float = 1.0
    action_timeout: float = 60.0
    dry_run: bool = False
    debug_logging: bool = False
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    clock: Callable[[], datetime] = utcnow
    # Keys with an execution in flight
    inflight: Set[Tuple[str, str]] = field(default_factory=set)


def describe_action(action: PendingAction) -> dict:
    return {
        'action': action.id,
        'rule': action.rule_id,
        'id': action.media_external_id,
        'title': action.title,
        'action_type': action.action_type,
    }


async def attempt_action(session: aiohttp.ClientSession, action: PendingAction, deps: ActionsDeps) -> str:
    if action.action_type in LOCAL_ACTION_TYPES:
        return 'no action' if action.action_type == DO_NOTHING else 'flagged for review'
    try:
        return await asyncio.wait_for(
            deps.perform_action(
                session,
                action.media_type,
                action.target_service_id,
                action.action_type,
                action.media_external_id,
            ),
            timeout=deps.action_timeout,
        )
    except asyncio.TimeoutError as e:
        raise TransientExecutionError(f'timed out after {deps.action_timeout}s') from e
    except ExecutionError:
        raise
    except Exception as e:
        raise NonRetryableExecutionError(f'unexpected error: {e!r}') from e


async def execute_pending_action(
    session: aiohttp.ClientSession,
    action: PendingAction,
    deps: ActionsDeps,
) -> Optional[PendingAction]:
    """Execute one eligible action, retrying transient failures.

    Returns the action in its final state, or None when it was not run
    (not eligible, dry run, or another execution of the same key is in
    flight). Every attempt appends an execution result.
    """
    if action.state != ELIGIBLE:
        return None
    key = action.key
    if key in deps.inflight:
        if deps.debug_logging:
            import logging
            logging.info(f'Rule {action.rule_id}: execution already in flight for id={action.media_external_id}; skipping')
        return None

    if deps.dry_run:
        deps.event_bus.log('dry_execute', **describe_action(action))
        return None

    deps.inflight.add(key)
    try:
        # The caller's copy may be stale; only the stored state decides
        current = deps.store.get(action.id)
        if current is None or current.state != ELIGIBLE:
            return None
        max_attempts = max(1, int(deps.retry_attempts))
        while True:
            attempt_no = current.attempts + 1
            try:
                message = await attempt_action(session, current, deps)
            except ExecutionError as e:
                now = deps.clock()
                current = replace(current, attempts=attempt_no)
                deps.store.append_result(current.id, ERROR, now, message=str(e), attempt=attempt_no)
                if not e.transient or attempt_no >= max_attempts:
                    current = replace(current, state=FAILED, closed_at=now, close_reason=str(e))
                    deps.store.put(current)
                    deps.event_bus.log('execute_failed', error=str(e), attempts=attempt_no, **describe_action(current))
                    return current
                deps.store.put(current)
                sleep_for = deps.retry_backoff * (2 ** (attempt_no - 1)) * (1 + random.uniform(0, 0.25))
                deps.event_bus.log('execute_retry', error=str(e), attempts=attempt_no, retry_in=round(sleep_for, 2), **describe_action(current))
                await deps.sleep(sleep_for)
                continue
            now = deps.clock()
            current = replace(current, state=EXECUTED, attempts=attempt_no, closed_at=now, close_reason=message)
            if current.action_type == FLAG_FOR_REVIEW:
                current = replace(current, review_status=REVIEW_PENDING)
            deps.store.append_result(current.id, SUCCESS, now, message=message, attempt=attempt_no)
            deps.store.put(current)
            deps.event_bus.log('execute', message=message, attempts=attempt_no, **describe_action(current))
            if deps.debug_logging:
                import logging
                logging.info(f"Rule {current.rule_id}: {current.action_type} id={current.media_external_id} title={current.title}: {message}")
            return current
    finally:
        deps.inflight.discard(key)
