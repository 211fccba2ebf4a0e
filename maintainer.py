import os
import asyncio
import logging
import aiohttp
from typing import Optional, Dict, Any, Iterable, List

# Helper function to get environment variables with type casting
def get_env_var(key, default=None, cast_to=str):
    value = os.environ.get(key, default)
    if value is not None:
        return cast_to(value)
    return default

_truthy = lambda x: str(x).lower() in ['true', '1', 'yes']

# Fetch debug flag from environment and set logging level
DEBUG_LOGGING = get_env_var('DEBUG_LOGGING', default='false', cast_to=_truthy)
logging_level = logging.DEBUG if DEBUG_LOGGING else logging.INFO

logging.basicConfig(
    format='%(asctime)s [%(levelname)s]: %(message)s',
    level=logging_level,
    handlers=[logging.StreamHandler()],
    force=True,
)

# Dedicated non-propagating logger for structured event logs to avoid duplicates
EVENT_LOG = logging.getLogger('media_maintainer.events')
EVENT_LOG.setLevel(logging_level)
EVENT_LOG.propagate = False
# Exactly one handler, even if the module is re-imported
for _h in list(EVENT_LOG.handlers):
    EVENT_LOG.removeHandler(_h)
_h = logging.StreamHandler()
_h.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s]: %(message)s'))
EVENT_LOG.addHandler(_h)

CONFIG_PATH = get_env_var('CONFIG_PATH', '/app/config.yaml')
RULES_FILE_PATH = get_env_var('RULES_FILE_PATH', '/app/data/rules.json')
ACTIONS_FILE_PATH = get_env_var('ACTIONS_FILE_PATH', '/app/data/actions.json')

# Logging and run controls
STRUCTURED_LOGS = get_env_var('STRUCTURED_LOGS', default='true', cast_to=_truthy)
DRY_RUN = get_env_var('DRY_RUN', default='false', cast_to=_truthy)
EXPLAIN_DECISIONS = get_env_var('EXPLAIN_DECISIONS', default='false', cast_to=_truthy)
TICK_SECONDS = get_env_var('TICK_SECONDS', 60, cast_to=int)

# Request and retry configuration
REQUEST_TIMEOUT = get_env_var('REQUEST_TIMEOUT', 10, cast_to=int)
RETRY_ATTEMPTS = get_env_var('RETRY_ATTEMPTS', 2, cast_to=int)
RETRY_BACKOFF = get_env_var('RETRY_BACKOFF', 1.0, cast_to=float)  # base seconds

from core.config import ConfigAccessor
from core.config import load_yaml as _load_yaml
from core.config import sanitize_config as _sanitize_config
from core.config import validate_config as _validate_config

# YAML config loading
CONFIG: Dict[str, Any] = _sanitize_config(_load_yaml(CONFIG_PATH), DEBUG_LOGGING)
_validate_config(CONFIG, DEBUG_LOGGING)

_AC = ConfigAccessor(CONFIG)

# Prefer YAML general for app-level settings; fallback to env-loaded defaults
def _get_general(key: str, default: Any) -> Any:
    val = _AC.general(key, None)
    return default if val is None else val

DEBUG_LOGGING = bool(_get_general('debug_logging', DEBUG_LOGGING))
STRUCTURED_LOGS = bool(_get_general('structured_logs', STRUCTURED_LOGS))
DRY_RUN = bool(_get_general('dry_run', DRY_RUN))
EXPLAIN_DECISIONS = bool(_get_general('explain_decisions', EXPLAIN_DECISIONS))
TICK_SECONDS = int(_get_general('tick_seconds', TICK_SECONDS))
RULES_FILE_PATH = str(_get_general('rules_file_path', RULES_FILE_PATH))
ACTIONS_FILE_PATH = str(_get_general('actions_file_path', ACTIONS_FILE_PATH))
REQUEST_TIMEOUT = int(_get_general('request_timeout', REQUEST_TIMEOUT))
RETRY_ATTEMPTS = int(_get_general('retry_attempts', RETRY_ATTEMPTS))
RETRY_BACKOFF = float(_get_general('retry_backoff', RETRY_BACKOFF))

from core.actions import ActionsDeps
from core.errors import ValidationError
from core.events import EventBus
from core import review as _review
from core.models import AUTO_DELETE, REVIEW_APPROVED, REVIEW_REJECTED, Rule, PendingAction, ExecutionResult
from core.rules import Evaluation, evaluate
from core.runner import RunRegistry, RunnerDeps, RunReport, run_rule, run_forever
from core.utils import utcnow
from core.validation import parse_criteria, validate_criteria
from integrations.catalog import MediaCatalogGateway
from integrations.clients import ServiceEndpoint
from integrations.services import RequestManager
from storage.actions import ActionStore
from storage.rules import RuleStore


def _build_services() -> Dict[str, ServiceEndpoint]:
    out: Dict[str, ServiceEndpoint] = {}
    for name in _AC.service_names():
        out[name] = ServiceEndpoint(**_AC.service_definition(name))
    return out

services = _build_services()

EVENT_BUS = EventBus(
    structured_logs=STRUCTURED_LOGS,
    dry_run=DRY_RUN,
    debug_logging=DEBUG_LOGGING,
    logger=EVENT_LOG,
)

_REQ_MANAGER = RequestManager()

async def _throttled_request(session, service_name: str, url, api_key, params=None, json_data=None, method='get', raise_errors=False):
    # Use a fresh accessor to reflect runtime CONFIG updates in tests
    ac = ConfigAccessor(CONFIG)
    return await _REQ_MANAGER.throttled_request(
        session,
        service_name,
        url,
        api_key,
        params=params,
        json_data=json_data,
        method=method,
        min_interval_ms=float(ac.get_service_setting(service_name, 'min_request_interval_ms', 0.0) or 0.0),
        max_concurrent=int(ac.get_service_setting(service_name, 'max_concurrent_requests', 0) or 0),
        request_timeout=REQUEST_TIMEOUT,
        retry_attempts=RETRY_ATTEMPTS,
        retry_backoff=RETRY_BACKOFF,
        raise_errors=raise_errors,
        debug_logging=DEBUG_LOGGING,
    )

GATEWAY = MediaCatalogGateway(services, _throttled_request, debug_logging=DEBUG_LOGGING)
RULE_STORE = RuleStore(RULES_FILE_PATH, DEBUG_LOGGING)
ACTION_STORE = ActionStore(ACTIONS_FILE_PATH, DEBUG_LOGGING)
REGISTRY = RunRegistry()
# Keys with an execution in flight, shared by scheduled and manual runs
INFLIGHT: set = set()


def build_runner_deps() -> RunnerDeps:
    actions_deps = ActionsDeps(
        store=ACTION_STORE,
        perform_action=GATEWAY.perform_action,
        event_bus=EVENT_BUS,
        retry_attempts=int(_AC.engine('action_retry_attempts')),
        retry_backoff=float(_AC.engine('action_retry_backoff')),
        action_timeout=float(_AC.engine('action_timeout_seconds')),
        dry_run=DRY_RUN,
        debug_logging=DEBUG_LOGGING,
        inflight=INFLIGHT,
    )
    return RunnerDeps(
        rule_store=RULE_STORE,
        action_store=ACTION_STORE,
        registry=REGISTRY,
        list_items=GATEWAY.list_items,
        actions=actions_deps,
        event_bus=EVENT_BUS,
        explain_decisions=EXPLAIN_DECISIONS,
        debug_logging=DEBUG_LOGGING,
        tick_seconds=TICK_SECONDS,
    )


# ---- Rule administration ----

def create_rule(data: Dict[str, Any]) -> Rule:
    rule = RULE_STORE.create(data, utcnow())
    EVENT_BUS.rule_event('rule_created', rule)
    return rule


def update_rule(rule_id: str, changes: Dict[str, Any]) -> Rule:
    rule = RULE_STORE.update(rule_id, changes, utcnow())
    EVENT_BUS.rule_event('rule_updated', rule, fields=sorted(changes))
    return rule


def delete_rule(rule_id: str) -> None:
    RULE_STORE.delete(rule_id)
    EVENT_BUS.log('rule_deleted', rule=rule_id)


def enable_rule(rule_id: str) -> Rule:
    rule = RULE_STORE.set_enabled(rule_id, True, utcnow())
    EVENT_BUS.rule_event('rule_enabled', rule)
    return rule


def disable_rule(rule_id: str) -> Rule:
    rule = RULE_STORE.set_enabled(rule_id, False, utcnow())
    EVENT_BUS.rule_event('rule_disabled', rule)
    return rule


# ---- Queries ----

async def preview_for_item(
    session: aiohttp.ClientSession,
    criteria: Any,
    media_type: str,
    item_id: str,
    service_id: Optional[str] = None,
    now=None,
) -> Optional[Evaluation]:
    """Evaluate criteria against one live item without recording anything.

    Returns None when the item is not in the library service.
    """
    errors: List[str] = []
    parsed = parse_criteria(criteria, errors)
    if parsed is not None:
        errors.extend(validate_criteria(parsed, media_type))
    if errors:
        raise ValidationError(errors)
    snap = await GATEWAY.get_item(session, media_type, item_id, service_id)
    if snap is None:
        return None
    return evaluate(parsed, snap, now or utcnow())


def list_pending_actions(rule_id: Optional[str] = None, states: Optional[Iterable[str]] = None) -> List[PendingAction]:
    return ACTION_STORE.list(rule_id=rule_id, states=states)


def list_execution_results(pending_action_id: Optional[str] = None) -> List[ExecutionResult]:
    return ACTION_STORE.results(pending_action_id)


# ---- Review of flagged items ----

def list_review_queue(rule_id: Optional[str] = None, statuses: Optional[Iterable[str]] = None) -> List[PendingAction]:
    return _review.review_queue(ACTION_STORE, rule_id, statuses)


def _decide(action_ids: Iterable[str], status: str, event: str) -> List[PendingAction]:
    updated = _review.set_review_status(ACTION_STORE, action_ids, status, utcnow())
    for action in updated:
        EVENT_BUS.log(event, action=action.id, rule=action.rule_id, id=action.media_external_id, title=action.title)
    return updated


def approve_flagged(action_ids: Iterable[str]) -> List[PendingAction]:
    return _decide(action_ids, REVIEW_APPROVED, 'review_approved')


def reject_flagged(action_ids: Iterable[str]) -> List[PendingAction]:
    return _decide(action_ids, REVIEW_REJECTED, 'review_rejected')


async def delete_flagged(
    session: aiohttp.ClientSession,
    action_id: str,
    delete_action: str = AUTO_DELETE,
) -> Optional[PendingAction]:
    """Delete one approved flagged item now, through the rule's library service."""
    return await _review.delete_reviewed(session, action_id, build_runner_deps().actions, delete_action)


def list_deletion_history(
    rule_id: Optional[str] = None,
    media_type: Optional[str] = None,
    since=None,
    until=None,
) -> List[PendingAction]:
    return _review.deletion_history(ACTION_STORE, rule_id, media_type, since, until)


def maintenance_stats(since=None, until=None) -> Dict[str, Any]:
    rules = RULE_STORE.list()
    enabled = sum(1 for r in rules if r.enabled)
    stats = _review.deletion_stats(ACTION_STORE, utcnow(), since, until)
    stats['rules'] = {'total': len(rules), 'enabled': enabled, 'disabled': len(rules) - enabled}
    stats['pending_by_state'] = ACTION_STORE.counts_by_state()
    return stats


async def run_now(session: aiohttp.ClientSession, rule_id: str) -> RunReport:
    RULE_STORE.get(rule_id)
    return await run_rule(session, rule_id, 'manual', build_runner_deps())


async def main():
    async with aiohttp.ClientSession() as session:
        if DEBUG_LOGGING:
            logging.info('Running media-library-maintainer')

        def _log_fn(msg: str):
            logging.info(msg)

        await run_forever(session, build_runner_deps(), _log_fn)

def run():
    asyncio.run(main())

if __name__ == '__main__':
    run()
