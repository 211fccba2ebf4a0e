from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from apscheduler.triggers.cron import CronTrigger

from core.errors import ValidationError
from core.models import (
    ACTION_TYPES,
    CONDITION_TYPES,
    EPISODE,
    MEDIA_TYPES,
    OPERATORS,
    TV_SERIES,
    AddedBefore,
    Criteria,
    LastWatchedBefore,
    LibraryMembership,
    MaxPlayCount,
    MaxQuality,
    MaxRating,
    MinFileSize,
    NeverWatched,
    Rule,
)
from core.utils import SIZE_UNIT_BYTES, TIME_UNIT_DAYS, normalize_quality, parse_ts


# Condition types a media type cannot use
ILLEGAL_CONDITIONS = {
    TV_SERIES: frozenset({MaxQuality.type}),
    EPISODE: frozenset({MaxRating.type}),
}

# Fields accepted by update_rule
MUTABLE_FIELDS = (
    'name',
    'description',
    'enabled',
    'media_type',
    'criteria',
    'action_type',
    'action_delay_days',
    'target_service_id',
    'schedule',
)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(num) or math.isinf(num):
        return None
    return num


def _parse_condition(data: Any, path: str, errors: List[str]) -> Optional[Any]:
    if not isinstance(data, dict):
        errors.append(f'{path}: condition must be an object')
        return None
    ctype = data.get('type')
    if ctype not in CONDITION_TYPES:
        errors.append(f'{path}: unknown condition type {ctype!r}')
        return None

    if ctype == NeverWatched.type:
        return NeverWatched()

    if ctype in (LastWatchedBefore.type, AddedBefore.type):
        value = _number(data.get('value'))
        unit = data.get('unit', 'days')
        if value is None or value <= 0:
            errors.append(f'{path}: {ctype} value must be a positive number')
        if unit not in TIME_UNIT_DAYS:
            errors.append(f'{path}: {ctype} unit must be one of {", ".join(TIME_UNIT_DAYS)}')
        if value is None or value <= 0 or unit not in TIME_UNIT_DAYS:
            return None
        return CONDITION_TYPES[ctype](value=value, unit=unit)

    if ctype == MinFileSize.type:
        value = _number(data.get('value'))
        unit = data.get('unit', 'GB')
        if value is None or value < 0:
            errors.append(f'{path}: min_file_size value must be a non-negative number')
        if unit not in SIZE_UNIT_BYTES:
            errors.append(f'{path}: min_file_size unit must be one of {", ".join(SIZE_UNIT_BYTES)}')
        if value is None or value < 0 or unit not in SIZE_UNIT_BYTES:
            return None
        return MinFileSize(value=value, unit=unit)

    if ctype == MaxPlayCount.type:
        value = data.get('value')
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            errors.append(f'{path}: max_play_count value must be an integer >= 0')
            return None
        return MaxPlayCount(value=value)

    if ctype == MaxQuality.type:
        value = data.get('value')
        if normalize_quality(value) is None:
            errors.append(f'{path}: max_quality value {value!r} is not a known quality')
            return None
        return MaxQuality(value=str(value))

    if ctype == MaxRating.type:
        value = _number(data.get('value'))
        if value is None or not (0 <= value <= 10):
            errors.append(f'{path}: max_rating value must be between 0 and 10')
            return None
        return MaxRating(value=value)

    # library_membership
    ids = data.get('library_ids')
    if not isinstance(ids, (list, tuple, set)) or not ids:
        errors.append(f'{path}: library_membership needs a non-empty library_ids list')
        return None
    return LibraryMembership(library_ids=frozenset(str(i) for i in ids))


def is_legacy_criteria(data: Dict[str, Any]) -> bool:
    return isinstance(data, dict) and 'conditions' not in data


def migrate_legacy_criteria(legacy: Dict[str, Any]) -> Dict[str, Any]:
    """Convert the older flat criteria object into the condition-list form."""
    conditions: List[Dict[str, Any]] = []
    if legacy.get('neverWatched') is True:
        conditions.append({'type': NeverWatched.type})
    lwb = legacy.get('lastWatchedBefore')
    if isinstance(lwb, dict):
        conditions.append({'type': LastWatchedBefore.type, 'value': lwb.get('value'), 'unit': lwb.get('unit', 'days')})
    if legacy.get('maxPlayCount') is not None:
        conditions.append({'type': MaxPlayCount.type, 'value': legacy.get('maxPlayCount')})
    ab = legacy.get('addedBefore')
    if isinstance(ab, dict):
        conditions.append({'type': AddedBefore.type, 'value': ab.get('value'), 'unit': ab.get('unit', 'days')})
    mfs = legacy.get('minFileSize')
    if isinstance(mfs, dict):
        conditions.append({'type': MinFileSize.type, 'value': mfs.get('value'), 'unit': mfs.get('unit', 'GB')})
    if legacy.get('maxQuality'):
        conditions.append({'type': MaxQuality.type, 'value': legacy.get('maxQuality')})
    if legacy.get('maxRating') is not None:
        conditions.append({'type': MaxRating.type, 'value': legacy.get('maxRating')})
    if legacy.get('libraryIds'):
        conditions.append({'type': LibraryMembership.type, 'library_ids': list(legacy.get('libraryIds'))})
    return {'operator': legacy.get('operator') or 'AND', 'conditions': conditions}


def parse_criteria(data: Any, errors: Optional[List[str]] = None) -> Optional[Criteria]:
    errs = errors if errors is not None else []
    if isinstance(data, Criteria):
        return data
    if not isinstance(data, dict):
        errs.append('criteria: must be an object')
        return None
    if is_legacy_criteria(data):
        data = migrate_legacy_criteria(data)
    operator = str(data.get('operator') or 'AND').upper()
    if operator not in OPERATORS:
        errs.append(f'criteria: operator must be AND or OR, got {data.get("operator")!r}')
    raw = data.get('conditions')
    if not isinstance(raw, list) or not raw:
        errs.append('criteria: at least one condition is required')
        return None
    before = len(errs)
    conditions = [_parse_condition(c, f'criteria.conditions[{i}]', errs) for i, c in enumerate(raw)]
    if len(errs) > before or operator not in OPERATORS:
        return None
    return Criteria(operator=operator, conditions=tuple(conditions))


def validate_criteria(criteria: Criteria, media_type: str) -> List[str]:
    errors: List[str] = []
    if media_type not in MEDIA_TYPES:
        errors.append(f'media_type: must be one of {", ".join(MEDIA_TYPES)}')
    if criteria.operator not in OPERATORS:
        errors.append(f'criteria: operator must be AND or OR, got {criteria.operator!r}')
    if not criteria.conditions:
        errors.append('criteria: at least one condition is required')
    illegal = ILLEGAL_CONDITIONS.get(media_type, frozenset())
    for i, cond in enumerate(criteria.conditions):
        ctype = getattr(cond, 'type', None)
        if ctype not in CONDITION_TYPES:
            errors.append(f'criteria.conditions[{i}]: unknown condition {cond!r}')
        elif ctype in illegal:
            errors.append(f'criteria.conditions[{i}]: {ctype} is not available for media type {media_type}')
    return errors


def validate_schedule(schedule: Optional[str]) -> Optional[str]:
    if schedule is None or str(schedule).strip() == '':
        return None
    try:
        CronTrigger.from_crontab(str(schedule).strip(), timezone=timezone.utc)
    except ValueError as e:
        return f'schedule: invalid cron expression {schedule!r}: {e}'
    return None


def _check_fields(data: Dict[str, Any], errors: List[str]) -> None:
    name = data.get('name')
    if not isinstance(name, str) or not name.strip():
        errors.append('name: rule name is required')
    if data.get('media_type') not in MEDIA_TYPES:
        errors.append(f'media_type: must be one of {", ".join(MEDIA_TYPES)}')
    if data.get('action_type') not in ACTION_TYPES:
        errors.append(f'action_type: must be one of {", ".join(ACTION_TYPES)}')
    delay = data.get('action_delay_days')
    if delay is not None and (isinstance(delay, bool) or not isinstance(delay, int) or delay < 0):
        errors.append('action_delay_days: must be a non-negative integer')
    if not isinstance(data.get('enabled', True), bool):
        errors.append('enabled: must be a boolean')
    sched_err = validate_schedule(data.get('schedule'))
    if sched_err:
        errors.append(sched_err)


def build_rule(data: Dict[str, Any], rule_id: str, now: datetime) -> Rule:
    if not isinstance(data, dict):
        raise ValidationError(['rule: must be an object'])
    errors: List[str] = []
    _check_fields(data, errors)
    criteria = parse_criteria(data.get('criteria'), errors)
    if criteria is not None and data.get('media_type') in MEDIA_TYPES:
        errors.extend(validate_criteria(criteria, data['media_type']))
    if errors:
        raise ValidationError(errors)
    schedule = data.get('schedule')
    return Rule(
        id=rule_id,
        name=data['name'].strip(),
        description=data.get('description'),
        enabled=bool(data.get('enabled', True)),
        media_type=data['media_type'],
        criteria=criteria,
        action_type=data['action_type'],
        action_delay_days=data.get('action_delay_days'),
        target_service_id=data.get('target_service_id') or None,
        schedule=str(schedule).strip() if schedule and str(schedule).strip() else None,
        created_at=parse_ts(data.get('created_at')) or now,
        updated_at=now,
    )


def apply_changes(rule: Rule, changes: Dict[str, Any], now: datetime) -> Rule:
    unknown = [k for k in changes if k not in MUTABLE_FIELDS]
    if unknown:
        raise ValidationError([f'{k}: field cannot be updated' for k in unknown])
    merged = rule.to_dict()
    merged.update(changes)
    updated = build_rule(merged, rule.id, now)
    return replace(
        updated,
        created_at=rule.created_at,
        last_triggered_at=rule.last_triggered_at,
        last_run_at=rule.last_run_at,
        last_run_status=rule.last_run_status,
        last_run_error=rule.last_run_error,
    )


def rule_from_record(data: Dict[str, Any]) -> Rule:
    """Rebuild a stored rule; stored records were validated when saved."""
    rule = build_rule(data, str(data['id']), parse_ts(data.get('updated_at')) or datetime.now(timezone.utc))
    return replace(
        rule,
        created_at=parse_ts(data.get('created_at')),
        updated_at=parse_ts(data.get('updated_at')),
        last_triggered_at=parse_ts(data.get('last_triggered_at')),
        last_run_at=parse_ts(data.get('last_run_at')),
        last_run_status=data.get('last_run_status'),
        last_run_error=data.get('last_run_error'),
    )
