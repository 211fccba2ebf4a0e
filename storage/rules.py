from __future__ import annotations

import json
import os
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional

from apscheduler.triggers.cron import CronTrigger

from core.errors import RuleNotFound
from core.models import Rule
from core.validation import apply_changes, build_rule, rule_from_record
from storage.locking import file_lock, file_stamp


def load_records(path: Optional[str], debug_logging: bool = False) -> List[Dict[str, Any]]:
    if not path:
        return []
    try:
        with open(path, 'r') as file:
            data = json.load(file)
    except (FileNotFoundError, json.JSONDecodeError):
        if debug_logging:
            import logging
            logging.warning(f"Store file {path} not found or is invalid. Starting empty.")
        return []
    return data if isinstance(data, list) else []


def save_records(records: List[Dict[str, Any]], path: Optional[str]) -> None:
    if not path:
        return
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    tmp_path = path + '.tmp'
    with open(tmp_path, 'w') as file:
        json.dump(records, file, indent=4)
    os.replace(tmp_path, path)


def next_fire_time(schedule: str, after: datetime) -> Optional[datetime]:
    trigger = CronTrigger.from_crontab(schedule, timezone=timezone.utc)
    return trigger.get_next_fire_time(None, after)


class RuleStore:
    """Rules keyed by id, persisted as a JSON list when a path is given.

    The file is shared with other processes (the CLI edits it while the
    daemon runs): reads pick up the latest file and every change is a
    locked read-modify-write.
    """

    def __init__(self, path: Optional[str] = None, debug_logging: bool = False) -> None:
        self.path = path
        self.debug_logging = debug_logging
        self._rules: Dict[str, Rule] = {}
        self._stamp = None
        self._refresh()

    def _refresh(self) -> None:
        stamp = file_stamp(self.path)
        if self.path is None or (stamp is not None and stamp == self._stamp):
            return
        rules: Dict[str, Rule] = {}
        for rec in load_records(self.path, self.debug_logging):
            try:
                rule = rule_from_record(rec)
            except Exception as e:
                import logging
                logging.warning(f"Skipping stored rule {rec.get('id')!r}: {e}")
                continue
            rules[rule.id] = rule
        self._rules = rules
        self._stamp = stamp

    @contextmanager
    def _writing(self) -> Iterator[None]:
        with file_lock(self.path):
            self._refresh()
            yield
            save_records([r.to_dict() for r in self._rules.values()], self.path)
            self._stamp = file_stamp(self.path)

    def create(self, data: Dict[str, Any], now: datetime) -> Rule:
        rule = build_rule(data, str(data.get('id') or uuid.uuid4()), now)
        with self._writing():
            self._rules[rule.id] = rule
        return rule

    def get(self, rule_id: str) -> Rule:
        self._refresh()
        rule = self._rules.get(rule_id)
        if rule is None:
            raise RuleNotFound(rule_id)
        return rule

    def list(self, enabled_only: bool = False) -> List[Rule]:
        self._refresh()
        rules = sorted(self._rules.values(), key=lambda r: (r.created_at or datetime.min.replace(tzinfo=timezone.utc), r.id))
        if enabled_only:
            rules = [r for r in rules if r.enabled]
        return rules

    def update(self, rule_id: str, changes: Dict[str, Any], now: datetime) -> Rule:
        with self._writing():
            rule = apply_changes(self.get(rule_id), changes, now)
            self._rules[rule_id] = rule
        return rule

    def delete(self, rule_id: str) -> None:
        with self._writing():
            self.get(rule_id)
            del self._rules[rule_id]

    def set_enabled(self, rule_id: str, enabled: bool, now: datetime) -> Rule:
        with self._writing():
            rule = replace(self.get(rule_id), enabled=enabled, updated_at=now)
            self._rules[rule_id] = rule
        return rule

    def is_enabled(self, rule_id: str) -> bool:
        self._refresh()
        rule = self._rules.get(rule_id)
        return bool(rule and rule.enabled)

    def list_due(self, now: datetime) -> List[Rule]:
        due = []
        for rule in self.list(enabled_only=True):
            if not rule.schedule:
                continue
            since = rule.last_triggered_at or rule.created_at or now
            fire = next_fire_time(rule.schedule, since + timedelta(seconds=1))
            if fire is not None and fire <= now:
                due.append(rule)
        return due

    def mark_triggered(self, rule_id: str, now: datetime) -> Rule:
        with self._writing():
            rule = replace(self.get(rule_id), last_triggered_at=now)
            self._rules[rule_id] = rule
        return rule

    def record_run(self, rule_id: str, status: str, error: Optional[str], at: datetime) -> Optional[Rule]:
        with self._writing():
            # The rule may have been deleted while its pass was running
            if rule_id not in self._rules:
                return None
            rule = replace(self._rules[rule_id], last_run_at=at, last_run_status=status, last_run_error=error)
            self._rules[rule_id] = rule
        return rule
