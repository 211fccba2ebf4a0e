from __future__ import annotations

import os
import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from core.models import (
    ExecutionResult,
    PendingAction,
    execution_result_from_dict,
    pending_action_from_dict,
)
from storage.locking import file_lock, file_stamp


class ActionStore:
    """Pending actions and their append-only execution results.

    At most one open action exists per (rule_id, media_external_id); closed
    actions are kept for history. Everything is persisted to one JSON file
    when a path is given; like RuleStore, reads follow the latest file and
    changes are locked read-modify-writes so the CLI and the daemon can
    share it.
    """

    def __init__(self, path: Optional[str] = None, debug_logging: bool = False) -> None:
        self.path = path
        self.debug_logging = debug_logging
        self._actions: Dict[str, PendingAction] = {}
        self._open: Dict[Tuple[str, str], str] = {}
        self._results: List[ExecutionResult] = []
        self._stamp = None
        self._refresh()

    def _refresh(self) -> None:
        stamp = file_stamp(self.path)
        if not self.path or (stamp is not None and stamp == self._stamp):
            return
        self._stamp = stamp
        self._actions = {}
        self._open = {}
        self._results = []
        try:
            with open(self.path, 'r') as file:
                data = json.load(file)
        except (FileNotFoundError, json.JSONDecodeError):
            if self.debug_logging:
                import logging
                logging.warning("Action file not found or is invalid. Starting with no pending actions.")
            return
        if not isinstance(data, dict):
            return
        for rec in data.get('pending_actions') or []:
            action = pending_action_from_dict(rec)
            self._actions[action.id] = action
            if action.is_open:
                self._open[action.key] = action.id
        self._results = [execution_result_from_dict(r) for r in data.get('execution_results') or []]

    def _save(self) -> None:
        if not self.path:
            return
        data = {
            'pending_actions': [a.to_dict() for a in self._actions.values()],
            'execution_results': [r.to_dict() for r in self._results],
        }
        os.makedirs(os.path.dirname(self.path) or '.', exist_ok=True)
        tmp_path = self.path + '.tmp'
        with open(tmp_path, 'w') as file:
            json.dump(data, file, indent=4)
        os.replace(tmp_path, self.path)
        self._stamp = file_stamp(self.path)

    @contextmanager
    def _writing(self) -> Iterator[None]:
        with file_lock(self.path):
            self._refresh()
            yield
            self._save()

    # ---- pending actions ----

    def get_open(self, rule_id: str, media_external_id: str) -> Optional[PendingAction]:
        self._refresh()
        action_id = self._open.get((rule_id, media_external_id))
        return self._actions.get(action_id) if action_id else None

    def get(self, action_id: str) -> Optional[PendingAction]:
        self._refresh()
        return self._actions.get(action_id)

    def open_for_rule(self, rule_id: str) -> List[PendingAction]:
        self._refresh()
        return [self._actions[aid] for (rid, _), aid in self._open.items() if rid == rule_id]

    def add(self, action: PendingAction) -> PendingAction:
        with self._writing():
            if action.is_open and action.key in self._open:
                raise ValueError(f"Open action already exists for {action.key}")
            self._actions[action.id] = action
            if action.is_open:
                self._open[action.key] = action.id
        return action

    def put(self, action: PendingAction) -> PendingAction:
        """Store a changed action, keeping the open-key index in step with its state."""
        with self._writing():
            self._actions[action.id] = action
            if action.is_open:
                self._open[action.key] = action.id
            elif self._open.get(action.key) == action.id:
                del self._open[action.key]
        return action

    def list(self, rule_id: Optional[str] = None, states: Optional[Iterable[str]] = None) -> List[PendingAction]:
        self._refresh()
        wanted = set(states) if states else None
        out = []
        for a in self._actions.values():
            if rule_id is not None and a.rule_id != rule_id:
                continue
            if wanted is not None and a.state not in wanted:
                continue
            out.append(a)
        out.sort(key=lambda a: (a.first_matched_at, a.id))
        return out

    # ---- execution results ----

    def append_result(
        self,
        pending_action_id: str,
        outcome: str,
        executed_at: datetime,
        message: Optional[str] = None,
        attempt: int = 1,
    ) -> ExecutionResult:
        result = ExecutionResult(
            id=str(uuid.uuid4()),
            pending_action_id=pending_action_id,
            outcome=outcome,
            executed_at=executed_at,
            message=message,
            attempt=attempt,
        )
        with self._writing():
            self._results.append(result)
        return result

    def results(self, pending_action_id: Optional[str] = None) -> List[ExecutionResult]:
        self._refresh()
        if pending_action_id is None:
            return list(self._results)
        return [r for r in self._results if r.pending_action_id == pending_action_id]

    def counts_by_state(self) -> Dict[str, int]:
        self._refresh()
        counts: Dict[str, int] = {}
        for a in self._actions.values():
            counts[a.state] = counts.get(a.state, 0) + 1
        return counts
