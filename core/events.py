from __future__ import annotations

import json
from datetime import datetime
from typing import Any


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


class EventBus:
    """Audit events written to a dedicated logger, as JSON when structured."""

    def __init__(
        self,
        *,
        structured_logs: bool,
        dry_run: bool,
        debug_logging: bool,
        logger,
    ) -> None:
        self.structured_logs = structured_logs
        self.dry_run = dry_run
        self.debug_logging = debug_logging
        self.logger = logger

    def log(self, event: str, **fields) -> None:
        if self.dry_run:
            fields.setdefault('dry_run', True)
        payload = {"event": event, **fields}
        try:
            if self.structured_logs:
                self.logger.info(json.dumps(payload, ensure_ascii=False, default=_default))
            else:
                self.logger.info(f"{event}: {fields}")
        except (TypeError, ValueError):
            self.logger.info(str(payload))

    def rule_event(self, event: str, rule: Any, **fields) -> None:
        fields.setdefault('rule', getattr(rule, 'id', rule))
        name = getattr(rule, 'name', None)
        if name is not None:
            fields.setdefault('rule_name', name)
        self.log(event, **fields)
