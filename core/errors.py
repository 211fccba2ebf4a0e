from __future__ import annotations

from typing import List, Optional


class MaintenanceError(Exception):
    pass


class ValidationError(MaintenanceError):
    def __init__(self, errors: List[str]) -> None:
        self.errors = list(errors)
        super().__init__('; '.join(self.errors) or 'invalid rule')


class RuleNotFound(MaintenanceError):
    def __init__(self, rule_id: str) -> None:
        self.rule_id = rule_id
        super().__init__(f'Rule not found: {rule_id}')


class GatewayUnavailable(MaintenanceError):
    def __init__(self, source: str, message: str) -> None:
        self.source = source
        super().__init__(f'{source}: {message}')


class PassCancelled(MaintenanceError):
    pass


class ExecutionError(MaintenanceError):
    transient = False

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message)


class TransientExecutionError(ExecutionError):
    transient = True


class NonRetryableExecutionError(ExecutionError):
    transient = False


class ActionNotFound(MaintenanceError):
    def __init__(self, action_id: str) -> None:
        self.action_id = action_id
        super().__init__(f'Pending action not found: {action_id}')
