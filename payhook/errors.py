"""Error taxonomy shared by the engine adapter, the state machine and the API."""
from typing import Optional


class EngineError(Exception):
    """Base class for failures reported by the durable execution engine."""


class AlreadyExists(EngineError):
    def __init__(self, workflow_id: str):
        super().__init__(f"execution {workflow_id} already exists")
        self.workflow_id = workflow_id


class NotFound(EngineError):
    def __init__(self, workflow_id: str):
        super().__init__(f"execution {workflow_id} not found")
        self.workflow_id = workflow_id


class AlreadyTerminal(EngineError):
    """Cancel or terminate targeted an execution that already reached a terminal state.

    Callers treat this as a successful no-op.
    """

    def __init__(self, workflow_id: str, status: Optional[str] = None):
        super().__init__(f"execution {workflow_id} already {(status or 'finished').lower()}")
        self.workflow_id = workflow_id
        self.status = status


class EngineUnavailable(EngineError):
    pass


class InvalidPaymentRequest(ValueError):
    pass


class InvalidTransition(RuntimeError):
    def __init__(self, current, target):
        super().__init__(f"illegal transition {current} -> {target}")
        self.current = current
        self.target = target


class WebhookError(Exception):
    pass
