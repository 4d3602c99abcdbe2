from __future__ import annotations

from typing import Any


class StagehandError(RuntimeError):
    """Base class for pipeline errors surfaced to callers."""


class StageAlreadyRunningError(StagehandError):
    """Raised when a stage already has an attempt in flight for the task."""

    def __init__(self, message: str, *, task_id: str, stage_template_id: str) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.stage_template_id = stage_template_id


class GateValidationError(StagehandError):
    """Raised when a user decision does not satisfy the stage's gate rule."""

    def __init__(self, message: str, *, rule: Any, decision: str | None) -> None:
        super().__init__(message)
        self.rule = rule
        self.decision = decision


class InvalidTransitionError(StagehandError):
    """Raised when an operation is not legal for the execution's current status."""


class StateStoreError(StagehandError):
    """Raised when persistence operations fail."""


class ConcurrentStateUpdateError(StateStoreError):
    """Raised when a write was based on a revision another writer already replaced."""

    def __init__(self, namespace: str, *, expected: int, found: int) -> None:
        super().__init__(
            f"Concurrent state update detected for namespace '{namespace}' "
            f"(expected revision {expected}, found {found})."
        )
        self.namespace = namespace
        self.expected = expected
        self.found = found
