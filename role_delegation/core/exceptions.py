"""
Exception and warning classes for the delegation workflow.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Any


@dataclass
class ValidationError(Exception):
    """
    Configuration or input validation error with context information.

    Raised while loading a workflow definition; a raised ValidationError
    aborts the load.
    """
    message: str
    field: Optional[str] = None
    value: Any = None
    context: Optional[Dict[str, Any]] = None

    def __init__(self, message: str, field: Optional[str] = None,
                 value: Any = None, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.field = field
        self.value = value
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format error message with context"""
        parts = [self.message]
        if self.field:
            parts.append(f"Field: {self.field}")
        if self.value is not None:
            parts.append(f"Value: {repr(self.value)}")
        if self.context:
            ctx_parts = [f"{k}={v}" for k, v in self.context.items()]
            parts.append(f"Context: {', '.join(ctx_parts)}")
        return " | ".join(parts)

    def __str__(self) -> str:
        return self._format_message()


@dataclass
class WorkflowError(Exception):
    """
    Runtime workflow error with task, step and role context.
    """
    message: str
    step_id: Optional[str] = None
    role_id: Optional[str] = None
    task_id: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

    def __init__(self, message: str, step_id: Optional[str] = None,
                 role_id: Optional[str] = None, task_id: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.step_id = step_id
        self.role_id = role_id
        self.task_id = task_id
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format error message with context"""
        parts = [self.message]
        if self.task_id:
            parts.append(f"Task: {self.task_id}")
        if self.step_id:
            parts.append(f"Step: {self.step_id}")
        if self.role_id:
            parts.append(f"Role: {self.role_id}")
        if self.context:
            ctx_parts = [f"{k}={v}" for k, v in self.context.items()]
            parts.append(f"Context: {', '.join(ctx_parts)}")
        return " | ".join(parts)

    def __str__(self) -> str:
        return self._format_message()


class TransitionRejected(WorkflowError):
    """
    A requested role handoff was refused.

    ``reason`` is a one-line summary, ``errors`` lists every failed check.
    """

    def __init__(self, reason: str, task_id: Optional[str] = None,
                 from_role: Optional[str] = None, to_role: Optional[str] = None,
                 errors: Optional[List[str]] = None):
        self.reason = reason
        self.from_role = from_role
        self.to_role = to_role
        self.errors = list(errors or [reason])
        super().__init__(
            f"Transition rejected: {reason}",
            role_id=from_role,
            task_id=task_id,
            context={"to_role": to_role} if to_role else None,
        )


class SecurityError(Exception):
    """Security-related error for path validation and blocked commands"""
    pass


class WorkflowWarning(UserWarning):
    """Base category for non-fatal workflow diagnostics"""


class ConfigurationWarning(WorkflowWarning):
    """Optional configuration missing, or a value fell back to its default"""


class DataQualityWarning(WorkflowWarning):
    """Analytics input is inconsistent but still usable"""


class StepSkippedWarning(WorkflowWarning):
    """An optional step was skipped after exhausting its retries"""
