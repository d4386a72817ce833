"""
Enumeration classes for the delegation workflow.

Kind enums parse permissively: an unrecognized configuration value falls back
to the member named by ``_default_name()`` and a ConfigurationWarning is
emitted.
"""

import warnings
from enum import Enum
from typing import Any, Dict

from .exceptions import ConfigurationWarning


class _ParsableEnum(Enum):
    """Enum with case/separator-insensitive parsing and a declared default"""

    @classmethod
    def default(cls) -> "_ParsableEnum":
        return cls[cls._default_name()]

    @classmethod
    def _default_name(cls) -> str:
        raise NotImplementedError

    @classmethod
    def _aliases(cls) -> Dict[str, str]:
        """Legacy spellings mapped to member names"""
        return {}

    @classmethod
    def parse(cls, value: Any) -> "_ParsableEnum":
        """
        Parse a configuration value into a member.

        Accepts a member, its value, or its name in any case with ``-`` or
        ``_`` separators. A missing value returns the default member
        silently (an empty string counts as missing), anything else returns it
        with a ConfigurationWarning.
        """
        if isinstance(value, cls):
            return value
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.default()
        if isinstance(value, str):
            normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
            if normalized in cls._aliases():
                return cls[cls._aliases()[normalized]]
            for member in cls:
                if normalized in (member.value.replace("-", "_"), member.name.lower()):
                    return member
        fallback = cls.default()
        warnings.warn(
            f"Unknown {cls.__name__} '{value}', defaulting to '{fallback.value}'",
            ConfigurationWarning,
            stacklevel=2,
        )
        return fallback


class RoleKind(_ParsableEnum):
    """Kind of role in the delegation chain"""
    WORKFLOW = "workflow"
    SPECIALIST = "specialist"
    QUALITY_GATE = "quality_gate"

    @classmethod
    def _default_name(cls) -> str:
        return "WORKFLOW"


class StepKind(_ParsableEnum):
    """Kind of workflow step"""
    VALIDATION = "validation"
    ACTION = "action"
    DECISION = "decision"
    DELEGATION = "delegation"
    ANALYSIS = "analysis"
    REPORTING = "reporting"

    @classmethod
    def _default_name(cls) -> str:
        return "ACTION"


class ConditionKind(_ParsableEnum):
    """Kind of step condition; unknown kinds are treated as context checks"""
    CONTEXT_CHECK = "context_check"
    FILE_EXISTS = "file_exists"
    TASK_STATUS = "task_status"
    GIT_STATUS = "git_status"
    PREVIOUS_STEP_COMPLETED = "previous_step_completed"
    CUSTOM_LOGIC = "custom_logic"

    @classmethod
    def _default_name(cls) -> str:
        return "CONTEXT_CHECK"


class ActionKind(_ParsableEnum):
    """Kind of step action; unknown kinds are treated as remote calls"""
    COMMAND = "command"
    REMOTE_CALL = "remote_call"
    VALIDATION = "validation"
    REMINDER = "reminder"
    FILE_OPERATION = "file_operation"
    REPORT_GENERATION = "report_generation"

    @classmethod
    def _default_name(cls) -> str:
        return "REMOTE_CALL"

    @classmethod
    def _aliases(cls) -> Dict[str, str]:
        return {"mcp_call": "REMOTE_CALL"}


class StepState(Enum):
    """Per (task, step) progress state"""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"  # Optional steps only

    @property
    def is_terminal(self) -> bool:
        return self in (StepState.COMPLETED, StepState.SKIPPED)


class TaskStatus(Enum):
    """Task lifecycle status"""
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    NEEDS_REVIEW = "needs-review"
    COMPLETED = "completed"
    NEEDS_CHANGES = "needs-changes"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class SuccessPolicy(Enum):
    """
    How analytics judges a delegation whose success is not yet known.

    LEGACY_DURATION counts an unknown outcome as successful once the
    delegation has a positive duration. STRICT only counts explicit successes.
    """
    LEGACY_DURATION = "legacy_duration"
    STRICT = "strict"
