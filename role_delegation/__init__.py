"""
Role Delegation Workflow

Routes tasks through role-owned steps, records every handoff between roles
in an append-only ledger, and derives workflow analytics from it.
"""

from .core import (
    WorkflowEngine,
    WorkflowError,
    ValidationError,
    TransitionRejected,
    WorkflowDefinition,
    load_definition,
    ConfigLoader,
    RoleRegistry,
    DelegationLedger,
    StepProgressTracker,
    WorkflowAnalytics,
    SuccessPolicy,
    StepState,
    TaskStatus,
)

__version__ = "0.1.0"
__all__ = [
    "WorkflowEngine",
    "WorkflowError",
    "ValidationError",
    "TransitionRejected",
    "WorkflowDefinition",
    "load_definition",
    "ConfigLoader",
    "RoleRegistry",
    "DelegationLedger",
    "StepProgressTracker",
    "WorkflowAnalytics",
    "SuccessPolicy",
    "StepState",
    "TaskStatus",
]
