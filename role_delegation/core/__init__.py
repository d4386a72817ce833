"""
Core delegation workflow modules.
Following SOLID principles - modules are organized by responsibility.
"""

# Exceptions and warnings
from .exceptions import (
    ValidationError, WorkflowError, TransitionRejected, SecurityError,
    WorkflowWarning, ConfigurationWarning, DataQualityWarning, StepSkippedWarning,
)

# Enums
from .enums import (
    RoleKind, StepKind, ConditionKind, ActionKind, StepState, TaskStatus, SuccessPolicy
)

# Models
from .models import (
    Role, StepCondition, StepAction, WorkflowStep, RoleTransition, WorkflowDefinition,
    Task, TaskContext, DelegationRecord, ConditionResult, ActionResult,
    WorkflowStepProgress, StepOutcome,
)

# Configuration
from .schema_loader import SchemaLoader, normalize_path
from .role_registry import RoleRegistry
from .definition_loader import load_definition
from .config_loader import ConfigLoader

# Conditions and actions
from .variable_resolver import VariableResolver
from .condition_evaluator import ConditionEvaluator, ConditionEvaluatorConfig
from .action_executor import ActionExecutor, ActionExecutorConfig

# Runtime state
from .workflow_events import EventKind, LedgerEvent
from .state_storage import WorkflowStore, InMemoryWorkflowStore, FileStateStorage
from .delegation_ledger import DelegationLedger
from .progress_tracker import StepProgressTracker, TrackerPolicy

# Analytics
from .analytics import WorkflowAnalytics, AnalyticsSnapshot

from .workflow_engine import WorkflowEngine

__all__ = [
    # Exceptions
    'ValidationError', 'WorkflowError', 'TransitionRejected', 'SecurityError',
    'WorkflowWarning', 'ConfigurationWarning', 'DataQualityWarning', 'StepSkippedWarning',
    # Enums
    'RoleKind', 'StepKind', 'ConditionKind', 'ActionKind', 'StepState', 'TaskStatus',
    'SuccessPolicy',
    # Models
    'Role', 'StepCondition', 'StepAction', 'WorkflowStep', 'RoleTransition',
    'WorkflowDefinition', 'Task', 'TaskContext', 'DelegationRecord', 'ConditionResult',
    'ActionResult', 'WorkflowStepProgress', 'StepOutcome',
    # Configuration
    'SchemaLoader', 'normalize_path', 'RoleRegistry', 'load_definition', 'ConfigLoader',
    # Conditions and actions
    'VariableResolver', 'ConditionEvaluator', 'ConditionEvaluatorConfig',
    'ActionExecutor', 'ActionExecutorConfig',
    # Runtime state
    'EventKind', 'LedgerEvent', 'WorkflowStore', 'InMemoryWorkflowStore', 'FileStateStorage',
    'DelegationLedger', 'StepProgressTracker', 'TrackerPolicy',
    # Analytics
    'WorkflowAnalytics', 'AnalyticsSnapshot',
    'WorkflowEngine',
]
