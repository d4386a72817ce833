"""
Data model classes for the delegation workflow.
Static configuration models are frozen; runtime models carry to_dict/from_dict
for persistence.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any, FrozenSet, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from .role_registry import RoleRegistry

from .enums import RoleKind, StepKind, ConditionKind, ActionKind, StepState, TaskStatus


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ============================================================================
# Static Configuration Models
# ============================================================================

@dataclass(frozen=True)
class Role:
    """Role definition from the role registry"""
    id: str
    name: str
    priority: int  # Lower runs earlier in a typical flow
    is_active: bool = True
    kind: RoleKind = RoleKind.WORKFLOW
    capabilities: Dict[str, bool] = field(default_factory=dict)
    description: str = ""

    def has_capability(self, capability: str) -> bool:
        return bool(self.capabilities.get(capability, False))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "is_active": self.is_active,
            "kind": self.kind.value,
            "capabilities": dict(self.capabilities),
            "description": self.description,
        }


@dataclass(frozen=True)
class StepCondition:
    """Predicate bound to a step; all of a step's conditions must hold"""
    id: str
    step_id: str
    name: str
    kind: ConditionKind = ConditionKind.CONTEXT_CHECK
    logic: Dict[str, Any] = field(default_factory=dict)  # Interpreted per kind


@dataclass(frozen=True)
class StepAction:
    """Side effect performed once a step's conditions pass"""
    id: str
    step_id: str
    name: str
    kind: ActionKind = ActionKind.REMOTE_CALL
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WorkflowStep:
    """
    One ordered unit of work within a role.

    Steps of a role execute in ascending ``sequence`` order. Gaps in the
    numbering are allowed, duplicates are not.
    """
    id: str
    role_id: str
    name: str
    sequence: int
    is_required: bool = True
    kind: StepKind = StepKind.ACTION
    conditions: Tuple[StepCondition, ...] = ()
    actions: Tuple[StepAction, ...] = ()
    description: str = ""

    @property
    def condition_ids(self) -> List[str]:
        return [c.id for c in self.conditions]

    @property
    def action_ids(self) -> List[str]:
        return [a.id for a in self.actions]


@dataclass(frozen=True)
class RoleTransition:
    """An allowed edge in the role transition graph"""
    from_role: str
    to_role: str
    name: str
    conditions: Dict[str, Any] = field(default_factory=dict)
    requirements: Dict[str, Any] = field(default_factory=dict)
    validation_rules: Dict[str, Any] = field(default_factory=dict)
    handoff_guidance: Any = ""
    context_preservation: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True

    @property
    def edge(self) -> Tuple[str, str]:
        return (self.from_role, self.to_role)


@dataclass(frozen=True)
class WorkflowDefinition:
    """
    Validated, immutable workflow configuration.

    Built by ``load_definition``; passed explicitly to every component that
    needs it.
    """
    roles: 'RoleRegistry'
    steps: Tuple[WorkflowStep, ...] = ()
    transitions: Tuple[RoleTransition, ...] = ()

    def steps_for_role(self, role_id: str) -> List[WorkflowStep]:
        """Steps of a role in execution order"""
        return sorted((s for s in self.steps if s.role_id == role_id), key=lambda s: s.sequence)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        return next((s for s in self.steps if s.id == step_id), None)

    def first_step(self, role_id: str) -> Optional[WorkflowStep]:
        steps = self.steps_for_role(role_id)
        return steps[0] if steps else None

    def next_step(self, role_id: str, after_sequence: int) -> Optional[WorkflowStep]:
        return next((s for s in self.steps_for_role(role_id) if s.sequence > after_sequence), None)

    def transitions_from(self, role_id: str, active_only: bool = True) -> List[RoleTransition]:
        return [
            t for t in self.transitions
            if t.from_role == role_id and (t.is_active or not active_only)
        ]

    def find_transition(self, from_role: str, to_role: str) -> Optional[RoleTransition]:
        """Return the active edge between two roles, if any"""
        return next(
            (t for t in self.transitions if t.edge == (from_role, to_role) and t.is_active),
            None,
        )


# ============================================================================
# Runtime Models
# ============================================================================

@dataclass
class Task:
    """The unit of work routed between roles"""
    id: str
    title: str
    current_role: str
    status: TaskStatus = TaskStatus.NOT_STARTED
    priority: str = "Medium"
    owner: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    project_path: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    redelegation_count: int = 0

    @property
    def duration(self) -> Optional[timedelta]:
        if self.completed_at is None:
            return None
        return self.completed_at - self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "current_role": self.current_role,
            "status": self.status.value,
            "priority": self.priority,
            "owner": self.owner,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
            "project_path": self.project_path,
            "context": self.context,
            "redelegation_count": self.redelegation_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Task':
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            current_role=data["current_role"],
            status=TaskStatus(data.get("status", TaskStatus.NOT_STARTED.value)),
            priority=data.get("priority", "Medium"),
            owner=data.get("owner"),
            created_at=_parse_dt(data.get("created_at")) or datetime.now(),
            completed_at=_parse_dt(data.get("completed_at")),
            project_path=data.get("project_path"),
            context=data.get("context", {}),
            redelegation_count=data.get("redelegation_count", 0),
        )


@dataclass(frozen=True)
class TaskContext:
    """
    Read-only view of a task handed to conditions and actions.

    ``completed_steps`` holds the ids of steps that are COMPLETED or SKIPPED
    for the task when the context was taken.
    """
    task_id: str
    role_id: str
    task_status: TaskStatus = TaskStatus.IN_PROGRESS
    step_id: Optional[str] = None
    project_path: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    completed_steps: FrozenSet[str] = frozenset()

    @classmethod
    def for_task(cls, task: Task, step: Optional[WorkflowStep] = None,
                 completed_steps: Optional[FrozenSet[str]] = None,
                 extra: Optional[Dict[str, Any]] = None) -> 'TaskContext':
        data = dict(task.context)
        if extra:
            data.update(extra)
        return cls(
            task_id=task.id,
            role_id=task.current_role,
            task_status=task.status,
            step_id=step.id if step else None,
            project_path=task.project_path,
            data=data,
            completed_steps=frozenset(completed_steps or ()),
        )

    def with_step(self, step_id: str) -> 'TaskContext':
        return replace(self, step_id=step_id)

    def lookup(self, path: str) -> Tuple[bool, Any]:
        """Resolve a dotted path inside ``data``; returns (found, value)"""
        current: Any = self.data
        for part in path.split('.'):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return False, None
        if current is None:
            return False, None
        return True, current


@dataclass(frozen=True)
class DelegationRecord:
    """
    Ledger entry for one accepted handoff.

    ``success`` is tri-state: None until the destination role finishes or
    rejects the task. A completed record is never modified again.
    """
    id: str
    task_id: str
    from_role: str
    to_role: str
    delegated_at: datetime
    completed_at: Optional[datetime] = None
    success: Optional[bool] = None
    redelegation_count: int = 0
    reason: str = ""
    rejection_reason: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.completed_at is None

    @property
    def duration(self) -> Optional[timedelta]:
        if self.completed_at is None:
            return None
        return self.completed_at - self.delegated_at

    def duration_in(self, unit: timedelta = timedelta(hours=1)) -> float:
        """Duration expressed in ``unit``; 0 while the record is open"""
        duration = self.duration
        if duration is None:
            return 0.0
        return duration / unit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "from_role": self.from_role,
            "to_role": self.to_role,
            "delegated_at": _iso(self.delegated_at),
            "completed_at": _iso(self.completed_at),
            "success": self.success,
            "redelegation_count": self.redelegation_count,
            "reason": self.reason,
            "rejection_reason": self.rejection_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DelegationRecord':
        return cls(
            id=data["id"],
            task_id=data["task_id"],
            from_role=data["from_role"],
            to_role=data["to_role"],
            delegated_at=_parse_dt(data["delegated_at"]),
            completed_at=_parse_dt(data.get("completed_at")),
            success=data.get("success"),
            redelegation_count=data.get("redelegation_count", 0),
            reason=data.get("reason", ""),
            rejection_reason=data.get("rejection_reason"),
        )


@dataclass
class ConditionResult:
    """Outcome of evaluating one condition"""
    condition_id: str
    passed: bool
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "condition_id": self.condition_id,
            "passed": self.passed,
            "reason": self.reason,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConditionResult':
        return cls(
            condition_id=data["condition_id"],
            passed=data["passed"],
            reason=data.get("reason", ""),
            details=data.get("details", {}),
        )


@dataclass
class ActionResult:
    """Outcome of executing one action"""
    action_id: str
    ok: bool
    detail: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0  # seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "ok": self.ok,
            "detail": self.detail,
            "data": self.data,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ActionResult':
        return cls(
            action_id=data["action_id"],
            ok=data["ok"],
            detail=data.get("detail", ""),
            data=data.get("data", {}),
            duration=data.get("duration", 0.0),
        )


@dataclass
class WorkflowStepProgress:
    """
    Progress of one task on one step.

    Created lazily when the task first reaches the step. ``action_results``
    is keyed by action id so a retry never re-runs an action that already
    succeeded.
    """
    task_id: str
    step_id: str
    role_id: str
    state: StepState = StepState.NOT_STARTED
    condition_results: List[ConditionResult] = field(default_factory=list)
    action_results: Dict[str, ActionResult] = field(default_factory=dict)
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.task_id, self.step_id)

    def succeeded_actions(self) -> List[str]:
        return [aid for aid, result in self.action_results.items() if result.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "step_id": self.step_id,
            "role_id": self.role_id,
            "state": self.state.value,
            "condition_results": [c.to_dict() for c in self.condition_results],
            "action_results": {k: v.to_dict() for k, v in self.action_results.items()},
            "attempts": self.attempts,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "updated_at": _iso(self.updated_at),
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowStepProgress':
        return cls(
            task_id=data["task_id"],
            step_id=data["step_id"],
            role_id=data["role_id"],
            state=StepState(data.get("state", StepState.NOT_STARTED.value)),
            condition_results=[ConditionResult.from_dict(c) for c in data.get("condition_results", [])],
            action_results={
                k: ActionResult.from_dict(v) for k, v in data.get("action_results", {}).items()
            },
            attempts=data.get("attempts", 0),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            updated_at=_parse_dt(data.get("updated_at")),
            last_error=data.get("last_error"),
        )


@dataclass
class StepOutcome:
    """Result of one ``advance`` call on a task"""
    task_id: str
    role_id: str
    state: Optional[StepState] = None  # State of the last step touched
    step_id: Optional[str] = None
    role_completed: bool = False
    offered_transitions: List[RoleTransition] = field(default_factory=list)
    condition_results: List[ConditionResult] = field(default_factory=list)
    action_results: List[ActionResult] = field(default_factory=list)
    steps_completed: List[str] = field(default_factory=list)
    withdrawn: bool = False
    message: str = ""

    @property
    def blocked(self) -> bool:
        return self.state == StepState.BLOCKED
