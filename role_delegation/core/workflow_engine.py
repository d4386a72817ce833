"""
Workflow engine facade wiring definition, store, tracker, ledger and analytics.
"""

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .action_executor import ActionExecutor
from .analytics import AnalyticsSnapshot, WorkflowAnalytics
from .condition_evaluator import ConditionEvaluator
from .config_loader import ConfigLoader
from .delegation_ledger import DelegationLedger
from .enums import TaskStatus
from .exceptions import ValidationError
from .models import DelegationRecord, StepOutcome, Task, WorkflowDefinition
from .progress_tracker import StepProgressTracker, TrackerPolicy
from .state_storage import FileStateStorage, InMemoryWorkflowStore, WorkflowStore


class WorkflowEngine:
    """
    Entry point for driving tasks through roles.

    Example:
        engine = WorkflowEngine.from_directory(Path("workflow-rules"))
        task = engine.create_task("Add login", "boomerang")
        outcome = engine.advance(task.id)
        if outcome.role_completed:
            engine.delegate(task.id, "researcher", reason="needs research")
    """

    def __init__(self, definition: WorkflowDefinition,
                 store: Optional[WorkflowStore] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 evaluator: Optional[ConditionEvaluator] = None,
                 executor: Optional[ActionExecutor] = None,
                 policy: Optional[TrackerPolicy] = None):
        self.definition = definition
        self.clock = clock
        self.evaluator = evaluator or ConditionEvaluator()
        self.executor = executor or ActionExecutor()
        self.policy = policy or TrackerPolicy()
        self.state_storage = FileStateStorage()
        self._attach(store or InMemoryWorkflowStore())

    def _attach(self, store: WorkflowStore) -> None:
        self.store = store
        self.tracker = StepProgressTracker(
            self.definition, store, self.evaluator, self.executor, self.policy, clock=self.clock)
        self.ledger = DelegationLedger(
            self.definition, store, self.evaluator, clock=self.clock, tracker=self.tracker)

    @classmethod
    def from_directory(cls, path: Path, role_ids: Optional[Sequence[str]] = None,
                       **kwargs: Any) -> 'WorkflowEngine':
        """Load per-role configuration from ``path`` and build an engine"""
        return cls(ConfigLoader(Path(path)).load(role_ids), **kwargs)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(self, title: str, role_id: str, priority: str = "Medium",
                    owner: Optional[str] = None, project_path: Optional[str] = None,
                    context: Optional[Dict[str, Any]] = None,
                    task_id: Optional[str] = None) -> Task:
        """Create a task owned by ``role_id``"""
        if not self.definition.roles.is_active(role_id):
            raise ValidationError(
                f"Cannot start a task in unknown or inactive role '{role_id}'",
                field="role_id",
                value=role_id,
            )
        task = Task(
            id=task_id or uuid.uuid4().hex[:12],
            title=title,
            current_role=role_id,
            priority=priority,
            owner=owner,
            created_at=self.clock(),
            project_path=str(project_path) if project_path else None,
            context=dict(context or {}),
        )
        return self.ledger.register_task(task)

    def get_task(self, task_id: str) -> Task:
        return self.store.require_task(task_id)

    def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        tasks = self.store.list_tasks()
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        return tasks

    def advance(self, task_id: str, context: Optional[Dict[str, Any]] = None) -> StepOutcome:
        """
        Run the current role's steps.

        When the role finishes its last step, the delegation that brought the
        task to this role is finalized as successful.
        """
        outcome = self.tracker.advance(task_id, context)
        if outcome.role_completed:
            with self.store.task_lock(task_id):
                record = self.ledger.open_record(task_id)
                if record is not None and record.to_role == outcome.role_id:
                    self.ledger.complete_delegation(task_id, success=True)
        return outcome

    def delegate(self, task_id: str, to_role: str, reason: str = "") -> DelegationRecord:
        """
        Hand the task on from its current role.

        An incoming delegation still open at this point (the role never
        finished its steps) is finalized as successful once the new handoff
        is known to be acceptable.

        Raises:
            TransitionRejected: If the handoff is not allowed
        """
        with self.store.task_lock(task_id):
            task = self.store.require_task(task_id)
            ok, _ = self.ledger.validate_transition(task_id, task.current_role, to_role)
            if ok and self.ledger.open_record(task_id) is not None:
                self.ledger.complete_delegation(task_id, success=True)
            return self.ledger.request_transition(task_id, task.current_role, to_role, reason)

    def reject(self, task_id: str, reason: str) -> DelegationRecord:
        return self.ledger.reject_delegation(task_id, reason)

    def complete_task(self, task_id: str) -> Task:
        return self.ledger.close_task(task_id)

    def withdraw(self, task_id: str) -> Task:
        return self.tracker.withdraw(task_id)

    def available_transitions(self, task_id: str) -> List[Dict[str, Any]]:
        return self.ledger.available_transitions(task_id)

    # ------------------------------------------------------------------
    # Analytics / persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> AnalyticsSnapshot:
        state = self.store.snapshot()
        return AnalyticsSnapshot(
            tasks=state["tasks"],
            records=self.ledger.records(),
            progress=state["progress"],
        )

    def analytics(self, **kwargs: Any) -> Dict[str, Any]:
        """Full analytics report; keyword arguments configure WorkflowAnalytics"""
        kwargs.setdefault("clock", self.clock)
        return WorkflowAnalytics(**kwargs).generate_report(self.snapshot())

    def save_state(self, path: Path) -> None:
        self.state_storage.save(self.store, Path(path))

    def load_state(self, path: Path) -> bool:
        """
        Replace the current store with one loaded from ``path``.

        Returns False (keeping the current state) if nothing could be loaded.
        """
        store = self.state_storage.load(Path(path))
        if store is None:
            return False
        self._attach(store)
        self.ledger.rebuild()
        return True
