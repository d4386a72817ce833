"""
Delegation ledger: validates role handoffs and records them.
Following Single Responsibility Principle - handles delegation bookkeeping only.

The ledger writes LedgerEvents to the store and keeps an incrementally
updated projection of DelegationRecords derived from them. ``rebuild()``
recomputes the projection, and task ownership, from the full log.
"""

import threading
import uuid
import warnings
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from .condition_evaluator import ConditionEvaluator
from .enums import ConditionKind, TaskStatus
from .exceptions import TransitionRejected, WorkflowError, WorkflowWarning, SecurityError
from .models import (
    DelegationRecord, RoleTransition, StepCondition, Task, TaskContext, WorkflowDefinition
)
from .schema_loader import normalize_path
from .state_storage import WorkflowStore
from .workflow_events import EventKind, LedgerEvent

if TYPE_CHECKING:
    from .progress_tracker import StepProgressTracker


# Events that change which role owns a task; the owner is the event's to_role
OWNERSHIP_EVENTS = (EventKind.TASK_CREATED, EventKind.DELEGATED, EventKind.DELEGATION_REJECTED)
CLOSED_STATUSES = (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


class DelegationLedger:
    """Append-only record of handoffs between roles"""

    def __init__(self, definition: WorkflowDefinition, store: WorkflowStore,
                 evaluator: Optional[ConditionEvaluator] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 tracker: Optional['StepProgressTracker'] = None):
        self.definition = definition
        self.store = store
        self.evaluator = evaluator or ConditionEvaluator()
        self.clock = clock
        self.tracker = tracker
        self._projection_lock = threading.Lock()
        self._records: Dict[str, DelegationRecord] = {}
        self._applied = 0

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def _apply(self, event: LedgerEvent) -> None:
        if event.kind == EventKind.DELEGATED:
            self._records[event.record_id] = DelegationRecord(
                id=event.record_id,
                task_id=event.task_id,
                from_role=event.from_role,
                to_role=event.to_role,
                delegated_at=event.timestamp,
                redelegation_count=event.redelegation_count,
                reason=event.reason,
            )
        elif event.kind == EventKind.DELEGATION_COMPLETED:
            record = self._records[event.record_id]
            self._records[event.record_id] = replace(
                record, completed_at=event.timestamp, success=event.success)
        elif event.kind == EventKind.DELEGATION_REJECTED:
            record = self._records[event.record_id]
            self._records[event.record_id] = replace(
                record, completed_at=event.timestamp, success=False, rejection_reason=event.reason)

    def _sync(self) -> None:
        with self._projection_lock:
            for event in self.store.events(since=self._applied):
                self._apply(event)
                self._applied = event.sequence

    def rebuild(self) -> int:
        """
        Recompute records and task ownership from the whole event log.

        Returns the number of delegation records in the projection.
        """
        with self._projection_lock:
            self._records = {}
            self._applied = 0
            owners: Dict[str, str] = {}
            for event in self.store.events():
                self._apply(event)
                self._applied = event.sequence
                if event.kind in OWNERSHIP_EVENTS and event.to_role:
                    owners[event.task_id] = event.to_role
            records = list(self._records.values())

        for task_id, owner in owners.items():
            with self.store.task_lock(task_id):
                task = self.store.get_task(task_id)
                if task is None:
                    continue
                count = max((r.redelegation_count for r in records if r.task_id == task_id), default=0)
                if task.current_role != owner or task.redelegation_count != count:
                    task.current_role = owner
                    task.redelegation_count = count
                    self.store.save_task(task)
        return len(records)

    def records(self, task_id: Optional[str] = None) -> List[DelegationRecord]:
        """Records in the order their handoffs were accepted"""
        self._sync()
        with self._projection_lock:
            records = list(self._records.values())
        if task_id is not None:
            records = [r for r in records if r.task_id == task_id]
        return records

    def open_record(self, task_id: str) -> Optional[DelegationRecord]:
        """The unfinished record whose destination currently owns the task"""
        task = self.store.require_task(task_id)
        open_records = [r for r in self.records(task_id)
                        if r.is_open and r.to_role == task.current_role]
        return open_records[-1] if open_records else None

    def redelegation_count(self, task_id: str) -> int:
        return max((r.redelegation_count for r in self.records(task_id)), default=0)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _completed_steps(self, task_id: str) -> Set[str]:
        return {p.step_id for p in self.store.progress_for_task(task_id) if p.state.is_terminal}

    def _owned_since(self, task_id: str) -> Optional[datetime]:
        owned = [e for e in self.store.events_for_task(task_id) if e.kind in OWNERSHIP_EVENTS]
        return owned[-1].timestamp if owned else None

    def _step_done(self, ref: str, role_id: str, completed: Set[str]) -> bool:
        return ref in completed or f"{role_id}.{ref}" in completed

    def _check_conditions(self, transition: RoleTransition, task: Task,
                          completed: Set[str]) -> List[str]:
        errors: List[str] = []
        context = TaskContext.for_task(task, completed_steps=frozenset(completed))

        for key, value in transition.conditions.items():
            if key == "required_steps_completed":
                missing = [s for s in value if not self._step_done(s, task.current_role, completed)]
                if missing:
                    errors.append(f"Required steps not completed: {', '.join(missing)}")
            elif key == "required_task_status":
                if task.status.value != value:
                    errors.append(f"Task status is '{task.status.value}', required '{value}'")
            elif key == "minimum_time_in_role":
                since = self._owned_since(task.id)
                if since and self.clock() - since < timedelta(seconds=float(value)):
                    warnings.warn(
                        f"Task {task.id} leaves role '{task.current_role}' before "
                        f"the minimum time in role ({value}s)",
                        WorkflowWarning,
                        stacklevel=3,
                    )
            elif key in ("predicate", "expression"):
                logic: Dict[str, Any] = (
                    {"predicate": value, "parameters": transition.conditions.get("parameters", {})}
                    if key == "predicate" else {"type": "expression", "expression": value}
                )
                condition = StepCondition(
                    id=f"{transition.name}.{key}", step_id="", name=key,
                    kind=ConditionKind.CUSTOM_LOGIC, logic=logic,
                )
                result = self.evaluator.check(condition, context)
                if not result.passed:
                    errors.append(result.reason)
            elif key == "parameters":
                continue
            elif value is True and not task.context.get(key):
                errors.append(f"Condition '{key}' not satisfied")
        return errors

    def _check_requirements(self, transition: RoleTransition, task: Task,
                            completed: Set[str]) -> List[str]:
        errors: List[str] = []
        for key, value in transition.requirements.items():
            if key == "required_deliverables":
                for deliverable in value:
                    if not self._deliverable_present(deliverable, task, completed):
                        errors.append(f"Missing deliverable: {deliverable}")
            elif key == "quality_gates":
                gates = task.context.get("quality_gates", {})
                failed = [g for g in value if not (isinstance(gates, dict) and gates.get(g))]
                if failed:
                    errors.append(f"Quality gates not passed: {', '.join(failed)}")
            elif value is True and not task.context.get(key):
                errors.append(f"Requirement '{key}' not met")
        return errors

    def _deliverable_present(self, deliverable: str, task: Task, completed: Set[str]) -> bool:
        prefix, _, name = deliverable.partition(":")
        if not name:
            return bool(task.context.get(deliverable))
        if prefix == "step":
            return self._step_done(name, task.current_role, completed)
        if prefix == "file":
            if not task.project_path:
                return False
            try:
                return normalize_path(task.project_path, name).exists()
            except SecurityError:
                return False
        return bool(task.context.get(deliverable))

    def _check(self, task: Task, from_role: str,
               to_role: str) -> Tuple[Optional[RoleTransition], List[str]]:
        """Return the matching edge (if any) and every failed check"""
        errors: List[str] = []
        transition = self.definition.find_transition(from_role, to_role)
        if transition is None:
            inactive = any(t.edge == (from_role, to_role)
                           for t in self.definition.transitions_from(from_role, active_only=False))
            state = "is inactive" if inactive else "does not exist"
            return None, [f"Transition from '{from_role}' to '{to_role}' {state}"]

        if task.current_role != from_role:
            errors.append(f"Task is owned by '{task.current_role}', not '{from_role}'")
        if task.status in CLOSED_STATUSES:
            errors.append(f"Task is {task.status.value}")
        if not self.definition.roles.is_active(to_role):
            errors.append(f"Role '{to_role}' is not active")

        completed = self._completed_steps(task.id)
        errors.extend(self._check_conditions(transition, task, completed))
        errors.extend(self._check_requirements(transition, task, completed))
        return transition, errors

    def validate_transition(self, task_id: str, from_role: str, to_role: str) -> Tuple[bool, List[str]]:
        """
        Check whether a handoff would be accepted, without recording anything.

        Returns:
            Tuple of (is_valid, error_messages)
        """
        task = self.store.require_task(task_id)
        _, errors = self._check(task, from_role, to_role)
        return len(errors) == 0, errors

    def available_transitions(self, task_id: str) -> List[Dict[str, Any]]:
        """Active edges out of the task's current role with their readiness"""
        task = self.store.require_task(task_id)
        options = []
        for transition in self.definition.transitions_from(task.current_role):
            _, errors = self._check(task, task.current_role, transition.to_role)
            options.append({
                "to_role": transition.to_role,
                "name": transition.name,
                "allowed": not errors,
                "errors": errors,
                "handoff_guidance": transition.handoff_guidance,
                "validation_rules": transition.validation_rules,
            })
        return options

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _latest_timestamp(self, task_id: str) -> Optional[datetime]:
        events = self.store.events_for_task(task_id)
        return max((e.timestamp for e in events), default=None)

    def _now(self, task_id: str) -> datetime:
        """Clock reading that never runs behind the task's previous events"""
        now = self.clock()
        latest = self._latest_timestamp(task_id)
        return max(now, latest) if latest else now

    def register_task(self, task: Task) -> Task:
        """Add a new task to the store and log its initial ownership"""
        self.store.add_task(task)
        self.store.append_event(LedgerEvent(
            kind=EventKind.TASK_CREATED,
            task_id=task.id,
            timestamp=task.created_at,
            to_role=task.current_role,
        ))
        return task

    def request_transition(self, task_id: str, from_role: str, to_role: str,
                           reason: str = "") -> DelegationRecord:
        """
        Hand a task from one role to another.

        An edge-less pair is rejected without recording anything. An existing
        edge whose checks fail is recorded as a ``transition_rejected``
        attempt. On acceptance an open record is created, ownership moves to
        ``to_role`` and the step cursor restarts at that role's first step.

        Raises:
            TransitionRejected: If the handoff is not allowed
        """
        with self.store.task_lock(task_id):
            task = self.store.require_task(task_id)
            transition, errors = self._check(task, from_role, to_role)
            if transition is None:
                raise TransitionRejected(errors[0], task_id=task_id,
                                         from_role=from_role, to_role=to_role, errors=errors)
            if errors:
                self.store.append_event(LedgerEvent(
                    kind=EventKind.TRANSITION_REJECTED,
                    task_id=task_id,
                    timestamp=self._now(task_id),
                    from_role=from_role,
                    to_role=to_role,
                    reason="; ".join(errors),
                    metadata={"transition": transition.name, "requested_reason": reason},
                ))
                raise TransitionRejected(errors[0], task_id=task_id,
                                         from_role=from_role, to_role=to_role, errors=errors)

            history = self.records(task_id)
            count = max((r.redelegation_count for r in history), default=0)
            if any(r.to_role == to_role for r in history):
                count += 1

            now = self._now(task_id)
            # Incoming work handed on without an explicit verdict
            for record in history:
                if record.is_open:
                    self.store.append_event(LedgerEvent(
                        kind=EventKind.DELEGATION_COMPLETED,
                        task_id=task_id,
                        timestamp=max(now, record.delegated_at),
                        from_role=record.from_role,
                        to_role=record.to_role,
                        record_id=record.id,
                        success=None,
                    ))

            record_id = uuid.uuid4().hex
            self.store.append_event(LedgerEvent(
                kind=EventKind.DELEGATED,
                task_id=task_id,
                timestamp=now,
                from_role=from_role,
                to_role=to_role,
                record_id=record_id,
                redelegation_count=count,
                reason=reason,
                metadata={"transition": transition.name},
            ))

            task.current_role = to_role
            task.status = TaskStatus.IN_PROGRESS
            task.redelegation_count = count
            self.store.save_task(task)
            if self.tracker is not None:
                self.tracker.reset_cursor(task_id, to_role)

        self._sync()
        return self._records[record_id]

    def complete_delegation(self, task_id: str, success: Optional[bool] = True,
                            note: str = "") -> DelegationRecord:
        """Finalize the open record whose destination currently owns the task"""
        with self.store.task_lock(task_id):
            record = self.open_record(task_id)
            if record is None:
                raise WorkflowError("No open delegation to complete", task_id=task_id)
            self.store.append_event(LedgerEvent(
                kind=EventKind.DELEGATION_COMPLETED,
                task_id=task_id,
                timestamp=max(self._now(task_id), record.delegated_at),
                from_role=record.from_role,
                to_role=record.to_role,
                record_id=record.id,
                success=success,
                reason=note,
            ))
        self._sync()
        return self._records[record.id]

    def reject_delegation(self, task_id: str, reason: str) -> DelegationRecord:
        """
        The current owner refuses the task: the record fails and ownership
        returns to the role that delegated it.
        """
        with self.store.task_lock(task_id):
            record = self.open_record(task_id)
            if record is None:
                raise WorkflowError("No open delegation to reject", task_id=task_id)
            self.store.append_event(LedgerEvent(
                kind=EventKind.DELEGATION_REJECTED,
                task_id=task_id,
                timestamp=max(self._now(task_id), record.delegated_at),
                from_role=record.to_role,
                to_role=record.from_role,
                record_id=record.id,
                success=False,
                reason=reason,
            ))
            task = self.store.require_task(task_id)
            task.current_role = record.from_role
            task.status = TaskStatus.NEEDS_CHANGES
            self.store.save_task(task)
        self._sync()
        return self._records[record.id]

    def close_task(self, task_id: str) -> Task:
        """Mark a task completed, finalizing its open delegation as successful"""
        with self.store.task_lock(task_id):
            task = self.store.require_task(task_id)
            if task.status in CLOSED_STATUSES:
                raise WorkflowError(f"Task is already {task.status.value}", task_id=task_id)
            if self.open_record(task_id) is not None:
                self.complete_delegation(task_id, success=True)
            now = self._now(task_id)
            self.store.append_event(LedgerEvent(
                kind=EventKind.TASK_COMPLETED,
                task_id=task_id,
                timestamp=now,
                from_role=task.current_role,
            ))
            task.status = TaskStatus.COMPLETED
            task.completed_at = now
            self.store.save_task(task)
        return task

