"""
Step progress tracker: the per-task step state machine.
Following Single Responsibility Principle - handles step progression only.

States per (task, step)::

    NOT_STARTED -> IN_PROGRESS -> COMPLETED
                               -> BLOCKED -> IN_PROGRESS (on retry)
                               -> SKIPPED (optional steps only)
"""

import threading
import warnings
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set

from .action_executor import ActionExecutor
from .condition_evaluator import ConditionEvaluator
from .enums import StepState, TaskStatus
from .exceptions import WorkflowError, StepSkippedWarning
from .models import (
    Task, TaskContext, WorkflowDefinition, WorkflowStep, WorkflowStepProgress, StepOutcome
)
from .state_storage import WorkflowStore
from .workflow_events import EventKind, LedgerEvent


@dataclass
class TrackerPolicy:
    """Retry policy for steps whose conditions do not pass"""
    max_optional_attempts: int = 3  # Optional steps are skipped after this many failed attempts


class StepProgressTracker:
    """
    Advances a task through the steps of its current role.

    Steps run strictly in ascending sequence. A task is advanced by at most
    one caller at a time; no lock is held while conditions are evaluated or
    actions executed, so other tasks are never held up.
    """

    def __init__(self, definition: WorkflowDefinition, store: WorkflowStore,
                 evaluator: Optional[ConditionEvaluator] = None,
                 executor: Optional[ActionExecutor] = None,
                 policy: Optional[TrackerPolicy] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.definition = definition
        self.store = store
        self.evaluator = evaluator or ConditionEvaluator()
        self.executor = executor or ActionExecutor()
        self.policy = policy or TrackerPolicy()
        self.clock = clock
        self._active: Set[str] = set()
        self._active_lock = threading.Lock()

    def _terminal_steps(self, task_id: str) -> Set[str]:
        return {p.step_id for p in self.store.progress_for_task(task_id) if p.state.is_terminal}

    def current_step(self, task_id: str) -> Optional[WorkflowStep]:
        """Lowest-sequence step of the current role that is not yet finished"""
        task = self.store.require_task(task_id)
        done = self._terminal_steps(task_id)
        return next((s for s in self.definition.steps_for_role(task.current_role)
                     if s.id not in done), None)

    def _claim(self, task_id: str) -> None:
        with self._active_lock:
            if task_id in self._active:
                raise WorkflowError("Task is already being advanced", task_id=task_id)
            self._active.add(task_id)

    def _release(self, task_id: str) -> None:
        with self._active_lock:
            self._active.discard(task_id)

    def _start(self, task_id: str, context_data: Optional[Dict[str, Any]]) -> Task:
        with self.store.task_lock(task_id):
            task = self.store.require_task(task_id)
            if task.status == TaskStatus.CANCELLED:
                raise WorkflowError("Task has been withdrawn", task_id=task_id,
                                    role_id=task.current_role)
            if task.status == TaskStatus.COMPLETED:
                raise WorkflowError("Task is already completed", task_id=task_id,
                                    role_id=task.current_role)
            changed = False
            if context_data:
                task.context.update(context_data)
                changed = True
            if task.status == TaskStatus.NOT_STARTED:
                task.status = TaskStatus.IN_PROGRESS
                changed = True
            if changed:
                self.store.save_task(task)
            return task

    def advance(self, task_id: str, context_data: Optional[Dict[str, Any]] = None) -> StepOutcome:
        """
        Run the current role's steps in order until one blocks, the role's
        steps are exhausted, or the task is withdrawn.

        Args:
            task_id: Task to advance
            context_data: Values merged into the task context first

        Raises:
            WorkflowError: Unknown, withdrawn or completed task, or the task
                is already being advanced by another caller
        """
        self._claim(task_id)
        try:
            task = self._start(task_id, context_data)
            outcome = StepOutcome(task_id=task_id, role_id=task.current_role)

            while True:
                with self.store.task_lock(task_id):
                    task = self.store.require_task(task_id)
                    if task.status == TaskStatus.CANCELLED:
                        outcome.withdrawn = True
                        outcome.message = "Task withdrawn; no further steps started"
                        return outcome
                    step = self.current_step(task_id)
                    if step is None:
                        outcome.role_completed = True
                        outcome.offered_transitions = self.definition.transitions_from(task.current_role)
                        outcome.message = f"All steps for role '{task.current_role}' are finished"
                        return outcome
                    progress = self._begin(task, step)
                    context = TaskContext.for_task(task, step, frozenset(self._terminal_steps(task_id)))

                self._run_step(step, progress, context, outcome)
                if progress.state == StepState.BLOCKED:
                    return outcome
        finally:
            self._release(task_id)

    def retry(self, task_id: str) -> StepOutcome:
        """Re-attempt a blocked step; already succeeded actions are not re-run"""
        return self.advance(task_id)

    def _begin(self, task: Task, step: WorkflowStep) -> WorkflowStepProgress:
        now = self.clock()
        progress = self.store.get_progress(task.id, step.id) or WorkflowStepProgress(
            task_id=task.id, step_id=step.id, role_id=step.role_id)
        progress.state = StepState.IN_PROGRESS
        progress.attempts += 1
        progress.started_at = progress.started_at or now
        progress.updated_at = now
        self.store.save_progress(progress)
        return progress

    def _save(self, progress: WorkflowStepProgress) -> None:
        progress.updated_at = self.clock()
        if progress.state.is_terminal:
            progress.completed_at = progress.updated_at
        with self.store.task_lock(progress.task_id):
            self.store.save_progress(progress)

    def _run_step(self, step: WorkflowStep, progress: WorkflowStepProgress,
                  context: TaskContext, outcome: StepOutcome) -> None:
        """Evaluate conditions, then execute actions; runs without any lock held"""
        outcome.step_id = step.id
        outcome.action_results = []
        outcome.condition_results = self.evaluator.check_all(step.conditions, context)
        progress.condition_results = list(outcome.condition_results)

        failed = [r for r in outcome.condition_results if not r.passed]
        if failed:
            reasons = "; ".join(r.reason for r in failed)
            if not step.is_required and progress.attempts >= self.policy.max_optional_attempts:
                progress.state = StepState.SKIPPED
                progress.last_error = reasons
                warnings.warn(
                    f"Optional step '{step.id}' skipped for task {context.task_id} "
                    f"after {progress.attempts} attempts: {reasons}",
                    StepSkippedWarning,
                    stacklevel=4,
                )
                outcome.steps_completed.append(step.id)
            else:
                progress.state = StepState.BLOCKED
                progress.last_error = reasons
                outcome.message = f"Step '{step.id}' blocked: {reasons}"
            outcome.state = progress.state
            self._save(progress)
            return

        for action in step.actions:
            previous = progress.action_results.get(action.id)
            if previous is not None and previous.ok:
                continue
            result = self.executor.execute(action, context)
            progress.action_results[action.id] = result
            outcome.action_results.append(result)
            if not result.ok:
                progress.state = StepState.BLOCKED
                progress.last_error = result.detail
                outcome.state = progress.state
                outcome.message = f"Action '{action.id}' failed: {result.detail}"
                self._save(progress)
                return

        progress.state = StepState.COMPLETED
        progress.last_error = None
        outcome.state = progress.state
        outcome.steps_completed.append(step.id)
        self._save(progress)

    def withdraw(self, task_id: str) -> Task:
        """
        Withdraw a task from the workflow.

        An action already running for the task finishes; no new step starts.
        """
        with self.store.task_lock(task_id):
            task = self.store.require_task(task_id)
            if task.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
                raise WorkflowError(f"Task is already {task.status.value}", task_id=task_id)
            task.status = TaskStatus.CANCELLED
            self.store.save_task(task)
            self.store.append_event(LedgerEvent(
                kind=EventKind.TASK_WITHDRAWN,
                task_id=task_id,
                timestamp=self.clock(),
                from_role=task.current_role,
            ))
        return task

    def role_progress(self, task_id: str, role_id: str) -> Dict[str, Any]:
        steps = self.definition.steps_for_role(role_id)
        states: Dict[str, StepState] = {
            p.step_id: p.state for p in self.store.progress_for_task(task_id)
            if p.role_id == role_id
        }
        finished = [s for s in steps if states.get(s.id, StepState.NOT_STARTED).is_terminal]
        blocked = [s.id for s in steps if states.get(s.id) == StepState.BLOCKED]
        total = len(steps)
        return {
            "role_id": role_id,
            "completed": len(finished),
            "skipped": sum(1 for s in finished if states[s.id] == StepState.SKIPPED),
            "blocked": blocked,
            "total": total,
            "percentage": round(len(finished) / total * 100, 1) if total else 0.0,
        }

    def reset_cursor(self, task_id: str, role_id: str) -> None:
        """Restart a role's steps from the first one, e.g. when a task returns to it"""
        with self.store.task_lock(task_id):
            for progress in self.store.progress_for_task(task_id):
                if progress.role_id != role_id:
                    continue
                self.store.save_progress(WorkflowStepProgress(
                    task_id=task_id, step_id=progress.step_id, role_id=role_id,
                    updated_at=self.clock(),
                ))

