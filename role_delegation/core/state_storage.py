"""
State storage for tasks, step progress and the ledger event log.
Following Single Responsibility Principle - handles state persistence only.
"""

import copy
import threading
import warnings
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import yaml

from .exceptions import WorkflowError
from .models import Task, WorkflowStepProgress
from .workflow_events import LedgerEvent


class WorkflowStore(ABC):
    """
    Abstract store for workflow runtime state.

    Implementations must allow safe concurrent use under a
    single-writer-per-task discipline: callers hold ``task_lock(task_id)``
    around read-modify-write sequences of one task.
    """

    # Tasks

    @abstractmethod
    def add_task(self, task: Task) -> None:
        pass

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[Task]:
        pass

    @abstractmethod
    def save_task(self, task: Task) -> None:
        pass

    @abstractmethod
    def list_tasks(self) -> List[Task]:
        pass

    # Step progress

    @abstractmethod
    def get_progress(self, task_id: str, step_id: str) -> Optional[WorkflowStepProgress]:
        pass

    @abstractmethod
    def save_progress(self, progress: WorkflowStepProgress) -> None:
        pass

    @abstractmethod
    def progress_for_task(self, task_id: str) -> List[WorkflowStepProgress]:
        pass

    # Event log

    @abstractmethod
    def append_event(self, event: LedgerEvent) -> LedgerEvent:
        """Append an event and return it with its assigned sequence"""
        pass

    @abstractmethod
    def events(self, since: int = 0) -> List[LedgerEvent]:
        """Events with sequence greater than ``since``, in order"""
        pass

    @abstractmethod
    def events_for_task(self, task_id: str) -> List[LedgerEvent]:
        pass

    # Concurrency / reads

    @abstractmethod
    def task_lock(self, task_id: str):
        """Context manager serializing writers of one task"""
        pass

    @abstractmethod
    def snapshot(self) -> Dict[str, Any]:
        """Consistent copy of all tasks, progress rows and events"""
        pass

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise WorkflowError(f"Unknown task '{task_id}'", task_id=task_id)
        return task


class InMemoryWorkflowStore(WorkflowStore):
    """
    Thread-safe in-memory store.

    One re-entrant lock per task id serializes that task's writers. A short
    global lock guards the dictionaries and the event sequence counter only;
    it is never held while a task lock is being waited on.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._task_locks: Dict[str, threading.RLock] = {}
        self._tasks: Dict[str, Task] = {}
        self._progress: Dict[Tuple[str, str], WorkflowStepProgress] = {}
        self._events: List[LedgerEvent] = []
        self._sequence = 0

    @contextmanager
    def task_lock(self, task_id: str) -> Iterator[None]:
        with self._lock:
            lock = self._task_locks.setdefault(task_id, threading.RLock())
        with lock:
            yield

    def add_task(self, task: Task) -> None:
        with self._lock:
            if task.id in self._tasks:
                raise WorkflowError(f"Task '{task.id}' already exists", task_id=task.id)
            self._tasks[task.id] = copy.deepcopy(task)

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    def save_task(self, task: Task) -> None:
        with self._lock:
            if task.id not in self._tasks:
                raise WorkflowError(f"Unknown task '{task.id}'", task_id=task.id)
            self._tasks[task.id] = copy.deepcopy(task)

    def list_tasks(self) -> List[Task]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._tasks.values()]

    def get_progress(self, task_id: str, step_id: str) -> Optional[WorkflowStepProgress]:
        with self._lock:
            progress = self._progress.get((task_id, step_id))
            return copy.deepcopy(progress) if progress else None

    def save_progress(self, progress: WorkflowStepProgress) -> None:
        with self._lock:
            self._progress[progress.key] = copy.deepcopy(progress)

    def progress_for_task(self, task_id: str) -> List[WorkflowStepProgress]:
        with self._lock:
            return [copy.deepcopy(p) for key, p in self._progress.items() if key[0] == task_id]

    def append_event(self, event: LedgerEvent) -> LedgerEvent:
        with self._lock:
            self._sequence += 1
            stored = replace(event, sequence=self._sequence)
            self._events.append(stored)
            return stored

    def events(self, since: int = 0) -> List[LedgerEvent]:
        with self._lock:
            return [e for e in self._events if e.sequence > since]

    def events_for_task(self, task_id: str) -> List[LedgerEvent]:
        with self._lock:
            return [e for e in self._events if e.task_id == task_id]

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "tasks": [copy.deepcopy(t) for t in self._tasks.values()],
                "progress": [copy.deepcopy(p) for p in self._progress.values()],
                "events": list(self._events),
            }

    def restore(self, tasks: List[Task], progress: List[WorkflowStepProgress],
                events: List[LedgerEvent]) -> None:
        """Replace the whole content, keeping event sequences as given"""
        with self._lock:
            self._tasks = {t.id: copy.deepcopy(t) for t in tasks}
            self._progress = {p.key: copy.deepcopy(p) for p in progress}
            self._events = sorted(events, key=lambda e: e.sequence)
            self._sequence = self._events[-1].sequence if self._events else 0


class FileStateStorage:
    """File-based state storage implementation (YAML)"""

    def save(self, store: WorkflowStore, path: Path) -> None:
        """Save a store's full state to a YAML file"""
        try:
            # Ensure parent directory exists
            path.parent.mkdir(parents=True, exist_ok=True)

            state = store.snapshot()
            data = {
                "tasks": [t.to_dict() for t in state["tasks"]],
                "progress": [p.to_dict() for p in state["progress"]],
                "events": [e.to_dict() for e in state["events"]],
            }
            with open(path, 'w', encoding='utf-8') as f:
                yaml.safe_dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)
        except (OSError, yaml.YAMLError) as e:
            # Graceful degradation: log warning but don't interrupt workflow
            warnings.warn(f"Failed to save state to {path}: {e}", UserWarning)

    def load(self, path: Path) -> Optional[InMemoryWorkflowStore]:
        """Load a store from a YAML file, returns None if not found or unreadable"""
        if not path.exists():
            return None

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
            if data is None:
                return None
            store = InMemoryWorkflowStore()
            store.restore(
                tasks=[Task.from_dict(t) for t in data.get("tasks", [])],
                progress=[WorkflowStepProgress.from_dict(p) for p in data.get("progress", [])],
                events=[LedgerEvent.from_dict(e) for e in data.get("events", [])],
            )
            return store
        except (OSError, yaml.YAMLError, KeyError, ValueError, TypeError) as e:
            # Graceful degradation: log warning and return None
            warnings.warn(f"Failed to load state from {path}: {e}. Starting with fresh state.", UserWarning)
            return None

    def exists(self, path: Path) -> bool:
        """Check if state file exists"""
        return path.exists()
