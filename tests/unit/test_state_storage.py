"""
Unit tests for the in-memory store and YAML state persistence.
"""
import threading
import pytest
from datetime import datetime

from role_delegation.core.enums import StepState, TaskStatus
from role_delegation.core.exceptions import WorkflowError
from role_delegation.core.models import ActionResult, ConditionResult, Task, WorkflowStepProgress
from role_delegation.core.state_storage import FileStateStorage, InMemoryWorkflowStore
from role_delegation.core.workflow_events import EventKind, LedgerEvent


NOW = datetime(2024, 3, 1, 9, 0, 0)


def make_task(task_id: str = "t-1") -> Task:
    return Task(id=task_id, title="Login form", current_role="boomerang", created_at=NOW,
                context={"requirements": "login"})


@pytest.fixture
def store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


class TestInMemoryWorkflowStore:
    """Test task, progress and event storage."""

    def test_add_and_get_task(self, store):
        store.add_task(make_task())
        assert store.get_task("t-1").title == "Login form"
        assert store.get_task("missing") is None

    def test_duplicate_task_rejected(self, store):
        store.add_task(make_task())
        with pytest.raises(WorkflowError, match="already exists"):
            store.add_task(make_task())

    def test_save_unknown_task_rejected(self, store):
        with pytest.raises(WorkflowError, match="Unknown task"):
            store.save_task(make_task())

    def test_require_task(self, store):
        with pytest.raises(WorkflowError, match="Unknown task 'ghost'"):
            store.require_task("ghost")

    def test_returned_tasks_are_copies(self, store):
        store.add_task(make_task())
        task = store.get_task("t-1")
        task.context["requirements"] = "changed"
        task.status = TaskStatus.COMPLETED
        stored = store.get_task("t-1")
        assert stored.context["requirements"] == "login"
        assert stored.status == TaskStatus.NOT_STARTED

    def test_progress(self, store):
        progress = WorkflowStepProgress(task_id="t-1", step_id="boomerang.analyze", role_id="boomerang")
        store.save_progress(progress)
        progress.state = StepState.COMPLETED
        assert store.get_progress("t-1", "boomerang.analyze").state == StepState.NOT_STARTED
        store.save_progress(progress)
        assert [p.state for p in store.progress_for_task("t-1")] == [StepState.COMPLETED]
        assert store.progress_for_task("t-2") == []

    def test_event_sequences_increase(self, store):
        first = store.append_event(LedgerEvent(EventKind.TASK_CREATED, "t-1", NOW, to_role="boomerang"))
        second = store.append_event(LedgerEvent(EventKind.TASK_CREATED, "t-2", NOW, to_role="boomerang"))
        assert (first.sequence, second.sequence) == (1, 2)
        assert store.events(since=1) == [second]
        assert store.events_for_task("t-1") == [first]

    def test_concurrent_appends_get_unique_sequences(self, store):
        def append(n):
            for _ in range(50):
                store.append_event(LedgerEvent(EventKind.TASK_CREATED, f"t-{n}", NOW))

        threads = [threading.Thread(target=append, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        sequences = [e.sequence for e in store.events()]
        assert sequences == list(range(1, 201))

    def test_task_lock_is_reentrant(self, store):
        store.add_task(make_task())
        with store.task_lock("t-1"):
            with store.task_lock("t-1"):
                task = store.require_task("t-1")
                task.status = TaskStatus.IN_PROGRESS
                store.save_task(task)
        assert store.get_task("t-1").status == TaskStatus.IN_PROGRESS

    def test_restore_keeps_sequences(self, store):
        events = [LedgerEvent(EventKind.TASK_CREATED, "t-1", NOW, sequence=7)]
        store.restore([make_task()], [], events)
        assert store.append_event(LedgerEvent(EventKind.TASK_WITHDRAWN, "t-1", NOW)).sequence == 8


class TestFileStateStorage:
    """Test YAML persistence of a store."""

    def test_save_and_load(self, store, temp_workspace):
        store.add_task(make_task())
        store.save_progress(WorkflowStepProgress(
            task_id="t-1", step_id="boomerang.analyze", role_id="boomerang",
            state=StepState.BLOCKED, attempts=2, updated_at=NOW,
            condition_results=[ConditionResult("c", False, "missing")],
            action_results={"a": ActionResult("a", True, "done", {"n": 1}, 0.5)},
        ))
        store.append_event(LedgerEvent(EventKind.TASK_CREATED, "t-1", NOW, to_role="boomerang",
                                       metadata={"source": "test"}))

        storage = FileStateStorage()
        path = temp_workspace / "state" / "workflow.yaml"
        storage.save(store, path)
        assert storage.exists(path)

        loaded = storage.load(path)
        assert loaded.get_task("t-1") == store.get_task("t-1")
        assert loaded.progress_for_task("t-1") == store.progress_for_task("t-1")
        assert loaded.events() == store.events()

    def test_load_missing_file(self, temp_workspace):
        assert FileStateStorage().load(temp_workspace / "missing.yaml") is None

    def test_load_corrupt_file_warns(self, temp_workspace):
        path = temp_workspace / "state.yaml"
        path.write_text("tasks:\n  - {id: t-1}\n")
        with pytest.warns(UserWarning, match="Failed to load state"):
            assert FileStateStorage().load(path) is None
