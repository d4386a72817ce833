"""
Unit tests for StepProgressTracker.
"""
import threading
import pytest

from role_delegation.core.action_executor import ActionExecutor
from role_delegation.core.definition_loader import load_definition
from role_delegation.core.enums import StepState, TaskStatus
from role_delegation.core.exceptions import StepSkippedWarning, WorkflowError
from role_delegation.core.progress_tracker import TrackerPolicy
from role_delegation.core.workflow_engine import WorkflowEngine


class TestAdvance:
    """Test running a role's steps."""

    def test_blocked_until_context_supplied(self, engine):
        task = engine.create_task("Login form", "boomerang")
        outcome = engine.advance(task.id)
        assert outcome.blocked
        assert outcome.step_id == "boomerang.analyze"
        assert "requirements" in outcome.message
        assert engine.get_task(task.id).status == TaskStatus.IN_PROGRESS

        outcome = engine.advance(task.id, {"requirements": "login with email"})
        assert outcome.role_completed
        assert outcome.steps_completed == ["boomerang.analyze", "boomerang.plan"]
        assert [t.to_role for t in outcome.offered_transitions] == ["researcher", "architect"]
        assert engine.tracker.current_step(task.id) is None

    def test_action_payload_sees_task(self, engine):
        task = engine.create_task("Login form", "boomerang", context={"requirements": "x"})
        engine.advance(task.id)
        plan = engine.store.get_progress(task.id, "boomerang.plan")
        assert plan.state == StepState.COMPLETED
        assert plan.action_results["boomerang.plan.remind"].data["message"] == f"Plan {task.id}"

    def test_failed_file_check_runs_no_actions(self, engine, temp_workspace):
        task = engine.create_task("Implement", "senior-developer", project_path=temp_workspace)
        outcome = engine.advance(task.id)
        assert outcome.state == StepState.BLOCKED
        assert outcome.action_results == []
        assert not (temp_workspace / "notes").exists()

        progress = engine.store.get_progress(task.id, "senior-developer.implement")
        assert progress.state == StepState.BLOCKED
        assert progress.action_results == {}
        assert "src/app.py" in progress.last_error

    def test_retry_after_fix(self, engine, temp_workspace):
        task = engine.create_task("Implement", "senior-developer", project_path=temp_workspace)
        engine.advance(task.id)
        (temp_workspace / "src" / "app.py").write_text("app = object()\n")

        outcome = engine.tracker.retry(task.id)
        assert outcome.steps_completed == ["senior-developer.implement"]
        notes = temp_workspace / "notes" / f"{task.id}.md"
        assert notes.read_text() == "implemented by senior-developer"
        implement = engine.store.get_progress(task.id, "senior-developer.implement")
        assert implement.attempts == 2
        assert implement.completed_at is not None

    def test_optional_step_skipped_after_max_attempts(self, engine, temp_workspace):
        (temp_workspace / "src" / "app.py").write_text("app = object()\n")
        task = engine.create_task("Implement", "senior-developer", project_path=temp_workspace)

        assert engine.advance(task.id).step_id == "senior-developer.polish"
        assert engine.advance(task.id).blocked
        with pytest.warns(StepSkippedWarning, match="after 3 attempts"):
            outcome = engine.advance(task.id)
        assert outcome.role_completed
        assert "senior-developer.polish" in outcome.steps_completed

        polish = engine.store.get_progress(task.id, "senior-developer.polish")
        assert polish.state == StepState.SKIPPED
        assert polish.attempts == 3
        progress = engine.tracker.role_progress(task.id, "senior-developer")
        assert progress == {"role_id": "senior-developer", "completed": 2, "skipped": 1,
                            "blocked": [], "total": 2, "percentage": 100.0}

    def test_required_step_never_skipped(self, sample_definition, clock, executor, temp_workspace):
        engine = WorkflowEngine(sample_definition, clock=clock, executor=executor,
                                policy=TrackerPolicy(max_optional_attempts=1))
        task = engine.create_task("Implement", "senior-developer", project_path=temp_workspace)
        for _ in range(3):
            assert engine.advance(task.id).blocked
        assert engine.store.get_progress(task.id, "senior-developer.implement").attempts == 3

    def test_finished_role_stays_complete(self, engine):
        task = engine.create_task("Review", "code-review")
        assert engine.advance(task.id).steps_completed == ["code-review.review"]
        outcome = engine.advance(task.id)
        assert outcome.role_completed
        assert outcome.steps_completed == []
        assert outcome.offered_transitions[0].name == "review_done"

    def test_unknown_task(self, engine):
        with pytest.raises(WorkflowError, match="Unknown task"):
            engine.advance("missing")


class TestActionRetries:
    """Test that succeeded actions are not re-run."""

    @pytest.fixture
    def counting_engine(self, clock):
        definition = load_definition(
            [{"id": "ops", "name": "Ops", "priority": 1}],
            [{"role_id": "ops", "name": "deploy", "sequence": 1, "actions": [
                {"name": "build", "kind": "remote_call",
                 "payload": {"service": "ci", "operation": "build"}},
                {"name": "ship", "kind": "remote_call",
                 "payload": {"service": "cd", "operation": "ship"}},
            ]}],
            [],
        )
        executor = ActionExecutor()
        calls = []
        executor.register_service("ci", lambda op, params, ctx: calls.append(op))
        engine = WorkflowEngine(definition, clock=clock, executor=executor)
        return engine, executor, calls

    def test_first_failure_blocks_and_retry_skips_succeeded(self, counting_engine):
        engine, executor, calls = counting_engine
        task = engine.create_task("Release", "ops")

        outcome = engine.advance(task.id)
        assert outcome.blocked
        assert [r.ok for r in outcome.action_results] == [True, False]
        assert "Unknown service: cd" in outcome.message

        executor.register_service("cd", lambda op, params, ctx: calls.append(op))
        outcome = engine.tracker.retry(task.id)
        assert outcome.role_completed
        assert calls == ["build", "ship"]
        progress = engine.store.get_progress(task.id, "ops.deploy")
        assert progress.succeeded_actions() == ["ops.deploy.build", "ops.deploy.ship"]


class TestConcurrency:
    """Test per-task serialization and withdrawal."""

    @pytest.fixture
    def gated(self, sample_definition, clock):
        """Engine whose researcher step waits on a gate inside its action"""
        started = threading.Event()
        gate = threading.Event()

        def search(operation, params, ctx):
            started.set()
            assert gate.wait(timeout=5)
            return {"hits": 1}

        executor = ActionExecutor()
        executor.register_service("knowledge", search)
        engine = WorkflowEngine(sample_definition, clock=clock, executor=executor)
        return engine, started, gate

    def _advance_in_background(self, engine, task_id):
        results = {}

        def run():
            results["outcome"] = engine.advance(task_id)

        thread = threading.Thread(target=run)
        thread.start()
        return thread, results

    def test_same_task_cannot_be_advanced_twice(self, gated):
        engine, started, gate = gated
        task = engine.create_task("Research", "researcher")
        thread, results = self._advance_in_background(engine, task.id)
        assert started.wait(timeout=5)

        with pytest.raises(WorkflowError, match="already being advanced"):
            engine.advance(task.id)

        gate.set()
        thread.join(timeout=5)
        assert results["outcome"].role_completed

    def test_other_tasks_are_not_held_up(self, gated):
        engine, started, gate = gated
        researching = engine.create_task("Research", "researcher")
        other = engine.create_task("Plan", "boomerang", context={"requirements": "x"})
        thread, _ = self._advance_in_background(engine, researching.id)
        assert started.wait(timeout=5)

        assert engine.advance(other.id).role_completed
        gate.set()
        thread.join(timeout=5)

    def test_withdraw_during_action(self, gated):
        engine, started, gate = gated
        task = engine.create_task("Research", "researcher")
        thread, results = self._advance_in_background(engine, task.id)
        assert started.wait(timeout=5)

        engine.withdraw(task.id)
        gate.set()
        thread.join(timeout=5)

        outcome = results["outcome"]
        assert outcome.withdrawn
        assert outcome.steps_completed == ["researcher.investigate"]
        assert engine.get_task(task.id).status == TaskStatus.CANCELLED

    def test_withdrawn_task_cannot_advance(self, engine):
        task = engine.create_task("Plan", "boomerang")
        engine.withdraw(task.id)
        with pytest.raises(WorkflowError, match="withdrawn"):
            engine.advance(task.id)
        with pytest.raises(WorkflowError, match="already cancelled"):
            engine.withdraw(task.id)
