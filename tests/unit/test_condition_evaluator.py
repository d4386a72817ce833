"""
Unit tests for ConditionEvaluator.
"""
import subprocess
import pytest

from role_delegation.core.condition_evaluator import ConditionEvaluator
from role_delegation.core.enums import ConditionKind, TaskStatus
from role_delegation.core.models import StepCondition, TaskContext


def make_condition(kind: ConditionKind, logic: dict, cid: str = "cond") -> StepCondition:
    return StepCondition(id=cid, step_id="architect.design", name=cid, kind=kind, logic=logic)


@pytest.fixture
def evaluator() -> ConditionEvaluator:
    return ConditionEvaluator()


@pytest.fixture
def context(temp_workspace) -> TaskContext:
    return TaskContext(
        task_id="t-1",
        role_id="architect",
        task_status=TaskStatus.IN_PROGRESS,
        project_path=str(temp_workspace),
        data={"requirements": "login", "review": {"approved": True}, "score": 7},
        completed_steps=frozenset({"architect.analyze"}),
    )


class TestContextCheck:
    """Test context_check conditions."""

    def test_all_present(self, evaluator, context):
        condition = make_condition(ConditionKind.CONTEXT_CHECK,
                                   {"required_properties": ["requirements", "review.approved"]})
        result = evaluator.check(condition, context)
        assert result.passed
        assert result.condition_id == "cond"

    def test_missing_property(self, evaluator, context):
        condition = make_condition(ConditionKind.CONTEXT_CHECK,
                                   {"required_properties": ["requirements", "design_doc"]})
        result = evaluator.check(condition, context)
        assert not result.passed
        assert result.details["missing_properties"] == ["design_doc"]
        assert "design_doc" in result.reason


class TestFileExists:
    """Test file_exists conditions."""

    def test_existing_items(self, evaluator, context, temp_workspace):
        (temp_workspace / "src" / "app.py").write_text("print('hi')")
        condition = make_condition(ConditionKind.FILE_EXISTS,
                                   {"files": ["src/app.py"], "directories": ["src"]})
        assert evaluator.evaluate(condition, context)

    def test_missing_items(self, evaluator, context):
        condition = make_condition(ConditionKind.FILE_EXISTS,
                                   {"files": ["src/app.py"], "directories": ["docs"]})
        result = evaluator.check(condition, context)
        assert not result.passed
        assert result.details["missing_items"] == ["file: src/app.py", "directory: docs"]

    def test_path_outside_project(self, evaluator, context):
        condition = make_condition(ConditionKind.FILE_EXISTS, {"files": ["../../etc/passwd"]})
        result = evaluator.check(condition, context)
        assert not result.passed
        assert "outside project" in result.reason

    def test_no_project_path_fails(self, evaluator):
        context = TaskContext(task_id="t-1", role_id="architect")
        condition = make_condition(ConditionKind.FILE_EXISTS, {"files": ["src/app.py"]})
        result = evaluator.check(condition, context)
        assert not result.passed
        assert "Evaluation error" in result.reason


class TestTaskStatus:
    """Test task_status conditions."""

    def test_required_status(self, evaluator, context):
        assert evaluator.evaluate(
            make_condition(ConditionKind.TASK_STATUS, {"required_status": "in-progress"}), context)
        assert not evaluator.evaluate(
            make_condition(ConditionKind.TASK_STATUS, {"required_status": "needs-review"}), context)

    def test_forbidden_status(self, evaluator, context):
        condition = make_condition(ConditionKind.TASK_STATUS,
                                   {"forbidden_statuses": [TaskStatus.IN_PROGRESS]})
        result = evaluator.check(condition, context)
        assert not result.passed
        assert "forbidden" in result.reason


class TestGitStatus:
    """Test git_status conditions with git stubbed out."""

    def test_clean_tree_on_branch(self, evaluator, context, monkeypatch):
        outputs = {"rev-parse": "main\n", "status": ""}
        monkeypatch.setattr(evaluator, "_run_git", lambda args, cwd: outputs[args[0]])
        condition = make_condition(ConditionKind.GIT_STATUS,
                                   {"require_clean_working_tree": True, "require_branch": "main"})
        result = evaluator.check(condition, context)
        assert result.passed
        assert result.details["is_clean"]

    def test_dirty_tree(self, evaluator, context, monkeypatch):
        outputs = {"rev-parse": "main\n", "status": " M src/app.py\n"}
        monkeypatch.setattr(evaluator, "_run_git", lambda args, cwd: outputs[args[0]])
        condition = make_condition(ConditionKind.GIT_STATUS, {"require_clean_working_tree": True})
        result = evaluator.check(condition, context)
        assert not result.passed
        assert result.details["changed_files"] == 1

    def test_git_failure(self, evaluator, context, monkeypatch):
        def fail(args, cwd):
            raise subprocess.CalledProcessError(128, ["git"] + args)
        monkeypatch.setattr(evaluator, "_run_git", fail)
        result = evaluator.check(make_condition(ConditionKind.GIT_STATUS, {}), context)
        assert not result.passed
        assert "Git status check failed" in result.reason


class TestPreviousStep:
    """Test previous_step_completed conditions."""

    def test_bare_name_resolves_in_role(self, evaluator, context):
        assert evaluator.evaluate(
            make_condition(ConditionKind.PREVIOUS_STEP_COMPLETED, {"step_id": "analyze"}), context)

    def test_full_id(self, evaluator, context):
        assert evaluator.evaluate(
            make_condition(ConditionKind.PREVIOUS_STEP_COMPLETED, {"step_id": "architect.analyze"}),
            context)

    def test_not_completed(self, evaluator, context):
        assert not evaluator.evaluate(
            make_condition(ConditionKind.PREVIOUS_STEP_COMPLETED, {"step_id": "plan"}), context)


class TestCustomLogic:
    """Test predicates and restricted expressions."""

    def test_registered_predicate(self, evaluator, context):
        evaluator.register_predicate("scored", lambda ctx, params: ctx.data["score"] >= params["min"])
        condition = make_condition(ConditionKind.CUSTOM_LOGIC,
                                   {"predicate": "scored", "parameters": {"min": 5}})
        assert evaluator.evaluate(condition, context)

    def test_predicate_with_reason(self, evaluator, context):
        evaluator.register_predicate("never", lambda ctx, params: (False, "not today"))
        result = evaluator.check(make_condition(ConditionKind.CUSTOM_LOGIC, {"predicate": "never"}),
                                 context)
        assert not result.passed
        assert result.reason == "not today"

    def test_unregistered_predicate_fails(self, evaluator, context):
        result = evaluator.check(make_condition(ConditionKind.CUSTOM_LOGIC, {"predicate": "ghost"}),
                                 context)
        assert not result.passed
        assert "Unregistered predicate" in result.reason

    def test_predicate_exception_fails(self, evaluator, context):
        evaluator.register_predicate("broken", lambda ctx, params: 1 / 0)
        result = evaluator.check(make_condition(ConditionKind.CUSTOM_LOGIC, {"predicate": "broken"}),
                                 context)
        assert not result.passed
        assert result.details["error"] == "ZeroDivisionError"

    @pytest.mark.parametrize("expression,expected", [
        ("{{context.score}} > 5", True),
        ("{{context.score}} > 5 && {{context.review.approved}} == true", True),
        ("{{context.missing}} == null || {{context.score}} < 3", True),
        ("{{task.role}} == 'researcher'", False),
    ])
    def test_expressions(self, evaluator, context, expression, expected):
        condition = make_condition(ConditionKind.CUSTOM_LOGIC,
                                   {"type": "expression", "expression": expression})
        assert evaluator.evaluate(condition, context) is expected

    def test_disallowed_expression(self, evaluator, context):
        condition = make_condition(ConditionKind.CUSTOM_LOGIC,
                                   {"type": "expression", "expression": "__import__('os'); 1"})
        with pytest.warns(UserWarning, match="disallowed characters"):
            assert not evaluator.evaluate(condition, context)

    def test_unsupported_logic(self, evaluator, context):
        assert not evaluator.evaluate(make_condition(ConditionKind.CUSTOM_LOGIC, {"type": "sql"}),
                                      context)


class TestCheckAll:
    """Test evaluating several conditions."""

    def test_results_in_order(self, evaluator, context):
        conditions = [
            make_condition(ConditionKind.CONTEXT_CHECK, {"required_properties": ["requirements"]}, "a"),
            make_condition(ConditionKind.CONTEXT_CHECK, {"required_properties": ["design"]}, "b"),
        ]
        results = evaluator.check_all(conditions, context)
        assert [(r.condition_id, r.passed) for r in results] == [("a", True), ("b", False)]

    def test_evaluation_is_repeatable(self, evaluator, context):
        condition = make_condition(ConditionKind.CONTEXT_CHECK, {"required_properties": ["design"]})
        assert evaluator.check(condition, context) == evaluator.check(condition, context)
