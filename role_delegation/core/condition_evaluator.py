"""
Condition evaluator for workflow step conditions.
Following Single Responsibility Principle - handles condition evaluation only.
"""

import re
import subprocess
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Any, Iterable, List, Optional, Tuple, Union

from .enums import ConditionKind, TaskStatus
from .exceptions import ValidationError, SecurityError
from .models import StepCondition, TaskContext, ConditionResult
from .schema_loader import normalize_path


PredicateResult = Union[bool, Tuple[bool, str]]
Predicate = Callable[[TaskContext, Dict[str, Any]], PredicateResult]


@dataclass
class ConditionEvaluatorConfig:
    """Tunables for condition evaluation"""
    git_command_timeout: int = 10  # seconds
    allowed_expression_pattern: str = r"^[\w\s\"'.\-+*/()=!<>&|%,\[\]]+$"


class ConditionEvaluator:
    """
    Evaluates step conditions against a task context.

    Evaluation is side-effect free and repeatable: a blocked step re-checks
    the same conditions on every retry. A condition that raises is reported
    as not satisfied, never propagated.

    Supports:
    - context_check: required_properties present in the task context data
    - file_exists: files / directories relative to the task project path
    - task_status: required_status / forbidden_statuses
    - git_status: require_clean_working_tree / require_branch
    - previous_step_completed: step_id finished for this task
    - custom_logic: registered predicates or restricted expressions
    """

    def __init__(self, config: Optional[ConditionEvaluatorConfig] = None):
        self.config = config or ConditionEvaluatorConfig()
        self._predicates: Dict[str, Predicate] = {}
        self._handlers: Dict[ConditionKind, Callable[[Dict[str, Any], TaskContext], ConditionResult]] = {
            ConditionKind.CONTEXT_CHECK: self._check_context,
            ConditionKind.FILE_EXISTS: self._check_files,
            ConditionKind.TASK_STATUS: self._check_task_status,
            ConditionKind.GIT_STATUS: self._check_git_status,
            ConditionKind.PREVIOUS_STEP_COMPLETED: self._check_previous_step,
            ConditionKind.CUSTOM_LOGIC: self._check_custom_logic,
        }

    def register_predicate(self, name: str, predicate: Predicate) -> None:
        """
        Register a named predicate for custom_logic conditions.

        Args:
            name: Predicate name referenced by ``logic.predicate``
            predicate: Callable ``(context, parameters) -> bool`` or
                ``-> (bool, reason)``

        Example:
            evaluator.register_predicate(
                "has_reviewer", lambda ctx, params: bool(ctx.data.get("reviewer")))
        """
        if not callable(predicate):
            raise ValidationError(f"Predicate for '{name}' must be callable")
        self._predicates[name] = predicate

    def check(self, condition: StepCondition, context: TaskContext) -> ConditionResult:
        """Evaluate one condition and explain the verdict"""
        handler = self._handlers[condition.kind]
        try:
            result = handler(condition.logic or {}, context)
        except Exception as e:
            return ConditionResult(condition.id, False, f"Evaluation error: {e}",
                                   {"error": type(e).__name__})
        result.condition_id = condition.id
        return result

    def evaluate(self, condition: StepCondition, context: TaskContext) -> bool:
        return self.check(condition, context).passed

    def check_all(self, conditions: Iterable[StepCondition], context: TaskContext) -> List[ConditionResult]:
        """Evaluate every condition; the step is satisfied only if all pass"""
        return [self.check(c, context) for c in conditions]

    # ------------------------------------------------------------------
    # Kind handlers
    # ------------------------------------------------------------------

    def _check_context(self, logic: Dict[str, Any], context: TaskContext) -> ConditionResult:
        required = logic.get("required_properties", [])
        missing = [prop for prop in required if not context.lookup(prop)[0]]
        if missing:
            return ConditionResult("", False,
                                   f"Missing required context properties: {', '.join(missing)}",
                                   {"missing_properties": missing})
        return ConditionResult("", True, "", {"checked_properties": list(required)})

    def _project_root(self, context: TaskContext) -> Path:
        if not context.project_path:
            raise ValidationError("Task has no project path", field="project_path")
        return Path(context.project_path)

    def _check_files(self, logic: Dict[str, Any], context: TaskContext) -> ConditionResult:
        root = self._project_root(context)
        files = logic.get("files", [])
        directories = logic.get("directories", [])
        missing: List[str] = []

        for name in files:
            try:
                if not normalize_path(root, name).is_file():
                    missing.append(f"file: {name}")
            except SecurityError:
                missing.append(f"file: {name} (outside project)")
        for name in directories:
            try:
                if not normalize_path(root, name).is_dir():
                    missing.append(f"directory: {name}")
            except SecurityError:
                missing.append(f"directory: {name} (outside project)")

        if missing:
            return ConditionResult("", False, f"Missing required items: {', '.join(missing)}",
                                   {"missing_items": missing})
        return ConditionResult("", True, "", {"checked_items": list(files) + list(directories)})

    def _check_task_status(self, logic: Dict[str, Any], context: TaskContext) -> ConditionResult:
        current = context.task_status.value
        required = logic.get("required_status")
        forbidden = [s.value if isinstance(s, TaskStatus) else s
                     for s in logic.get("forbidden_statuses", [])]

        if required and current != required:
            return ConditionResult("", False,
                                   f"Task status is '{current}', required '{required}'",
                                   {"current_status": current, "required_status": required})
        if current in forbidden:
            return ConditionResult("", False, f"Task status '{current}' is forbidden",
                                   {"current_status": current, "forbidden_statuses": forbidden})
        return ConditionResult("", True, "", {"current_status": current})

    def _run_git(self, args: List[str], cwd: Path) -> str:
        result = subprocess.run(
            ["git"] + args,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=self.config.git_command_timeout,
            check=True,
        )
        return result.stdout

    def _check_git_status(self, logic: Dict[str, Any], context: TaskContext) -> ConditionResult:
        root = self._project_root(context)
        require_clean = logic.get("require_clean_working_tree", False)
        require_branch = logic.get("require_branch")

        try:
            branch = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], root).strip()
            changes = [line for line in self._run_git(["status", "--porcelain"], root).splitlines()
                       if line.strip()]
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            return ConditionResult("", False, f"Git status check failed: {e}")

        details = {"current_branch": branch, "is_clean": not changes, "changed_files": len(changes)}
        if require_clean and changes:
            return ConditionResult("", False, "Working tree is not clean", details)
        if require_branch and branch != require_branch:
            return ConditionResult("", False,
                                   f"Current branch is '{branch}', required '{require_branch}'",
                                   details)
        return ConditionResult("", True, "", details)

    def _check_previous_step(self, logic: Dict[str, Any], context: TaskContext) -> ConditionResult:
        step_ref = logic.get("step_id")
        if not step_ref:
            return ConditionResult("", True, "No previous step specified")

        # Bare step names are resolved inside the current role
        candidates = {step_ref, f"{context.role_id}.{step_ref}"}
        if candidates & context.completed_steps:
            return ConditionResult("", True, "", {"required_step_id": step_ref})
        return ConditionResult("", False, f"Previous step '{step_ref}' not completed",
                               {"required_step_id": step_ref})

    def _check_custom_logic(self, logic: Dict[str, Any], context: TaskContext) -> ConditionResult:
        predicate_name = logic.get("predicate")
        if predicate_name:
            predicate = self._predicates.get(predicate_name)
            if predicate is None:
                return ConditionResult("", False, f"Unregistered predicate '{predicate_name}'")
            outcome = predicate(context, dict(logic.get("parameters", {})))
            if isinstance(outcome, tuple):
                passed, reason = outcome
            else:
                passed, reason = outcome, ""
            passed = bool(passed)
            if not passed and not reason:
                reason = f"Predicate '{predicate_name}' returned false"
            return ConditionResult("", passed, reason, {"predicate": predicate_name})

        if logic.get("type") == "expression":
            expression = logic.get("expression", "")
            passed = self._evaluate_expression(expression, context)
            reason = "" if passed else f"Expression evaluated to false: {expression}"
            return ConditionResult("", passed, reason, {"expression": expression})

        return ConditionResult("", False, f"Unsupported custom logic: {logic.get('type')!r}")

    # ------------------------------------------------------------------
    # Restricted expressions
    # ------------------------------------------------------------------

    def _evaluate_expression(self, expression: str, context: TaskContext) -> bool:
        """
        Evaluate a restricted boolean expression.

        ``{{context.a.b}}`` and ``{{task.status}}``/``{{task.id}}``/``{{task.role}}``
        placeholders are substituted with Python literals first.
        """
        if not expression:
            return True

        bare = re.sub(r'\{\{[^}]+\}\}', 'x', expression)
        if not re.match(self.config.allowed_expression_pattern, bare):
            warnings.warn(f"Expression contains disallowed characters: {expression}")
            return False

        resolved = self._resolve_placeholders(expression, context)
        resolved = resolved.replace('&&', ' and ').replace('||', ' or ')

        safe_dict = {
            '__builtins__': {
                'True': True,
                'False': False,
                'None': None,
                'bool': bool,
                'int': int,
                'float': float,
                'str': str,
                'len': len,
            },
            'true': True,
            'false': False,
            'null': None,
        }
        try:
            return bool(eval(resolved, safe_dict))
        except Exception as e:
            # If evaluation fails, log and return False
            warnings.warn(f"Condition evaluation failed: {expression}, error: {e}")
            return False

    def _resolve_placeholders(self, expression: str, context: TaskContext) -> str:
        task_fields = {
            'id': context.task_id,
            'role': context.role_id,
            'status': context.task_status.value,
            'step': context.step_id,
        }

        def resolve(match):
            ref = match.group(1).strip()
            prefix, _, path = ref.partition('.')
            if prefix == 'context':
                found, value = context.lookup(path)
                return repr(value) if found else 'None'
            if prefix == 'task':
                return repr(task_fields.get(path))
            return 'None'

        return re.sub(r'\{\{([^}]+)\}\}', resolve, expression)
