"""
Action executor for workflow step actions.
Following Single Responsibility Principle - handles action execution only.
"""

import re
import shlex
import subprocess
import time
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Any, List, Optional, Tuple

from .enums import ActionKind
from .exceptions import ValidationError, SecurityError, WorkflowWarning
from .models import StepAction, TaskContext, ActionResult
from .schema_loader import normalize_path
from .variable_resolver import VariableResolver


ServiceHandler = Callable[[str, Dict[str, Any], TaskContext], Any]
ReportGenerator = Callable[[TaskContext, Dict[str, Any]], Any]

DANGEROUS_PATTERNS = [
    re.compile(r'>\s*/dev/null'),
    re.compile(r'&\s*$'),
    re.compile(r';\s*rm'),
    re.compile(r'\|\s*sh'),
    re.compile(r'\|\s*bash'),
    re.compile(r'`.*`'),
    re.compile(r'\$\(.*\)'),
]


@dataclass
class ActionExecutorConfig:
    """Limits applied to command and file actions"""
    default_command_timeout: int = 30  # seconds
    max_command_timeout: int = 300
    allowed_commands: List[str] = field(default_factory=lambda: [
        'git', 'python', 'pytest', 'make', 'npm', 'yarn', 'node', 'docker', 'kubectl',
    ])
    blocked_commands: List[str] = field(default_factory=lambda: [
        'rm -rf /', 'sudo', 'su', 'chmod 777', 'dd', 'mkfs', 'fdisk', 'format',
    ])


class ActionExecutor:
    """
    Executes step actions and reports an ActionResult.

    Handlers never raise: any exception becomes ``ok=False`` with the error
    in ``detail``. Payload strings are resolved through VariableResolver
    before the handler sees them.
    """

    def __init__(self, config: Optional[ActionExecutorConfig] = None):
        self.config = config or ActionExecutorConfig()
        self._services: Dict[str, ServiceHandler] = {}
        self._report_generators: Dict[str, ReportGenerator] = {}
        self._handlers: Dict[ActionKind, Callable[[Dict[str, Any], TaskContext], Tuple[bool, str, Dict[str, Any]]]] = {
            ActionKind.COMMAND: self._run_command,
            ActionKind.REMOTE_CALL: self._call_service,
            ActionKind.VALIDATION: self._run_validation,
            ActionKind.REMINDER: self._remind,
            ActionKind.FILE_OPERATION: self._file_operation,
            ActionKind.REPORT_GENERATION: self._generate_report,
        }

    def register_service(self, name: str, handler: ServiceHandler) -> None:
        """
        Register a remote-call target.

        The handler receives ``(operation, parameters, context)``; its return
        value is stored under ``data["result"]``.
        """
        if not callable(handler):
            raise ValidationError(f"Service handler for '{name}' must be callable")
        self._services[name] = handler

    def register_report_generator(self, report_type: str, handler: ReportGenerator) -> None:
        if not callable(handler):
            raise ValidationError(f"Report generator for '{report_type}' must be callable")
        self._report_generators[report_type] = handler

    def execute(self, action: StepAction, context: TaskContext) -> ActionResult:
        """Execute one action"""
        started = time.monotonic()
        handler = self._handlers[action.kind]
        try:
            payload = VariableResolver.resolve(dict(action.payload), context)
            ok, detail, data = handler(payload, context)
        except Exception as e:
            ok, detail, data = False, f"{type(e).__name__}: {e}", {}
        return ActionResult(
            action_id=action.id,
            ok=ok,
            detail=detail,
            data=data,
            duration=time.monotonic() - started,
        )

    # ------------------------------------------------------------------
    # Command
    # ------------------------------------------------------------------

    def validate_command(self, argv: List[str]) -> Tuple[bool, str]:
        """Check a command line against blocked, allowed and dangerous patterns"""
        if not argv:
            return False, "Empty command"
        full_command = ' '.join(argv).lower()
        tokens = [Path(a).name.lower() if i == 0 else a.lower() for i, a in enumerate(argv)]
        for blocked in self.config.blocked_commands:
            pattern = blocked.strip().lower()
            # Single words match whole arguments, phrases match anywhere
            hit = pattern in full_command if ' ' in pattern else pattern in tokens
            if hit:
                return False, f"Command contains blocked pattern: {blocked}"

        if self.config.allowed_commands:
            program = Path(argv[0]).name.lower()
            if not any(program == allowed.lower() for allowed in self.config.allowed_commands):
                return False, f"Command not in allowed list: {argv[0]}"

        for pattern in DANGEROUS_PATTERNS:
            if pattern.search(full_command):
                return False, f"Command contains dangerous pattern: {pattern.pattern}"
        return True, ""

    def _run_command(self, payload: Dict[str, Any], context: TaskContext) -> Tuple[bool, str, Dict[str, Any]]:
        command = payload.get("command")
        if not command:
            return False, "Command action requires 'command'", {}
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        argv += [str(a) for a in payload.get("args", [])]
        allow_failure = bool(payload.get("allow_failure", False))

        allowed, reason = self.validate_command(argv)
        if not allowed:
            raise SecurityError(f"Command blocked for security reasons: {reason}")

        timeout = min(int(payload.get("timeout", self.config.default_command_timeout)),
                      self.config.max_command_timeout)
        working_directory = payload.get("working_directory")
        if working_directory:
            cwd: Optional[str] = str(normalize_path(self._project_root(context), working_directory))
        else:
            cwd = context.project_path or None

        try:
            result = subprocess.run(
                argv,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            if allow_failure:
                return True, "Command failed but failure is allowed", {"error": str(e), "command": argv}
            return False, f"Command execution failed: {e}", {"command": argv}

        data = {
            "command": argv,
            "returncode": result.returncode,
            "stdout": result.stdout,
            "stderr": result.stderr,
        }
        if result.returncode == 0:
            return True, "Command executed successfully", data
        if allow_failure:
            return True, "Command failed but failure is allowed", data
        return False, f"Command failed with exit code {result.returncode}: {result.stderr.strip()}", data

    # ------------------------------------------------------------------
    # Remote call / report generation
    # ------------------------------------------------------------------

    def _call_service(self, payload: Dict[str, Any], context: TaskContext) -> Tuple[bool, str, Dict[str, Any]]:
        name = payload.get("service")
        operation = payload.get("operation", "")
        handler = self._services.get(name) if name else None
        if handler is None:
            return False, f"Unknown service: {name}", {"service": name, "operation": operation}
        result = handler(operation, dict(payload.get("parameters", {})), context)
        return True, f"{name}.{operation} completed", {"result": result}

    def _generate_report(self, payload: Dict[str, Any], context: TaskContext) -> Tuple[bool, str, Dict[str, Any]]:
        report_type = payload.get("report_type")
        generator = self._report_generators.get(report_type) if report_type else None
        if generator is None:
            return False, f"No report generator registered for '{report_type}'", {}
        report = generator(context, dict(payload.get("parameters", {})))
        return True, f"Report '{report_type}' generated", {"report": report}

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _run_validation(self, payload: Dict[str, Any], context: TaskContext) -> Tuple[bool, str, Dict[str, Any]]:
        validation_type = payload.get("validation_type")
        criteria = payload.get("criteria", {})
        continue_on_failure = bool(payload.get("continue_on_failure", False))

        if validation_type == "file_exists":
            root = self._project_root(context)
            passed = normalize_path(root, criteria.get("file_path", "")).exists()
        elif validation_type == "git_status":
            passed = self._git_status_matches(criteria.get("expected_status", "clean"), context)
        else:
            return False, f"Unknown validation type: {validation_type}", {}

        data = {"validation_type": validation_type, "passed": passed}
        if passed:
            return True, "Validation passed", data
        if continue_on_failure:
            return True, "Validation failed, continuing", data
        return False, "Validation failed", data

    def _git_status_matches(self, expected: str, context: TaskContext) -> bool:
        result = subprocess.run(
            ["git", "status", "--porcelain"],
            cwd=self._project_root(context),
            capture_output=True,
            text=True,
            timeout=self.config.default_command_timeout,
        )
        if result.returncode != 0:
            return False
        output = result.stdout.strip()
        if expected == "clean":
            return output == ""
        if expected == "dirty":
            return output != ""
        return expected in output

    # ------------------------------------------------------------------
    # Reminder
    # ------------------------------------------------------------------

    def _remind(self, payload: Dict[str, Any], context: TaskContext) -> Tuple[bool, str, Dict[str, Any]]:
        message = payload.get("message")
        if not message:
            return False, "Reminder requires a message", {}
        level = payload.get("level", "info")
        if level in ("warn", "warning", "error"):
            warnings.warn(f"REMINDER [{context.task_id}]: {message}", WorkflowWarning, stacklevel=3)
        return True, "Reminder delivered", {"message": message, "level": level}

    # ------------------------------------------------------------------
    # File operation
    # ------------------------------------------------------------------

    def _project_root(self, context: TaskContext) -> Path:
        if not context.project_path:
            raise ValidationError("Task has no project path", field="project_path")
        return Path(context.project_path)

    def _file_operation(self, payload: Dict[str, Any], context: TaskContext) -> Tuple[bool, str, Dict[str, Any]]:
        operation = payload.get("operation")
        relative = payload.get("path")
        if not relative:
            return False, "File operation requires 'path'", {}
        target = normalize_path(self._project_root(context), relative)
        data: Dict[str, Any] = {"operation": operation, "path": str(target)}

        if operation in ("create", "write"):
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(str(payload.get("content", "")), encoding="utf-8")
            return True, f"File written: {relative}", data
        if operation == "read":
            data["content"] = target.read_text(encoding="utf-8")
            return True, f"File read: {relative}", data
        if operation == "delete":
            if not target.exists():
                return False, f"File not found: {relative}", data
            target.unlink()
            return True, f"File deleted: {relative}", data
        if operation == "exists":
            data["exists"] = target.exists()
            return True, f"File {'exists' if data['exists'] else 'does not exist'}: {relative}", data
        return False, f"Unknown file operation: {operation}", data
