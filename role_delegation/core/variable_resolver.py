"""
Variable resolver for resolving placeholders in action payloads.
Following Single Responsibility Principle - handles variable resolution only.
"""

import os
import re
from typing import Optional, Any, List

from .models import TaskContext
from .exceptions import ValidationError


PLACEHOLDER = re.compile(r'\{\{([^}]+)\}\}')


class VariableResolver:
    """
    Resolves variable placeholders in text.

    Supports multiple variable sources:
    - {{task.id}}, {{task.role}}, {{task.status}} - Task being processed
    - {{step.id}} - Step being processed
    - {{context.a.b}} - Task context data (dotted path)
    - {{project.root}} - Task project path
    - {{env.VAR_NAME}} - Environment variables

    Also supports default values: {{key or 'default'}}
    """

    PREFIXES = ("task", "step", "context", "project", "env")

    def __init__(self, context: Optional[TaskContext] = None,
                 raise_on_missing: bool = False):
        self.context = context
        self.raise_on_missing = raise_on_missing

    @staticmethod
    def resolve(value: Any, context: Optional[TaskContext] = None,
                raise_on_missing: bool = False) -> Any:
        """Resolve placeholders in a string, or recursively in lists and dicts"""
        return VariableResolver(context, raise_on_missing).resolve_value(value)

    def resolve_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: self.resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v) for v in value]
        return self.resolve_text(value)

    def resolve_text(self, text: Any) -> Any:
        """Resolve variables in text"""
        if not isinstance(text, str):
            return text

        def replacement(match):
            full_key = match.group(1).strip()

            # Handle simple 'or' fallback: {{key or 'default'}}
            default_val = None
            if ' or ' in full_key:
                key, default_val = full_key.split(' or ', 1)
                key = key.strip()
                default_val = default_val.strip().strip("'").strip('"')
            else:
                key = full_key

            parts = key.split('.')
            if len(parts) < 2:
                if self.raise_on_missing:
                    raise ValidationError(f"Invalid variable reference: {key}")
                return match.group(0) if default_val is None else default_val

            prefix = parts[0]
            if prefix not in self.PREFIXES and self.raise_on_missing:
                raise ValidationError(
                    f"Unknown variable prefix: {prefix}",
                    field="variable",
                    value=key,
                    context={"available_prefixes": list(self.PREFIXES)}
                )

            res = self._lookup(prefix, parts[1:])
            if res is not None and res != "":
                return str(res)
            if default_val is not None:
                return default_val

            if self.raise_on_missing:
                raise ValidationError(
                    f"Variable not found: {key}",
                    field="variable",
                    value=key,
                    context={"prefix": prefix}
                )
            return f"[{key} NOT FOUND]"

        return PLACEHOLDER.sub(replacement, text)

    def _lookup(self, prefix: str, parts: List[str]) -> Any:
        if prefix == 'env':
            return os.environ.get(parts[0])
        if self.context is None:
            return None

        if prefix == 'task':
            fields = {
                'id': self.context.task_id,
                'role': self.context.role_id,
                'status': self.context.task_status.value,
            }
            return fields.get(parts[0])
        if prefix == 'step':
            return self.context.step_id if parts[0] == 'id' else None
        if prefix == 'project':
            return self.context.project_path if parts[0] in ('root', 'path') else None
        if prefix == 'context':
            found, value = self.context.lookup('.'.join(parts))
            return value if found else None
        return None
