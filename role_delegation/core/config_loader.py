"""
Loads per-role configuration directories into a WorkflowDefinition.

Layout::

    <root>/<role_id>/role-definition.yaml   (or .yml / .json)
    <root>/<role_id>/workflow-steps.yaml    top-level key: workflow_steps
    <root>/<role_id>/role-transitions.yaml  top-level key: role_transitions

A missing file is reported with a ConfigurationWarning and skipped. A file
that exists but is malformed aborts the load with ValidationError.
"""

import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set

from .definition_loader import load_definition
from .exceptions import ConfigurationWarning, ValidationError
from .models import WorkflowDefinition
from .schema_loader import SchemaLoader, normalize_path


ROLE_FILE = "role-definition"
STEPS_FILE = "workflow-steps"
TRANSITIONS_FILE = "role-transitions"


class ConfigLoader:
    """Reads role directories under a configuration root"""

    def __init__(self, root: Path):
        self.root = Path(root)

    def discover_roles(self) -> List[str]:
        """Role directory names in sorted order"""
        if not self.root.is_dir():
            raise ValidationError(
                f"Configuration root does not exist: {self.root}",
                field="root",
                value=str(self.root),
            )
        return sorted(p.name for p in self.root.iterdir() if p.is_dir() and not p.name.startswith('.'))

    def _find_file(self, role_dir: Path, stem: str) -> Optional[Path]:
        for suffix in SchemaLoader.SUPPORTED_SUFFIXES:
            candidate = role_dir / f"{stem}{suffix}"
            if candidate.is_file():
                return candidate
        return None

    def _load_list(self, path: Path, key: str) -> List[Dict[str, Any]]:
        data = SchemaLoader.load_schema(path)
        items = data.get(key, [])
        if not isinstance(items, list):
            raise ValidationError(
                f"'{key}' must be a list in {path}",
                field=key,
                context={"file": str(path)},
            )
        return items

    def load_records(self, role_ids: Optional[Sequence[str]] = None) -> Dict[str, List[Dict[str, Any]]]:
        """
        Collect raw role, step and transition records.

        Returns a mapping with keys ``roles``, ``steps`` and ``transitions``.
        """
        if role_ids is None:
            role_ids = self.discover_roles()

        roles: List[Dict[str, Any]] = []
        steps: List[Dict[str, Any]] = []
        transitions: List[Dict[str, Any]] = []
        skipped: Set[str] = set()

        for role_id in role_ids:
            role_dir = normalize_path(self.root, role_id)

            role_file = self._find_file(role_dir, ROLE_FILE)
            if role_file is None:
                warnings.warn(
                    f"Role definition not found for '{role_id}' in {role_dir}; role skipped",
                    ConfigurationWarning,
                    stacklevel=2,
                )
                skipped.add(role_id)
                continue
            role = SchemaLoader.load_schema(role_file)
            role.setdefault("id", role_id)
            roles.append(role)

            steps_file = self._find_file(role_dir, STEPS_FILE)
            if steps_file is None:
                warnings.warn(
                    f"Workflow steps not found for role '{role_id}'",
                    ConfigurationWarning,
                    stacklevel=2,
                )
            else:
                for step in self._load_list(steps_file, "workflow_steps"):
                    if isinstance(step, dict):
                        step.setdefault("role_id", role["id"])
                    steps.append(step)

            transitions_file = self._find_file(role_dir, TRANSITIONS_FILE)
            if transitions_file is None:
                warnings.warn(
                    f"Role transitions not found for role '{role_id}'",
                    ConfigurationWarning,
                    stacklevel=2,
                )
            else:
                for transition in self._load_list(transitions_file, "role_transitions"):
                    if isinstance(transition, dict):
                        transition.setdefault("from_role", role["id"])
                    transitions.append(transition)

        # Edges into a role that was skipped above are dropped with it
        if skipped:
            kept = []
            for transition in transitions:
                if isinstance(transition, dict) and transition.get("to_role") in skipped:
                    warnings.warn(
                        f"Transition '{transition.get('name')}' skipped: "
                        f"role '{transition['to_role']}' was not loaded",
                        ConfigurationWarning,
                        stacklevel=2,
                    )
                    continue
                kept.append(transition)
            transitions = kept

        return {"roles": roles, "steps": steps, "transitions": transitions}

    def load(self, role_ids: Optional[Sequence[str]] = None) -> WorkflowDefinition:
        """Load and validate the definition for the given (or all discovered) roles"""
        records = self.load_records(role_ids)
        return load_definition(records["roles"], records["steps"], records["transitions"])
