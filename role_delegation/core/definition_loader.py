"""
Builds a validated WorkflowDefinition from plain configuration records.

Records are checked structurally with jsonschema first, then semantically
(role references, sequence uniqueness). Any violation raises ValidationError
and nothing is built. Unknown kind strings are not violations: they fall back
to each enum's default with a ConfigurationWarning.
"""

import copy
from typing import Any, Dict, Iterable, List, Set, Tuple

import jsonschema

from .enums import RoleKind, StepKind, ConditionKind, ActionKind
from .exceptions import ValidationError
from .models import (
    Role, StepCondition, StepAction, WorkflowStep, RoleTransition, WorkflowDefinition
)
from .role_registry import RoleRegistry


_NAMED_ITEM = {
    "type": "object",
    "required": ["name"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string", "minLength": 1},
        "kind": {"type": ["string", "null"]},
    },
}

ROLE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["id", "name", "priority"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string", "minLength": 1},
        "priority": {"type": "integer"},
        "is_active": {"type": "boolean"},
        "kind": {"type": ["string", "null"]},
        "capabilities": {
            "type": "object",
            "additionalProperties": {"type": "boolean"},
        },
        "description": {"type": "string"},
    },
}

STEP_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["role_id", "name", "sequence"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "role_id": {"type": "string", "minLength": 1},
        "name": {"type": "string", "minLength": 1},
        "sequence": {"type": "integer", "minimum": 1},
        "is_required": {"type": "boolean"},
        "kind": {"type": ["string", "null"]},
        "description": {"type": "string"},
        "conditions": {
            "type": "array",
            "items": dict(_NAMED_ITEM, properties=dict(
                _NAMED_ITEM["properties"], logic={"type": "object"})),
        },
        "actions": {
            "type": "array",
            "items": dict(_NAMED_ITEM, properties=dict(
                _NAMED_ITEM["properties"], payload={"type": "object"})),
        },
    },
}

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

TRANSITION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["from_role", "to_role", "name"],
    "properties": {
        "from_role": {"type": "string", "minLength": 1},
        "to_role": {"type": "string", "minLength": 1},
        "name": {"type": "string", "minLength": 1},
        "conditions": {
            "type": "object",
            "properties": {
                "required_steps_completed": _STRING_LIST,
                "required_task_status": {"type": "string"},
                "minimum_time_in_role": {"type": "number", "minimum": 0},
                "predicate": {"type": "string"},
                "expression": {"type": "string"},
                "parameters": {"type": "object"},
            },
        },
        "requirements": {
            "type": "object",
            "properties": {
                "required_deliverables": _STRING_LIST,
                "quality_gates": _STRING_LIST,
            },
        },
        "validation_rules": {"type": "object"},
        "handoff_guidance": {"type": ["string", "object", "array"]},
        "context_preservation": {"type": "object"},
        "is_active": {"type": "boolean"},
    },
}


def _check_record(record: Any, schema: Dict[str, Any], kind: str, index: int) -> None:
    """Validate one record against its JSON Schema"""
    validator = jsonschema.Draft7Validator(schema)
    errors = sorted(validator.iter_errors(record), key=lambda e: list(e.absolute_path))
    if errors:
        first = errors[0]
        location = ".".join(str(p) for p in first.absolute_path) or "<record>"
        raise ValidationError(
            f"Invalid {kind} record: {first.message}",
            field=location,
            context={"index": index, "errors": len(errors)},
        )


def _build_role(data: Dict[str, Any]) -> Role:
    return Role(
        id=data["id"],
        name=data["name"],
        priority=data["priority"],
        is_active=data.get("is_active", True),
        kind=RoleKind.parse(data.get("kind")),
        capabilities=dict(data.get("capabilities", {})),
        description=data.get("description", ""),
    )


def _build_step(data: Dict[str, Any]) -> WorkflowStep:
    step_id = data.get("id") or f"{data['role_id']}.{data['name']}"

    conditions: List[StepCondition] = []
    for item in data.get("conditions", []):
        conditions.append(StepCondition(
            id=item.get("id") or f"{step_id}.{item['name']}",
            step_id=step_id,
            name=item["name"],
            kind=ConditionKind.parse(item.get("kind")),
            logic=copy.deepcopy(item.get("logic", {})),
        ))

    actions: List[StepAction] = []
    for item in data.get("actions", []):
        actions.append(StepAction(
            id=item.get("id") or f"{step_id}.{item['name']}",
            step_id=step_id,
            name=item["name"],
            kind=ActionKind.parse(item.get("kind")),
            payload=copy.deepcopy(item.get("payload", {})),
        ))

    for label, items in (("condition", conditions), ("action", actions)):
        seen: Set[str] = set()
        for item in items:
            if item.id in seen:
                raise ValidationError(
                    f"Duplicate {label} id '{item.id}' in step '{step_id}'",
                    field=f"{label}s",
                    value=item.id,
                )
            seen.add(item.id)

    return WorkflowStep(
        id=step_id,
        role_id=data["role_id"],
        name=data["name"],
        sequence=data["sequence"],
        is_required=data.get("is_required", True),
        kind=StepKind.parse(data.get("kind")),
        conditions=tuple(conditions),
        actions=tuple(actions),
        description=data.get("description", ""),
    )


def _build_transition(data: Dict[str, Any]) -> RoleTransition:
    return RoleTransition(
        from_role=data["from_role"],
        to_role=data["to_role"],
        name=data["name"],
        conditions=copy.deepcopy(data.get("conditions", {})),
        requirements=copy.deepcopy(data.get("requirements", {})),
        validation_rules=copy.deepcopy(data.get("validation_rules", {})),
        handoff_guidance=copy.deepcopy(data.get("handoff_guidance", "")),
        context_preservation=copy.deepcopy(data.get("context_preservation", {})),
        is_active=data.get("is_active", True),
    )


def load_definition(role_configs: Iterable[Dict[str, Any]],
                    step_configs: Iterable[Dict[str, Any]],
                    transition_configs: Iterable[Dict[str, Any]]) -> WorkflowDefinition:
    """
    Validate configuration records and build an immutable WorkflowDefinition.

    Args:
        role_configs: Role records (id, name, priority, ...)
        step_configs: Step records, each naming its owning ``role_id``
        transition_configs: Transition records (from_role, to_role, name, ...)

    Returns:
        The validated definition. Input records are deep-copied, so later
        mutation of the inputs does not leak into it.

    Raises:
        ValidationError: On any structural or referential problem
    """
    roles: List[Role] = []
    for index, record in enumerate(role_configs):
        _check_record(record, ROLE_SCHEMA, "role", index)
        roles.append(_build_role(record))
    registry = RoleRegistry(roles)

    steps: List[WorkflowStep] = []
    sequences: Set[Tuple[str, int]] = set()
    step_ids: Set[str] = set()
    for index, record in enumerate(step_configs):
        _check_record(record, STEP_SCHEMA, "step", index)
        role_id = record["role_id"]
        if not registry.exists(role_id):
            raise ValidationError(
                f"Step '{record['name']}' references unknown role '{role_id}'",
                field="role_id",
                value=role_id,
                context={"index": index},
            )
        step = _build_step(record)
        if (role_id, step.sequence) in sequences:
            raise ValidationError(
                f"Duplicate sequence number {step.sequence} for role '{role_id}'",
                field="sequence",
                value=step.sequence,
                context={"step": step.id},
            )
        if step.id in step_ids:
            raise ValidationError(
                f"Duplicate step id '{step.id}'",
                field="id",
                value=step.id,
            )
        sequences.add((role_id, step.sequence))
        step_ids.add(step.id)
        steps.append(step)

    transitions: List[RoleTransition] = []
    for index, record in enumerate(transition_configs):
        _check_record(record, TRANSITION_SCHEMA, "transition", index)
        for end in ("from_role", "to_role"):
            role_id = record[end]
            if not registry.exists(role_id):
                raise ValidationError(
                    f"Transition '{record['name']}' references unknown role '{role_id}'",
                    field=end,
                    value=role_id,
                )
            if not registry.is_active(role_id):
                raise ValidationError(
                    f"Transition '{record['name']}' references inactive role '{role_id}'",
                    field=end,
                    value=role_id,
                )
        transitions.append(_build_transition(record))

    steps.sort(key=lambda s: (s.role_id, s.sequence))
    return WorkflowDefinition(roles=registry, steps=tuple(steps), transitions=tuple(transitions))
