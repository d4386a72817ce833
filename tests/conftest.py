"""
Shared pytest fixtures and configuration for all tests.
"""
import pytest
import tempfile
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import Generator, Dict, Any, List
import yaml

from role_delegation.core.action_executor import ActionExecutor
from role_delegation.core.definition_loader import load_definition
from role_delegation.core.models import WorkflowDefinition
from role_delegation.core.workflow_engine import WorkflowEngine


class FakeClock:
    """Controllable clock; call it to read the time"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def temp_workspace() -> Generator[Path, None, None]:
    """Create a temporary workspace directory for testing."""
    temp_dir = tempfile.mkdtemp(prefix="role_delegation_test_")
    workspace = Path(temp_dir)
    (workspace / "src").mkdir()

    yield workspace

    # Cleanup
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 9, 0, 0))


@pytest.fixture
def role_records() -> List[Dict[str, Any]]:
    """Role records for a six-role delegation chain."""
    return [
        {"id": "boomerang", "name": "Boomerang", "priority": 1, "kind": "workflow",
         "capabilities": {"task_creation": True, "delegation": True}},
        {"id": "researcher", "name": "Researcher", "priority": 2, "kind": "specialist",
         "capabilities": {"research": True}},
        {"id": "architect", "name": "Architect", "priority": 3,
         "capabilities": {"planning": True, "delegation": True}},
        {"id": "senior-developer", "name": "Senior Developer", "priority": 4},
        {"id": "code-review", "name": "Code Review", "priority": 5, "kind": "QUALITY_GATE"},
        {"id": "legacy", "name": "Legacy", "priority": 9, "is_active": False},
    ]


@pytest.fixture
def step_records() -> List[Dict[str, Any]]:
    """Workflow steps; ids default to '<role_id>.<name>'."""
    return [
        {
            "role_id": "boomerang", "name": "analyze", "sequence": 1, "kind": "analysis",
            "conditions": [
                {"name": "has_requirements", "kind": "context_check",
                 "logic": {"required_properties": ["requirements"]}},
            ],
        },
        {
            "role_id": "boomerang", "name": "plan", "sequence": 2,
            "actions": [
                {"name": "remind", "kind": "reminder",
                 "payload": {"message": "Plan {{task.id}}", "level": "info"}},
            ],
        },
        {
            "role_id": "researcher", "name": "investigate", "sequence": 1,
            "actions": [
                {"name": "search", "kind": "remote_call",
                 "payload": {"service": "knowledge", "operation": "search",
                             "parameters": {"query": "{{context.requirements}}"}}},
            ],
        },
        {"role_id": "architect", "name": "design", "sequence": 1, "kind": "decision"},
        {
            "role_id": "senior-developer", "name": "implement", "sequence": 1,
            "conditions": [
                {"name": "has_source", "kind": "file_exists",
                 "logic": {"files": ["src/app.py"]}},
            ],
            "actions": [
                {"name": "notes", "kind": "file_operation",
                 "payload": {"operation": "write", "path": "notes/{{task.id}}.md",
                             "content": "implemented by {{task.role}}"}},
            ],
        },
        {
            "role_id": "senior-developer", "name": "polish", "sequence": 5, "is_required": False,
            "conditions": [
                {"name": "polished", "kind": "context_check",
                 "logic": {"required_properties": ["polished"]}},
            ],
        },
        {"role_id": "code-review", "name": "review", "sequence": 1, "kind": "validation"},
    ]


@pytest.fixture
def transition_records() -> List[Dict[str, Any]]:
    return [
        {"from_role": "boomerang", "to_role": "researcher", "name": "to_research"},
        {"from_role": "boomerang", "to_role": "architect", "name": "to_architecture"},
        {"from_role": "researcher", "to_role": "architect", "name": "research_done"},
        {"from_role": "architect", "to_role": "researcher", "name": "needs_research"},
        {"from_role": "architect", "to_role": "senior-developer", "name": "to_implementation",
         "requirements": {"required_deliverables": ["step:design"]}},
        {"from_role": "senior-developer", "to_role": "code-review", "name": "to_review",
         "conditions": {"required_steps_completed": ["implement"]},
         "handoff_guidance": "Summarize the implementation"},
        {"from_role": "code-review", "to_role": "boomerang", "name": "review_done"},
        {"from_role": "researcher", "to_role": "code-review", "name": "shortcut",
         "is_active": False},
    ]


@pytest.fixture
def sample_definition(role_records, step_records, transition_records) -> WorkflowDefinition:
    """Validated definition built from the sample records."""
    return load_definition(role_records, step_records, transition_records)


@pytest.fixture
def executor() -> ActionExecutor:
    """Executor with a stub 'knowledge' service."""
    executor = ActionExecutor()
    executor.register_service(
        "knowledge", lambda operation, params, ctx: {"operation": operation, **params})
    return executor


@pytest.fixture
def engine(sample_definition, clock, executor) -> WorkflowEngine:
    """Create a WorkflowEngine over the sample definition for testing."""
    return WorkflowEngine(sample_definition, clock=clock, executor=executor)


@pytest.fixture
def config_dir(temp_workspace, role_records, step_records, transition_records) -> Path:
    """Write the sample records in the per-role directory layout."""
    root = temp_workspace / "workflow-rules"
    for role in role_records:
        role_dir = root / role["id"]
        role_dir.mkdir(parents=True)
        with open(role_dir / "role-definition.yaml", "w") as f:
            yaml.dump(role, f)
        steps = [dict(s) for s in step_records if s["role_id"] == role["id"]]
        for step in steps:
            step.pop("role_id")
        if steps:
            with open(role_dir / "workflow-steps.yaml", "w") as f:
                yaml.dump({"workflow_steps": steps}, f)
        transitions = [t for t in transition_records if t["from_role"] == role["id"]]
        if transitions:
            with open(role_dir / "role-transitions.yaml", "w") as f:
                yaml.dump({"role_transitions": transitions}, f)
    return root
