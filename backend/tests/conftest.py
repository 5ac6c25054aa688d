"""
Pytest Configuration and Fixtures

MongoDB is replaced by an in-memory mongomock client per test; transactions
are disabled because mongomock has no sessions.
"""

import os
import tempfile
import uuid

os.environ["MONGO_TRANSACTIONS"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_SECRET"] = "hrflow-test-signing-secret-0123456789abcdef"
os.environ["LOGS_PATH"] = tempfile.mkdtemp(prefix="hrflow-logs-")

import mongomock
import pytest
from typing import Any, Callable, Dict, List, Optional

from hrflow.repositories import mongo_client
from hrflow.repositories.employee_repo import EmployeeRepository
from hrflow.domain.models import ActorContext, Employee, WorkflowDefinition, WorkflowInstance
from hrflow.services.definition_service import DefinitionService
from hrflow.services.instance_service import InstanceService

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


@pytest.fixture(autouse=True)
def db():
    """Fresh in-memory database for every test"""
    client = mongomock.MongoClient(tz_aware=True)
    mongo_client.use_client(client, f"hrflow_test_{uuid.uuid4().hex[:8]}")
    mongo_client.create_indexes()
    yield mongo_client.get_database()
    mongo_client.close_connection()


# ============================================================================
# Actors
# ============================================================================

def make_actor(role: str, employee_id: Optional[str], tenant_id: str = TENANT) -> ActorContext:
    return ActorContext(
        user_id=f"user-{employee_id or role}",
        tenant_id=tenant_id,
        role=role,
        employee_id=employee_id,
        display_name=role.replace("_", " ").title()
    )


@pytest.fixture
def hr_actor() -> ActorContext:
    return make_actor("hr_manager", "emp-hr")


@pytest.fixture
def employee_actor() -> ActorContext:
    """The usual instance subject"""
    return make_actor("employee", "emp-1")


@pytest.fixture
def manager_actor() -> ActorContext:
    return make_actor("manager", "emp-mgr")


@pytest.fixture
def director_actor() -> ActorContext:
    """Skip-level manager of emp-1"""
    return make_actor("manager", "emp-dir")


@pytest.fixture
def outsider_actor() -> ActorContext:
    """Same tenant, unrelated to the test instances"""
    return make_actor("employee", "emp-2")


@pytest.fixture
def foreign_hr_actor() -> ActorContext:
    return make_actor("hr_manager", "emp-x", tenant_id=OTHER_TENANT)


# ============================================================================
# Directory
# ============================================================================

@pytest.fixture(autouse=True)
def directory(db) -> EmployeeRepository:
    """
    emp-1 -> emp-mgr -> emp-dir; emp-2 -> emp-mgr; emp-orphan has no manager;
    emp-loop-a and emp-loop-b report to each other
    """
    repo = EmployeeRepository()
    hierarchy = {
        "emp-dir": None,
        "emp-mgr": "emp-dir",
        "emp-1": "emp-mgr",
        "emp-2": "emp-mgr",
        "emp-hr": "emp-dir",
        "emp-orphan": None,
        "emp-loop-a": "emp-loop-b",
        "emp-loop-b": "emp-loop-a",
    }
    for employee_id, manager_id in hierarchy.items():
        repo.upsert_employee(Employee(
            employee_id=employee_id,
            tenant_id=TENANT,
            first_name=employee_id,
            reporting_manager_id=manager_id
        ))
    return repo


# ============================================================================
# Definitions & Instances
# ============================================================================

def form(step_id: str, role: str = "employee", **extra: Any) -> Dict[str, Any]:
    return {"id": step_id, "type": "form", "name": step_id.replace("_", " ").title(), "assignment_role": role, **extra}


def approval(step_id: str, role: str = "manager", **extra: Any) -> Dict[str, Any]:
    return {"id": step_id, "type": "approval", "name": step_id.replace("_", " ").title(), "assignment_role": role, **extra}


def transition(tid: str, source: str, target: str, trigger: str = "manual", **extra: Any) -> Dict[str, Any]:
    return {"id": tid, "from_step_id": source, "to_step_id": target, "trigger": trigger, **extra}


@pytest.fixture
def make_definition(hr_actor) -> Callable[..., WorkflowDefinition]:
    """Create a tenant definition through the service"""
    def _make(
        steps: List[Dict[str, Any]],
        transitions: Optional[List[Dict[str, Any]]] = None,
        name: str = "Test Workflow",
        **extra: Any
    ) -> WorkflowDefinition:
        return DefinitionService().create_definition(hr_actor, {
            "name": name,
            "steps": steps,
            "transitions": transitions or [],
            **extra
        })
    return _make


@pytest.fixture
def start_instance(hr_actor) -> Callable[..., WorkflowInstance]:
    """Start an instance about emp-1 through the service"""
    def _start(
        definition: WorkflowDefinition,
        subject: str = "emp-1",
        context_data: Optional[Dict[str, Any]] = None,
        actor: Optional[ActorContext] = None
    ) -> WorkflowInstance:
        return InstanceService().start_instance(
            actor or hr_actor,
            definition.definition_id,
            subject_employee_id=subject,
            source_type="test",
            source_id=uuid.uuid4().hex[:8],
            context_data=context_data
        )
    return _start
