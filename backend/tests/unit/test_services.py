"""
Service-level tests: definition management, instance lifecycle, step
actions, visibility rules and dashboard counters.
"""

import re

import pytest

from hrflow.domain.models import WorkflowDefinition
from hrflow.domain.enums import ApprovalStatus, AuditEventType, InstanceStatus, StepStatus, WorkflowModule
from hrflow.domain.errors import (
    CommentRequiredError, DefinitionNotFoundError, DefinitionValidationError, IllegalSkipError,
    InactiveDefinitionError, InstanceNotFoundError, InvalidStateError, NotAssigneeError,
    PermissionDeniedError, StepNotFoundError, SystemDefinitionError
)
from hrflow.repositories.definition_repo import DefinitionRepository
from hrflow.repositories.instance_repo import InstanceRepository
from hrflow.repositories.audit_repo import AuditRepository
from hrflow.services.dashboard_service import DashboardService
from hrflow.services.definition_service import DefinitionService
from hrflow.services.instance_service import InstanceService
from hrflow.services.step_service import StepService
from hrflow.utils.time import utc_now

from tests.conftest import approval, form, transition


def open_step(instance_id):
    return InstanceRepository().get_open_step(instance_id)


def validation_types(excinfo):
    return [e["type"] for e in excinfo.value.details["errors"]]


# ============================================================================
# Definitions
# ============================================================================

def test_create_definition_derives_slug_and_captures_version(hr_actor, make_definition):
    definition = make_definition([form("a")], name="Annual  Review")

    assert re.fullmatch(r"annual-review-[a-z0-9]{6}", definition.slug)
    assert definition.version == 1
    assert definition.tenant_id == hr_actor.tenant_id
    assert definition.is_active is True
    assert definition.is_system is False
    assert DefinitionRepository().get_snapshot(definition.definition_id, 1) is not None

    recorded = AuditRepository().get_events_for_definition(definition.definition_id)
    assert [e.event_type for e in recorded] == [AuditEventType.DEFINITION_CREATED]


def test_only_hr_creates_definitions(manager_actor):
    with pytest.raises(PermissionDeniedError):
        DefinitionService().create_definition(manager_actor, {"name": "Nope", "steps": [form("a")]})


def test_empty_steps_are_rejected(hr_actor):
    with pytest.raises(DefinitionValidationError) as excinfo:
        DefinitionService().create_definition(hr_actor, {"name": "Empty", "steps": []})
    assert validation_types(excinfo) == ["EMPTY_STEPS"]


@pytest.mark.parametrize("steps, transitions, expected", [
    ([form("a"), form("a")], [], "DUPLICATE_STEP_ID"),
    ([form("a")], [transition("t1", "a", "ghost")], "INVALID_TRANSITION_TARGET"),
    ([form("a")], [transition("t1", "ghost", "a")], "INVALID_TRANSITION_SOURCE"),
    ([form("a"), form("b")], [transition("t1", "b", "a")], "CYCLE_DETECTED"),
    ([form("END")], [], "RESERVED_STEP_ID"),
    ([{"id": "p", "type": "parallel", "name": "P", "parallel_steps": []}], [], "PARALLEL_NO_CHILDREN"),
])
def test_structural_problems_are_reported(hr_actor, steps, transitions, expected):
    with pytest.raises(DefinitionValidationError) as excinfo:
        DefinitionService().create_definition(hr_actor, {"name": "Bad", "steps": steps, "transitions": transitions})
    assert expected in validation_types(excinfo)


def test_schema_problems_are_reported(hr_actor):
    with pytest.raises(DefinitionValidationError) as excinfo:
        DefinitionService().create_definition(hr_actor, {
            "name": "Bad",
            "steps": [{"id": "a", "type": "teleport", "name": "A"}]
        })
    assert "SCHEMA_ERROR" in validation_types(excinfo)


def test_wildcard_transition_is_not_a_cycle(make_definition):
    definition = make_definition(
        [approval("a"), approval("b"), form("closing")],
        [transition("t_abort", "*", "closing", "rejected")]
    )
    assert definition.transitions[0].from_step_id == "*"


def test_send_back_to_an_earlier_step_is_refused(hr_actor):
    # Re-entering self_review would repeat it in completed_step_ids
    with pytest.raises(DefinitionValidationError) as excinfo:
        DefinitionService().create_definition(hr_actor, {
            "name": "Review With Send Back",
            "steps": [form("self_review"), approval("mgr"), form("calibration")],
            "transitions": [transition("t_back", "mgr", "self_review", "rejected")],
        })

    problems = excinfo.value.details["errors"]
    assert [p["type"] for p in problems] == ["CYCLE_DETECTED"]
    assert "self_review -> mgr -> self_review" in problems[0]["message"]


def test_structural_update_bumps_version(hr_actor, make_definition, start_instance, employee_actor):
    definition = make_definition([form("a"), form("b")])
    running = start_instance(definition)
    service = DefinitionService()

    updated = service.update_definition(hr_actor, definition.definition_id, {
        "steps": [form("a"), form("b"), form("c")]
    })

    assert updated.version == 2
    assert DefinitionRepository().get_snapshot(definition.definition_id, 2) is not None

    # The running instance stays on version 1 and finishes after b
    steps = StepService()
    steps.complete_step(employee_actor, open_step(running.instance_id).step_instance_id, {})
    result = steps.complete_step(employee_actor, open_step(running.instance_id).step_instance_id, {})
    assert result["instance"].definition_version == 1
    assert result["instance"].status == InstanceStatus.COMPLETED

    fresh = start_instance(updated)
    assert fresh.definition_version == 2


def test_non_structural_update_keeps_version(hr_actor, make_definition):
    definition = make_definition([approval("a")])
    service = DefinitionService()

    renamed = service.update_definition(hr_actor, definition.definition_id, {"name": "Renamed"})
    assert renamed.version == 1
    assert renamed.name == "Renamed"
    assert renamed.slug == definition.slug

    with_rules = service.update_definition(hr_actor, definition.definition_id, {
        "escalation_rules": [{"trigger_days_overdue": 2, "escalate_to": "hr_manager"}]
    })
    assert with_rules.version == 1
    snapshot = DefinitionRepository().get_snapshot(definition.definition_id, 1)
    assert snapshot.escalation_rules[0].trigger_days_overdue == 2


def test_invalid_update_leaves_definition_untouched(hr_actor, make_definition):
    definition = make_definition([form("a"), form("b")])

    with pytest.raises(DefinitionValidationError):
        DefinitionService().update_definition(hr_actor, definition.definition_id, {
            "transitions": [transition("t1", "b", "a")]
        })

    stored = DefinitionRepository().get_definition(definition.definition_id)
    assert stored.version == 1
    assert stored.transitions == []


def test_clone_is_always_inactive(hr_actor, make_definition):
    definition = make_definition([form("a")], is_template=True)

    clone = DefinitionService().clone_definition(hr_actor, definition.definition_id, "My Copy")

    assert clone.definition_id != definition.definition_id
    assert clone.parent_id == definition.definition_id
    assert clone.is_active is False
    assert clone.is_template is False
    assert clone.version == 1
    assert clone.slug.startswith("my-copy-")
    assert [s.id for s in clone.steps] == ["a"]


@pytest.fixture
def system_definition() -> WorkflowDefinition:
    """Global definition without a captured snapshot"""
    now = utc_now()
    return DefinitionRepository().create_definition(WorkflowDefinition.model_validate({
        "definition_id": "WFD-system",
        "tenant_id": None,
        "name": "System Flow",
        "slug": "system-flow",
        "steps": [form("a")],
        "is_system": True,
        "is_template": True,
        "created_at": now,
        "updated_at": now,
    }))


def test_system_definitions_are_read_only(hr_actor, foreign_hr_actor, system_definition):
    service = DefinitionService()

    assert service.get_definition(foreign_hr_actor, system_definition.definition_id).is_system
    assert service.get_by_slug(hr_actor, "system-flow").definition_id == system_definition.definition_id

    with pytest.raises(SystemDefinitionError):
        service.update_definition(hr_actor, system_definition.definition_id, {"name": "Mine"})
    with pytest.raises(SystemDefinitionError):
        service.delete_definition(hr_actor, system_definition.definition_id)

    clone = service.clone_definition(hr_actor, system_definition.definition_id, "Local Flow")
    assert clone.tenant_id == hr_actor.tenant_id
    assert clone.is_system is False


def test_starting_captures_missing_snapshot(hr_actor, start_instance, system_definition):
    instance = start_instance(system_definition)

    assert instance.current_step_id == "a"
    assert instance.tenant_id == hr_actor.tenant_id
    assert DefinitionRepository().get_snapshot(system_definition.definition_id, 1) is not None


def test_definitions_are_tenant_scoped(hr_actor, foreign_hr_actor, make_definition):
    definition = make_definition([form("a")])
    service = DefinitionService()

    with pytest.raises(DefinitionNotFoundError):
        service.get_definition(foreign_hr_actor, definition.definition_id)
    with pytest.raises(DefinitionNotFoundError):
        service.update_definition(foreign_hr_actor, definition.definition_id, {"name": "Hijack"})
    assert service.list_definitions(foreign_hr_actor)["total"] == 0
    assert service.list_definitions(hr_actor)["total"] == 1


def test_list_definitions_filters(hr_actor, make_definition):
    make_definition([form("a")], name="Quarterly Review", module="performance")
    make_definition([form("a")], name="Course Request", module="training", category="learning")
    service = DefinitionService()

    assert service.list_definitions(hr_actor, module=WorkflowModule.TRAINING)["total"] == 1
    assert service.list_definitions(hr_actor, category="learning")["data"][0].name == "Course Request"
    assert service.list_definitions(hr_actor, search="quarterly")["data"][0].name == "Quarterly Review"

    page = service.list_definitions(hr_actor, limit=1)
    assert len(page["data"]) == 1
    assert page["has_more"] is True


def test_delete_deactivates_and_blocks_new_instances(hr_actor, make_definition, start_instance):
    definition = make_definition([form("a")])

    deleted = DefinitionService().delete_definition(hr_actor, definition.definition_id)
    assert deleted.is_active is False

    with pytest.raises(InactiveDefinitionError):
        start_instance(definition)


# ============================================================================
# Instances
# ============================================================================

def test_start_then_cancel(db, hr_actor, make_definition, start_instance):
    definition = make_definition([form("a"), form("b")])
    instance = start_instance(definition)
    step = open_step(instance.instance_id)

    cancelled = InstanceService().cancel_instance(hr_actor, instance.instance_id, "Duplicate")

    assert cancelled.status == InstanceStatus.CANCELLED
    assert cancelled.current_step_id is None
    assert cancelled.completed_at is not None
    assert cancelled.completed_step_ids == ["a"]
    assert cancelled.context_data["cancellation_reason"] == "Duplicate"
    assert InstanceRepository().get_step(step.step_instance_id).status == StepStatus.SKIPPED
    assert open_step(instance.instance_id) is None

    types = [e.event_type for e in AuditRepository().get_events_for_instance(instance.instance_id)]
    assert AuditEventType.INSTANCE_CANCELLED in types


def test_cancel_rules(hr_actor, manager_actor, make_definition, start_instance):
    definition = make_definition([form("a")])
    instance = start_instance(definition)
    service = InstanceService()

    with pytest.raises(PermissionDeniedError):
        service.cancel_instance(manager_actor, instance.instance_id)

    service.cancel_instance(hr_actor, instance.instance_id)
    with pytest.raises(InvalidStateError):
        service.cancel_instance(hr_actor, instance.instance_id)


def test_missing_manager_leaves_step_unassigned(hr_actor, make_definition, start_instance):
    definition = make_definition([approval("sign_off"), form("after")])

    instance = start_instance(definition, subject="emp-orphan")

    step = open_step(instance.instance_id)
    assert step.assignee_employee_id is None
    assert instance.status == InstanceStatus.AWAITING_APPROVAL

    result = StepService().decide_step(hr_actor, step.step_instance_id, ApprovalStatus.APPROVED)
    assert result["instance"].current_step_id == "after"


def test_instance_visibility(employee_actor, manager_actor, outsider_actor, foreign_hr_actor,
                             make_definition, start_instance):
    definition = make_definition([approval("sign_off")])
    instance = start_instance(definition)
    service = InstanceService()

    assert service.get_visible_instance(employee_actor, instance.instance_id).instance_id == instance.instance_id
    assert service.get_visible_instance(manager_actor, instance.instance_id).instance_id == instance.instance_id
    with pytest.raises(InstanceNotFoundError):
        service.get_visible_instance(outsider_actor, instance.instance_id)
    with pytest.raises(InstanceNotFoundError):
        service.get_visible_instance(foreign_hr_actor, instance.instance_id)


def test_list_instances_scopes_non_hr_to_own(hr_actor, employee_actor, outsider_actor,
                                             make_definition, start_instance):
    definition = make_definition([form("a")])
    start_instance(definition)
    start_instance(definition, subject="emp-2")
    service = InstanceService()

    assert service.list_instances(hr_actor)["total"] == 2
    mine = service.list_instances(employee_actor)
    assert mine["total"] == 1
    assert mine["data"][0].subject_employee_id == "emp-1"
    assert service.list_instances(hr_actor, subject_employee_id="emp-2")["total"] == 1
    assert service.list_instances(outsider_actor, subject_employee_id="emp-1")["total"] == 1
    assert service.list_instances(outsider_actor, subject_employee_id="emp-1")["data"][0].subject_employee_id == "emp-2"


def test_instance_detail(employee_actor, make_definition, start_instance):
    definition = make_definition([form("a", can_skip=True), form("b")])
    instance = start_instance(definition)

    detail = InstanceService().get_instance_detail(employee_actor, instance.instance_id)

    assert detail["instance"].instance_id == instance.instance_id
    assert detail["definition"]["version"] == 1
    assert [s["id"] for s in detail["definition"]["steps"]] == ["a", "b"]
    assert detail["progress"] == {
        "total_steps": 2,
        "completed_steps": 0,
        "current_step": 1,
        "percent_complete": 0,
        "is_overdue": False,
    }
    assert detail["available_actions"][0]["actions"] == ["submit", "skip"]
    assert [e["type"] for e in detail["timeline"]] == ["started", "step_started"]


def test_audit_trail_is_visible_to_subject(employee_actor, outsider_actor, make_definition, start_instance):
    definition = make_definition([form("a")])
    instance = start_instance(definition)
    service = InstanceService()

    trail = service.get_audit_trail(employee_actor, instance.instance_id)
    assert trail["total"] >= 2
    assert trail["data"][0].instance_id == instance.instance_id

    with pytest.raises(InstanceNotFoundError):
        service.get_audit_trail(outsider_actor, instance.instance_id)


# ============================================================================
# Step actions
# ============================================================================

def test_complete_and_decide_are_type_checked(employee_actor, manager_actor, make_definition, start_instance):
    definition = make_definition([approval("sign_off"), form("after")])
    instance = start_instance(definition)
    service = StepService()
    step = open_step(instance.instance_id)

    with pytest.raises(InvalidStateError):
        service.complete_step(manager_actor, step.step_instance_id, {})

    service.decide_step(manager_actor, step.step_instance_id, ApprovalStatus.APPROVED)
    with pytest.raises(InvalidStateError):
        service.decide_step(employee_actor, open_step(instance.instance_id).step_instance_id, ApprovalStatus.APPROVED)


def review(step_id: str, role: str = "manager"):
    return {"id": step_id, "type": "review", "name": step_id.replace("_", " ").title(), "assignment_role": role}


@pytest.mark.parametrize("decision, next_step_id", [
    (ApprovalStatus.APPROVED, "calibration"),
    (ApprovalStatus.REJECTED, "rework"),
])
def test_review_steps_can_be_decided(manager_actor, make_definition, start_instance, decision, next_step_id):
    definition = make_definition(
        [review("mgr_review"), form("rework"), form("calibration")],
        [
            transition("t_ok", "mgr_review", "calibration", "approved"),
            transition("t_back", "mgr_review", "rework", "rejected"),
        ]
    )
    instance = start_instance(definition)
    step = open_step(instance.instance_id)
    assert step.assignee_employee_id == "emp-mgr"

    detail = InstanceService().get_instance_detail(manager_actor, instance.instance_id)
    assert detail["available_actions"][0]["actions"] == ["submit", "approve", "reject"]

    result = StepService().decide_step(manager_actor, step.step_instance_id, decision, "Calibrated")

    assert result["step"].status == StepStatus.COMPLETED
    assert result["step"].approval_status == decision
    assert result["step"].approved_by == manager_actor.user_id
    assert result["instance"].current_step_id == next_step_id
    assert result["instance"].completed_step_ids == ["mgr_review"]


def test_review_steps_can_still_be_submitted(manager_actor, make_definition, start_instance):
    definition = make_definition([review("mgr_review"), form("after")])
    instance = start_instance(definition)

    result = StepService().complete_step(manager_actor, open_step(instance.instance_id).step_instance_id, {"rating": 4})

    assert result["step"].step_data == {"rating": 4}
    assert result["step"].approval_status is None
    assert result["instance"].current_step_id == "after"


def test_only_assignee_or_hr_acts(employee_actor, outsider_actor, hr_actor, make_definition, start_instance):
    definition = make_definition([form("a"), form("b")])
    instance = start_instance(definition)
    service = StepService()
    step = open_step(instance.instance_id)

    with pytest.raises(NotAssigneeError):
        service.complete_step(outsider_actor, step.step_instance_id, {})

    result = service.complete_step(hr_actor, step.step_instance_id, {"on_behalf": True})
    assert result["step"].step_data == {"on_behalf": True}
    assert result["instance"].current_step_id == "b"


def test_steps_are_tenant_scoped(foreign_hr_actor, make_definition, start_instance):
    definition = make_definition([form("a")])
    instance = start_instance(definition)

    with pytest.raises(StepNotFoundError):
        StepService().complete_step(foreign_hr_actor, open_step(instance.instance_id).step_instance_id, {})


def test_illegal_skip_leaves_step_unchanged(employee_actor, make_definition, start_instance):
    definition = make_definition([form("a"), form("b")])
    instance = start_instance(definition)
    step = open_step(instance.instance_id)

    with pytest.raises(IllegalSkipError) as excinfo:
        StepService().skip_step(employee_actor, step.step_instance_id, "busy")

    assert excinfo.value.http_status == 400
    unchanged = InstanceRepository().get_step(step.step_instance_id)
    assert unchanged.status == step.status
    assert unchanged.completed_at is None
    current = InstanceRepository().get_instance(instance.instance_id)
    assert current.current_step_id == "a"
    assert current.version == instance.version


def test_skippable_step_is_skipped_with_reason(db, employee_actor, make_definition, start_instance):
    definition = make_definition([form("a", is_optional=True), form("b")])
    instance = start_instance(definition)

    result = StepService().skip_step(employee_actor, open_step(instance.instance_id).step_instance_id, "n/a")

    assert result["step"].status == StepStatus.SKIPPED
    assert result["step"].step_data == {"skip_reason": "n/a"}
    assert result["instance"].current_step_id == "b"
    assert result["instance"].completed_step_ids == ["a"]


def test_required_comment(manager_actor, make_definition, start_instance):
    definition = make_definition([approval("sign_off", approval_config={"require_comment": True})])
    instance = start_instance(definition)
    service = StepService()
    step = open_step(instance.instance_id)

    with pytest.raises(CommentRequiredError):
        service.decide_step(manager_actor, step.step_instance_id, ApprovalStatus.REJECTED, "   ")

    result = service.decide_step(manager_actor, step.step_instance_id, ApprovalStatus.REJECTED, "Missing goals")
    assert result["instance"].status == InstanceStatus.COMPLETED


def test_list_my_pending(manager_actor, director_actor, make_definition, start_instance):
    definition = make_definition([approval("sign_off")])
    start_instance(definition)
    start_instance(definition, subject="emp-2")
    service = StepService()

    pending = service.list_my_pending(manager_actor)
    assert pending["total"] == 2
    assert {s.step_id for s in pending["data"]} == {"sign_off"}

    assert service.list_my_pending(director_actor)["total"] == 0
    first_page = service.list_my_pending(manager_actor, limit=1)
    assert len(first_page["data"]) == 1
    assert first_page["has_more"] is True


def test_list_my_pending_includes_parallel_branches(director_actor, make_definition, start_instance):
    definition = make_definition([{
        "id": "panel",
        "type": "parallel",
        "name": "Panel",
        "parallel_steps": [approval("mgr_ok"), approval("dir_ok", role="skip_level_manager")],
    }])
    start_instance(definition)

    pending = StepService().list_my_pending(director_actor)
    assert pending["total"] == 1
    assert pending["data"][0].step_id == "panel"


# ============================================================================
# Dashboard
# ============================================================================

def test_dashboard_stats(employee_actor, manager_actor, make_definition, start_instance):
    definition = make_definition([form("a"), approval("sign_off")])
    first = start_instance(definition)
    start_instance(definition, subject="emp-2")
    StepService().complete_step(employee_actor, open_step(first.instance_id).step_instance_id, {})

    stats = DashboardService().get_stats(manager_actor)
    assert stats == {
        "pending_steps": 1,
        "active_workflows": 2,
        "overdue_steps": 0,
        "completed_this_month": 0,
    }

    StepService().decide_step(manager_actor, open_step(first.instance_id).step_instance_id, ApprovalStatus.APPROVED)
    stats = DashboardService().get_stats(manager_actor)
    assert stats["completed_this_month"] == 1
    assert stats["active_workflows"] == 1
    assert stats["pending_steps"] == 0
