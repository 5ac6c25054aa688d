"""
Advancement tests against the in-memory database: routing, automatic steps,
parallel steps, blocked instances, concurrency and the timer entry point.
"""

from datetime import timedelta

import pytest

from hrflow.domain.models import DefinitionSnapshot, TransitionDefinition
from hrflow.domain.enums import (
    ApprovalStatus, AuditEventType, BranchStatus, InstanceStatus, StepOutcome, StepStatus,
    TransitionTrigger
)
from hrflow.domain.errors import ConcurrencyError, InvalidStateError
from hrflow.repositories.instance_repo import InstanceRepository
from hrflow.repositories.definition_repo import DefinitionRepository
from hrflow.repositories.audit_repo import AuditRepository
from hrflow.engine.transition_resolver import TransitionResolver
from hrflow.scheduler.dev_scheduler import DevScheduler
from hrflow.services.instance_service import InstanceService
from hrflow.services.step_service import StepService
from hrflow.utils.time import utc_now

from tests.conftest import approval, form, transition

OPEN = ["pending", "in_progress"]


def reload(instance_id):
    return InstanceRepository().get_instance(instance_id)


def open_step(instance_id):
    return InstanceRepository().get_open_step(instance_id)


def assert_invariants(db, instance_id):
    """Exactly one open step while running; history matches completed_step_ids"""
    instance = reload(instance_id)
    steps = db["workflow_step_instances"]
    open_count = steps.count_documents({"instance_id": instance_id, "status": {"$in": OPEN}})
    closed_count = steps.count_documents({"instance_id": instance_id, "status": {"$in": ["completed", "skipped"]}})

    if instance.status in (InstanceStatus.IN_PROGRESS, InstanceStatus.AWAITING_APPROVAL):
        assert open_count == 1
        assert open_step(instance_id).step_id == instance.current_step_id
    else:
        assert open_count == 0
        assert instance.current_step_id is None

    assert len(set(instance.completed_step_ids)) == len(instance.completed_step_ids)
    assert len(instance.completed_step_ids) == closed_count


def age_step(db, step_instance_id, days):
    """Move a step's due date into the past"""
    db["workflow_step_instances"].update_one(
        {"step_instance_id": step_instance_id},
        {"$set": {"due_date": utc_now() - timedelta(days=days)}}
    )


def events(instance_id):
    return [e.event_type for e in AuditRepository().get_events_for_instance(instance_id)]


# ============================================================================
# Linear and routed flows
# ============================================================================

def test_linear_workflow_runs_to_completion(db, make_definition, start_instance, employee_actor):
    definition = make_definition([form("one"), form("two"), form("three")])
    instance = start_instance(definition)
    service = StepService()

    assert instance.status == InstanceStatus.IN_PROGRESS
    assert instance.current_step_id == "one"
    assert instance.version == 2
    assert_invariants(db, instance.instance_id)

    for expected_order, step_id in enumerate(["one", "two", "three"]):
        step = open_step(instance.instance_id)
        assert step.step_id == step_id
        assert step.step_order == expected_order
        assert step.assignee_employee_id == "emp-1"
        service.complete_step(employee_actor, step.step_instance_id, {"answer": step_id})
        assert_invariants(db, instance.instance_id)

    done = reload(instance.instance_id)
    assert done.status == InstanceStatus.COMPLETED
    assert done.completed_step_ids == ["one", "two", "three"]
    assert done.completed_at is not None

    recorded = events(instance.instance_id)
    assert recorded.count(AuditEventType.STEP_ACTIVATED) == 3
    assert recorded.count(AuditEventType.STEP_COMPLETED) == 3
    assert AuditEventType.INSTANCE_STARTED in recorded
    assert AuditEventType.INSTANCE_COMPLETED in recorded


def test_transition_table_wins_over_position(db, make_definition, start_instance, employee_actor):
    definition = make_definition(
        [form("a"), form("b"), form("c")],
        [transition("t_skip_b", "a", "c", "form_submitted")]
    )
    instance = start_instance(definition)
    service = StepService()

    service.complete_step(employee_actor, open_step(instance.instance_id).step_instance_id, {})
    current = open_step(instance.instance_id)
    assert current.step_id == "c"
    assert current.step_order == 1

    service.complete_step(employee_actor, current.step_instance_id, {})
    done = reload(instance.instance_id)
    assert done.status == InstanceStatus.COMPLETED
    assert done.completed_step_ids == ["a", "c"]
    assert_invariants(db, instance.instance_id)


def test_rejection_follows_rejected_transition(db, make_definition, start_instance, manager_actor):
    definition = make_definition(
        [approval("review"), form("fix"), form("done")],
        [
            transition("t_ok", "review", "done", "approved"),
            transition("t_back", "review", "fix", "rejected"),
        ]
    )
    instance = start_instance(definition)
    assert instance.status == InstanceStatus.AWAITING_APPROVAL

    step = open_step(instance.instance_id)
    assert step.status == StepStatus.PENDING
    assert step.assignee_employee_id == "emp-mgr"

    result = StepService().decide_step(manager_actor, step.step_instance_id, ApprovalStatus.REJECTED, "Needs work")

    assert result["step"].approval_status == ApprovalStatus.REJECTED
    assert result["step"].approval_comment == "Needs work"
    assert result["step"].approved_by == manager_actor.user_id
    assert result["instance"].current_step_id == "fix"
    assert result["instance"].status == InstanceStatus.IN_PROGRESS
    assert AuditEventType.STEP_REJECTED in events(instance.instance_id)


def test_legacy_matching_ignores_rejection(db, make_definition, start_instance, manager_actor):
    definition = make_definition(
        [approval("review"), form("fix"), form("done")],
        [
            transition("t_ok", "review", "done", "approved"),
            transition("t_back", "review", "fix", "rejected"),
        ]
    )
    instance = start_instance(definition)
    service = StepService()
    service.advancer.transition_resolver = TransitionResolver("legacy")

    result = service.decide_step(
        manager_actor, open_step(instance.instance_id).step_instance_id, ApprovalStatus.REJECTED
    )
    assert result["instance"].current_step_id == "done"


def test_rejection_without_transition_moves_positionally(db, make_definition, start_instance, manager_actor):
    definition = make_definition([approval("review"), form("next")])
    instance = start_instance(definition)

    result = StepService().decide_step(
        manager_actor, open_step(instance.instance_id).step_instance_id, ApprovalStatus.REJECTED
    )
    assert result["instance"].current_step_id == "next"


# ============================================================================
# Automatic steps
# ============================================================================

GATE = {
    "id": "gate",
    "type": "conditional",
    "name": "Score Gate",
    "conditional_config": {
        "condition": {"conditions": [
            {"type": "score_check", "score_field": "overall_score", "score_threshold": 4}
        ]},
        "true_step_id": "high",
        "false_step_id": "low",
    },
}


@pytest.mark.parametrize("score, branch", [(5, "high"), (2, "low")])
def test_conditional_routes_on_submitted_data(db, make_definition, start_instance, employee_actor, score, branch):
    definition = make_definition(
        [form("intake"), GATE, form("high"), form("low")],
        [transition("t_high_end", "high", "END")]
    )
    instance = start_instance(definition)
    service = StepService()

    service.complete_step(employee_actor, open_step(instance.instance_id).step_instance_id, {"overall_score": score})

    current = open_step(instance.instance_id)
    assert current.step_id == branch
    assert current.step_order == 2
    gate = next(s for s in InstanceRepository().list_steps_for_instance(instance.instance_id) if s.step_id == "gate")
    assert gate.status == StepStatus.COMPLETED
    assert gate.step_data == {"condition_result": score >= 4}

    service.complete_step(employee_actor, current.step_instance_id, {})
    done = reload(instance.instance_id)
    assert done.status == InstanceStatus.COMPLETED
    assert done.completed_step_ids == ["intake", "gate", branch]
    assert_invariants(db, instance.instance_id)


def test_notification_steps_pass_through(db, make_definition, start_instance, employee_actor):
    notify = {"id": "notify", "type": "notification", "name": "Notify"}
    welcome = {"id": "welcome", "type": "notification", "name": "Welcome"}
    definition = make_definition([welcome, form("a"), notify, form("b")])

    instance = start_instance(definition)
    assert instance.current_step_id == "a"
    assert instance.completed_step_ids == ["welcome"]
    assert open_step(instance.instance_id).step_order == 1

    StepService().complete_step(employee_actor, open_step(instance.instance_id).step_instance_id, {})
    current = reload(instance.instance_id)
    assert current.current_step_id == "b"
    assert current.completed_step_ids == ["welcome", "a", "notify"]
    assert_invariants(db, instance.instance_id)


def test_all_automatic_definition_completes_at_start(db, make_definition, start_instance):
    definition = make_definition([{"id": "only", "type": "notification", "name": "Only"}])
    instance = start_instance(definition)

    assert instance.status == InstanceStatus.COMPLETED
    assert instance.completed_step_ids == ["only"]
    assert_invariants(db, instance.instance_id)


# ============================================================================
# Parallel steps
# ============================================================================

def panel(completion="all", children=None):
    return {
        "id": "panel",
        "type": "parallel",
        "name": "Panel",
        "parallel_steps": children or [approval("mgr_ok"), approval("dir_ok", role="skip_level_manager")],
        "parallel_completion": completion,
    }


def test_parallel_all_waits_for_every_branch(db, make_definition, start_instance, manager_actor, director_actor):
    definition = make_definition([panel(), form("wrap")])
    instance = start_instance(definition)
    service = StepService()

    step = open_step(instance.instance_id)
    assert step.assignee_employee_id is None
    assert {b.child_step_id: b.assignee_employee_id for b in step.branches} == {
        "mgr_ok": "emp-mgr", "dir_ok": "emp-dir"
    }

    first = service.decide_step(manager_actor, step.step_instance_id, ApprovalStatus.APPROVED)
    assert first["step"].is_open
    assert reload(instance.instance_id).current_step_id == "panel"
    assert_invariants(db, instance.instance_id)

    second = service.decide_step(director_actor, step.step_instance_id, ApprovalStatus.APPROVED)
    assert second["step"].status == StepStatus.COMPLETED
    assert second["step"].approval_status == ApprovalStatus.APPROVED
    assert second["instance"].current_step_id == "wrap"
    assert_invariants(db, instance.instance_id)


def test_parallel_all_rejects_on_first_rejection(db, make_definition, start_instance, manager_actor):
    definition = make_definition([panel(), form("wrap")])
    instance = start_instance(definition)

    result = StepService().decide_step(
        manager_actor, open_step(instance.instance_id).step_instance_id, ApprovalStatus.REJECTED
    )

    assert result["step"].status == StepStatus.COMPLETED
    assert result["step"].approval_status == ApprovalStatus.REJECTED
    assert result["instance"].current_step_id == "wrap"


def test_parallel_any_closes_on_first_approval(db, make_definition, start_instance, director_actor):
    definition = make_definition([panel("any"), form("wrap")])
    instance = start_instance(definition)

    result = StepService().decide_step(
        director_actor, open_step(instance.instance_id).step_instance_id, ApprovalStatus.APPROVED
    )

    assert result["instance"].current_step_id == "wrap"
    statuses = {b.child_step_id: b.status for b in result["step"].branches}
    assert statuses == {"mgr_ok": BranchStatus.PENDING, "dir_ok": BranchStatus.APPROVED}


def test_parallel_form_branch_keeps_its_data(db, make_definition, start_instance, employee_actor, manager_actor):
    definition = make_definition([panel(children=[form("self_rating"), approval("mgr_ok")]), form("wrap")])
    instance = start_instance(definition)
    service = StepService()
    step_id = open_step(instance.instance_id).step_instance_id

    service.complete_step(employee_actor, step_id, {"rating": 4}, child_step_id="self_rating")
    result = service.decide_step(manager_actor, step_id, ApprovalStatus.APPROVED)

    assert result["step"].step_data["branches"] == {"self_rating": {"rating": 4}}
    assert result["instance"].current_step_id == "wrap"


def test_recorded_branch_cannot_be_recorded_again(db, make_definition, start_instance, manager_actor, hr_actor):
    definition = make_definition([panel(), form("wrap")])
    instance = start_instance(definition)
    service = StepService()
    step_id = open_step(instance.instance_id).step_instance_id

    service.decide_step(manager_actor, step_id, ApprovalStatus.APPROVED)
    with pytest.raises(InvalidStateError):
        service.decide_step(hr_actor, step_id, ApprovalStatus.APPROVED, child_step_id="mgr_ok")


def test_hr_can_force_close_parallel_step(db, make_definition, start_instance, hr_actor):
    definition = make_definition([panel(), form("wrap")])
    instance = start_instance(definition)

    result = StepService().decide_step(
        hr_actor, open_step(instance.instance_id).step_instance_id, ApprovalStatus.APPROVED, "Overridden"
    )

    assert result["step"].status == StepStatus.COMPLETED
    assert result["step"].approval_comment == "Overridden"
    assert result["instance"].current_step_id == "wrap"


# ============================================================================
# Blocked instances
# ============================================================================

def replace_structure(definition, steps, transitions):
    """Overwrite the captured structure of a definition's current version"""
    DefinitionRepository().save_snapshot(DefinitionSnapshot.model_validate({
        "definition_id": definition.definition_id,
        "version": definition.version,
        "steps": steps,
        "transitions": transitions,
        "captured_at": utc_now(),
    }))


def test_unresolved_target_blocks_instance(db, make_definition, start_instance, employee_actor, hr_actor):
    steps = [form("a"), form("b")]
    definition = make_definition(steps)
    instance = start_instance(definition)
    replace_structure(definition, steps, [transition("t_ghost", "a", "ghost", "form_submitted")])

    result = StepService().complete_step(employee_actor, open_step(instance.instance_id).step_instance_id, {})

    blocked = result["instance"]
    assert blocked.status == InstanceStatus.BLOCKED
    assert blocked.current_step_id is None
    assert blocked.context_data["blocked"]["reason"] == "unresolved_target"
    assert blocked.context_data["blocked"]["step_id"] == "ghost"
    assert AuditEventType.INSTANCE_BLOCKED in events(instance.instance_id)
    assert_invariants(db, instance.instance_id)

    cancelled = InstanceService().cancel_instance(hr_actor, instance.instance_id, "stuck")
    assert cancelled.status == InstanceStatus.CANCELLED


def test_revisiting_completed_step_blocks_instance(db, make_definition, start_instance, employee_actor):
    steps = [form("a"), form("b")]
    definition = make_definition(steps)
    instance = start_instance(definition)
    replace_structure(definition, steps, [transition("t_loop", "b", "a", "form_submitted")])
    service = StepService()

    service.complete_step(employee_actor, open_step(instance.instance_id).step_instance_id, {})
    result = service.complete_step(employee_actor, open_step(instance.instance_id).step_instance_id, {})

    assert result["instance"].status == InstanceStatus.BLOCKED
    assert result["instance"].context_data["blocked"]["reason"] == "step_already_completed"
    assert result["instance"].completed_step_ids == ["a", "b"]


def test_step_missing_from_definition_blocks_instance(db, make_definition, start_instance, employee_actor):
    definition = make_definition([form("a"), form("b")])
    instance = start_instance(definition)
    replace_structure(definition, [form("b")], [])

    result = StepService().complete_step(employee_actor, open_step(instance.instance_id).step_instance_id, {})

    assert result["instance"].status == InstanceStatus.BLOCKED
    assert result["instance"].context_data["blocked"]["reason"] == "step_not_in_definition"


# ============================================================================
# Concurrency
# ============================================================================

def test_stale_instance_version_is_rejected(db, make_definition, start_instance, employee_actor):
    definition = make_definition([form("a"), form("b")])
    instance = start_instance(definition)
    step = open_step(instance.instance_id)
    repo = InstanceRepository()

    touched = repo.update_instance(
        instance.instance_id, {"context_data.touched": True}, expected_version=instance.version
    )

    with pytest.raises(ConcurrencyError):
        StepService().advancer.advance(
            instance, step, {"status": StepStatus.COMPLETED.value, "completed_at": utc_now()},
            StepOutcome.SUBMITTED, employee_actor
        )

    # Nothing from the rejected advance is visible, even without a transaction
    after = reload(instance.instance_id)
    assert after.version == touched.version
    assert after.current_step_id == "a"
    assert after.completed_step_ids == []
    still_open = open_step(instance.instance_id)
    assert still_open.step_instance_id == step.step_instance_id
    assert still_open.status == step.status
    assert [s.step_id for s in repo.list_steps_for_instance(instance.instance_id)] == ["a"]

    # The fresh copy advances normally
    advanced, closed = StepService().advancer.advance(
        after, still_open, {"status": StepStatus.COMPLETED.value, "completed_at": utc_now()},
        StepOutcome.SUBMITTED, employee_actor
    )
    assert closed.status == StepStatus.COMPLETED
    assert advanced.current_step_id == "b"
    assert_invariants(db, instance.instance_id)


def test_closed_step_cannot_be_completed_twice(db, make_definition, start_instance, employee_actor):
    definition = make_definition([form("a"), form("b")])
    instance = start_instance(definition)
    step_id = open_step(instance.instance_id).step_instance_id
    service = StepService()

    service.complete_step(employee_actor, step_id, {})
    with pytest.raises(InvalidStateError):
        service.complete_step(employee_actor, step_id, {})

    assert reload(instance.instance_id).completed_step_ids == ["a"]


# ============================================================================
# Timers
# ============================================================================

def wait(step_id, **config):
    return {"id": step_id, "type": "wait", "name": step_id.title(), "wait_config": config}


def test_duration_wait_completes_once_due(db, make_definition, start_instance):
    definition = make_definition([wait("cooldown", type="duration", duration_days=1), form("after")])
    instance = start_instance(definition)
    step = open_step(instance.instance_id)
    advancer = StepService().advancer

    assert step.due_date is not None
    assert advancer.handle_timer(step.step_instance_id, StepOutcome.DUE_DATE_REACHED) is False

    age_step(db, step.step_instance_id, 1)
    assert advancer.handle_timer(step.step_instance_id, StepOutcome.DUE_DATE_REACHED) is True
    assert advancer.handle_timer(step.step_instance_id, StepOutcome.DUE_DATE_REACHED) is False

    assert reload(instance.instance_id).current_step_id == "after"
    assert_invariants(db, instance.instance_id)


def test_condition_wait_completes_when_condition_holds(db, make_definition, start_instance):
    definition = make_definition([
        wait("clearance", type="condition", condition={"conditions": [
            {"field": "cleared", "operator": "eq", "value": True}
        ]}),
        form("after"),
    ])
    instance = start_instance(definition, context_data={"cleared": False})
    step = open_step(instance.instance_id)
    advancer = StepService().advancer

    assert step.due_date is None
    assert advancer.handle_timer(step.step_instance_id, StepOutcome.DUE_DATE_REACHED) is False

    db["workflow_instances"].update_one(
        {"instance_id": instance.instance_id}, {"$set": {"context_data.cleared": True}}
    )
    assert advancer.handle_timer(step.step_instance_id, StepOutcome.DUE_DATE_REACHED) is True
    assert reload(instance.instance_id).current_step_id == "after"


def test_wait_scan_fires_date_waits(db, make_definition, start_instance):
    definition = make_definition([wait("start_date", type="date", date_field="start_on"), form("after")])
    instance = start_instance(definition, context_data={"start_on": "2020-01-06T09:00:00Z"})
    scheduler = DevScheduler()

    assert scheduler.run_wait_scan() == 1
    assert scheduler.run_wait_scan() == 0
    assert reload(instance.instance_id).current_step_id == "after"


def test_due_date_trigger_ignores_non_wait_steps(db, make_definition, start_instance):
    definition = make_definition([form("a", default_duration_days=1), form("b")])
    instance = start_instance(definition)
    step = open_step(instance.instance_id)
    age_step(db, step.step_instance_id, 2)

    assert StepService().advancer.handle_timer(step.step_instance_id, StepOutcome.DUE_DATE_REACHED) is False
    assert reload(instance.instance_id).current_step_id == "a"


def test_timeout_needs_a_timeout_transition(db, make_definition, start_instance):
    definition = make_definition(
        [form("draft", default_duration_days=1), form("final")],
        [transition("t_timeout", "draft", "END", "timeout")]
    )
    instance = start_instance(definition)
    step = open_step(instance.instance_id)
    advancer = StepService().advancer

    assert advancer.handle_timer(step.step_instance_id, StepOutcome.TIMEOUT) is False

    age_step(db, step.step_instance_id, 2)
    assert advancer.handle_timer(step.step_instance_id, StepOutcome.TIMEOUT) is True
    assert advancer.handle_timer(step.step_instance_id, StepOutcome.TIMEOUT) is False

    timed_out = InstanceRepository().get_step(step.step_instance_id)
    assert timed_out.status == StepStatus.SKIPPED
    assert timed_out.step_data["skip_reason"] == "timeout"
    done = reload(instance.instance_id)
    assert done.status == InstanceStatus.COMPLETED
    assert done.completed_step_ids == ["draft"]


def test_timeout_without_transition_is_noop(db, make_definition, start_instance):
    definition = make_definition([form("draft", default_duration_days=1), form("final")])
    instance = start_instance(definition)
    step = open_step(instance.instance_id)
    age_step(db, step.step_instance_id, 2)

    assert StepService().advancer.handle_timer(step.step_instance_id, StepOutcome.TIMEOUT) is False
    assert reload(instance.instance_id).current_step_id == "draft"


def test_escalation_notifies_next_manager_once(db, make_definition, start_instance):
    definition = make_definition([
        approval("sign_off", default_duration_days=1, approval_config={"escalate_after_days": 2}),
        form("after"),
    ])
    instance = start_instance(definition)
    step = open_step(instance.instance_id)
    advancer = StepService().advancer

    age_step(db, step.step_instance_id, 1)
    assert advancer.handle_timer(step.step_instance_id, StepOutcome.ESCALATION) is False

    age_step(db, step.step_instance_id, 3)
    assert advancer.handle_timer(step.step_instance_id, StepOutcome.ESCALATION) is True
    assert advancer.handle_timer(step.step_instance_id, StepOutcome.ESCALATION) is False

    escalated = InstanceRepository().get_step(step.step_instance_id)
    assert escalated.is_escalated is True
    assert escalated.escalated_to_employee_id == "emp-dir"
    assert escalated.assignee_employee_id == "emp-mgr"
    assert escalated.is_open
    assert AuditEventType.STEP_ESCALATED in events(instance.instance_id)


def test_escalation_rule_can_reassign(db, make_definition, start_instance, director_actor):
    definition = make_definition(
        [approval("sign_off", default_duration_days=1), form("after")],
        escalation_rules=[{
            "trigger_days_overdue": 1,
            "escalate_to": "skip_level_manager",
            "auto_reassign": True,
        }]
    )
    instance = start_instance(definition)
    step = open_step(instance.instance_id)
    age_step(db, step.step_instance_id, 2)

    assert DevScheduler().run_overdue_scan() == 1

    reassigned = InstanceRepository().get_step(step.step_instance_id)
    assert reassigned.assignee_employee_id == "emp-dir"
    result = StepService().decide_step(director_actor, step.step_instance_id, ApprovalStatus.APPROVED)
    assert result["instance"].current_step_id == "after"


def test_escalation_transition_moves_instance(db, make_definition, start_instance):
    definition = make_definition(
        [approval("sign_off", default_duration_days=1), form("after"), form("hr_review", role="hr_manager")],
        [
            transition("t_ok", "sign_off", "after", "approved"),
            transition("t_escalate", "sign_off", "hr_review", "escalation"),
        ],
        escalation_rules=[{"trigger_days_overdue": 1, "escalate_to": "skip_level_manager"}]
    )
    instance = start_instance(definition)
    step = open_step(instance.instance_id)
    age_step(db, step.step_instance_id, 2)

    assert StepService().advancer.handle_timer(step.step_instance_id, StepOutcome.ESCALATION) is True

    moved = reload(instance.instance_id)
    assert moved.current_step_id == "hr_review"
    assert open_step(instance.instance_id).assignee_employee_id is None
    assert_invariants(db, instance.instance_id)
