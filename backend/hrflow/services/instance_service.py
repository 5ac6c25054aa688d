"""Instance Service - Workflow instance lifecycle business logic"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..domain.models import ActorContext, WorkflowInstance, StepInstance, StepGraph, DefinitionSnapshot
from ..domain.enums import InstanceStatus, StepStatus, CLOSED_INSTANCE_STATUSES
from ..domain.errors import (
    InactiveDefinitionError, InstanceNotFoundError, PermissionDeniedError, InvalidStateError
)
from ..repositories.mongo_client import transaction
from ..repositories.definition_repo import DefinitionRepository
from ..repositories.instance_repo import InstanceRepository
from ..repositories.audit_repo import AuditRepository
from ..engine.advancer import WorkflowAdvancer
from ..engine.permission_guard import PermissionGuard
from ..engine.audit_writer import AuditWriter
from ..utils.idgen import generate_instance_id, generate_reference_number
from ..utils.time import utc_now, is_overdue
from ..utils.logger import get_logger

logger = get_logger(__name__)


def calculate_progress(graph: StepGraph, instance: WorkflowInstance, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Progress summary of an instance against its definition"""
    total = len(graph.steps)
    completed = len(instance.completed_step_ids)
    current_index = graph.step_index(instance.current_step_id) if instance.current_step_id else -1

    if instance.status == InstanceStatus.COMPLETED:
        percent = 100
    else:
        percent = min(100, round(completed / total * 100)) if total else 0

    return {
        "total_steps": total,
        "completed_steps": completed,
        "current_step": current_index + 1,
        "percent_complete": percent,
        "is_overdue": instance.status not in CLOSED_INSTANCE_STATUSES and is_overdue(instance.due_date, now),
    }


def build_timeline(
    instance: WorkflowInstance,
    steps: List[StepInstance],
    graph: StepGraph
) -> List[Dict[str, Any]]:
    """Chronological events of an instance"""
    timeline: List[Dict[str, Any]] = [{
        "id": "started",
        "type": "started",
        "timestamp": instance.started_at,
    }]

    for step in steps:
        step_def = graph.get_step(step.step_id)
        name = step_def.name if step_def else step.step_id
        timeline.append({
            "id": f"step-{step.step_instance_id}-started",
            "type": "step_started",
            "timestamp": step.started_at,
            "step_id": step.step_id,
            "step_name": name,
        })
        if step.completed_at:
            timeline.append({
                "id": f"step-{step.step_instance_id}",
                "type": "step_skipped" if step.status == StepStatus.SKIPPED else "step_completed",
                "timestamp": step.completed_at,
                "step_id": step.step_id,
                "step_name": name,
                "approval_status": step.approval_status.value if step.approval_status else None,
            })

    if instance.completed_at:
        timeline.append({
            "id": instance.status.value,
            "type": instance.status.value,
            "timestamp": instance.completed_at,
        })
    elif instance.status == InstanceStatus.BLOCKED:
        blocked = instance.context_data.get("blocked") or {}
        timeline.append({
            "id": "blocked",
            "type": "blocked",
            "timestamp": blocked.get("at") or instance.updated_at,
            "reason": blocked.get("reason"),
        })

    return sorted(timeline, key=lambda event: event["timestamp"])


class InstanceService:
    """Service for workflow instance operations"""

    def __init__(self):
        self.definition_repo = DefinitionRepository()
        self.instance_repo = InstanceRepository()
        self.audit_repo = AuditRepository()
        self.advancer = WorkflowAdvancer(instance_repo=self.instance_repo, definition_repo=self.definition_repo)
        self.permission_guard = PermissionGuard()
        self.audit_writer = AuditWriter()

    def start_instance(
        self,
        actor: ActorContext,
        definition_id: str,
        subject_employee_id: str,
        source_type: str,
        source_id: str,
        due_date: Optional[datetime] = None,
        context_data: Optional[Dict[str, Any]] = None
    ) -> WorkflowInstance:
        """
        Start an instance of an active definition

        The instance is pinned to the definition's current version and its
        first step is created in the same transaction.
        """
        definition = self.definition_repo.get_visible_definition_or_raise(definition_id, actor.tenant_id)
        if not definition.is_active:
            raise InactiveDefinitionError(
                f"Workflow definition {definition_id} is not active",
                details={"definition_id": definition_id}
            )

        if self.definition_repo.get_snapshot(definition.definition_id, definition.version) is None:
            self.definition_repo.save_snapshot(DefinitionSnapshot(
                definition_id=definition.definition_id,
                version=definition.version,
                steps=definition.steps,
                transitions=definition.transitions,
                default_durations=definition.default_durations,
                escalation_rules=definition.escalation_rules,
                captured_at=utc_now()
            ))

        now = utc_now()
        instance = WorkflowInstance(
            instance_id=generate_instance_id(),
            tenant_id=actor.tenant_id,
            definition_id=definition.definition_id,
            definition_version=definition.version,
            reference_number=generate_reference_number(),
            subject_employee_id=subject_employee_id,
            source_type=source_type,
            source_id=source_id,
            status=InstanceStatus.PENDING,
            context_data=dict(context_data or {}),
            started_at=now,
            due_date=due_date,
            created_by=actor.user_id,
            version=1,
            updated_at=now
        )

        with transaction() as session:
            self.instance_repo.create_instance(instance, session=session)
            self.audit_writer.write_instance_started(instance, actor, session=session)
            started = self.advancer.bootstrap(instance, actor, session=session)

        logger.info(
            f"Started workflow instance {started.reference_number}",
            extra={
                "instance_id": started.instance_id,
                "definition_id": definition.definition_id,
                "tenant_id": actor.tenant_id,
                "status": started.status.value
            }
        )
        return started

    def cancel_instance(
        self,
        actor: ActorContext,
        instance_id: str,
        reason: Optional[str] = None
    ) -> WorkflowInstance:
        """Cancel an instance and skip its open step"""
        instance = self.instance_repo.get_instance_or_raise(instance_id, actor.tenant_id)

        if not self.permission_guard.is_hr(actor):
            raise PermissionDeniedError("Only HR can cancel workflow instances")
        if not self.permission_guard.can_cancel_instance(actor, instance):
            raise InvalidStateError(
                f"Workflow instance {instance_id} is already {instance.status.value}",
                details={"status": instance.status.value}
            )

        now = utc_now()
        completed = list(instance.completed_step_ids)
        open_step = self.instance_repo.get_open_step(instance_id)
        if open_step and open_step.step_id not in completed:
            completed.append(open_step.step_id)

        with transaction() as session:
            cancelled = self.instance_repo.update_instance(
                instance_id,
                {
                    "status": InstanceStatus.CANCELLED.value,
                    "current_step_id": None,
                    "completed_step_ids": completed,
                    "completed_at": now,
                    "context_data.cancellation_reason": reason
                },
                expected_version=instance.version,
                session=session
            )
            skipped = self.instance_repo.skip_open_steps(instance_id, now, session=session)
            self.audit_writer.write_instance_cancelled(cancelled, actor, reason, skipped, session=session)

        logger.info(
            f"Cancelled workflow instance {instance_id}",
            extra={"instance_id": instance_id, "actor_id": actor.user_id, "status": cancelled.status.value}
        )
        return cancelled

    def list_instances(
        self,
        actor: ActorContext,
        definition_id: Optional[str] = None,
        subject_employee_id: Optional[str] = None,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Dict[str, Any]:
        """List tenant instances; non-HR callers only see their own"""
        if not self.permission_guard.is_hr(actor):
            if not actor.employee_id:
                return {"data": [], "total": 0, "has_more": False}
            subject_employee_id = actor.employee_id

        filters = dict(
            definition_id=definition_id,
            subject_employee_id=subject_employee_id,
            source_type=source_type,
            source_id=source_id,
            status=status,
        )
        items = self.instance_repo.list_instances(actor.tenant_id, skip=offset, limit=limit, **filters)
        total = self.instance_repo.count_instances(actor.tenant_id, **filters)
        return {"data": items, "total": total, "has_more": offset + len(items) < total}

    def get_visible_instance(self, actor: ActorContext, instance_id: str) -> WorkflowInstance:
        """Instance the caller may see, NotFound otherwise"""
        instance = self.instance_repo.get_instance_or_raise(instance_id, actor.tenant_id)
        is_assignee = bool(actor.employee_id) and self.instance_repo.is_assignee_in_instance(
            instance_id, actor.employee_id
        )
        if not self.permission_guard.can_view_instance(actor, instance, is_assignee=is_assignee):
            raise InstanceNotFoundError(f"Workflow instance {instance_id} not found")
        return instance

    def get_instance_detail(self, actor: ActorContext, instance_id: str) -> Dict[str, Any]:
        """
        Instance with definition, steps, progress, timeline and the caller's actions
        """
        instance = self.get_visible_instance(actor, instance_id)
        graph = self.advancer.load_graph(instance)
        definition = self.definition_repo.get_definition(instance.definition_id)
        steps = self.instance_repo.list_steps_for_instance(instance_id)

        available_actions: List[Dict[str, Any]] = []
        for step in steps:
            actions = self.permission_guard.get_available_actions(
                actor, instance, step, graph.get_step(step.step_id)
            )
            if actions:
                available_actions.append({
                    "step_instance_id": step.step_instance_id,
                    "step_id": step.step_id,
                    "actions": actions,
                })

        return {
            "instance": instance,
            "definition": {
                "definition_id": instance.definition_id,
                "name": definition.name if definition else None,
                "slug": definition.slug if definition else None,
                "version": instance.definition_version,
                "steps": [s.model_dump(mode="json") for s in graph.steps],
                "transitions": [t.model_dump(mode="json") for t in graph.transitions],
            },
            "steps": steps,
            "progress": calculate_progress(graph, instance),
            "timeline": build_timeline(instance, steps, graph),
            "available_actions": available_actions,
        }

    def get_audit_trail(
        self,
        actor: ActorContext,
        instance_id: str,
        limit: int = 100,
        offset: int = 0
    ) -> Dict[str, Any]:
        """Audit events of an instance the caller may see"""
        self.get_visible_instance(actor, instance_id)
        events = self.audit_repo.get_events_for_instance(instance_id, skip=offset, limit=limit)
        total = self.audit_repo.count_events_for_instance(instance_id)
        return {"data": events, "total": total, "has_more": offset + len(events) < total}
