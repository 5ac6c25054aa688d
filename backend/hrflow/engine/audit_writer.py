"""Audit Writer - Append-only audit events"""
from typing import Any, Dict, Optional
from pymongo.client_session import ClientSession

from ..domain.models import AuditEvent, ActorSnapshot, ActorContext, WorkflowDefinition, WorkflowInstance, StepInstance
from ..domain.enums import AuditEventType
from ..repositories.audit_repo import AuditRepository
from ..utils.idgen import generate_audit_event_id
from ..utils.time import utc_now
from ..utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)

SYSTEM_USER_ID = "system"


def system_actor(tenant_id: str) -> ActorContext:
    """Actor used for engine-driven changes (timers, automatic steps)"""
    return ActorContext(user_id=SYSTEM_USER_ID, tenant_id=tenant_id, role="system", display_name="Workflow Engine")


class AuditWriter:
    """
    Write audit events (append-only)

    All state changes produce audit events. Writes made during advancement
    take the transaction session so they commit or roll back with it.
    """

    def __init__(self):
        self.repo = AuditRepository()

    def write_event(
        self,
        event_type: AuditEventType,
        actor: ActorContext,
        tenant_id: Optional[str] = None,
        definition_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        step_instance_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        session: Optional[ClientSession] = None
    ) -> AuditEvent:
        """Write a single audit event"""
        event = AuditEvent(
            audit_event_id=generate_audit_event_id(),
            tenant_id=tenant_id or actor.tenant_id,
            definition_id=definition_id,
            instance_id=instance_id,
            step_instance_id=step_instance_id,
            event_type=event_type,
            actor=ActorSnapshot(
                user_id=actor.user_id,
                role=actor.role,
                employee_id=actor.employee_id,
                display_name=actor.display_name
            ),
            details=details or {},
            timestamp=utc_now(),
            correlation_id=get_correlation_id()
        )

        return self.repo.create_event(event, session=session)

    # =========================================================================
    # Definitions
    # =========================================================================

    def write_definition_event(
        self,
        event_type: AuditEventType,
        definition: WorkflowDefinition,
        actor: ActorContext,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """Write a definition lifecycle event"""
        return self.write_event(
            event_type=event_type,
            actor=actor,
            definition_id=definition.definition_id,
            details={"name": definition.name, "version": definition.version, **(details or {})}
        )

    # =========================================================================
    # Instances
    # =========================================================================

    def write_instance_started(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        session: Optional[ClientSession] = None
    ) -> AuditEvent:
        """Write instance start event"""
        return self.write_event(
            event_type=AuditEventType.INSTANCE_STARTED,
            actor=actor,
            tenant_id=instance.tenant_id,
            definition_id=instance.definition_id,
            instance_id=instance.instance_id,
            details={
                "reference_number": instance.reference_number,
                "definition_version": instance.definition_version,
                "subject_employee_id": instance.subject_employee_id,
                "source_type": instance.source_type,
                "source_id": instance.source_id
            },
            session=session
        )

    def write_instance_completed(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        session: Optional[ClientSession] = None
    ) -> AuditEvent:
        """Write instance completion event"""
        return self.write_event(
            event_type=AuditEventType.INSTANCE_COMPLETED,
            actor=actor,
            tenant_id=instance.tenant_id,
            definition_id=instance.definition_id,
            instance_id=instance.instance_id,
            details={"completed_step_ids": instance.completed_step_ids},
            session=session
        )

    def write_instance_cancelled(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        reason: Optional[str],
        skipped_steps: int,
        session: Optional[ClientSession] = None
    ) -> AuditEvent:
        """Write cancellation event"""
        return self.write_event(
            event_type=AuditEventType.INSTANCE_CANCELLED,
            actor=actor,
            tenant_id=instance.tenant_id,
            definition_id=instance.definition_id,
            instance_id=instance.instance_id,
            details={"reason": reason, "skipped_steps": skipped_steps},
            session=session
        )

    def write_instance_blocked(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        reason: str,
        step_id: Optional[str],
        session: Optional[ClientSession] = None
    ) -> AuditEvent:
        """Write blocked-instance diagnosis"""
        return self.write_event(
            event_type=AuditEventType.INSTANCE_BLOCKED,
            actor=actor,
            tenant_id=instance.tenant_id,
            definition_id=instance.definition_id,
            instance_id=instance.instance_id,
            details={"reason": reason, "step_id": step_id},
            session=session
        )

    # =========================================================================
    # Steps
    # =========================================================================

    def write_step_activated(
        self,
        step: StepInstance,
        actor: ActorContext,
        session: Optional[ClientSession] = None
    ) -> AuditEvent:
        """Write step activation event"""
        return self.write_event(
            event_type=AuditEventType.STEP_ACTIVATED,
            actor=actor,
            tenant_id=step.tenant_id,
            instance_id=step.instance_id,
            step_instance_id=step.step_instance_id,
            details={
                "step_id": step.step_id,
                "step_type": step.step_type.value,
                "assignee_employee_id": step.assignee_employee_id,
                "due_date": step.due_date.isoformat() if step.due_date else None
            },
            session=session
        )

    def write_step_closed(
        self,
        event_type: AuditEventType,
        step: StepInstance,
        actor: ActorContext,
        details: Optional[Dict[str, Any]] = None,
        session: Optional[ClientSession] = None
    ) -> AuditEvent:
        """Write step completed / approved / rejected / skipped event"""
        return self.write_event(
            event_type=event_type,
            actor=actor,
            tenant_id=step.tenant_id,
            instance_id=step.instance_id,
            step_instance_id=step.step_instance_id,
            details={"step_id": step.step_id, **(details or {})},
            session=session
        )

    def write_branch_recorded(
        self,
        step: StepInstance,
        child_step_id: str,
        branch_status: str,
        actor: ActorContext,
        session: Optional[ClientSession] = None
    ) -> AuditEvent:
        """Write parallel branch event"""
        return self.write_event(
            event_type=AuditEventType.BRANCH_RECORDED,
            actor=actor,
            tenant_id=step.tenant_id,
            instance_id=step.instance_id,
            step_instance_id=step.step_instance_id,
            details={"step_id": step.step_id, "child_step_id": child_step_id, "status": branch_status},
            session=session
        )

    def write_step_escalated(
        self,
        step: StepInstance,
        escalated_to: Optional[str],
        reassigned: bool,
        session: Optional[ClientSession] = None
    ) -> AuditEvent:
        """Write escalation event"""
        return self.write_event(
            event_type=AuditEventType.STEP_ESCALATED,
            actor=system_actor(step.tenant_id),
            tenant_id=step.tenant_id,
            instance_id=step.instance_id,
            step_instance_id=step.step_instance_id,
            details={
                "step_id": step.step_id,
                "original_assignee": step.assignee_employee_id,
                "escalated_to": escalated_to,
                "reassigned": reassigned
            },
            session=session
        )

    def summarize_payload(self, payload: Dict[str, Any]) -> Dict[str, str]:
        """Summarize step payload for audit (avoid storing large or sensitive data)"""
        summary = {}
        for key, value in payload.items():
            if isinstance(value, str) and len(value) > 100:
                summary[key] = f"{value[:100]}..."
            else:
                summary[key] = str(value)[:100]
        return summary
