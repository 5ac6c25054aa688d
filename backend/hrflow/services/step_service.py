"""Step Service - Acting on step instances (complete, decide, skip)"""
from typing import Any, Dict, Optional, Tuple

from ..domain.models import (
    ActorContext, WorkflowInstance, StepInstance, BranchState, BaseStepDefinition,
    ParallelStepDefinition
)
from ..domain.enums import (
    StepType, StepStatus, StepOutcome, ApprovalStatus, BranchStatus, AuditEventType
)
from ..domain.errors import (
    NotAssigneeError, InvalidStateError, IllegalSkipError,
    CommentRequiredError, StepNotFoundError
)
from ..repositories.instance_repo import InstanceRepository
from ..repositories.definition_repo import DefinitionRepository
from ..engine.advancer import WorkflowAdvancer
from ..engine.permission_guard import PermissionGuard
from ..engine.audit_writer import AuditWriter
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Step types that take an approve/reject decision
DECIDABLE_STEP_TYPES = (StepType.APPROVAL, StepType.REVIEW)


class StepService:
    """
    Step instance operations

    Every action checks, in order: the step exists in the caller's tenant,
    the caller is its assignee (or HR), the step is still open. The close
    and the advancement then happen atomically in the advancer.
    """

    def __init__(self):
        self.instance_repo = InstanceRepository()
        self.definition_repo = DefinitionRepository()
        self.advancer = WorkflowAdvancer(instance_repo=self.instance_repo, definition_repo=self.definition_repo)
        self.permission_guard = PermissionGuard()
        self.audit_writer = AuditWriter()

    # =========================================================================
    # Queries
    # =========================================================================

    def list_my_pending(self, actor: ActorContext, limit: int = 20, offset: int = 0) -> Dict[str, Any]:
        """Open steps assigned to the caller, soonest due first"""
        if not actor.employee_id:
            return {"data": [], "total": 0, "has_more": False}

        steps = self.instance_repo.list_open_steps_for_assignee(
            actor.tenant_id, actor.employee_id, skip=offset, limit=limit
        )
        total = self.instance_repo.count_open_steps_for_assignee(actor.tenant_id, actor.employee_id)
        return {"data": steps, "total": total, "has_more": offset + len(steps) < total}

    # =========================================================================
    # Actions
    # =========================================================================

    def complete_step(
        self,
        actor: ActorContext,
        step_instance_id: str,
        payload: Dict[str, Any],
        form_submission_id: Optional[str] = None,
        child_step_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Submit a step (or one branch of a parallel step) and advance"""
        step, instance, step_def = self._load_actionable(actor, step_instance_id, child_step_id)

        if step.step_type == StepType.APPROVAL:
            raise InvalidStateError(
                "Approval steps are decided, not completed",
                details={"step_instance_id": step_instance_id}
            )

        if step.step_type == StepType.PARALLEL:
            branch = self._resolve_branch(actor, step, child_step_id)
            if branch is None:
                return self._force_close_parallel(actor, instance, step, StepOutcome.PARALLEL_COMPLETE)
            if branch.step_type == StepType.APPROVAL:
                raise InvalidStateError(
                    f"Branch {branch.child_step_id} is an approval; use decide",
                    details={"child_step_id": branch.child_step_id}
                )
            instance, step = self.advancer.record_branch(
                instance, step, branch.child_step_id, BranchStatus.COMPLETED, actor, data=payload
            )
            return {"step": step, "instance": instance}

        instance, step = self.advancer.advance(
            instance,
            step,
            {
                "status": StepStatus.COMPLETED.value,
                "completed_at": utc_now(),
                "step_data": payload,
                "form_submission_id": form_submission_id
            },
            StepOutcome.SUBMITTED,
            actor,
            close_event=AuditEventType.STEP_COMPLETED,
            close_details={"payload": self.audit_writer.summarize_payload(payload)}
        )
        return {"step": step, "instance": instance}

    def decide_step(
        self,
        actor: ActorContext,
        step_instance_id: str,
        decision: ApprovalStatus,
        comment: Optional[str] = None,
        child_step_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Approve or reject an approval or review step (or such a branch of a parallel step) and advance"""
        step, instance, step_def = self._load_actionable(actor, step_instance_id, child_step_id)
        approved = decision == ApprovalStatus.APPROVED

        if step.step_type == StepType.PARALLEL:
            branch = self._resolve_branch(actor, step, child_step_id)
            if branch is None:
                outcome = StepOutcome.PARALLEL_COMPLETE if approved else StepOutcome.REJECTED
                return self._force_close_parallel(actor, instance, step, outcome, comment)
            if branch.step_type not in DECIDABLE_STEP_TYPES:
                raise InvalidStateError(
                    f"Branch {branch.child_step_id} is not an approval or review",
                    details={"child_step_id": branch.child_step_id}
                )
            self._check_comment(self._child_definition(step_def, branch.child_step_id), comment)
            instance, step = self.advancer.record_branch(
                instance, step, branch.child_step_id,
                BranchStatus.APPROVED if approved else BranchStatus.REJECTED,
                actor, comment=comment
            )
            return {"step": step, "instance": instance}

        if step.step_type not in DECIDABLE_STEP_TYPES:
            raise InvalidStateError(
                f"Step {step.step_id} is a {step.step_type.value} step and cannot be approved or rejected",
                details={"step_instance_id": step_instance_id}
            )
        self._check_comment(step_def, comment)

        now = utc_now()
        instance, step = self.advancer.advance(
            instance,
            step,
            {
                "status": StepStatus.COMPLETED.value,
                "completed_at": now,
                "approval_status": decision.value,
                "approval_comment": comment,
                "approved_by": actor.user_id,
                "approved_at": now
            },
            StepOutcome.APPROVED if approved else StepOutcome.REJECTED,
            actor,
            close_event=AuditEventType.STEP_APPROVED if approved else AuditEventType.STEP_REJECTED,
            close_details={"comment": comment}
        )
        return {"step": step, "instance": instance}

    def skip_step(
        self,
        actor: ActorContext,
        step_instance_id: str,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """Skip an optional or skippable step and advance"""
        step, instance, step_def = self._load_actionable(actor, step_instance_id)

        if step_def is None or not step_def.is_skippable:
            raise IllegalSkipError(
                f"Step {step.step_id} cannot be skipped",
                details={"step_instance_id": step_instance_id}
            )

        instance, step = self.advancer.advance(
            instance,
            step,
            {
                "status": StepStatus.SKIPPED.value,
                "completed_at": utc_now(),
                "step_data": {"skip_reason": reason}
            },
            StepOutcome.SKIPPED,
            actor,
            close_event=AuditEventType.STEP_SKIPPED,
            close_details={"reason": reason}
        )
        return {"step": step, "instance": instance}

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load_actionable(
        self,
        actor: ActorContext,
        step_instance_id: str,
        child_step_id: Optional[str] = None
    ) -> Tuple[StepInstance, WorkflowInstance, Optional[BaseStepDefinition]]:
        step = self.instance_repo.get_step_or_raise(step_instance_id, actor.tenant_id)
        instance = self.instance_repo.get_instance_or_raise(step.instance_id, actor.tenant_id)

        if not self.permission_guard.can_act_on_step(actor, step, child_step_id):
            raise NotAssigneeError(
                "You are not assigned to this step",
                details={"step_instance_id": step_instance_id}
            )

        if not step.is_open:
            raise InvalidStateError(
                f"Step is no longer open (status: {step.status.value})",
                details={"step_instance_id": step_instance_id, "status": step.status.value}
            )

        graph = self.advancer.load_graph(instance)
        return step, instance, graph.get_step(step.step_id)

    def _resolve_branch(
        self,
        actor: ActorContext,
        step: StepInstance,
        child_step_id: Optional[str]
    ) -> Optional[BranchState]:
        """
        Branch the caller acts on

        Returns None when an HR caller acts on the whole parallel step.
        """
        if child_step_id:
            branch = next((b for b in step.branches if b.child_step_id == child_step_id), None)
            if branch is None:
                raise StepNotFoundError(
                    f"Parallel step {step.step_id} has no branch {child_step_id}",
                    details={"child_step_id": child_step_id}
                )
            if not branch.is_open:
                raise InvalidStateError(
                    f"Branch {child_step_id} was already recorded",
                    details={"child_step_id": child_step_id, "status": branch.status.value}
                )
            return branch

        for branch in step.branches:
            if branch.is_open and actor.employee_id and branch.assignee_employee_id == actor.employee_id:
                return branch

        if self.permission_guard.is_hr(actor):
            return None
        raise NotAssigneeError("You have no pending branch on this step")

    def _force_close_parallel(
        self,
        actor: ActorContext,
        instance: WorkflowInstance,
        step: StepInstance,
        outcome: StepOutcome,
        comment: Optional[str] = None
    ) -> Dict[str, Any]:
        """HR closes a parallel step regardless of its pending branches"""
        now = utc_now()
        updates = self.advancer.parallel_close_updates(step, outcome, now)
        if comment:
            updates["approval_comment"] = comment
        if "approval_status" in updates:
            updates["approved_by"] = actor.user_id
            updates["approved_at"] = now

        instance, step = self.advancer.advance(
            instance, step, updates, outcome, actor,
            close_event=AuditEventType.STEP_REJECTED if outcome == StepOutcome.REJECTED else AuditEventType.STEP_COMPLETED,
            close_details={"forced": True}
        )
        return {"step": step, "instance": instance}

    def _child_definition(
        self,
        step_def: Optional[BaseStepDefinition],
        child_step_id: str
    ) -> Optional[BaseStepDefinition]:
        if not isinstance(step_def, ParallelStepDefinition):
            return None
        return next((c for c in step_def.parallel_steps if c.id == child_step_id), None)

    def _check_comment(self, step_def: Optional[BaseStepDefinition], comment: Optional[str]) -> None:
        if self.permission_guard.requires_comment(step_def) and not (comment and comment.strip()):
            raise CommentRequiredError("A comment is required for this decision")
