"""Permission Guard - Authorization enforcement for workflow actions"""
from typing import List, Optional

from ..config.settings import settings
from ..domain.models import (
    ActorContext, WorkflowInstance, StepInstance, BaseStepDefinition, ApprovalStepDefinition
)
from ..domain.enums import StepType, CLOSED_INSTANCE_STATUSES
from ..utils.logger import get_logger

logger = get_logger(__name__)


class PermissionGuard:
    """
    Permission enforcement for definition, instance and step operations

    Rules:
    - Definitions are authored by HR-privileged roles only
    - Only HR-privileged roles cancel instances
    - A step is acted on by its assignee (or a pending branch's assignee),
      or by an HR-privileged role
    - Non-HR callers see instances they are the subject of or assigned in
    """

    def __init__(self, hr_roles: Optional[List[str]] = None):
        self._hr_roles = set(hr_roles if hr_roles is not None else settings.hr_privileged_roles_list)

    def is_hr(self, actor: ActorContext) -> bool:
        """Check if actor holds an HR-privileged role"""
        return actor.role in self._hr_roles

    def can_manage_definitions(self, actor: ActorContext) -> bool:
        return self.is_hr(actor)

    def can_cancel_instance(self, actor: ActorContext, instance: WorkflowInstance) -> bool:
        """HR only, and only while the instance is not terminal"""
        if not self.is_hr(actor):
            return False
        return instance.status not in CLOSED_INSTANCE_STATUSES

    def can_view_instance(
        self,
        actor: ActorContext,
        instance: WorkflowInstance,
        is_assignee: bool = False
    ) -> bool:
        """Check if actor can view an instance of their tenant"""
        if actor.tenant_id != instance.tenant_id:
            return False
        if self.is_hr(actor):
            return True
        if actor.employee_id and actor.employee_id == instance.subject_employee_id:
            return True
        return is_assignee

    def is_step_assignee(
        self,
        actor: ActorContext,
        step: StepInstance,
        child_step_id: Optional[str] = None
    ) -> bool:
        """Check if actor is the step's assignee, or the assignee of a pending branch"""
        if not actor.employee_id:
            return False

        if step.branches:
            for branch in step.branches:
                if child_step_id and branch.child_step_id != child_step_id:
                    continue
                if branch.is_open and branch.assignee_employee_id == actor.employee_id:
                    return True
            return False

        return step.assignee_employee_id == actor.employee_id

    def can_act_on_step(
        self,
        actor: ActorContext,
        step: StepInstance,
        child_step_id: Optional[str] = None
    ) -> bool:
        """
        Check if actor can complete, decide or skip a step

        Args:
            actor: Current user
            step: Step instance
            child_step_id: Branch of a parallel step being acted on

        Returns:
            True if allowed
        """
        if actor.tenant_id != step.tenant_id:
            return False

        if self.is_hr(actor):
            return True

        allowed = self.is_step_assignee(actor, step, child_step_id)
        if not allowed:
            logger.info(
                f"Step permission check failed for {actor.user_id}",
                extra={"step_instance_id": step.step_instance_id, "actor_id": actor.user_id}
            )
        return allowed

    def get_available_actions(
        self,
        actor: ActorContext,
        instance: WorkflowInstance,
        step: StepInstance,
        step_def: Optional[BaseStepDefinition]
    ) -> List[str]:
        """Get list of actions actor can perform on step"""
        if not step.is_open or instance.status in CLOSED_INSTANCE_STATUSES:
            return []
        if step.step_type == StepType.WAIT:
            return []
        if not self.can_act_on_step(actor, step):
            return []

        actions: List[str] = []

        if step.step_type == StepType.APPROVAL:
            actions.extend(["approve", "reject"])
        elif step.step_type == StepType.REVIEW:
            actions.extend(["submit", "approve", "reject"])
        elif step.step_type == StepType.PARALLEL:
            for branch in step.branches:
                if not branch.is_open:
                    continue
                if not self.is_hr(actor) and branch.assignee_employee_id != actor.employee_id:
                    continue
                if branch.step_type != StepType.APPROVAL and "submit" not in actions:
                    actions.append("submit")
                if branch.step_type in (StepType.APPROVAL, StepType.REVIEW):
                    actions.extend(a for a in ("approve", "reject") if a not in actions)
        else:
            actions.append("submit")

        if step_def is not None and step_def.is_skippable:
            actions.append("skip")

        return actions

    def requires_comment(self, step_def: Optional[BaseStepDefinition]) -> bool:
        """Whether decisions on this step must carry a comment"""
        return isinstance(step_def, ApprovalStepDefinition) and step_def.approval_config.require_comment
