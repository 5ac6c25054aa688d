"""Workflow Advancer - The state-transition algorithm of the engine"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional, Tuple
from pymongo.client_session import ClientSession

from ..config.settings import settings
from ..domain.models import (
    ActorContext, WorkflowInstance, StepInstance, StepGraph, BaseStepDefinition,
    ApprovalStepDefinition, WaitStepDefinition, ParallelStepDefinition,
    ConditionalStepDefinition, BranchState, EscalationRule, AUTOMATIC_STEP_TYPES
)
from ..domain.enums import (
    StepType, StepStatus, StepOutcome, InstanceStatus, ApprovalStatus, BranchStatus,
    ParallelCompletion, WaitType, AuditEventType, AssignmentRole, TransitionTrigger,
    CLOSED_INSTANCE_STATUSES, END_STEP
)
from ..domain.errors import ConcurrencyError, EngineError, InvalidStateError
from ..repositories.mongo_client import transaction
from ..repositories.instance_repo import InstanceRepository
from ..repositories.definition_repo import DefinitionRepository
from ..repositories.employee_repo import EmployeeRepository
from .assignee_resolver import AssigneeResolver, EmployeeDirectory
from .transition_resolver import TransitionResolver
from .condition_evaluator import ConditionEvaluator
from .audit_writer import AuditWriter, system_actor
from ..utils.idgen import generate_step_instance_id
from ..utils.time import utc_now, ensure_utc, calculate_due_date, coerce_datetime, days_overdue
from ..utils.logger import get_logger

logger = get_logger(__name__)


# Reasons recorded in context_data["blocked"]
BLOCKED_STEP_NOT_IN_DEFINITION = "step_not_in_definition"
BLOCKED_UNRESOLVED_TARGET = "unresolved_target"
BLOCKED_STEP_ALREADY_COMPLETED = "step_already_completed"
BLOCKED_AUTOMATIC_CHAIN = "automatic_chain_exceeded"


class _Route(NamedTuple):
    """Where advancement goes after a step: a step, the end (step None), or blocked"""
    step: Optional[BaseStepDefinition] = None
    blocked_reason: Optional[str] = None
    blocked_step_id: Optional[str] = None


class _Closing(NamedTuple):
    """The open step being closed and how its closure is recorded"""
    step: StepInstance
    updates: Dict[str, Any]
    event: AuditEventType
    details: Dict[str, Any]


@dataclass
class AdvancePlan:
    """In-memory result of routing, written by _commit"""
    completed_step_ids: List[str]
    closing: Optional[_Closing] = None
    closed_step: Optional[StepInstance] = None
    auto_steps: List[StepInstance] = field(default_factory=list)
    next_step: Optional[StepInstance] = None
    finalize: bool = False
    blocked_reason: Optional[str] = None
    blocked_step_id: Optional[str] = None


class WorkflowAdvancer:
    """
    Moves an instance from one step to the next

    Responsibilities:
    - Close the finished step and pick the next one (transition table first,
      positional successor second)
    - Run automatic steps (notification, conditional) inline
    - Open parallel steps with one branch per child and close them by policy
    - Diagnose instances that cannot move as blocked
    - Serve as the idempotent entry point for timers

    Every write of one advancement runs in a single transaction; the
    instance update is guarded by the instance version.
    """

    def __init__(
        self,
        instance_repo: Optional[InstanceRepository] = None,
        definition_repo: Optional[DefinitionRepository] = None,
        directory: Optional[EmployeeDirectory] = None,
        audit_writer: Optional[AuditWriter] = None,
        transition_resolver: Optional[TransitionResolver] = None
    ):
        self.instance_repo = instance_repo or InstanceRepository()
        self.definition_repo = definition_repo or DefinitionRepository()
        self.assignee_resolver = AssigneeResolver(directory or EmployeeRepository())
        self.audit_writer = audit_writer or AuditWriter()
        self.transition_resolver = transition_resolver or TransitionResolver()
        self.condition_evaluator = ConditionEvaluator()

    # =========================================================================
    # Graph & Step Construction
    # =========================================================================

    def load_graph(self, instance: WorkflowInstance) -> StepGraph:
        """Definition structure captured for the instance's version"""
        snapshot = self.definition_repo.get_snapshot(instance.definition_id, instance.definition_version)
        if snapshot is None:
            raise EngineError(
                f"Definition {instance.definition_id} v{instance.definition_version} is missing",
                details={"instance_id": instance.instance_id}
            )
        return snapshot

    def build_step_instance(
        self,
        instance: WorkflowInstance,
        graph: StepGraph,
        step_def: BaseStepDefinition,
        step_order: int,
        now: datetime,
        context: Optional[Dict[str, Any]] = None
    ) -> StepInstance:
        """
        Construct the runtime record for a step being entered

        Approval steps start pending, everything else in progress. The due
        date comes from the step's duration (or the definition's default
        durations map); wait steps derive it from their wait config.
        """
        step_type = StepType(step_def.type)
        branches: List[BranchState] = []
        assignee_id: Optional[str] = None

        if isinstance(step_def, ParallelStepDefinition):
            for child in step_def.parallel_steps:
                branches.append(BranchState(
                    child_step_id=child.id,
                    step_type=StepType(child.type),
                    assignee_role=child.assignment_role,
                    assignee_employee_id=self.assignee_resolver.resolve(
                        child.assignment_role, instance.subject_employee_id, instance.tenant_id
                    )
                ))
        elif step_type not in AUTOMATIC_STEP_TYPES:
            assignee_id = self.assignee_resolver.resolve(
                step_def.assignment_role, instance.subject_employee_id, instance.tenant_id
            )

        if isinstance(step_def, WaitStepDefinition):
            due_date = self._wait_due_date(graph, step_def, now, context or instance.context_data)
        else:
            due_date = calculate_due_date(now, graph.duration_for(step_def))

        return StepInstance(
            step_instance_id=generate_step_instance_id(),
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            step_id=step_def.id,
            step_type=step_type,
            step_order=step_order,
            assignee_role=step_def.assignment_role,
            assignee_employee_id=assignee_id,
            status=StepStatus.PENDING if step_type == StepType.APPROVAL else StepStatus.IN_PROGRESS,
            due_date=due_date,
            started_at=now,
            branches=branches,
            updated_at=now
        )

    def _wait_due_date(
        self,
        graph: StepGraph,
        step_def: WaitStepDefinition,
        now: datetime,
        context: Dict[str, Any]
    ) -> Optional[datetime]:
        config = step_def.wait_config
        if config.type == WaitType.DATE:
            return coerce_datetime(context.get(config.date_field)) if config.date_field else None
        if config.type == WaitType.CONDITION:
            return None
        return calculate_due_date(now, config.duration_days or graph.duration_for(step_def))

    # =========================================================================
    # Routing
    # =========================================================================

    def _next_route(
        self,
        graph: StepGraph,
        step_id: str,
        outcome: StepOutcome,
        context: Dict[str, Any],
        forced_target: Optional[str] = None
    ) -> _Route:
        """Two-phase lookup: transition table, then positional successor"""
        if forced_target:
            target_id = forced_target
        else:
            if graph.get_step(step_id) is None:
                return _Route(blocked_reason=BLOCKED_STEP_NOT_IN_DEFINITION, blocked_step_id=step_id)

            transition = self.transition_resolver.find_transition(graph, step_id, outcome, context)
            if transition is None:
                return _Route(step=self.transition_resolver.positional_successor(graph, step_id))
            target_id = transition.to_step_id

        if target_id == END_STEP:
            return _Route()

        target = graph.get_step(target_id)
        if target is None:
            return _Route(blocked_reason=BLOCKED_UNRESOLVED_TARGET, blocked_step_id=target_id)
        return _Route(step=target)

    def _run_automatic(
        self,
        step_def: BaseStepDefinition,
        context: Dict[str, Any]
    ) -> Tuple[StepOutcome, Optional[str], Dict[str, Any]]:
        """Outcome, forced target and step data of an automatic step"""
        if isinstance(step_def, ConditionalStepDefinition):
            config = step_def.conditional_config
            result = self.condition_evaluator.evaluate(config.condition, context)
            target = config.true_step_id if result else config.false_step_id
            return StepOutcome.CONDITION, target, {"condition_result": result}
        return StepOutcome.AUTO, None, {}

    def _plan(
        self,
        instance: WorkflowInstance,
        graph: StepGraph,
        completed: List[str],
        route: _Route,
        context: Dict[str, Any],
        now: datetime
    ) -> AdvancePlan:
        """Follow routes through automatic steps until a step waits for someone"""
        plan = AdvancePlan(completed_step_ids=completed)

        while True:
            if route.blocked_reason:
                plan.blocked_reason = route.blocked_reason
                plan.blocked_step_id = route.blocked_step_id
                return plan

            step_def = route.step
            if step_def is None:
                plan.finalize = True
                return plan

            if step_def.id in plan.completed_step_ids:
                plan.blocked_reason = BLOCKED_STEP_ALREADY_COMPLETED
                plan.blocked_step_id = step_def.id
                return plan

            if len(plan.auto_steps) >= len(graph.steps):
                plan.blocked_reason = BLOCKED_AUTOMATIC_CHAIN
                plan.blocked_step_id = step_def.id
                return plan

            step = self.build_step_instance(
                instance, graph, step_def, len(plan.completed_step_ids), now, context
            )

            if step.step_type not in AUTOMATIC_STEP_TYPES:
                plan.next_step = step
                return plan

            outcome, forced_target, step_data = self._run_automatic(step_def, context)
            step.status = StepStatus.COMPLETED
            step.completed_at = now
            step.step_data = step_data
            plan.auto_steps.append(step)
            plan.completed_step_ids.append(step_def.id)

            route = self._next_route(graph, step_def.id, outcome, context, forced_target)

    def _commit(
        self,
        instance: WorkflowInstance,
        plan: AdvancePlan,
        actor: ActorContext,
        now: datetime,
        session: Optional[ClientSession]
    ) -> WorkflowInstance:
        """
        Write a plan: the instance claim, the closing step, automatic steps, then the new step

        The version-guarded instance update goes first so a conflict is
        detected before anything else is written, with or without a session.
        """
        engine_actor = system_actor(instance.tenant_id)

        updates: Dict[str, Any] = {"completed_step_ids": plan.completed_step_ids}
        if plan.blocked_reason:
            updates["status"] = InstanceStatus.BLOCKED.value
            updates["current_step_id"] = None
            updates["context_data.blocked"] = {
                "reason": plan.blocked_reason,
                "step_id": plan.blocked_step_id,
                "at": now
            }
        elif plan.finalize:
            updates["status"] = InstanceStatus.COMPLETED.value
            updates["current_step_id"] = None
            updates["completed_at"] = now
        else:
            next_step = plan.next_step
            updates["current_step_id"] = next_step.step_id
            updates["status"] = (
                InstanceStatus.AWAITING_APPROVAL.value
                if next_step.step_type == StepType.APPROVAL
                else InstanceStatus.IN_PROGRESS.value
            )

        updated = self.instance_repo.update_instance(
            instance.instance_id,
            updates,
            expected_version=instance.version,
            expected_step_id=plan.closing.step.step_id if plan.closing else None,
            session=session
        )

        if plan.closing:
            closing = plan.closing
            plan.closed_step = self.instance_repo.close_step(
                closing.step.step_instance_id, closing.updates, session=session
            )
            self.audit_writer.write_step_closed(
                closing.event, plan.closed_step, actor, details=closing.details, session=session
            )

        for auto_step in plan.auto_steps:
            self.instance_repo.create_step(auto_step, session=session)
            self.audit_writer.write_step_closed(
                AuditEventType.STEP_COMPLETED, auto_step, engine_actor,
                details={"automatic": True, **auto_step.step_data}, session=session
            )

        if plan.next_step:
            self.instance_repo.create_step(plan.next_step, session=session)
            self.audit_writer.write_step_activated(plan.next_step, actor, session=session)
            logger.info(
                f"Activated step {plan.next_step.step_id}",
                extra={
                    "instance_id": instance.instance_id,
                    "step_id": plan.next_step.step_id,
                    "step_instance_id": plan.next_step.step_instance_id
                }
            )
        elif plan.finalize:
            self.audit_writer.write_instance_completed(updated, actor, session=session)
            logger.info(
                f"Completed workflow instance {instance.instance_id}",
                extra={"instance_id": instance.instance_id, "status": updated.status.value}
            )
        else:
            self.audit_writer.write_instance_blocked(
                updated, actor, plan.blocked_reason, plan.blocked_step_id, session=session
            )
            logger.warning(
                f"Workflow instance {instance.instance_id} blocked: {plan.blocked_reason}",
                extra={
                    "instance_id": instance.instance_id,
                    "step_id": plan.blocked_step_id,
                    "status": InstanceStatus.BLOCKED.value
                }
            )

        return updated

    # =========================================================================
    # Entry Points
    # =========================================================================

    def bootstrap(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        session: Optional[ClientSession] = None
    ) -> WorkflowInstance:
        """
        Enter the first step of a freshly inserted instance

        The first step is built with the same rule as any later step
        (step_order 0); automatic first steps run through the same loop.
        """
        graph = self.load_graph(instance)
        now = utc_now()
        first = graph.first_step()
        plan = self._plan(instance, graph, [], _Route(step=first), dict(instance.context_data), now)
        return self._commit(instance, plan, actor, now, session)

    def advance(
        self,
        instance: WorkflowInstance,
        step: StepInstance,
        step_updates: Dict[str, Any],
        outcome: StepOutcome,
        actor: ActorContext,
        close_event: AuditEventType = AuditEventType.STEP_COMPLETED,
        close_details: Optional[Dict[str, Any]] = None
    ) -> Tuple[WorkflowInstance, StepInstance]:
        """
        Close a step and move the instance on, as one atomic unit

        Args:
            instance: Instance as read by the caller (its version guards the write)
            step: The open step being closed
            step_updates: Fields written on the step as it closes
            outcome: How the step finished
            actor: Who closed it
            close_event: Audit event for the closing step
            close_details: Extra audit details

        Returns:
            (updated instance, closed step)

        Raises:
            InvalidStateError: the step is no longer open
            ConcurrencyError: the instance changed since it was read
        """
        with transaction() as session:
            return self._advance(instance, step, step_updates, outcome, actor, close_event, close_details, session)

    def _advance(
        self,
        instance: WorkflowInstance,
        step: StepInstance,
        step_updates: Dict[str, Any],
        outcome: StepOutcome,
        actor: ActorContext,
        close_event: AuditEventType,
        close_details: Optional[Dict[str, Any]],
        session: Optional[ClientSession]
    ) -> Tuple[WorkflowInstance, StepInstance]:
        self._ensure_advanceable(instance, step)
        if not step.is_open:
            raise InvalidStateError(
                f"Step instance {step.step_instance_id} is no longer open",
                details={"step_instance_id": step.step_instance_id}
            )
        graph = self.load_graph(instance)
        now = utc_now()

        completed = list(instance.completed_step_ids)
        if step.step_id not in completed:
            completed.append(step.step_id)

        context = {**instance.context_data, **step_updates.get("step_data", step.step_data)}
        route = self._next_route(graph, step.step_id, outcome, context)
        plan = self._plan(instance, graph, completed, route, context, now)
        plan.closing = _Closing(step, step_updates, close_event, {"outcome": outcome.value, **(close_details or {})})

        logger.info(
            f"Advancing instance {instance.instance_id} after {step.step_id} ({outcome.value})",
            extra={"instance_id": instance.instance_id, "step_id": step.step_id, "action": outcome.value}
        )
        updated = self._commit(instance, plan, actor, now, session)
        return updated, plan.closed_step

    def _ensure_advanceable(self, instance: WorkflowInstance, step: StepInstance) -> None:
        if instance.status in CLOSED_INSTANCE_STATUSES or instance.status == InstanceStatus.BLOCKED:
            raise InvalidStateError(
                f"Workflow instance {instance.instance_id} is {instance.status.value}",
                details={"instance_id": instance.instance_id, "status": instance.status.value}
            )
        if instance.current_step_id != step.step_id:
            raise InvalidStateError(
                f"Step {step.step_id} is not the current step of {instance.instance_id}",
                details={"current_step_id": instance.current_step_id}
            )

    # =========================================================================
    # Parallel Steps
    # =========================================================================

    def parallel_decision(
        self,
        completion: ParallelCompletion,
        branches: List[BranchState]
    ) -> Optional[StepOutcome]:
        """
        Decide whether a parallel step can close

        Returns:
            PARALLEL_COMPLETE when the policy is met, REJECTED when it can no
            longer be met, None while undecided
        """
        total = len(branches)
        if total == 0:
            return StepOutcome.PARALLEL_COMPLETE

        positive = sum(1 for b in branches if b.status in (BranchStatus.COMPLETED, BranchStatus.APPROVED))
        pending = sum(1 for b in branches if b.status == BranchStatus.PENDING)

        if completion == ParallelCompletion.ANY:
            required = 1
        elif completion == ParallelCompletion.MAJORITY:
            required = total // 2 + 1
        else:
            required = total

        if positive >= required:
            return StepOutcome.PARALLEL_COMPLETE
        if positive + pending < required:
            return StepOutcome.REJECTED
        return None

    def record_branch(
        self,
        instance: WorkflowInstance,
        step: StepInstance,
        child_step_id: str,
        branch_status: BranchStatus,
        actor: ActorContext,
        data: Optional[Dict[str, Any]] = None,
        comment: Optional[str] = None
    ) -> Tuple[WorkflowInstance, StepInstance]:
        """
        Record one branch of a parallel step; close the step when its policy decides

        Returns:
            (instance, step) - the instance is unchanged while the step stays open
        """
        with transaction() as session:
            self._ensure_advanceable(instance, step)
            graph = self.load_graph(instance)
            step_def = graph.get_step(step.step_id)
            now = utc_now()

            updated_step = self.instance_repo.record_branch(
                step.step_instance_id,
                child_step_id,
                {
                    "status": branch_status.value,
                    "data": data or {},
                    "acted_by": actor.user_id,
                    "acted_at": now,
                    "comment": comment
                },
                session=session
            )
            self.audit_writer.write_branch_recorded(
                updated_step, child_step_id, branch_status.value, actor, session=session
            )

            completion = (
                step_def.parallel_completion
                if isinstance(step_def, ParallelStepDefinition)
                else ParallelCompletion.ALL
            )
            decision = self.parallel_decision(completion, updated_step.branches)
            if decision is None:
                return instance, updated_step

            return self._advance(
                instance,
                updated_step,
                self.parallel_close_updates(updated_step, decision, now),
                decision,
                actor,
                AuditEventType.STEP_REJECTED if decision == StepOutcome.REJECTED else AuditEventType.STEP_COMPLETED,
                {"parallel_completion": completion.value},
                session
            )

    def parallel_close_updates(
        self,
        step: StepInstance,
        decision: StepOutcome,
        now: datetime
    ) -> Dict[str, Any]:
        """Fields written when a parallel step closes"""
        updates: Dict[str, Any] = {
            "status": StepStatus.COMPLETED.value,
            "completed_at": now,
            "step_data": {
                **step.step_data,
                "branches": {b.child_step_id: b.data for b in step.branches if b.data}
            }
        }
        if any(b.step_type == StepType.APPROVAL for b in step.branches):
            updates["approval_status"] = (
                ApprovalStatus.REJECTED.value if decision == StepOutcome.REJECTED
                else ApprovalStatus.APPROVED.value
            )
        return updates

    # =========================================================================
    # Timer Entry Point
    # =========================================================================

    def handle_timer(self, step_instance_id: str, trigger: StepOutcome) -> bool:
        """
        Time-driven entry point, safe to call repeatedly

        Args:
            step_instance_id: Step the scheduler found due or overdue
            trigger: DUE_DATE_REACHED, TIMEOUT or ESCALATION

        Returns:
            True when the call changed state, False when it was a no-op
        """
        step = self.instance_repo.get_step(step_instance_id)
        if step is None or not step.is_open:
            return False

        instance = self.instance_repo.get_instance(step.instance_id)
        if instance is None or instance.current_step_id != step.step_id:
            return False
        if instance.status in CLOSED_INSTANCE_STATUSES or instance.status == InstanceStatus.BLOCKED:
            return False

        graph = self.load_graph(instance)
        step_def = graph.get_step(step.step_id)
        now = utc_now()
        actor = system_actor(instance.tenant_id)
        is_due = step.due_date is not None and ensure_utc(step.due_date) <= now

        try:
            if trigger == StepOutcome.DUE_DATE_REACHED:
                if step.step_type != StepType.WAIT:
                    return False
                if step.due_date is None:
                    if not self._wait_condition_met(step_def, instance, step):
                        return False
                elif not is_due:
                    return False
                self.advance(
                    instance, step,
                    {"status": StepStatus.COMPLETED.value, "completed_at": now},
                    StepOutcome.DUE_DATE_REACHED, actor,
                    close_details={"trigger": trigger.value}
                )
                return True

            if trigger == StepOutcome.TIMEOUT:
                if not is_due:
                    return False
                if TransitionTrigger.TIMEOUT not in self.transition_resolver.get_triggers_for_step(graph, step.step_id):
                    return False
                self.advance(
                    instance, step,
                    {
                        "status": StepStatus.SKIPPED.value,
                        "completed_at": now,
                        "step_data": {**step.step_data, "skip_reason": "timeout"}
                    },
                    StepOutcome.TIMEOUT, actor,
                    close_event=AuditEventType.STEP_SKIPPED,
                    close_details={"trigger": trigger.value}
                )
                return True

            if trigger == StepOutcome.ESCALATION:
                return self._escalate(instance, graph, step, step_def, now)

        except (InvalidStateError, ConcurrencyError):
            # Closed or advanced by a user or another scheduler tick in the meantime
            logger.info(
                f"Timer {trigger.value} skipped for {step_instance_id}: step already closed or advanced",
                extra={"step_instance_id": step_instance_id, "trigger": trigger.value}
            )
            return False

        raise EngineError(f"Unsupported timer trigger: {trigger.value}")

    def _wait_condition_met(
        self,
        step_def: Optional[BaseStepDefinition],
        instance: WorkflowInstance,
        step: StepInstance
    ) -> bool:
        if not isinstance(step_def, WaitStepDefinition) or step_def.wait_config.condition is None:
            return False
        context = {**instance.context_data, **step.step_data}
        return self.condition_evaluator.evaluate(step_def.wait_config.condition, context)

    def _escalation_rule(self, graph: StepGraph, overdue_days: int) -> Optional[EscalationRule]:
        """Strictest rule already triggered by the overdue days"""
        applicable = [r for r in graph.escalation_rules if r.trigger_days_overdue <= overdue_days]
        if not applicable:
            return None
        return max(applicable, key=lambda r: r.trigger_days_overdue)

    def escalation_threshold(
        self,
        graph: StepGraph,
        step_def: Optional[BaseStepDefinition]
    ) -> int:
        """Days past due before a step escalates"""
        if isinstance(step_def, ApprovalStepDefinition) and step_def.approval_config.escalate_after_days is not None:
            return step_def.approval_config.escalate_after_days
        if graph.escalation_rules:
            return min(r.trigger_days_overdue for r in graph.escalation_rules)
        return settings.escalation_default_days

    def _escalation_target(
        self,
        instance: WorkflowInstance,
        step: StepInstance,
        step_def: Optional[BaseStepDefinition],
        rule: Optional[EscalationRule]
    ) -> Optional[str]:
        role: Optional[AssignmentRole] = None
        if isinstance(step_def, ApprovalStepDefinition) and step_def.approval_config.escalate_to:
            role = step_def.approval_config.escalate_to
        elif rule is not None:
            role = rule.escalate_to

        target = None
        if role is not None:
            target = self.assignee_resolver.resolve(role, instance.subject_employee_id, instance.tenant_id)
        if target is None or target == step.assignee_employee_id:
            target = self.assignee_resolver.manager_of(step.assignee_employee_id, instance.tenant_id)
        return target

    def _escalate(
        self,
        instance: WorkflowInstance,
        graph: StepGraph,
        step: StepInstance,
        step_def: Optional[BaseStepDefinition],
        now: datetime
    ) -> bool:
        if step.is_escalated or step.due_date is None or not step.assignee_employee_id:
            return False

        overdue = days_overdue(step.due_date, now)
        if overdue < self.escalation_threshold(graph, step_def):
            return False

        rule = self._escalation_rule(graph, overdue)
        target = self._escalation_target(instance, step, step_def, rule)
        if target is None:
            logger.info(
                f"No escalation target for step {step.step_instance_id}",
                extra={"step_instance_id": step.step_instance_id, "trigger": "escalation"}
            )
            return False

        reassign = bool(rule and rule.auto_reassign)
        escalation_fields: Dict[str, Any] = {
            "is_escalated": True,
            "escalated_at": now,
            "escalated_to_employee_id": target
        }
        if reassign:
            escalation_fields["assignee_employee_id"] = target

        follows_transition = self.transition_resolver.find_transition(
            graph, step.step_id, StepOutcome.ESCALATION, instance.context_data
        ) is not None

        with transaction() as session:
            if follows_transition:
                self._advance(
                    instance, step,
                    {**escalation_fields, "status": StepStatus.COMPLETED.value, "completed_at": now},
                    StepOutcome.ESCALATION, system_actor(instance.tenant_id),
                    AuditEventType.STEP_COMPLETED,
                    {"trigger": TransitionTrigger.ESCALATION.value, "escalated_to": target},
                    session
                )
            else:
                updated = self.instance_repo.update_open_step(
                    step.step_instance_id, escalation_fields, extra_filter={"is_escalated": False}, session=session
                )
                if updated is None:
                    return False
            self.audit_writer.write_step_escalated(step, target, reassign, session=session)

        logger.info(
            f"Escalated step {step.step_instance_id} to {target}",
            extra={"step_instance_id": step.step_instance_id, "trigger": "escalation"}
        )
        return True
