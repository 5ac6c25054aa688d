"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, EmailStr, ConfigDict

from .enums import (
    WorkflowModule, StepType, AssignmentRole, TransitionTrigger, InstanceStatus,
    StepStatus, ApprovalStatus, ParallelCompletion, BranchStatus, WaitType,
    ConditionType, ConditionOperator, DateComparison, ConditionLogic,
    ReminderChannel, AuditEventType
)


# ============================================================================
# Identity
# ============================================================================

class ActorContext(BaseModel):
    """Current actor context from the bearer token"""
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., description="Authenticated user ID")
    tenant_id: str = Field(..., description="Tenant the caller acts in")
    role: str = Field(..., description="Caller role (e.g. employee, manager, tenant_admin)")
    employee_id: Optional[str] = Field(None, description="Caller's own employee record, if any")
    email: Optional[EmailStr] = None
    display_name: Optional[str] = None


class ActorSnapshot(BaseModel):
    """Snapshot of the actor recorded on audit events"""
    model_config = ConfigDict(extra="forbid")

    user_id: str
    role: str
    employee_id: Optional[str] = None
    display_name: Optional[str] = None


# ============================================================================
# Conditions
# ============================================================================

class WorkflowCondition(BaseModel):
    """Single condition evaluated against instance context data"""
    model_config = ConfigDict(extra="forbid")

    type: ConditionType = Field(default=ConditionType.FIELD_CHECK)
    field: Optional[str] = Field(None, description="Context field for field_check (dot notation)")
    operator: Optional[ConditionOperator] = None
    value: Any = None
    score_field: Optional[str] = Field(None, description="Context field holding a numeric score")
    score_threshold: Optional[float] = None
    date_field: Optional[str] = Field(None, description="Context field holding a date")
    date_comparison: Optional[DateComparison] = None


class ConditionGroup(BaseModel):
    """Group of conditions with AND/OR logic"""
    model_config = ConfigDict(extra="forbid")

    logic: ConditionLogic = ConditionLogic.AND
    conditions: List[WorkflowCondition] = Field(default_factory=list)


# ============================================================================
# Step Definitions (tagged union on `type`)
# ============================================================================

class ApprovalConfig(BaseModel):
    """Approval step configuration"""
    model_config = ConfigDict(extra="forbid")

    require_comment: bool = False
    allow_delegation: bool = False
    escalate_after_days: Optional[int] = Field(None, ge=0)
    escalate_to: Optional[AssignmentRole] = None


class WaitConfig(BaseModel):
    """Wait step configuration"""
    model_config = ConfigDict(extra="forbid")

    type: WaitType = WaitType.DURATION
    duration_days: Optional[float] = Field(None, ge=0)
    date_field: Optional[str] = Field(None, description="Context field holding the date to wait for")
    condition: Optional[ConditionGroup] = None


class ConditionalConfig(BaseModel):
    """Conditional step configuration"""
    model_config = ConfigDict(extra="forbid")

    condition: ConditionGroup
    true_step_id: Optional[str] = None
    false_step_id: Optional[str] = None


class BaseStepDefinition(BaseModel):
    """Fields shared by every step type"""
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1, description="Unique within the definition")
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    assignment_role: AssignmentRole = Field(default=AssignmentRole.EMPLOYEE)
    custom_assignee_field: Optional[str] = None
    default_duration_days: Optional[float] = Field(None, ge=0)
    is_optional: bool = False
    can_skip: bool = False
    notify_on_assignment: bool = True
    notify_on_due: bool = True
    notify_on_overdue: bool = True
    icon: Optional[str] = None
    color: Optional[str] = None

    @property
    def is_skippable(self) -> bool:
        return self.is_optional or self.can_skip


class FormStepDefinition(BaseStepDefinition):
    """Form step - an assignee fills in data"""
    type: Literal["form"] = "form"
    form_template_id: Optional[str] = None


class ReviewStepDefinition(BaseStepDefinition):
    """Review step - an assignee reviews and submits"""
    type: Literal["review"] = "review"
    form_template_id: Optional[str] = None


class ApprovalStepDefinition(BaseStepDefinition):
    """Approval step - an assignee approves or rejects"""
    type: Literal["approval"] = "approval"
    approval_config: ApprovalConfig = Field(default_factory=ApprovalConfig)


class NotificationStepDefinition(BaseStepDefinition):
    """Notification step - passes through immediately"""
    type: Literal["notification"] = "notification"


class WaitStepDefinition(BaseStepDefinition):
    """Wait step - finished by the time-driven entry point"""
    type: Literal["wait"] = "wait"
    wait_config: WaitConfig = Field(default_factory=WaitConfig)


ParallelChildStep = Annotated[
    Union[FormStepDefinition, ReviewStepDefinition, ApprovalStepDefinition],
    Field(discriminator="type"),
]


class ParallelStepDefinition(BaseStepDefinition):
    """Parallel step - child branches worked concurrently under one step instance"""
    type: Literal["parallel"] = "parallel"
    parallel_steps: List[ParallelChildStep] = Field(default_factory=list)
    parallel_completion: ParallelCompletion = ParallelCompletion.ALL


class ConditionalStepDefinition(BaseStepDefinition):
    """Conditional step - routes on a boolean condition"""
    type: Literal["conditional"] = "conditional"
    conditional_config: ConditionalConfig


StepDefinition = Annotated[
    Union[
        FormStepDefinition,
        ReviewStepDefinition,
        ApprovalStepDefinition,
        NotificationStepDefinition,
        WaitStepDefinition,
        ParallelStepDefinition,
        ConditionalStepDefinition,
    ],
    Field(discriminator="type"),
]

# Step types completed by the engine itself when reached
AUTOMATIC_STEP_TYPES = (StepType.NOTIFICATION, StepType.CONDITIONAL)


# ============================================================================
# Transitions & Policies
# ============================================================================

class TransitionDefinition(BaseModel):
    """Directed, trigger-guarded edge between steps"""
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    from_step_id: str = Field(..., description="Source step ID or '*'")
    to_step_id: str = Field(..., description="Target step ID or 'END'")
    trigger: TransitionTrigger = TransitionTrigger.MANUAL
    conditions: List[WorkflowCondition] = Field(default_factory=list)
    condition_logic: ConditionLogic = ConditionLogic.AND
    label: Optional[str] = None
    button_variant: Optional[Literal["default", "primary", "destructive"]] = None

    @property
    def condition_group(self) -> ConditionGroup:
        return ConditionGroup(logic=self.condition_logic, conditions=self.conditions)


class ReminderSchedule(BaseModel):
    """Reminder policy stored for the notification layer"""
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    first_reminder_days: int = Field(..., ge=0)
    repeat_interval_days: Optional[int] = Field(None, ge=1)
    max_reminders: Optional[int] = Field(None, ge=0)
    channels: List[ReminderChannel] = Field(default_factory=lambda: [ReminderChannel.EMAIL])


class EscalationRule(BaseModel):
    """Escalation policy applied to overdue steps"""
    model_config = ConfigDict(extra="forbid")

    trigger_days_overdue: int = Field(..., ge=0)
    escalate_to: AssignmentRole
    notify_original: bool = True
    auto_reassign: bool = False
    max_escalations: Optional[int] = Field(None, ge=1)


# ============================================================================
# Workflow Definition
# ============================================================================

class StepGraph(BaseModel):
    """Structural part of a definition: steps, transitions and per-step durations"""

    steps: List[StepDefinition] = Field(default_factory=list)
    transitions: List[TransitionDefinition] = Field(default_factory=list)
    default_durations: Dict[str, float] = Field(default_factory=dict, description="step id -> days")
    escalation_rules: List[EscalationRule] = Field(default_factory=list)

    def get_step(self, step_id: Optional[str]) -> Optional[BaseStepDefinition]:
        """Find a top-level step by id"""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_index(self, step_id: str) -> int:
        """Position of a top-level step, -1 when absent"""
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return -1

    def first_step(self) -> Optional[BaseStepDefinition]:
        return self.steps[0] if self.steps else None

    def duration_for(self, step: BaseStepDefinition) -> Optional[float]:
        """Step's own duration, else the definition-level default"""
        if step.default_duration_days:
            return step.default_duration_days
        return self.default_durations.get(step.id)


class WorkflowDefinition(StepGraph):
    """Versioned workflow template"""
    model_config = ConfigDict(extra="forbid")

    definition_id: str
    tenant_id: Optional[str] = Field(None, description="None for system definitions")
    name: str
    slug: str
    description: Optional[str] = None
    icon: Optional[str] = None
    module: WorkflowModule = WorkflowModule.SHARED
    category: Optional[str] = None
    reminder_schedule: Optional[ReminderSchedule] = None
    version: int = 1
    parent_id: Optional[str] = Field(None, description="Definition this one was cloned from")
    is_template: bool = False
    is_active: bool = True
    is_system: bool = False
    country_code: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class DefinitionSnapshot(StepGraph):
    """Immutable structure of one definition version, interpreted by running instances"""
    model_config = ConfigDict(extra="forbid")

    definition_id: str
    version: int
    captured_at: datetime


# ============================================================================
# Runtime Records
# ============================================================================

class WorkflowInstance(BaseModel):
    """One running execution of a definition"""
    model_config = ConfigDict(extra="forbid")

    instance_id: str
    tenant_id: str
    definition_id: str
    definition_version: int
    reference_number: str
    subject_employee_id: str
    source_type: str
    source_id: str
    status: InstanceStatus = InstanceStatus.PENDING
    current_step_id: Optional[str] = None
    completed_step_ids: List[str] = Field(default_factory=list)
    context_data: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_by: Optional[str] = None
    version: int = Field(default=1, description="Optimistic concurrency counter")
    updated_at: datetime


class BranchState(BaseModel):
    """One child branch of a parallel step instance"""
    model_config = ConfigDict(extra="forbid")

    child_step_id: str
    step_type: StepType
    assignee_role: AssignmentRole
    assignee_employee_id: Optional[str] = None
    status: BranchStatus = BranchStatus.PENDING
    data: Dict[str, Any] = Field(default_factory=dict)
    acted_by: Optional[str] = None
    acted_at: Optional[datetime] = None
    comment: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status == BranchStatus.PENDING


class StepInstance(BaseModel):
    """Runtime record of one step execution"""
    model_config = ConfigDict(extra="forbid")

    step_instance_id: str
    tenant_id: str
    instance_id: str
    step_id: str
    step_type: StepType
    step_order: int
    assignee_role: AssignmentRole
    assignee_employee_id: Optional[str] = None
    status: StepStatus = StepStatus.IN_PROGRESS
    approval_status: Optional[ApprovalStatus] = None
    approval_comment: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    step_data: Dict[str, Any] = Field(default_factory=dict)
    form_submission_id: Optional[str] = None
    due_date: Optional[datetime] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    reminders_sent: int = 0
    last_reminder_at: Optional[datetime] = None
    is_escalated: bool = False
    escalated_at: Optional[datetime] = None
    escalated_to_employee_id: Optional[str] = None
    branches: List[BranchState] = Field(default_factory=list)
    updated_at: datetime

    @property
    def is_open(self) -> bool:
        return self.status in (StepStatus.PENDING, StepStatus.IN_PROGRESS)


class Employee(BaseModel):
    """Read model of the external employee directory"""
    model_config = ConfigDict(extra="ignore")

    employee_id: str
    tenant_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    job_title: Optional[str] = None
    reporting_manager_id: Optional[str] = None


# ============================================================================
# Audit
# ============================================================================

class AuditEvent(BaseModel):
    """Audit event (append-only)"""
    model_config = ConfigDict(extra="forbid")

    audit_event_id: str
    tenant_id: Optional[str] = None
    definition_id: Optional[str] = None
    instance_id: Optional[str] = None
    step_instance_id: Optional[str] = None
    event_type: AuditEventType
    actor: ActorSnapshot
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    correlation_id: Optional[str] = None
