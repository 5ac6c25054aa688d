"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class WorkflowModule(str, Enum):
    """HR module a definition belongs to"""
    PERFORMANCE = "performance"
    TRAINING = "training"
    SHARED = "shared"


class StepType(str, Enum):
    """Types of workflow steps"""
    FORM = "form"
    APPROVAL = "approval"
    REVIEW = "review"
    NOTIFICATION = "notification"  # Completes itself as soon as it is reached
    WAIT = "wait"  # Completed by the time-driven entry point
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"  # Routes immediately on its condition


class AssignmentRole(str, Enum):
    """Abstract description of who acts on a step"""
    EMPLOYEE = "employee"
    MANAGER = "manager"
    SKIP_LEVEL_MANAGER = "skip_level_manager"
    HR_MANAGER = "hr_manager"
    HR_ADMIN = "hr_admin"
    PEER = "peer"
    CUSTOM = "custom"


class TransitionTrigger(str, Enum):
    """Events that can fire a transition"""
    MANUAL = "manual"
    FORM_SUBMITTED = "form_submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    DUE_DATE_REACHED = "due_date_reached"
    CONDITION_MET = "condition_met"
    ALL_PARALLEL_COMPLETE = "all_parallel_complete"
    ESCALATION = "escalation"
    TIMEOUT = "timeout"


class StepOutcome(str, Enum):
    """How a step finished - drives transition matching"""
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    DUE_DATE_REACHED = "due_date_reached"
    TIMEOUT = "timeout"
    ESCALATION = "escalation"
    PARALLEL_COMPLETE = "parallel_complete"
    AUTO = "auto"  # notification steps
    CONDITION = "condition"  # conditional steps without a branch target


class TransitionMatching(str, Enum):
    """Transition matching rule"""
    OUTCOME_AWARE = "outcome_aware"
    LEGACY = "legacy"


class InstanceStatus(str, Enum):
    """Workflow instance status"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    BLOCKED = "blocked"  # Advancement could not resolve a next step; needs HR attention


class StepStatus(str, Enum):
    """Runtime state per step instance"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class ApprovalStatus(str, Enum):
    """Approval outcome recorded separately from step status"""
    APPROVED = "approved"
    REJECTED = "rejected"


class ParallelCompletion(str, Enum):
    """How many branches must finish before a parallel step closes"""
    ALL = "all"
    ANY = "any"
    MAJORITY = "majority"


class BranchStatus(str, Enum):
    """State of one branch of a parallel step"""
    PENDING = "pending"
    COMPLETED = "completed"
    APPROVED = "approved"
    REJECTED = "rejected"


class WaitType(str, Enum):
    """How a wait step decides it is done"""
    DURATION = "duration"
    DATE = "date"
    CONDITION = "condition"


class ConditionType(str, Enum):
    """Kinds of workflow condition"""
    FIELD_CHECK = "field_check"
    SCORE_CHECK = "score_check"
    DATE_CHECK = "date_check"


class ConditionOperator(str, Enum):
    """Operators for field conditions"""
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    IN = "in"


class DateComparison(str, Enum):
    """Comparison for date conditions, relative to now"""
    BEFORE = "before"
    AFTER = "after"
    ON = "on"


class ConditionLogic(str, Enum):
    """How conditions in a group are combined"""
    AND = "AND"
    OR = "OR"


class ReminderChannel(str, Enum):
    """Delivery channels named in the reminder policy"""
    EMAIL = "email"
    IN_APP = "in_app"
    PUSH = "push"


class AuditEventType(str, Enum):
    """Types of audit events"""
    DEFINITION_CREATED = "DEFINITION_CREATED"
    DEFINITION_UPDATED = "DEFINITION_UPDATED"
    DEFINITION_CLONED = "DEFINITION_CLONED"
    DEFINITION_DELETED = "DEFINITION_DELETED"
    INSTANCE_STARTED = "INSTANCE_STARTED"
    INSTANCE_COMPLETED = "INSTANCE_COMPLETED"
    INSTANCE_CANCELLED = "INSTANCE_CANCELLED"
    INSTANCE_BLOCKED = "INSTANCE_BLOCKED"
    STEP_ACTIVATED = "STEP_ACTIVATED"
    STEP_COMPLETED = "STEP_COMPLETED"
    STEP_APPROVED = "STEP_APPROVED"
    STEP_REJECTED = "STEP_REJECTED"
    STEP_SKIPPED = "STEP_SKIPPED"
    STEP_ESCALATED = "STEP_ESCALATED"
    BRANCH_RECORDED = "BRANCH_RECORDED"


# Step statuses that count as the instance's active step
OPEN_STEP_STATUSES = (StepStatus.PENDING, StepStatus.IN_PROGRESS)

# Instance statuses that no longer accept actions
CLOSED_INSTANCE_STATUSES = (
    InstanceStatus.COMPLETED,
    InstanceStatus.CANCELLED,
    InstanceStatus.EXPIRED,
)

# Sentinels used in transition definitions
WILDCARD_STEP = "*"
END_STEP = "END"
