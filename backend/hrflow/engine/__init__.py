"""Workflow Engine - Advancement, routing and authorization"""
from .advancer import WorkflowAdvancer
from .permission_guard import PermissionGuard
from .transition_resolver import TransitionResolver
from .condition_evaluator import ConditionEvaluator
from .assignee_resolver import AssigneeResolver
from .audit_writer import AuditWriter

__all__ = [
    "WorkflowAdvancer",
    "PermissionGuard",
    "TransitionResolver",
    "ConditionEvaluator",
    "AssigneeResolver",
    "AuditWriter",
]
