"""Service modules - Business logic layer"""
from .definition_service import DefinitionService
from .instance_service import InstanceService
from .step_service import StepService
from .dashboard_service import DashboardService

__all__ = [
    "DefinitionService",
    "InstanceService",
    "StepService",
    "DashboardService",
]
