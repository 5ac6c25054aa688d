"""Repository modules - Data access layer"""
from .mongo_client import get_database, get_collection, transaction
from .definition_repo import DefinitionRepository
from .instance_repo import InstanceRepository
from .employee_repo import EmployeeRepository
from .audit_repo import AuditRepository

__all__ = [
    "get_database",
    "get_collection",
    "transaction",
    "DefinitionRepository",
    "InstanceRepository",
    "EmployeeRepository",
    "AuditRepository",
]
