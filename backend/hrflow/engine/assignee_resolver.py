"""Assignee Resolver - Abstract assignment roles to concrete employees"""
from typing import Optional, Protocol

from ..config.settings import settings
from ..domain.enums import AssignmentRole
from ..utils.logger import get_logger

logger = get_logger(__name__)


class EmployeeDirectory(Protocol):
    """What the resolver needs from the employee directory"""

    def get_manager_id(self, employee_id: str, tenant_id: str) -> Optional[str]:
        ...


class AssigneeResolver:
    """
    Resolve an assignment role against the instance subject

    employee -> the subject; manager -> one hop up the reporting line;
    skip_level_manager -> two hops. Other roles have no directory rule and
    resolve to None. Traversal is iterative, bounded by
    settings.max_hierarchy_hops, and stops on self-references or cycles.
    """

    ROLE_HOPS = {
        AssignmentRole.EMPLOYEE: 0,
        AssignmentRole.MANAGER: 1,
        AssignmentRole.SKIP_LEVEL_MANAGER: 2,
    }

    def __init__(self, directory: EmployeeDirectory, max_hops: Optional[int] = None):
        self.directory = directory
        self.max_hops = max_hops if max_hops is not None else settings.max_hierarchy_hops

    def resolve(
        self,
        role: AssignmentRole,
        subject_employee_id: str,
        tenant_id: str
    ) -> Optional[str]:
        """
        Resolve role to an employee ID

        Returns:
            Employee ID, or None when the role cannot be resolved
        """
        hops = self.ROLE_HOPS.get(role)
        if hops is None:
            logger.debug(
                f"No directory rule for role {role.value}; leaving step unassigned",
                extra={"tenant_id": tenant_id}
            )
            return None

        if hops > self.max_hops:
            logger.warning(
                f"Role {role.value} needs {hops} hops, limit is {self.max_hops}",
                extra={"tenant_id": tenant_id}
            )
            return None

        return self._walk_up(subject_employee_id, hops, tenant_id)

    def manager_of(self, employee_id: str, tenant_id: str) -> Optional[str]:
        """Direct manager of an employee, None when missing or self-referencing"""
        return self._walk_up(employee_id, 1, tenant_id)

    def _walk_up(self, employee_id: str, hops: int, tenant_id: str) -> Optional[str]:
        current = employee_id
        visited = {current}

        for _ in range(hops):
            manager_id = self.directory.get_manager_id(current, tenant_id)
            if not manager_id:
                return None
            if manager_id in visited:
                logger.warning(
                    f"Reporting line of {employee_id} loops back to {manager_id}",
                    extra={"tenant_id": tenant_id}
                )
                return None
            visited.add(manager_id)
            current = manager_id

        return current
