"""Employee Repository - Read model of the external employee directory"""
from typing import Optional
from pymongo.collection import Collection

from .mongo_client import get_collection
from ..domain.models import Employee
from ..utils.logger import get_logger

logger = get_logger(__name__)


class EmployeeRepository:
    """
    Directory lookups used by assignee resolution

    Employee records are owned by the HR core system; this service only reads
    them. `upsert_employee` exists for seed scripts and tests.
    """

    def __init__(self):
        self._employees: Collection = get_collection("employees")

    def get_employee(self, employee_id: str, tenant_id: str) -> Optional[Employee]:
        """Get employee by ID within a tenant"""
        doc = self._employees.find_one({"employee_id": employee_id, "tenant_id": tenant_id})
        if doc:
            doc.pop("_id", None)
            return Employee.model_validate(doc)
        return None

    def get_manager_id(self, employee_id: str, tenant_id: str) -> Optional[str]:
        """Reporting manager of an employee, None when unknown"""
        doc = self._employees.find_one(
            {"employee_id": employee_id, "tenant_id": tenant_id},
            {"reporting_manager_id": 1}
        )
        if not doc:
            return None
        return doc.get("reporting_manager_id")

    def upsert_employee(self, employee: Employee) -> Employee:
        """Insert or replace an employee record"""
        doc = employee.model_dump()
        doc["_id"] = f"{employee.tenant_id}:{employee.employee_id}"

        self._employees.replace_one({"_id": doc["_id"]}, doc, upsert=True)
        logger.debug(f"Upserted employee: {employee.employee_id}", extra={"tenant_id": employee.tenant_id})
        return employee
