"""Instance Repository - Data access for workflow instances and step instances"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from pymongo.client_session import ClientSession
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from .mongo_client import get_collection
from ..domain.models import WorkflowInstance, StepInstance
from ..domain.enums import InstanceStatus, StepStatus, StepType, BranchStatus, OPEN_STEP_STATUSES
from ..domain.errors import (
    InstanceNotFoundError, StepNotFoundError, ConcurrencyError, InvalidStateError
)
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

_OPEN = [s.value for s in OPEN_STEP_STATUSES]


class InstanceRepository:
    """Repository for workflow instance and step instance operations"""

    def __init__(self):
        self._instances: Collection = get_collection("workflow_instances")
        self._steps: Collection = get_collection("workflow_step_instances")

    # =========================================================================
    # Workflow Instances
    # =========================================================================

    def create_instance(
        self,
        instance: WorkflowInstance,
        session: Optional[ClientSession] = None
    ) -> WorkflowInstance:
        """Create a new workflow instance"""
        # Don't use mode="json" - it converts datetime to strings, breaking date queries
        doc = instance.model_dump()
        doc["_id"] = instance.instance_id

        self._instances.insert_one(doc, session=session)
        logger.info(
            f"Created instance: {instance.instance_id}",
            extra={"instance_id": instance.instance_id, "tenant_id": instance.tenant_id}
        )
        return instance

    def get_instance(self, instance_id: str, tenant_id: Optional[str] = None) -> Optional[WorkflowInstance]:
        """Get instance by ID, optionally scoped to a tenant"""
        query: Dict[str, Any] = {"instance_id": instance_id}
        if tenant_id is not None:
            query["tenant_id"] = tenant_id

        doc = self._instances.find_one(query)
        if doc:
            doc.pop("_id", None)
            return WorkflowInstance.model_validate(doc)
        return None

    def get_instance_or_raise(self, instance_id: str, tenant_id: Optional[str] = None) -> WorkflowInstance:
        """Get instance by ID or raise error"""
        instance = self.get_instance(instance_id, tenant_id)
        if not instance:
            raise InstanceNotFoundError(f"Workflow instance {instance_id} not found")
        return instance

    def update_instance(
        self,
        instance_id: str,
        updates: Dict[str, Any],
        expected_version: int,
        expected_step_id: Optional[str] = None,
        session: Optional[ClientSession] = None
    ) -> WorkflowInstance:
        """
        Update instance with optimistic concurrency

        Every instance write goes through here, so the version check is the
        per-instance serialization point. expected_step_id additionally
        requires the instance to still point at the step being closed.
        """
        updates["updated_at"] = utc_now()
        updates["version"] = expected_version + 1

        query: Dict[str, Any] = {"instance_id": instance_id, "version": expected_version}
        if expected_step_id is not None:
            query["current_step_id"] = expected_step_id

        result = self._instances.find_one_and_update(
            query,
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
            session=session
        )

        if result is None:
            if self._instances.find_one({"instance_id": instance_id}, session=session):
                raise ConcurrencyError(
                    f"Workflow instance {instance_id} was modified concurrently. Please retry.",
                    details={"expected_version": expected_version}
                )
            raise InstanceNotFoundError(f"Workflow instance {instance_id} not found")

        result.pop("_id", None)
        logger.info(f"Updated instance: {instance_id}", extra={"instance_id": instance_id})
        return WorkflowInstance.model_validate(result)

    def _build_instance_query(
        self,
        tenant_id: str,
        definition_id: Optional[str] = None,
        subject_employee_id: Optional[str] = None,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"tenant_id": tenant_id}
        if definition_id:
            query["definition_id"] = definition_id
        if subject_employee_id:
            query["subject_employee_id"] = subject_employee_id
        if source_type:
            query["source_type"] = source_type
        if source_id:
            query["source_id"] = source_id
        if status:
            query["status"] = status.value
        return query

    def list_instances(
        self,
        tenant_id: str,
        definition_id: Optional[str] = None,
        subject_employee_id: Optional[str] = None,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[WorkflowInstance]:
        """List tenant instances with filters, most recently updated first"""
        query = self._build_instance_query(
            tenant_id, definition_id, subject_employee_id, source_type, source_id, status
        )
        cursor = self._instances.find(query).sort("updated_at", DESCENDING).skip(skip).limit(limit)

        instances = []
        for doc in cursor:
            doc.pop("_id", None)
            instances.append(WorkflowInstance.model_validate(doc))
        return instances

    def count_instances(
        self,
        tenant_id: str,
        definition_id: Optional[str] = None,
        subject_employee_id: Optional[str] = None,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> int:
        """Count tenant instances with filters"""
        query = self._build_instance_query(
            tenant_id, definition_id, subject_employee_id, source_type, source_id, status
        )
        return self._instances.count_documents(query)

    def count_by_statuses(self, tenant_id: str, statuses: Sequence[InstanceStatus]) -> int:
        """Count tenant instances in any of the statuses"""
        return self._instances.count_documents({
            "tenant_id": tenant_id,
            "status": {"$in": [s.value for s in statuses]}
        })

    def count_completed_since(self, tenant_id: str, since: datetime) -> int:
        """Count instances completed at or after the given instant"""
        return self._instances.count_documents({
            "tenant_id": tenant_id,
            "status": InstanceStatus.COMPLETED.value,
            "completed_at": {"$gte": since}
        })

    # =========================================================================
    # Step Instances
    # =========================================================================

    def create_step(self, step: StepInstance, session: Optional[ClientSession] = None) -> StepInstance:
        """Create a step instance"""
        doc = step.model_dump()
        doc["_id"] = step.step_instance_id

        self._steps.insert_one(doc, session=session)
        logger.info(
            f"Created step instance: {step.step_instance_id}",
            extra={"instance_id": step.instance_id, "step_id": step.step_id, "status": step.status.value}
        )
        return step

    def get_step(self, step_instance_id: str, tenant_id: Optional[str] = None) -> Optional[StepInstance]:
        """Get step instance by ID, optionally scoped to a tenant"""
        query: Dict[str, Any] = {"step_instance_id": step_instance_id}
        if tenant_id is not None:
            query["tenant_id"] = tenant_id

        doc = self._steps.find_one(query)
        if doc:
            doc.pop("_id", None)
            return StepInstance.model_validate(doc)
        return None

    def get_step_or_raise(self, step_instance_id: str, tenant_id: Optional[str] = None) -> StepInstance:
        """Get step instance by ID or raise error"""
        step = self.get_step(step_instance_id, tenant_id)
        if not step:
            raise StepNotFoundError(f"Step instance {step_instance_id} not found")
        return step

    def close_step(
        self,
        step_instance_id: str,
        updates: Dict[str, Any],
        session: Optional[ClientSession] = None
    ) -> StepInstance:
        """
        Apply the closing updates to a step that is still open

        Raises:
            InvalidStateError: the step was closed by someone else in the meantime
        """
        updates["updated_at"] = utc_now()

        result = self._steps.find_one_and_update(
            {"step_instance_id": step_instance_id, "status": {"$in": _OPEN}},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
            session=session
        )
        if result is None:
            raise InvalidStateError(
                f"Step instance {step_instance_id} is no longer open",
                details={"step_instance_id": step_instance_id}
            )

        result.pop("_id", None)
        return StepInstance.model_validate(result)

    def update_open_step(
        self,
        step_instance_id: str,
        updates: Dict[str, Any],
        extra_filter: Optional[Dict[str, Any]] = None,
        session: Optional[ClientSession] = None
    ) -> Optional[StepInstance]:
        """Update a step only while it is open (and matches extra_filter); None when nothing matched"""
        updates["updated_at"] = utc_now()
        query: Dict[str, Any] = {"step_instance_id": step_instance_id, "status": {"$in": _OPEN}}
        if extra_filter:
            query.update(extra_filter)

        result = self._steps.find_one_and_update(
            query,
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
            session=session
        )
        if result is None:
            return None
        result.pop("_id", None)
        return StepInstance.model_validate(result)

    def record_branch(
        self,
        step_instance_id: str,
        child_step_id: str,
        branch_updates: Dict[str, Any],
        session: Optional[ClientSession] = None
    ) -> StepInstance:
        """
        Record one pending branch of an open parallel step

        Raises:
            InvalidStateError: the step is closed or the branch was already recorded
        """
        set_doc = {f"branches.$.{key}": value for key, value in branch_updates.items()}
        set_doc["updated_at"] = utc_now()

        result = self._steps.find_one_and_update(
            {
                "step_instance_id": step_instance_id,
                "status": {"$in": _OPEN},
                "branches": {"$elemMatch": {
                    "child_step_id": child_step_id,
                    "status": BranchStatus.PENDING.value
                }}
            },
            {"$set": set_doc},
            return_document=ReturnDocument.AFTER,
            session=session
        )
        if result is None:
            raise InvalidStateError(
                f"Branch {child_step_id} of step {step_instance_id} is not open",
                details={"step_instance_id": step_instance_id, "child_step_id": child_step_id}
            )

        result.pop("_id", None)
        return StepInstance.model_validate(result)

    def skip_open_steps(
        self,
        instance_id: str,
        completed_at: datetime,
        session: Optional[ClientSession] = None
    ) -> int:
        """Bulk-transition every open step of an instance to skipped"""
        result = self._steps.update_many(
            {"instance_id": instance_id, "status": {"$in": _OPEN}},
            {"$set": {
                "status": StepStatus.SKIPPED.value,
                "completed_at": completed_at,
                "updated_at": completed_at
            }},
            session=session
        )
        return result.modified_count

    def list_steps_for_instance(self, instance_id: str) -> List[StepInstance]:
        """All step instances of an instance ordered by step order"""
        cursor = self._steps.find({"instance_id": instance_id}).sort([
            ("step_order", ASCENDING),
            ("started_at", ASCENDING)
        ])

        steps = []
        for doc in cursor:
            doc.pop("_id", None)
            steps.append(StepInstance.model_validate(doc))
        return steps

    def get_open_step(self, instance_id: str) -> Optional[StepInstance]:
        """The instance's active step, if any"""
        doc = self._steps.find_one({"instance_id": instance_id, "status": {"$in": _OPEN}})
        if doc:
            doc.pop("_id", None)
            return StepInstance.model_validate(doc)
        return None

    def is_assignee_in_instance(self, instance_id: str, employee_id: str) -> bool:
        """Whether the employee is assigned to any step or branch of the instance"""
        return self._steps.count_documents({
            "instance_id": instance_id,
            "$or": [
                {"assignee_employee_id": employee_id},
                {"branches.assignee_employee_id": employee_id},
            ]
        }, limit=1) > 0

    @staticmethod
    def _assigned_open_query(tenant_id: str, employee_id: str) -> Dict[str, Any]:
        return {
            "tenant_id": tenant_id,
            "status": {"$in": _OPEN},
            "$or": [
                {"assignee_employee_id": employee_id},
                {"branches": {"$elemMatch": {
                    "assignee_employee_id": employee_id,
                    "status": BranchStatus.PENDING.value
                }}},
            ]
        }

    def list_open_steps_for_assignee(
        self,
        tenant_id: str,
        employee_id: str,
        skip: int = 0,
        limit: int = 20
    ) -> List[StepInstance]:
        """Open steps assigned to an employee, soonest due first"""
        cursor = self._steps.find(self._assigned_open_query(tenant_id, employee_id)).sort([
            ("due_date", ASCENDING),
            ("started_at", ASCENDING)
        ]).skip(skip).limit(limit)

        steps = []
        for doc in cursor:
            doc.pop("_id", None)
            steps.append(StepInstance.model_validate(doc))
        return steps

    def count_open_steps_for_assignee(self, tenant_id: str, employee_id: str) -> int:
        """Count open steps assigned to an employee"""
        return self._steps.count_documents(self._assigned_open_query(tenant_id, employee_id))

    def count_overdue_steps(self, tenant_id: str, now: datetime) -> int:
        """Count open steps past their due date"""
        return self._steps.count_documents({
            "tenant_id": tenant_id,
            "status": {"$in": _OPEN},
            "due_date": {"$ne": None, "$lt": now}
        })

    # =========================================================================
    # Scheduler Scans
    # =========================================================================

    def find_due_wait_steps(self, now: datetime, limit: int = 100) -> List[StepInstance]:
        """Open wait steps whose due date has been reached"""
        cursor = self._steps.find({
            "step_type": StepType.WAIT.value,
            "status": {"$in": _OPEN},
            "due_date": {"$ne": None, "$lte": now}
        }).sort("due_date", ASCENDING).limit(limit)

        steps = []
        for doc in cursor:
            doc.pop("_id", None)
            steps.append(StepInstance.model_validate(doc))
        return steps

    def find_condition_wait_steps(self, limit: int = 100) -> List[StepInstance]:
        """Open wait steps without a due date (condition waits)"""
        cursor = self._steps.find({
            "step_type": StepType.WAIT.value,
            "status": {"$in": _OPEN},
            "due_date": None
        }).sort("started_at", ASCENDING).limit(limit)

        steps = []
        for doc in cursor:
            doc.pop("_id", None)
            steps.append(StepInstance.model_validate(doc))
        return steps

    def find_overdue_unescalated_steps(self, now: datetime, limit: int = 100) -> List[StepInstance]:
        """Open, not yet escalated steps past their due date"""
        cursor = self._steps.find({
            "status": {"$in": _OPEN},
            "is_escalated": False,
            "step_type": {"$ne": StepType.WAIT.value},
            "due_date": {"$ne": None, "$lt": now}
        }).sort("due_date", ASCENDING).limit(limit)

        steps = []
        for doc in cursor:
            doc.pop("_id", None)
            steps.append(StepInstance.model_validate(doc))
        return steps
