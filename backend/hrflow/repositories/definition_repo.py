"""Definition Repository - Data access for workflow definitions and their versions"""
import re
from typing import Any, Dict, List, Optional
from pymongo.client_session import ClientSession
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError
from pymongo import DESCENDING, ReturnDocument

from .mongo_client import get_collection
from ..domain.models import WorkflowDefinition, DefinitionSnapshot
from ..domain.enums import WorkflowModule
from ..domain.errors import DefinitionNotFoundError, ConcurrencyError, DuplicateSlugError
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


def visibility_filter(tenant_id: str) -> Dict[str, Any]:
    """Tenant's own definitions plus global system definitions"""
    return {"$or": [{"tenant_id": tenant_id}, {"is_system": True}]}


class DefinitionRepository:
    """Repository for workflow definition operations"""

    def __init__(self):
        self._definitions: Collection = get_collection("workflow_definitions")
        self._versions: Collection = get_collection("workflow_definition_versions")

    # =========================================================================
    # Definition CRUD
    # =========================================================================

    def create_definition(
        self,
        definition: WorkflowDefinition,
        session: Optional[ClientSession] = None
    ) -> WorkflowDefinition:
        """Create a new workflow definition"""
        doc = definition.model_dump()
        doc["_id"] = definition.definition_id

        try:
            self._definitions.insert_one(doc, session=session)
        except DuplicateKeyError:
            raise DuplicateSlugError(
                f"Slug {definition.slug} is already in use",
                details={"slug": definition.slug}
            )
        logger.info(
            f"Created definition: {definition.definition_id}",
            extra={"definition_id": definition.definition_id, "tenant_id": definition.tenant_id}
        )
        return definition

    def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        """Get definition by ID regardless of tenant"""
        doc = self._definitions.find_one({"definition_id": definition_id})
        if doc:
            doc.pop("_id", None)
            return WorkflowDefinition.model_validate(doc)
        return None

    def get_visible_definition(self, definition_id: str, tenant_id: str) -> Optional[WorkflowDefinition]:
        """Get definition by ID if the tenant may read it"""
        doc = self._definitions.find_one({"definition_id": definition_id, **visibility_filter(tenant_id)})
        if doc:
            doc.pop("_id", None)
            return WorkflowDefinition.model_validate(doc)
        return None

    def get_visible_definition_or_raise(self, definition_id: str, tenant_id: str) -> WorkflowDefinition:
        """Get visible definition or raise error"""
        definition = self.get_visible_definition(definition_id, tenant_id)
        if not definition:
            raise DefinitionNotFoundError(f"Workflow definition {definition_id} not found")
        return definition

    def get_by_slug(self, slug: str, tenant_id: str) -> Optional[WorkflowDefinition]:
        """Get visible definition by slug"""
        doc = self._definitions.find_one({"slug": slug, **visibility_filter(tenant_id)})
        if doc:
            doc.pop("_id", None)
            return WorkflowDefinition.model_validate(doc)
        return None

    def slug_exists(self, slug: str, tenant_id: Optional[str]) -> bool:
        """Whether the slug is taken in the tenant's scope (own or system)"""
        query = visibility_filter(tenant_id) if tenant_id else {"is_system": True}
        return self._definitions.count_documents({"slug": slug, **query}, limit=1) > 0

    def update_definition(
        self,
        definition_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
        session: Optional[ClientSession] = None
    ) -> WorkflowDefinition:
        """
        Update definition fields

        Args:
            definition_id: Definition ID
            updates: Fields to set
            expected_version: When given, the write only applies if the stored
                structural version still matches (guards concurrent structural edits)
        """
        updates["updated_at"] = utc_now()

        filter_query: Dict[str, Any] = {"definition_id": definition_id}
        if expected_version is not None:
            filter_query["version"] = expected_version

        result = self._definitions.find_one_and_update(
            filter_query,
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
            session=session
        )

        if result is None:
            if expected_version is not None and self._definitions.find_one({"definition_id": definition_id}):
                raise ConcurrencyError(
                    f"Definition {definition_id} was modified. Please refresh and try again.",
                    details={"expected_version": expected_version}
                )
            raise DefinitionNotFoundError(f"Workflow definition {definition_id} not found")

        result.pop("_id", None)
        logger.info(f"Updated definition: {definition_id}", extra={"definition_id": definition_id})
        return WorkflowDefinition.model_validate(result)

    def _build_list_query(
        self,
        tenant_id: str,
        module: Optional[WorkflowModule] = None,
        category: Optional[str] = None,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        is_template: Optional[bool] = None,
    ) -> Dict[str, Any]:
        and_conditions: List[Dict[str, Any]] = [visibility_filter(tenant_id)]

        if module:
            and_conditions.append({"module": module.value})
        if category:
            and_conditions.append({"category": category})
        if is_active is not None:
            and_conditions.append({"is_active": is_active})
        if is_template is not None:
            and_conditions.append({"is_template": is_template})
        if search:
            pattern = re.escape(search)
            and_conditions.append({
                "$or": [
                    {"name": {"$regex": pattern, "$options": "i"}},
                    {"description": {"$regex": pattern, "$options": "i"}}
                ]
            })

        return {"$and": and_conditions}

    def list_definitions(
        self,
        tenant_id: str,
        module: Optional[WorkflowModule] = None,
        category: Optional[str] = None,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        is_template: Optional[bool] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[WorkflowDefinition]:
        """List definitions visible to the tenant, most recently updated first"""
        query = self._build_list_query(tenant_id, module, category, search, is_active, is_template)
        cursor = self._definitions.find(query).sort("updated_at", DESCENDING).skip(skip).limit(limit)

        definitions = []
        for doc in cursor:
            doc.pop("_id", None)
            definitions.append(WorkflowDefinition.model_validate(doc))
        return definitions

    def count_definitions(
        self,
        tenant_id: str,
        module: Optional[WorkflowModule] = None,
        category: Optional[str] = None,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        is_template: Optional[bool] = None,
    ) -> int:
        """Count definitions visible to the tenant"""
        query = self._build_list_query(tenant_id, module, category, search, is_active, is_template)
        return self._definitions.count_documents(query)

    # =========================================================================
    # Structural Versions
    # =========================================================================

    def save_snapshot(
        self,
        snapshot: DefinitionSnapshot,
        session: Optional[ClientSession] = None
    ) -> DefinitionSnapshot:
        """
        Store the structure of one definition version

        Steps and transitions of a stored version never change (a structural
        edit produces a new version); policy-only edits re-save the current one.
        """
        doc = snapshot.model_dump()
        doc["_id"] = f"{snapshot.definition_id}:v{snapshot.version}"

        self._versions.replace_one({"_id": doc["_id"]}, doc, upsert=True, session=session)
        logger.info(
            f"Captured definition version {snapshot.version}",
            extra={"definition_id": snapshot.definition_id}
        )
        return snapshot

    def get_snapshot(self, definition_id: str, version: int) -> Optional[DefinitionSnapshot]:
        """Get the structure captured for a definition version"""
        doc = self._versions.find_one({"definition_id": definition_id, "version": version})
        if doc:
            doc.pop("_id", None)
            return DefinitionSnapshot.model_validate(doc)
        return None

    def get_snapshot_or_raise(self, definition_id: str, version: int) -> DefinitionSnapshot:
        """Get captured structure or raise error"""
        snapshot = self.get_snapshot(definition_id, version)
        if not snapshot:
            raise DefinitionNotFoundError(
                f"Version {version} of workflow definition {definition_id} not found",
                details={"definition_id": definition_id, "version": version}
            )
        return snapshot
