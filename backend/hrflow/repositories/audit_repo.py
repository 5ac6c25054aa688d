"""Audit Repository - Data access for audit events"""
from typing import Any, Dict, List, Optional
from pymongo.client_session import ClientSession
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING

from .mongo_client import get_collection
from ..domain.models import AuditEvent
from ..domain.enums import AuditEventType
from ..utils.logger import get_logger

logger = get_logger(__name__)


class AuditRepository:
    """Repository for audit event operations (append-only)"""

    def __init__(self):
        self._audit_events: Collection = get_collection("audit_events")

    def create_event(self, event: AuditEvent, session: Optional[ClientSession] = None) -> AuditEvent:
        """Create an audit event (append-only)"""
        doc = event.model_dump()
        doc["_id"] = event.audit_event_id

        self._audit_events.insert_one(doc, session=session)
        logger.info(
            f"Created audit event: {event.event_type.value}",
            extra={
                "instance_id": event.instance_id,
                "definition_id": event.definition_id,
                "actor_id": event.actor.user_id
            }
        )
        return event

    def get_events_for_instance(
        self,
        instance_id: str,
        event_types: Optional[List[AuditEventType]] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[AuditEvent]:
        """Get audit events for an instance, oldest first"""
        query: Dict[str, Any] = {"instance_id": instance_id}

        if event_types:
            query["event_type"] = {"$in": [et.value for et in event_types]}

        cursor = self._audit_events.find(query).sort("timestamp", ASCENDING).skip(skip).limit(limit)

        events = []
        for doc in cursor:
            doc.pop("_id", None)
            events.append(AuditEvent.model_validate(doc))

        return events

    def count_events_for_instance(self, instance_id: str) -> int:
        """Count audit events for an instance"""
        return self._audit_events.count_documents({"instance_id": instance_id})

    def get_events_for_definition(self, definition_id: str, limit: int = 100) -> List[AuditEvent]:
        """Get definition-level audit events, newest first"""
        cursor = self._audit_events.find(
            {"definition_id": definition_id, "instance_id": None}
        ).sort("timestamp", DESCENDING).limit(limit)

        events = []
        for doc in cursor:
            doc.pop("_id", None)
            events.append(AuditEvent.model_validate(doc))

        return events

    def get_events_by_correlation_id(self, correlation_id: str) -> List[AuditEvent]:
        """Get audit events by correlation ID"""
        cursor = self._audit_events.find(
            {"correlation_id": correlation_id}
        ).sort("timestamp", DESCENDING)

        events = []
        for doc in cursor:
            doc.pop("_id", None)
            events.append(AuditEvent.model_validate(doc))

        return events
