"""MongoDB Client - Connection, Collection and Transaction Management"""
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
from pymongo import MongoClient as PyMongoClient
from pymongo.client_session import ClientSession
from pymongo.database import Database
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, PyMongoError

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Global client instance
_client: Optional[PyMongoClient] = None
_database: Optional[Database] = None


def get_client() -> PyMongoClient:
    """Get or create MongoDB client"""
    global _client
    if _client is None:
        logger.info(f"Connecting to MongoDB: {settings.mongo_uri}")
        _client = PyMongoClient(
            settings.mongo_uri,
            tz_aware=True,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
        )
        try:
            _client.admin.command("ping")
            logger.info("MongoDB connection successful")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
    return _client


def get_database() -> Database:
    """Get the application database"""
    global _database
    if _database is None:
        client = get_client()
        _database = client[settings.mongo_db]
        logger.info(f"Using database: {settings.mongo_db}")
    return _database


def use_client(client: Any, db_name: Optional[str] = None) -> None:
    """Install an already-built client (used by scripts and the test suite)"""
    global _client, _database
    _client = client
    _database = client[db_name or settings.mongo_db]


def get_collection(name: str) -> Collection:
    """Get a collection from the database"""
    db = get_database()
    return db[name]


@contextmanager
def transaction() -> Iterator[Optional[ClientSession]]:
    """
    Run the enclosed writes as one multi-document transaction.

    Yields the session to pass to every collection call. When transactions
    are disabled (standalone server, tests) yields None and the writes run
    unwrapped; callers still guard each write with optimistic filters.
    """
    if not settings.mongo_transactions:
        yield None
        return

    client = get_client()
    with client.start_session() as session:
        with session.start_transaction():
            yield session


def close_connection() -> None:
    """Close MongoDB connection"""
    global _client, _database
    if _client is not None:
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")


def create_indexes() -> None:
    """Create all required indexes"""
    db = get_database()
    logger.info("Creating MongoDB indexes...")

    definitions = db["workflow_definitions"]
    definitions.create_index("definition_id", unique=True)
    definitions.create_index("slug", unique=True)
    definitions.create_index([("tenant_id", ASCENDING), ("is_active", ASCENDING)])
    definitions.create_index("is_system")
    definitions.create_index("updated_at")

    snapshots = db["workflow_definition_versions"]
    snapshots.create_index([("definition_id", ASCENDING), ("version", DESCENDING)], unique=True)

    instances = db["workflow_instances"]
    instances.create_index("instance_id", unique=True)
    instances.create_index("reference_number", unique=True)
    instances.create_index([("tenant_id", ASCENDING), ("status", ASCENDING)])
    instances.create_index([("tenant_id", ASCENDING), ("subject_employee_id", ASCENDING)])
    instances.create_index([("source_type", ASCENDING), ("source_id", ASCENDING)])
    instances.create_index("updated_at")

    steps = db["workflow_step_instances"]
    steps.create_index("step_instance_id", unique=True)
    steps.create_index([("instance_id", ASCENDING), ("step_order", ASCENDING)])
    steps.create_index([("tenant_id", ASCENDING), ("assignee_employee_id", ASCENDING), ("status", ASCENDING)])
    steps.create_index([("status", ASCENDING), ("due_date", ASCENDING)])

    employees = db["employees"]
    employees.create_index([("tenant_id", ASCENDING), ("employee_id", ASCENDING)], unique=True)

    audit_events = db["audit_events"]
    audit_events.create_index("audit_event_id", unique=True)
    audit_events.create_index([("instance_id", ASCENDING), ("timestamp", DESCENDING)])
    audit_events.create_index("correlation_id")

    logger.info("MongoDB indexes created successfully")


def health_check() -> Dict[str, Any]:
    """Check MongoDB health"""
    try:
        client = get_client()
        client.admin.command("ping")
        return {
            "status": "healthy",
            "database": settings.mongo_db,
            "connection": "ok"
        }
    except PyMongoError as e:
        logger.error(f"MongoDB health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": settings.mongo_db,
            "error": str(e)
        }
