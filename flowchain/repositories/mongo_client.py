"""Process-wide MongoDB handle and the engine's index layout.

Repositories accept an explicit ``Database`` (tests pass a mongomock one);
without it they fall back to the lazily connected application database.
"""
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, PyMongoError

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

_client: Optional[MongoClient] = None

IndexSpec = Tuple[Any, Dict[str, Any]]

# collection -> [(keys, options)]
INDEXES: Dict[str, List[IndexSpec]] = {
    # Published definitions, insert-only
    "flow_chain_versions": [
        ([("flow_chain_id", ASCENDING), ("version_number", ASCENDING)], {"unique": True}),
        ("published_at", {}),
    ],
    # active_key is set only while an instance is non-terminal
    "instances": [
        ("instance_id", {"unique": True}),
        ("active_key", {"unique": True, "sparse": True}),
        ([("flow_chain_id", ASCENDING), ("status", ASCENDING)], {}),
        ([("status", ASCENDING), ("updated_at", DESCENDING)], {}),
        ("asset.asset_id", {}),
    ],
    "decisions": [
        ("decision_id", {"unique": True}),
        ([("instance_id", ASCENDING), ("step_id", ASCENDING)], {}),
    ],
    "instance_history": [
        ("history_id", {"unique": True}),
        ([("instance_id", ASCENDING), ("timestamp", ASCENDING)], {}),
        ("correlation_id", {}),
    ],
    "asset_bindings": [
        ([("asset_id", ASCENDING), ("flow_chain_id", ASCENDING)], {"unique": True}),
        ("campaign_id", {}),
    ],
    "campaign_flows": [
        ([("campaign_id", ASCENDING), ("flow_chain_id", ASCENDING)], {"unique": True}),
    ],
}


def get_client() -> MongoClient:
    global _client
    if _client is None:
        client = MongoClient(
            settings.mongo_uri,
            tz_aware=True,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
        )
        try:
            client.admin.command("ping")
        except ConnectionFailure as e:
            logger.error(f"Cannot reach MongoDB at {settings.mongo_uri}: {e}")
            client.close()
            raise
        logger.info(f"Connected to MongoDB, database {settings.mongo_db}")
        _client = client
    return _client


def get_database() -> Database:
    return get_client()[settings.mongo_db]


def get_collection(name: str, database: Optional[Database] = None) -> Collection:
    """Collection ``name`` from ``database``, or from the application database"""
    return (database if database is not None else get_database())[name]


def close_connection() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("MongoDB connection closed")


def create_indexes(database: Optional[Database] = None) -> None:
    """Ensure every index in ``INDEXES`` exists (safe to call repeatedly)"""
    db = database if database is not None else get_database()
    for collection, specs in INDEXES.items():
        for keys, options in specs:
            db[collection].create_index(keys, **options)
    logger.info(f"Ensured indexes on {len(INDEXES)} collections")


def health_check() -> Dict[str, Any]:
    status: Dict[str, Any] = {"database": settings.mongo_db}
    try:
        get_client().admin.command("ping")
    except PyMongoError as e:
        logger.error(f"MongoDB health check failed: {e}")
        status.update(status="unhealthy", error=str(e))
    else:
        status["status"] = "healthy"
    return status
