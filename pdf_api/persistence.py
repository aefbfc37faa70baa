"""
Persistence Module

MongoDB repositories for API keys, conversion records, usage logs and user
credit counters.

Connection Management:
- One class-level MongoClient shared by every repository (PyMongo pools
  connections internally)
- reset_connection() drops it, for tests and reconfiguration

Error Handling:
- Reads and writes on the request's critical path propagate errors
- Accounting writes that must not fail a delivered PDF are wrapped by the
  caller (see pipeline) and logged
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database

from .config import ApiSettings, get_settings
from .errors import ApiError, ErrorCode

logger = logging.getLogger(__name__)

API_KEYS_COLLECTION = "api_keys"
CONVERSIONS_COLLECTION = "conversions"
LOGS_COLLECTION = "logs"
USERS_COLLECTION = "users"

MAX_PAGE_SIZE = 100


class MongoConnection:
    """Class-level singleton client and database handle."""

    _client: Optional[MongoClient] = None
    _db: Optional[Database] = None

    @classmethod
    def get_database(cls, settings: Optional[ApiSettings] = None) -> Database:
        if cls._db is None:
            settings = settings or get_settings()
            cls._client = MongoClient(settings.mongodb_uri, serverSelectionTimeoutMS=5000)
            cls._db = cls._client[settings.mongo_db_name]
            logger.info(f"MongoDB connected: database={settings.mongo_db_name}")
        return cls._db

    @classmethod
    def reset(cls) -> None:
        if cls._client is not None:
            cls._client.close()
        cls._client = None
        cls._db = None


def get_database(settings: Optional[ApiSettings] = None) -> Database:
    return MongoConnection.get_database(settings)


def reset_connection() -> None:
    """Close and forget the shared client."""
    MongoConnection.reset()


def ensure_indexes(db: Database) -> None:
    """Create the indexes queries rely on. Idempotent."""
    db[API_KEYS_COLLECTION].create_index([("keyId", ASCENDING)], unique=True)
    db[API_KEYS_COLLECTION].create_index([("companyId", ASCENDING), ("isDeleted", ASCENDING)])
    db[API_KEYS_COLLECTION].create_index([("userId", ASCENDING), ("name", ASCENDING)])
    db[LOGS_COLLECTION].create_index([("requestId", ASCENDING)], unique=True)
    db[LOGS_COLLECTION].create_index([("companyId", ASCENDING), ("timestamp", DESCENDING)])
    db[LOGS_COLLECTION].create_index([("userId", ASCENDING), ("timestamp", DESCENDING)])
    db[CONVERSIONS_COLLECTION].create_index([("companyId", ASCENDING), ("createdAt", DESCENDING)])
    db[CONVERSIONS_COLLECTION].create_index([("requestId", ASCENDING)])
    logger.info("MongoDB indexes ensured")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Any, resource: str = "Resource") -> ObjectId:
    """Parse an id from a URL; malformed ids are reported as not found."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ApiError(ErrorCode.NOT_FOUND, f"{resource} not found")


def serialize_document(doc: Any) -> Any:
    """Make a Mongo document JSON-safe (ObjectId -> str, datetime -> ISO)."""
    if isinstance(doc, dict):
        out = {}
        for key, value in doc.items():
            out["id" if key == "_id" else key] = serialize_document(value)
        return out
    if isinstance(doc, list):
        return [serialize_document(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        if doc.tzinfo is None:
            doc = doc.replace(tzinfo=timezone.utc)
        return doc.isoformat()
    return doc


def tenant_filter(company_id: Optional[str], user_id: Optional[str]) -> Dict[str, Any]:
    """Scope by company when the caller belongs to one, otherwise by user."""
    if company_id:
        return {"companyId": company_id}
    if user_id:
        return {"userId": user_id}
    raise ApiError(ErrorCode.UNAUTHORIZED, "No tenant associated with this API key")


def paginate(page: int, limit: int) -> Tuple[int, int]:
    page = max(1, int(page))
    limit = max(1, min(MAX_PAGE_SIZE, int(limit)))
    return (page - 1) * limit, limit


def pagination_info(page: int, limit: int, total: int) -> Dict[str, int]:
    page = max(1, int(page))
    limit = max(1, min(MAX_PAGE_SIZE, int(limit)))
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit,
    }


class _Repository:
    collection_name = ""

    def __init__(self, collection: Optional[Collection] = None):
        self._collection = collection

    @property
    def collection(self) -> Collection:
        if self._collection is None:
            self._collection = get_database()[self.collection_name]
        return self._collection


class ApiKeyRepository(_Repository):
    """API key documents (secret material is only ever hashed)."""

    collection_name = API_KEYS_COLLECTION

    def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        result = self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    def find_by_key_id(self, key_id: str) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"keyId": key_id, "isDeleted": {"$ne": True}})

    def find_by_id(self, id_: str) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"_id": to_object_id(id_, "API key"), "isDeleted": {"$ne": True}})

    def list(
        self,
        company_id: Optional[str] = None,
        user_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {"isDeleted": {"$ne": True}}
        if company_id:
            query["companyId"] = company_id
        if user_id:
            query["userId"] = user_id
        skip, limit = paginate(page, limit)
        cursor = (
            self.collection.find(query, {"keyHash": 0, "salt": 0})
            .sort("createdAt", DESCENDING)
            .skip(skip)
            .limit(limit)
        )
        return list(cursor), self.collection.count_documents(query)

    def name_exists(self, name: str, user_id: str, exclude_id: Optional[str] = None) -> bool:
        query: Dict[str, Any] = {
            "userId": user_id,
            "name": {"$regex": f"^{re.escape(name.strip())}$", "$options": "i"},
            "isDeleted": {"$ne": True},
        }
        if exclude_id:
            query["_id"] = {"$ne": to_object_id(exclude_id, "API key")}
        return self.collection.count_documents(query, limit=1) > 0

    def update_fields(self, id_: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        fields = {**fields, "updatedAt": utcnow()}
        return self.collection.find_one_and_update(
            {"_id": to_object_id(id_, "API key"), "isDeleted": {"$ne": True}},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )

    def save_usage(self, id_: ObjectId, usage: Dict[str, Any]) -> None:
        self.collection.update_one({"_id": id_}, {"$set": {"usage": usage}})

    def record_failed_attempt(self, id_: ObjectId) -> None:
        self.collection.update_one(
            {"_id": id_},
            {
                "$inc": {"securityMetadata.failedAttempts": 1},
                "$set": {"securityMetadata.lastFailedAttempt": utcnow()},
            },
        )


class ConversionRepository(_Repository):
    """Records for PDFs kept in the vault."""

    collection_name = CONVERSIONS_COLLECTION

    def create(self, doc: Dict[str, Any]) -> ObjectId:
        now = utcnow()
        record = {
            "status": "processing",
            "downloadCount": 0,
            "creditsUsed": 0,
            "createdAt": now,
            "updatedAt": now,
            **doc,
        }
        return self.collection.insert_one(record).inserted_id

    def mark_completed(self, id_: ObjectId, fields: Dict[str, Any]) -> None:
        self.collection.update_one(
            {"_id": id_},
            {"$set": {**fields, "status": "completed", "completedAt": utcnow(), "updatedAt": utcnow()}},
        )

    def mark_failed(self, id_: ObjectId, error_message: str) -> None:
        self.collection.update_one(
            {"_id": id_},
            {"$set": {"status": "failed", "errorMessage": error_message, "updatedAt": utcnow()}},
        )

    def find_for_tenant(self, id_: str, company_id: Optional[str], user_id: Optional[str]) -> Optional[Dict[str, Any]]:
        query = {"_id": to_object_id(id_, "Conversion"), **tenant_filter(company_id, user_id)}
        return self.collection.find_one(query)

    def list_for_tenant(
        self,
        company_id: Optional[str],
        user_id: Optional[str],
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        query = tenant_filter(company_id, user_id)
        if status:
            query["status"] = status
        skip, limit = paginate(page, limit)
        cursor = self.collection.find(query).sort("createdAt", DESCENDING).skip(skip).limit(limit)
        return list(cursor), self.collection.count_documents(query)

    def increment_download(self, id_: ObjectId) -> None:
        self.collection.update_one(
            {"_id": id_},
            {"$inc": {"downloadCount": 1}, "$set": {"lastDownloadedAt": utcnow()}},
        )

    def delete(self, id_: ObjectId) -> bool:
        return self.collection.delete_one({"_id": id_}).deleted_count > 0


class UsageLogRepository(_Repository):
    """One document per API request (success or failure)."""

    collection_name = LOGS_COLLECTION

    def create(self, doc: Dict[str, Any]) -> ObjectId:
        record = {
            "status": "processing",
            "creditUsed": 0,
            "outputSizeBytes": 0,
            "generationTimeMs": 0,
            "timestamp": utcnow(),
            **doc,
        }
        return self.collection.insert_one(record).inserted_id

    def mark_success(self, id_: ObjectId, fields: Dict[str, Any]) -> None:
        self.collection.update_one({"_id": id_}, {"$set": {**fields, "status": "success"}})

    def mark_failed(self, id_: ObjectId, error_message: str, generation_time_ms: int) -> None:
        self.collection.update_one(
            {"_id": id_},
            {"$set": {"status": "failed", "errorMessage": error_message, "generationTimeMs": generation_time_ms}},
        )

    def _query(
        self,
        company_id: Optional[str],
        user_id: Optional[str],
        status: Optional[str] = None,
        search: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        query = tenant_filter(company_id, user_id)
        if status:
            query["status"] = status
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{"requestId": pattern}, {"apiEndpoint": pattern}]
        if start or end:
            window: Dict[str, Any] = {}
            if start:
                window["$gte"] = start
            if end:
                window["$lte"] = end
            query["timestamp"] = window
        return query

    def list(
        self,
        company_id: Optional[str],
        user_id: Optional[str],
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        search: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        query = self._query(company_id, user_id, status, search, start, end)
        skip, limit = paginate(page, limit)
        cursor = self.collection.find(query).sort("timestamp", DESCENDING).skip(skip).limit(limit)
        return list(cursor), self.collection.count_documents(query)

    def find_for_tenant(self, id_: str, company_id: Optional[str], user_id: Optional[str]) -> Optional[Dict[str, Any]]:
        query = {"_id": to_object_id(id_, "Log"), **tenant_filter(company_id, user_id)}
        return self.collection.find_one(query)

    def delete_for_tenant(self, id_: str, company_id: Optional[str], user_id: Optional[str]) -> bool:
        query = {"_id": to_object_id(id_, "Log"), **tenant_filter(company_id, user_id)}
        return self.collection.delete_one(query).deleted_count > 0

    def stats(
        self,
        company_id: Optional[str],
        user_id: Optional[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Totals over the tenant's logs."""
        pipeline = [
            {"$match": self._query(company_id, user_id, start=start, end=end)},
            {
                "$group": {
                    "_id": None,
                    "totalLogs": {"$sum": 1},
                    "successfulConversions": {"$sum": {"$cond": [{"$eq": ["$status", "success"]}, 1, 0]}},
                    "failedConversions": {"$sum": {"$cond": [{"$eq": ["$status", "failed"]}, 1, 0]}},
                    "totalCreditsUsed": {"$sum": "$creditUsed"},
                    "totalInputSize": {"$sum": "$inputSizeBytes"},
                    "totalOutputSize": {"$sum": "$outputSizeBytes"},
                    "avgGenerationTime": {"$avg": "$generationTimeMs"},
                }
            },
        ]
        results = list(self.collection.aggregate(pipeline))
        stats = {
            "totalLogs": 0,
            "successfulConversions": 0,
            "failedConversions": 0,
            "totalCreditsUsed": 0,
            "totalInputSize": 0,
            "totalOutputSize": 0,
            "avgGenerationTime": 0,
        }
        if results:
            row = results[0]
            row.pop("_id", None)
            stats.update({k: v for k, v in row.items() if v is not None})
        stats["avgGenerationTime"] = round(float(stats["avgGenerationTime"]), 2)
        total = stats["totalLogs"]
        stats["successRate"] = round(stats["successfulConversions"] / total * 100, 2) if total else 0.0
        return stats


class UserRepository(_Repository):
    """Only the credit counter; user management lives elsewhere."""

    collection_name = USERS_COLLECTION

    def add_credits_used(self, user_id: str, credits: int) -> bool:
        try:
            user_key: Any = ObjectId(user_id)
        except (InvalidId, TypeError):
            user_key = user_id
        result = self.collection.update_one(
            {"_id": user_key},
            {"$inc": {"creditsUsed": int(credits)}, "$set": {"updatedAt": utcnow()}},
        )
        return result.matched_count > 0
