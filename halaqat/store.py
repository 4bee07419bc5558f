"""Record store adapter over MongoDB (Motor).

Documents carry their own string ``id``; Mongo's ``_id`` is projected away on
every read. Multi-document writes go through :class:`MongoWriteBatch`, which
commits inside a single transaction so either every write applies or none do.
"""
import logging
import uuid
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

from .errors import PermissionDeniedError, PreconditionError, StoreError, UnavailableError

logger = logging.getLogger(__name__)

STUDENTS = "students"
TEACHERS = "teachers"
HALAQAT = "halaqat"
PARENTS = "parents"
DAILY_ATTENDANCE = "daily_attendance"
MEMORIZATION_LOGS = "memorization_logs"
ACTIVITY_LOGS = "activity_logs"
AUTH_IDENTITIES = "auth_identities"
AUTH_SESSIONS = "auth_sessions"

# (field, operator, value); operator is one of the keys below.
Condition = Tuple[str, str, Any]

QUERY_OPERATORS = {
    "==": "$eq",
    "!=": "$ne",
    ">": "$gt",
    ">=": "$gte",
    "<": "$lt",
    "<=": "$lte",
}

UNAUTHORIZED_CODES = {13}
MISSING_INDEX_CODES = {27, 291}

MEMORIZATION_INDEX_REMEDIATION = "db.memorization_logs.createIndex({ student_id: 1, date: -1 })"


class BatchOperation(NamedTuple):
    kind: str  # "set" | "update"
    collection: str
    doc_id: str
    data: Dict[str, Any]


def new_id() -> str:
    return str(uuid.uuid4())


def build_filter(where: Iterable[Condition]) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    for field, op, value in where:
        if op not in QUERY_OPERATORS:
            raise ValueError(f"Unsupported query operator: {op}")
        if op == "==":
            query[field] = value
            continue
        existing = query.get(field)
        if not isinstance(existing, dict):
            existing = {} if existing is None else {"$eq": existing}
        existing[QUERY_OPERATORS[op]] = value
        query[field] = existing
    return query


def classify_driver_error(exc: Exception, help_url: Optional[str] = None) -> StoreError:
    if isinstance(exc, StoreError):
        return exc
    if isinstance(exc, OperationFailure):
        message = str(exc.details.get("errmsg") if exc.details else exc)
        if exc.code in UNAUTHORIZED_CODES or "not authorized" in message.lower():
            return PermissionDeniedError(message)
        if exc.code in MISSING_INDEX_CODES:
            return PreconditionError(message, remediation=MEMORIZATION_INDEX_REMEDIATION, help_url=help_url)
        return UnavailableError(message)
    if isinstance(exc, ConnectionFailure):
        return UnavailableError(f"Database unreachable: {exc}")
    return UnavailableError(str(exc))


class MongoCollection:
    def __init__(self, collection, help_url: Optional[str] = None):
        self._collection = collection
        self._help_url = help_url

    @property
    def name(self) -> str:
        return self._collection.name

    async def list_all(self) -> List[Dict[str, Any]]:
        try:
            return await self._collection.find({}, {"_id": 0}).to_list(None)
        except PyMongoError as exc:
            raise classify_driver_error(exc, self._help_url) from exc

    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._collection.find_one({"id": doc_id}, {"_id": 0})
        except PyMongoError as exc:
            raise classify_driver_error(exc, self._help_url) from exc

    async def create(self, data: Dict[str, Any]) -> str:
        doc_id = new_id()
        try:
            await self._collection.insert_one({**data, "id": doc_id})
        except PyMongoError as exc:
            raise classify_driver_error(exc, self._help_url) from exc
        return doc_id

    async def set(self, doc_id: str, data: Dict[str, Any]) -> None:
        try:
            await self._collection.replace_one({"id": doc_id}, {**data, "id": doc_id}, upsert=True)
        except PyMongoError as exc:
            raise classify_driver_error(exc, self._help_url) from exc

    async def update(self, doc_id: str, fields: Dict[str, Any]) -> bool:
        try:
            result = await self._collection.update_one({"id": doc_id}, {"$set": fields})
        except PyMongoError as exc:
            raise classify_driver_error(exc, self._help_url) from exc
        return result.matched_count > 0

    async def delete(self, doc_id: str) -> bool:
        try:
            result = await self._collection.delete_one({"id": doc_id})
        except PyMongoError as exc:
            raise classify_driver_error(exc, self._help_url) from exc
        return result.deleted_count > 0

    async def find(
        self,
        where: Iterable[Condition] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        cursor = self._collection.find(build_filter(where), {"_id": 0})
        if order_by:
            cursor = cursor.sort(order_by, DESCENDING if descending else ASCENDING)
        if limit:
            cursor = cursor.limit(limit)
        try:
            return await cursor.to_list(None)
        except PyMongoError as exc:
            raise classify_driver_error(exc, self._help_url) from exc


class MongoWriteBatch:
    def __init__(self, store: "MongoRecordStore"):
        self._store = store
        self.operations: List[BatchOperation] = []

    def create(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = new_id()
        self.operations.append(BatchOperation("set", collection, doc_id, dict(data)))
        return doc_id

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self.operations.append(BatchOperation("set", collection, doc_id, dict(data)))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        self.operations.append(BatchOperation("update", collection, doc_id, dict(fields)))

    async def commit(self) -> None:
        if not self.operations:
            return
        db = self._store.db
        try:
            async with await self._store.client.start_session() as session:
                async with session.start_transaction():
                    for op in self.operations:
                        collection = db[op.collection]
                        if op.kind == "set":
                            await collection.replace_one(
                                {"id": op.doc_id}, {**op.data, "id": op.doc_id}, upsert=True, session=session
                            )
                        else:
                            await collection.update_one({"id": op.doc_id}, {"$set": op.data}, session=session)
        except PyMongoError as exc:
            raise classify_driver_error(exc, self._store.help_url) from exc


class MongoRecordStore:
    def __init__(self, client: AsyncIOMotorClient, db_name: str, help_url: Optional[str] = None):
        self.client = client
        self.db = client[db_name]
        self.help_url = help_url

    @classmethod
    def from_url(cls, mongo_url: str, db_name: str, help_url: Optional[str] = None) -> "MongoRecordStore":
        client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=5000, tz_aware=True)
        return cls(client, db_name, help_url=help_url)

    def collection(self, name: str) -> MongoCollection:
        return MongoCollection(self.db[name], help_url=self.help_url)

    def batch(self) -> MongoWriteBatch:
        return MongoWriteBatch(self)

    async def ping(self) -> None:
        try:
            await self.client.admin.command("ping")
        except PyMongoError as exc:
            raise classify_driver_error(exc, self.help_url) from exc

    async def supports_transactions(self) -> bool:
        """Transactions need a replica set or a sharded cluster; a standalone mongod has neither."""
        try:
            hello = await self.client.admin.command("hello")
        except PyMongoError as exc:
            raise classify_driver_error(exc, self.help_url) from exc
        return bool(hello.get("setName")) or hello.get("msg") == "isdbgrid"

    async def ensure_indexes(self) -> None:
        try:
            await self.db[STUDENTS].create_index([("id", ASCENDING)], unique=True)
            await self.db[STUDENTS].create_index([("halaqa_id", ASCENDING)])
            await self.db[TEACHERS].create_index([("id", ASCENDING)], unique=True)
            await self.db[HALAQAT].create_index([("id", ASCENDING)], unique=True)
            await self.db[PARENTS].create_index([("id", ASCENDING)], unique=True)
            await self.db[DAILY_ATTENDANCE].create_index([("id", ASCENDING)], unique=True)
            await self.db[DAILY_ATTENDANCE].create_index([("date", ASCENDING)])
            await self.db[MEMORIZATION_LOGS].create_index([("student_id", ASCENDING), ("date", DESCENDING)])
            await self.db[ACTIVITY_LOGS].create_index([("timestamp", DESCENDING)])
            await self.db[AUTH_IDENTITIES].create_index([("email", ASCENDING)], unique=True)
            await self.db[AUTH_SESSIONS].create_index([("id", ASCENDING)], unique=True)
            await self.db[AUTH_SESSIONS].create_index([("expires_at", ASCENDING)], expireAfterSeconds=0)
        except PyMongoError as exc:
            raise classify_driver_error(exc, self.help_url) from exc
        logger.info("MongoDB indexes ensured on %s", self.db.name)

    def close(self) -> None:
        self.client.close()
