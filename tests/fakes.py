"""In-memory record store with the same contract as ``MongoRecordStore``, plus a
minimal Motor client for exercising ``MongoRecordStore`` itself."""
import copy
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from halaqat.store import BatchOperation

COMPARATORS = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    ">": lambda a, b: a is not None and a > b,
    ">=": lambda a, b: a is not None and a >= b,
    "<": lambda a, b: a is not None and a < b,
    "<=": lambda a, b: a is not None and a <= b,
}


class FakeCollection:
    def __init__(self, store: "FakeRecordStore", name: str):
        self._store = store
        self.name = name

    @property
    def _docs(self) -> Dict[str, Dict[str, Any]]:
        return self._store.data.setdefault(self.name, {})

    async def list_all(self) -> List[Dict[str, Any]]:
        self._store.check(self.name, "list_all")
        return [copy.deepcopy(doc) for doc in self._docs.values()]

    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        self._store.check(self.name, "get")
        doc = self._docs.get(doc_id)
        return copy.deepcopy(doc) if doc else None

    async def create(self, data: Dict[str, Any]) -> str:
        self._store.check(self.name, "create")
        doc_id = str(uuid.uuid4())
        self._docs[doc_id] = {**copy.deepcopy(data), "id": doc_id}
        return doc_id

    async def set(self, doc_id: str, data: Dict[str, Any]) -> None:
        self._store.check(self.name, "set")
        self._docs[doc_id] = {**copy.deepcopy(data), "id": doc_id}

    async def update(self, doc_id: str, fields: Dict[str, Any]) -> bool:
        self._store.check(self.name, "update")
        if doc_id not in self._docs:
            return False
        self._docs[doc_id].update(copy.deepcopy(fields))
        return True

    async def delete(self, doc_id: str) -> bool:
        self._store.check(self.name, "delete")
        return self._docs.pop(doc_id, None) is not None

    async def find(self, where=(), order_by=None, descending=False, limit=None) -> List[Dict[str, Any]]:
        self._store.check(self.name, "find")
        docs = [
            doc for doc in self._docs.values()
            if all(COMPARATORS[op](doc.get(field), value) for field, op, value in where)
        ]
        if order_by:
            docs.sort(key=lambda doc: doc.get(order_by), reverse=descending)
        if limit:
            docs = docs[:limit]
        return [copy.deepcopy(doc) for doc in docs]


class FakeWriteBatch:
    def __init__(self, store: "FakeRecordStore"):
        self._store = store
        self.operations: List[BatchOperation] = []

    def create(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = str(uuid.uuid4())
        self.operations.append(BatchOperation("set", collection, doc_id, dict(data)))
        return doc_id

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self.operations.append(BatchOperation("set", collection, doc_id, dict(data)))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        self.operations.append(BatchOperation("update", collection, doc_id, dict(fields)))

    async def commit(self) -> None:
        self._store.check("*", "commit")
        for op in self.operations:
            self._store.check(op.collection, "commit")
        for op in self.operations:
            docs = self._store.data.setdefault(op.collection, {})
            if op.kind == "set":
                docs[op.doc_id] = {**copy.deepcopy(op.data), "id": op.doc_id}
            elif op.doc_id in docs:
                docs[op.doc_id].update(copy.deepcopy(op.data))
        self._store.commits.append(list(self.operations))


class FakeRecordStore:
    def __init__(self):
        self.data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.commits: List[List[BatchOperation]] = []
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self.closed = False

    def fail(self, collection: str, op: str, exc: Exception) -> None:
        """Make ``op`` on ``collection`` raise ``exc``; ``"*"`` matches any collection or op."""
        self.failures[(collection, op)] = exc

    def check(self, collection: str, op: str) -> None:
        for key in ((collection, op), (collection, "*"), ("*", op)):
            if key in self.failures:
                raise self.failures[key]

    def seed(self, collection: str, doc_id: str, **fields) -> Dict[str, Any]:
        doc = {**fields, "id": doc_id}
        self.data.setdefault(collection, {})[doc_id] = doc
        return doc

    def docs(self, collection: str) -> List[Dict[str, Any]]:
        return list(self.data.get(collection, {}).values())

    def collection(self, name: str) -> FakeCollection:
        return FakeCollection(self, name)

    def batch(self) -> FakeWriteBatch:
        return FakeWriteBatch(self)

    async def ping(self) -> None:
        self.check("*", "ping")

    async def supports_transactions(self) -> bool:
        return True

    async def ensure_indexes(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


def at(year, month, day, hour=12, minute=0):
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


class MotorSession:
    """Buffers writes made with ``session=`` and applies them when the transaction exits cleanly."""

    def __init__(self):
        self.pending = []
        self.transactions = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    @asynccontextmanager
    async def start_transaction(self):
        self.pending = []
        self.transactions += 1
        yield
        for apply in self.pending:
            apply()
        self.pending = []


class MotorCollection:
    def __init__(self, name: str):
        self.name = name
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.failures: Dict[str, Exception] = {}

    def _check(self, op: str) -> None:
        if op in self.failures:
            raise self.failures[op]

    def _write(self, session: Optional[MotorSession], apply) -> None:
        if session is None:
            apply()
        else:
            session.pending.append(apply)

    async def find_one(self, query, projection=None):
        doc = self.docs.get(query["id"])
        return copy.deepcopy(doc) if doc else None

    async def replace_one(self, query, replacement, upsert=False, session=None):
        self._check("replace_one")
        self._write(session, lambda: self.docs.__setitem__(query["id"], copy.deepcopy(replacement)))

    async def update_one(self, query, update, session=None):
        self._check("update_one")

        def apply():
            if query["id"] in self.docs:
                self.docs[query["id"]].update(update["$set"])

        self._write(session, apply)


class MotorDatabase:
    def __init__(self, name: str):
        self.name = name
        self.collections: Dict[str, MotorCollection] = {}

    def __getitem__(self, name: str) -> MotorCollection:
        return self.collections.setdefault(name, MotorCollection(name))


class MotorClient:
    def __init__(self, hello: Optional[Dict[str, Any]] = None):
        self.hello = hello if hello is not None else {"isWritablePrimary": True, "setName": "rs0"}
        self.databases: Dict[str, MotorDatabase] = {}
        self.sessions: List[MotorSession] = []
        self.admin = self

    def __getitem__(self, name: str) -> MotorDatabase:
        return self.databases.setdefault(name, MotorDatabase(name))

    async def command(self, name: str):
        return self.hello if name == "hello" else {"ok": 1.0}

    async def start_session(self) -> MotorSession:
        session = MotorSession()
        self.sessions.append(session)
        return session

    def close(self) -> None:
        pass
