"""
Database access

Thin layer over pymongo. Documents go in and come out as plain dicts with a
string "id" in place of "_id"; Decimal money values are stored as Decimal128
and read back as Decimal. Conditional writes (compare-and-set on the fields in
the filter) are the only concurrency primitive the services rely on, plus a
short-lived named lease for read-then-write sections.
"""
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from bson import Decimal128, ObjectId
from pymongo import MongoClient, ReturnDocument
from pymongo.database import Database
from pydantic import BaseModel

from config import get_settings
from errors import ConcurrencyError

logger = logging.getLogger(__name__)

LOCK_COLLECTION = "ledgerlock"

Document = Dict[str, Any]


def to_key(doc_id: Any) -> Any:
    """Map an external id to the stored _id (ObjectId when it parses as one)."""
    if isinstance(doc_id, ObjectId):
        return doc_id
    if isinstance(doc_id, str) and ObjectId.is_valid(doc_id):
        return ObjectId(doc_id)
    return doc_id


def encode(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return encode(value.model_dump())
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [encode(v) for v in value]
    return value


def decode(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode(v) for v in value]
    return value


def _out(doc: Optional[Document]) -> Optional[Document]:
    if doc is None:
        return None
    doc = decode(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


class Store:
    """Generic document store: find / get / create / update / delete by collection."""

    def __init__(self, database: Database):
        self.db = database

    # --------------------- reads ---------------------

    def get(self, collection: str, doc_id: Any) -> Optional[Document]:
        return _out(self.db[collection].find_one({"_id": to_key(doc_id)}))

    def find(
        self,
        collection: str,
        filter_dict: Optional[Document] = None,
        sort: Optional[List[Tuple[str, int]]] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        cursor = self.db[collection].find(encode(filter_dict or {}))
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return [_out(doc) for doc in cursor]

    def count(self, collection: str, filter_dict: Optional[Document] = None) -> int:
        return self.db[collection].count_documents(encode(filter_dict or {}))

    # --------------------- writes ---------------------

    def create(self, collection: str, data: Union[BaseModel, Document]) -> str:
        doc = encode(data)
        doc.pop("id", None)
        if isinstance(data, dict) and data.get("id") is not None:
            doc["_id"] = to_key(data["id"])
        elif isinstance(data, BaseModel) and getattr(data, "id", None) is not None:
            doc["_id"] = to_key(data.id)
        now = datetime.now(timezone.utc)
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        result = self.db[collection].insert_one(doc)
        return str(result.inserted_id)

    def replace(self, collection: str, doc_id: Any, data: Union[BaseModel, Document]) -> None:
        """Upsert a whole document under a known id (catalog items, settings)."""
        doc = encode(data)
        doc.pop("id", None)
        doc["updated_at"] = datetime.now(timezone.utc)
        self.db[collection].replace_one({"_id": to_key(doc_id)}, doc, upsert=True)

    def update(
        self,
        collection: str,
        doc_id: Any,
        changes: Document,
        expected: Optional[Document] = None,
    ) -> bool:
        """Set fields on one document; with `expected`, only if those fields still match."""
        query = {"_id": to_key(doc_id)}
        query.update(encode(expected or {}))
        result = self.db[collection].update_one(query, {"$set": self._stamped(changes)})
        return result.matched_count > 0

    def push(self, collection: str, doc_id: Any, field: str, value: Any) -> bool:
        """Append to an array field in place."""
        result = self.db[collection].update_one(
            {"_id": to_key(doc_id)},
            {"$push": {field: encode(value)}, "$set": self._stamped({})},
        )
        return result.matched_count > 0

    def pull(self, collection: str, doc_id: Any, field: str, match: Document) -> bool:
        """Remove array entries matching `match`; False when nothing was removed."""
        match = encode(match)
        result = self.db[collection].update_one(
            {"_id": to_key(doc_id), field: {"$elemMatch": match}},
            {"$pull": {field: match}, "$set": self._stamped({})},
        )
        return result.matched_count > 0

    def update_many(self, collection: str, filter_dict: Document, changes: Document) -> int:
        result = self.db[collection].update_many(encode(filter_dict), {"$set": self._stamped(changes)})
        return result.modified_count

    def find_one_and_update(
        self, collection: str, filter_dict: Document, changes: Document
    ) -> Optional[Document]:
        """Conditional update returning the document after the write, or None when nothing matched."""
        doc = self.db[collection].find_one_and_update(
            encode(filter_dict),
            {"$set": self._stamped(changes)},
            return_document=ReturnDocument.AFTER,
        )
        return _out(doc)

    def delete(self, collection: str, doc_id: Any, expected: Optional[Document] = None) -> bool:
        query = {"_id": to_key(doc_id)}
        query.update(encode(expected or {}))
        return self.db[collection].delete_one(query).deleted_count > 0

    @staticmethod
    def _stamped(changes: Document) -> Document:
        doc = encode(changes)
        doc["updated_at"] = datetime.now(timezone.utc)
        return doc

    # --------------------- leases ---------------------

    @contextmanager
    def lease(self, name: str, wait_seconds: float = 5.0, ttl_seconds: float = 30.0) -> Iterator[str]:
        """
        Hold a named lease for the duration of the block.

        Acquisition is a single conditional update: the lease is taken only if
        nobody holds it or the previous holder's lease has expired. Expiry is
        kept as epoch seconds so the comparison happens server-side.
        """
        locks = self.db[LOCK_COLLECTION]
        token = uuid.uuid4().hex
        locks.update_one(
            {"_id": name},
            {"$setOnInsert": {"holder": None, "expires_at": 0.0}},
            upsert=True,
        )
        deadline = time.monotonic() + wait_seconds
        while True:
            now = time.time()
            taken = locks.find_one_and_update(
                {"_id": name, "$or": [{"holder": None}, {"expires_at": {"$lt": now}}]},
                {"$set": {"holder": token, "expires_at": now + ttl_seconds}},
            )
            if taken is not None:
                break
            if time.monotonic() >= deadline:
                logger.warning("Timed out waiting for lease %s", name)
                raise ConcurrencyError()
            time.sleep(0.05)
        try:
            yield token
        finally:
            locks.update_one({"_id": name, "holder": token}, {"$set": {"holder": None, "expires_at": 0.0}})

    # --------------------- health ---------------------

    def list_collection_names(self) -> List[str]:
        return self.db.list_collection_names()


db: Optional[Database] = None
_settings = get_settings()
if _settings.database_url and _settings.database_name:
    client = MongoClient(_settings.database_url)
    db = client[_settings.database_name]


def get_store() -> Store:
    if db is None:
        raise RuntimeError("Database not configured. Set DATABASE_URL and DATABASE_NAME.")
    return Store(db)
