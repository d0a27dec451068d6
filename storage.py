"""
Storage collaborators.

Both implementations interpret the same Pipeline stages: MongoStorage by
translating them into a MongoDB aggregation, MemoryStorage by evaluating them
in process (local runs and tests).
"""
import copy
import logging
import random
import re
import threading
from typing import Any, Dict, List, Optional, Protocol

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import StorageError, ValidationError
from pipeline import (
    Count,
    Eq,
    Join,
    Limit,
    Match,
    Ne,
    Or,
    Pipeline,
    Regex,
    Sample,
    Skip,
    Sort,
    Unset,
    Unwind,
)

logger = logging.getLogger(__name__)


class Storage(Protocol):
    def find_page(self, collection: str, pipeline: Pipeline) -> List[dict]: ...

    def count(self, collection: str, pipeline: Pipeline) -> int: ...

    def insert(self, collection: str, doc: dict) -> ObjectId: ...

    def update_by_id(self, collection: str, id: ObjectId, patch: dict) -> Optional[dict]: ...

    def find_by_id(self, collection: str, id: ObjectId) -> Optional[dict]: ...

    def ensure_unique_index(self, collection: str, field: str) -> None: ...


# -------------------------------------------------------------------
# MongoDB
# -------------------------------------------------------------------

def condition_to_mongo(condition) -> dict:
    if isinstance(condition, Eq):
        return {condition.field: condition.value}
    if isinstance(condition, Ne):
        return {condition.field: {"$ne": condition.value}}
    if isinstance(condition, Regex):
        return {condition.field: {"$regex": condition.pattern, "$options": "i"}}
    if isinstance(condition, Or):
        return {"$or": [condition_to_mongo(c) for c in condition.conditions]}
    raise TypeError(f"Unsupported condition {condition!r}")


def to_mongo(pipeline: Pipeline) -> List[dict]:
    stages = []
    for stage in pipeline:
        if isinstance(stage, Match):
            stages.append({"$match": condition_to_mongo(stage.condition)})
        elif isinstance(stage, Join):
            stages.append({"$lookup": {
                "from": stage.collection,
                "localField": stage.local_field,
                "foreignField": stage.foreign_field,
                "as": stage.as_field,
            }})
        elif isinstance(stage, Unwind):
            stages.append({"$unwind": {"path": f"${stage.path}", "preserveNullAndEmptyArrays": True}})
        elif isinstance(stage, Unset):
            stages.append({"$project": {f: 0 for f in stage.fields}})
        elif isinstance(stage, Sort):
            direction = -1 if stage.descending else 1
            keys = {stage.field: direction}
            if stage.field != "_id":
                keys["_id"] = direction
            stages.append({"$sort": keys})
        elif isinstance(stage, Sample):
            stages.append({"$sample": {"size": stage.size}})
        elif isinstance(stage, Skip):
            stages.append({"$skip": stage.count})
        elif isinstance(stage, Limit):
            stages.append({"$limit": stage.count})
        elif isinstance(stage, Count):
            stages.append({"$count": stage.field})
        else:
            raise TypeError(f"Unsupported stage {stage!r}")
    return stages


def duplicate_error(collection: str, exc: DuplicateKeyError) -> ValidationError:
    key = (exc.details or {}).get("keyValue") or {}
    if key:
        name, value = next(iter(key.items()))
        return ValidationError(f"{name} '{value}' is already registered")
    return ValidationError(f"Duplicate key in {collection}")


class MongoStorage:
    def __init__(self, db):
        self.db = db

    def find_page(self, collection: str, pipeline: Pipeline) -> List[dict]:
        try:
            return list(self.db[collection].aggregate(to_mongo(pipeline)))
        except PyMongoError as exc:
            raise StorageError(f"Aggregation on {collection} failed: {exc}") from exc

    def count(self, collection: str, pipeline: Pipeline) -> int:
        try:
            rows = list(self.db[collection].aggregate(to_mongo(pipeline.then(Count("total")))))
        except PyMongoError as exc:
            raise StorageError(f"Count on {collection} failed: {exc}") from exc
        return int(rows[0]["total"]) if rows else 0

    def insert(self, collection: str, doc: dict) -> ObjectId:
        try:
            return self.db[collection].insert_one(doc).inserted_id
        except DuplicateKeyError as exc:
            raise duplicate_error(collection, exc) from exc
        except PyMongoError as exc:
            raise StorageError(f"Insert into {collection} failed: {exc}") from exc

    def update_by_id(self, collection: str, id: ObjectId, patch: dict) -> Optional[dict]:
        try:
            return self.db[collection].find_one_and_update(
                {"_id": id}, {"$set": patch}, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError as exc:
            raise duplicate_error(collection, exc) from exc
        except PyMongoError as exc:
            raise StorageError(f"Update on {collection} failed: {exc}") from exc

    def find_by_id(self, collection: str, id: ObjectId) -> Optional[dict]:
        try:
            return self.db[collection].find_one({"_id": id})
        except PyMongoError as exc:
            raise StorageError(f"Lookup on {collection} failed: {exc}") from exc

    def ping(self) -> List[str]:
        try:
            return self.db.list_collection_names()
        except PyMongoError as exc:
            raise StorageError(f"Database unreachable: {exc}") from exc

    def ensure_unique_index(self, collection: str, field: str) -> None:
        try:
            self.db[collection].create_index(field, unique=True)
        except PyMongoError as exc:
            raise StorageError(f"Unique index on {collection}.{field} failed: {exc}") from exc


# -------------------------------------------------------------------
# In-memory
# -------------------------------------------------------------------

_MISSING = object()


def get_path(doc: Any, path: str) -> Any:
    for part in path.split("."):
        if not isinstance(doc, dict) or part not in doc:
            return _MISSING
        doc = doc[part]
    return doc


def set_path(doc: dict, path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        if not isinstance(doc.get(part), dict):
            doc[part] = {}
        doc = doc[part]
    doc[parts[-1]] = value


def unset_path(doc: dict, path: str) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.get(part)
        if not isinstance(doc, dict):
            return
    doc.pop(parts[-1], None)


def _matches(doc: dict, condition) -> bool:
    if isinstance(condition, Eq):
        value = get_path(doc, condition.field)
        if isinstance(value, list):
            return condition.value in value
        return value is not _MISSING and value == condition.value
    if isinstance(condition, Ne):
        return not _matches(doc, Eq(condition.field, condition.value))
    if isinstance(condition, Regex):
        value = get_path(doc, condition.field)
        return isinstance(value, str) and re.search(condition.pattern, value, re.IGNORECASE) is not None
    if isinstance(condition, Or):
        return any(_matches(doc, c) for c in condition.conditions)
    raise TypeError(f"Unsupported condition {condition!r}")


def _sort_key(value: Any):
    # missing and null sort before everything else, as in MongoDB
    if value is _MISSING or value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (3, value)
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    if isinstance(value, ObjectId):
        return (4, value)
    return (5, str(value))


class MemoryStorage:
    def __init__(self):
        self._collections: Dict[str, Dict[ObjectId, dict]] = {}
        self._unique: Dict[str, set] = {}
        self._lock = threading.Lock()

    def _docs(self, collection: str) -> List[dict]:
        with self._lock:
            return copy.deepcopy(list(self._collections.get(collection, {}).values()))

    def run(self, collection: str, pipeline: Pipeline) -> List[dict]:
        docs = self._docs(collection)
        for stage in pipeline:
            docs = self._apply(stage, docs)
        return docs

    def _apply(self, stage, docs: List[dict]) -> List[dict]:
        if isinstance(stage, Match):
            return [d for d in docs if _matches(d, stage.condition)]
        if isinstance(stage, Join):
            foreign = self._docs(stage.collection)
            out = []
            for doc in docs:
                local = get_path(doc, stage.local_field)
                keys = local if isinstance(local, list) else [local]
                found = [copy.deepcopy(f) for f in foreign
                         if f.get(stage.foreign_field) in keys and local is not _MISSING]
                set_path(doc, stage.as_field, found)
                out.append(doc)
            return out
        if isinstance(stage, Unwind):
            out = []
            for doc in docs:
                value = get_path(doc, stage.path)
                if isinstance(value, list):
                    if not value:
                        unset_path(doc, stage.path)
                        out.append(doc)
                    for item in value:
                        clone = copy.deepcopy(doc)
                        set_path(clone, stage.path, item)
                        out.append(clone)
                else:
                    out.append(doc)
            return out
        if isinstance(stage, Unset):
            for doc in docs:
                for f in stage.fields:
                    unset_path(doc, f)
            return docs
        if isinstance(stage, Sort):
            docs = sorted(docs, key=lambda d: _sort_key(d.get("_id")), reverse=stage.descending)
            return sorted(docs, key=lambda d: _sort_key(get_path(d, stage.field)), reverse=stage.descending)
        if isinstance(stage, Sample):
            return random.sample(docs, min(stage.size, len(docs)))
        if isinstance(stage, Skip):
            return docs[stage.count:]
        if isinstance(stage, Limit):
            return docs[:stage.count]
        if isinstance(stage, Count):
            return [{stage.field: len(docs)}] if docs else []
        raise TypeError(f"Unsupported stage {stage!r}")

    def find_page(self, collection: str, pipeline: Pipeline) -> List[dict]:
        return self.run(collection, pipeline)

    def count(self, collection: str, pipeline: Pipeline) -> int:
        rows = self.run(collection, pipeline.then(Count("total")))
        return rows[0]["total"] if rows else 0

    def insert(self, collection: str, doc: dict) -> ObjectId:
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", ObjectId())
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            if doc["_id"] in docs:
                raise StorageError(f"Duplicate _id {doc['_id']} in {collection}")
            self._check_unique(collection, doc)
            docs[doc["_id"]] = doc
        return doc["_id"]

    def update_by_id(self, collection: str, id: ObjectId, patch: dict) -> Optional[dict]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(id)
            if doc is None:
                return None
            updated = copy.deepcopy(doc)
            for key, value in patch.items():
                set_path(updated, key, copy.deepcopy(value))
            self._check_unique(collection, updated)
            self._collections[collection][id] = updated
            return copy.deepcopy(updated)

    def find_by_id(self, collection: str, id: ObjectId) -> Optional[dict]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(id)
            return copy.deepcopy(doc) if doc is not None else None

    def ping(self) -> List[str]:
        with self._lock:
            return sorted(self._collections)

    def ensure_unique_index(self, collection: str, field: str) -> None:
        with self._lock:
            self._unique.setdefault(collection, set()).add(field)

    def _check_unique(self, collection: str, doc: dict) -> None:
        # caller holds the lock
        for field in self._unique.get(collection, ()):
            value = get_path(doc, field)
            if value is _MISSING or value is None:
                continue
            for other in self._collections.get(collection, {}).values():
                if other["_id"] != doc["_id"] and get_path(other, field) == value:
                    raise ValidationError(f"{field} '{value}' is already registered")
