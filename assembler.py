from dataclasses import dataclass
from typing import Any, Iterable, List, Tuple

from bson import ObjectId

from errors import EngineError
from pipeline import Pipeline
from registry import ResourceSchema
from storage import Storage


@dataclass
class Envelope:
    body: dict
    status_code: int = 200

    @property
    def success(self) -> bool:
        return bool(self.body.get("success"))


def serialize(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value


def normalize(doc: dict, relation_paths: Iterable[str]) -> dict:
    """Absent, empty or dangling relations become None. Paths must list parents first."""
    for path in relation_paths:
        *parents, leaf = path.split(".")
        holder = doc
        for part in parents:
            holder = holder.get(part) if isinstance(holder, dict) else None
        if not isinstance(holder, dict):
            continue
        value = holder.get(leaf)
        if isinstance(value, list) or (isinstance(value, dict) and "_id" not in value):
            holder[leaf] = None
        elif leaf not in holder:
            holder[leaf] = None
    return doc


def fetch_page(storage: Storage, collection: str, pipeline: Pipeline) -> Tuple[List[dict], int]:
    # count first: if either half fails the caller gets no envelope at all
    total = storage.count(collection, pipeline.for_count())
    records = storage.find_page(collection, pipeline)
    return records, total


def page_envelope(schema: ResourceSchema, records: List[dict], total: int, relation_paths: List[str]) -> Envelope:
    return Envelope({
        "success": True,
        "total": total,
        schema.plural: [serialize(normalize(r, relation_paths)) for r in records],
    })


def record_envelope(schema: ResourceSchema, record: dict, relation_paths: List[str]) -> Envelope:
    return Envelope({
        "success": True,
        schema.name: serialize(normalize(record, relation_paths)),
    })


def failure_envelope(message: str, error: EngineError) -> Envelope:
    return Envelope(
        {
            "success": False,
            "message": error.message or message,
            "error": error.to_dict(),
        },
        status_code=error.status_code,
    )
