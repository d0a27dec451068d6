"""
Lifecycle manager: create, partial update, soft delete and status toggle.

Every operation returns the stored document with its relations expanded. If
that read fails after a committed write, the written document is returned with
its relations left as ids. File references dropped by an update or a delete are
reported to the orphan sink after the write has been committed; no file I/O
happens here.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

import auth
from errors import NotFoundError, StorageError, ValidationError, describe_errors
from orphans import OrphanedFiles, OrphanSink, filenames
from pipeline import Eq, Match, Ne, Pipeline
from registry import ACTIVE, ALWAYS_PROTECTED, DELETED, INACTIVE, Registry, ResourceSchema
from resolver import RelationResolver
from storage import Storage

logger = logging.getLogger(__name__)


def now_millis() -> int:
    return int(time.time() * 1000)


def parse_id(value: Any, schema: ResourceSchema) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise NotFoundError(f"{schema.name} '{value}' not found")
    return ObjectId(value)


class LifecycleManager:
    def __init__(
        self,
        registry: Registry,
        storage: Storage,
        resolver: RelationResolver,
        orphans: OrphanSink,
        hasher: Callable[[str], str] = auth.hash_password,
    ):
        self.registry = registry
        self.storage = storage
        self.resolver = resolver
        self.orphans = orphans
        self.hasher = hasher

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def fetch(self, resource: str, id: Any) -> dict:
        schema = self.registry.get(resource)
        oid = parse_id(id, schema)
        pipeline = self.resolver.resolve(resource, Pipeline().then(Match(Eq("_id", oid))))
        rows = self.storage.find_page(schema.collection, pipeline)
        if not rows:
            raise NotFoundError(f"{schema.name} '{oid}' not found")
        return rows[0]

    def _current(self, schema: ResourceSchema, id: Any) -> dict:
        oid = parse_id(id, schema)
        doc = self.storage.find_by_id(schema.collection, oid)
        if doc is None:
            raise NotFoundError(f"{schema.name} '{oid}' not found")
        return doc

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------
    def create(self, resource: str, payload: Any, actor: Optional[str] = None) -> dict:
        schema = self.registry.get(resource)
        data = {k: v for k, v in self._as_mapping(payload).items() if k not in ALWAYS_PROTECTED}

        doc = self._validate(schema, data).model_dump()
        self._resolve_ids(schema, doc)
        for name in schema.hashed_fields:
            if doc.get(name):
                doc[name] = self.hasher(doc[name])
        self._check_unique(schema, doc)

        doc["status"] = ACTIVE
        if schema.created_field:
            doc[schema.created_field] = now_millis()
        if schema.actor_field:
            doc[schema.actor_field] = ObjectId(actor) if actor and ObjectId.is_valid(actor) else None

        new_id = self.storage.insert(schema.collection, doc)
        logger.info("created %s %s", schema.name, new_id, extra={"resource": schema.name})
        return self._reread(schema, {**doc, "_id": new_id})

    def update(self, resource: str, id: Any, payload: Any) -> dict:
        schema = self.registry.get(resource)
        current = self._current(schema, id)
        data = self._as_mapping(payload)

        fields = schema.model.model_fields
        patch = {k: v for k, v in data.items() if k in fields and not schema.is_protected(k)}
        stripped = sorted(k for k in data if schema.is_protected(k))
        if stripped:
            logger.debug("ignoring protected fields on %s update: %s", schema.name, stripped)
        if not patch:
            return self.fetch(resource, current["_id"])

        validated = self._validate(schema, {**current, **patch}).model_dump()
        changes = {k: validated[k] for k in patch}
        self._resolve_ids(schema, changes)
        for name in schema.hashed_fields:
            if changes.get(name):
                changes[name] = self.hasher(changes[name])
        self._check_unique(schema, changes, exclude=current["_id"])

        removed = []
        for name in schema.file_fields:
            if name in changes:
                kept = set(filenames(changes[name]))
                removed.extend(f for f in filenames(current.get(name)) if f not in kept)

        written = self._write(schema, current["_id"], changes)
        logger.info("updated %s %s: %s", schema.name, current["_id"], sorted(changes), extra={"resource": schema.name})

        self._orphaned(schema, current["_id"], removed)
        return self._reread(schema, written)

    def soft_delete(self, resource: str, id: Any) -> dict:
        schema = self.registry.get(resource)
        current = self._current(schema, id)
        if current.get("status") == DELETED:
            return self.fetch(resource, current["_id"])

        written = self._write(schema, current["_id"], {"status": DELETED})
        logger.info("deleted %s %s", schema.name, current["_id"], extra={"resource": schema.name})
        removed = []
        for name in schema.file_fields:
            removed.extend(filenames(current.get(name)))
        self._orphaned(schema, current["_id"], removed)
        return self._reread(schema, written)

    def toggle_status(self, resource: str, id: Any) -> dict:
        schema = self.registry.get(resource)
        current = self._current(schema, id)
        status = current.get("status", ACTIVE)
        if status == DELETED:
            return self.fetch(resource, current["_id"])

        new_status = INACTIVE if status == ACTIVE else ACTIVE
        written = self._write(schema, current["_id"], {"status": new_status})
        logger.info("%s %s status %s -> %s", schema.name, current["_id"], status, new_status,
                    extra={"resource": schema.name})
        return self._reread(schema, written)

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    @staticmethod
    def _as_mapping(payload: Any) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise ValidationError("Payload must be a JSON object")
        return payload

    @staticmethod
    def _validate(schema: ResourceSchema, data: dict) -> BaseModel:
        try:
            return schema.model.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(describe_errors(exc)) from exc

    @staticmethod
    def _resolve_ids(schema: ResourceSchema, doc: dict) -> None:
        """Relation ids to ObjectId; required relations must be present."""
        for rel in schema.relations:
            if rel.field not in doc or rel.field == schema.actor_field:
                continue
            value = doc[rel.field]
            if value is None:
                if rel.required:
                    raise ValidationError(f"{rel.field} is required")
                continue
            if not ObjectId.is_valid(value):
                raise ValidationError(f"{rel.field} '{value}' is not a valid id")
            doc[rel.field] = ObjectId(value)

    def _write(self, schema: ResourceSchema, id: ObjectId, changes: dict) -> dict:
        written = self.storage.update_by_id(schema.collection, id, changes)
        if written is None:
            raise NotFoundError(f"{schema.name} '{id}' not found")
        return written

    def _reread(self, schema: ResourceSchema, written: dict) -> dict:
        """Expanded record after a committed write, or the written document if the read fails."""
        try:
            return self.fetch(schema.name, written["_id"])
        except StorageError as exc:
            logger.warning("%s %s saved but could not be re-read: %s", schema.name, written["_id"], exc.detail,
                           extra={"resource": schema.name})
            return {k: v for k, v in written.items() if k not in schema.hidden_fields}

    def _check_unique(self, schema: ResourceSchema, doc: dict, exclude: Optional[ObjectId] = None) -> None:
        for name in schema.unique_fields:
            value = doc.get(name)
            if value is None:
                continue
            pipeline = Pipeline().then(Match(Eq(name, value)))
            if exclude is not None:
                pipeline = pipeline.then(Match(Ne("_id", exclude)))
            if self.storage.count(schema.collection, pipeline):
                raise ValidationError(f"{name} '{value}' is already registered")

    def _orphaned(self, schema: ResourceSchema, id: ObjectId, removed: List[str]) -> None:
        if removed:
            self.orphans.notify(OrphanedFiles(schema.name, id, tuple(removed)))
