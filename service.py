import logging
from typing import Any, Callable, Mapping, Optional

from assembler import Envelope, failure_envelope, fetch_page, page_envelope, record_envelope
from compiler import QueryCompiler
from errors import EngineError, StorageError
from lifecycle import LifecycleManager
from registry import Registry
from resolver import RelationResolver

logger = logging.getLogger(__name__)


class ResourceService:
    """Uniform operations for one resource; every engine error becomes a failure envelope."""

    def __init__(
        self,
        resource: str,
        registry: Registry,
        compiler: QueryCompiler,
        lifecycle: LifecycleManager,
    ):
        self.schema = registry.get(resource)
        self.registry = registry
        self.compiler = compiler
        self.lifecycle = lifecycle
        self.storage = lifecycle.storage
        self.resolver = lifecycle.resolver
        self.relation_paths = self.resolver.relation_paths(resource)

    def list(self, params: Optional[Mapping[str, str]] = None) -> Envelope:
        return self._guard(
            f"Error while waiting the {self.schema.plural} from database",
            lambda: self._page(params),
        )

    def search(self, term: str, params: Optional[Mapping[str, str]] = None) -> Envelope:
        return self._guard(
            f"Error searching the {self.schema.name} on database",
            lambda: self._page(params, term=term),
        )

    def get_by_id(self, id: Any) -> Envelope:
        return self._guard(
            f"Error while waiting the {self.schema.name} from database",
            lambda: self._record(self.lifecycle.fetch(self.schema.name, id)),
        )

    def create(self, payload: Any, actor: Optional[str] = None) -> Envelope:
        return self._guard(
            f"Error saving the {self.schema.name}",
            lambda: self._record(self.lifecycle.create(self.schema.name, payload, actor)),
        )

    def update(self, id: Any, payload: Any) -> Envelope:
        return self._guard(
            f"Error on update {self.schema.name}",
            lambda: self._record(self.lifecycle.update(self.schema.name, id, payload)),
        )

    def soft_delete(self, id: Any) -> Envelope:
        return self._guard(
            f"Error removing the {self.schema.name} from database",
            lambda: self._record(self.lifecycle.soft_delete(self.schema.name, id)),
        )

    def toggle_status(self, id: Any) -> Envelope:
        return self._guard(
            f"Error on toggle {self.schema.name} status",
            lambda: self._record(self.lifecycle.toggle_status(self.schema.name, id)),
        )

    # Helpers

    def _page(self, params: Optional[Mapping[str, str]], term: Optional[str] = None) -> Envelope:
        pipeline = self.compiler.compile(self.schema.name, params, term=term)
        pipeline = self.resolver.resolve(self.schema.name, pipeline)
        records, total = fetch_page(self.storage, self.schema.collection, pipeline)
        return page_envelope(self.schema, records, total, self.relation_paths)

    def _record(self, record: dict) -> Envelope:
        return record_envelope(self.schema, record, self.relation_paths)

    def _guard(self, message: str, operation: Callable[[], Envelope]) -> Envelope:
        try:
            return operation()
        except StorageError as exc:
            logger.error("%s: %s", message, exc.detail, extra={"resource": self.schema.name})
            return failure_envelope(message, exc)
        except EngineError as exc:
            logger.warning("%s: %s", message, exc.detail, extra={"resource": self.schema.name})
            return failure_envelope(message, exc)


def build_services(registry: Registry, storage, orphans) -> Mapping[str, ResourceService]:
    resolver = RelationResolver(registry)
    compiler = QueryCompiler(registry, resolver)
    lifecycle = LifecycleManager(registry, storage, resolver, orphans)
    return {schema.name: ResourceService(schema.name, registry, compiler, lifecycle) for schema in registry}
