import logging
import re
from typing import Dict, Literal, Mapping, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from errors import InvalidFilterError, describe_errors
from pipeline import Eq, Limit, Match, Ne, Or, Pipeline, Regex, Sample, Skip, Sort
from registry import DELETED, Registry, ResourceSchema
from resolver import RelationResolver

logger = logging.getLogger(__name__)

RESERVED_PARAMS = {"from", "limit", "term", "sample", "randomize", "sort", "order"}


class QueryParams(BaseModel):
    """Typed form of the list/search query string."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    offset: int = Field(0, ge=0, alias="from")
    limit: int = Field(0, ge=0, description="0 means no limit")
    term: str = ""
    sample: Optional[int] = Field(None, gt=0)
    sort: Optional[str] = None
    order: Literal["asc", "desc"] = "desc"
    filters: Dict[str, str] = {}


class QueryCompiler:
    def __init__(self, registry: Registry, resolver: RelationResolver):
        self.registry = registry
        self.resolver = resolver

    def parse(self, schema: ResourceSchema, params: Optional[Mapping[str, str]], term: Optional[str] = None) -> QueryParams:
        raw = {}
        filters = {}
        for key, value in (params or {}).items():
            if value is None or value == "":
                continue
            if key in RESERVED_PARAMS:
                # "randomize" is the older name of "sample"
                raw["sample" if key == "randomize" else key] = value
            elif key in schema.filters:
                filters[key] = value
            else:
                raise InvalidFilterError(f"Unknown filter '{key}' for {schema.plural}")
        if term is not None:
            raw["term"] = term
        raw["filters"] = filters

        try:
            query = QueryParams.model_validate(raw)
        except PydanticValidationError as exc:
            raise InvalidFilterError(describe_errors(exc)) from exc

        if query.sort is not None and query.sort not in schema.sortable_fields:
            raise InvalidFilterError(f"Cannot sort {schema.plural} by '{query.sort}'")
        return query

    def compile(self, resource: str, params: Optional[Mapping[str, str]] = None, term: Optional[str] = None) -> Pipeline:
        schema = self.registry.get(resource)
        query = self.parse(schema, params, term)

        pipeline = Pipeline().then(Match(Ne("status", DELETED)))

        for name, value in query.filters.items():
            path = schema.filters[name]
            chain = self.registry.relation_chain(resource, path)
            pipeline = self.resolver.expand_relation(resource, chain[0].field, pipeline)
            pipeline = self._equality(pipeline, path, value)

        term = query.term.strip()
        if term and schema.search_fields:
            pattern = re.escape(term)
            conditions = tuple(Regex(f, pattern) for f in schema.search_fields)
            pipeline = pipeline.then(Match(conditions[0] if len(conditions) == 1 else Or(conditions)))

        if query.sample:
            pipeline = pipeline.then(Sample(query.sample))
        else:
            pipeline = pipeline.then(Sort(query.sort or schema.default_sort, descending=query.order == "desc"))
            if query.offset:
                pipeline = pipeline.then(Skip(query.offset))
            if query.limit:
                pipeline = pipeline.then(Limit(query.limit))

        logger.debug("compiled %s pipeline: %s", resource, pipeline)
        return pipeline

    def _equality(self, pipeline: Pipeline, path: str, value: str) -> Pipeline:
        if not pipeline.joined(path):
            raise InvalidFilterError(f"Filter on '{path}' placed before its relation is joined")
        if not ObjectId.is_valid(value):
            raise InvalidFilterError(f"'{value}' is not a valid id for filter '{path}'")
        return pipeline.then(Match(Eq(f"{path}._id", ObjectId(value))))
