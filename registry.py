"""
Entity schema registry.

Each resource is described by a declarative ResourceSchema. The registry is
built once at startup, validated, and never mutated afterwards.
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Iterator, Mapping, Optional, Tuple, Type

from pydantic import BaseModel

import schemas
from errors import ConfigurationError

ACTIVE = "A"
INACTIVE = "I"
DELETED = "D"

# Never writable through the generic update path.
ALWAYS_PROTECTED = frozenset({"_id", "status"})


@dataclass(frozen=True)
class Relation:
    field: str
    target: str
    depth: int = 1
    required: bool = False


@dataclass(frozen=True)
class ResourceSchema:
    name: str
    plural: str
    collection: str
    model: Type[BaseModel]
    relations: Tuple[Relation, ...] = ()
    default_sort: str = "_id"
    search_fields: Tuple[str, ...] = ()
    # filter name -> dotted path of relation fields, e.g. "subcategory.category"
    filters: Mapping[str, str] = field(default_factory=dict)
    protected_fields: FrozenSet[str] = frozenset()
    hidden_fields: Tuple[str, ...] = ()
    hashed_fields: Tuple[str, ...] = ()
    unique_fields: Tuple[str, ...] = ()
    file_fields: Tuple[str, ...] = ()
    actor_field: Optional[str] = None
    created_field: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "filters", MappingProxyType(dict(self.filters)))

    @property
    def required_fields(self) -> Dict[str, object]:
        """Fields create refuses without: model-required fields and required relations."""
        fields = self.model.model_fields
        required = {name: info.annotation for name, info in fields.items() if info.is_required()}
        for rel in self.relations:
            if rel.required:
                required[rel.field] = fields[rel.field].annotation if rel.field in fields else None
        return required

    @property
    def sortable_fields(self) -> FrozenSet[str]:
        extra = {self.default_sort, "_id", "status"}
        if self.created_field:
            extra.add(self.created_field)
        return frozenset(self.model.model_fields) | extra

    def relation(self, name: str) -> Optional[Relation]:
        for rel in self.relations:
            if rel.field == name:
                return rel
        return None

    def is_protected(self, name: str) -> bool:
        return name in ALWAYS_PROTECTED or name in self.protected_fields


class Registry:
    def __init__(self, resources: Iterable[ResourceSchema]):
        by_name = {}
        for schema in resources:
            if schema.name in by_name:
                raise ConfigurationError(f"Resource '{schema.name}' registered twice")
            by_name[schema.name] = schema
        self._resources = MappingProxyType(by_name)
        self._validate()

    def _validate(self) -> None:
        for schema in self._resources.values():
            for rel in schema.relations:
                if rel.target not in self._resources:
                    raise ConfigurationError(
                        f"{schema.name}.{rel.field} relates to undeclared resource '{rel.target}'"
                    )
                if rel.depth not in (0, 1, 2):
                    raise ConfigurationError(
                        f"{schema.name}.{rel.field} has depth {rel.depth}, expected 0, 1 or 2"
                    )
            for name, path in schema.filters.items():
                self.relation_chain(schema.name, path, context=f"filter '{name}'")

    def relation_chain(self, resource: str, path: str, context: str = "path") -> Tuple[Relation, ...]:
        """Relations walked by a dotted relation path, validated against declared depths."""
        schema = self.get(resource)
        parts = path.split(".")
        chain = []
        current = schema
        for part in parts:
            rel = current.relation(part)
            if rel is None:
                raise ConfigurationError(f"{schema.name} {context}: '{part}' is not a relation of {current.name}")
            chain.append(rel)
            current = self.get(rel.target)
        if not chain or chain[0].depth < len(chain):
            raise ConfigurationError(f"{schema.name} {context}: '{path}' is deeper than its relation is expanded")
        return tuple(chain)

    def get(self, name: str) -> ResourceSchema:
        try:
            return self._resources[name]
        except KeyError:
            raise ConfigurationError(f"Unknown resource '{name}'") from None

    def __contains__(self, name: object) -> bool:
        return name in self._resources

    def __iter__(self) -> Iterator[ResourceSchema]:
        return iter(self._resources.values())

    def names(self) -> Tuple[str, ...]:
        return tuple(self._resources)


def default_resources() -> Tuple[ResourceSchema, ...]:
    return (
        ResourceSchema(
            name="role",
            plural="roles",
            collection="roles",
            model=schemas.Role,
            search_fields=("name",),
        ),
        ResourceSchema(
            name="user",
            plural="users",
            collection="users",
            model=schemas.User,
            relations=(Relation("role", "role"),),
            search_fields=("name", "email"),
            filters={"role": "role"},
            protected_fields=frozenset({"email", "password", "login_type", "last_access"}),
            hidden_fields=("password",),
            hashed_fields=("password",),
            unique_fields=("email",),
        ),
        ResourceSchema(
            name="category",
            plural="categories",
            collection="categories",
            model=schemas.Category,
            search_fields=("name",),
        ),
        ResourceSchema(
            name="subcategory",
            plural="subcategories",
            collection="subcategories",
            model=schemas.Subcategory,
            relations=(Relation("category", "category", required=True),),
            search_fields=("name",),
            filters={"category": "category"},
        ),
        ResourceSchema(
            name="post",
            plural="posts",
            collection="posts",
            model=schemas.Post,
            relations=(Relation("author", "user"),),
            default_sort="uploadDatetime",
            search_fields=("title", "brief"),
            filters={"author": "author"},
            protected_fields=frozenset({"uploadDatetime"}),
            file_fields=("coverImage",),
            created_field="uploadDatetime",
        ),
        ResourceSchema(
            name="product",
            plural="products",
            collection="products",
            model=schemas.Product,
            relations=(
                Relation("subcategory", "subcategory", depth=2, required=True),
                Relation("addedBy", "user"),
            ),
            default_sort="uploadDate",
            search_fields=("name", "code"),
            filters={
                "subcategory": "subcategory",
                "category": "subcategory.category",
                "addedBy": "addedBy",
            },
            protected_fields=frozenset({"addedBy", "uploadDate"}),
            file_fields=("images",),
            actor_field="addedBy",
            created_field="uploadDate",
        ),
    )


def build_registry() -> Registry:
    return Registry(default_resources())
