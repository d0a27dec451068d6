"""
Pipeline value type.

A Pipeline is an immutable, ordered sequence of tagged stages. The compiler and
the relation resolver build it; a storage collaborator interprets it (MongoDB
aggregation or the in-memory interpreter).
"""
from dataclasses import dataclass, field
from typing import Any, Iterator, Tuple, Union


# Match conditions

@dataclass(frozen=True)
class Eq:
    field: str
    value: Any


@dataclass(frozen=True)
class Ne:
    field: str
    value: Any


@dataclass(frozen=True)
class Regex:
    """Case-insensitive regular expression match; `pattern` is already escaped."""
    field: str
    pattern: str


@dataclass(frozen=True)
class Or:
    conditions: Tuple["Condition", ...]


Condition = Union[Eq, Ne, Regex, Or]


# Stages

@dataclass(frozen=True)
class Match:
    condition: Condition


@dataclass(frozen=True)
class Join:
    collection: str
    local_field: str
    as_field: str
    foreign_field: str = "_id"


@dataclass(frozen=True)
class Unwind:
    path: str


@dataclass(frozen=True)
class Unset:
    fields: Tuple[str, ...]


@dataclass(frozen=True)
class Sort:
    field: str
    descending: bool = True


@dataclass(frozen=True)
class Sample:
    size: int


@dataclass(frozen=True)
class Skip:
    count: int


@dataclass(frozen=True)
class Limit:
    count: int


@dataclass(frozen=True)
class Count:
    field: str = "total"


Stage = Union[Match, Join, Unwind, Unset, Sort, Sample, Skip, Limit, Count]

# Stages that shape the page but never the set of matching records.
PAGE_ONLY_STAGES = (Sort, Sample, Skip, Limit, Unset)


@dataclass(frozen=True)
class Pipeline:
    stages: Tuple[Stage, ...] = field(default_factory=tuple)

    def then(self, *stages: Stage) -> "Pipeline":
        return Pipeline(self.stages + tuple(stages))

    def joined(self, path: str) -> bool:
        return any(isinstance(s, Join) and s.as_field == path for s in self.stages)

    def for_count(self) -> "Pipeline":
        """Same filter, without sort, sample or pagination."""
        return Pipeline(tuple(s for s in self.stages if not isinstance(s, PAGE_ONLY_STAGES)))

    def __iter__(self) -> Iterator[Stage]:
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)
