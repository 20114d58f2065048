"""
Document store boundary models.

RawDocument is the untyped bag delivered by the external store. Query and
QueryFilter describe what the adapters must be able to express: equality,
range and bounded in-set predicates, AND-ed together.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .enums import FilterOp

MAX_FILTERS = 3
MAX_IN_VALUES = 30


class RawDocument(BaseModel):
    """
    A document exactly as delivered by the store.

    No invariants are guaranteed on `data`: any field may be absent or of an
    unexpected type. `fetched_at` is stamped by the adapter at delivery time and
    is the default for non-identity timestamps during normalization.

    Attributes:
        id: Document ID (last path segment)
        path: Full slash-separated path, e.g. "parties/p1/rsvps/r9"
        data: Field map
        fetched_at: When the adapter received this document
    """

    model_config = ConfigDict(frozen=True)

    id: str
    path: str
    data: dict[str, Any] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def collection_path(self) -> str:
        """Path of the collection holding this document."""
        return self.path.rsplit("/", 1)[0] if "/" in self.path else ""

    @property
    def collection_id(self) -> str:
        """Last segment of the collection path ("rsvps" for parties/p1/rsvps/r9)."""
        return self.collection_path.rsplit("/", 1)[-1]

    @property
    def parent_path(self) -> Optional[str]:
        """Path of the owning document for sub-collection documents."""
        segments = self.path.split("/")
        if len(segments) < 4:
            return None
        return "/".join(segments[:-2])

    @property
    def parent_id(self) -> Optional[str]:
        parent = self.parent_path
        return parent.rsplit("/", 1)[-1] if parent else None


class QueryFilter(BaseModel):
    """A single field predicate."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(min_length=1)
    op: FilterOp
    value: Any

    @field_validator("value")
    @classmethod
    def validate_in_values(cls, v: Any, info: ValidationInfo) -> Any:
        if info.data.get("op") != FilterOp.IN:
            return v
        if not isinstance(v, (list, tuple)):
            raise ValueError("'in' filter requires a list of values")
        if not v:
            raise ValueError("'in' filter requires at least one value")
        if len(v) > MAX_IN_VALUES:
            raise ValueError(f"'in' filter accepts at most {MAX_IN_VALUES} values")
        return tuple(v)

    @property
    def is_range(self) -> bool:
        return self.op in (FilterOp.LT, FilterOp.LTE, FilterOp.GT, FilterOp.GTE)

    def matches(self, data: dict[str, Any]) -> bool:
        """Evaluate this predicate against a document's field map."""
        if self.field not in data:
            return False
        actual = data[self.field]
        try:
            if self.op == FilterOp.EQ:
                return actual == self.value
            if self.op == FilterOp.IN:
                return actual in self.value
            if actual is None:
                return False
            if self.op == FilterOp.LT:
                return actual < self.value
            if self.op == FilterOp.LTE:
                return actual <= self.value
            if self.op == FilterOp.GT:
                return actual > self.value
            return actual >= self.value
        except TypeError:
            # Mixed types never match, same as the store's type ordering
            return False


class Query(BaseModel):
    """
    A collection (or collection-group) query with up to three AND-ed filters.

    Attributes:
        collection: Collection path ("parties", "parties/p1/rsvps") or, for a
            group query, a collection ID ("rsvps")
        filters: AND-ed predicates
        group: Query every collection with this ID regardless of parent
    """

    model_config = ConfigDict(frozen=True)

    collection: str = Field(min_length=1)
    filters: tuple[QueryFilter, ...] = ()
    group: bool = False

    @field_validator("collection")
    @classmethod
    def validate_collection(cls, v: str) -> str:
        v = v.strip("/")
        if not v or len(v.split("/")) % 2 == 0:
            raise ValueError(f"Not a collection path: {v!r}")
        return v

    @model_validator(mode="after")
    def validate_filters(self) -> "Query":
        if len(self.filters) > MAX_FILTERS:
            raise ValueError(f"At most {MAX_FILTERS} filters can be combined")
        if self.group and "/" in self.collection:
            raise ValueError("Collection-group queries take a collection ID, not a path")
        return self

    @property
    def collection_id(self) -> str:
        return self.collection.rsplit("/", 1)[-1]

    @property
    def filter_fields(self) -> tuple[str, ...]:
        return tuple(sorted({f.field for f in self.filters}))

    @property
    def needs_composite_index(self) -> bool:
        """Compound or collection-group filtered queries need a declared index."""
        return len(self.filter_fields) > 1 or (self.group and bool(self.filters))

    def matches(self, doc: RawDocument) -> bool:
        if self.group:
            if doc.collection_id != self.collection:
                return False
        elif doc.collection_path != self.collection:
            return False
        return all(f.matches(doc.data) for f in self.filters)

    def describe(self) -> str:
        """Short human-readable form used in log lines."""
        scope = "group:" if self.group else ""
        preds = " AND ".join(f"{f.field} {f.op.value} {f.value!r}" for f in self.filters)
        return f"{scope}{self.collection}" + (f" WHERE {preds}" if preds else "")


def eq(field: str, value: Any) -> QueryFilter:
    return QueryFilter(field=field, op=FilterOp.EQ, value=value)


def gte(field: str, value: Any) -> QueryFilter:
    return QueryFilter(field=field, op=FilterOp.GTE, value=value)


def lte(field: str, value: Any) -> QueryFilter:
    return QueryFilter(field=field, op=FilterOp.LTE, value=value)


def in_(field: str, values: list[Any]) -> QueryFilter:
    return QueryFilter(field=field, op=FilterOp.IN, value=values)
