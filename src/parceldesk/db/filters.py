"""
ParcelDesk - Backend-agnostic filter model.

A ListQuery is what callers hand to every list/count operation:

    ListQuery.build(
        {"status": "open", "priority": {"in": ["high", "urgent"]},
         "subject": {"contains": "damaged"}},
        limit=20,
        order_by="created_at",
        order_dir="desc",
    )

Filters are combined with AND. `search` is a case-insensitive substring
match OR'd across the entity's search fields, then AND'd with the filters.

Validation happens before any backend is touched: unknown fields,
operators that don't fit the field, values that don't coerce to the
field's type, and out-of-range pagination all raise ValidationError.
"""

from collections.abc import Mapping
from datetime import datetime
from functools import lru_cache
from typing import Any, Literal

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from parceldesk.db.entities import EntityDefinition
from parceldesk.errors import ValidationError
from parceldesk.models import UtcDatetime

DEFAULT_LIMIT = 50
MAX_LIMIT = 500

FilterOp = Literal["=", "!=", ">", ">=", "<", "<=", "in", "contains", "startswith", "is_null"]

TEXT_OPS = {"contains", "startswith"}
RANGE_OPS = {">", ">=", "<", "<="}


class _QueryModel(BaseModel):
    """Construction errors surface as parceldesk's ValidationError."""

    def __init__(self, **data: Any):
        try:
            super().__init__(**data)
        except PydanticValidationError as e:
            loc = e.errors()[0].get("loc", ())
            raise ValidationError(f"{type(self).__name__}: {_first_error(e)}", field=str(loc[0]) if loc else None) from e


class FilterClause(_QueryModel):
    """A single filter condition."""

    field: str
    op: FilterOp = "="
    value: Any = None


class ListQuery(_QueryModel):
    """Filter, search, ordering, and pagination for one list request."""

    filters: list[FilterClause] = []
    search: str | None = None
    limit: int = Field(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, strict=True)
    offset: int = Field(default=0, ge=0, strict=True)
    order_by: str | None = None
    order_dir: Literal["asc", "desc"] | None = None

    @classmethod
    def build(cls, where: Mapping[str, Any] | None = None, **options: Any) -> "ListQuery":
        """
        Build a query from a field→predicate mapping.

        A plain value means equality; a mapping means {op: value}.
        """
        clauses = []
        for field_name, predicate in (where or {}).items():
            if isinstance(predicate, Mapping):
                for op, value in predicate.items():
                    clauses.append(FilterClause(field=field_name, op=op, value=value))
            else:
                clauses.append(FilterClause(field=field_name, op="=", value=predicate))
        return cls(filters=clauses, **options)

    def where(self, field_name: str, op: FilterOp, value: Any) -> "ListQuery":
        """Return a copy with one more AND'd clause."""
        clause = FilterClause(field=field_name, op=op, value=value)
        return self.model_copy(update={"filters": [*self.filters, clause]})

    def validate_for(self, entity: EntityDefinition) -> "ListQuery":
        """
        Check the query against an entity and coerce every value.

        The returned copy has concrete order_by/order_dir (entity defaults
        applied) and values converted to the field types, so translators
        never see raw caller input.
        """
        clauses = [_validate_clause(entity, clause) for clause in self.filters]

        order_by = self.order_by or entity.default_order[0]
        if order_by not in entity.sortable:
            raise ValidationError(
                f"Cannot sort {entity.name} by '{order_by}'. "
                f"Sortable: {', '.join(sorted(entity.sortable))}",
                field=order_by,
            )
        if self.order_dir:
            order_dir = self.order_dir
        elif self.order_by is None:
            order_dir = entity.default_order[1]
        else:
            order_dir = "asc"

        search = self.search.strip() if self.search else None
        if search and not entity.search_fields:
            raise ValidationError(f"{entity.name} does not support search")

        return self.model_copy(update={
            "filters": clauses,
            "search": search or None,
            "order_by": order_by,
            "order_dir": order_dir,
        })

    def cache_args(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def resolve_query(entity: EntityDefinition, query: "ListQuery | Mapping[str, Any] | None") -> ListQuery:
    """Accept a ListQuery, a where-mapping, or None and validate it for `entity`."""
    if query is None:
        query = ListQuery()
    elif not isinstance(query, ListQuery):
        query = ListQuery.build(query)
    return query.validate_for(entity)


# =============================================================================
# Clause validation
# =============================================================================


@lru_cache(maxsize=None)
def _adapter_for(typ: Any) -> TypeAdapter:
    if typ is datetime:
        return TypeAdapter(UtcDatetime)
    return TypeAdapter(typ)


def _coerce(entity: EntityDefinition, field_name: str, value: Any) -> Any:
    typ = entity.field_types[field_name]
    if typ is not bool and isinstance(value, bool):
        raise ValidationError(f"{field_name} does not accept boolean values", field=field_name)
    try:
        return _adapter_for(typ).validate_python(value)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid value for {field_name}: {_first_error(e)}", field=field_name) from e


def _validate_clause(entity: EntityDefinition, clause: FilterClause) -> FilterClause:
    name = clause.field
    if name not in entity.field_types:
        raise ValidationError(
            f"Unknown filter field '{name}' for {entity.name}. "
            f"Filterable: {', '.join(sorted(entity.field_types))}",
            field=name,
        )

    match clause.op:
        case "contains" | "startswith":
            if name not in entity.text_fields:
                raise ValidationError(f"'{clause.op}' requires a text field, got '{name}'", field=name)
            if not isinstance(clause.value, str) or not clause.value:
                raise ValidationError(f"'{clause.op}' on {name} needs a non-empty string", field=name)
            value = clause.value
        case "in":
            if isinstance(clause.value, (str, bytes)) or not isinstance(clause.value, (list, tuple, set, frozenset)):
                raise ValidationError(f"'in' on {name} needs a list of values", field=name)
            if not clause.value:
                raise ValidationError(f"'in' on {name} needs at least one value", field=name)
            value = [_coerce(entity, name, v) for v in clause.value]
        case "is_null":
            value = True if clause.value is None else clause.value
            if not isinstance(value, bool):
                raise ValidationError(f"'is_null' on {name} takes true or false", field=name)
        case _:
            if clause.value is None:
                raise ValidationError(f"'{clause.op}' on {name} needs a value; use is_null for NULL checks", field=name)
            if clause.op in RANGE_OPS and entity.field_types[name] is bool:
                raise ValidationError(f"Range filter '{clause.op}' is not valid on boolean field {name}", field=name)
            value = _coerce(entity, name, clause.value)

    return FilterClause(field=name, op=clause.op, value=value)


def _first_error(e: PydanticValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"{loc}: {err['msg']}" if loc else err["msg"]
