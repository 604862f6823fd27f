"""
ParcelDesk - Query translation.

One validated ListQuery, three native forms:

    to_sql()          SQLAlchemy Core statement, every value a bound parameter
    apply_document()  chained PostgREST builder calls (.eq(), .ilike(), ...)
    evaluate()        in-memory predicate evaluation over fixture rows

All three must agree on results: AND'd filters, case-insensitive
substring/prefix matching, NULLs excluded by comparisons, Postgres NULL
placement when sorting (last ascending, first descending), and an `id`
tie-break so paging is stable.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, Delete, Select, Update, and_, delete, func, or_, select, update

from parceldesk.db.entities import EntityDefinition
from parceldesk.db.filters import FilterClause, ListQuery
from parceldesk.db.schema import TABLES
from parceldesk.errors import ValidationError

LIKE_ESCAPE = "\\"


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user text matches literally."""
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


class QueryTranslator:
    """Stateless translator from ListQuery to each backend's native form."""

    # =========================================================================
    # Relational
    # =========================================================================

    @staticmethod
    def to_sql(entity: EntityDefinition, query: ListQuery) -> Select:
        table = TABLES[entity.name]
        stmt = select(table).where(*QueryTranslator.sql_conditions(entity, query))
        column = table.c[query.order_by]
        primary = column.desc().nulls_first() if query.order_dir == "desc" else column.asc().nulls_last()
        return stmt.order_by(primary, table.c.id.asc()).limit(query.limit).offset(query.offset)

    @staticmethod
    def to_sql_count(entity: EntityDefinition, query: ListQuery) -> Select:
        table = TABLES[entity.name]
        return select(func.count()).select_from(table).where(*QueryTranslator.sql_conditions(entity, query))

    @staticmethod
    def to_sql_update(entity: EntityDefinition, key: str, values: dict[str, Any]) -> Update:
        """
        Structured patch statement.

        Column names come from the entity's patch model (plus the stamps the
        adapter derives), never from caller-supplied SQL.
        """
        table = TABLES[entity.name]
        unknown = set(values) - set(table.c.keys())
        if unknown:
            raise ValidationError(f"Not a column of {entity.name}: {', '.join(sorted(unknown))}")
        return update(table).where(table.c[entity.id_field] == key).values(**values)

    @staticmethod
    def to_sql_delete(entity: EntityDefinition, query: ListQuery | None = None, key: str | None = None) -> Delete:
        table = TABLES[entity.name]
        stmt = delete(table)
        if key is not None:
            stmt = stmt.where(table.c[entity.id_field] == key)
        if query is not None:
            stmt = stmt.where(*QueryTranslator.sql_conditions(entity, query))
        return stmt

    @staticmethod
    def sql_conditions(entity: EntityDefinition, query: ListQuery) -> list[ColumnElement]:
        table = TABLES[entity.name]
        conditions = [_sql_condition(table.c[f.field], f) for f in query.filters]
        if query.search:
            pattern = f"%{escape_like(query.search)}%"
            conditions.append(or_(*(
                table.c[name].ilike(pattern, escape=LIKE_ESCAPE) for name in entity.search_fields
            )))
        return [and_(*conditions)] if conditions else []

    # =========================================================================
    # Document store (PostgREST builder)
    # =========================================================================

    @staticmethod
    def apply_document(builder: Any, entity: EntityDefinition, query: ListQuery, paginate: bool = True) -> Any:
        """Chain filters, search, ordering and range onto a Supabase query builder."""
        for f in query.filters:
            builder = apply_filter(builder, f)

        if query.search:
            term = _postgrest_quote(f"%{escape_like(query.search)}%")
            builder = builder.or_(",".join(f"{name}.ilike.{term}" for name in entity.search_fields))

        if not paginate:
            return builder

        desc = query.order_dir == "desc"
        builder = builder.order(query.order_by, desc=desc, nullsfirst=desc)
        builder = builder.order(entity.id_field)
        return builder.range(query.offset, query.offset + query.limit - 1)

    # =========================================================================
    # Fixture (in-memory)
    # =========================================================================

    @staticmethod
    def evaluate(rows: list[dict[str, Any]], entity: EntityDefinition, query: ListQuery) -> list[dict[str, Any]]:
        matched = QueryTranslator.matching(rows, entity, query)
        # Sort by the tie-break first; Python's sort is stable, reverse=True included
        matched.sort(key=lambda r: r[entity.id_field])
        matched.sort(
            key=lambda r: (r.get(query.order_by) is None, _sort_value(r.get(query.order_by))),
            reverse=query.order_dir == "desc",
        )
        return matched[query.offset:query.offset + query.limit]

    @staticmethod
    def matching(rows: list[dict[str, Any]], entity: EntityDefinition, query: ListQuery) -> list[dict[str, Any]]:
        return [
            row for row in rows
            if all(_matches(row.get(f.field), f) for f in query.filters) and _matches_search(row, entity, query)
        ]


# =============================================================================
# Relational helpers
# =============================================================================


def _sql_condition(column: Any, f: FilterClause) -> ColumnElement:
    match f.op:
        case "=":
            return column == f.value
        case "!=":
            return column != f.value
        case ">":
            return column > f.value
        case ">=":
            return column >= f.value
        case "<":
            return column < f.value
        case "<=":
            return column <= f.value
        case "in":
            return column.in_(f.value)
        case "contains":
            return column.ilike(f"%{escape_like(f.value)}%", escape=LIKE_ESCAPE)
        case "startswith":
            return column.ilike(f"{escape_like(f.value)}%", escape=LIKE_ESCAPE)
        case "is_null":
            return column.is_(None) if f.value else column.is_not(None)
    raise ValidationError(f"Unsupported operator '{f.op}'", field=f.field)


# =============================================================================
# Document helpers
# =============================================================================


def _postgrest_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _postgrest_quote(value: str) -> str:
    # Double quotes keep commas and parentheses literal inside or=(...)
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def apply_filter(query: Any, f: FilterClause) -> Any:
    """Apply a single filter clause to a Supabase query."""
    value = _postgrest_value(f.value)
    match f.op:
        case "=":
            return query.eq(f.field, value)
        case "!=":
            return query.neq(f.field, value)
        case ">":
            return query.gt(f.field, value)
        case ">=":
            return query.gte(f.field, value)
        case "<":
            return query.lt(f.field, value)
        case "<=":
            return query.lte(f.field, value)
        case "in":
            return query.in_(f.field, [_postgrest_value(v) for v in f.value])
        case "contains":
            return query.ilike(f.field, f"%{escape_like(f.value)}%")
        case "startswith":
            return query.ilike(f.field, f"{escape_like(f.value)}%")
        case "is_null":
            if f.value:
                return query.is_(f.field, "null")
            return query.not_.is_(f.field, "null")
    raise ValidationError(f"Unsupported operator '{f.op}'", field=f.field)


# =============================================================================
# In-memory helpers
# =============================================================================


def _sort_value(value: Any) -> Any:
    # Rows are homogeneous per column; None is handled by the outer tuple
    return 0 if value is None else value


def _matches(actual: Any, f: FilterClause) -> bool:
    if f.op == "is_null":
        return (actual is None) == f.value
    if actual is None:
        return False
    match f.op:
        case "=":
            return actual == f.value
        case "!=":
            return actual != f.value
        case ">":
            return actual > f.value
        case ">=":
            return actual >= f.value
        case "<":
            return actual < f.value
        case "<=":
            return actual <= f.value
        case "in":
            return actual in f.value
        case "contains":
            return f.value.lower() in str(actual).lower()
        case "startswith":
            return str(actual).lower().startswith(f.value.lower())
    raise ValidationError(f"Unsupported operator '{f.op}'", field=f.field)


def _matches_search(row: dict[str, Any], entity: EntityDefinition, query: ListQuery) -> bool:
    if not query.search:
        return True
    needle = query.search.lower()
    return any(
        row.get(name) is not None and needle in str(row[name]).lower()
        for name in entity.search_fields
    )
