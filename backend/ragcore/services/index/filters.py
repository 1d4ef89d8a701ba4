"""
Metadata filter matching for the in-memory indexes.

Filters are an opaque mapping passed unchanged from the caller to each
index. In memory they are evaluated against chunk metadata:

    {"document_id": "doc-1"}                  equality
    {"content_type": ["text", "audio"]}       membership (any-of for list values)
    {"published_year": {"gte": 2020}}         range (gt / gte / lt / lte)

Every condition must hold. A missing metadata key never matches.
"""

from typing import Any, Mapping, Optional


RANGE_OPERATORS = ("gt", "gte", "lt", "lte")


def is_range(expected: Any) -> bool:
    return isinstance(expected, Mapping) and bool(expected) and all(
        op in RANGE_OPERATORS for op in expected
    )


def _matches_range(value: Any, bounds: Mapping[str, Any]) -> bool:
    if value is None:
        return False
    try:
        if "gt" in bounds and not value > bounds["gt"]:
            return False
        if "gte" in bounds and not value >= bounds["gte"]:
            return False
        if "lt" in bounds and not value < bounds["lt"]:
            return False
        if "lte" in bounds and not value <= bounds["lte"]:
            return False
    except TypeError:
        # Incomparable types (e.g. str vs int) simply don't match
        return False
    return True


def matches_filters(metadata: Mapping[str, Any], filters: Optional[Mapping[str, Any]]) -> bool:
    """
    Check whether chunk metadata satisfies all filter conditions.

    Args:
        metadata: Chunk metadata
        filters: Mapping of metadata keys to expected values, lists or ranges

    Returns:
        True if every condition matches (or there are no filters)
    """
    if not filters:
        return True
    for key, expected in filters.items():
        if key not in metadata:
            return False
        value = metadata[key]
        if is_range(expected):
            if not _matches_range(value, expected):
                return False
        elif isinstance(expected, (list, tuple, set, frozenset)):
            if isinstance(value, (list, tuple, set, frozenset)):
                if not any(item in value for item in expected):
                    return False
            elif value not in expected:
                return False
        elif isinstance(value, (list, tuple, set, frozenset)):
            if expected not in value:
                return False
        elif value != expected:
            return False
    return True


# ========================================
# SQL translation (PostgreSQL backends)
# ========================================

def _compare(expr, op: str, value: Any):
    if op == "gt":
        return expr > value
    if op == "gte":
        return expr >= value
    if op == "lt":
        return expr < value
    return expr <= value


def sql_filter_clauses(filters: Optional[Mapping[str, Any]]) -> list:
    """
    Translate filters into SQLAlchemy clauses over ``chunks``.

    ``document_id``, ``content_unit_id`` and ``content_type`` map to columns;
    every other key is looked up in the chunk's JSONB metadata. Numeric
    range bounds only match JSON numbers, string bounds compare as text.
    """
    # Imported here so the in-memory indexes do not pull in the ORM
    from sqlalchemy import Float, and_, case, cast, func, or_

    from ragcore.models.catalog import ChunkRecord

    if not filters:
        return []

    columns = {
        "document_id": ChunkRecord.document_id,
        "content_unit_id": ChunkRecord.content_unit_id,
        "content_type": ChunkRecord.content_type,
    }
    clauses = []
    for key, expected in filters.items():
        column = columns.get(key)
        if column is not None:
            if is_range(expected):
                clauses.append(and_(*[_compare(column, op, v) for op, v in expected.items()]))
            elif isinstance(expected, (list, tuple, set, frozenset)):
                clauses.append(column.in_([getattr(v, "value", v) for v in expected]))
            else:
                clauses.append(column == getattr(expected, "value", expected))
            continue

        metadata = ChunkRecord.chunk_metadata
        field = metadata[key]
        if is_range(expected):
            bounds = [metadata.has_key(key)]
            for op, v in expected.items():
                if isinstance(v, (int, float)) and not isinstance(v, bool):
                    # NULL (never matches) unless the stored value is a JSON number
                    expr = case((func.jsonb_typeof(field) == "number", cast(field.astext, Float)))
                else:
                    expr = field.astext
                bounds.append(_compare(expr, op, v))
            clauses.append(and_(*bounds))
        elif isinstance(expected, (list, tuple, set, frozenset)):
            # Scalar value in the list, or a list value sharing any element
            clauses.append(or_(*[
                or_(metadata.contains({key: v}), metadata.contains({key: [v]}))
                for v in expected
            ]))
        else:
            clauses.append(or_(
                metadata.contains({key: expected}),
                metadata.contains({key: [expected]}),
            ))
    return clauses
