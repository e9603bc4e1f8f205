"""
Query validator: static checks on a filter before it reaches the server.

Pipeline:
1. Parse the text as MongoDB extended JSON (``bson.json_util``).
2. Collect every ``$``-prefixed key, at any depth, including inside arrays.
3. Reject write/update operators (``$set``, ``$inc``, …); those mean an
   update document was sent where a read filter was expected.
4. Otherwise accept, with advisory warnings for empty filters, deep
   nesting, unanchored ``$regex`` and unknown collections.

Nothing here talks to the database; collection existence is looked up by
the caller and passed in.
"""

import json
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

from bson import json_util
from bson.errors import BSONError
from pydantic import BaseModel, model_validator

from logger import logger

MAX_NESTING_DEPTH = 5

ALLOWED_OPERATORS = frozenset({
    "$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin",
    "$and", "$or", "$not", "$nor",
    "$exists", "$type",
    "$all", "$elemMatch", "$size",
    "$regex", "$text", "$search", "$options",
    "$expr", "$mod", "$where",
    "$geoWithin", "$geoIntersects", "$near", "$nearSphere",
    "$oid", "$date", "$numberLong", "$numberDecimal", "$binary",
})

BLOCKED_OPERATORS = frozenset({
    "$set", "$unset", "$inc", "$dec",
    "$push", "$pull", "$pullAll", "$pop", "$addToSet",
    "$rename", "$currentDate", "$mul", "$bit",
    "$min", "$max", "$setOnInsert",
})

WARN_EMPTY_QUERY = "Empty query will match all documents"
WARN_DEEP_NESTING = "Deeply nested query may impact performance"
WARN_UNANCHORED_REGEX = "Regex without anchor (^) may be slow"


class ValidationResult(BaseModel):
    valid: bool
    error: Optional[str] = None
    warnings: Optional[List[str]] = None

    @model_validator(mode="after")
    def _check_consistency(self):
        if self.valid and self.error is not None:
            raise ValueError("a valid result cannot carry an error")
        if not self.valid and not self.error:
            raise ValueError("an invalid result must carry an error")
        if not self.valid and self.warnings:
            raise ValueError("warnings are only reported for valid queries")
        return self


# ---------------------- PARSING ----------------------


def _object_pairs_hook(pairs):
    # Leave the ``$regex`` query operator as a plain key; json_util would
    # otherwise fold {"$regex": "..."} into a bson Regex value.
    if any(k == "$regex" and isinstance(v, str) for k, v in pairs):
        return dict(pairs)
    return json_util.object_pairs_hook(pairs, json_util.DEFAULT_JSON_OPTIONS)


def _loads(text: str) -> Any:
    try:
        return json.loads(text, object_pairs_hook=_object_pairs_hook)
    except (ValueError, TypeError, BSONError) as e:
        raise ValueError(f"Invalid JSON: {e}")


def parse_query(query_text: str) -> Dict[str, Any]:
    """Parse extended JSON into a dict. Raises ``ValueError`` with the reason."""
    query = _loads(query_text)
    if not isinstance(query, Mapping):
        raise ValueError("Query must be a JSON object")
    return query


def parse_object_list(text: str) -> List[Dict[str, Any]]:
    """Parse an extended-JSON array of objects (pipelines, bulk inserts)."""
    items = _loads(text)
    if not isinstance(items, list) or not all(isinstance(i, Mapping) for i in items):
        raise ValueError("Expected a JSON array of objects")
    return [dict(i) for i in items]


# ---------------------- ANALYSIS ----------------------


def find_operators(obj: Any, operators: Optional[Dict[str, None]] = None) -> List[str]:
    """Every ``$`` key in *obj*, in first-discovered order."""
    if operators is None:
        operators = {}
    if isinstance(obj, Mapping):
        for key, value in obj.items():
            if isinstance(key, str) and key.startswith("$"):
                operators.setdefault(key, None)
            find_operators(value, operators)
    elif isinstance(obj, (list, tuple)):
        for item in obj:
            find_operators(item, operators)
    return list(operators)


def detect_blocked_operators(operators: List[str]) -> List[str]:
    return [op for op in operators if op in BLOCKED_OPERATORS]


def calculate_nesting_depth(obj: Any, depth: int = 0) -> int:
    """One level per object boundary; arrays are crossed without a level."""
    if isinstance(obj, Mapping):
        return max(
            (calculate_nesting_depth(v, depth + 1) for v in obj.values()),
            default=depth,
        )
    if isinstance(obj, (list, tuple)):
        return max(
            (calculate_nesting_depth(item, depth) for item in obj),
            default=depth,
        )
    return depth


def has_unanchored_regex(obj: Any) -> bool:
    if isinstance(obj, Mapping):
        for key, value in obj.items():
            if key == "$regex" and isinstance(value, str) and not value.startswith("^"):
                return True
            if has_unanchored_regex(value):
                return True
        return False
    if isinstance(obj, (list, tuple)):
        return any(has_unanchored_regex(item) for item in obj)
    return False


def generate_warnings(
    query: Mapping[str, Any],
    collection_exists: Optional[bool] = None,
    collection_name: Optional[str] = None,
) -> List[str]:
    warnings: List[str] = []

    if len(query) == 0:
        warnings.append(WARN_EMPTY_QUERY)

    if calculate_nesting_depth(query) > MAX_NESTING_DEPTH:
        warnings.append(WARN_DEEP_NESTING)

    if has_unanchored_regex(query):
        warnings.append(WARN_UNANCHORED_REGEX)

    if collection_name and collection_exists is False:
        warnings.append(f"Collection '{collection_name}' does not exist")

    return warnings


# ---------------------- MAIN VALIDATOR ----------------------


def validate_query(
    query_text: str,
    collection_exists: Optional[bool] = None,
    collection_name: Optional[str] = None,
) -> ValidationResult:
    """Validate a filter without executing it."""
    try:
        query = parse_query(query_text)
    except ValueError as e:
        logger.warning("Query rejected: %s", e)
        return ValidationResult(valid=False, error=str(e))

    blocked = detect_blocked_operators(find_operators(query))
    if blocked:
        error = f"Write operations are not allowed. Detected: {', '.join(blocked)}"
        logger.warning("Query rejected: %s", error)
        return ValidationResult(valid=False, error=error)

    warnings = generate_warnings(query, collection_exists, collection_name)
    return ValidationResult(valid=True, warnings=warnings or None)
