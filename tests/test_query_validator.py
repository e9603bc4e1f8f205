"""
Unit tests for static filter validation.
"""

import json

import pytest
from pydantic import ValidationError

from query_validator import (
    WARN_DEEP_NESTING,
    WARN_EMPTY_QUERY,
    WARN_UNANCHORED_REGEX,
    ValidationResult,
    calculate_nesting_depth,
    find_operators,
    parse_object_list,
    parse_query,
    validate_query,
)


def _nested(levels):
    query = 1
    for i in reversed(range(levels)):
        query = {f"k{i}": query}
    return json.dumps(query)


class TestParsing:
    def test_invalid_json(self):
        result = validate_query("{name: 'x'")

        assert result.valid is False
        assert result.error.startswith("Invalid JSON:")
        assert result.warnings is None

    def test_non_object(self):
        result = validate_query("[1, 2]")

        assert result.valid is False
        assert result.error == "Query must be a JSON object"

    def test_extended_json_values(self):
        query = parse_query('{"_id": {"$oid": "507f1f77bcf86cd799439011"}}')
        assert str(query["_id"]) == "507f1f77bcf86cd799439011"

    def test_regex_operator_stays_a_key(self):
        query = parse_query('{"name": {"$regex": "abc", "$options": "i"}}')
        assert query == {"name": {"$regex": "abc", "$options": "i"}}

    def test_bad_extended_json(self):
        result = validate_query('{"_id": {"$oid": "nope"}}')
        assert result.valid is False
        assert "Invalid JSON" in result.error


class TestBlockedOperators:
    def test_set_is_rejected(self):
        result = validate_query('{"$set": {"a": 1}}')

        assert result.valid is False
        assert "$set" in result.error
        assert result.warnings is None

    def test_all_blocked_operators_listed_in_discovery_order(self):
        result = validate_query('{"$inc": {"n": 1}, "a": {"$eq": 1}, "$set": {"b": 2}, "$unset": {"c": ""}}')

        assert result.error == "Write operations are not allowed. Detected: $inc, $set, $unset"

    def test_blocked_operator_inside_array(self):
        result = validate_query('{"$or": [{"a": 1}, {"b": {"$push": {"x": 1}}}]}')

        assert result.valid is False
        assert "$push" in result.error

    def test_read_operators_are_fine(self):
        result = validate_query('{"age": {"$gte": 18, "$lt": 65}, "$or": [{"a": 1}, {"b": {"$in": [1, 2]}}]}')

        assert result.valid is True
        assert result.warnings is None

    def test_find_operators_order(self):
        ops = find_operators({"$and": [{"a": {"$gt": 1}}, {"b": {"$gt": 2, "$lt": 3}}]})
        assert ops == ["$and", "$gt", "$lt"]


class TestWarnings:
    def test_empty_query(self):
        result = validate_query("{}")

        assert result.valid is True
        assert result.warnings == [WARN_EMPTY_QUERY]

    def test_unanchored_regex(self):
        result = validate_query('{"name": {"$regex": "abc"}}')

        assert result.valid is True
        assert WARN_UNANCHORED_REGEX in result.warnings

    def test_anchored_regex(self):
        result = validate_query('{"name": {"$regex": "^abc"}}')

        assert result.valid is True
        assert not result.warnings

    def test_depth_five_is_fine(self):
        assert calculate_nesting_depth(json.loads(_nested(5))) == 5
        assert validate_query(_nested(5)).warnings is None

    def test_depth_six_warns(self):
        assert validate_query(_nested(6)).warnings == [WARN_DEEP_NESTING]

    def test_arrays_do_not_add_depth(self):
        assert calculate_nesting_depth({"$or": [{"a": 1}]}) == 2

    def test_missing_collection(self):
        result = validate_query('{"a": 1}', collection_exists=False, collection_name="orders")
        assert result.warnings == ["Collection 'orders' does not exist"]

    def test_existing_collection_no_warning(self):
        result = validate_query('{"a": 1}', collection_exists=True, collection_name="orders")
        assert result.warnings is None

    def test_collection_warning_needs_name(self):
        assert validate_query('{"a": 1}', collection_exists=False).warnings is None

    def test_warning_order(self):
        deep_regex = '{"a": {"b": {"c": {"d": {"e": {"f": {"$regex": "x"}}}}}}}'
        result = validate_query(deep_regex, collection_exists=False, collection_name="c")

        assert result.warnings == [
            WARN_DEEP_NESTING,
            WARN_UNANCHORED_REGEX,
            "Collection 'c' does not exist",
        ]


class TestValidationResult:
    def test_invalid_requires_error(self):
        with pytest.raises(ValidationError):
            ValidationResult(valid=False)

    def test_valid_rejects_error(self):
        with pytest.raises(ValidationError):
            ValidationResult(valid=True, error="boom")

    def test_invalid_rejects_warnings(self):
        with pytest.raises(ValidationError):
            ValidationResult(valid=False, error="boom", warnings=["w"])


class TestObjectList:
    def test_pipeline_with_extended_json(self):
        stages = parse_object_list('[{"$match": {"_id": {"$oid": "507f1f77bcf86cd799439011"}}}, {"$limit": 5}]')

        assert str(stages[0]["$match"]["_id"]) == "507f1f77bcf86cd799439011"
        assert stages[1] == {"$limit": 5}

    @pytest.mark.parametrize("text", ['{"a": 1}', '[1, 2]', '[{"a": 1}, "b"]'])
    def test_rejects_non_object_arrays(self, text):
        with pytest.raises(ValueError, match="Expected a JSON array of objects"):
            parse_object_list(text)

    def test_invalid_json(self):
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_object_list("[{")
