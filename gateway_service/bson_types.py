"""
BSON type tags.

Every value decoded by pymongo is classified into exactly one of these
tags. Schema inference records them per field path; masking and the
query validator use the same classification when walking documents.

    String: str
    Number: int / float (int32 and doubles)
    Boolean: bool
    null: None
    undefined: anything unrecognised (MinKey, Code, Regex, …)
    ObjectId: bson.ObjectId
    Date: datetime / date
    Binary: bytes / bson.Binary
    Long: bson.Int64
    Decimal128: bson.Decimal128
    Timestamp: bson.Timestamp
    Object: embedded document (any Mapping)
    Array: list / tuple
"""

import datetime as _dt
from collections.abc import Mapping
from enum import Enum
from typing import Any

from bson import Binary, Decimal128, Int64, ObjectId, Timestamp


class BsonType(str, Enum):
    STRING = "String"
    NUMBER = "Number"
    BOOLEAN = "Boolean"
    NULL = "null"
    UNDEFINED = "undefined"
    OBJECT_ID = "ObjectId"
    DATE = "Date"
    BINARY = "Binary"
    LONG = "Long"
    DECIMAL128 = "Decimal128"
    TIMESTAMP = "Timestamp"
    OBJECT = "Object"
    ARRAY = "Array"


# Tags that do not count towards polymorphism.
NULLISH_TYPES = frozenset({BsonType.NULL, BsonType.UNDEFINED})

# Tags whose values are collected for enum detection.
ENUM_CANDIDATE_TYPES = frozenset({BsonType.STRING, BsonType.NUMBER})


def infer_bson_type(value: Any) -> BsonType:
    """Classify a single decoded value into a ``BsonType``.

    Order matters: ``bool`` and ``Int64`` are both ``int`` subclasses and
    ``Binary`` is a ``bytes`` subclass.
    """
    if value is None:
        return BsonType.NULL
    if isinstance(value, bool):
        return BsonType.BOOLEAN
    if isinstance(value, ObjectId):
        return BsonType.OBJECT_ID
    if isinstance(value, (_dt.datetime, _dt.date)):
        return BsonType.DATE
    if isinstance(value, (Binary, bytes)):
        return BsonType.BINARY
    if isinstance(value, Timestamp):
        return BsonType.TIMESTAMP
    if isinstance(value, Int64):
        return BsonType.LONG
    if isinstance(value, Decimal128):
        return BsonType.DECIMAL128
    if isinstance(value, (list, tuple)):
        return BsonType.ARRAY
    if isinstance(value, Mapping):
        return BsonType.OBJECT
    if isinstance(value, str):
        return BsonType.STRING
    if isinstance(value, (int, float)):
        return BsonType.NUMBER
    return BsonType.UNDEFINED
