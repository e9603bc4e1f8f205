"""
PII masking for documents returned to the agent.

Masking is driven by the *key name* only: the last dotted segment of a
key is matched (whole word, case-insensitive) against a fixed taxonomy.
Values under a sensitive key are replaced by type; everything else passes
through, except that ObjectIds and datetimes are always turned into
strings so the result is JSON-safe. Under a sensitive key those strings
are masked as well.
"""

import datetime as _dt
import re
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

from bson import Decimal128, ObjectId

MASKED_EMAIL = "[MASKED_EMAIL]"
MASKED_SECRET = "[MASKED_SECRET]"
MASKED_PHONE = "[MASKED_PHONE]"
MASKED_SSN = "[MASKED_SSN]"
MASKED_CARD = "[MASKED_CARD]"
MASKED_STRING = "[MASKED_STRING]"

# Priority order: the first matching category wins.
SENSITIVE_PATTERNS = {
    "credentials": re.compile(
        r"password|passwd|secret|token|api_?key|auth|bearer|private_?key"
        r"|access_?token|refresh_?token",
        re.IGNORECASE,
    ),
    "email": re.compile(r"e_?mail|email_?address", re.IGNORECASE),
    "phone": re.compile(r"phone|mobile|telephone|cell|fax", re.IGNORECASE),
    "ssn": re.compile(
        r"ssn|social_?security|social_?security_?number", re.IGNORECASE,
    ),
    "financial": re.compile(
        r"credit_?card|card_?number|cvv|cvc|bank_?account|iban|routing"
        r"|account_?number",
        re.IGNORECASE,
    ),
    "health": re.compile(
        r"medical|patient|diagnosis|prescription|health", re.IGNORECASE,
    ),
    "infrastructure": re.compile(
        r"connection_?string|db_?password|aws_?secret|private_?key",
        re.IGNORECASE,
    ),
}

CATEGORY_PLACEHOLDERS = {
    "credentials": MASKED_SECRET,
    "email": MASKED_EMAIL,
    "phone": MASKED_PHONE,
    "ssn": MASKED_SSN,
    "financial": MASKED_CARD,
    "health": MASKED_SECRET,
    "infrastructure": MASKED_SECRET,
}


def _last_segment(field_name: str) -> str:
    return field_name.rsplit(".", 1)[-1] or field_name


def classify_field(field_name: str) -> Optional[str]:
    """Return the sensitive category of *field_name*, or ``None``."""
    name = _last_segment(field_name)
    for category, pattern in SENSITIVE_PATTERNS.items():
        if pattern.fullmatch(name):
            return category
    return None


def is_sensitive_field(field_name: str) -> bool:
    return classify_field(field_name) is not None


def get_mask_value(field_name: str) -> str:
    """Placeholder string for a sensitive string value under *field_name*."""
    category = classify_field(field_name)
    if category is None:
        return MASKED_STRING
    return CATEGORY_PLACEHOLDERS[category]


def _normalise_scalar(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (_dt.datetime, _dt.date)):
        return value.isoformat()
    return value


def mask_value(value: Any, field_name: str) -> Any:
    """Mask one value found under a sensitive key.

    ObjectIds and datetimes are stringified first and then masked like any
    other string.
    """
    value = _normalise_scalar(value)
    if isinstance(value, str):
        return get_mask_value(field_name)
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float, Decimal128)):
        return 0
    if isinstance(value, (list, tuple)):
        return [
            mask_document(item) if isinstance(item, Mapping)
            else mask_value(item, field_name)
            for item in value
        ]
    if isinstance(value, Mapping):
        return mask_document(value)
    return value


def _mask_plain_array(items) -> List[Any]:
    """Array under a non-sensitive key: scalars pass through."""
    masked = []
    for item in items:
        if isinstance(item, Mapping):
            masked.append(mask_document(item))
        else:
            masked.append(_normalise_scalar(item))
    return masked


def mask_document(doc: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a masked copy of *doc*; the input is not modified.

    Idempotent: placeholders, ``0`` and ``False`` stay as they are on a
    second pass because masking depends on the key, not the value.
    """
    masked: Dict[str, Any] = {}
    for key, value in doc.items():
        if is_sensitive_field(key):
            masked[key] = mask_value(value, key)
        elif isinstance(value, (ObjectId, _dt.datetime, _dt.date)):
            masked[key] = _normalise_scalar(value)
        elif isinstance(value, Mapping):
            masked[key] = mask_document(value)
        elif isinstance(value, (list, tuple)):
            masked[key] = _mask_plain_array(value)
        else:
            masked[key] = value
    return masked


def mask_documents(docs) -> List[Dict[str, Any]]:
    return [mask_document(doc) for doc in docs]
