"""
Response formatter: turns core results into JSON-safe payloads and text.
"""

from typing import Any, Dict, List

from schema_inference import SchemaOverview, SchemaReport


def sanitise_value(obj: Any) -> Any:
    """Recursively convert non-JSON-safe BSON values to safe representations."""
    if isinstance(obj, dict):
        return {k: sanitise_value(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [sanitise_value(item) for item in obj]
    if isinstance(obj, bytes):
        # Binary fields (e.g. vector embeddings): try UTF-8, else summarise
        try:
            return obj.decode("utf-8")
        except (UnicodeDecodeError, ValueError):
            return f"[binary {len(obj)} bytes]"
    if isinstance(obj, (int, float, str, bool, type(None))):
        return obj
    # ObjectId, Decimal128, Timestamp, Regex, etc.
    return str(obj)


def clean_documents(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [sanitise_value(doc) for doc in docs]


def format_schema_report(schema: SchemaReport) -> Dict[str, Any]:
    """Compact schema payload: ``enum_values`` / ``is_polymorphic`` only when set."""
    fields: Dict[str, Dict[str, Any]] = {}
    for path, info in schema.fields.items():
        entry: Dict[str, Any] = {
            "types": [t.value for t in info.types],
            "frequency": info.frequency,
        }
        if info.enum_values is not None:
            entry["enum_values"] = sanitise_value(info.enum_values)
        if info.is_polymorphic:
            entry["is_polymorphic"] = True
        fields[path] = entry

    return {
        "collection": schema.collection,
        "document_count": schema.document_count,
        "sample_size": schema.sample_size,
        "fields": fields,
        "generated_at": schema.generated_at,
    }


def format_schema_overview_text(overview: SchemaOverview) -> str:
    lines = [
        f"# Database: {overview.database}",
        "",
        f"Generated: {overview.generated_at}",
        "",
        f"## Collections ({len(overview.collections)})",
        "",
    ]
    if not overview.collections:
        lines.append("No collections found.")
        return "\n".join(lines)

    lines.append("| Collection | Documents | Indexes | Avg Doc Size |")
    lines.append("|------------|-----------|---------|--------------|")
    for col in overview.collections:
        avg = f"{round(col.avg_document_size)} bytes" if col.avg_document_size else "N/A"
        lines.append(
            f"| {col.name} | {col.document_count:,} | {col.index_count} | {avg} |"
        )
    return "\n".join(lines)
