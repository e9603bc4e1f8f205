"""
Tool gating: read-only mode and per-tool disabling from configuration.
"""

from typing import Optional

from pydantic import BaseModel

from config import ServerConfig, get_config
from errors import ToolBlockedError

WRITE_TOOLS = frozenset({
    "insert_one",
    "insert_many",
    "update_one",
    "update_many",
    "delete_one",
    "delete_many",
    "create_index",
    "drop_index",
    "create_collection",
    "drop_collection",
    "rename_collection",
    "drop_database",
})

CONFIRMATION_REQUIRED_TOOLS = frozenset({
    "delete_one",
    "delete_many",
    "drop_index",
    "drop_collection",
    "drop_database",
})


class SecurityCheckResult(BaseModel):
    allowed: bool
    reason: Optional[str] = None


def is_write_operation(tool_name: str) -> bool:
    return tool_name in WRITE_TOOLS


def requires_confirmation(tool_name: str) -> bool:
    return tool_name in CONFIRMATION_REQUIRED_TOOLS


def is_tool_allowed(tool_name: str, config: Optional[ServerConfig] = None) -> SecurityCheckResult:
    config = config or get_config()

    if tool_name in config.disabled_tools:
        return SecurityCheckResult(
            allowed=False,
            reason=f"Tool '{tool_name}' is disabled via MONGODB_DISABLED_TOOLS",
        )

    if config.read_only and is_write_operation(tool_name):
        return SecurityCheckResult(
            allowed=False,
            reason=(
                f"Tool '{tool_name}' is a write operation. "
                "Server is in read-only mode (MONGODB_READONLY=true)"
            ),
        )

    return SecurityCheckResult(allowed=True)


def check_tool_security(tool_name: str, config: Optional[ServerConfig] = None) -> None:
    """Raise ``ToolBlockedError`` unless *tool_name* may run."""
    check = is_tool_allowed(tool_name, config)
    if not check.allowed:
        raise ToolBlockedError(tool_name, check.reason or "Tool is blocked")


def get_security_summary(config: Optional[ServerConfig] = None) -> str:
    config = config or get_config()
    lines = [
        "Security Configuration",
        "",
        f"- Read-Only Mode: {'ENABLED' if config.read_only else 'Disabled'}",
        f"- Disabled Tools: {', '.join(config.disabled_tools) if config.disabled_tools else 'None'}",
    ]
    if config.read_only:
        lines.append("")
        lines.append("Write operations are blocked in read-only mode.")
    else:
        lines.append("")
        lines.append(
            "Destructive tools preview their effect unless called with confirm=true: "
            + ", ".join(sorted(CONFIRMATION_REQUIRED_TOOLS))
        )
    return "\n".join(lines)
