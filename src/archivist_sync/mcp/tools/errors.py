"""Error response builders for MCP tool handlers.

Structured error responses carry a corrective action so an agent can
recover without human intervention.
"""

from __future__ import annotations

import mcp.types as types

from ...errors import (
    ArchivistSyncError,
    ConfigError,
    RateLimited,
    ReconcileApplyError,
    TransportError,
    ValidationError,
    detail_text,
)


def build_error_response(
    error_type: str, message: str, corrective_action: str
) -> types.CallToolResult:
    """Build a structured error response with corrective action.

    Args:
        error_type: Error category (config_error, not_found,
            permission_denied, rate_limited, validation_error, server_error)
        message: Human-readable error description
        corrective_action: Specific action the agent can take to resolve the error

    Returns:
        CallToolResult with isError=True

    Examples:
        >>> build_error_response("not_found", "World w1 not found", "Use world_list to see available worlds.")
        CallToolResult(content=[TextContent(...)], isError=True)
    """
    error_text = f"Error ({error_type}): {message}\n\nAction: {corrective_action}"

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=error_text)],
        isError=True,
    )


def translate_api_error(error: ArchivistSyncError) -> types.CallToolResult:
    """Translate a sync-core exception to a structured error response.

    Args:
        error: Exception raised by the client or the reconcile service.

    Returns:
        CallToolResult with isError=True and corrective action
    """
    match error:
        case ConfigError():
            return build_error_response(
                "config_error",
                str(error),
                "Set ARCHIVIST_API_KEY and ARCHIVIST_WORLD_ID (or the "
                "'archivist' section of .archivist_sync/config.yml), then restart.",
            )

        case RateLimited():
            wait = (
                f"{error.retry_after:g} seconds"
                if error.retry_after
                else "a minute"
            )
            return build_error_response(
                "rate_limited",
                f"{error} (gave up after {error.attempts} attempts)",
                f"Wait {wait} and retry.",
            )

        case ValidationError() if error.is_description_too_long:
            return build_error_response(
                "validation_error",
                detail_text(error.detail) or str(error),
                "Lower description_max_length for this kind in the import "
                "config, or shorten the local description.",
            )

        case ValidationError():
            return build_error_response(
                "validation_error",
                detail_text(error.detail) or str(error),
                "Check the local document fields and retry.",
            )

        case TransportError() if error.status in (401, 403):
            return build_error_response(
                "permission_denied",
                str(error),
                "Check that ARCHIVIST_API_KEY is valid and has access to the world.",
            )

        case TransportError() if error.status == 404:
            return build_error_response(
                "not_found",
                str(error),
                "Use world_list to verify the world exists, then reconcile_preview "
                "to refresh the plan.",
            )

        case ReconcileApplyError():
            return build_error_response(
                "apply_error",
                f"{error} ({error.action} {error.item_id})",
                "Run reconcile_preview again and apply the remaining items.",
            )

        case _:
            return build_error_response(
                "server_error",
                str(error),
                "Check Archivist API connectivity or retry later.",
            )
