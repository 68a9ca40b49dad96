"""Standardized API response helpers.

Every endpoint returns the same envelope:
    {"success": true, "data": ..., "message": "..."}

List endpoints additionally include ``total``. Errors are rendered by the
exception handlers in ``procurement.main`` as:
    {"success": false, "message": "...", "error": "<code>", "details": {...}}
"""

from typing import Any, Dict, Optional


def success_response(data: Any = None, message: Optional[str] = None) -> dict:
    """Wrap a payload in the success envelope."""
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


def list_response(items: list, total: Optional[int] = None) -> dict:
    """Wrap a list in the success envelope.

    Args:
        items: The list of serialized items.
        total: Total count (defaults to len(items) when the full list is returned).
    """
    return {
        "success": True,
        "data": items,
        "total": total if total is not None else len(items),
    }


def error_response(
    message: str,
    error: str = "error",
    details: Optional[Dict[str, Any]] = None,
) -> dict:
    """Build the failure envelope."""
    return {
        "success": False,
        "message": message,
        "error": error,
        "details": details or {},
    }
