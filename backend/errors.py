# errors.py — Error envelope and domain exceptions
# Every error leaves the API as {"error": str, "details"?: any, "request_id": str}
import os
from typing import Any, Dict, Optional

from fastapi import HTTPException

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


class APIError(HTTPException):
    """HTTPException that also carries structured details for the envelope."""

    def __init__(self, status_code: int, message: str, details: Any = None):
        super().__init__(status_code=status_code, detail=message)
        self.details = details


def build_error_envelope(
    message: str,
    request_id: Optional[str],
    details: Any = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"error": message}
    if details is not None:
        payload["details"] = details
    payload["request_id"] = request_id
    return payload


def public_message(detail: str, generic: str) -> str:
    """Upstream detail is only shown to callers in development."""
    return detail if ENVIRONMENT == "development" else generic


# ============================================================
# AGENT LAYER
# ============================================================

class AgentError(Exception):
    """Base class for failures that end an agent run."""

    status_code = 502


class ModelClientError(AgentError):
    """Remote model unreachable, misconfigured or returned an HTTP error."""


class ModelRateLimited(ModelClientError):
    status_code = 503


class AgentOutputError(AgentError):
    """Final model message was empty, not JSON, or failed schema validation."""

    status_code = 422


class ToolError(Exception):
    """Raised by a tool handler; fed back to the model instead of ending the run."""
