"""Shared Pydantic response/request models for the admin API.

Provides the error envelope used by every endpoint.  Endpoint-specific
models live in sibling modules.
"""

from __future__ import annotations

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail
