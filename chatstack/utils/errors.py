"""Helpers for building JSON error payloads."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any


def create_error_response(
    message: str,
    err_type: str = "internal_error",
    status_code: int | HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR,
    param: str | None = None,
    code: str | None = None,
) -> dict[str, Any]:
    """
    Build the error body returned by every endpoint.

    Parameters:
        message (str): Human readable description of the failure.
        err_type (str): Machine readable category such as ``invalid_state``.
        status_code (int | HTTPStatus): HTTP status the response is sent with.
        param (str | None): Request field the error refers to, if any.
        code (str | None): Explicit error code; defaults to the numeric status.

    Returns:
        dict[str, Any]: ``{"error": {...}}`` payload.
    """
    return {
        "error": {
            "message": message,
            "type": err_type,
            "param": param,
            "code": code or str(int(status_code)),
        },
    }
