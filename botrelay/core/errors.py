"""Domain errors raised by the relay core and rendered by the API layer."""

from __future__ import annotations


class RelayError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthorized(RelayError):
    """Missing, unknown, disabled or expired API key, or a disabled bot."""

    status_code = 401


class Forbidden(RelayError):
    """The key lacks a scope, or the resource belongs to another bot."""

    status_code = 403


class NotFound(RelayError):
    status_code = 404


class UpstreamError(RelayError):
    """The upstream provider was unreachable or answered with an error."""

    status_code = 502

    def __init__(self, message: str, upstream_status: int | None = None):
        super().__init__(message)
        self.upstream_status = upstream_status
