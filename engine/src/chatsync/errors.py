from __future__ import annotations


class StoreError(Exception):
    """Base class for failures reported by a data store gateway."""


class StoreUnavailable(StoreError):
    """The gateway could not serve a query or write (network or server side)."""


class NotFound(StoreError):
    """A single-row fetch matched no rows.

    This is an expected condition (for example a user that never announced
    presence) and callers usually turn it into a default value.
    """


class PermissionDenied(StoreError):
    pass


class MediaUploadFailed(StoreError):
    pass


class InvalidPayload(ValueError):
    """A row or change event failed validation at the gateway boundary."""


_WIRE_CODES = (
    (NotFound, "not_found", 404),
    (PermissionDenied, "permission_denied", 403),
    (MediaUploadFailed, "upload_failed", 422),
    (StoreUnavailable, "store_unavailable", 503),
)


def wire_code(exc: StoreError) -> tuple[str, int]:
    """Return the ``(code, http_status)`` pair the HTTP gateway uses for ``exc``."""

    for cls, code, status in _WIRE_CODES:
        if isinstance(exc, cls):
            return code, status
    return "store_unavailable", 503


def error_from_wire(code: object, message: str) -> StoreError:
    for cls, known_code, _ in _WIRE_CODES:
        if code == known_code:
            return cls(message)
    return StoreUnavailable(message)
