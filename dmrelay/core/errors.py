from __future__ import annotations


class RelayError(Exception):
    """Base class for errors reported to callers of the relay core."""

    code = "INTERNAL"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class InvalidRequest(RelayError):
    code = "INVALID_REQUEST"


class Unauthenticated(RelayError):
    code = "UNAUTHENTICATED"


class Forbidden(RelayError):
    code = "FORBIDDEN"


class StorageUnavailable(RelayError):
    code = "STORAGE_UNAVAILABLE"


class RelayFailed(RelayError):
    # soft failure: only ever logged by the delivery path
    code = "RELAY_FAILED"


ERROR_CODES = {
    InvalidRequest.code,
    Unauthenticated.code,
    Forbidden.code,
    StorageUnavailable.code,
    RelayFailed.code,
}


__all__ = [
    "RelayError",
    "InvalidRequest",
    "Unauthenticated",
    "Forbidden",
    "StorageUnavailable",
    "RelayFailed",
    "ERROR_CODES",
]
