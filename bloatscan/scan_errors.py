"""Structured error kinds shared by the scanner, store and cleanup layers.

Every error carries a human-readable message, an optional path and a stable
``code`` so the CLI and HTTP surfaces can render it without losing context.
"""

from __future__ import annotations

import errno
from typing import Any


class ScannerError(Exception):
    code = "SCANNER_ERROR"
    http_status = 500

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.message = message
        self.path = path

    def __str__(self) -> str:
        if self.path:
            return f"{self.message}: {self.path}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "path": self.path}


class IoError(ScannerError):
    code = "IO_ERROR"


class PermissionDeniedError(ScannerError):
    code = "PERMISSION_DENIED"
    http_status = 403


class InvalidPathError(ScannerError):
    code = "INVALID_PATH"
    http_status = 400


class NotFoundError(ScannerError):
    code = "NOT_FOUND"
    http_status = 404


class InvalidConfigError(ScannerError):
    code = "INVALID_CONFIG"
    http_status = 400


class DeletionFailedError(ScannerError):
    code = "DELETION_FAILED"


class InvalidNumericComparisonError(ScannerError):
    code = "INVALID_NUMERIC_COMPARISON"


class ConcurrencyError(ScannerError):
    """Index corruption or lock failure; always aborts the running scan."""

    code = "CONCURRENCY_ERROR"


class PersistenceError(ScannerError):
    code = "PERSISTENCE_ERROR"


class ScanCancelledError(ScannerError):
    code = "SCAN_CANCELLED"
    http_status = 409


def from_os_error(exc: OSError, path: str | None = None) -> ScannerError:
    """Map an OSError to the matching scanner error kind."""
    target = path or exc.filename
    message = exc.strerror or str(exc)
    if isinstance(exc, PermissionError) or exc.errno in (errno.EACCES, errno.EPERM):
        return PermissionDeniedError(message, target)
    if isinstance(exc, FileNotFoundError) or exc.errno == errno.ENOENT:
        return NotFoundError(message, target)
    return IoError(message, target)
