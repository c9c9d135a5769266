"""Error taxonomy for the record service."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class RecordServiceError(Exception):
    message: str
    code: str = "RECORD_ERROR"
    status: int = 500
    path: str | None = None
    detail: dict | None = None

    def __str__(self) -> str:
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base

    @property
    def title(self) -> str:
        return "Record service error"


@dataclass
class AccessDenied(RecordServiceError):
    code: str = "ACCESS_DENIED"
    status: int = 403

    @property
    def title(self) -> str:
        return "Access denied"


@dataclass
class NotFound(RecordServiceError):
    code: str = "RECORD_NOT_FOUND"
    status: int = 404

    @property
    def title(self) -> str:
        return "Not found"


@dataclass
class InvalidArgument(RecordServiceError):
    code: str = "INVALID_ARGUMENT"
    status: int = 400

    @property
    def title(self) -> str:
        return "Invalid argument"


@dataclass
class StorageFailure(RecordServiceError):
    code: str = "STORAGE_FAILURE"
    status: int = 500

    @property
    def title(self) -> str:
        return "Storage failure"
