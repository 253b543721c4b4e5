from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


@dataclass
class ApiError(Exception):
    status_code: int
    error: str
    message: str
    details: dict[str, Any] | None = None


def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    payload = {"error": exc.error, "message": exc.message, "details": exc.details}
    return JSONResponse(status_code=exc.status_code, content=payload)


# Domain errors: raised below the service layer, mapped to ApiError by DownloadsService.
class DownloadsError(Exception):
    pass


class ValidationError(DownloadsError):
    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigError(DownloadsError):
    pass


class UpstreamError(DownloadsError):
    def __init__(self, message: str, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.body = body

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"{self.message} (status {self.status}): {self.body}"


class CredentialError(UpstreamError):
    pass


class BackendError(UpstreamError):
    pass
