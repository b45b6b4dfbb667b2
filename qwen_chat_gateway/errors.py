from __future__ import annotations

from typing import Any

from fastapi import status


class GatewayError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "gateway_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code,
            }
        }


class ValidationError(GatewayError):
    """Malformed or empty input, rejected before any network call."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "invalid_request_error"


class UpstreamAuthError(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "upstream_auth_error"


class UpstreamTransientError(GatewayError):
    """Timeout or 5xx from a backend call; retried before it reaches a caller."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "upstream_unavailable"


class UploadFailure(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "upload_failed"


class SessionCreationFailure(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "session_creation_failed"


class StreamDecodeError(GatewayError):
    error_type = "stream_decode_error"


class BackendReportedError(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "backend_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.request_id = request_id
