from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class ErrorCode(str, Enum):
    invalid_input = "invalid_input"
    invalid_image = "invalid_image"
    unsupported_media_type = "unsupported_media_type"
    bad_dimensions = "bad_dimensions"
    too_large = "too_large"
    preprocessing_failed = "preprocessing_failed"
    timeout = "timeout"
    internal_error = "internal_error"
    unauthorized = "unauthorized"
    malformed_multipart = "malformed_multipart"
    service_not_ready = "service_not_ready"


# code -> (HTTP status, default message)
_ERROR_TABLE: Final[dict[ErrorCode, tuple[int, str]]] = {
    ErrorCode.invalid_input: (
        status.HTTP_400_BAD_REQUEST,
        "Prediction list is empty or names an unknown class.",
    ),
    ErrorCode.invalid_image: (status.HTTP_400_BAD_REQUEST, "Failed to decode image."),
    ErrorCode.unsupported_media_type: (
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
        "Only PNG, JPEG and WebP images are accepted.",
    ),
    ErrorCode.bad_dimensions: (
        status.HTTP_400_BAD_REQUEST,
        "Image dimensions exceed allowed limits.",
    ),
    ErrorCode.too_large: (status.HTTP_413_CONTENT_TOO_LARGE, "Image exceeds size limit."),
    ErrorCode.preprocessing_failed: (status.HTTP_400_BAD_REQUEST, "Image preprocessing failed."),
    ErrorCode.timeout: (status.HTTP_504_GATEWAY_TIMEOUT, "Classification timed out."),
    ErrorCode.internal_error: (status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error."),
    ErrorCode.unauthorized: (status.HTTP_401_UNAUTHORIZED, "Missing or invalid API key."),
    ErrorCode.malformed_multipart: (
        status.HTTP_400_BAD_REQUEST,
        "Expected exactly one 'file' part.",
    ),
    ErrorCode.service_not_ready: (
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Model not loaded. Install a model artifact.",
    ),
}


@dataclass(frozen=True)
class ErrorResponse:
    """JSON error body returned by every failing route."""

    code: ErrorCode
    message: str
    request_id: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.message, "request_id": self.request_id}


class AppError(Exception):
    """Error carrying the code and HTTP status the API reports for it."""

    def __init__(
        self, code: ErrorCode, http_status: int | None = None, message: str | None = None
    ) -> None:
        default_status, default_message = _ERROR_TABLE[code]
        self.code = code
        self.http_status = http_status if http_status is not None else default_status
        self.message = message if message is not None else default_message
        super().__init__(self.message)


class InvalidInputError(AppError):
    """Raised when a prediction sequence violates the classifier contract."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(ErrorCode.invalid_input, message=message)


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message if message is not None else _ERROR_TABLE[code][1]
    return ErrorResponse(code=code, message=msg, request_id=request_id)


def status_for(code: ErrorCode) -> int:
    return _ERROR_TABLE[code][0]
