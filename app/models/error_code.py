from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable error codes returned in ``ErrorResponse``."""

    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    TOO_MANY_IMAGES = "TOO_MANY_IMAGES"
    CODE_NOT_FOUND = "CODE_NOT_FOUND"
    NO_API_KEY = "NO_API_KEY"
    RATE_LIMIT = "RATE_LIMIT"
    INFERENCE_TIMEOUT = "INFERENCE_TIMEOUT"
    INFERENCE_FAILED = "INFERENCE_FAILED"
    STORE_CONFLICT = "STORE_CONFLICT"
