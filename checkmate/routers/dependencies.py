import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

log = logging.getLogger(__name__)

DEFAULT_CLIENT_IP = "127.0.0.1"

QUOTA_EXCEEDED_MESSAGE = (
    "Rate limit exceeded. You have used all your free checks for today. "
    "Add your own API key for unlimited usage."
)


def get_client_ip(request: Request) -> str:
    ip = request.headers.get("x-nf-client-connection-ip")
    if ip:
        return ip.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return DEFAULT_CLIENT_IP


def quota_exceeded_response(limit: int) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": QUOTA_EXCEEDED_MESSAGE,
            "_usage": {"remaining": 0, "limit": limit},
        },
    )


def classify_model_error(error: Exception, action: str) -> tuple[int, str]:
    """Maps an upstream model SDK error to a status code and user-facing message."""
    message = str(error)
    lowered = message.lower()
    if "api_key_invalid" in lowered or "api key not valid" in lowered:
        return (
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Server API key configuration error. Please try again later.",
        )
    if "quota" in lowered or "overloaded" in lowered or "unavailable" in lowered:
        return (
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Service temporarily unavailable. Please try again later or add your own API key.",
        )
    if "payload size exceeds" in lowered or "too large" in lowered:
        return (
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            "File too large. Please use a smaller file.",
        )
    if "safety" in lowered:
        return (
            status.HTTP_400_BAD_REQUEST,
            f"{action} blocked due to safety settings. Please try different content.",
        )
    return (
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        f"{action} failed: {message or 'Unknown error'}",
    )
