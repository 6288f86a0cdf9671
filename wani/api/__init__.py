"""Remote API gateway: interface, errors and the WaniKani implementation."""

from wani.api.errors import (
    AuthError,
    DuplicateSubmissionError,
    GatewayError,
    OutcomeRejectedError,
    RateLimitedError,
    RequestRejectedError,
    TransientError,
)
from wani.api.gateway import RemoteGateway
from wani.api.wanikani_client import RateLimit, WaniKaniGateway

__all__ = [
    "AuthError",
    "DuplicateSubmissionError",
    "GatewayError",
    "OutcomeRejectedError",
    "RateLimit",
    "RateLimitedError",
    "RemoteGateway",
    "RequestRejectedError",
    "TransientError",
    "WaniKaniGateway",
]
