from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any

import anthropic
import openai


class ErrorCategory(str, Enum):
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    QUOTA = "quota"
    NETWORK = "network"
    UNKNOWN = "unknown"


_RETRYABLE = {
    ErrorCategory.AUTHENTICATION: False,
    ErrorCategory.RATE_LIMIT: True,
    ErrorCategory.QUOTA: False,
    ErrorCategory.NETWORK: True,
    ErrorCategory.UNKNOWN: True,
}

_STATUS = {
    ErrorCategory.AUTHENTICATION: 401,
    ErrorCategory.RATE_LIMIT: 429,
    ErrorCategory.QUOTA: 402,
    ErrorCategory.NETWORK: 503,
    ErrorCategory.UNKNOWN: 500,
}

_MESSAGES = {
    ErrorCategory.AUTHENTICATION: "Invalid or missing API key for the selected provider.",
    ErrorCategory.RATE_LIMIT: "The provider is rate limiting requests. Please wait a moment and try again.",
    ErrorCategory.QUOTA: "The provider account has exhausted its quota.",
    ErrorCategory.NETWORK: "Could not reach the provider. Please try again.",
    ErrorCategory.UNKNOWN: "An unexpected error occurred while generating the response.",
}

_NETWORK_HINTS = ("timeout", "timed out", "connection", "network", "econnreset", "socket")


@dataclass(frozen=True)
class ClassifiedError:
    category: ErrorCategory
    retryable: bool
    status_code: int
    message: str
    provider: str | None = None
    code: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": True,
            "message": self.message,
            "statusCode": self.status_code,
            "isRetryable": self.retryable,
            "provider": self.provider,
            "category": self.category.value,
        }
        if self.code:
            payload["code"] = self.code
        return payload


class OrchestrationError(Exception):
    """A failure that ends an exchange. Carries its classification."""

    def __init__(self, classified: ClassifiedError):
        super().__init__(classified.message)
        self.classified = classified

    @property
    def code(self) -> str | None:
        return self.classified.code


class MaxSegmentsReachedError(OrchestrationError):
    def __init__(self, max_segments: int, provider: str | None = None):
        super().__init__(
            ClassifiedError(
                category=ErrorCategory.UNKNOWN,
                retryable=False,
                status_code=500,
                message=(
                    f"Maximum response segments reached ({max_segments}). "
                    "The response is too long; try asking for a smaller change."
                ),
                provider=provider,
                code="max_segments",
            )
        )
        self.max_segments = max_segments


class StreamStalledError(OrchestrationError):
    def __init__(self, retries: int, provider: str | None = None):
        super().__init__(
            ClassifiedError(
                category=ErrorCategory.NETWORK,
                retryable=False,
                status_code=504,
                message=(
                    f"The connection to the provider is unstable: the stream stalled "
                    f"after {retries} recovery attempt(s)."
                ),
                provider=provider,
                code="stream_stalled",
            )
        )
        self.retries = retries


def classify(status: int | None, message: str | None, provider: str | None = None) -> ClassifiedError:
    text = (message or "").lower()

    if status == 401 or "api key" in text or "api_key" in text or "unauthorized" in text:
        category = ErrorCategory.AUTHENTICATION
    elif status == 429 or "rate limit" in text or "rate_limit" in text:
        category = ErrorCategory.RATE_LIMIT
    elif "quota" in text:
        category = ErrorCategory.QUOTA
    elif (status is not None and 500 <= status <= 599) or any(h in text for h in _NETWORK_HINTS):
        category = ErrorCategory.NETWORK
    else:
        category = ErrorCategory.UNKNOWN

    return ClassifiedError(
        category=category,
        retryable=_RETRYABLE[category],
        status_code=status if category is ErrorCategory.UNKNOWN and status else _STATUS[category],
        message=_MESSAGES[category],
        provider=provider,
    )


def classify_error(error: BaseException, provider: str | None = None) -> ClassifiedError:
    if isinstance(error, OrchestrationError):
        return error.classified

    if isinstance(error, (anthropic.APITimeoutError, openai.APITimeoutError, asyncio.TimeoutError, TimeoutError)):
        return classify(None, "timeout", provider)
    if isinstance(error, (anthropic.APIConnectionError, openai.APIConnectionError, ConnectionError)):
        return classify(None, "connection", provider)

    status = getattr(error, "status_code", None)
    if not isinstance(status, int):
        status = None
    return classify(status, str(error), provider)
