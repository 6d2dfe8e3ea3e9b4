"""Deterministic provider failure classification for dispatcher retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from ai_task_queue.providers.base import ProviderError, ProviderTimeoutError
from ai_task_queue.queue.models import FailureClass

_AUTH_STATUS_CODES = frozenset({401, 403})
_INVALID_REQUEST_STATUS_CODES = frozenset({400, 404, 413, 422})
_BILLING_STATUS_CODES = frozenset({402})
_RATE_LIMIT_STATUS_CODES = frozenset({429})
_TRANSIENT_STATUS_CODES = frozenset({408, 409, 425})

_BILLING_PATTERNS: tuple[str, ...] = (
    "billing",
    "payment",
    "credits",
    "insufficient",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_INVALID_REQUEST_PATTERNS: tuple[str, ...] = (
    "invalid request",
    "bad request",
    "context length",
    "too long",
    "unknown provider",
    "model not found",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "429",
    "too many requests",
    "rate limit",
    "quota",
    "resource_exhausted",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "dns",
    "overloaded",
)


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class.is_transient

    def to_event_details(self, *, provider: str) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "provider": provider,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_provider_failure(  # noqa: PLR0911
    *,
    provider: str,
    error: BaseException,
) -> ProviderFailureClassification:
    """Classify a failed provider call into a deterministic retry class."""

    if isinstance(error, ProviderTimeoutError | TimeoutError):
        return _result(provider, FailureClass.TIMEOUT, "timeout", None)

    status_code = error.status_code if isinstance(error, ProviderError) else None
    if status_code is not None:
        classification = _classify_status_code(provider, status_code)
        if classification is not None:
            return classification

    haystack = str(error).lower()

    pattern = _first_match(haystack, _BILLING_PATTERNS)
    if pattern is not None:
        return _result(provider, FailureClass.BILLING_OR_QUOTA, "billing_or_quota", pattern)

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return _result(provider, FailureClass.ACCESS_OR_AUTH, "access_or_auth", pattern)

    pattern = _first_match(haystack, _INVALID_REQUEST_PATTERNS)
    if pattern is not None:
        return _result(provider, FailureClass.INVALID_REQUEST, "invalid_request", pattern)

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return _result(provider, FailureClass.RATE_LIMITED, "rate_limit", pattern)

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or isinstance(error, ConnectionError):
        return _result(
            provider,
            FailureClass.PROVIDER_TRANSIENT,
            "generic_transient" if pattern is not None else "connection_error",
            pattern,
        )

    return _result(provider, FailureClass.PROVIDER_NON_RETRYABLE, "fallback_non_retryable", None)


def _classify_status_code(  # noqa: PLR0911
    provider: str,
    status_code: int,
) -> ProviderFailureClassification | None:
    rule = f"status_{status_code}"
    if status_code in _AUTH_STATUS_CODES:
        return _result(provider, FailureClass.ACCESS_OR_AUTH, rule, None)
    if status_code in _BILLING_STATUS_CODES:
        return _result(provider, FailureClass.BILLING_OR_QUOTA, rule, None)
    if status_code in _INVALID_REQUEST_STATUS_CODES:
        return _result(provider, FailureClass.INVALID_REQUEST, rule, None)
    if status_code in _RATE_LIMIT_STATUS_CODES:
        return _result(provider, FailureClass.RATE_LIMITED, rule, None)
    if status_code in _TRANSIENT_STATUS_CODES or status_code >= 500:
        return _result(provider, FailureClass.PROVIDER_TRANSIENT, rule, None)
    return None


def _result(
    provider: str,
    failure_class: FailureClass,
    matched_rule: str,
    matched_pattern: str | None,
) -> ProviderFailureClassification:
    return ProviderFailureClassification(
        failure_class=failure_class,
        reason_code=f"{provider}_{failure_class.value}",
        matched_rule=matched_rule,
        matched_pattern=matched_pattern,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
