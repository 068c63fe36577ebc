"""Deterministic error classification for chunk retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from chunk_sync.scheduler.models import ErrorCategory

CLASSIFIER_VERSION = 1

_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "deadline exceeded",
    "etimedout",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "ratelimit",
    "rate_limit",
    "too many requests",
    "throttl",
    "429",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "network",
    "connection",
    "econnreset",
    "econnrefused",
    "enotfound",
    "dns",
    "could not resolve host",
    "socket",
)
_TRANSIENT_SERVER_PATTERNS: tuple[str, ...] = (
    "transient",
    "temporar",
    "service unavailable",
    "unavailable",
    "bad gateway",
    "502",
    "503",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "unauthenticated",
    "auth",
    "invalid token",
    "token expired",
    "expired token",
    "invalid_grant",
    "401",
)
_PERMISSION_PATTERNS: tuple[str, ...] = (
    "permission",
    "forbidden",
    "access denied",
    "insufficient scope",
    "403",
)
_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "not found",
    "not_found",
    "no such",
    "404",
)
_CONFLICT_PATTERNS: tuple[str, ...] = (
    "conflict",
    "already exists",
    "duplicate",
    "409",
)

_RULES: tuple[tuple[str, ErrorCategory, tuple[str, ...]], ...] = (
    ("timeout", ErrorCategory.TIMEOUT, _TIMEOUT_PATTERNS),
    ("rate_limit", ErrorCategory.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
    ("network", ErrorCategory.NETWORK, _NETWORK_PATTERNS),
    ("transient_server", ErrorCategory.TRANSIENT_SERVER, _TRANSIENT_SERVER_PATTERNS),
    ("auth", ErrorCategory.AUTH, _AUTH_PATTERNS),
    ("permission", ErrorCategory.PERMISSION, _PERMISSION_PATTERNS),
    ("not_found", ErrorCategory.NOT_FOUND, _NOT_FOUND_PATTERNS),
    ("conflict", ErrorCategory.CONFLICT, _CONFLICT_PATTERNS),
)


@dataclass(slots=True)
class ErrorClassification:
    """Normalized classification result."""

    category: ErrorCategory
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": CLASSIFIER_VERSION,
            "error_category": self.category.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_error(message: str | None) -> ErrorClassification:
    """Classify raw error text; rules are evaluated in order and the first match wins."""

    haystack = _normalize_text(message)
    if not haystack:
        return ErrorClassification(
            category=ErrorCategory.UNKNOWN,
            matched_rule="empty_message",
            matched_pattern=None,
        )

    for rule, category, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ErrorClassification(
                category=category,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return ErrorClassification(
        category=ErrorCategory.PROCESSING_ERROR,
        matched_rule="fallback_processing_error",
        matched_pattern=None,
    )


def classify(message: str | None) -> ErrorCategory:
    return classify_error(message).category


def classify_exception(error: BaseException) -> ErrorClassification:
    """Classify an exception raised while processing a chunk.

    A typed ``category`` attribute set by the raising collaborator wins over text
    matching, then a few builtin exception types are mapped directly.
    """

    category = getattr(error, "category", None)
    if isinstance(category, ErrorCategory):
        return ErrorClassification(
            category=category,
            matched_rule="typed_error_code",
            matched_pattern=None,
        )
    if isinstance(error, TimeoutError):
        return ErrorClassification(
            category=ErrorCategory.TIMEOUT,
            matched_rule="exception_type",
            matched_pattern=type(error).__name__,
        )
    if isinstance(error, ConnectionError):
        return ErrorClassification(
            category=ErrorCategory.NETWORK,
            matched_rule="exception_type",
            matched_pattern=type(error).__name__,
        )
    if isinstance(error, PermissionError):
        return ErrorClassification(
            category=ErrorCategory.PERMISSION,
            matched_rule="exception_type",
            matched_pattern=type(error).__name__,
        )
    return classify_error(describe_error(error))


def describe_error(error: BaseException) -> str:
    message = str(error).strip()
    if not message:
        return type(error).__name__
    return f"{type(error).__name__}: {message}"


def _normalize_text(message: str | None) -> str:
    if message is None:
        return ""
    return message.strip().lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
