"""Deterministic agent failure classification for the run loop stop policy."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from taskloop.orchestrator.models import ErrorKind

_RATE_LIMIT_PATTERNS: tuple[str, ...] = ("rate limit", "usage limit", "429")
_OVERLOAD_PATTERNS: tuple[str, ...] = ("overload", "503")
_AUTH_PATTERNS: tuple[str, ...] = ("401", "unauthorized", "authentication")
_NETWORK_PATTERNS: tuple[str, ...] = (
    "econnrefused",
    "connection refused",
    "enotfound",
    "host not found",
    "could not resolve host",
    "timeout",
    "network",
)
_API_ERROR_PATTERNS: tuple[str, ...] = ("api error",)


@dataclass(slots=True, frozen=True)
class ClassificationRule:
    """One ordered rule: predicate over lower-cased error text mapped to a kind."""

    name: str
    kind: ErrorKind
    predicate: Callable[[str], str | None]


@dataclass(slots=True)
class FailureClassification:
    """Classifier verdict with the rule and pattern that produced it."""

    kind: ErrorKind
    matched_rule: str
    matched_pattern: str | None


def _any_of(patterns: tuple[str, ...]) -> Callable[[str], str | None]:
    def _predicate(haystack: str) -> str | None:
        return _first_match(haystack, patterns)

    return _predicate


def _rate_limit(haystack: str) -> str | None:
    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return pattern
    if "400" in haystack and "limit" in haystack:
        return "400+limit"
    return None


CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule("rate_limit", ErrorKind.RATE_LIMIT, _rate_limit),
    ClassificationRule("api_overload", ErrorKind.API_OVERLOAD, _any_of(_OVERLOAD_PATTERNS)),
    ClassificationRule("auth_error", ErrorKind.AUTH_ERROR, _any_of(_AUTH_PATTERNS)),
    ClassificationRule("network_error", ErrorKind.NETWORK_ERROR, _any_of(_NETWORK_PATTERNS)),
    ClassificationRule("api_error", ErrorKind.UNKNOWN, _any_of(_API_ERROR_PATTERNS)),
)


def classify_failure(error_text: str) -> FailureClassification:
    """Walk the rule table in order; first match wins, no match is a task failure."""

    haystack = error_text.lower()
    for rule in CLASSIFICATION_RULES:
        pattern = rule.predicate(haystack)
        if pattern is not None:
            return FailureClassification(
                kind=rule.kind,
                matched_rule=rule.name,
                matched_pattern=pattern,
            )
    return FailureClassification(
        kind=ErrorKind.TASK_FAILURE,
        matched_rule="fallback_task_failure",
        matched_pattern=None,
    )


def classify(error_text: str) -> ErrorKind:
    return classify_failure(error_text).kind


def is_api_level_error(kind: ErrorKind | None) -> bool:
    """API-level failures halt the run; task failures let the loop continue."""

    return kind is not None and kind != ErrorKind.TASK_FAILURE


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
