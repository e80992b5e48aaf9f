"""Error classification and bounded recovery.

``RecoverySystem.recover`` maps a raw exception plus its execution context
to a verdict: either a recoverable action carrying a full replacement
context for the next attempt, or an escalation to the caller. Attempts are
counted per ``(classification, phase)`` in a ``RetryLedger``; once a key
has been tried more than ``max_retries`` times the verdict is always
``escalate`` until the key is reset.
"""

from __future__ import annotations

import re
import threading
import traceback
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from codecrew.config import get_config
from codecrew.exceptions import LLMError
from codecrew.logging import get_logger

log = get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_TIMEOUT_MS = 120000
DEFAULT_PROVIDER_RING = ("anthropic", "openai", "google")
RATE_LIMIT_WAIT_MS = 60000


class ErrorClassification(str, Enum):
    SYNTAX_ERROR = "syntax_error"
    TIMEOUT = "timeout"
    DEPENDENCY_MISSING = "dependency_missing"
    TEST_FAILURE = "test_failure"
    LLM_RATE_LIMIT = "llm_rate_limit"
    LLM_OVERLOADED = "llm_overloaded"
    LLM_INVALID_REQUEST = "llm_invalid_request"
    LLM_ERROR = "llm_error"
    BUILD_ERROR = "build_error"
    TYPE_ERROR = "type_error"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


class RecoveryAction(str, Enum):
    REGENERATE = "regenerate"
    RETRY_WITH_LONGER_TIMEOUT = "retry_with_longer_timeout"
    INSTALL_DEPENDENCY = "install_dependency"
    ANALYZE_AND_FIX = "analyze_and_fix"
    WAIT_AND_RETRY = "wait_and_retry"
    FALLBACK_PROVIDER = "fallback_provider"
    RETRY = "retry"
    FIX_BUILD_ERRORS = "fix_build_errors"
    FIX_TYPE_ERRORS = "fix_type_errors"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    ESCALATE = "escalate"


@dataclass(frozen=True)
class RecoveryContext:
    """Where a failure happened and the knobs the next attempt may change."""

    phase: str
    task: Any = None
    iteration: int = 0
    timeout: int | None = None
    provider: str | None = None


@dataclass(frozen=True)
class RecoveryResult:
    action: RecoveryAction
    recovered: bool
    message: str
    classification: ErrorClassification = ErrorClassification.UNKNOWN
    new_context: RecoveryContext | None = None
    details: dict[str, Any] = field(default_factory=dict)


class RetryLedger:
    """Attempt counts per ``(classification, phase)``.

    Shared by everything that consults one ``RecoverySystem``; increments
    are atomic so the bound stays exact when several delegated tasks fail
    at once. Entries never expire on their own.
    """

    def __init__(self):
        self._counts: dict[tuple[str, str], int] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(classification: ErrorClassification | str, phase: str) -> tuple[str, str]:
        return (ErrorClassification(classification).value, str(phase))

    def increment(self, classification: ErrorClassification | str, phase: str) -> int:
        """Record one attempt and return the new count."""
        key = self._key(classification, phase)
        with self._lock:
            count = self._counts.get(key, 0) + 1
            self._counts[key] = count
            return count

    def count(self, classification: ErrorClassification | str, phase: str) -> int:
        with self._lock:
            return self._counts.get(self._key(classification, phase), 0)

    def reset(self, classification: ErrorClassification | str, phase: str) -> None:
        with self._lock:
            self._counts.pop(self._key(classification, phase), None)

    def reset_all(self) -> None:
        with self._lock:
            self._counts.clear()

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {f"{cls}:{phase}": count for (cls, phase), count in self._counts.items()}


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_DEPENDENCY_PATTERNS = [
    re.compile(r"cannot find module ['\"]([^'\"]+)['\"]", re.IGNORECASE),
    re.compile(r"no module named ['\"]([^'\"]+)['\"]", re.IGNORECASE),
    re.compile(r"missing dependency[:\s]+['\"]?([A-Za-z0-9_.@/\-]+)", re.IGNORECASE),
]


def _error_text(error: BaseException) -> tuple[str, str]:
    message = str(error).lower()
    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__)).lower()
    return message, stack


def _is_llm_related(error: BaseException, message: str, stack: str) -> bool:
    if isinstance(error, LLMError):
        return True
    if any(marker in message for marker in ("api error", "model error")):
        return True
    return any(vendor in stack for vendor in ("anthropic", "openai"))


def classify_error(error: BaseException) -> ErrorClassification:
    """Bucket an error. Rules are ordered; the first match wins."""
    message, stack = _error_text(error)
    llm_related = _is_llm_related(error, message, stack)

    if isinstance(error, SyntaxError) or "syntax" in message or "unexpected token" in message:
        return ErrorClassification.SYNTAX_ERROR

    if isinstance(error, TimeoutError) or "timeout" in message or "timed out" in message:
        return ErrorClassification.TIMEOUT

    if (
        isinstance(error, ModuleNotFoundError)
        or "cannot find module" in message
        or "no module named" in message
        or "missing dependency" in message
        or "enoent" in message
    ):
        return ErrorClassification.DEPENDENCY_MISSING

    if "test" in message and ("failed" in message or "error" in message):
        return ErrorClassification.TEST_FAILURE

    if "rate limit" in message or "rate_limit" in message or (llm_related and "too many requests" in message):
        return ErrorClassification.LLM_RATE_LIMIT

    if "overloaded" in message or (llm_related and "capacity" in message):
        return ErrorClassification.LLM_OVERLOADED

    if (
        "invalid request" in message
        or "invalid_request" in message
        or "bad request" in message
        or (llm_related and "invalid" in message)
    ):
        return ErrorClassification.LLM_INVALID_REQUEST

    if llm_related:
        return ErrorClassification.LLM_ERROR

    if "build failed" in message or "compilation error" in message:
        return ErrorClassification.BUILD_ERROR

    if "type error" in message or "incompatible type" in message:
        return ErrorClassification.TYPE_ERROR

    if (
        isinstance(error, ConnectionError)
        or "network" in message
        or "econnrefused" in message
        or "connection refused" in message
        or "enotfound" in message
        or "fetch failed" in message
    ):
        return ErrorClassification.NETWORK_ERROR

    return ErrorClassification.UNKNOWN


def extract_missing_dependency(error: BaseException) -> str | None:
    """Pull the missing module name out of an error, if it names one."""
    name = getattr(error, "name", None)
    if isinstance(error, ModuleNotFoundError) and name:
        return str(name)
    text = str(error)
    for pattern in _DEPENDENCY_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


# ---------------------------------------------------------------------------
# RecoverySystem
# ---------------------------------------------------------------------------


class RecoverySystem:
    """Classifies failures and decides how (or whether) to retry them."""

    def __init__(
        self,
        ledger: RetryLedger | None = None,
        max_retries: int | None = None,
        base_timeout_ms: int | None = None,
        provider_ring: list[str] | tuple[str, ...] | None = None,
    ):
        cfg = get_config().recovery
        self.ledger = ledger if ledger is not None else RetryLedger()
        self.max_retries = max_retries if max_retries is not None else cfg.max_retries
        self.base_timeout_ms = base_timeout_ms if base_timeout_ms is not None else cfg.base_timeout_ms
        self.provider_ring = tuple(provider_ring or cfg.provider_ring or DEFAULT_PROVIDER_RING)

    def recover(self, error: BaseException, context: RecoveryContext) -> RecoveryResult:
        classification = classify_error(error)
        log.warning(
            "Attempting recovery",
            classification=classification.value,
            phase=context.phase,
            error=str(error),
        )

        attempts = self.ledger.increment(classification, context.phase)
        if attempts > self.max_retries:
            return RecoveryResult(
                action=RecoveryAction.ESCALATE,
                recovered=False,
                classification=classification,
                message=(
                    f"Max retries ({self.max_retries}) exceeded for {classification.value} "
                    f"in {context.phase}: {error}. Manual intervention required."
                ),
                details={"attempts": attempts},
            )

        result = self._apply_strategy(classification, error, context)
        log.info(
            "Recovery verdict",
            classification=classification.value,
            action=result.action.value,
            recovered=result.recovered,
            attempt=attempts,
        )
        return result

    def _apply_strategy(
        self,
        classification: ErrorClassification,
        error: BaseException,
        context: RecoveryContext,
    ) -> RecoveryResult:
        C = ErrorClassification
        if classification == C.SYNTAX_ERROR:
            return self._recovered(
                classification,
                RecoveryAction.REGENERATE,
                "Syntax error detected. Will regenerate code with syntax validation.",
                context,
            )
        if classification == C.TIMEOUT:
            new_timeout = (context.timeout or self.base_timeout_ms) * 2
            return self._recovered(
                classification,
                RecoveryAction.RETRY_WITH_LONGER_TIMEOUT,
                f"Timeout occurred. Retrying with {new_timeout / 1000:g}s timeout.",
                replace(context, timeout=new_timeout),
            )
        if classification == C.DEPENDENCY_MISSING:
            dependency = extract_missing_dependency(error)
            if not dependency:
                return self._escalate(
                    classification,
                    f"Could not identify missing dependency in {context.phase}: {error}",
                )
            return self._recovered(
                classification,
                RecoveryAction.INSTALL_DEPENDENCY,
                f"Installing missing dependency: {dependency}",
                context,
                dependency=dependency,
            )
        if classification == C.TEST_FAILURE:
            return self._recovered(
                classification,
                RecoveryAction.ANALYZE_AND_FIX,
                "Test failures detected. Will analyze root causes and generate fixes.",
                context,
            )
        if classification == C.LLM_RATE_LIMIT:
            return self._recovered(
                classification,
                RecoveryAction.WAIT_AND_RETRY,
                f"Rate limit hit. Waiting {RATE_LIMIT_WAIT_MS // 1000}s before retry.",
                context,
                wait_ms=RATE_LIMIT_WAIT_MS,
            )
        if classification == C.LLM_OVERLOADED:
            return self._recovered(
                classification,
                RecoveryAction.FALLBACK_PROVIDER,
                "Primary model overloaded. Falling back to alternate provider.",
                replace(context, provider=self.next_provider(context.provider)),
            )
        if classification == C.LLM_INVALID_REQUEST:
            return self._escalate(
                classification,
                f"Invalid LLM request in {context.phase}: {error}. Request parameters may need adjustment.",
            )
        if classification == C.LLM_ERROR:
            return self._recovered(
                classification,
                RecoveryAction.RETRY,
                "LLM error occurred. Retrying with same parameters.",
                context,
            )
        if classification == C.BUILD_ERROR:
            return self._recovered(
                classification,
                RecoveryAction.FIX_BUILD_ERRORS,
                "Build errors detected. Will analyze and fix compilation issues.",
                context,
            )
        if classification == C.TYPE_ERROR:
            return self._recovered(
                classification,
                RecoveryAction.FIX_TYPE_ERRORS,
                "Type errors detected. Will regenerate with correct types.",
                context,
            )
        if classification == C.NETWORK_ERROR:
            return self._recovered(
                classification,
                RecoveryAction.RETRY_WITH_BACKOFF,
                "Network error. Retrying with exponential backoff.",
                context,
            )
        return self._escalate(
            classification,
            f"Unrecoverable error in {context.phase}: {error}\n\nPlease review and provide guidance.",
        )

    @staticmethod
    def _recovered(
        classification: ErrorClassification,
        action: RecoveryAction,
        message: str,
        new_context: RecoveryContext,
        **details: Any,
    ) -> RecoveryResult:
        return RecoveryResult(
            action=action,
            recovered=True,
            classification=classification,
            message=message,
            new_context=new_context,
            details=details,
        )

    @staticmethod
    def _escalate(classification: ErrorClassification, message: str) -> RecoveryResult:
        return RecoveryResult(
            action=RecoveryAction.ESCALATE,
            recovered=False,
            classification=classification,
            message=message,
        )

    def next_provider(self, current: str | None) -> str:
        """Next provider in the fallback ring; unknown providers restart it."""
        ring = self.provider_ring
        current = current or ring[0]
        if current not in ring:
            return ring[0]
        return ring[(ring.index(current) + 1) % len(ring)]

    def reset_retries(self, classification: ErrorClassification | str, phase: str) -> None:
        self.ledger.reset(classification, phase)

    def reset_all_retries(self) -> None:
        self.ledger.reset_all()
