"""
Failure classification for investigation attempts.

A failure is NON_RETRYABLE when repeating the same request cannot succeed
(bad credentials, malformed model output, rejected request). Everything else is
treated as TRANSIENT and retried by the job queue until attempts run out.
"""
from __future__ import annotations

import enum
import json

from pydantic import ValidationError

from ..core.config import Settings, get_settings
from .investigator import InvestigatorExecutionError, InvestigatorStructuredOutputError
from .key_source import ExpiredKeySourceError, InvalidKeySourceError
from .llm import LLMConfigurationError

NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 403, 404, 422})

_NON_RETRYABLE_ERRORS = (
    ExpiredKeySourceError,
    InvalidKeySourceError,
    InvestigatorStructuredOutputError,
    json.JSONDecodeError,
    ValidationError,
    LLMConfigurationError,
)


class FailureClass(str, enum.Enum):
    NON_RETRYABLE = "NON_RETRYABLE"
    TRANSIENT = "TRANSIENT"


class RetryDecision(str, enum.Enum):
    NON_RETRYABLE = "NON_RETRYABLE"
    TRANSIENT_EXHAUSTED = "TRANSIENT_EXHAUSTED"
    TRANSIENT_RETRYABLE = "TRANSIENT_RETRYABLE"

    @property
    def is_terminal(self) -> bool:
        return self is not RetryDecision.TRANSIENT_RETRYABLE


def _unwrap(error: BaseException) -> BaseException:
    while isinstance(error, InvestigatorExecutionError) and error.__cause__ is not None:
        error = error.__cause__
    return error


def _status_code(error: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_failure(error: BaseException) -> FailureClass:
    cause = _unwrap(error)
    if isinstance(cause, _NON_RETRYABLE_ERRORS):
        return FailureClass.NON_RETRYABLE
    if _status_code(cause) in NON_RETRYABLE_STATUS_CODES:
        return FailureClass.NON_RETRYABLE
    return FailureClass.TRANSIENT


def decide_retry(failure_class: FailureClass, is_last_attempt: bool) -> RetryDecision:
    if failure_class == FailureClass.NON_RETRYABLE:
        return RetryDecision.NON_RETRYABLE
    if is_last_attempt:
        return RetryDecision.TRANSIENT_EXHAUSTED
    return RetryDecision.TRANSIENT_RETRYABLE


def retry_countdown(retries: int, settings: Settings | None = None) -> int:
    """Exponential backoff in seconds for the next delivery after `retries` retries."""
    settings = settings or get_settings()
    delay = settings.RETRY_BACKOFF_BASE_SECONDS * (2 ** max(retries, 0))
    return min(delay, settings.RETRY_BACKOFF_MAX_SECONDS)


def format_error_for_log(error: BaseException) -> str:
    cause = _unwrap(error)
    message = f"{type(cause).__name__}: {cause}"
    status = _status_code(cause)
    if status is not None:
        message = f"{message} (status {status})"
    return message[:500]
