from __future__ import annotations

from functools import lru_cache
from contextlib import contextmanager
from threading import BoundedSemaphore

from openai import OpenAI

from ..core.config import get_settings

_llm_semaphore: BoundedSemaphore | None = None


class LLMConfigurationError(RuntimeError):
    """Raised when no usable OpenAI credential is configured."""


def _get_semaphore() -> BoundedSemaphore:
    """
    Lazy-initialised global semaphore for limiting concurrent LLM calls.
    """
    global _llm_semaphore
    if _llm_semaphore is None:
        settings = get_settings()
        _llm_semaphore = BoundedSemaphore(settings.LLM_MAX_CONCURRENCY)
    return _llm_semaphore


@contextmanager
def limit_llm_concurrency():
    """
    Simple context manager to bound concurrent calls to the LLM provider.

    Usage:

        with limit_llm_concurrency():
            client.chat.completions.create(...)
    """
    sem = _get_semaphore()
    sem.acquire()
    try:
        yield
    finally:
        sem.release()


def build_llm_client(api_key: str) -> OpenAI:
    """
    Client for a specific key. Used for user-supplied keys, which must never be
    cached beyond the run that carries them.
    """
    key = (api_key or "").strip()
    if not key:
        raise LLMConfigurationError("Empty OpenAI API key.")
    # Retries are owned by the job queue; a client-side retry would hide
    # transient failures from the retry classifier.
    return OpenAI(api_key=key, max_retries=0, timeout=get_settings().LLM_TIMEOUT_SECONDS)


@lru_cache(maxsize=1)
def get_server_llm_client() -> OpenAI:
    """
    Process-wide client for the instance's own OpenAI key.
    """
    settings = get_settings()
    if not settings.OPENAI_API_KEY:
        raise LLMConfigurationError(
            "No server OpenAI key configured. Set OPENAI_API_KEY or attach a user key."
        )
    return build_llm_client(settings.OPENAI_API_KEY)
