"""
Investigator contract and the OpenAI-backed implementation.

The orchestrator only depends on `Investigator.investigate`; everything about
prompts and provider responses stays in this module. Every failure leaves as an
`InvestigatorExecutionError` whose `__cause__` is the original error, so the
retry classifier can tell deterministic failures from transient ones.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from openai import OpenAI
from pydantic import BaseModel, constr

from ..core.clock import utcnow
from .llm import limit_llm_concurrency

logger = logging.getLogger(__name__)

MAX_IMAGES_PER_INVESTIGATION = 10

INVESTIGATION_INSTRUCTIONS = (
    "You are a careful fact-checker. Read the post and identify factual claims that are "
    "demonstrably incorrect or misleading according to reliable sources.\n\n"
    "Rules:\n"
    "- Only flag claims you can refute with evidence; opinions, predictions and jokes are out of scope.\n"
    "- `text` must be copied verbatim from the post so it can be located on the page.\n"
    "- `context` is roughly one sentence of surrounding text containing `text`.\n"
    "- `summary` is one sentence stating what is wrong; `reasoning` explains why, citing sources.\n"
    "- Every claim needs at least one source with url, title and a supporting snippet.\n"
    "- If nothing is wrong, return an empty claims list.\n\n"
    'Respond with JSON only: {"claims": [{"text": ..., "context": ..., "summary": ..., '
    '"reasoning": ..., "sources": [{"url": ..., "title": ..., "snippet": ...}]}]}'
)

UPDATE_INSTRUCTIONS = (
    "This post was edited after a previous investigation. Re-check the whole post, keep prior "
    "claims that still apply verbatim, drop claims whose text no longer appears, and pay special "
    "attention to the changed passages in the diff."
)


# ---------------------------------------------------------------------------
# Result schema
# ---------------------------------------------------------------------------

class ClaimSourceResult(BaseModel):
    url: constr(min_length=1)
    title: str
    snippet: str


class InvestigationClaimResult(BaseModel):
    text: constr(min_length=1)
    context: str
    summary: str
    reasoning: str
    sources: list[ClaimSourceResult]


class InvestigationResult(BaseModel):
    claims: list[InvestigationClaimResult]


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

@dataclass
class InvestigatorInput:
    content_text: str
    platform: str
    url: str
    author_name: str | None = None
    post_published_at: str | None = None
    image_urls: list[str] = field(default_factory=list)
    has_video: bool = False
    is_update: bool = False
    old_claims: list[InvestigationClaimResult] = field(default_factory=list)
    content_diff: str | None = None


@dataclass
class AttemptAudit:
    """Request/response record of one investigator call, persisted per attempt."""
    request_model: str
    request_instructions: str
    request_input: str
    started_at: datetime
    completed_at: datetime | None = None
    response_id: str | None = None
    response_status: str | None = None
    response_model_version: str | None = None
    response_output_text: str | None = None
    usage: dict[str, int] | None = None
    error_name: str | None = None
    error_message: str | None = None
    error_status_code: int | None = None

    @property
    def failed(self) -> bool:
        return self.error_name is not None


@dataclass
class InvestigatorOutput:
    result: InvestigationResult
    model_version: str | None
    attempt_audit: AttemptAudit


class InvestigatorStructuredOutputError(Exception):
    """The model answered, but not with a usable result document."""


class InvestigatorExecutionError(Exception):
    """Wraps any investigator failure together with the audit of the attempt."""

    def __init__(self, message: str, attempt_audit: AttemptAudit | None = None) -> None:
        super().__init__(message)
        self.attempt_audit = attempt_audit


class Investigator(ABC):
    @abstractmethod
    def investigate(self, investigator_input: InvestigatorInput) -> InvestigatorOutput:
        ...


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------

def _read_status_code(error: BaseException) -> int | None:
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def parse_investigation_result(output_text: str | None) -> InvestigationResult:
    if not output_text:
        raise InvestigatorStructuredOutputError("Model returned an empty response")
    # json.JSONDecodeError / ValidationError propagate; both are deterministic
    payload = json.loads(output_text)
    return InvestigationResult.model_validate(payload)


def build_user_prompt(investigator_input: InvestigatorInput) -> str:
    lines = [
        f"Platform: {investigator_input.platform}",
        f"URL: {investigator_input.url}",
    ]
    if investigator_input.author_name:
        lines.append(f"Author: {investigator_input.author_name}")
    if investigator_input.post_published_at:
        lines.append(f"Published: {investigator_input.post_published_at}")
    if investigator_input.has_video:
        lines.append("Note: the post contains video that cannot be inspected.")

    if investigator_input.is_update:
        lines.append("")
        lines.append(UPDATE_INSTRUCTIONS)
        if investigator_input.old_claims:
            previous = [c.model_dump() for c in investigator_input.old_claims]
            lines.append("Previous claims:")
            lines.append(json.dumps(previous, ensure_ascii=False))
        if investigator_input.content_diff:
            lines.append("Content diff:")
            lines.append(investigator_input.content_diff)

    lines.append("")
    lines.append("Post content:")
    lines.append(investigator_input.content_text)
    return "\n".join(lines)


class OpenAIInvestigator(Investigator):
    def __init__(self, client: OpenAI, model: str) -> None:
        self.client = client
        self.model = model

    def investigate(self, investigator_input: InvestigatorInput) -> InvestigatorOutput:
        user_prompt = build_user_prompt(investigator_input)
        audit = AttemptAudit(
            request_model=self.model,
            request_instructions=INVESTIGATION_INSTRUCTIONS,
            request_input=user_prompt,
            started_at=utcnow(),
        )

        content: list[dict[str, Any]] = [{"type": "text", "text": user_prompt}]
        for image_url in investigator_input.image_urls[:MAX_IMAGES_PER_INVESTIGATION]:
            content.append({"type": "image_url", "image_url": {"url": image_url}})

        try:
            with limit_llm_concurrency():
                resp = self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": INVESTIGATION_INSTRUCTIONS},
                        {"role": "user", "content": content},
                    ],
                    response_format={"type": "json_object"},
                )

            choice = resp.choices[0]
            audit.response_id = resp.id
            audit.response_model_version = resp.model
            audit.response_status = choice.finish_reason
            audit.response_output_text = choice.message.content
            if resp.usage is not None:
                audit.usage = {
                    "input_tokens": resp.usage.prompt_tokens,
                    "output_tokens": resp.usage.completion_tokens,
                    "total_tokens": resp.usage.total_tokens,
                }

            if choice.finish_reason == "length":
                raise InvestigatorStructuredOutputError("Model output was truncated")

            result = parse_investigation_result(choice.message.content)
        except Exception as e:
            audit.completed_at = utcnow()
            audit.error_name = type(e).__name__
            audit.error_message = str(e)[:2000]
            audit.error_status_code = _read_status_code(e)
            raise InvestigatorExecutionError(f"Investigation call failed: {e}", attempt_audit=audit) from e

        audit.completed_at = utcnow()
        logger.info(
            "Investigator returned %d claims",
            len(result.claims),
            extra={"step": "investigate"},
        )
        return InvestigatorOutput(result=result, model_version=resp.model, attempt_audit=audit)


__all__ = [
    "AttemptAudit",
    "ClaimSourceResult",
    "InvestigationClaimResult",
    "InvestigationResult",
    "Investigator",
    "InvestigatorExecutionError",
    "InvestigatorInput",
    "InvestigatorOutput",
    "InvestigatorStructuredOutputError",
    "OpenAIInvestigator",
]
