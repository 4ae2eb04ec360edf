from dataclasses import dataclass
from uuid import UUID, uuid4
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Security
from fastapi.security.api_key import APIKeyHeader
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..core.db import get_db
from ..schemas.investigation import (
    ClaimOut,
    InvestigateNowRequest,
    InvestigateNowResponse,
    InvestigationOut,
    KeySourceOut,
)
from ..services.intake import (
    ContentMismatchError,
    EmptyContentError,
    FetchCanonical,
    InvestigateNowInput,
    InvestigationNotFoundError,
    InvestigationWordLimitError,
    get_investigation_view,
    investigate_now,
)
from ..services.key_source import KeySourceConfigurationError
from ..services.queue import Enqueue, enqueue_investigation_run
from ..services.view_credit import derive_viewer_identity, maybe_increment_unique_view_score

router = APIRouter(tags=["investigations"])

settings = get_settings()
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
openai_key_header = APIKeyHeader(name="X-OpenAI-Api-Key", auto_error=False)
logger = logging.getLogger(__name__)


@dataclass
class CallerCredentials:
    instance_authorized: bool
    user_openai_key: str | None = None
    instance_api_key: str | None = None


def _instance_key_valid(api_key: str | None) -> bool:
    expected = settings.API_AUTH_KEY

    # In dev with no configured key, skip instance auth for convenience
    if settings.ENV == "dev" and not expected:
        return True
    if not expected:
        return False
    return api_key == expected


def resolve_caller(
    api_key: str | None = Security(api_key_header),
    openai_key: str | None = Security(openai_key_header),
) -> CallerCredentials:
    """
    A request is authorised by the instance key (X-API-Key) or by bringing its
    own OpenAI key (X-OpenAI-Api-Key). Both may be present.
    """
    user_key = (openai_key or "").strip() or None
    if _instance_key_valid(api_key):
        return CallerCredentials(instance_authorized=True, user_openai_key=user_key, instance_api_key=api_key or None)
    if user_key:
        return CallerCredentials(instance_authorized=False, user_openai_key=user_key)
    raise HTTPException(status_code=401, detail="Valid API key or X-OpenAI-Api-Key required")


def get_enqueue() -> Enqueue:
    return enqueue_investigation_run


def get_canonical_fetcher() -> FetchCanonical | None:
    # No origin fetchers are wired in; intake falls back to the observed content
    return None


@router.post("/investigations/investigate-now", response_model=InvestigateNowResponse)
def investigate_now_route(
    payload: InvestigateNowRequest,
    request: Request,
    db: Session = Depends(get_db),
    caller: CallerCredentials = Depends(resolve_caller),
    enqueue: Enqueue = Depends(get_enqueue),
    fetch_canonical: FetchCanonical | None = Depends(get_canonical_fetcher),
):
    request_id = str(uuid4())
    logger.info(
        "investigate-now requested",
        extra={"request_id": request_id, "step": "investigate_now"},
    )

    try:
        result = investigate_now(
            db,
            InvestigateNowInput(**payload.model_dump()),
            user_api_key=caller.user_openai_key,
            fetch_canonical=fetch_canonical,
            enqueue=enqueue,
        )
    except (InvestigationWordLimitError, ContentMismatchError, EmptyContentError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except KeySourceConfigurationError:
        logger.exception("User key supplied but key storage is not configured", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="User-supplied keys are not accepted by this instance")

    # Every accepted observation counts towards the post's selector priority
    viewer = derive_viewer_identity(
        client_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        instance_api_key=caller.instance_api_key,
    )
    maybe_increment_unique_view_score(db, result.post_id, viewer)

    logger.info(
        "investigate-now resolved",
        extra={
            "request_id": request_id,
            "investigation_id": str(result.investigation_id),
            "step": f"investigate_now:{result.status.value}",
        },
    )
    return InvestigateNowResponse(
        investigation_id=result.investigation_id,
        status=result.status,
        provenance=result.provenance,
        claims=[ClaimOut.model_validate(c) for c in result.claims],
        key_source=KeySourceOut.model_validate(result.key_source) if result.key_source else None,
    )


@router.get("/investigations/{investigation_id}", response_model=InvestigationOut)
def get_investigation(
    investigation_id: UUID,
    db: Session = Depends(get_db),
    _: CallerCredentials = Depends(resolve_caller),
):
    try:
        investigation, claims = get_investigation_view(db, investigation_id)
    except InvestigationNotFoundError:
        raise HTTPException(status_code=404, detail="Investigation not found")

    out = InvestigationOut.model_validate(investigation)
    out.claims = [ClaimOut.model_validate(c) for c in claims]
    return out
