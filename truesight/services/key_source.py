"""
Encrypted-at-rest storage for user-supplied OpenAI keys attached to a run.

Keys are sealed with AES-256-GCM, bound to the run id as associated data, and
deleted when the run reaches a terminal state. Only metadata (fingerprint,
expiry) is ever returned to callers.
"""
from __future__ import annotations

import base64
import enum
import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.config import Settings, get_settings
from ..models.investigation import Investigation, TERMINAL_STATUSES
from ..models.investigation_run import InvestigationRun
from ..models.key_source import InvestigationKeySource

logger = logging.getLogger(__name__)

NONCE_BYTES = 12


class KeySourceConfigurationError(RuntimeError):
    """KEY_SOURCE_ENCRYPTION_KEY is not configured, so user keys cannot be stored."""


class ExpiredKeySourceError(Exception):
    pass


class InvalidKeySourceError(Exception):
    pass


class AttachResult(str, enum.Enum):
    ATTACHED = "ATTACHED"
    ALREADY_ATTACHED = "ALREADY_ATTACHED"
    TERMINAL = "TERMINAL"
    MISSING_RUN = "MISSING_RUN"


@dataclass
class KeySourceMetadata:
    fingerprint: str
    key_id: str
    expires_at: datetime
    created_at: datetime


def fingerprint_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]


def _cipher(settings: Settings) -> AESGCM:
    secret = settings.KEY_SOURCE_ENCRYPTION_KEY
    if not secret:
        raise KeySourceConfigurationError("KEY_SOURCE_ENCRYPTION_KEY is not set")
    # Any configured secret is stretched to a 256-bit key
    return AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())


def encrypt_api_key(run_id: UUID, api_key: str, settings: Settings | None = None) -> tuple[str, str]:
    settings = settings or get_settings()
    nonce = os.urandom(NONCE_BYTES)
    sealed = _cipher(settings).encrypt(nonce, api_key.encode("utf-8"), str(run_id).encode("ascii"))
    return base64.b64encode(sealed).decode("ascii"), base64.b64encode(nonce).decode("ascii")


def decrypt_api_key(run_id: UUID, ciphertext: str, nonce: str, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    try:
        plain = _cipher(settings).decrypt(
            base64.b64decode(nonce),
            base64.b64decode(ciphertext),
            str(run_id).encode("ascii"),
        )
    except (InvalidTag, ValueError) as e:
        raise InvalidKeySourceError("Attached key could not be decrypted") from e
    return plain.decode("utf-8")


def _to_metadata(row: InvestigationKeySource) -> KeySourceMetadata:
    return KeySourceMetadata(
        fingerprint=row.fingerprint,
        key_id=row.key_id,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def get_key_source_metadata(db: Session, run_id: UUID) -> KeySourceMetadata | None:
    row = db.get(InvestigationKeySource, run_id)
    return _to_metadata(row) if row else None


def attach_key_source(
    db: Session,
    run_id: UUID,
    api_key: str,
    settings: Settings | None = None,
) -> AttachResult:
    """
    Attach `api_key` to the run unless one is already attached.

    The investigation row is locked and re-read before the insert, so a key is
    never stored against a run that has already completed or failed: a
    concurrent terminal transition either commits first (and is seen here) or
    waits for this insert and consumes the key itself.

    The run_id primary key makes the first committed credential win; a losing
    concurrent insert is rolled back and reported as ALREADY_ATTACHED.
    """
    settings = settings or get_settings()
    ciphertext, nonce = encrypt_api_key(run_id, api_key, settings)

    investigation = (
        db.query(Investigation)
        .join(InvestigationRun, InvestigationRun.investigation_id == Investigation.id)
        .filter(InvestigationRun.id == run_id)
        .with_for_update(of=Investigation)
        .populate_existing()
        .first()
    )
    if investigation is None:
        db.rollback()
        return AttachResult.MISSING_RUN
    if investigation.status in TERMINAL_STATUSES:
        db.rollback()
        return AttachResult.TERMINAL
    if db.get(InvestigationKeySource, run_id, populate_existing=True) is not None:
        db.rollback()
        return AttachResult.ALREADY_ATTACHED

    now = utcnow()
    db.add(
        InvestigationKeySource(
            run_id=run_id,
            ciphertext=ciphertext,
            nonce=nonce,
            key_id=settings.KEY_SOURCE_KEY_ID,
            fingerprint=fingerprint_api_key(api_key),
            expires_at=now + timedelta(seconds=settings.KEY_SOURCE_TTL_SECONDS),
            created_at=now,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return AttachResult.ALREADY_ATTACHED

    logger.info("Attached user key source", extra={"run_id": str(run_id)})
    return AttachResult.ATTACHED


def resolve_run_key(db: Session, run_id: UUID, settings: Settings | None = None) -> str | None:
    """
    Plaintext user key for the run, or None when the run should use the server key.
    """
    settings = settings or get_settings()
    row = db.get(InvestigationKeySource, run_id)
    if row is None:
        return None
    if row.expires_at <= utcnow():
        raise ExpiredKeySourceError("Attached key source has expired")
    if row.key_id != settings.KEY_SOURCE_KEY_ID:
        raise InvalidKeySourceError(f"Attached key was sealed with unknown key id {row.key_id!r}")
    return decrypt_api_key(run_id, row.ciphertext, row.nonce, settings)


def consume_key_source(db: Session, run_id: UUID) -> int:
    """Delete the run's key source. Joins the caller's transaction; does not commit."""
    return (
        db.query(InvestigationKeySource)
        .filter(InvestigationKeySource.run_id == run_id)
        .delete(synchronize_session=False)
    )
