from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Uuid

from ..core.clock import utcnow
from ..core.db import Base


class InvestigationKeySource(Base):
    """
    User-supplied OpenAI key attached to a run, encrypted at rest.

    run_id is the primary key, so only the first attached credential survives.
    Deleted when the run reaches a terminal state.
    """
    __tablename__ = "investigation_key_sources"

    run_id = Column(Uuid(as_uuid=True), ForeignKey("investigation_runs.id", ondelete="CASCADE"), primary_key=True)
    ciphertext = Column(Text, nullable=False)   # base64 AES-GCM ciphertext + tag
    nonce = Column(String, nullable=False)      # base64
    key_id = Column(String, nullable=False)     # encryption key generation
    fingerprint = Column(String(16), nullable=False)  # short SHA256 of the plaintext, safe to expose
    expires_at = Column(DateTime, index=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
