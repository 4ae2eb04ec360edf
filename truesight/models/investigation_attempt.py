from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON, Uuid, UniqueConstraint
import uuid

from ..core.clock import utcnow
from ..core.db import Base


class AttemptOutcome:
    """Outcome values for InvestigationAttempt."""
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class InvestigationAttempt(Base):
    """
    Audit of a single investigator call (one row per attempt number).

    Re-delivered attempts overwrite the row for the same attempt number.
    """
    __tablename__ = "investigation_attempts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    investigation_id = Column(
        Uuid(as_uuid=True), ForeignKey("investigations.id", ondelete="CASCADE"), index=True, nullable=False
    )
    attempt_number = Column(Integer, nullable=False)
    outcome = Column(String(16), nullable=False)

    # Request
    request_model = Column(String, nullable=True)
    request_instructions = Column(Text, nullable=True)
    request_input = Column(Text, nullable=True)

    # Response
    response_id = Column(String, nullable=True)
    response_status = Column(String, nullable=True)
    response_model_version = Column(String, nullable=True)
    response_output_text = Column(Text, nullable=True)
    usage = Column(JSON, nullable=True)  # {input_tokens, output_tokens, total_tokens, ...}

    # Error (FAILED attempts only)
    error_name = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    error_status_code = Column(Integer, nullable=True)

    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("investigation_id", "attempt_number", name="uq_investigation_attempt_number"),
    )
