from sqlalchemy import Column, String, DateTime, ForeignKey, Uuid, Index
from sqlalchemy.orm import relationship
import uuid

from ..core.clock import utcnow
from ..core.db import Base


class InvestigationRun(Base):
    """
    Job-execution lease for an Investigation (exactly one per investigation).

    - lease_owner / lease_expires_at: worker currently holding the run.
    - recover_after_at: cooldown for PROCESSING runs with no owner (released
      after a transient failure) before recovery may force them back to PENDING.
    """
    __tablename__ = "investigation_runs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    investigation_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("investigations.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    lease_owner = Column(String, nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    recover_after_at = Column(DateTime, nullable=True)

    queued_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    investigation = relationship("Investigation")

    __table_args__ = (
        Index("ix_investigation_runs_lease_expires_at", "lease_expires_at"),
        Index("ix_investigation_runs_recover_after_at", "recover_after_at"),
    )
