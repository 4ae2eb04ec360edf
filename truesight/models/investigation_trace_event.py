from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, Uuid

from ..core.clock import utcnow
from ..core.db import Base

class InvestigationTraceEvent(Base):
    __tablename__ = "investigation_trace_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    investigation_id = Column(Uuid(as_uuid=True),
                              ForeignKey("investigations.id", ondelete="CASCADE"),
                              index=True,
                              nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    phase = Column(String, nullable=False)   # "RUN", "DONE"
    step = Column(String, nullable=True)     # "run:claimed", "run:retry", "run:completed", …
    label = Column(String, nullable=False)   # short human-readable summary
    detail = Column(String, nullable=True)   # one-paragraph explanation
    meta = Column(JSON, nullable=True)       # small, structured extras
