from sqlalchemy import Column, String, Text, DateTime, Enum, ForeignKey, Uuid, UniqueConstraint
from sqlalchemy.orm import relationship
import uuid
import enum

from ..core.clock import utcnow
from ..core.db import Base


class InvestigationStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


TERMINAL_STATUSES = (InvestigationStatus.COMPLETE, InvestigationStatus.FAILED)


class ContentProvenance(str, enum.Enum):
    # Text independently re-fetched from the origin platform
    SERVER_VERIFIED = "SERVER_VERIFIED"
    # Text trusted from the client's observation
    CLIENT_FALLBACK = "CLIENT_FALLBACK"


class Investigation(Base):
    __tablename__ = "investigations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    post_id = Column(Uuid(as_uuid=True), ForeignKey("posts.id", ondelete="CASCADE"), index=True, nullable=False)
    content_hash = Column(String(64), nullable=False)
    content_text = Column(Text, nullable=False)

    status = Column(Enum(InvestigationStatus), nullable=False, default=InvestigationStatus.PENDING)
    provenance = Column(Enum(ContentProvenance), nullable=False, default=ContentProvenance.CLIENT_FALLBACK)
    fetch_failure_reason = Column(String, nullable=True)
    server_verified_at = Column(DateTime, nullable=True)

    # Set only when COMPLETE; cleared on every re-queue
    checked_at = Column(DateTime, nullable=True)

    # Lineage for edited posts: prior claims are carried forward for diffing
    parent_investigation_id = Column(
        Uuid(as_uuid=True), ForeignKey("investigations.id", ondelete="SET NULL"), nullable=True
    )
    content_diff = Column(Text, nullable=True)

    model = Column(String, nullable=True)
    model_version = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    post = relationship("Post")

    __table_args__ = (
        # One investigation per content snapshot; concurrent creators collide here
        UniqueConstraint("post_id", "content_hash", name="uq_investigations_post_content_hash"),
    )
