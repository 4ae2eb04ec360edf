from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import relationship
import uuid

from ..core.clock import utcnow
from ..core.db import Base


class Claim(Base):
    __tablename__ = "claims"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    investigation_id = Column(
        Uuid(as_uuid=True), ForeignKey("investigations.id", ondelete="CASCADE"), index=True, nullable=False
    )
    claim_order = Column(Integer, nullable=False, default=0)
    text = Column(Text, nullable=False)      # exact quoted span from the post
    context = Column(Text, nullable=False)   # surrounding text used to locate it
    summary = Column(Text, nullable=False)
    reasoning = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    sources = relationship("ClaimSource", order_by="ClaimSource.id", cascade="all, delete-orphan")


class ClaimSource(Base):
    __tablename__ = "claim_sources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    claim_id = Column(Uuid(as_uuid=True), ForeignKey("claims.id", ondelete="CASCADE"), index=True, nullable=False)
    url = Column(String, nullable=False)
    title = Column(String, nullable=False)
    snippet = Column(Text, nullable=False)
    snapshot_text = Column(Text, nullable=False)
    snapshot_hash = Column(String(64), nullable=False)  # SHA256 of snapshot_text
    retrieved_at = Column(DateTime, default=utcnow, nullable=False)
