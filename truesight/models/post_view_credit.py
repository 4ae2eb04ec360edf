from sqlalchemy import Column, String, DateTime, ForeignKey, Uuid, UniqueConstraint, Index
import uuid

from ..core.clock import utcnow
from ..core.db import Base


class PostViewCredit(Base):
    """
    One popularity credit per viewer per post per UTC day.

    Viewer and IP-range keys are hashes; raw addresses are never stored.
    """
    __tablename__ = "post_view_credits"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    post_id = Column(Uuid(as_uuid=True), ForeignKey("posts.id", ondelete="CASCADE"), nullable=False)
    viewer_key = Column(String(64), nullable=False)
    ip_range_key = Column(String(64), nullable=False)
    bucket_day = Column(DateTime, nullable=False)  # midnight UTC
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("post_id", "viewer_key", "bucket_day", name="uq_post_view_credits_viewer_day"),
        Index("ix_post_view_credits_ip_range_day", "post_id", "ip_range_key", "bucket_day"),
    )
