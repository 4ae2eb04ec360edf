from sqlalchemy import Column, String, Text, Integer, Float, DateTime, JSON, Enum, Uuid, UniqueConstraint, Index
import uuid
import enum

from ..core.clock import utcnow
from ..core.db import Base


class Platform(str, enum.Enum):
    LESSWRONG = "LESSWRONG"
    X = "X"
    SUBSTACK = "SUBSTACK"
    WIKIPEDIA = "WIKIPEDIA"


class Post(Base):
    __tablename__ = "posts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform = Column(Enum(Platform), nullable=False)
    external_id = Column(String, nullable=False)
    url = Column(String, nullable=False)

    author_name = Column(String, nullable=True)
    published_at = Column(DateTime, nullable=True)
    media_urls = Column(JSON, nullable=True)  # image/video URLs observed on the page

    # Latest known content snapshot; the selector investigates this version
    latest_content_hash = Column(String(64), nullable=True)
    latest_content_text = Column(Text, nullable=True)
    word_count = Column(Integer, nullable=False, default=0)

    # Popularity used to prioritise selector admission
    unique_view_score = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("platform", "external_id", name="uq_posts_platform_external_id"),
        Index("ix_posts_unique_view_score", "unique_view_score"),
    )
