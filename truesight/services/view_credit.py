"""
Popularity crediting for posts.

Each observation of a post may add one point to `Post.unique_view_score`, the
selector's ordering key. A viewer earns at most one credit per post per UTC
day, and a single IP range can contribute at most IP_RANGE_CREDIT_CAP credits
per post per day.
"""
from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.config import Settings, get_settings
from ..models.post import Post
from ..models.post_view_credit import PostViewCredit
from .content import hash_content

logger = logging.getLogger(__name__)


@dataclass
class ViewerIdentity:
    viewer_key: str
    ip_range_key: str


def ip_range_prefix(client_ip: str | None) -> str:
    """/24 for IPv4, /48 for IPv6. IPv4-mapped IPv6 addresses count as IPv4."""
    raw = (client_ip or "").strip()
    if not raw:
        return "unknown"
    try:
        address = ipaddress.ip_address(raw.split("%", 1)[0])
    except ValueError:
        return f"invalid:{raw.lower()}"

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    if isinstance(address, ipaddress.IPv4Address):
        return ".".join(str(address).split(".")[:3])
    return ":".join(format(int(hextet, 16), "x") for hextet in address.exploded.split(":")[:3])


def derive_viewer_identity(
    *,
    client_ip: str | None,
    user_agent: str | None,
    instance_api_key: str | None = None,
) -> ViewerIdentity:
    """
    Authenticated callers are keyed by their instance key; anonymous ones by
    client address and user agent.
    """
    if instance_api_key:
        viewer_key = hash_content(f"apikey:{hash_content(instance_api_key)}")
    else:
        viewer_key = hash_content(f"anon:{client_ip or ''}:{user_agent or ''}")
    return ViewerIdentity(
        viewer_key=viewer_key,
        ip_range_key=hash_content(f"iprange:{ip_range_prefix(client_ip)}"),
    )


def start_of_utc_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def maybe_increment_unique_view_score(
    db: Session,
    post_id: UUID,
    viewer: ViewerIdentity,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Record a view credit and bump the post's score. Returns True if credited.

    The post row is locked for the duration so concurrent viewers see a
    consistent IP-range count; the (post, viewer, day) unique constraint makes
    a repeat view a no-op.
    """
    settings = settings or get_settings()
    bucket_day = start_of_utc_day(now or utcnow())

    locked = db.query(Post.id).filter(Post.id == post_id).with_for_update().first()
    if locked is None:
        db.rollback()
        return False

    range_credits = (
        db.query(PostViewCredit)
        .filter(
            PostViewCredit.post_id == post_id,
            PostViewCredit.ip_range_key == viewer.ip_range_key,
            PostViewCredit.bucket_day == bucket_day,
        )
        .count()
    )
    if range_credits >= settings.IP_RANGE_CREDIT_CAP:
        db.rollback()
        return False

    db.add(
        PostViewCredit(
            post_id=post_id,
            viewer_key=viewer.viewer_key,
            ip_range_key=viewer.ip_range_key,
            bucket_day=bucket_day,
        )
    )
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        return False

    (
        db.query(Post)
        .filter(Post.id == post_id)
        .update({Post.unique_view_score: Post.unique_view_score + 1}, synchronize_session=False)
    )
    db.commit()
    logger.debug("Credited post view", extra={"step": "view_credit"})
    return True
