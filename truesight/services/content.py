"""
Content normalisation, hashing and update lineage helpers.

The normalised text is what gets hashed and investigated, so the same
observation from two callers always maps onto the same Investigation row.
"""
from __future__ import annotations

import difflib
import hashlib
import re
import unicodedata
from dataclasses import dataclass
from urllib.parse import urlparse

from ..models.investigation import ContentProvenance

_ZERO_WIDTH_RE = re.compile("[\u200B-\u200D\uFEFF]")
_WHITESPACE_RE = re.compile(r"\s+")

VIDEO_SUFFIXES = (".mp4", ".webm", ".m3u8", ".mov", ".m4v")

# Keep diffs small enough to embed in a prompt
MAX_CONTENT_DIFF_CHARS = 20000


@dataclass(frozen=True)
class ContentVersion:
    content_text: str
    content_hash: str


@dataclass(frozen=True)
class CanonicalContent:
    """Content chosen for investigation plus where it came from."""
    content_text: str
    content_hash: str
    provenance: ContentProvenance
    fetch_failure_reason: str | None = None


@dataclass(frozen=True)
class CanonicalFetchResult:
    """Outcome of re-fetching a post from its origin platform."""
    success: bool
    content_text: str | None = None
    content_hash: str | None = None
    failure_reason: str | None = None


def normalize_content(raw: str) -> str:
    text = unicodedata.normalize("NFC", raw)
    text = _ZERO_WIDTH_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text)
    return text.strip()


def hash_content(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def to_content_version(raw: str) -> ContentVersion:
    text = normalize_content(raw)
    return ContentVersion(content_text=text, content_hash=hash_content(text))


def word_count(text: str) -> int:
    return len(text.split())


def exceeds_word_limit(text: str, limit: int) -> bool:
    return word_count(text) > limit


def build_content_diff(previous_text: str, current_text: str) -> str:
    """
    Sentence-level unified diff between two content snapshots.

    Normalised content has no newlines, so split on sentence boundaries to get
    a diff a reader (or the model) can follow.
    """
    def _lines(text: str) -> list[str]:
        return [s for s in re.split(r"(?<=[.!?])\s+", text) if s]

    diff = "\n".join(
        difflib.unified_diff(
            _lines(previous_text),
            _lines(current_text),
            fromfile="previous",
            tofile="current",
            lineterm="",
        )
    )
    return diff[:MAX_CONTENT_DIFF_CHARS]


def is_likely_video_url(url: str) -> bool:
    path = url.lower()
    try:
        path = urlparse(url).path.lower()
    except ValueError:
        pass
    return path.endswith(VIDEO_SUFFIXES)


def partition_media_urls(media_urls: list[str] | None) -> tuple[list[str], bool]:
    """Split observed media into image URLs and a has-video flag."""
    image_urls: list[str] = []
    has_video = False
    for url in media_urls or []:
        if is_likely_video_url(url):
            has_video = True
            continue
        image_urls.append(url)
    return image_urls, has_video
