"""
Common utilities for turning raw scraper items into typed records.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dateutil import parser as dateparser

from pulse.models import ScrapedComment, ScrapedPost, ScrapedProfile

logger = logging.getLogger(__name__)


def parse_utc_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp (ISO string or epoch seconds) and convert to UTC.

    Args:
        value: Date string in various formats, epoch number, or None

    Returns:
        UTC datetime object, or None when the value is missing or unparseable
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            logger.debug("Out of range epoch %r", value)
            return None
    try:
        parsed_date = dateparser.parse(str(value))
    except (ValueError, OverflowError):
        logger.debug("Unparseable timestamp %r", value)
        return None
    if parsed_date.tzinfo:
        return parsed_date.astimezone(timezone.utc)
    return parsed_date.replace(tzinfo=timezone.utc)


def clean_text(text: Optional[str]) -> str:
    """
    Clean and normalize text content.

    Args:
        text: Raw text string or None

    Returns:
        Cleaned text string, empty string if input is None
    """
    if not text:
        return ""
    return str(text).strip()


def _as_int(value: Any, default: Optional[int] = 0) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_id(value: Any) -> str:
    return clean_text(str(value)) if value is not None else ""


def parse_comment_item(item: Dict[str, Any]) -> Optional[ScrapedComment]:
    """
    Build a comment record, or None when the item lacks text or an id.

    Args:
        item: Raw dataset item

    Returns:
        ScrapedComment or None
    """
    comment_id = _as_id(item.get("id"))
    text = clean_text(item.get("text"))
    if not comment_id or not text:
        return None

    owner = item.get("owner") if isinstance(item.get("owner"), dict) else {}
    return ScrapedComment(
        id=comment_id,
        text=text,
        likes_count=_as_int(item.get("likesCount")) or 0,
        owner_username=item.get("ownerUsername") or owner.get("username"),
        owner_verified=bool(item.get("ownerIsVerified") or owner.get("is_verified")),
        timestamp=parse_utc_datetime(item.get("timestamp")),
    )


def parse_post_item(item: Dict[str, Any]) -> Optional[ScrapedPost]:
    """Build a post record, or None when the item has no id."""
    post_id = _as_id(item.get("id"))
    if not post_id:
        return None
    return ScrapedPost(
        id=post_id,
        short_code=item.get("shortCode"),
        url=item.get("url"),
        post_type=item.get("type"),
        caption=item.get("caption"),
        likes_count=_as_int(item.get("likesCount"), default=None),
        comments_count=_as_int(item.get("commentsCount"), default=None),
        video_view_count=_as_int(item.get("videoViewCount"), default=None),
        timestamp=parse_utc_datetime(item.get("timestamp")),
    )


def parse_profile_item(item: Dict[str, Any]) -> ScrapedProfile:
    """Build a profile record with its latest posts."""
    posts: List[ScrapedPost] = []
    for raw_post in item.get("latestPosts") or []:
        if not isinstance(raw_post, dict):
            continue
        post = parse_post_item(raw_post)
        if post is not None:
            posts.append(post)

    return ScrapedProfile(
        id=_as_id(item.get("id")) or None,
        username=item.get("username"),
        full_name=item.get("fullName"),
        biography=item.get("biography"),
        followers_count=_as_int(item.get("followersCount")) or 0,
        follows_count=_as_int(item.get("followsCount")) or 0,
        posts_count=_as_int(item.get("postsCount")) or 0,
        verified=bool(item.get("verified")),
        private=bool(item.get("private")),
        latest_posts=posts,
    )
