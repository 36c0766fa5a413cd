"""
Comment collection coordinator: validates post URLs, fetches comments from
the scraping capability and stores them without duplicates.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol
from urllib.parse import urlparse

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pulse.config import Settings, settings as default_settings
from pulse.core.eligibility import UnitKind, due_batch, next_due
from pulse.db import commit_pending, insert_if_absent
from pulse.errors import InvalidInput, PipelineError, UpstreamEmpty, UpstreamError
from pulse.models import Comment, Post, ScrapedComment
from pulse.utils import extract_domain_from_url, now_utc

logger = logging.getLogger(__name__)

ALLOWED_DOMAIN = "instagram.com"
_POST_PATH_RE = re.compile(r"^/(?:p|reel)/([A-Za-z0-9_-]+)/?$")


class CommentFetcher(Protocol):
    async def fetch_comments(self, post_url: str, limit: Optional[int] = None) -> List[ScrapedComment]:
        ...


@dataclass
class CollectionResult:
    """Outcome of one collection pass over a post."""

    post_id: int
    new: int = 0
    existing: int = 0
    fetched: int = 0
    empty: bool = False
    error: Optional[str] = None


def parse_post_url(url: Optional[str]) -> str:
    """
    Validate a post or reel URL and return its short code.

    Args:
        url: Candidate post URL

    Returns:
        The post short code

    Raises:
        InvalidInput: Not an instagram.com /p/<code> or /reel/<code> URL
    """
    if not url or not url.strip():
        raise InvalidInput("Post has no URL")

    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise InvalidInput(f"Unsupported URL scheme: {url}")
    if extract_domain_from_url(url) != ALLOWED_DOMAIN:
        raise InvalidInput(f"Not an Instagram URL: {url}")

    match = _POST_PATH_RE.match(parsed.path)
    if not match:
        raise InvalidInput(f"Not a post or reel URL: {url}")
    return match.group(1)


def stored_comment_count(session: Session, post_id: int) -> int:
    return int(session.scalar(select(func.count(Comment.id)).where(Comment.post_id == post_id)) or 0)


def store_comments(session: Session, post: Post, items: Iterable[ScrapedComment]) -> CollectionResult:
    """
    Insert comments that are not stored yet; existing ones are left untouched.

    Dedup is keyed on the external comment id and done by the database, so
    concurrent writers cannot create duplicates.
    """
    result = CollectionResult(post_id=post.id)
    for item in items:
        result.fetched += 1
        inserted = insert_if_absent(
            session,
            Comment,
            {
                "post_id": post.id,
                "external_id": item.id,
                "text": item.text,
                "likes_count": item.likes_count,
                "owner_username": item.owner_username,
                "owner_verified": item.owner_verified,
                "commented_at": item.timestamp,
                "created_at": now_utc(),
            },
            conflict_columns=["external_id"],
        )
        if inserted:
            result.new += 1
        else:
            result.existing += 1
    return result


async def collect_post_comments(
    session: Session,
    post: Post,
    scraper: CommentFetcher,
    settings: Settings | None = None,
) -> CollectionResult:
    """
    Run one collection pass over a post.

    Raises:
        InvalidInput: The post URL is not a supported post URL
        UpstreamEmpty: The post is private or has no comments available
        UpstreamError: The scraper failed
    """
    config = settings or default_settings
    parse_post_url(post.url)
    commit_pending(session)

    items = await scraper.fetch_comments(post.url, limit=config.COMMENT_RESULTS_LIMIT)
    result = store_comments(session, post, items)
    session.flush()

    logger.info(
        "Post %s: %d new, %d already stored (%d fetched)",
        post.short_code or post.id,
        result.new,
        result.existing,
        result.fetched,
    )
    return result


async def collect_next_post(
    session: Session,
    scraper: CommentFetcher,
    settings: Settings | None = None,
    force: bool = False,
) -> Optional[CollectionResult]:
    """
    First collection pass for the next due post.

    Every attempt is recorded. Success (including an empty or private post)
    marks the post processed. An invalid URL marks it processed and
    reprocessed so it is never selected again. Upstream failures only leave
    the attempt recorded and are retried after COMMENTS_RETRY_MINUTES.

    Returns:
        The collection outcome, or None when no post is due
    """
    config = settings or default_settings
    post = next_due(session, UnitKind.COMMENTS, config, force=force)
    if post is None:
        logger.debug("No post due for comment collection")
        return None
    return await _first_pass(session, post, scraper, config)


async def _first_pass(session: Session, post: Post, scraper: CommentFetcher, config: Settings) -> CollectionResult:
    now = now_utc()
    post.comments_attempted_at = now

    try:
        result = await collect_post_comments(session, post, scraper, config)
    except UpstreamEmpty as e:
        logger.info("Post %s has no collectable comments: %s", post.id, e)
        result = CollectionResult(post_id=post.id, existing=stored_comment_count(session, post.id), empty=True)
    except InvalidInput as e:
        logger.warning("Post %s will not be collected: %s", post.id, e)
        post.comments_processed_at = now
        post.reprocessed = True
        post.collection_error = str(e)
        session.flush()
        return CollectionResult(post_id=post.id, error=str(e))
    except UpstreamError as e:
        logger.warning("Comment collection failed for post %s, will retry: %s", post.id, e)
        session.flush()
        return CollectionResult(post_id=post.id, error=str(e))

    post.comments_processed_at = now
    post.collection_error = None
    session.flush()
    return result


async def collect_post(
    session: Session,
    post: Post,
    scraper: CommentFetcher,
    settings: Settings | None = None,
) -> CollectionResult:
    """
    Targeted collection for one post, outside the scheduler.

    Behaves like the first pass when the post was never collected and like a
    reprocessing pass otherwise (margin check included), so a post is still
    collected at most twice.

    Raises:
        InvalidInput: The post was already collected twice or its URL is invalid
        UpstreamError: The scraper failed
    """
    config = settings or default_settings
    if post.comments_processed_at is None:
        result = await _first_pass(session, post, scraper, config)
        if result.error and post.reprocessed:
            raise InvalidInput(result.error)
        if result.error:
            raise UpstreamError(result.error)
        return result

    if post.reprocessed:
        raise InvalidInput(f"Post {post.id} was already collected twice")
    return await _second_pass(session, post, scraper, config, now_utc(), config.REPROCESS_MARGIN)


async def _second_pass(
    session: Session,
    post: Post,
    scraper: CommentFetcher,
    config: Settings,
    now: datetime,
    margin: int,
) -> CollectionResult:
    """Collect again when more than `margin` new comments are available, then close the post."""
    stored = stored_comment_count(session, post.id)
    available = post.comments_count or 0
    result = CollectionResult(post_id=post.id, existing=stored)

    if available > stored + margin:
        try:
            result = await collect_post_comments(session, post, scraper, config)
        except UpstreamEmpty as e:
            logger.info("Post %s has no collectable comments on reprocess: %s", post.id, e)
            result.empty = True
        except PipelineError as e:
            logger.warning("Reprocessing failed for post %s: %s", post.id, e)
            result.error = str(e)
    else:
        logger.info(
            "Post %s skipped on reprocess: %d available vs %d stored",
            post.short_code or post.id,
            available,
            stored,
        )

    post.reprocessed = True
    post.comments_processed_at = now
    session.flush()
    return result


async def reprocess_sweep(
    session: Session,
    scraper: CommentFetcher,
    settings: Settings | None = None,
    force: bool = False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> List[CollectionResult]:
    """
    Second collection pass over up to REPROCESS_BATCH due posts.

    A post is re-collected only when its available comments exceed the stored
    ones by more than REPROCESS_MARGIN, but every examined post is marked
    reprocessed whatever the outcome, so no post is collected more than twice.
    """
    config = settings or default_settings
    posts = due_batch(session, UnitKind.REPROCESS, config, limit=config.REPROCESS_BATCH, force=force)
    if not posts:
        logger.debug("No post due for reprocessing")
        return []

    logger.info("Reprocessing %d posts", len(posts))
    results: List[CollectionResult] = []
    for index, post in enumerate(posts):
        results.append(await _second_pass(session, post, scraper, config, now_utc(), config.REPROCESS_MARGIN))
        if index < len(posts) - 1 and config.SWEEP_PAUSE_SECONDS > 0:
            commit_pending(session)
            await sleep(config.SWEEP_PAUSE_SECONDS)
    return results


def collection_stats(session: Session) -> Dict[str, Any]:
    """Collection coverage figures across all posts."""
    total_posts = int(session.scalar(select(func.count(Post.id))) or 0)
    never_processed = int(
        session.scalar(select(func.count(Post.id)).where(Post.comments_processed_at.is_(None))) or 0
    )
    reprocessed = int(session.scalar(select(func.count(Post.id)).where(Post.reprocessed.is_(True))) or 0)
    with_comments = int(session.scalar(select(func.count(func.distinct(Comment.post_id)))) or 0)
    stored = int(session.scalar(select(func.count(Comment.id))) or 0)
    available = int(session.scalar(select(func.coalesce(func.sum(Post.comments_count), 0))) or 0)

    processed = total_posts - never_processed
    return {
        "total_posts": total_posts,
        "never_processed": never_processed,
        "processed": processed,
        "reprocessed": reprocessed,
        "posts_with_comments": with_comments,
        "comments_stored": stored,
        "comments_available": available,
        "collection_efficiency": round(stored / available * 100, 1) if available > 0 else 0.0,
        "processed_pct": round(processed / total_posts * 100, 1) if total_posts > 0 else 0.0,
    }


__all__ = [
    "CollectionResult",
    "collect_next_post",
    "collect_post",
    "collect_post_comments",
    "collection_stats",
    "parse_post_url",
    "reprocess_sweep",
    "store_comments",
]
