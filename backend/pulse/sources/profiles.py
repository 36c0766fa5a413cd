"""
Profile collection: refresh a candidate's profile snapshot, follower history
and latest posts.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.config import Settings, settings as default_settings
from pulse.core.eligibility import UnitKind, next_due
from pulse.db import commit_pending
from pulse.errors import UpstreamEmpty, UpstreamError
from pulse.models import Candidate, FollowerSnapshot, Post, ScrapedPost, ScrapedProfile
from pulse.utils import now_utc

logger = logging.getLogger(__name__)


class ProfileFetcher(Protocol):
    async def fetch_profile(self, profile_url: str) -> ScrapedProfile:
        ...


def record_follower_snapshot(
    session: Session,
    candidate: Candidate,
    profile: ScrapedProfile,
    now: datetime,
) -> FollowerSnapshot:
    """Append a follower history row with the delta against the previous one."""
    previous = session.scalars(
        select(FollowerSnapshot)
        .where(FollowerSnapshot.candidate_id == candidate.id)
        .order_by(FollowerSnapshot.collected_at.desc(), FollowerSnapshot.id.desc())
        .limit(1)
    ).first()

    snapshot = FollowerSnapshot(
        candidate_id=candidate.id,
        followers_count=profile.followers_count,
        follows_count=profile.follows_count,
        posts_count=profile.posts_count,
        collected_at=now,
    )
    if previous is not None:
        delta = profile.followers_count - previous.followers_count
        snapshot.followers_delta = delta
        snapshot.delta_pct = (
            round(delta / previous.followers_count * 100, 2) if previous.followers_count > 0 else 0.0
        )
        elapsed = (now - previous.collected_at).total_seconds()
        snapshot.days_between = max(0, math.ceil(elapsed / 86400))

    session.add(snapshot)
    return snapshot


def upsert_post(session: Session, candidate: Candidate, scraped: ScrapedPost) -> bool:
    """
    Create a post row or refresh its counters.

    Returns:
        True when a new post was created
    """
    post = session.scalars(select(Post).where(Post.external_id == scraped.id)).first()
    if post is not None:
        post.likes_count = scraped.likes_count
        post.comments_count = scraped.comments_count
        post.video_view_count = scraped.video_view_count
        return False

    session.add(
        Post(
            candidate_id=candidate.id,
            external_id=scraped.id,
            short_code=scraped.short_code,
            url=scraped.url,
            post_type=scraped.post_type,
            caption=scraped.caption,
            likes_count=scraped.likes_count,
            comments_count=scraped.comments_count,
            video_view_count=scraped.video_view_count,
            published_at=scraped.timestamp,
        )
    )
    return True


async def collect_profile(
    session: Session,
    candidate: Candidate,
    scraper: ProfileFetcher,
    now: Optional[datetime] = None,
) -> Optional[ScrapedProfile]:
    """
    Fetch and store one candidate's profile.

    Args:
        session: Active session (the caller commits)
        candidate: Candidate with a social handle
        scraper: Scraping capability
        now: Reference time

    Returns:
        The scraped profile, or None when the account is empty or private

    Raises:
        UpstreamError: The scraper failed; only the attempt is recorded
    """
    now = now or now_utc()
    candidate.profile_attempted_at = now
    commit_pending(session)

    try:
        profile = await scraper.fetch_profile(candidate.profile_url)
    except UpstreamEmpty as e:
        logger.info("Profile %s returned no data: %s", candidate.social_handle, e)
        candidate.profile_scraped_at = now
        session.flush()
        return None

    candidate.external_id = profile.id or candidate.external_id
    candidate.full_name = profile.full_name
    candidate.biography = profile.biography
    candidate.followers_count = profile.followers_count
    candidate.follows_count = profile.follows_count
    candidate.posts_count = profile.posts_count
    candidate.verified = profile.verified
    candidate.is_private = profile.private
    candidate.profile_scraped_at = now

    snapshot = record_follower_snapshot(session, candidate, profile, now)

    created = 0
    for scraped in profile.latest_posts:
        if upsert_post(session, candidate, scraped):
            created += 1
    session.flush()

    logger.info(
        "Profile %s: %d followers (%+d), %d new / %d refreshed posts",
        candidate.social_handle,
        profile.followers_count,
        snapshot.followers_delta or 0,
        created,
        len(profile.latest_posts) - created,
    )
    return profile


async def collect_next_profile(
    session: Session,
    scraper: ProfileFetcher,
    settings: Settings | None = None,
    force: bool = False,
) -> Optional[Candidate]:
    """
    Collect the profile of the next due candidate.

    Upstream failures are logged and leave only the attempt recorded, so the
    candidate is retried after PROFILE_RETRY_MINUTES.

    Returns:
        The examined candidate, or None when nobody is due
    """
    config = settings or default_settings
    candidate = next_due(session, UnitKind.PROFILE, config, force=force)
    if candidate is None:
        logger.debug("No candidate due for profile collection")
        return None

    try:
        await collect_profile(session, candidate, scraper)
    except UpstreamError as e:
        logger.warning("Profile collection failed for %s: %s", candidate.social_handle, e)
        session.flush()
    return candidate


__all__ = ["collect_next_profile", "collect_profile", "record_follower_snapshot", "upsert_post"]
