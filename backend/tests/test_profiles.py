import asyncio
from datetime import timedelta

from conftest import make_candidate
from sqlalchemy import select

from pulse.errors import UpstreamEmpty, UpstreamError
from pulse.models import FollowerSnapshot, Post, ScrapedPost, ScrapedProfile
from pulse.sources.profiles import collect_next_profile, collect_profile
from pulse.utils import now_utc

PROFILE_URL = "https://www.instagram.com/anasouza/"


def _profile(followers, posts=()):
    return ScrapedProfile(
        id="99",
        username="anasouza",
        full_name="Ana Souza",
        followers_count=followers,
        posts_count=len(posts),
        latest_posts=list(posts),
    )


def test_profile_snapshot_posts_and_follower_delta(session, scraper):
    candidate = make_candidate(session)
    first_post = ScrapedPost(id="p1", url="https://www.instagram.com/p/Abc/", likes_count=10, comments_count=1)
    now = now_utc()

    scraper.profiles[PROFILE_URL] = _profile(1000, [first_post])
    asyncio.run(collect_profile(session, candidate, scraper, now=now - timedelta(days=2)))

    refreshed = ScrapedPost(id="p1", likes_count=25, comments_count=4)
    second_post = ScrapedPost(id="p2", url="https://www.instagram.com/p/Def/")
    scraper.profiles[PROFILE_URL] = _profile(1100, [refreshed, second_post])
    asyncio.run(collect_profile(session, candidate, scraper, now=now))

    assert candidate.followers_count == 1100
    assert candidate.profile_scraped_at == now
    posts = {p.external_id: p for p in session.scalars(select(Post))}
    assert set(posts) == {"p1", "p2"}
    assert posts["p1"].likes_count == 25
    assert posts["p1"].url == "https://www.instagram.com/p/Abc/"
    latest = session.scalars(select(FollowerSnapshot).order_by(FollowerSnapshot.id.desc())).first()
    assert (latest.followers_delta, latest.delta_pct, latest.days_between) == (100, 10.0, 2)


def test_private_profile_is_marked_scraped_without_changes(session, scraper):
    candidate = make_candidate(session, followers_count=500)
    scraper.profiles[PROFILE_URL] = UpstreamEmpty("private")

    assert asyncio.run(collect_profile(session, candidate, scraper)) is None
    assert candidate.profile_scraped_at is not None
    assert candidate.followers_count == 500


def test_failed_fetch_records_only_the_attempt(session, settings, scraper):
    candidate = make_candidate(session)
    scraper.profiles[PROFILE_URL] = UpstreamError("timed out")

    assert asyncio.run(collect_next_profile(session, scraper, settings)) is candidate
    assert candidate.profile_attempted_at is not None
    assert candidate.profile_scraped_at is None
    assert asyncio.run(collect_next_profile(session, scraper, settings)) is None
