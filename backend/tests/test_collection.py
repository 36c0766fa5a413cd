import asyncio
from datetime import timedelta

import pytest
from conftest import make_candidate, make_post, scraped
from sqlalchemy import func, select

from pulse.errors import InvalidInput, UpstreamEmpty, UpstreamError
from pulse.models import Comment
from pulse.sources.collector import (
    collect_next_post,
    collect_post,
    collection_stats,
    parse_post_url,
    reprocess_sweep,
    store_comments,
)
from pulse.utils import now_utc


def _comment_count(session):
    return session.scalar(select(func.count(Comment.id)))


@pytest.mark.parametrize(
    "url, code",
    [
        ("https://www.instagram.com/p/Cx1_ab-9/", "Cx1_ab-9"),
        ("https://instagram.com/reel/XYZ123", "XYZ123"),
    ],
)
def test_parse_post_url_accepts_posts_and_reels(url, code):
    assert parse_post_url(url) == code


@pytest.mark.parametrize(
    "url",
    [
        None,
        "",
        "ftp://www.instagram.com/p/abc/",
        "https://www.facebook.com/p/abc/",
        "https://www.instagram.com/anasouza/",
        "https://www.instagram.com/stories/abc/",
    ],
)
def test_parse_post_url_rejects_everything_else(url):
    with pytest.raises(InvalidInput):
        parse_post_url(url)


def test_store_comments_never_duplicates(session):
    post = make_post(session, make_candidate(session))

    first = store_comments(session, post, [scraped("1"), scraped("2")])
    second = store_comments(session, post, [scraped("2", text="edited"), scraped("3")])

    assert (first.new, first.existing) == (2, 0)
    assert (second.new, second.existing, second.fetched) == (1, 1, 2)
    assert _comment_count(session) == 3
    kept = session.scalars(select(Comment).where(Comment.external_id == "2")).one()
    assert kept.text == "Great proposal for the city"


def test_first_pass_marks_post_processed(session, settings, scraper):
    post = make_post(session, make_candidate(session))
    scraper.comments[post.url] = [scraped("1"), scraped("2")]

    result = asyncio.run(collect_next_post(session, scraper, settings))

    assert result.new == 2
    assert post.comments_processed_at is not None
    assert post.comments_attempted_at is not None
    assert post.reprocessed is False


def test_empty_or_private_post_is_a_terminal_success(session, settings, scraper):
    post = make_post(session, make_candidate(session))
    scraper.comments[post.url] = UpstreamEmpty("empty or private data")

    result = asyncio.run(collect_next_post(session, scraper, settings))

    assert result.empty is True
    assert post.comments_processed_at is not None


def test_upstream_error_only_records_the_attempt(session, settings, scraper):
    post = make_post(session, make_candidate(session))
    scraper.comments[post.url] = UpstreamError("run FAILED")

    result = asyncio.run(collect_next_post(session, scraper, settings))

    assert result.error == "run FAILED"
    assert post.comments_attempted_at is not None
    assert post.comments_processed_at is None
    # retried only once the retry cooldown has passed
    assert asyncio.run(collect_next_post(session, scraper, settings)) is None


def test_invalid_url_is_never_selected_again(session, settings, scraper):
    post = make_post(session, make_candidate(session), url="https://example.com/p/abc/")

    result = asyncio.run(collect_next_post(session, scraper, settings, force=True))

    assert result.error is not None
    assert post.reprocessed is True
    assert post.comments_processed_at is not None
    assert post.collection_error
    assert scraper.comment_calls == []
    assert asyncio.run(collect_next_post(session, scraper, settings, force=True)) is None
    assert asyncio.run(reprocess_sweep(session, scraper, settings, force=True)) == []


def test_reprocess_collects_when_enough_new_comments(session, settings, scraper):
    post = make_post(
        session,
        make_candidate(session),
        comments_processed_at=now_utc() - timedelta(days=2),
        comments_count=10,
    )
    store_comments(session, post, [scraped("1"), scraped("2")])
    scraper.comments[post.url] = [scraped(str(i)) for i in range(1, 8)]

    results = asyncio.run(reprocess_sweep(session, scraper, settings))

    assert [(r.new, r.existing) for r in results] == [(5, 2)]
    assert post.reprocessed is True


def test_reprocess_skips_within_margin_but_closes_the_post(session, settings, scraper):
    post = make_post(
        session,
        make_candidate(session),
        comments_processed_at=now_utc() - timedelta(days=2),
        comments_count=8,
    )
    store_comments(session, post, [scraped(str(i)) for i in range(6)])

    asyncio.run(reprocess_sweep(session, scraper, settings))

    assert scraper.comment_calls == []
    assert post.reprocessed is True


def test_reprocess_failure_still_closes_the_post(session, settings, scraper):
    post = make_post(
        session,
        make_candidate(session),
        comments_processed_at=now_utc() - timedelta(days=2),
        comments_count=40,
    )
    scraper.comments[post.url] = UpstreamError("timed out")

    results = asyncio.run(reprocess_sweep(session, scraper, settings))

    assert results[0].error == "timed out"
    assert post.reprocessed is True


def test_post_is_collected_at_most_twice(session, settings, scraper):
    post = make_post(session, make_candidate(session))
    scraper.comments[post.url] = [scraped("1")]

    asyncio.run(collect_post(session, post, scraper, settings))
    asyncio.run(collect_post(session, post, scraper, settings))
    with pytest.raises(InvalidInput):
        asyncio.run(collect_post(session, post, scraper, settings))

    assert len(scraper.comment_calls) == 2
    assert _comment_count(session) == 1


def test_targeted_collection_surfaces_upstream_errors(session, settings, scraper):
    post = make_post(session, make_candidate(session))
    scraper.comments[post.url] = UpstreamError("rate limited")

    with pytest.raises(UpstreamError):
        asyncio.run(collect_post(session, post, scraper, settings))
    assert post.comments_attempted_at is not None


def test_collection_stats(session):
    candidate = make_candidate(session)
    post = make_post(session, candidate, 1, comments_count=4, comments_processed_at=now_utc())
    make_post(session, candidate, 2, comments_count=6)
    store_comments(session, post, [scraped("1"), scraped("2")])

    stats = collection_stats(session)

    assert stats["total_posts"] == 2
    assert stats["never_processed"] == 1
    assert stats["comments_stored"] == 2
    assert stats["comments_available"] == 10
    assert stats["collection_efficiency"] == 20.0
    assert stats["processed_pct"] == 50.0


def test_targeted_second_pass_respects_the_margin(session, settings, scraper):
    post = make_post(session, make_candidate(session), comments_count=3, comments_processed_at=now_utc())
    store_comments(session, post, [scraped("1"), scraped("2")])
    scraper.comments[post.url] = [scraped("3")]

    result = asyncio.run(collect_post(session, post, scraper, settings))

    assert scraper.comment_calls == []
    assert result.existing == 2
    assert post.reprocessed is True
