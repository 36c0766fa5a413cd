from collections import deque
from datetime import timedelta
from typing import Dict, List, Optional

import pytest

from pulse.config import Settings
from pulse.db import init_db, make_engine, make_session_factory
from pulse.errors import UpstreamError
from pulse.models import Candidate, Comment, Post, ScrapedComment, ScrapedProfile
from pulse.utils import now_utc


class FakeScraper:
    """Scripted stand-in for the scraping capability."""

    def __init__(self):
        self.comments: Dict[str, object] = {}
        self.profiles: Dict[str, object] = {}
        self.comment_calls: List[str] = []
        self.profile_calls: List[str] = []

    async def fetch_comments(self, post_url: str, limit: Optional[int] = None) -> List[ScrapedComment]:
        self.comment_calls.append(post_url)
        outcome = self.comments.get(post_url, [])
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)

    async def fetch_profile(self, profile_url: str) -> ScrapedProfile:
        self.profile_calls.append(profile_url)
        outcome = self.profiles[profile_url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeClassifier:
    """Returns queued replies in order; an empty queue means the classifier is down."""

    model_name = "fake-model"

    def __init__(self, *replies: str):
        self.replies = deque(replies)
        self.calls = 0
        self.prompts: List[str] = []

    async def complete(self, prompt: str, *, system: Optional[str] = None) -> str:
        self.calls += 1
        self.prompts.append(prompt)
        if not self.replies:
            raise UpstreamError("classifier down")
        reply = self.replies.popleft()
        if isinstance(reply, Exception):
            raise reply
        return reply


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture()
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        OPENAI_API_KEY="",
        APIFY_TOKEN="",
        SCHEDULER_ENABLED=False,
        CLASSIFIER_BACKOFF_SECONDS=0.0,
        SWEEP_PAUSE_SECONDS=0.0,
    )


@pytest.fixture()
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def scraper():
    return FakeScraper()


def make_candidate(session, **overrides) -> Candidate:
    values = {
        "name": "Ana Souza",
        "social_handle": "anasouza",
        "followers_count": 10_000,
        "intended_office": "Federal Deputy",
        "intended_tier": "NATIONAL",
    }
    values.update(overrides)
    candidate = Candidate(**values)
    session.add(candidate)
    session.flush()
    return candidate


def make_post(session, candidate, index: int = 1, **overrides) -> Post:
    values = {
        "candidate_id": candidate.id,
        "external_id": f"post-{candidate.id}-{index}",
        "short_code": f"Code{index}",
        "url": f"https://www.instagram.com/p/Code{index}/",
        "likes_count": 100,
        "comments_count": 50,
        "published_at": now_utc() - timedelta(days=1),
    }
    values.update(overrides)
    post = Post(**values)
    session.add(post)
    session.flush()
    return post


def make_comments(session, post, texts, **overrides) -> List[Comment]:
    comments = []
    for index, text in enumerate(texts):
        values = {
            "post_id": post.id,
            "external_id": f"c-{post.id}-{index}",
            "text": text,
            "likes_count": index,
            "owner_username": f"user{index}",
        }
        values.update(overrides)
        comment = Comment(**values)
        session.add(comment)
        comments.append(comment)
    session.flush()
    return comments


def scraped(comment_id: str, text: str = "Great proposal for the city", likes: int = 0) -> ScrapedComment:
    return ScrapedComment(id=comment_id, text=text, likes_count=likes, owner_username=f"u{comment_id}")
