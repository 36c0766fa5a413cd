"""
File: pulse/models.py
Persisted entities plus the plain records produced by the scraping capability.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

from pulse.utils import ensure_utc, now_utc


Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """DateTime column that always hands back timezone-aware UTC values.

    SQLite drops tzinfo on storage; values are normalised to UTC on the way in
    and re-tagged on the way out so comparisons behave the same on every backend.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


# ---------------------------------------------------------------------------
# Enumerations (stored as their string values)
# ---------------------------------------------------------------------------


class OfficeTier(str, Enum):
    NATIONAL = "NATIONAL"
    STATE = "STATE"
    MUNICIPAL = "MUNICIPAL"
    OTHER = "OTHER"


class SentimentLabel(str, Enum):
    POSITIVE = "POSITIVE"
    NEGATIVE = "NEGATIVE"
    NEUTRAL = "NEUTRAL"


class ViabilityCategory(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    AT_RISK = "AT_RISK"
    CRITICAL = "CRITICAL"

    @classmethod
    def for_score(cls, score: float) -> "ViabilityCategory":
        """Map a 0-100 score onto its band: >=75 HIGH, >=50 MEDIUM, >=25 AT_RISK."""
        if score >= 75:
            return cls.HIGH
        if score >= 50:
            return cls.MEDIUM
        if score >= 25:
            return cls.AT_RISK
        return cls.CRITICAL


class CandidateType(str, Enum):
    VETERAN = "VETERAN"
    NEWCOMER = "NEWCOMER"


class ViabilityMethod(str, Enum):
    SCORE_CUBE = "SCORE_CUBE"
    QUALITATIVE = "QUALITATIVE"


COMMENTS_ANALYSIS = "COMMENTS"


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------


class Candidate(Base):
    __tablename__ = "candidates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    social_handle = Column(String(255), index=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=now_utc)

    # Profile snapshot, owned by profile collection
    external_id = Column(String(64))
    full_name = Column(String(255))
    biography = Column(Text)
    followers_count = Column(Integer, nullable=False, default=0)
    follows_count = Column(Integer, nullable=False, default=0)
    posts_count = Column(Integer, nullable=False, default=0)
    verified = Column(Boolean, nullable=False, default=False)
    is_private = Column(Boolean, nullable=False, default=False)
    profile_scraped_at = Column(UTCDateTime, index=True)
    profile_attempted_at = Column(UTCDateTime)

    # Offices and electoral history, owned by the CRUD layer
    current_office = Column(String(255))
    current_tier = Column(String(20))
    intended_office = Column(String(255))
    intended_tier = Column(String(20))
    region = Column(String(255))
    votes_last_election = Column(Integer, nullable=False, default=0)
    votes_required = Column(Integer, nullable=False, default=0)
    valid_votes = Column(Integer, nullable=False, default=0)
    city_population = Column(Integer, nullable=False, default=0)

    # Owned by the viability / scenario engines
    viability_score = Column(Float)
    viability_attempted_at = Column(UTCDateTime, index=True)
    scenario_attempted_at = Column(UTCDateTime, index=True)

    posts = relationship("Post", back_populates="candidate", cascade="all, delete-orphan")
    follower_snapshots = relationship(
        "FollowerSnapshot", back_populates="candidate", cascade="all, delete-orphan"
    )
    viability_analyses = relationship(
        "ViabilityAnalysis", back_populates="candidate", cascade="all, delete-orphan"
    )
    scenario = relationship(
        "ScenarioSimulation", back_populates="candidate", uselist=False, cascade="all, delete-orphan"
    )

    @property
    def profile_url(self) -> str:
        return f"https://www.instagram.com/{self.social_handle}/"


class FollowerSnapshot(Base):
    __tablename__ = "follower_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    candidate_id = Column(Integer, ForeignKey("candidates.id"), nullable=False, index=True)
    followers_count = Column(Integer, nullable=False, default=0)
    follows_count = Column(Integer, nullable=False, default=0)
    posts_count = Column(Integer, nullable=False, default=0)
    followers_delta = Column(Integer)
    delta_pct = Column(Float)
    days_between = Column(Integer)
    collected_at = Column(UTCDateTime, nullable=False, default=now_utc, index=True)

    candidate = relationship("Candidate", back_populates="follower_snapshots")


class Post(Base):
    __tablename__ = "posts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    candidate_id = Column(Integer, ForeignKey("candidates.id"), nullable=False, index=True)
    external_id = Column(String(64), unique=True, index=True)
    short_code = Column(String(64))
    url = Column(String(512))
    post_type = Column(String(32))
    caption = Column(Text)
    likes_count = Column(Integer)
    comments_count = Column(Integer)
    video_view_count = Column(Integer)
    published_at = Column(UTCDateTime, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=now_utc)
    updated_at = Column(UTCDateTime, nullable=False, default=now_utc, onupdate=now_utc)

    # Collection watermarks
    comments_attempted_at = Column(UTCDateTime)
    comments_processed_at = Column(UTCDateTime, index=True)
    reprocessed = Column(Boolean, nullable=False, default=False)
    collection_error = Column(Text)

    # Sentiment watermarks
    sentiment_attempted_at = Column(UTCDateTime)
    sentiment_processed_at = Column(UTCDateTime)

    candidate = relationship("Candidate", back_populates="posts")
    comments = relationship("Comment", back_populates="post", cascade="all, delete-orphan")


class Comment(Base):
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    post_id = Column(Integer, ForeignKey("posts.id"), nullable=False, index=True)
    external_id = Column(String(64), nullable=False, unique=True)
    text = Column(Text, nullable=False)
    likes_count = Column(Integer, nullable=False, default=0)
    owner_username = Column(String(255))
    owner_verified = Column(Boolean, nullable=False, default=False)
    commented_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, nullable=False, default=now_utc)

    post = relationship("Post", back_populates="comments")


class SentimentAnalysis(Base):
    __tablename__ = "sentiment_analyses"
    __table_args__ = (UniqueConstraint("post_id", "analysis_type", name="uq_sentiment_post_type"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    post_id = Column(Integer, ForeignKey("posts.id"), nullable=False, index=True)
    candidate_id = Column(Integer, ForeignKey("candidates.id"), nullable=False, index=True)
    analysis_type = Column(String(32), nullable=False, default=COMMENTS_ANALYSIS)
    label = Column(String(16), nullable=False)
    score = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    comments_analyzed = Column(Integer, nullable=False, default=0)
    insights = Column(JSON, nullable=False, default=dict)
    model_name = Column(String(100))
    prompt_version = Column(String(64))
    processed_at = Column(UTCDateTime, nullable=False, default=now_utc, index=True)


class ViabilityAnalysis(Base):
    __tablename__ = "viability_analyses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    candidate_id = Column(Integer, ForeignKey("candidates.id"), nullable=False, index=True)
    score = Column(Float, nullable=False)
    category = Column(String(16), nullable=False)
    confidence = Column(Float, nullable=False)
    method = Column(String(16), nullable=False)
    candidate_type = Column(String(16))
    inputs = Column(JSON, nullable=False, default=dict)
    sentiment_summary = Column(JSON, nullable=False, default=dict)
    justification = Column(Text)
    strengths = Column(JSON, nullable=False, default=list)
    concerns = Column(JSON, nullable=False, default=list)
    model_name = Column(String(100))
    processed_at = Column(UTCDateTime, nullable=False, default=now_utc, index=True)

    candidate = relationship("Candidate", back_populates="viability_analyses")


class ScenarioSimulation(Base):
    __tablename__ = "scenario_simulations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    candidate_id = Column(Integer, ForeignKey("candidates.id"), nullable=False, unique=True)
    tier = Column(String(20), nullable=False)
    candidate_type = Column(String(16), nullable=False)
    score_cube = Column(Float, nullable=False)
    electoral_gap = Column(Float, nullable=False)
    engagement_deficit = Column(Float, nullable=False)
    uncertainty = Column(Float, nullable=False)
    optimistic = Column(Integer, nullable=False)
    realistic = Column(Integer, nullable=False)
    pessimistic = Column(Integer, nullable=False)
    parameters = Column(JSON, nullable=False, default=dict)
    algorithm_version = Column(String(32))
    processed_at = Column(UTCDateTime, nullable=False, default=now_utc)

    candidate = relationship("Candidate", back_populates="scenario")


# ---------------------------------------------------------------------------
# Scraped records (prior to persistence)
# ---------------------------------------------------------------------------


@dataclass
class ScrapedComment:
    """A single comment as returned by the scraping capability."""

    id: str
    text: str
    likes_count: int = 0
    owner_username: Optional[str] = None
    owner_verified: bool = False
    timestamp: Optional[datetime] = None


@dataclass
class ScrapedPost:
    """A post listed on a scraped profile."""

    id: str
    short_code: Optional[str] = None
    url: Optional[str] = None
    post_type: Optional[str] = None
    caption: Optional[str] = None
    likes_count: Optional[int] = None
    comments_count: Optional[int] = None
    video_view_count: Optional[int] = None
    timestamp: Optional[datetime] = None


@dataclass
class ScrapedProfile:
    """Profile details and latest posts for one account."""

    id: Optional[str]
    username: Optional[str]
    full_name: Optional[str] = None
    biography: Optional[str] = None
    followers_count: int = 0
    follows_count: int = 0
    posts_count: int = 0
    verified: bool = False
    private: bool = False
    latest_posts: List[ScrapedPost] = field(default_factory=list)


__all__ = [
    "Base",
    "COMMENTS_ANALYSIS",
    "Candidate",
    "CandidateType",
    "Comment",
    "FollowerSnapshot",
    "OfficeTier",
    "Post",
    "ScenarioSimulation",
    "ScrapedComment",
    "ScrapedPost",
    "ScrapedProfile",
    "SentimentAnalysis",
    "SentimentLabel",
    "UTCDateTime",
    "ViabilityAnalysis",
    "ViabilityCategory",
    "ViabilityMethod",
]
