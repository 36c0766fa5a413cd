"""
Electoral viability scoring.

National and state candidates are scored with the deterministic Score Cube,
which blends an electoral-history (or interaction) ratio with an
engagement-rate ratio. Everybody else gets a qualitative assessment from the
text classifier, decoded and checked against the same category thresholds.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from pulse.config import (
    ELIGIBLE_SHARE,
    TIER_KNOWLEDGE_BASE,
    TURNOUT_SHARE,
    VIABILITY_QUALITATIVE_VERSION,
    VIABILITY_SCORE_CUBE_VERSION,
    WINNING_SHARE,
    Settings,
    settings as default_settings,
)
from pulse.core.eligibility import SCORE_CUBE_TIERS, UnitKind, next_due
from pulse.core.sentiment import sentiment_summary
from pulse.db import commit_pending
from pulse.errors import InvalidInput, UpstreamError
from pulse.models import (
    Candidate,
    CandidateType,
    FollowerSnapshot,
    OfficeTier,
    Post,
    ViabilityAnalysis,
    ViabilityCategory,
    ViabilityMethod,
)
from pulse.schemas import QualitativeInsights, decode_insights, decode_viability
from pulse.services.classifier import TextClassifier, call_with_retry
from pulse.utils import clamp, now_utc, round_half_up

logger = logging.getLogger(__name__)

KEY_MESSAGES: Dict[ViabilityCategory, str] = {
    ViabilityCategory.HIGH: "High chance of winning",
    ViabilityCategory.MEDIUM: "Moderate chances; needs to secure traction",
    ViabilityCategory.AT_RISK: "High risk; uncertain scenario",
    ViabilityCategory.CRITICAL: "Remote probability of election",
}

MUNICIPAL_OFFICE_HINTS = ("mayor", "council", "prefeit", "vereador")


@dataclass
class ScoreCube:
    """Score Cube inputs, intermediate ratios and result for one candidate."""

    tier: str
    candidate_type: CandidateType
    i_ref: float
    followers: int
    posts_used: int
    avg_engagement: float
    engagement_rate: float
    engagement_ratio: float
    specific_ratio: float
    votes: int
    votes_required: int
    raw_score: float
    score: int
    category: ViabilityCategory
    confidence: float

    def inputs(self) -> Dict[str, Any]:
        data = asdict(self)
        data["candidate_type"] = self.candidate_type.value
        data["category"] = self.category.value
        data["method_version"] = VIABILITY_SCORE_CUBE_VERSION
        return data


def category_for(score: float) -> ViabilityCategory:
    """>=75 HIGH, >=50 MEDIUM, >=25 AT_RISK, otherwise CRITICAL."""
    return ViabilityCategory.for_score(score)


def score_cube_tier(candidate: Candidate) -> Optional[str]:
    """The Score Cube tier for a candidate (intended office first), or None."""
    tier = candidate.intended_tier or candidate.current_tier
    return tier if tier in SCORE_CUBE_TIERS else None


def is_municipal(candidate: Candidate) -> bool:
    tiers = {candidate.intended_tier, candidate.current_tier}
    if OfficeTier.MUNICIPAL.value in tiers:
        return True
    office = (candidate.intended_office or "").lower()
    return any(hint in office for hint in MUNICIPAL_OFFICE_HINTS)


def candidate_type_for(candidate: Candidate) -> CandidateType:
    return CandidateType.VETERAN if (candidate.votes_last_election or 0) > 0 else CandidateType.NEWCOMER


def engagement_posts(session: Session, candidate_id: int, window: int) -> List[Post]:
    """Most recent posts carrying both likes and comments counters."""
    return list(
        session.scalars(
            select(Post)
            .where(
                Post.candidate_id == candidate_id,
                Post.likes_count.is_not(None),
                Post.comments_count.is_not(None),
                Post.likes_count >= 0,
                Post.comments_count >= 0,
            )
            .order_by(Post.published_at.is_(None), Post.published_at.desc(), Post.id.desc())
            .limit(window)
        )
    )


def average_engagement(posts: Sequence[Post]) -> float:
    """Mean likes + comments per post."""
    if not posts:
        return 0.0
    return sum(p.likes_count + p.comments_count for p in posts) / len(posts)


def resolve_votes_required(candidate: Candidate, tier: str) -> int:
    """
    Votes needed to win.

    The stored target wins; otherwise it is estimated from the population
    (eligible share, turnout, simple majority) and finally from the tier.
    """
    if (candidate.votes_required or 0) > 0:
        return candidate.votes_required
    population = candidate.city_population or 0
    if population > 0:
        voters = math.floor(population * ELIGIBLE_SHARE)
        turnout = math.floor(voters * TURNOUT_SHARE)
        return math.floor(turnout * WINNING_SHARE) + 1
    return int(TIER_KNOWLEDGE_BASE[tier]["votes_required"])


def score_cube_confidence(votes: int, votes_required: int, followers: int, posts: int) -> float:
    """Data-availability confidence for a Score Cube result."""
    confidence = 0.3
    if votes > 0:
        confidence += 0.25
    if votes_required > 0:
        confidence += 0.2
    if followers > 1000:
        confidence += 0.15
    if posts >= 10:
        confidence += 0.1
    return round(min(confidence, 1.0), 2)


def compute_score_cube(candidate: Candidate, posts: Sequence[Post], tier: str) -> ScoreCube:
    """
    Deterministic Score Cube for a national or state candidate.

    Args:
        candidate: Candidate with followers > 0
        posts: Engagement posts (see engagement_posts)
        tier: NATIONAL or STATE

    Returns:
        ScoreCube with the rounded score S and its unrounded value
    """
    knowledge = TIER_KNOWLEDGE_BASE[tier]
    i_ref = knowledge["i_ref"]
    candidate_type = candidate_type_for(candidate)
    followers = candidate.followers_count or 0
    votes = candidate.votes_last_election or 0
    votes_required = resolve_votes_required(candidate, tier)

    avg = average_engagement(posts)
    engagement_rate = avg / followers * 100 if followers > 0 else 0.0
    engagement_ratio = min(engagement_rate / 1, 1.0)

    if candidate_type is CandidateType.VETERAN:
        specific_ratio = min(votes / votes_required, 1.0) if votes_required > 0 else 0.0
    else:
        specific_ratio = min(avg / i_ref, 1.0)

    raw_score = clamp((0.5 * specific_ratio + 0.5 * engagement_ratio) * 100, 0.0, 100.0)
    score = round_half_up(raw_score)

    return ScoreCube(
        tier=tier,
        candidate_type=candidate_type,
        i_ref=i_ref,
        followers=followers,
        posts_used=len(posts),
        avg_engagement=round(avg, 2),
        engagement_rate=engagement_rate,
        engagement_ratio=engagement_ratio,
        specific_ratio=specific_ratio,
        votes=votes,
        votes_required=votes_required,
        raw_score=raw_score,
        score=score,
        category=category_for(score),
        confidence=score_cube_confidence(votes, votes_required, followers, len(posts)),
    )


def fallback_insights(candidate_type: CandidateType) -> QualitativeInsights:
    strengths = ["Electoral experience"] if candidate_type is CandidateType.VETERAN else ["Fresh candidacy"]
    return QualitativeInsights(strengths=strengths, concerns=["Manual review recommended"])


def _insights_prompt(candidate: Candidate, cube: ScoreCube) -> str:
    return f"""Political analyst: based on the Score Cube below, give complementary qualitative insights.

CANDIDATE: {candidate.name}
SCORE CUBE: {cube.score}% ({cube.category.value})
TYPE: {cube.candidate_type.value}
OFFICE: {candidate.intended_office or candidate.current_office or 'not informed'}
FOLLOWERS: {cube.followers}

JSON:
{{
  "strengths": ["point1", "point2"],
  "concerns": ["concern1", "concern2"]
}}

RULES:
- at most 4 points each, 50 characters per point"""


async def qualitative_insights(
    classifier: TextClassifier,
    candidate: Candidate,
    cube: ScoreCube,
) -> QualitativeInsights:
    """Strengths and concerns to go with a Score Cube; one attempt, boilerplate on failure."""
    try:
        reply = await classifier.complete(_insights_prompt(candidate, cube))
    except UpstreamError as e:
        logger.info("Qualitative insights unavailable for %s: %s", candidate.name, e)
        return fallback_insights(cube.candidate_type)
    return decode_insights(reply) or fallback_insights(cube.candidate_type)


def quantitative_inputs(session: Session, candidate: Candidate, posts: Sequence[Post]) -> Dict[str, Any]:
    """Engagement metrics (plus municipal ratios when relevant) for the qualitative path."""
    avg = average_engagement(posts)
    followers = candidate.followers_count or 0
    latest = session.scalars(
        select(FollowerSnapshot)
        .where(FollowerSnapshot.candidate_id == candidate.id)
        .order_by(FollowerSnapshot.collected_at.desc(), FollowerSnapshot.id.desc())
        .limit(1)
    ).first()

    data: Dict[str, Any] = {
        "followers": followers,
        "follows": candidate.follows_count or 0,
        "verified": bool(candidate.verified),
        "total_posts": candidate.posts_count or 0,
        "recent_posts": len(posts),
        "avg_engagement": round(avg),
        "engagement_rate": round(avg / followers * 100, 3) if followers > 0 else 0.0,
        "followers_growth": (latest.followers_delta or 0) if latest else 0,
        "followers_growth_pct": round(latest.delta_pct or 0.0, 2) if latest else 0.0,
        "current_office": candidate.current_office or "not informed",
        "intended_office": candidate.intended_office or "not informed",
        "region": candidate.region or "not informed",
        "municipal": is_municipal(candidate),
        "method_version": VIABILITY_QUALITATIVE_VERSION,
    }

    if data["municipal"]:
        population = candidate.city_population or 0
        valid_votes = candidate.valid_votes or 0
        votes = candidate.votes_last_election or 0
        votes_to_win = candidate.votes_required or 0
        if votes_to_win == 0 and valid_votes > 0:
            votes_to_win = math.floor(valid_votes * WINNING_SHARE + 1)
        data.update(
            {
                "city_population": population,
                "valid_votes": valid_votes,
                "votes_last_election": votes,
                "last_vote_share_pct": round(votes / valid_votes * 100, 2) if valid_votes > 0 and votes > 0 else 0.0,
                "digital_penetration_pct": round(followers / population * 100, 3) if population > 0 else 0.0,
                "votes_to_win": votes_to_win,
                "electoral_gap": votes_to_win - votes if votes_to_win > 0 and votes > 0 else 0,
            }
        )
    return data


def _qualitative_prompt(candidate: Candidate, data: Dict[str, Any], summary: Dict[str, Any]) -> str:
    municipal = ""
    if data["municipal"] and data.get("city_population"):
        municipal = f"""
MUNICIPAL DATA:
- Population: {data['city_population']}
- Digital penetration: {data['digital_penetration_pct']}%
- Votes last election: {data['votes_last_election'] or 'N/A'}
- Distance to victory: {data['electoral_gap'] or 'N/A'} votes
"""
    return f"""Political analyst: assess the electoral viability of this candidate.

CANDIDATE: {candidate.name} (@{candidate.social_handle})
OFFICE: {data['intended_office']}
FOLLOWERS: {data['followers']}
ENGAGEMENT: {data['engagement_rate']}%
{municipal}
SENTIMENT: {summary['analyses']} analyses
Positive: {summary['positive']} | Negative: {summary['negative']} | Neutral: {summary['neutral']}

JSON:
{{
  "score": 0.0,
  "category": "HIGH|MEDIUM|AT_RISK|CRITICAL",
  "confidence": 0.0,
  "justification": "Explanation, up to 200 characters",
  "strengths": ["point1", "point2"],
  "concerns": ["risk1", "risk2"]
}}

RULES:
- score: 0-100 (HIGH: 75-100, MEDIUM: 50-74, AT_RISK: 25-49, CRITICAL: 0-24)
- confidence: 0.0-1.0
- at most 4 points each, 50 characters per point"""


def latest_analysis(session: Session, candidate_id: int) -> Optional[ViabilityAnalysis]:
    return session.scalars(
        select(ViabilityAnalysis)
        .where(ViabilityAnalysis.candidate_id == candidate_id)
        .order_by(ViabilityAnalysis.processed_at.desc(), ViabilityAnalysis.id.desc())
        .limit(1)
    ).first()


def prune_viability_history(
    session: Session,
    keep_days: Optional[int] = None,
    settings: Settings | None = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Delete viability analyses older than `keep_days`.

    Each candidate's latest analysis is kept whatever its age.

    Args:
        session: Active session (the caller commits)
        keep_days: Retention window, defaults to VIABILITY_RETENTION_DAYS
        settings: Settings
        now: Reference time

    Returns:
        Number of deleted analyses

    Raises:
        InvalidInput: keep_days is negative
    """
    config = settings or default_settings
    keep_days = config.VIABILITY_RETENTION_DAYS if keep_days is None else keep_days
    if keep_days < 0:
        raise InvalidInput(f"keep_days must not be negative, got {keep_days}")

    cutoff = (now or now_utc()) - timedelta(days=keep_days)
    candidate_ids = session.scalars(select(ViabilityAnalysis.candidate_id).distinct()).all()
    latest_ids = [latest_analysis(session, candidate_id).id for candidate_id in candidate_ids]

    stmt = delete(ViabilityAnalysis).where(ViabilityAnalysis.processed_at < cutoff)
    if latest_ids:
        stmt = stmt.where(ViabilityAnalysis.id.not_in(latest_ids))
    deleted = session.execute(stmt.execution_options(synchronize_session="fetch")).rowcount or 0
    logger.info("Pruned %d viability analyses older than %d days", deleted, keep_days)
    return deleted


async def _score_cube_analysis(
    session: Session,
    candidate: Candidate,
    posts: Sequence[Post],
    tier: str,
    classifier: TextClassifier,
    summary: Dict[str, Any],
) -> ViabilityAnalysis:
    cube = compute_score_cube(candidate, posts, tier)
    commit_pending(session)
    insights = await qualitative_insights(classifier, candidate, cube)
    logger.info(
        "Score Cube for %s: %d%% (%s, %s)",
        candidate.name,
        cube.score,
        cube.category.value,
        cube.candidate_type.value,
    )
    return ViabilityAnalysis(
        candidate_id=candidate.id,
        score=float(cube.score),
        category=cube.category.value,
        confidence=cube.confidence,
        method=ViabilityMethod.SCORE_CUBE.value,
        candidate_type=cube.candidate_type.value,
        inputs=cube.inputs(),
        sentiment_summary=summary,
        justification=f"{KEY_MESSAGES[cube.category]}. Score Cube: {cube.score}% ({cube.candidate_type.value})",
        strengths=insights.strengths,
        concerns=insights.concerns,
        model_name=VIABILITY_SCORE_CUBE_VERSION,
    )


async def _qualitative_analysis(
    session: Session,
    candidate: Candidate,
    posts: Sequence[Post],
    classifier: TextClassifier,
    summary: Dict[str, Any],
    config: Settings,
    sleep: Callable[[float], Awaitable[None]],
) -> Optional[ViabilityAnalysis]:
    data = quantitative_inputs(session, candidate, posts)
    prompt = _qualitative_prompt(candidate, data, summary)
    commit_pending(session)
    reply = await call_with_retry(
        classifier,
        prompt,
        attempts=config.CLASSIFIER_ATTEMPTS,
        backoff_seconds=config.CLASSIFIER_BACKOFF_SECONDS,
        sleep=sleep,
    )
    if reply is None:
        logger.warning("Qualitative viability skipped for %s: classifier unavailable", candidate.name)
        return None

    verdict = decode_viability(reply)
    logger.info("Qualitative viability for %s: %.1f (%s)", candidate.name, verdict.score, verdict.category.value)
    return ViabilityAnalysis(
        candidate_id=candidate.id,
        score=verdict.score,
        category=verdict.category.value,
        confidence=verdict.confidence,
        method=ViabilityMethod.QUALITATIVE.value,
        candidate_type=candidate_type_for(candidate).value,
        inputs=data,
        sentiment_summary=summary,
        justification=verdict.justification,
        strengths=verdict.strengths,
        concerns=verdict.concerns,
        model_name=classifier.model_name,
    )


async def assess_candidate(
    session: Session,
    candidate: Candidate,
    classifier: TextClassifier,
    settings: Settings | None = None,
    force: bool = False,
    now: Optional[datetime] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Optional[ViabilityAnalysis]:
    """
    Produce a viability analysis for one candidate.

    A result younger than VIABILITY_COOLDOWN_HOURS is returned as-is unless
    forced. Candidates without followers or engagement data are skipped.

    Returns:
        The new (or recent) analysis, or None when the candidate was skipped
    """
    config = settings or default_settings
    now = now or now_utc()

    if not force:
        recent = latest_analysis(session, candidate.id)
        if recent is not None and recent.processed_at > now - timedelta(hours=config.VIABILITY_COOLDOWN_HOURS):
            logger.debug("Recent viability analysis kept for %s", candidate.name)
            return recent

    candidate.viability_attempted_at = now
    posts = engagement_posts(session, candidate.id, config.ENGAGEMENT_POST_WINDOW)
    if (candidate.followers_count or 0) <= 0 or not posts:
        logger.info("Viability skipped for %s: no followers or engagement data", candidate.name)
        session.flush()
        return None

    summary = sentiment_summary(session, candidate.id)
    tier = score_cube_tier(candidate)
    if tier is not None:
        analysis = await _score_cube_analysis(session, candidate, posts, tier, classifier, summary)
    else:
        analysis = await _qualitative_analysis(session, candidate, posts, classifier, summary, config, sleep)

    if analysis is None:
        session.flush()
        return None

    analysis.processed_at = now
    session.add(analysis)
    candidate.viability_score = analysis.score
    session.flush()
    return analysis


async def assess_next_candidate(
    session: Session,
    classifier: TextClassifier,
    settings: Settings | None = None,
    force: bool = False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Optional[ViabilityAnalysis]:
    config = settings or default_settings
    candidate = next_due(session, UnitKind.VIABILITY, config, force=force)
    if candidate is None:
        logger.debug("No candidate due for viability")
        return None
    return await assess_candidate(session, candidate, classifier, config, force=force, sleep=sleep)


__all__ = [
    "KEY_MESSAGES",
    "ScoreCube",
    "assess_candidate",
    "assess_next_candidate",
    "average_engagement",
    "category_for",
    "compute_score_cube",
    "engagement_posts",
    "latest_analysis",
    "prune_viability_history",
    "qualitative_insights",
    "quantitative_inputs",
    "resolve_votes_required",
    "score_cube_confidence",
    "score_cube_tier",
]
