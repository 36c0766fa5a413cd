"""
Comment sentiment analysis for candidate posts.

This module filters noise out of collected comments, asks the text
classifier for a verdict on the remaining ones and stores one analysis per
post. The stored confidence is recomputed from the evidence (volume, author
diversity, comment length, verified authors, engagement) instead of trusting
the classifier's self-reported figure.
"""
from __future__ import annotations

import asyncio
import logging
import re
from textwrap import shorten
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.config import SENTIMENT_PROMPT_VERSION, Settings, settings as default_settings
from pulse.core.eligibility import UnitKind, next_due
from pulse.db import commit_pending, insert_if_absent
from pulse.models import (
    COMMENTS_ANALYSIS,
    Comment,
    Post,
    SentimentAnalysis,
    SentimentLabel,
)
from pulse.schemas import SentimentVerdict, decode_sentiment
from pulse.services.classifier import TextClassifier, call_with_retry
from pulse.utils import clamp, is_emoji_only, is_numeric_only, is_punctuation_only, now_utc

logger = logging.getLogger(__name__)

MIN_TEXT_LENGTH = 3
SHORT_EMOJI_LENGTH = 10
DEGRADED_CONFIDENCE = 0.1
SUMMARY_WINDOW = 20

_LAUGHTER_RE = re.compile(r"^(?:k{3,}|a*(?:ha)+h?|(?:ah)+a?|(?:rs){2,}|lo+l|(?:hue){2,})$")
_GENERIC_PRAISE_RE = re.compile(r"^(?:top+|show+|legal+)$")
_SEPARATORS_RE = re.compile(r"[\W_]+", re.UNICODE)


def is_noise(text: Optional[str]) -> bool:
    """
    Check whether a comment carries no analysable opinion.

    Drops very short texts, short emoji-only texts, laughter, one-word generic
    praise, texts made only of hashtags or mentions, numerals and symbol runs.
    """
    text = (text or "").strip()
    if len(text) < MIN_TEXT_LENGTH:
        return True
    if len(text) < SHORT_EMOJI_LENGTH and is_emoji_only(text):
        return True

    squashed = _SEPARATORS_RE.sub("", text.lower())
    if squashed and (_LAUGHTER_RE.match(squashed) or _GENERIC_PRAISE_RE.match(squashed)):
        return True

    tokens = text.split()
    if all(token[0] in "@#" for token in tokens):
        return True
    if is_numeric_only(text.replace(" ", "")):
        return True
    return is_punctuation_only(text.replace(" ", ""))


def filter_noise(comments: Sequence[Comment]) -> List[Comment]:
    return [comment for comment in comments if not is_noise(comment.text)]


def _recency_key(comment: Comment) -> float:
    if comment.commented_at is None:
        return float("-inf")
    return comment.commented_at.timestamp()


def rank_comments(comments: Sequence[Comment], cap: int) -> List[Comment]:
    """Most liked first, then most recent, capped."""
    ranked = sorted(comments, key=lambda c: (c.likes_count or 0, _recency_key(c)), reverse=True)
    return ranked[:cap]


def build_transcript(comments: Sequence[Comment]) -> str:
    lines = []
    for index, comment in enumerate(comments, start=1):
        author = f"@{comment.owner_username}" if comment.owner_username else "@anonymous"
        verified = " ✓" if comment.owner_verified else ""
        text = shorten(comment.text, width=280, placeholder="…")
        lines.append(f'{index}. "{text}" ({comment.likes_count or 0} likes, {author}{verified})')
    return "\n".join(lines)


def build_prompt(post: Post, comments: Sequence[Comment]) -> str:
    candidate = post.candidate
    office = candidate.intended_office or candidate.current_office or "not informed"
    caption = shorten(post.caption or "", width=200, placeholder="…") or "(no caption)"
    return f"""Analyse the sentiment of these comments about a political candidate.

CANDIDATE: {candidate.name} (@{candidate.social_handle})
Office: {office}
Followers: {candidate.followers_count or 'N/A'}
Verified: {'yes' if candidate.verified else 'no'}
POST CAPTION: {caption}

COMMENTS ({len(comments)}):
{build_transcript(comments)}

INSTRUCTIONS:
1. Judge the overall sentiment in the local political context
2. Take irony, sarcasm and constructive versus destructive criticism into account
3. Identify the main themes mentioned

LABELS:
- POSITIVE: support, praise, agreement
- NEGATIVE: destructive criticism, attacks, disapproval
- NEUTRAL: informative or constructive comments

ANSWER WITH VALID JSON:
{{
  "label": "POSITIVE|NEGATIVE|NEUTRAL",
  "score": 0.0,
  "confidence": 0.0,
  "insights": {{
    "keywords": ["keyword1", "keyword2"],
    "themes": ["theme1", "theme2"],
    "summary": "Short summary of the sentiment (max 80 characters)"
  }}
}}

RULES:
- score: -1.0 (very negative) to +1.0 (very positive)
- confidence: 0.0 (low) to 1.0 (high)
- At most 4 keywords and 3 themes"""


def evidence_metrics(comments: Sequence[Comment]) -> Dict[str, Any]:
    """Measurable properties of the analysed comments."""
    total = len(comments)
    if total == 0:
        return {
            "comments": 0,
            "author_diversity": 0.0,
            "avg_length": 0.0,
            "verified_authors": 0,
            "liked_share": 0.0,
        }
    authors = {c.owner_username or f"anonymous-{c.external_id}" for c in comments}
    return {
        "comments": total,
        "author_diversity": round(len(authors) / total, 2),
        "avg_length": round(sum(len(c.text) for c in comments) / total, 1),
        "verified_authors": sum(1 for c in comments if c.owner_verified),
        "liked_share": round(sum(1 for c in comments if (c.likes_count or 0) > 0) / total, 2),
    }


def evidence_confidence(metrics: Dict[str, Any], score: float) -> float:
    """
    Confidence in a sentiment score derived from the evidence behind it.

    Args:
        metrics: Output of evidence_metrics
        score: Decoded sentiment score in [-1, 1]

    Returns:
        Confidence in [0.1, 0.9]
    """
    n = metrics["comments"]
    confidence = 0.2

    if n >= 50:
        confidence += 0.25
    elif n >= 30:
        confidence += 0.20
    elif n >= 20:
        confidence += 0.15
    elif n >= 10:
        confidence += 0.10
    elif n >= 5:
        confidence += 0.05

    diversity = metrics["author_diversity"]
    if diversity > 0.8:
        confidence += 0.15
    elif diversity > 0.6:
        confidence += 0.10
    elif diversity > 0.4:
        confidence += 0.05
    else:
        confidence -= 0.05

    avg_length = metrics["avg_length"]
    if avg_length > 80:
        confidence += 0.10
    elif avg_length > 40:
        confidence += 0.05
    elif avg_length < 15:
        confidence -= 0.05

    confidence += min(metrics["verified_authors"] * 0.02, 0.08)

    liked_share = metrics["liked_share"]
    if liked_share > 0.5:
        confidence += 0.05
    elif liked_share > 0.2:
        confidence += 0.02

    # extreme scores need more evidence
    magnitude = abs(score)
    if magnitude > 0.8:
        if n < 10:
            confidence -= 0.25
        elif n < 20:
            confidence -= 0.15
    elif magnitude > 0.6:
        if n < 5:
            confidence -= 0.20
        elif n < 10:
            confidence -= 0.10
    elif magnitude < 0.1:
        confidence -= 0.05
    else:
        confidence += 0.05

    return round(clamp(confidence, 0.1, 0.9), 2)


def get_analysis(session: Session, post_id: int) -> Optional[SentimentAnalysis]:
    return session.scalars(
        select(SentimentAnalysis).where(
            SentimentAnalysis.post_id == post_id,
            SentimentAnalysis.analysis_type == COMMENTS_ANALYSIS,
        )
    ).first()


async def analyze_post(
    session: Session,
    post: Post,
    classifier: TextClassifier,
    settings: Settings | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Optional[SentimentAnalysis]:
    """
    Analyse the comments of one post.

    An existing analysis is returned as-is without calling the classifier.
    Posts with fewer than SENTIMENT_MIN_COMMENTS usable comments are skipped.
    An exhausted classifier yields a degraded neutral placeholder.

    Returns:
        The stored analysis, or None when the post was skipped
    """
    config = settings or default_settings

    existing = get_analysis(session, post.id)
    if existing is not None:
        logger.debug("Post %s already analysed", post.id)
        return existing

    now = now_utc()
    post.sentiment_attempted_at = now

    comments = list(session.scalars(select(Comment).where(Comment.post_id == post.id)))
    usable = filter_noise(comments)
    if len(usable) < config.SENTIMENT_MIN_COMMENTS:
        logger.info(
            "Post %s skipped: %d usable of %d comments (need %d)",
            post.id,
            len(usable),
            len(comments),
            config.SENTIMENT_MIN_COMMENTS,
        )
        session.flush()
        return None

    selected = rank_comments(usable, config.SENTIMENT_TRANSCRIPT_CAP)
    prompt = build_prompt(post, selected)
    metrics = evidence_metrics(selected)
    commit_pending(session)
    logger.info("Analysing %d comments for post %s", len(selected), post.id)

    reply = await call_with_retry(
        classifier,
        prompt,
        attempts=config.CLASSIFIER_ATTEMPTS,
        backoff_seconds=config.CLASSIFIER_BACKOFF_SECONDS,
        sleep=sleep,
    )
    if reply is None:
        verdict = SentimentVerdict.placeholder("Sentiment could not be processed")
    else:
        verdict = decode_sentiment(reply)

    confidence = DEGRADED_CONFIDENCE if verdict.degraded else evidence_confidence(metrics, verdict.score)

    inserted = insert_if_absent(
        session,
        SentimentAnalysis,
        {
            "post_id": post.id,
            "candidate_id": post.candidate_id,
            "analysis_type": COMMENTS_ANALYSIS,
            "label": verdict.label.value,
            "score": verdict.score,
            "confidence": confidence,
            "comments_analyzed": len(selected),
            "insights": {
                "keywords": verdict.insights.keywords,
                "themes": verdict.insights.themes,
                "summary": verdict.insights.summary,
                "degraded": verdict.degraded,
                "evidence": {**metrics, "classifier_confidence": verdict.confidence},
            },
            "model_name": classifier.model_name,
            "prompt_version": SENTIMENT_PROMPT_VERSION,
            "processed_at": now,
        },
        conflict_columns=["post_id", "analysis_type"],
    )
    post.sentiment_processed_at = now
    session.flush()

    if inserted:
        logger.info(
            "Post %s: %s (%.2f), confidence %.2f (classifier said %.2f)",
            post.id,
            verdict.label.value,
            verdict.score,
            confidence,
            verdict.confidence,
        )
    else:
        logger.info("Post %s was analysed concurrently, keeping the stored result", post.id)
    return get_analysis(session, post.id)


async def analyze_next_post(
    session: Session,
    classifier: TextClassifier,
    settings: Settings | None = None,
    force: bool = False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Optional[SentimentAnalysis]:
    """Analyse the next due post; None when nothing is due or it was skipped."""
    config = settings or default_settings
    post = next_due(session, UnitKind.SENTIMENT, config, force=force)
    if post is None:
        logger.debug("No post due for sentiment analysis")
        return None
    return await analyze_post(session, post, classifier, config, sleep=sleep)


def sentiment_summary(session: Session, candidate_id: int, limit: int = SUMMARY_WINDOW) -> Dict[str, Any]:
    """Label distribution and averages over a candidate's latest analyses."""
    analyses = list(
        session.scalars(
            select(SentimentAnalysis)
            .where(SentimentAnalysis.candidate_id == candidate_id)
            .order_by(SentimentAnalysis.processed_at.desc(), SentimentAnalysis.id.desc())
            .limit(limit)
        )
    )
    summary: Dict[str, Any] = {
        "candidate_id": candidate_id,
        "analyses": len(analyses),
        "positive": sum(1 for a in analyses if a.label == SentimentLabel.POSITIVE.value),
        "negative": sum(1 for a in analyses if a.label == SentimentLabel.NEGATIVE.value),
        "neutral": sum(1 for a in analyses if a.label == SentimentLabel.NEUTRAL.value),
        "average_score": None,
        "average_confidence": None,
        "last_processed_at": None,
    }
    if analyses:
        summary["average_score"] = round(sum(a.score for a in analyses) / len(analyses), 3)
        summary["average_confidence"] = round(sum(a.confidence for a in analyses) / len(analyses), 3)
        summary["last_processed_at"] = analyses[0].processed_at.isoformat()
    return summary


__all__ = [
    "analyze_next_post",
    "analyze_post",
    "build_prompt",
    "build_transcript",
    "evidence_confidence",
    "evidence_metrics",
    "filter_noise",
    "get_analysis",
    "is_noise",
    "rank_comments",
    "sentiment_summary",
]
