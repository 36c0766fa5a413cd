"""
Eligibility selection: which unit of work is due next for each task kind.

Every kind is described by a watermark column, a cooldown and a set of
filters. A unit is due when its watermark is null or older than the
cooldown. Never-processed units come first (oldest created first), then
the stalest watermark.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from pulse.config import Settings, settings as default_settings
from pulse.models import (
    COMMENTS_ANALYSIS,
    Candidate,
    OfficeTier,
    Post,
    SentimentAnalysis,
)
from pulse.utils import now_utc

logger = logging.getLogger(__name__)

SCORE_CUBE_TIERS = (OfficeTier.NATIONAL.value, OfficeTier.STATE.value)


class UnitKind(str, Enum):
    PROFILE = "PROFILE"
    COMMENTS = "COMMENTS"
    REPROCESS = "REPROCESS"
    SENTIMENT = "SENTIMENT"
    VIABILITY = "VIABILITY"
    SCENARIO = "SCENARIO"


@dataclass(frozen=True)
class _Rule:
    model: Any
    watermark: Any
    cooldown: Callable[[Settings], timedelta]
    filters: Callable[[Settings, datetime], List[Any]]


def _active_candidate_post() -> Any:
    return Post.candidate.has(Candidate.active.is_(True))


def _profile_filters(config: Settings, now: datetime) -> List[Any]:
    return [
        Candidate.active.is_(True),
        Candidate.social_handle.is_not(None),
        Candidate.social_handle != "",
        # back off after a failed fetch
        or_(
            Candidate.profile_attempted_at.is_(None),
            Candidate.profile_attempted_at <= now - timedelta(minutes=config.PROFILE_RETRY_MINUTES),
        ),
    ]


def _comments_filters(config: Settings, now: datetime) -> List[Any]:
    return [
        Post.comments_processed_at.is_(None),
        Post.url.is_not(None),
        _active_candidate_post(),
    ]


def _reprocess_filters(config: Settings, now: datetime) -> List[Any]:
    return [
        Post.reprocessed.is_(False),
        Post.comments_processed_at.is_not(None),
        Post.published_at >= now - timedelta(days=config.REPROCESS_WINDOW_DAYS),
        Post.comments_count > config.REPROCESS_MIN_AVAILABLE,
        Post.url.is_not(None),
        _active_candidate_post(),
    ]


def _sentiment_filters(config: Settings, now: datetime) -> List[Any]:
    analysed = (
        select(SentimentAnalysis.id)
        .where(
            SentimentAnalysis.post_id == Post.id,
            SentimentAnalysis.analysis_type == COMMENTS_ANALYSIS,
        )
        .exists()
    )
    return [
        Post.comments_processed_at.is_not(None),
        ~analysed,
        _active_candidate_post(),
    ]


def _viability_filters(config: Settings, now: datetime) -> List[Any]:
    return [Candidate.active.is_(True), Candidate.followers_count > 0]


def _scenario_filters(config: Settings, now: datetime) -> List[Any]:
    tier = func.coalesce(Candidate.intended_tier, Candidate.current_tier)
    return [
        Candidate.active.is_(True),
        Candidate.followers_count > 0,
        tier.in_(SCORE_CUBE_TIERS),
    ]


RULES: Dict[UnitKind, _Rule] = {
    UnitKind.PROFILE: _Rule(
        Candidate,
        Candidate.profile_scraped_at,
        lambda c: timedelta(hours=c.PROFILE_COOLDOWN_HOURS),
        _profile_filters,
    ),
    UnitKind.COMMENTS: _Rule(
        Post,
        Post.comments_attempted_at,
        lambda c: timedelta(minutes=c.COMMENTS_RETRY_MINUTES),
        _comments_filters,
    ),
    UnitKind.REPROCESS: _Rule(
        Post,
        Post.comments_processed_at,
        lambda c: timedelta(hours=c.REPROCESS_MIN_AGE_HOURS),
        _reprocess_filters,
    ),
    UnitKind.SENTIMENT: _Rule(
        Post,
        Post.sentiment_attempted_at,
        lambda c: timedelta(hours=c.SENTIMENT_RETRY_HOURS),
        _sentiment_filters,
    ),
    UnitKind.VIABILITY: _Rule(
        Candidate,
        Candidate.viability_attempted_at,
        lambda c: timedelta(hours=c.VIABILITY_COOLDOWN_HOURS),
        _viability_filters,
    ),
    UnitKind.SCENARIO: _Rule(
        Candidate,
        Candidate.scenario_attempted_at,
        lambda c: timedelta(hours=c.SCENARIO_COOLDOWN_HOURS),
        _scenario_filters,
    ),
}


def _due_clause(rule: _Rule, cutoff: datetime) -> Any:
    return or_(rule.watermark.is_(None), rule.watermark <= cutoff)


def _due_select(kind: UnitKind, config: Settings, now: datetime, force: bool):
    rule = RULES[kind]
    cutoff = now if force else now - rule.cooldown(config)
    return (
        select(rule.model)
        .where(*rule.filters(config, now))
        .where(_due_clause(rule, cutoff))
        .order_by(
            rule.watermark.is_not(None),
            rule.watermark.asc(),
            rule.model.created_at.asc(),
            rule.model.id.asc(),
        )
    )


def due_batch(
    session: Session,
    kind: UnitKind,
    settings: Settings | None = None,
    limit: int = 1,
    now: Optional[datetime] = None,
    force: bool = False,
) -> List[Any]:
    """
    Return up to `limit` due units of one kind, best first.

    Args:
        session: Active session
        kind: Unit kind to select
        settings: Cooldowns and filter thresholds
        limit: Maximum number of units
        now: Reference time (defaults to the current UTC time)
        force: Ignore cooldowns (every unit passing the filters is due)
    """
    config = settings or default_settings
    stmt = _due_select(UnitKind(kind), config, now or now_utc(), force).limit(limit)
    return list(session.scalars(stmt))


def next_due(
    session: Session,
    kind: UnitKind,
    settings: Settings | None = None,
    now: Optional[datetime] = None,
    force: bool = False,
) -> Optional[Any]:
    """Return the single best due unit of a kind, or None when nothing is due."""
    units = due_batch(session, kind, settings, limit=1, now=now, force=force)
    return units[0] if units else None


def pipeline_stats(
    session: Session,
    settings: Settings | None = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Per-kind eligible totals, never-processed counts and due counts."""
    config = settings or default_settings
    now = now or now_utc()
    stats: Dict[str, Any] = {}

    for kind, rule in RULES.items():
        filters = rule.filters(config, now)
        cutoff = now - rule.cooldown(config)

        def count(*extra: Any) -> int:
            stmt = select(func.count()).select_from(rule.model).where(*filters, *extra)
            return int(session.scalar(stmt) or 0)

        stats[kind.value.lower()] = {
            "eligible": count(),
            "never_processed": count(rule.watermark.is_(None)),
            "due": count(_due_clause(rule, cutoff)),
        }

    profile = stats[UnitKind.PROFILE.value.lower()]
    stats["profile_cycle_complete"] = profile["eligible"] > 0 and profile["due"] == 0
    stats["generated_at"] = now.isoformat()
    return stats


__all__ = ["RULES", "SCORE_CUBE_TIERS", "UnitKind", "due_batch", "next_due", "pipeline_stats"]
