"""
Optimistic / realistic / pessimistic projections around the Score Cube.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.config import SCENARIO_ALGORITHM_VERSION, TIER_KNOWLEDGE_BASE, Settings, settings as default_settings
from pulse.core.eligibility import UnitKind, due_batch
from pulse.core.viability import compute_score_cube, engagement_posts, score_cube_tier
from pulse.db import commit_pending, upsert
from pulse.models import Candidate, ScenarioSimulation
from pulse.utils import now_utc, round_half_up

logger = logging.getLogger(__name__)


@dataclass
class ScenarioProjection:
    electoral_gap: float
    engagement_deficit: float
    uncertainty: float
    optimistic: int
    realistic: int
    pessimistic: int


def electoral_gap(votes: int, votes_required: int) -> float:
    """G = |required - votes| / required."""
    if votes_required <= 0:
        return 0.0
    return abs(votes_required - votes) / votes_required


def engagement_deficit(engagement_rate: float) -> float:
    """D = max(0, 1 - TE) / 1, with TE in percent."""
    return max(0.0, 1 - engagement_rate) / 1


def project_scenarios(score: float, gap: float, deficit: float, alpha: float, beta: float) -> ScenarioProjection:
    """
    Spread the unrounded Score Cube S into three scenarios.

    With S in [0, 100] and U >= 0 the scenarios come out ordered
    (optimistic >= realistic >= pessimistic), so no extra clamp is applied.
    """
    uncertainty = 0.5 * (gap + deficit)
    optimistic = min(100.0, score + (100 - score) * alpha * uncertainty)
    pessimistic = max(0.0, score - score * beta * uncertainty)
    return ScenarioProjection(
        electoral_gap=gap,
        engagement_deficit=deficit,
        uncertainty=uncertainty,
        optimistic=round_half_up(optimistic),
        realistic=round_half_up(score),
        pessimistic=round_half_up(pessimistic),
    )


def get_simulation(session: Session, candidate_id: int) -> Optional[ScenarioSimulation]:
    return session.scalars(
        select(ScenarioSimulation).where(ScenarioSimulation.candidate_id == candidate_id)
    ).first()


def simulate_candidate(
    session: Session,
    candidate: Candidate,
    settings: Settings | None = None,
    now: Optional[datetime] = None,
) -> Optional[ScenarioSimulation]:
    """
    Compute and upsert the scenario row for one candidate.

    Returns:
        The stored simulation, or None when the candidate is not applicable
        (tier other than national/state, no followers, no engagement data)
    """
    config = settings or default_settings
    now = now or now_utc()
    candidate.scenario_attempted_at = now

    tier = score_cube_tier(candidate)
    posts = engagement_posts(session, candidate.id, config.ENGAGEMENT_POST_WINDOW)
    if tier is None or (candidate.followers_count or 0) <= 0 or not posts:
        logger.info("Scenario skipped for %s: not applicable", candidate.name)
        session.flush()
        return None

    cube = compute_score_cube(candidate, posts, tier)
    knowledge = TIER_KNOWLEDGE_BASE[tier]
    projection = project_scenarios(
        cube.raw_score,
        electoral_gap(cube.votes, cube.votes_required),
        engagement_deficit(cube.engagement_rate),
        knowledge["alpha"],
        knowledge["beta"],
    )

    upsert(
        session,
        ScenarioSimulation,
        {
            "candidate_id": candidate.id,
            "tier": tier,
            "candidate_type": cube.candidate_type.value,
            "score_cube": cube.raw_score,
            "electoral_gap": projection.electoral_gap,
            "engagement_deficit": projection.engagement_deficit,
            "uncertainty": projection.uncertainty,
            "optimistic": projection.optimistic,
            "realistic": projection.realistic,
            "pessimistic": projection.pessimistic,
            "parameters": {
                "alpha": knowledge["alpha"],
                "beta": knowledge["beta"],
                "i_ref": cube.i_ref,
                "votes": cube.votes,
                "votes_required": cube.votes_required,
                "engagement_rate": cube.engagement_rate,
                "avg_engagement": cube.avg_engagement,
                "posts_used": cube.posts_used,
            },
            "algorithm_version": SCENARIO_ALGORITHM_VERSION,
            "processed_at": now,
        },
        conflict_columns=["candidate_id"],
    )
    session.flush()

    logger.info(
        "Scenarios for %s: %d / %d / %d (U=%.3f)",
        candidate.name,
        projection.optimistic,
        projection.realistic,
        projection.pessimistic,
        projection.uncertainty,
    )
    simulation = get_simulation(session, candidate.id)
    if simulation is not None:
        # the upsert bypasses the identity map
        session.refresh(simulation)
    return simulation


async def simulate_sweep(
    session: Session,
    settings: Settings | None = None,
    force: bool = False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> List[ScenarioSimulation]:
    """Simulate up to SCENARIO_BATCH due candidates."""
    config = settings or default_settings
    candidates = due_batch(session, UnitKind.SCENARIO, config, limit=config.SCENARIO_BATCH, force=force)
    results: List[ScenarioSimulation] = []
    for index, candidate in enumerate(candidates):
        simulation = simulate_candidate(session, candidate, config)
        if simulation is not None:
            results.append(simulation)
        if index < len(candidates) - 1 and config.SWEEP_PAUSE_SECONDS > 0:
            commit_pending(session)
            await sleep(config.SWEEP_PAUSE_SECONDS)
    return results


__all__ = [
    "ScenarioProjection",
    "electoral_gap",
    "engagement_deficit",
    "get_simulation",
    "project_scenarios",
    "simulate_candidate",
    "simulate_sweep",
]
