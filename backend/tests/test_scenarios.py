import asyncio

import pytest
from conftest import make_candidate, make_post
from sqlalchemy import func, select

from pulse.core.scenarios import (
    electoral_gap,
    engagement_deficit,
    project_scenarios,
    simulate_candidate,
    simulate_sweep,
)
from pulse.models import ScenarioSimulation


def _weak_national(session, **overrides):
    values = {
        "intended_tier": "NATIONAL",
        "followers_count": 10_000,
        "votes_last_election": 10,
        "votes_required": 100,
    }
    values.update(overrides)
    candidate = make_candidate(session, **values)
    for index in range(5):
        make_post(session, candidate, index, likes_count=8, comments_count=2)
    return candidate


def test_projection_spreads_around_the_score():
    projection = project_scenarios(10.0, 0.9, 0.9, alpha=0.6, beta=0.6)

    assert projection.uncertainty == pytest.approx(0.9)
    assert (projection.optimistic, projection.realistic, projection.pessimistic) == (59, 10, 5)


@pytest.mark.parametrize("score", [0.0, 37.5, 100.0])
def test_projection_is_ordered(score):
    projection = project_scenarios(score, 1.0, 1.0, alpha=0.6, beta=0.6)

    assert projection.optimistic >= projection.realistic >= projection.pessimistic
    assert 0 <= projection.pessimistic and projection.optimistic <= 100


def test_gap_and_deficit():
    assert electoral_gap(10, 100) == pytest.approx(0.9)
    assert electoral_gap(150, 100) == pytest.approx(0.5)
    assert engagement_deficit(0.1) == pytest.approx(0.9)
    assert engagement_deficit(2.5) == 0.0


def test_simulation_from_stored_inputs(session, settings):
    candidate = _weak_national(session)

    simulation = simulate_candidate(session, candidate, settings)

    assert simulation.tier == "NATIONAL"
    assert simulation.candidate_type == "VETERAN"
    assert simulation.electoral_gap == pytest.approx(0.9)
    assert simulation.engagement_deficit == pytest.approx(0.9)
    assert (simulation.optimistic, simulation.realistic, simulation.pessimistic) == (59, 10, 5)
    assert simulation.parameters["alpha"] == 0.6


def test_rerun_overwrites_the_single_row(session, settings):
    candidate = _weak_national(session)
    simulate_candidate(session, candidate, settings)

    candidate.votes_last_election = 50
    simulation = simulate_candidate(session, candidate, settings)

    assert session.scalar(select(func.count(ScenarioSimulation.id))) == 1
    assert simulation.electoral_gap == pytest.approx(0.5)


def test_municipal_candidates_are_not_simulated(session, settings):
    candidate = make_candidate(session, intended_tier="MUNICIPAL")
    make_post(session, candidate)

    assert simulate_candidate(session, candidate, settings) is None
    assert candidate.scenario_attempted_at is not None


def test_sweep_processes_due_candidates(session, settings):
    first = _weak_national(session, name="First", social_handle="first")
    second = _weak_national(session, name="Second", social_handle="second")
    make_candidate(session, name="Municipal", intended_tier="MUNICIPAL")

    results = asyncio.run(simulate_sweep(session, settings))

    assert [s.candidate_id for s in results] == [first.id, second.id]
    assert asyncio.run(simulate_sweep(session, settings)) == []
