from datetime import timedelta

from conftest import make_candidate, make_post

from pulse.core.eligibility import UnitKind, due_batch, next_due, pipeline_stats
from pulse.models import COMMENTS_ANALYSIS, SentimentAnalysis
from pulse.utils import now_utc


def test_never_processed_units_come_first(session, settings):
    now = now_utc()
    processed = make_candidate(session, name="Old", social_handle="old")
    processed.profile_scraped_at = now - timedelta(days=10)
    fresh = make_candidate(session, name="Fresh", social_handle="fresh")
    session.flush()

    assert next_due(session, UnitKind.PROFILE, settings, now=now) is fresh


def test_stalest_watermark_wins_among_processed(session, settings):
    now = now_utc()
    a = make_candidate(session, name="A", social_handle="a")
    b = make_candidate(session, name="B", social_handle="b")
    a.profile_scraped_at = now - timedelta(days=3)
    b.profile_scraped_at = now - timedelta(days=5)
    session.flush()

    assert [c.name for c in due_batch(session, UnitKind.PROFILE, settings, limit=5, now=now)] == ["B", "A"]


def test_cooldown_hides_recent_units_unless_forced(session, settings):
    now = now_utc()
    candidate = make_candidate(session)
    candidate.profile_scraped_at = now - timedelta(hours=1)
    session.flush()

    assert next_due(session, UnitKind.PROFILE, settings, now=now) is None
    assert next_due(session, UnitKind.PROFILE, settings, now=now, force=True) is candidate


def test_profile_requires_active_candidate_with_handle(session, settings):
    make_candidate(session, name="No handle", social_handle=None)
    make_candidate(session, name="Inactive", social_handle="gone", active=False)

    assert next_due(session, UnitKind.PROFILE, settings) is None


def test_failed_profile_attempt_backs_off(session, settings):
    now = now_utc()
    candidate = make_candidate(session)
    candidate.profile_attempted_at = now - timedelta(minutes=10)
    session.flush()

    assert next_due(session, UnitKind.PROFILE, settings, now=now) is None
    assert next_due(session, UnitKind.PROFILE, settings, now=now + timedelta(hours=2)) is candidate


def test_reprocess_window_and_available_comments(session, settings):
    now = now_utc()
    candidate = make_candidate(session)
    processed_at = now - timedelta(days=2)
    eligible = make_post(session, candidate, 1, comments_processed_at=processed_at, comments_count=20)
    make_post(session, candidate, 2, comments_processed_at=processed_at, comments_count=5)
    make_post(
        session,
        candidate,
        3,
        comments_processed_at=processed_at,
        comments_count=20,
        published_at=now - timedelta(days=30),
    )
    make_post(session, candidate, 4, comments_processed_at=processed_at, comments_count=20, reprocessed=True)
    make_post(session, candidate, 5, comments_processed_at=now - timedelta(hours=2), comments_count=20)

    assert due_batch(session, UnitKind.REPROCESS, settings, limit=10, now=now) == [eligible]


def test_sentiment_skips_analysed_and_uncollected_posts(session, settings):
    candidate = make_candidate(session)
    make_post(session, candidate, 1)
    analysed = make_post(session, candidate, 2, comments_processed_at=now_utc())
    pending = make_post(session, candidate, 3, comments_processed_at=now_utc())
    session.add(
        SentimentAnalysis(
            post_id=analysed.id,
            candidate_id=candidate.id,
            analysis_type=COMMENTS_ANALYSIS,
            label="POSITIVE",
            score=0.5,
            confidence=0.5,
        )
    )
    session.flush()

    assert due_batch(session, UnitKind.SENTIMENT, settings, limit=10) == [pending]


def test_scenario_only_for_national_and_state(session, settings):
    national = make_candidate(session, name="N", intended_tier="NATIONAL")
    state = make_candidate(session, name="S", intended_tier=None, current_tier="STATE")
    make_candidate(session, name="M", intended_tier="MUNICIPAL")
    make_candidate(session, name="Z", intended_tier="NATIONAL", followers_count=0)

    assert due_batch(session, UnitKind.SCENARIO, settings, limit=10) == [national, state]


def test_pipeline_stats_reports_per_kind_counts(session, settings):
    now = now_utc()
    make_candidate(session, name="A", social_handle="a")
    done = make_candidate(session, name="B", social_handle="b")
    done.profile_scraped_at = now - timedelta(hours=1)
    session.flush()

    stats = pipeline_stats(session, settings, now=now)

    assert stats["profile"] == {"eligible": 2, "never_processed": 1, "due": 1}
    assert stats["profile_cycle_complete"] is False
    assert set(stats) >= {"comments", "reprocess", "sentiment", "viability", "scenario", "generated_at"}
