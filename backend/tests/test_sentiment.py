import asyncio
import json

import pytest
from conftest import FakeClassifier, make_candidate, make_comments, make_post, no_sleep
from sqlalchemy import func, select

from pulse.core.sentiment import (
    analyze_next_post,
    analyze_post,
    evidence_confidence,
    evidence_metrics,
    is_noise,
    rank_comments,
    sentiment_summary,
)
from pulse.models import SentimentAnalysis, SentimentLabel
from pulse.schemas import SentimentVerdict, decode_sentiment
from pulse.utils import now_utc

OPINIONS = [
    "Great proposal for public health, count on my vote",
    "Finally someone talking seriously about transport",
    "I disagree with the budget plan but respect the effort",
    "Education needs exactly this kind of attention",
    "Very good interview yesterday, clear answers",
]

POSITIVE_REPLY = json.dumps(
    {
        "label": "POSITIVE",
        "score": 0.7,
        "confidence": 0.95,
        "insights": {"keywords": ["health", "transport"], "themes": ["public services"], "summary": "Support"},
    }
)


@pytest.mark.parametrize(
    "text",
    ["ok", "👏👏👏", "kkkkkk", "hahaha", "rsrsrs", "Top!!", "show", "@maria @joao", "#vote #2026", "2026", "!!!???"],
)
def test_noise_is_dropped(text):
    assert is_noise(text)


@pytest.mark.parametrize("text", ["Great proposal", "I will vote for you 👏", "@maria look at this plan"])
def test_opinions_are_kept(text):
    assert not is_noise(text)


def test_rank_prefers_likes_then_recency(session):
    post = make_post(session, make_candidate(session))
    comments = make_comments(session, post, OPINIONS[:3], likes_count=1)
    comments[0].likes_count = 9
    comments[1].commented_at = now_utc()

    ranked = rank_comments(comments, cap=2)

    assert ranked == [comments[0], comments[1]]


def test_analysis_is_stored_once_without_a_second_call(session, settings):
    post = make_post(session, make_candidate(session), comments_processed_at=now_utc())
    make_comments(session, post, OPINIONS)
    classifier = FakeClassifier(POSITIVE_REPLY)

    first = asyncio.run(analyze_post(session, post, classifier, settings, sleep=no_sleep))
    second = asyncio.run(analyze_post(session, post, classifier, settings, sleep=no_sleep))

    assert classifier.calls == 1
    assert second.id == first.id
    assert first.label == SentimentLabel.POSITIVE.value
    assert first.score == 0.7
    assert first.comments_analyzed == 5
    assert 0.1 <= first.confidence <= 0.9
    # the classifier's own confidence is kept for audit only
    assert first.confidence != 0.95
    assert first.insights["evidence"]["classifier_confidence"] == 0.95
    assert session.scalar(select(func.count(SentimentAnalysis.id))) == 1


def test_too_few_usable_comments_is_skipped(session, settings):
    post = make_post(session, make_candidate(session), comments_processed_at=now_utc())
    make_comments(session, post, [OPINIONS[0], "kkkk", "👏", "ok", OPINIONS[1]])
    classifier = FakeClassifier(POSITIVE_REPLY)

    assert asyncio.run(analyze_post(session, post, classifier, settings, sleep=no_sleep)) is None
    assert classifier.calls == 0
    assert post.sentiment_attempted_at is not None


def test_exhausted_classifier_stores_a_degraded_placeholder(session, settings):
    post = make_post(session, make_candidate(session), comments_processed_at=now_utc())
    make_comments(session, post, OPINIONS)
    classifier = FakeClassifier()

    analysis = asyncio.run(analyze_post(session, post, classifier, settings, sleep=no_sleep))

    assert classifier.calls == settings.CLASSIFIER_ATTEMPTS
    assert analysis.label == "NEUTRAL"
    assert analysis.score == 0.0
    assert analysis.confidence == 0.1
    assert analysis.insights["degraded"] is True
    assert analysis.insights["themes"] == ["processing_error"]


def test_analyze_next_post_picks_due_post(session, settings):
    candidate = make_candidate(session)
    make_post(session, candidate, 1)
    due = make_post(session, candidate, 2, comments_processed_at=now_utc())
    make_comments(session, due, OPINIONS)

    analysis = asyncio.run(analyze_next_post(session, FakeClassifier(POSITIVE_REPLY), settings, sleep=no_sleep))

    assert analysis.post_id == due.id


def test_confidence_stays_within_bounds():
    thin = {"comments": 3, "author_diversity": 0.3, "avg_length": 5, "verified_authors": 0, "liked_share": 0}
    rich = {"comments": 80, "author_diversity": 1.0, "avg_length": 120, "verified_authors": 10, "liked_share": 0.9}

    assert evidence_confidence(thin, 0.95) == 0.1
    assert evidence_confidence(rich, 0.5) == 0.88
    assert evidence_confidence({**thin, "comments": 0}, 0.0) == 0.1


def test_evidence_metrics(session):
    post = make_post(session, make_candidate(session))
    comments = make_comments(session, post, ["abcd", "abcdef"], owner_username="same")

    metrics = evidence_metrics(comments)

    assert metrics["comments"] == 2
    assert metrics["author_diversity"] == 0.5
    assert metrics["avg_length"] == 5.0


def test_decode_tolerates_fences_synonyms_and_out_of_range_values():
    reply = """Here you go:
```json
{"label": "positivo", "score": 3, "insights": {"keywords": ["12", "👍", "ok", "saúde", "saúde", "educação", "ônibus", "escola"], "themes": "x"}}
```"""

    verdict = decode_sentiment(reply)

    assert verdict.label is SentimentLabel.POSITIVE
    assert verdict.score == 1.0
    assert verdict.insights.keywords == ["saúde", "educação", "ônibus", "escola"]
    assert verdict.insights.themes == []
    assert verdict.insights.summary


def test_decode_defaults_on_garbage():
    verdict = decode_sentiment("the classifier rambled")

    assert verdict.label is SentimentLabel.NEUTRAL
    assert verdict.score == 0.0
    assert verdict.degraded is False


def test_placeholder_is_degraded():
    verdict = SentimentVerdict.placeholder("down")

    assert verdict.degraded is True
    assert verdict.confidence == 0.05
    assert verdict.insights.themes == ["processing_error"]


def test_sentiment_summary_counts_labels(session, settings):
    candidate = make_candidate(session)
    for index, label in enumerate(["POSITIVE", "POSITIVE", "NEGATIVE"], start=1):
        post = make_post(session, candidate, index)
        session.add(
            SentimentAnalysis(
                post_id=post.id,
                candidate_id=candidate.id,
                label=label,
                score=0.5 if label == "POSITIVE" else -0.5,
                confidence=0.6,
            )
        )
    session.flush()

    summary = sentiment_summary(session, candidate.id)

    assert (summary["analyses"], summary["positive"], summary["negative"], summary["neutral"]) == (3, 2, 1, 0)
    assert summary["average_score"] == 0.167
    assert summary["last_processed_at"]


def test_classifier_cannot_mark_its_own_reply_degraded(session, settings):
    reply = json.dumps({"label": "POSITIVE", "score": 0.5, "confidence": 0.9, "degraded": True})
    post = make_post(session, make_candidate(session), comments_processed_at=now_utc())
    make_comments(session, post, OPINIONS)

    analysis = asyncio.run(analyze_post(session, post, FakeClassifier(reply), settings, sleep=no_sleep))

    assert decode_sentiment(reply).degraded is False
    assert analysis.insights["degraded"] is False
    assert analysis.confidence == 0.55
