"""
Typed decoders for classifier output, plus the HTTP response models.

Classifier replies are probabilistic text. The verdict models below coerce
whatever arrives into safe, bounded values and never raise past the
decode_* helpers.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from pulse.errors import ValidationError
from pulse.models import SentimentLabel, ViabilityCategory
from pulse.services.classifier import extract_json_object
from pulse.utils import (
    clamp,
    clamp_to_unit_range,
    coerce_float,
    is_emoji_only,
    is_numeric_only,
    is_punctuation_only,
    normalize_text,
)

logger = logging.getLogger(__name__)

MAX_KEYWORDS = 4
MAX_THEMES = 3
MAX_POINTS = 4

LABEL_SYNONYMS: Dict[str, SentimentLabel] = {
    "POSITIVE": SentimentLabel.POSITIVE,
    "POSITIVO": SentimentLabel.POSITIVE,
    "POS": SentimentLabel.POSITIVE,
    "NEGATIVE": SentimentLabel.NEGATIVE,
    "NEGATIVO": SentimentLabel.NEGATIVE,
    "NEG": SentimentLabel.NEGATIVE,
    "NEUTRAL": SentimentLabel.NEUTRAL,
    "NEUTRO": SentimentLabel.NEUTRAL,
    "MIXED": SentimentLabel.NEUTRAL,
}


def _is_meaningful_term(term: str) -> bool:
    return (
        len(term) > 2
        and not is_numeric_only(term)
        and not is_emoji_only(term)
        and not is_punctuation_only(term)
    )


def _clean_terms(value: Any, cap: int) -> List[str]:
    """Keep string terms that carry meaning, deduplicated, up to cap."""
    if not isinstance(value, list):
        return []
    terms: List[str] = []
    for item in value:
        if not isinstance(item, str):
            continue
        term = normalize_text(item)
        if _is_meaningful_term(term) and term not in terms:
            terms.append(term)
        if len(terms) == cap:
            break
    return terms


def _clean_points(value: Any) -> Optional[List[str]]:
    if not isinstance(value, list):
        return None
    points = [normalize_text(p) for p in value if isinstance(p, str) and normalize_text(p)]
    return points[:MAX_POINTS] or None


# ---------------------------------------------------------------------------
# Sentiment
# ---------------------------------------------------------------------------


class SentimentInsights(BaseModel):
    keywords: List[str] = Field(default_factory=list)
    themes: List[str] = Field(default_factory=list)
    summary: str = ""

    @field_validator("keywords", mode="before")
    @classmethod
    def _keywords(cls, value: Any) -> List[str]:
        return _clean_terms(value, MAX_KEYWORDS)

    @field_validator("themes", mode="before")
    @classmethod
    def _themes(cls, value: Any) -> List[str]:
        return _clean_terms(value, MAX_THEMES)

    @field_validator("summary", mode="before")
    @classmethod
    def _summary(cls, value: Any) -> str:
        return normalize_text(value) if isinstance(value, str) else ""


class SentimentVerdict(BaseModel):
    """Sentiment classification decoded from one classifier reply."""

    label: SentimentLabel = SentimentLabel.NEUTRAL
    score: float = 0.0
    # Self-reported by the classifier; kept for audit only.
    confidence: float = 0.5
    insights: SentimentInsights = Field(default_factory=SentimentInsights)
    degraded: bool = False

    @field_validator("label", mode="before")
    @classmethod
    def _label(cls, value: Any) -> SentimentLabel:
        if isinstance(value, str):
            return LABEL_SYNONYMS.get(value.strip().upper(), SentimentLabel.NEUTRAL)
        return SentimentLabel.NEUTRAL

    @field_validator("score", mode="before")
    @classmethod
    def _score(cls, value: Any) -> float:
        number = coerce_float(value)
        if number is None:
            return 0.0
        return round(clamp(number, -1.0, 1.0), 2)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> float:
        number = coerce_float(value)
        if number is None:
            return 0.5
        return round(clamp_to_unit_range(number), 2)

    @field_validator("insights", mode="before")
    @classmethod
    def _insights(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, SentimentInsights)) else {}

    @model_validator(mode="after")
    def _default_summary(self) -> "SentimentVerdict":
        if not self.insights.summary:
            self.insights.summary = f"{self.label.value.lower()} sentiment identified in the comments"
        return self

    @classmethod
    def placeholder(cls, reason: str) -> "SentimentVerdict":
        """Neutral stand-in used once the classifier is exhausted."""
        return cls(
            label=SentimentLabel.NEUTRAL,
            score=0.0,
            confidence=0.05,
            insights=SentimentInsights(themes=["processing_error"], summary=reason),
            degraded=True,
        )


def decode_sentiment(text: str) -> SentimentVerdict:
    """
    Decode a sentiment reply into a verdict with safe defaults.

    Never raises; structural problems are logged and defaulted.
    """
    try:
        data = extract_json_object(text)
    except ValidationError as e:
        logger.warning("Unusable sentiment reply, defaulting: %s", e)
        data = {}
    # only placeholder() marks a verdict degraded
    data.pop("degraded", None)
    try:
        return SentimentVerdict.model_validate(data)
    except PydanticValidationError as e:
        logger.warning("Sentiment reply failed validation, defaulting: %s", e)
        return SentimentVerdict()


# ---------------------------------------------------------------------------
# Viability
# ---------------------------------------------------------------------------


class QualitativeInsights(BaseModel):
    """Strengths and concerns added to a viability result."""

    strengths: List[str] = Field(default_factory=list)
    concerns: List[str] = Field(default_factory=list)

    @field_validator("strengths", "concerns", mode="before")
    @classmethod
    def _points(cls, value: Any) -> List[str]:
        return _clean_points(value) or []


class ViabilityVerdict(BaseModel):
    """Qualitative viability assessment decoded from one classifier reply."""

    score: float = 50.0
    category: Optional[ViabilityCategory] = None
    confidence: float = 0.5
    justification: str = "Assessment based on the available digital presence data"
    strengths: List[str] = Field(default_factory=lambda: ["Active digital presence"])
    concerns: List[str] = Field(default_factory=lambda: ["Engagement trend needs monitoring"])

    @field_validator("score", mode="before")
    @classmethod
    def _score(cls, value: Any) -> float:
        number = coerce_float(value)
        if number is None:
            return 50.0
        return round(clamp(number, 0.0, 100.0), 1)

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, value: Any) -> Optional[ViabilityCategory]:
        if isinstance(value, str):
            normalized = value.strip().upper().replace(" ", "_").replace("-", "_")
            try:
                return ViabilityCategory(normalized)
            except ValueError:
                return None
        return None

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> float:
        number = coerce_float(value)
        if number is None:
            return 0.5
        return round(clamp_to_unit_range(number), 2)

    @field_validator("justification", mode="before")
    @classmethod
    def _justification(cls, value: Any) -> str:
        text = normalize_text(value) if isinstance(value, str) else ""
        return text or "Assessment based on the available digital presence data"

    @field_validator("strengths", mode="before")
    @classmethod
    def _strengths(cls, value: Any) -> List[str]:
        return _clean_points(value) or ["Active digital presence"]

    @field_validator("concerns", mode="before")
    @classmethod
    def _concerns(cls, value: Any) -> List[str]:
        return _clean_points(value) or ["Engagement trend needs monitoring"]

    @model_validator(mode="after")
    def _consistent_category(self) -> "ViabilityVerdict":
        expected = ViabilityCategory.for_score(self.score)
        if self.category != expected:
            if self.category is not None:
                logger.info(
                    "Classifier category %s disagrees with score %.1f, using %s",
                    self.category.value,
                    self.score,
                    expected.value,
                )
            self.category = expected
        return self


def decode_viability(text: str) -> ViabilityVerdict:
    """Decode a viability reply. Never raises."""
    try:
        data = extract_json_object(text)
    except ValidationError as e:
        logger.warning("Unusable viability reply, defaulting: %s", e)
        data = {}
    try:
        return ViabilityVerdict.model_validate(data)
    except PydanticValidationError as e:
        logger.warning("Viability reply failed validation, defaulting: %s", e)
        return ViabilityVerdict()


def decode_insights(text: str) -> Optional[QualitativeInsights]:
    """Decode strengths/concerns; None when the reply holds neither."""
    try:
        data = extract_json_object(text)
        insights = QualitativeInsights.model_validate(data)
    except (ValidationError, PydanticValidationError) as e:
        logger.warning("Unusable insights reply: %s", e)
        return None
    if not insights.strengths and not insights.concerns:
        return None
    return insights


# ---------------------------------------------------------------------------
# HTTP responses
# ---------------------------------------------------------------------------


class SentimentAnalysisOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    post_id: int
    candidate_id: int
    analysis_type: str
    label: SentimentLabel
    score: float
    confidence: float
    comments_analyzed: int
    insights: Dict[str, Any] = Field(default_factory=dict)
    model_name: Optional[str] = None
    prompt_version: Optional[str] = None
    processed_at: datetime


class SentimentSummaryOut(BaseModel):
    candidate_id: int
    analyses: int
    positive: int
    negative: int
    neutral: int
    average_score: Optional[float] = None
    average_confidence: Optional[float] = None
    last_processed_at: Optional[datetime] = None


class ViabilityAnalysisOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    candidate_id: int
    score: float
    category: ViabilityCategory
    confidence: float
    method: str
    candidate_type: Optional[str] = None
    inputs: Dict[str, Any] = Field(default_factory=dict)
    sentiment_summary: Dict[str, Any] = Field(default_factory=dict)
    justification: Optional[str] = None
    strengths: List[str] = Field(default_factory=list)
    concerns: List[str] = Field(default_factory=list)
    model_name: Optional[str] = None
    processed_at: datetime


class ScenarioOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    candidate_id: int
    tier: str
    candidate_type: str
    score_cube: float
    electoral_gap: float
    engagement_deficit: float
    uncertainty: float
    optimistic: int
    realistic: int
    pessimistic: int
    parameters: Dict[str, Any] = Field(default_factory=dict)
    algorithm_version: Optional[str] = None
    processed_at: datetime


class CollectionOut(BaseModel):
    post_id: int
    new: int
    existing: int
    fetched: int
    empty: bool = False
    error: Optional[str] = None


class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    social_handle: Optional[str] = None
    followers_count: int
    follows_count: int
    posts_count: int
    verified: bool
    is_private: bool
    profile_scraped_at: Optional[datetime] = None


class JobStatusOut(BaseModel):
    kind: str
    interval_seconds: float
    busy: bool
    runs: int
    last_outcome: Optional[str] = None
    last_error: Optional[str] = None
    last_run_at: Optional[datetime] = None


class JobRunOut(BaseModel):
    kind: str
    outcome: str
    processed: int
    detail: Optional[str] = None


class PruneOut(BaseModel):
    deleted: int
    keep_days: int


__all__ = [
    "CollectionOut",
    "JobRunOut",
    "JobStatusOut",
    "ProfileOut",
    "PruneOut",
    "QualitativeInsights",
    "ScenarioOut",
    "SentimentAnalysisOut",
    "SentimentInsights",
    "SentimentSummaryOut",
    "SentimentVerdict",
    "ViabilityAnalysisOut",
    "ViabilityVerdict",
    "decode_insights",
    "decode_sentiment",
    "decode_viability",
]
