"""
Application configuration with environment variable support.
"""
from __future__ import annotations

import os
from typing import Dict

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime tunables, read from the environment and an optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    DATABASE_URL: str = "sqlite:///./candidate_pulse.db"

    # Text classifier
    OPENAI_API_KEY: str = ""
    CLASSIFIER_MODEL: str = "gpt-4o-mini"
    CLASSIFIER_TEMPERATURE: float = 0.1
    CLASSIFIER_MAX_TOKENS: int = 1200
    CLASSIFIER_ATTEMPTS: int = 3
    CLASSIFIER_BACKOFF_SECONDS: float = 2.0

    # Scraping capability
    APIFY_TOKEN: str = ""
    APIFY_ACTOR_ID: str = "shu8hvrXbJbY3Eb9W"
    APIFY_BASE_URL: str = "https://api.apify.com/v2"
    SCRAPER_HTTP_TIMEOUT: float = 30.0
    SCRAPER_WAIT_TIMEOUT: float = 120.0
    SCRAPER_POLL_SECONDS: float = 5.0
    COMMENT_RESULTS_LIMIT: int = 50
    PROFILE_MAX_POSTS: int = 12

    # Eligibility windows
    PROFILE_COOLDOWN_HOURS: float = 48.0
    PROFILE_RETRY_MINUTES: float = 60.0
    COMMENTS_RETRY_MINUTES: float = 60.0
    REPROCESS_MIN_AGE_HOURS: float = 24.0
    REPROCESS_WINDOW_DAYS: int = 7
    REPROCESS_MARGIN: int = 2
    REPROCESS_MIN_AVAILABLE: int = 5
    SENTIMENT_RETRY_HOURS: float = 24.0
    VIABILITY_COOLDOWN_HOURS: float = 24.0
    SCENARIO_COOLDOWN_HOURS: float = 24.0

    # Sentiment engine
    SENTIMENT_MIN_COMMENTS: int = 3
    SENTIMENT_TRANSCRIPT_CAP: int = 100

    # Viability engine
    ENGAGEMENT_POST_WINDOW: int = 20
    VIABILITY_RETENTION_DAYS: int = 30

    # Scheduler cadence (seconds) and batch sizes
    SCHEDULER_ENABLED: bool = True
    PROFILE_INTERVAL: float = 180.0
    COMMENTS_INTERVAL: float = 300.0
    REPROCESS_INTERVAL: float = 1800.0
    SENTIMENT_INTERVAL: float = 180.0
    VIABILITY_INTERVAL: float = 300.0
    SCENARIO_INTERVAL: float = 600.0
    REPROCESS_BATCH: int = 3
    SCENARIO_BATCH: int = 5
    SWEEP_PAUSE_SECONDS: float = 5.0

    PORT: int = 8000


settings = Settings()


# Office tiers that get the deterministic Score Cube treatment.
# I_ref is the reference average interaction volume for newcomers;
# alpha/beta spread the optimistic/pessimistic scenarios.
TIER_KNOWLEDGE_BASE: Dict[str, Dict[str, float]] = {
    "NATIONAL": {
        "i_ref": 1476.58,
        "votes_required": 120_000,
        "alpha": 0.6,
        "beta": 0.6,
    },
    "STATE": {
        "i_ref": 587.88,
        "votes_required": 45_000,
        "alpha": 0.6,
        "beta": 0.6,
    },
}

# Share of the population assumed eligible, the expected turnout, and the
# winning share, used when no vote target is stored for a candidate.
ELIGIBLE_SHARE: float = 0.7
TURNOUT_SHARE: float = 0.8
WINNING_SHARE: float = 0.5

# Versions recorded on persisted analyses
SENTIMENT_PROMPT_VERSION: str = "v2.1-evidence-confidence"
VIABILITY_SCORE_CUBE_VERSION: str = "score-cube-v2.0"
VIABILITY_QUALITATIVE_VERSION: str = "v2.0-qualitative"
SCENARIO_ALGORITHM_VERSION: str = "v1.0"

# CORS Configuration
CORS_ALLOW_ORIGINS: list[str] = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",")
    if origin.strip()
]

# Logging Configuration
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT: str = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
