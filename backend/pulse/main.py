"""
Main FastAPI application: read-only latest results, pipeline statistics and
manual force-runs. The background scheduler starts with the app.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from pulse.config import CORS_ALLOW_ORIGINS, LOG_FORMAT, LOG_LEVEL, Settings, settings as default_settings
from pulse.core.eligibility import pipeline_stats
from pulse.core.scenarios import get_simulation, simulate_candidate
from pulse.core.sentiment import analyze_post, get_analysis, sentiment_summary
from pulse.core.viability import assess_candidate, latest_analysis, prune_viability_history
from pulse.db import init_db, make_engine, make_session_factory, session_scope
from pulse.errors import InvalidInput, UpstreamError
from pulse.models import Candidate, Post, ViabilityAnalysis
from pulse.scheduler import Outcome, Scheduler, SlotBusy, TaskKind
from pulse.schemas import (
    CollectionOut,
    JobRunOut,
    JobStatusOut,
    ProfileOut,
    PruneOut,
    ScenarioOut,
    SentimentAnalysisOut,
    SentimentSummaryOut,
    ViabilityAnalysisOut,
)
from pulse.services.classifier import OpenAIClassifier
from pulse.sources.collector import collect_post, collection_stats
from pulse.sources.profiles import collect_profile
from pulse.sources.scraper import ApifyScraper
from pulse.utils import now_utc

# Configure logging
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger("uvicorn")

NO_ANALYSIS = "no analysis yet"

router = APIRouter()


def get_session(request: Request) -> Iterator[Session]:
    with session_scope(request.app.state.session_factory) as session:
        yield session


def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler


def _candidate_or_404(session: Session, candidate_id: int) -> Candidate:
    candidate = session.get(Candidate, candidate_id)
    if candidate is None:
        raise HTTPException(status_code=404, detail="candidate not found")
    return candidate


def _post_or_404(session: Session, post_id: int) -> Post:
    post = session.get(Post, post_id)
    if post is None:
        raise HTTPException(status_code=404, detail="post not found")
    return post


def _busy(kind: TaskKind) -> HTTPException:
    return HTTPException(status_code=409, detail=f"{kind.value} task is already running")


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "as_of": now_utc().isoformat(),
        "service": "candidate-pulse-api",
    }


@router.get("/candidates/{candidate_id}/viability", response_model=ViabilityAnalysisOut)
async def get_viability(candidate_id: int, session: Session = Depends(get_session)):
    _candidate_or_404(session, candidate_id)
    analysis = latest_analysis(session, candidate_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail=NO_ANALYSIS)
    return analysis


@router.get("/candidates/{candidate_id}/viability/history", response_model=List[ViabilityAnalysisOut])
async def get_viability_history(
    candidate_id: int,
    limit: int = Query(10, ge=1, le=100, description="Maximum number of analyses, newest first"),
    session: Session = Depends(get_session),
):
    _candidate_or_404(session, candidate_id)
    return list(
        session.scalars(
            select(ViabilityAnalysis)
            .where(ViabilityAnalysis.candidate_id == candidate_id)
            .order_by(ViabilityAnalysis.processed_at.desc(), ViabilityAnalysis.id.desc())
            .limit(limit)
        )
    )


@router.get("/candidates/{candidate_id}/scenarios", response_model=ScenarioOut)
async def get_scenarios(candidate_id: int, session: Session = Depends(get_session)):
    _candidate_or_404(session, candidate_id)
    simulation = get_simulation(session, candidate_id)
    if simulation is None:
        raise HTTPException(status_code=404, detail=NO_ANALYSIS)
    return simulation


@router.get("/candidates/{candidate_id}/sentiment", response_model=SentimentSummaryOut)
async def get_candidate_sentiment(candidate_id: int, session: Session = Depends(get_session)):
    _candidate_or_404(session, candidate_id)
    summary = sentiment_summary(session, candidate_id)
    if summary["analyses"] == 0:
        raise HTTPException(status_code=404, detail=NO_ANALYSIS)
    return summary


@router.get("/posts/{post_id}/sentiment", response_model=SentimentAnalysisOut)
async def get_post_sentiment(post_id: int, session: Session = Depends(get_session)):
    _post_or_404(session, post_id)
    analysis = get_analysis(session, post_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail=NO_ANALYSIS)
    return analysis


@router.get("/stats")
async def get_stats(request: Request, session: Session = Depends(get_session)) -> Dict[str, Any]:
    """Eligibility and collection coverage figures."""
    return {
        "pipeline": pipeline_stats(session, request.app.state.config),
        "collection": collection_stats(session),
    }


@router.get("/jobs", response_model=List[JobStatusOut])
async def get_jobs(scheduler: Scheduler = Depends(get_scheduler)):
    return scheduler.status()


@router.post("/jobs/{kind}/run", response_model=JobRunOut)
async def run_job(
    kind: TaskKind,
    force: bool = Query(False, description="Ignore cooldowns for this run"),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """Run one tick of a task kind now."""
    result = await scheduler.run_now(kind, force=force)
    if result.outcome is Outcome.SKIPPED:
        raise _busy(kind)
    return JobRunOut(
        kind=result.kind.value,
        outcome=result.outcome.value,
        processed=result.processed,
        detail=result.detail,
    )


@router.post("/candidates/{candidate_id}/profile", response_model=ProfileOut)
async def run_profile(
    candidate_id: int,
    request: Request,
    session: Session = Depends(get_session),
    scheduler: Scheduler = Depends(get_scheduler),
):
    candidate = _candidate_or_404(session, candidate_id)
    if not candidate.social_handle:
        raise HTTPException(status_code=422, detail="candidate has no social handle")
    try:
        async with scheduler.occupy(TaskKind.PROFILE):
            await collect_profile(session, candidate, request.app.state.scraper)
    except SlotBusy:
        raise _busy(TaskKind.PROFILE)
    except UpstreamError as e:
        session.commit()
        logger.warning("Profile run failed for candidate %s: %s", candidate_id, e)
        raise HTTPException(status_code=502, detail="scraping service unavailable")
    return candidate


@router.post("/posts/{post_id}/comments", response_model=CollectionOut)
async def run_comments(
    post_id: int,
    request: Request,
    session: Session = Depends(get_session),
    scheduler: Scheduler = Depends(get_scheduler),
):
    post = _post_or_404(session, post_id)
    kind = TaskKind.COMMENTS if post.comments_processed_at is None else TaskKind.REPROCESS
    try:
        async with scheduler.occupy(kind):
            result = await collect_post(session, post, request.app.state.scraper, request.app.state.config)
    except SlotBusy:
        raise _busy(kind)
    except InvalidInput as e:
        session.commit()
        raise HTTPException(status_code=422, detail=str(e))
    except UpstreamError as e:
        session.commit()
        logger.warning("Comment run failed for post %s: %s", post_id, e)
        raise HTTPException(status_code=502, detail="scraping service unavailable")
    return CollectionOut(
        post_id=result.post_id,
        new=result.new,
        existing=result.existing,
        fetched=result.fetched,
        empty=result.empty,
        error=result.error,
    )


@router.post("/posts/{post_id}/sentiment", response_model=SentimentAnalysisOut)
async def run_sentiment(
    post_id: int,
    request: Request,
    session: Session = Depends(get_session),
    scheduler: Scheduler = Depends(get_scheduler),
):
    post = _post_or_404(session, post_id)
    try:
        async with scheduler.occupy(TaskKind.SENTIMENT):
            analysis = await analyze_post(session, post, request.app.state.classifier, request.app.state.config)
    except SlotBusy:
        raise _busy(TaskKind.SENTIMENT)
    if analysis is None:
        session.commit()
        raise HTTPException(status_code=404, detail=NO_ANALYSIS)
    return analysis


@router.post("/candidates/{candidate_id}/viability", response_model=ViabilityAnalysisOut)
async def run_viability(
    candidate_id: int,
    request: Request,
    session: Session = Depends(get_session),
    scheduler: Scheduler = Depends(get_scheduler),
):
    candidate = _candidate_or_404(session, candidate_id)
    try:
        async with scheduler.occupy(TaskKind.VIABILITY):
            analysis = await assess_candidate(
                session, candidate, request.app.state.classifier, request.app.state.config, force=True
            )
    except SlotBusy:
        raise _busy(TaskKind.VIABILITY)
    if analysis is None:
        session.commit()
        raise HTTPException(status_code=404, detail=NO_ANALYSIS)
    return analysis


@router.post("/candidates/{candidate_id}/scenarios", response_model=ScenarioOut)
async def run_scenarios(
    candidate_id: int,
    request: Request,
    session: Session = Depends(get_session),
    scheduler: Scheduler = Depends(get_scheduler),
):
    candidate = _candidate_or_404(session, candidate_id)
    try:
        async with scheduler.occupy(TaskKind.SCENARIO):
            simulation = simulate_candidate(session, candidate, request.app.state.config)
    except SlotBusy:
        raise _busy(TaskKind.SCENARIO)
    if simulation is None:
        session.commit()
        raise HTTPException(status_code=404, detail=NO_ANALYSIS)
    return simulation


@router.post("/maintenance/viability/prune", response_model=PruneOut)
async def prune_viability(
    request: Request,
    keep_days: Optional[int] = Query(None, ge=0, description="Retention window in days"),
    session: Session = Depends(get_session),
):
    """Delete old viability analyses, keeping each candidate's latest one."""
    config = request.app.state.config
    keep_days = config.VIABILITY_RETENTION_DAYS if keep_days is None else keep_days
    deleted = prune_viability_history(session, keep_days, config)
    return PruneOut(deleted=deleted, keep_days=keep_days)


def create_app(
    config: Settings | None = None,
    session_factory: Optional[sessionmaker] = None,
    scraper: Any = None,
    classifier: Any = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Settings (defaults to the environment)
        session_factory: Session factory (defaults to one bound to DATABASE_URL)
        scraper: Scraping capability (defaults to ApifyScraper)
        classifier: Text classifier (defaults to OpenAIClassifier)
    """
    config = config or default_settings
    engine = None
    if session_factory is None:
        engine = make_engine(config.DATABASE_URL)
        session_factory = make_session_factory(engine)

    app = FastAPI(
        title="Candidate Pulse API",
        version="0.1.0",
        description="Sentiment, viability and scenario analysis for political candidates",
    )
    app.state.config = config
    app.state.session_factory = session_factory
    app.state.scraper = scraper or ApifyScraper(config)
    app.state.classifier = classifier or OpenAIClassifier(config)
    app.state.scheduler = Scheduler(session_factory, app.state.scraper, app.state.classifier, config)

    @app.on_event("startup")
    async def startup():
        """Create tables and start the background scheduler."""
        if engine is not None:
            init_db(engine)
        if config.SCHEDULER_ENABLED:
            app.state.scheduler.start()
        else:
            logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.scheduler.stop()

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    # For development
    import uvicorn
    uvicorn.run("pulse.main:app", host="0.0.0.0", port=default_settings.PORT, reload=True)
