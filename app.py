# app.py - Adaptive Quiz API v1.0.0
# - Backends are built once at startup (lifespan) and closed at shutdown
# - Routes are thin: validation in schemas, logic in engines/

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from random import Random
from typing import Callable, Optional
from uuid import uuid4

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request

import db
from engines.answer_orchestrator import AnswerOrchestrator
from engines.base import Cache, IdempotencyKeyReused, NoQuestionsAvailable, QuestionNotFound, QuizError, VersionConflict
from engines.caching import RedisCache, TTLCache
from engines.quiz_service import QuizService
from env_validation import QuizSettings, load_settings
from item_bank import load_questions
from schemas import (
    LeaderboardResponse,
    MetricsResponse,
    NextQuestionResponse,
    SubmitAnswerRequest,
    SubmitAnswerResponse,
)

logger = logging.getLogger(__name__)

__version__ = "1.0.0"


@dataclass
class QuizRuntime:
    settings: QuizSettings
    database: db.QuizDatabase
    cache: Cache
    catalog: db.SQLiteQuestionCatalog
    service: QuizService
    orchestrator: AnswerOrchestrator

    def close(self) -> None:
        self.database.close()
        if isinstance(self.cache, RedisCache):
            self.cache.close()


def build_runtime(
    settings: QuizSettings,
    *,
    cache: Optional[Cache] = None,
    clock: Optional[Callable[[], datetime]] = None,
    rng: Optional[Random] = None,
) -> QuizRuntime:
    """Open storage, pick a cache backend and wire the quiz engines together."""
    database = db.QuizDatabase(
        settings.db_path,
        max_connections=settings.db_max_connections,
        busy_timeout=settings.db_busy_timeout,
    )
    database.init()

    if cache is None:
        if settings.redis_url:
            cache = RedisCache.from_url(settings.redis_url)
            logger.info("Using Redis cache at %s", settings.redis_url)
        else:
            cache = TTLCache(max_size=settings.cache_max_entries)

    states = db.SQLiteStateStore(database)
    history = db.SQLiteHistoryStore(database)
    rankings = db.SQLiteRankingStore(database)
    catalog = db.SQLiteQuestionCatalog(database)

    if settings.question_bank_path:
        load_questions(settings.question_bank_path, catalog)

    service = QuizService(
        database, states, history, rankings, catalog, cache,
        pool_size=settings.question_pool_size, rng=rng, clock=clock,
    )
    orchestrator = AnswerOrchestrator(database, states, history, rankings, catalog, cache, clock=clock)
    return QuizRuntime(
        settings=settings,
        database=database,
        cache=cache,
        catalog=catalog,
        service=service,
        orchestrator=orchestrator,
    )


router = APIRouter()


def _runtime(request: Request) -> QuizRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Quiz backend not initialised")
    return runtime


def _http_error(exc: QuizError) -> HTTPException:
    if isinstance(exc, VersionConflict):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, QuestionNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, NoQuestionsAvailable):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, IdempotencyKeyReused):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@router.get("/health")
def health(request: Request):
    runtime = _runtime(request)
    return {"status": "ok", "version": __version__, "questions": runtime.catalog.count()}


@router.get("/quiz/next", response_model=NextQuestionResponse)
def next_question(request: Request, user_id: str = Query(min_length=1), session_id: Optional[str] = None):
    runtime = _runtime(request)
    try:
        result = runtime.service.get_next_question(user_id, session_id)
    except QuizError as exc:
        raise _http_error(exc) from exc

    return NextQuestionResponse(
        question_id=result.question.id,
        difficulty=result.question.difficulty,
        prompt=result.question.prompt,
        choices=result.question.choices,
        tags=result.question.tags,
        session_id=result.session_id,
        state_version=result.state.version,
        current_score=result.state.total_score,
        current_streak=result.state.streak,
        current_difficulty=result.state.difficulty,
    )


@router.post("/quiz/answer", response_model=SubmitAnswerResponse)
def submit_answer(payload: SubmitAnswerRequest, request: Request):
    runtime = _runtime(request)
    idempotency_key = payload.answer_idempotency_key or uuid4().hex
    try:
        outcome = runtime.orchestrator.submit(
            payload.user_id,
            payload.session_id,
            payload.question_id,
            payload.answer,
            payload.state_version,
            idempotency_key,
        )
    except QuizError as exc:
        raise _http_error(exc) from exc

    return SubmitAnswerResponse(
        correct=outcome.correct,
        new_difficulty=outcome.new_difficulty,
        new_streak=outcome.new_streak,
        score_delta=outcome.score_delta,
        total_score=outcome.total_score,
        state_version=outcome.new_version,
        leaderboard_rank_score=outcome.ranks.score_rank,
        leaderboard_rank_streak=outcome.ranks.streak_rank,
        replayed=outcome.replayed,
    )


@router.get("/quiz/metrics", response_model=MetricsResponse)
def metrics(request: Request, user_id: str = Query(min_length=1)):
    runtime = _runtime(request)
    return MetricsResponse(**runtime.service.get_user_metrics(user_id))


def _leaderboard(request: Request, kind: str, limit: int, user_id: Optional[str]) -> LeaderboardResponse:
    runtime = _runtime(request)
    result = runtime.service.get_leaderboard(kind, limit, user_id)
    return LeaderboardResponse(kind=kind, leaderboard=result["leaderboard"], user_rank=result["user_rank"])


@router.get("/leaderboard/score", response_model=LeaderboardResponse)
def score_leaderboard(
    request: Request,
    limit: int = Query(default=100, ge=1, le=100),
    user_id: Optional[str] = None,
):
    return _leaderboard(request, "score", limit, user_id)


@router.get("/leaderboard/streak", response_model=LeaderboardResponse)
def streak_leaderboard(
    request: Request,
    limit: int = Query(default=100, ge=1, le=100),
    user_id: Optional[str] = None,
):
    return _leaderboard(request, "streak", limit, user_id)


def create_app(runtime: Optional[QuizRuntime] = None) -> FastAPI:
    """Build the API; a prebuilt ``runtime`` skips environment-driven setup."""

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        owned = False
        try:
            if getattr(app.state, "runtime", None) is None:
                settings = load_settings()
                logging.basicConfig(level=settings.log_level)
                app.state.runtime = build_runtime(settings)
                owned = True
                logger.info("Quiz API ready (db=%s)", settings.db_path)
        except Exception as e:
            logger.error("Failed to initialize application: %s", str(e), exc_info=True)
            raise
        try:
            yield
        finally:
            if owned:
                app.state.runtime.close()
                app.state.runtime = None

    application = FastAPI(title="Adaptive Quiz", version=__version__, lifespan=_lifespan)
    application.state.runtime = runtime
    application.include_router(router)
    return application


app = create_app()
