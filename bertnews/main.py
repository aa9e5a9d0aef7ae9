from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Literal

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from bertnews.config import load_settings
from bertnews.constants import DEFAULT_MIN_SCORE, DEFAULT_TOPK
from bertnews.errors import BertNewsError
from bertnews.logging_config import configure_logging, get_logger
from bertnews.models import SparseCandidate
from bertnews.service import PersonalizationService
from bertnews.store import Store

logger = get_logger(__name__)


class ArticleIn(BaseModel):
    index: int
    title: str | None = None
    description: str | None = None


class ScoreBatchRequest(BaseModel):
    labels: list[str]
    articles: list[ArticleIn]
    multi_label: bool = True
    min_score: float = DEFAULT_MIN_SCORE


class RegisterLabelsRequest(BaseModel):
    labels: list[str]


class FeedbackRequest(BaseModel):
    user_id: str
    labelSetHash: str
    article_id: str
    feedback: Literal["like", "dislike"]
    alpha: float | None = None


class CandidateIn(BaseModel):
    index: int
    scores: dict[str, float] = Field(default_factory=dict)


class RankRequest(BaseModel):
    user_id: str
    labelSetHash: str
    candidates: list[CandidateIn]
    topk: int = Field(default=DEFAULT_TOPK, ge=0)
    similarity: Literal["dot", "cosine"] = "dot"


class RankEmbeddingsRequest(BaseModel):
    user_id: str
    labelSetHash: str
    topk: int = Field(default=DEFAULT_TOPK, ge=0)


class MigrateRequest(BaseModel):
    user_id: str
    fromLabelSetHash: str | None = None
    toLabels: list[str]


class InteractionIn(BaseModel):
    scores: dict[str, float] = Field(default_factory=dict)
    weight: float | None = None


class FromInteractionsRequest(BaseModel):
    user_id: str
    labelSetHash: str
    interactions: list[InteractionIn]
    method: Literal["sum", "mean"] = "sum"


class MarkReadRequest(BaseModel):
    user_id: str
    labelSetHash: str
    index: int
    feedback: Literal["like", "dislike"]


def get_service(request: Request) -> PersonalizationService:
    return request.app.state.service


def create_app(service: PersonalizationService | None = None) -> FastAPI:
    """
    Build the API. Without an injected service one is created from
    settings at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = None
        if getattr(app.state, "service", None) is None:
            settings = load_settings()
            configure_logging(settings.log_level)
            owned = PersonalizationService(Store(settings.db_path), settings)
            app.state.service = owned
            logger.info("service_started", db_path=settings.db_path)
        yield
        if owned is not None:
            owned.close()
            app.state.service = None

    app = FastAPI(title="BERTnews Personalization API", lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BertNewsError)
    async def handle_core_error(request: Request, exc: BertNewsError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": _describe_validation(exc)})

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/topics/score_batch")
    async def score_batch_route(
        req: ScoreBatchRequest, svc: PersonalizationService = Depends(get_service)
    ):
        return await svc.score_batch(
            req.labels,
            [a.model_dump() for a in req.articles],
            multi_label=req.multi_label,
            min_score=req.min_score,
        )

    @app.post("/labels/register")
    def register_labels_route(
        req: RegisterLabelsRequest, svc: PersonalizationService = Depends(get_service)
    ):
        return svc.register_labels(req.labels)

    @app.post("/profiles/feedback")
    async def feedback_route(
        req: FeedbackRequest, svc: PersonalizationService = Depends(get_service)
    ):
        return await svc.feedback(
            req.user_id, req.labelSetHash, req.article_id, req.feedback, alpha=req.alpha
        )

    @app.post("/profiles/migrate")
    def migrate_route(req: MigrateRequest, svc: PersonalizationService = Depends(get_service)):
        return svc.migrate_profile(req.user_id, req.toLabels, req.fromLabelSetHash)

    @app.post("/profiles/from_interactions")
    def from_interactions_route(
        req: FromInteractionsRequest, svc: PersonalizationService = Depends(get_service)
    ):
        return svc.aggregate_from_interactions(
            req.user_id,
            req.labelSetHash,
            [i.model_dump() for i in req.interactions],
            method=req.method,
        )

    @app.post("/reco/rank")
    def rank_route(req: RankRequest, svc: PersonalizationService = Depends(get_service)):
        candidates = [SparseCandidate(index=c.index, scores=dict(c.scores)) for c in req.candidates]
        return svc.rank_sparse(
            req.user_id, req.labelSetHash, candidates, topk=req.topk, similarity=req.similarity
        )

    @app.post("/reco/rank_embeddings")
    async def rank_embeddings_route(
        req: RankEmbeddingsRequest, svc: PersonalizationService = Depends(get_service)
    ):
        return await svc.rank_embeddings(req.user_id, req.labelSetHash, topk=req.topk)

    @app.get("/read/list")
    def read_list_route(user_id: str = "", svc: PersonalizationService = Depends(get_service)):
        return svc.read_list(user_id)

    @app.post("/read/mark")
    def mark_read_route(req: MarkReadRequest, svc: PersonalizationService = Depends(get_service)):
        return svc.mark_read(req.user_id, req.labelSetHash, req.index, req.feedback)

    return app


def _describe_validation(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "invalid request"


app = create_app()
