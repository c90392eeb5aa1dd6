"""FastAPI entrypoint for chat, retrieval, registry and trace endpoints."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from coach_agent.agent.composer import ReplyComposer
from coach_agent.agent.fallback import DeterministicBackend
from coach_agent.agent.llm import ChatModelBackend, GenerationBackend, create_chat_model
from coach_agent.agent.planner import CoachPlanner
from coach_agent.agent.registry import ToolRegistry
from coach_agent.agent.router import TurnRouter
from coach_agent.config import (
    AgentConfig,
    ComposerConfig,
    RegistryConfig,
    RetrievalConfig,
    RouterConfig,
    Settings,
)
from coach_agent.ingest.embedder import Embedder, HashingEmbedder, OpenAIEmbedder
from coach_agent.ingest.pipeline import DocumentIndexer
from coach_agent.obs.tracing import BackgroundEmitter, TraceStore
from coach_agent.retrieval.retriever import SpanRetriever
from coach_agent.retrieval.vector_store import InMemoryVectorStore
from coach_agent.storage.store import CoachStore, InMemoryStore, SqliteStore
from coach_agent.types import ConversationTurn

logger = logging.getLogger(__name__)

MISSING_TEXT_REPLY = {"route": "qa", "text": "Please type your question."}
INTERNAL_ERROR_REPLY = {"route": "qa", "text": "Internal error"}

_TEXT_FIELDS = ("q", "query", "text", "message", "prompt", "content", "input")
_ROLES = ("user", "assistant", "system")


class IndexRequest(BaseModel):
    content: str = ""
    title: str | None = None
    url: str | None = None


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    top_k: int = Field(default=4, ge=1, le=20)
    min_score: float | None = Field(default=None, ge=0.0, le=1.0)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for segment in content:
            if isinstance(segment, str):
                parts.append(segment)
            elif isinstance(segment, dict) and isinstance(segment.get("text"), str):
                parts.append(segment["text"])
        return " ".join(parts)
    return ""


def _messages(body: dict[str, Any]) -> list[Any]:
    for key in ("messages", "history"):
        value = body.get(key)
        if isinstance(value, list):
            return value
    return []


def resolve_user_text(body: dict[str, Any]) -> str:
    """Explicit text fields, then the last user message, then `data.*`."""
    for key in _TEXT_FIELDS:
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()

    for message in reversed(_messages(body)):
        if isinstance(message, dict) and message.get("role") == "user":
            text = _content_text(message.get("content")).strip()
            if text:
                return text

    data = body.get("data")
    if isinstance(data, dict):
        for key in _TEXT_FIELDS:
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return ""


def to_history(body: dict[str, Any], user_text: str) -> list[ConversationTurn]:
    """Prior turns, without the trailing user message that carries this turn."""
    turns: list[ConversationTurn] = []
    for message in _messages(body):
        if not isinstance(message, dict) or message.get("role") not in _ROLES:
            continue
        text = _content_text(message.get("content")).strip()
        if text:
            turns.append(ConversationTurn(role=message["role"], content=text))
    if turns and turns[-1].role == "user" and turns[-1].content == user_text:
        turns.pop()
    return turns


def _build_backend(settings: Settings) -> GenerationBackend:
    llm = create_chat_model(settings.openai_api_key, settings.chat_model)
    if llm is None:
        return DeterministicBackend()
    return ChatModelBackend(
        llm, model_name=settings.chat_model, timeout_seconds=settings.generation_timeout_seconds
    )


def _build_store(settings: Settings) -> CoachStore:
    if settings.db_path:
        return SqliteStore(settings.db_path)
    return InMemoryStore()


def create_app(
    settings: Settings | None = None,
    *,
    store: CoachStore | None = None,
    backend: GenerationBackend | None = None,
    embedder: Embedder | None = None,
) -> FastAPI:
    """Wire every component from settings; collaborators may be injected."""
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = store or _build_store(settings)
    backend = backend or _build_backend(settings)
    if embedder is None:
        embedder = OpenAIEmbedder(settings.embed_model) if settings.openai_api_key else HashingEmbedder()

    vector_store = InMemoryVectorStore()
    indexer = DocumentIndexer(embedder, vector_store)
    retriever = SpanRetriever(vector_store, embedder, RetrievalConfig())
    registry = ToolRegistry(store, RegistryConfig(ttl_seconds=settings.tool_ttl_seconds))
    router = TurnRouter(registry=registry, retriever=retriever, backend=backend, config=RouterConfig())
    composer = ReplyComposer(backend, ComposerConfig())
    trace_store = TraceStore()
    emitter = BackgroundEmitter()
    planner = CoachPlanner(
        registry=registry,
        router=router,
        composer=composer,
        store=store,
        backend=backend,
        trace_store=trace_store,
        emitter=emitter,
        config=AgentConfig(),
    )
    llm_configured = not isinstance(backend, DeterministicBackend)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        await emitter.drain()

    app = FastAPI(title="Coach Agent", version="0.1.0", lifespan=lifespan)
    app.state.planner = planner
    app.state.store = store
    app.state.emitter = emitter

    @app.exception_handler(Exception)
    async def unexpected_error(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled error: %s", exc)
        return JSONResponse(status_code=500, content=INTERNAL_ERROR_REPLY)

    @app.post("/chat")
    async def chat(request: Request) -> JSONResponse:
        raw = await request.body()
        try:
            body = json.loads(raw) if raw else {}
        except (json.JSONDecodeError, UnicodeDecodeError):
            body = {}
        if not isinstance(body, dict):
            body = {}

        user_text = resolve_user_text(body)
        confirm_slug = body.get("confirm_tool_slug") or None
        if not user_text and not confirm_slug:
            return JSONResponse(status_code=400, content=MISSING_TEXT_REPLY)

        session_id = body.get("sessionId") or body.get("session_id") or None
        result = await planner.invoke(
            user_text,
            history=to_history(body, user_text),
            session_id=str(session_id) if session_id else None,
            confirm_tool_slug=str(confirm_slug) if confirm_slug else None,
            approval_text=body.get("approval_text") or None,
        )

        payload: dict[str, Any] = {"route": result["route"], "text": result["text"]}
        if result["reco"]:
            payload["reco"] = True
            payload["reco_slug"] = result["reco_slug"]
        if settings.debug:
            for key in ("rule", "followup", "candidates", "reply", "latency_ms", "trace_id", "rag"):
                payload[key] = result[key]
        return JSONResponse(content=payload)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "llm_configured": llm_configured,
            "planner_mode": "langchain" if llm_configured else "deterministic",
            "trace_count": len(trace_store),
            "side_effect_errors": len(emitter.errors),
        }

    @app.get("/tools")
    async def tools() -> dict[str, Any]:
        items = await registry.get_tools()
        return {
            "count": len(items),
            "sample": [
                {"slug": tool.slug, "title": tool.title, "keywords": list(tool.keywords)}
                for tool in items[:5]
            ],
        }

    @app.post("/rag/index")
    def rag_index(request: IndexRequest) -> dict[str, Any]:
        try:
            doc = indexer.index_document(request.content, title=request.title, url=request.url)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"ok": True, "doc_id": doc.doc_id, "indexed": len(vector_store)}

    @app.post("/rag/search")
    async def rag_search(request: SearchRequest) -> dict[str, Any]:
        result = await retriever.retrieve(
            request.query, top_k=request.top_k, min_score=request.min_score
        )
        return {"spans": [asdict(span) for span in result.spans], "meta": asdict(result.meta)}

    @app.get("/events")
    async def events(limit: int = Query(default=50, ge=1, le=200)) -> JSONResponse:
        await emitter.drain()
        rows = await store.list_events(limit)
        return JSONResponse(content={"items": rows}, headers={"X-Events-Count": str(len(rows))})

    @app.get("/traces")
    def traces(limit: int = 20) -> dict[str, Any]:
        return {"items": [asdict(record) for record in trace_store.list_recent(limit=limit)]}

    @app.get("/traces/{trace_id}")
    def trace_detail(trace_id: str) -> dict[str, Any]:
        try:
            record = trace_store.get(trace_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return trace_store.summary()

    return app


app = create_app()
