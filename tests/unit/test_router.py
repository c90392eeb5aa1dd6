import pytest

from coach_agent.agent.llm import GenerationError
from coach_agent.agent.registry import ToolRegistry
from coach_agent.agent.router import TurnRouter, build_candidates, is_media_ask
from coach_agent.storage.store import InMemoryStore
from coach_agent.types import RagMeta, RetrievalResult, Span


class _FakeRetriever:
    def __init__(self, spans: list[Span]) -> None:
        self.spans = spans
        self.calls: list[tuple[str, int | None, float | None]] = []

    async def retrieve(self, query, *, top_k=None, min_score=None):
        self.calls.append((query, top_k, min_score))
        return RetrievalResult(
            spans=list(self.spans),
            meta=RagMeta(count=len(self.spans), mode="raw" if self.spans else None, model="fake-embed"),
        )


class _ScriptedBackend:
    model_name = "scripted"

    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response or {}
        self.error = error
        self.payloads: list[dict] = []

    async def complete_json(self, system, payload):
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return dict(self.response)


def _router(store, **kwargs) -> TurnRouter:
    return TurnRouter(registry=ToolRegistry(store), **kwargs)


@pytest.mark.parametrize(
    "text",
    [
        "recommend a book about delegation",
        "Which tool or podcast helps with weekly status updates?",
        "What books help train entry-level employees on daily checklists?",
    ],
)
@pytest.mark.asyncio
async def test_media_guard_never_routes_to_tools(store, text) -> None:
    backend = _ScriptedBackend({"route": "tools", "best_tool_slug": "weekly-report", "tool_intent_score": 0.99})

    decision = await _router(store, backend=backend).route(text)

    assert decision.route == "qa"
    assert decision.rule == "media_guard"
    assert backend.payloads == []


@pytest.mark.asyncio
async def test_qa_hint_uses_retrieved_spans(store) -> None:
    retriever = _FakeRetriever([Span("Refunds are accepted within 30 days.", 0.91)])

    decision = await _router(store, retriever=retriever).route("Where is the refund policy?")

    assert decision.route == "qa"
    assert decision.rule == "qa_hint"
    assert decision.rag_meta.count == 1
    assert decision.rag_meta.mode == "raw"
    assert retriever.calls == [("Where is the refund policy?", 3, 0.75)]


@pytest.mark.asyncio
async def test_qa_hint_without_spans_falls_through(store) -> None:
    decision = await _router(store, retriever=_FakeRetriever([])).route("Where is the refund policy?")

    assert decision.route == "coach"
    assert decision.rule == "default"


@pytest.mark.asyncio
async def test_tool_seeking_phrasing_routes_to_tools(store) -> None:
    decision = await _router(store).route("Which tool should we use for weekly status updates?")

    assert decision.route == "tools"
    assert decision.rule == "tool_ask"
    assert decision.best_tool_slug == "weekly-report"


@pytest.mark.asyncio
async def test_model_decision_accepted_above_threshold(store) -> None:
    backend = _ScriptedBackend({"route": "tools", "best_tool_slug": "pulse-survey", "tool_intent_score": 0.8})

    decision = await _router(store, backend=backend).route("our team morale is low lately")

    assert decision.route == "tools"
    assert decision.rule == "llm"
    assert decision.best_tool_slug == "pulse-survey"
    assert backend.payloads[0]["task"] == "route"
    assert backend.payloads[0]["candidates"][0]["slug"] == "pulse-survey"


@pytest.mark.parametrize(
    "response",
    [
        {"route": "tools", "best_tool_slug": "slack-bot", "tool_intent_score": 0.9},
        {"route": "tools", "best_tool_slug": "pulse-survey", "tool_intent_score": 0.3},
        {"route": "banana", "confidence": 0.9},
        {},
    ],
)
@pytest.mark.asyncio
async def test_untrusted_model_decisions_fall_back_to_coach(store, response) -> None:
    decision = await _router(store, backend=_ScriptedBackend(response)).route("our team morale is low lately")

    assert decision.route == "coach"
    assert decision.best_tool_slug is None


@pytest.mark.asyncio
async def test_backend_failure_is_swallowed(store) -> None:
    backend = _ScriptedBackend(error=GenerationError("timeout"))

    decision = await _router(store, backend=backend).route("how do I run better meetings")

    assert decision.route == "coach"


@pytest.mark.asyncio
async def test_registry_outage_does_not_break_routing() -> None:
    class _BrokenStore(InMemoryStore):
        async def fetch_tool_rows(self):
            raise ConnectionError("down")

    decision = await _router(_BrokenStore()).route("Which tool should we use for onboarding?")

    assert decision.route == "tools"
    assert decision.best_tool_slug is None


def test_build_candidates_orders_by_hits(tools) -> None:
    candidates = build_candidates("burnout and morale are slipping", tools)

    assert candidates[0] == {"slug": "pulse-survey", "title": "Pulse Survey", "score": 4.0}
    assert is_media_ask("any good audiobooks?")
    assert not is_media_ask("recommend a tool for onboarding")
