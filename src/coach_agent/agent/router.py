"""QA-first turn router with media and tool guards."""

from __future__ import annotations

import logging
import re
from typing import Any

from coach_agent.agent.llm import GenerationBackend
from coach_agent.agent.matcher import match_tool_by_intent, rank_tools
from coach_agent.agent.registry import ToolRegistry
from coach_agent.config import MatcherConfig, RouterConfig
from coach_agent.retrieval.retriever import SpanRetriever
from coach_agent.types import ROUTES, ConversationTurn, RagMeta, RouteDecision, ToolDoc

logger = logging.getLogger(__name__)

_MEDIA_ASK = re.compile(
    r"\b(books?|authors?|reading\s*list|read|reading|podcasts?|articles?|courses?|audiobooks?)\b",
    re.IGNORECASE,
)
_QA_HINT = re.compile(
    r"\b(where|docs?|documentation|policy|policies|wiki|link|links|handbook|sop)\b",
    re.IGNORECASE,
)
_TOOL_ASK = re.compile(
    r"\b(recommend|suggest|which|what)\b.*\b(tools?|templates?|apps?|software|integrations?|features?)\b",
    re.IGNORECASE,
)

ROUTER_SYSTEM_PROMPT = """
You are a strict router for an internal small-business coaching app.

Routes:
- "qa": the user wants a factual answer.
- "coach": the user wants guidance, a plan or a playbook.
- "tools": an internal tool from `candidates` would directly help.

Rules:
1) Only pick a `best_tool_slug` that appears in `candidates`. Never invent one.
2) Never pick "tools" when the user asks for books, podcasts, articles or courses.
3) If the user just affirmed a prior recommendation and `last_reco_slug` is set, prefer route "tools" with that slug.

Return JSON: {"route": "qa|coach|tools", "best_tool_slug": string|null, "tool_intent_score": number between 0 and 1}.
""".strip()


def is_media_ask(text: str | None) -> bool:
    return bool(_MEDIA_ASK.search(str(text or "")))


def is_qa_hint(text: str | None) -> bool:
    return bool(_QA_HINT.search(str(text or "")))


def is_tool_ask(text: str | None) -> bool:
    return bool(_TOOL_ASK.search(str(text or "")))


def build_candidates(text: str, tools: list[ToolDoc], limit: int = 6) -> list[dict[str, Any]]:
    """Compact candidate list scored by pattern and keyword hits only."""
    ranked = sorted(rank_tools(text, tools), key=lambda item: item.hit_score, reverse=True)
    return [
        {"slug": item.tool.slug, "title": item.tool.title, "score": item.hit_score}
        for item in ranked[:limit]
    ]


class TurnRouter:
    """Chooses qa, coach or tools for a turn; first matching rule wins.

    1. media guard forces qa,
    2. docs/policy phrasing routes to qa when retrieval finds spans,
    3. explicit tool-seeking phrasing routes to tools,
    4. an optional model decision above the confidence threshold,
    5. coach.

    Retrieval and generation failures degrade to the next rule; `route`
    never raises.
    """

    def __init__(
        self,
        *,
        registry: ToolRegistry,
        retriever: SpanRetriever | None = None,
        backend: GenerationBackend | None = None,
        config: RouterConfig | None = None,
        matcher_config: MatcherConfig | None = None,
    ) -> None:
        self.registry = registry
        self.retriever = retriever
        self.backend = backend
        self.config = config or RouterConfig()
        self.matcher_config = matcher_config or MatcherConfig()

    async def route(
        self,
        user_text: str,
        history: list[ConversationTurn] | None = None,
        *,
        last_reco_slug: str | None = None,
    ) -> RouteDecision:
        text = str(user_text or "").strip()

        if is_media_ask(text):
            return self._decide("qa", rule="media_guard")

        if is_qa_hint(text) and self.retriever is not None:
            try:
                result = await self.retriever.retrieve(
                    text, top_k=self.config.qa_top_k, min_score=self.config.qa_min_score
                )
            except Exception as exc:
                logger.warning("qa retrieval failed, continuing: %s", exc)
            else:
                if result.spans:
                    return RouteDecision(
                        route="qa",
                        rag_spans=result.spans,
                        rag_meta=RagMeta(count=len(result.spans), mode="raw", model=result.meta.model),
                        rule="qa_hint",
                    )

        tools = await self._tools()

        if is_tool_ask(text):
            picked = match_tool_by_intent(text, tools, self.matcher_config)
            return self._decide("tools", rule="tool_ask", slug=picked.slug if picked else None)

        decision = await self._llm_decision(text, history or [], tools, last_reco_slug)
        if decision is not None:
            return decision

        return self._decide("coach", rule="default")

    async def _tools(self) -> list[ToolDoc]:
        try:
            return await self.registry.get_tools()
        except Exception as exc:
            logger.warning("router could not load tools: %s", exc)
            return []

    async def _llm_decision(
        self,
        text: str,
        history: list[ConversationTurn],
        tools: list[ToolDoc],
        last_reco_slug: str | None,
    ) -> RouteDecision | None:
        if self.backend is None or not self.config.llm_enabled:
            return None

        candidates = build_candidates(text, tools, self.config.max_candidates)
        last_assistant = next(
            (turn.content for turn in reversed(history) if turn.role == "assistant"), None
        )
        payload = {
            "task": "route",
            "user_text": text,
            "last_reco_slug": last_reco_slug,
            "candidates": [{"slug": c["slug"], "title": c["title"]} for c in candidates],
            "last_assistant": last_assistant,
        }
        try:
            raw = await self.backend.complete_json(ROUTER_SYSTEM_PROMPT, payload)
        except Exception as exc:
            logger.warning("router model call failed, using deterministic route: %s", exc)
            return None

        route = raw.get("route")
        if route not in ROUTES:
            return None
        score = raw.get("tool_intent_score", raw.get("confidence"))
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            return None
        if score < self.config.llm_min_confidence:
            logger.debug("router model decision %s below threshold (%.2f)", route, score)
            return None

        slug = raw.get("best_tool_slug") or None
        if slug is not None and slug not in {c["slug"] for c in candidates}:
            logger.warning("router model proposed unknown tool slug %r; ignoring decision", slug)
            return None
        if route != "tools":
            slug = None
        return self._decide(route, rule="llm", slug=slug)

    @staticmethod
    def _decide(route: str, *, rule: str, slug: str | None = None) -> RouteDecision:
        logger.debug("route=%s rule=%s slug=%s", route, rule, slug)
        return RouteDecision(route=route, best_tool_slug=slug, rule=rule)  # type: ignore[arg-type]
