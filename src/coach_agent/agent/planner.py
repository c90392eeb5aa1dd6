"""Turn orchestration: follow-ups, routing, composition and policy enforcement."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from coach_agent.agent.composer import (
    MediaRecsReply,
    ReplyComposer,
    count_media_items,
    detect_selection_title,
    media_template,
)
from coach_agent.agent.fallback import SAFE_FALLBACK_TEXT, describe_slots
from coach_agent.agent.followup import (
    FollowUpKind,
    classify,
    merge_params,
    parse_params,
    render_plan_preview,
    render_tool_info,
    render_tool_plan,
)
from coach_agent.agent.llm import GenerationBackend
from coach_agent.agent.matcher import detect_tool_from_assistant, rank_tools
from coach_agent.agent.registry import ToolRegistry, find_by_slug
from coach_agent.agent.router import TurnRouter
from coach_agent.config import AgentConfig, MatcherConfig
from coach_agent.obs.tracing import BackgroundEmitter, Timer, TraceStore
from coach_agent.policy.sanitizer import enforce
from coach_agent.storage.store import CoachStore
from coach_agent.types import ConversationTurn, ProposedTool, RagMeta, Route, ToolDoc

logger = logging.getLogger(__name__)

PLAN_SYSTEM_PROMPT = """
The user approved setting up an internal tool. Using `tool`, `params` and `approval_text`,
return JSON {"tool_slug": string, "slots": object, "message": string} where `message` is a
short confirmation of how the tool will be configured. Only mention the given tool; never
name third-party products. Do not write a "Try:" line.
""".strip()

UNKNOWN_TOOL_TEXT = (
    "I couldn't find that tool in our catalog. Tell me what you're trying to get done "
    "and I'll suggest a next step."
)


@dataclass(slots=True)
class TurnOutcome:
    route: Route
    text: str
    rule: str
    followup: FollowUpKind = "none"
    reco_slug: str | None = None
    proposed: ProposedTool | None = None
    candidates: list[dict[str, Any]] = field(default_factory=list)
    reply_mode: str | None = None
    rag_meta: RagMeta = field(default_factory=RagMeta)


def _last_assistant(history: list[ConversationTurn]) -> str | None:
    return next((turn.content for turn in reversed(history) if turn.role == "assistant"), None)


class CoachPlanner:
    """Runs one chat turn end to end.

    A known follow-up to a proposed tool is answered without routing or
    generation; everything else goes router -> composer -> sanitizer.
    Storage and telemetry failures degrade the turn but never fail it.
    """

    def __init__(
        self,
        *,
        registry: ToolRegistry,
        router: TurnRouter,
        composer: ReplyComposer,
        store: CoachStore,
        backend: GenerationBackend,
        trace_store: TraceStore | None = None,
        emitter: BackgroundEmitter | None = None,
        config: AgentConfig | None = None,
        matcher_config: MatcherConfig | None = None,
    ) -> None:
        self.registry = registry
        self.router = router
        self.composer = composer
        self.store = store
        self.backend = backend
        self.trace_store = trace_store or TraceStore()
        self.emitter = emitter or BackgroundEmitter()
        self.config = config or AgentConfig()
        self.matcher_config = matcher_config or MatcherConfig()

    async def invoke(
        self,
        user_text: str,
        *,
        history: list[ConversationTurn] | None = None,
        session_id: str | None = None,
        confirm_tool_slug: str | None = None,
        approval_text: str | None = None,
    ) -> dict[str, Any]:
        """Run one turn and persist session state, telemetry and a trace.

        Returns:
            route and text, the recommendation flag and slug, plus diagnostic
            fields (trace id, latency, rule, follow-up kind, candidates).
        """
        text = str(user_text or "").strip()
        turns = list(history or [])
        errors: list[str] = []

        with Timer() as timer:
            tools = await self.registry.get_tools()
            state = await self._load_session(session_id, errors)
            if confirm_tool_slug:
                outcome = await self._confirm(confirm_tool_slug, approval_text or text, tools, state)
            else:
                outcome = await self._run_turn(text, turns, tools, state)
            await self._save_session(session_id, outcome.proposed, errors)

        record = self.trace_store.create_record(
            question=text,
            route=outcome.route,
            rule=outcome.rule,
            followup=outcome.followup,
            reco_slug=outcome.reco_slug,
            rag_count=outcome.rag_meta.count,
            latency_ms=timer.elapsed_ms,
            errors=errors,
        )
        self._emit_side_effects(text, outcome, session_id, timer.elapsed_ms, errors)

        return {
            "route": outcome.route,
            "text": outcome.text,
            "reco": outcome.reco_slug is not None,
            "reco_slug": outcome.reco_slug,
            "trace_id": record.trace_id,
            "latency_ms": record.latency_ms,
            "latency_target_met": record.latency_ms <= self.config.target_latency_seconds * 1000.0,
            "rule": outcome.rule,
            "followup": outcome.followup,
            "candidates": outcome.candidates,
            "reply": outcome.reply_mode,
            "rag": {
                "count": outcome.rag_meta.count,
                "mode": outcome.rag_meta.mode,
                "model": outcome.rag_meta.model,
            },
        }

    async def _run_turn(
        self,
        text: str,
        history: list[ConversationTurn],
        tools: list[ToolDoc],
        state: dict[str, Any],
    ) -> TurnOutcome:
        titles = [tool.title for tool in tools]
        proposed = self._resolve_proposed(state, history, tools)
        tool = find_by_slug(tools, proposed.slug) if proposed is not None else None
        kind = classify(text) if tool is not None else "none"
        preface = ""

        if proposed is not None and tool is not None:
            if kind == "accept":
                proposed.params = merge_params(proposed.params, parse_params(text))
                plan = render_tool_plan(tool, proposed.params)
                return TurnOutcome(
                    route="tools",
                    text=enforce(plan, titles, chosen_tool=tool.title),
                    rule="followup_accept",
                    followup=kind,
                    reco_slug=tool.slug,
                    proposed=proposed,
                )
            if kind == "refine":
                proposed.params = merge_params(proposed.params, parse_params(text))
                return TurnOutcome(
                    route="tools",
                    text=enforce(render_plan_preview(tool, proposed.params), titles),
                    rule="followup_refine",
                    followup=kind,
                    proposed=proposed,
                )
            if kind == "askinfo":
                return TurnOutcome(
                    route="tools",
                    text=enforce(render_tool_info(tool), titles),
                    rule="followup_askinfo",
                    followup=kind,
                    proposed=proposed,
                )
            if kind == "reject":
                preface = f"No problem, let's leave **{tool.title}** for now."
                proposed = None

        decision = await self.router.route(
            text, history, last_reco_slug=proposed.slug if proposed else None
        )
        candidates = self._candidates(text, tools, decision.best_tool_slug)
        selection = detect_selection_title(text, history)

        hints: dict[str, Any] = {"route": decision.route}
        if selection:
            hints["selection_title"] = selection
        if decision.rag_spans:
            hints["grounding"] = [span.content for span in decision.rag_spans]
        if decision.best_tool_slug:
            hints["best_tool_slug"] = decision.best_tool_slug

        composed = await self.composer.compose_turn(text, candidates, history, hints)
        rendered = self.composer.render(composed.reply, tools)

        route: Route = rendered.route
        if composed.reply.mode in ("qa", "coach") and decision.route != "tools":
            route = decision.route

        if rendered.offered_tool is not None:
            proposed = ProposedTool(
                slug=rendered.offered_tool.slug,
                title=rendered.offered_tool.title,
                params=rendered.offered_slots,
            )
        elif kind == "none" and route != "tools":
            proposed = None

        allowed = [*titles, *rendered.media_names, selection]
        body = enforce(rendered.text, allowed)
        if isinstance(composed.reply, MediaRecsReply) and (
            count_media_items(body) < self.composer.config.min_media_items
        ):
            logger.info("reading list lost items to policy enforcement, using template picks")
            rendered = self.composer.render(media_template(), tools)
            body = enforce(rendered.text, [*titles, *rendered.media_names])
        if preface:
            body = f"{preface}\n\n{body}" if body else preface
        if not body.strip():
            body = SAFE_FALLBACK_TEXT

        return TurnOutcome(
            route=route,
            text=body,
            rule=decision.rule,
            followup=kind,
            proposed=proposed,
            candidates=candidates,
            reply_mode=composed.reply.mode,
            rag_meta=decision.rag_meta,
        )

    async def _confirm(
        self,
        slug: str,
        approval_text: str,
        tools: list[ToolDoc],
        state: dict[str, Any],
    ) -> TurnOutcome:
        tool = find_by_slug(tools, slug)
        if tool is None:
            logger.warning("confirmation for unknown tool slug %r", slug)
            return TurnOutcome(route="coach", text=UNKNOWN_TOOL_TEXT, rule="confirm_unknown")

        previous = ProposedTool.from_dict(state.get("proposed"))
        params = previous.params if previous is not None and previous.slug == tool.slug else {}
        params = merge_params(params, parse_params(approval_text))

        payload = {
            "task": "plan",
            "tool": {"slug": tool.slug, "title": tool.title, "summary": tool.summary},
            "params": params,
            "approval_text": approval_text,
        }
        try:
            raw = await self.backend.complete_json(PLAN_SYSTEM_PROMPT, payload)
        except Exception as exc:
            logger.warning("plan generation failed, using default plan text: %s", exc)
            raw = {}

        slots = raw.get("slots") if isinstance(raw.get("slots"), dict) else params
        message = str(raw.get("message") or "").strip() or (
            f"I'll configure **{tool.title}** with: {describe_slots(slots)}."
        )
        titles = [item.title for item in tools]
        return TurnOutcome(
            route="tools",
            text=enforce(message, titles, chosen_tool=tool.title),
            rule="confirm",
            followup="accept",
            reco_slug=tool.slug,
            proposed=ProposedTool(slug=tool.slug, title=tool.title, params=dict(slots)),
        )

    def _resolve_proposed(
        self,
        state: dict[str, Any],
        history: list[ConversationTurn],
        tools: list[ToolDoc],
    ) -> ProposedTool | None:
        proposed = ProposedTool.from_dict(state.get("proposed"))
        if proposed is None:
            recovered = detect_tool_from_assistant(_last_assistant(history), tools, self.matcher_config)
            if recovered is not None:
                proposed = ProposedTool(slug=recovered.slug, title=recovered.title)
        if proposed is not None and find_by_slug(tools, proposed.slug) is None:
            logger.info("proposed tool %r is no longer in the catalog", proposed.slug)
            return None
        return proposed

    def _candidates(
        self, text: str, tools: list[ToolDoc], best_slug: str | None
    ) -> list[dict[str, Any]]:
        ranked = rank_tools(text, tools, self.matcher_config)
        if best_slug:
            ranked.sort(key=lambda item: item.tool.slug != best_slug)
        return [
            {
                "slug": item.tool.slug,
                "title": item.tool.title,
                "score": round(item.score, 3),
                "summary": item.tool.summary,
            }
            for item in ranked
            if item.score > 0
        ][: self.composer.config.max_candidates]

    async def _load_session(self, session_id: str | None, errors: list[str]) -> dict[str, Any]:
        if not session_id:
            return {}
        try:
            state = await asyncio.wait_for(
                self.store.load_session(session_id), timeout=self.config.session_timeout_seconds
            )
        except Exception as exc:
            logger.warning("session load failed for %s: %s", session_id, exc)
            errors.append(f"session_load: {exc}")
            return {}
        return state if isinstance(state, dict) else {}

    async def _save_session(
        self, session_id: str | None, proposed: ProposedTool | None, errors: list[str]
    ) -> None:
        if not session_id:
            return
        state = {"proposed": proposed.as_dict() if proposed is not None else None}
        try:
            await asyncio.wait_for(
                self.store.save_session(session_id, state), timeout=self.config.session_timeout_seconds
            )
        except Exception as exc:
            logger.warning("session save failed for %s: %s", session_id, exc)
            errors.append(f"session_save: {exc}")

    def _emit_side_effects(
        self,
        text: str,
        outcome: TurnOutcome,
        session_id: str | None,
        duration_ms: float,
        errors: list[str],
    ) -> None:
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "q": text[:500],
            "route": outcome.route,
            "rag_count": outcome.rag_meta.count,
            "rag_mode": outcome.rag_meta.mode,
            "model": getattr(self.backend, "model_name", None),
            "reco_slug": outcome.reco_slug,
            "duration_ms": round(duration_ms, 2),
            "ok": not errors,
            "err": "; ".join(errors) or None,
        }
        self.emitter.emit("telemetry", self.store.record_event(event))
        if session_id:
            self.emitter.emit(
                "transcript", self.store.append_transcript(session_id, text, outcome.text)
            )
