"""Schema-constrained reply composition with one self-heal retry."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from pydantic import BaseModel, Field

from coach_agent.agent.fallback import (
    CONFIRM_CTA,
    MEDIA_ASK,
    MEDIA_HEADER,
    MEDIA_PICKS,
    deep_dive_template,
)
from coach_agent.agent.llm import GenerationBackend
from coach_agent.agent.registry import find_by_slug
from coach_agent.agent.router import is_media_ask
from coach_agent.config import ComposerConfig
from coach_agent.types import ConversationTurn, Route, ToolDoc

logger = logging.getLogger(__name__)

COMPOSER_SYSTEM_PROMPT = """
You are a practical digital coach for small-business leaders.

Pick exactly one MODE and return ONLY a JSON object for it:
- "media_recs": the user asks for books, podcasts, articles or courses. Return 3-5 `items`
  ({title, by?, why, takeaway}) and exactly one short follow-up question in `ask`.
- "offer_tool": an internal tool from `candidates` would help. Give a brief value pitch in
  `message`, optional `slots`, a `confirm_cta`, and `requires_confirmation: true`.
  Never include a ready-to-execute plan; always ask for confirmation first.
- "deep_dive": `hints.selection_title` names an item from a prior list. Give one sentence on
  why it fits, a numbered checklist of 5-7 steps, one small copyable template, and end with one
  yes/no next-action question.
- "qa": a factual answer; use `hints.grounding` silently when present.
- "coach": general guidance or a short playbook.

Rules:
- Only recommend tools listed in `candidates`; never name third-party products, apps or websites.
- Never write lines starting with "Try:".
- Read `history` to resolve references to earlier messages.
""".strip()


class MediaItem(BaseModel):
    title: str
    by: str | None = None
    why: str = ""
    takeaway: str = ""


class TextReply(BaseModel):
    mode: Literal["qa", "coach"] = "qa"
    message: str


class MediaRecsReply(BaseModel):
    mode: Literal["media_recs"] = "media_recs"
    message: str
    items: list[MediaItem] = Field(default_factory=list)
    ask: str | None = None


class OfferToolReply(BaseModel):
    mode: Literal["offer_tool"] = "offer_tool"
    tool_slug: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    slots: dict[str, Any] = Field(default_factory=dict)
    message: str
    confirm_cta: str = CONFIRM_CTA
    requires_confirmation: Literal[True] = True


class DeepDiveReply(BaseModel):
    mode: Literal["deep_dive"] = "deep_dive"
    message: str


Reply = Union[TextReply, MediaRecsReply, OfferToolReply, DeepDiveReply]


_MEDIA_ITEM_LINE = re.compile(r"^- \*\*", re.MULTILINE)


def media_template() -> MediaRecsReply:
    return MediaRecsReply(
        message=MEDIA_HEADER,
        items=[MediaItem(**item) for item in MEDIA_PICKS],
        ask=MEDIA_ASK,
    )


def count_media_items(text: str) -> int:
    """Rendered `- **Title**` item lines still present in `text`."""
    return len(_MEDIA_ITEM_LINE.findall(text or ""))


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _confidence(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    return min(1.0, max(0.0, number))


def normalize_reply(raw: Any) -> Reply:
    """Coerce loosely shaped provider output into one reply variant.

    Field-name variants are accepted at this boundary; every variant leaves
    here with a non-empty message.
    """
    data = raw if isinstance(raw, dict) else {}
    mode = data.get("mode")

    if mode == "media_recs":
        source = _first(data, "items", "recommendations", "recs") or []
        items: list[MediaItem] = []
        for entry in source if isinstance(source, list) else []:
            if not isinstance(entry, dict):
                continue
            title = _text(_first(entry, "title", "name"))
            if not title:
                continue
            items.append(
                MediaItem(
                    title=title,
                    by=_text(_first(entry, "by", "author", "writer")) or None,
                    why=_text(_first(entry, "why", "reason", "why_this")),
                    takeaway=_text(_first(entry, "takeaway", "key_takeaway", "tip")),
                )
            )
        return MediaRecsReply(
            message=_text(_first(data, "message", "header")) or MEDIA_HEADER,
            items=items,
            ask=_text(_first(data, "ask", "follow_up", "followUpQuestion", "followup")) or None,
        )

    if mode == "offer_tool":
        slots = _first(data, "slots", "defaults")
        return OfferToolReply(
            tool_slug=_text(_first(data, "tool_slug", "slug", "tool")),
            confidence=_confidence(_first(data, "confidence", "score")),
            slots=slots if isinstance(slots, dict) else {},
            message=_text(_first(data, "message", "pitch"))
            or "This tool looks like a good fit for this problem.",
            confirm_cta=_text(data.get("confirm_cta")) or CONFIRM_CTA,
        )

    if mode == "deep_dive":
        return DeepDiveReply(
            message=_text(data.get("message")) or "Here's a concrete next-step plan you can run today."
        )

    return TextReply(
        mode="coach" if mode == "coach" else "qa",
        message=_text(_first(data, "message", "text")) or "Got it.",
    )


def looks_like_deep_dive(text: str | None, min_chars: int = 180) -> bool:
    """A numbered or bulleted list and enough body once whitespace is collapsed."""
    body = str(text or "")
    has_list = bool(re.search(r"(^|\n)\s*(\d+[.)]|[-*•])\s+", body))
    return has_list and len(re.sub(r"\s+", " ", body).strip()) >= min_chars


def _norm(text: str) -> str:
    lowered = re.sub(r"[^a-z0-9\s]", " ", str(text or "").lower())
    lowered = re.sub(r"\b(the|a|an)\b", " ", lowered)
    return re.sub(r"\s+", " ", lowered).strip()


def extract_list_titles(assistant_text: str) -> list[str]:
    """Titles from `- **Title**` or `- Title — ...` bullet lines, in order."""
    titles: list[str] = []
    for line in str(assistant_text or "").splitlines():
        match = re.match(r"^\s*[-*•]\s+\*\*([^*]+)\*\*", line)
        if not match:
            match = re.match(r"^\s*[-*•]\s+(.+?)(?:\s+[—–]|\s+\(|$)", line)
        if match:
            title = match.group(1).replace("**", "").strip()
            if title and title not in titles:
                titles.append(title)
    return titles


def detect_selection_title(user_text: str, history: list[ConversationTurn]) -> str | None:
    """Resolve a reference to an item listed in the last assistant turn."""
    query = _norm(user_text)
    if len(query) < 3:
        return None
    last_assistant = next((t.content for t in reversed(history) if t.role == "assistant"), "")
    titles = extract_list_titles(last_assistant)
    if not titles:
        return None

    words = query.split()
    best_title, best_score = None, -1
    for title in titles:
        normalized = _norm(title)
        score = sum(1 for word in words if len(word) >= 3 and word in normalized)
        if query in normalized:
            score += 2
        if score > best_score:
            best_title, best_score = title, score
    if best_title is not None and best_score >= max(2, math.ceil(len(words) / 2)):
        return best_title
    return None


@dataclass(slots=True)
class ComposedReply:
    reply: Reply
    attempts: int = 1
    substituted: bool = False


@dataclass(slots=True)
class RenderedReply:
    route: Route
    text: str
    offered_tool: ToolDoc | None = None
    offered_slots: dict[str, Any] = field(default_factory=dict)
    media_names: list[str] = field(default_factory=list)


class ReplyComposer:
    """Calls the generation backend for one of five reply modes."""

    def __init__(self, backend: GenerationBackend, config: ComposerConfig | None = None) -> None:
        self.backend = backend
        self.config = config or ComposerConfig()

    async def compose(
        self,
        user_text: str,
        candidates: list[dict[str, Any]],
        history: list[ConversationTurn],
        hints: dict[str, Any] | None = None,
    ) -> Reply:
        turns = history[-self.config.history_turns :] if self.config.history_turns else []
        context = {
            "task": "compose",
            "user_text": user_text,
            "candidates": candidates[: self.config.max_candidates],
            "history": [turn.as_dict() for turn in turns],
            "hints": hints or {},
        }
        try:
            raw = await self.backend.complete_json(COMPOSER_SYSTEM_PROMPT, context)
        except Exception as exc:
            logger.warning("composer generation failed, using safe default: %s", exc)
            raw = {}
        return normalize_reply(raw)

    async def compose_turn(
        self,
        user_text: str,
        candidates: list[dict[str, Any]],
        history: list[ConversationTurn],
        hints: dict[str, Any] | None = None,
    ) -> ComposedReply:
        """Compose, retry once on a mode mismatch, then substitute a template."""
        hints = hints or {}
        selection = hints.get("selection_title")
        media = not selection and is_media_ask(user_text)

        reply = await self.compose(user_text, candidates, history, hints)
        if not self._needs_retry(reply, media=media, selection=selection):
            return ComposedReply(reply=reply)

        logger.info("composer self-heal retry (mode=%s)", reply.mode)
        reply = await self.compose(user_text, candidates, history, hints)
        if not self._needs_retry(reply, media=media, selection=selection):
            return ComposedReply(reply=reply, attempts=2)

        if selection:
            template: Reply = DeepDiveReply(message=deep_dive_template(selection, user_text))
        else:
            template = media_template()
        return ComposedReply(reply=template, attempts=2, substituted=True)

    def _needs_retry(self, reply: Reply, *, media: bool, selection: str | None) -> bool:
        if selection:
            return not isinstance(reply, DeepDiveReply) or not looks_like_deep_dive(
                reply.message, self.config.deep_dive_min_chars
            )
        if media:
            return not isinstance(reply, MediaRecsReply) or len(reply.items) < self.config.min_media_items
        return False

    def render(self, reply: Reply, tools: list[ToolDoc]) -> RenderedReply:
        if isinstance(reply, MediaRecsReply):
            items = reply.items[: self.config.max_media_items]
            lines = []
            names: list[str] = []
            for item in items:
                by = f" ({item.by})" if item.by else ""
                why = f" — {item.why}" if item.why else ""
                take = f" _Takeaway:_ {item.takeaway}" if item.takeaway else ""
                lines.append(f"- **{item.title}**{by}{why}{take}")
                names.append(item.title)
                if item.by:
                    names.append(item.by)
            ask = (reply.ask or MEDIA_ASK).strip().splitlines()[0]
            text = f"{reply.message}\n\n" + "\n".join(lines) + f"\n\n{ask}"
            return RenderedReply(route="qa", text=text.strip(), media_names=names)

        if isinstance(reply, OfferToolReply):
            tool = find_by_slug(tools, reply.tool_slug)
            if tool is None:
                logger.warning("composer offered unknown tool %r; rendering as coaching", reply.tool_slug)
                return RenderedReply(route="coach", text=reply.message)
            text = f"{reply.message}\n\n**{tool.title}**\n{reply.confirm_cta}"
            return RenderedReply(route="tools", text=text, offered_tool=tool, offered_slots=dict(reply.slots))

        if isinstance(reply, DeepDiveReply):
            return RenderedReply(route="coach", text=reply.message)

        return RenderedReply(route=reply.mode, text=reply.message)
