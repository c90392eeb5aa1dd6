import pytest

from coach_agent.agent.composer import (
    DeepDiveReply,
    MediaRecsReply,
    OfferToolReply,
    ReplyComposer,
    TextReply,
    detect_selection_title,
    looks_like_deep_dive,
    normalize_reply,
)
from coach_agent.agent.fallback import MEDIA_PICKS
from coach_agent.agent.llm import GenerationError
from coach_agent.types import ConversationTurn

MEDIA_TEXT = "What books help train entry-level employees on daily checklists?"

PRIOR_LIST = "\n".join(
    [
        "Here are practical picks you can put to work right away:",
        "",
        "- **The Checklist Manifesto** (Atul Gawande) — Shows how short checklists cut errors.",
        "- **Getting Things Done** (David Allen) — A simple capture routine.",
        "",
        "Which one do you want to start with?",
    ]
)


class _SequenceBackend:
    model_name = "sequence"

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.payloads: list[dict] = []

    async def complete_json(self, system, payload):
        self.payloads.append(payload)
        response = self.responses.pop(0) if self.responses else {}
        if isinstance(response, Exception):
            raise response
        return response


def _media(count: int) -> dict:
    return {
        "mode": "media_recs",
        "items": [{"title": f"Book {i}", "by": f"Author {i}", "why": "w", "takeaway": "t"} for i in range(count)],
        "ask": "Which one first?",
    }


def test_normalize_reply_accepts_field_variants() -> None:
    reply = normalize_reply(
        {
            "mode": "media_recs",
            "recommendations": [
                {"name": "Deep Work", "author": "Cal Newport", "reason": "Focus", "tip": "Block time"},
                "not-an-item",
                {"why": "missing title"},
            ],
            "followUpQuestion": "Which one?",
        }
    )

    assert isinstance(reply, MediaRecsReply)
    assert len(reply.items) == 1
    assert reply.items[0].title == "Deep Work"
    assert reply.items[0].by == "Cal Newport"
    assert reply.items[0].why == "Focus"
    assert reply.items[0].takeaway == "Block time"
    assert reply.ask == "Which one?"


@pytest.mark.parametrize("raw", [{"mode": "qa", "message": ""}, "garbage", None, {"mode": "unknown"}])
def test_normalize_reply_never_returns_empty_text(raw) -> None:
    reply = normalize_reply(raw)

    assert isinstance(reply, TextReply)
    assert reply.message == "Got it."


def test_normalize_offer_tool_clamps_confidence() -> None:
    reply = normalize_reply({"mode": "offer_tool", "slug": "weekly-report", "score": 5, "defaults": {"cadence": "weekly"}})

    assert isinstance(reply, OfferToolReply)
    assert reply.tool_slug == "weekly-report"
    assert reply.confidence == 1.0
    assert reply.slots == {"cadence": "weekly"}
    assert reply.requires_confirmation is True


def test_looks_like_deep_dive() -> None:
    assert not looks_like_deep_dive("Short answer.")
    assert not looks_like_deep_dive("x" * 400)
    assert looks_like_deep_dive("Plan:\n" + "\n".join(f"{i}. step number {i} with detail" for i in range(1, 8)))


def test_detect_selection_title_from_prior_list() -> None:
    history = [ConversationTurn("user", MEDIA_TEXT), ConversationTurn("assistant", PRIOR_LIST)]

    assert detect_selection_title("The Checklist Manifesto", history) == "The Checklist Manifesto"
    assert detect_selection_title("getting things done one", history) == "Getting Things Done"
    assert detect_selection_title("how do I run payroll?", history) is None
    assert detect_selection_title("checklist", []) is None


@pytest.mark.asyncio
async def test_compose_sends_compact_context() -> None:
    backend = _SequenceBackend({"mode": "coach", "message": "Plan it."})
    history = [ConversationTurn("user", f"turn {i}") for i in range(20)]

    await ReplyComposer(backend).compose("hi", [{"slug": f"t{i}"} for i in range(9)], history, {"route": "coach"})

    payload = backend.payloads[0]
    assert payload["task"] == "compose"
    assert len(payload["history"]) == 12
    assert len(payload["candidates"]) == 5
    assert payload["hints"] == {"route": "coach"}


@pytest.mark.asyncio
async def test_media_mismatch_is_retried_once() -> None:
    backend = _SequenceBackend({"mode": "qa", "message": "Read more."}, _media(3))

    composed = await ReplyComposer(backend).compose_turn(MEDIA_TEXT, [], [])

    assert composed.attempts == 2
    assert composed.substituted is False
    assert isinstance(composed.reply, MediaRecsReply)


@pytest.mark.asyncio
async def test_media_template_substituted_after_failed_retry() -> None:
    backend = _SequenceBackend({"mode": "qa", "message": "x"}, _media(1))

    composed = await ReplyComposer(backend).compose_turn(MEDIA_TEXT, [], [])

    assert composed.substituted is True
    assert [item.title for item in composed.reply.items] == [pick["title"] for pick in MEDIA_PICKS]
    assert len(backend.payloads) == 2


@pytest.mark.asyncio
async def test_thin_deep_dive_falls_back_to_template() -> None:
    backend = _SequenceBackend({"mode": "deep_dive", "message": "Read it."}, {"mode": "coach", "message": "ok"})
    hints = {"selection_title": "The Checklist Manifesto"}

    composed = await ReplyComposer(backend).compose_turn("The Checklist Manifesto", [], [], hints)

    assert isinstance(composed.reply, DeepDiveReply)
    assert composed.substituted is True
    assert "**The Checklist Manifesto**" in composed.reply.message
    assert looks_like_deep_dive(composed.reply.message)


@pytest.mark.asyncio
async def test_generation_error_yields_safe_default() -> None:
    backend = _SequenceBackend(GenerationError("provider down"))

    composed = await ReplyComposer(backend).compose_turn("how do I delegate?", [], [])

    assert composed.reply.message == "Got it."
    assert composed.attempts == 1


def test_render_media_caps_items_and_asks_once(tools) -> None:
    reply = normalize_reply(_media(7))

    rendered = ReplyComposer(_SequenceBackend()).render(reply, tools)
    lines = rendered.text.splitlines()

    assert rendered.route == "qa"
    assert sum(1 for line in lines if line.startswith("- **")) == 5
    assert sum(1 for line in lines if line.rstrip().endswith("?")) == 1
    assert lines[-1] == "Which one first?"
    assert "Author 0" in rendered.media_names


def test_render_offer_tool_with_catalog_slug(tools) -> None:
    reply = OfferToolReply(tool_slug="pulse-survey", message="Track morale in two questions.")

    rendered = ReplyComposer(_SequenceBackend()).render(reply, tools)

    assert rendered.route == "tools"
    assert rendered.offered_tool.slug == "pulse-survey"
    assert "**Pulse Survey**" in rendered.text
    assert rendered.text.endswith("(Yes / No)")


def test_render_offer_tool_with_invented_slug_degrades_to_coaching(tools) -> None:
    reply = OfferToolReply(tool_slug="slack-bot", message="Keep everyone aligned.")

    rendered = ReplyComposer(_SequenceBackend()).render(reply, tools)

    assert rendered.route == "coach"
    assert rendered.offered_tool is None
    assert rendered.text == "Keep everyone aligned."
