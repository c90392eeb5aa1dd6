"""Deterministic generation backend used when no external LLM is configured."""

from __future__ import annotations

from typing import Any

from coach_agent.agent.router import is_media_ask

SAFE_FALLBACK_TEXT = (
    "Okay. Tell me a bit more about what you're working on and I'll suggest a next step."
)
MEDIA_HEADER = "Here are practical picks you can put to work right away:"
MEDIA_ASK = "Which one do you want to start with?"
CONFIRM_CTA = "Want me to set this up? (Yes / No)"

MEDIA_PICKS: list[dict[str, str]] = [
    {
        "title": "The Checklist Manifesto",
        "by": "Atul Gawande",
        "why": "Shows how short checklists cut errors in repeatable work.",
        "takeaway": "Write a one-page checklist for each recurring task.",
    },
    {
        "title": "Getting Things Done",
        "by": "David Allen",
        "why": "A simple capture, clarify and organize routine for reliable follow-through.",
        "takeaway": "Keep one shared next-actions list for the team.",
    },
    {
        "title": "Traction",
        "by": "Gino Wickman",
        "why": "Gives a small team one simple operating rhythm.",
        "takeaway": "Hold a 30-minute weekly meeting on the same day and time.",
    },
]

_COACH_MESSAGE = "\n".join(
    [
        "Here's a simple way to move this forward:",
        "1. Name the one outcome that matters most this week.",
        "2. Break it into the next three concrete steps.",
        "3. Give each step an owner and a check-in time.",
        "",
        "What's the biggest blocker right now?",
    ]
)


def deep_dive_template(selection_title: str | None, user_text: str) -> str:
    """Substantial deep-dive used when the model's version is missing or thin."""
    title = selection_title or (
        "The Checklist Manifesto" if "checklist" in user_text.lower() else "the selected pick"
    )
    if "checklist" in title.lower():
        why = "it turns messy daily work into a routine your newest team member can run."
    else:
        why = "it gives you a concrete way to standardize daily work for entry-level employees."
    return "\n".join(
        [
            f"Why **{title}**: {why}",
            "",
            "Here's a one-day rollout you can run today:",
            "1) **Pick one pilot task.** Choose a recurring 5-15 minute task owned by entry-level staff and define what done looks like.",
            "2) **Draft a one-page checklist.** Keep it to 5-9 steps, each starting with a verb.",
            "3) **Walk it through alongside a frontline teammate.** Clear up vague steps and missing prerequisites together.",
            "4) **Pilot it three times today.** A supervisor observes, notes snags and updates the checklist once.",
            "5) **Make it visible.** Post it where the work happens and keep a copy in your shared drive.",
            "6) **Train in a 10-minute huddle.** Demo once, then ask for initials next to each finished run.",
            "7) **Review weekly.** Track completion and rework; tighten or retire steps as needed.",
            "",
            "**Copy-paste template:**",
            "- Title: <task name>",
            "- Purpose: why this exists (one line)",
            "- When: start trigger to end condition",
            "- Steps: [ ] step 1, [ ] step 2, [ ] step 3",
            "- Done when: 2-4 checks",
            "- Owner: role or name",
            "",
            "Want me to tailor this template for your team's top task? (Yes/No)",
        ]
    )


def describe_slots(slots: dict[str, Any]) -> str:
    if not slots:
        return "sensible defaults"
    return ", ".join(f"{key.replace('_', ' ')} {value}" for key, value in slots.items())


class DeterministicBackend:
    """Rule-based stand-in for the generation backend.

    It honors the same `complete_json` contract as `ChatModelBackend` so the
    whole pipeline runs offline; routing requests get no opinion back, which
    leaves the deterministic router rules in charge.
    """

    model_name = "deterministic"

    async def complete_json(self, system: str, payload: dict[str, Any]) -> dict[str, Any]:
        del system  # rule-based output does not depend on prompt wording.
        task = payload.get("task")
        if task == "compose":
            return self._compose(payload)
        if task == "plan":
            return self._plan(payload)
        return {}

    def _compose(self, payload: dict[str, Any]) -> dict[str, Any]:
        user_text = str(payload.get("user_text") or "")
        hints = payload.get("hints") or {}
        candidates = payload.get("candidates") or []

        selection = hints.get("selection_title")
        if selection:
            return {"mode": "deep_dive", "message": deep_dive_template(selection, user_text)}

        if is_media_ask(user_text):
            return {"mode": "media_recs", "message": MEDIA_HEADER, "items": MEDIA_PICKS, "ask": MEDIA_ASK}

        if hints.get("route") == "tools" and candidates:
            top = candidates[0]
            if float(top.get("score") or 0.0) >= 2.0:
                return {
                    "mode": "offer_tool",
                    "tool_slug": top.get("slug"),
                    "confidence": min(1.0, float(top["score"]) / 6.0),
                    "slots": {},
                    "message": top.get("summary") or "This looks like a good fit for what you described.",
                    "confirm_cta": CONFIRM_CTA,
                    "requires_confirmation": True,
                }

        grounding = hints.get("grounding") or []
        if hints.get("route") == "qa" and grounding:
            bullets = [f"- {str(text)[:280].strip()}" for text in grounding[:3]]
            return {"mode": "qa", "message": "Here's what I found in your reference notes:\n" + "\n".join(bullets)}

        return {"mode": "coach", "message": _COACH_MESSAGE}

    @staticmethod
    def _plan(payload: dict[str, Any]) -> dict[str, Any]:
        tool = payload.get("tool") or {}
        slots = dict(payload.get("params") or {})
        title = tool.get("title") or tool.get("slug") or "this tool"
        return {
            "tool_slug": tool.get("slug"),
            "slots": slots,
            "message": f"I'll configure **{title}** with: {describe_slots(slots)}.",
        }
