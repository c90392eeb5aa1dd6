"""Follow-up classification relative to a previously proposed tool."""

from __future__ import annotations

import re
from typing import Any, Literal

from coach_agent.agent.router import is_media_ask
from coach_agent.types import ProposedTool, ToolDoc

FollowUpKind = Literal["accept", "reject", "refine", "askinfo", "compare", "none"]

_ACCEPT = re.compile(
    r"^\s*(yes|yep|yeah|yup|y|sure|ok|okay|do it|go ahead|sounds good|"
    r"let'?s do it|let'?s go|make it so|set it up|absolutely|perfect)\b",
    re.IGNORECASE,
)
_REJECT = re.compile(
    r"^\s*(no(?!\s+(nudges?|reminders?)\b)|nope|nah|not now|not really|pass|skip|don'?t)\b|"
    r"\b(prefer not|no thanks|not interested|skip (it|this|that))\b",
    re.IGNORECASE,
)
_ASKINFO = re.compile(
    r"\b(what (is|does) (this|that|it)( tool)?( do)?|what does (this|that|it)( tool)? do|"
    r"how does (this|that|it) work|explain|tell me more|why)\b",
    re.IGNORECASE,
)
_COMPARE = re.compile(r"\b(alternatives?|compare|comparison|vs\.?|versus|other options?)\b", re.IGNORECASE)

_CADENCE = re.compile(r"\b(bi-?weekly|weekly|monthly|daily)\b", re.IGNORECASE)
_WEEKDAYS = {
    "monday": "monday", "mon": "monday",
    "tuesday": "tuesday", "tue": "tuesday", "tues": "tuesday",
    "wednesday": "wednesday", "wed": "wednesday",
    "thursday": "thursday", "thu": "thursday", "thur": "thursday", "thurs": "thursday",
    "friday": "friday", "fri": "friday",
    "saturday": "saturday", "sat": "saturday",
    "sunday": "sunday", "sun": "sunday",
}
_WEEKDAY = re.compile(r"\b(" + "|".join(sorted(_WEEKDAYS, key=len, reverse=True)) + r")\b", re.IGNORECASE)
_TIME = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b", re.IGNORECASE)
_CHANNEL = re.compile(r"\b(slack|e-?mail|app)\b", re.IGNORECASE)
_NOT_ANONYMOUS = re.compile(r"\b(not anonymous|non-?anonymous|named)\b", re.IGNORECASE)
_ANONYMOUS = re.compile(r"\banonymous(ly)?\b", re.IGNORECASE)
_REMINDERS = re.compile(r"\b(0|1|2|no|zero|one|two)\s+(nudges?|reminders?)\b", re.IGNORECASE)
_COUNT_WORDS = {"0": 0, "no": 0, "zero": 0, "1": 1, "one": 1, "2": 2, "two": 2}
_REFINE_MAX_WORDS = 12

DEFAULT_PLAN: dict[str, Any] = {
    "cadence": "weekly",
    "due_day": "friday",
    "due_time": "3pm",
    "channel": "email",
    "reminders": 1,
    "anonymous": False,
}

_PLAN_LABELS = (
    ("cadence", "Cadence"),
    ("due_day", "Due day"),
    ("due_time", "Due time"),
    ("channel", "Channel"),
    ("reminders", "Reminders"),
    ("anonymous", "Anonymous responses"),
)


def parse_params(text: str | None) -> dict[str, Any]:
    """Best-effort extraction of plan parameters; absent fields are omitted."""
    raw = str(text or "")
    params: dict[str, Any] = {}

    if match := _CADENCE.search(raw):
        params["cadence"] = match.group(1).lower().replace("-", "")
    if match := _WEEKDAY.search(raw):
        params["due_day"] = _WEEKDAYS[match.group(1).lower()]
    if match := _TIME.search(raw):
        hour, minute, meridiem = match.groups()
        if 1 <= int(hour) <= 12:
            params["due_time"] = f"{int(hour)}{':' + minute if minute else ''}{meridiem.lower()}"
    if match := _CHANNEL.search(raw):
        params["channel"] = match.group(1).lower().replace("-", "")
    if _NOT_ANONYMOUS.search(raw):
        params["anonymous"] = False
    elif _ANONYMOUS.search(raw):
        params["anonymous"] = True
    if match := _REMINDERS.search(raw):
        params["reminders"] = _COUNT_WORDS[match.group(1).lower()]
    return params


def classify(text: str | None) -> FollowUpKind:
    """Classify a turn; accept, reject, askinfo, compare, refine in that order."""
    raw = str(text or "").strip()
    if not raw:
        return "none"
    if _ACCEPT.search(raw):
        return "accept"
    if _REJECT.search(raw):
        return "reject"
    if _ASKINFO.search(raw):
        return "askinfo"
    if _COMPARE.search(raw):
        return "compare"
    # A long message or a reading request that merely mentions a cadence is a new request.
    if len(raw.split()) <= _REFINE_MAX_WORDS and not is_media_ask(raw) and parse_params(raw):
        return "refine"
    return "none"


def merge_params(previous: dict[str, Any], new: dict[str, Any]) -> dict[str, Any]:
    """Shallow merge, new values win."""
    return {**previous, **new}


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def _plan_lines(params: dict[str, Any]) -> list[str]:
    plan = {**DEFAULT_PLAN, **params}
    lines = [
        f"{idx}. {label}: {_format_value(plan[key])}"
        for idx, (key, label) in enumerate(_PLAN_LABELS, start=1)
    ]
    extra = [key for key in params if key not in DEFAULT_PLAN]
    for offset, key in enumerate(extra, start=len(lines) + 1):
        lines.append(f"{offset}. {key.replace('_', ' ').capitalize()}: {_format_value(params[key])}")
    return lines


def render_tool_plan(tool: ToolDoc | ProposedTool, params: dict[str, Any]) -> str:
    """Plan for an accepted tool; the canonical Try line is added by policy enforcement."""
    outcome = getattr(tool, "outcome", None)
    lines = [f"Great, let's get **{tool.title}** running.", "", "Here's the plan:"]
    lines.extend(_plan_lines(params))
    if outcome:
        lines.extend(["", f"Expected outcome: {outcome}."])
    lines.extend(["", "Tell me any change (day, time, channel, reminders) and I'll update it."])
    return "\n".join(lines)


def render_plan_preview(tool: ToolDoc | ProposedTool, params: dict[str, Any]) -> str:
    lines = [f"Updated plan for **{tool.title}**:"]
    lines.extend(_plan_lines(params))
    lines.extend(["", "Want me to set it up like this? (Yes / No)"])
    return "\n".join(lines)


def render_tool_info(tool: ToolDoc | ProposedTool) -> str:
    """Informational blurb; deliberately not a recommendation."""
    summary = getattr(tool, "summary", None)
    why = getattr(tool, "why", None)
    outcome = getattr(tool, "outcome", None)
    lines = [f"**{tool.title}**: {summary or 'an internal tool from our catalog.'}"]
    if why:
        lines.append(f"Why it helps: {why}")
    if outcome:
        lines.append(f"What you get: {outcome}")
    lines.extend(["", "Want me to set it up? (Yes / No)"])
    return "\n".join(lines)
