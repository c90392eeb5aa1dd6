"""Internal-tools-only enforcement over generated reply text."""

from __future__ import annotations

import re
from collections.abc import Iterable

from coach_agent.agent.matcher import token_overlap

ALLOWED_TITLE_OVERLAP = 0.7

_TRY_LINE = re.compile(r"^\s*Try:", re.IGNORECASE)
_DOMAIN = re.compile(r"\b[a-z0-9-]+\.(?:com|io|ai|app|co|org|net)\b", re.IGNORECASE)
_URL = re.compile(r"\bhttps?://", re.IGNORECASE)
_CAPITALIZED = re.compile(
    r"\b[A-Z][a-z0-9]+(?:[A-Z][a-z0-9]+)*(?:\s+[A-Z][a-z0-9]+(?:[A-Z][a-z0-9]+)*){0,2}\b"
)
_HINT_VERB = re.compile(
    r"\b(use|using|via|choose|pick|select|set\s*up|setup|install|integrate|connect|leverage|with|alternatively)\b",
    re.IGNORECASE,
)
_HINT_NOUN = re.compile(
    r"\b(apps?|tools?|platforms?|software|plug[-\s]?ins?|bots?|integrations?|extensions?|forms?)\b",
    re.IGNORECASE,
)
_GENERIC_TOOL_LINE = re.compile(
    r"^(\s*(?:[-*•]|\d+[.)])?\s*)(?:pick|choose|use|leverage|set\s*up|setup|select)\b.*"
    r"\b(tool|form|doc|sheet|board|workspace|check[-\s]?in app|task tracker|team chat)s?\b.*$",
    re.IGNORECASE,
)
_NUMBERED = re.compile(r"^(\s*)(\d+)([.)])(\s+)(.*)$")
_FENCE = re.compile(r"^\s*```")
_BLANK_RUN = re.compile(r"\n(?:[ \t]*\n){2,}")

# Capitalized words that open sentences or label plan fields rather than name products.
STOPWORDS = frozenset(
    """
    I We Our Us You Your It Its They Their He She My Me A An The This That These Those
    Monday Tuesday Wednesday Thursday Friday Saturday Sunday
    Mon Tue Tues Wed Thu Thur Thurs Fri Sat Sun
    January February March April May June July August September October November December
    Use Using Pick Choose Select Set Try Keep Make Here Great Want Why What How When Where Which Who
    Yes No Okay Ok Sure Good Got Thanks Tell Let Give Name Break Walk Draft Post Demo Pilot Train
    Review Track Schedule Start Send Share Ask Add Create Write Hold Run Check Plan Note Tip Step
    Steps Next Then First Second Third Finally Also If For To In On At By Of And Or But So Once
    Cadence Due Day Time Channel Reminders Reminder Anonymous Expected Outcome Takeaway Title
    Purpose Owner Done Copy Template Weekly Daily Monthly Biweekly Team Manager Managers
    There Is Are Be Do Does Did Don Doesn Isn Aren Won Can Could Would Should Will Might Must
    Have Has Had Not Just Only Even Still Instead Now Today Tomorrow Tonight Morning Afternoon
    Evening Week Month Year Each Every All Most Some Many Any Both Other Another One Two Three
    Four Five Because While After Before During With Without Over Under From As Since Until
    Quick Short Simple Practical Classic Clear Small Big Updated Optional Important Bonus
    Example Examples Option Options Goal Goals Result Results Summary Tips Notes Pros Cons
    Agree Align Assign Avoid Batch Block Book Capture Celebrate Close Collect Confirm Consider
    Continue Count Cut Decide Define Delegate Document Encourage Estimate Expect Explain Find
    Fix Focus Follow Get Go Hire Identify Invite Label Lead Learn Limit List Listen Log Look
    Map Measure Meet Move Open Pair Pause Prepare Prioritize Put Read Record Reduce Remember
    Remove Repeat Reply Rotate Save Show Sign Simplify Sort Split Standardize Stop Summarize
    Take Test Turn Update Watch Wrap
    Argues Brings Builds Collects Covers Describes Distills Explains Focuses Frames Gives
    Helps Includes Introduces Keeps Lays Lets Makes Maps Offers Outlines Pairs Presents
    Provides Reframes Runs Shares Shows Takes Teaches Tracks Turns Uses Walks
    """.split()
)


def normalize_title(text: str | None) -> str:
    lowered = str(text or "").lower()
    lowered = re.sub(r"\btools?\b", " ", lowered)
    return re.sub(r"[^a-z0-9]+", " ", lowered).strip()


def build_allowlist(titles: Iterable[str | None]) -> set[str]:
    return {normalized for normalized in (normalize_title(title) for title in titles) if normalized}


def is_allowed_title(candidate: str, allowlist: set[str]) -> bool:
    """Exact, fuzzy (token overlap >= 0.7) or fragment match against internal titles."""
    normalized = normalize_title(candidate)
    if not normalized:
        return False
    if normalized in allowlist:
        return True
    words = set(normalized.split())
    for allowed in allowlist:
        allowed_words = set(allowed.split())
        if words <= allowed_words:
            return True
        if token_overlap(words, allowed_words) >= ALLOWED_TITLE_OVERLAP:
            return True
    return False


def strip_try_lines(text: str) -> str:
    return "\n".join(line for line in str(text or "").split("\n") if not _TRY_LINE.match(line))


def extract_brand_candidates(line: str) -> list[str]:
    """Domain-looking tokens and 1-3 word Capitalized phrases.

    Stopwords are trimmed from both ends of a phrase. Position in the sentence
    does not matter: "Trello is great" yields "Trello".
    """
    candidates = [match.group(0) for match in _DOMAIN.finditer(line)]
    for match in _CAPITALIZED.finditer(line):
        words = match.group(0).split()
        while words and words[0] in STOPWORDS:
            words.pop(0)
        while words and words[-1] in STOPWORDS:
            words.pop()
        if words:
            candidates.append(" ".join(words))
    return candidates


def has_hint(line: str) -> bool:
    return bool(
        _HINT_VERB.search(line) or _HINT_NOUN.search(line) or _URL.search(line) or _DOMAIN.search(line)
    )


def is_external_tool_line(line: str, allowlist: set[str]) -> bool:
    if not has_hint(line):
        return False
    return any(not is_allowed_title(candidate, allowlist) for candidate in extract_brand_candidates(line))


def collapse_blank_lines(text: str) -> str:
    return _BLANK_RUN.sub("\n\n", text)


def remove_external_mentions(text: str, allowlist: set[str]) -> str:
    kept = [line for line in str(text or "").split("\n") if not is_external_tool_line(line, allowlist)]
    return collapse_blank_lines("\n".join(kept)).strip()


def rewrite_generic_tool_lines(text: str, chosen_title: str) -> str:
    """Turn "pick/use a tool" style lines into a pointer at the chosen internal tool."""
    return "\n".join(
        _GENERIC_TOOL_LINE.sub(lambda m: f"{m.group(1)}Use **{chosen_title}** for this.", line)
        for line in text.split("\n")
    )


def renumber_ordered_lists(text: str) -> str:
    """Renumber `1.`/`1)` markers sequentially within each contiguous list.

    A blank line keeps the list open only when the next non-blank line is
    numbered; other content ends it. Fenced code blocks are left untouched.
    """
    if not text:
        return ""
    lines = text.split("\n")
    in_fence = False
    counter = 0

    for index, line in enumerate(lines):
        if _FENCE.match(line):
            in_fence = not in_fence
            counter = 0
            continue
        if in_fence:
            continue

        match = _NUMBERED.match(line)
        if match:
            counter += 1
            indent, _, delim, space, rest = match.groups()
            lines[index] = f"{indent}{counter}{delim}{space}{rest}"
            continue

        if counter and not line.strip():
            following = next((candidate for candidate in lines[index + 1 :] if candidate.strip()), "")
            if _NUMBERED.match(following):
                continue
        counter = 0

    return "\n".join(lines)


def enforce(text: str, allowed_titles: Iterable[str | None], chosen_tool: str | None = None) -> str:
    """Apply the internal-tools-only policy to outgoing text.

    Model-authored `Try:` lines are always removed; exactly one canonical
    `Try: <chosen_tool>` is appended when a tool was chosen for this turn.
    """
    titles = list(allowed_titles)
    if chosen_tool:
        titles.append(chosen_tool)
    allowlist = build_allowlist(titles)

    body = remove_external_mentions(strip_try_lines(text), allowlist)
    if chosen_tool:
        body = rewrite_generic_tool_lines(body, chosen_tool)
    body = renumber_ordered_lists(collapse_blank_lines(body)).strip()

    if chosen_tool:
        body = f"{body}\n\nTry: {chosen_tool}" if body else f"Try: {chosen_tool}"
    return body
