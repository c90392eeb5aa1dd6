"""Deterministic intent-to-tool matching.

A tool's score is the sum of four signals:

- every regex in `patterns` that matches the raw text (weight 2),
- every keyword of at least four characters found in the lowercased text (weight 1),
- token overlap between the text and the tool's copy (weight 3 x ratio),
- a boost phrase that matches both the text and the tool title (+3).

The strictly highest score wins (ties keep catalog order) and must reach the
configured floor, so a single incidental keyword never yields a recommendation.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache

from coach_agent.config import MatcherConfig
from coach_agent.types import ToolDoc

logger = logging.getLogger(__name__)

_TRY_LINE = re.compile(r"^\s*Try:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_TRY_TAIL = re.compile(r"\s+[—–-]+\s+.*$|\s*[—–].*$")


def normalize_text(text: str | None) -> str:
    """Lowercase, drop the word "tool", collapse non-alphanumerics to one space."""
    lowered = str(text or "").lower()
    lowered = re.sub(r"\btools?\b", " ", lowered)
    return re.sub(r"[^a-z0-9]+", " ", lowered).strip()


def tokenize(text: str | None) -> set[str]:
    return set(normalize_text(text).split())


def token_overlap(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / max(len(a), len(b))


def title_similarity(candidate: str, title: str) -> float:
    """1.0 for an exact normalized match, otherwise token overlap."""
    left = normalize_text(candidate)
    right = normalize_text(title)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    return token_overlap(set(left.split()), set(right.split()))


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        logger.debug("ignoring malformed tool pattern %r", pattern)
        return None


def _haystack(tool: ToolDoc) -> str:
    parts = (tool.title, tool.summary, tool.why, tool.outcome, tool.content)
    return " ".join(part for part in parts if part)


@dataclass(slots=True)
class ToolScore:
    tool: ToolDoc
    score: float
    pattern_hits: int = 0
    keyword_hits: int = 0
    lexical: float = 0.0
    boosted: bool = False

    @property
    def hit_score(self) -> float:
        """Pattern and keyword signal only, as used for router candidates."""
        return self.pattern_hits * 2.0 + self.keyword_hits


def score_tool(text: str, tool: ToolDoc, config: MatcherConfig | None = None) -> ToolScore:
    config = config or MatcherConfig()
    raw = str(text or "")
    lowered = raw.lower()

    pattern_hits = 0
    for pattern in tool.patterns:
        compiled = compile_pattern(pattern)
        if compiled is not None and compiled.search(raw):
            pattern_hits += 1

    keyword_hits = sum(
        1
        for keyword in tool.keywords
        if len(keyword) >= config.min_keyword_length and keyword.lower() in lowered
    )

    lexical = token_overlap(tokenize(raw), tokenize(_haystack(tool)))

    boosted = False
    for phrase in tool.boost_phrases:
        compiled = compile_pattern(phrase)
        if compiled is not None and compiled.search(raw) and compiled.search(tool.title):
            boosted = True
            break

    score = (
        pattern_hits * config.pattern_weight
        + keyword_hits * config.keyword_weight
        + lexical * config.lexical_weight
        + (config.boost_weight if boosted else 0.0)
    )
    return ToolScore(
        tool=tool,
        score=score,
        pattern_hits=pattern_hits,
        keyword_hits=keyword_hits,
        lexical=lexical,
        boosted=boosted,
    )


def rank_tools(
    text: str, tools: list[ToolDoc], config: MatcherConfig | None = None
) -> list[ToolScore]:
    """Score enabled tools, best first; the sort is stable so ties keep catalog order."""
    scored = [score_tool(text, tool, config) for tool in tools if tool.enabled]
    return sorted(scored, key=lambda item: item.score, reverse=True)


def match_tool_by_intent(
    text: str, tools: list[ToolDoc], config: MatcherConfig | None = None
) -> ToolDoc | None:
    config = config or MatcherConfig()
    best: ToolScore | None = None
    for item in (score_tool(text, tool, config) for tool in tools if tool.enabled):
        if best is None or item.score > best.score:
            best = item
    if best is None or best.score < config.min_score:
        return None
    logger.debug("intent matched %s (score=%.2f)", best.tool.slug, best.score)
    return best.tool


def extract_try_title(assistant_text: str | None) -> str | None:
    """Title portion of the first `Try:` line, without any trailing pitch."""
    match = _TRY_LINE.search(str(assistant_text or ""))
    if not match:
        return None
    title = _TRY_TAIL.sub("", match.group(1)).strip().strip("*").strip()
    return title or None


def detect_tool_from_assistant(
    assistant_text: str | None, tools: list[ToolDoc], config: MatcherConfig | None = None
) -> ToolDoc | None:
    config = config or MatcherConfig()
    candidate = extract_try_title(assistant_text)
    if not candidate:
        return None

    best: ToolDoc | None = None
    best_score = 0.0
    for tool in tools:
        if not tool.enabled:
            continue
        score = title_similarity(candidate, tool.title)
        if score > best_score:
            best, best_score = tool, score
    if best is not None and best_score >= config.assistant_title_overlap:
        return best
    return None
