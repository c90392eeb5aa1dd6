"""Schema-agnostic internal tool catalog with a short read-through cache."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Callable
from time import monotonic
from typing import Any

from coach_agent.config import RegistryConfig
from coach_agent.storage.store import CoachStore
from coach_agent.types import ToolDoc

logger = logging.getLogger(__name__)

# Field-priority order: the first non-empty column wins.
TITLE_FIELDS = ("title", "tool_name", "name", "display_name")
SLUG_FIELDS = ("slug", "tool_slug", "code")
SUMMARY_FIELDS = ("summary", "primary_use", "description")
WHY_FIELDS = ("why", "value_prop", "reason")
OUTCOME_FIELDS = ("outcome", "result")
CONTENT_FIELDS = ("content", "body", "details")
KEYWORD_FIELDS = ("keywords", "tags", "search_terms")
PATTERN_FIELDS = ("patterns", "regex", "matchers")
BOOST_FIELDS = ("boost_phrases", "boosts")
ENABLED_FIELDS = ("enabled", "is_enabled", "active", "is_active", "status")

_TRUTHY = frozenset({"1", "true", "t", "y", "yes", "active", "enabled"})


def slugify(text: str | None) -> str:
    """Lowercase, collapse non-alphanumeric runs to `-`, trim dashes."""
    return re.sub(r"[^a-z0-9]+", "-", str(text or "").lower()).strip("-")


def coalesce(row: dict[str, Any], fields: tuple[str, ...]) -> Any | None:
    for name in fields:
        value = row.get(name)
        if value is not None and str(value) != "":
            return value
    return None


def to_list(value: Any) -> tuple[str, ...]:
    """Accept arrays, JSON array strings, `{a,b}` array literals or comma strings."""
    if value is None:
        return ()
    if isinstance(value, (list, tuple, set)):
        return tuple(str(item).strip() for item in value if str(item).strip())
    text = str(value).strip()
    if not text:
        return ()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return tuple(str(item).strip() for item in parsed if str(item).strip())
    if text.startswith("{") and text.endswith("}"):
        text = text[1:-1]
    return tuple(part.strip() for part in text.split(",") if part.strip())


def is_enabled_row(row: dict[str, Any]) -> bool:
    """Read the first present enabled-like flag; rows without one are enabled."""
    for name in ENABLED_FIELDS:
        value = row.get(name)
        if value is None:
            continue
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value > 0
        if isinstance(value, str):
            return value.strip().lower() in _TRUTHY
        return True
    return True


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_tool_row(row: dict[str, Any] | None) -> ToolDoc | None:
    """Coalesce one raw storage row into a `ToolDoc`, or None if unusable."""
    if not isinstance(row, dict):
        return None

    title = str(coalesce(row, TITLE_FIELDS) or "").strip()
    slug = str(coalesce(row, SLUG_FIELDS) or slugify(title)).strip()
    if not title or not slug:
        return None

    return ToolDoc(
        slug=slug,
        title=title,
        summary=_optional_text(coalesce(row, SUMMARY_FIELDS)),
        why=_optional_text(coalesce(row, WHY_FIELDS)),
        outcome=_optional_text(coalesce(row, OUTCOME_FIELDS)),
        content=_optional_text(coalesce(row, CONTENT_FIELDS)),
        keywords=tuple(k.lower() for k in to_list(coalesce(row, KEYWORD_FIELDS))),
        patterns=to_list(coalesce(row, PATTERN_FIELDS)),
        boost_phrases=to_list(coalesce(row, BOOST_FIELDS)),
        enabled=is_enabled_row(row),
    )


def find_by_slug(tools: list[ToolDoc], slug: str | None) -> ToolDoc | None:
    if not slug:
        return None
    for tool in tools:
        if tool.slug == slug:
            return tool
    return None


class ToolRegistry:
    """Loads enabled tools from storage and caches them for `ttl_seconds`.

    Concurrent refreshes may both hit storage; each simply repopulates the
    same cache entry. Read failures are logged and yield an empty catalog
    without being cached, so the next call retries.
    """

    def __init__(
        self,
        store: CoachStore,
        config: RegistryConfig | None = None,
        *,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.store = store
        self.config = config or RegistryConfig()
        self._clock = clock
        self._cached: list[ToolDoc] | None = None
        self._cached_at = 0.0

    async def get_tools(self) -> list[ToolDoc]:
        now = self._clock()
        if self._cached is not None and now - self._cached_at < self.config.ttl_seconds:
            return list(self._cached)

        try:
            rows = await asyncio.wait_for(
                self.store.fetch_tool_rows(), timeout=self.config.read_timeout_seconds
            )
        except Exception as exc:
            logger.warning("tool registry read failed: %s", exc)
            return []

        tools: list[ToolDoc] = []
        for row in rows:
            tool = normalize_tool_row(row)
            if tool is not None and tool.enabled:
                tools.append(tool)

        self._cached = tools
        self._cached_at = now
        logger.debug("tool registry refreshed: %d enabled tools", len(tools))
        return list(tools)
