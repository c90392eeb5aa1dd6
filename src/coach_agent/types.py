"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

Route = Literal["qa", "coach", "tools"]
Role = Literal["user", "assistant", "system"]

ROUTES: tuple[str, ...] = ("qa", "coach", "tools")


@dataclass(slots=True, frozen=True)
class ToolDoc:
    """A recommendable internal tool in canonical shape."""

    slug: str
    title: str
    summary: str | None = None
    why: str | None = None
    outcome: str | None = None
    content: str | None = None
    keywords: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()
    boost_phrases: tuple[str, ...] = ()
    enabled: bool = True


@dataclass(slots=True)
class ConversationTurn:
    role: Role
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class Span:
    """A scored unit of retrieved grounding context."""

    content: str
    score: float
    title: str | None = None
    url: str | None = None


@dataclass(slots=True)
class RagMeta:
    count: int = 0
    mode: str | None = None
    model: str | None = None


@dataclass(slots=True)
class RetrievalResult:
    spans: list[Span] = field(default_factory=list)
    meta: RagMeta = field(default_factory=RagMeta)


@dataclass(slots=True)
class RouteDecision:
    """Routing outcome for one turn; `rule` names the policy step that fired."""

    route: Route
    rag_spans: list[Span] = field(default_factory=list)
    rag_meta: RagMeta = field(default_factory=RagMeta)
    best_tool_slug: str | None = None
    rule: str = "default"


@dataclass(slots=True)
class ProposedTool:
    """The tool most recently offered in a session."""

    slug: str
    title: str
    params: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"slug": self.slug, "title": self.title, "params": dict(self.params)}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProposedTool | None":
        if not isinstance(data, dict) or not data.get("slug"):
            return None
        params = data.get("params")
        return cls(
            slug=str(data["slug"]),
            title=str(data.get("title") or data["slug"]),
            params=dict(params) if isinstance(params, dict) else {},
        )
