"""Generation backend contract and the LangChain chat-model adapter."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Protocol

from langchain_core.messages import HumanMessage, SystemMessage

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


class GenerationError(RuntimeError):
    """The generation backend was unreachable, timed out or failed."""


class GenerationBackend(Protocol):
    """Takes a system instruction plus a JSON context and returns a JSON object."""

    model_name: str

    async def complete_json(self, system: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Return the parsed object; malformed output yields `{}`."""


def parse_json_object(content: Any) -> dict[str, Any]:
    """Parse provider output into a dict; anything unparsable becomes `{}`."""
    if isinstance(content, dict):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        content = "".join(parts)
    text = _FENCE.sub("", str(content or "")).strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("generation returned malformed JSON (%d chars)", len(text))
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ChatModelBackend:
    """Wraps a LangChain chat model forced into JSON-object output mode."""

    def __init__(self, llm: Any, *, model_name: str, timeout_seconds: float = 10.0) -> None:
        self.llm = llm
        self.model_name = model_name
        self.timeout_seconds = timeout_seconds

    async def complete_json(self, system: str, payload: dict[str, Any]) -> dict[str, Any]:
        messages = [
            SystemMessage(content=system),
            HumanMessage(content=json.dumps(payload, ensure_ascii=False)),
        ]
        try:
            response = await asyncio.wait_for(self.llm.ainvoke(messages), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise GenerationError(f"generation timed out after {self.timeout_seconds}s") from exc
        except Exception as exc:
            raise GenerationError(str(exc)) from exc
        return parse_json_object(getattr(response, "content", response))


def create_chat_model(api_key: str | None, model: str, *, temperature: float = 0.2) -> Any | None:
    """Build the JSON-mode chat model, or None when no API key is configured."""
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    llm = ChatOpenAI(model=model, temperature=temperature, api_key=api_key)
    return llm.bind(response_format={"type": "json_object"})
