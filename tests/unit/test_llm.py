import asyncio
import json

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from coach_agent.agent.llm import (
    ChatModelBackend,
    GenerationError,
    create_chat_model,
    parse_json_object,
)


class _FakeChatModel:
    def __init__(self, content="{}", *, delay: float = 0.0, error: Exception | None = None) -> None:
        self.content = content
        self.delay = delay
        self.error = error
        self.messages: list = []

    async def ainvoke(self, messages):
        self.messages = messages
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return AIMessage(content=self.content)


@pytest.mark.parametrize(
    ("content", "expected"),
    [
        ('```json\n{"mode": "qa", "message": "hi"}\n```', {"mode": "qa", "message": "hi"}),
        ([{"type": "text", "text": '{"mode": '}, {"type": "text", "text": '"coach"}'}], {"mode": "coach"}),
        (['{"route": ', '"tools"}'], {"route": "tools"}),
        ({"mode": "qa"}, {"mode": "qa"}),
        ("{not json", {}),
        ('["qa", "coach"]', {}),
        ("", {}),
        (None, {}),
    ],
)
def test_parse_json_object(content, expected) -> None:
    assert parse_json_object(content) == expected


@pytest.mark.asyncio
async def test_backend_sends_system_and_payload_messages() -> None:
    llm = _FakeChatModel('{"mode": "coach", "message": "Start small."}')
    backend = ChatModelBackend(llm, model_name="gpt-4o-mini")

    result = await backend.complete_json("pick a mode", {"task": "compose", "user_text": "hi"})

    assert result == {"mode": "coach", "message": "Start small."}
    system, human = llm.messages
    assert isinstance(system, SystemMessage) and system.content == "pick a mode"
    assert isinstance(human, HumanMessage)
    assert json.loads(human.content) == {"task": "compose", "user_text": "hi"}


@pytest.mark.asyncio
async def test_backend_malformed_output_is_empty_object() -> None:
    backend = ChatModelBackend(_FakeChatModel("Sure! Here you go"), model_name="m")

    assert await backend.complete_json("s", {"task": "route"}) == {}


@pytest.mark.asyncio
async def test_backend_timeout_raises_generation_error() -> None:
    backend = ChatModelBackend(_FakeChatModel(delay=1.0), model_name="m", timeout_seconds=0.01)

    with pytest.raises(GenerationError, match="timed out"):
        await backend.complete_json("s", {"task": "compose"})


@pytest.mark.asyncio
async def test_backend_transport_failure_raises_generation_error() -> None:
    backend = ChatModelBackend(_FakeChatModel(error=ConnectionError("refused")), model_name="m")

    with pytest.raises(GenerationError, match="refused"):
        await backend.complete_json("s", {"task": "compose"})


def test_chat_model_requires_api_key() -> None:
    assert create_chat_model(None, "gpt-4o-mini") is None


def test_chat_model_is_bound_to_json_object_mode() -> None:
    llm = create_chat_model("sk-test", "gpt-4o-mini")

    assert llm.kwargs == {"response_format": {"type": "json_object"}}
