import pytest

from coach_agent.agent.registry import (
    ToolRegistry,
    is_enabled_row,
    normalize_tool_row,
    slugify,
    to_list,
)
from coach_agent.config import RegistryConfig
from coach_agent.storage.store import InMemoryStore


class _CountingStore(InMemoryStore):
    def __init__(self, rows, *, fail: bool = False) -> None:
        super().__init__(rows)
        self.reads = 0
        self.fail = fail

    async def fetch_tool_rows(self):
        self.reads += 1
        if self.fail:
            raise ConnectionError("catalog unavailable")
        return await super().fetch_tool_rows()


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_alias_columns_are_coalesced(catalog_rows) -> None:
    pulse = normalize_tool_row(catalog_rows[1])

    assert pulse is not None
    assert pulse.slug == "pulse-survey"
    assert pulse.title == "Pulse Survey"
    assert pulse.summary.startswith("Runs a two-question")
    assert pulse.keywords == ("morale", "engagement", "burnout")
    assert pulse.patterns == (r"\b(morale|burnout)\b",)
    assert pulse.enabled is True


def test_slug_is_derived_from_title_and_keywords_parse_json(catalog_rows) -> None:
    shift = normalize_tool_row(catalog_rows[2])

    assert shift.slug == "shift-checklist"
    assert shift.summary == "Opening and closing checklists for frontline shifts."
    assert shift.keywords == ("opening checklist", "closing checklist", "shift handoff")


def test_row_without_enabled_flag_is_enabled() -> None:
    tool = normalize_tool_row({"title": "Meeting Notes"})

    assert tool is not None
    assert tool.enabled is True
    assert tool.slug == "meeting-notes"


@pytest.mark.parametrize(
    ("row", "expected"),
    [
        ({"status": "inactive"}, False),
        ({"is_active": 0}, False),
        ({"active": "1"}, True),
        ({"enabled": "Yes"}, True),
        ({"is_enabled": 2}, True),
        ({"enabled": False, "status": "active"}, False),
    ],
)
def test_enabled_flag_variants(row, expected) -> None:
    assert is_enabled_row(row) is expected


def test_unusable_rows_are_dropped() -> None:
    assert normalize_tool_row({"summary": "no title or slug"}) is None
    assert normalize_tool_row({"title": "!!!"}) is None
    assert normalize_tool_row(None) is None


def test_list_helpers() -> None:
    assert slugify("  Weekly Report (v2) ") == "weekly-report-v2"
    assert to_list("{a,b}") == ("a", "b")
    assert to_list("one, two ,") == ("one", "two")
    assert to_list(None) == ()


@pytest.mark.asyncio
async def test_registry_filters_disabled_and_caches(catalog_rows) -> None:
    store = _CountingStore(catalog_rows)
    clock = _Clock()
    registry = ToolRegistry(store, RegistryConfig(ttl_seconds=60), clock=clock)

    tools = await registry.get_tools()
    assert [tool.slug for tool in tools] == ["weekly-report", "pulse-survey", "shift-checklist"]

    await registry.get_tools()
    assert store.reads == 1

    clock.now = 61.0
    await registry.get_tools()
    assert store.reads == 2


@pytest.mark.asyncio
async def test_registry_read_failure_yields_empty_and_is_not_cached(catalog_rows) -> None:
    store = _CountingStore(catalog_rows, fail=True)
    registry = ToolRegistry(store)

    assert await registry.get_tools() == []

    store.fail = False
    assert len(await registry.get_tools()) == 3
    assert store.reads == 2
