from typing import Any

import pytest

from coach_agent.agent.registry import normalize_tool_row
from coach_agent.storage.store import InMemoryStore

WEEKLY_REPORT_ROW: dict[str, Any] = {
    "slug": "weekly-report",
    "title": "Weekly Report",
    "summary": "Collects short weekly status updates from each teammate in one place.",
    "why": "Managers spot blockers before they become missed deadlines.",
    "outcome": "a one-page summary of wins, blockers and next steps every Friday",
    "keywords": ["status update", "weekly update", "check-in"],
    "patterns": [r"\bweekly\s+(status|update|report)s?\b"],
    "boost_phrases": [r"\bweekly\b.*\b(report|updates?)\b"],
    "enabled": True,
}

PULSE_SURVEY_ROW: dict[str, Any] = {
    "tool_slug": "pulse-survey",
    "tool_name": "Pulse Survey",
    "description": "Runs a two-question anonymous survey to track team morale.",
    "tags": "morale,engagement,burnout",
    "regex": r"\b(morale|burnout)\b",
    "is_active": "yes",
}

SHIFT_CHECKLIST_ROW: dict[str, Any] = {
    "name": "Shift Checklist",
    "primary_use": "Opening and closing checklists for frontline shifts.",
    "search_terms": '["opening checklist", "closing checklist", "shift handoff"]',
    "status": "active",
}

LEGACY_ROW: dict[str, Any] = {
    "title": "Legacy Planner",
    "summary": "Retired planning board.",
    "keywords": "planning,weekly report",
    "enabled": False,
}

CATALOG_ROWS = [WEEKLY_REPORT_ROW, PULSE_SURVEY_ROW, SHIFT_CHECKLIST_ROW, LEGACY_ROW]


@pytest.fixture
def catalog_rows() -> list[dict[str, Any]]:
    return [dict(row) for row in CATALOG_ROWS]


@pytest.fixture
def tools(catalog_rows):
    normalized = (normalize_tool_row(row) for row in catalog_rows)
    return [tool for tool in normalized if tool is not None and tool.enabled]


@pytest.fixture
def store(catalog_rows) -> InMemoryStore:
    return InMemoryStore(catalog_rows)
