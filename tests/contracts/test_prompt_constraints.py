import pytest

from coach_agent.agent.composer import COMPOSER_SYSTEM_PROMPT
from coach_agent.agent.planner import PLAN_SYSTEM_PROMPT
from coach_agent.agent.router import ROUTER_SYSTEM_PROMPT
from coach_agent.policy.sanitizer import (
    build_allowlist,
    enforce,
    is_external_tool_line,
    renumber_ordered_lists,
)

TITLES = ["Weekly Report", "Pulse Survey", "Shift Checklist"]

NOISY_REPLIES = [
    "Use Slack or Microsoft Teams for check-ins.\nTry: Slack\nTry: Weekly Report",
    "1. Pick Trello to plan.\n2. Set up Google Forms.\n3. Share pages on notion.com.\n\n\n\n4. Meet weekly.",
    "Visit https://example.com/start and connect Zapier.\n```\n3. leave me\n```\n9. Wrap up.",
    "Great question!\nYou can integrate HubSpot with Pulse Survey.\nKeep it short.",
]


def test_router_prompt_forbids_invented_tools_and_media_tools() -> None:
    assert "Never invent one" in ROUTER_SYSTEM_PROMPT
    assert 'Never pick "tools" when the user asks for books' in ROUTER_SYSTEM_PROMPT
    assert "last_reco_slug" in ROUTER_SYSTEM_PROMPT


def test_composer_prompt_constrains_modes_and_brands() -> None:
    for mode in ("media_recs", "offer_tool", "deep_dive", "qa", "coach"):
        assert f'"{mode}"' in COMPOSER_SYSTEM_PROMPT
    assert "never name third-party products" in COMPOSER_SYSTEM_PROMPT
    assert 'Never write lines starting with "Try:"' in COMPOSER_SYSTEM_PROMPT
    assert "always ask for confirmation first" in COMPOSER_SYSTEM_PROMPT
    assert 'Do not write a "Try:" line' in PLAN_SYSTEM_PROMPT


@pytest.mark.parametrize("reply", NOISY_REPLIES)
@pytest.mark.parametrize("chosen", [None, "Weekly Report"])
def test_enforced_output_holds_policy_invariants(reply, chosen) -> None:
    out = enforce(reply, TITLES, chosen_tool=chosen)
    allow = build_allowlist([*TITLES, chosen])
    try_lines = [line for line in out.splitlines() if line.strip().lower().startswith("try:")]

    assert not [line for line in out.splitlines() if is_external_tool_line(line, allow)]
    assert try_lines == ([f"Try: {chosen}"] if chosen else [])
    assert "\n\n\n" not in out
    assert renumber_ordered_lists(out) == out
