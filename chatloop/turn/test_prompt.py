from datetime import datetime

import pytest

from chatloop.intent.router import WorkflowCompleted
from chatloop.models import Message, MessageRole, ToolResult
from chatloop.turn.prompt import (
    build_system_preamble,
    extract_domain_expertise,
    format_tool_results,
    format_workflow_response,
    is_business_hours,
    resolve_temporal_context,
)


def _user(text):
    return Message(role=MessageRole.USER, content=text)


def test_domain_expertise_matches_keywords_in_map_order():
    domains = extract_domain_expertise(
        [_user("Schedule a MEETING about the api rollout")]
    )

    assert domains == ["technology", "communication"]


def test_domain_expertise_keeps_known_domains():
    domains = extract_domain_expertise([_user("buy crypto")], known=["creative"])

    assert domains == ["creative", "finance"]


@pytest.mark.parametrize(
    "moment, expected",
    [
        (datetime(2026, 10, 19, 9, 0), True),  # Monday
        (datetime(2026, 10, 19, 17, 59), True),
        (datetime(2026, 10, 19, 18, 0), False),
        (datetime(2026, 10, 19, 8, 59), False),
        (datetime(2026, 10, 24, 11, 0), False),  # Saturday
    ],
)
def test_business_hours(moment, expected):
    assert is_business_hours(moment) is expected


def test_unknown_timezone_falls_back_to_utc():
    temporal = resolve_temporal_context("Mars/Olympus_Mons", datetime(2026, 10, 19, 10))

    assert temporal.timezone == "UTC"
    assert temporal.today == "Monday, October 19, 2026"
    assert temporal.tomorrow == "Tuesday, October 20, 2026"


def test_preamble_contains_context_sections():
    temporal = resolve_temporal_context("Europe/Oslo", datetime(2026, 10, 19, 10, 30))

    preamble = build_system_preamble(
        "- **get_weather**: Weather by city",
        temporal,
        domains=["technology"],
        agent_name="Chatloop",
        language="Norwegian",
    )

    assert preamble.startswith("You are Chatloop")
    assert "- **get_weather**: Weather by city" in preamble
    assert "Timezone: Europe/Oslo" in preamble
    assert "Business Hours: Yes" in preamble
    assert "DOMAIN EXPERTISE: technology" in preamble
    assert preamble.endswith("Respond in the following language: Norwegian")


def test_preamble_without_domains_says_generalist():
    temporal = resolve_temporal_context("UTC", datetime(2026, 10, 24, 10))

    assert "DOMAIN EXPERTISE: Generalist" in build_system_preamble("-", temporal)


def test_tool_results_message_format():
    text = format_tool_results(
        [
            ToolResult(tool_call_id="tool_1", result={"success": True, "data": 3}),
            ToolResult(tool_call_id="tool_2", result="plain"),
        ]
    )

    assert text == (
        "Tool execution results:\n"
        'Tool tool_1 result:\n{\n  "success": true,\n  "data": 3\n}\n\n'
        "Tool tool_2 result:\nplain\n\n"
        "Please provide a comprehensive response based on these tool results."
    )


def test_workflow_response_includes_only_non_empty_sections():
    text = format_workflow_response(
        WorkflowCompleted(
            summary="Meeting booked",
            actions=["Created event"],
            next_steps=["Send agenda"],
        )
    )

    assert text == (
        "✅ Meeting booked\n\n"
        "**Actions Completed:**\n• Created event\n\n"
        "**Next Steps:**\n• Send agenda\n\n"
    )
