"""
Text assembly for a turn: the system preamble sent with every generation
request, the follow-up message carrying tool results, and the rendering of a
completed workflow.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from chatloop.intent.router import WorkflowCompleted
from chatloop.models import Message, ToolResult
from chatloop.vars import AGENT_LANGUAGE, AGENT_NAME, AGENT_TIMEZONE

FOLLOW_UP_HEADER = "Tool execution results:"
FOLLOW_UP_INSTRUCTION = (
    "Please provide a comprehensive response based on these tool results."
)

DOMAIN_KEYWORDS = {
    "technology": ["coding", "development", "software", "api", "database"],
    "business": ["project", "management", "strategy", "planning", "workflow"],
    "finance": ["stock", "crypto", "investment", "market", "trading"],
    "communication": ["email", "message", "meeting", "presentation"],
    "research": ["analyze", "study", "investigate", "research", "data"],
    "creative": ["design", "content", "creative", "image", "visual"],
}


def extract_domain_expertise(
    messages: Iterable[Message], known: Sequence[str] = ()
) -> List[str]:
    """
    Domains whose keywords occur anywhere in the conversation (substring
    match, case-insensitive). Previously known domains are kept first.
    """
    conversation = " ".join(m.content.lower() for m in messages)
    domains = list(known)
    for domain, keywords in DOMAIN_KEYWORDS.items():
        if domain in domains:
            continue
        if any(keyword in conversation for keyword in keywords):
            domains.append(domain)
    return domains


def is_business_hours(moment: datetime) -> bool:
    """Monday to Friday, 09:00 through the 17:xx hour."""
    return moment.weekday() < 5 and 9 <= moment.hour <= 17


@dataclass(frozen=True)
class TemporalContext:
    now: datetime
    timezone: str

    @property
    def today(self) -> str:
        return self.now.strftime("%A, %B %d, %Y")

    @property
    def tomorrow(self) -> str:
        return (self.now + timedelta(days=1)).strftime("%A, %B %d, %Y")

    @property
    def business_hours(self) -> bool:
        return is_business_hours(self.now)


def resolve_temporal_context(
    timezone: str = AGENT_TIMEZONE, now: Optional[datetime] = None
) -> TemporalContext:
    try:
        tz = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        tz, timezone = ZoneInfo("UTC"), "UTC"
    if now is None:
        now = datetime.now(tz)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=tz)
    else:
        now = now.astimezone(tz)
    return TemporalContext(now=now, timezone=timezone)


def build_system_preamble(
    capability_map: str,
    temporal: TemporalContext,
    domains: Sequence[str] = (),
    agent_name: str = AGENT_NAME,
    language: str = AGENT_LANGUAGE,
) -> str:
    return f"""You are {agent_name}, an autonomous assistant that plans ahead, makes reasonable assumptions instead of asking for obvious details, and uses its tools to get things done.

CAPABILITIES
{capability_map}

TEMPORAL CONTEXT
- Current Context: {temporal.today} at {temporal.now.strftime("%H:%M")}
- Timezone: {temporal.timezone}
- Business Hours: {"Yes" if temporal.business_hours else "No"}
- Tomorrow: {temporal.tomorrow}

DOMAIN EXPERTISE: {", ".join(domains) or "Generalist"}

EXECUTION PRINCIPLES
- Calculate dates and infer context rather than asking for them.
- Chain tools when a request needs more than one step.
- Look up identifiers with your tools before acting on them.
- Close with practical next steps when they are useful.

Respond in the following language: {language}"""


def _render_result(result: ToolResult) -> str:
    value = result.result
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    return str(value)


def format_tool_results(results: Sequence[ToolResult]) -> str:
    """The user-role message that hands tool results back to the model."""
    body = "\n\n".join(
        f"Tool {result.tool_call_id} result:\n{_render_result(result)}"
        for result in results
    )
    return f"{FOLLOW_UP_HEADER}\n{body}\n\n{FOLLOW_UP_INSTRUCTION}"


def _section(title: str, items: Sequence[str]) -> str:
    if not items:
        return ""
    bullets = "\n".join(f"• {item}" for item in items)
    return f"**{title}:**\n{bullets}\n\n"


def format_workflow_response(outcome: WorkflowCompleted) -> str:
    return (
        f"✅ {outcome.summary}\n\n"
        + _section("Actions Completed", outcome.actions)
        + _section("Recommendations", outcome.recommendations)
        + _section("Next Steps", outcome.next_steps)
    )
