"""chatloop - conversational agent runtime with workflow routing and streamed tool calls."""
