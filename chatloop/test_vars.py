import importlib

import pytest


@pytest.fixture(autouse=True)
def restore_vars(monkeypatch):
    yield
    monkeypatch.undo()
    import chatloop.vars as vars_module

    importlib.reload(vars_module)


def test_tool_filters_are_parsed_from_comma_lists(monkeypatch):
    monkeypatch.setenv("INCLUDE_TOOLS", "get_weather,,search")
    monkeypatch.setenv("EXCLUDE_TOOLS", "")
    import chatloop.vars as vars_module

    importlib.reload(vars_module)

    assert vars_module.INCLUDE_TOOLS == ["get_weather", "search"]
    assert vars_module.EXCLUDE_TOOLS == []


def test_numeric_settings_fall_back_to_defaults(monkeypatch):
    for name in (
        "MEMORY_MAX_MESSAGES",
        "WORKFLOW_CONFIDENCE_THRESHOLD",
        "LLM_TEMPERATURE",
        "MCP_CONNECT_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
    import chatloop.vars as vars_module

    importlib.reload(vars_module)

    assert vars_module.MEMORY_MAX_MESSAGES == 19
    assert vars_module.WORKFLOW_CONFIDENCE_THRESHOLD == 0.8
    assert vars_module.LLM_TEMPERATURE == 0.6
    assert vars_module.MCP_CONNECT_TIMEOUT_SECONDS == 20.0
    assert vars_module.GENERIC_ASSISTANCE_ACTION == "intelligent_assistance"
