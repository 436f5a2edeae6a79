import pytest

from chatloop.capabilities.base import FunctionCapability, as_result
from chatloop.capabilities.registry import CapabilityRegistry


def _weather(city: str = "Berlin") -> dict:
    """Current weather for a city."""
    return {"city": city, "temp_c": 21}


async def _search(query: str) -> dict:
    return {"success": False, "error": f"quota exceeded for {query}"}


def _registry(**kwargs) -> CapabilityRegistry:
    return CapabilityRegistry(
        [
            FunctionCapability("get_weather", _weather),
            FunctionCapability("search", _search, description="Web search"),
        ],
        **kwargs,
    )


def test_get_returns_none_for_unknown_tool():
    registry = _registry()

    assert registry.get("get_weather") is not None
    assert registry.get("launch_rockets") is None
    assert "search" in registry
    assert len(registry) == 2


def test_duplicate_names_rejected():
    with pytest.raises(ValueError, match="Duplicate tool name"):
        CapabilityRegistry(
            [FunctionCapability("a", _weather), FunctionCapability("a", _search)]
        )


def test_include_and_exclude_filters():
    assert _registry(include=["search"]).names() == ["search"]
    assert _registry(exclude=["search"]).names() == ["get_weather"]


def test_capability_map_lists_descriptions():
    text = _registry().capability_map()

    assert "- **get_weather**: Current weather for a city." in text
    assert "- **search**: Web search" in text
    assert CapabilityRegistry().capability_map() == "- Tools are initializing..."


def test_registry_mapping_is_read_only():
    registry = _registry()

    with pytest.raises(TypeError):
        registry._tools["new"] = None


@pytest.mark.asyncio
async def test_function_capability_wraps_plain_and_result_values():
    registry = _registry()

    weather = await registry.get("get_weather").invoke({"city": "Oslo"})
    search = await registry.get("search").invoke({"query": "x"})

    assert weather == {"success": True, "data": {"city": "Oslo", "temp_c": 21}}
    assert search == {"success": False, "error": "quota exceeded for x"}


def test_as_result_only_passes_through_real_result_shapes():
    assert as_result({"success": "yes"}) == {
        "success": True,
        "data": {"success": "yes"},
    }
    assert as_result(None) == {"success": True, "data": None}


def test_filters_accept_glob_patterns():
    assert _registry(include=["get_*"]).names() == ["get_weather"]
    assert _registry(exclude=["*"]).names() == []
