import asyncio
import logging
from typing import Any, Callable, Iterable
from urllib.parse import quote

import httpx
from ddgs import DDGS

from companion.agent.constants import (
    HTTP_TOOL_TIMEOUT_SECONDS,
    HTTP_USER_AGENT,
    WEB_SEARCH_DEFAULT_RESULTS,
    WEB_SEARCH_MAX_RESULTS,
)
from companion.agent.tool_registry import ToolContext, ToolRegistry, define_tool

logger = logging.getLogger(__name__)

WEATHER_URL = "https://wttr.in/{location}"

SearchBackend = Callable[[str, int], Iterable[dict[str, Any]]]
"""``search(query, max_results)`` yielding DDGS-shaped hits (title/href/body)."""


def ddgs_search(query: str, max_results: int) -> list[dict[str, Any]]:
    """Blocking DuckDuckGo text search; run it off the event loop."""
    with DDGS() as ddgs:
        return list(ddgs.text(query, max_results=max_results))


def to_search_results(hits: Iterable[dict[str, Any]], max_results: int) -> list[dict]:
    results = []
    for hit in hits:
        if len(results) >= max_results:
            break
        results.append(
            {
                "title": hit.get("title", ""),
                "url": hit.get("href", ""),
                "snippet": hit.get("body", ""),
            }
        )
    return results


def _format_forecast(days: list[dict], imperial: bool) -> str:
    if not days:
        return "No forecast available"
    hi, lo, unit = ("maxtempF", "mintempF", "F") if imperial else ("maxtempC", "mintempC", "C")
    return ", ".join(f"{d.get('date')}: {d.get(lo)}-{d.get(hi)}{unit}" for d in days[:3])


def register_web_tools(
    registry: ToolRegistry,
    transport: httpx.AsyncBaseTransport | None = None,
    search: SearchBackend | None = None,
) -> None:
    """Register network lookup tools. ``transport`` and ``search`` let tests stub the network."""
    search = search or ddgs_search

    def client() -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=HTTP_TOOL_TIMEOUT_SECONDS,
            headers={"User-Agent": HTTP_USER_AGENT},
            follow_redirects=True,
            transport=transport,
        )

    @define_tool(
        name="web_search",
        description=(
            "Search the web for information. Returns relevant search results "
            "with titles, URLs, and snippets."
        ),
        parameters={
            "query": {"type": "string", "description": "The search query", "required": True},
            "max_results": {
                "type": "number",
                "description": f"Maximum number of results to return (default: {WEB_SEARCH_DEFAULT_RESULTS})",
                "default": WEB_SEARCH_DEFAULT_RESULTS,
            },
        },
    )
    async def web_search(args: dict, ctx: ToolContext) -> dict:
        query = str(args["query"])
        max_results = max(1, min(int(args.get("max_results", WEB_SEARCH_DEFAULT_RESULTS)), WEB_SEARCH_MAX_RESULTS))
        ctx.progress(f"Searching for: {query}")
        hits = await ctx.guard(asyncio.to_thread(search, query, max_results))
        results = to_search_results(hits, max_results)
        logger.info("web_search %r returned %d results", query, len(results))
        return {"query": query, "results": results}

    @define_tool(
        name="get_weather",
        description="Get the current weather and a short forecast for a location.",
        parameters={
            "location": {"type": "string", "description": "City name or location", "required": True},
            "units": {
                "type": "string",
                "description": 'Temperature units: "metric" (Celsius) or "imperial" (Fahrenheit)',
                "enum": ["metric", "imperial"],
                "default": "metric",
            },
        },
    )
    async def get_weather(args: dict, ctx: ToolContext) -> dict:
        location = str(args["location"])
        imperial = args.get("units") == "imperial"
        ctx.progress(f"Getting weather for: {location}")
        url = WEATHER_URL.format(location=quote(location)) + ("?format=j1&u" if imperial else "?format=j1&m")
        async with client() as http:
            response = await ctx.guard(http.get(url))
        response.raise_for_status()
        data = response.json()

        conditions = data.get("current_condition") or []
        if not conditions:
            raise ValueError(f"No weather data found for: {location}")
        current = conditions[0]
        area = (data.get("nearest_area") or [{}])[0]
        unit = "F" if imperial else "C"
        return {
            "location": ((area.get("areaName") or [{}])[0]).get("value", location),
            "temperature": f"{current.get('temp_F' if imperial else 'temp_C')}{unit}",
            "feels_like": f"{current.get('FeelsLikeF' if imperial else 'FeelsLikeC')}{unit}",
            "condition": ((current.get("weatherDesc") or [{}])[0]).get("value", "Unknown"),
            "humidity": f"{current.get('humidity')}%",
            "wind": f"{current.get('windspeedKmph')} km/h {current.get('winddir16Point')}",
            "forecast": _format_forecast(data.get("weather") or [], imperial),
        }

    registry.register(web_search)
    registry.register(get_weather)
