"""Built-in MCP tools."""

from .weather import WEATHER_TOOL, WeatherHandler

__all__ = ["WEATHER_TOOL", "WeatherHandler"]
