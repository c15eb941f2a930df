"""Weather forecast tool."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Callable, Optional

from weathercast.forecast import ForecastClient
from weathercast.mcp.base import Handler
from weathercast.mcp.errors import InvalidArgument
from weathercast.mcp.protocol import ParameterSpec, ParameterType, ToolArguments, ToolDescriptor
from weathercast.mcp._logging import get_logger

logger = get_logger(__name__)

WEATHER_TOOL = ToolDescriptor(
    name="weather",
    description="Get the weather forecast for a given city and country over a date range",
    parameters=(
        ParameterSpec(
            name="city",
            type=ParameterType.STRING,
            required=True,
            description="Name of the city",
        ),
        ParameterSpec(
            name="country",
            type=ParameterType.STRING,
            required=True,
            description="Name of the country",
        ),
        ParameterSpec(
            name="fromDate",
            type=ParameterType.STRING,
            format="date",
            description="Start date in YYYY-MM-DD format (defaults to today)",
        ),
        ParameterSpec(
            name="toDate",
            type=ParameterType.STRING,
            format="date",
            description="End date in YYYY-MM-DD format (defaults to same as fromDate)",
        ),
    ),
)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class WeatherHandler(Handler):
    """Resolves the date range and asks the forecast service for a forecast."""

    def __init__(
        self,
        forecaster: ForecastClient,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.forecaster = forecaster
        self.today = today or _utc_today

    async def handle(self, arguments: ToolArguments) -> str:
        city = str(arguments["city"])
        country = str(arguments["country"])
        from_date = _as_date(arguments.get("fromDate")) or self.today()
        to_date = _as_date(arguments.get("toDate")) or from_date
        if to_date < from_date:
            raise InvalidArgument("toDate", "must not be before fromDate")

        logger.info(
            "Generating forecast",
            city=city,
            country=country,
            from_date=from_date.isoformat(),
            to_date=to_date.isoformat(),
        )
        return await self.forecaster.generate(city, country, from_date, to_date)


def _as_date(value: object) -> Optional[date]:
    return date.fromisoformat(value) if isinstance(value, str) else None
