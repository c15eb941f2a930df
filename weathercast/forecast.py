"""
HTTP client for the forecast-generation model (Google Gemini API).
"""

from datetime import date
from typing import List, Optional

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from .core.config import Settings
from .mcp.errors import HandlerError

logger = structlog.get_logger(__name__)

PROMPT_TEMPLATE = (
    "Provide a concise weather forecast for {city}, {country} from {from_date} to {to_date} "
    "in Celsius. Include date, temperature, and a brief description."
)


class Part(BaseModel):
    text: Optional[str] = None


class Content(BaseModel):
    parts: List[Part] = Field(default_factory=list)
    role: Optional[str] = None


class Candidate(BaseModel):
    content: Content = Field(default_factory=Content)
    finish_reason: Optional[str] = Field(default=None, alias="finishReason")


class GenerateContentResponse(BaseModel):
    """Subset of the generateContent response we read."""

    candidates: List[Candidate] = Field(default_factory=list)


def build_prompt(city: str, country: str, from_date: date, to_date: date) -> str:
    return PROMPT_TEMPLATE.format(
        city=city,
        country=country,
        from_date=from_date.isoformat(),
        to_date=to_date.isoformat(),
    )


class ForecastClient:
    """Asks a generative model for a textual forecast."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gemini-2.0-flash",
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers={
                "x-goog-api-key": api_key,
                "Content-Type": "application/json",
            },
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ForecastClient":
        """Build a client; raises ConfigurationError when the API key is missing."""
        return cls(
            settings.require_api_key(),
            model=settings.forecast_model,
            base_url=settings.forecast_base_url,
            timeout=settings.forecast_timeout_s,
            **kwargs,
        )

    async def generate(self, city: str, country: str, from_date: date, to_date: date) -> str:
        prompt = build_prompt(city, country, from_date, to_date)
        body = {"contents": [{"parts": [{"text": prompt}]}]}
        path = f"/v1beta/models/{self.model}:generateContent"

        try:
            response = await self.client.post(path, json=body)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("Forecast request timed out", model=self.model, timeout_s=self.timeout)
            raise HandlerError(
                f"Forecast service timed out after {self.timeout:g}s",
                cause=exc,
                retryable=True,
            ) from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.warning(
                "Forecast service returned an error",
                model=self.model,
                status_code=status_code,
                body=exc.response.text[:500],
            )
            raise HandlerError(
                f"Error generating forecast: HTTP {status_code}",
                cause=exc,
                retryable=status_code >= 500 or status_code == 429,
                details={"status_code": status_code},
            ) from exc
        except httpx.RequestError as exc:
            logger.warning("Forecast service unreachable", model=self.model, error=str(exc))
            raise HandlerError(
                f"Forecast service unavailable: {exc}",
                cause=exc,
                retryable=True,
            ) from exc

        try:
            parsed = GenerateContentResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise HandlerError("Malformed response from forecast service", cause=exc) from exc

        if not parsed.candidates:
            raise HandlerError("No candidates returned from forecast service")

        text = "".join(part.text or "" for part in parsed.candidates[0].content.parts)
        logger.debug(
            "Forecast generated",
            model=self.model,
            chars=len(text),
            finish_reason=parsed.candidates[0].finish_reason,
        )
        return text

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "ForecastClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
