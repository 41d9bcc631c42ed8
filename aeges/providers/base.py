"""
Provider Adapter interface.

Every analysis backend (xAI, OpenAI, Anthropic, the heuristic fallback)
implements ProviderAdapter. HTTP-backed adapters share HttpProviderAdapter,
which owns the httpx client and maps transport outcomes onto the provider
error taxonomy:

    timeout              → ProviderTimeout
    401 / 403            → AuthFailure
    429                  → RateLimited
    5xx / transport      → ProviderUnavailable
    unparseable verdict  → MalformedResponse

Errors carry the provider name and status only. Credentials and upstream
bodies are never copied into messages.
"""

import json
import re
import time
from abc import ABC, abstractmethod
from enum import StrEnum
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel, SecretStr
from pydantic import ValidationError as PydanticValidationError

from aeges.exceptions import (
    AuthFailure,
    MalformedResponse,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
)
from aeges.schemas.assessment import ProviderVerdict
from aeges.schemas.transaction import TransactionRecord

logger = structlog.get_logger(__name__)

HEALTH_CHECK_PROMPT = "System health check - respond with OK"
HEALTH_CHECK_MAX_TOKENS = 5

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class ProviderKind(StrEnum):
    XAI = "xai"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    FALLBACK = "fallback"


class ProviderHealth(BaseModel):
    provider: str
    healthy: bool
    latency_ms: Optional[float] = None
    model: Optional[str] = None
    error: Optional[str] = None


class ProviderAdapter(ABC):
    """A backend that turns a transaction into a ProviderVerdict."""

    kind: ProviderKind

    @property
    def name(self) -> str:
        return self.kind.value

    @abstractmethod
    async def analyze(
        self, tx: TransactionRecord, prompt: str, timeout: float
    ) -> ProviderVerdict:
        """
        Produce a verdict within ``timeout`` seconds.

        Raises:
            ProviderError subclass on any failure.
        """

    @abstractmethod
    async def health_check(self) -> ProviderHealth:
        """Check the backend. Never raises."""

    async def aclose(self) -> None:
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


# ============================================================================
# VERDICT PARSING
# ============================================================================


def extract_json(text: str) -> dict[str, Any]:
    """Pull the first JSON object out of model text (fenced or bare)."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise ValueError("no JSON object in response")
    data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("response JSON is not an object")
    return data


def parse_verdict(provider: str, text: str) -> ProviderVerdict:
    """
    Parse model output into a ProviderVerdict.

    Raises:
        MalformedResponse: text is not JSON or violates the verdict schema.
    """
    try:
        data = extract_json(text)
        recommendations = data.get("recommendations") or []
        if isinstance(recommendations, str):
            recommendations = [recommendations]
        return ProviderVerdict(
            provider=provider,
            risk_score=data["risk_score"],
            confidence=data["confidence"],
            pattern=str(data.get("pattern") or "normal"),
            recommendations=[str(r) for r in recommendations],
        )
    except (ValueError, KeyError, TypeError, PydanticValidationError) as e:
        logger.warning("provider_malformed_response", provider=provider, error_type=type(e).__name__)
        raise MalformedResponse(provider, f"Malformed verdict from provider: {provider}") from None


# ============================================================================
# HTTP ADAPTER
# ============================================================================


class HttpProviderAdapter(ProviderAdapter):
    """
    Shared httpx plumbing for remote providers.

    Subclasses build the request body/headers and extract the model text.
    """

    def __init__(
        self,
        api_key: SecretStr,
        endpoint: str,
        model: str,
        max_tokens: int = 2048,
        temperature: float = 0.3,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._api_key = api_key
        self.endpoint = endpoint
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = client
        self._owns_client = client is None

    @property
    def configured(self) -> bool:
        return bool(self._api_key.get_secret_value())

    @abstractmethod
    def build_request(self, prompt: str, max_tokens: int) -> tuple[dict[str, Any], dict[str, str]]:
        """Return (json_payload, headers) for one completion."""

    @abstractmethod
    def extract_text(self, data: dict[str, Any]) -> str:
        """Return the model text from a decoded response body."""

    async def analyze(
        self, tx: TransactionRecord, prompt: str, timeout: float
    ) -> ProviderVerdict:
        text = await self.complete(prompt, timeout, self.max_tokens)
        verdict = parse_verdict(self.name, text)
        logger.debug(
            "provider_verdict",
            provider=self.name,
            transaction_id=tx.transaction_id,
            risk_score=verdict.risk_score,
            confidence=verdict.confidence,
        )
        return verdict

    async def complete(self, prompt: str, timeout: float, max_tokens: int) -> str:
        if not self.configured:
            raise AuthFailure(self.name, f"No credentials configured for provider: {self.name}")

        payload, headers = self.build_request(prompt, max_tokens)
        client = self._get_client()
        try:
            response = await client.post(
                self.endpoint, json=payload, headers=headers, timeout=timeout
            )
        except httpx.TimeoutException:
            raise ProviderTimeout(self.name, f"Provider timed out: {self.name}") from None
        except httpx.HTTPError as e:
            logger.warning("provider_transport_error", provider=self.name, error_type=type(e).__name__)
            raise ProviderUnavailable(self.name, f"Provider unreachable: {self.name}") from None

        raise_for_status(self.name, response)

        try:
            data = response.json()
            text = self.extract_text(data)
        except (ValueError, KeyError, IndexError, TypeError, AttributeError):
            raise MalformedResponse(self.name, f"Malformed response body from provider: {self.name}") from None
        return text

    async def health_check(self) -> ProviderHealth:
        if not self.configured:
            return ProviderHealth(provider=self.name, healthy=False, model=self.model, error="not_configured")
        start = time.perf_counter()
        try:
            await self.complete(HEALTH_CHECK_PROMPT, timeout=10.0, max_tokens=HEALTH_CHECK_MAX_TOKENS)
        except ProviderError as e:
            return ProviderHealth(provider=self.name, healthy=False, model=self.model, error=e.kind.value)
        return ProviderHealth(
            provider=self.name,
            healthy=True,
            model=self.model,
            latency_ms=round((time.perf_counter() - start) * 1000, 3),
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client


def raise_for_status(provider: str, response: httpx.Response) -> None:
    status = response.status_code
    if status < 400:
        return
    logger.warning("provider_http_error", provider=provider, status=status)
    details = {"status": status}
    if status in (401, 403):
        raise AuthFailure(provider, f"Authentication failed for provider: {provider}", details)
    if status == 429:
        raise RateLimited(provider, f"Upstream rate limit for provider: {provider}", details)
    if status >= 500:
        raise ProviderUnavailable(provider, f"Provider unavailable: {provider}", details)
    raise MalformedResponse(provider, f"Provider rejected request: {provider}", details)
