"""
Provider construction from configuration.

A remote provider is enabled when its API key is set. The fallback provider
is always enabled. Order follows ``fallback_order``.
"""

from typing import Optional

import httpx
import structlog

from aeges.config import Settings
from aeges.engine.risk_engine import RiskAssessmentEngine
from aeges.exceptions import ValidationError
from aeges.providers.anthropic import AnthropicAdapter
from aeges.providers.base import HttpProviderAdapter, ProviderAdapter, ProviderKind
from aeges.providers.chat import OpenAIAdapter, XAIAdapter
from aeges.providers.fallback import FallbackProvider
from aeges.services.rate_limiter import FixedWindowRateLimiter, ProviderLimit

logger = structlog.get_logger(__name__)


def build_provider(
    kind: ProviderKind,
    cfg: Settings,
    client: Optional[httpx.AsyncClient] = None,
    engine: Optional[RiskAssessmentEngine] = None,
) -> ProviderAdapter:
    common = {
        "max_tokens": cfg.provider_max_tokens,
        "temperature": cfg.provider_temperature,
        "client": client,
    }
    if kind == ProviderKind.XAI:
        return XAIAdapter(cfg.xai_api_key, cfg.xai_endpoint, cfg.xai_model, **common)
    if kind == ProviderKind.OPENAI:
        return OpenAIAdapter(cfg.openai_api_key, cfg.openai_endpoint, cfg.openai_model, **common)
    if kind == ProviderKind.ANTHROPIC:
        return AnthropicAdapter(cfg.anthropic_api_key, cfg.anthropic_endpoint, cfg.anthropic_model, **common)
    return FallbackProvider(engine=engine, confidence=cfg.fallback_confidence)


def build_providers(
    cfg: Settings,
    client: Optional[httpx.AsyncClient] = None,
    engine: Optional[RiskAssessmentEngine] = None,
) -> list[ProviderAdapter]:
    """Enabled providers in priority order. The fallback provider is always included."""
    providers: list[ProviderAdapter] = []
    seen: set[ProviderKind] = set()

    for raw in cfg.fallback_order:
        try:
            kind = ProviderKind(raw.strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown provider in fallback order: {raw}") from None
        if kind in seen:
            continue
        seen.add(kind)

        provider = build_provider(kind, cfg, client=client, engine=engine)
        if isinstance(provider, HttpProviderAdapter) and not provider.configured:
            logger.info("provider_disabled", provider=kind.value, reason="no_api_key")
            continue
        providers.append(provider)

    if ProviderKind.FALLBACK not in seen:
        providers.append(FallbackProvider(engine=engine, confidence=cfg.fallback_confidence))

    logger.info("providers_configured", providers=[p.name for p in providers])
    return providers


def build_rate_limiter(cfg: Settings) -> FixedWindowRateLimiter:
    window = cfg.rate_limit_window_seconds
    return FixedWindowRateLimiter(
        {
            ProviderKind.XAI.value: ProviderLimit(cfg.xai_rate_limit, window),
            ProviderKind.OPENAI.value: ProviderLimit(cfg.openai_rate_limit, window),
            ProviderKind.ANTHROPIC.value: ProviderLimit(cfg.anthropic_rate_limit, window),
        }
    )
