"""Anthropic messages adapter."""

from typing import Any

from aeges.engine.prompts import SYSTEM_PROMPT
from aeges.providers.base import HttpProviderAdapter, ProviderKind

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicAdapter(HttpProviderAdapter):
    kind = ProviderKind.ANTHROPIC

    def build_request(self, prompt: str, max_tokens: int) -> tuple[dict[str, Any], dict[str, str]]:
        headers = {
            "x-api-key": self._api_key.get_secret_value(),
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        payload = {
            "model": self.model,
            "max_tokens": max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": prompt}],
        }
        return payload, headers

    def extract_text(self, data: dict[str, Any]) -> str:
        # Extract text from content blocks
        content = data["content"]
        text_parts = [
            block.get("text", "")
            for block in content
            if block.get("type") == "text"
        ]
        if not text_parts:
            raise ValueError("no text blocks")
        return "".join(text_parts)
