"""Chat-completions adapters (xAI, OpenAI)."""

from typing import Any

from aeges.engine.prompts import SYSTEM_PROMPT
from aeges.providers.base import HttpProviderAdapter, ProviderKind


class ChatCompletionsAdapter(HttpProviderAdapter):
    """OpenAI-compatible ``/chat/completions`` with Bearer auth."""

    def build_request(self, prompt: str, max_tokens: int) -> tuple[dict[str, Any], dict[str, str]]:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": self.temperature,
        }
        headers = {
            "Authorization": f"Bearer {self._api_key.get_secret_value()}",
            "content-type": "application/json",
        }
        return payload, headers

    def extract_text(self, data: dict[str, Any]) -> str:
        return data["choices"][0]["message"]["content"]


class XAIAdapter(ChatCompletionsAdapter):
    kind = ProviderKind.XAI


class OpenAIAdapter(ChatCompletionsAdapter):
    kind = ProviderKind.OPENAI
