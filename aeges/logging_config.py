"""
Structured logging for AEGES.

structlog with a redaction processor in front of the renderer so provider
credentials never reach a log sink.
"""

import logging
import re
import sys

import structlog

from aeges.config import settings

# Key names whose values are always redacted
SENSITIVE_KEYS = {
    "password", "secret", "token", "api_key", "apikey", "authorization",
    "x-api-key", "credential", "credentials", "private_key",
}
SENSITIVE_SUFFIXES = ("_api_key", "_password", "_secret", "_token", "_credential", "_private_key")

SECRET_PATTERNS = [
    re.compile(r"(?i)bearer\s+[a-z0-9._\-]+"),
    re.compile(r"\b(?:sk|xai|sk-ant)-[A-Za-z0-9_\-]{8,}"),
]

REDACTED = "[REDACTED]"


class SecretFilter:
    """
    structlog processor that redacts secrets from log events.

    Values under sensitive keys are replaced wholesale; string values are
    scrubbed of bearer tokens and key-shaped substrings.
    """

    def __call__(self, logger, method_name, event_dict):
        return self._redact_dict(event_dict)

    def _redact_dict(self, d: dict) -> dict:
        result = {}
        for key, value in d.items():
            key_lower = str(key).lower()
            if is_sensitive_key(key_lower):
                result[key] = REDACTED
            else:
                result[key] = self._redact_value(value)
        return result

    def _redact_value(self, value):
        if isinstance(value, dict):
            return self._redact_dict(value)
        if isinstance(value, (list, tuple)):
            return [self._redact_value(v) for v in value]
        if isinstance(value, str):
            return redact_text(value)
        return value


def is_sensitive_key(key: str) -> bool:
    """Exact names and suffixes only; ``max_tokens`` stays visible."""
    key = key.lower()
    return key in SENSITIVE_KEYS or key.endswith(SENSITIVE_SUFFIXES)


def redact_text(text: str) -> str:
    """Scrub credential-shaped substrings from free text."""
    for pattern in SECRET_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog + stdlib logging once at process start."""
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    renderer = (
        structlog.processors.JSONRenderer()
        if (fmt or settings.log_format) == "json"
        else structlog.dev.ConsoleRenderer()
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            SecretFilter(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
