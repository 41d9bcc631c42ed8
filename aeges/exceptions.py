"""
Custom exceptions for AEGES.

Every error surfaces as a structured ``{kind, message}`` pair.
Messages never carry provider credentials or raw upstream payloads.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Stable error kinds exposed to callers."""
    # Input errors
    VALIDATION_ERROR = "ValidationError"

    # Provider errors
    PROVIDER_TIMEOUT = "Timeout"
    RATE_LIMITED = "RateLimited"
    AUTH_FAILURE = "AuthFailure"
    MALFORMED_RESPONSE = "MalformedResponse"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"

    # Consensus errors
    NO_VALID_ANALYSIS = "NoValidAnalysis"
    LOW_AGREEMENT = "LowAgreement"
    ALL_PROVIDERS_UNAVAILABLE = "AllProvidersUnavailable"

    # State errors
    INVALID_TRANSITION = "InvalidTransition"
    EXPIRED_CONSENSUS = "ExpiredConsensus"
    NOT_FOUND = "NotFound"


class AegesError(Exception):
    """
    Base exception for AEGES.

    All custom exceptions inherit from this class.
    """

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, str]:
        """Structured form for API responses and logs."""
        return {"kind": self.kind.value, "message": self.message}

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


class ValidationError(AegesError):
    """Malformed input. Surfaced immediately, never retried."""
    kind = ErrorKind.VALIDATION_ERROR


# ============================================================================
# PROVIDER ERRORS
# ============================================================================


class ProviderError(AegesError):
    """A single provider failed. Handled by fallback or exclusion."""

    def __init__(self, provider: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.provider = provider


class ProviderTimeout(ProviderError):
    kind = ErrorKind.PROVIDER_TIMEOUT


class RateLimited(ProviderError):
    kind = ErrorKind.RATE_LIMITED


class AuthFailure(ProviderError):
    kind = ErrorKind.AUTH_FAILURE


class MalformedResponse(ProviderError):
    kind = ErrorKind.MALFORMED_RESPONSE


class ProviderUnavailable(ProviderError):
    """Transport failure or upstream 5xx."""
    kind = ErrorKind.PROVIDER_UNAVAILABLE


# ============================================================================
# CONSENSUS ERRORS
# ============================================================================


class ConsensusError(AegesError):
    """The whole analysis could not be completed."""
    kind = ErrorKind.NO_VALID_ANALYSIS


class NoValidAnalysis(ConsensusError):
    kind = ErrorKind.NO_VALID_ANALYSIS


class LowAgreement(ConsensusError):
    kind = ErrorKind.LOW_AGREEMENT


class AllProvidersUnavailable(ConsensusError):
    kind = ErrorKind.ALL_PROVIDERS_UNAVAILABLE


# ============================================================================
# STATE ERRORS
# ============================================================================


class StateError(AegesError):
    """Fatal to the requested operation. The entity is left unchanged."""
    kind = ErrorKind.INVALID_TRANSITION


class InvalidTransition(StateError):
    kind = ErrorKind.INVALID_TRANSITION


class ExpiredConsensus(StateError):
    kind = ErrorKind.EXPIRED_CONSENSUS


class NotFound(StateError):
    kind = ErrorKind.NOT_FOUND
