"""
Analysis prompt construction.

Providers are asked for a strict JSON verdict so adapters can parse
responses without free-text heuristics.
"""

from datetime import datetime, timezone

from aeges.exceptions import ValidationError
from aeges.schemas.transaction import TransactionRecord

MAX_PROMPT_LENGTH = 10_000

SYSTEM_PROMPT = (
    "You are a transaction risk analyst. Assess behavioural anomalies and "
    "security threats. Respond with a single JSON object and nothing else."
)

VERDICT_INSTRUCTIONS = """Respond with exactly this JSON shape:
{
  "risk_score": <number 0-1>,
  "confidence": <number 0-1>,
  "pattern": "<one of: flash_drain, rug_pull, pump_dump, wash_trading, large_amount, high_velocity, new_account, normal>",
  "recommendations": ["<short action>", ...]
}"""


def build_analysis_prompt(
    tx: TransactionRecord,
    analysis_type: str = "comprehensive",
    now: datetime | None = None,
) -> str:
    history = tx.history
    current = (now or datetime.now(timezone.utc)).isoformat()
    lines = [
        "Analyze this transaction for behavioral anomalies and security threats.",
        "",
        "Transaction Details:",
        f"- ID: {tx.transaction_id}",
        f"- Amount: {tx.amount}",
        f"- Asset: {tx.asset_type}",
        f"- From: {tx.origin}",
        f"- To: {tx.destination}",
        f"- Timestamp: {tx.timestamp.isoformat()}",
        f"- Network: {tx.network or 'unknown'}",
        "",
        "Account History:",
        f"- Account age (days): {_fmt(history.account_age_days)}",
        f"- Previous transactions: {_fmt(history.previous_transactions)}",
        f"- Total volume: {_fmt(history.total_volume)}",
        "",
        "Context:",
        f"- Current time: {current}",
        f"- Analysis type: {analysis_type}",
        "",
        VERDICT_INSTRUCTIONS,
    ]
    return validate_prompt("\n".join(lines))


def validate_prompt(prompt: str) -> str:
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError("Prompt must be a non-empty string")
    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValidationError(
            f"Prompt too long: maximum {MAX_PROMPT_LENGTH:,} characters",
            details={"length": len(prompt)},
        )
    return prompt.strip()


def _fmt(value) -> str:
    return "unknown" if value is None else str(value)
