"""
AEGES: AI-Enhanced Guardian for Economic Stability.

Architecture:
    aeges/
    ├── schemas/         # Pydantic models (transaction, assessment, containment, recovery, events)
    ├── engine/          # Heuristic risk engine, consensus aggregator, prompt builder
    ├── providers/       # AI provider adapters (xAI, OpenAI, Anthropic, heuristic fallback)
    ├── services/        # Rate limiter, event bus, repository, propagation, metrics, scheduler
    ├── containment/     # Containment lifecycle state machine
    ├── recovery/        # Recovery workflow (verification + stakeholder consensus)
    └── guardian.py      # Facade wiring everything together

Data Flow:
    TransactionRecord → Risk Engine (base score) → Providers (rate-limited)
    → Consensus Aggregator → merged risk → Containment → (optional) Recovery

    The event bus threads through every transition.

Module Boundaries:
    - Providers only return verdicts, they never decide actions
    - Containments are mutated only by the containment state machine
    - HTTP transport, auth and dashboards live outside this package

Version: 1.0.0
"""

__version__ = "1.0.0"
