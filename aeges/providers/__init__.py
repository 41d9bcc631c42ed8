"""
AEGES Analysis Providers.

Components:
- base: ProviderAdapter interface, ProviderKind, verdict parsing, HTTP plumbing
- chat: xAI / OpenAI chat-completions adapters
- anthropic: Anthropic messages adapter
- fallback: deterministic heuristic provider
- factory: configuration-driven construction
"""
