"""
AEGES Analysis Engine.

Components:
- risk_engine: deterministic heuristics, threat classification, action policy
- consensus: provider fallback chain and parallel consensus
- prompts: analysis prompt construction
"""
