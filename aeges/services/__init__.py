"""
AEGES Services.

Components:
- rate_limiter: fixed-window per-provider request budgets
- event_bus: typed publish/subscribe
- repository: assessment / containment / recovery storage
- propagation: network notification of containments
- metrics: in-process analysis counters
- scheduler: periodic expiry sweeps
"""
