"""
AEGES Containment.

Components:
- state_machine: containment lifecycle (active, recovery pending, recovered, expired)
"""
