"""
AEGES Recovery.

Components:
- workflow: verification checks and stakeholder approval for contained assets
"""
