"""Havoc: turns GitHub issues into reviewed, policy-gated pull requests.

This package provides:
- Sandboxed command execution in per-run Docker containers
- LLM-backed analyze, plan, edit and self-review agents
- Deterministic confidence scoring and policy gates
- Run state machine with PostgreSQL or in-memory persistence
- GitHub webhook intake, pull request publishing and run events
"""
