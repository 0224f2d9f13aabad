"""
Token Service

Token ledger and subscription lifecycle engine.

Features:
- Per-user ledger with daily quota, informational monthly allocation and temporary bonus
- Priority spend (daily quota first, then bonus) with optimistic concurrency
- Daily refresh / renewal sweep and lifecycle (warning, expiry, win-back) sweep
- One-time settlement of plan purchases and token top-ups
- Event-driven integration with user and payment services
"""

__version__ = "1.0.0"
