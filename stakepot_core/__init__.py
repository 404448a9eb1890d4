"""
StakePot - a weighted staking ledger with pot-funded, pro-rata rewards.

Key features:
- Multiple locked stakes per account, weighted by lock period
- Pro-rata distribution of an externally funded reward pot
- Early-withdrawal penalty on principal, rewards always paid in full
- Admin-controlled period table, penalty rate and pot address
- Pluggable token-transfer collaborator with all-or-nothing semantics
- Signed HTTP API, SQLite persistence and invariant checking
"""

__version__ = "1.0.0"
__all__ = [
    "errors",
    "periods",
    "staking",
    "token",
    "invariants",
    "identity",
    "config",
    "storage",
    "node",
    "api",
]
