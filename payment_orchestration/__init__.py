"""
Payment orchestration core.

Accepts a payment intent, routes it to a capability-gated provider adapter,
guarantees idempotent execution, computes platform commission and keeps an
append-only transaction ledger for audit and reconciliation.
"""

__version__ = "0.1.0"
