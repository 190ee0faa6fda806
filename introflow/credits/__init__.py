"""Idempotent credit ledger."""

from introflow.credits.ledger import CreditLedger

__all__ = ["CreditLedger"]
