"""Ledger clients."""

from .http_client import HttpLedgerClient, create_ledger_client

__all__ = ["HttpLedgerClient", "create_ledger_client"]
