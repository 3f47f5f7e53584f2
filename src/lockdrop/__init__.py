"""Lockdrop stake ledger, vault migration and points indexer."""

__version__ = "0.1.0"
