"""Ledger client capability."""

from publisher.ledger.base import BaseLedgerClient, PublishRequestOptions, PublishResult
from publisher.ledger.loader import load_ledger_client, load_ledger_client_class

__all__ = [
    "BaseLedgerClient",
    "PublishRequestOptions",
    "PublishResult",
    "load_ledger_client",
    "load_ledger_client_class",
]
