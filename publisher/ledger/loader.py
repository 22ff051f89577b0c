"""Load the configured ledger client."""

import importlib
from typing import Any

from publisher.core.logging import get_logger
from publisher.ledger.base import BaseLedgerClient

logger = get_logger(__name__).bind(module="ledger_loader")


def load_ledger_client_class(path: str) -> type[BaseLedgerClient]:
    """Resolve a ``module:Class`` path to a ledger client class.

    Args:
        path: Import path such as ``publisher.ledger.test_mock:MockLedgerClient``

    Returns:
        Ledger client class

    Raises:
        ImportError: If the module or class cannot be imported
        ValueError: If the path is malformed or the class is not a ledger client
    """
    module_name, sep, class_name = path.partition(":")
    if not sep or not module_name or not class_name:
        raise ValueError(f"Ledger client path must look like 'module:Class', got {path!r}")

    module = importlib.import_module(module_name)
    try:
        client_class = getattr(module, class_name)
    except AttributeError as e:
        raise ImportError(f"{class_name} not found in module {module_name}") from e

    if not isinstance(client_class, type) or not issubclass(client_class, BaseLedgerClient):
        raise ValueError(f"{path} is not a BaseLedgerClient subclass")
    return client_class


def load_ledger_client(path: str, timeout: float, **kwargs: Any) -> BaseLedgerClient:
    """Instantiate the ledger client named by ``path``."""
    client_class = load_ledger_client_class(path)
    logger.info("Initializing ledger client", client=path, timeout=timeout)
    return client_class(timeout=timeout, **kwargs)
