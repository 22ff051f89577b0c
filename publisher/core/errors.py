"""Error taxonomy for the publishing pipeline.

Races and backpressure (``IllegalTransition``, ``NoWalletAvailable``) are
resolved inside the worker loop. ``LedgerPublishError`` is counted against
an asset's attempts. ``StoreUnavailable`` is fatal for the operation that
hit it and is never retried silently.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import DBAPIError, OperationalError


class PublisherError(Exception):
    """Base class for publishing pipeline errors."""


class ValidationError(PublisherError):
    """Raised when a submission is malformed. Nothing is persisted."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


class AssetNotFound(PublisherError, KeyError):
    """Raised when an asset id does not exist in the registry."""

    def __init__(self, asset_id: str):
        super().__init__(asset_id)
        self.asset_id = asset_id

    def __str__(self) -> str:
        return f"Asset {self.asset_id} not found"


class IllegalTransition(PublisherError):
    """Raised when a conditional state transition finds an unexpected state."""

    def __init__(self, asset_id: str, expected: str, target: str):
        super().__init__(
            f"Asset {asset_id} is not {expected}; cannot move it to {target}"
        )
        self.asset_id = asset_id
        self.expected = expected
        self.target = target


class NoWalletAvailable(PublisherError):
    """Raised when every wallet in the pool is leased."""


class LedgerPublishError(PublisherError):
    """Raised by ledger clients when a publish or read call fails."""

    def __init__(self, message: str, error_type: str | None = None):
        super().__init__(message)
        self.error_type = error_type or type(self).__name__


class StoreUnavailable(PublisherError):
    """Raised when the registry, queue or lease backend cannot be reached."""

    def __init__(self, store: str, cause: Exception | None = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"{store} store unavailable{detail}")
        self.store = store


@contextmanager
def translate_store_errors(store: str) -> Iterator[None]:
    """Re-raise backend connectivity failures as ``StoreUnavailable``.

    Args:
        store: Name of the store for the error message
    """
    try:
        yield
    except (OperationalError, RedisConnectionError, RedisTimeoutError) as e:
        raise StoreUnavailable(store, e) from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise StoreUnavailable(store, e) from e
        raise
