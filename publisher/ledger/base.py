"""Ledger client capability consumed by publish workers."""

from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel

from publisher.registry.types import Privacy
from publisher.wallets.types import Wallet


class PublishRequestOptions(BaseModel):
    """Per-asset settings forwarded to the ledger."""

    privacy: Privacy = Privacy.PRIVATE
    epochs: int = 2


class PublishResult(BaseModel):
    """What the ledger returns for a successful publish."""

    locator: str
    transaction_hash: Optional[str] = None


class BaseLedgerClient(ABC):
    """Base class for ledger clients.

    Implementations own their transport-level retries and must bound every
    call by ``timeout`` seconds. Failures are raised as
    ``LedgerPublishError``; the worker counts each raised error as one
    attempt and does not retry the call itself.
    """

    def __init__(self, timeout: float = 300.0, **kwargs: Any) -> None:
        """Initialize the ledger client.

        Args:
            timeout: Upper bound in seconds for a single call
            **kwargs: Additional client-specific configuration
        """
        self.timeout = timeout
        self._config = dict(kwargs)

    @abstractmethod
    def publish(
        self,
        content: dict[str, Any],
        credential: Wallet,
        options: PublishRequestOptions | None = None,
    ) -> PublishResult:
        """Publish ``content`` signed by ``credential``.

        Raises:
            LedgerPublishError: If the ledger rejects or the call times out
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, locator: str) -> dict[str, Any]:
        """Read a published asset back.

        Raises:
            LedgerPublishError: If the asset cannot be read
        """
        raise NotImplementedError

    def close(self) -> None:
        """Release client resources."""
