"""Wallet and lease models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class WalletConfig(BaseModel):
    """A signing identity as supplied by configuration."""

    model_config = ConfigDict(populate_by_name=True)

    address: str = Field(min_length=1, max_length=42)
    private_key: SecretStr = Field(alias="privateKey")
    blockchain: str = Field(min_length=1, max_length=50)


class Wallet(BaseModel):
    """A configured signing identity."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    address: str
    private_key: SecretStr
    blockchain: str
    is_active: bool = True


class WalletLease(BaseModel):
    """Time-bounded exclusive claim on a wallet."""

    wallet_id: int
    holder_id: str
    acquired_at: datetime
    expires_at: datetime
    wallet: Wallet

    @property
    def credential(self) -> Wallet:
        """The signing identity the lease grants."""
        return self.wallet

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class WalletStats(BaseModel):
    """Wallet pool occupancy."""

    total: int = 0
    available: int = 0
    locked: int = 0


class WalletUsage(BaseModel):
    """Per-wallet usage counters."""

    wallet_id: int
    address: str
    total_uses: int = 0
    successful_uses: int = 0
    failed_uses: int = 0
    last_used_at: Optional[datetime] = None
    locked: bool = False
