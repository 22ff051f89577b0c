"""Durable asset registry."""

from publisher.registry.registry import AssetRegistry
from publisher.registry.types import (
    Asset,
    AssetInput,
    AssetMetadata,
    AssetState,
    AssetStatusView,
    PublishOptions,
    PublishingAttempt,
)

__all__ = [
    "Asset",
    "AssetInput",
    "AssetMetadata",
    "AssetRegistry",
    "AssetState",
    "AssetStatusView",
    "PublishOptions",
    "PublishingAttempt",
]
