"""Knowledge asset publisher: durable registry, dispatch queue and wallet pool."""

__version__ = "0.1.0"
