"""Shared utilities for folder-as-a-service components."""

from .redis.client import RedisPubSubClient

# Event contracts are imported from shared.contracts submodules
# Example: from shared.contracts.events import ServiceStatusChanged

__all__ = ["RedisPubSubClient"]
