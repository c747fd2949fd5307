from .client import RedisPubSubClient

__all__ = ["RedisPubSubClient"]
