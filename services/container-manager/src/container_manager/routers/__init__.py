"""Routers package."""

from . import events_ws, health, services, workspaces

__all__ = ["events_ws", "health", "services", "workspaces"]
