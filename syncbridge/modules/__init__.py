"""Integration modules package."""

from syncbridge.modules.base import SyncModule, SyncDirection
from syncbridge.modules.registry import ModuleRegistry

__all__ = ["SyncModule", "SyncDirection", "ModuleRegistry"]
