"""Memoized detection of optional Odoo models."""

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from syncbridge.config import settings

logger = logging.getLogger(__name__)


class CapabilityCache:
    """Remember which Odoo models are installed.

    Some integrations prefer a rich model that only exists when an optional
    Odoo app is installed (``event.event``) and fall back to a generic one
    (``calendar.event``). Probe answers are cached per model for ``ttl``
    seconds. A failed probe is not cached.
    """

    def __init__(self, ttl: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        """Initialize capability cache.

        Args:
            ttl: Seconds a probe answer stays valid (defaults to settings.model_probe_ttl).
            clock: Monotonic clock in seconds.
        """
        self.ttl = ttl if ttl is not None else settings.model_probe_ttl
        self.clock = clock
        self._cache: Dict[str, Tuple[bool, float]] = {}

    def peek(self, model: str) -> Optional[bool]:
        """Return the cached answer for a model, or None if unknown or expired."""
        entry = self._cache.get(model)
        if entry is None:
            return None
        available, expires_at = entry
        if self.clock() >= expires_at:
            del self._cache[model]
            return None
        return available

    async def has_model(self, client, model: str) -> bool:
        """Check whether a model is installed, probing Odoo through ``client`` on cache miss."""
        cached = self.peek(model)
        if cached is not None:
            return cached

        try:
            available = await client.model_exists(model)
        except Exception as e:
            logger.warning(f"Could not probe Odoo model {model}: {e}")
            return False

        self._cache[model] = (available, self.clock() + self.ttl)
        logger.info(f"Odoo model {model} {'available' if available else 'not installed'}")
        return available

    async def resolve(self, client, candidates: List[str]) -> str:
        """Pick the first installed model of ``candidates``, else the last one."""
        if not candidates:
            raise ValueError("No candidate models given")
        for model in candidates[:-1]:
            if await self.has_model(client, model):
                return model
        return candidates[-1]

    def invalidate(self, model: Optional[str] = None) -> None:
        """Forget one model's answer, or every answer."""
        if model is None:
            self._cache.clear()
        else:
            self._cache.pop(model, None)
