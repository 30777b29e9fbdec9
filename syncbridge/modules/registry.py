"""Registry of enabled integrations."""

import logging
from typing import Dict, List, Optional

from syncbridge.modules.base import SyncModule

logger = logging.getLogger(__name__)


class ModuleRegistry:
    """Resolve integration ids to SyncModule instances."""

    def __init__(self, capabilities=None):
        self.capabilities = capabilities
        self._modules: Dict[str, SyncModule] = {}

    def register(self, module: SyncModule) -> SyncModule:
        """Register a module and bind the shared capability cache to it.

        Raises:
            ValueError: If the module has no id or the id is taken.
        """
        if not module.integration_id:
            raise ValueError(f"{type(module).__name__} has no integration_id")
        if module.integration_id in self._modules:
            raise ValueError(f"Integration '{module.integration_id}' is already registered")

        module.capabilities = self.capabilities
        self._modules[module.integration_id] = module
        logger.info(f"Registered integration '{module.integration_id}' ({', '.join(module.entity_types())})")
        return module

    def get(self, integration_id: str) -> Optional[SyncModule]:
        return self._modules.get(integration_id)

    def all(self) -> List[SyncModule]:
        return list(self._modules.values())

    def ids(self) -> List[str]:
        return list(self._modules)
