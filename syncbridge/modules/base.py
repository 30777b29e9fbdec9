"""Module contract implemented by every integration.

An integration (a shop plugin, an events plugin, a donations plugin...) plugs
into the sync core by subclassing SyncModule. The core never branches on
integration identity: it only calls the methods below.

Most integrations only fill the declarative tables (``remote_models``,
``field_mappings``...) and implement the three local data hooks.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

from syncbridge.services.hashing import generate_sync_hash
from syncbridge.services.sync_result import ConfigurationError

TRANSLATIONS_KEY = "translations"


class SyncDirection(str, Enum):
    """Which ways an entity type is synchronized."""

    PUSH_ONLY = "push_only"
    PULL_ONLY = "pull_only"
    BIDIRECTIONAL = "bidirectional"

    def allows(self, direction: str) -> bool:
        """Check a job direction (push or pull) against this setting."""
        if direction == "push":
            return self != SyncDirection.PULL_ONLY
        return self != SyncDirection.PUSH_ONLY


class SyncModule(ABC):
    """Base class for integrations.

    Class attributes:
        integration_id: Unique id used in jobs and mappings.
        remote_models: entity_type -> Odoo model.
        model_fallbacks: entity_type -> candidate models, richest first.
        sync_directions: entity_type -> SyncDirection (default bidirectional).
        field_mappings: entity_type -> {local field: Odoo field}. Types without
            an entry are identity-mapped.
        parent_entity_types: entity_type -> entity type that must exist in Odoo first.
        translatable_fields: entity_type -> {Odoo field: local field}.
        polled_entity_types: entity_type -> identity field, for sources
            without change events.
    """

    integration_id: str = ""
    remote_models: Dict[str, str] = {}
    model_fallbacks: Dict[str, List[str]] = {}
    sync_directions: Dict[str, SyncDirection] = {}
    field_mappings: Dict[str, Dict[str, str]] = {}
    parent_entity_types: Dict[str, str] = {}
    translatable_fields: Dict[str, Dict[str, str]] = {}
    polled_entity_types: Dict[str, str] = {}

    def __init__(self):
        # Bound by ModuleRegistry.register
        self.capabilities = None

    def entity_types(self) -> List[str]:
        return list(self.remote_models)

    def get_sync_direction(self, entity_type: str) -> SyncDirection:
        return self.sync_directions.get(entity_type, SyncDirection.BIDIRECTIONAL)

    # Local data hooks

    @abstractmethod
    def load_local_data(self, entity_type: str, local_id: int) -> Dict[str, Any]:
        """Load a local record. Return an empty dict when it does not exist."""

    @abstractmethod
    def save_local_data(self, entity_type: str, record: Dict[str, Any], local_id: Optional[int] = None) -> int:
        """Create or update a local record. Return its id, or 0 on failure."""

    @abstractmethod
    def delete_local_data(self, entity_type: str, local_id: int) -> bool:
        """Delete a local record."""

    # Field mapping

    def map_to_remote(
        self,
        entity_type: str,
        record: Dict[str, Any],
        payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Rename local fields to Odoo fields.

        ``payload`` is the data queued with the job, keyed by local field
        names (a new order status, for instance). Its values win over the
        loaded record.
        """
        if payload:
            record = dict(record, **payload)
        mapping = self.field_mappings.get(entity_type)
        if mapping is None:
            return {key: value for key, value in record.items() if key != TRANSLATIONS_KEY}
        return {remote: record[local] for local, remote in mapping.items() if local in record}

    def map_from_remote(
        self,
        entity_type: str,
        remote_fields: Dict[str, Any],
        payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Rename Odoo fields to local fields, then apply the job payload."""
        mapping = self.field_mappings.get(entity_type)
        if mapping is None:
            record = {key: value for key, value in remote_fields.items() if key != "id"}
        else:
            record = {local: remote_fields[remote] for local, remote in mapping.items() if remote in remote_fields}
        if payload:
            record.update(payload)
        return record

    # Odoo side

    def get_dedup_domain(self, entity_type: str, remote_fields: Dict[str, Any]) -> List[Any]:
        """Domain matching an existing Odoo record for these values. Empty means always create."""
        return []

    def get_remote_model(self, entity_type: str) -> str:
        try:
            return self.remote_models[entity_type]
        except KeyError:
            raise ConfigurationError(
                f"Integration '{self.integration_id}' declares no Odoo model for '{entity_type}'"
            )

    def get_model_candidates(self, entity_type: str) -> List[str]:
        """Models to try for an entity type, richest first."""
        return list(self.model_fallbacks.get(entity_type) or [self.get_remote_model(entity_type)])

    def has_remote_model(self, model: str) -> Optional[bool]:
        """Cached answer of the capability probe for ``model`` (None if unknown)."""
        if self.capabilities is None:
            return None
        return self.capabilities.peek(model)

    def get_translatable_fields(self, entity_type: str) -> Dict[str, str]:
        return self.translatable_fields.get(entity_type, {})

    # Dependencies

    def get_parent_entity_type(self, entity_type: str) -> Optional[str]:
        return self.parent_entity_types.get(entity_type)

    def get_parent_local_id(self, entity_type: str, local_id: int) -> Optional[int]:
        """Local id of the parent record of ``local_id``, if any."""
        return None

    # Polling

    def get_polled_entity_types(self) -> Dict[str, str]:
        return dict(self.polled_entity_types)

    def fetch_local_records(self, entity_type: str) -> List[Dict[str, Any]]:
        """Full current record set of a polled entity type."""
        return []

    def get_identity_field(self, entity_type: str) -> str:
        return self.polled_entity_types.get(entity_type, "id")

    def compute_hash(self, entity_type: str, record: Dict[str, Any]) -> str:
        """Content hash of a local record, ignoring its identity field."""
        return generate_sync_hash(record, exclude=self.get_identity_field(entity_type))
