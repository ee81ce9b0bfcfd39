"""Abstract base class for the local fallback cache."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from campusfix.core.config.campusfix_config import CampusFixConfig
from campusfix.storage.data_models.fallback_record import FallbackRecord


class FallbackStore(ABC):
    """Local mirror of entities, grouped by purpose (one per collection, e.g. ``reports``).

    Views merge these records into their lists when the remote fetch failed
    or has not caught up with a write yet. The default implementation is
    file-based (FileFallbackStore). Records are only removed when the entity
    itself is deleted.
    """

    @abstractmethod
    async def append(self, purpose: str, record: FallbackRecord) -> None:
        """Add a record, replacing any existing record with the same id."""

    @abstractmethod
    async def list_for(
        self, purpose: str, owner_id: str | None = None
    ) -> list[FallbackRecord]:
        """Return the records for a purpose, newest first, optionally by owner."""

    @abstractmethod
    async def patch(self, purpose: str, entity_id: str, fields: dict[str, Any]) -> bool:
        """Update fields of a record in place.

        Returns True if the record was found and updated, False otherwise.
        """

    @abstractmethod
    async def remove(self, purpose: str, entity_id: str) -> bool:
        """Remove a record by id. Returns True if it was present."""

    @classmethod
    @abstractmethod
    async def get_instance(cls, config: CampusFixConfig) -> FallbackStore:
        """Get a store instance for the given configuration."""
