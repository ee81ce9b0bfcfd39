"""Data model for rows mirrored into the local fallback cache."""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from campusfix.storage.data_models.entity import Entity


@dataclass
class FallbackRecord:
    """A local mirror of an entity.

    ``saved_locally`` is set when the remote write failed and the entity only
    exists here, under a locally minted id.
    """

    entity: Entity
    saved_locally: bool = False
    mirrored_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def id(self) -> str:
        return self.entity.id

    @property
    def owner_id(self) -> str | None:
        return self.entity.owner_id
