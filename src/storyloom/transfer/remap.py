"""Old-to-new ID translation for imported stories."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

from storyloom.storage.models import INVENTORY, new_id

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from storyloom.transfer.story_io import StoryExport


@dataclass(frozen=True)
class IdRemap:
    """Complete, read-only map from exported IDs to freshly minted ones.

    Built in one pass over every entity in an export before anything is
    inserted, so that references can point forward (a branch whose fork
    entry comes later, an item in a location listed after it). Lookups of
    IDs that are not in the map return the ID unchanged.
    """

    forward: Mapping[str, str]
    backward: Mapping[str, str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "forward", MappingProxyType(dict(self.forward)))
        object.__setattr__(
            self, "backward", MappingProxyType({new: old for old, new in self.forward.items()})
        )

    @classmethod
    def build(cls, export: StoryExport) -> IdRemap:
        groups: Iterable[Iterable[str]] = (
            [export.story.id],
            (e.id for e in export.entries),
            (b.id for b in export.branches),
            (c.id for c in export.checkpoints),
            (c.id for c in export.characters),
            (loc.id for loc in export.locations),
            (i.id for i in export.items),
            (b.id for b in export.story_beats),
            (e.id for e in export.lorebook_entries),
            (c.id for c in export.chapters),
            (img.id for img in export.embedded_images),
        )
        forward: dict[str, str] = {}
        for ids in groups:
            for old in ids:
                forward.setdefault(old, new_id())
        return cls(forward)

    def __contains__(self, old_id: object) -> bool:
        return old_id in self.forward

    def __len__(self) -> int:
        return len(self.forward)

    def get(self, old_id: str) -> str:
        """New ID for *old_id*, or *old_id* itself when it was not exported."""
        return self.forward.get(old_id, old_id)

    def optional(self, old_id: str | None) -> str | None:
        return None if old_id is None else self.get(old_id)

    def item_location(self, location: str) -> str:
        """Map an item location; the inventory marker is kept as is."""
        return location if location == INVENTORY else self.get(location)

    def original(self, new: str) -> str | None:
        """Exported ID a minted ID was created for."""
        return self.backward.get(new)
