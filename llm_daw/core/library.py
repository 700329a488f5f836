"""In-memory catalog of library clips with search and filter."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .errors import Ack, Failure
from .models import LibraryClip

if TYPE_CHECKING:
    from .persistence import PersistenceGateway


class LibraryCatalog:
    """Library clips as last fetched, newest first."""

    def __init__(self, clips: list[LibraryClip] | None = None) -> None:
        self._clips: list[LibraryClip] = list(clips or [])

    @property
    def clips(self) -> list[LibraryClip]:
        return list(self._clips)

    @property
    def count(self) -> int:
        return len(self._clips)

    def add(self, clip: LibraryClip) -> None:
        """Insert at the front, replacing an entry with the same id."""
        self.remove(clip.id)
        self._clips.insert(0, clip)

    def remove(self, clip_id: str) -> bool:
        """Remove entry by id. Returns True if found and removed."""
        for i, c in enumerate(self._clips):
            if c.id == clip_id:
                self._clips.pop(i)
                return True
        return False

    def get(self, clip_id: str) -> LibraryClip | None:
        for c in self._clips:
            if c.id == clip_id:
                return c
        return None

    def search(self, query: str) -> list[LibraryClip]:
        """Case-insensitive substring search on name and tags."""
        if not query.strip():
            return list(self._clips)
        return [c for c in self._clips if c.matches(query.strip())]

    def filter_by_category(self, category: str) -> list[LibraryClip]:
        return [c for c in self._clips if c.category == category]

    def filter_by_tag(self, tag: str) -> list[LibraryClip]:
        tag_lower = tag.lower()
        return [c for c in self._clips if any(t.lower() == tag_lower for t in c.tag_list)]

    def all_categories(self) -> list[str]:
        """Return sorted list of unique categories."""
        return sorted({c.category for c in self._clips})

    def all_tags(self) -> list[str]:
        tags: set[str] = set()
        for c in self._clips:
            tags.update(c.tag_list)
        return sorted(tags)

    # ── Storage ──

    async def refresh(
        self,
        gateway: PersistenceGateway,
        category: str | None = None,
        search: str | None = None,
    ) -> list[LibraryClip] | Failure:
        """Replace the contents with what the gateway lists; a failure leaves them as they were."""
        result = await gateway.list_library_clips(category=category, search=search)
        if isinstance(result, Failure):
            return result
        self._clips = result
        return self.clips

    async def save(self, gateway: PersistenceGateway, clip: LibraryClip) -> Ack | Failure:
        """Persist ``clip`` and, on success, show it at the top of the catalog."""
        result = await gateway.save_library_clip(clip)
        if isinstance(result, Ack):
            self.add(clip)
        return result

    async def delete(self, gateway: PersistenceGateway, clip_id: str) -> bool | Failure:
        result = await gateway.delete_library_clip(clip_id)
        if not isinstance(result, Failure):
            self.remove(clip_id)
        return result
