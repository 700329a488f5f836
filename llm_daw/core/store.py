"""The authoritative in-memory project for an editing session.

Every mutation goes through :class:`ProjectStore`, which marks itself dirty
and notifies ``on_change`` subscribers.  Mutations are plain synchronous
calls; a multi-entity edit (append a note, then grow its clip) is one call
sequence with no suspension point in between.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .constants import DEFAULT_CLIP_BEATS, DEFAULT_CLIP_NAME, MIDI_TRACK_TYPES
from .errors import Failure, NotFound, UnknownEntityError, ValidationError
from .models import (
    Clip,
    LibraryClip,
    Note,
    Project,
    Track,
    round_up_to_bar,
)
from .observers import ObserverRegistry, Unsubscribe

if TYPE_CHECKING:
    from .persistence import PersistenceGateway

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StoreChange:
    """What changed: ``kind`` names the operation, ``entity_id`` its target."""

    kind: str
    entity_id: str | None = None


class ProjectStore:
    """Owns one :class:`Project` and mediates all mutation of it.

    Pass the store by reference to whatever needs it; there is no global
    instance.
    """

    def __init__(self, project: Project | None = None) -> None:
        self._project = project if project is not None else Project()
        self._revision = 0
        self._clean_revision = 0
        self._is_new = True
        self.change_listeners: ObserverRegistry[StoreChange] = ObserverRegistry("store")

    # ── State ──

    @property
    def project(self) -> Project:
        return self._project

    @property
    def project_id(self) -> str:
        return self._project.id

    @property
    def revision(self) -> int:
        """Monotonic counter, bumped by every mutation."""
        return self._revision

    @property
    def is_new(self) -> bool:
        """True until a stored project has been hydrated into the store."""
        return self._is_new

    @property
    def dirty(self) -> bool:
        return self._revision != self._clean_revision

    def mark_clean(self, revision: int | None = None) -> bool:
        """Mark the store saved as of ``revision`` (default: now).

        Returns False, leaving the store dirty, if edits arrived after
        ``revision``.
        """
        if revision is None:
            revision = self._revision
        self._clean_revision = max(self._clean_revision, revision)
        return not self.dirty

    def on_change(self, callback: Callable[[StoreChange], None]) -> Unsubscribe:
        return self.change_listeners.subscribe(callback)

    def _changed(self, kind: str, entity_id: str | None = None) -> None:
        self._revision += 1
        self.change_listeners.emit(StoreChange(kind, entity_id))

    def snapshot(self) -> Project:
        """Deep copy of the project, safe to hand to a save in flight."""
        return copy.deepcopy(self._project)

    def hydrate(self, project: Project) -> None:
        """Replace the whole project (session start, reload)."""
        self._project = project
        self._revision += 1
        self._clean_revision = self._revision
        self._is_new = False
        self.change_listeners.emit(StoreChange("hydrate", project.id))

    # ── Lookup ──

    def find_track(self, track_id: str) -> Track | None:
        return self._project.find_track(track_id)

    def find_clip(self, clip_id: str) -> Clip | None:
        found = self._project.find_clip(clip_id)
        return found[1] if found is not None else None

    def _track(self, track_id: str) -> Track:
        track = self._project.find_track(track_id)
        if track is None:
            raise UnknownEntityError(f"No track {track_id}")
        return track

    def _clip(self, clip_id: str) -> tuple[Track, Clip]:
        found = self._project.find_clip(clip_id)
        if found is None:
            raise UnknownEntityError(f"No clip {clip_id}")
        return found

    def _note(self, clip_id: str, note_id: str) -> tuple[Clip, Note]:
        _, clip = self._clip(clip_id)
        note = clip.find_note(note_id)
        if note is None:
            raise UnknownEntityError(f"No note {note_id} in clip {clip_id}")
        return clip, note

    def recording_target_track(self) -> Track | None:
        """The armed track, else the first MIDI-capable track."""
        tracks = self._project.tracks
        armed = next((t for t in tracks if t.armed), None)
        if armed is not None:
            return armed
        return next((t for t in tracks if t.type in MIDI_TRACK_TYPES), None)

    # ── Project ──

    def set_name(self, name: str) -> None:
        self._project.update(name=name)
        self._changed("project", self._project.id)

    def set_bpm(self, bpm: float) -> int:
        """Set the tempo, clamped to the supported range; returns the stored value."""
        self._project.update(bpm=bpm)
        self._changed("project", self._project.id)
        return self._project.bpm

    def set_time_signature(self, numerator: int, denominator: int) -> None:
        self._project.update(time_signature=(numerator, denominator))
        self._changed("project", self._project.id)

    # ── Tracks ──

    def add_track(self, type: str = "midi", name: str | None = None, **fields: Any) -> Track:
        fields.setdefault("color", self._project.next_track_color())
        track = Track(
            name=name or f"Track {len(self._project.tracks) + 1}",
            type=type,
            **fields,
        )
        self._project.add_track(track)
        self._changed("track_added", track.id)
        return track

    def remove_track(self, track_id: str) -> Track:
        track = self._project.remove_track(track_id)
        if track is None:
            raise UnknownEntityError(f"No track {track_id}")
        self._changed("track_removed", track_id)
        return track

    def update_track(self, track_id: str, **changes: Any) -> Track:
        if "sort_order" in changes:
            raise ValidationError("Use reorder_tracks() to change track order")
        track = self._track(track_id).update(**changes)
        self._changed("track_updated", track_id)
        return track

    def reorder_tracks(self, from_index: int, to_index: int) -> None:
        self._project.reorder_tracks(from_index, to_index)
        self._changed("tracks_reordered", self._project.id)

    # ── Clips ──

    def add_clip(
        self,
        track_id: str,
        start_beat: float = 0.0,
        duration_beats: float = DEFAULT_CLIP_BEATS,
        name: str = DEFAULT_CLIP_NAME,
        **fields: Any,
    ) -> Clip:
        track = self._track(track_id)
        clip = track.add_clip(Clip(name=name, start_beat=start_beat, duration_beats=duration_beats, **fields))
        self._changed("clip_added", clip.id)
        return clip

    def remove_clip(self, clip_id: str) -> Clip:
        track, _ = self._clip(clip_id)
        clip = track.remove_clip(clip_id)
        self._changed("clip_removed", clip_id)
        return clip

    def update_clip(self, clip_id: str, **changes: Any) -> Clip:
        if "track_id" in changes:
            raise ValidationError("Use move_clip() to change a clip's track")
        _, clip = self._clip(clip_id)
        clip.update(**changes)
        self._changed("clip_updated", clip_id)
        return clip

    def move_clip(self, clip_id: str, new_track_id: str, new_start_beat: float) -> Clip:
        """Move a clip to another (or the same) track and start beat."""
        source, clip = self._clip(clip_id)
        target = self._track(new_track_id)
        clip.update(start_beat=new_start_beat)
        if target is not source:
            source.remove_clip(clip_id)
            target.add_clip(clip)
        self._changed("clip_moved", clip_id)
        return clip

    def place_library_clip(self, preset: LibraryClip, track_id: str, start_beat: float = 0.0) -> Clip:
        """Copy a library preset onto a track; the copy gets fresh ids."""
        track = self._track(track_id)
        clip = track.add_clip(preset.to_clip(start_beat))
        self._changed("clip_added", clip.id)
        return clip

    # ── Notes ──

    def add_note(self, clip_id: str, note: Note, *, extend_clip: bool = False) -> Note:
        """Append ``note``; with ``extend_clip`` the clip grows to contain it."""
        _, clip = self._clip(clip_id)
        clip.add_note(note)
        if extend_clip:
            clip.extend_to(note.end_beat)
        self._changed("note_added", note.id)
        return note

    def remove_note(self, clip_id: str, note_id: str) -> Note:
        clip, _ = self._note(clip_id, note_id)
        note = clip.remove_note(note_id)
        self._changed("note_removed", note_id)
        return note

    def update_note(self, clip_id: str, note_id: str, **changes: Any) -> Note:
        if "clip_id" in changes:
            raise ValidationError("Notes cannot change clips")
        _, note = self._note(clip_id, note_id)
        note.update(**changes)
        self._changed("note_updated", note_id)
        return note

    def merge_notes(
        self,
        notes: Iterable[Note | dict[str, Any]],
        *,
        clip_id: str | None = None,
        track_id: str | None = None,
        start_beat: float = 0.0,
        replace: bool = False,
    ) -> Clip:
        """Merge an externally generated note list into the project.

        With ``clip_id`` the notes go into that clip (``replace`` drops its
        current notes first); otherwise a new clip is created on ``track_id``
        or the recording target track.  The clip is sized to whole bars
        around the merged notes, never shrinking when adding.
        """
        incoming = [n if isinstance(n, Note) else Note.from_dict(n) for n in notes]
        # Fresh ids: generated notes may repeat ids across calls
        incoming = [n.copy() for n in incoming]

        if clip_id is not None:
            _, clip = self._clip(clip_id)
        else:
            track = self._track(track_id) if track_id is not None else self.recording_target_track()
            if track is None:
                raise UnknownEntityError("No track to merge notes into")
            clip = track.add_clip(Clip(start_beat=start_beat))
            replace = True

        if replace:
            clip.set_notes(incoming)
        else:
            clip.set_notes(clip.notes + incoming)
        if incoming:
            end = round_up_to_bar(max(n.end_beat for n in incoming))
            if replace or end > clip.duration_beats:
                clip.duration_beats = end
        self._changed("notes_merged", clip.id)
        log.debug("Merged %d notes into clip %s", len(incoming), clip.id)
        return clip


async def open_project(gateway: PersistenceGateway, project_id: str | None) -> ProjectStore:
    """Load ``project_id`` into a new store, or start a fresh project.

    A missing project or a failed load falls back to an empty in-memory
    project with the requested id, so the session can start either way.
    """
    if project_id is None:
        return ProjectStore()
    result = await gateway.load_project_tree(project_id)
    if isinstance(result, NotFound):
        log.info("Project %s not found, starting fresh", project_id)
        return ProjectStore(Project(id=project_id))
    if isinstance(result, Failure):
        log.warning("Loading project %s failed: %s", project_id, result.message)
        return ProjectStore(Project(id=project_id))
    store = ProjectStore()
    store.hydrate(result)
    return store
