"""Project → Track → Clip → Note entity model, plus the library catalog shapes.

Pure Python, no storage or MIDI dependency.  All time positions use *beats*
(float) rather than seconds so that tempo changes don't invalidate clip or
note positions.  Note start beats are relative to the owning clip's start.

Every constructor and every ``update`` validates invariants and raises
:class:`~llm_daw.core.errors.ValidationError` on violation.  ``update``
applies its changes atomically: a rejected update leaves the entity as it was.
"""

from __future__ import annotations

import dataclasses
import math
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .constants import (
    BEATS_PER_BAR,
    BPM_DEFAULT,
    BPM_MAX,
    BPM_MIN,
    DEFAULT_AUDIO_MIME,
    DEFAULT_CLIP_BEATS,
    DEFAULT_CLIP_NAME,
    DEFAULT_CLIP_TYPE,
    DEFAULT_LIBRARY_CATEGORY,
    DEFAULT_PROJECT_NAME,
    DEFAULT_SAMPLE_RATE,
    DEFAULT_TIME_SIGNATURE,
    DEFAULT_TRACK_PAN,
    DEFAULT_TRACK_VOLUME,
    DEFAULT_VELOCITY,
    MIDI_MAX,
    MIDI_MIN,
    MIDI_TRACK_TYPES,
    TRACK_COLORS,
    TRACK_TYPES,
)
from .errors import ValidationError

LIBRARY_CLIP_TYPES = ("midi", "audio")


def new_id() -> str:
    """Return a fresh entity id."""
    return uuid.uuid4().hex


def clamp_bpm(bpm: float) -> int:
    return int(round(max(BPM_MIN, min(BPM_MAX, bpm))))


def round_up_to_bar(beats: float, beats_per_bar: int = BEATS_PER_BAR) -> float:
    """Round a beat length up to whole bars."""
    return float(math.ceil(beats / beats_per_bar) * beats_per_bar)


# ── Validation helpers ─────────────────────────────────────


def _require_int(name: str, value: Any, lo: int, hi: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if not lo <= value <= hi:
        raise ValidationError(f"{name} must be {lo}-{hi}, got {value}")


def _integral(value: Any) -> Any:
    """``60.0`` from a JSON body becomes ``60``; anything else is left for validation."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _require_number(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be finite, got {value}")
    return float(value)


def _require_non_negative(name: str, value: Any) -> None:
    if _require_number(name, value) < 0:
        raise ValidationError(f"{name} must be non-negative, got {value}")


def _require_positive(name: str, value: Any) -> None:
    if _require_number(name, value) <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")


def _require_between(name: str, value: Any, lo: float, hi: float) -> None:
    if not lo <= _require_number(name, value) <= hi:
        raise ValidationError(f"{name} must be {lo}-{hi}, got {value}")


def _apply(entity: Any, changes: dict[str, Any]) -> Any:
    """Validate ``changes`` on a copy, then copy the accepted values back."""
    if "id" in changes and changes["id"] != entity.id:
        raise ValidationError("id is immutable after creation")
    unknown = set(changes) - {f.name for f in dataclasses.fields(entity)}
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")
    candidate = dataclasses.replace(entity, **changes)
    for name in changes:
        setattr(entity, name, getattr(candidate, name))
    return entity


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


def _parse_ts(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ── Note ───────────────────────────────────────────────────


@dataclass
class Note:
    """A single note inside a clip.  ``start_beat`` is relative to the clip."""

    pitch: int
    start_beat: float
    duration_beats: float
    velocity: int = DEFAULT_VELOCITY
    id: str = field(default_factory=new_id)
    clip_id: str | None = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        _require_int("pitch", self.pitch, MIDI_MIN, MIDI_MAX)
        _require_int("velocity", self.velocity, MIDI_MIN, MIDI_MAX)
        _require_non_negative("start_beat", self.start_beat)
        _require_positive("duration_beats", self.duration_beats)

    @property
    def end_beat(self) -> float:
        return self.start_beat + self.duration_beats

    def update(self, **changes: Any) -> Note:
        return _apply(self, changes)

    def copy(self, *, clip_id: str | None = None) -> Note:
        """Return a copy with a fresh id."""
        return Note(
            pitch=self.pitch,
            start_beat=self.start_beat,
            duration_beats=self.duration_beats,
            velocity=self.velocity,
            clip_id=clip_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pitch": self.pitch,
            "start_beat": self.start_beat,
            "duration_beats": self.duration_beats,
            "velocity": self.velocity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], clip_id: str | None = None) -> Note:
        return cls(
            id=data.get("id") or new_id(),
            clip_id=clip_id,
            pitch=_integral(data["pitch"]),
            start_beat=data["start_beat"],
            duration_beats=data["duration_beats"],
            velocity=_integral(data.get("velocity", DEFAULT_VELOCITY)),
        )


# ── Clip ───────────────────────────────────────────────────


@dataclass
class Clip:
    """A time-bounded container of notes (or an audio reference) on a track."""

    track_id: str | None = None
    name: str = DEFAULT_CLIP_NAME
    start_beat: float = 0.0
    duration_beats: float = DEFAULT_CLIP_BEATS
    color: str | None = None
    audio_url: str | None = None
    notes: list[Note] = field(default_factory=list)
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        self.validate()
        for note in self.notes:
            note.clip_id = self.id

    def validate(self) -> None:
        _require_non_negative("start_beat", self.start_beat)
        _require_positive("duration_beats", self.duration_beats)

    @property
    def end_beat(self) -> float:
        return self.start_beat + self.duration_beats

    def update(self, **changes: Any) -> Clip:
        if "notes" in changes:
            raise ValidationError("Replace notes with set_notes()")
        return _apply(self, changes)

    def add_note(self, note: Note) -> Note:
        note.clip_id = self.id
        self.notes.append(note)
        return note

    def remove_note(self, note_id: str) -> Note | None:
        for i, note in enumerate(self.notes):
            if note.id == note_id:
                return self.notes.pop(i)
        return None

    def find_note(self, note_id: str) -> Note | None:
        for note in self.notes:
            if note.id == note_id:
                return note
        return None

    def set_notes(self, notes: list[Note]) -> Clip:
        for note in notes:
            note.clip_id = self.id
        self.notes = list(notes)
        return self

    def extend_to(self, local_end_beat: float) -> Clip:
        """Grow the clip so that a clip-relative position lies inside it."""
        if local_end_beat > self.duration_beats:
            self.duration_beats = float(local_end_beat)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "track_id": self.track_id,
            "name": self.name,
            "start_beat": self.start_beat,
            "duration_beats": self.duration_beats,
            "color": self.color,
            "audio_url": self.audio_url,
            "notes": [n.to_dict() for n in self.notes],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], track_id: str | None = None) -> Clip:
        clip_id = data.get("id") or new_id()
        return cls(
            id=clip_id,
            track_id=track_id if track_id is not None else data.get("track_id"),
            name=data.get("name", DEFAULT_CLIP_NAME),
            start_beat=data.get("start_beat", 0.0),
            duration_beats=data.get("duration_beats", DEFAULT_CLIP_BEATS),
            color=data.get("color") or None,
            audio_url=data.get("audio_url") or None,
            notes=[Note.from_dict(n, clip_id) for n in data.get("notes", [])],
        )


# ── Track ──────────────────────────────────────────────────


@dataclass
class Track:
    """A lane of clips with mixer settings.  Solo is advisory, not exclusive."""

    name: str = "Track"
    type: str = "midi"
    color: str = TRACK_COLORS[0]
    volume: float = DEFAULT_TRACK_VOLUME
    pan: float = DEFAULT_TRACK_PAN
    muted: bool = False
    solo: bool = False
    armed: bool = False
    sort_order: int = 0
    project_id: str | None = None
    clips: list[Clip] = field(default_factory=list)
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        self.validate()
        for clip in self.clips:
            clip.track_id = self.id

    def validate(self) -> None:
        if self.type not in TRACK_TYPES:
            raise ValidationError(
                f"Track type must be one of {', '.join(TRACK_TYPES)}, got {self.type!r}"
            )
        _require_between("volume", self.volume, 0.0, 1.0)
        _require_between("pan", self.pan, -1.0, 1.0)

    @property
    def accepts_midi(self) -> bool:
        return self.type in MIDI_TRACK_TYPES

    def update(self, **changes: Any) -> Track:
        if "clips" in changes:
            raise ValidationError("Replace clips with add_clip()/remove_clip()")
        return _apply(self, changes)

    def add_clip(self, clip: Clip) -> Clip:
        clip.track_id = self.id
        self.clips.append(clip)
        return clip

    def remove_clip(self, clip_id: str) -> Clip | None:
        for i, clip in enumerate(self.clips):
            if clip.id == clip_id:
                return self.clips.pop(i)
        return None

    def find_clip(self, clip_id: str) -> Clip | None:
        for clip in self.clips:
            if clip.id == clip_id:
                return clip
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "color": self.color,
            "volume": self.volume,
            "pan": self.pan,
            "muted": self.muted,
            "solo": self.solo,
            "armed": self.armed,
            "sort_order": self.sort_order,
            "clips": [c.to_dict() for c in self.clips],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], project_id: str | None = None) -> Track:
        track_id = data.get("id") or new_id()
        return cls(
            id=track_id,
            project_id=project_id,
            name=data.get("name", "Track"),
            type=data.get("type", "midi"),
            color=data.get("color", TRACK_COLORS[0]),
            volume=data.get("volume", DEFAULT_TRACK_VOLUME),
            pan=data.get("pan", DEFAULT_TRACK_PAN),
            muted=bool(data.get("muted", False)),
            solo=bool(data.get("solo", False)),
            armed=bool(data.get("armed", False)),
            sort_order=data.get("sort_order", 0),
            clips=[Clip.from_dict(c, track_id) for c in data.get("clips", [])],
        )


# ── Project ────────────────────────────────────────────────


@dataclass
class Project:
    """Root of the entity tree.  A fully materialized Project is a ProjectTree."""

    name: str = DEFAULT_PROJECT_NAME
    bpm: int = BPM_DEFAULT
    time_signature: tuple[int, int] = DEFAULT_TIME_SIGNATURE
    sample_rate: int = DEFAULT_SAMPLE_RATE
    tracks: list[Track] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        self.bpm = clamp_bpm(_require_number("bpm", self.bpm))
        if len(self.time_signature) != 2:
            raise ValidationError(f"time_signature must be (numerator, denominator), got {self.time_signature!r}")
        self.time_signature = tuple(self.time_signature)
        self.validate()
        for track in self.tracks:
            track.project_id = self.id
        self.renumber_tracks()

    def validate(self) -> None:
        numerator, denominator = self.time_signature
        _require_int("time signature numerator", numerator, 1, 64)
        _require_int("time signature denominator", denominator, 1, 64)
        _require_int("sample_rate", self.sample_rate, 1, 10_000_000)
        _require_int("bpm", self.bpm, BPM_MIN, BPM_MAX)

    def validate_tree(self) -> None:
        """Re-check every entity; catches attributes assigned directly."""
        self.validate()
        for track in self.tracks:
            track.validate()
            for clip in track.clips:
                clip.validate()
                for note in clip.notes:
                    note.validate()

    def update(self, **changes: Any) -> Project:
        if "tracks" in changes:
            raise ValidationError("Replace tracks with add_track()/remove_track()")
        return _apply(self, changes)

    # ── Tracks ──

    def renumber_tracks(self) -> None:
        """Sync each track's sort order with its list position."""
        for i, track in enumerate(self.tracks):
            track.sort_order = i

    def next_track_color(self) -> str:
        return TRACK_COLORS[len(self.tracks) % len(TRACK_COLORS)]

    def add_track(self, track: Track) -> Track:
        track.project_id = self.id
        self.tracks.append(track)
        self.renumber_tracks()
        return track

    def remove_track(self, track_id: str) -> Track | None:
        for i, track in enumerate(self.tracks):
            if track.id == track_id:
                removed = self.tracks.pop(i)
                self.renumber_tracks()
                return removed
        return None

    def reorder_tracks(self, from_index: int, to_index: int) -> None:
        if not (0 <= from_index < len(self.tracks) and 0 <= to_index < len(self.tracks)):
            raise ValidationError(f"Track index out of range: {from_index} -> {to_index}")
        track = self.tracks.pop(from_index)
        self.tracks.insert(to_index, track)
        self.renumber_tracks()

    def find_track(self, track_id: str) -> Track | None:
        for track in self.tracks:
            if track.id == track_id:
                return track
        return None

    def find_clip(self, clip_id: str) -> tuple[Track, Clip] | None:
        for track in self.tracks:
            clip = track.find_clip(clip_id)
            if clip is not None:
                return track, clip
        return None

    def iter_clips(self) -> Iterator[tuple[Track, Clip]]:
        for track in self.tracks:
            for clip in track.clips:
                yield track, clip

    @property
    def note_count(self) -> int:
        return sum(len(clip.notes) for _, clip in self.iter_clips())

    # ── Serialization ──

    def to_dict(self, *, timestamps: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "bpm": self.bpm,
            "time_signature": list(self.time_signature),
            "sample_rate": self.sample_rate,
            "tracks": [t.to_dict() for t in self.tracks],
        }
        if timestamps:
            data["created_at"] = _iso(self.created_at)
            data["updated_at"] = _iso(self.updated_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Project:
        project_id = data.get("id") or new_id()
        return cls(
            id=project_id,
            name=data.get("name", DEFAULT_PROJECT_NAME),
            bpm=data.get("bpm", BPM_DEFAULT),
            time_signature=tuple(data.get("time_signature", DEFAULT_TIME_SIGNATURE)),
            sample_rate=data.get("sample_rate", DEFAULT_SAMPLE_RATE),
            tracks=[Track.from_dict(t, project_id) for t in data.get("tracks", [])],
            created_at=_parse_ts(data.get("created_at")),
            updated_at=_parse_ts(data.get("updated_at")),
        )

    def content_key(self) -> dict[str, Any]:
        """Serialized form with timestamps dropped and children in storage order.

        Tracks keep their list order; clips and notes are ordered by start
        beat (ties by id), which is the order a load returns them in.
        """
        data = self.to_dict(timestamps=False)
        for track in data["tracks"]:
            track["clips"].sort(key=lambda c: (c["start_beat"], c["id"]))
            for clip in track["clips"]:
                clip["notes"].sort(key=lambda n: (n["start_beat"], n["id"]))
        return data

    def same_content(self, other: Project) -> bool:
        return self.content_key() == other.content_key()


ProjectTree = Project


@dataclass(frozen=True, slots=True)
class ProjectSummary:
    """Project row without its children, for listings."""

    id: str
    name: str
    bpm: int
    time_signature: tuple[int, int]
    sample_rate: int
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "bpm": self.bpm,
            "time_signature": list(self.time_signature),
            "sample_rate": self.sample_rate,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ── Library ────────────────────────────────────────────────


@dataclass
class LibraryClip:
    """A reusable clip preset.  Not owned by any project or track."""

    name: str
    category: str = DEFAULT_LIBRARY_CATEGORY
    clip_type: str = DEFAULT_CLIP_TYPE
    duration_beats: float = DEFAULT_CLIP_BEATS
    bpm: int = BPM_DEFAULT
    color: str | None = None
    audio_file_id: str | None = None
    tags: str | None = None
    notes: list[Note] = field(default_factory=list)
    created_at: datetime | None = None
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        self.bpm = clamp_bpm(_require_number("bpm", self.bpm))
        self.validate()
        for note in self.notes:
            note.clip_id = self.id

    def validate(self) -> None:
        if not self.name:
            raise ValidationError("Library clip name must not be empty")
        if self.clip_type not in LIBRARY_CLIP_TYPES:
            raise ValidationError(f"clip_type must be one of {', '.join(LIBRARY_CLIP_TYPES)}, got {self.clip_type!r}")
        _require_positive("duration_beats", self.duration_beats)
        for note in self.notes:
            note.validate()

    @property
    def tag_list(self) -> list[str]:
        if not self.tags:
            return []
        return [t.strip() for t in self.tags.split(",") if t.strip()]

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match on name or tags."""
        q = query.lower()
        return q in self.name.lower() or (self.tags is not None and q in self.tags.lower())

    def update(self, **changes: Any) -> LibraryClip:
        return _apply(self, changes)

    @classmethod
    def from_clip(
        cls,
        clip: Clip,
        *,
        bpm: int = BPM_DEFAULT,
        category: str = DEFAULT_LIBRARY_CATEGORY,
        tags: str | None = None,
        name: str | None = None,
    ) -> LibraryClip:
        """Make a preset from a project clip (notes are copied with fresh ids)."""
        preset = cls(
            name=name or clip.name,
            category=category,
            clip_type="audio" if clip.audio_url else "midi",
            duration_beats=clip.duration_beats,
            bpm=bpm,
            color=clip.color,
            tags=tags,
        )
        preset.notes = [n.copy(clip_id=preset.id) for n in clip.notes]
        return preset

    def to_clip(self, start_beat: float = 0.0, track_id: str | None = None) -> Clip:
        """Instantiate the preset as a fresh project clip."""
        clip = Clip(
            track_id=track_id,
            name=self.name,
            start_beat=start_beat,
            duration_beats=self.duration_beats,
            color=self.color,
        )
        clip.set_notes([n.copy() for n in self.notes])
        return clip

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "clip_type": self.clip_type,
            "duration_beats": self.duration_beats,
            "bpm": self.bpm,
            "color": self.color,
            "audio_file_id": self.audio_file_id,
            "tags": self.tags,
            "note_count": len(self.notes),
            "notes": [n.to_dict() for n in self.notes],
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LibraryClip:
        clip_id = data.get("id") or new_id()
        return cls(
            id=clip_id,
            name=data["name"],
            category=data.get("category", DEFAULT_LIBRARY_CATEGORY),
            clip_type=data.get("clip_type", DEFAULT_CLIP_TYPE),
            duration_beats=data.get("duration_beats", DEFAULT_CLIP_BEATS),
            bpm=data.get("bpm", BPM_DEFAULT),
            color=data.get("color") or None,
            audio_file_id=data.get("audio_file_id") or None,
            tags=data.get("tags") or None,
            notes=[Note.from_dict(n, clip_id) for n in data.get("notes", [])],
            created_at=_parse_ts(data.get("created_at")),
        )


@dataclass(frozen=True, slots=True)
class AudioFileInfo:
    """Metadata of a stored audio payload."""

    id: str
    filename: str
    mime_type: str
    size_bytes: int
    duration_secs: float | None = None
    sample_rate: int | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "mime_type": self.mime_type,
            "size_bytes": self.size_bytes,
            "duration_secs": self.duration_secs,
            "sample_rate": self.sample_rate,
            "created_at": _iso(self.created_at),
        }


@dataclass
class AudioFile:
    """An opaque audio payload plus metadata; the bytes are never interpreted."""

    filename: str
    data: bytes
    mime_type: str = DEFAULT_AUDIO_MIME
    duration_secs: float | None = None
    sample_rate: int | None = DEFAULT_SAMPLE_RATE
    created_at: datetime | None = None
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        if not self.filename:
            raise ValidationError("Audio filename must not be empty")
        if not isinstance(self.data, (bytes, bytearray, memoryview)):
            raise ValidationError("Audio data must be bytes")
        self.data = bytes(self.data)

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    def info(self) -> AudioFileInfo:
        return AudioFileInfo(
            id=self.id,
            filename=self.filename,
            mime_type=self.mime_type,
            size_bytes=self.size_bytes,
            duration_secs=self.duration_secs,
            sample_rate=self.sample_rate,
            created_at=self.created_at,
        )
