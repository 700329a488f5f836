"""Relational persistence for project trees, the clip library and audio files.

Writes use a *replace strategy*: a save deletes the stored children of the
entity and reinserts the full incoming set inside one transaction, so the
stored form is always a canonical copy of the in-memory tree and there is no
diff state to drift.  Any failure rolls the whole save back and is returned
as :class:`~llm_daw.core.errors.Failure`.

Concurrent saves of the same project id are *last commit wins*; there is no
version column.  Callers serialize saves per project (see ``autosave``).

The public operations are coroutines.  The blocking database work runs on a
worker thread so the event loop keeps delivering MIDI and UI events while a
save is in flight.  On an in-memory SQLite database every thread shares one
connection, and operations run one at a time.  Reads and deletes that fail
return :class:`~llm_daw.core.errors.Failure` too.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from contextlib import nullcontext
from typing import Any, TypeVar

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import Ack, Failure, NotFound, TransactionFailure, ValidationError
from .models import (
    AudioFile,
    AudioFileInfo,
    Clip,
    LibraryClip,
    Note,
    Project,
    ProjectSummary,
    Track,
)
from .schema import (
    AudioFileRow,
    Base,
    ClipRow,
    LibraryClipRow,
    LibraryNoteRow,
    NoteRow,
    ProjectRow,
    TrackRow,
    make_engine,
    utc_now,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

_NO_SYNC = {"synchronize_session": False}


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _failure(what: str, exc: BaseException) -> Failure:
    failure = TransactionFailure(f"{what} failed: {exc}")
    failure.__cause__ = exc
    log.warning("%s failed", what, exc_info=True)
    return Failure(failure)


# ── Row <-> entity mapping ─────────────────────────────────


def _note_values(note: Note, clip_id: str) -> dict:
    return {
        "id": note.id,
        "clip_id": clip_id,
        "pitch": note.pitch,
        "start_beat": note.start_beat,
        "duration_beats": note.duration_beats,
        "velocity": note.velocity,
    }


def _note_from_row(row: NoteRow | LibraryNoteRow) -> Note:
    return Note(
        id=row.id,
        clip_id=row.clip_id,
        pitch=row.pitch,
        start_beat=row.start_beat,
        duration_beats=row.duration_beats,
        velocity=row.velocity,
    )


def _track_values(track: Track, project_id: str, sort_order: int) -> dict:
    return {
        "id": track.id,
        "project_id": project_id,
        "name": track.name,
        "type": track.type,
        "color": track.color,
        "volume": track.volume,
        "pan": track.pan,
        "muted": track.muted,
        "solo": track.solo,
        "armed": track.armed,
        "sort_order": sort_order,
    }


def _clip_values(clip: Clip, track_id: str) -> dict:
    return {
        "id": clip.id,
        "track_id": track_id,
        "name": clip.name,
        "start_beat": clip.start_beat,
        "duration_beats": clip.duration_beats,
        "color": clip.color,
        "audio_url": clip.audio_url,
    }


def _library_clip_from_row(row: LibraryClipRow, notes: list[Note]) -> LibraryClip:
    return LibraryClip(
        id=row.id,
        name=row.name,
        category=row.category,
        clip_type=row.clip_type,
        duration_beats=row.duration_beats,
        bpm=row.bpm,
        color=row.color,
        audio_file_id=row.audio_file_id,
        tags=row.tags,
        notes=notes,
        created_at=row.created_at,
    )


# ── Gateway ────────────────────────────────────────────────


class PersistenceGateway:
    """Maps the entity model to the relational schema and owns transactions."""

    def __init__(self, engine: Engine | str, *, echo: bool = False) -> None:
        if isinstance(engine, str):
            engine = make_engine(engine, echo=echo)
        self._engine = engine
        self._sessions = sessionmaker(engine, expire_on_commit=False)
        # A StaticPool hands every worker thread the same DBAPI connection,
        # so at most one transaction may use it at a time
        self._serial = threading.Lock() if isinstance(engine.pool, StaticPool) else nullcontext()

    @classmethod
    def from_config(cls, config) -> PersistenceGateway:
        """Build a gateway from a ConfigManager's ``database`` section."""
        return cls(config.database_url(), echo=bool(config.get("database.echo", False)))

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        """Create missing tables and indices (safe to call repeatedly)."""
        with self._serial:
            Base.metadata.create_all(self._engine)

    def dispose(self) -> None:
        self._engine.dispose()

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(self._call_serialized, func, *args)

    def _call_serialized(self, func: Callable[..., T], *args: Any) -> T:
        with self._serial:
            return func(*args)

    @staticmethod
    def _guarded(what: str, func: Callable[..., T], *args: Any) -> T | Failure:
        """Run a read or delete; database errors and unloadable rows become ``Failure``."""
        try:
            return func(*args)
        except (SQLAlchemyError, ValidationError) as exc:
            return _failure(what, exc)

    # ── Projects ──

    async def load_project_tree(self, project_id: str) -> Project | NotFound | Failure:
        """Load a fully materialized project, or ``NotFound``."""
        return await self._run(
            self._guarded, f"Loading project {project_id}", self._load_project_tree, project_id,
        )

    async def save_project_tree(self, tree: Project) -> Ack | Failure:
        """Replace the stored tree of ``tree.id`` with ``tree`` atomically."""
        return await self._run(self._save_project_tree, tree)

    async def list_projects(self) -> list[ProjectSummary] | Failure:
        return await self._run(self._guarded, "Listing projects", self._list_projects)

    async def delete_project(self, project_id: str) -> bool | Failure:
        return await self._run(
            self._guarded, f"Deleting project {project_id}", self._delete, ProjectRow, project_id, "project",
        )

    async def save_track(self, project_id: str, track: Track) -> Ack | Failure:
        """Upsert one track of a stored project and replace its clips."""
        return await self._run(self._save_track, project_id, track)

    async def delete_track(self, track_id: str) -> bool | Failure:
        return await self._run(
            self._guarded, f"Deleting track {track_id}", self._delete, TrackRow, track_id, "track",
        )

    # ── Library ──

    async def load_library_clip(self, clip_id: str) -> LibraryClip | NotFound | Failure:
        return await self._run(
            self._guarded, f"Loading library clip {clip_id}", self._load_library_clip, clip_id,
        )

    async def list_library_clips(
        self,
        category: str | None = None,
        search: str | None = None,
    ) -> list[LibraryClip] | Failure:
        """Newest first; ``search`` matches name or tags case-insensitively."""
        return await self._run(
            self._guarded, "Listing library clips", self._list_library_clips, category, search,
        )

    async def save_library_clip(self, clip: LibraryClip) -> Ack | Failure:
        """Insert or overwrite a library clip and replace its note set."""
        return await self._run(self._save_library_clip, clip)

    async def delete_library_clip(self, clip_id: str) -> bool | Failure:
        return await self._run(
            self._guarded, f"Deleting library clip {clip_id}",
            self._delete, LibraryClipRow, clip_id, "library clip",
        )

    # ── Audio ──

    async def save_audio_file(self, audio: AudioFile) -> Ack | Failure:
        return await self._run(self._save_audio_file, audio)

    async def load_audio_file(self, file_id: str) -> AudioFile | NotFound | Failure:
        return await self._run(self._guarded, f"Loading audio file {file_id}", self._load_audio_file, file_id)

    async def list_audio_files(self) -> list[AudioFileInfo] | Failure:
        return await self._run(self._guarded, "Listing audio files", self._list_audio_files)

    # ── Blocking implementations ───────────────────────────

    def _load_project_tree(self, project_id: str) -> Project | NotFound:
        with self._sessions.begin() as session:
            row = session.get(ProjectRow, project_id)
            if row is None:
                return NotFound("project", project_id)

            track_rows = session.scalars(
                select(TrackRow)
                .where(TrackRow.project_id == project_id)
                .order_by(TrackRow.sort_order, TrackRow.id)
            ).all()
            track_ids = [t.id for t in track_rows]

            clips_by_track: dict[str, list[ClipRow]] = defaultdict(list)
            if track_ids:
                for clip_row in session.scalars(
                    select(ClipRow)
                    .where(ClipRow.track_id.in_(track_ids))
                    .order_by(ClipRow.start_beat, ClipRow.id)
                ):
                    clips_by_track[clip_row.track_id].append(clip_row)
            clip_ids = [c.id for rows in clips_by_track.values() for c in rows]

            notes_by_clip: dict[str, list[Note]] = defaultdict(list)
            if clip_ids:
                for note_row in session.scalars(
                    select(NoteRow)
                    .where(NoteRow.clip_id.in_(clip_ids))
                    .order_by(NoteRow.start_beat, NoteRow.id)
                ):
                    notes_by_clip[note_row.clip_id].append(_note_from_row(note_row))

        tracks = []
        for track_row in track_rows:
            clips = [
                Clip(
                    id=c.id,
                    track_id=c.track_id,
                    name=c.name,
                    start_beat=c.start_beat,
                    duration_beats=c.duration_beats,
                    color=c.color,
                    audio_url=c.audio_url,
                    notes=notes_by_clip[c.id],
                )
                for c in clips_by_track[track_row.id]
            ]
            tracks.append(Track(
                id=track_row.id,
                project_id=project_id,
                name=track_row.name,
                type=track_row.type,
                color=track_row.color,
                volume=track_row.volume,
                pan=track_row.pan,
                muted=track_row.muted,
                solo=track_row.solo,
                armed=track_row.armed,
                sort_order=track_row.sort_order,
                clips=clips,
            ))

        log.debug("Loaded project %s (%d tracks, %d clips)", project_id, len(tracks), len(clip_ids))
        return Project(
            id=row.id,
            name=row.name,
            bpm=row.bpm,
            time_signature=(row.time_sig_n, row.time_sig_d),
            sample_rate=row.sample_rate,
            tracks=tracks,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _save_project_tree(self, tree: Project) -> Ack | Failure:
        try:
            tree.validate_tree()
        except ValidationError as exc:
            return Failure(exc)
        try:
            with self._sessions.begin() as session:
                self._upsert_project(session, tree)
                # Storage-layer cascade removes the clips and notes as well
                session.execute(
                    delete(TrackRow).where(TrackRow.project_id == tree.id).execution_options(**_NO_SYNC)
                )
                for position, track in enumerate(tree.tracks):
                    session.execute(insert(TrackRow).values(**_track_values(track, tree.id, position)))
                    self._insert_clips(session, track)
        except SQLAlchemyError as exc:
            return _failure(f"Saving project {tree.id}", exc)
        log.debug("Saved project %s (%d tracks, %d notes)", tree.id, len(tree.tracks), tree.note_count)
        return Ack(tree.id)

    @staticmethod
    def _upsert_project(session: Session, tree: Project) -> None:
        now = utc_now()
        values = {
            "name": tree.name,
            "bpm": tree.bpm,
            "time_sig_n": tree.time_signature[0],
            "time_sig_d": tree.time_signature[1],
            "sample_rate": tree.sample_rate,
            "updated_at": now,
        }
        exists = session.scalar(select(ProjectRow.id).where(ProjectRow.id == tree.id))
        if exists is None:
            session.execute(insert(ProjectRow).values(id=tree.id, created_at=now, **values))
        else:
            session.execute(
                update(ProjectRow).where(ProjectRow.id == tree.id).values(**values).execution_options(**_NO_SYNC)
            )

    @staticmethod
    def _insert_clips(session: Session, track: Track) -> None:
        # One statement per row: a failing row aborts the save at that row
        for clip in track.clips:
            session.execute(insert(ClipRow).values(**_clip_values(clip, track.id)))
            for note in clip.notes:
                session.execute(insert(NoteRow).values(**_note_values(note, clip.id)))

    def _save_track(self, project_id: str, track: Track) -> Ack | Failure:
        try:
            track.validate()
            for clip in track.clips:
                clip.validate()
                for note in clip.notes:
                    note.validate()
        except ValidationError as exc:
            return Failure(exc)
        try:
            with self._sessions.begin() as session:
                session.execute(delete(TrackRow).where(TrackRow.id == track.id).execution_options(**_NO_SYNC))
                session.execute(insert(TrackRow).values(**_track_values(track, project_id, track.sort_order)))
                self._insert_clips(session, track)
        except SQLAlchemyError as exc:
            return _failure(f"Saving track {track.id}", exc)
        return Ack(track.id)

    def _list_projects(self) -> list[ProjectSummary]:
        with self._sessions() as session:
            rows = session.scalars(
                select(ProjectRow).order_by(ProjectRow.updated_at.desc(), ProjectRow.id)
            ).all()
        return [
            ProjectSummary(
                id=r.id,
                name=r.name,
                bpm=r.bpm,
                time_signature=(r.time_sig_n, r.time_sig_d),
                sample_rate=r.sample_rate,
                created_at=r.created_at,
                updated_at=r.updated_at,
            )
            for r in rows
        ]

    def _delete(self, row_type: type[Base], entity_id: str, kind: str) -> bool:
        with self._sessions.begin() as session:
            result = session.execute(
                delete(row_type).where(row_type.id == entity_id).execution_options(**_NO_SYNC)
            )
        deleted = result.rowcount > 0
        if deleted:
            log.info("Deleted %s %s", kind, entity_id)
        return deleted

    def _load_library_clip(self, clip_id: str) -> LibraryClip | NotFound:
        with self._sessions.begin() as session:
            row = session.get(LibraryClipRow, clip_id)
            if row is None:
                return NotFound("library clip", clip_id)
            notes = [
                _note_from_row(n)
                for n in session.scalars(
                    select(LibraryNoteRow)
                    .where(LibraryNoteRow.clip_id == clip_id)
                    .order_by(LibraryNoteRow.start_beat, LibraryNoteRow.id)
                )
            ]
            return _library_clip_from_row(row, notes)

    def _list_library_clips(self, category: str | None, search: str | None) -> list[LibraryClip]:
        query = select(LibraryClipRow)
        if category:
            query = query.where(LibraryClipRow.category == category)
        if search:
            pattern = _like_pattern(search)
            query = query.where(or_(
                LibraryClipRow.name.ilike(pattern, escape="\\"),
                LibraryClipRow.tags.ilike(pattern, escape="\\"),
            ))
        query = query.order_by(LibraryClipRow.created_at.desc(), LibraryClipRow.id)

        with self._sessions.begin() as session:
            rows = session.scalars(query).all()
            notes_by_clip: dict[str, list[Note]] = defaultdict(list)
            clip_ids = [r.id for r in rows]
            if clip_ids:
                for note_row in session.scalars(
                    select(LibraryNoteRow)
                    .where(LibraryNoteRow.clip_id.in_(clip_ids))
                    .order_by(LibraryNoteRow.start_beat, LibraryNoteRow.id)
                ):
                    notes_by_clip[note_row.clip_id].append(_note_from_row(note_row))
            return [_library_clip_from_row(r, notes_by_clip[r.id]) for r in rows]

    def _save_library_clip(self, clip: LibraryClip) -> Ack | Failure:
        try:
            clip.validate()
        except ValidationError as exc:
            return Failure(exc)
        values = {
            "name": clip.name,
            "category": clip.category,
            "clip_type": clip.clip_type,
            "duration_beats": clip.duration_beats,
            "bpm": clip.bpm,
            "color": clip.color,
            "audio_file_id": clip.audio_file_id,
            "tags": clip.tags,
        }
        try:
            with self._sessions.begin() as session:
                exists = session.scalar(select(LibraryClipRow.id).where(LibraryClipRow.id == clip.id))
                if exists is None:
                    session.execute(insert(LibraryClipRow).values(id=clip.id, created_at=utc_now(), **values))
                else:
                    session.execute(
                        update(LibraryClipRow)
                        .where(LibraryClipRow.id == clip.id)
                        .values(**values)
                        .execution_options(**_NO_SYNC)
                    )
                session.execute(
                    delete(LibraryNoteRow).where(LibraryNoteRow.clip_id == clip.id).execution_options(**_NO_SYNC)
                )
                for note in clip.notes:
                    session.execute(insert(LibraryNoteRow).values(**_note_values(note, clip.id)))
        except SQLAlchemyError as exc:
            return _failure(f"Saving library clip {clip.id}", exc)
        return Ack(clip.id)

    def _save_audio_file(self, audio: AudioFile) -> Ack | Failure:
        try:
            with self._sessions.begin() as session:
                session.execute(insert(AudioFileRow).values(
                    id=audio.id,
                    filename=audio.filename,
                    mime_type=audio.mime_type,
                    size_bytes=audio.size_bytes,
                    duration_secs=audio.duration_secs,
                    sample_rate=audio.sample_rate,
                    data=audio.data,
                    created_at=audio.created_at or utc_now(),
                ))
        except SQLAlchemyError as exc:
            return _failure(f"Saving audio file {audio.filename}", exc)
        log.info("Stored audio file %s (%d bytes)", audio.filename, audio.size_bytes)
        return Ack(audio.id)

    def _load_audio_file(self, file_id: str) -> AudioFile | NotFound:
        with self._sessions() as session:
            row = session.get(AudioFileRow, file_id)
            if row is None:
                return NotFound("audio file", file_id)
            return AudioFile(
                id=row.id,
                filename=row.filename,
                mime_type=row.mime_type,
                duration_secs=row.duration_secs,
                sample_rate=row.sample_rate,
                data=row.data,
                created_at=row.created_at,
            )

    def _list_audio_files(self) -> list[AudioFileInfo]:
        with self._sessions() as session:
            rows = session.execute(
                select(
                    AudioFileRow.id,
                    AudioFileRow.filename,
                    AudioFileRow.mime_type,
                    AudioFileRow.size_bytes,
                    AudioFileRow.duration_secs,
                    AudioFileRow.sample_rate,
                    AudioFileRow.created_at,
                ).order_by(AudioFileRow.created_at.desc(), AudioFileRow.id)
            ).all()
        return [
            AudioFileInfo(
                id=r.id,
                filename=r.filename,
                mime_type=r.mime_type,
                size_bytes=r.size_bytes,
                duration_secs=r.duration_secs,
                sample_rate=r.sample_rate,
                created_at=r.created_at,
            )
            for r in rows
        ]
