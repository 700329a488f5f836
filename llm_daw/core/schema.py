"""SQLAlchemy table definitions for projects, the clip library and audio files.

Tables:
- projects / tracks / clips / notes: the project tree, children cascade on delete
- library_clips / library_notes: the unparented preset catalog
- audio_files: opaque audio payloads; library clips keep a SET NULL reference
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ProjectRow(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, default="Untitled")
    bpm: Mapped[int] = mapped_column(Integer, nullable=False, default=120)
    time_sig_n: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    time_sig_d: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    sample_rate: Mapped[int] = mapped_column(Integer, nullable=False, default=44100)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now,
    )

    def __repr__(self) -> str:
        return f"<ProjectRow(id={self.id}, name='{self.name}', bpm={self.bpm})>"


class TrackRow(Base):
    __tablename__ = "tracks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False, default="Track")
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="midi")
    color: Mapped[str] = mapped_column(String(16), nullable=False, default="#1a3f7a")
    volume: Mapped[float] = mapped_column(Float, nullable=False, default=0.8)
    pan: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    muted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    solo: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    armed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<TrackRow(id={self.id}, name='{self.name}', project_id={self.project_id})>"


class ClipRow(Base):
    __tablename__ = "clips"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    track_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("tracks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False, default="Clip")
    start_beat: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    duration_beats: Mapped[float] = mapped_column(Float, nullable=False, default=4.0)
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    audio_url: Mapped[str | None] = mapped_column(Text, nullable=True)


class NoteRow(Base):
    __tablename__ = "notes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    clip_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("clips.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    pitch: Mapped[int] = mapped_column(Integer, nullable=False)
    start_beat: Mapped[float] = mapped_column(Float, nullable=False)
    duration_beats: Mapped[float] = mapped_column(Float, nullable=False)
    velocity: Mapped[int] = mapped_column(Integer, nullable=False, default=100)


class AudioFileRow(Base):
    __tablename__ = "audio_files"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(128), nullable=False, default="audio/wav")
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_secs: Mapped[float | None] = mapped_column(Float, nullable=True)
    sample_rate: Mapped[int | None] = mapped_column(Integer, nullable=True, default=44100)
    data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)


class LibraryClipRow(Base):
    __tablename__ = "library_clips"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False, default="uncategorized", index=True)
    clip_type: Mapped[str] = mapped_column(String(16), nullable=False, default="midi")
    duration_beats: Mapped[float] = mapped_column(Float, nullable=False, default=4.0)
    bpm: Mapped[int] = mapped_column(Integer, nullable=False, default=120)
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    audio_file_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("audio_files.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    tags: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)


class LibraryNoteRow(Base):
    __tablename__ = "library_notes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    clip_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("library_clips.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    pitch: Mapped[int] = mapped_column(Integer, nullable=False)
    start_beat: Mapped[float] = mapped_column(Float, nullable=False)
    duration_beats: Mapped[float] = mapped_column(Float, nullable=False)
    velocity: Mapped[int] = mapped_column(Integer, nullable=False, default=100)


# ── Engine ─────────────────────────────────────────────────


def _on_sqlite_connect(dbapi_connection, connection_record) -> None:
    # Let SQLAlchemy emit BEGIN itself; pysqlite's implicit BEGIN skips SELECTs
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _on_sqlite_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN")


def make_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine whose transactions are serializable.

    SQLite transactions are serializable by nature once BEGIN is emitted
    explicitly; SQLite connections also get foreign-key enforcement switched
    on, otherwise the storage-layer cascades would silently not happen.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url, echo=echo, isolation_level="SERIALIZABLE")

    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if parsed.database in (None, "", ":memory:"):
        # One shared connection, or every worker thread would see its own empty
        # database; PersistenceGateway serializes transactions on it
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, echo=echo, **kwargs)
    event.listen(engine, "connect", _on_sqlite_connect)
    event.listen(engine, "begin", _on_sqlite_begin)
    return engine
