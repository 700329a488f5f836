"""Recording coordinator: live MIDI note events to beat-positioned Notes.

Runs on the event loop that owns the :class:`~llm_daw.core.store.ProjectStore`.
Monitoring (sound engine triggers) is independent of recording; while a
session is active, held notes are kept in a pitch-keyed pending map and
become Notes when released.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .constants import BEATS_PER_BAR, MIN_NOTE_BEATS
from .midi_capture import MidiCaptureService, NoteEvent
from .models import Clip, Note, round_up_to_bar
from .observers import Unsubscribe
from .store import ProjectStore
from .transport import SoundEngine, TransportClock

log = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingNote:
    """A held note: clip-relative start and the Note On velocity."""

    local_start: float
    velocity: int


class RecordingCoordinator:
    """Joins capture events with clock readings and writes Notes to the store.

    Session state machine: ``idle -> recording -> idle``.  Stopping does not
    materialize notes that are still held; a note must be released to be
    recorded.
    """

    def __init__(
        self,
        store: ProjectStore,
        clock: TransportClock,
        engine: SoundEngine,
        *,
        min_note_beats: float = MIN_NOTE_BEATS,
    ) -> None:
        self._store = store
        self._clock = clock
        self._engine = engine
        self._min_note_beats = min_note_beats
        self._pending: dict[int, PendingNote] = {}
        self._held: set[int] = set()
        self._recording_clip_id: str | None = None
        self._recording_start_beat: float | None = None
        self._unsubscribers: list[Unsubscribe] = []

    # ── State ──

    @property
    def is_recording(self) -> bool:
        return self._recording_clip_id is not None

    @property
    def recording_clip_id(self) -> str | None:
        return self._recording_clip_id

    @property
    def recording_start_beat(self) -> float | None:
        return self._recording_start_beat

    @property
    def held_pitches(self) -> frozenset[int]:
        """Pitches currently held down (visual feedback)."""
        return frozenset(self._held)

    @property
    def pending_notes(self) -> dict[int, PendingNote]:
        return dict(self._pending)

    # ── Wiring ──

    def attach(self, capture: MidiCaptureService) -> None:
        """Subscribe to a capture service's note events."""
        self.detach()
        self._unsubscribers = [
            capture.on_note_on(self.handle_note_on),
            capture.on_note_off(self.handle_note_off),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    # ── Session ──

    def start(self) -> Clip | None:
        """Begin a session on the target track at the current beat.

        Returns the recording clip, or None when no track can take MIDI.
        Starting while already recording returns the active clip.
        """
        if self.is_recording:
            return self._store.find_clip(self._recording_clip_id)
        track = self._store.recording_target_track()
        if track is None:
            log.warning("No MIDI track to record into")
            return None
        start_beat = max(0.0, self._clock.current_beat())
        clip = self._store.add_clip(track.id, start_beat, float(BEATS_PER_BAR))
        self._pending.clear()
        self._recording_start_beat = start_beat
        self._recording_clip_id = clip.id
        log.info("Recording on %s from beat %.3f", track.name, start_beat)
        return clip

    def stop(self) -> Clip | None:
        """End the session; held notes are discarded.

        The clip is sized to the elapsed time rounded up to whole bars
        (at least one bar) and never shrinks below the notes it grew to.
        """
        if not self.is_recording:
            return None
        clip_id, start_beat = self._recording_clip_id, self._recording_start_beat
        self._recording_clip_id = None
        self._recording_start_beat = None
        dropped = len(self._pending)
        self._pending.clear()

        clip = self._store.find_clip(clip_id)
        if clip is None:
            # Removed by an edit during the session
            return None
        elapsed = max(1.0, self._clock.current_beat() - start_beat)
        final = round_up_to_bar(elapsed)
        if final > clip.duration_beats:
            self._store.update_clip(clip_id, duration_beats=final)
        log.info("Recording stopped: %d notes, %d held note(s) dropped", len(clip.notes), dropped)
        return clip

    # ── Event handlers ──

    def handle_note_on(self, event: NoteEvent) -> None:
        track = self._store.recording_target_track()
        if track is None:
            return
        self._engine.note_on(track.id, track.type, event.pitch, event.velocity)
        self._held.add(event.pitch)

        if self.is_recording and self._recording_start_beat is not None:
            local_start = max(0.0, self._clock.current_beat() - self._recording_start_beat)
            # Latest Note On for a pitch wins
            self._pending[event.pitch] = PendingNote(local_start, event.velocity)

    def handle_note_off(self, event: NoteEvent) -> None:
        track = self._store.recording_target_track()
        if track is not None:
            self._engine.note_off(track.id, event.pitch)
        self._held.discard(event.pitch)

        if not self.is_recording:
            return
        pending = self._pending.pop(event.pitch, None)
        if pending is None:
            return
        local_end = self._clock.current_beat() - self._recording_start_beat
        duration = max(self._min_note_beats, local_end - pending.local_start)
        note = Note(
            pitch=event.pitch,
            start_beat=pending.local_start,
            duration_beats=duration,
            velocity=pending.velocity,
        )
        if self._store.find_clip(self._recording_clip_id) is None:
            log.warning("Recording clip %s vanished, note dropped", self._recording_clip_id)
            return
        self._store.add_note(self._recording_clip_id, note, extend_clip=True)
