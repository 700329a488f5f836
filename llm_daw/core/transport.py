"""Beat clock and the sound-engine trigger contract.

The recording coordinator only ever *reads* a clock and *triggers* an
engine; synthesis and audio scheduling live outside this package.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

import rtmidi

from .constants import BPM_DEFAULT, STATUS_NOTE_OFF, STATUS_NOTE_ON
from .models import clamp_bpm

log = logging.getLogger(__name__)


# ── Clocks ─────────────────────────────────────────────────


class TransportClock(Protocol):
    """Read-only beat position of the transport."""

    def current_beat(self) -> float: ...


class ManualClock:
    """A clock that only moves when told to (tests, offline rendering)."""

    def __init__(self, beat: float = 0.0) -> None:
        self._beat = float(beat)

    def current_beat(self) -> float:
        return self._beat

    def set_beat(self, beat: float) -> None:
        self._beat = float(beat)

    def advance(self, beats: float) -> float:
        self._beat += beats
        return self._beat


class TempoClock:
    """Wall-clock transport: beats advance at ``bpm`` while playing.

    Tempo changes re-anchor the clock so the current position is
    continuous across the change.
    """

    def __init__(self, bpm: float = BPM_DEFAULT, *, now: Callable[[], float] = time.perf_counter) -> None:
        self._now = now
        self._bpm = clamp_bpm(bpm)
        self._anchor_beat = 0.0
        self._anchor_time = 0.0
        self._playing = False

    @property
    def bpm(self) -> int:
        return self._bpm

    @property
    def is_playing(self) -> bool:
        return self._playing

    def current_beat(self) -> float:
        if not self._playing:
            return self._anchor_beat
        return self._anchor_beat + (self._now() - self._anchor_time) * self._bpm / 60.0

    def play(self) -> None:
        if self._playing:
            return
        self._anchor_time = self._now()
        self._playing = True

    def pause(self) -> None:
        self._anchor_beat = self.current_beat()
        self._playing = False

    def stop(self) -> None:
        self._playing = False
        self._anchor_beat = 0.0

    def seek(self, beat: float) -> None:
        self._anchor_beat = max(0.0, float(beat))
        self._anchor_time = self._now()

    def set_bpm(self, bpm: float) -> None:
        self._anchor_beat = self.current_beat()
        self._anchor_time = self._now()
        self._bpm = clamp_bpm(bpm)


# ── Sound engines ──────────────────────────────────────────


class SoundEngine(Protocol):
    """Live note triggers.  ``note_on`` implicitly prepares the track's voice."""

    def note_on(self, track_id: str, track_type: str, pitch: int, velocity: int) -> None: ...

    def note_off(self, track_id: str, pitch: int) -> None: ...


class NullSoundEngine:
    """Silent engine; remembers sounding notes so callers can inspect them."""

    def __init__(self) -> None:
        self.sounding: set[tuple[str, int]] = set()

    def note_on(self, track_id: str, track_type: str, pitch: int, velocity: int) -> None:
        self.sounding.add((track_id, pitch))

    def note_off(self, track_id: str, pitch: int) -> None:
        self.sounding.discard((track_id, pitch))


class MidiOutputEngine:
    """Forward triggers to a system MIDI synthesizer through rtmidi.

    Each track gets its own MIDI channel in order of first use; the
    percussion channel (10) is skipped.
    """

    _CHANNELS = [ch for ch in range(16) if ch != 9]

    def __init__(self, port_hint: str = "") -> None:
        self._midi_out: rtmidi.MidiOut | None = None
        self._port_name = ""
        self._channels: dict[str, int] = {}
        self._sounding: set[tuple[int, int]] = set()
        self._open_port(port_hint.lower())

    @property
    def available(self) -> bool:
        return self._midi_out is not None

    @property
    def port_name(self) -> str:
        return self._port_name

    def _open_port(self, hint: str) -> None:
        try:
            out = rtmidi.MidiOut()
            ports = out.get_ports()
            if not ports:
                log.warning("No MIDI output ports available")
                out.delete()
                return
            target_idx = 0
            for i, name in enumerate(ports):
                lowered = name.lower()
                if (hint and hint in lowered) or (not hint and ("wavetable" in lowered or "synth" in lowered)):
                    target_idx = i
                    break
            out.open_port(target_idx)
            self._midi_out = out
            self._port_name = ports[target_idx]
            log.info("MIDI output opened: %s", self._port_name)
        except (rtmidi.RtMidiError, OSError, RuntimeError):
            log.warning("Failed to open MIDI output port", exc_info=True)

    def channel_for(self, track_id: str) -> int:
        channel = self._channels.get(track_id)
        if channel is None:
            channel = self._CHANNELS[len(self._channels) % len(self._CHANNELS)]
            self._channels[track_id] = channel
        return channel

    def note_on(self, track_id: str, track_type: str, pitch: int, velocity: int) -> None:
        if self._midi_out is None:
            return
        channel = self.channel_for(track_id)
        self._midi_out.send_message([STATUS_NOTE_ON | channel, pitch & 0x7F, velocity & 0x7F])
        self._sounding.add((channel, pitch & 0x7F))

    def note_off(self, track_id: str, pitch: int) -> None:
        if self._midi_out is None or track_id not in self._channels:
            return
        channel = self._channels[track_id]
        self._midi_out.send_message([STATUS_NOTE_OFF | channel, pitch & 0x7F, 0])
        self._sounding.discard((channel, pitch & 0x7F))

    def all_notes_off(self) -> None:
        if self._midi_out is None:
            return
        for channel, pitch in list(self._sounding):
            self._midi_out.send_message([STATUS_NOTE_OFF | channel, pitch, 0])
        self._sounding.clear()

    def close(self) -> None:
        if self._midi_out is None:
            return
        self.all_notes_off()
        self._midi_out.close_port()
        self._midi_out.delete()
        self._midi_out = None
        log.info("MIDI output closed")
