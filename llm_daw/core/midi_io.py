"""Standard MIDI File import and export of clips and projects via mido."""

from __future__ import annotations

import io
import math
from collections import defaultdict
from dataclasses import dataclass, field

import mido

from .constants import BPM_DEFAULT, TICKS_PER_BEAT
from .models import Clip, Note, Project

_NOTE_OFF_FIRST = 0
_NOTE_ON_SECOND = 1


@dataclass
class ImportedMidi:
    """Notes of every track flattened into one list, positions in beats."""

    notes: list[Note] = field(default_factory=list)
    bpm: float = BPM_DEFAULT
    duration_beats: float = 0.0


def _note_messages(notes: list[tuple[float, Note]], channel: int = 0) -> list[mido.Message]:
    """Delta-timed note messages for ``(absolute start beat, note)`` pairs."""
    timeline: list[tuple[int, int, mido.Message]] = []
    for start, note in notes:
        on_tick = round(start * TICKS_PER_BEAT)
        off_tick = max(on_tick + 1, round((start + note.duration_beats) * TICKS_PER_BEAT))
        timeline.append((on_tick, _NOTE_ON_SECOND, mido.Message(
            "note_on", channel=channel, note=note.pitch, velocity=max(1, note.velocity),
        )))
        timeline.append((off_tick, _NOTE_OFF_FIRST, mido.Message(
            "note_off", channel=channel, note=note.pitch, velocity=0,
        )))
    timeline.sort(key=lambda item: (item[0], item[1]))

    messages = []
    prev_tick = 0
    for tick, _, msg in timeline:
        messages.append(msg.copy(time=tick - prev_tick))
        prev_tick = tick
    return messages


def _to_bytes(mid: mido.MidiFile) -> bytes:
    buf = io.BytesIO()
    mid.save(file=buf)
    return buf.getvalue()


def export_clip(clip: Clip, bpm: float = BPM_DEFAULT) -> bytes:
    """Type 0 file of one clip; note positions stay clip-relative."""
    mid = mido.MidiFile(type=0, ticks_per_beat=TICKS_PER_BEAT)
    track = mido.MidiTrack()
    mid.tracks.append(track)
    track.append(mido.MetaMessage("set_tempo", tempo=mido.bpm2tempo(bpm), time=0))
    track.extend(_note_messages([(n.start_beat, n) for n in clip.notes]))
    track.append(mido.MetaMessage("end_of_track", time=0))
    return _to_bytes(mid)


def export_project(project: Project) -> bytes:
    """Type 1 file: a tempo track plus one named track per MIDI-capable track."""
    mid = mido.MidiFile(type=1, ticks_per_beat=TICKS_PER_BEAT)
    tempo_track = mido.MidiTrack()
    tempo_track.append(mido.MetaMessage("set_tempo", tempo=mido.bpm2tempo(project.bpm), time=0))
    numerator, denominator = project.time_signature
    if denominator & (denominator - 1) == 0:
        # SMF can only encode power-of-two denominators
        tempo_track.append(mido.MetaMessage(
            "time_signature", numerator=numerator, denominator=denominator, time=0,
        ))
    tempo_track.append(mido.MetaMessage("end_of_track", time=0))
    mid.tracks.append(tempo_track)

    midi_tracks = [t for t in project.tracks if t.accepts_midi]
    for index, track in enumerate(midi_tracks):
        channel = index if index < 9 else (index + 1) % 16
        out = mido.MidiTrack()
        out.append(mido.MetaMessage("track_name", name=track.name, time=0))
        placed = [
            (clip.start_beat + note.start_beat, note)
            for clip in track.clips
            for note in clip.notes
        ]
        out.extend(_note_messages(placed, channel))
        out.append(mido.MetaMessage("end_of_track", time=0))
        mid.tracks.append(out)
    return _to_bytes(mid)


def import_midi(data: bytes) -> ImportedMidi:
    """Parse a Standard MIDI File into Notes.

    Tempo is the first ``set_tempo`` in the file, 120 if there is none.
    Duration is the end of the last note rounded up to a whole beat.
    Notes still sounding at the end of their track are dropped.
    """
    mid = mido.MidiFile(file=io.BytesIO(data))
    ppq = mid.ticks_per_beat

    first_tempo: tuple[int, int] | None = None
    notes: list[Note] = []
    for track in mid.tracks:
        tick = 0
        held: dict[tuple[int, int], list[tuple[int, int]]] = defaultdict(list)
        for msg in track:
            tick += msg.time
            if msg.type == "set_tempo":
                if first_tempo is None or tick < first_tempo[0]:
                    first_tempo = (tick, msg.tempo)
            elif msg.type == "note_on" and msg.velocity > 0:
                held[(msg.channel, msg.note)].append((tick, msg.velocity))
            elif msg.type in ("note_off", "note_on"):
                starts = held.get((msg.channel, msg.note))
                if not starts:
                    continue
                start_tick, velocity = starts.pop(0)
                duration = (tick - start_tick) / ppq
                if duration <= 0:
                    continue
                notes.append(Note(
                    pitch=msg.note,
                    start_beat=start_tick / ppq,
                    duration_beats=duration,
                    velocity=velocity,
                ))

    notes.sort(key=lambda n: (n.start_beat, n.pitch))
    bpm = round(mido.tempo2bpm(first_tempo[1]), 3) if first_tempo else float(BPM_DEFAULT)
    end = max((n.end_beat for n in notes), default=0.0)
    return ImportedMidi(notes=notes, bpm=bpm, duration_beats=float(math.ceil(end)))
