"""Tests for llm_daw.core.models — invariants, mutation and dict round trips."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from llm_daw.core.constants import TRACK_COLORS
from llm_daw.core.errors import ValidationError
from llm_daw.core.models import (
    AudioFile,
    Clip,
    LibraryClip,
    Note,
    Project,
    Track,
    clamp_bpm,
    round_up_to_bar,
)


class TestNote:
    def test_defaults(self):
        note = Note(pitch=60, start_beat=0.0, duration_beats=1.0)
        assert note.velocity == 100
        assert note.end_beat == 1.0
        assert len(note.id) == 32

    @pytest.mark.parametrize("pitch", [-1, 128, 60.5, True])
    def test_bad_pitch(self, pitch):
        with pytest.raises(ValidationError):
            Note(pitch=pitch, start_beat=0.0, duration_beats=1.0)

    @pytest.mark.parametrize("velocity", [-1, 128])
    def test_bad_velocity(self, velocity):
        with pytest.raises(ValidationError):
            Note(pitch=60, start_beat=0.0, duration_beats=1.0, velocity=velocity)

    def test_negative_start(self):
        with pytest.raises(ValidationError):
            Note(pitch=60, start_beat=-0.01, duration_beats=1.0)

    @pytest.mark.parametrize("duration", [0, -1.0, float("nan")])
    def test_non_positive_duration(self, duration):
        with pytest.raises(ValidationError):
            Note(pitch=60, start_beat=0.0, duration_beats=duration)

    def test_boundaries_accepted(self):
        Note(pitch=0, start_beat=0.0, duration_beats=0.001, velocity=0)
        Note(pitch=127, start_beat=0.0, duration_beats=1.0, velocity=127)

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            Note(pitch=200, start_beat=0.0, duration_beats=1.0)

    def test_update_is_atomic(self):
        note = Note(pitch=60, start_beat=1.0, duration_beats=1.0)
        with pytest.raises(ValidationError):
            note.update(pitch=61, velocity=300)
        assert note.pitch == 60
        assert note.velocity == 100

    def test_update_returns_self(self):
        note = Note(pitch=60, start_beat=1.0, duration_beats=1.0)
        assert note.update(pitch=62) is note
        assert note.pitch == 62

    def test_id_is_immutable(self):
        note = Note(pitch=60, start_beat=1.0, duration_beats=1.0)
        with pytest.raises(ValidationError):
            note.update(id="other")

    def test_unknown_field(self):
        note = Note(pitch=60, start_beat=1.0, duration_beats=1.0)
        with pytest.raises(ValidationError):
            note.update(colour="red")

    def test_copy_gets_fresh_id(self):
        note = Note(pitch=60, start_beat=1.0, duration_beats=1.0, clip_id="a")
        dup = note.copy(clip_id="b")
        assert dup.id != note.id
        assert (dup.pitch, dup.start_beat, dup.clip_id) == (60, 1.0, "b")

    def test_from_dict_accepts_whole_floats(self):
        note = Note.from_dict({"pitch": 60.0, "start_beat": 0, "duration_beats": 1, "velocity": 99.0})
        assert (note.pitch, note.velocity) == (60, 99)
        assert isinstance(note.pitch, int)

    @pytest.mark.parametrize("field_name,value", [("pitch", 60.7), ("velocity", 99.6)])
    def test_from_dict_rejects_fractional(self, field_name, value):
        data = {"pitch": 60, "start_beat": 0, "duration_beats": 1, "velocity": 100}
        data[field_name] = value
        with pytest.raises(ValidationError):
            Note.from_dict(data)


class TestClip:
    def test_notes_get_clip_id(self):
        clip = Clip(notes=[Note(pitch=60, start_beat=0.0, duration_beats=1.0)])
        assert clip.notes[0].clip_id == clip.id

    def test_zero_duration_rejected(self):
        with pytest.raises(ValidationError):
            Clip(duration_beats=0)

    def test_update_rejects_notes(self):
        clip = Clip()
        with pytest.raises(ValidationError):
            clip.update(notes=[])

    def test_extend_to_only_grows(self):
        clip = Clip(duration_beats=4.0)
        clip.extend_to(2.0)
        assert clip.duration_beats == 4.0
        clip.extend_to(5.5)
        assert clip.duration_beats == 5.5

    def test_add_find_remove_note(self):
        clip = Clip()
        note = clip.add_note(Note(pitch=60, start_beat=0.0, duration_beats=1.0))
        assert clip.find_note(note.id) is note
        assert clip.remove_note(note.id) is note
        assert clip.remove_note(note.id) is None


class TestTrack:
    def test_bad_type(self):
        with pytest.raises(ValidationError):
            Track(type="video")

    @pytest.mark.parametrize("field,value", [("volume", 1.1), ("volume", -0.1), ("pan", 1.5), ("pan", -1.01)])
    def test_mixer_ranges(self, field, value):
        with pytest.raises(ValidationError):
            Track(**{field: value})

    def test_accepts_midi(self):
        assert Track(type="midi").accepts_midi
        assert Track(type="instrument").accepts_midi
        assert not Track(type="audio").accepts_midi

    def test_solo_is_not_exclusive(self):
        a, b = Track(solo=True), Track(solo=True)
        project = Project(tracks=[a, b])
        assert all(t.solo for t in project.tracks)


class TestProject:
    @pytest.mark.parametrize("bpm,expected", [(5, 20), (20, 20), (120, 120), (999, 300)])
    def test_bpm_clamped(self, bpm, expected):
        assert Project(bpm=bpm).bpm == expected

    def test_update_clamps_bpm(self):
        project = Project()
        project.update(bpm=1000)
        assert project.bpm == 300

    def test_bad_time_signature(self):
        with pytest.raises(ValidationError):
            Project(time_signature=(0, 4))
        with pytest.raises(ValidationError):
            Project(time_signature=(4,))

    def test_tracks_renumbered(self):
        project = Project(tracks=[Track(name="a"), Track(name="b")])
        assert [t.sort_order for t in project.tracks] == [0, 1]
        assert all(t.project_id == project.id for t in project.tracks)

    def test_reorder(self):
        project = Project(tracks=[Track(name="a"), Track(name="b"), Track(name="c")])
        project.reorder_tracks(0, 2)
        assert [t.name for t in project.tracks] == ["b", "c", "a"]
        assert [t.sort_order for t in project.tracks] == [0, 1, 2]

    def test_reorder_out_of_range(self):
        project = Project(tracks=[Track()])
        with pytest.raises(ValidationError):
            project.reorder_tracks(0, 3)

    def test_next_track_color_cycles(self):
        project = Project(tracks=[Track() for _ in range(len(TRACK_COLORS))])
        assert project.next_track_color() == TRACK_COLORS[0]

    def test_find_clip(self, project):
        lead = project.tracks[0]
        track, clip = project.find_clip(lead.clips[1].id)
        assert track is lead
        assert clip.name == "Empty"
        assert project.find_clip("missing") is None

    def test_validate_tree_catches_direct_assignment(self, project):
        project.tracks[0].clips[0].notes[0].pitch = 300
        with pytest.raises(ValidationError):
            project.validate_tree()

    def test_dict_round_trip(self, project):
        again = Project.from_dict(project.to_dict())
        assert again.same_content(project)
        assert again.tracks[0].clips[0].notes[0].clip_id == again.tracks[0].clips[0].id

    def test_same_content_ignores_order_of_clips_and_timestamps(self, project):
        other = Project.from_dict(project.to_dict())
        other.tracks[0].clips.reverse()
        other.updated_at = datetime.now(timezone.utc)
        assert other.same_content(project)

    def test_note_count(self, project):
        assert project.note_count == 3


class TestLibraryClip:
    def test_from_clip_copies_notes(self, project):
        clip = project.tracks[0].clips[0]
        preset = LibraryClip.from_clip(clip, bpm=96, category="bass", tags="funk, slap")
        assert preset.name == "Riff"
        assert len(preset.notes) == 3
        assert {n.id for n in preset.notes}.isdisjoint({n.id for n in clip.notes})
        assert all(n.clip_id == preset.id for n in preset.notes)
        assert preset.tag_list == ["funk", "slap"]

    def test_to_clip_fresh_ids(self):
        preset = LibraryClip(name="Hat", notes=[Note(pitch=42, start_beat=0.0, duration_beats=0.25)])
        clip = preset.to_clip(8.0, track_id="t1")
        assert clip.start_beat == 8.0
        assert clip.notes[0].id != preset.notes[0].id
        assert clip.notes[0].clip_id == clip.id

    def test_matches(self):
        preset = LibraryClip(name="Deep Bass", tags="house,dark")
        assert preset.matches("bass")
        assert preset.matches("DARK")
        assert not preset.matches("piano")

    def test_bad_clip_type(self):
        with pytest.raises(ValidationError):
            LibraryClip(name="x", clip_type="video")

    def test_empty_name(self):
        with pytest.raises(ValidationError):
            LibraryClip(name="")

    def test_to_dict_note_count(self):
        preset = LibraryClip(name="x", notes=[Note(pitch=1, start_beat=0.0, duration_beats=1.0)])
        data = preset.to_dict()
        assert data["note_count"] == 1
        assert LibraryClip.from_dict(data).notes[0].pitch == 1


class TestAudioFile:
    def test_size(self):
        audio = AudioFile(filename="kick.wav", data=b"RIFF1234")
        assert audio.size_bytes == 8
        assert audio.info().size_bytes == 8

    def test_requires_bytes(self):
        with pytest.raises(ValidationError):
            AudioFile(filename="kick.wav", data="text")


class TestHelpers:
    def test_clamp_bpm_rounds(self):
        assert clamp_bpm(120.4) == 120

    @pytest.mark.parametrize("beats,expected", [(0.5, 4.0), (4.0, 4.0), (4.1, 8.0), (9, 12.0)])
    def test_round_up_to_bar(self, beats, expected):
        assert round_up_to_bar(beats) == expected
