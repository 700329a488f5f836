"""Tests for llm_daw.core.store — mutations, notifications and session start."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import update

from llm_daw.core.constants import TRACK_COLORS
from llm_daw.core.errors import Failure, TransactionFailure, UnknownEntityError, ValidationError
from llm_daw.core.models import LibraryClip, Note, Project
from llm_daw.core.schema import NoteRow
from llm_daw.core.store import ProjectStore, StoreChange, open_project


@pytest.fixture
def store(project):
    return ProjectStore(project)


class TestNotifications:
    def test_mutation_notifies_and_dirties(self, store):
        changes = []
        store.on_change(changes.append)
        assert not store.dirty
        store.set_name("New")
        assert changes == [StoreChange("project", store.project_id)]
        assert store.dirty

    def test_mark_clean_respects_later_edits(self, store):
        revision = store.revision
        store.set_name("a")
        saved_at = store.revision
        store.set_name("b")
        assert store.mark_clean(saved_at) is False
        assert store.dirty
        assert store.mark_clean() is True
        assert revision < saved_at

    def test_hydrate_is_clean(self, store):
        changes = []
        store.on_change(changes.append)
        other = Project(name="Other")
        store.hydrate(other)
        assert store.project is other
        assert not store.dirty
        assert changes[0].kind == "hydrate"

    def test_failed_mutation_does_not_notify(self, store):
        changes = []
        store.on_change(changes.append)
        with pytest.raises(ValidationError):
            store.update_track(store.project.tracks[0].id, volume=3.0)
        assert changes == []
        assert not store.dirty


class TestProjectOps:
    def test_set_bpm_clamps(self, store):
        assert store.set_bpm(10) == 20
        assert store.set_bpm(400) == 300

    def test_time_signature(self, store):
        store.set_time_signature(7, 8)
        assert store.project.time_signature == (7, 8)
        with pytest.raises(ValidationError):
            store.set_time_signature(0, 8)


class TestTracks:
    def test_add_track_defaults(self):
        store = ProjectStore()
        first = store.add_track()
        second = store.add_track("instrument")
        assert (first.name, second.name) == ("Track 1", "Track 2")
        assert (first.color, second.color) == (TRACK_COLORS[0], TRACK_COLORS[1])
        assert second.sort_order == 1
        assert first.volume == 0.8

    def test_remove_track(self, store):
        lead = store.project.tracks[0]
        assert store.remove_track(lead.id) is lead
        assert store.project.tracks[0].sort_order == 0
        with pytest.raises(UnknownEntityError):
            store.remove_track(lead.id)

    def test_reorder(self, store):
        names = [t.name for t in store.project.tracks]
        store.reorder_tracks(1, 0)
        assert [t.name for t in store.project.tracks] == names[::-1]

    def test_sort_order_not_directly_editable(self, store):
        with pytest.raises(ValidationError):
            store.update_track(store.project.tracks[0].id, sort_order=5)

    def test_recording_target(self, store):
        lead, pad = store.project.tracks
        assert store.recording_target_track() is lead
        store.update_track(pad.id, armed=True)
        assert store.recording_target_track() is pad


class TestClips:
    def test_add_and_remove_clip(self, store):
        pad = store.project.tracks[1]
        clip = store.add_clip(pad.id, 4.0)
        assert clip.track_id == pad.id
        assert clip.duration_beats == 4.0
        assert store.find_clip(clip.id) is clip
        store.remove_clip(clip.id)
        assert store.find_clip(clip.id) is None

    def test_add_clip_unknown_track(self, store):
        with pytest.raises(UnknownEntityError):
            store.add_clip("nope", 0.0)

    def test_move_clip_between_tracks(self, store):
        lead, pad = store.project.tracks
        clip = lead.clips[0]
        store.move_clip(clip.id, pad.id, 12.0)
        assert clip not in lead.clips
        assert pad.clips == [clip]
        assert clip.track_id == pad.id
        assert clip.start_beat == 12.0

    def test_move_clip_rejects_negative_start(self, store):
        lead, pad = store.project.tracks
        clip = lead.clips[0]
        with pytest.raises(ValidationError):
            store.move_clip(clip.id, pad.id, -1.0)
        assert clip in lead.clips

    def test_update_clip(self, store):
        clip = store.project.tracks[0].clips[0]
        store.update_clip(clip.id, name="Hook", color="#ffffff")
        assert (clip.name, clip.color) == ("Hook", "#ffffff")
        with pytest.raises(ValidationError):
            store.update_clip(clip.id, track_id="other")

    def test_place_library_clip(self, store):
        preset = LibraryClip(name="Hat", notes=[Note(pitch=42, start_beat=0.0, duration_beats=0.25)])
        pad = store.project.tracks[1]
        clip = store.place_library_clip(preset, pad.id, 16.0)
        assert clip in pad.clips
        assert clip.start_beat == 16.0
        assert clip.notes[0].id != preset.notes[0].id


class TestNotes:
    def test_add_update_remove(self, store):
        clip = store.project.tracks[0].clips[1]
        note = store.add_note(clip.id, Note(pitch=60, start_beat=0.0, duration_beats=1.0))
        assert note.clip_id == clip.id
        store.update_note(clip.id, note.id, velocity=10)
        assert note.velocity == 10
        store.remove_note(clip.id, note.id)
        assert clip.notes == []
        with pytest.raises(UnknownEntityError):
            store.remove_note(clip.id, note.id)

    def test_add_note_extend_clip(self, store):
        clip = store.project.tracks[0].clips[1]
        store.add_note(clip.id, Note(pitch=60, start_beat=5.0, duration_beats=1.0), extend_clip=True)
        assert clip.duration_beats == 6.0

    def test_unknown_clip_is_key_error(self, store):
        with pytest.raises(KeyError):
            store.add_note("nope", Note(pitch=60, start_beat=0.0, duration_beats=1.0))


class TestMergeNotes:
    def test_merge_into_new_clip_on_target_track(self, store):
        generated = [
            {"pitch": 60, "start_beat": 0, "duration_beats": 1},
            {"pitch": 67, "start_beat": 4, "duration_beats": 1.5, "velocity": 70},
        ]
        clip = store.merge_notes(generated, start_beat=8.0)
        assert clip in store.project.tracks[0].clips
        assert clip.start_beat == 8.0
        assert [n.pitch for n in clip.notes] == [60, 67]
        assert clip.duration_beats == 8.0

    def test_merge_adds_to_existing_clip(self, store):
        clip = store.project.tracks[0].clips[0]
        store.merge_notes([Note(pitch=72, start_beat=1.0, duration_beats=1.0)], clip_id=clip.id)
        assert len(clip.notes) == 4
        assert clip.duration_beats == 4.0

    def test_merge_replace(self, store):
        clip = store.project.tracks[0].clips[0]
        store.merge_notes(
            [Note(pitch=72, start_beat=9.0, duration_beats=1.0)], clip_id=clip.id, replace=True,
        )
        assert [n.pitch for n in clip.notes] == [72]
        assert clip.duration_beats == 12.0

    def test_merge_gives_fresh_ids(self, store):
        note = Note(pitch=72, start_beat=0.0, duration_beats=1.0)
        clip = store.merge_notes([note])
        again = store.merge_notes([note], clip_id=clip.id)
        assert len({n.id for n in again.notes}) == 2

    def test_invalid_note_rejected(self, store):
        with pytest.raises(ValidationError):
            store.merge_notes([{"pitch": 200, "start_beat": 0, "duration_beats": 1}])


class TestSnapshot:
    def test_snapshot_is_independent(self, store):
        snap = store.snapshot()
        store.set_name("Changed")
        store.project.tracks[0].clips[0].notes[0].update(pitch=1)
        assert snap.name == "Demo"
        assert snap.tracks[0].clips[0].notes[0].pitch == 60


class TestOpenProject:
    def test_loads_saved_project(self, gateway, project):
        asyncio.run(gateway.save_project_tree(project))
        store = asyncio.run(open_project(gateway, project.id))
        assert store.project.same_content(project)
        assert not store.dirty
        assert not store.is_new

    def test_missing_project_starts_fresh(self, gateway):
        store = asyncio.run(open_project(gateway, "abc"))
        assert store.project_id == "abc"
        assert store.project.tracks == []
        assert store.is_new

    def test_failed_load_starts_fresh(self):
        class BrokenGateway:
            async def load_project_tree(self, project_id):
                return Failure(TransactionFailure("down"))

        store = asyncio.run(open_project(BrokenGateway(), "abc"))
        assert store.project_id == "abc"
        assert store.is_new

    def test_unloadable_rows_start_fresh(self, gateway, project):
        asyncio.run(gateway.save_project_tree(project))
        with gateway.engine.begin() as conn:
            conn.execute(update(NoteRow).values(pitch=300))
        store = asyncio.run(open_project(gateway, project.id))
        assert store.project_id == project.id
        assert store.project.tracks == []
        assert store.is_new

    def test_no_id(self, gateway):
        store = asyncio.run(open_project(gateway, None))
        assert store.project.name == "Untitled Project"
