"""Tests for llm_daw.main — argument parsing, session store setup and the listing commands."""

from __future__ import annotations

import asyncio
from unittest import mock

from llm_daw.core.config import ConfigManager
from llm_daw.core.models import Project
from llm_daw.core.persistence import PersistenceGateway
from llm_daw.main import _parse_args, _prepare_store, main, run_session


class TestArgs:
    def test_defaults(self):
        args = _parse_args([])
        assert args.project is None
        assert not args.record
        assert not args.new

    def test_flags(self):
        args = _parse_args(["--project", "abc", "--record", "--device", "Keys", "--bpm", "90"])
        assert (args.project, args.record, args.device, args.bpm) == ("abc", True, "Keys", 90.0)


class TestListing:
    def test_list_projects(self, tmp_path, capsys):
        url = f"sqlite:///{(tmp_path / 'daw.db').as_posix()}"
        gateway = PersistenceGateway(url)
        gateway.create_schema()
        project = Project(name="Song")
        asyncio.run(gateway.save_project_tree(project))
        gateway.dispose()

        config = ConfigManager(config_dir=tmp_path / "cfg")
        asyncio.run(run_session(_parse_args(["--db", url, "--list-projects"]), config))
        out = capsys.readouterr().out
        assert project.id in out
        assert "Song" in out

    def test_list_devices_without_midi(self, capsys):
        with mock.patch("mido.get_input_names", side_effect=OSError("no driver")):
            main(["--list-devices"])
        assert "not available" in capsys.readouterr().out

    def test_list_devices(self, capsys):
        with mock.patch("mido.get_input_names", return_value=["Keys A"]):
            main(["--list-devices"])
        assert "Keys A  (connected)" in capsys.readouterr().out


class TestPrepareStore:
    def test_stored_project_without_tracks_is_kept(self, gateway, tmp_path):
        stored = Project(name="Sketch", bpm=90)
        asyncio.run(gateway.save_project_tree(stored))
        config = ConfigManager(config_dir=tmp_path / "cfg")

        store = asyncio.run(_prepare_store(gateway, _parse_args(["--project", stored.id]), config))
        assert (store.project.name, store.project.bpm) == ("Sketch", 90)
        assert store.project.tracks == []
        assert not store.dirty
        assert config.get("project.last_project_id") == stored.id

    def test_new_project_gets_defaults(self, gateway, tmp_path):
        config = ConfigManager(config_dir=tmp_path / "cfg")
        store = asyncio.run(_prepare_store(gateway, _parse_args(["--new", "--bpm", "100"]), config))
        assert store.project.name == "Untitled Project"
        assert store.project.bpm == 100
        assert [t.type for t in store.project.tracks] == ["instrument"]
        assert store.dirty

    def test_unknown_id_starts_fresh_under_that_id(self, gateway, tmp_path):
        config = ConfigManager(config_dir=tmp_path / "cfg")
        store = asyncio.run(_prepare_store(gateway, _parse_args(["--project", "later"]), config))
        assert store.project_id == "later"
        assert len(store.project.tracks) == 1
