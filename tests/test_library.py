"""Tests for llm_daw.core.library — LibraryCatalog search, filter and storage."""

from __future__ import annotations

import asyncio

import pytest

from llm_daw.core.errors import Ack, Failure, TransactionFailure
from llm_daw.core.library import LibraryCatalog
from llm_daw.core.models import LibraryClip, Note


def _clip(name, category="uncategorized", tags=None):
    return LibraryClip(name=name, category=category, tags=tags)


@pytest.fixture
def catalog():
    return LibraryCatalog([
        _clip("Deep Bass", "bass", "house, Dark"),
        _clip("Slap", "bass", "funk"),
        _clip("Pad Swell", "pads", "ambient,dark"),
        _clip("Hat Loop", "drums"),
    ])


class TestLibraryCatalog:
    def test_count_and_get(self, catalog):
        assert catalog.count == 4
        first = catalog.clips[0]
        assert catalog.get(first.id) is first
        assert catalog.get("missing") is None

    def test_search(self, catalog):
        assert {c.name for c in catalog.search("dark")} == {"Deep Bass", "Pad Swell"}
        assert [c.name for c in catalog.search("LOOP")] == ["Hat Loop"]

    def test_blank_search_returns_all(self, catalog):
        assert len(catalog.search("  ")) == 4

    def test_filter_by_category(self, catalog):
        assert [c.name for c in catalog.filter_by_category("bass")] == ["Deep Bass", "Slap"]

    def test_filter_by_tag_is_exact(self, catalog):
        assert {c.name for c in catalog.filter_by_tag("dark")} == {"Deep Bass", "Pad Swell"}
        assert catalog.filter_by_tag("dar") == []

    def test_all_categories_and_tags(self, catalog):
        assert catalog.all_categories() == ["bass", "drums", "pads"]
        assert catalog.all_tags() == ["Dark", "ambient", "dark", "funk", "house"]

    def test_add_replaces_same_id(self, catalog):
        clip = catalog.clips[2]
        clip.update(name="Renamed")
        catalog.add(clip)
        assert catalog.count == 4
        assert catalog.clips[0] is clip

    def test_remove(self, catalog):
        clip = catalog.clips[0]
        assert catalog.remove(clip.id) is True
        assert catalog.remove(clip.id) is False


class TestCatalogStorage:
    def test_save_refresh_delete(self, gateway):
        async def scenario():
            catalog = LibraryCatalog()
            preset = LibraryClip(
                name="Arp", category="synth", notes=[Note(pitch=60, start_beat=0.0, duration_beats=0.5)],
            )
            result = await catalog.save(gateway, preset)
            fresh = LibraryCatalog()
            listed = await fresh.refresh(gateway, category="synth")
            deleted = await fresh.delete(gateway, preset.id)
            return catalog, fresh, result, listed, deleted, preset

        catalog, fresh, result, listed, deleted, preset = asyncio.run(scenario())
        assert result == Ack(preset.id)
        assert catalog.get(preset.id) is preset
        assert [c.name for c in listed] == ["Arp"]
        assert listed[0].notes[0].pitch == 60
        assert deleted is True
        assert fresh.count == 0

    def test_failed_refresh_and_delete_keep_contents(self, catalog):
        class DownGateway:
            async def list_library_clips(self, category=None, search=None):
                return Failure(TransactionFailure("database is down"))

            async def delete_library_clip(self, clip_id):
                return Failure(TransactionFailure("database is down"))

        before = [c.id for c in catalog.clips]
        refreshed = asyncio.run(catalog.refresh(DownGateway()))
        deleted = asyncio.run(catalog.delete(DownGateway(), before[0]))
        assert isinstance(refreshed, Failure)
        assert isinstance(deleted, Failure)
        assert [c.id for c in catalog.clips] == before
