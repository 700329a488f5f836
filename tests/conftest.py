"""Shared test fixtures."""

from __future__ import annotations

import pytest

from llm_daw.core.models import Clip, Note, Project, Track
from llm_daw.core.persistence import PersistenceGateway


@pytest.fixture
def gateway():
    """Gateway on a private in-memory SQLite database."""
    gw = PersistenceGateway("sqlite://")
    gw.create_schema()
    yield gw
    gw.dispose()


def build_project(name: str = "Demo", note_pitches: tuple[int, ...] = (60, 64, 67)) -> Project:
    """Two tracks; the first holds one clip with one note per pitch."""
    notes = [
        Note(pitch=p, start_beat=float(i), duration_beats=0.5, velocity=90 + i)
        for i, p in enumerate(note_pitches)
    ]
    lead = Track(name="Lead", type="midi", clips=[
        Clip(name="Riff", start_beat=0.0, duration_beats=4.0, notes=notes),
        Clip(name="Empty", start_beat=8.0, duration_beats=4.0),
    ])
    pad = Track(name="Pad", type="instrument", volume=0.5, pan=-0.25)
    return Project(name=name, bpm=96, time_signature=(3, 4), tracks=[lead, pad])


@pytest.fixture
def project() -> Project:
    return build_project()


@pytest.fixture
def make_project():
    return build_project
