"""Shared test fixtures for the Ampel notes tests."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure the repo root (pkg/, notes_server.py) is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from pkg.ampel.docstore import DocumentStore
from pkg.ampel.identity import IdentityProvider
from pkg.ampel.session import NotesSession


class TickingClock:
    """Deterministic clock: every call is one second later than the last."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "notes.db")


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def identity():
    return IdentityProvider()


@pytest.fixture
def signed_in(identity):
    """A full principal, linked from a guest."""
    identity.ensure_guest()
    return identity.sign_in("Ada")


@pytest.fixture
def store(db_path, identity, clock):
    return DocumentStore(db_path, identity=identity, clock=clock)


@pytest.fixture
def session(store, identity, signed_in):
    s = NotesSession(store, identity, confirm=lambda plan: True)
    s.start()
    yield s
    s.stop()
