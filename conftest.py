import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from libsync.circulation import Circulation
from libsync.services.notifications import Notifier

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock; call it to read the time, ``advance`` to move it."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []
        self.fail = False

    def notify(self, student_id, kind, message):
        if self.fail:
            raise RuntimeError("notification gateway down")
        self.sent.append((student_id, kind, message))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def db_file(tmp_path, request):
    # Each test gets its own database file
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def circ(db_file, clock, notifier):
    circulation = Circulation(db_file=db_file, notifier=notifier, clock=clock)
    yield circulation
    circulation.close()


@pytest.fixture
def book(circ):
    return circ.add_book("1", "Dune", "Frank Herbert", category="Fiction")


@pytest.fixture
def students(circ):
    return [circ.add_student(name, f"S{i:03d}") for i, name in enumerate(["Ada", "Brian", "Chen"], start=1)]


@pytest.fixture
def client(circ, monkeypatch):
    from libsync import api

    api.app.dependency_overrides[api.get_circulation] = lambda: circ
    try:
        yield TestClient(api.app)
    finally:
        api.app.dependency_overrides.clear()


@pytest.fixture
def cli_db(db_file, monkeypatch):
    """Point the CLI at the per-test database."""
    monkeypatch.setenv("LIBSYNC_DB_FILE", db_file)
    monkeypatch.setenv("LIBSYNC_CLI_OUTPUT", "plain")
    yield db_file
    os.environ.pop("LIBSYNC_CLI_OUTPUT", None)
