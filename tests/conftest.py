import logging
import threading
from pathlib import Path

import pytest

import s3_watch


class FakeNotifier:
    """Stands in for DirectoryNotifier; records watch registrations."""

    def __init__(self, fail_on=()):
        self.added = []
        self.removed = []
        self.fail_on = set(fail_on)

    def add(self, path):
        if path in self.fail_on:
            raise OSError(28, "inotify watch limit reached", path)
        self.added.append(path)

    def remove(self, path):
        self.removed.append(path)


class RecordingDispatcher:
    """Collects actions instead of handing them to a worker pool."""

    def __init__(self):
        self.actions = []
        self._lock = threading.Lock()

    def submit(self, action):
        with self._lock:
            self.actions.append(action)

    def kinds(self):
        return [(a.kind, a.path) for a in self.actions]


@pytest.fixture
def logger():
    return logging.getLogger("tests.s3_watch")


@pytest.fixture
def root(tmp_path: Path) -> Path:
    r = tmp_path / "root"
    r.mkdir()
    return r


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def state(notifier, logger):
    return s3_watch.MirrorState(notifier, logger)


@pytest.fixture
def detector(state, dispatcher, root, logger):
    ignore = s3_watch.IgnoreMatcher(root, s3_watch.DEFAULT_IGNORE_PATTERNS + ["build/"])
    return s3_watch.ChangeDetector(state, dispatcher, ignore, logger)
