"""
Shared fixtures for the Glide test suite.
"""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import glide_common  # noqa: E402
from protocol import InjectionError, VolumeUp, VolumeDown  # noqa: E402


class FakeSurface:
    """Records injection calls instead of touching the OS pointer."""

    def __init__(self, position=(100, 100)):
        self.position = position
        self.calls = []
        self.fail_next = 0
        self._lock = threading.Lock()

    def _maybe_fail(self, name):
        if self.fail_next:
            self.fail_next -= 1
            raise InjectionError(f"{name} refused")

    def get_pointer_position(self):
        return self.position

    def set_pointer_position(self, x, y):
        self._maybe_fail("move")
        with self._lock:
            self.position = (x, y)
            self.calls.append(("move", x, y))

    def click_left(self):
        self._maybe_fail("click_left")
        with self._lock:
            self.calls.append(("click", "left"))

    def click_right(self):
        self._maybe_fail("click_right")
        with self._lock:
            self.calls.append(("click", "right"))

    def press_media_key(self, command):
        self._maybe_fail("media")
        assert command in (VolumeUp, VolumeDown)
        with self._lock:
            self.calls.append(("media", command.value))

    def clicks(self):
        return [c for c in self.calls if c[0] == "click"]


@pytest.fixture(scope="session", autouse=True)
def _logging(tmp_path_factory):
    glide_common.setup_logging(log_dir=str(tmp_path_factory.mktemp("logs")))


@pytest.fixture
def surface():
    return FakeSurface()
