"""Test fixtures and configuration."""

import threading
from pathlib import Path

import pytest
from flac_to_mp3 import ExternalToolError


class FakeTranscoder:
    """Transcoder double that writes a marker file instead of running ffmpeg.

    Inputs whose file name is in ``fail_names`` raise ExternalToolError.
    """

    def __init__(self, fail_names=()):
        self.fail_names = set(fail_names)
        self.calls = []
        self._lock = threading.Lock()

    def transcode(self, input: Path, output: Path, quality: int) -> None:
        with self._lock:
            self.calls.append((input, output, quality))
        if input.name in self.fail_names:
            raise ExternalToolError("fake failure", input, output, returncode=1)
        output.write_bytes(b"MP3:" + input.read_bytes())


def make_tree(root: Path, files: dict[str, bytes]) -> Path:
    """Create ``files`` (relative path -> content) under ``root``."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return root


@pytest.fixture
def transcoder() -> FakeTranscoder:
    """Create a transcoder double that always succeeds."""
    return FakeTranscoder()


@pytest.fixture
def library(tmp_path: Path) -> Path:
    """Create a small library: a FLAC album, a mixed album and an MP3 album."""
    return make_tree(
        tmp_path / "in",
        {
            "Artist/X/01.flac": b"x1",
            "Artist/X/02.flac": b"x2",
            "Artist/Y/01.flac": b"y1",
            "Artist/Y/02.mp3": b"y2",
            "Other/Z/01.mp3": b"z1",
            "Other/Z/02.mp3": b"z2",
            "Other/Z/03.mp3": b"z3",
        },
    )
