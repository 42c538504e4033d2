"""Tests for album planning."""

from pathlib import Path

import pytest
from flac_to_mp3 import Album, ConvertTask, CopyTask, PathError, discover, plan

from conftest import make_tree


@pytest.fixture
def roots(tmp_path: Path) -> tuple[Path, Path]:
    """Create input and output roots."""
    src = tmp_path / "in"
    dst = tmp_path / "out"
    src.mkdir()
    return src, dst


class TestPlan:
    """Tests for plan()."""

    def test_flac_becomes_convert_task(self, roots: tuple[Path, Path]) -> None:
        src, dst = roots
        make_tree(src, {"Artist/Album/01 Intro.flac": b""})
        (album,) = discover(src)

        tasks = plan(album, src, dst, 3)

        assert tasks == [
            ConvertTask(
                input=src / "Artist/Album/01 Intro.flac",
                output=dst / "Artist/Album/01 Intro.mp3",
                quality=3,
            )
        ]

    def test_other_files_become_copy_tasks(self, roots: tuple[Path, Path]) -> None:
        src, dst = roots
        make_tree(src, {"A/cover.jpg": b"", "A/01.mp3": b""})
        (album,) = discover(src)

        tasks = plan(album, src, dst, 0)

        assert set(tasks) == {
            CopyTask(input=src / "A/cover.jpg", output=dst / "A/cover.jpg"),
            CopyTask(input=src / "A/01.mp3", output=dst / "A/01.mp3"),
        }

    @pytest.mark.parametrize("name", ["song.flac", "song.FLAC", "song.Flac"])
    def test_convert_output_is_always_lowercase_mp3(
        self, roots: tuple[Path, Path], name: str
    ) -> None:
        """The output extension does not depend on the input's casing."""
        src, dst = roots
        make_tree(src, {"A/" + name: b""})
        (album,) = discover(src)

        (task,) = plan(album, src, dst, 0)

        assert isinstance(task, ConvertTask)
        assert task.output.name == "song.mp3"

    def test_creates_mirrored_output_directory(self, roots: tuple[Path, Path]) -> None:
        """The output directory exists once planning returns."""
        src, dst = roots
        make_tree(src, {"Deep/Nested/Album/a.flac": b""})
        (album,) = discover(src)

        plan(album, src, dst, 0)

        assert (dst / "Deep" / "Nested" / "Album").is_dir()

    def test_is_idempotent(self, roots: tuple[Path, Path]) -> None:
        """Planning twice neither fails nor changes the result."""
        src, dst = roots
        make_tree(src, {"A/a.flac": b""})
        (album,) = discover(src)

        assert plan(album, src, dst, 0) == plan(album, src, dst, 0)

    def test_album_outside_input_root_raises(self, tmp_path: Path) -> None:
        outside = tmp_path / "elsewhere"
        album = Album(path=outside, files=frozenset({outside / "a.flac"}))

        with pytest.raises(PathError, match="not under input root"):
            plan(album, tmp_path / "in", tmp_path / "out", 0)

    def test_output_dir_creation_failure_raises_oserror(
        self, roots: tuple[Path, Path]
    ) -> None:
        """A file in the way of the output directory is an OSError."""
        src, dst = roots
        make_tree(src, {"A/a.flac": b""})
        dst.mkdir()
        (dst / "A").write_bytes(b"not a directory")
        (album,) = discover(src)

        with pytest.raises(OSError):
            plan(album, src, dst, 0)

    @pytest.mark.parametrize("quality", [-1, 10, 2.5, "3"])
    def test_rejects_invalid_quality(self, roots: tuple[Path, Path], quality) -> None:
        src, dst = roots
        make_tree(src, {"A/a.flac": b""})
        (album,) = discover(src)

        with pytest.raises(ValueError):
            plan(album, src, dst, quality)

    def test_colliding_outputs_raise(self, roots: tuple[Path, Path]) -> None:
        """song.flac and song.FLAC cannot both become song.mp3."""
        src, dst = roots
        album_dir = src / "A"
        album = Album(
            path=album_dir,
            files=frozenset({album_dir / "song.flac", album_dir / "song.FLAC"}),
        )

        with pytest.raises(PathError, match="both map to"):
            plan(album, src, dst, 0)
