#!/usr/bin/env python3
"""
flac_to_mp3.py — Mirror a FLAC music library as MP3.

Walks an input directory (recursively), treats every directory that holds
files as an album, and rebuilds the tree under an output directory: .flac
files are transcoded to .mp3 with ffmpeg (LAME VBR), everything else (cover
art, cue sheets, existing .mp3s) is copied verbatim.

Albums that already mix .flac and .mp3 files are skipped, since that usually
means a half-converted source folder.

All albums are planned up front (output directories created), then the flat
list of per-file tasks is drained by a thread pool.  A failing file never
stops the batch; the final summary reports succeeded / failed / skipped.

Usage (CLI):
    flac-to-mp3 INPUT_DIR OUTPUT_DIR [OPTIONS]

Usage (library):
    from flac_to_mp3 import main
    summary = main(input_dir="./flac", output_dir="./mp3", quality=2)

Requirements:  Python 3.9+.  ffmpeg is provided automatically via static-ffmpeg.
"""

from __future__ import annotations

import argparse
import logging
import os
import shutil
import subprocess
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Set, Union

# ── Formats and encoder settings ─────────────────────────────────────────────

LOSSLESS_EXT = ".flac"
LOSSY_EXT = ".mp3"
LOSSY_CODEC = "libmp3lame"
FFMPEG = "ffmpeg"

# LAME VBR quality: 0 is best / largest, 9 is worst / smallest
MIN_QUALITY = 0
MAX_QUALITY = 9
DEFAULT_QUALITY = 0

log = logging.getLogger("flac_to_mp3")
log.setLevel(logging.DEBUG)


# ── Errors ───────────────────────────────────────────────────────────────────

class ConversionError(Exception):
    """Base exception for flac_to_mp3.

    Filesystem failures (enumeration, mkdir, copy) are not wrapped; they
    surface as the built-in ``OSError``.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(ConversionError):
    """The scan root does not exist or cannot be read.  Aborts the run."""


class PathError(ConversionError):
    """A path could not be made relative to the input root, or has no name."""


class ExternalToolError(ConversionError):
    """The transcoder could not be started or exited with a non-zero status."""

    def __init__(self, message: str, input: Path, output: Path,
                 returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.input = input
        self.output = output
        self.returncode = returncode


# ── Albums and tasks ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Album:
    """A directory and the files directly inside it."""

    path: Path
    files: frozenset


@dataclass(frozen=True)
class ConvertTask:
    input: Path
    output: Path
    quality: int


@dataclass(frozen=True)
class CopyTask:
    input: Path
    output: Path


Task = Union[ConvertTask, CopyTask]


def _ext(path):
    return path.suffix.lower()


def check_quality(quality):
    """Return *quality* if it is a valid LAME VBR level, else raise ValueError."""
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise ValueError("quality must be an integer, got {!r}".format(quality))
    if not MIN_QUALITY <= quality <= MAX_QUALITY:
        raise ValueError("quality must be between {} and {}, got {}".format(
            MIN_QUALITY, MAX_QUALITY, quality))
    return quality


# ── Album discovery ──────────────────────────────────────────────────────────

def resolve_scan_root(input_dir, target=None) -> Path:
    """
    Return the directory to scan: *input_dir*, or *input_dir* / *target*
    when a subdirectory is given.  Raises NotFoundError if it is missing.
    """
    scan_root = Path(input_dir)
    if target is not None:
        scan_root = scan_root / target
    if not scan_root.is_dir():
        raise NotFoundError("Scan path does not exist: {}".format(scan_root))
    return scan_root


def discover(root, errors=None) -> Set[Album]:
    """
    Recursively group the regular files under *root* into albums, one per
    parent directory.

    Symbolic links are followed; a directory whose real path was already
    visited is not descended into again, so link cycles terminate.  The
    returned set has no meaningful order.

    Directories that cannot be listed are logged and skipped.  When
    *errors* is a list, the ``OSError`` for each of them is appended to it.
    """
    root = Path(root)
    if not root.is_dir() or not os.access(str(root), os.R_OK | os.X_OK):
        raise NotFoundError("Cannot scan {}: not a readable directory".format(root))

    albums = set()
    visited = set()

    def walk_error(exc):
        log.error("Cannot read directory %s: %s", exc.filename, exc.strerror)
        if errors is not None:
            errors.append(exc)

    for dirpath, dirnames, filenames in os.walk(
            str(root), followlinks=True, onerror=walk_error):
        real = os.path.realpath(dirpath)
        if real in visited:
            log.debug("  Already visited %s (via %s), not descending", real, dirpath)
            dirnames[:] = []
            continue
        visited.add(real)

        directory = Path(dirpath)
        files = frozenset(
            directory / name for name in filenames
            if os.path.isfile(os.path.join(dirpath, name))
        )
        if files:
            albums.add(Album(path=directory, files=files))

    return albums


# ── Validation ───────────────────────────────────────────────────────────────

def is_valid(album: Album) -> bool:
    """False if the album holds both lossless and lossy audio."""
    extensions = {_ext(f) for f in album.files}
    if LOSSLESS_EXT in extensions and LOSSY_EXT in extensions:
        log.warning("Skipping album with mixed %s and %s files: %s",
                    LOSSLESS_EXT, LOSSY_EXT, album.path)
        return False
    return True


# ── Planning ─────────────────────────────────────────────────────────────────

def plan(album: Album, input_root, output_root, quality) -> List[Task]:
    """
    Expand *album* into tasks writing under the mirrored output directory.

    The output directory is created here, once, so it exists before any of
    the returned tasks run.
    """
    check_quality(quality)
    input_root = Path(input_root)
    output_root = Path(output_root)

    # relative_to is lexical: "in/../x" is "under" "in"
    try:
        rel_dir = album.path.relative_to(input_root)
    except ValueError:
        rel_dir = None
    if rel_dir is None or ".." in rel_dir.parts:
        raise PathError("Album {} is not under input root {}".format(
            album.path, input_root))

    out_dir = output_root / rel_dir
    out_dir.mkdir(parents=True, exist_ok=True)

    tasks = []
    for path in sorted(album.files):
        name = path.name
        if not name:
            raise PathError("Cannot get file name from {}".format(path))
        if _ext(path) == LOSSLESS_EXT:
            out_name = Path(name).with_suffix(LOSSY_EXT)
            tasks.append(ConvertTask(input=path, output=out_dir / out_name,
                                     quality=quality))
        else:
            tasks.append(CopyTask(input=path, output=out_dir / name))

    # song.flac and song.FLAC would both write song.mp3
    outputs = {}
    for task in tasks:
        if task.output in outputs:
            raise PathError("{} and {} both map to {}".format(
                outputs[task.output], task.input, task.output))
        outputs[task.output] = task.input
    return tasks


# ── Transcoding ──────────────────────────────────────────────────────────────

class Transcoder(Protocol):
    """Turns one lossless file into a lossy one.

    ``transcode`` returns on success and raises ExternalToolError otherwise.
    """

    def transcode(self, input: Path, output: Path, quality: int) -> None:
        ...


class FfmpegTranscoder:
    """Transcoder that shells out to ffmpeg with libmp3lame."""

    def __init__(self, executable: str = FFMPEG) -> None:
        self.executable = executable

    def command(self, input, output, quality):
        """Return the ffmpeg argument list for one conversion."""
        return [
            self.executable,
            "-i", str(input),
            "-codec:a", LOSSY_CODEC,
            "-q:a", str(quality),
            "-map_metadata", "0",
            "-y",
            str(output),
            "-hide_banner",
            "-loglevel", "error",
        ]

    def transcode(self, input, output, quality):
        cmd = self.command(input, output, quality)
        log.debug("  cmd: %s", " ".join(cmd))

        # stdout/stderr stay attached; -loglevel error keeps ffmpeg quiet
        try:
            result = subprocess.run(cmd, stdin=subprocess.DEVNULL)
        except OSError as exc:
            raise ExternalToolError(
                "Failed to run {}: {}".format(self.executable, exc),
                input, output) from exc

        if result.returncode != 0:
            raise ExternalToolError(
                "{} exited with status {} converting {} to {}".format(
                    self.executable, result.returncode, input, output),
                input, output, returncode=result.returncode)


# ── Task execution ───────────────────────────────────────────────────────────

def execute(task: Task, transcoder: Transcoder) -> None:
    """Run one task, overwriting its output.  Raises on failure."""
    if isinstance(task, ConvertTask):
        transcoder.transcode(task.input, task.output, task.quality)
    elif isinstance(task, CopyTask):
        shutil.copy(str(task.input), str(task.output))
    else:
        raise TypeError("Unknown task type: {!r}".format(task))


# ── Outcome tally ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TallySnapshot:
    skipped_albums: int
    failed_albums: int
    succeeded_tasks: int
    failed_tasks: int

    @property
    def failed(self):
        return self.failed_albums + self.failed_tasks


class Tally:
    """Outcome counters shared by the worker threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._skipped_albums = 0
        self._failed_albums = 0
        self._succeeded_tasks = 0
        self._failed_tasks = 0

    def add_skipped_album(self):
        with self._lock:
            self._skipped_albums += 1

    def add_failed_album(self):
        with self._lock:
            self._failed_albums += 1

    def add_succeeded_task(self):
        with self._lock:
            self._succeeded_tasks += 1

    def add_failed_task(self):
        with self._lock:
            self._failed_tasks += 1

    def snapshot(self) -> TallySnapshot:
        with self._lock:
            return TallySnapshot(
                skipped_albums=self._skipped_albums,
                failed_albums=self._failed_albums,
                succeeded_tasks=self._succeeded_tasks,
                failed_tasks=self._failed_tasks,
            )


# ── Parallel execution ───────────────────────────────────────────────────────

def _run_one(task, transcoder, tally):
    log.debug("  Start: %s -> %s", task.input, task.output)
    try:
        execute(task, transcoder)
    except (ConversionError, OSError) as exc:
        log.error("Failed: %s -> %s: %s", task.input, task.output, exc)
        tally.add_failed_task()
        return False
    log.debug("  Done: %s", task.output)
    tally.add_succeeded_task()
    return True


def run_tasks(tasks, transcoder, tally, workers=None):
    """
    Execute *tasks* on a pool of *workers* threads (default: CPU count).

    Every task runs exactly once regardless of other tasks failing.  There
    is no timeout: a transcoder that hangs blocks its worker indefinitely.

    Returns the number of tasks that succeeded.
    """
    if not tasks:
        return 0
    if workers is None:
        workers = os.cpu_count() or 1
    if workers < 1:
        raise ValueError("workers must be at least 1, got {}".format(workers))

    log.info("Running %d task(s) on %d worker thread(s)", len(tasks), workers)

    ok = 0
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_run_one, task, transcoder, tally)
                   for task in tasks]
        for future in as_completed(futures):
            if future.result():
                ok += 1
    return ok


# ── Main (library entry point) ───────────────────────────────────────────────

def _ensure_ffmpeg():
    """Put static-ffmpeg's bundled binaries on PATH if available."""
    try:
        import static_ffmpeg
        static_ffmpeg.add_paths()
        log.debug("static_ffmpeg: paths added")
    except Exception as exc:
        log.warning("Could not initialise static_ffmpeg (%s); "
                    "falling back to system ffmpeg.", exc)


def main(
    input_dir,
    output_dir,
    quality=DEFAULT_QUALITY,
    target=None,
    workers=None,
    transcoder=None,
    verbose=False,
):
    """
    Mirror a FLAC library as MP3.

    Parameters
    ----------
    input_dir : str or Path
        Root of the source library.  Output paths mirror the layout below it.
    output_dir : str or Path
        Root of the converted library.  Created as needed.
    quality : int
        LAME VBR quality, 0 (best, largest) to 9 (worst, smallest).
    target : str, Path, or None
        Only scan this subdirectory of *input_dir* (e.g. one artist or album).
        Output paths are still computed relative to *input_dir*.
    workers : int or None
        Number of worker threads.  Defaults to the CPU count.
    transcoder : Transcoder or None
        Object doing the FLAC → MP3 conversion.  Defaults to
        :class:`FfmpegTranscoder` after setting up static-ffmpeg.
    verbose : bool
        Enable debug-level logging.

    Returns
    -------
    TallySnapshot
        Final counts of skipped albums, failed albums and succeeded / failed
        tasks.

    Raises
    ------
    NotFoundError
        If the scan path does not exist.  Nothing is processed in that case.
    """
    if verbose:
        log.setLevel(logging.DEBUG)
    else:
        log.setLevel(logging.INFO)

    check_quality(quality)
    start = time.monotonic()
    input_dir = Path(input_dir)
    output_dir = Path(output_dir)

    scan_root = resolve_scan_root(input_dir, target)

    if transcoder is None:
        _ensure_ffmpeg()
        transcoder = FfmpegTranscoder()

    log.info("Scanning for albums in %s", scan_root)
    scan_errors = []
    albums = discover(scan_root, errors=scan_errors)
    log.info("Found %d album folder(s).", len(albums))

    tally = Tally()
    tasks = []

    # Each unreadable directory is an album we could not process
    for _ in scan_errors:
        tally.add_failed_album()

    # Sorted for readable logs only; albums are independent
    for album in sorted(albums, key=lambda a: a.path):
        if not is_valid(album):
            tally.add_skipped_album()
            continue
        try:
            tasks.extend(plan(album, input_dir, output_dir, quality))
        except (PathError, OSError) as exc:
            log.error("Failed to plan album %s: %s", album.path, exc)
            tally.add_failed_album()

    run_tasks(tasks, transcoder, tally, workers=workers)

    summary = tally.snapshot()
    elapsed = time.monotonic() - start
    log.info("Conversion finished in %.2fs", elapsed)
    log.info("Summary: %d succeeded, %d failed, %d skipped (mixed content).",
             summary.succeeded_tasks, summary.failed, summary.skipped_albums)
    return summary


# ── CLI entry point ──────────────────────────────────────────────────────────

def quality_arg(value):
    """argparse type for --quality."""
    try:
        return check_quality(int(value))
    except ValueError:
        raise argparse.ArgumentTypeError(
            "must be an integer between {} and {}".format(
                MIN_QUALITY, MAX_QUALITY)) from None


def positive_int(value):
    """argparse type for --jobs."""
    try:
        n = int(value)
    except ValueError:
        n = 0
    if n < 1:
        raise argparse.ArgumentTypeError("must be a positive integer")
    return n


def build_parser():
    parser = argparse.ArgumentParser(
        prog="flac-to-mp3",
        description="Mirror a FLAC music library as MP3 via ffmpeg.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
examples:
  %(prog)s ~/Music/flac ~/Music/mp3
  %(prog)s ~/Music/flac ~/Music/mp3 --quality 2
  %(prog)s ~/Music/flac ~/Music/mp3 --target "Artist/Album"
  %(prog)s ~/Music/flac ~/Music/mp3 --jobs 4 --verbose

exit status:
  0 all files converted or copied, 1 some files or albums failed,
  2 the input path does not exist
""",
    )
    parser.add_argument(
        "input_dir", type=Path,
        help="Directory containing the music library (searched recursively)")
    parser.add_argument(
        "output_dir", type=Path,
        help="Directory for the converted library")
    parser.add_argument(
        "-q", "--quality", type=quality_arg, default=DEFAULT_QUALITY,
        help="MP3 VBR quality, 0-9 where 0 is highest quality / largest size "
             "(default: %(default)s)")
    parser.add_argument(
        "-t", "--target", type=Path, default=None,
        help="Only convert this album or subdirectory (relative to INPUT_DIR)")
    parser.add_argument(
        "-j", "--jobs", type=positive_int, default=None,
        help="Number of parallel worker threads (default: CPU count)")
    parser.add_argument(
        "--ffmpeg", default=None, metavar="PATH",
        help="ffmpeg executable to use instead of the bundled / system one")
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Show debug output including ffmpeg command lines")
    return parser


def cli(argv=None):
    """Command-line interface — parses sys.argv and calls main()."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
    )

    transcoder = FfmpegTranscoder(args.ffmpeg) if args.ffmpeg else None

    try:
        summary = main(
            input_dir=args.input_dir,
            output_dir=args.output_dir,
            quality=args.quality,
            target=args.target,
            workers=args.jobs,
            transcoder=transcoder,
            verbose=args.verbose,
        )
    except NotFoundError as exc:
        log.error("%s", exc)
        sys.exit(2)

    if summary.failed:
        sys.exit(1)


if __name__ == "__main__":
    cli()
