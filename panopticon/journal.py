"""Snapshot sinks and the NDJSON journal used to persist closed windows."""

from __future__ import annotations

import gzip
import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import IO, Any, Protocol

from panopticon.contracts import IntervalSnapshot
from panopticon.errors import JournalReaderError


class SnapshotSink(Protocol):
    """Receives every window closed by a ``Panopticon``."""

    def __call__(self, snapshot: IntervalSnapshot) -> None: ...


class JournalSink:
    """Append-only NDJSON writer; one line per closed window, flushed per write."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self._path.open("a", encoding="utf-8")

    @property
    def path(self) -> Path:
        return self._path

    def __call__(self, snapshot: IntervalSnapshot) -> None:
        self._file.write(json.dumps(snapshot.to_dict(), separators=(",", ":")) + "\n")
        self._file.flush()

    def close(self) -> None:
        self._file.close()

    def __repr__(self) -> str:
        return f"JournalSink({str(self._path)!r})"


def journal_path(journal_dir: str | Path, name: str, worker_id: str) -> Path:
    """Per-worker journal file, so concurrent workers never share a file handle."""
    return Path(journal_dir) / f"panopticon.{name}.{worker_id}.ndjson"


class SnapshotJournalReader:
    """Reads snapshots back from journal files (plain or gzip-compressed)."""

    def __init__(self, path: Path) -> None:
        """Initialize reader for a journal directory.

        Args:
            path: Directory containing journal files

        Raises:
            JournalReaderError: If the directory does not exist
        """
        self.path = Path(path)
        if not self.path.exists():
            raise JournalReaderError(f"Journal directory does not exist: {path}")

    def read_snapshots(self, name: str | None = None) -> Iterator[IntervalSnapshot]:
        """Yield snapshots from every journal file, optionally filtered by aggregator name.

        Raises:
            JournalReaderError: On malformed lines or unreadable files
        """
        pattern = f"panopticon.{name}.*.ndjson*" if name else "panopticon.*.ndjson*"
        for journal_file in sorted(self.path.glob(pattern)):
            yield from self._read_file(journal_file)

    def _read_file(self, file_path: Path) -> Iterator[IntervalSnapshot]:
        is_compressed = file_path.suffix == ".gz"
        opener: Callable[..., IO[str]] = gzip.open if is_compressed else open  # type: ignore[assignment]
        try:
            with opener(file_path, "rt", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        payload: dict[str, Any] = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise JournalReaderError(
                            f"Malformed JSON at {file_path}:{line_num}: {e}"
                        ) from e
                    try:
                        yield IntervalSnapshot.from_dict(payload)
                    except (KeyError, TypeError, ValueError) as e:
                        raise JournalReaderError(
                            f"Invalid snapshot at {file_path}:{line_num}: {e}"
                        ) from e
        except OSError as e:
            raise JournalReaderError(f"Error reading {file_path}: {e}") from e
