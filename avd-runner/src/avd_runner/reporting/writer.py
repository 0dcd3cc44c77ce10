from __future__ import annotations

import enum
import sys
from pathlib import Path
from typing import IO, Optional


class WriterDestination(enum.Enum):
    FILE = "file"
    STDOUT = "stdout"


class ReportWriter:
    """Line sink over a named file (append) or standard output."""

    def __init__(
        self,
        destination: WriterDestination,
        path: Optional[Path] = None,
        *,
        stream: Optional[IO[str]] = None,
    ) -> None:
        if destination is WriterDestination.FILE and path is None:
            raise ValueError("file destination requires a path")
        self._destination = destination
        self._path = Path(path) if path is not None else None
        self._stream = stream
        self._fh: Optional[IO[str]] = None

    @classmethod
    def to_file(cls, path: Path) -> "ReportWriter":
        return cls(WriterDestination.FILE, path)

    @classmethod
    def to_stdout(cls, stream: Optional[IO[str]] = None) -> "ReportWriter":
        return cls(WriterDestination.STDOUT, stream=stream)

    @property
    def destination(self) -> WriterDestination:
        return self._destination

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def _handle(self) -> IO[str]:
        if self._destination is WriterDestination.STDOUT:
            return self._stream if self._stream is not None else sys.stdout
        if self._fh is None or self._fh.closed:
            assert self._path is not None
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = self._path.open("a", encoding="utf-8")
        return self._fh

    def write_line(self, text: str) -> None:
        fh = self._handle()
        fh.write(text)
        if not text.endswith("\n"):
            fh.write("\n")
        fh.flush()

    def remove_file(self) -> None:
        if self._destination is not WriterDestination.FILE:
            return
        self.close()
        assert self._path is not None
        self._path.unlink(missing_ok=True)

    def close(self) -> None:
        if self._fh is not None and not self._fh.closed:
            self._fh.close()
        self._fh = None
