"""Append-only daily CSV log of every probe result.

One file per local calendar day, ``data.YYYY-MM-DD.csv``, one record per line::

    <started_at unix seconds>,<series key>,<latency ms>
"""

import logging
import os
import re
from datetime import date, datetime
from pathlib import Path
from typing import Callable, IO, Optional, Union

from ..models import ProbeResult

log = logging.getLogger(__name__)

MAX_TIMESTAMP = 253402300799  # 9999-12-31 23:59:59 UTC, still valid for localtime()
INT32_MIN, INT32_MAX = -2**31, 2**31 - 1

_TIMESTAMP_RE = re.compile(r"[0-9]{1,12}\Z")
_LATENCY_RE = re.compile(r"-?[0-9]{1,10}\Z")


class MalformedLine(ValueError):
    pass


def data_file_name(day: Union[date, datetime]) -> str:
    return f"data.{day.strftime('%Y-%m-%d')}.csv"


def format_line(result: ProbeResult) -> str:
    return f"{int(result.started_at)},{result.key},{int(result.latency_ms)}\n"


def parse_line(line: str) -> ProbeResult:
    parts = line.strip().split(",")
    if len(parts) != 3:
        raise MalformedLine(f"expected 3 fields, got {len(parts)}: {line.strip()!r}")
    ts_str, key, rt_str = parts
    if not _TIMESTAMP_RE.match(ts_str):
        raise MalformedLine(f"bad timestamp {ts_str!r}")
    ts = int(ts_str)
    if ts > MAX_TIMESTAMP:
        raise MalformedLine(f"timestamp out of range {ts_str!r}")
    if not key:
        raise MalformedLine("empty series key")
    if not _LATENCY_RE.match(rt_str):
        raise MalformedLine(f"bad latency {rt_str!r}")
    rt = int(rt_str)
    if not INT32_MIN <= rt <= INT32_MAX:
        raise MalformedLine(f"latency out of range {rt_str!r}")
    return ProbeResult(key=key, latency_ms=rt, started_at=ts)


def fsync_dir(path: Path) -> None:
    fd = os.open(str(path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class DataLog:
    def __init__(self, data_dir: Union[str, Path], clock: Callable[[], datetime] = datetime.now):
        self.data_dir = Path(data_dir)
        self._clock = clock
        self._file: Optional[IO[str]] = None
        self._name: Optional[str] = None

    @property
    def path(self) -> Optional[Path]:
        return self.data_dir / self._name if self._name else None

    def rotate_if_needed(self) -> IO[str]:
        """Return the handle for today's file, switching files on a day change."""
        name = data_file_name(self._clock())
        if self._file is not None and self._name == name:
            return self._file

        if self._file is not None:
            old = self._file
            self._file, self._name = None, None
            try:
                old.flush()
                os.fsync(old.fileno())
            finally:
                old.close()

        self.data_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.data_dir / name), os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o600)
        self._file = os.fdopen(fd, "a", encoding="utf-8")
        self._name = name
        log.info("rotate to %s", name)
        fsync_dir(self.data_dir)
        return self._file

    def append(self, result: ProbeResult) -> bool:
        """Write one record. I/O errors are logged and the record is dropped."""
        try:
            f = self.rotate_if_needed()
            f.write(format_line(result))
            f.flush()
        except OSError as e:
            log.error("append %s to data log: %s", result, e)
            return False
        return True

    def sync(self) -> None:
        if self._file is None:
            return
        try:
            self._file.flush()
            os.fsync(self._file.fileno())
        except OSError as e:
            log.error("sync %s: %s", self.path, e)

    def close(self) -> None:
        if self._file is None:
            return
        self.sync()
        self._file.close()
        self._file, self._name = None, None
