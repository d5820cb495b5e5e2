from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

BUCKET_SECONDS = 60
FAILED_LATENCY = -1  # probe failed after all retries
NO_DATA = 0          # bucket has no value for the series


def bucket_of(ts: int) -> int:
    ts = int(ts)
    return ts - ts % BUCKET_SECONDS


@dataclass(frozen=True)
class Series:
    key: str    # host:port of the proxy server
    name: str
    group: str


@dataclass(frozen=True)
class ProbeResult:
    key: str
    latency_ms: int
    started_at: int  # unix seconds, start of the probing cycle

    @property
    def bucket(self) -> int:
        return bucket_of(self.started_at)


@dataclass
class Row:
    bucket: int
    columns: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SnapshotRow:
    bucket: int
    values: Tuple[int, ...]


@dataclass(frozen=True)
class WindowSnapshot:
    series: Tuple[Series, ...]
    rows: Tuple[SnapshotRow, ...]  # newest first
    generated_at: Optional[float] = None
