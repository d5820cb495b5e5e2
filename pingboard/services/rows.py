"""Minute-bucketed rows of probe results, bounded to the most recent buckets."""

import bisect
import logging
import time
from typing import Dict, Iterable, List, Optional, Tuple

from ..models import NO_DATA, ProbeResult, Row, Series, SnapshotRow, WindowSnapshot

log = logging.getLogger(__name__)

DEFAULT_CAPACITY = 60


class RowWindow:
    """Owns the rows. Not thread safe: a single task is expected to mutate it.

    Rows are kept oldest first in ``_buckets`` (sorted) with the row objects in
    ``_rows``; lookups are binary searches, eviction pops from the front.
    """

    def __init__(self, series: Iterable[Series] = (), capacity: int = DEFAULT_CAPACITY):
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self._capacity = capacity
        self._buckets: List[int] = []
        self._rows: Dict[int, Row] = {}
        self.set_series(series)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def series(self) -> Tuple[Series, ...]:
        return self._series

    def __len__(self) -> int:
        return len(self._buckets)

    def set_series(self, series: Iterable[Series]) -> None:
        series = tuple(series)
        keys = frozenset(s.key for s in series)
        # series and keys are replaced together
        self._series, self._keys = series, keys

    def get(self, bucket: int) -> Optional[Row]:
        return self._rows.get(bucket)

    def buckets(self) -> List[int]:
        return list(self._buckets)

    def is_complete(self, row: Row) -> bool:
        return bool(self._keys) and self._keys.issubset(row.columns)

    def insert(self, result: ProbeResult) -> Tuple[Optional[Row], bool]:
        """Merge ``result`` into its bucket.

        Returns the affected row (None when the result was discarded) and
        whether that row now has a value for every known series.
        """
        if result.key not in self._keys:
            log.warning("unknown series %s, discard %s", result.key, result)
            return None, False
        if self._capacity == 0:
            return None, False

        bucket = result.bucket
        row = self._rows.get(bucket)
        if row is None:
            idx = bisect.bisect_left(self._buckets, bucket)
            if idx == 0 and len(self._buckets) >= self._capacity:
                log.warning("too old data and discard: %s", result)
                return None, False
            row = Row(bucket=bucket)
            self._buckets.insert(idx, bucket)
            self._rows[bucket] = row
            self._evict()

        row.columns[result.key] = result.latency_ms
        return row, self.is_complete(row)

    def resize(self, capacity: int) -> None:
        """Change the number of rows kept; shrinking drops the oldest rows."""
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self._capacity = capacity
        self._evict()

    def _evict(self) -> None:
        while len(self._buckets) > self._capacity:
            oldest = self._buckets.pop(0)
            del self._rows[oldest]

    def snapshot(self, generated_at: Optional[float] = None) -> WindowSnapshot:
        series = self._series
        rows = []
        for bucket in reversed(self._buckets):
            columns = self._rows[bucket].columns
            rows.append(SnapshotRow(
                bucket=bucket,
                values=tuple(columns.get(s.key, NO_DATA) for s in series),
            ))
        return WindowSnapshot(
            series=series,
            rows=tuple(rows),
            generated_at=time.time() if generated_at is None else generated_at,
        )
