from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Tuple

from ..config import ConfigError
from ..models import Series
from ..schemas import MonitorConfig
from .probes import Probe, build_probe, make_timeout


@dataclass(frozen=True)
class Entry:
    series: Series
    probe: Probe


@dataclass(frozen=True)
class Catalog:
    """Configured series with their probes, in display order. Never mutated;
    a reconfiguration builds a new Catalog and swaps the reference."""

    entries: Tuple[Entry, ...] = ()

    def __iter__(self) -> Iterator[Entry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def series(self) -> Tuple[Series, ...]:
        return tuple(e.series for e in self.entries)

    def by_key(self) -> Dict[str, Entry]:
        return {e.series.key: e for e in self.entries}


def build_catalog(config: MonitorConfig, probe_factory: Callable[..., Probe] = build_probe) -> Catalog:
    timeout = make_timeout(config.connect_timeout, config.response_timeout)
    entries = []
    keys = set()
    for group in config.groups:
        for server in group.servers:
            try:
                probe = probe_factory(server.name, server.url, check_url=config.check_url, timeout=timeout)
            except ValueError as e:
                raise ConfigError(f"server {server.name} in group {group.name}: {e}") from e
            if "," in probe.key:
                raise ConfigError(f"server {server.name}: key {probe.key!r} contains a comma")
            if probe.key in keys:
                raise ConfigError(f"server {server.name} hash {probe.key} must be global unique")
            keys.add(probe.key)
            entries.append(Entry(Series(key=probe.key, name=server.name, group=group.name), probe))
    return Catalog(tuple(entries))
