import asyncio
import logging
import time
from typing import Callable, List, Optional, Set

from ..models import ProbeResult
from ..schemas import MonitorConfig
from .catalog import Catalog, Entry
from .datalog import DataLog
from .probes import Probe, probe_with_retries
from .render import RenderError, SnapshotRenderer
from .rows import RowWindow

log = logging.getLogger(__name__)


class Monitor:
    """Runs the probing cycles and owns the window and the data log.

    Probe tasks only ever put results on ``queue``; a single consumer task
    applies them to the log and the window, so neither needs a lock.
    """

    def __init__(
        self,
        catalog: Catalog,
        window: RowWindow,
        datalog: DataLog,
        renderer: SnapshotRenderer,
        retry_count: int = 3,
        retry_interval: float = 15.0,
        probe_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self._catalog = catalog
        self.window = window
        self.datalog = datalog
        self.renderer = renderer
        self.retry_count = retry_count
        self.retry_interval = retry_interval
        self.probe_interval = probe_interval
        self._clock = clock
        self.queue: "asyncio.Queue[ProbeResult]" = asyncio.Queue()
        self._probing: Set[asyncio.Task] = set()
        self._closing: Set[asyncio.Task] = set()
        self._scheduler: Optional[asyncio.Task] = None
        self._consumer: Optional[asyncio.Task] = None

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    async def reload(self, catalog: Catalog) -> None:
        """Swap in ``catalog``. Probes it no longer contains are closed once the
        cycles started before the swap have finished with them."""
        old, self._catalog = self._catalog, catalog
        self.window.set_series(catalog.series)
        kept = {id(e.probe) for e in catalog}
        dropped = [e.probe for e in old if id(e.probe) not in kept]
        in_flight = set(self._probing)
        if dropped and in_flight:
            task = asyncio.create_task(self._close_after(in_flight, dropped))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
        else:
            for probe in dropped:
                await probe.close()
        log.info("reloaded catalog: %d series", len(catalog))

    async def _close_after(self, tasks: Set[asyncio.Task], probes: List[Probe]) -> None:
        await asyncio.wait(tasks)
        for probe in probes:
            await probe.close()

    def apply_config(self, config: MonitorConfig) -> None:
        """Apply the reloadable settings of a re-read config.yaml."""
        self.retry_count = config.retry_count
        self.retry_interval = config.retry_interval
        self.probe_interval = config.probe_interval
        self.renderer.slow_threshold = config.slow_threshold
        self.renderer.show_rt = config.show_rt
        if config.oldest_history != self.window.capacity:
            self.window.resize(config.oldest_history)
            log.info("oldest history in minutes: %d", self.window.capacity)

    # probing

    async def _probe_one(self, entry: Entry, started_at: int) -> None:
        s = entry.series
        label = f"group={s.group} server={s.key}"
        log.info("%s start testing", label)
        rt = await probe_with_retries(entry.probe, self.retry_count, self.retry_interval, label=label)
        await self.queue.put(ProbeResult(key=s.key, latency_ms=rt, started_at=started_at))

    def run_cycle(self) -> List[asyncio.Task]:
        catalog = self._catalog
        started_at = int(self._clock())
        tasks = []
        for entry in catalog:
            task = asyncio.create_task(self._probe_one(entry, started_at))
            self._probing.add(task)
            task.add_done_callback(self._probing.discard)
            tasks.append(task)
        return tasks

    async def _schedule(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        while True:
            self.run_cycle()
            next_at += self.probe_interval
            await asyncio.sleep(max(0.0, next_at - loop.time()))

    # aggregation

    def handle(self, result: ProbeResult) -> bool:
        self.datalog.append(result)
        _, complete = self.window.insert(result)
        if complete:
            self.datalog.sync()
            self.publish()
        return complete

    def publish(self) -> None:
        try:
            self.renderer.render(self.window.snapshot())
        except RenderError as e:
            log.error("render index: %s", e)

    async def _consume(self) -> None:
        while True:
            result = await self.queue.get()
            try:
                self._handle_logged(result)
            finally:
                self.queue.task_done()

    def _handle_logged(self, result: ProbeResult) -> None:
        # log and keep consuming
        try:
            self.handle(result)
        except Exception:
            log.exception("handle %s", result)

    # lifecycle

    def start(self) -> None:
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume())
        if self._scheduler is None:
            self._scheduler = asyncio.create_task(self._schedule())

    async def stop(self, drain_timeout: float = 0.0) -> None:
        """Stop probing, apply every result already produced and close the log.

        In-flight probes get ``drain_timeout`` seconds to finish before they
        are cancelled.
        """
        if self._scheduler is not None:
            self._scheduler.cancel()
            await asyncio.gather(self._scheduler, return_exceptions=True)
            self._scheduler = None

        pending = set(self._probing)
        if pending and drain_timeout > 0:
            _, pending = await asyncio.wait(pending, timeout=drain_timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await asyncio.gather(*set(self._closing), return_exceptions=True)

        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None
        while not self.queue.empty():
            self._handle_logged(self.queue.get_nowait())

        for entry in self._catalog:
            await entry.probe.close()
        self.datalog.close()
