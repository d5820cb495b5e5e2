import asyncio

import pytest

from pingboard.models import ProbeResult, Series
from pingboard.services.probes import ProbeError

T0 = 1_700_000_040  # minute aligned


def make_series(*keys, group="g"):
    return [Series(key=k, name=f"name-{k}", group=group) for k in keys]


def result(ts, key, rt):
    return ProbeResult(key=key, latency_ms=rt, started_at=ts)


class FakeProbe:
    """Replays scripted outcomes: ints are latencies, exceptions are raised.

    With ``gate`` set, every call waits for the event before answering. A
    closed instance fails like a stopped sslocal child would.
    """

    def __init__(self, key, outcomes=(100,), name=None, block=False, gate=None):
        self.key = key
        self.name = name or f"name-{key}"
        self.outcomes = list(outcomes)
        self.block = block
        self.gate = gate
        self.calls = 0
        self.closed = False

    async def test(self):
        self.calls += 1
        if self.block:
            await asyncio.Event().wait()
        if self.gate is not None:
            await self.gate.wait()
        if self.closed:
            raise ProbeError("closed")
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def close(self):
        self.closed = True


@pytest.fixture
def failing():
    return ProbeError("roundtrip: ConnectError('[Errno 111] Connection refused')")
