"""Latency probes through proxy tunnels.

Every probe exposes ``key``, ``name``, ``async test() -> int`` (round trip in
ms, raises ProbeError) and ``async close()``. The monitor does not care which
variant produced a measurement.
"""

import asyncio
import base64
import binascii
import ipaddress
import itertools
import json
import logging
import os
import socket
import tempfile
import time
from typing import Optional, Protocol
from urllib.parse import parse_qs, unquote, urlsplit

import httpx

from ..models import FAILED_LATENCY

log = logging.getLogger(__name__)

DEFAULT_CHECK_URL = "http://www.google.com/generate_204"
CONNECT_TIMEOUT_S = 5.0
RESPONSE_TIMEOUT_S = 10.0
SSLOCAL_COMMAND = "sslocal"

_SSR_LOCAL_BASE = ipaddress.IPv4Address("127.0.1.0")
_ssr_local_seq = itertools.count(1)


class ProbeError(Exception):
    pass


class Probe(Protocol):
    key: str
    name: str

    async def test(self) -> int: ...

    async def close(self) -> None: ...


def b64_safe_decode(s: str) -> str:
    """Decode URL-safe base64 with or without padding."""
    if not s:
        return ""
    try:
        raw = base64.b64decode(s + "=" * (-len(s) % 4), altchars=b"-_", validate=True)
        return raw.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError(f"invalid base64 {s!r}: {e}") from e


def convert_base64_url(url: str) -> str:
    """``ss://<base64>`` / ``ssr://<base64>`` -> the decoded URL; other URLs unchanged."""
    scheme, sep, rest = url.partition("://")
    if not sep or scheme not in ("ss", "ssr"):
        return url
    try:
        decoded = b64_safe_decode(rest)
    except ValueError:
        return url
    converted = f"{scheme}://{decoded}"
    log.info("converted %s -> %s", url, converted)
    return converted


def make_timeout(connect_timeout: float = CONNECT_TIMEOUT_S,
                 response_timeout: float = RESPONSE_TIMEOUT_S) -> httpx.Timeout:
    return httpx.Timeout(response_timeout, connect=connect_timeout)


async def http_check(proxy_url: str, check_url: str, timeout: httpx.Timeout) -> int:
    """GET ``check_url`` through ``proxy_url`` and return the round trip in ms."""
    started = time.monotonic()
    try:
        async with httpx.AsyncClient(proxy=proxy_url, timeout=timeout) as client:
            r = await client.get(check_url)
    except httpx.HTTPError as e:
        raise ProbeError(f"roundtrip: {e!r}") from e
    rt = int((time.monotonic() - started) * 1000)
    if not r.is_success:
        raise ProbeError(f"roundtrip: http status {r.status_code}")
    return rt


class ProxyProbe:
    """A SOCKS5 or HTTP proxy that is already listening."""

    def __init__(self, name: str, proxy_url: str, check_url: str = DEFAULT_CHECK_URL,
                 timeout: Optional[httpx.Timeout] = None):
        u = urlsplit(proxy_url)
        if not u.hostname or not u.port:
            raise ValueError(f"proxy url needs host and port: {proxy_url}")
        self.name = name
        self.key = f"{u.hostname}:{u.port}"
        self.proxy_url = proxy_url
        self.check_url = check_url
        self.timeout = timeout or make_timeout()

    async def test(self) -> int:
        return await http_check(self.proxy_url, self.check_url, self.timeout)

    async def close(self) -> None:
        return None


class ShadowsocksProbe:
    """A Shadowsocks(R) server reached through a local ``sslocal`` SOCKS5 process.

    Each probe binds its own loopback address so concurrent processes never
    race for ports. The process is started on the first test and restarted
    whenever the local proxy refuses connections.
    """

    def __init__(self, name: str, server: str, server_port: int, method: str, password: str,
                 protocol: str = "origin", protocol_param: str = "", obfs: str = "plain",
                 obfs_param: str = "", check_url: str = DEFAULT_CHECK_URL,
                 timeout: Optional[httpx.Timeout] = None, command: str = SSLOCAL_COMMAND):
        self.name = name
        self.key = f"{server}:{server_port}"
        self.server = server
        self.server_port = server_port
        self.method = method
        self.password = password
        self.protocol = protocol
        self.protocol_param = protocol_param
        self.obfs = obfs
        self.obfs_param = obfs_param
        self.check_url = check_url
        self.timeout = timeout or make_timeout()
        self.command = command
        self.local_addr = str(_SSR_LOCAL_BASE + next(_ssr_local_seq))
        self.local_port = 0
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._stdout_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._closed = False

    @classmethod
    def from_url(cls, name: str, url: str, **kwargs) -> "ShadowsocksProbe":
        if url.startswith("ss://"):
            return cls._from_ss_url(name, url, **kwargs)
        if url.startswith("ssr://"):
            return cls._from_ssr_url(name, url, **kwargs)
        raise ValueError(f"unsupported scheme {url}")

    @classmethod
    def _from_ss_url(cls, name, url, **kwargs):
        u = urlsplit(url)
        try:
            host, port = u.hostname, u.port
        except ValueError as e:
            raise ValueError(f"port invalid {u.netloc}") from e
        if not host or not port:
            raise ValueError(f"split host port {u.netloc}")
        if not u.username:
            raise ValueError("empty method password")
        method, password = unquote(u.username), unquote(u.password or "")
        if u.password is None:
            # SIP002: userinfo is base64(method:password)
            try:
                method, _, password = b64_safe_decode(u.username).partition(":")
            except ValueError:
                pass
        return cls(name, host, port, method, password, protocol="origin", obfs="plain", **kwargs)

    @classmethod
    def _from_ssr_url(cls, name, url, **kwargs):
        parts = url.split("/", 3)
        if len(parts) < 3:
            raise ValueError(f"invalid ssr url {url}")
        if len(parts) == 3:
            parts.append("")
        fields = parts[2].split(":")
        if len(fields) != 6:
            raise ValueError("invalid ssr host")
        host, port_str, protocol, method, obfs, b64pass = fields
        try:
            port = int(port_str)
        except ValueError as e:
            raise ValueError(f"port invalid {port_str}") from e
        password = b64_safe_decode(b64pass)
        query = parse_qs(parts[3].lstrip("?"))

        def param(k):
            try:
                return b64_safe_decode(query.get(k, [""])[0])
            except ValueError:
                return ""

        return cls(name, host, port, method, password, protocol=protocol,
                   protocol_param=param("protoparam"), obfs=obfs,
                   obfs_param=param("obfsparam"), **kwargs)

    @property
    def proxy_url(self) -> str:
        return f"socks5://{self.local_addr}:{self.local_port}"

    def sslocal_config(self) -> dict:
        return {
            "server": self.server,
            "server_port": self.server_port,
            "method": self.method,
            "password": self.password,
            "protocol": self.protocol,
            "protocol_param": self.protocol_param,
            "obfs": self.obfs,
            "obfs_param": self.obfs_param,
            "local_address": self.local_addr,
            "local_port": self.local_port,
        }

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def test(self) -> int:
        if not self.running:
            await self.restart()
        try:
            return await http_check(self.proxy_url, self.check_url, self.timeout)
        except ProbeError as e:
            if not self.running or "connection refused" in str(e).lower():
                try:
                    await self.restart()
                except ProbeError as re:
                    log.error("%s restart: %s", self.key, re)
            raise

    async def restart(self) -> None:
        async with self._lock:
            if self._closed:
                raise ProbeError(f"{self.key} is closed")
            await self._stop_process()
            self.local_port = self._pick_port()
            fd, conf_path = tempfile.mkstemp(prefix="ssr_config", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self.sslocal_config(), f)
                try:
                    self._proc = await asyncio.create_subprocess_exec(
                        self.command, "-c", conf_path,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.STDOUT,
                    )
                except OSError as e:
                    raise ProbeError(f"start {self.command}: {e}") from e
                self._stdout_task = asyncio.create_task(self._pump_stdout(self._proc))
                await self._wait_listening()
            finally:
                os.unlink(conf_path)

    def _pick_port(self) -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((self.local_addr, 0))
            except OSError as e:
                raise ProbeError(f"try local port: {e}") from e
            return s.getsockname()[1]

    async def _pump_stdout(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stdout is None:
            return
        async for line in proc.stdout:
            log.info("%s stdout: %s", self.key, line.decode("utf-8", "replace").rstrip())

    async def _wait_listening(self, tries: int = 50, delay: float = 0.1) -> None:
        for _ in range(tries):
            try:
                _, writer = await asyncio.wait_for(
                    asyncio.open_connection(self.local_addr, self.local_port), CONNECT_TIMEOUT_S)
            except (OSError, asyncio.TimeoutError):
                await asyncio.sleep(delay)
                continue
            writer.close()
            await writer.wait_closed()
            return
        raise ProbeError(f"{self.key} not listening {self.local_addr}:{self.local_port}")

    async def _stop_process(self) -> None:
        proc, self._proc = self._proc, None
        if proc is not None and proc.returncode is None:
            proc.kill()
            code = await proc.wait()
            if code not in (0, -9, -15, -2):
                log.warning("%s exit: %s", self.key, code)
        task, self._stdout_task = self._stdout_task, None
        if task is not None:
            task.cancel()

    async def close(self) -> None:
        async with self._lock:
            self._closed = True
            await self._stop_process()


def build_probe(name: str, url: str, check_url: str = DEFAULT_CHECK_URL,
                timeout: Optional[httpx.Timeout] = None) -> Probe:
    url = convert_base64_url(url.strip())
    scheme = url.partition("://")[0].lower()
    if scheme in ("ss", "ssr"):
        return ShadowsocksProbe.from_url(name, url, check_url=check_url, timeout=timeout)
    if scheme in ("socks5", "socks5h", "http", "https"):
        return ProxyProbe(name, url, check_url=check_url, timeout=timeout)
    raise ValueError(f"unsupported scheme {url}")


async def probe_with_retries(probe: Probe, attempts: int = 3, interval: float = 15.0,
                             label: str = "") -> int:
    """Run ``probe.test()`` until it succeeds or ``attempts`` are used up.

    Attempts start ``interval`` seconds apart; the wait shrinks by however long
    the failed attempt took. Returns the latency or FAILED_LATENCY.
    """
    loop = asyncio.get_running_loop()
    label = label or probe.key
    for attempt in range(1, max(attempts, 1) + 1):
        started = loop.time()
        try:
            rt = await probe.test()
        except ProbeError as e:
            log.info("%s retry#%d error: %s", label, attempt, e)
        else:
            log.info("%s retry#%d rt: %d ms", label, attempt, rt)
            return rt
        if attempt >= attempts:
            break
        await asyncio.sleep(max(0.0, interval - (loop.time() - started)))
    return FAILED_LATENCY
