import asyncio
import base64

import httpx
import pytest

from pingboard.models import FAILED_LATENCY
from pingboard.services import probes
from pingboard.services.probes import (
    ProbeError,
    ProxyProbe,
    ShadowsocksProbe,
    b64_safe_decode,
    build_probe,
    convert_base64_url,
    http_check,
    make_timeout,
    probe_with_retries,
)

from conftest import FakeProbe


def b64(s, pad=True):
    out = base64.urlsafe_b64encode(s.encode()).decode()
    return out if pad else out.rstrip("=")


def test_b64_safe_decode_with_and_without_padding():
    assert b64_safe_decode(b64("secret!", pad=True)) == "secret!"
    assert b64_safe_decode(b64("secret!", pad=False)) == "secret!"
    assert b64_safe_decode("") == ""
    with pytest.raises(ValueError):
        b64_safe_decode("not base64!")


def test_convert_base64_url():
    raw = "aes-256-gcm:pw@203.0.113.10:8388"
    assert convert_base64_url("ss://" + b64(raw, pad=False)) == "ss://" + raw
    assert convert_base64_url("ss://" + raw) == "ss://" + raw
    assert convert_base64_url("socks5://127.0.0.1:1080") == "socks5://127.0.0.1:1080"
    assert convert_base64_url("no-scheme") == "no-scheme"


def test_build_ss_probe():
    p = build_probe("tk-1", " ss://aes-256-gcm:pw@203.0.113.10:8388 ")
    assert isinstance(p, ShadowsocksProbe)
    assert p.key == "203.0.113.10:8388"
    assert (p.method, p.password, p.protocol, p.obfs) == ("aes-256-gcm", "pw", "origin", "plain")
    assert p.local_addr.startswith("127.0.1.")


def test_build_ss_probe_sip002_userinfo():
    p = build_probe("tk-1", f"ss://{b64('chacha20-ietf-poly1305:pa:ss', pad=False)}@198.51.100.1:443")
    assert (p.method, p.password) == ("chacha20-ietf-poly1305", "pa:ss")
    assert p.key == "198.51.100.1:443"


def test_build_ssr_probe():
    url = "ssr://203.0.113.11:8389:auth_aes128_md5:aes-256-cfb:tls1.2_ticket_auth:{}/?obfsparam={}&protoparam={}".format(
        b64("secret", pad=False), b64("cdn.example.com", pad=False), b64("32:abc", pad=False))
    p = build_probe("tk-2", url)
    assert p.key == "203.0.113.11:8389"
    assert p.protocol == "auth_aes128_md5"
    assert p.method == "aes-256-cfb"
    assert p.obfs == "tls1.2_ticket_auth"
    assert p.password == "secret"
    assert p.obfs_param == "cdn.example.com"
    assert p.protocol_param == "32:abc"
    conf = p.sslocal_config()
    assert conf["server_port"] == 8389
    assert conf["local_address"] == p.local_addr


def test_build_ssr_probe_without_query():
    p = build_probe("x", f"ssr://203.0.113.12:1:origin:rc4-md5:plain:{b64('pw', pad=False)}")
    assert p.password == "pw"
    assert p.obfs_param == ""


def test_probes_get_distinct_local_addresses():
    a = build_probe("a", "ss://m:p@203.0.113.1:1")
    b = build_probe("b", "ss://m:p@203.0.113.2:1")
    assert a.local_addr != b.local_addr


@pytest.mark.parametrize("url", [
    "ftp://example.com",
    "ss://203.0.113.1:8388",
    "ss://m:p@203.0.113.1",
    "ss://m:p@203.0.113.1:port",
    "ssr://203.0.113.1:8388:origin",
    "ssr://203.0.113.1:x:origin:m:plain:cHc",
    "socks5://proxy-without-port",
])
def test_build_probe_rejects_bad_urls(url):
    with pytest.raises(ValueError):
        build_probe("bad", url)


def test_build_proxy_probe():
    p = build_probe("office", "socks5://192.0.2.5:1080", check_url="http://check.test/204")
    assert isinstance(p, ProxyProbe)
    assert p.key == "192.0.2.5:1080"
    assert p.check_url == "http://check.test/204"


@pytest.fixture
def mock_http(monkeypatch):
    real_client = httpx.AsyncClient
    seen = {}

    def install(handler):
        def factory(**kwargs):
            seen.update(kwargs)
            return real_client(transport=httpx.MockTransport(handler), timeout=kwargs.get("timeout"))
        monkeypatch.setattr(probes.httpx, "AsyncClient", factory)
        return seen

    return install


def test_http_check_success(mock_http):
    seen = mock_http(lambda request: httpx.Response(204))
    rt = asyncio.run(http_check("socks5://127.0.1.1:1080", "http://check.test/204", make_timeout()))
    assert rt >= 0
    assert seen["proxy"] == "socks5://127.0.1.1:1080"


def test_http_check_non_success_status(mock_http):
    mock_http(lambda request: httpx.Response(503))
    with pytest.raises(ProbeError, match="503"):
        asyncio.run(http_check("socks5://127.0.1.1:1080", "http://check.test/", make_timeout()))


def test_http_check_transport_error(mock_http):
    def refuse(request):
        raise httpx.ConnectError("[Errno 111] Connection refused", request=request)

    mock_http(refuse)
    with pytest.raises(ProbeError, match="Connection refused"):
        asyncio.run(http_check("socks5://127.0.1.1:1080", "http://check.test/", make_timeout()))


def test_retries_until_success(failing):
    probe = FakeProbe("a", outcomes=[failing, failing, 42])
    assert asyncio.run(probe_with_retries(probe, attempts=3, interval=0)) == 42
    assert probe.calls == 3


def test_retries_exhausted_gives_failed_latency(failing):
    probe = FakeProbe("a", outcomes=[failing])
    assert asyncio.run(probe_with_retries(probe, attempts=3, interval=0)) == FAILED_LATENCY
    assert probe.calls == 3


def test_success_on_first_attempt_does_not_wait(failing):
    probe = FakeProbe("a", outcomes=[7])
    assert asyncio.run(asyncio.wait_for(probe_with_retries(probe, attempts=3, interval=60), 1)) == 7
    assert probe.calls == 1


def test_retry_wait_is_clipped(monkeypatch, failing):
    waits = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay):
        waits.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(probes.asyncio, "sleep", fake_sleep)
    probe = FakeProbe("a", outcomes=[failing, failing])
    asyncio.run(probe_with_retries(probe, attempts=2, interval=15))
    assert len(waits) == 1
    assert 14 < waits[0] <= 15


def test_shadowsocks_probe_reports_missing_sslocal():
    async def run():
        p = ShadowsocksProbe("x", "203.0.113.1", 8388, "m", "p", command="definitely-not-sslocal-binary")
        try:
            with pytest.raises(ProbeError):
                await p.test()
        finally:
            await p.close()
        with pytest.raises(ProbeError, match="closed"):
            await p.restart()

    asyncio.run(run())


def test_stdout_pump_without_pipe_returns():
    class NoPipe:
        stdout = None

    p = ShadowsocksProbe("x", "203.0.113.1", 8388, "m", "p")
    asyncio.run(p._pump_stdout(NoPipe()))
