"""Tests for the multi-strategy host probe."""

import asyncio
import threading

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from disguise_fleet.probe import HostProber, ping_command


IP = "10.0.0.5"
SYSTEM_URL = f"http://{IP}/api/service/system"


def _fake_ping(stdout: bytes, returncode: int = 0):
    proc = MagicMock()
    proc.communicate = AsyncMock(return_value=(stdout, b""))
    proc.returncode = returncode
    proc.wait = AsyncMock(return_value=returncode)
    return proc


class TestPingCommand:
    """Test platform ping command lines."""

    @pytest.mark.parametrize("system,expected", [
        ("Windows", ["ping", "-n", "1", "-w", "200", IP]),
        ("Darwin", ["ping", "-c", "1", "-W", "200", IP]),
        ("Linux", ["ping", "-c", "1", "-W", "1", IP]),
    ])
    def test_command(self, system, expected):
        with patch("disguise_fleet.probe.platform.system", return_value=system):
            assert ping_command(IP, 0.2) == expected

    def test_linux_rounds_up_to_whole_seconds(self):
        with patch("disguise_fleet.probe.platform.system", return_value="Linux"):
            assert ping_command(IP, 2.5)[4] == "3"


class TestProbe:
    """Test probe aggregation."""

    @pytest.mark.asyncio
    async def test_identifies_disguise_server(self, prober, network):
        """Port 80 open with a version field in the system document."""
        network.open_ports[IP] = {80: 3.0, 873: 4.2}
        network.http[SYSTEM_URL] = (200, '{"version":"2.6"}')

        result = await prober.probe(IP)

        assert result.is_disguise_server
        assert result.api_version == "2.6"
        assert result.open_ports == frozenset({80, 873})
        assert result.responded

    @pytest.mark.asyncio
    async def test_best_latency_wins(self, prober, network):
        network.open_ports[IP] = {873: 4.26}
        network.ping[IP] = 1.04
        network.names[IP] = "d3-foh"

        result = await prober.probe(IP)

        assert result.ping_success
        assert result.response_time_ms == 1.0
        assert result.hostname == "d3-foh"

    @pytest.mark.asyncio
    async def test_tcp_latency_when_ping_slower(self, prober, network):
        network.open_ports[IP] = {9864: 2.0}
        network.ping[IP] = 8.0

        assert (await prober.probe(IP)).response_time_ms == 2.0

    @pytest.mark.asyncio
    async def test_silent_host(self, prober):
        result = await prober.probe(IP)

        assert not result.responded
        assert result.response_time_ms == -1
        assert result.hostname == ""
        prober.http_get.assert_not_called()

    @pytest.mark.asyncio
    async def test_probes_each_port_once(self, prober):
        await prober.probe(IP)
        ports = sorted(c.args[1] for c in prober.tcp_connect.await_args_list)
        assert ports == [80, 873, 9864]

    @pytest.mark.asyncio
    async def test_explicit_ports_and_timeout(self, prober, network):
        network.open_ports[IP] = {80: 1.0}
        network.http[SYSTEM_URL] = (200, "{}")

        await prober.probe(IP, ports=[80], timeout_ms=100)

        prober.tcp_connect.assert_awaited_once_with(IP, 80, 0.1)
        url, timeout_s = prober.http_get.await_args.args
        assert url == SYSTEM_URL
        assert timeout_s == pytest.approx(0.3)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("capability", ["tcp_connect", "icmp_echo", "reverse_dns", "http_get"])
    async def test_capability_failure_is_contained(self, prober, network, capability):
        """Any one check raising leaves only its own field negative."""
        network.open_ports[IP] = {80: 1.0}
        network.ping[IP] = 0.5
        network.names[IP] = "d3-01"
        network.http[SYSTEM_URL] = (200, '{"version": "2.6"}')
        getattr(prober, capability).side_effect = RuntimeError("boom")

        result = await prober.probe(IP)

        assert result.ip_address == IP
        if capability == "tcp_connect":
            assert result.open_ports == frozenset()
        if capability == "icmp_echo":
            assert not result.ping_success
        if capability == "reverse_dns":
            assert result.hostname == ""
        if capability == "http_get":
            assert not result.is_disguise_server
            assert result.api_version is None

    @pytest.mark.asyncio
    async def test_everything_failing_never_raises(self, prober):
        for capability in ("tcp_connect", "icmp_echo", "reverse_dns", "http_get"):
            getattr(prober, capability).side_effect = OSError("network down")

        result = await prober.probe(IP)

        assert not result.responded
        assert result.response_time_ms == -1


class TestCapabilities:
    """Test the real capability implementations."""

    @pytest.mark.asyncio
    async def test_tcp_connect_open_and_closed(self):
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        prober = HostProber()

        try:
            latency = await prober.tcp_connect("127.0.0.1", port, 1.0)
        finally:
            server.close()
            await server.wait_closed()

        assert latency is not None and latency >= 0
        assert await prober.tcp_connect("127.0.0.1", port, 1.0) is None

    @pytest.mark.asyncio
    async def test_icmp_echo_parses_rtt(self):
        proc = _fake_ping(b"64 bytes from 10.0.0.5: icmp_seq=1 ttl=128 time=0.42 ms\n")
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            ok, rtt = await HostProber().icmp_echo(IP, 0.2)

        assert ok
        assert rtt == 0.42

    @pytest.mark.asyncio
    async def test_icmp_echo_windows_sub_millisecond(self):
        proc = _fake_ping(b"Reply from 10.0.0.5: bytes=32 time<1ms TTL=128\r\n")
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            ok, rtt = await HostProber().icmp_echo(IP, 0.2)

        assert ok
        assert rtt == 1.0

    @pytest.mark.asyncio
    async def test_icmp_echo_no_reply(self):
        proc = _fake_ping(b"1 packets transmitted, 0 received\n", returncode=1)
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            assert await HostProber().icmp_echo(IP, 0.2) == (False, 0.0)

    @pytest.mark.asyncio
    async def test_icmp_echo_without_ping_binary(self):
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("ping"))):
            assert await HostProber().icmp_echo(IP, 0.2) == (False, 0.0)

    @pytest.mark.asyncio
    async def test_icmp_echo_timeout_kills_process(self):
        proc = _fake_ping(b"")
        proc.returncode = None

        async def hang():
            await asyncio.sleep(10)

        proc.communicate = AsyncMock(side_effect=hang)
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            assert await HostProber().icmp_echo(IP, 0.05) == (False, 0.0)

        proc.kill.assert_called_once()
        proc.wait.assert_awaited()

    @pytest.mark.asyncio
    async def test_reverse_dns_uses_own_pool(self):
        threads = []

        def lookup(ip):
            threads.append(threading.current_thread().name)
            return "d3-01.stage", [], [ip]

        with patch("socket.gethostbyaddr", side_effect=lookup):
            assert await HostProber().reverse_dns(IP, 1.0) == "d3-01.stage"

        assert threads[0].startswith("dns")

    @pytest.mark.asyncio
    async def test_endpoint_available(self, prober, network):
        url = f"http://{IP}/api/networkadapters"
        network.http[url] = (200, "[]")
        assert await prober.endpoint_available(IP, "/api/networkadapters", 1.0)

        network.http[url] = (404, "")
        assert not await prober.endpoint_available(IP, "/api/networkadapters", 1.0)

        network.http[url] = ConnectionResetError()
        assert not await prober.endpoint_available(IP, "/api/networkadapters", 1.0)
