"""
Multi-strategy host probe.

One probe runs TCP connects against the disguise ports, a single ICMP echo
and a reverse DNS lookup concurrently, then asks the REST API to identify
itself when port 80 answered. Every check is isolated: a failure only
leaves its own field negative, and probe() never raises.
"""

from __future__ import annotations

import asyncio
import logging
import math
import platform
import re
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Iterable, Optional

import aiohttp

from ._types import (
    DISGUISE_PORTS,
    HTTP_PORT,
    NETWORK_ADAPTERS_API_PATH,
    SYSTEM_API_PATH,
    ProbeResult,
)
from .classifier import fetch_classification
from .config import FleetConfig

logger = logging.getLogger(__name__)

_PING_TIME_RE = re.compile(r"time[=<]\s*([\d.]+)\s*ms", re.IGNORECASE)


def ping_command(ip: str, timeout_s: float) -> list[str]:
    """Build a one-shot ping command line for the local platform."""
    system = platform.system().lower()
    timeout_ms = max(1, int(timeout_s * 1000))
    if system == "windows":
        return ["ping", "-n", "1", "-w", str(timeout_ms), ip]
    if system == "darwin":
        return ["ping", "-c", "1", "-W", str(timeout_ms), ip]
    # iputils only takes whole seconds
    return ["ping", "-c", "1", "-W", str(max(1, math.ceil(timeout_s))), ip]


class HostProber:
    """
    Probe a single host with TCP, ICMP, DNS and HTTP checks.

    The capability methods (tcp_connect, icmp_echo, reverse_dns, http_get)
    may raise; probe() contains their failures.
    """

    def __init__(
        self,
        ports: Iterable[int] = DISGUISE_PORTS,
        timeout_ms: int = 200,
        http_timeout_multiplier: int = 3,
        system_api_path: str = SYSTEM_API_PATH,
        network_adapters_api_path: str = NETWORK_ADAPTERS_API_PATH,
        dns_workers: int = 8,
    ):
        """
        Initialize prober.

        Args:
            ports: TCP ports to test
            timeout_ms: Default deadline for TCP, ICMP and DNS
            http_timeout_multiplier: HTTP deadline as a multiple of timeout_ms
            system_api_path: REST path used for classification
            network_adapters_api_path: REST path of the adapter capability check
            dns_workers: Threads reserved for reverse DNS lookups
        """
        self.ports = tuple(ports)
        self.timeout_ms = timeout_ms
        self.http_timeout_multiplier = http_timeout_multiplier
        self.system_api_path = system_api_path
        self.network_adapters_api_path = network_adapters_api_path
        self._dns_pool = ThreadPoolExecutor(max_workers=dns_workers, thread_name_prefix="dns")

    @classmethod
    def from_config(cls, config: FleetConfig) -> "HostProber":
        return cls(
            ports=config.probe_ports,
            timeout_ms=config.scan_timeout_ms,
            http_timeout_multiplier=config.http_timeout_multiplier,
            system_api_path=config.system_api_path,
            network_adapters_api_path=config.network_adapters_api_path,
        )

    @staticmethod
    def url_for(ip: str, path: str) -> str:
        return f"http://{ip}{path}"

    # =========================================================================
    # Capabilities
    # =========================================================================

    async def tcp_connect(self, ip: str, port: int, timeout_s: float) -> Optional[float]:
        """
        Attempt a TCP connection.

        Returns:
            Connect latency in milliseconds, or None if the port is not open
        """
        start = time.perf_counter()
        writer = None
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(ip, port),
                timeout=timeout_s,
            )
            return (time.perf_counter() - start) * 1000
        except (OSError, asyncio.TimeoutError):
            return None
        finally:
            if writer is not None:
                writer.close()
                try:
                    await writer.wait_closed()
                except OSError as e:
                    logger.debug(f"Closing connection to {ip}:{port} failed: {e}")

    async def icmp_echo(self, ip: str, timeout_s: float) -> tuple[bool, float]:
        """
        Send one ICMP echo via the system ping command.

        Returns:
            (success, round trip in milliseconds)
        """
        start = time.perf_counter()
        try:
            proc = await asyncio.create_subprocess_exec(
                *ping_command(ip, timeout_s),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.debug(f"ping unavailable: {e}")
            return False, 0.0

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
        except asyncio.TimeoutError:
            return False, 0.0
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    logger.debug(f"ping for {ip} exited before kill")
                await proc.wait()

        if proc.returncode != 0:
            return False, 0.0

        match = _PING_TIME_RE.search(stdout.decode(errors="replace"))
        if match:
            return True, float(match.group(1))
        return True, (time.perf_counter() - start) * 1000

    async def reverse_dns(self, ip: str, timeout_s: float) -> str:
        """
        Resolve ip to a hostname. Raises on failure.

        gethostbyaddr cannot be interrupted, so a lookup past its deadline
        keeps its thread until the resolver gives up. Lookups run on the
        prober's own pool to keep stuck resolvers off the default executor.
        """
        loop = asyncio.get_running_loop()
        hostname, _, _ = await asyncio.wait_for(
            loop.run_in_executor(self._dns_pool, socket.gethostbyaddr, ip),
            timeout=timeout_s,
        )
        return hostname

    async def http_get(self, url: str, timeout_s: float) -> tuple[int, str]:
        """
        GET url.

        Returns:
            (status, body text). Raises on network errors.
        """
        timeout = aiohttp.ClientTimeout(total=timeout_s)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url) as response:
                body = await response.text(errors="replace")
                return response.status, body

    async def endpoint_available(self, ip: str, path: str, timeout_s: float) -> bool:
        """True if GET path on ip answers 2xx."""
        url = self.url_for(ip, path)
        try:
            status, _ = await self.http_get(url, timeout_s)
        except Exception as e:
            logger.debug(f"GET {url} failed: {e!r}")
            return False
        return 200 <= status < 300

    # =========================================================================
    # Probe
    # =========================================================================

    @staticmethod
    async def _guard(check: Awaitable[Any], default: Any, label: str) -> Any:
        try:
            return await check
        except Exception as e:
            logger.debug(f"{label} failed: {e!r}")
            return default

    async def probe(
        self,
        ip: str,
        ports: Optional[Iterable[int]] = None,
        timeout_ms: Optional[int] = None,
    ) -> ProbeResult:
        """
        Run every check against one host.

        Args:
            ip: Address to probe
            ports: TCP ports to test (default: the prober's ports)
            timeout_ms: Deadline for each TCP/ICMP/DNS check

        Returns:
            ProbeResult populated with whatever succeeded
        """
        ports = tuple(self.ports if ports is None else ports)
        timeout_s = (self.timeout_ms if timeout_ms is None else timeout_ms) / 1000

        latencies, (ping_ok, rtt), hostname = await asyncio.gather(
            asyncio.gather(*(
                self._guard(self.tcp_connect(ip, port, timeout_s), None, f"TCP {ip}:{port}")
                for port in ports
            )),
            self._guard(self.icmp_echo(ip, timeout_s), (False, 0.0), f"ICMP {ip}"),
            self._guard(self.reverse_dns(ip, timeout_s), "", f"Reverse DNS {ip}"),
        )

        open_ports = frozenset(p for p, latency in zip(ports, latencies) if latency is not None)
        best = min((lat for lat in latencies if lat is not None), default=None)
        if ping_ok and (best is None or rtt < best):
            best = rtt

        is_disguise = False
        api_version = None
        if HTTP_PORT in open_ports:
            verdict = await self._guard(
                fetch_classification(self, ip, timeout_s * self.http_timeout_multiplier),
                None,
                f"HTTP {ip}",
            )
            if verdict is not None:
                is_disguise = verdict.is_disguise_server
                api_version = verdict.api_version

        return ProbeResult(
            ip_address=ip,
            hostname=hostname or "",
            open_ports=open_ports,
            ping_success=bool(ping_ok),
            response_time_ms=round(best, 1) if best is not None else -1,
            is_disguise_server=is_disguise,
            api_version=api_version,
        )
