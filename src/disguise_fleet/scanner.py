"""
Range scanner - bounded concurrent probing with ordered collection.

Every target is submitted up front as an asyncio task; a semaphore caps how
many probes are in flight. Results are drained in submission order by
default, so progress walks through the range even when a later host
finishes first.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from ._types import (
    CollectionOrder,
    DiscoveryRecord,
    HostReport,
    ProbeResult,
    now_utc,
)
from .classifier import deep_check, fetch_classification
from .config import FleetConfig
from .exceptions import ScanInProgressError
from .probe import HostProber
from .progress import ScanProgressCallback, notify

logger = logging.getLogger(__name__)


def build_targets(subnet_base: str, start: int, end: int) -> list[str]:
    """
    Expand a /24-style base and last-octet range into addresses.

    start > end yields no targets. The base is not interpreted beyond
    dropping a trailing dot.
    """
    if start > end:
        return []
    for octet in (start, end):
        if not 0 <= octet <= 255:
            raise ValueError(f"Octet out of range: {octet}")
    base = subnet_base.strip().rstrip(".")
    return [f"{base}.{octet}" for octet in range(start, end + 1)]


@dataclass
class ScanSession:
    """
    Caller-owned scan state.

    Holds the most recent scan. A new scan replaces it wholesale.
    """
    last_scan: list[DiscoveryRecord] = field(default_factory=list)
    last_scan_at: Optional[datetime] = None
    scan_in_progress: bool = False

    def begin(self) -> None:
        if self.scan_in_progress:
            raise ScanInProgressError("A scan is already running for this session")
        self.scan_in_progress = True

    def finish(self) -> None:
        self.scan_in_progress = False

    def replace(self, records: list[DiscoveryRecord]) -> None:
        self.last_scan = list(records)
        self.last_scan_at = now_utc()

    def disguise_servers(self) -> list[DiscoveryRecord]:
        return [r for r in self.last_scan if r.is_disguise_server]

    def find(self, ip: str) -> Optional[DiscoveryRecord]:
        return next((r for r in self.last_scan if r.ip_address == ip), None)


class NetworkScanner:
    """
    Discover disguise servers on an address range.
    """

    def __init__(
        self,
        prober: Optional[HostProber] = None,
        max_concurrent: int = 50,
        deep_check_timeout_seconds: float = 5.0,
        test_timeout_ms: int = 2000,
    ):
        """
        Initialize scanner.

        Args:
            prober: Host prober (default: HostProber())
            max_concurrent: Maximum probes in flight
            deep_check_timeout_seconds: HTTP deadline of the deep-check pass
            test_timeout_ms: Default deadline for test_host
        """
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {max_concurrent}")
        self.prober = prober or HostProber()
        self.max_concurrent = max_concurrent
        self.deep_check_timeout_seconds = deep_check_timeout_seconds
        self.test_timeout_ms = test_timeout_ms

    @classmethod
    def from_config(cls, config: FleetConfig) -> "NetworkScanner":
        return cls(
            prober=HostProber.from_config(config),
            max_concurrent=config.max_concurrent_probes,
            deep_check_timeout_seconds=config.deep_check_timeout_seconds,
            test_timeout_ms=config.test_timeout_ms,
        )

    async def _probe_one(self, semaphore: asyncio.Semaphore, ip: str, timeout_ms: int) -> ProbeResult:
        async with semaphore:
            try:
                return await self.prober.probe(ip, timeout_ms=timeout_ms)
            except Exception as e:
                logger.debug(f"Probe of {ip} raised: {e!r}")
                return ProbeResult(ip_address=ip)

    async def scan(
        self,
        subnet_base: str,
        start: int,
        end: int,
        timeout_ms: Optional[int] = None,
        on_progress: Optional[ScanProgressCallback] = None,
        session: Optional[ScanSession] = None,
        cancel: Optional[asyncio.Event] = None,
        order: CollectionOrder = CollectionOrder.SUBMISSION,
    ) -> list[DiscoveryRecord]:
        """
        Scan subnet_base.start through subnet_base.end.

        Args:
            subnet_base: First three octets, e.g. "10.0.0"
            start: First last-octet (inclusive)
            end: Final last-octet (inclusive)
            timeout_ms: Per-check deadline (default: the prober's)
            on_progress: Called as (ip, percent_complete, message) once per target
            session: Session whose last scan is replaced by the result
            cancel: Set to stop collecting; the partial result is returned
            order: SUBMISSION (default) or COMPLETION draining

        Returns:
            Records for every host that answered a check, in address order
        """
        targets = build_targets(subnet_base, start, end)
        if timeout_ms is None:
            timeout_ms = self.prober.timeout_ms
        if timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {timeout_ms}")

        if session is not None:
            session.begin()

        try:
            records = await self._scan_targets(targets, timeout_ms, on_progress, cancel, order)
            if session is not None:
                session.replace(records)
            return records
        finally:
            if session is not None:
                session.finish()

    async def _scan_targets(
        self,
        targets: list[str],
        timeout_ms: int,
        on_progress: Optional[ScanProgressCallback],
        cancel: Optional[asyncio.Event],
        order: CollectionOrder,
    ) -> list[DiscoveryRecord]:
        total = len(targets)
        if not targets:
            logger.info("Scan requested with an empty range")
            return []

        logger.info(
            f"Scanning {total} targets {targets[0]} - {targets[-1]} "
            f"(timeout={timeout_ms}ms, max_concurrent={self.max_concurrent}, order={order.value})"
        )

        semaphore = asyncio.Semaphore(self.max_concurrent)
        tasks = [
            asyncio.create_task(self._probe_one(semaphore, ip, timeout_ms))
            for ip in targets
        ]
        position = {ip: i for i, ip in enumerate(targets)}

        if order == CollectionOrder.COMPLETION:
            pending = asyncio.as_completed(tasks)
        else:
            pending = iter(tasks)

        retained: list[DiscoveryRecord] = []
        processed = 0
        try:
            for job in pending:
                if cancel is not None and cancel.is_set():
                    logger.warning(f"Scan cancelled after {processed}/{total} targets")
                    break

                result = await job
                processed += 1

                if result.responded:
                    retained.append(DiscoveryRecord.from_probe(result))
                    message = f"{result.ip_address} responded"
                    if result.is_disguise_server:
                        message = f"{result.ip_address} is a disguise server ({result.api_version})"
                else:
                    message = f"{result.ip_address} no response"

                notify(on_progress, result.ip_address, processed * 100 // total, message)
        finally:
            leftovers = [t for t in tasks if not t.done()]
            for task in leftovers:
                task.cancel()
            if leftovers:
                await asyncio.gather(*leftovers, return_exceptions=True)

        retained.sort(key=lambda r: position[r.ip_address])

        upgraded = await deep_check(retained, self.prober, self.deep_check_timeout_seconds)

        servers = sum(1 for r in retained if r.is_disguise_server)
        logger.info(
            f"Scan complete: {processed}/{total} probed, {len(retained)} responded, "
            f"{servers} disguise servers ({upgraded} via deep check)"
        )
        return retained

    async def test_host(self, ip: str, timeout_ms: Optional[int] = None) -> HostReport:
        """
        Probe and classify a single host for a connection test.

        Runs the deep check when port 80 answered but the first HTTP probe did
        not identify the service, then checks the network adapter endpoint.
        """
        if timeout_ms is None:
            timeout_ms = self.test_timeout_ms
        probe = await self.prober.probe(ip, timeout_ms=timeout_ms)
        report = HostReport(probe=probe)

        if not probe.http_open:
            return report

        if not probe.is_disguise_server:
            report.deep_checked = True
            verdict = await fetch_classification(self.prober, ip, self.deep_check_timeout_seconds)
            if verdict and verdict.is_disguise_server:
                report.probe = replace(
                    probe, is_disguise_server=True, api_version=verdict.api_version
                )

        report.network_adapters_api = await self.prober.endpoint_available(
            ip,
            self.prober.network_adapters_api_path,
            self.deep_check_timeout_seconds,
        )
        return report
