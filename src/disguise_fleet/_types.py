"""
Type definitions for disguise fleet.

These dataclasses define the core domain model for discovery, classification
and profile deployment results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def now_utc() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


# Ports that identify a disguise server on the wire
DISGUISE_PORTS = (
    80,     # d3 REST API
    873,    # rsync (project sync)
    9864,   # d3 service discovery
)

HTTP_PORT = 80

SYSTEM_API_PATH = "/api/service/system"
NETWORK_ADAPTERS_API_PATH = "/api/networkadapters"

UNKNOWN_VERSION = "Unknown"


class CollectionOrder(str, Enum):
    """Order in which scan results are drained from the worker pool."""
    SUBMISSION = "submission"  # default: progress advances through the range
    COMPLETION = "completion"  # first finished, first reported


@dataclass(frozen=True)
class ProbeResult:
    """Everything one multi-strategy probe learned about a host."""
    ip_address: str
    hostname: str = ""
    open_ports: frozenset[int] = frozenset()
    ping_success: bool = False
    response_time_ms: float = -1
    is_disguise_server: bool = False
    api_version: Optional[str] = None

    @property
    def responded(self) -> bool:
        """Host answered at least one check."""
        return bool(self.open_ports) or self.ping_success

    @property
    def http_open(self) -> bool:
        return HTTP_PORT in self.open_ports


@dataclass
class DiscoveryRecord:
    """
    A probe result retained by a scan.

    Mutable so the deep-check pass can upgrade classification in place.
    """
    ip_address: str
    hostname: str = ""
    open_ports: list[int] = field(default_factory=list)
    ping_success: bool = False
    response_time_ms: float = -1
    is_disguise_server: bool = False
    api_version: Optional[str] = None
    discovered_at: datetime = field(default_factory=now_utc)

    @classmethod
    def from_probe(cls, probe: ProbeResult) -> "DiscoveryRecord":
        return cls(
            ip_address=probe.ip_address,
            hostname=probe.hostname,
            open_ports=sorted(probe.open_ports),
            ping_success=probe.ping_success,
            response_time_ms=probe.response_time_ms,
            is_disguise_server=probe.is_disguise_server,
            api_version=probe.api_version,
        )

    @property
    def http_open(self) -> bool:
        return HTTP_PORT in self.open_ports

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API/CLI output."""
        return {
            "ip_address": self.ip_address,
            "hostname": self.hostname,
            "open_ports": list(self.open_ports),
            "ping_success": self.ping_success,
            "response_time_ms": self.response_time_ms,
            "is_disguise_server": self.is_disguise_server,
            "api_version": self.api_version,
            "discovered_at": self.discovered_at.isoformat(),
        }


@dataclass
class HostReport:
    """Result of a single-host connection test."""
    probe: ProbeResult
    deep_checked: bool = False
    network_adapters_api: bool = False

    @property
    def is_disguise_server(self) -> bool:
        return self.probe.is_disguise_server

    @property
    def api_version(self) -> Optional[str]:
        return self.probe.api_version

    @property
    def reachable(self) -> bool:
        return self.probe.responded

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip_address": self.probe.ip_address,
            "hostname": self.probe.hostname,
            "open_ports": sorted(self.probe.open_ports),
            "ping_success": self.probe.ping_success,
            "response_time_ms": self.probe.response_time_ms,
            "is_disguise_server": self.is_disguise_server,
            "api_version": self.api_version,
            "reachable": self.reachable,
            "deep_checked": self.deep_checked,
            "network_adapters_api": self.network_adapters_api,
        }


class StepName(str, Enum):
    """The three deployment phases, in execution order."""
    SET_HOSTNAME = "Set Hostname"
    CONFIGURE_ADAPTERS = "Configure Network Adapters"
    CONFIGURE_SMB = "Configure SMB Shares"


STEP_ORDER = (
    StepName.SET_HOSTNAME,
    StepName.CONFIGURE_ADAPTERS,
    StepName.CONFIGURE_SMB,
)


@dataclass(frozen=True)
class DeploymentStep:
    """Outcome of one deployment phase."""
    step_name: StepName
    success: bool
    message: str = ""
    details: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_name": self.step_name.value,
            "success": self.success,
            "message": self.message,
            "details": list(self.details),
        }


@dataclass(frozen=True)
class DeploymentResult:
    """Outcome of deploying a profile to one server."""
    server_ip: str
    success: bool
    steps: tuple[DeploymentStep, ...]
    error_message: str = ""
    timestamp: datetime = field(default_factory=now_utc)

    @classmethod
    def from_steps(cls, server_ip: str, steps: list[DeploymentStep]) -> "DeploymentResult":
        """
        Build a result from the three phase outcomes.

        Overall success is the AND of the step flags; the error message names
        every failed step.
        """
        names = tuple(s.step_name for s in steps)
        if names != STEP_ORDER:
            raise ValueError(
                f"Deployment needs exactly {len(STEP_ORDER)} steps in order, got {names}"
            )
        failed = [s.step_name.value for s in steps if not s.success]
        return cls(
            server_ip=server_ip,
            success=not failed,
            steps=tuple(steps),
            error_message=", ".join(failed),
        )

    @classmethod
    def failed(cls, server_ip: str, message: str) -> "DeploymentResult":
        """A result where every step failed with the same message."""
        return cls.from_steps(
            server_ip,
            [DeploymentStep(step_name=name, success=False, message=message) for name in STEP_ORDER],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_ip": self.server_ip,
            "success": self.success,
            "steps": [s.to_dict() for s in self.steps],
            "error_message": self.error_message,
            "timestamp": self.timestamp.isoformat(),
        }
