"""
disguise fleet - discovery and profile deployment for disguise media servers.

Finds disguise servers on an IPv4 range and pushes a configuration profile
(hostname, network adapters, SMB project share) to selected hosts.

Architecture:
    NetworkScanner (EYES) - probes a range, classifies disguise servers
    ProfileDeployer / BatchDeployer (HANDS) - applies profiles over WinRM

State:
    - No inventory is persisted between scans
    - The last scan lives in a caller-owned ScanSession
"""

__version__ = "0.1.0"

from ._types import (
    ProbeResult,
    DiscoveryRecord,
    HostReport,
    StepName,
    DeploymentStep,
    DeploymentResult,
    CollectionOrder,
)
from .exceptions import (
    FleetError,
    RemoteExecutionError,
    WinRMUnavailable,
    ScanInProgressError,
)
from .profile import Profile, NetworkAdapterSettings, SMBSettings, SharePermission
from .config import FleetConfig
from .probe import HostProber
from .scanner import NetworkScanner, ScanSession
from .remote import Credential, WinRMExecutor
from .deployer import ProfileDeployer, BatchDeployer

__all__ = [
    "__version__",
    "ProbeResult",
    "DiscoveryRecord",
    "HostReport",
    "StepName",
    "DeploymentStep",
    "DeploymentResult",
    "CollectionOrder",
    "FleetError",
    "RemoteExecutionError",
    "WinRMUnavailable",
    "ScanInProgressError",
    "Profile",
    "NetworkAdapterSettings",
    "SMBSettings",
    "SharePermission",
    "FleetConfig",
    "HostProber",
    "NetworkScanner",
    "ScanSession",
    "Credential",
    "WinRMExecutor",
    "ProfileDeployer",
    "BatchDeployer",
]
