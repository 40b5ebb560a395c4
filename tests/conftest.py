"""Shared fixtures: a scripted network for HostProber and a fake disguise server."""

import json
import re
from unittest.mock import AsyncMock

import pytest

from disguise_fleet.exceptions import RemoteExecutionError
from disguise_fleet.probe import HostProber
from disguise_fleet.profile import NetworkAdapterSettings, Profile
from disguise_fleet.remote import RemoteExecutor, ScriptResult
from disguise_fleet.scripts import LIST_ADAPTERS_SCRIPT


class FakeNetwork:
    """Scripted answers for the HostProber capabilities, keyed by address."""

    def __init__(self):
        self.open_ports = {}  # ip -> {port: latency_ms}
        self.ping = {}        # ip -> rtt_ms
        self.names = {}       # ip -> hostname
        self.http = {}        # url -> (status, body) or Exception

    async def tcp_connect(self, ip, port, timeout_s):
        return self.open_ports.get(ip, {}).get(port)

    async def icmp_echo(self, ip, timeout_s):
        if ip in self.ping:
            return True, self.ping[ip]
        return False, 0.0

    async def reverse_dns(self, ip, timeout_s):
        if ip in self.names:
            return self.names[ip]
        raise OSError(f"no PTR record for {ip}")

    async def http_get(self, url, timeout_s):
        answer = self.http.get(url)
        if answer is None:
            raise ConnectionRefusedError(url)
        if isinstance(answer, Exception):
            raise answer
        return answer

    def install(self, prober: HostProber) -> HostProber:
        prober.tcp_connect = AsyncMock(side_effect=self.tcp_connect)
        prober.icmp_echo = AsyncMock(side_effect=self.icmp_echo)
        prober.reverse_dns = AsyncMock(side_effect=self.reverse_dns)
        prober.http_get = AsyncMock(side_effect=self.http_get)
        return prober


class FakeServer:
    """
    Answers the deployment scripts the way a disguise server would.

    Dispatches on the script text and returns the parsed JSON the real
    PowerShell would print.
    """

    def __init__(self, hostname="D3-OLD", adapters=None):
        self.hostname = hostname
        self.adapters = adapters if adapters is not None else [
            {"Name": "d3Net", "InterfaceDescription": "Intel(R) I210", "InterfaceIndex": 3,
             "Status": "Up", "MacAddress": "00-11-22-33-44-01"},
            {"Name": "Media", "InterfaceDescription": "Mellanox ConnectX-5", "InterfaceIndex": 5,
             "Status": "Up", "MacAddress": "00-11-22-33-44-02"},
        ]
        self.fail_targets = set()   # run_script raises for these hosts
        self.fail_phase = None      # "hostname", "listing", "adapter", "smb"
        self.raise_phase = None     # phase whose script raises instead of failing
        self.scripts = []

    def _phase(self, script):
        if script == LIST_ADAPTERS_SCRIPT:
            return "listing"
        if "Rename-Computer" in script:
            return "hostname"
        if "Remove-NetIPAddress" in script:
            return "adapter"
        if "SmbShare" in script:
            return "smb"
        return "unknown"

    def answer(self, target, script):
        self.scripts.append((target, script))
        phase = self._phase(script)

        if target in self.fail_targets or phase == self.raise_phase:
            raise RemoteExecutionError(target, "Connection refused")

        if phase == self.fail_phase:
            return ScriptResult(
                success=False,
                target=target,
                output={"parsed": {"Success": False, "Error": f"{phase} exploded"}, "std_err": ""},
                error="exit code 1",
            )

        if phase == "hostname":
            new_name = re.search(r"\$NewName = '([^']*)'", script).group(1)
            changed = new_name.lower() != self.hostname.lower()
            parsed = {"Success": True, "Changed": changed, "Current": self.hostname}
        elif phase == "listing":
            parsed = self.adapters
        elif phase == "adapter":
            parsed = {"Success": True, "Actions": ["Cleared IPv4 configuration"]}
        elif phase == "smb":
            parsed = {"Success": True, "Created": True, "Updated": False}
        else:
            parsed = None

        return ScriptResult(
            success=True,
            target=target,
            output={"parsed": parsed, "std_out": json.dumps(parsed), "std_err": "", "status_code": 0},
        )


class FakeExecutor(RemoteExecutor):
    """RemoteExecutor backed by a FakeServer."""

    def __init__(self, server: FakeServer):
        self.server = server
        self.credentials = []

    async def run_script(self, target, script, credential=None, timeout=120):
        self.credentials.append(credential)
        return self.server.answer(target, script)


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def prober(network):
    """HostProber whose capabilities answer from the scripted network."""
    return network.install(HostProber(timeout_ms=50))


@pytest.fixture
def fake_server():
    return FakeServer()


@pytest.fixture
def executor(fake_server):
    return FakeExecutor(fake_server)


@pytest.fixture
def static_profile():
    """Empty hostname, one static d3Net adapter, SMB disabled."""
    return Profile(
        name="stage-left",
        network_adapters=[
            NetworkAdapterSettings(
                role="d3Net",
                ip_address="10.0.0.21",
                subnet_mask="255.255.255.0",
                gateway="10.0.0.1",
                enabled=True,
            ),
        ],
    )
