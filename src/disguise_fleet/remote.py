"""
Remote PowerShell execution via WinRM.

Runs the deployment scripts on disguise servers (Windows) using pywinrm.
pywinrm is synchronous, so every call runs in the default thread pool under
an asyncio deadline.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .config import FleetConfig
from .exceptions import RemoteExecutionError, WinRMUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """Username/password pair passed through to the remote host."""
    username: str
    password: str = ""

    def __repr__(self) -> str:
        return f"Credential(username={self.username!r}, password='***')"


@dataclass
class WindowsTarget:
    """WinRM endpoint for one server."""
    hostname: str
    port: int = 5985  # WinRM HTTP (5986 for HTTPS)
    use_ssl: bool = False
    verify_ssl: bool = True
    transport: str = "ntlm"

    @property
    def endpoint(self) -> str:
        protocol = "https" if self.use_ssl else "http"
        return f"{protocol}://{self.hostname}:{self.port}/wsman"


@dataclass
class ScriptResult:
    """Result of one remote script run."""
    success: bool
    target: str
    output: Dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def parsed(self) -> Any:
        """Script stdout decoded as JSON, or None."""
        return self.output.get("parsed")

    @property
    def stderr(self) -> str:
        return self.output.get("std_err", "")


class RemoteExecutor(ABC):
    """Runs a PowerShell script on a remote host."""

    @abstractmethod
    async def run_script(
        self,
        target: str,
        script: str,
        credential: Optional[Credential] = None,
        timeout: int = 120,
    ) -> ScriptResult:
        """
        Execute script on target.

        Returns a ScriptResult when the script ran (whatever its exit code).
        Raises RemoteExecutionError when it could not be run at all.
        """


class WinRMExecutor(RemoteExecutor):
    """
    Execute PowerShell via WinRM.

    Sessions are cached per (host, username) for the lifetime of the executor.
    """

    def __init__(self, config: Optional[FleetConfig] = None):
        self.config = config or FleetConfig()
        self._session_cache: Dict[Tuple[str, str], Any] = {}

    def target_for(self, hostname: str) -> WindowsTarget:
        return WindowsTarget(
            hostname=hostname,
            port=self.config.winrm_port,
            use_ssl=self.config.winrm_use_ssl,
            verify_ssl=self.config.winrm_verify_ssl,
            transport=self.config.winrm_transport,
        )

    def _resolve_credential(self, credential: Optional[Credential]) -> Credential:
        if credential is not None:
            return credential
        pair = self.config.default_credential_pair()
        if pair is None:
            return Credential(username="")
        return Credential(*pair)

    def _get_session(self, target: WindowsTarget, credential: Credential):
        """
        Get or create WinRM session for target.

        Returns:
            winrm.Session object
        """
        try:
            import winrm
        except ImportError as e:
            raise WinRMUnavailable(
                target.hostname,
                "pywinrm is required for remote execution. Install with: pip install pywinrm",
            ) from e

        cache_key = (target.hostname, credential.username)

        if cache_key not in self._session_cache:
            self._session_cache[cache_key] = winrm.Session(
                target.endpoint,
                auth=(credential.username, credential.password),
                transport=target.transport,
                server_cert_validation='validate' if target.verify_ssl else 'ignore',
            )

        return self._session_cache[cache_key]

    def forget(self, hostname: str) -> None:
        """Drop cached sessions for a host."""
        for key in [k for k in self._session_cache if k[0] == hostname]:
            del self._session_cache[key]

    async def run_script(
        self,
        target: str,
        script: str,
        credential: Optional[Credential] = None,
        timeout: int = 120,
    ) -> ScriptResult:
        windows_target = self.target_for(target)
        resolved = self._resolve_credential(credential)
        start = time.monotonic()

        loop = asyncio.get_running_loop()
        try:
            output = await asyncio.wait_for(
                loop.run_in_executor(None, self._execute_sync, windows_target, resolved, script),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise RemoteExecutionError(target, f"Execution timed out after {timeout}s") from e
        except RemoteExecutionError:
            raise
        except Exception as e:
            # Transport and auth failures surface from pywinrm/requests as assorted types
            self.forget(target)
            raise RemoteExecutionError(target, str(e)) from e

        duration = time.monotonic() - start
        result = ScriptResult(
            success=output["success"],
            target=target,
            output=output,
            duration_seconds=duration,
            error=None if output["success"] else (output["std_err"] or f"exit code {output['status_code']}"),
        )
        logger.debug(f"Script on {target} finished in {duration:.1f}s (exit {output['status_code']})")
        return result

    def _execute_sync(self, target: WindowsTarget, credential: Credential, script: str) -> Dict:
        """Synchronous script execution (runs in thread pool)."""
        session = self._get_session(target, credential)

        result = session.run_ps(script)

        output = {
            "status_code": result.status_code,
            "std_out": result.std_out.decode('utf-8', errors='replace') if result.std_out else "",
            "std_err": result.std_err.decode('utf-8', errors='replace') if result.std_err else "",
            "success": result.status_code == 0,
        }

        output["parsed"] = parse_json_output(output["std_out"])

        return output


def parse_json_output(stdout: str) -> Any:
    """Decode ConvertTo-Json output, tolerating leading noise lines."""
    text = stdout.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    # Fall back to the first line that opens a JSON value
    for marker in ("{", "["):
        idx = text.find(marker)
        if idx > 0:
            try:
                return json.loads(text[idx:])
            except json.JSONDecodeError:
                continue
    return None
