"""
Profile deployment to disguise servers.

Applies a profile to a server in three phases over WinRM:
1. Set hostname
2. Configure network adapters
3. Configure the SMB project share

Phases always run in that order and each is isolated: a failure is recorded
as a failed step and the next phase still runs. Nothing is rolled back.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from ._types import DeploymentResult, DeploymentStep, StepName, STEP_ORDER
from .adapters import (
    AdapterOutcome,
    AdapterReport,
    parse_adapter_listing,
    phase_succeeded,
    resolve_adapter,
)
from .profile import Profile
from .progress import DeployProgressCallback, notify
from .remote import Credential, RemoteExecutor, ScriptResult
from . import scripts

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled"

Phase = Callable[[str, Profile, Optional[Credential]], Awaitable[DeploymentStep]]


def _script_error(result: ScriptResult) -> str:
    parsed = result.parsed if isinstance(result.parsed, dict) else {}
    return parsed.get("Error") or result.error or result.stderr or "no output from remote script"


class ProfileDeployer:
    """
    Deploys a profile to one disguise server.
    """

    def __init__(self, executor: RemoteExecutor, timeout_seconds: int = 120):
        """
        Initialize deployer.

        Args:
            executor: RemoteExecutor used for every remote command
            timeout_seconds: Deadline for each remote script
        """
        self.executor = executor
        self.timeout_seconds = timeout_seconds

    async def _run(self, server_ip: str, script: str, credential: Optional[Credential]) -> ScriptResult:
        return await self.executor.run_script(
            target=server_ip,
            script=script,
            credential=credential,
            timeout=self.timeout_seconds,
        )

    async def deploy(
        self,
        server_ip: str,
        profile: Profile,
        credential: Optional[Credential] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> DeploymentResult:
        """
        Apply profile to server_ip.

        Args:
            server_ip: Target server address
            profile: Profile to apply
            credential: Remote credential (default: the executor's)
            cancel: When set, phases not yet started are recorded as cancelled

        Returns:
            DeploymentResult with exactly three steps
        """
        if not isinstance(profile, Profile):
            raise TypeError(f"profile must be a Profile, got {type(profile).__name__}")

        logger.info(f"Deploying profile {profile.name or '(unnamed)'} to {server_ip}")

        phases: dict[StepName, Phase] = {
            StepName.SET_HOSTNAME: self._set_hostname,
            StepName.CONFIGURE_ADAPTERS: self._configure_adapters,
            StepName.CONFIGURE_SMB: self._configure_smb,
        }

        steps: List[DeploymentStep] = []
        for name in STEP_ORDER:
            if cancel is not None and cancel.is_set():
                steps.append(DeploymentStep(step_name=name, success=False, message=CANCELLED_MESSAGE))
                continue
            steps.append(await self._run_phase(name, phases[name], server_ip, profile, credential))

        result = DeploymentResult.from_steps(server_ip, steps)
        if result.success:
            logger.info(f"Deployment to {server_ip} succeeded")
        else:
            logger.warning(f"Deployment to {server_ip} finished with failures: {result.error_message}")
        return result

    async def _run_phase(
        self,
        name: StepName,
        phase: Phase,
        server_ip: str,
        profile: Profile,
        credential: Optional[Credential],
    ) -> DeploymentStep:
        logger.info(f"{name.value} on {server_ip}")
        try:
            step = await phase(server_ip, profile, credential)
        except Exception as e:
            logger.error(f"{name.value} failed on {server_ip}: {e}")
            return DeploymentStep(step_name=name, success=False, message=f"{name.value} failed: {e}")

        if not step.success:
            logger.error(f"{name.value} failed on {server_ip}: {step.message}")
        return step

    # =========================================================================
    # Phase 1: hostname
    # =========================================================================

    async def _set_hostname(
        self, server_ip: str, profile: Profile, credential: Optional[Credential]
    ) -> DeploymentStep:
        name = StepName.SET_HOSTNAME
        if not profile.server_name:
            return DeploymentStep(step_name=name, success=True, message="skipped: no hostname specified")

        result = await self._run(server_ip, scripts.set_hostname_script(profile.server_name), credential)
        parsed = result.parsed if isinstance(result.parsed, dict) else {}

        if not (result.success and parsed.get("Success")):
            return DeploymentStep(
                step_name=name,
                success=False,
                message=f"Rename to {profile.server_name} failed: {_script_error(result)}",
            )

        if not parsed.get("Changed"):
            return DeploymentStep(
                step_name=name,
                success=True,
                message=f"skipped: hostname already {profile.server_name}",
            )

        return DeploymentStep(
            step_name=name,
            success=True,
            message=f"Hostname changed from {parsed.get('Current', '?')} to {profile.server_name} (restart required)",
        )

    # =========================================================================
    # Phase 2: network adapters
    # =========================================================================

    async def _configure_adapters(
        self, server_ip: str, profile: Profile, credential: Optional[Credential]
    ) -> DeploymentStep:
        name = StepName.CONFIGURE_ADAPTERS
        slots = profile.configurable_adapters()
        if not slots:
            return DeploymentStep(step_name=name, success=True, message="skipped: no adapters to configure")

        listing = await self._run(server_ip, scripts.LIST_ADAPTERS_SCRIPT, credential)
        if not listing.success:
            return DeploymentStep(
                step_name=name,
                success=False,
                message=f"Could not list network adapters: {_script_error(listing)}",
            )
        adapters = parse_adapter_listing(listing.parsed)
        logger.debug(f"{server_ip} reports adapters: {[a.name for a in adapters]}")

        claimed: set[int] = set()
        reports: List[AdapterReport] = []
        for slot, settings in slots:
            match = resolve_adapter(slot, settings, adapters, claimed)
            if match is None:
                logger.warning(
                    f"No adapter on {server_ip} for slot {slot + 1} "
                    f"(role={settings.role!r}, name={settings.adapter_name!r})"
                )
                reports.append(AdapterReport(
                    slot=slot,
                    role=settings.role,
                    outcome=AdapterOutcome.WARN,
                    message="no matching adapter, skipped",
                ))
                continue

            adapter, method = match
            claimed.add(adapter.interface_index)
            reports.append(await self._apply_adapter(server_ip, slot, settings, adapter, method, credential))

        success = phase_succeeded(r.outcome for r in reports)
        counts = {o: sum(1 for r in reports if r.outcome == o) for o in AdapterOutcome}
        message = (
            f"{counts[AdapterOutcome.OK]} configured, "
            f"{counts[AdapterOutcome.WARN]} skipped, "
            f"{counts[AdapterOutcome.ERROR]} failed"
        )
        return DeploymentStep(
            step_name=name,
            success=success,
            message=message,
            details=tuple(r.line() for r in reports),
        )

    async def _apply_adapter(self, server_ip, slot, settings, adapter, method, credential) -> AdapterReport:
        try:
            address = "DHCP" if settings.dhcp else f"{settings.ip_address}/{settings.prefix_length}"
            result = await self._run(server_ip, scripts.configure_adapter_script(adapter, settings), credential)
        except Exception as e:
            return AdapterReport(
                slot=slot,
                role=settings.role,
                outcome=AdapterOutcome.ERROR,
                message=str(e),
                adapter_name=adapter.name,
            )

        parsed = result.parsed if isinstance(result.parsed, dict) else {}
        if result.success and parsed.get("Success"):
            return AdapterReport(
                slot=slot,
                role=settings.role,
                outcome=AdapterOutcome.OK,
                message=f"{address} applied (matched by {method.value})",
                adapter_name=adapter.name,
            )

        return AdapterReport(
            slot=slot,
            role=settings.role,
            outcome=AdapterOutcome.ERROR,
            message=_script_error(result),
            adapter_name=adapter.name,
        )

    # =========================================================================
    # Phase 3: SMB share
    # =========================================================================

    async def _configure_smb(
        self, server_ip: str, profile: Profile, credential: Optional[Credential]
    ) -> DeploymentStep:
        name = StepName.CONFIGURE_SMB
        smb = profile.smb_settings
        if not smb.share_d3_projects:
            return DeploymentStep(step_name=name, success=True, message="skipped: SMB sharing disabled")

        result = await self._run(server_ip, scripts.smb_share_script(smb), credential)
        parsed = result.parsed if isinstance(result.parsed, dict) else {}

        if not (result.success and parsed.get("Success")):
            return DeploymentStep(
                step_name=name,
                success=False,
                message=f"Share {smb.share_name} failed: {_script_error(result)}",
            )

        action = "created" if parsed.get("Created") else "updated"
        return DeploymentStep(
            step_name=name,
            success=True,
            message=f"Share {smb.share_name} {action} at {smb.projects_path} ({smb.share_permissions.value})",
        )


class BatchDeployer:
    """
    Deploys one profile to many servers, one at a time.
    """

    def __init__(self, deployer: ProfileDeployer):
        self.deployer = deployer

    async def deploy_all(
        self,
        hosts: Sequence[str],
        profile: Profile,
        credential: Optional[Credential] = None,
        on_progress: Optional[DeployProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> List[DeploymentResult]:
        """
        Deploy profile to every host in order.

        Args:
            hosts: Server addresses
            profile: Profile to apply
            credential: Remote credential
            on_progress: Called as (ip, index, total, result) after each host
            cancel: When set, remaining hosts get a cancelled result

        Returns:
            One DeploymentResult per host, in input order
        """
        if not isinstance(profile, Profile):
            raise TypeError(f"profile must be a Profile, got {type(profile).__name__}")

        total = len(hosts)
        logger.info(f"Starting profile deployment to {total} servers")

        results: List[DeploymentResult] = []
        for index, ip in enumerate(hosts, start=1):
            if cancel is not None and cancel.is_set():
                result = DeploymentResult.failed(ip, CANCELLED_MESSAGE)
            else:
                try:
                    result = await self.deployer.deploy(ip, profile, credential, cancel=cancel)
                except Exception as e:
                    logger.exception(f"Deployment to {ip} raised")
                    result = DeploymentResult.failed(ip, str(e))

            results.append(result)
            notify(on_progress, ip, index, total, result)

        successful = sum(1 for r in results if r.success)
        logger.info(f"Deployment complete: {successful}/{total} successful")

        return results
