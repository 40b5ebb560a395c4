"""
HTTP API for scans, host tests and profile deployment.

Runs on aiohttp. Scans share one ScanSession, so a second scan request while
one is in flight is refused with 409.
"""

import asyncio
import logging
from typing import Any, Optional

from aiohttp import web
from pydantic import ValidationError

from .config import FleetConfig
from .deployer import BatchDeployer, ProfileDeployer
from .exceptions import ScanInProgressError
from .profile import Profile
from .remote import Credential, WinRMExecutor
from .scanner import NetworkScanner, ScanSession

logger = logging.getLogger(__name__)


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"status": "error", "message": message}, status=status)


class FleetAPI:
    """
    aiohttp front end over NetworkScanner and BatchDeployer.
    """

    def __init__(
        self,
        config: FleetConfig,
        scanner: Optional[NetworkScanner] = None,
        batch: Optional[BatchDeployer] = None,
        session: Optional[ScanSession] = None,
    ):
        self.config = config
        self.scanner = scanner or NetworkScanner.from_config(config)
        self.batch = batch or BatchDeployer(
            ProfileDeployer(WinRMExecutor(config), timeout_seconds=config.remote_timeout_seconds)
        )
        self.session = session or ScanSession()

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._shutdown_event = asyncio.Event()

    def build_app(self) -> web.Application:
        """Create the aiohttp application with all routes."""
        app = web.Application()
        app.router.add_post("/api/scans", self._handle_scan)
        app.router.add_get("/api/scans/last", self._handle_last_scan)
        app.router.add_get("/api/hosts/{ip}", self._handle_test_host)
        app.router.add_post("/api/deployments", self._handle_deploy)
        app.router.add_get("/api/health", self._handle_health)
        return app

    async def start(self) -> None:
        """Start serving on the configured host and port."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.api_host, self.config.api_port)
        await site.start()
        logger.info(f"API server started on {self.config.api_host}:{self.config.api_port}")

    async def stop(self) -> None:
        """Stop the API server."""
        logger.info("Stopping API server")
        self._shutdown_event.set()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def serve_forever(self) -> None:
        await self.start()
        await self._shutdown_event.wait()

    # API Handlers
    # -------------------------------------------------------------------------

    async def _read_json(self, request: web.Request) -> dict[str, Any]:
        if not request.body_exists:
            return {}
        data = await request.json()
        if not isinstance(data, dict):
            raise ValueError("Request body must be a JSON object")
        return data

    async def _handle_scan(self, request: web.Request) -> web.Response:
        """Handle POST /api/scans."""
        if self.session.scan_in_progress:
            return _error("A scan is already running", 409)

        try:
            data = await self._read_json(request)
            subnet = str(data["subnet"])
            start = int(data["start"])
            end = int(data["end"])
            timeout_ms = data.get("timeout_ms")
            if timeout_ms is not None:
                timeout_ms = int(timeout_ms)
        except (KeyError, TypeError, ValueError) as e:
            return _error(f"Invalid scan request: {e}", 400)

        try:
            records = await self.scanner.scan(
                subnet, start, end, timeout_ms=timeout_ms, session=self.session
            )
        except ScanInProgressError as e:
            return _error(str(e), 409)
        except ValueError as e:
            return _error(str(e), 400)
        except Exception as e:
            logger.exception("Scan failed")
            return _error(str(e), 500)

        return web.json_response({
            "status": "ok",
            "count": len(records),
            "disguise_servers": sum(1 for r in records if r.is_disguise_server),
            "records": [r.to_dict() for r in records],
        })

    async def _handle_last_scan(self, request: web.Request) -> web.Response:
        """Handle GET /api/scans/last."""
        return web.json_response({
            "scan_in_progress": self.session.scan_in_progress,
            "scanned_at": self.session.last_scan_at.isoformat() if self.session.last_scan_at else None,
            "records": [r.to_dict() for r in self.session.last_scan],
        })

    async def _handle_test_host(self, request: web.Request) -> web.Response:
        """Handle GET /api/hosts/{ip}."""
        ip = request.match_info["ip"]
        try:
            report = await self.scanner.test_host(ip)
        except Exception as e:
            logger.exception(f"Test of {ip} failed")
            return _error(str(e), 500)
        return web.json_response(report.to_dict())

    async def _handle_deploy(self, request: web.Request) -> web.Response:
        """Handle POST /api/deployments."""
        try:
            data = await self._read_json(request)
            hosts = data.get("hosts")
            if not isinstance(hosts, list) or not hosts or not all(isinstance(h, str) for h in hosts):
                raise ValueError("hosts must be a non-empty list of addresses")
            profile = Profile.model_validate(data.get("profile") or {})
            credential = None
            if data.get("credential"):
                cred = data["credential"]
                credential = Credential(username=str(cred["username"]), password=str(cred.get("password", "")))
        except ValidationError as e:
            return _error(f"Invalid profile: {e.error_count()} validation error(s): {e}", 400)
        except (KeyError, TypeError, ValueError) as e:
            return _error(f"Invalid deployment request: {e}", 400)

        results = await self.batch.deploy_all(hosts, profile, credential=credential)

        return web.json_response({
            "status": "ok",
            "successful": sum(1 for r in results if r.success),
            "results": [r.to_dict() for r in results],
        })

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /api/health."""
        return web.json_response({
            "status": "ok",
            "service": "disguise-fleet",
            "scan_in_progress": self.session.scan_in_progress,
            "last_scan": self.session.last_scan_at.isoformat() if self.session.last_scan_at else None,
            "known_servers": len(self.session.disguise_servers()),
        })
