"""
Command line entry point: disguise-fleet.

    disguise-fleet scan 10.0.0 1 254
    disguise-fleet test 10.0.0.21
    disguise-fleet deploy --profile stage-left.yaml 10.0.0.21 10.0.0.22
    disguise-fleet serve
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from . import __version__
from ._types import CollectionOrder, DeploymentResult
from .api import FleetAPI
from .config import FleetConfig
from .deployer import BatchDeployer, ProfileDeployer
from .profile import Profile
from .remote import Credential, WinRMExecutor
from .scanner import NetworkScanner

logger = logging.getLogger(__name__)


def load_profile(path: Path) -> Profile:
    """Read a profile from a YAML (or JSON) file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return Profile.model_validate(data)


def _emit(payload) -> None:
    json.dump(payload, sys.stdout, indent=2)
    sys.stdout.write("\n")


def _scan_progress(ip: str, percent: int, message: str) -> None:
    print(f"[{percent:3d}%] {message}", file=sys.stderr)


def _deploy_progress(ip: str, index: int, total: int, result: DeploymentResult) -> None:
    state = "ok" if result.success else f"failed ({result.error_message})"
    print(f"[{index}/{total}] {ip}: {state}", file=sys.stderr)


async def _run_scan(config: FleetConfig, args) -> int:
    scanner = NetworkScanner.from_config(config)
    records = await scanner.scan(
        args.subnet,
        args.start,
        args.end,
        timeout_ms=args.timeout_ms,
        on_progress=None if args.quiet else _scan_progress,
        order=CollectionOrder(args.order),
    )
    if args.disguise_only:
        records = [r for r in records if r.is_disguise_server]
    _emit([r.to_dict() for r in records])
    return 0


async def _run_test(config: FleetConfig, args) -> int:
    scanner = NetworkScanner.from_config(config)
    report = await scanner.test_host(args.ip, timeout_ms=args.timeout_ms)
    _emit(report.to_dict())
    return 0 if report.reachable else 1


async def _run_deploy(config: FleetConfig, args) -> int:
    profile = load_profile(Path(args.profile))

    credential: Optional[Credential] = None
    if args.username:
        credential = Credential(username=args.username, password=args.password or "")

    deployer = ProfileDeployer(WinRMExecutor(config), timeout_seconds=config.remote_timeout_seconds)
    results = await BatchDeployer(deployer).deploy_all(
        args.hosts,
        profile,
        credential=credential,
        on_progress=None if args.quiet else _deploy_progress,
    )
    _emit([r.to_dict() for r in results])
    return 0 if all(r.success for r in results) else 1


def _run_serve(config: FleetConfig, args) -> int:
    if args.host:
        config.api_host = args.host
    if args.port:
        config.api_port = args.port

    service = FleetAPI(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.ensure_future(service.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    try:
        loop.run_until_complete(service.serve_forever())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        loop.run_until_complete(service.stop())
        loop.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="disguise-fleet",
        description="Discover disguise media servers and deploy configuration profiles",
    )
    parser.add_argument("--config", type=str, help="Path to fleet.yaml")
    parser.add_argument("--log-level", type=str, default=None, help="Log level")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Scan an address range")
    scan.add_argument("subnet", help="First three octets, e.g. 10.0.0")
    scan.add_argument("start", type=int, help="First host octet")
    scan.add_argument("end", type=int, help="Last host octet")
    scan.add_argument("--timeout-ms", type=int, default=None, help="Per-check timeout")
    scan.add_argument(
        "--order",
        choices=[o.value for o in CollectionOrder],
        default=CollectionOrder.SUBMISSION.value,
        help="Result collection order",
    )
    scan.add_argument("--disguise-only", action="store_true", help="Only print disguise servers")
    scan.add_argument("-q", "--quiet", action="store_true", help="No progress on stderr")

    test = sub.add_parser("test", help="Test a single host")
    test.add_argument("ip", help="Host address")
    test.add_argument("--timeout-ms", type=int, default=None, help="Per-check timeout")

    deploy = sub.add_parser("deploy", help="Deploy a profile to one or more servers")
    deploy.add_argument("--profile", required=True, help="Profile file (YAML or JSON)")
    deploy.add_argument("--username", help="WinRM username")
    deploy.add_argument("--password", help="WinRM password")
    deploy.add_argument("-q", "--quiet", action="store_true", help="No progress on stderr")
    deploy.add_argument("hosts", nargs="+", help="Server addresses")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", type=str, default=None, help="API host")
    serve.add_argument("--port", type=int, default=None, help="API port")

    return parser


def main(argv=None) -> int:
    """Entry point for disguise-fleet."""
    args = build_parser().parse_args(argv)

    if args.config:
        config = FleetConfig.from_yaml(Path(args.config))
    else:
        config = FleetConfig.from_env()

    if args.log_level:
        config.log_level = args.log_level

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config error: {error}")
        return 2

    try:
        if args.command == "serve":
            return _run_serve(config, args)
        if args.command == "scan":
            return asyncio.run(_run_scan(config, args))
        if args.command == "test":
            return asyncio.run(_run_test(config, args))
        if args.command == "deploy":
            return asyncio.run(_run_deploy(config, args))
    except ValidationError as e:
        logger.error(f"Invalid profile: {e}")
        return 2
    except (OSError, ValueError) as e:
        logger.error(str(e))
        return 2
    return 2


if __name__ == "__main__":
    sys.exit(main())
