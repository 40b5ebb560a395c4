"""
disguise fleet configuration.

Defaults suit a flat show network: short probe deadlines for range scans,
longer ones for a single targeted test, WinRM over HTTP with NTLM.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from ._types import DISGUISE_PORTS, SYSTEM_API_PATH, NETWORK_ADAPTERS_API_PATH

logger = logging.getLogger(__name__)


@dataclass
class FleetConfig:
    """Scanner and deployer configuration."""

    # Scanning behavior
    scan_timeout_ms: int = 200
    test_timeout_ms: int = 2000
    max_concurrent_probes: int = 50
    probe_ports: list[int] = field(default_factory=lambda: list(DISGUISE_PORTS))
    http_timeout_multiplier: int = 3
    deep_check_timeout_seconds: float = 5.0

    # REST paths on the disguise server
    system_api_path: str = SYSTEM_API_PATH
    network_adapters_api_path: str = NETWORK_ADAPTERS_API_PATH

    # WinRM
    winrm_port: int = 5985
    winrm_use_ssl: bool = False
    winrm_verify_ssl: bool = True
    winrm_transport: str = "ntlm"  # ntlm, kerberos, basic, credssp
    winrm_username: str = ""
    winrm_password: str = ""
    remote_timeout_seconds: int = 120

    # API server
    api_host: str = "127.0.0.1"
    api_port: int = 8090

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "FleetConfig":
        """Load configuration from environment variables."""
        config = cls()

        config.scan_timeout_ms = int(os.getenv("FLEET_SCAN_TIMEOUT_MS", config.scan_timeout_ms))
        config.test_timeout_ms = int(os.getenv("FLEET_TEST_TIMEOUT_MS", config.test_timeout_ms))
        config.max_concurrent_probes = int(
            os.getenv("FLEET_MAX_CONCURRENT", config.max_concurrent_probes)
        )

        ports = os.getenv("FLEET_PROBE_PORTS", "")
        if ports:
            config.probe_ports = [int(p.strip()) for p in ports.split(",") if p.strip()]

        # WinRM
        config.winrm_port = int(os.getenv("FLEET_WINRM_PORT", config.winrm_port))
        config.winrm_use_ssl = os.getenv("FLEET_WINRM_SSL", "false").lower() == "true"
        config.winrm_verify_ssl = os.getenv("FLEET_WINRM_VERIFY_SSL", "true").lower() == "true"
        config.winrm_transport = os.getenv("FLEET_WINRM_TRANSPORT", config.winrm_transport)
        config.winrm_username = os.getenv("FLEET_WINRM_USERNAME", "")
        config.winrm_password = os.getenv("FLEET_WINRM_PASSWORD", "")

        # API server
        config.api_host = os.getenv("FLEET_API_HOST", config.api_host)
        config.api_port = int(os.getenv("FLEET_API_PORT", config.api_port))

        config.log_level = os.getenv("LOG_LEVEL", "INFO")

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "FleetConfig":
        """Load configuration from YAML file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        config = cls()

        if "scan" in data:
            s = data["scan"]
            config.scan_timeout_ms = s.get("timeout_ms", config.scan_timeout_ms)
            config.test_timeout_ms = s.get("test_timeout_ms", config.test_timeout_ms)
            config.max_concurrent_probes = s.get("max_concurrent", config.max_concurrent_probes)
            config.probe_ports = s.get("ports", config.probe_ports)
            config.deep_check_timeout_seconds = s.get(
                "deep_check_timeout_seconds", config.deep_check_timeout_seconds
            )

        if "api_paths" in data:
            p = data["api_paths"]
            config.system_api_path = p.get("system", config.system_api_path)
            config.network_adapters_api_path = p.get(
                "network_adapters", config.network_adapters_api_path
            )

        if "winrm" in data:
            w = data["winrm"]
            config.winrm_port = w.get("port", config.winrm_port)
            config.winrm_use_ssl = w.get("use_ssl", config.winrm_use_ssl)
            config.winrm_verify_ssl = w.get("verify_ssl", config.winrm_verify_ssl)
            config.winrm_transport = w.get("transport", config.winrm_transport)
            config.winrm_username = w.get("username", config.winrm_username)
            config.winrm_password = w.get("password", config.winrm_password)
            config.remote_timeout_seconds = w.get("timeout_seconds", config.remote_timeout_seconds)

        if "api" in data:
            a = data["api"]
            config.api_host = a.get("host", config.api_host)
            config.api_port = a.get("port", config.api_port)

        config.log_level = data.get("log_level", "INFO")

        return config

    def validate(self) -> list[str]:
        """Validate configuration, returning list of errors."""
        errors = []

        if self.scan_timeout_ms <= 0:
            errors.append(f"Invalid scan timeout: {self.scan_timeout_ms}ms")

        if self.test_timeout_ms <= 0:
            errors.append(f"Invalid test timeout: {self.test_timeout_ms}ms")

        if self.max_concurrent_probes < 1:
            errors.append(f"Invalid concurrency limit: {self.max_concurrent_probes}")

        for port in self.probe_ports:
            if not 0 < port < 65536:
                errors.append(f"Invalid probe port: {port}")

        if self.winrm_transport not in ("ntlm", "kerberos", "basic", "credssp", "plaintext"):
            errors.append(f"Unknown WinRM transport: {self.winrm_transport}")

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            errors.append(f"Invalid log level: {self.log_level}")

        return errors

    @property
    def winrm_scheme(self) -> str:
        return "https" if self.winrm_use_ssl else "http"

    def default_credential_pair(self) -> Optional[tuple[str, str]]:
        if not self.winrm_username:
            return None
        return (self.winrm_username, self.winrm_password)


# Example fleet.yaml:
"""
scan:
  timeout_ms: 200
  test_timeout_ms: 2000
  max_concurrent: 50
  ports: [80, 873, 9864]
  deep_check_timeout_seconds: 5

winrm:
  port: 5985
  use_ssl: false
  transport: ntlm
  username: "d3"
  password: "..."
  timeout_seconds: 120

api:
  host: "127.0.0.1"
  port: 8090

log_level: "INFO"
"""
