"""Tests for WinRM remote execution."""

import sys
import time

import pytest
from unittest.mock import MagicMock, patch

from disguise_fleet.config import FleetConfig
from disguise_fleet.exceptions import RemoteExecutionError, WinRMUnavailable
from disguise_fleet.remote import (
    Credential,
    WindowsTarget,
    WinRMExecutor,
    parse_json_output,
)


def _ps_result(status_code=0, std_out=b"", std_err=b""):
    result = MagicMock()
    result.status_code = status_code
    result.std_out = std_out
    result.std_err = std_err
    return result


class TestCredential:
    """Test credential handling."""

    def test_repr_masks_password(self):
        text = repr(Credential(username="d3", password="hunter2"))
        assert "hunter2" not in text
        assert "d3" in text

    def test_default_credential_from_config(self):
        executor = WinRMExecutor(FleetConfig(winrm_username="d3", winrm_password="pw"))
        assert executor._resolve_credential(None) == Credential("d3", "pw")
        assert executor._resolve_credential(Credential("admin")) == Credential("admin")

    def test_no_default_credential(self):
        assert WinRMExecutor()._resolve_credential(None) == Credential(username="")


class TestWindowsTarget:
    """Test endpoint construction."""

    def test_http(self):
        assert WindowsTarget(hostname="10.0.0.21").endpoint == "http://10.0.0.21:5985/wsman"

    def test_https_from_config(self):
        target = WinRMExecutor(FleetConfig(winrm_use_ssl=True, winrm_port=5986)).target_for("d3-01")
        assert target.endpoint == "https://d3-01:5986/wsman"


class TestParseJsonOutput:
    """Test stdout decoding."""

    def test_plain(self):
        assert parse_json_output('{"Success": true}') == {"Success": True}

    def test_leading_noise(self):
        assert parse_json_output('WARNING: something\n[{"Name": "Ethernet"}]') == [{"Name": "Ethernet"}]

    def test_empty_and_garbage(self):
        assert parse_json_output("") is None
        assert parse_json_output("not json at all") is None


class TestWinRMExecutor:
    """Test script execution through pywinrm."""

    @pytest.mark.asyncio
    async def test_success(self):
        executor = WinRMExecutor()
        session = MagicMock()
        session.run_ps.return_value = _ps_result(std_out=b'{"Success": true, "Changed": false}')

        with patch.object(executor, "_get_session", return_value=session):
            result = await executor.run_script("10.0.0.21", "hostname", Credential("d3", "pw"))

        assert result.success
        assert result.target == "10.0.0.21"
        assert result.parsed == {"Success": True, "Changed": False}
        assert result.error is None
        session.run_ps.assert_called_once_with("hostname")

    @pytest.mark.asyncio
    async def test_non_zero_exit(self):
        executor = WinRMExecutor()
        session = MagicMock()
        session.run_ps.return_value = _ps_result(status_code=1, std_err=b"Access is denied")

        with patch.object(executor, "_get_session", return_value=session):
            result = await executor.run_script("10.0.0.21", "Rename-Computer")

        assert not result.success
        assert result.error == "Access is denied"
        assert result.stderr == "Access is denied"

    @pytest.mark.asyncio
    async def test_transport_error_raises_and_forgets_session(self):
        executor = WinRMExecutor()
        executor._session_cache[("10.0.0.21", "d3")] = MagicMock()
        session = MagicMock()
        session.run_ps.side_effect = ConnectionError("Connection refused")

        with patch.object(executor, "_get_session", return_value=session):
            with pytest.raises(RemoteExecutionError) as exc_info:
                await executor.run_script("10.0.0.21", "hostname")

        assert exc_info.value.target == "10.0.0.21"
        assert "Connection refused" in str(exc_info.value)
        assert executor._session_cache == {}

    @pytest.mark.asyncio
    async def test_timeout(self):
        executor = WinRMExecutor()

        with patch.object(executor, "_execute_sync", side_effect=lambda *a: time.sleep(0.3)):
            with pytest.raises(RemoteExecutionError, match="timed out"):
                await executor.run_script("10.0.0.21", "Start-Sleep 60", timeout=0.05)

    @pytest.mark.asyncio
    async def test_pywinrm_missing(self):
        executor = WinRMExecutor()

        with patch.dict(sys.modules, {"winrm": None}):
            with pytest.raises(WinRMUnavailable):
                await executor.run_script("10.0.0.21", "hostname")

    def test_sessions_cached_per_host_and_user(self):
        executor = WinRMExecutor(FleetConfig(winrm_transport="ntlm", winrm_verify_ssl=False))
        winrm = MagicMock()
        target = executor.target_for("10.0.0.21")

        with patch.dict(sys.modules, {"winrm": winrm}):
            first = executor._get_session(target, Credential("d3", "pw"))
            second = executor._get_session(target, Credential("d3", "pw"))
            executor._get_session(target, Credential("admin", "pw"))

        assert first is second
        assert winrm.Session.call_count == 2
        winrm.Session.assert_any_call(
            "http://10.0.0.21:5985/wsman",
            auth=("d3", "pw"),
            transport="ntlm",
            server_cert_validation="ignore",
        )
