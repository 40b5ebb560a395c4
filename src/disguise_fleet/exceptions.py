"""Exceptions raised by disguise fleet."""


class FleetError(Exception):
    """Base exception for disguise fleet errors."""
    pass


class RemoteExecutionError(FleetError):
    """A remote PowerShell command could not be run."""

    def __init__(self, target: str, message: str):
        self.target = target
        super().__init__(f"{target}: {message}")


class WinRMUnavailable(RemoteExecutionError):
    """pywinrm is not importable on this machine."""
    pass


class ScanInProgressError(FleetError):
    """A scan was started while another one is still running."""
    pass
