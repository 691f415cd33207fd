"""
Failure taxonomy and process exit codes for LUKS provisioning.

Every failure raised by the provisioning layer carries the exit code the
process should terminate with. Only the entry points (cli.main and the MCP
handlers) translate these into an exit status or an error response.
"""

from enum import IntEnum
from typing import Optional, Sequence


class ExitCode(IntEnum):
    """Process exit codes shared with external orchestration."""

    SUCCESS = 0
    GENERAL = 1
    LOCKFAIL = 2
    RECVSIG = 3


class ProvisioningError(Exception):
    """Base class for fatal provisioning failures."""

    exit_code: ExitCode = ExitCode.GENERAL


class LockFail(ProvisioningError):
    """Another instance holds the lock, or lock ownership is ambiguous."""

    exit_code = ExitCode.LOCKFAIL

    def __init__(self, message: str, holder_pid: Optional[int] = None):
        super().__init__(message)
        self.holder_pid = holder_pid


class DeviceNotFound(ProvisioningError):
    """Neither the mountpoint nor the configured device is usable."""

    def __init__(self, device: str, mountpoint: str):
        super().__init__(f"No device mounted to {mountpoint} and {device} is not a block device")
        self.device = device
        self.mountpoint = mountpoint


class ToolFailure(ProvisioningError):
    """An external command exited with a non-zero status."""

    def __init__(self, cmd: Sequence[str], returncode: int, message: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        text = message or f"Command {self.cmd[0]} failed"
        super().__init__(f"{text} (exit status {returncode})")


class CollisionFailure(ProvisioningError):
    """The chosen mapping name is already in use."""

    def __init__(self, cryptdev: str):
        super().__init__(f"/dev/mapper/{cryptdev} already exists")
        self.cryptdev = cryptdev


class SignalReceived(ProvisioningError):
    """The process was asked to terminate by a signal."""

    exit_code = ExitCode.RECVSIG

    def __init__(self, signum: int):
        super().__init__(f"Killed by signal {signum}")
        self.signum = signum
