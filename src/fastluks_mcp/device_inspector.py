"""
Classification of the target device before provisioning.

The live mount table is authoritative: if something is mounted at the
mountpoint, its source replaces whatever device the configuration names.
"""

import logging
import os
import stat
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from . import device_utils

logger = logging.getLogger(__name__)


class DeviceState(Enum):
    """Current state of the provisioning target."""

    ALREADY_MOUNTED_PLAIN = "already_mounted_plain"
    RAW_UNMOUNTED = "raw_unmounted"
    NOT_FOUND = "not_found"


@dataclass
class DeviceClassification:
    """Result of classifying a mountpoint/device pair."""

    state: DeviceState
    device: str
    mountpoint: str

    @property
    def found(self) -> bool:
        return self.state != DeviceState.NOT_FOUND


@dataclass
class EncryptionStatus:
    """Whether a device already carries LUKS encryption."""

    encrypted: bool
    device: str  # Backing device holding the LUKS header
    active_mapping: Optional[str] = None  # Mapping name if the container is already open


def is_block_device(path: str) -> bool:
    """Check if a path exists and is a block special file."""
    try:
        st = os.stat(path)
    except OSError:
        return False
    return stat.S_ISBLK(st.st_mode)


class DeviceInspector:
    """Inspects the mount table and block devices."""

    def mount_source(self, mountpoint: str) -> Optional[str]:
        """
        Resolve the device mounted at a mountpoint.

        Args:
            mountpoint: Directory to look up

        Returns:
            Source device path, or None if nothing is mounted there
        """
        try:
            result = subprocess.run(
                ["findmnt", "-n", "-o", "SOURCE", "--mountpoint", mountpoint],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Could not query mount table for {mountpoint}: {e}")
            return None

        if result.returncode != 0:
            return None

        lines = result.stdout.strip().splitlines()
        if not lines:
            return None
        # Bind mounts report "/dev/vdb[/subdir]"
        return lines[-1].split("[", 1)[0].strip() or None

    def classify(self, mountpoint: str, device: str) -> DeviceClassification:
        """
        Classify the provisioning target.

        Args:
            mountpoint: Target mountpoint
            device: Device path from configuration

        Returns:
            DeviceClassification; NOT_FOUND means there is no valid target
        """
        logger.debug("Checking storage volume.")

        source = self.mount_source(mountpoint)
        if source:
            logger.debug(f"Device name: {source}")
            if source != device:
                logger.info(f"{mountpoint} is backed by {source}, overriding configured {device}")
            return DeviceClassification(DeviceState.ALREADY_MOUNTED_PLAIN, source, mountpoint)

        if is_block_device(device):
            logger.debug(f"External volume on {device}. Using it for encryption.")
            mp = Path(mountpoint)
            if not mp.is_dir():
                logger.debug(f"Creating {mountpoint}")
                mp.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Device name: {device}")
            logger.debug(f"Mountpoint: {mountpoint}")
            return DeviceClassification(DeviceState.RAW_UNMOUNTED, device, mountpoint)

        logger.error("Device not mounted, exiting!")
        logger.error(f"No device mounted to {mountpoint} and {device} is not a block device")
        logger.error(f"Mounted filesystems:\n{device_utils.disk_usage_report()}")
        return DeviceClassification(DeviceState.NOT_FOUND, device, mountpoint)

    def find_active_mapping(self, device: str) -> Optional[str]:
        """Return the name of an open dm-crypt mapping on top of a device."""
        try:
            result = subprocess.run(
                ["lsblk", "-l", "-n", "-o", "NAME,TYPE", device],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Could not list holders of {device}: {e}")
            return None

        if result.returncode != 0:
            return None

        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1] == "crypt":
                return parts[0]
        return None

    def is_already_encrypted(self, device: str) -> EncryptionStatus:
        """
        Decide whether a device is already LUKS encrypted.

        ``device`` may be a mapper node (when the mountpoint is backed by an
        open container) or the raw device.

        Args:
            device: Device path to inspect

        Returns:
            EncryptionStatus naming the backing device and any open mapping
        """
        status = device_utils.luks_status(device)
        if status.returncode == 0:
            info = device_utils.parse_luks_status(status.stdout or "")
            if info.get("active") == "yes" and info.get("type", "").upper().startswith("LUKS"):
                backing = info.get("device", device)
                mapping = os.path.basename(device)
                logger.info(f"{device} is an open LUKS mapping of {backing}")
                return EncryptionStatus(True, backing, mapping)

        if device_utils.is_luks(device):
            mapping = self.find_active_mapping(device)
            logger.info(f"{device} already carries a LUKS header")
            return EncryptionStatus(True, device, mapping)

        return EncryptionStatus(False, device)

    def mapping_exists(self, cryptdev: str) -> bool:
        """Check whether /dev/mapper/<cryptdev> already exists."""
        return is_block_device(device_utils.mapper_path(cryptdev))
