"""
Persistent record of a completed provisioning run.

The descriptor is an INI document with a single ``[luks]`` section. Later
tooling uses it to find the mapping again after a reboot. Device names are
not stable across reboots; the LUKS UUID is.
"""

import configparser
import io
import logging
import os
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from . import device_utils

logger = logging.getLogger(__name__)

SECTION = "luks"

# Polled by deployment tooling; the text must never change.
SUCCESS_MESSAGE = "LUKS encryption completed.\n"

HEADER = """\
# This file has been generated by fast-luks.
# The device name could change after reboot, please use UUID instead.
# LUKS provides a UUID (Universally Unique Identifier) for each device.
# This, unlike the device name (eg: /dev/vdb), is guaranteed to remain constant
# as long as the LUKS header remains intact.
#
"""


@dataclass(frozen=True)
class VolumeDescriptor:
    """Configuration of a provisioned volume. Field order is the file's key order."""

    cipher_algorithm: str
    hash_algorithm: str
    keysize: int
    device: str
    uuid: str
    cryptdev: str
    mapper: str
    mountpoint: str
    filesystem: str

    def to_ini(self, generated_at: Optional[datetime] = None) -> str:
        """Render the descriptor as an INI document."""
        stamp = (generated_at or datetime.now()).strftime("%b-%d-%y-%H%M%S")

        parser = configparser.ConfigParser(interpolation=None)
        parser[SECTION] = {key: str(value) for key, value in asdict(self).items()}

        buf = io.StringIO()
        buf.write(HEADER)
        buf.write(f"# LUKS header information for {self.device}\n")
        buf.write(f"# luks-{stamp}\n\n")
        parser.write(buf)
        return buf.getvalue()

    @classmethod
    def from_ini(cls, text: str) -> "VolumeDescriptor":
        """
        Parse a descriptor document.

        Raises:
            ValueError: If the section or any field is missing or malformed
        """
        parser = configparser.ConfigParser(interpolation=None)
        try:
            parser.read_string(text)
        except configparser.Error as e:
            raise ValueError(f"Malformed descriptor: {e}")

        if not parser.has_section(SECTION):
            raise ValueError(f"Descriptor has no [{SECTION}] section")

        section = parser[SECTION]
        missing = [f.name for f in fields(cls) if f.name not in section]
        if missing:
            raise ValueError(f"Descriptor is missing: {', '.join(missing)}")

        values = {f.name: section[f.name] for f in fields(cls)}
        try:
            values["keysize"] = int(values["keysize"])
        except ValueError:
            raise ValueError(f"Invalid keysize in descriptor: {values['keysize']!r}")
        return cls(**values)


class DescriptorStore:
    """Writes the volume descriptor and the completion marker."""

    def __init__(self, descriptor_file: Union[str, Path], success_file: Union[str, Path]):
        """
        Initialize descriptor store.

        Args:
            descriptor_file: Path of the INI descriptor
            success_file: Path of the completion marker
        """
        self.descriptor_file = Path(descriptor_file)
        self.success_file = Path(success_file)

    def record(self, descriptor: VolumeDescriptor) -> None:
        """
        Persist a descriptor, replacing any previous document.

        The file is written to a temporary path and renamed into place so
        readers never see a partial document.

        Args:
            descriptor: Descriptor of the completed run
        """
        self.descriptor_file.parent.mkdir(parents=True, exist_ok=True)

        tmp_file = self.descriptor_file.with_suffix(".tmp")
        try:
            with open(tmp_file, "w") as f:
                f.write(descriptor.to_ini())
                f.flush()
                os.fsync(f.fileno())
            tmp_file.replace(self.descriptor_file)
            logger.info(f"Saved descriptor to {self.descriptor_file}")
        except Exception as e:
            if tmp_file.exists():
                tmp_file.unlink()
            logger.error(f"Failed to save descriptor: {e}")
            raise

        # Forensic detail goes to the log, not into the descriptor
        dm_info = device_utils.dmsetup_info(descriptor.mapper)
        logger.debug(f"dmsetup info {descriptor.mapper}:\n{dm_info}")
        header_dump = device_utils.luks_dump(descriptor.device)
        logger.debug(f"luksDump {descriptor.device}:\n{header_dump}")

    def load(self) -> Optional[VolumeDescriptor]:
        """
        Load the recorded descriptor.

        Returns:
            VolumeDescriptor, or None if no descriptor has been written
        """
        if not self.descriptor_file.exists():
            logger.debug(f"Descriptor file not found: {self.descriptor_file}")
            return None
        return VolumeDescriptor.from_ini(self.descriptor_file.read_text())

    def mark_complete(self) -> None:
        """Write the completion marker polled by external orchestration."""
        self.success_file.parent.mkdir(parents=True, exist_ok=True)
        self.success_file.write_text(SUCCESS_MESSAGE)
        logger.info("SUCCESSFUL.")

    def clear_complete(self) -> None:
        """Remove a completion marker left by an earlier run."""
        if self.success_file.exists():
            logger.info(f"Removing previous completion marker {self.success_file}")
        self.success_file.unlink(missing_ok=True)

    def is_complete(self) -> bool:
        """Check whether the completion marker exists with the expected text."""
        try:
            return self.success_file.read_text() == SUCCESS_MESSAGE
        except OSError:
            return False
