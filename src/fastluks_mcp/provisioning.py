"""
Provisioning state machine for LUKS volumes.

A run moves a device through:

    START -> UNMOUNTED -> INITIALIZED -> MAPPED -> [WIPED] -> FILESYSTEM_READY
          -> MOUNTED -> RECORDED

Any state may end in ABORTED. A device that is already encrypted skips
straight to MAPPED (opening or adopting its mapping) and then RECORDED, so
re-running against a provisioned device never rewrites its LUKS header.

Only failures before the LUKS header is written are rolled back, by
remounting the original device. Later failures leave the device as it is
for the operator to inspect.
"""

import logging
import secrets
import string
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from . import device_utils
from .config_manager import LuksConfig
from .descriptor_store import DescriptorStore, VolumeDescriptor
from .device_inspector import DeviceInspector, EncryptionStatus
from .errors import CollisionFailure, DeviceNotFound, ToolFailure

logger = logging.getLogger(__name__)

CRYPTDEV_NAME_LENGTH = 8


class ProvisioningState(Enum):
    """States of a provisioning run."""

    START = "start"
    UNMOUNTED = "unmounted"
    INITIALIZED = "initialized"
    MAPPED = "mapped"
    WIPED = "wiped"
    FILESYSTEM_READY = "filesystem_ready"
    MOUNTED = "mounted"
    RECORDED = "recorded"
    ABORTED = "aborted"


def generate_cryptdev_name(length: int = CRYPTDEV_NAME_LENGTH) -> str:
    """Generate a random lowercase mapping name."""
    return "".join(secrets.choice(string.ascii_lowercase) for _ in range(length))


@dataclass
class ProvisioningSession:
    """In-memory state of one provisioning run."""

    config: LuksConfig
    device: str
    cryptdev: str
    paranoid: bool = False
    passphrase: Optional[str] = field(default=None, repr=False)
    state: ProvisioningState = ProvisioningState.START
    history: List[ProvisioningState] = field(default_factory=lambda: [ProvisioningState.START])

    @property
    def mapper(self) -> str:
        return device_utils.mapper_path(self.cryptdev)

    @property
    def mountpoint(self) -> str:
        return self.config.mountpoint

    def advance(self, state: ProvisioningState) -> None:
        """Record a state transition."""
        logger.info(f"Provisioning state: {self.state.name} -> {state.name}")
        self.state = state
        self.history.append(state)


class ProvisioningEngine:
    """Drives a device from its current state to a recorded LUKS volume."""

    def __init__(
        self,
        config: LuksConfig,
        passphrase: Optional[str] = None,
        inspector: Optional[DeviceInspector] = None,
        store: Optional[DescriptorStore] = None,
    ):
        """
        Initialize provisioning engine.

        Args:
            config: Validated configuration for this run
            passphrase: Passphrase for non-interactive runs (prompted otherwise)
            inspector: Device inspector (default: DeviceInspector())
            store: Descriptor store (default: built from config paths)
        """
        self.config = config
        self.passphrase = passphrase
        self.inspector = inspector or DeviceInspector()
        self.store = store or DescriptorStore(config.luks_cryptdev_file, config.success_file)
        self.session: Optional[ProvisioningSession] = None

    def new_session(self) -> ProvisioningSession:
        """Start a fresh session, choosing the mapping name for this run."""
        cryptdev = self.config.cryptdev or generate_cryptdev_name()
        self.session = ProvisioningSession(
            config=self.config,
            device=self.config.device,
            cryptdev=cryptdev,
            paranoid=self.config.paranoid,
            passphrase=self.passphrase,
        )
        return self.session

    def run(self) -> VolumeDescriptor:
        """
        Run the state machine to completion.

        Returns:
            The recorded VolumeDescriptor

        Raises:
            ValueError: If a non-interactive run has no passphrase
            ProvisioningError: On any fatal failure (session ends ABORTED)
        """
        if self.config.non_interactive and self.passphrase is None:
            raise ValueError("Non-interactive mode requires a passphrase")

        session = self.new_session()
        try:
            # The marker must only ever describe this run's outcome
            self.store.clear_complete()

            classification = self.inspector.classify(self.config.mountpoint, self.config.device)
            if not classification.found:
                raise DeviceNotFound(self.config.device, self.config.mountpoint)
            session.device = classification.device
            self._log_session(session)

            encryption = self.inspector.is_already_encrypted(session.device)
            if encryption.encrypted:
                logger.info(f"{encryption.device} is already encrypted, skipping encryption setup")
                self._adopt_existing(session, encryption)
            else:
                self._unmount(session)
                self._initialize(session)
                self._open_mapping(session)
                if session.paranoid:
                    self._wipe(session)
                self._create_filesystem(session)
                self._mount(session)

            return self._record(session)

        except Exception as e:
            logger.error(f"Provisioning aborted in state {session.state.name}: {e}")
            session.advance(ProvisioningState.ABORTED)
            raise

    def _log_session(self, session: ProvisioningSession) -> None:
        logger.debug(f"LUKS header information for {session.device}")
        logger.debug(f"Cipher algorithm: {self.config.cipher_algorithm}")
        logger.debug(f"Hash algorithm: {self.config.hash_algorithm}")
        logger.debug(f"Keysize: {self.config.keysize}")
        logger.debug(f"Device: {session.device}")
        logger.debug(f"Crypt device: {session.cryptdev}")
        logger.debug(f"Mapper: {session.mapper}")
        logger.debug(f"Mountpoint: {session.mountpoint}")
        logger.debug(f"File system: {self.config.filesystem}")

    def _restore_mount(self, session: ProvisioningSession) -> None:
        """Best-effort remount of the original device."""
        logger.error(f"Mounting {session.device} to {session.mountpoint} again.")
        try:
            device_utils.mount_device(session.device, session.mountpoint)
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"Failed to remount {session.device}: {e}")

    def _unmount(self, session: ProvisioningSession) -> None:
        logger.info("Umounting device.")
        device_utils.unmount(session.mountpoint)
        logger.info(f"{session.device} umounted, ready for encryption!")
        session.advance(ProvisioningState.UNMOUNTED)

    def _initialize(self, session: ProvisioningSession) -> None:
        logger.info(f"Using {self.config.cipher_algorithm} algorithm to luksformat the volume.")
        result = device_utils.luks_format(
            session.device,
            cipher=self.config.cipher_algorithm,
            keysize=self.config.keysize,
            hash_algorithm=self.config.hash_algorithm,
            iter_time=self.config.iter_time,
            passphrase=session.passphrase,
        )
        if result.returncode != 0:
            logger.error(
                f"Command cryptsetup failed! Mounting {session.device} to "
                f"{session.mountpoint} and exiting.."
            )
            self._restore_mount(session)
            raise ToolFailure(
                ["cryptsetup", "luksFormat", session.device],
                result.returncode,
                "Command cryptsetup failed",
            )
        session.advance(ProvisioningState.INITIALIZED)

    def _check_collision(self, session: ProvisioningSession) -> None:
        if self.inspector.mapping_exists(session.cryptdev):
            logger.error("Unable to luksOpen device.")
            logger.error(f"{session.mapper} already exists.")
            self._restore_mount(session)
            raise CollisionFailure(session.cryptdev)

    def _luks_open(self, session: ProvisioningSession) -> None:
        logger.info("Open LUKS volume.")
        result = device_utils.luks_open(session.device, session.cryptdev, session.passphrase)
        if result.returncode != 0:
            raise ToolFailure(
                ["cryptsetup", "luksOpen", session.device, session.cryptdev],
                result.returncode,
                "Command cryptsetup luksOpen failed",
            )

    def _log_encryption_status(self, session: ProvisioningSession) -> None:
        logger.info(f"Check {session.cryptdev} status with cryptsetup status")
        status = device_utils.luks_status(session.cryptdev)
        logger.debug((status.stdout or "") + (status.stderr or ""))

    def _open_mapping(self, session: ProvisioningSession) -> None:
        self._check_collision(session)
        self._luks_open(session)
        session.advance(ProvisioningState.MAPPED)
        self._log_encryption_status(session)

    def _adopt_existing(self, session: ProvisioningSession, encryption: EncryptionStatus) -> None:
        """Open, or reuse, the mapping of an already encrypted device."""
        session.device = encryption.device

        if encryption.active_mapping:
            if self.config.cryptdev and self.config.cryptdev != encryption.active_mapping:
                logger.warning(
                    f"{session.device} is already open as {encryption.active_mapping}, "
                    f"ignoring requested name {self.config.cryptdev}"
                )
            session.cryptdev = encryption.active_mapping
            logger.info(f"Reusing open mapping {session.mapper}")
        else:
            self._check_collision(session)
            self._luks_open(session)

        session.advance(ProvisioningState.MAPPED)
        self._log_encryption_status(session)

    def _wipe(self, session: ProvisioningSession) -> None:
        logger.info("Wiping disk data by overwriting the entire drive with random data")
        result = device_utils.wipe_device(session.mapper)
        if result.returncode != 0:
            logger.error(f"Wiping {session.mapper} failed: {result.stderr}")
            raise ToolFailure(["dd", f"of={session.mapper}"], result.returncode, "Wipe failed")
        logger.info("Wiping done.")
        session.advance(ProvisioningState.WIPED)

    def _create_filesystem(self, session: ProvisioningSession) -> None:
        fstype = self.config.filesystem
        result = device_utils.create_filesystem(
            session.mapper, fstype, interactive=not self.config.non_interactive
        )
        if result.returncode != 0:
            # Container stays open without a filesystem; left for the operator
            logger.error(f"While creating {fstype} filesystem. Command mkfs failed!")
            logger.error(
                f"{session.mapper} is still open, close it with: "
                f"cryptsetup close {session.cryptdev}"
            )
            raise ToolFailure(
                [f"mkfs.{fstype}", session.mapper], result.returncode, "Command mkfs failed"
            )
        session.advance(ProvisioningState.FILESYSTEM_READY)

    def _mount(self, session: ProvisioningSession) -> None:
        logger.info("Mounting encrypted device...")
        result = device_utils.mount_device(session.mapper, session.mountpoint)
        logger.info(f"mount {session.mapper} {session.mountpoint} exited with {result.returncode}")
        logger.debug(device_utils.disk_usage_report(human_si=True))
        session.advance(ProvisioningState.MOUNTED)

    def _record(self, session: ProvisioningSession) -> VolumeDescriptor:
        uuid = device_utils.luks_uuid(session.device)
        if not uuid:
            logger.error(f"Unable to read the LUKS UUID of {session.device}")
            raise ToolFailure(
                ["cryptsetup", "luksUUID", session.device], 1, "Unable to read LUKS UUID"
            )

        descriptor = VolumeDescriptor(
            cipher_algorithm=self.config.cipher_algorithm,
            hash_algorithm=self.config.hash_algorithm,
            keysize=self.config.keysize,
            device=session.device,
            uuid=uuid,
            cryptdev=session.cryptdev,
            mapper=session.mapper,
            mountpoint=session.mountpoint,
            filesystem=self.config.filesystem,
        )
        self.store.record(descriptor)
        self.store.mark_complete()
        session.advance(ProvisioningState.RECORDED)
        return descriptor
