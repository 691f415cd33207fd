"""
Wrappers around the external tools used during provisioning.

cryptsetup, dmsetup, mkfs, mount, umount and dd are treated as opaque
commands: only their exit status and output matter. Output from
non-interactive commands is copied into the operational log.
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

MAPPER_DIR = Path("/dev/mapper")
OS_RELEASE = Path("/etc/os-release")

# Short-lived query commands
QUERY_TIMEOUT = 30


def mapper_path(cryptdev: str) -> str:
    """Return the device-mapper node for a mapping name."""
    return str(MAPPER_DIR / cryptdev)


def _run(
    cmd: Sequence[str],
    input: Optional[str] = None,
    interactive: bool = False,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """Run an external command.

    Args:
        cmd: Command and arguments
        input: Text fed to the command's stdin (passphrases)
        interactive: Inherit the terminal instead of capturing output
        timeout: Seconds before the command is killed (None waits forever)

    Returns:
        CompletedProcess; stdout/stderr are None for interactive commands
    """
    logger.debug(f"Running: {' '.join(cmd)}")

    if interactive:
        return subprocess.run(list(cmd), text=True, timeout=timeout)

    result = subprocess.run(
        list(cmd),
        input=input,
        capture_output=True,
        text=True,
        timeout=timeout,
    )
    if result.stdout:
        logger.debug(result.stdout.rstrip())
    if result.stderr:
        logger.debug(result.stderr.rstrip())
    return result


def is_luks(device: str) -> bool:
    """Check whether a device carries a LUKS header."""
    result = _run(["cryptsetup", "isLuks", device], timeout=QUERY_TIMEOUT)
    return result.returncode == 0


def luks_status(name: str) -> subprocess.CompletedProcess:
    """Run ``cryptsetup -v status`` for a mapping name or mapper path."""
    return _run(["cryptsetup", "-v", "status", name], timeout=QUERY_TIMEOUT)


def parse_luks_status(output: str) -> Dict[str, str]:
    """Parse ``cryptsetup status`` output into a dictionary.

    Example input:
        /dev/mapper/abcdefgh is active and is in use.
          type:    LUKS2
          cipher:  aes-xts-plain64
          device:  /dev/vdb

    Returns:
        Lower-cased keys mapped to values; ``active`` is "yes" or "no"
    """
    info: Dict[str, str] = {}
    lines = output.strip().splitlines()
    if not lines:
        return info

    info["active"] = "yes" if " is active" in lines[0] else "no"
    for line in lines[1:]:
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        info[key.strip().lower()] = value.strip()
    return info


def luks_format(
    device: str,
    cipher: str,
    keysize: int,
    hash_algorithm: str,
    iter_time: int,
    passphrase: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Write a new LUKS header to a device.

    Without a passphrase cryptsetup prompts on the terminal and asks for
    confirmation. With one, the passphrase is passed on stdin.
    """
    cmd = [
        "cryptsetup",
        "-v",
        "--cipher",
        cipher,
        "--key-size",
        str(keysize),
        "--hash",
        hash_algorithm,
        "--iter-time",
        str(iter_time),
        "--use-urandom",
    ]
    if passphrase is None:
        cmd.append("--verify-passphrase")
    else:
        cmd.append("--key-file=-")
    cmd += ["luksFormat", device, "--batch-mode"]

    logger.debug(f"Cryptsetup full command: {' '.join(cmd)}")
    return _run(cmd, input=passphrase, interactive=passphrase is None)


def luks_open(
    device: str, cryptdev: str, passphrase: Optional[str] = None
) -> subprocess.CompletedProcess:
    """Open a LUKS container as /dev/mapper/<cryptdev>."""
    cmd = ["cryptsetup", "luksOpen", device, cryptdev]
    if passphrase is not None:
        cmd.insert(1, "--key-file=-")
    return _run(cmd, input=passphrase, interactive=passphrase is None)


def luks_uuid(device: str) -> str:
    """Return the LUKS UUID of a device, or an empty string."""
    result = _run(["cryptsetup", "luksUUID", device], timeout=QUERY_TIMEOUT)
    if result.returncode != 0:
        logger.warning(f"Unable to read LUKS UUID of {device}: {result.stderr}")
        return ""
    return result.stdout.strip()


def luks_dump(device: str) -> str:
    """Return the LUKS header dump of a device."""
    result = _run(["cryptsetup", "luksDump", device], timeout=QUERY_TIMEOUT)
    return (result.stdout or "") + (result.stderr or "")


def dmsetup_info(path: str) -> str:
    """Return ``dmsetup info`` output for a mapper node."""
    result = _run(["dmsetup", "info", path], timeout=QUERY_TIMEOUT)
    return (result.stdout or "") + (result.stderr or "")


def create_filesystem(
    device: str, fstype: str, interactive: bool = True
) -> subprocess.CompletedProcess:
    """Create a filesystem with ``mkfs.<fstype>``.

    Interactive runs keep mkfs attached to the terminal so it can ask for
    confirmation.
    """
    logger.info(f"Creating {fstype} filesystem on {device}")
    return _run([f"mkfs.{fstype}", device], interactive=interactive)


def mount_device(device: str, mountpoint: str) -> subprocess.CompletedProcess:
    """Mount a device at a mountpoint."""
    result = _run(["mount", device, mountpoint], timeout=QUERY_TIMEOUT)
    if result.returncode != 0:
        logger.warning(f"mount {device} {mountpoint} exited with {result.returncode}")
    return result


def unmount(mountpoint: str) -> subprocess.CompletedProcess:
    """Unmount a mountpoint."""
    result = _run(["umount", mountpoint], timeout=QUERY_TIMEOUT)
    if result.returncode != 0:
        logger.warning(f"umount {mountpoint} exited with {result.returncode}")
    return result


def wipe_device(path: str) -> subprocess.CompletedProcess:
    """Overwrite a mapped device end to end.

    Zeros written through dm-crypt land on disk as ciphertext, so the
    underlying device ends up filled with data indistinguishable from random.
    dd reports "No space left on device" when it reaches the end of the
    device; that is treated as a clean finish and the returncode is reset to 0.
    """
    logger.warning(f"Wiping {path} with random data (this may take a while)...")
    result = _run(["dd", "if=/dev/zero", f"of={path}", "bs=1M"])
    if result.returncode != 0 and "No space left on device" in (result.stderr or ""):
        result.returncode = 0
    return result


def disk_usage_report(human_si: bool = False) -> str:
    """Return ``df`` output for the operational log."""
    cmd = ["df", "-Hv"] if human_si else ["df", "-h"]
    try:
        result = _run(cmd, timeout=QUERY_TIMEOUT)
    except (OSError, subprocess.TimeoutExpired) as e:
        return f"{' '.join(cmd)} failed: {e}"
    return result.stdout or ""


def _os_release_id() -> str:
    """Return the ID field of /etc/os-release, or an empty string."""
    try:
        for line in OS_RELEASE.read_text().splitlines():
            if line.startswith("ID="):
                return line.split("=", 1)[1].strip().strip('"')
    except OSError:
        pass
    return ""


def install_cryptsetup() -> bool:
    """Install cryptsetup with the distribution's package manager.

    Returns:
        True if the package manager succeeded
    """
    distro = _os_release_id()
    if not distro:
        logger.info("Not running a distribution with /etc/os-release available.")
        return False

    if distro in ("ubuntu", "debian"):
        logger.info(f"Distribution: {distro}. Using apt.")
        cmd: List[str] = ["apt-get", "install", "-y", "cryptsetup"]
    else:
        logger.info(f"Distribution: {distro}. Using yum.")
        cmd = ["yum", "install", "-y", "cryptsetup-luks"]

    result = _run(cmd)
    return result.returncode == 0


def check_cryptsetup(install: bool = True) -> bool:
    """Make sure the crypto tools are available.

    Args:
        install: Install cryptsetup when it is missing

    Returns:
        True if cryptsetup is available afterwards
    """
    logger.info("Check if the required applications are installed...")
    if shutil.which("dmsetup") is None:
        logger.warning("dmsetup is not installed")

    if shutil.which("cryptsetup") is not None:
        return True

    if not install:
        logger.error("cryptsetup is not installed")
        return False

    logger.info("cryptsetup is not installed. Installing..")
    if install_cryptsetup() and shutil.which("cryptsetup") is not None:
        logger.info("cryptsetup installed.")
        return True

    logger.error("cryptsetup installation failed")
    return False
