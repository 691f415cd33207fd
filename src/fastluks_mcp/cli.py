"""
Command-line entry point for a single provisioning run.

Exit codes: 0 success, 1 general failure, 2 lock failure, 3 killed by signal.
"""

import argparse
import logging
import os
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from . import device_utils
from .config_manager import ConfigManager, LuksConfig
from .errors import ExitCode, ProvisioningError
from .lock_manager import LockManager
from .passphrase import generate_passphrase, read_passphrase_file
from .provisioning import ProvisioningEngine

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"

INTRO = """\
=========================================================
               Filesystem encryption script
A password with at least 8 alphanumeric string is needed
There's no way to recover your password.
Example (automatic random generated passphrase):
                      {suggestion}
You will be required to insert your password 3 times:
  1. Enter passphrase
  2. Verify passphrase
  3. Unlock your volume
========================================================="""


def setup_logging(log_file: str) -> None:
    """Log everything to the operational log file and INFO+ to stderr."""
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file, mode="a")
    file_handler.setLevel(logging.DEBUG)
    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(logging.INFO)
    logging.basicConfig(
        level=logging.DEBUG,
        format=LOG_FORMAT,
        handlers=[file_handler, stream_handler],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fast-luks",
        description="Automate LUKS file system encryption of a block device.",
    )
    parser.add_argument("-c", "--cipher", dest="cipher_algorithm", help="cipher algorithm")
    parser.add_argument("-k", "--keysize", type=int, help="key size in bits")
    parser.add_argument("-a", "--hash_algorithm", help="hash algorithm used for key derivation")
    parser.add_argument("-d", "--device", help="device to encrypt")
    parser.add_argument("-e", "--cryptdev", help="mapping name (random if not set)")
    parser.add_argument("-m", "--mountpoint", help="mount point")
    parser.add_argument("-f", "--filesystem", help="filesystem type")
    parser.add_argument(
        "--paranoid-mode",
        dest="paranoid",
        action="store_const",
        const=True,
        help="wipe data after encryption (slow)",
    )
    parser.add_argument(
        "--foreground", action="store_const", const=True, help="run in the foreground"
    )
    parser.add_argument(
        "-n",
        "--non-interactive",
        dest="non_interactive",
        action="store_const",
        const=True,
        help="never prompt; requires a passphrase",
    )
    parser.add_argument("--passphrase-file", help="read the passphrase from a file ('-' = stdin)")
    parser.add_argument(
        "-r",
        "--random-passphrase-generation",
        dest="passphrase_length",
        type=int,
        help="generate a random passphrase of this length and print it",
    )
    parser.add_argument("--defaults", help="base configuration document (default: ./defaults.conf)")
    parser.add_argument("--lock-dir", dest="lock_dir", help="lock directory")
    parser.add_argument(
        "--descriptor-file", dest="luks_cryptdev_file", help="where to record the volume descriptor"
    )
    return parser


def run_encryption(
    config: LuksConfig,
    passphrase: Optional[str] = None,
    lock_manager: Optional[LockManager] = None,
) -> ExitCode:
    """
    Run one provisioning under the single-instance lock.

    The lock is released on every path out of this function, including
    signal-triggered termination.

    Args:
        config: Validated configuration
        passphrase: Passphrase for non-interactive runs
        lock_manager: Lock to hold (default: LockManager(config.lock_dir))

    Returns:
        Process exit code
    """
    lock = lock_manager or LockManager(config.lock_dir)
    try:
        with lock:
            logger.info(f"Start log file: {datetime.now().strftime('%b-%d-%y-%H%M%S')}")
            if not device_utils.check_cryptsetup():
                return ExitCode.GENERAL

            engine = ProvisioningEngine(config, passphrase=passphrase)
            descriptor = engine.run()
            logger.info(f"{descriptor.device} encrypted and mounted at {descriptor.mountpoint}")

    except ProvisioningError as e:
        logger.error(f"{e}. Please check logs: {config.log_file}")
        logger.debug(f"Exit: {e.exit_code.name}({int(e.exit_code)})")
        return e.exit_code
    except ValueError as e:
        logger.error(str(e))
        return ExitCode.GENERAL
    except (OSError, subprocess.SubprocessError) as e:
        # Missing binaries and command timeouts end up here
        logger.error(f"{e}. Please check logs: {config.log_file}")
        return ExitCode.GENERAL

    return ExitCode.SUCCESS


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if os.geteuid() != 0:
        print("Not running as root.", file=sys.stderr)
        return ExitCode.GENERAL

    overrides = {
        "cipher_algorithm": args.cipher_algorithm,
        "keysize": args.keysize,
        "hash_algorithm": args.hash_algorithm,
        "device": args.device,
        "cryptdev": args.cryptdev,
        "mountpoint": args.mountpoint,
        "filesystem": args.filesystem,
        "paranoid": args.paranoid,
        "foreground": args.foreground,
        "non_interactive": args.non_interactive,
        "lock_dir": args.lock_dir,
        "luks_cryptdev_file": args.luks_cryptdev_file,
    }
    try:
        config = ConfigManager(args.defaults).load(overrides)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return ExitCode.GENERAL

    setup_logging(config.log_file)

    passphrase = None
    try:
        if args.passphrase_file:
            passphrase = read_passphrase_file(args.passphrase_file)
        elif args.passphrase_length:
            passphrase = generate_passphrase(args.passphrase_length)
            print(f"Generated passphrase: {passphrase}")
    except (OSError, ValueError) as e:
        logger.error(f"Unable to obtain passphrase: {e}")
        return ExitCode.GENERAL

    if passphrase is None and not config.non_interactive:
        print(INTRO.format(suggestion=generate_passphrase()))

    return run_encryption(config, passphrase)


if __name__ == "__main__":
    sys.exit(main())
