"""
Provisioning configuration - built-in defaults, defaults.conf, and overrides.
"""

import configparser
import logging
import os
import re
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

DEFAULTS_FILE = Path("defaults.conf")
DEFAULTS_SECTION = "defaults"

# Environment variables that take precedence over defaults.conf
ENV_OVERRIDES = {"LOGFILE": "log_file", "SUCCESS_FILE_DIR": "success_file_dir"}

_CRYPTDEV_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_FILESYSTEM_RE = re.compile(r"^[a-z0-9]+$")


@dataclass(frozen=True)
class LuksConfig:
    """Immutable configuration for one provisioning run."""

    cipher_algorithm: str = "aes-xts-plain64"
    keysize: int = 256
    hash_algorithm: str = "sha256"
    device: str = "/dev/vdb"
    cryptdev: Optional[str] = None  # None means a random name is generated per run
    mountpoint: str = "/export"
    filesystem: str = "ext4"
    paranoid: bool = False
    non_interactive: bool = False
    foreground: bool = False
    iter_time: int = 2000  # milliseconds of PBKDF iteration for luksFormat

    # Operational paths
    lock_dir: str = "/var/run/fast_luks"
    success_file_dir: str = "/var/run"
    luks_cryptdev_file: str = "/etc/luks/luks-cryptdev.ini"
    log_file: str = "/tmp/luks_encryption.log"

    @property
    def success_file(self) -> Path:
        """Path of the completion marker."""
        return Path(self.success_file_dir) / "fast-luks-encryption.success"

    def validate(self) -> None:
        """Check values that end up on external command lines.

        Raises:
            ValueError: If any value is unusable
        """
        if self.keysize <= 0 or self.keysize % 8 != 0:
            raise ValueError(f"keysize must be a positive multiple of 8, got {self.keysize}")
        if self.iter_time <= 0:
            raise ValueError(f"iter_time must be positive, got {self.iter_time}")
        if self.cryptdev is not None and not _CRYPTDEV_RE.match(self.cryptdev):
            raise ValueError(f"Invalid cryptdev name: {self.cryptdev!r}")
        if not _FILESYSTEM_RE.match(self.filesystem):
            raise ValueError(f"Invalid filesystem type: {self.filesystem!r}")
        for name in ("cipher_algorithm", "hash_algorithm", "device", "mountpoint"):
            value = getattr(self, name)
            if not value or any(c.isspace() for c in value):
                raise ValueError(f"Invalid {name}: {value!r}")
        if not os.path.isabs(self.mountpoint):
            raise ValueError(f"mountpoint must be an absolute path, got {self.mountpoint!r}")


_FIELD_NAMES = {f.name for f in fields(LuksConfig)}
_BOOL_FIELDS = {"paranoid", "non_interactive", "foreground"}
_INT_FIELDS = {"keysize", "iter_time"}


def _coerce(key: str, value: Any) -> Any:
    """Convert a raw config value to the type of its LuksConfig field."""
    if key in _BOOL_FIELDS:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text not in configparser.ConfigParser.BOOLEAN_STATES:
            raise ValueError(f"Invalid boolean for {key}: {value!r}")
        return configparser.ConfigParser.BOOLEAN_STATES[text]

    if key in _INT_FIELDS:
        if isinstance(value, bool):
            raise ValueError(f"Invalid integer for {key}: {value!r}")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid integer for {key}: {value!r}")

    text = str(value).strip()
    if key == "cryptdev" and not text:
        return None
    return text


class ConfigManager:
    """Builds a LuksConfig from defaults.conf plus caller overrides."""

    def __init__(self, defaults_file: Optional[Union[str, Path]] = None):
        """
        Initialize configuration manager.

        Args:
            defaults_file: Base configuration document (default: ./defaults.conf)
        """
        self.defaults_file = Path(defaults_file) if defaults_file else DEFAULTS_FILE

    def read_defaults(self) -> Dict[str, str]:
        """
        Read the base configuration document.

        The file is a flat ``key = value`` list. A section header is optional
        and may follow comments; when present only the first section is used.

        Returns:
            Raw key/value pairs (empty when the file does not exist)

        Raises:
            ValueError: If the file cannot be parsed
        """
        if not self.defaults_file.exists():
            logger.info("No defaults.conf file found. Loading built-in variables.")
            return {}

        logger.info(f"Loading default configuration from {self.defaults_file}")
        text = self.defaults_file.read_text()
        source = str(self.defaults_file)

        try:
            try:
                parser = self._parse(text, source)
            except configparser.MissingSectionHeaderError:
                parser = self._parse(f"[{DEFAULTS_SECTION}]\n{text}", source)
        except configparser.Error as e:
            raise ValueError(f"Malformed {self.defaults_file}: {e}")

        sections = parser.sections()
        if not sections:
            return {}
        return {key: value.strip().strip('"') for key, value in parser.items(sections[0])}

    @staticmethod
    def _parse(text: str, source: str) -> configparser.ConfigParser:
        parser = configparser.ConfigParser(
            interpolation=None, inline_comment_prefixes=("#", ";")
        )
        parser.read_string(text, source=source)
        return parser

    def load(self, overrides: Optional[Dict[str, Any]] = None) -> LuksConfig:
        """
        Build the configuration for one run.

        Precedence, lowest first: built-in defaults, defaults.conf, the
        LOGFILE and SUCCESS_FILE_DIR environment variables, overrides.

        Args:
            overrides: Caller-supplied values; None entries are ignored

        Returns:
            Validated LuksConfig

        Raises:
            ValueError: On unknown keys or invalid values
        """
        raw: Dict[str, Any] = dict(self.read_defaults())

        for env_name, key in ENV_OVERRIDES.items():
            env_value = os.environ.get(env_name)
            if env_value:
                raw[key] = env_value

        raw.update({k: v for k, v in (overrides or {}).items() if v is not None})

        values: Dict[str, Any] = {}
        for key, value in raw.items():
            if key not in _FIELD_NAMES:
                raise ValueError(f"Unknown configuration option: {key}")
            values[key] = _coerce(key, value)

        config = replace(LuksConfig(), **values)
        config.validate()
        return config
