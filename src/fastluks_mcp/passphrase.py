"""Passphrase generation and input for non-interactive runs."""

import secrets
import string
import sys
from pathlib import Path
from typing import Union

MIN_PASSPHRASE_LENGTH = 8

_ALPHABET = string.ascii_letters + string.digits


def generate_passphrase(length: int = MIN_PASSPHRASE_LENGTH) -> str:
    """Generate a random alphanumeric passphrase with at least one letter and one digit."""
    if length < MIN_PASSPHRASE_LENGTH:
        raise ValueError(f"Passphrase length must be at least {MIN_PASSPHRASE_LENGTH}")

    while True:
        candidate = "".join(secrets.choice(_ALPHABET) for _ in range(length))
        if any(c.isalpha() for c in candidate) and any(c.isdigit() for c in candidate):
            return candidate


def validate_passphrase(passphrase: str) -> None:
    """Reject passphrases cryptsetup would accept but operators should not use."""
    if len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise ValueError(f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters")
    if "\n" in passphrase:
        raise ValueError("Passphrase must be a single line")


def read_passphrase_file(path: Union[str, Path]) -> str:
    """Read a passphrase from a file, or from stdin when path is "-"."""
    if str(path) == "-":
        text = sys.stdin.readline()
    else:
        text = Path(path).read_text()
    passphrase = text.rstrip("\r\n")
    validate_passphrase(passphrase)
    return passphrase
