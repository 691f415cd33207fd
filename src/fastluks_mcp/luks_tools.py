"""
MCP tools for LUKS volume provisioning.

Provisioning runs in a separate ``fast-luks`` process so the lock, signal
handling and exit codes behave exactly as they do from a shell. Callers can
wait for it (foreground) or poll ``luks_status`` for the completion marker.
"""

import asyncio
import json
import logging
import os
import subprocess
import sys
import threading
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from mcp.types import Tool, TextContent

from .config_manager import ConfigManager, LuksConfig
from .descriptor_store import DescriptorStore
from .device_inspector import DeviceInspector, is_block_device
from .errors import ExitCode
from .lock_manager import is_process_alive, read_lock_holder
from .passphrase import generate_passphrase, validate_passphrase

logger = logging.getLogger(__name__)

# Arguments passed through to the provisioning configuration
_CONFIG_ARGS = (
    "cipher_algorithm",
    "keysize",
    "hash_algorithm",
    "device",
    "cryptdev",
    "mountpoint",
    "filesystem",
    "paranoid",
)

_PATH_ARGS = ("lock_dir", "success_file_dir", "luks_cryptdev_file")


# Tool definitions for MCP server
def get_luks_tools() -> List[Tool]:
    """Get list of LUKS provisioning MCP tools."""
    path_properties = {
        "lock_dir": {"type": "string", "description": "Lock directory override"},
        "success_file_dir": {"type": "string", "description": "Completion marker directory"},
        "luks_cryptdev_file": {"type": "string", "description": "Descriptor file override"},
    }
    return [
        Tool(
            name="luks_encrypt",
            description=(
                "Encrypt a block device with LUKS, create a filesystem on it, mount it and "
                "record the resulting configuration. DESTROYS all data on the device "
                "unless it is already encrypted."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "device": {"type": "string", "description": "Device (e.g., '/dev/vdb')"},
                    "mountpoint": {
                        "type": "string",
                        "description": "Mount point (e.g., '/export')",
                    },
                    "cipher_algorithm": {"type": "string", "description": "Cipher algorithm"},
                    "keysize": {"type": "integer", "description": "Key size in bits"},
                    "hash_algorithm": {"type": "string", "description": "Key derivation hash"},
                    "cryptdev": {
                        "type": "string",
                        "description": "Mapping name (random 8-letter name if not specified)",
                    },
                    "filesystem": {"type": "string", "description": "Filesystem type"},
                    "paranoid": {
                        "type": "boolean",
                        "description": "Wipe the encrypted device with random data (slow)",
                        "default": False,
                    },
                    "passphrase": {"type": "string", "description": "LUKS passphrase"},
                    "random_passphrase_length": {
                        "type": "integer",
                        "description": "Generate a random passphrase of this length instead",
                    },
                    "foreground": {
                        "type": "boolean",
                        "description": "Wait for completion instead of returning immediately",
                        "default": False,
                    },
                    "defaults_file": {"type": "string", "description": "defaults.conf path"},
                    **path_properties,
                },
            },
        ),
        Tool(
            name="luks_status",
            description="Report lock holder, completion marker and recorded descriptor",
            inputSchema={"type": "object", "properties": dict(path_properties)},
        ),
        Tool(
            name="luks_inspect_device",
            description=(
                "Classify a device/mountpoint pair and check for existing LUKS encryption"
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "device": {"type": "string", "description": "Device path"},
                    "mountpoint": {"type": "string", "description": "Mount point"},
                },
                "required": ["device", "mountpoint"],
            },
        ),
        Tool(
            name="luks_descriptor",
            description="Return the recorded volume descriptor as JSON",
            inputSchema={"type": "object", "properties": dict(path_properties)},
        ),
    ]


# Tool handlers
async def handle_luks_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
    """
    Handle LUKS tool calls.

    Args:
        name: Tool name
        arguments: Tool arguments

    Returns:
        List of TextContent responses
    """
    try:
        if name == "luks_encrypt":
            return await _handle_luks_encrypt(arguments)
        elif name == "luks_status":
            return await _handle_luks_status(arguments)
        elif name == "luks_inspect_device":
            return await _handle_luks_inspect_device(arguments)
        elif name == "luks_descriptor":
            return await _handle_luks_descriptor(arguments)
        else:
            return [TextContent(type="text", text=f"Unknown LUKS tool: {name}")]
    except Exception as e:
        logger.error(f"Error handling LUKS tool '{name}': {e}", exc_info=True)
        return [TextContent(type="text", text=f"Error: {str(e)}")]


def _load_config(arguments: Dict[str, Any], keys=_PATH_ARGS) -> LuksConfig:
    overrides = {key: arguments.get(key) for key in keys}
    return ConfigManager(arguments.get("defaults_file")).load(overrides)


def build_encrypt_command(config: LuksConfig, defaults_file: Optional[str] = None) -> List[str]:
    """Build the fast-luks command line for a validated configuration."""
    cmd = [
        sys.executable,
        "-m",
        "fastluks_mcp.cli",
        "--non-interactive",
        "--passphrase-file",
        "-",
        "--cipher",
        config.cipher_algorithm,
        "--keysize",
        str(config.keysize),
        "--hash_algorithm",
        config.hash_algorithm,
        "--device",
        config.device,
        "--mountpoint",
        config.mountpoint,
        "--filesystem",
        config.filesystem,
    ]
    if config.cryptdev:
        cmd += ["--cryptdev", config.cryptdev]
    if config.paranoid:
        cmd.append("--paranoid-mode")
    if config.foreground:
        cmd.append("--foreground")
    if defaults_file:
        cmd += ["--defaults", defaults_file]
    cmd += ["--lock-dir", config.lock_dir, "--descriptor-file", config.luks_cryptdev_file]
    return cmd


async def _handle_luks_encrypt(arguments: Dict[str, Any]) -> List[TextContent]:
    """Handle luks_encrypt tool."""
    config = _load_config(
        dict(arguments, non_interactive=True),
        keys=_CONFIG_ARGS + _PATH_ARGS + ("foreground", "non_interactive"),
    )

    passphrase = arguments.get("passphrase")
    generated = False
    if passphrase is None and arguments.get("random_passphrase_length"):
        passphrase = generate_passphrase(int(arguments["random_passphrase_length"]))
        generated = True
    if passphrase is None:
        return [
            TextContent(
                type="text",
                text="Error: a passphrase or random_passphrase_length is required",
            )
        ]
    validate_passphrase(passphrase)

    cmd = build_encrypt_command(config, arguments.get("defaults_file"))
    env = _child_env(config)
    logger.info(f"Launching LUKS provisioning of {config.device} at {config.mountpoint}")

    response_text = f"LUKS provisioning of {config.device}\n\nMountpoint: {config.mountpoint}\n"
    if generated:
        response_text += f"Generated passphrase: {passphrase}\n"
        response_text += "SAVE THIS PASSPHRASE, it cannot be recovered.\n"

    if config.foreground:
        result = await asyncio.to_thread(
            subprocess.run,
            cmd,
            input=passphrase + "\n",
            capture_output=True,
            text=True,
            env=env,
        )
        try:
            code = ExitCode(result.returncode)
            status = code.name
        except ValueError:
            status = f"UNKNOWN({result.returncode})"

        if result.returncode == ExitCode.SUCCESS:
            descriptor = DescriptorStore(config.luks_cryptdev_file, config.success_file).load()
            response_text += "\n✓ LUKS encryption completed.\n"
            if descriptor:
                response_text += f"Mapper: {descriptor.mapper}\nUUID: {descriptor.uuid}\n"
        else:
            response_text += f"\n✗ Provisioning failed: {status}\n"
            if result.stderr:
                response_text += f"\n{result.stderr.strip()[-2000:]}\n"
        response_text += f"\nLog file: {config.log_file}"
        return [TextContent(type="text", text=response_text)]

    process = subprocess.Popen(
        cmd,
        stdin=subprocess.PIPE,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        text=True,
        env=env,
    )
    process.stdin.write(passphrase + "\n")
    process.stdin.close()
    # Reap the child when it exits so it does not linger as a zombie
    threading.Thread(target=process.wait, daemon=True).start()

    response_text += f"\nStarted in background (PID {process.pid}).\n"
    response_text += f"Poll luks_status until {config.success_file} appears.\n"
    response_text += f"Log file: {config.log_file}"
    return [TextContent(type="text", text=response_text)]


def _child_env(config: LuksConfig) -> Dict[str, str]:
    env = dict(os.environ)
    env["LOGFILE"] = config.log_file
    env["SUCCESS_FILE_DIR"] = config.success_file_dir
    return env


async def _handle_luks_status(arguments: Dict[str, Any]) -> List[TextContent]:
    """Handle luks_status tool."""
    config = _load_config(arguments)
    store = DescriptorStore(config.luks_cryptdev_file, config.success_file)

    holder = read_lock_holder(config.lock_dir)
    if holder is None:
        lock_text = "not held"
    elif is_process_alive(holder):
        lock_text = f"held by running PID {holder}"
    else:
        lock_text = f"stale (PID {holder} is not running)"

    response_text = "LUKS Provisioning Status\n\n"
    response_text += f"Lock: {lock_text}\n"
    response_text += f"Completed: {'yes' if store.is_complete() else 'no'}\n"

    try:
        descriptor = store.load()
    except ValueError as e:
        descriptor = None
        response_text += f"Descriptor: invalid ({e})\n"
    else:
        if descriptor is None:
            response_text += "Descriptor: none\n"

    if descriptor:
        response_text += f"\nDescriptor ({config.luks_cryptdev_file}):\n"
        for key, value in asdict(descriptor).items():
            response_text += f"  {key}: {value}\n"

    return [TextContent(type="text", text=response_text)]


async def _handle_luks_inspect_device(arguments: Dict[str, Any]) -> List[TextContent]:
    """Handle luks_inspect_device tool."""
    device = arguments["device"]
    mountpoint = arguments["mountpoint"]
    inspector = DeviceInspector()

    source = inspector.mount_source(mountpoint)
    if source:
        state = f"mounted ({source})"
        target = source
    elif is_block_device(device):
        state = "raw, unmounted"
        target = device
    else:
        return [
            TextContent(
                type="text",
                text=f"✗ No device mounted to {mountpoint} and {device} is not a block device",
            )
        ]

    encryption = inspector.is_already_encrypted(target)
    response_text = f"Device Inspection: {target}\n\n"
    response_text += f"Mountpoint {mountpoint}: {state}\n"
    if encryption.encrypted:
        response_text += f"Encrypted: yes (LUKS header on {encryption.device})\n"
        if encryption.active_mapping:
            response_text += f"Open mapping: /dev/mapper/{encryption.active_mapping}\n"
    else:
        response_text += "Encrypted: no\n"

    return [TextContent(type="text", text=response_text)]


async def _handle_luks_descriptor(arguments: Dict[str, Any]) -> List[TextContent]:
    """Handle luks_descriptor tool."""
    config = _load_config(arguments)
    descriptor = DescriptorStore(config.luks_cryptdev_file, config.success_file).load()
    if descriptor is None:
        return [
            TextContent(type="text", text=f"No descriptor found at {config.luks_cryptdev_file}")
        ]
    return [TextContent(type="text", text=json.dumps(asdict(descriptor), indent=2))]
