"""
fastluks-mcp - LUKS volume provisioning with an MCP interface.

This package encrypts a block device with LUKS, builds a filesystem on the
mapping, mounts it, and records the resulting configuration so other
automation can find the volume again.
"""

__version__ = "0.1.0"
